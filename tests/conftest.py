"""Shared fixtures for UnoCloud tests."""

import itertools
import tempfile
from pathlib import Path

import pytest

from unocloud.exceptions import GraphAPIError, NotFoundError
from unocloud.models import (
    AzureConfig,
    FileFilters,
    SharePointDestination,
    SyncMapping,
    SyncOptions,
    TenantConfig,
)
from unocloud.tracker import SyncTracker


class FakeGraphClient:
    """In-memory stand-in for GraphClient with a single site and drive."""

    def __init__(self, library="Documents"):
        self.library = library
        self.missing_sites = set()
        self.folders = {}          # path -> item
        self.files = {}            # path -> bytes
        self.items = {}            # path -> item
        self.calls = []
        self.timestamp_updates = []
        self.chunks = []
        # name -> list of exceptions raised by successive uploads of that name
        self.upload_failures = {}
        self._ids = itertools.count(1)
        self._sessions = {}

    def _next_id(self):
        return f"item-{next(self._ids)}"

    @staticmethod
    def _join(parent_path, name):
        return f"{parent_path}/{name}" if parent_path else name

    def get_site(self, site_url):
        self.calls.append(("get_site", site_url))
        if site_url in self.missing_sites:
            raise NotFoundError(f"Site not found: {site_url}")
        return {"id": "site-1", "displayName": "Team"}

    def get_drive(self, site_id, library_name):
        self.calls.append(("get_drive", site_id, library_name))
        if library_name.lower() != self.library.lower():
            raise NotFoundError(f'Document library "{library_name}" not found')
        return {"id": "drive-1", "name": self.library}

    def get_root(self, drive_id):
        return {"id": "root", "folder": {}}

    def get_item_by_path(self, drive_id, item_path):
        self.calls.append(("get_item_by_path", item_path))
        return self.folders.get(item_path) or self.items.get(item_path)

    def create_folder(self, drive_id, parent_path, name, conflict_behavior="fail"):
        path = self._join(parent_path, name)
        self.calls.append(("create_folder", path))
        if path in self.folders and conflict_behavior == "fail":
            raise GraphAPIError("nameAlreadyExists", status_code=409)
        item = {"id": self._next_id(), "name": name, "folder": {}}
        self.folders[path] = item
        return item

    def _store(self, path, name, content, conflict_behavior):
        failures = self.upload_failures.get(name)
        if failures:
            raise failures.pop(0)
        if path in self.items and conflict_behavior == "fail":
            raise GraphAPIError("nameAlreadyExists", status_code=409)
        item = {
            "id": self.items.get(path, {}).get("id") or self._next_id(),
            "name": name,
            "file": {},
            "size": len(content),
            "lastModifiedDateTime": "2024-01-01T00:00:00Z",
        }
        self.files[path] = content
        self.items[path] = item
        return item

    def upload_small_file(self, drive_id, parent_path, name, content, conflict_behavior="replace"):
        path = self._join(parent_path, name)
        self.calls.append(("upload_small_file", path, conflict_behavior))
        return self._store(path, name, content, conflict_behavior)

    def create_upload_session(self, drive_id, parent_path, name, conflict_behavior="replace",
                              file_system_info=None):
        path = self._join(parent_path, name)
        self.calls.append(("create_upload_session", path, conflict_behavior, file_system_info))
        upload_url = f"https://upload.example/{path}"
        self._sessions[upload_url] = {"path": path, "name": name, "data": bytearray(),
                                      "conflict_behavior": conflict_behavior}
        return {"uploadUrl": upload_url}

    def upload_chunk(self, upload_url, chunk, range_start, range_end, total_size):
        self.chunks.append((range_start, range_end, total_size))
        session = self._sessions[upload_url]
        session["data"].extend(chunk)
        if range_end + 1 < total_size:
            return None
        return self._store(session["path"], session["name"], bytes(session["data"]),
                           session["conflict_behavior"])

    def update_file_system_info(self, drive_id, item_id, created_at, modified_at):
        self.timestamp_updates.append((item_id, created_at, modified_at))
        return {"id": item_id, "lastModifiedDateTime": modified_at}

    def uploaded_paths(self):
        return [call[1] for call in self.calls
                if call[0] in ("upload_small_file", "create_upload_session")]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def source_dir(temp_dir):
    """Source tree with a.txt (10 bytes) and b/c.txt (20 bytes)."""
    source = temp_dir / "source"
    (source / "b").mkdir(parents=True)
    (source / "a.txt").write_bytes(b"x" * 10)
    (source / "b" / "c.txt").write_bytes(b"y" * 20)
    return source


@pytest.fixture
def tracker(temp_dir):
    """Create a ledger in a temporary directory."""
    tracker = SyncTracker(str(temp_dir / "data"))
    yield tracker
    tracker.close()


@pytest.fixture
def fake_client():
    return FakeGraphClient()


def make_mapping(source, mapping_id="map-1", folder="Backup", filters=None, enabled=True):
    return SyncMapping(
        id=mapping_id,
        source=str(source),
        destination=SharePointDestination(
            site_url="https://contoso.sharepoint.com/sites/Team",
            library="Documents",
            folder=folder,
        ),
        filters=filters or FileFilters(),
        enabled=enabled,
    )


def make_tenant(mappings, tenant_id="contoso", **options):
    defaults = {"retry_delay_ms": 0, "max_concurrent_uploads": 1}
    defaults.update(options)
    return TenantConfig(
        id=tenant_id,
        name="Contoso",
        azure=AzureConfig(
            tenant_id="11111111-2222-3333-4444-555555555555",
            client_id="66666666-7777-8888-9999-000000000000",
            client_secret="super-secret-value",
        ),
        mappings=list(mappings),
        options=SyncOptions.from_dict(defaults),
    )
