"""Tests for the sync engine."""

import hashlib
from unittest.mock import Mock, patch

import pytest

from conftest import FakeGraphClient, make_mapping, make_tenant
from unocloud.auth import Authenticator
from unocloud.config import Config
from unocloud.exceptions import AuthError, StorageError, UploadError
from unocloud.models import FileFilters
from unocloud.sync_engine import SyncEngine
from unocloud.tenant_store import InMemoryConfigStore


class TestSyncEngine:
    """Test SyncEngine sync runs against an in-memory Graph client."""

    @pytest.fixture
    def mapping(self, source_dir):
        return make_mapping(source_dir)

    @pytest.fixture
    def tenant(self, mapping):
        return make_tenant([mapping])

    @pytest.fixture
    def engine(self, tenant, tracker, fake_client):
        return SyncEngine(
            InMemoryConfigStore([tenant]),
            tracker,
            authenticator=Mock(spec=Authenticator),
            client_factory=lambda t: fake_client,
            config=Config([]),
        )

    def test_first_sync_uploads_everything(self, engine, tenant, mapping, tracker, fake_client):
        """Test that a fresh mapping uploads every scanned file."""
        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "completed"
        assert job.files_total == 2
        assert job.files_processed == 2
        assert job.files_failed == 0
        assert job.bytes_total == 30
        assert job.bytes_transferred == 30
        assert job.errors == []
        assert sorted(fake_client.files) == ["Backup/a.txt", "Backup/b/c.txt"]

        record = tracker.get_synced_file("contoso", "map-1", "b/c.txt")
        assert record.status == "synced"
        assert record.remote_path == "Backup/b/c.txt"
        assert record.file_size == 20
        assert record.drive_item_id

    def test_second_sync_is_a_no_op(self, engine, tenant, mapping, fake_client):
        """Test that an unchanged tree uploads nothing the second time."""
        engine.sync_mapping(tenant, mapping)
        uploads_before = len(fake_client.uploaded_paths())

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "completed"
        assert job.files_total == 0
        assert job.files_processed == 0
        assert len(fake_client.uploaded_paths()) == uploads_before

    def test_changed_file_is_uploaded_again(self, engine, tenant, mapping, source_dir, fake_client):
        """Test that only a file whose content changed is uploaded."""
        engine.sync_mapping(tenant, mapping)
        (source_dir / "b" / "c.txt").write_bytes(b"z" * 25)
        fake_client.calls.clear()

        job = engine.sync_mapping(tenant, mapping)

        assert job.files_total == 1
        assert job.bytes_total == 25
        assert fake_client.uploaded_paths() == ["Backup/b/c.txt"]
        assert fake_client.files["Backup/b/c.txt"] == b"z" * 25

    def test_touched_file_with_same_content_is_skipped(self, engine, tenant, mapping, source_dir):
        """Test that change detection uses content, not timestamps."""
        engine.sync_mapping(tenant, mapping)
        path = source_dir / "a.txt"
        path.write_bytes(path.read_bytes())

        job = engine.sync_mapping(tenant, mapping)

        assert job.files_total == 0

    def test_partial_failure_completes_and_records_error(self, engine, tenant, mapping, tracker, fake_client):
        """Test that one failed file does not stop the rest of the batch."""
        fake_client.upload_failures["a.txt"] = [UploadError("disk on fire")] * 4

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "completed"
        assert job.files_processed == 1
        assert job.files_failed == 1
        assert len(job.errors) == 1
        assert job.errors[0].file_path == "a.txt"
        assert "disk on fire" in job.errors[0].error
        assert job.errors[0].retry_count == 3

        failed = tracker.get_synced_file("contoso", "map-1", "a.txt")
        assert failed.status == "failed"
        assert failed.error_message == "disk on fire"
        assert failed.file_hash == hashlib.sha256(b"x" * 10).hexdigest()
        assert failed.remote_path == ""
        assert failed.drive_item_id == ""
        assert tracker.get_synced_file("contoso", "map-1", "b/c.txt").status == "synced"

    def test_storage_error_fails_job_before_propagating(self, engine, tenant, mapping, tracker):
        """Test that a ledger failure mid-run still leaves the job with a final status."""
        with patch.object(tracker, "upsert_synced_file", side_effect=StorageError("database is locked")):
            with pytest.raises(StorageError, match="database is locked"):
                engine.sync_mapping(tenant, mapping)

        job = tracker.get_recent_jobs("contoso")[0]
        assert job.status == "failed"
        assert job.completed_at
        assert job.errors[0].file_path == mapping.source
        assert "database is locked" in job.errors[0].error

    def test_storage_error_propagates_when_job_cannot_be_closed(self, engine, tenant, mapping, tracker):
        with patch.object(tracker, "upsert_synced_file", side_effect=StorageError("disk full")), \
                patch.object(tracker, "complete_job", side_effect=StorageError("still full")):
            with pytest.raises(StorageError, match="disk full"):
                engine.sync_mapping(tenant, mapping)

    def test_failed_file_is_retried_on_next_run(self, engine, tenant, mapping, tracker, fake_client):
        """Test that a failed file is picked up again even though its content is unchanged."""
        fake_client.upload_failures["a.txt"] = [UploadError("timeout")] * 4
        engine.sync_mapping(tenant, mapping)
        fake_client.calls.clear()

        job = engine.sync_mapping(tenant, mapping)

        assert job.files_total == 1
        assert job.status == "completed"
        assert fake_client.uploaded_paths() == ["Backup/a.txt"]
        assert tracker.get_synced_file("contoso", "map-1", "a.txt").status == "synced"

    def test_transient_failure_is_retried_within_the_job(self, engine, tenant, mapping, fake_client):
        """Test that a retryable error succeeds on a later attempt."""
        fake_client.upload_failures["a.txt"] = [UploadError("blip")]

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "completed"
        assert job.files_processed == 2
        assert job.errors == []

    def test_all_files_failing_fails_the_job(self, engine, tenant, mapping, fake_client):
        """Test that a job with errors and nothing processed is failed."""
        fake_client.upload_failures["a.txt"] = [UploadError("nope")] * 4
        fake_client.upload_failures["c.txt"] = [UploadError("nope")] * 4

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "failed"
        assert job.files_processed == 0
        assert job.files_failed == 2

    def test_missing_site_fails_job_without_ledger_writes(self, engine, tenant, mapping, tracker, fake_client):
        """Test that a resolution failure becomes a job-level error."""
        fake_client.missing_sites.add(mapping.destination.site_url)

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "failed"
        assert len(job.errors) == 1
        assert job.errors[0].file_path == mapping.source
        assert "Site not found" in job.errors[0].error
        assert tracker.get_synced_files_for_mapping("contoso", "map-1") == []

    def test_missing_library_fails_job(self, engine, tenant, mapping, fake_client):
        """Test that an unknown document library fails the job."""
        fake_client.library = "Shared Documents"

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "failed"
        assert 'Document library "Documents" not found' in job.errors[0].error

    def test_missing_source_fails_job(self, engine, tenant, temp_dir):
        """Test that a missing source directory fails the job."""
        mapping = make_mapping(temp_dir / "nonexistent")

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "failed"
        assert "does not exist" in job.errors[0].error

    def test_auth_failure_aborts_job(self, engine, tenant, mapping, tracker, fake_client):
        """Test that an authentication failure stops the remaining uploads."""
        fake_client.upload_failures["a.txt"] = [AuthError("token expired")]

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "failed"
        assert len(job.errors) == 1
        assert job.errors[0].file_path == mapping.source
        assert "token expired" in job.errors[0].error
        assert fake_client.uploaded_paths() == ["Backup/a.txt"]
        assert tracker.get_synced_files_for_mapping("contoso", "map-1") == []

    def test_cancel_skips_files_not_yet_started(self, engine, tenant, mapping, tracker):
        """Test that cancelling lets the in-flight upload finish and skips the rest."""
        def on_progress(progress):
            if progress.phase == "uploading" and progress.current_file:
                engine.cancel(progress.job.id)

        job = engine.sync_mapping(tenant, mapping, on_progress=on_progress)

        assert job.status == "cancelled"
        assert job.files_processed == 1
        synced = tracker.get_synced_files_for_mapping("contoso", "map-1")
        assert [f.local_path for f in synced] == ["a.txt"]

    def test_cancel_unknown_job(self, engine):
        """Test that cancelling a job that is not running returns False."""
        assert engine.cancel("job_0_missing") is False

    def test_progress_phases(self, engine, tenant, mapping):
        """Test that progress goes scanning -> uploading -> complete."""
        events = []
        engine.sync_mapping(tenant, mapping, on_progress=events.append)

        phases = [e.phase for e in events]
        assert phases[0] == "scanning"
        assert "uploading" in phases
        assert phases[-1] == "complete"
        assert phases.index("uploading") > max(i for i, p in enumerate(phases) if p == "scanning")
        assert events[-1].job.status == "completed"

    def test_error_phase_on_failure(self, engine, tenant, mapping, fake_client):
        """Test that a failed job reports the error phase."""
        fake_client.missing_sites.add(mapping.destination.site_url)
        events = []

        engine.sync_mapping(tenant, mapping, on_progress=events.append)

        assert events[-1].phase == "error"

    def test_flat_destination_when_structure_not_preserved(self, tracker, source_dir, fake_client):
        """Test that files land directly in the destination folder."""
        mapping = make_mapping(source_dir)
        tenant = make_tenant([mapping], preserve_folder_structure=False)
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))

        engine.sync_mapping(tenant, mapping)

        assert sorted(fake_client.files) == ["Backup/a.txt", "Backup/c.txt"]
        assert "Backup/b" not in fake_client.folders

    def test_long_folder_name_maps_to_one_remote_folder(self, tracker, temp_dir, fake_client):
        """Test that a truncated folder name is the same whether or not it has subfolders."""
        long_dir = temp_dir / "src" / ("d" * 210 + ".x")
        (long_dir / "sub").mkdir(parents=True)
        (long_dir / "a.txt").write_bytes(b"a")
        (long_dir / "sub" / "b.txt").write_bytes(b"b")
        mapping = make_mapping(temp_dir / "src")
        tenant = make_tenant([mapping])
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "completed"
        top_level = {path.split("/")[1] for path in fake_client.files}
        assert top_level == {"d" * 200}
        assert sorted(fake_client.files) == [f"Backup/{'d' * 200}/a.txt", f"Backup/{'d' * 200}/sub/b.txt"]

    def test_root_destination_creates_no_folder(self, tracker, source_dir, fake_client):
        """Test that an empty destination folder uploads into the library root."""
        mapping = make_mapping(source_dir, folder="")
        tenant = make_tenant([mapping])
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))

        engine.sync_mapping(tenant, mapping)

        assert sorted(fake_client.files) == ["a.txt", "b/c.txt"]
        assert list(fake_client.folders) == ["b"]

    def test_preserve_timestamps_patches_small_files(self, engine, tenant, mapping, fake_client):
        """Test that small uploads get their timestamps set afterwards."""
        engine.sync_mapping(tenant, mapping)

        assert len(fake_client.timestamp_updates) == 2

    def test_timestamps_not_touched_when_disabled(self, tracker, source_dir, fake_client):
        mapping = make_mapping(source_dir)
        tenant = make_tenant([mapping], preserve_timestamps=False)
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))

        engine.sync_mapping(tenant, mapping)

        assert fake_client.timestamp_updates == []

    def test_skip_conflict_policy_records_failure_without_retry(self, tracker, source_dir, fake_client):
        """Test that an existing remote file is left alone under the skip policy."""
        mapping = make_mapping(source_dir)
        tenant = make_tenant([mapping], conflict_resolution="skip")
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))
        fake_client.items["Backup/a.txt"] = {"id": "existing", "file": {}}
        fake_client.files["Backup/a.txt"] = b"remote"

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "completed"
        assert job.files_failed == 1
        assert job.errors[0].file_path == "a.txt"
        assert job.errors[0].retry_count == 0
        assert fake_client.files["Backup/a.txt"] == b"remote"
        assert ("upload_small_file", "Backup/a.txt", "fail") in fake_client.calls

    def test_full_mode_uploads_unchanged_files(self, tracker, source_dir, fake_client):
        """Test that full mode ignores the ledger when choosing files."""
        mapping = make_mapping(source_dir)
        tenant = make_tenant([mapping], mode="full")
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))
        engine.sync_mapping(tenant, mapping)

        job = engine.sync_mapping(tenant, mapping)

        assert job.files_total == 2
        assert len(fake_client.uploaded_paths()) == 4

    def test_deleted_local_file_is_marked_in_ledger(self, engine, tenant, mapping, source_dir, tracker, fake_client):
        """Test that a vanished file is marked deleted and the remote copy is kept."""
        engine.sync_mapping(tenant, mapping)
        (source_dir / "a.txt").unlink()

        engine.sync_mapping(tenant, mapping)

        assert tracker.get_synced_file("contoso", "map-1", "a.txt").status == "deleted"
        assert "Backup/a.txt" in fake_client.files

    def test_filters_limit_the_upload(self, tracker, source_dir, fake_client):
        mapping = make_mapping(source_dir, filters=FileFilters(exclude=["b"]))
        tenant = make_tenant([mapping])
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))

        job = engine.sync_mapping(tenant, mapping)

        assert job.files_total == 1
        assert list(fake_client.files) == ["Backup/a.txt"]

    def test_parallel_workers_upload_everything(self, tracker, source_dir, fake_client):
        """Test a multi-worker run with several files in a shared new folder."""
        for i in range(8):
            (source_dir / "b" / f"extra{i}.txt").write_text(f"content {i}")
        mapping = make_mapping(source_dir)
        tenant = make_tenant([mapping], max_concurrent_uploads=4)
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))

        job = engine.sync_mapping(tenant, mapping)

        assert job.status == "completed"
        assert job.files_processed == 10
        assert [c for c in fake_client.calls if c == ("create_folder", "Backup/b")] == [("create_folder", "Backup/b")]


class TestSyncEngineDryRun:
    """Test dry runs."""

    def test_dry_run_reports_without_side_effects(self, source_dir, tracker):
        """Test the a.txt/b/c.txt dry run against an empty ledger."""
        mapping = make_mapping(source_dir)
        tenant = make_tenant([mapping])
        client_factory = Mock()
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=client_factory, config=Config([]))

        result = engine.dry_run(tenant, mapping)

        assert sorted(f.relative_path for f in result.to_sync) == ["a.txt", "b/c.txt"]
        assert result.up_to_date == 0
        assert result.total_size == 30
        client_factory.assert_not_called()
        assert tracker.get_synced_files_for_mapping("contoso", "map-1") == []
        assert tracker.get_recent_jobs("contoso") == []

    def test_dry_run_after_sync(self, source_dir, tracker):
        mapping = make_mapping(source_dir)
        tenant = make_tenant([mapping])
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: FakeGraphClient(), config=Config([]))
        engine.sync_mapping(tenant, mapping)
        (source_dir / "a.txt").write_bytes(b"changed!")

        result = engine.dry_run(tenant, mapping)

        assert [f.relative_path for f in result.to_sync] == ["a.txt"]
        assert result.up_to_date == 1
        assert result.total_size == 8


class TestSyncEngineTenants:
    """Test tenant-level runs."""

    def test_sync_tenant_skips_disabled_mappings(self, temp_dir, source_dir, tracker, fake_client):
        other = temp_dir / "other"
        other.mkdir()
        (other / "d.txt").write_text("d")
        enabled = make_mapping(source_dir, mapping_id="map-1")
        disabled = make_mapping(other, mapping_id="map-2", enabled=False)
        tenant = make_tenant([enabled, disabled])
        engine = SyncEngine(InMemoryConfigStore([tenant]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))

        jobs = engine.sync_tenant(tenant)

        assert [job.mapping_id for job in jobs] == ["map-1"]

    def test_sync_all_runs_every_tenant(self, temp_dir, source_dir, tracker):
        first = make_tenant([make_mapping(source_dir)], tenant_id="contoso")
        second = make_tenant([make_mapping(source_dir, mapping_id="map-9")], tenant_id="fabrikam")
        clients = {}

        def client_factory(tenant):
            return clients.setdefault(tenant.id, FakeGraphClient())

        engine = SyncEngine(InMemoryConfigStore([first, second]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=client_factory, config=Config([]))

        results = engine.sync_all()

        assert set(results) == {"contoso", "fabrikam"}
        assert all(jobs[0].status == "completed" for jobs in results.values())
        assert len(clients["fabrikam"].files) == 2

    def test_ledgers_are_scoped_per_tenant(self, source_dir, tracker, fake_client):
        """Test that the same mapping id in two tenants keeps separate records."""
        mapping = make_mapping(source_dir)
        first = make_tenant([mapping], tenant_id="contoso")
        second = make_tenant([mapping], tenant_id="fabrikam")
        engine = SyncEngine(InMemoryConfigStore([first, second]), tracker,
                            authenticator=Mock(spec=Authenticator),
                            client_factory=lambda t: fake_client, config=Config([]))
        engine.sync_mapping(first, mapping)

        job = engine.sync_mapping(second, mapping)

        assert job.files_total == 2
