# -*- coding: utf-8 -*-
"""
Tenant configuration storage for UnoCloud sync.

ConfigStore is the keyed store (get/put/delete/list) the sync engine reads
tenants and mappings from. JsonConfigStore keeps them in a tenants.json file
that is rewritten atomically on every change.
"""

import json
import os
import re
import tempfile
import threading
import uuid
from .config import DEFAULT_SYNC_OPTIONS, TENANTS_FILE
from .exceptions import NotFoundError, StorageError
from .models import FileFilters, SyncMapping, SyncOptions, TenantConfig
from .utils import is_debug_enabled, utc_now_iso

GUID_PATTERN = re.compile(r'^[0-9a-f-]{36}$', re.IGNORECASE)


def slugify(name):
    """
    Derive a tenant id from its display name.

    Examples:
        >>> slugify('Contoso Ltd.')
        'contoso-ltd'
    """
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    if not slug:
        raise ValueError(f"Cannot derive a tenant id from name '{name}'")
    return slug


def validate_azure_config(azure):
    """
    Check an app registration's credentials for obvious mistakes.

    Returns:
        list: Human-readable problems, empty when the config looks valid
    """
    errors = []
    if not azure.tenant_id or not GUID_PATTERN.match(azure.tenant_id):
        errors.append('Invalid tenant ID format (expected GUID)')
    if not azure.client_id or not GUID_PATTERN.match(azure.client_id):
        errors.append('Invalid client ID format (expected GUID)')
    if not azure.client_secret or len(azure.client_secret) < 10:
        errors.append('Client secret is required and must be at least 10 characters')
    return errors


class ConfigStore:
    """
    Keyed store of TenantConfig records.

    Subclasses implement get/put/delete/list; the helpers below are built on
    those four operations only.
    """

    def get(self, tenant_id):
        """Return the TenantConfig, or None if unknown."""
        raise NotImplementedError

    def put(self, tenant):
        """Insert or replace a tenant (keyed by tenant.id)."""
        raise NotImplementedError

    def delete(self, tenant_id):
        """Remove a tenant; returns True if it existed."""
        raise NotImplementedError

    def list(self):
        """All tenants, in insertion order."""
        raise NotImplementedError

    def get_all_tenants(self):
        return self.list()

    def require(self, tenant_id):
        """
        Return a tenant or raise.

        Raises:
            NotFoundError: If the tenant is not configured
        """
        tenant = self.get(tenant_id)
        if tenant is None:
            raise NotFoundError(f'Tenant "{tenant_id}" not found')
        return tenant

    def get_mapping(self, tenant_id, mapping_id):
        tenant = self.get(tenant_id)
        return tenant.get_mapping(mapping_id) if tenant else None

    def add_tenant(self, name, azure, options=None):
        """
        Create a tenant whose id is the slug of its name.

        Raises:
            ValueError: If a tenant with the same id exists
        """
        tenant_id = slugify(name)
        if self.get(tenant_id) is not None:
            raise ValueError(f'Tenant with ID "{tenant_id}" already exists')

        now = utc_now_iso()
        merged_options = dict(DEFAULT_SYNC_OPTIONS)
        merged_options.update(options or {})
        tenant = TenantConfig(
            id=tenant_id,
            name=name,
            azure=azure,
            mappings=[],
            options=SyncOptions.from_dict(merged_options),
            created_at=now,
            updated_at=now,
        )
        self.put(tenant)
        print(f"[+] Added tenant: {name} ({tenant_id})")
        return tenant

    def add_mapping(self, tenant_id, source, destination, filters=None):
        """
        Add a mapping with a fresh uuid4 id; the source path is stored absolute.

        Raises:
            NotFoundError: If the tenant is not configured
            ValueError: If the tenant already maps the same source
        """
        tenant = self.require(tenant_id)
        source = os.path.abspath(source)
        if any(os.path.abspath(m.source) == source for m in tenant.mappings):
            raise ValueError(f'Mapping for source "{source}" already exists')

        mapping = SyncMapping(
            id=str(uuid.uuid4()),
            source=source,
            destination=destination,
            filters=filters or FileFilters(),
            enabled=True,
        )
        tenant.mappings.append(mapping)
        self.put(tenant)
        print(f"[+] Added mapping for tenant {tenant_id}: {source} -> {destination.site_url}")
        return mapping

    def remove_mapping(self, tenant_id, mapping_id):
        tenant = self.require(tenant_id)
        remaining = [m for m in tenant.mappings if m.id != mapping_id]
        if len(remaining) == len(tenant.mappings):
            return False
        tenant.mappings = remaining
        self.put(tenant)
        return True

    def set_mapping_enabled(self, tenant_id, mapping_id, enabled):
        tenant = self.require(tenant_id)
        mapping = tenant.get_mapping(mapping_id)
        if mapping is None:
            raise NotFoundError(f'Mapping "{mapping_id}" not found')
        mapping.enabled = enabled
        self.put(tenant)
        return mapping


class InMemoryConfigStore(ConfigStore):
    """ConfigStore kept in a dict, for embedding hosts and tests."""

    def __init__(self, tenants=None):
        self._tenants = {}
        self._lock = threading.Lock()
        for tenant in tenants or []:
            self._tenants[tenant.id] = tenant

    def get(self, tenant_id):
        with self._lock:
            return self._tenants.get(tenant_id)

    def put(self, tenant):
        tenant.updated_at = utc_now_iso()
        if not tenant.created_at:
            tenant.created_at = tenant.updated_at
        with self._lock:
            self._tenants[tenant.id] = tenant

    def delete(self, tenant_id):
        with self._lock:
            return self._tenants.pop(tenant_id, None) is not None

    def list(self):
        with self._lock:
            return list(self._tenants.values())


class JsonConfigStore(InMemoryConfigStore):
    """
    ConfigStore persisted as a JSON array in <config_dir>/tenants.json.

    Every change rewrites the whole file through a temporary file and
    os.replace(), so readers never see a half-written document. Client
    secrets are stored as given.
    """

    def __init__(self, config_dir=None, tenants_file=TENANTS_FILE):
        """
        Raises:
            StorageError: If the directory cannot be created or the file cannot be parsed
        """
        super().__init__()
        self.config_dir = config_dir or os.path.join(os.getcwd(), '.unocloud')
        self.tenants_path = os.path.join(self.config_dir, tenants_file)

        try:
            os.makedirs(self.config_dir, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create config directory {self.config_dir}: {e}") from e

        self._load()

    def _load(self):
        if not os.path.exists(self.tenants_path):
            return
        try:
            with open(self.tenants_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            tenants = [TenantConfig.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Failed to load tenant configuration {self.tenants_path}: {e}") from e

        for tenant in tenants:
            self._tenants[tenant.id] = tenant
        if is_debug_enabled():
            print(f"[DEBUG] Loaded {len(tenants)} tenant(s) from {self.tenants_path}")

    def _save(self):
        payload = [tenant.to_dict() for tenant in self._tenants.values()]
        fd, temp_path = tempfile.mkstemp(dir=self.config_dir, prefix='.tenants-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2)
            os.replace(temp_path, self.tenants_path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise StorageError(f"Failed to save tenant configuration {self.tenants_path}: {e}") from e

    def put(self, tenant):
        tenant.updated_at = utc_now_iso()
        if not tenant.created_at:
            tenant.created_at = tenant.updated_at
        with self._lock:
            self._tenants[tenant.id] = tenant
            self._save()

    def delete(self, tenant_id):
        with self._lock:
            if tenant_id not in self._tenants:
                return False
            del self._tenants[tenant_id]
            self._save()
            return True
