# -*- coding: utf-8 -*-
"""
Data model for UnoCloud sync.

Plain dataclasses for the scan inventory, ledger records, sync jobs and the
tenant/mapping configuration consumed by the engine. Persisted types provide
to_dict()/from_dict() for JSON and database round trips.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .config import DEFAULT_SYNC_OPTIONS


# Ledger record status
STATUS_PENDING = 'pending'
STATUS_SYNCING = 'syncing'
STATUS_SYNCED = 'synced'
STATUS_FAILED = 'failed'
STATUS_DELETED = 'deleted'
FILE_STATUSES = (STATUS_PENDING, STATUS_SYNCING, STATUS_SYNCED, STATUS_FAILED, STATUS_DELETED)

# Job status
JOB_PENDING = 'pending'
JOB_RUNNING = 'running'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'
JOB_CANCELLED = 'cancelled'
JOB_STATUSES = (JOB_PENDING, JOB_RUNNING, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

# Progress phases
PHASE_SCANNING = 'scanning'
PHASE_UPLOADING = 'uploading'
PHASE_COMPLETE = 'complete'
PHASE_ERROR = 'error'


# ============================================================================
# File scanning
# ============================================================================

@dataclass
class ScannedFile:
    """A file or directory discovered by a scan. Never persisted."""

    path: str
    relative_path: str
    name: str
    size: int
    hash: str
    created_at: datetime
    modified_at: datetime
    is_directory: bool = False


@dataclass
class ScanResult:
    """Inventory produced by one scan of a mapping's source directory."""

    mapping_id: str
    source_path: str
    files: list = field(default_factory=list)
    directories: list = field(default_factory=list)
    total_size: int = 0
    scanned_at: Optional[datetime] = None


# ============================================================================
# Sync tracking
# ============================================================================

@dataclass
class SyncedFile:
    """Ledger record for one (tenant, mapping, local path)."""

    tenant_id: str
    mapping_id: str
    local_path: str
    remote_path: str = ""
    drive_item_id: str = ""
    file_hash: str = ""
    file_size: int = 0
    local_modified_at: str = ""
    remote_modified_at: str = ""
    synced_at: str = ""
    status: str = STATUS_PENDING
    error_message: Optional[str] = None
    id: Optional[int] = None


@dataclass
class SyncError:
    """One failed file (or a job-level failure) recorded on a job."""

    file_path: str
    error: str
    timestamp: str
    retry_count: int = 0

    def to_dict(self):
        return {
            'file_path': self.file_path,
            'error': self.error,
            'timestamp': self.timestamp,
            'retry_count': self.retry_count,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            file_path=data.get('file_path', ''),
            error=data.get('error', ''),
            timestamp=data.get('timestamp', ''),
            retry_count=int(data.get('retry_count', 0)),
        )


@dataclass
class SyncJob:
    """One sync run for a tenant (and optionally a single mapping)."""

    id: str
    tenant_id: str
    mapping_id: Optional[str] = None
    status: str = JOB_PENDING
    started_at: str = ""
    completed_at: Optional[str] = None
    files_total: int = 0
    files_processed: int = 0
    files_failed: int = 0
    bytes_total: int = 0
    bytes_transferred: int = 0
    errors: list = field(default_factory=list)

    @property
    def is_finished(self):
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class SyncProgress:
    """Progress event handed to presentation layers."""

    job: SyncJob
    phase: str
    current_file: Optional[str] = None


@dataclass
class DryRunResult:
    """Outcome of a dry run: what a real sync would upload."""

    to_sync: list = field(default_factory=list)
    up_to_date: int = 0
    total_size: int = 0


# ============================================================================
# Tenant configuration (owned by the ConfigStore, read-only to the engine)
# ============================================================================

@dataclass
class SharePointDestination:
    site_url: str
    library: str
    folder: str = ""

    def to_dict(self):
        return {'site_url': self.site_url, 'library': self.library, 'folder': self.folder}

    @classmethod
    def from_dict(cls, data):
        return cls(
            site_url=data['site_url'],
            library=data['library'],
            folder=data.get('folder') or "",
        )


@dataclass
class FileFilters:
    """Include/exclude glob patterns and size bounds (bytes) for a mapping."""

    include: list = field(default_factory=list)
    exclude: list = field(default_factory=list)
    min_file_size: Optional[int] = None
    max_file_size: Optional[int] = None

    def to_dict(self):
        return {
            'include': list(self.include),
            'exclude': list(self.exclude),
            'min_file_size': self.min_file_size,
            'max_file_size': self.max_file_size,
        }

    @classmethod
    def from_dict(cls, data):
        if not data:
            return cls()
        return cls(
            include=list(data.get('include') or []),
            exclude=list(data.get('exclude') or []),
            min_file_size=data.get('min_file_size'),
            max_file_size=data.get('max_file_size'),
        )


@dataclass
class SyncMapping:
    """Pairing of one local source directory with one SharePoint destination."""

    id: str
    source: str
    destination: SharePointDestination
    filters: FileFilters = field(default_factory=FileFilters)
    enabled: bool = True

    def to_dict(self):
        return {
            'id': self.id,
            'source': self.source,
            'destination': self.destination.to_dict(),
            'filters': self.filters.to_dict(),
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data['id'],
            source=data['source'],
            destination=SharePointDestination.from_dict(data['destination']),
            filters=FileFilters.from_dict(data.get('filters')),
            enabled=data.get('enabled', True),
        )


@dataclass
class SyncOptions:
    """
    Per-tenant sync behaviour.

    mode: 'incremental' uploads new/changed/failed files only, 'full' uploads
        every scanned file
    conflict_resolution: what happens when the remote file already exists,
        'overwrite' replaces it, 'rename' keeps both, 'skip' leaves the remote
        file untouched and records the attempt as failed
    """

    mode: str = DEFAULT_SYNC_OPTIONS['mode']
    preserve_timestamps: bool = DEFAULT_SYNC_OPTIONS['preserve_timestamps']
    preserve_folder_structure: bool = DEFAULT_SYNC_OPTIONS['preserve_folder_structure']
    conflict_resolution: str = DEFAULT_SYNC_OPTIONS['conflict_resolution']
    max_concurrent_uploads: int = DEFAULT_SYNC_OPTIONS['max_concurrent_uploads']
    retry_attempts: int = DEFAULT_SYNC_OPTIONS['retry_attempts']
    retry_delay_ms: int = DEFAULT_SYNC_OPTIONS['retry_delay_ms']

    def to_dict(self):
        return {
            'mode': self.mode,
            'preserve_timestamps': self.preserve_timestamps,
            'preserve_folder_structure': self.preserve_folder_structure,
            'conflict_resolution': self.conflict_resolution,
            'max_concurrent_uploads': self.max_concurrent_uploads,
            'retry_attempts': self.retry_attempts,
            'retry_delay_ms': self.retry_delay_ms,
        }

    @classmethod
    def from_dict(cls, data):
        merged = dict(DEFAULT_SYNC_OPTIONS)
        merged.update({k: v for k, v in (data or {}).items() if k in DEFAULT_SYNC_OPTIONS})
        return cls(**merged)


@dataclass
class AzureConfig:
    tenant_id: str
    client_id: str
    client_secret: str

    def to_dict(self):
        return {
            'tenant_id': self.tenant_id,
            'client_id': self.client_id,
            'client_secret': self.client_secret,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            tenant_id=data['tenant_id'],
            client_id=data['client_id'],
            client_secret=data['client_secret'],
        )


@dataclass
class TenantConfig:
    id: str
    name: str
    azure: AzureConfig
    mappings: list = field(default_factory=list)
    options: SyncOptions = field(default_factory=SyncOptions)
    created_at: str = ""
    updated_at: str = ""

    @property
    def enabled_mappings(self):
        return [m for m in self.mappings if m.enabled]

    def get_mapping(self, mapping_id):
        for mapping in self.mappings:
            if mapping.id == mapping_id:
                return mapping
        return None

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'azure': self.azure.to_dict(),
            'mappings': [m.to_dict() for m in self.mappings],
            'options': self.options.to_dict(),
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            azure=AzureConfig.from_dict(data['azure']),
            mappings=[SyncMapping.from_dict(m) for m in data.get('mappings', [])],
            options=SyncOptions.from_dict(data.get('options')),
            created_at=data.get('created_at', ''),
            updated_at=data.get('updated_at', ''),
        )
