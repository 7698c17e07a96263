# -*- coding: utf-8 -*-
"""
UnoCloud Sync Package
=====================

This package mirrors local directories into SharePoint document libraries for
one or more Microsoft 365 tenants, uploading only files whose content digest
has changed since the last successful sync.

Modules:
--------
- config: Configuration, environment and SharePoint limits
- models: Scan inventory, ledger records, jobs and tenant configuration
- exceptions: Error types raised across the package
- auth: Microsoft authentication with a per-tenant token cache
- graph_api: Microsoft Graph API operations
- file_handler: File operations (hashing, sanitization, filtering)
- scanner: Source directory scanning
- tracker: SQLite ledger of synced files and sync jobs
- uploader: Upload operations and folder management
- parallel_uploader: Bounded worker pool with retries
- sync_engine: Sync orchestration per tenant and mapping
- tenant_store: Tenant and mapping configuration storage
- monitoring: Rate limiting monitoring and statistics tracking
- utils: Shared utility functions

Usage Example:
-------------
    from unocloud import JsonConfigStore, SyncEngine, SyncTracker

    store = JsonConfigStore('.unocloud')
    tracker = SyncTracker('.unocloud/data')
    engine = SyncEngine(store, tracker)
    jobs = engine.sync_tenant(store.require('contoso'))
"""

__version__ = "1.0.0"
__author__ = "UnoCloud"

# Main exports for convenience
from .config import parse_config, Config
from .exceptions import (
    UnoCloudError,
    AuthError,
    GraphAPIError,
    NotFoundError,
    PathError,
    StorageError,
    UploadError,
)
from .auth import Authenticator, acquire_token
from .graph_api import GraphClient
from .scanner import FileScanner
from .tracker import SyncTracker
from .sync_engine import SyncEngine
from .tenant_store import ConfigStore, InMemoryConfigStore, JsonConfigStore
from .uploader import ensure_folder_exists, upload_file, upload_local_file
from .file_handler import calculate_file_hash, sanitize_sharepoint_name
from .utils import is_debug_metadata_enabled, is_debug_enabled

__all__ = [
    # Configuration
    'parse_config',
    'Config',
    # Errors
    'UnoCloudError',
    'AuthError',
    'GraphAPIError',
    'NotFoundError',
    'PathError',
    'StorageError',
    'UploadError',
    # Authentication
    'Authenticator',
    'acquire_token',
    # Graph API
    'GraphClient',
    # Sync
    'FileScanner',
    'SyncTracker',
    'SyncEngine',
    # Tenant configuration
    'ConfigStore',
    'InMemoryConfigStore',
    'JsonConfigStore',
    # Upload Operations
    'ensure_folder_exists',
    'upload_file',
    'upload_local_file',
    # File Operations
    'calculate_file_hash',
    'sanitize_sharepoint_name',
    # Utilities
    'is_debug_metadata_enabled',
    'is_debug_enabled',
]
