# -*- coding: utf-8 -*-
"""
Configuration management for UnoCloud sync.

This module handles command-line argument parsing, environment configuration
(optionally loaded from a .env file) and the fixed SharePoint/Graph limits.
"""

import os
import sys
from dotenv import load_dotenv

# Load environment variables from .env if present
load_dotenv()


# SharePoint limits
MAX_FILE_SIZE = 250 * 1024 * 1024 * 1024   # 250 GB, Graph upload session maximum
MAX_PATH_LENGTH = 400
MAX_NAME_LENGTH = 200                       # Leaves room for the folder path
CHUNK_SIZE = 10 * 1024 * 1024               # 10 MiB, a multiple of 320 KiB
SMALL_FILE_THRESHOLD = 4 * 1024 * 1024      # Files up to 4 MiB use a single PUT

# Invalid characters in SharePoint file/folder names
INVALID_CHARS = ['~', '#', '%', '&', '*', '{', '}', '\\', ':', '<', '>', '?', '/', '|', '"']

# Reserved names in SharePoint (device names also match with an extension)
RESERVED_DEVICE_NAMES = [
    'CON', 'PRN', 'AUX', 'NUL',
    'COM0', 'COM1', 'COM2', 'COM3', 'COM4', 'COM5', 'COM6', 'COM7', 'COM8', 'COM9',
    'LPT0', 'LPT1', 'LPT2', 'LPT3', 'LPT4', 'LPT5', 'LPT6', 'LPT7', 'LPT8', 'LPT9',
]
RESERVED_SYSTEM_NAMES = ['.lock', '_vti_', 'desktop.ini']

# Graph API retry limits
MAX_RETRY_DELAY_MS = 30000

# Default per-tenant sync options
DEFAULT_SYNC_OPTIONS = {
    'mode': 'incremental',
    'preserve_timestamps': True,
    'preserve_folder_structure': True,
    'conflict_resolution': 'overwrite',
    'max_concurrent_uploads': 3,
    'retry_attempts': 3,
    'retry_delay_ms': 1000,
}

SUPPORTED_HASH_ALGORITHMS = ('sha256', 'xxh128')

COMMANDS = ('run', 'dry-run', 'status', 'clear')

DB_FILE = 'unocloud.db'
TENANTS_FILE = 'tenants.json'


def _env_bool(name, default):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Configuration for UnoCloud sync operations"""

    def __init__(self, argv=None):
        """
        Parse command-line arguments and environment into a configuration.

        Arguments are positional, in the following order:
        1. command - 'run', 'dry-run', 'status' or 'clear'
        2. tenant_id - Tenant to sync, or 'all' for every configured tenant
        3. mapping_id (optional) - Restrict the run to one mapping
        4. failed_only (optional) - 'true' to clear only failed ledger records

        Environment variables (a .env file in the working directory is honoured):
        - UNOCLOUD_CONFIG_DIR - Tenant configuration directory (default: .unocloud)
        - UNOCLOUD_DATA_DIR - Ledger directory (default: .unocloud/data)
        - LOGIN_ENDPOINT - Azure AD endpoint (default: login.microsoftonline.com)
        - GRAPH_ENDPOINT - Graph API endpoint (default: graph.microsoft.com)
        - REQUEST_TIMEOUT - Seconds per HTTP request (default: 300)
        - MAX_RETRY - Retries for throttled/failed Graph requests (default: 3)
        - HASH_ALGORITHM - 'sha256' or 'xxh128' (default: sha256)
        - DEBUG / DEBUG_METADATA - Verbose output toggles (default: false)

        Args:
            argv (list, optional): Argument vector, defaults to sys.argv
        """
        argv = sys.argv if argv is None else argv

        self.command = argv[1] if len(argv) > 1 and argv[1] else 'run'
        self.tenant_id = argv[2] if len(argv) > 2 and argv[2] else 'all'
        self.mapping_id = argv[3] if len(argv) > 3 and argv[3] else None
        self.failed_only = len(argv) > 4 and argv[4].lower() == 'true'

        self.config_dir = os.environ.get('UNOCLOUD_CONFIG_DIR', '.unocloud')
        self.data_dir = os.environ.get('UNOCLOUD_DATA_DIR', os.path.join(self.config_dir, 'data'))
        self.login_endpoint = os.environ.get('LOGIN_ENDPOINT') or 'login.microsoftonline.com'
        self.graph_endpoint = os.environ.get('GRAPH_ENDPOINT') or 'graph.microsoft.com'
        self.request_timeout = int(os.environ.get('REQUEST_TIMEOUT') or 300)
        self.max_retry = int(os.environ.get('MAX_RETRY') or 3)
        self.hash_algorithm = (os.environ.get('HASH_ALGORITHM') or 'sha256').lower()

        self.debug = _env_bool('DEBUG', 'false')
        self.debug_metadata = _env_bool('DEBUG_METADATA', 'false')

    @property
    def dry_run(self):
        return self.command == 'dry-run'

    def validate(self):
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.command not in COMMANDS:
            raise ValueError(f"Unknown command: {self.command}")
        if not self.tenant_id:
            raise ValueError("tenant_id cannot be empty")
        if self.tenant_id == 'all' and self.mapping_id:
            raise ValueError("mapping_id requires a specific tenant_id")
        if self.tenant_id == 'all' and self.command == 'clear':
            raise ValueError("'clear' requires a specific tenant_id")
        if self.request_timeout <= 0:
            raise ValueError("REQUEST_TIMEOUT must be positive")
        if self.max_retry < 0:
            raise ValueError("MAX_RETRY must be non-negative")
        if self.hash_algorithm not in SUPPORTED_HASH_ALGORITHMS:
            raise ValueError(
                f"HASH_ALGORITHM must be one of {', '.join(SUPPORTED_HASH_ALGORITHMS)}"
            )


def parse_config(argv=None):
    """
    Parse configuration from command-line arguments and environment.

    Returns:
        Config: Configured Config object

    Raises:
        ValueError: If configuration is invalid
    """
    config = Config(argv)
    config.validate()
    return config
