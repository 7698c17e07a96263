# -*- coding: utf-8 -*-
"""
Shared utility functions for UnoCloud sync operations.

This module provides common helper functions used across multiple modules.
"""

import os
from datetime import datetime, timezone


def is_debug_metadata_enabled():
    """
    Check if debug metadata mode is enabled via DEBUG_METADATA environment variable.

    This is for detailed Graph API debugging: request URLs, response bodies
    and throttling headers.

    Returns:
        bool: True if debug metadata mode is enabled, False otherwise
    """
    return os.environ.get('DEBUG_METADATA', 'false').lower() == 'true'


def is_debug_enabled():
    """
    Check if general debug mode is enabled via DEBUG environment variable.

    This controls individual file operation messages, folder operations, hash
    comparisons and other verbose sync details. It does not affect:
    - Scan and job summaries
    - Error messages
    - DEBUG_METADATA output (separate control)

    Returns:
        bool: True if general debug mode is enabled, False otherwise
    """
    return os.environ.get('DEBUG', 'false').lower() == 'true'


def utc_now_iso():
    """Current UTC time as an ISO-8601 string (the ledger's timestamp format)."""
    return datetime.now(timezone.utc).isoformat()


def to_iso(value):
    """
    Convert a datetime (or an already formatted string) to ISO-8601.

    Args:
        value (datetime | str | None): Timestamp to convert

    Returns:
        str: ISO-8601 string, or "" when value is empty
    """
    if not value:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def to_posix_path(path):
    """
    Normalize a relative path to forward slashes without leading/trailing separators.

    Examples:
        >>> to_posix_path('docs\\\\api\\\\README.md')
        'docs/api/README.md'
        >>> to_posix_path('/Reports/2024/')
        'Reports/2024'
    """
    if not path:
        return ""
    parts = [part for part in path.replace('\\', '/').split('/') if part and part != '.']
    return '/'.join(parts)


def join_remote_path(*parts):
    """Join remote path fragments with '/', skipping empty fragments."""
    return to_posix_path('/'.join(p for p in parts if p))
