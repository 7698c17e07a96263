# -*- coding: utf-8 -*-
"""
File handling operations for UnoCloud sync.

This module provides functions for name sanitization, content hashing and
include/exclude filtering of local files.
"""

import os
import string
import fnmatch
import hashlib
import posixpath
import xxhash
from .config import (
    INVALID_CHARS,
    MAX_NAME_LENGTH,
    RESERVED_DEVICE_NAMES,
    RESERVED_SYSTEM_NAMES,
    SUPPORTED_HASH_ALGORITHMS,
)
from .utils import is_debug_enabled


def sanitize_sharepoint_name(name, is_folder=False):
    r"""
    Sanitize a file/folder name to be compatible with SharePoint/OneDrive.

    SharePoint/OneDrive naming rules applied here:
    - Cannot contain: ~ # % & * { } \ : < > ? / | "  (each replaced by '_')
    - Cannot start or end with a period or whitespace (stripped)
    - Cannot be a reserved name: CON, PRN, AUX, NUL, COM0-9, LPT0-9 (with or
      without an extension), _vti_, desktop.ini (prefixed with '_')
    - Maximum length: MAX_NAME_LENGTH characters, extension preserved for files

    Args:
        name (str): Original file or folder name
        is_folder (bool): Whether this is a folder name

    Returns:
        str: Sanitized name safe for SharePoint
    """
    if not name:
        return name

    sanitized = name

    # Replace illegal characters
    for char in INVALID_CHARS:
        sanitized = sanitized.replace(char, '_')

    # System names such as .lock must be matched before leading dots are stripped
    system_names = [reserved.lower() for reserved in RESERVED_SYSTEM_NAMES]
    if sanitized.strip(string.whitespace).lower() in system_names:
        sanitized = f"_{sanitized.strip(string.whitespace)}"

    # Remove leading/trailing periods and whitespace
    sanitized = sanitized.strip(string.whitespace + '.')

    # Check for reserved names (device names are reserved with any extension)
    upper_name = sanitized.upper()
    base_name = upper_name.split('.')[0]
    if (upper_name in RESERVED_DEVICE_NAMES or base_name in RESERVED_DEVICE_NAMES
            or sanitized.lower() in system_names):
        sanitized = f"_{sanitized}"

    # Ensure name isn't empty after sanitization
    if not sanitized:
        sanitized = "_unnamed"

    # Truncate if too long
    if len(sanitized) > MAX_NAME_LENGTH:
        dot = sanitized.rfind('.')
        extension = sanitized[dot:] if dot > 0 else ""
        if not is_folder and extension and len(extension) < MAX_NAME_LENGTH:
            sanitized = sanitized[:MAX_NAME_LENGTH - len(extension)] + extension
        else:
            sanitized = sanitized[:MAX_NAME_LENGTH].rstrip(string.whitespace + '.')

    if sanitized != name and is_debug_enabled():
        print(f"[!] Sanitized name: '{name}' -> '{sanitized}'")

    return sanitized


def sanitize_path_components(path, last_is_file=False):
    """
    Sanitize all components of a relative path for SharePoint compatibility.

    Folder components are always sanitized with folder rules, so a directory
    maps to the same remote name at every depth.

    Args:
        path (str): Path with possibly multiple directory levels
        last_is_file (bool): Treat the final component as a file name

    Returns:
        str: Sanitized path joined with '/', every component made SharePoint-safe
    """
    components = [c for c in path.replace('\\', '/').split('/') if c]

    sanitized_components = []
    for i, component in enumerate(components):
        is_folder = not (last_is_file and i == len(components) - 1)
        sanitized_components.append(sanitize_sharepoint_name(component, is_folder))

    return '/'.join(sanitized_components)


def get_optimal_chunk_size(file_size):
    """
    Calculate optimal read chunk size based on file size for efficient hashing.

    Larger files benefit from larger chunks to reduce I/O overhead,
    while smaller files use smaller chunks to avoid memory waste.

    Args:
        file_size (int): Size of the file in bytes

    Returns:
        int: Chunk size in bytes for reading the file
    """
    if file_size < 1 * 1024 * 1024:  # < 1MB
        return 64 * 1024
    elif file_size < 10 * 1024 * 1024:  # < 10MB
        return 256 * 1024
    elif file_size < 100 * 1024 * 1024:  # < 100MB
        return 1 * 1024 * 1024
    elif file_size < 1024 * 1024 * 1024:  # < 1GB
        return 4 * 1024 * 1024
    else:
        return 8 * 1024 * 1024


def new_hasher(algorithm='sha256'):
    """
    Create a streaming hasher.

    Args:
        algorithm (str): 'sha256' (cryptographic) or 'xxh128' (xxHash128, much
            faster, not cryptographic)

    Raises:
        ValueError: For an unsupported algorithm
    """
    if algorithm == 'sha256':
        return hashlib.sha256()
    if algorithm == 'xxh128':
        return xxhash.xxh128()
    raise ValueError(
        f"Unsupported hash algorithm '{algorithm}' (expected one of {', '.join(SUPPORTED_HASH_ALGORITHMS)})"
    )


def calculate_file_hash(file_path, algorithm='sha256'):
    """
    Calculate the content digest of a file, streaming it in chunks.

    The digest depends only on the bytes of the file, so copies that keep the
    content but change timestamps hash identically.

    Args:
        file_path (str): Path to the file to hash
        algorithm (str): Hash algorithm, see new_hasher()

    Returns:
        str: Hexadecimal digest, or None if the file could not be read
            (a warning is printed and the caller should skip the file)
    """
    hasher = new_hasher(algorithm)

    try:
        chunk_size = get_optimal_chunk_size(os.path.getsize(file_path))

        with open(file_path, 'rb') as f:
            while chunk := f.read(chunk_size):
                hasher.update(chunk)

        return hasher.hexdigest()

    except FileNotFoundError:
        # File was deleted or moved during the scan
        print(f"[!] File not found while hashing (deleted or moved during scan): {file_path}")
        return None

    except PermissionError:
        print(f"[!] Permission denied while hashing: {file_path}")
        if is_debug_enabled():
            print("[!]   - Verify file permissions allow reading")
            print("[!]   - Check if file is locked by another process")
            print("[!]   - Consider excluding this file from the mapping")
        return None

    except OSError as e:
        # I/O errors (disk issues, network drive problems, etc.)
        print(f"[!] I/O error while hashing {file_path}: {str(e)[:200]}")
        return None


def glob_match(relative_path, pattern):
    """
    Match a relative path against a glob pattern.

    A pattern without '/' matches the file name at any depth ('*.pdf'), a
    pattern with '/' matches the whole relative path ('docs/*.md'), and '**/'
    also matches zero directories ('docs/**/*.md' matches 'docs/a.md').

    Args:
        relative_path (str): Path relative to the scan root
        pattern (str): Glob pattern

    Returns:
        bool: True if the path matches
    """
    normalized_path = relative_path.replace('\\', '/')
    pattern = pattern.replace('\\', '/')

    if '/' not in pattern:
        return fnmatch.fnmatch(posixpath.basename(normalized_path), pattern)

    candidates = [pattern]
    if '**/' in pattern:
        candidates.append(pattern.replace('**/', ''))
    return any(fnmatch.fnmatch(normalized_path, candidate) for candidate in candidates)


def should_exclude_path(path, exclude_patterns):
    """
    Check if a file or directory path should be excluded based on exclusion patterns.

    Checks the file name, the full relative path and individual path components
    (for directory exclusions like '__pycache__' or 'node_modules').

    Args:
        path (str): File or directory path relative to the scan root
        exclude_patterns (list): Exclusion patterns (e.g., ['*.tmp', '*.log', '__pycache__'])

    Returns:
        bool: True if path should be excluded, False otherwise

    Pattern Matching:
        - Exact name match: '__pycache__', '.git', 'node_modules'
        - Wildcard patterns: '*.tmp', 'build/**/*.o'
        - Extension only: 'tmp', 'log' (treated as '*.tmp', '*.log')

    Examples:
        >>> should_exclude_path('file.tmp', ['*.tmp'])
        True
        >>> should_exclude_path('src/__pycache__/module.pyc', ['__pycache__'])
        True
        >>> should_exclude_path('docs/report.pdf', ['*.tmp', '*.log'])
        False
    """
    if not exclude_patterns:
        return False

    normalized_path = path.replace('\\', '/')
    basename = posixpath.basename(normalized_path)
    path_components = normalized_path.split('/')

    for pattern in exclude_patterns:
        if glob_match(normalized_path, pattern):
            return True

        # Plain names exclude a directory anywhere in the path
        if not any(ch in pattern for ch in '*?['):
            if pattern in path_components:
                return True

        # Extension-only patterns (e.g., 'tmp' -> '*.tmp')
        if not pattern.startswith('*') and not pattern.startswith('.') and '/' not in pattern:
            if fnmatch.fnmatch(basename, f'*.{pattern}'):
                return True

    return False


def matches_filters(relative_path, file_size, filters):
    """
    Decide whether a scanned file passes a mapping's filters.

    Size bounds are checked first, then include patterns (when present the
    file must match at least one), then exclude patterns. Exclusion wins over
    inclusion.

    Args:
        relative_path (str): Path relative to the scan root
        file_size (int): File size in bytes
        filters (FileFilters): Mapping filters, or None for no filtering

    Returns:
        bool: True if the file should be part of the inventory
    """
    if filters is None:
        return True

    if filters.max_file_size is not None and file_size > filters.max_file_size:
        return False
    if filters.min_file_size is not None and file_size < filters.min_file_size:
        return False

    if filters.include and not any(glob_match(relative_path, p) for p in filters.include):
        return False

    if filters.exclude and should_exclude_path(relative_path, filters.exclude):
        return False

    return True
