# -*- coding: utf-8 -*-
"""
Upload operations for UnoCloud sync.

This module handles folder management, direct uploads for small files and
resumable (chunked) uploads for large files on top of GraphClient.
"""

import io
import os
import threading
from .config import CHUNK_SIZE, SMALL_FILE_THRESHOLD
from .exceptions import UploadError
from .file_handler import sanitize_path_components, sanitize_sharepoint_name
from .utils import is_debug_enabled, join_remote_path

# Local conflict policy -> Graph @microsoft.graph.conflictBehavior
CONFLICT_BEHAVIORS = {
    'overwrite': 'replace',
    'rename': 'rename',
    'skip': 'fail',
}


def conflict_behavior_for(policy):
    """
    Translate a tenant's conflict_resolution option to a Graph conflict behavior.

    Raises:
        ValueError: For an unknown policy
    """
    try:
        return CONFLICT_BEHAVIORS[policy]
    except KeyError:
        raise ValueError(
            f"Unknown conflict_resolution '{policy}' (expected one of {', '.join(CONFLICT_BEHAVIORS)})"
        ) from None


class FolderCache:
    """
    Resolved remote folders for one drive, keyed by sanitized path.

    creation_lock serializes lookups that may create folders, so concurrent
    uploads into the same new folder do not race each other into a conflict.
    """

    def __init__(self):
        self._folders = {}
        self._lock = threading.Lock()
        self.creation_lock = threading.RLock()

    def get(self, path):
        with self._lock:
            return self._folders.get(path)

    def set(self, path, item):
        with self._lock:
            self._folders[path] = item

    def clear(self):
        with self._lock:
            self._folders.clear()

    def __contains__(self, path):
        with self._lock:
            return path in self._folders

    def __len__(self):
        with self._lock:
            return len(self._folders)


def ensure_folder_exists(client, drive_id, folder_path, folder_cache=None):
    """
    Create the folder structure for a path if it doesn't exist.

    Each path component is sanitized, looked up by path and created (with
    conflict behavior 'fail') only when the lookup returns nothing.

    Args:
        client (GraphClient): Tenant client
        drive_id (str): Target drive
        folder_path (str): Drive-relative path (e.g., 'Backups/2024/Reports');
            '' or '/' means the drive root, which is never created
        folder_cache (FolderCache, optional): Memo of folders already resolved

    Returns:
        dict: Drive item of the final folder in the path

    Raises:
        GraphAPIError: 409 if the folder appeared between lookup and creation
        UploadError: If a file occupies a path component
    """
    folder_cache = folder_cache if folder_cache is not None else FolderCache()
    folder_path = sanitize_path_components(folder_path or '')

    cached = folder_cache.get(folder_path)
    if cached is not None:
        return cached

    with folder_cache.creation_lock:
        if not folder_path:
            root = client.get_root(drive_id)
            folder_cache.set('', root)
            return root

        current_item = None
        current_path = ""
        for folder_name in folder_path.split('/'):
            parent_path = current_path
            current_path = f"{current_path}/{folder_name}" if current_path else folder_name

            cached = folder_cache.get(current_path)
            if cached is not None:
                current_item = cached
                continue

            current_item = client.get_item_by_path(drive_id, current_path)
            if current_item is None:
                current_item = client.create_folder(drive_id, parent_path, folder_name, conflict_behavior='fail')
                if is_debug_enabled():
                    print(f"[+] Created folder: {current_path}")
            elif 'folder' not in current_item:
                raise UploadError(f"Cannot create folder '{current_path}': a file with that name exists")
            elif is_debug_enabled():
                print(f"[=] Folder already exists: {current_path}")

            folder_cache.set(current_path, current_item)

    return current_item


def iter_chunk_ranges(total_size, chunk_size=CHUNK_SIZE):
    """
    Yield inclusive (start, end) byte ranges tiling [0, total_size).

    Ranges are contiguous and non-overlapping, every range but the last is
    exactly chunk_size long, and the last one ends at total_size - 1.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    start = 0
    while start < total_size:
        end = min(start + chunk_size, total_size) - 1
        yield start, end
        start = end + 1


def resumable_upload(client, drive_id, parent_path, name, reader, total_size, on_progress=None,
                     conflict_behavior='replace', file_system_info=None, chunk_size=CHUNK_SIZE):
    """
    Upload a large file through an upload session, one chunk at a time.

    Args:
        client (GraphClient): Tenant client
        drive_id (str): Target drive
        parent_path (str): Sanitized drive-relative folder path
        name (str): Sanitized file name
        reader: Seekable binary file object holding the content
        total_size (int): Size of the content in bytes
        on_progress (callable, optional): on_progress(bytes_uploaded, total_size)
        conflict_behavior (str): Graph conflict behavior for the session
        file_system_info (dict, optional): Timestamps to set on the new item
        chunk_size (int): Bytes per chunk (a multiple of 320 KiB)

    Returns:
        dict: Uploaded drive item

    Raises:
        UploadError: If the content changes size mid-upload, or the last chunk
            does not return the completed item
    """
    session = client.create_upload_session(drive_id, parent_path, name,
                                           conflict_behavior=conflict_behavior,
                                           file_system_info=file_system_info)
    upload_url = session['uploadUrl']

    if is_debug_enabled():
        print(f"[→] Uploading large file with resumable upload: {name} ({total_size:,} bytes)")

    for range_start, range_end in iter_chunk_ranges(total_size, chunk_size):
        reader.seek(range_start)
        chunk = reader.read(range_end - range_start + 1)
        if len(chunk) != range_end - range_start + 1:
            raise UploadError(f"File {name} changed size during upload")

        result = client.upload_chunk(upload_url, chunk, range_start, range_end, total_size)

        if on_progress:
            on_progress(range_end + 1, total_size)

        if result:
            if is_debug_enabled():
                print(f"[✓] Large file upload complete: {name}")
            return result

    raise UploadError(f"Upload of {name} completed but no item was returned")


def upload_file(client, drive_id, parent_path, name, content, on_progress=None,
                conflict_behavior='replace', file_system_info=None, chunk_size=CHUNK_SIZE):
    """
    Upload in-memory content, choosing a single PUT or a chunked upload.

    Content up to SMALL_FILE_THRESHOLD (4 MiB) goes in one request; anything
    larger goes through an upload session.

    Returns:
        dict: Uploaded drive item
    """
    parent_path = sanitize_path_components(parent_path or '')
    sanitized_name = sanitize_sharepoint_name(name, is_folder=False)
    total_size = len(content)

    if total_size <= SMALL_FILE_THRESHOLD:
        item = client.upload_small_file(drive_id, parent_path, sanitized_name, content,
                                        conflict_behavior=conflict_behavior)
        if on_progress:
            on_progress(total_size, total_size)
        return item

    return resumable_upload(client, drive_id, parent_path, sanitized_name, io.BytesIO(content),
                            total_size, on_progress=on_progress, conflict_behavior=conflict_behavior,
                            file_system_info=file_system_info, chunk_size=chunk_size)


def upload_local_file(client, drive_id, parent_path, local_path, name=None, on_progress=None,
                      conflict_behavior='replace', file_system_info=None, chunk_size=CHUNK_SIZE):
    """
    Upload a file from disk, streaming large files chunk by chunk.

    Args:
        local_path (str): File to upload
        name (str, optional): Remote file name, defaults to the local name

    Returns:
        dict: Uploaded drive item

    Raises:
        UploadError: If the local file cannot be read
    """
    parent_path = sanitize_path_components(parent_path or '')
    sanitized_name = sanitize_sharepoint_name(name or os.path.basename(local_path), is_folder=False)

    try:
        total_size = os.path.getsize(local_path)
        with open(local_path, 'rb') as f:
            if total_size <= SMALL_FILE_THRESHOLD:
                content = f.read()
                item = client.upload_small_file(drive_id, parent_path, sanitized_name, content,
                                                conflict_behavior=conflict_behavior)
                if on_progress:
                    on_progress(len(content), len(content))
                return item

            return resumable_upload(client, drive_id, parent_path, sanitized_name, f, total_size,
                                    on_progress=on_progress, conflict_behavior=conflict_behavior,
                                    file_system_info=file_system_info, chunk_size=chunk_size)
    except OSError as e:
        raise UploadError(f"Cannot read {local_path}: {e}") from e


def remote_path_for(destination_folder, relative_path, preserve_folder_structure=True):
    """
    Compute the sanitized drive-relative parent folder and file name for a file.

    Args:
        destination_folder (str): Mapping's destination folder ('' for the root)
        relative_path (str): File path relative to the mapping source
        preserve_folder_structure (bool): Keep the local sub-folders; when
            False every file lands directly in the destination folder

    Returns:
        tuple: (parent_path, name, remote_path)
    """
    relative_path = relative_path.replace('\\', '/')
    relative_dir, _, file_name = relative_path.rpartition('/')
    if not preserve_folder_structure:
        relative_dir = ''

    parent_path = sanitize_path_components(join_remote_path(destination_folder, relative_dir))
    name = sanitize_sharepoint_name(file_name, is_folder=False)
    return parent_path, name, join_remote_path(parent_path, name)
