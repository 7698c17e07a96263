# -*- coding: utf-8 -*-
"""
Source directory scanning for UnoCloud sync.

Walks a mapping's source directory, applies the mapping's filters and builds
a content-hashed inventory of the files that are candidates for upload.
"""

import os
import time
from datetime import datetime, timezone
from .exceptions import PathError
from .file_handler import calculate_file_hash, matches_filters
from .models import ScannedFile, ScanResult
from .monitoring import format_bytes
from .utils import is_debug_enabled


def _timestamp(value):
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _relative_posix(path, base_path):
    return os.path.relpath(path, base_path).replace(os.sep, '/')


class FileScanner:
    """
    Builds file inventories for sync mappings.

    Each call to scan() walks the tree from the root again; a scan cannot be
    resumed part way through.
    """

    def __init__(self, hash_algorithm='sha256'):
        """
        Args:
            hash_algorithm (str): Digest used for change detection ('sha256' or 'xxh128')
        """
        self.hash_algorithm = hash_algorithm

    def scan_file(self, file_path, base_path, stat_result=None):
        """
        Describe and hash a single file (or describe a directory).

        Args:
            file_path (str): Absolute path of the entry
            base_path (str): Scan root, used for the relative path
            stat_result (os.stat_result, optional): Stat already taken by the caller

        Returns:
            ScannedFile: The entry, or None if it could not be read
        """
        try:
            stats = stat_result or os.stat(file_path)
        except OSError as e:
            print(f"[!] Failed to scan file {file_path}: {e}")
            return None

        created = getattr(stats, 'st_birthtime', stats.st_ctime)
        relative_path = _relative_posix(file_path, base_path)
        name = os.path.basename(file_path)

        if os.path.isdir(file_path):
            return ScannedFile(
                path=file_path,
                relative_path=relative_path,
                name=name,
                size=0,
                hash='',
                created_at=_timestamp(created),
                modified_at=_timestamp(stats.st_mtime),
                is_directory=True,
            )

        file_hash = calculate_file_hash(file_path, self.hash_algorithm)
        if file_hash is None:
            # Warning already printed by calculate_file_hash
            return None

        return ScannedFile(
            path=file_path,
            relative_path=relative_path,
            name=name,
            size=stats.st_size,
            hash=file_hash,
            created_at=_timestamp(created),
            modified_at=_timestamp(stats.st_mtime),
            is_directory=False,
        )

    def scan_directory(self, dir_path, base_path, filters=None, on_file=None):
        """
        Recursively scan a directory.

        Args:
            dir_path (str): Directory to walk
            base_path (str): Scan root
            filters (FileFilters, optional): Mapping filters applied to files
            on_file (callable, optional): Called with each ScannedFile kept

        Returns:
            tuple: (list of ScannedFile, list of relative directory paths)
        """
        files = []
        directories = []

        try:
            with os.scandir(dir_path) as iterator:
                entries = sorted(iterator, key=lambda e: e.name)
        except OSError as e:
            print(f"[!] Failed to scan directory {dir_path}: {e}")
            return files, directories

        for entry in entries:
            full_path = os.path.join(dir_path, entry.name)
            relative_path = _relative_posix(full_path, base_path)

            try:
                if entry.is_dir(follow_symlinks=False):
                    directories.append(relative_path)
                    sub_files, sub_directories = self.scan_directory(full_path, base_path, filters, on_file)
                    files.extend(sub_files)
                    directories.extend(sub_directories)
                    continue

                if not entry.is_file(follow_symlinks=False):
                    continue

                stats = entry.stat(follow_symlinks=False)
            except OSError as e:
                print(f"[!] Failed to access {full_path}: {e}")
                continue

            if not matches_filters(relative_path, stats.st_size, filters):
                if is_debug_enabled():
                    print(f"[=] Skipping filtered file: {relative_path}")
                continue

            scanned = self.scan_file(full_path, base_path, stats)
            if scanned:
                files.append(scanned)
                if on_file:
                    on_file(scanned)

        return files, directories

    def scan(self, mapping, on_progress=None):
        """
        Scan a mapping's source directory.

        Args:
            mapping (SyncMapping): Mapping whose source is scanned
            on_progress (callable, optional): on_progress(scanned_count, relative_path),
                called once per file kept in the inventory

        Returns:
            ScanResult: Files, directories, total size and scan time

        Raises:
            PathError: If the source path is missing or is not a directory
        """
        source_path = os.path.abspath(mapping.source)

        if not os.path.exists(source_path):
            raise PathError(f"Source path does not exist: {source_path}")
        if not os.path.isdir(source_path):
            raise PathError(f"Source path is not a directory: {source_path}")

        print(f"[*] Scanning directory: {source_path}")
        scan_start = time.time()
        scanned_count = 0

        def on_file(scanned):
            nonlocal scanned_count
            scanned_count += 1
            if on_progress:
                on_progress(scanned_count, scanned.relative_path)

        files, directories = self.scan_directory(source_path, source_path, mapping.filters, on_file)
        total_size = sum(f.size for f in files)

        elapsed = time.time() - scan_start
        print(f"[✓] Scan complete: {len(files)} files, {len(directories)} directories, "
              f"{format_bytes(total_size)} ({elapsed:.3f}s)")

        return ScanResult(
            mapping_id=mapping.id,
            source_path=source_path,
            files=files,
            directories=directories,
            total_size=total_size,
            scanned_at=datetime.now(timezone.utc),
        )
