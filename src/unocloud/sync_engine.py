# -*- coding: utf-8 -*-
"""
Sync orchestration for UnoCloud.

Runs one mapping at a time through scanning -> uploading -> complete (or
error): scan the source, keep the files whose digest the ledger has not seen
synced, resolve the SharePoint site and library once, upload through a bounded
worker pool and record every outcome in the ledger and the job record.
"""

import threading
from .auth import Authenticator
from .config import SMALL_FILE_THRESHOLD, Config
from .exceptions import AuthError, GraphAPIError, NotFoundError, StorageError
from .file_handler import sanitize_path_components
from .graph_api import GraphClient
from .models import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    PHASE_COMPLETE,
    PHASE_ERROR,
    PHASE_SCANNING,
    PHASE_UPLOADING,
    STATUS_FAILED,
    STATUS_SYNCED,
    DryRunResult,
    SyncedFile,
    SyncError,
    SyncProgress,
)
from .monitoring import (
    RateLimitMonitor,
    SyncStatistics,
    format_bytes,
    print_job_summary,
    print_rate_limiting_summary,
)
from .parallel_uploader import ParallelUploader
from .scanner import FileScanner
from .uploader import FolderCache, conflict_behavior_for, ensure_folder_exists, remote_path_for, upload_local_file
from .utils import is_debug_enabled, to_iso, utc_now_iso


class SyncEngine:
    """
    Orchestrates sync runs for configured tenants.

    The engine reads tenants and mappings from a ConfigStore and never writes
    them; everything it learns goes into the SyncTracker.
    """

    def __init__(self, config_store, tracker, authenticator=None, scanner=None,
                 client_factory=None, config=None):
        """
        Args:
            config_store (ConfigStore): Source of tenants and mappings
            tracker (SyncTracker): Ledger of synced files and jobs
            authenticator (Authenticator, optional): Token source, built from config if omitted
            scanner (FileScanner, optional): Source scanner, built from config if omitted
            client_factory (callable, optional): client_factory(tenant) -> GraphClient
            config (Config, optional): Endpoints, timeouts and hash algorithm
        """
        self.config = config or Config([])
        self.config_store = config_store
        self.tracker = tracker
        self.authenticator = authenticator or Authenticator(self.config.login_endpoint,
                                                            self.config.graph_endpoint)
        self.scanner = scanner or FileScanner(self.config.hash_algorithm)
        self.client_factory = client_factory or self._default_client
        self._cancel_events = {}
        self._cancel_lock = threading.Lock()
        self._progress_lock = threading.Lock()

    def _default_client(self, tenant):
        return GraphClient.for_tenant(tenant, self.authenticator, self.config)

    # ========================================================================
    # Cancellation
    # ========================================================================

    def cancel(self, job_id):
        """
        Ask a running job to stop.

        Uploads already in flight run to completion; files not yet started
        are not started and the job finishes as cancelled.

        Returns:
            bool: True if the job is running in this engine
        """
        with self._cancel_lock:
            event = self._cancel_events.get(job_id)
        if event is None:
            return False
        print(f"[!] Cancellation requested for job {job_id}")
        event.set()
        return True

    def _register_job(self, job_id):
        event = threading.Event()
        with self._cancel_lock:
            self._cancel_events[job_id] = event
        return event

    def _unregister_job(self, job_id):
        with self._cancel_lock:
            self._cancel_events.pop(job_id, None)

    # ========================================================================
    # Sync
    # ========================================================================

    def _progress_emitter(self, job_id, on_progress):
        def emit(phase, current_file=None):
            if on_progress is None:
                return
            job = self.tracker.get_job(job_id)
            with self._progress_lock:
                on_progress(SyncProgress(job=job, phase=phase, current_file=current_file))
        return emit

    def _files_needing_sync(self, tenant, mapping, files):
        if tenant.options.mode == 'full':
            return list(files)
        return [f for f in files
                if self.tracker.needs_sync(tenant.id, mapping.id, f.relative_path, f.hash)]

    def sync_mapping(self, tenant, mapping, on_progress=None):
        """
        Sync one mapping of a tenant.

        Args:
            tenant (TenantConfig): Tenant owning the mapping
            mapping (SyncMapping): Mapping to sync
            on_progress (callable, optional): Receives SyncProgress events

        Returns:
            SyncJob: The finished job (completed, failed or cancelled)

        Raises:
            StorageError: If the ledger cannot be written
        """
        job = self.tracker.create_job(tenant.id, mapping.id)
        cancel_event = self._register_job(job.id)
        emit = self._progress_emitter(job.id, on_progress)

        print(f"[*] Starting sync for mapping {mapping.id}: {mapping.source}")
        try:
            return self._run_mapping(tenant, mapping, job.id, emit, cancel_event)
        except StorageError as e:
            print(f"[!] Ledger error for mapping {mapping.id}: {e}")
            try:
                self.tracker.complete_job(job.id, JOB_FAILED, [
                    SyncError(file_path=mapping.source, error=str(e), timestamp=utc_now_iso()),
                ])
                emit(PHASE_ERROR)
            except StorageError as close_error:
                print(f"[!] Could not mark job {job.id} as failed: {close_error}")
            raise
        except Exception as e:
            print(f"[!] Sync failed for mapping {mapping.id}: {e}")
            self.tracker.complete_job(job.id, JOB_FAILED, [
                SyncError(file_path=mapping.source, error=str(e), timestamp=utc_now_iso()),
            ])
            emit(PHASE_ERROR)
            failed_job = self.tracker.get_job(job.id)
            print_job_summary(failed_job)
            return failed_job
        finally:
            self._unregister_job(job.id)

    def _run_mapping(self, tenant, mapping, job_id, emit, cancel_event):
        options = tenant.options
        conflict_behavior = conflict_behavior_for(options.conflict_resolution)
        stats = SyncStatistics()

        # Phase 1: scan
        emit(PHASE_SCANNING)
        scan_result = self.scanner.scan(mapping, on_progress=lambda count, path: emit(PHASE_SCANNING, path))
        self.tracker.mark_missing_as_deleted(tenant.id, mapping.id,
                                             [f.relative_path for f in scan_result.files])

        to_sync = self._files_needing_sync(tenant, mapping, scan_result.files)
        bytes_total = sum(f.size for f in to_sync)
        stats.increment('skipped_files', len(scan_result.files) - len(to_sync))
        stats.increment('bytes_skipped', scan_result.total_size - bytes_total)

        print(f"[*] Found {len(to_sync)} files to sync out of {len(scan_result.files)} total "
              f"({format_bytes(bytes_total)})")
        self.tracker.set_job_totals(job_id, len(to_sync), bytes_total)

        if not to_sync:
            print("[=] Everything is up to date")
            self.tracker.complete_job(job_id, JOB_COMPLETED)
            emit(PHASE_COMPLETE)
            return self.tracker.get_job(job_id)

        if cancel_event.is_set():
            self.tracker.complete_job(job_id, JOB_CANCELLED)
            emit(PHASE_COMPLETE)
            return self.tracker.get_job(job_id)

        # Phase 2: resolve site, library and destination folder once per run
        emit(PHASE_UPLOADING)
        destination = mapping.destination
        client = self.client_factory(tenant)
        site = client.get_site(destination.site_url)
        drive = client.get_drive(site['id'], destination.library)
        drive_id = drive['id']

        folder_cache = FolderCache()
        destination_folder = sanitize_path_components(destination.folder or '')
        if destination_folder:
            ensure_folder_exists(client, drive_id, destination_folder, folder_cache)

        # Phase 3: upload
        def upload(scanned):
            emit(PHASE_UPLOADING, scanned.relative_path)
            parent_path, name, remote_path = remote_path_for(
                destination_folder, scanned.relative_path, options.preserve_folder_structure
            )
            if parent_path and parent_path != destination_folder:
                ensure_folder_exists(client, drive_id, parent_path, folder_cache)

            file_system_info = None
            if options.preserve_timestamps:
                file_system_info = {
                    'createdDateTime': to_iso(scanned.created_at),
                    'lastModifiedDateTime': to_iso(scanned.modified_at),
                }

            item = upload_local_file(client, drive_id, parent_path, scanned.path, name=name,
                                     conflict_behavior=conflict_behavior,
                                     file_system_info=file_system_info)

            # Upload sessions carry the timestamps already; direct PUTs need a PATCH
            if file_system_info and scanned.size <= SMALL_FILE_THRESHOLD and item.get('id'):
                try:
                    item = client.update_file_system_info(
                        drive_id, item['id'],
                        file_system_info['createdDateTime'], file_system_info['lastModifiedDateTime'],
                    )
                except (GraphAPIError, NotFoundError) as e:
                    print(f"[!] Could not preserve timestamps for {scanned.relative_path}: {str(e)[:200]}")
            return remote_path, item

        errors = []
        counters = {'processed': 0, 'bytes': 0, 'cancelled': 0}
        auth_failures = []

        def record(outcome):
            scanned = outcome.item
            if outcome.cancelled:
                counters['cancelled'] += 1
                return

            if outcome.succeeded:
                remote_path, item = outcome.result
                self.tracker.upsert_synced_file(SyncedFile(
                    tenant_id=tenant.id,
                    mapping_id=mapping.id,
                    local_path=scanned.relative_path,
                    remote_path=remote_path,
                    drive_item_id=item.get('id', ''),
                    file_hash=scanned.hash,
                    file_size=scanned.size,
                    local_modified_at=to_iso(scanned.modified_at),
                    remote_modified_at=item.get('lastModifiedDateTime', ''),
                    synced_at=utc_now_iso(),
                    status=STATUS_SYNCED,
                ))
                counters['processed'] += 1
                counters['bytes'] += scanned.size
                stats.increment('uploaded_files')
                stats.increment('bytes_uploaded', scanned.size)
                if outcome.retry_count:
                    stats.increment('retried_files')
                self.tracker.update_job_progress(job_id, counters['processed'], counters['bytes'])
                if is_debug_enabled():
                    print(f"[✓] Synced: {scanned.relative_path} -> {remote_path}")
                return

            if isinstance(outcome.error, AuthError):
                auth_failures.append(outcome.error)
                return

            message = str(outcome.error)
            print(f"[!] Failed to sync {scanned.relative_path}: {message[:200]}")
            errors.append(SyncError(
                file_path=scanned.relative_path,
                error=message,
                timestamp=utc_now_iso(),
                retry_count=outcome.retry_count,
            ))
            self.tracker.upsert_synced_file(SyncedFile(
                tenant_id=tenant.id,
                mapping_id=mapping.id,
                local_path=scanned.relative_path,
                remote_path='',
                drive_item_id='',
                file_hash=scanned.hash,
                file_size=scanned.size,
                local_modified_at=to_iso(scanned.modified_at),
                remote_modified_at='',
                synced_at=utc_now_iso(),
                status=STATUS_FAILED,
                error_message=message,
            ))
            stats.increment('failed_files')
            if outcome.retry_count:
                stats.increment('retried_files')
            self.tracker.update_job_progress(job_id, counters['processed'], counters['bytes'], len(errors))

        uploader = ParallelUploader(
            max_workers=options.max_concurrent_uploads,
            retry_attempts=options.retry_attempts,
            retry_delay_ms=options.retry_delay_ms,
        )
        uploader.run(to_sync, upload, cancel_event=cancel_event, on_done=record)

        if auth_failures:
            raise auth_failures[0]

        # Phase 4: finalize
        if counters['cancelled']:
            final_status = JOB_CANCELLED
        elif errors and counters['processed'] == 0:
            final_status = JOB_FAILED
        else:
            # Partial success still counts as completed; errors stay on the job
            final_status = JOB_COMPLETED

        self.tracker.complete_job(job_id, final_status, errors)
        emit(PHASE_COMPLETE)

        finished = self.tracker.get_job(job_id)
        stats.print_summary(len(scan_result.files))
        print_job_summary(finished)
        monitor = getattr(client, 'rate_monitor', None)
        if isinstance(monitor, RateLimitMonitor):
            print_rate_limiting_summary(monitor)
        return finished

    def sync_tenant(self, tenant, on_progress=None):
        """
        Sync every enabled mapping of a tenant, one after another.

        Returns:
            list: SyncJob per enabled mapping
        """
        jobs = []
        for mapping in tenant.mappings:
            if not mapping.enabled:
                print(f"[=] Skipping disabled mapping: {mapping.source}")
                continue
            jobs.append(self.sync_mapping(tenant, mapping, on_progress))
        return jobs

    def sync_all(self, on_progress=None):
        """
        Sync every configured tenant.

        Returns:
            dict: tenant id -> list of SyncJob
        """
        results = {}
        for tenant in self.config_store.get_all_tenants():
            print(f"[*] Syncing tenant {tenant.name} ({tenant.id})")
            results[tenant.id] = self.sync_tenant(tenant, on_progress)
        return results

    def dry_run(self, tenant, mapping):
        """
        Scan a mapping and report what a sync would upload.

        No remote calls are made and the ledger is not written.

        Returns:
            DryRunResult: Files to sync, up-to-date count and bytes to transfer
        """
        scan_result = self.scanner.scan(mapping)
        to_sync = self._files_needing_sync(tenant, mapping, scan_result.files)
        return DryRunResult(
            to_sync=to_sync,
            up_to_date=len(scan_result.files) - len(to_sync),
            total_size=sum(f.size for f in to_sync),
        )
