# -*- coding: utf-8 -*-
"""
Rate limiting monitoring and statistics tracking for UnoCloud sync.

This module provides classes for monitoring Graph API rate limits and tracking
per-job upload statistics. Instances are owned by the client or job that uses
them, and are safe to update from upload worker threads.
"""

import threading
from .utils import is_debug_metadata_enabled


class RateLimitMonitor:
    """
    Monitor and track Graph API rate limiting metrics.

    Analyzes response headers to detect and track throttling:
    - x-ms-throttle-limit-percentage: Utilization percentage (0.8-1.8 range)
    - x-ms-resource-unit: Resource units consumed per request
    - x-ms-throttle-scope: Throttling scope details

    Headers only appear when >80% of limit consumed.
    """

    def __init__(self):
        """Initialize rate limit monitoring metrics"""
        self._lock = threading.Lock()
        self.metrics = {
            'total_requests': 0,
            'throttled_requests': 0,
            'average_throttle_percentage': 0.0,
            'max_throttle_percentage': 0.0,
            'resource_units_consumed': 0,
            'alerts_triggered': 0
        }
        self.throttle_threshold = 0.8  # Alert when >80% of limit

        self.request_types = {
            'GET': 0,
            'POST': 0,
            'PUT': 0,
            'PATCH': 0,
            'DELETE': 0
        }

        self.operations = {
            'file_upload': 0,           # PUT to /content endpoint
            'chunk_upload': 0,          # PUT to an upload session URL
            'upload_session': 0,        # POST createUploadSession
            'metadata_update': 0,       # PATCH fileSystemInfo
            'folder_create': 0,         # POST create folder
            'item_lookup': 0,           # GET item metadata by path or id
            'site_drive_lookup': 0,     # GET site / drives
            'file_delete': 0,           # DELETE item
            'other': 0
        }

    def analyze_response_headers(self, response, method=None, url=None):
        """
        Analyze Graph API response headers for rate limiting info.

        Args:
            response: requests.Response object from Graph API call
            method (str): HTTP method (GET, POST, PUT, PATCH, DELETE)
            url (str): Request URL for operation type detection

        Returns:
            dict: Rate limiting information extracted from headers
        """
        headers = response.headers
        throttle_percentage = headers.get('x-ms-throttle-limit-percentage')
        resource_unit = headers.get('x-ms-resource-unit')
        throttle_scope = headers.get('x-ms-throttle-scope')

        with self._lock:
            self.metrics['total_requests'] += 1

            if method and method.upper() in self.request_types:
                self.request_types[method.upper()] += 1

            if url and method:
                self.operations[self._categorize_operation(url, method.upper())] += 1

            if throttle_percentage:
                percentage = float(throttle_percentage)
                self.metrics['max_throttle_percentage'] = max(
                    self.metrics['max_throttle_percentage'],
                    percentage
                )

                # Running average over all requests
                current_avg = self.metrics['average_throttle_percentage']
                total_requests = self.metrics['total_requests']
                self.metrics['average_throttle_percentage'] = (
                    ((current_avg * (total_requests - 1)) + percentage) / total_requests
                )

                if percentage >= 1.0:
                    self.metrics['throttled_requests'] += 1
                    print(f"[!] THROTTLING DETECTED: {percentage:.1%} of limit used")
                    if throttle_scope:
                        print(f"[!] Throttle scope: {throttle_scope}")
                elif percentage >= self.throttle_threshold:
                    self.metrics['alerts_triggered'] += 1
                    print(f"[ ] Rate limit warning: {percentage:.1%} of limit used")

            if resource_unit:
                units = int(resource_unit)
                self.metrics['resource_units_consumed'] += units
                if is_debug_metadata_enabled():
                    print(f"[=] Resource units consumed: {units}")

        return {
            'throttle_percentage': float(throttle_percentage) if throttle_percentage else None,
            'resource_unit': int(resource_unit) if resource_unit else None,
            'throttle_scope': throttle_scope,
            'is_throttled': response.status_code == 429
        }

    @staticmethod
    def _categorize_operation(url, method):
        """
        Categorize API operation based on URL pattern and HTTP method.

        Returns:
            str: Key into self.operations
        """
        url_lower = url.lower()

        if method == 'PUT' and '/content' in url_lower:
            return 'file_upload'
        if method == 'PUT':
            return 'chunk_upload'
        if method == 'POST' and 'createuploadsession' in url_lower:
            return 'upload_session'
        if method == 'POST' and '/children' in url_lower:
            return 'folder_create'
        if method == 'PATCH':
            return 'metadata_update'
        if method == 'DELETE':
            return 'file_delete'
        if method == 'GET' and ('/items/' in url_lower or '/root:' in url_lower or url_lower.endswith('/root')):
            return 'item_lookup'
        if method == 'GET' and '/sites/' in url_lower:
            return 'site_drive_lookup'
        return 'other'

    def get_metrics_summary(self):
        """
        Get comprehensive rate limiting metrics.

        Returns:
            dict: Summary of all rate limiting metrics
        """
        with self._lock:
            return {
                'total_requests': self.metrics['total_requests'],
                'throttled_requests': self.metrics['throttled_requests'],
                'throttle_rate': self.metrics['throttled_requests'] / max(self.metrics['total_requests'], 1),
                'average_throttle_percentage': self.metrics['average_throttle_percentage'],
                'max_throttle_percentage': self.metrics['max_throttle_percentage'],
                'resource_units_consumed': self.metrics['resource_units_consumed'],
                'alerts_triggered': self.metrics['alerts_triggered']
            }

    def should_slow_down(self):
        """
        Determine if requests should be slowed down proactively.

        Returns:
            bool: True if approaching rate limits (>90% utilization)
        """
        with self._lock:
            return self.metrics['max_throttle_percentage'] >= 0.9


def print_rate_limiting_summary(monitor):
    """
    Print rate limiting statistics collected by a monitor.

    Args:
        monitor (RateLimitMonitor): Monitor to summarize
    """
    metrics = monitor.get_metrics_summary()
    if metrics['total_requests'] == 0:
        return

    print("\n" + "="*60)
    print("GRAPH API RATE LIMITING SUMMARY")
    print("="*60)
    print(f"[STATS] API Request Statistics:")
    print(f"   - Total API Requests:       {metrics['total_requests']:>6}")
    print(f"   - Throttled Requests:       {metrics['throttled_requests']:>6} ({metrics['throttle_rate']:.1%})")
    print(f"   - Average Throttle %:       {metrics['average_throttle_percentage']:>6.1%}")
    print(f"   - Max Throttle %:           {metrics['max_throttle_percentage']:>6.1%}")
    print(f"   - Resource Units Used:      {metrics['resource_units_consumed']:>6}")

    if any(monitor.operations.values()):
        print(f"\n[OPS] Operation Types:")
        for op_type, count in monitor.operations.items():
            if count > 0:
                op_name = op_type.replace('_', ' ').title()
                print(f"   - {f'{op_name}:':<27} {count:>6}")

    if metrics['max_throttle_percentage'] >= 1.0:
        print(f"\n[!] WARNING: Hit throttling limits during execution")
    elif metrics['max_throttle_percentage'] >= 0.8:
        print(f"\n[ ] CAUTION: Approached throttling limits")
    else:
        print(f"\n[OK] Stayed within throttling limits")
    print("="*60)


class SyncStatistics:
    """Track upload statistics for one sync job"""

    def __init__(self):
        self._lock = threading.Lock()
        self.stats = {
            'uploaded_files': 0,
            'skipped_files': 0,     # Up to date, not re-uploaded
            'failed_files': 0,
            'retried_files': 0,     # Succeeded or failed after at least one retry
            'bytes_uploaded': 0,
            'bytes_skipped': 0,
        }

    def increment(self, key, amount=1):
        with self._lock:
            self.stats[key] += amount

    def get(self, key):
        with self._lock:
            return self.stats[key]

    def print_summary(self, total_files):
        """
        Print final summary report of upload statistics.

        Args:
            total_files (int): Total number of files scanned
        """
        with self._lock:
            stats = dict(self.stats)

        print(f"[STATS] Sync Statistics:")
        print(f"   - Files uploaded:           {stats['uploaded_files']:>6}")
        print(f"   - Files skipped (unchanged):{stats['skipped_files']:>6}")
        print(f"   - Failed uploads:           {stats['failed_files']:>6}")
        if stats['retried_files']:
            print(f"   - Files needing retries:    {stats['retried_files']:>6}")
        print(f"   - Total files scanned:      {total_files:>6}")

        print(f"\n[DATA] Transfer Summary:")
        print(f"   - Data uploaded:   {format_bytes(stats['bytes_uploaded'])}")
        print(f"   - Data skipped:    {format_bytes(stats['bytes_skipped'])}")

        total_bytes = stats['bytes_uploaded'] + stats['bytes_skipped']
        if total_bytes > 0:
            efficiency = (stats['bytes_skipped'] / total_bytes) * 100
            print(f"   - Sync efficiency: {efficiency:.1f}% (bandwidth saved by incremental sync)")


def print_job_summary(job):
    """
    Print the outcome of a sync job, including every recorded error.

    Args:
        job (SyncJob): Finished job
    """
    marker = '[✓]' if job.status == 'completed' and not job.errors else '[!]'
    print(f"{marker} Job {job.id}: {job.status}")
    print(f"   - Files processed: {job.files_processed}/{job.files_total}")
    print(f"   - Files failed:    {job.files_failed}")
    print(f"   - Transferred:     {format_bytes(job.bytes_transferred)} of {format_bytes(job.bytes_total)}")
    for error in job.errors:
        retries = f" (after {error.retry_count} retries)" if error.retry_count else ""
        print(f"[!]   {error.file_path}: {error.error}{retries}")


def format_bytes(bytes_value):
    """
    Convert bytes to human-readable format.

    Args:
        bytes_value (int): Number of bytes to format

    Returns:
        str: Human-readable string (e.g., "1.5 MB")
    """
    for unit in ['B', 'KB', 'MB', 'GB']:
        if bytes_value < 1024.0:
            return f"{bytes_value:.1f} {unit}"
        bytes_value /= 1024.0
    return f"{bytes_value:.1f} TB"
