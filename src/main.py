#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
UnoCloud Sync Command Line
==========================

PURPOSE:
    Mirrors local directories into SharePoint document libraries for every
    configured Microsoft 365 tenant. Only new, changed or previously failed
    files are uploaded; a local SQLite ledger remembers what was synced.

SYNOPSIS:
    python main.py [command] [tenant_id] [mapping_id] [failed_only]

PARAMETERS:
    [command]
        `run` (default) - Sync the selected tenant(s)/mapping
        `dry-run`       - Report what `run` would upload, without uploading
        `status`        - Show ledger statistics and recent jobs
        `clear`         - Delete ledger records so files are uploaded again
        `Position`: 1

    [tenant_id]
        Tenant to operate on, or `all` (default) for every configured tenant.
        `clear` always needs a specific tenant.
        `Position`: 2

    [mapping_id]
        Restrict the command to one mapping of the tenant.
        `Position`: 3

    [failed_only]
        `true` makes `clear` remove only failed records.
        `Position`: 4

ENVIRONMENT:
    UNOCLOUD_CONFIG_DIR   Directory holding tenants.json (default: .unocloud)
    UNOCLOUD_DATA_DIR     Directory holding the ledger database
    LOGIN_ENDPOINT        Azure AD endpoint (default: login.microsoftonline.com)
    GRAPH_ENDPOINT        Graph endpoint (default: graph.microsoft.com)
    REQUEST_TIMEOUT       Seconds per HTTP request (default: 300)
    MAX_RETRY             Retries for throttled Graph requests (default: 3)
    HASH_ALGORITHM        sha256 (default) or xxh128
    DEBUG, DEBUG_METADATA Verbose output (default: false)

EXIT CODES:
    0 - Every job completed without file errors
    1 - Configuration error, failed or cancelled job, or any file error
"""

import os
import sys
import time

from unocloud.config import parse_config
from unocloud.exceptions import NotFoundError, StorageError, UnoCloudError
from unocloud.monitoring import format_bytes
from unocloud.sync_engine import SyncEngine
from unocloud.tenant_store import JsonConfigStore
from unocloud.tracker import SyncTracker
from unocloud.utils import is_debug_enabled


def _print_section(title):
    print("\n" + "="*60)
    print(title)
    print("="*60)


def select_targets(config_store, tenant_id, mapping_id=None):
    """
    Resolve the command-line tenant/mapping selection.

    Returns:
        list: (tenant, mappings) pairs; mappings is None for "every enabled mapping"

    Raises:
        NotFoundError: If the tenant or mapping does not exist
    """
    if tenant_id == 'all':
        return [(tenant, None) for tenant in config_store.get_all_tenants()]

    tenant = config_store.require(tenant_id)
    if mapping_id is None:
        return [(tenant, None)]

    mapping = tenant.get_mapping(mapping_id)
    if mapping is None:
        raise NotFoundError(f'Mapping "{mapping_id}" not found for tenant "{tenant_id}"')
    return [(tenant, [mapping])]


def run_sync(engine, targets):
    """
    Sync the selected targets.

    Returns:
        int: Number of jobs that did not complete cleanly
    """
    problems = 0
    for tenant, mappings in targets:
        _print_section(f"[*] TENANT {tenant.name} ({tenant.id})")
        if mappings is None:
            jobs = engine.sync_tenant(tenant)
        else:
            jobs = [engine.sync_mapping(tenant, m) for m in mappings]
        problems += sum(1 for job in jobs if job.status != 'completed' or job.errors)
    return problems


def run_dry_run(engine, targets):
    for tenant, mappings in targets:
        _print_section(f"[*] DRY RUN {tenant.name} ({tenant.id})")
        for mapping in mappings or tenant.enabled_mappings:
            result = engine.dry_run(tenant, mapping)
            print(f"[*] {mapping.source} -> {mapping.destination.site_url}/{mapping.destination.library}")
            print(f"   - Would upload: {len(result.to_sync)} file(s) ({format_bytes(result.total_size)})")
            print(f"   - Up to date:   {result.up_to_date} file(s)")
            for scanned in result.to_sync:
                print(f"[→]   {scanned.relative_path} ({format_bytes(scanned.size)})")


def show_status(tracker, targets):
    for tenant, _ in targets:
        _print_section(f"[=] STATUS {tenant.name} ({tenant.id})")
        stats = tracker.get_stats(tenant.id)
        print(f"Ledger records: {stats['total']} "
              f"(synced {stats['synced']}, failed {stats['failed']}, "
              f"pending {stats['pending']}, deleted {stats['deleted']})")

        jobs = tracker.get_recent_jobs(tenant.id, limit=5)
        if not jobs:
            print("[=] No sync jobs recorded")
            continue
        print("Recent jobs:")
        for job in jobs:
            print(f"   - {job.started_at}  {job.status:<10} "
                  f"{job.files_processed}/{job.files_total} files, {job.files_failed} failed")


def main():
    """
    Main execution function.

    Process:
        1. Parse configuration from command-line arguments and environment
        2. Open the tenant configuration and the ledger
        3. Run the requested command
        4. Exit with an appropriate code
    """
    try:
        config = parse_config()
    except ValueError as e:
        print(f"[Error] Invalid configuration: {e}")
        sys.exit(1)

    # Set environment variables for debug flags (enables existing debug checks in utils.py)
    if config.debug:
        os.environ['DEBUG'] = 'true'
    if config.debug_metadata:
        os.environ['DEBUG_METADATA'] = 'true'

    start = time.time()
    try:
        config_store = JsonConfigStore(config.config_dir)
        tracker = SyncTracker(config.data_dir)
    except StorageError as e:
        print(f"[Error] {e}")
        sys.exit(1)

    try:
        targets = select_targets(config_store, config.tenant_id, config.mapping_id)
        if not targets:
            print(f"[!] No tenants configured in {config_store.tenants_path}")
            sys.exit(1)

        if config.command == 'status':
            show_status(tracker, targets)
        elif config.command == 'clear':
            tenant = targets[0][0]
            removed = tracker.clear_history(tenant.id, config.mapping_id, failed_only=config.failed_only)
            scope = 'failed ' if config.failed_only else ''
            print(f"[✓] Cleared {removed} {scope}ledger record(s) for {tenant.id}")
        else:
            engine = SyncEngine(config_store, tracker, config=config)
            if config.dry_run:
                run_dry_run(engine, targets)
            else:
                problems = run_sync(engine, targets)
                if problems:
                    print(f"[!] {problems} job(s) finished with errors")
                    sys.exit(1)
    except UnoCloudError as e:
        print(f"[Error] {e}")
        sys.exit(1)
    finally:
        tracker.close()

    if is_debug_enabled():
        print(f"[✓] Done in {time.time() - start:.1f}s")


if __name__ == "__main__":
    main()
