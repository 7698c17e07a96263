# -*- coding: utf-8 -*-
"""
Sync ledger for UnoCloud sync.

Persists one record per (tenant, mapping, local path) with the digest of the
last transferred content, plus the history of sync jobs. Backed by SQLite
through SQLAlchemy, in WAL journal mode so that concurrent readers and writers
serialize inside the storage layer rather than in the callers.
"""

import json
import os
import time
import uuid
from contextlib import contextmanager

from sqlalchemy import (
    Column,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DB_FILE
from .exceptions import StorageError
from .models import (
    FILE_STATUSES,
    JOB_PENDING,
    JOB_RUNNING,
    STATUS_DELETED,
    STATUS_FAILED,
    STATUS_SYNCED,
    SyncedFile,
    SyncError,
    SyncJob,
)
from .utils import is_debug_enabled, utc_now_iso

Base = declarative_base()

# Seconds a writer waits for the database lock before giving up
BUSY_TIMEOUT = 30

# Batch size for bulk status updates (keeps IN lists below SQLite's variable limit)
UPDATE_BATCH_SIZE = 500


class SyncedFileRecord(Base):
    """Ledger row for one local file of one mapping."""

    __tablename__ = "synced_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Text, nullable=False)
    mapping_id = Column(Text, nullable=False)
    local_path = Column(Text, nullable=False)      # Relative POSIX path
    remote_path = Column(Text, nullable=False)
    drive_item_id = Column(Text)
    file_hash = Column(Text, nullable=False)
    file_size = Column(Integer, nullable=False)
    local_modified_at = Column(Text, nullable=False)
    remote_modified_at = Column(Text)
    synced_at = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    error_message = Column(Text)

    __table_args__ = (
        UniqueConstraint("tenant_id", "mapping_id", "local_path", name="uq_synced_files_path"),
    )

    def __repr__(self):
        return f"<SyncedFileRecord(path={self.local_path}, status={self.status})>"


class SyncJobRecord(Base):
    """One sync run."""

    __tablename__ = "sync_jobs"

    id = Column(Text, primary_key=True)
    tenant_id = Column(Text, nullable=False)
    mapping_id = Column(Text)
    status = Column(String(16), nullable=False, default="pending")
    started_at = Column(Text, nullable=False)
    completed_at = Column(Text)
    files_total = Column(Integer, default=0)
    files_processed = Column(Integer, default=0)
    files_failed = Column(Integer, default=0)
    bytes_total = Column(Integer, default=0)
    bytes_transferred = Column(Integer, default=0)
    errors = Column(Text)                          # JSON list of SyncError dicts

    def __repr__(self):
        return f"<SyncJobRecord(id={self.id}, status={self.status})>"


Index("idx_synced_files_tenant", SyncedFileRecord.tenant_id)
Index("idx_synced_files_mapping", SyncedFileRecord.mapping_id)
Index("idx_synced_files_status", SyncedFileRecord.status)
Index("idx_sync_jobs_tenant", SyncJobRecord.tenant_id)
Index("idx_sync_jobs_status", SyncJobRecord.status)


def _to_synced_file(record):
    return SyncedFile(
        id=record.id,
        tenant_id=record.tenant_id,
        mapping_id=record.mapping_id,
        local_path=record.local_path,
        remote_path=record.remote_path,
        drive_item_id=record.drive_item_id or "",
        file_hash=record.file_hash,
        file_size=record.file_size,
        local_modified_at=record.local_modified_at,
        remote_modified_at=record.remote_modified_at or "",
        synced_at=record.synced_at,
        status=record.status,
        error_message=record.error_message,
    )


def _to_sync_job(record):
    return SyncJob(
        id=record.id,
        tenant_id=record.tenant_id,
        mapping_id=record.mapping_id,
        status=record.status,
        started_at=record.started_at,
        completed_at=record.completed_at,
        files_total=record.files_total or 0,
        files_processed=record.files_processed or 0,
        files_failed=record.files_failed or 0,
        bytes_total=record.bytes_total or 0,
        bytes_transferred=record.bytes_transferred or 0,
        errors=[SyncError.from_dict(e) for e in json.loads(record.errors or "[]")],
    )


def new_job_id():
    """Job ids look like job_<epoch millis>_<9 random chars>."""
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SyncTracker:
    """
    Durable record of what has been uploaded and of every sync job.

    Each operation runs in its own short session, so one tracker can be shared
    by all upload worker threads. Any storage failure is raised as StorageError.
    """

    def __init__(self, data_dir=None, db_file=DB_FILE):
        """
        Args:
            data_dir (str, optional): Directory for the database file,
                defaults to .unocloud/data under the working directory
            db_file (str): Database file name

        Raises:
            StorageError: If the directory or database cannot be created
        """
        data_dir = data_dir or os.path.join(os.getcwd(), '.unocloud', 'data')
        try:
            os.makedirs(data_dir, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create data directory {data_dir}: {e}") from e

        self.db_path = os.path.join(data_dir, db_file)
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={'check_same_thread': False, 'timeout': BUSY_TIMEOUT},
        )
        event.listen(self.engine, 'connect', self._on_connect)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Cannot initialize sync database {self.db_path}: {e}") from e

        if is_debug_enabled():
            print(f"[DEBUG] Initialized sync tracker: {self.db_path}")

    @staticmethod
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT * 1000}")
        cursor.close()

    @contextmanager
    def _session(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Sync database error: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _file_query(tenant_id, mapping_id, local_path):
        return select(SyncedFileRecord).where(
            SyncedFileRecord.tenant_id == tenant_id,
            SyncedFileRecord.mapping_id == mapping_id,
            SyncedFileRecord.local_path == local_path,
        )

    # ========================================================================
    # Synced files
    # ========================================================================

    def get_synced_file(self, tenant_id, mapping_id, local_path):
        """Return the SyncedFile for a path, or None if it was never recorded."""
        with self._session() as session:
            record = session.scalars(self._file_query(tenant_id, mapping_id, local_path)).first()
            return _to_synced_file(record) if record else None

    def get_synced_files_for_mapping(self, tenant_id, mapping_id):
        with self._session() as session:
            records = session.scalars(
                select(SyncedFileRecord)
                .where(SyncedFileRecord.tenant_id == tenant_id,
                       SyncedFileRecord.mapping_id == mapping_id)
                .order_by(SyncedFileRecord.local_path)
            ).all()
            return [_to_synced_file(r) for r in records]

    def upsert_synced_file(self, synced_file):
        """
        Insert or replace the record keyed by (tenant, mapping, local path).

        Args:
            synced_file (SyncedFile): Record to store; its id is ignored
        """
        values = {
            'tenant_id': synced_file.tenant_id,
            'mapping_id': synced_file.mapping_id,
            'local_path': synced_file.local_path,
            'remote_path': synced_file.remote_path,
            'drive_item_id': synced_file.drive_item_id,
            'file_hash': synced_file.file_hash,
            'file_size': synced_file.file_size,
            'local_modified_at': synced_file.local_modified_at,
            'remote_modified_at': synced_file.remote_modified_at,
            'synced_at': synced_file.synced_at or utc_now_iso(),
            'status': synced_file.status,
            'error_message': synced_file.error_message,
        }
        stmt = sqlite_insert(SyncedFileRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['tenant_id', 'mapping_id', 'local_path'],
            set_={key: stmt.excluded[key] for key in values
                  if key not in ('tenant_id', 'mapping_id', 'local_path')},
        )
        with self._session() as session:
            session.execute(stmt)

    def update_file_status(self, tenant_id, mapping_id, local_path, status, error_message=None):
        if status not in FILE_STATUSES:
            raise ValueError(f"Unknown file status: {status}")
        with self._session() as session:
            session.execute(
                update(SyncedFileRecord)
                .where(SyncedFileRecord.tenant_id == tenant_id,
                       SyncedFileRecord.mapping_id == mapping_id,
                       SyncedFileRecord.local_path == local_path)
                .values(status=status, error_message=error_message, synced_at=utc_now_iso())
            )

    def needs_sync(self, tenant_id, mapping_id, local_path, current_hash):
        """
        Decide whether a file must be uploaded.

        True when there is no record, when the recorded digest differs, or
        when the last attempt did not finish as synced (failed, interrupted or
        previously marked deleted).

        Returns:
            bool: True if the file should be uploaded
        """
        existing = self.get_synced_file(tenant_id, mapping_id, local_path)

        if existing is None:
            return True
        if existing.status == STATUS_FAILED:
            return True
        if existing.file_hash != current_hash:
            return True
        return existing.status != STATUS_SYNCED

    def delete_synced_file(self, tenant_id, mapping_id, local_path):
        with self._session() as session:
            session.execute(
                delete(SyncedFileRecord)
                .where(SyncedFileRecord.tenant_id == tenant_id,
                       SyncedFileRecord.mapping_id == mapping_id,
                       SyncedFileRecord.local_path == local_path)
            )

    def mark_missing_as_deleted(self, tenant_id, mapping_id, present_paths):
        """
        Mark records whose local file no longer exists as deleted.

        Only the ledger is touched; remote files are left in place.

        Args:
            present_paths (iterable): Relative paths found by the latest scan

        Returns:
            int: Number of records marked deleted
        """
        present = set(present_paths)
        with self._session() as session:
            known = session.scalars(
                select(SyncedFileRecord.local_path)
                .where(SyncedFileRecord.tenant_id == tenant_id,
                       SyncedFileRecord.mapping_id == mapping_id,
                       SyncedFileRecord.status != STATUS_DELETED)
            ).all()
            missing = [path for path in known if path not in present]

            for start in range(0, len(missing), UPDATE_BATCH_SIZE):
                batch = missing[start:start + UPDATE_BATCH_SIZE]
                session.execute(
                    update(SyncedFileRecord)
                    .where(SyncedFileRecord.tenant_id == tenant_id,
                           SyncedFileRecord.mapping_id == mapping_id,
                           SyncedFileRecord.local_path.in_(batch))
                    .values(status=STATUS_DELETED, error_message=None)
                )

        if missing and is_debug_enabled():
            print(f"[DEBUG] Marked {len(missing)} missing file(s) as deleted for mapping {mapping_id}")
        return len(missing)

    def get_stats(self, tenant_id):
        """
        Count a tenant's ledger records by status.

        Returns:
            dict: {'total': n, 'pending': n, 'syncing': n, 'synced': n, 'failed': n, 'deleted': n}
        """
        stats = {status: 0 for status in FILE_STATUSES}
        with self._session() as session:
            rows = session.execute(
                select(SyncedFileRecord.status, func.count(SyncedFileRecord.id))
                .where(SyncedFileRecord.tenant_id == tenant_id)
                .group_by(SyncedFileRecord.status)
            ).all()
        for status, count in rows:
            stats[status] = count
        stats['total'] = sum(count for _, count in rows)
        return stats

    def clear_history(self, tenant_id, mapping_id=None, failed_only=False):
        """
        Delete ledger records so that the affected files are uploaded again.

        Args:
            tenant_id (str): Tenant whose records are removed
            mapping_id (str, optional): Restrict to one mapping
            failed_only (bool): Only remove records with status failed

        Returns:
            int: Number of records removed
        """
        stmt = delete(SyncedFileRecord).where(SyncedFileRecord.tenant_id == tenant_id)
        if mapping_id:
            stmt = stmt.where(SyncedFileRecord.mapping_id == mapping_id)
        if failed_only:
            stmt = stmt.where(SyncedFileRecord.status == STATUS_FAILED)

        with self._session() as session:
            result = session.execute(stmt)
            return result.rowcount or 0

    # ========================================================================
    # Sync jobs
    # ========================================================================

    def create_job(self, tenant_id, mapping_id=None):
        """Create and persist a pending job."""
        job = SyncJob(
            id=new_job_id(),
            tenant_id=tenant_id,
            mapping_id=mapping_id,
            status=JOB_PENDING,
            started_at=utc_now_iso(),
        )
        with self._session() as session:
            session.add(SyncJobRecord(
                id=job.id,
                tenant_id=job.tenant_id,
                mapping_id=job.mapping_id,
                status=job.status,
                started_at=job.started_at,
                files_total=0,
                files_processed=0,
                files_failed=0,
                bytes_total=0,
                bytes_transferred=0,
                errors="[]",
            ))
        return job

    def set_job_totals(self, job_id, files_total, bytes_total):
        """Record the job's workload and move it to running."""
        with self._session() as session:
            session.execute(
                update(SyncJobRecord)
                .where(SyncJobRecord.id == job_id)
                .values(files_total=files_total, bytes_total=bytes_total, status=JOB_RUNNING)
            )

    def update_job_progress(self, job_id, files_processed, bytes_transferred, files_failed=None):
        """
        Record job progress.

        Args:
            files_failed (int, optional): New failure count; None leaves the
                stored count unchanged
        """
        values = {'files_processed': files_processed, 'bytes_transferred': bytes_transferred}
        if files_failed is not None:
            values['files_failed'] = files_failed
        with self._session() as session:
            session.execute(update(SyncJobRecord).where(SyncJobRecord.id == job_id).values(**values))

    def complete_job(self, job_id, status, errors=None):
        """Finalize a job with its terminal status and error list."""
        payload = json.dumps([e.to_dict() for e in (errors or [])])
        with self._session() as session:
            session.execute(
                update(SyncJobRecord)
                .where(SyncJobRecord.id == job_id)
                .values(status=status, completed_at=utc_now_iso(), errors=payload)
            )

    def get_job(self, job_id):
        with self._session() as session:
            record = session.get(SyncJobRecord, job_id)
            return _to_sync_job(record) if record else None

    def get_recent_jobs(self, tenant_id, limit=10):
        """Most recent jobs for a tenant, newest first."""
        with self._session() as session:
            records = session.scalars(
                select(SyncJobRecord)
                .where(SyncJobRecord.tenant_id == tenant_id)
                .order_by(SyncJobRecord.started_at.desc())
                .limit(limit)
            ).all()
            return [_to_sync_job(r) for r in records]

    def close(self):
        """Release pooled database connections."""
        self.engine.dispose()
