"""Tests for the sync ledger."""

from unittest.mock import patch

import pytest

from unocloud.exceptions import StorageError
from unocloud.models import SyncedFile, SyncError
from unocloud.tracker import SyncTracker, new_job_id


def synced(local_path, file_hash="abc", status="synced", tenant_id="contoso", mapping_id="map-1"):
    return SyncedFile(
        tenant_id=tenant_id,
        mapping_id=mapping_id,
        local_path=local_path,
        remote_path=f"Backup/{local_path}",
        drive_item_id="item-1",
        file_hash=file_hash,
        file_size=10,
        local_modified_at="2024-01-01T00:00:00+00:00",
        status=status,
    )


class TestSyncedFiles:
    """Test ledger records."""

    def test_get_missing_record(self, tracker):
        assert tracker.get_synced_file("contoso", "map-1", "a.txt") is None

    def test_upsert_and_get(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))

        record = tracker.get_synced_file("contoso", "map-1", "a.txt")

        assert record.id is not None
        assert record.remote_path == "Backup/a.txt"
        assert record.file_hash == "abc"
        assert record.status == "synced"
        assert record.synced_at

    def test_upsert_replaces_existing_key(self, tracker):
        """Test that the (tenant, mapping, path) key holds a single record."""
        tracker.upsert_synced_file(synced("a.txt", file_hash="old"))
        tracker.upsert_synced_file(synced("a.txt", file_hash="new", status="failed"))

        records = tracker.get_synced_files_for_mapping("contoso", "map-1")

        assert len(records) == 1
        assert records[0].file_hash == "new"
        assert records[0].status == "failed"

    def test_records_scoped_by_tenant_and_mapping(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))
        tracker.upsert_synced_file(synced("a.txt", tenant_id="fabrikam"))
        tracker.upsert_synced_file(synced("a.txt", mapping_id="map-2"))

        assert len(tracker.get_synced_files_for_mapping("contoso", "map-1")) == 1
        assert len(tracker.get_synced_files_for_mapping("fabrikam", "map-1")) == 1
        assert tracker.get_stats("contoso")["total"] == 2

    def test_update_file_status(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))

        tracker.update_file_status("contoso", "map-1", "a.txt", "failed", "boom")

        record = tracker.get_synced_file("contoso", "map-1", "a.txt")
        assert record.status == "failed"
        assert record.error_message == "boom"

    def test_update_file_status_rejects_unknown_status(self, tracker):
        with pytest.raises(ValueError, match="Unknown file status"):
            tracker.update_file_status("contoso", "map-1", "a.txt", "exploded")

    def test_delete_synced_file(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))

        tracker.delete_synced_file("contoso", "map-1", "a.txt")

        assert tracker.get_synced_file("contoso", "map-1", "a.txt") is None


class TestNeedsSync:
    """Test the change-detection decision."""

    def test_no_record(self, tracker):
        assert tracker.needs_sync("contoso", "map-1", "a.txt", "abc") is True

    def test_same_hash_synced(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))
        assert tracker.needs_sync("contoso", "map-1", "a.txt", "abc") is False

    def test_hash_changed(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))
        assert tracker.needs_sync("contoso", "map-1", "a.txt", "def") is True

    def test_failed_record_with_same_hash(self, tracker):
        tracker.upsert_synced_file(synced("a.txt", status="failed"))
        assert tracker.needs_sync("contoso", "map-1", "a.txt", "abc") is True

    @pytest.mark.parametrize("status", ["pending", "syncing", "deleted"])
    def test_unfinished_records_are_synced_again(self, tracker, status):
        tracker.upsert_synced_file(synced("a.txt", status=status))
        assert tracker.needs_sync("contoso", "map-1", "a.txt", "abc") is True


class TestLedgerMaintenance:
    """Test bulk ledger operations."""

    def test_mark_missing_as_deleted(self, tracker):
        for path in ("a.txt", "b/c.txt", "d.txt"):
            tracker.upsert_synced_file(synced(path))

        count = tracker.mark_missing_as_deleted("contoso", "map-1", ["a.txt"])

        assert count == 2
        assert tracker.get_synced_file("contoso", "map-1", "a.txt").status == "synced"
        assert tracker.get_synced_file("contoso", "map-1", "d.txt").status == "deleted"
        assert tracker.mark_missing_as_deleted("contoso", "map-1", ["a.txt"]) == 0

    def test_mark_missing_in_batches(self, tracker):
        for i in range(600):
            tracker.upsert_synced_file(synced(f"f{i}.txt"))

        assert tracker.mark_missing_as_deleted("contoso", "map-1", []) == 600
        assert tracker.get_stats("contoso")["deleted"] == 600

    def test_get_stats(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))
        tracker.upsert_synced_file(synced("b.txt"))
        tracker.upsert_synced_file(synced("c.txt", status="failed"))

        stats = tracker.get_stats("contoso")

        assert stats["total"] == 3
        assert stats["synced"] == 2
        assert stats["failed"] == 1
        assert stats["pending"] == 0

    def test_clear_history_failed_only(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))
        tracker.upsert_synced_file(synced("b.txt", status="failed"))

        assert tracker.clear_history("contoso", failed_only=True) == 1
        assert [f.local_path for f in tracker.get_synced_files_for_mapping("contoso", "map-1")] == ["a.txt"]

    def test_clear_history_for_mapping(self, tracker):
        tracker.upsert_synced_file(synced("a.txt"))
        tracker.upsert_synced_file(synced("a.txt", mapping_id="map-2"))

        assert tracker.clear_history("contoso", "map-2") == 1
        assert tracker.get_stats("contoso")["total"] == 1


class TestSyncJobs:
    """Test job records."""

    def test_new_job_id_format(self):
        job_id = new_job_id()
        prefix, millis, suffix = job_id.split("_")
        assert prefix == "job"
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_job_lifecycle(self, tracker):
        job = tracker.create_job("contoso", "map-1")
        assert tracker.get_job(job.id).status == "pending"

        tracker.set_job_totals(job.id, 3, 300)
        running = tracker.get_job(job.id)
        assert running.status == "running"
        assert running.files_total == 3

        tracker.update_job_progress(job.id, 2, 200, 1)
        tracker.complete_job(job.id, "completed", [
            SyncError(file_path="c.txt", error="boom", timestamp="2024-01-01T00:00:00+00:00", retry_count=2),
        ])

        finished = tracker.get_job(job.id)
        assert finished.status == "completed"
        assert finished.is_finished
        assert finished.completed_at
        assert finished.files_processed == 2
        assert finished.files_failed == 1
        assert finished.bytes_transferred == 200
        assert finished.errors[0].file_path == "c.txt"
        assert finished.errors[0].retry_count == 2

    def test_update_progress_keeps_failed_count(self, tracker):
        job = tracker.create_job("contoso")
        tracker.update_job_progress(job.id, 1, 10, 2)
        tracker.update_job_progress(job.id, 2, 20)

        assert tracker.get_job(job.id).files_failed == 2

    def test_get_missing_job(self, tracker):
        assert tracker.get_job("job_0_nothing") is None

    def test_recent_jobs_newest_first(self, tracker):
        timestamps = [
            "2024-01-01T00:00:00+00:00",
            "2024-01-03T00:00:00+00:00",
            "2024-01-02T00:00:00+00:00",
        ]
        with patch("unocloud.tracker.utc_now_iso", side_effect=timestamps):
            ids = [tracker.create_job("contoso").id for _ in timestamps]
        tracker.create_job("fabrikam")

        recent = tracker.get_recent_jobs("contoso", limit=2)

        assert [job.id for job in recent] == [ids[1], ids[2]]


class TestTrackerStorage:
    """Test database setup."""

    def test_ledger_survives_reopen(self, temp_dir):
        first = SyncTracker(str(temp_dir / "data"))
        first.upsert_synced_file(synced("a.txt"))
        first.close()

        second = SyncTracker(str(temp_dir / "data"))
        try:
            assert second.get_synced_file("contoso", "map-1", "a.txt") is not None
        finally:
            second.close()

    def test_unusable_data_dir_raises_storage_error(self, temp_dir):
        blocker = temp_dir / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(StorageError):
            SyncTracker(str(blocker))
