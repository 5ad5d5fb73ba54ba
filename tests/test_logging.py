"""Unit tests for docvault.engine.logging — FileLogger, AsyncLogQueue, LogRetentionManager."""

import gzip
import json
from datetime import date, timedelta

import pytest

from docvault.engine.logging import (
    DEFAULT_RETENTION,
    OBJECT_TYPE_CATEGORIES,
    AsyncLogQueue,
    FileLogger,
    LogEntry,
    LogRetentionManager,
    get_log_queue,
    init_logging,
    log,
    log_blob_event,
    log_document_event,
    log_quota_event,
    log_security_event,
    log_system_event,
    shutdown_logging,
)


class TestObjectTypeCategories:
    """Verify the category mapping is complete."""

    def test_expected_types(self):
        assert set(OBJECT_TYPE_CATEGORIES) == {
            "documents", "versions", "quota", "blobs", "shares", "folders", "system",
        }

    def test_blobs_have_reconciliation(self):
        assert "reconciliation" in OBJECT_TYPE_CATEGORIES["blobs"]

    def test_default_retention(self):
        assert DEFAULT_RETENTION["security"] > DEFAULT_RETENTION["execution"]


class TestLogEntry:
    def test_to_json(self):
        entry = LogEntry("documents", "execution", {"document_id": 4})
        assert json.loads(entry.to_json()) == {"document_id": 4}


class TestFileLogger:
    """Test FileLogger file writing."""

    def test_write_creates_file(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "logs"))
        fl.write(LogEntry("documents", "execution", {"event": "document_uploaded"}))

        log_dir = tmp_path / "logs" / "documents" / "execution"
        files = list(log_dir.glob("*.jsonl"))
        assert len(files) == 1
        assert json.loads(files[0].read_text().strip())["event"] == "document_uploaded"

    def test_write_batch_groups_by_file(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "logs"))
        fl.write_batch(
            [LogEntry("quota", "execution", {"n": i}) for i in range(3)]
            + [LogEntry("blobs", "reconciliation", {"n": 9})]
        )
        quota_file = next((tmp_path / "logs" / "quota" / "execution").glob("*.jsonl"))
        assert len(quota_file.read_text().strip().split("\n")) == 3
        assert list((tmp_path / "logs" / "blobs" / "reconciliation").glob("*.jsonl"))

    def test_query_filters(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "logs"))
        fl.write_batch([
            LogEntry("documents", "execution", {"document_id": 1, "event": "a"}),
            LogEntry("documents", "execution", {"document_id": 2, "event": "b"}),
        ])
        rows = fl.query("documents", "execution", filters={"document_id": 2})
        assert [r["event"] for r in rows] == ["b"]

    def test_query_missing_dir(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "logs"))
        assert fl.query("nothing", "execution") == []


class TestAsyncLogQueue:
    def test_stop_drains(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "logs"))
        queue = AsyncLogQueue(fl, flush_interval_ms=1000)
        for i in range(4):
            assert queue.push(LogEntry("system", "execution", {"n": i}))
        queue.stop()
        assert queue.pending_count == 0
        assert len(fl.query("system", "execution")) == 4

    def test_full_queue_drops(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path / "logs"))
        queue = AsyncLogQueue(fl, max_queue_size=1)
        assert queue.push(LogEntry("system", "execution", {}))
        assert not queue.push(LogEntry("system", "execution", {}))
        assert queue.dropped_count == 1


class TestGlobalQueue:
    def test_log_without_init_is_dropped(self):
        assert get_log_queue() is None
        assert log(log_system_event("ping")) is False

    def test_init_and_shutdown(self, tmp_path):
        queue = init_logging(log_dir=str(tmp_path / "logs"))
        assert get_log_queue() is queue
        assert log(log_system_event("ping")) is True
        shutdown_logging()
        assert get_log_queue() is None
        rows = FileLogger(str(tmp_path / "logs")).query("system", "execution")
        assert rows[-1]["event"] == "ping"


class TestLogRetentionManager:
    """Test retention cleanup."""

    def test_cleanup_empty_dir(self, tmp_path):
        mgr = LogRetentionManager(log_dir=str(tmp_path / "logs"))
        assert mgr.cleanup() == {"deleted": 0, "compressed": 0}

    def test_deletes_and_compresses(self, tmp_path):
        today = date(2026, 6, 1)
        cat_dir = tmp_path / "logs" / "documents" / "execution"
        cat_dir.mkdir(parents=True)
        old = cat_dir / f"{(today - timedelta(days=120)).isoformat()}.jsonl"
        stale = cat_dir / f"{(today - timedelta(days=10)).isoformat()}.jsonl"
        fresh = cat_dir / f"{today.isoformat()}.jsonl"
        for path in (old, stale, fresh):
            path.write_text('{"event":"x"}\n')

        mgr = LogRetentionManager(log_dir=str(tmp_path / "logs"), compress_after_days=7)
        result = mgr.cleanup(today=today)

        assert result == {"deleted": 1, "compressed": 1}
        assert not old.exists()
        assert not stale.exists()
        with gzip.open(stale.with_suffix(".jsonl.gz"), "rt") as f:
            assert f.read() == '{"event":"x"}\n'
        assert fresh.exists()


class TestLogBuilders:
    """Test convenience log entry builder functions."""

    def test_document_event(self):
        entry = log_document_event("uploaded", 5, 1, 2, version=1, size_bytes=100)
        assert entry.object_type == "documents"
        assert entry.category == "execution"
        assert entry.data["event"] == "document_uploaded"
        assert entry.data["size_bytes"] == 100

    def test_versioned_goes_to_versions(self):
        assert log_document_event("versioned", 5, 1, 2, version=2).object_type == "versions"

    def test_quota_denied_is_warning(self):
        entry = log_quota_event("admit", 2, 500, admitted=False, storage_used=10, storage_limit=100)
        assert entry.object_type == "quota"
        assert entry.data["level"] == "WARNING"
        assert entry.data["storage_limit"] == 100

    @pytest.mark.parametrize("kwargs,category", [
        ({}, "execution"),
        ({"reason": "purge"}, "reconciliation"),
        ({"error": "timeout"}, "reconciliation"),
    ])
    def test_blob_event_category(self, kwargs, category):
        entry = log_blob_event("deleted", "2/k", 2, **kwargs)
        assert entry.category == category

    def test_security_event(self):
        entry = log_security_event(
            event="access_denied",
            object_ref="documents.3",
            object_type="documents",
            permission_needed="DOWNLOAD",
            actor_id=9,
        )
        assert entry.object_type == "documents"
        assert entry.category == "security"
        assert entry.data["level"] == "WARNING"

    def test_security_event_unknown_type_routes_to_system(self):
        entry = log_security_event("x", "ref", "quota", "OWNER", actor_id=1)
        assert entry.object_type == "system"

    def test_system_event(self):
        entry = log_system_event("runtime_started", details={"environment": "dev"})
        assert entry.object_type == "system"
        assert entry.data["details"] == {"environment": "dev"}
