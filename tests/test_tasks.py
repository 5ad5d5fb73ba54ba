"""Unit tests for docvault.tasks and docvault.engine.runtime — Celery sweeps and wiring."""

from datetime import timedelta

import pytest

from docvault import tasks
from docvault.engine.config import (
    BlobStoreConfig,
    DatabaseConfig,
    LoggingConfig,
    MaintenanceConfig,
    VaultConfig,
    set_config,
)
from docvault.engine.runtime import VaultRuntime, get_runtime, init_runtime, reset_runtime


@pytest.fixture
def vault_config(tmp_path):
    return VaultConfig(
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'tasks.db'}"),
        blob_store=BlobStoreConfig(root=str(tmp_path / "blobs"), signing_key="tasks-key"),
        logging=LoggingConfig(directory=str(tmp_path / "logs")),
    )


@pytest.fixture
def runtime(vault_config):
    set_config(vault_config)
    rt = init_runtime(vault_config)
    rt.startup(create_tables=True)
    yield rt
    reset_runtime()


class TestBeatSchedule:
    def test_entries(self):
        schedule = tasks.build_beat_schedule(MaintenanceConfig(pending_deletion_interval_seconds=120))
        assert set(schedule) == {
            "retry-pending-deletions", "collect-orphans", "purge-deleted-documents",
            "purge-expired-grants", "verify-quota", "cleanup-logs",
        }
        entry = schedule["retry-pending-deletions"]
        assert entry["task"] == "docvault.tasks.retry_pending_deletions"
        assert entry["schedule"] == timedelta(seconds=120)
        assert entry["options"]["queue"] == tasks.MAINTENANCE_QUEUE

    def test_task_names_registered(self):
        registered = set(tasks.celery_app.tasks)
        for name in (
            "docvault.tasks.retry_pending_deletions",
            "docvault.tasks.collect_orphans",
            "docvault.tasks.purge_deleted_documents",
            "docvault.tasks.purge_expired_grants",
            "docvault.tasks.verify_quota",
            "docvault.tasks.cleanup_logs",
        ):
            assert name in registered

    def test_init_celery_overrides(self):
        app = tasks.init_celery(broker="memory://", backend="cache+memory://")
        assert app is tasks.get_celery_app()
        assert app.conf.broker_url == "memory://"
        assert app.conf.result_backend == "cache+memory://"


class TestTasks:
    """Tasks run synchronously against the global runtime."""

    def test_retry_pending_deletions(self, runtime):
        assert tasks.retry_pending_deletions() == {"attempted": 0, "deleted": 0, "failed": 0}

    def test_collect_orphans(self, runtime):
        runtime.blob_store.put("1/orphan", b"x")
        result = tasks.collect_orphans(grace_seconds=0)
        assert result["scanned"] == 1

    def test_purge_deleted_documents(self, runtime):
        assert tasks.purge_deleted_documents(older_than_days=1)["documents"] == 0

    def test_purge_expired_grants(self, runtime):
        assert tasks.purge_expired_grants() == {"removed": 0}

    def test_verify_quota_reports_drift_only(self, runtime):
        ws = runtime.service.create_workspace("Team", 1, storage_limit=100)
        assert tasks.verify_quota() == []

        from docvault.db.models import Workspace
        from docvault.db.session import session_scope

        with session_scope(runtime.session_factory) as session:
            session.get(Workspace, ws.id).storage_used = 10
        [report] = tasks.verify_quota(workspace_id=ws.id)
        assert report["drift"] == 10
        assert report["fixed"] is False

    def test_cleanup_logs(self, runtime):
        assert tasks.cleanup_logs() == {"deleted": 0, "compressed": 0}


class TestRuntime:
    def test_startup_wires_components(self, runtime):
        assert runtime.started
        assert runtime.service is not None
        assert runtime.reconciler is not None
        assert runtime.log_queue is not None
        assert get_runtime() is runtime

    def test_end_to_end_through_runtime(self, runtime):
        ws = runtime.service.create_workspace("Team", 1)
        doc = runtime.service.upload(b"hello", "hi.txt", None, ws.id, 1)
        link = runtime.service.download_url(doc.id, 1)
        assert runtime.blob_store.open_signed(link.url) == b"hello"

    def test_shutdown_idempotent(self, vault_config):
        rt = VaultRuntime(vault_config, enable_audit_log=False)
        rt.startup(create_tables=True)
        assert rt.cleanup_logs() == {"deleted": 0, "compressed": 0}
        rt.shutdown()
        rt.shutdown()
        assert not rt.started

    def test_get_runtime_autostarts(self, vault_config):
        set_config(vault_config)
        reset_runtime()
        try:
            rt = get_runtime()
            assert rt.started
            assert rt.config is vault_config
        finally:
            reset_runtime()
