"""
DocVault Celery Tasks — Scheduled maintenance sweeps.

Tasks:
    docvault.tasks.retry_pending_deletions
    docvault.tasks.collect_orphans
    docvault.tasks.purge_deleted_documents
    docvault.tasks.purge_expired_grants
    docvault.tasks.verify_quota
    docvault.tasks.cleanup_logs

Run a worker + beat:
    celery -A docvault.tasks worker -B -Q maintenance

Intervals come from docvault.yaml → maintenance.*
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from celery import Celery

from docvault.engine.config import MaintenanceConfig, get_config
from docvault.engine.runtime import get_runtime

logger = logging.getLogger("docvault.tasks")

MAINTENANCE_QUEUE = "maintenance"


# ---------------------------------------------------------------------------
# Celery app (configured from docvault.yaml)
# ---------------------------------------------------------------------------

_celery_app: Optional[Celery] = None


def build_beat_schedule(maintenance: MaintenanceConfig) -> Dict[str, Any]:
    """Beat schedule entries for every sweep, one per configured interval."""
    def entry(task: str, seconds: int) -> Dict[str, Any]:
        return {
            "task": task,
            "schedule": timedelta(seconds=seconds),
            "options": {"queue": MAINTENANCE_QUEUE},
        }

    return {
        "retry-pending-deletions": entry(
            "docvault.tasks.retry_pending_deletions",
            maintenance.pending_deletion_interval_seconds,
        ),
        "collect-orphans": entry(
            "docvault.tasks.collect_orphans",
            maintenance.orphan_scan_interval_seconds,
        ),
        "purge-deleted-documents": entry(
            "docvault.tasks.purge_deleted_documents",
            maintenance.deleted_purge_interval_seconds,
        ),
        "purge-expired-grants": entry(
            "docvault.tasks.purge_expired_grants",
            maintenance.grant_purge_interval_seconds,
        ),
        "verify-quota": entry("docvault.tasks.verify_quota", 86400),
        "cleanup-logs": entry("docvault.tasks.cleanup_logs", 86400),
    }


def _create_celery_app() -> Celery:
    """Create and configure the Celery application."""
    maintenance = get_config().maintenance

    app = Celery("docvault", broker=maintenance.broker, backend=maintenance.result_backend)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue=MAINTENANCE_QUEUE,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule=build_beat_schedule(maintenance),
    )
    return app


def get_celery_app() -> Celery:
    """Get or create the Celery app singleton."""
    global _celery_app
    if _celery_app is None:
        _celery_app = _create_celery_app()
    return _celery_app


def init_celery(broker: Optional[str] = None, backend: Optional[str] = None) -> Celery:
    """Override broker / result backend after the app exists."""
    app = get_celery_app()
    if broker:
        app.conf.broker_url = broker
    if backend:
        app.conf.result_backend = backend
    return app


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------

celery_app = get_celery_app()


@celery_app.task(name="docvault.tasks.retry_pending_deletions")
def retry_pending_deletions(limit: Optional[int] = None) -> Dict[str, int]:
    return get_runtime().reconciler.retry_pending_deletions(limit=limit)


@celery_app.task(name="docvault.tasks.collect_orphans")
def collect_orphans(prefix: str = "", grace_seconds: Optional[int] = None) -> Dict[str, int]:
    return get_runtime().reconciler.collect_orphans(prefix=prefix, grace_seconds=grace_seconds)


@celery_app.task(name="docvault.tasks.purge_deleted_documents")
def purge_deleted_documents(older_than_days: Optional[int] = None) -> Dict[str, int]:
    return get_runtime().reconciler.purge_deleted_documents(older_than_days=older_than_days)


@celery_app.task(name="docvault.tasks.purge_expired_grants")
def purge_expired_grants() -> Dict[str, int]:
    return {"removed": get_runtime().reconciler.purge_expired_grants()}


@celery_app.task(name="docvault.tasks.verify_quota")
def verify_quota(workspace_id: Optional[int] = None, fix: bool = False) -> List[Dict[str, Any]]:
    """
    Celery task: compare storage counters with the version table.
    Drift is reported, and only corrected when ``fix`` is passed explicitly.
    """
    drifts = get_runtime().reconciler.verify_quota(workspace_id=workspace_id, fix=fix)
    return [
        {**d.model_dump(), "drift": d.drift}
        for d in drifts
        if d.drift != 0
    ]


@celery_app.task(name="docvault.tasks.cleanup_logs")
def cleanup_logs() -> Dict[str, int]:
    return get_runtime().cleanup_logs()
