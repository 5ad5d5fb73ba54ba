"""
DocVault Blob Reconciler — Maintenance sweeps that keep the blob store and
the metadata store converging.

Sweeps:
    retry_pending_deletions   Retry keys in pending_blob_deletions (backoff)
    collect_orphans           Delete blobs no live metadata references
    purge_deleted_documents   Reclaim blobs of documents deleted long ago
    purge_expired_grants      Drop grants whose expiry has passed
    verify_quota              Compare storage counters with the version table

Each sweep is idempotent and safe to run concurrently with the lifecycle
service. Scheduled through Celery beat (see docvault.tasks) or run from the
``docvault reconcile`` CLI.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from docvault.db.base import as_utc, utc_now
from docvault.db.models import Document, DocumentVersion, PendingBlobDeletion
from docvault.db.session import session_scope
from docvault.engine.config import DocumentsConfig, MaintenanceConfig
from docvault.engine.errors import UpstreamStorageError
from docvault.engine.logging import log, log_blob_event, log_system_event
from docvault.quota.ledger import QuotaDrift, QuotaLedger
from docvault.security.access import AccessResolver
from docvault.storage.blob_store import BlobStore, DeleteResult

logger = logging.getLogger("docvault.documents.reconcile")


# ---------------------------------------------------------------------------
# Pending deletion ledger helpers (shared with the lifecycle service)
# ---------------------------------------------------------------------------

def workspace_from_key(key: str) -> Optional[int]:
    head = key.split("/", 1)[0]
    return int(head) if head.isdigit() else None


def enqueue_deletions(
    session: Session,
    failures: Dict[str, str],
    workspace_id: Optional[int],
    reason: str,
    now: Optional[datetime] = None,
) -> int:
    """
    Record blob keys whose deletion failed. A key already in the ledger keeps
    its attempt count and only has its last error refreshed.
    """
    now = as_utc(now) or utc_now()
    for key, error in failures.items():
        existing = session.execute(
            select(PendingBlobDeletion).where(PendingBlobDeletion.blob_key == key)
        ).scalar_one_or_none()
        if existing is not None:
            existing.last_error = error
            continue
        session.add(PendingBlobDeletion(
            blob_key=key,
            workspace_id=workspace_id if workspace_id is not None else workspace_from_key(key),
            reason=reason,
            attempts=0,
            last_error=error,
            next_attempt_at=now,
            created_at=now,
        ))
        log(log_blob_event("delete_failed", key, workspace_id, reason=reason, error=error))
    return len(failures)


def safe_delete_many(blob_store: BlobStore, keys: Iterable[str]) -> DeleteResult:
    """delete_many() that reports a store-wide failure as every key failing."""
    keys = list(dict.fromkeys(keys))
    try:
        return blob_store.delete_many(keys)
    except UpstreamStorageError as e:
        cause = str(e.context.get("cause") or e.message)
        return DeleteResult(failed={k: cause for k in keys})


def delete_or_enqueue(
    session_factory: Callable[[], Session],
    blob_store: BlobStore,
    keys: Iterable[str],
    workspace_id: Optional[int],
    reason: str,
) -> DeleteResult:
    """
    Delete ``keys`` now; whatever fails goes to pending_blob_deletions.

    If even the ledger write fails the keys are logged at CRITICAL so an
    operator can reclaim them; orphan collection will also find them later.
    """
    result = safe_delete_many(blob_store, keys)
    for key in result.deleted:
        log(log_blob_event("deleted", key, workspace_id))
    if not result.failed:
        return result

    logger.warning(f"{len(result.failed)} blob deletions failed ({reason}); queued for retry")
    try:
        with session_scope(session_factory) as session:
            enqueue_deletions(session, result.failed, workspace_id, reason)
    except SQLAlchemyError as e:
        logger.critical(
            f"Could not record {len(result.failed)} failed blob deletions: {e}; "
            f"keys={sorted(result.failed)}"
        )
    return result


class BlobReconciler:
    """
    Runs the maintenance sweeps.

    Args:
        session_factory: sessionmaker for the metadata DB.
        blob_store:      The BlobStore adapter the lifecycle service uses.
        maintenance:     Backoff, grace window and batch settings.
        documents:       Retention setting for purge_deleted_documents.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        blob_store: BlobStore,
        quota_ledger: Optional[QuotaLedger] = None,
        access_resolver: Optional[AccessResolver] = None,
        maintenance: Optional[MaintenanceConfig] = None,
        documents: Optional[DocumentsConfig] = None,
    ):
        self._session_factory = session_factory
        self._blobs = blob_store
        self._quota = quota_ledger or QuotaLedger()
        self._access = access_resolver or AccessResolver()
        self._maintenance = maintenance or MaintenanceConfig()
        self._documents = documents or DocumentsConfig()

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before the next try after ``attempts`` earlier failures."""
        delay = self._maintenance.retry_base_seconds * (2 ** attempts)
        return min(delay, self._maintenance.retry_max_seconds)

    # -------------------------------------------------------------------
    # Pending deletions
    # -------------------------------------------------------------------

    def retry_pending_deletions(
        self,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Retry every pending deletion whose next_attempt_at has passed.

        Returns:
            {"attempted": N, "deleted": N, "failed": N}
        """
        now = as_utc(now) or utc_now()
        limit = limit or self._maintenance.batch_size

        with session_scope(self._session_factory) as session:
            due = session.execute(
                select(PendingBlobDeletion.blob_key)
                .where(PendingBlobDeletion.next_attempt_at <= now)
                .order_by(PendingBlobDeletion.next_attempt_at, PendingBlobDeletion.id)
                .limit(limit)
            ).scalars().all()

        if not due:
            return {"attempted": 0, "deleted": 0, "failed": 0}

        result = safe_delete_many(self._blobs, due)

        with session_scope(self._session_factory) as session:
            entries = session.execute(
                select(PendingBlobDeletion).where(PendingBlobDeletion.blob_key.in_(due))
            ).scalars().all()
            for entry in entries:
                if entry.blob_key in result.failed:
                    delay = self.backoff_seconds(entry.attempts)
                    entry.attempts += 1
                    entry.last_error = result.failed[entry.blob_key]
                    entry.next_attempt_at = now + timedelta(seconds=delay)
                    log(log_blob_event(
                        "retry_failed", entry.blob_key, entry.workspace_id,
                        reason=entry.reason, error=entry.last_error, attempts=entry.attempts,
                    ))
                else:
                    session.delete(entry)
                    log(log_blob_event(
                        "retry_deleted", entry.blob_key, entry.workspace_id,
                        reason=entry.reason, attempts=entry.attempts + 1,
                    ))

        summary = {
            "attempted": len(due),
            "deleted": len(result.deleted),
            "failed": len(result.failed),
        }
        logger.info(f"Pending deletion sweep: {summary}")
        log(log_system_event("pending_deletion_sweep", details=summary))
        return summary

    # -------------------------------------------------------------------
    # Orphan collection
    # -------------------------------------------------------------------

    def _unreferenced(self, session: Session, keys: List[str]) -> List[str]:
        live = set(session.execute(
            select(DocumentVersion.blob_key)
            .join(Document, Document.id == DocumentVersion.document_id)
            .where(Document.blobs_purged_at.is_(None), DocumentVersion.blob_key.in_(keys))
        ).scalars())
        queued = set(session.execute(
            select(PendingBlobDeletion.blob_key).where(PendingBlobDeletion.blob_key.in_(keys))
        ).scalars())
        return [k for k in keys if k not in live and k not in queued]

    def collect_orphans(
        self,
        prefix: str = "",
        grace_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Delete blobs that no unpurged document version references.

        Only objects older than the grace window are considered, so uploads
        whose metadata transaction is still in flight are never touched.
        Keys belonging to purged documents count as unreferenced.

        Returns:
            {"scanned": N, "orphans": N, "deleted": N, "queued": N}
        """
        now = as_utc(now) or utc_now()
        grace = self._maintenance.orphan_grace_seconds if grace_seconds is None else grace_seconds
        cutoff = now - timedelta(seconds=grace)

        scanned = 0
        candidates: List[str] = []
        for info in self._blobs.list_keys(prefix):
            scanned += 1
            if as_utc(info.last_modified) <= cutoff:
                candidates.append(info.key)

        orphans: List[str] = []
        batch = self._maintenance.batch_size
        with session_scope(self._session_factory) as session:
            for start in range(0, len(candidates), batch):
                orphans.extend(self._unreferenced(session, candidates[start:start + batch]))

        deleted = queued = 0
        if orphans:
            logger.warning(f"Found {len(orphans)} orphaned blobs under prefix '{prefix}'")
            result = delete_or_enqueue(self._session_factory, self._blobs, orphans, None, "orphan")
            deleted, queued = len(result.deleted), len(result.failed)

        summary = {"scanned": scanned, "orphans": len(orphans), "deleted": deleted, "queued": queued}
        logger.info(f"Orphan sweep: {summary}")
        log(log_system_event("orphan_sweep", details=summary))
        return summary

    # -------------------------------------------------------------------
    # Deleted document purge
    # -------------------------------------------------------------------

    def purge_deleted_documents(
        self,
        older_than_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Reclaim blobs of documents soft-deleted more than ``older_than_days``
        ago. A purged document can no longer be restored.

        Returns:
            {"documents": N, "deleted": N, "queued": N}
        """
        now = as_utc(now) or utc_now()
        days = self._documents.deleted_retention_days if older_than_days is None else older_than_days
        cutoff = now - timedelta(days=days)

        with session_scope(self._session_factory) as session:
            doc_ids = session.execute(
                select(Document.id)
                .where(
                    Document.is_deleted.is_(True),
                    Document.blobs_purged_at.is_(None),
                    Document.deleted_at <= cutoff,
                )
                .order_by(Document.id)
                .limit(self._maintenance.batch_size)
            ).scalars().all()

        documents = deleted = queued = 0
        for doc_id in doc_ids:
            with session_scope(self._session_factory) as session:
                claimed = session.execute(
                    update(Document)
                    .where(
                        Document.id == doc_id,
                        Document.is_deleted.is_(True),
                        Document.blobs_purged_at.is_(None),
                    )
                    .values(blobs_purged_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    # Restored or purged by someone else since the scan
                    continue
                workspace_id = session.execute(
                    select(Document.workspace_id).where(Document.id == doc_id)
                ).scalar_one()
                keys = session.execute(
                    select(DocumentVersion.blob_key)
                    .where(DocumentVersion.document_id == doc_id)
                    .order_by(DocumentVersion.version)
                ).scalars().all()

            result = delete_or_enqueue(self._session_factory, self._blobs, keys, workspace_id, "purge")
            documents += 1
            deleted += len(result.deleted)
            queued += len(result.failed)

        summary = {"documents": documents, "deleted": deleted, "queued": queued}
        logger.info(f"Deleted-document purge: {summary}")
        log(log_system_event("deleted_document_purge", details=summary))
        return summary

    # -------------------------------------------------------------------
    # Grants / quota
    # -------------------------------------------------------------------

    def purge_expired_grants(self, now: Optional[datetime] = None) -> int:
        with session_scope(self._session_factory) as session:
            removed = self._access.purge_expired(session, now)
        log(log_system_event("grant_purge", details={"removed": removed}))
        return removed

    def verify_quota(
        self,
        workspace_id: Optional[int] = None,
        fix: bool = False,
    ) -> List[QuotaDrift]:
        """Report (and with ``fix`` correct) counters that disagree with the versions."""
        with session_scope(self._session_factory) as session:
            if workspace_id is not None:
                drifts = [self._quota.recompute(session, workspace_id, fix=fix)]
            else:
                drifts = self._quota.recompute_all(session, fix=fix)
        bad = [d for d in drifts if d.drift != 0]
        if bad:
            log(log_system_event(
                "quota_drift",
                level="WARNING",
                details={"workspaces": [d.workspace_id for d in bad], "fixed": fix},
            ))
        return drifts

    def run_all(self) -> Dict[str, Any]:
        """Run every sweep once (CLI ``reconcile --all``)."""
        return {
            "pending": self.retry_pending_deletions(),
            "orphans": self.collect_orphans(),
            "purged": self.purge_deleted_documents(),
            "grants": self.purge_expired_grants(),
            "quota_drift": sum(1 for d in self.verify_quota() if d.drift != 0),
        }
