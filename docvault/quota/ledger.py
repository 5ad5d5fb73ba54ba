"""
DocVault Quota Ledger — Atomic admission and release of workspace storage.

The only writer of ``workspaces.storage_used``. Every mutation is a single
conditional UPDATE evaluated by the database, executed inside the caller's
transaction so the counter commits (or rolls back) together with the
document change that motivated it.

    admit:   storage_used += d  WHERE storage_used + d <= storage_limit
    release: storage_used -= d  floored at 0

The counter is never read, modified in Python, and written back.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from docvault.db.models import Document, DocumentVersion, Workspace
from docvault.engine.errors import NotFoundError, QuotaExceededError, ValidationFailureError
from docvault.engine.logging import log, log_quota_event

logger = logging.getLogger("docvault.quota.ledger")


class QuotaUsage(BaseModel):
    """Point-in-time view of a workspace's storage counters."""
    workspace_id: int
    used: int = Field(ge=0, description="Bytes currently billed")
    limit: int = Field(ge=0, description="Workspace storage limit in bytes")
    available: int = Field(ge=0, description="limit - used, floored at 0")
    percentage: float = Field(ge=0, description="used / limit * 100, rounded to 2 places")


class QuotaDrift(BaseModel):
    """Result of comparing the counter against the version table."""
    workspace_id: int
    recorded: int
    expected: int
    fixed: bool = False

    @property
    def drift(self) -> int:
        return self.recorded - self.expected


class QuotaLedger:
    """
    Storage accounting for workspaces.

    Stateless: every method takes the session of the unit of work it belongs
    to. Safe to share one instance across threads.
    """

    @staticmethod
    def _validate_delta(delta_bytes: int) -> None:
        if delta_bytes < 0:
            raise ValidationFailureError(
                "Quota delta must be non-negative",
                delta_bytes=delta_bytes,
            )

    @staticmethod
    def _counters(session: Session, workspace_id: int):
        row = session.execute(
            select(Workspace.storage_used, Workspace.storage_limit).where(Workspace.id == workspace_id)
        ).first()
        if row is None:
            raise NotFoundError(
                f"Workspace {workspace_id} not found",
                object_ref=f"workspace:{workspace_id}",
                workspace_id=workspace_id,
            )
        return int(row.storage_used), int(row.storage_limit)

    def _exceeded(self, workspace_id: int, delta_bytes: int, used: int, limit: int) -> QuotaExceededError:
        available = max(limit - used, 0)
        return QuotaExceededError(
            f"Storage quota exceeded: {delta_bytes} bytes requested, {available} bytes available",
            object_ref=f"workspace:{workspace_id}",
            workspace_id=workspace_id,
            requested_bytes=delta_bytes,
            available_bytes=available,
        )

    def check(self, session: Session, workspace_id: int, delta_bytes: int) -> None:
        """
        Read-only pre-flight: raise QuotaExceededError if ``delta_bytes`` would
        not fit right now. Advisory only; admit() is authoritative.
        """
        self._validate_delta(delta_bytes)
        used, limit = self._counters(session, workspace_id)
        if used + delta_bytes > limit:
            raise self._exceeded(workspace_id, delta_bytes, used, limit)

    def admit(self, session: Session, workspace_id: int, delta_bytes: int) -> None:
        """
        Atomically add ``delta_bytes`` to the workspace counter if it fits.

        Raises:
            ValidationFailureError: delta is negative.
            NotFoundError: workspace does not exist.
            QuotaExceededError: the counter would exceed the limit. Nothing
                is changed.
        """
        self._validate_delta(delta_bytes)
        if delta_bytes == 0:
            self._counters(session, workspace_id)
            return

        result = session.execute(
            update(Workspace)
            .where(
                Workspace.id == workspace_id,
                Workspace.storage_used + delta_bytes <= Workspace.storage_limit,
            )
            .values(storage_used=Workspace.storage_used + delta_bytes)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            log(log_quota_event("admit", workspace_id, delta_bytes, admitted=True))
            return

        # Zero rows: either the workspace is gone or the condition failed
        used, limit = self._counters(session, workspace_id)
        log(log_quota_event(
            "admit", workspace_id, delta_bytes, admitted=False,
            storage_used=used, storage_limit=limit,
        ))
        raise self._exceeded(workspace_id, delta_bytes, used, limit)

    def release(self, session: Session, workspace_id: int, delta_bytes: int) -> None:
        """Atomically subtract ``delta_bytes``, flooring the counter at zero."""
        self._validate_delta(delta_bytes)
        result = session.execute(
            update(Workspace)
            .where(Workspace.id == workspace_id)
            .values(
                storage_used=case(
                    (Workspace.storage_used >= delta_bytes, Workspace.storage_used - delta_bytes),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError(
                f"Workspace {workspace_id} not found",
                object_ref=f"workspace:{workspace_id}",
                workspace_id=workspace_id,
            )
        log(log_quota_event("release", workspace_id, delta_bytes, admitted=True))

    def usage(self, session: Session, workspace_id: int) -> QuotaUsage:
        used, limit = self._counters(session, workspace_id)
        percentage = round(used / limit * 100, 2) if limit > 0 else (100.0 if used else 0.0)
        return QuotaUsage(
            workspace_id=workspace_id,
            used=used,
            limit=limit,
            available=max(limit - used, 0),
            percentage=percentage,
        )

    # -------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------

    @staticmethod
    def expected_usage(session: Session, workspace_id: int) -> int:
        """Sum of every retained version size over live documents."""
        total = session.execute(
            select(func.coalesce(func.sum(DocumentVersion.size), 0))
            .join(Document, Document.id == DocumentVersion.document_id)
            .where(Document.workspace_id == workspace_id, Document.is_deleted.is_(False))
        ).scalar_one()
        return int(total)

    def recompute(self, session: Session, workspace_id: int, fix: bool = False) -> QuotaDrift:
        """
        Compare the counter with the version table; optionally overwrite it.

        Meant for maintenance runs, not the request path: a concurrent
        upload between the sum and the write would be lost.
        """
        recorded, _ = self._counters(session, workspace_id)
        expected = self.expected_usage(session, workspace_id)
        drift = QuotaDrift(workspace_id=workspace_id, recorded=recorded, expected=expected)
        if drift.drift == 0:
            return drift

        logger.warning(
            f"Quota drift on workspace {workspace_id}: recorded={recorded} expected={expected}"
        )
        if fix:
            session.execute(
                update(Workspace)
                .where(Workspace.id == workspace_id)
                .values(storage_used=expected)
                .execution_options(synchronize_session=False)
            )
            drift.fixed = True
            log(log_quota_event(
                "recompute", workspace_id, abs(drift.drift), admitted=True,
                storage_used=expected,
            ))
        return drift

    def recompute_all(self, session: Session, fix: bool = False) -> List[QuotaDrift]:
        ids = session.execute(select(Workspace.id).order_by(Workspace.id)).scalars().all()
        return [self.recompute(session, ws_id, fix=fix) for ws_id in ids]


_default_ledger: Optional[QuotaLedger] = None


def get_quota_ledger() -> QuotaLedger:
    global _default_ledger
    if _default_ledger is None:
        _default_ledger = QuotaLedger()
    return _default_ledger
