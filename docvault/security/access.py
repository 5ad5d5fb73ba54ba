"""
DocVault Access Resolver — Owner bypass plus time-bounded shared grants.

Resolution order for (document, user):
    1. Owner → every capability.
    2. Grant for (document_id, user_id) that has not expired → every
       permission whose ordinal is ≤ the grant's ordinal.
    3. Otherwise → no capability.

Permission hierarchy (ordinal):
    VIEW (1) < DOWNLOAD (2) < EDIT (3)

A grant is expired when ``now > expires_at``; a grant without expiry never
expires. Expired grants stay in the table until ``purge_expired()`` runs;
resolve() ignores them either way.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import FrozenSet, Optional

from sqlalchemy import and_, delete, select
from sqlalchemy.orm import Session

from docvault.db.base import as_utc, utc_now
from docvault.db.models import Document, SharedAccess
from docvault.engine.errors import ForbiddenError, ValidationFailureError
from docvault.engine.logging import log, log_security_event

logger = logging.getLogger("docvault.security.access")


class Permission(str, enum.Enum):
    VIEW = "VIEW"
    DOWNLOAD = "DOWNLOAD"
    EDIT = "EDIT"

    @property
    def ordinal(self) -> int:
        return _ORDINALS[self]

    @classmethod
    def parse(cls, value) -> "Permission":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationFailureError(
                f"Unknown permission '{value}'. Valid: {[p.value for p in cls]}",
                permission=value,
            )

    def implied(self) -> FrozenSet["Permission"]:
        """This permission and every weaker one."""
        return frozenset(p for p in Permission if p.ordinal <= self.ordinal)


_ORDINALS = {Permission.VIEW: 1, Permission.DOWNLOAD: 2, Permission.EDIT: 3}

ALL_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)
NO_PERMISSIONS: FrozenSet[Permission] = frozenset()


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    expires = as_utc(expires_at)
    return expires is not None and now > expires


class AccessResolver:
    """
    Computes the effective capability set of a user on a document.

    Stateless; each call reads the grant in the caller's session so the
    answer is consistent with the rest of the unit of work.
    """

    def resolve(
        self,
        session: Session,
        document: Document,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> FrozenSet[Permission]:
        if document.owner_id == user_id:
            return ALL_PERMISSIONS

        grant = session.execute(
            select(SharedAccess).where(
                SharedAccess.document_id == document.id,
                SharedAccess.grantee_user_id == user_id,
            )
        ).scalar_one_or_none()
        if grant is None:
            return NO_PERMISSIONS

        now = as_utc(now) or utc_now()
        if is_expired(grant.expires_at, now):
            return NO_PERMISSIONS
        return Permission.parse(grant.permission).implied()

    def has(
        self,
        session: Session,
        document: Document,
        user_id: int,
        permission: Permission,
        now: Optional[datetime] = None,
    ) -> bool:
        return Permission.parse(permission) in self.resolve(session, document, user_id, now)

    def require(
        self,
        session: Session,
        document: Document,
        user_id: int,
        permission: Permission,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise ForbiddenError (and record a security event) unless allowed."""
        permission = Permission.parse(permission)
        if permission in self.resolve(session, document, user_id, now):
            return

        log(log_security_event(
            event="access_denied",
            object_ref=f"documents.{document.id}",
            object_type="documents",
            permission_needed=permission.value,
            actor_id=user_id,
            workspace_id=document.workspace_id,
        ))
        logger.info(f"Access denied: user {user_id} lacks {permission.value} on document {document.id}")
        raise ForbiddenError(
            f"Permission '{permission.value}' required on document {document.id}",
            object_ref=f"documents.{document.id}",
            document_id=document.id,
            actor_id=user_id,
            workspace_id=document.workspace_id,
            required_permission=permission.value,
        )

    def purge_expired(self, session: Session, now: Optional[datetime] = None) -> int:
        """Delete grants whose expiry has passed. Returns the number removed."""
        now = as_utc(now) or utc_now()
        result = session.execute(
            delete(SharedAccess)
            .where(and_(SharedAccess.expires_at.is_not(None), SharedAccess.expires_at < now))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} expired grants")
        return result.rowcount or 0
