"""
DocVault Metadata Models — All SQLAlchemy models for the metadata store.

Tables:
1. workspaces              — Tenant + storage quota counters
2. workspace_members       — Workspace ↔ User junction
3. folders                 — Folder tree per workspace (materialised path)
4. documents               — Document record with current-version pointer
5. document_versions       — Append-only version history
6. document_tags           — Document ↔ tag junction
7. shared_access           — Time-bounded permission grants
8. pending_blob_deletions  — Reconciliation ledger for blob keys to reclaim

Storage counters on ``workspaces`` are only mutated through
``docvault.quota.ledger.QuotaLedger``.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from docvault.db.base import AuditMixin, Base, SoftDeleteMixin, utc_now

PERMISSION_VALUES = ("VIEW", "DOWNLOAD", "EDIT")
DELETION_REASONS = ("compensation", "purge", "orphan")


# ---------------------------------------------------------------------------
# 1. Workspaces
# ---------------------------------------------------------------------------

class Workspace(Base, AuditMixin):
    __tablename__ = "workspaces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    owner_id = Column(Integer, nullable=False, index=True)
    storage_used = Column(BigInteger, default=0, nullable=False)
    storage_limit = Column(BigInteger, default=5368709120, nullable=False)

    members = relationship(
        "WorkspaceMember",
        back_populates="workspace",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("storage_used >= 0", name="ck_workspaces_storage_used"),
        CheckConstraint("storage_limit >= 0", name="ck_workspaces_storage_limit"),
    )

    @property
    def member_ids(self) -> set:
        return {m.user_id for m in self.members}

    def __repr__(self) -> str:
        return f"<Workspace(id={self.id}, used={self.storage_used}, limit={self.storage_limit})>"


# ---------------------------------------------------------------------------
# 2. Workspace members
# ---------------------------------------------------------------------------

class WorkspaceMember(Base):
    __tablename__ = "workspace_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, nullable=False)
    added_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    workspace = relationship("Workspace", back_populates="members")

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
        Index("idx_wm_user_id", "user_id"),
    )


# ---------------------------------------------------------------------------
# 3. Folders
# ---------------------------------------------------------------------------

class Folder(Base, AuditMixin):
    __tablename__ = "folders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    parent_id = Column(Integer, ForeignKey("folders.id", ondelete="CASCADE"), nullable=True)
    name = Column(String(255), nullable=False)
    path = Column(String(2000), nullable=False, default="")
    created_by = Column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_folders_ws_parent", "workspace_id", "parent_id"),
        Index("idx_folders_path", "path"),
    )

    def __repr__(self) -> str:
        return f"<Folder(id={self.id}, path='{self.path}')>"


# ---------------------------------------------------------------------------
# 4. Documents
# ---------------------------------------------------------------------------

class Document(Base, AuditMixin, SoftDeleteMixin):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False)
    folder_id = Column(Integer, ForeignKey("folders.id", ondelete="SET NULL"), nullable=True)
    original_name = Column(String(255), nullable=False)
    mime_type = Column(String(255), nullable=False)
    current_blob_key = Column(String(1024), nullable=False, unique=True)
    current_size = Column(BigInteger, nullable=False)
    version_number = Column(Integer, default=1, nullable=False)
    blobs_purged_at = Column(DateTime(timezone=True), nullable=True)

    versions = relationship(
        "DocumentVersion",
        back_populates="document",
        order_by="DocumentVersion.version",
        lazy="selectin",
    )
    tag_rows = relationship(
        "DocumentTag",
        cascade="all, delete-orphan",
        order_by="DocumentTag.id",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("version_number >= 1", name="ck_documents_version_number"),
        CheckConstraint("current_size >= 0", name="ck_documents_current_size"),
        Index("idx_documents_ws_folder", "workspace_id", "folder_id"),
        Index("idx_documents_created_at", "created_at"),
    )

    @property
    def tags(self) -> list:
        return [t.tag for t in self.tag_rows]

    @property
    def footprint(self) -> int:
        """Bytes billed for this document: every retained version."""
        return sum(v.size for v in self.versions)

    @property
    def blob_keys(self) -> list:
        """Distinct blob keys referenced by this document, in version order."""
        keys = [v.blob_key for v in self.versions]
        if self.current_blob_key not in keys:
            keys.append(self.current_blob_key)
        return list(dict.fromkeys(keys))

    def __repr__(self) -> str:
        return (
            f"<Document(id={self.id}, name='{self.original_name}', "
            f"v={self.version_number}, deleted={self.is_deleted})>"
        )


# ---------------------------------------------------------------------------
# 5. Document versions (append-only)
# ---------------------------------------------------------------------------

class DocumentVersion(Base):
    __tablename__ = "document_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id"), nullable=False)
    version = Column(Integer, nullable=False)
    blob_key = Column(String(1024), nullable=False, unique=True)
    size = Column(BigInteger, nullable=False)
    uploaded_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    document = relationship("Document", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("document_id", "version", name="uq_document_version"),
        CheckConstraint("version >= 1", name="ck_document_versions_version"),
        CheckConstraint("size >= 0", name="ck_document_versions_size"),
    )


# ---------------------------------------------------------------------------
# 6. Document tags
# ---------------------------------------------------------------------------

class DocumentTag(Base):
    __tablename__ = "document_tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    tag = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("document_id", "tag", name="uq_document_tag"),
        Index("idx_document_tags_tag", "tag"),
    )


# ---------------------------------------------------------------------------
# 7. Shared access grants
# ---------------------------------------------------------------------------

class SharedAccess(Base):
    """
    Permission grant for a non-owner. Weak reference to the document (no FK):
    a soft-deleted document invalidates its grants logically.
    """
    __tablename__ = "shared_access"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, nullable=False)
    grantee_user_id = Column(Integer, nullable=False)
    permission = Column(String(10), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("document_id", "grantee_user_id", name="uq_shared_access_pair"),
        CheckConstraint(
            "permission IN ('VIEW', 'DOWNLOAD', 'EDIT')",
            name="ck_shared_access_permission",
        ),
        Index("idx_sa_grantee", "grantee_user_id"),
        Index("idx_sa_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SharedAccess(document_id={self.document_id}, "
            f"grantee={self.grantee_user_id}, permission='{self.permission}')>"
        )


# ---------------------------------------------------------------------------
# 8. Pending blob deletions (reconciliation ledger)
# ---------------------------------------------------------------------------

class PendingBlobDeletion(Base):
    __tablename__ = "pending_blob_deletions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    blob_key = Column(String(1024), nullable=False, unique=True)
    workspace_id = Column(Integer, nullable=True)
    reason = Column(String(20), nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "reason IN ('compensation', 'purge', 'orphan')",
            name="ck_pending_blob_deletions_reason",
        ),
        Index("idx_pbd_next_attempt", "next_attempt_at"),
    )
