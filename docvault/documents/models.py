"""
DocVault Document Records — Pydantic views returned by the lifecycle service.

The service never hands ORM instances to callers: every public method
returns one of these records, built while the session is still open.

Records:
    WorkspaceRecord, FolderRecord, DocumentRecord, VersionEntry,
    GrantRecord, SharedDocument, DownloadLink, Page[T]
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from docvault.db.base import as_utc

T = TypeVar("T")


class _Unset:
    """Sentinel for 'argument not supplied' where None is a meaningful value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


# ---------------------------------------------------------------------------
# Workspace / Folder
# ---------------------------------------------------------------------------

class WorkspaceRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str = Field(max_length=100)
    owner_id: int
    storage_used: int = Field(ge=0, description="Bytes currently billed")
    storage_limit: int = Field(ge=0, description="Quota in bytes")
    member_ids: List[int] = Field(default_factory=list)

    @classmethod
    def from_orm_workspace(cls, ws) -> "WorkspaceRecord":
        return cls(
            id=ws.id,
            name=ws.name,
            owner_id=ws.owner_id,
            storage_used=ws.storage_used,
            storage_limit=ws.storage_limit,
            member_ids=sorted(ws.member_ids),
        )


class FolderRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    workspace_id: int
    parent_id: Optional[int] = None
    name: str = Field(max_length=255)
    path: str
    created_by: int
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Document / Version
# ---------------------------------------------------------------------------

class VersionEntry(BaseModel):
    """One element of a document's append-only history."""
    model_config = ConfigDict(from_attributes=True)

    version: int = Field(ge=1)
    size: int = Field(ge=0, description="Size in bytes")
    uploaded_by: int
    created_at: Optional[datetime] = None


class DocumentRecord(BaseModel):
    """
    Public document metadata. Storage keys are deliberately absent: callers
    reach content through download_url().
    """

    id: int
    owner_id: int
    workspace_id: int
    folder_id: Optional[int] = None
    original_name: str = Field(max_length=255)
    mime_type: str
    current_size: int = Field(ge=0, description="Size of the current version in bytes")
    version_number: int = Field(ge=1)
    tags: List[str] = Field(default_factory=list)
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_orm_document(cls, doc) -> "DocumentRecord":
        return cls(
            id=doc.id,
            owner_id=doc.owner_id,
            workspace_id=doc.workspace_id,
            folder_id=doc.folder_id,
            original_name=doc.original_name,
            mime_type=doc.mime_type,
            current_size=doc.current_size,
            version_number=doc.version_number,
            tags=doc.tags,
            is_deleted=doc.is_deleted,
            deleted_at=as_utc(doc.deleted_at),
            created_at=as_utc(doc.created_at),
            updated_at=as_utc(doc.updated_at),
        )

    @property
    def size_mb(self) -> float:
        return round(self.current_size / (1024 * 1024), 2)


# ---------------------------------------------------------------------------
# Sharing / Download
# ---------------------------------------------------------------------------

class GrantRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id: int
    grantee_user_id: int
    permission: str
    expires_at: Optional[datetime] = None
    created_by: int
    created_at: Optional[datetime] = None


class SharedDocument(BaseModel):
    """A document visible to a user through an active grant."""
    document: DocumentRecord
    permission: str
    expires_at: Optional[datetime] = None


class DownloadLink(BaseModel):
    url: str
    expires_in: int = Field(gt=0, description="Seconds until the URL stops working")
    filename: str
    expires_at: datetime


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class Page(BaseModel, Generic[T]):
    items: List[T] = Field(default_factory=list)
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1
