"""
DocVault Document Lifecycle Service — Upload, versioning, deletion, restore,
sharing and download across the metadata store and the blob store.

Handles:
- Upload with quota pre-check, blob write, then one metadata transaction
- Version append by compare-and-swap on version_number
- Soft delete / restore with full-footprint quota release and re-admission
- Signed download URLs gated by the access resolver
- Sharing, folders and workspace membership (admin glue)

Two-system consistency:
    prepare   blob_store.put under a fresh key (no metadata yet)
    commit    quota admit + metadata rows in one transaction
    compensate  on any commit failure the fresh blob is deleted; if that
                fails too the key goes to pending_blob_deletions. The
                original error always propagates.

Platform config:
    docvault.yaml → documents.* (upload limit, URL TTL, purge policy, paging)
"""

from __future__ import annotations

import logging
import mimetypes
import re
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Generator, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from docvault.db.base import as_utc, utc_now
from docvault.db.models import (
    Document,
    DocumentTag,
    DocumentVersion,
    Folder,
    SharedAccess,
    Workspace,
    WorkspaceMember,
)
from docvault.db.session import session_scope
from docvault.documents.models import (
    UNSET,
    DocumentRecord,
    DownloadLink,
    FolderRecord,
    GrantRecord,
    Page,
    SharedDocument,
    VersionEntry,
    WorkspaceRecord,
)
from docvault.documents.reconcile import delete_or_enqueue, enqueue_deletions
from docvault.engine.config import DocumentsConfig, QuotaConfig
from docvault.engine.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationFailureError,
)
from docvault.engine.logging import log, log_blob_event, log_document_event, log_security_event
from docvault.quota.ledger import QuotaLedger, QuotaUsage
from docvault.security.access import AccessResolver, Permission, is_expired
from docvault.storage.blob_store import BlobStore
from docvault.storage.keys import generate_blob_key

logger = logging.getLogger("docvault.documents.service")

MAX_NAME_LENGTH = 255
MAX_TAG_LENGTH = 100
DEFAULT_MIME_TYPE = "application/octet-stream"


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Strip, drop blanks and de-duplicate while keeping first-seen order."""
    if tags is None:
        return []
    if isinstance(tags, str):
        raise ValidationFailureError("tags must be a list of strings, not a string")
    cleaned: List[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationFailureError(f"Tag must be a string, got {type(tag).__name__}")
        tag = tag.strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationFailureError(
                f"Tag exceeds {MAX_TAG_LENGTH} characters",
                validation_errors=[{"field": "tags", "value": tag[:20]}],
            )
        if tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def validate_name(name: Any, field: str = "original_name") -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationFailureError(
            f"{field} is required",
            validation_errors=[{"field": field, "error": "empty"}],
        )
    name = name.strip()
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationFailureError(
            f"{field} exceeds {MAX_NAME_LENGTH} characters",
            validation_errors=[{"field": field, "error": "too_long", "length": len(name)}],
        )
    return name


def _like_pattern(text: str) -> str:
    escaped = re.sub(r"([\\%_])", r"\\\1", text.lower())
    return f"%{escaped}%"


class DocumentLifecycleService:
    """
    Orchestrates every document operation.

    Each public method is one independent unit of work on its own session,
    so a single instance can be shared by a thread pool.

    Args:
        session_factory: sessionmaker bound to the metadata DB.
        blob_store:      BlobStore adapter (S3 or local).
        access_resolver: Defaults to a fresh AccessResolver.
        quota_ledger:    Defaults to a fresh QuotaLedger.
        settings:        ``documents`` section of docvault.yaml.
        quota_settings:  ``quota`` section; supplies the limit for new workspaces.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        blob_store: BlobStore,
        access_resolver: Optional[AccessResolver] = None,
        quota_ledger: Optional[QuotaLedger] = None,
        settings: Optional[DocumentsConfig] = None,
        quota_settings: Optional[QuotaConfig] = None,
    ):
        self._session_factory = session_factory
        self._blobs = blob_store
        self._access = access_resolver or AccessResolver()
        self._quota = quota_ledger or QuotaLedger()
        self._settings = settings or DocumentsConfig()
        self._quota_settings = quota_settings or QuotaConfig()

    @property
    def settings(self) -> DocumentsConfig:
        return self._settings

    # -------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------

    @contextmanager
    def _transaction(self, operation: str) -> Generator[Session, None, None]:
        """session_scope() that reports unique-constraint violations as ConflictError."""
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except IntegrityError as e:
            logger.warning(f"{operation}: integrity violation: {e.orig}")
            raise ConflictError(
                f"{operation} conflicts with existing data",
                object_ref=operation,
                cause=str(e.orig),
            ) from e

    def _compensate(self, key: str, workspace_id: int, error: BaseException) -> None:
        """Delete a blob whose metadata never committed. Never raises."""
        logger.error(
            f"Metadata commit failed after blob write in workspace {workspace_id}: "
            f"{type(error).__name__}: {error}; deleting orphaned blob"
        )
        try:
            self._blobs.delete(key)
            log(log_blob_event("compensated", key, workspace_id, reason="compensation"))
            return
        except Exception as delete_error:
            failure = f"{type(delete_error).__name__}: {delete_error}"
            logger.error(f"Compensating blob delete failed: {failure}; queueing for retry")

        try:
            with session_scope(self._session_factory) as session:
                enqueue_deletions(session, {key: failure}, workspace_id, "compensation")
        except SQLAlchemyError as ledger_error:
            logger.critical(
                f"Orphaned blob could not be queued for deletion: {key} ({ledger_error})"
            )

    def _blob_size_limit(self) -> int:
        return self._settings.max_upload_size_mb * 1024 * 1024

    def _validate_payload(self, payload: Any) -> bytes:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise ValidationFailureError(
                f"payload must be bytes, got {type(payload).__name__}"
            )
        data = bytes(payload)
        limit = self._blob_size_limit()
        if len(data) > limit:
            raise ValidationFailureError(
                f"File size ({len(data) / 1024 / 1024:.1f} MB) exceeds "
                f"upload limit ({self._settings.max_upload_size_mb} MB)",
                validation_errors=[{"field": "payload", "size": len(data), "limit": limit}],
            )
        return data

    # -------------------------------------------------------------------
    # Loaders and guards
    # -------------------------------------------------------------------

    @staticmethod
    def _get_workspace(session: Session, workspace_id: int) -> Workspace:
        ws = session.get(Workspace, workspace_id)
        if ws is None:
            raise NotFoundError(
                f"Workspace {workspace_id} not found",
                object_ref=f"workspaces.{workspace_id}",
                workspace_id=workspace_id,
            )
        return ws

    @staticmethod
    def _require_member(ws: Workspace, actor_id: int) -> None:
        if actor_id == ws.owner_id or actor_id in ws.member_ids:
            return
        log(log_security_event(
            event="membership_denied",
            object_ref=f"workspaces.{ws.id}",
            object_type="documents",
            permission_needed="MEMBER",
            actor_id=actor_id,
            workspace_id=ws.id,
        ))
        raise ForbiddenError(
            f"User {actor_id} is not a member of workspace {ws.id}",
            object_ref=f"workspaces.{ws.id}",
            workspace_id=ws.id,
            actor_id=actor_id,
            required_permission="MEMBER",
        )

    @staticmethod
    def _require_workspace_owner(ws: Workspace, actor_id: int) -> None:
        if actor_id != ws.owner_id:
            raise ForbiddenError(
                f"Only the workspace owner can manage members of workspace {ws.id}",
                object_ref=f"workspaces.{ws.id}",
                workspace_id=ws.id,
                actor_id=actor_id,
                required_permission="OWNER",
            )

    @staticmethod
    def _get_folder(session: Session, folder_id: int, workspace_id: int) -> Folder:
        folder = session.get(Folder, folder_id)
        if folder is None or folder.workspace_id != workspace_id:
            raise NotFoundError(
                f"Folder {folder_id} not found in workspace {workspace_id}",
                object_ref=f"folders.{folder_id}",
                workspace_id=workspace_id,
            )
        return folder

    @staticmethod
    def _get_document(session: Session, document_id: int, include_deleted: bool = False) -> Document:
        doc = session.get(Document, document_id)
        if doc is None or (doc.is_deleted and not include_deleted):
            raise NotFoundError(
                f"Document {document_id} not found",
                object_ref=f"documents.{document_id}",
                document_id=document_id,
            )
        return doc

    @staticmethod
    def _require_owner(doc: Document, actor_id: int, operation: str) -> None:
        if doc.owner_id == actor_id:
            return
        log(log_security_event(
            event="owner_required",
            object_ref=f"documents.{doc.id}",
            object_type="documents",
            permission_needed="OWNER",
            actor_id=actor_id,
            workspace_id=doc.workspace_id,
        ))
        raise ForbiddenError(
            f"Only the owner can {operation} document {doc.id}",
            object_ref=f"documents.{doc.id}",
            document_id=doc.id,
            workspace_id=doc.workspace_id,
            actor_id=actor_id,
            required_permission="OWNER",
        )

    @staticmethod
    def _footprint(session: Session, document_id: int) -> int:
        return int(session.execute(
            select(func.coalesce(func.sum(DocumentVersion.size), 0))
            .where(DocumentVersion.document_id == document_id)
        ).scalar_one())

    @staticmethod
    def _blob_keys(session: Session, document_id: int) -> List[str]:
        rows = session.execute(
            select(DocumentVersion.blob_key)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version)
        ).scalars().all()
        return list(dict.fromkeys(rows))

    # -------------------------------------------------------------------
    # Upload / versioning
    # -------------------------------------------------------------------

    def upload(
        self,
        payload: bytes,
        original_name: str,
        mime_type: Optional[str],
        workspace_id: int,
        owner_id: int,
        folder_id: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> DocumentRecord:
        """
        Create a document from its first version.

        1. Validate input, membership, folder and quota (no side effects)
        2. Write the blob under a fresh key
        3. Admit quota + insert Document and version 1 in one transaction
        4. On any failure in 3, delete the blob and re-raise

        Raises:
            ValidationFailureError, NotFoundError, ForbiddenError,
            QuotaExceededError, UpstreamStorageError, ConflictError
        """
        data = self._validate_payload(payload)
        name = validate_name(original_name)
        clean_tags = normalize_tags(tags)
        mime_type = mime_type or mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
        size = len(data)

        with self._transaction("upload") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_member(ws, owner_id)
            if folder_id is not None:
                self._get_folder(session, folder_id, workspace_id)
            self._quota.check(session, workspace_id, size)

        key = generate_blob_key(workspace_id, name)
        self._blobs.put(key, data, mime_type)

        try:
            with self._transaction("upload") as session:
                self._quota.admit(session, workspace_id, size)
                doc = Document(
                    owner_id=owner_id,
                    workspace_id=workspace_id,
                    folder_id=folder_id,
                    original_name=name,
                    mime_type=mime_type,
                    current_blob_key=key,
                    current_size=size,
                    version_number=1,
                )
                doc.versions.append(DocumentVersion(
                    version=1, blob_key=key, size=size, uploaded_by=owner_id,
                ))
                doc.tag_rows = [DocumentTag(tag=t) for t in clean_tags]
                session.add(doc)
                session.flush()
                record = DocumentRecord.from_orm_document(doc)
        except BaseException as e:
            self._compensate(key, workspace_id, e)
            raise

        logger.info(f"Uploaded document {record.id} to workspace {workspace_id} ({size} bytes)")
        log(log_document_event("uploaded", record.id, owner_id, workspace_id, version=1, size_bytes=size))
        return record

    def upload_version(
        self,
        document_id: int,
        payload: bytes,
        actor_id: int,
        original_name: Optional[str] = None,
    ) -> DocumentRecord:
        """
        Append a new version. Earlier versions stay stored and billed.

        The append is a compare-and-swap on version_number: if another
        version landed since this call read the document, the call fails
        with ConflictError and its blob is compensated. Callers may retry.
        """
        data = self._validate_payload(payload)
        name = validate_name(original_name) if original_name is not None else None
        size = len(data)

        with self._transaction("upload_version") as session:
            doc = self._get_document(session, document_id)
            self._require_owner(doc, actor_id, "version")
            self._quota.check(session, doc.workspace_id, size)
            expected_version = doc.version_number
            workspace_id = doc.workspace_id
            mime_type = doc.mime_type
            key_name = name or doc.original_name

        key = generate_blob_key(workspace_id, key_name)
        self._blobs.put(key, data, mime_type)
        new_version = expected_version + 1

        try:
            with self._transaction("upload_version") as session:
                values = {
                    "version_number": new_version,
                    "current_blob_key": key,
                    "current_size": size,
                    "updated_at": utc_now(),
                }
                if name:
                    values["original_name"] = name
                swapped = session.execute(
                    update(Document)
                    .where(
                        Document.id == document_id,
                        Document.version_number == expected_version,
                        Document.is_deleted.is_(False),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if swapped.rowcount != 1:
                    raise ConflictError(
                        f"Document {document_id} changed concurrently; version {new_version} not appended",
                        object_ref=f"documents.{document_id}",
                        document_id=document_id,
                        expected_version=expected_version,
                    )
                session.add(DocumentVersion(
                    document_id=document_id,
                    version=new_version,
                    blob_key=key,
                    size=size,
                    uploaded_by=actor_id,
                ))
                self._quota.admit(session, workspace_id, size)
                session.flush()
                record = DocumentRecord.from_orm_document(session.get(Document, document_id))
        except BaseException as e:
            self._compensate(key, workspace_id, e)
            raise

        logger.info(f"Document {document_id} now at version {new_version} ({size} bytes)")
        log(log_document_event(
            "versioned", document_id, actor_id, workspace_id, version=new_version, size_bytes=size,
        ))
        return record

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    def get(self, document_id: int, actor_id: int) -> DocumentRecord:
        with self._transaction("get") as session:
            doc = self._get_document(session, document_id)
            self._access.require(session, doc, actor_id, Permission.VIEW)
            return DocumentRecord.from_orm_document(doc)

    def list_versions(self, document_id: int, actor_id: int) -> List[VersionEntry]:
        with self._transaction("list_versions") as session:
            doc = self._get_document(session, document_id)
            self._access.require(session, doc, actor_id, Permission.VIEW)
            return [
                VersionEntry(
                    version=v.version,
                    size=v.size,
                    uploaded_by=v.uploaded_by,
                    created_at=as_utc(v.created_at),
                )
                for v in doc.versions
            ]

    def list_documents(
        self,
        workspace_id: int,
        actor_id: int,
        folder_id: Optional[int] = None,
        tags: Optional[Iterable[str]] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Page[DocumentRecord]:
        """
        List live documents of a workspace, newest first.

        Filters combine with AND: ``folder_id`` exact match, ``tags`` any-of,
        ``search`` case-insensitive substring of the name or any tag.
        ``limit`` is clamped to 1..max_page_size.
        """
        limit = self._settings.default_page_size if limit is None else int(limit)
        limit = min(max(limit, 1), self._settings.max_page_size)
        page = max(int(page), 1)
        tag_filter = normalize_tags(tags)

        with self._transaction("list_documents") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_member(ws, actor_id)

            stmt = select(Document).where(
                Document.workspace_id == workspace_id,
                Document.is_deleted.is_(False),
            )
            if folder_id is not None:
                stmt = stmt.where(Document.folder_id == folder_id)
            if tag_filter:
                stmt = stmt.where(Document.id.in_(
                    select(DocumentTag.document_id).where(DocumentTag.tag.in_(tag_filter))
                ))
            if search and search.strip():
                pattern = _like_pattern(search.strip())
                stmt = stmt.where(or_(
                    func.lower(Document.original_name).like(pattern, escape="\\"),
                    Document.id.in_(
                        select(DocumentTag.document_id)
                        .where(func.lower(DocumentTag.tag).like(pattern, escape="\\"))
                    ),
                ))

            total = session.execute(
                select(func.count()).select_from(stmt.subquery())
            ).scalar_one()
            docs = session.execute(
                stmt.order_by(Document.created_at.desc(), Document.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()

            return Page[DocumentRecord](
                items=[DocumentRecord.from_orm_document(d) for d in docs],
                total=total,
                page=page,
                limit=limit,
            )

    # -------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------

    def update_metadata(
        self,
        document_id: int,
        actor_id: int,
        original_name: Any = UNSET,
        folder_id: Any = UNSET,
        tags: Any = UNSET,
    ) -> DocumentRecord:
        """
        Rename, move (``folder_id=None`` moves to the root) or retag a
        document. Owner only; no quota or blob effect.
        """
        if original_name is UNSET and folder_id is UNSET and tags is UNSET:
            raise ValidationFailureError("No metadata fields supplied", document_id=document_id)

        with self._transaction("update_metadata") as session:
            doc = self._get_document(session, document_id)
            self._require_owner(doc, actor_id, "update")
            changed: List[str] = []

            if original_name is not UNSET:
                doc.original_name = validate_name(original_name)
                changed.append("original_name")

            if folder_id is not UNSET:
                if folder_id is not None:
                    self._get_folder(session, folder_id, doc.workspace_id)
                doc.folder_id = folder_id
                changed.append("folder_id")

            if tags is not UNSET:
                new_tags = normalize_tags(tags)
                existing = {row.tag: row for row in doc.tag_rows}
                doc.tag_rows = [existing.get(t) or DocumentTag(tag=t) for t in new_tags]
                changed.append("tags")

            doc.updated_at = utc_now()
            session.flush()
            record = DocumentRecord.from_orm_document(doc)

        log(log_document_event(
            "updated", document_id, actor_id, record.workspace_id, fields_changed=changed,
        ))
        return record

    # -------------------------------------------------------------------
    # Delete / restore
    # -------------------------------------------------------------------

    def soft_delete(self, document_id: int, actor_id: int) -> DocumentRecord:
        """
        Soft-delete a document and release its whole footprint (every
        version) from the workspace quota, atomically.

        With ``purge_blobs_on_delete`` the blobs are then deleted
        best-effort; failures are queued in pending_blob_deletions. The
        document is marked purged in the same transaction, so it cannot be
        restored once this returns.
        """
        purge = self._settings.purge_blobs_on_delete
        now = utc_now()

        with self._transaction("soft_delete") as session:
            doc = self._get_document(session, document_id)
            self._require_owner(doc, actor_id, "delete")
            workspace_id = doc.workspace_id

            values = {"is_deleted": True, "deleted_at": now, "deleted_by": actor_id, "updated_at": now}
            if purge:
                values["blobs_purged_at"] = now
            swapped = session.execute(
                update(Document)
                .where(Document.id == document_id, Document.is_deleted.is_(False))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                raise ConflictError(
                    f"Document {document_id} was deleted concurrently",
                    object_ref=f"documents.{document_id}",
                    document_id=document_id,
                )

            # Row is now claimed; no version can be appended past this point
            footprint = self._footprint(session, document_id)
            keys = self._blob_keys(session, document_id)
            self._quota.release(session, workspace_id, footprint)
            session.refresh(doc)
            record = DocumentRecord.from_orm_document(doc)

        logger.info(
            f"Soft-deleted document {document_id}; released {footprint} bytes "
            f"from workspace {workspace_id}"
        )
        log(log_document_event("deleted", document_id, actor_id, workspace_id, size_bytes=footprint))

        if purge:
            delete_or_enqueue(self._session_factory, self._blobs, keys, workspace_id, "purge")
        return record

    def restore(self, document_id: int, actor_id: int) -> DocumentRecord:
        """
        Undo a soft delete while the blobs are still resident. Re-admits the
        full footprint; QuotaExceededError leaves the document deleted.
        """
        with self._transaction("restore") as session:
            doc = self._get_document(session, document_id, include_deleted=True)
            self._require_owner(doc, actor_id, "restore")
            if not doc.is_deleted:
                raise ConflictError(
                    f"Document {document_id} is not deleted",
                    object_ref=f"documents.{document_id}",
                    document_id=document_id,
                )
            if doc.blobs_purged_at is not None:
                raise ConflictError(
                    f"Document {document_id} can no longer be restored: its content was purged",
                    object_ref=f"documents.{document_id}",
                    document_id=document_id,
                )

            workspace_id = doc.workspace_id
            footprint = self._footprint(session, document_id)
            self._quota.admit(session, workspace_id, footprint)
            swapped = session.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.is_deleted.is_(True),
                    Document.blobs_purged_at.is_(None),
                )
                .values(is_deleted=False, deleted_at=None, deleted_by=None, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                raise ConflictError(
                    f"Document {document_id} changed concurrently; not restored",
                    object_ref=f"documents.{document_id}",
                    document_id=document_id,
                )
            session.refresh(doc)
            record = DocumentRecord.from_orm_document(doc)

        logger.info(f"Restored document {document_id}; re-admitted {footprint} bytes")
        log(log_document_event("restored", document_id, actor_id, workspace_id, size_bytes=footprint))
        return record

    # -------------------------------------------------------------------
    # Download
    # -------------------------------------------------------------------

    def download_url(self, document_id: int, actor_id: int) -> DownloadLink:
        """Signed URL for the current version. Requires DOWNLOAD; no state change."""
        with self._transaction("download_url") as session:
            doc = self._get_document(session, document_id)
            self._access.require(session, doc, actor_id, Permission.DOWNLOAD)
            key = doc.current_blob_key
            filename = doc.original_name

        ttl = self._settings.download_url_ttl_seconds
        issued_at = utc_now()
        url = self._blobs.signed_url(key, ttl)
        return DownloadLink(
            url=url,
            expires_in=ttl,
            filename=filename,
            expires_at=issued_at + timedelta(seconds=ttl),
        )

    # -------------------------------------------------------------------
    # Sharing
    # -------------------------------------------------------------------

    @staticmethod
    def _grant_record(grant: SharedAccess) -> GrantRecord:
        return GrantRecord(
            document_id=grant.document_id,
            grantee_user_id=grant.grantee_user_id,
            permission=grant.permission,
            expires_at=as_utc(grant.expires_at),
            created_by=grant.created_by,
            created_at=as_utc(grant.created_at),
        )

    def share(
        self,
        document_id: int,
        actor_id: int,
        grantee_user_id: int,
        permission: Any,
        expires_at: Optional[datetime] = None,
    ) -> GrantRecord:
        """
        Grant (or replace) a user's permission on a document. Owner only.
        Re-sharing with the same user overwrites permission and expiry.
        """
        permission = Permission.parse(permission)
        if grantee_user_id == actor_id:
            raise ValidationFailureError("Cannot share a document with yourself", document_id=document_id)
        expires_at = as_utc(expires_at)
        if expires_at is not None and expires_at <= utc_now():
            raise ValidationFailureError(
                "expires_at must be in the future",
                validation_errors=[{"field": "expires_at", "value": expires_at.isoformat()}],
            )

        with self._transaction("share") as session:
            doc = self._get_document(session, document_id)
            self._require_owner(doc, actor_id, "share")
            grant = session.execute(
                select(SharedAccess).where(
                    SharedAccess.document_id == document_id,
                    SharedAccess.grantee_user_id == grantee_user_id,
                )
            ).scalar_one_or_none()
            if grant is None:
                grant = SharedAccess(
                    document_id=document_id,
                    grantee_user_id=grantee_user_id,
                    created_by=actor_id,
                )
                session.add(grant)
            grant.permission = permission.value
            grant.expires_at = expires_at
            session.flush()
            record = self._grant_record(grant)
            workspace_id = doc.workspace_id

        log(log_security_event(
            event="share_granted",
            object_ref=f"documents.{document_id}",
            object_type="shares",
            permission_needed=permission.value,
            actor_id=actor_id,
            workspace_id=workspace_id,
            level="INFO",
        ))
        return record

    def revoke(self, document_id: int, actor_id: int, grantee_user_id: int) -> None:
        with self._transaction("revoke") as session:
            doc = self._get_document(session, document_id)
            self._require_owner(doc, actor_id, "revoke access to")
            grant = session.execute(
                select(SharedAccess).where(
                    SharedAccess.document_id == document_id,
                    SharedAccess.grantee_user_id == grantee_user_id,
                )
            ).scalar_one_or_none()
            if grant is None:
                raise NotFoundError(
                    f"No grant for user {grantee_user_id} on document {document_id}",
                    object_ref=f"documents.{document_id}",
                    document_id=document_id,
                )
            permission = grant.permission
            session.delete(grant)
            workspace_id = doc.workspace_id

        log(log_security_event(
            event="share_revoked",
            object_ref=f"documents.{document_id}",
            object_type="shares",
            permission_needed=permission,
            actor_id=actor_id,
            workspace_id=workspace_id,
            level="INFO",
        ))

    def list_shares(self, document_id: int, actor_id: int) -> List[GrantRecord]:
        """Active (unexpired) grants on a document. Owner only."""
        now = utc_now()
        with self._transaction("list_shares") as session:
            doc = self._get_document(session, document_id)
            self._require_owner(doc, actor_id, "list shares of")
            grants = session.execute(
                select(SharedAccess)
                .where(SharedAccess.document_id == document_id)
                .order_by(SharedAccess.created_at, SharedAccess.id)
            ).scalars().all()
            return [self._grant_record(g) for g in grants if not is_expired(g.expires_at, now)]

    def shared_with(self, user_id: int) -> List[SharedDocument]:
        """Live documents reachable by ``user_id`` through an active grant."""
        now = utc_now()
        with self._transaction("shared_with") as session:
            rows = session.execute(
                select(Document, SharedAccess)
                .join(SharedAccess, SharedAccess.document_id == Document.id)
                .where(
                    SharedAccess.grantee_user_id == user_id,
                    Document.is_deleted.is_(False),
                    or_(SharedAccess.expires_at.is_(None), SharedAccess.expires_at >= now),
                )
                .order_by(SharedAccess.created_at.desc(), SharedAccess.id.desc())
            ).all()
            return [
                SharedDocument(
                    document=DocumentRecord.from_orm_document(doc),
                    permission=grant.permission,
                    expires_at=as_utc(grant.expires_at),
                )
                for doc, grant in rows
            ]

    # -------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------

    @staticmethod
    def _folder_record(folder: Folder) -> FolderRecord:
        return FolderRecord(
            id=folder.id,
            workspace_id=folder.workspace_id,
            parent_id=folder.parent_id,
            name=folder.name,
            path=folder.path,
            created_by=folder.created_by,
            created_at=as_utc(folder.created_at),
        )

    def create_folder(
        self,
        workspace_id: int,
        actor_id: int,
        name: str,
        parent_id: Optional[int] = None,
    ) -> FolderRecord:
        name = validate_name(name, field="name")
        if "/" in name:
            raise ValidationFailureError(
                "Folder name cannot contain '/'",
                validation_errors=[{"field": "name", "error": "invalid_char"}],
            )
        with self._transaction("create_folder") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_member(ws, actor_id)
            path = name
            if parent_id is not None:
                parent = self._get_folder(session, parent_id, workspace_id)
                path = f"{parent.path}/{name}"
            folder = Folder(
                workspace_id=workspace_id,
                parent_id=parent_id,
                name=name,
                path=path,
                created_by=actor_id,
            )
            session.add(folder)
            session.flush()
            logger.info(f"Created folder '{path}' in workspace {workspace_id}")
            return self._folder_record(folder)

    def list_folders(
        self,
        workspace_id: int,
        actor_id: int,
        parent_id: Any = UNSET,
    ) -> List[FolderRecord]:
        """All folders (default), root folders (``parent_id=None``) or children of one folder."""
        with self._transaction("list_folders") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_member(ws, actor_id)
            stmt = select(Folder).where(Folder.workspace_id == workspace_id)
            if parent_id is None:
                stmt = stmt.where(Folder.parent_id.is_(None))
            elif parent_id is not UNSET:
                stmt = stmt.where(Folder.parent_id == parent_id)
            folders = session.execute(stmt.order_by(Folder.path)).scalars().all()
            return [self._folder_record(f) for f in folders]

    # -------------------------------------------------------------------
    # Workspaces
    # -------------------------------------------------------------------

    def create_workspace(
        self,
        name: str,
        owner_id: int,
        storage_limit: Optional[int] = None,
    ) -> WorkspaceRecord:
        """Create a workspace; the owner becomes its first member."""
        name = validate_name(name, field="name")
        if len(name) > 100:
            raise ValidationFailureError(
                "Workspace name exceeds 100 characters",
                validation_errors=[{"field": "name", "error": "too_long"}],
            )
        if storage_limit is not None and storage_limit < 0:
            raise ValidationFailureError("storage_limit must be non-negative")

        with self._transaction("create_workspace") as session:
            ws = Workspace(name=name, owner_id=owner_id, storage_used=0)
            ws.storage_limit = (
                self._quota_settings.default_storage_limit if storage_limit is None else storage_limit
            )
            ws.members.append(WorkspaceMember(user_id=owner_id))
            session.add(ws)
            session.flush()
            logger.info(f"Created workspace {ws.id} '{name}' for user {owner_id}")
            return WorkspaceRecord.from_orm_workspace(ws)

    def add_member(self, workspace_id: int, actor_id: int, user_id: int) -> WorkspaceRecord:
        with self._transaction("add_member") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_workspace_owner(ws, actor_id)
            if user_id not in ws.member_ids:
                ws.members.append(WorkspaceMember(user_id=user_id))
                session.flush()
            return WorkspaceRecord.from_orm_workspace(ws)

    def remove_member(self, workspace_id: int, actor_id: int, user_id: int) -> WorkspaceRecord:
        with self._transaction("remove_member") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_workspace_owner(ws, actor_id)
            if user_id == ws.owner_id:
                raise ValidationFailureError(
                    "The workspace owner cannot be removed",
                    workspace_id=workspace_id,
                )
            member = next((m for m in ws.members if m.user_id == user_id), None)
            if member is None:
                raise NotFoundError(
                    f"User {user_id} is not a member of workspace {workspace_id}",
                    object_ref=f"workspaces.{workspace_id}",
                    workspace_id=workspace_id,
                )
            ws.members.remove(member)
            session.flush()
            return WorkspaceRecord.from_orm_workspace(ws)

    def get_workspace(self, workspace_id: int, actor_id: int) -> WorkspaceRecord:
        with self._transaction("get_workspace") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_member(ws, actor_id)
            session.refresh(ws)
            return WorkspaceRecord.from_orm_workspace(ws)

    def usage(self, workspace_id: int, actor_id: int) -> QuotaUsage:
        with self._transaction("usage") as session:
            ws = self._get_workspace(session, workspace_id)
            self._require_member(ws, actor_id)
            return self._quota.usage(session, workspace_id)
