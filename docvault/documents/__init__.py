"""
DocVault Document Lifecycle.

Upload, versioning, soft delete / restore, sharing and download across the
metadata store and the blob store, plus the reconciliation sweeps.
"""

from docvault.documents.models import (  # noqa: F401
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
from docvault.documents.reconcile import BlobReconciler  # noqa: F401
from docvault.documents.service import DocumentLifecycleService  # noqa: F401

__all__ = [
    "DocumentLifecycleService",
    "BlobReconciler",
    "DocumentRecord",
    "VersionEntry",
    "FolderRecord",
    "GrantRecord",
    "SharedDocument",
    "WorkspaceRecord",
    "DownloadLink",
    "Page",
    "UNSET",
]
