"""DocVault blob storage — adapters and key generation."""

from docvault.storage.blob_store import (  # noqa: F401
    BlobInfo,
    BlobStore,
    DeleteResult,
    LocalBlobStore,
    S3BlobStore,
    build_blob_store,
)
from docvault.storage.keys import generate_blob_key  # noqa: F401

__all__ = [
    "BlobInfo",
    "BlobStore",
    "DeleteResult",
    "LocalBlobStore",
    "S3BlobStore",
    "build_blob_store",
    "generate_blob_key",
]
