"""
DocVault Blob Store — Object storage adapters behind one narrow interface.

Adapters:
- S3BlobStore:    AWS S3 and S3-compatible services (MinIO, LocalStack, ...)
- LocalBlobStore: Filesystem-backed store for development and tests, with
                  Fernet-signed download URLs

Every adapter failure surfaces as ``UpstreamStorageError``. Messages never
carry the object key, bucket or credentials; those live in the error context
and are stripped by ``DocVaultError.public_dict()``.

Configuration:
    docvault.yaml → blob_store.backend (local | s3)
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional
from urllib.parse import parse_qs, quote, unquote, urlsplit

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet, InvalidToken

from docvault.engine.config import BlobStoreConfig
from docvault.engine.errors import (
    ConfigError,
    ForbiddenError,
    NotFoundError,
    UpstreamStorageError,
    ValidationFailureError,
)

logger = logging.getLogger("docvault.storage.blob_store")

# S3 DeleteObjects accepts at most 1000 keys per request
S3_DELETE_BATCH = 1000
_TMP_PREFIX = ".tmp-"


@dataclass
class BlobInfo:
    """One stored object as seen by list_keys()."""
    key: str
    size: int
    last_modified: datetime


@dataclass
class DeleteResult:
    """Outcome of a best-effort bulk delete. ``failed`` maps key → error text."""
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class BlobStore(ABC):
    """Abstract object store used by the document lifecycle service."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store ``data`` under ``key``. Keys are never reused, so put is retry-safe."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the object bytes. Missing objects raise NotFoundError."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete one object. Deleting a missing key is not an error."""

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: int) -> str:
        """Time-limited download URL for ``key``."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def list_keys(self, prefix: str = "") -> Iterator[BlobInfo]:
        """Iterate over stored objects whose key starts with ``prefix``."""

    def delete_many(self, keys: Iterable[str]) -> DeleteResult:
        """Best-effort bulk delete: every key is attempted, failures are collected."""
        result = DeleteResult()
        for key in dict.fromkeys(keys):
            try:
                self.delete(key)
                result.deleted.append(key)
            except UpstreamStorageError as e:
                result.failed[key] = str(e.context.get("cause") or e.message)
        return result


# ---------------------------------------------------------------------------
# Local filesystem adapter
# ---------------------------------------------------------------------------

class LocalBlobStore(BlobStore):
    """
    Filesystem-backed blob store.

    Objects live at ``{root}/{key}``. Writes go to a temp file first and are
    moved into place with ``os.replace`` so readers never see partial blobs.

    Signed URLs have the form ``{base_url}/{key}?token=...`` where the token is
    a Fernet token over ``{"k": key, "ttl": seconds}``. Fernet embeds the issue
    time, so expiry is checked with ``decrypt_at_time``.
    """

    def __init__(
        self,
        root: str,
        signing_key: str,
        base_url: str = "http://localhost:8000/blobs",
        clock: Callable[[], float] = time.time,
    ):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")
        self._fernet = self._build_fernet(signing_key)
        self._clock = clock

    @staticmethod
    def _build_fernet(signing_key: str) -> Fernet:
        if not signing_key:
            raise ConfigError("blob_store.signing_key must be set for the local backend")
        # Derive a 32-byte key from the configured secret, URL-safe b64 for Fernet
        derived = hashlib.sha256(signing_key.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(derived))

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise ValidationFailureError("Invalid blob key", blob_key=key)
        return self._root / key

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path_for(key)
        tmp = path.with_name(f"{_TMP_PREFIX}{path.name}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            logger.error(f"Local blob write failed for {key}: {e}")
            raise UpstreamStorageError(
                "Blob store write failed", operation="put", blob_key=key, cause=str(e)
            ) from e
        logger.debug(f"Stored blob {key} ({len(data)} bytes, {content_type})")

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError("Blob not found", blob_key=key) from e
        except OSError as e:
            raise UpstreamStorageError(
                "Blob store read failed", operation="get", blob_key=key, cause=str(e)
            ) from e

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Local blob delete failed for {key}: {e}")
            raise UpstreamStorageError(
                "Blob store delete failed", operation="delete", blob_key=key, cause=str(e)
            ) from e

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def list_keys(self, prefix: str = "") -> Iterator[BlobInfo]:
        for path in sorted(self._root.rglob("*")):
            if not path.is_file() or path.name.startswith(_TMP_PREFIX):
                continue
            key = path.relative_to(self._root).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            yield BlobInfo(
                key=key,
                size=stat.st_size,
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )

    # -------------------------------------------------------------------
    # Signed URLs
    # -------------------------------------------------------------------

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        if ttl_seconds <= 0:
            raise ValidationFailureError("ttl_seconds must be positive", ttl_seconds=ttl_seconds)
        self._path_for(key)
        payload = json.dumps({"k": key, "ttl": ttl_seconds}).encode("utf-8")
        token = self._fernet.encrypt_at_time(payload, int(self._clock())).decode("ascii")
        return f"{self._base_url}/{quote(key)}?token={token}"

    def verify_signed_url(self, url: str) -> str:
        """
        Validate a URL produced by signed_url() and return its key.

        Raises ForbiddenError if the token is forged, tampered with, issued
        for a different key, or older than its TTL.
        """
        parts = urlsplit(url)
        tokens = parse_qs(parts.query).get("token")
        if not tokens:
            raise ForbiddenError("Signed URL is missing its token")
        token = tokens[0].encode("ascii")
        try:
            payload = json.loads(self._fernet.decrypt(token))
            self._fernet.decrypt_at_time(token, ttl=int(payload["ttl"]), current_time=int(self._clock()))
        except (InvalidToken, ValueError, KeyError) as e:
            raise ForbiddenError("Signed URL is invalid or expired") from e

        path_key = unquote(parts.path)
        base_path = urlsplit(self._base_url).path
        if path_key.startswith(base_path):
            path_key = path_key[len(base_path):]
        if path_key.lstrip("/") != payload["k"]:
            raise ForbiddenError("Signed URL does not match its token")
        return payload["k"]

    def open_signed(self, url: str) -> bytes:
        """Resolve a signed URL to the blob bytes (what the download endpoint serves)."""
        return self.get(self.verify_signed_url(url))


# ---------------------------------------------------------------------------
# S3 adapter
# ---------------------------------------------------------------------------

class S3BlobStore(BlobStore):
    """
    S3-compatible blob store.

    Supports AWS S3 and compatible services (MinIO, LocalStack, Backblaze B2).
    The boto3 client is created lazily on first use; tests inject ``client``.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        max_attempts: int = 3,
        client: Any = None,
    ):
        if not bucket:
            raise ConfigError("blob_store.bucket must be set for the s3 backend")
        self._bucket = bucket
        self._region = region
        self._endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._max_attempts = max_attempts
        self._client = client

    @property
    def bucket_name(self) -> str:
        return self._bucket

    def _get_client(self):
        """Get or create the boto3 S3 client."""
        if self._client is not None:
            return self._client

        client_kwargs: Dict[str, Any] = {
            "service_name": "s3",
            "region_name": self._region,
            "config": Config(
                signature_version="s3v4",
                retries={"max_attempts": self._max_attempts, "mode": "adaptive"},
            ),
        }

        # Use explicit credentials if provided, otherwise the default chain
        if self._access_key_id and self._secret_access_key:
            client_kwargs["aws_access_key_id"] = self._access_key_id
            client_kwargs["aws_secret_access_key"] = self._secret_access_key
            logger.debug("Using explicit AWS credentials")
        else:
            logger.debug("Using IAM role/instance profile for AWS credentials")

        if self._endpoint_url:
            client_kwargs["endpoint_url"] = self._endpoint_url
            logger.info(f"Using custom S3 endpoint: {self._endpoint_url}")

        self._client = boto3.client(**client_kwargs)
        logger.info(f"S3 client initialized for bucket: {self._bucket}")
        return self._client

    def _upstream_error(self, operation: str, key: Optional[str], e: Exception) -> UpstreamStorageError:
        logger.error(f"S3 {operation} failed for {key}: {e}")
        return UpstreamStorageError(
            f"Blob store {operation} failed",
            operation=operation,
            blob_key=key,
            bucket=self._bucket,
            cause=str(e),
        )

    @staticmethod
    def _error_code(e: ClientError) -> str:
        return str(e.response.get("Error", {}).get("Code", ""))

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        try:
            self._get_client().put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        except (ClientError, BotoCoreError) as e:
            raise self._upstream_error("put", key, e) from e
        logger.debug(f"Uploaded to S3: {key} ({len(data)} bytes)")

    def get(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if self._error_code(e) in ("NoSuchKey", "404", "NotFound"):
                raise NotFoundError("Blob not found", blob_key=key) from e
            raise self._upstream_error("get", key, e) from e
        except BotoCoreError as e:
            raise self._upstream_error("get", key, e) from e

    def delete(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._upstream_error("delete", key, e) from e

    def delete_many(self, keys: Iterable[str]) -> DeleteResult:
        unique = list(dict.fromkeys(keys))
        result = DeleteResult()
        try:
            client = self._get_client()
        except BotoCoreError as e:
            raise self._upstream_error("delete", None, e) from e
        for start in range(0, len(unique), S3_DELETE_BATCH):
            batch = unique[start:start + S3_DELETE_BATCH]
            try:
                response = client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(f"S3 delete_objects failed for {len(batch)} keys: {e}")
                for k in batch:
                    result.failed[k] = str(e)
                continue

            errors = {
                err.get("Key"): f"{err.get('Code', '')}: {err.get('Message', '')}".strip(": ")
                for err in response.get("Errors", [])
            }
            for k in batch:
                if k in errors:
                    result.failed[k] = errors[k]
                else:
                    result.deleted.append(k)
        if result.failed:
            logger.warning(f"S3 bulk delete: {len(result.failed)} of {len(unique)} keys failed")
        return result

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        try:
            url = self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise self._upstream_error("sign", key, e) from e
        logger.debug(f"Generated presigned URL for {key} (expires in {ttl_seconds}s)")
        return url

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            if self._error_code(e) in ("404", "NoSuchKey", "NotFound"):
                return False
            raise self._upstream_error("head", key, e) from e
        except BotoCoreError as e:
            raise self._upstream_error("head", key, e) from e

    def list_keys(self, prefix: str = "") -> Iterator[BlobInfo]:
        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    yield BlobInfo(
                        key=obj["Key"],
                        size=int(obj.get("Size", 0)),
                        last_modified=obj["LastModified"],
                    )
        except (ClientError, BotoCoreError) as e:
            raise self._upstream_error("list", None, e) from e


def build_blob_store(config: BlobStoreConfig) -> BlobStore:
    """Construct the adapter selected by ``blob_store.backend``."""
    if config.backend == "s3":
        return S3BlobStore(
            bucket=config.bucket,
            region=config.region,
            endpoint_url=config.endpoint_url,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
            max_attempts=config.max_attempts,
        )
    return LocalBlobStore(
        root=config.root,
        signing_key=config.signing_key,
        base_url=config.base_url,
    )
