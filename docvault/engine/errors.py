"""
DocVault Error Hierarchy — Structured exceptions for the document lifecycle engine.

Every error carries a human-readable message plus structured context that is
serialisable to JSON for the audit log. Context may include internal details
(blob keys, bucket names) that must never reach an end user: use
``public_dict()`` for anything rendered outside the service.

Hierarchy:
    DocVaultError
    ├── NotFoundError            — Workspace / document / folder / grant absent
    ├── ForbiddenError           — Actor lacks the required capability
    ├── QuotaExceededError       — Storage admission denied
    ├── ConflictError            — Duplicate key, version race, invalid state
    ├── UpstreamStorageError     — Blob store I/O failed
    ├── ValidationFailureError   — Malformed input
    └── ConfigError              — Invalid docvault.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context keys that are internal-only and stripped from public payloads
INTERNAL_CONTEXT_KEYS = frozenset({"blob_key", "blob_keys", "bucket", "endpoint_url", "cause"})


class DocVaultError(Exception):
    """
    Base error for all DocVault failures.
    Structured so the audit log can store the full context as JSON.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.object_ref: Optional[str] = context.get("object_ref")
        self.workspace_id: Optional[int] = context.get("workspace_id")
        self.document_id: Optional[int] = context.get("document_id")
        self.actor_id: Optional[int] = context.get("actor_id")
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "object_ref": self.object_ref,
            "workspace_id": self.workspace_id,
            "document_id": self.document_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("object_ref", "workspace_id", "document_id", "actor_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def public_dict(self) -> Dict[str, Any]:
        """Caller-safe view: no storage keys, buckets or upstream causes."""
        d = self.to_dict()
        d["context"] = {
            k: v for k, v in d["context"].items() if k not in INTERNAL_CONTEXT_KEYS
        }
        return d

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.object_ref:
            parts.append(f"object_ref={self.object_ref}")
        if self.document_id is not None:
            parts.append(f"document_id={self.document_id}")
        return " | ".join(parts)


class NotFoundError(DocVaultError):
    """Workspace, document, folder or grant does not exist (or is soft-deleted)."""
    pass


class ForbiddenError(DocVaultError):
    """
    Authenticated actor lacks the capability required for the operation.
    Logged to the security audit stream.
    """

    def __init__(self, message: str, **context: Any):
        self.required_permission: Optional[str] = context.get("required_permission")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["required_permission"] = self.required_permission
        return d


class QuotaExceededError(DocVaultError):
    """Workspace quota admission denied. Terminal — never retried automatically."""

    def __init__(self, message: str, **context: Any):
        self.requested_bytes: Optional[int] = context.get("requested_bytes")
        self.available_bytes: Optional[int] = context.get("available_bytes")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["requested_bytes"] = self.requested_bytes
        d["available_bytes"] = self.available_bytes
        return d


class ConflictError(DocVaultError):
    """Duplicate blob key, concurrent version race, or invalid state transition."""
    pass


class UpstreamStorageError(DocVaultError):
    """Blob store I/O failed (put, delete, signing, listing)."""

    def __init__(self, message: str, **context: Any):
        self.operation: Optional[str] = context.get("operation")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["operation"] = self.operation
        return d


class ValidationFailureError(DocVaultError):
    """
    Input validation failed (name length, page size, negative delta, ...).
    Includes field-level error details when available.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[list] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class ConfigError(DocVaultError):
    """Configuration error — invalid docvault.yaml."""

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[list] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d
