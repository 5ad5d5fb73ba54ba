"""DocVault Engine — Configuration, error hierarchy, audit logging."""

from docvault.engine.config import VaultConfig, get_config, load_config  # noqa: F401
from docvault.engine.errors import (  # noqa: F401
    ConfigError,
    ConflictError,
    DocVaultError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    UpstreamStorageError,
    ValidationFailureError,
)

__all__ = [
    "VaultConfig",
    "get_config",
    "load_config",
    "DocVaultError",
    "NotFoundError",
    "ForbiddenError",
    "QuotaExceededError",
    "ConflictError",
    "UpstreamStorageError",
    "ValidationFailureError",
    "ConfigError",
]
