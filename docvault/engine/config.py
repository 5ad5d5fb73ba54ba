"""
DocVault Configuration — Load and validate docvault.yaml at startup.

Usage:
    from docvault.engine.config import load_config, get_config

Environment overrides (applied after the file is parsed):
    DOCVAULT_DATABASE_URL  → database.url
    DOCVAULT_SIGNING_KEY   → blob_store.signing_key
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from docvault.engine.errors import ConfigError

CONFIG_FILENAME = "docvault.yaml"


# ---------------------------------------------------------------------------
# Pydantic models for docvault.yaml
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///docvault.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True


class BlobStoreConfig(BaseModel):
    backend: str = "local"
    root: str = ".docvault/blobs"
    base_url: str = "http://localhost:8000/blobs"
    signing_key: str = "docvault-dev-key-change-in-production"
    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    max_attempts: int = 3

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in ("local", "s3"):
            raise ValueError(f"blob_store.backend must be local/s3, got '{v}'")
        return v


class DocumentsConfig(BaseModel):
    max_upload_size_mb: int = 50
    download_url_ttl_seconds: int = 3600
    purge_blobs_on_delete: bool = False
    deleted_retention_days: int = 30
    default_page_size: int = 20
    max_page_size: int = 100

    @field_validator("download_url_ttl_seconds", "max_upload_size_mb", "max_page_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class QuotaConfig(BaseModel):
    default_storage_limit: int = 5368709120  # 5 GiB


class LogRetentionConfig(BaseModel):
    execution_days: int = 90
    security_days: int = 365
    reconciliation_days: int = 180


class LogAsyncQueueConfig(BaseModel):
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".docvault/logs"
    compress_after_days: int = 7
    retention: LogRetentionConfig = LogRetentionConfig()
    async_queue: LogAsyncQueueConfig = LogAsyncQueueConfig()

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"logging.level must be a stdlib level name, got '{v}'")
        return v


class MaintenanceConfig(BaseModel):
    broker: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"
    pending_deletion_interval_seconds: int = 300
    orphan_scan_interval_seconds: int = 86400
    orphan_grace_seconds: int = 3600
    grant_purge_interval_seconds: int = 3600
    deleted_purge_interval_seconds: int = 86400
    retry_base_seconds: int = 60
    retry_max_seconds: int = 21600
    batch_size: int = 500


class VaultConfig(BaseModel):
    """Root model for docvault.yaml."""
    name: str = "DocVault"
    environment: str = "dev"

    database: DatabaseConfig = DatabaseConfig()
    blob_store: BlobStoreConfig = BlobStoreConfig()
    documents: DocumentsConfig = DocumentsConfig()
    quota: QuotaConfig = QuotaConfig()
    logging: LoggingConfig = LoggingConfig()
    maintenance: MaintenanceConfig = MaintenanceConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[VaultConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for docvault.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILENAME).exists():
            return parent
    return current


def _apply_env_overrides(data: Dict) -> Dict:
    db_url = os.environ.get("DOCVAULT_DATABASE_URL")
    if db_url:
        data.setdefault("database", {})["url"] = db_url
    signing_key = os.environ.get("DOCVAULT_SIGNING_KEY")
    if signing_key:
        data.setdefault("blob_store", {})["signing_key"] = signing_key
    return data


def load_config(config_path: Optional[str] = None) -> VaultConfig:
    """
    Load and validate docvault.yaml.

    Args:
        config_path: Explicit path to docvault.yaml. If None, auto-discovers.

    Returns:
        Validated VaultConfig instance (defaults if no file exists).

    Raises:
        ConfigError: If the file is not valid YAML or fails validation.
    """
    global _config

    if config_path is None:
        config_path = str(_find_project_root() / CONFIG_FILENAME)

    path = Path(config_path)
    raw: Dict = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path.name}: {e}", object_ref=str(path)) from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{path.name} must contain a mapping", object_ref=str(path))

    # Allow the top-level "vault:" wrapper for name/environment
    vault_data = raw.pop("vault", {}) or {}
    data = {**raw, **{k: v for k, v in vault_data.items() if k in ("name", "environment")}}
    data = _apply_env_overrides(data)

    try:
        _config = VaultConfig(**data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid configuration in {path.name}",
            object_ref=str(path),
            validation_errors=e.errors(),
        ) from e
    return _config


def get_config() -> VaultConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[VaultConfig]) -> None:
    """Replace the cached config (tests, embedding applications)."""
    global _config
    _config = config
