"""
DocVault Runtime — Wires configuration into the running subsystems.

Ties together:
- AsyncLogQueue (file-based audit logging)
- Metadata DB (EngineRegistry "docvault_core")
- BlobStore adapter (local or S3)
- DocumentLifecycleService and BlobReconciler

Used by the CLI and the Celery worker; embedding applications may build
the service directly instead.

Lifecycle:
    runtime = init_runtime(load_config())
    runtime.startup()
    ...
    runtime.shutdown()
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from docvault.db.session import close_all_sessions, init_metadata_db
from docvault.documents.reconcile import BlobReconciler
from docvault.documents.service import DocumentLifecycleService
from docvault.engine.config import VaultConfig, get_config
from docvault.engine.logging import (
    AsyncLogQueue,
    LogRetentionManager,
    init_logging,
    log,
    log_system_event,
    shutdown_logging,
)
from docvault.quota.ledger import QuotaLedger
from docvault.security.access import AccessResolver
from docvault.storage.blob_store import BlobStore, build_blob_store

logger = logging.getLogger("docvault.engine.runtime")


class VaultRuntime:
    """Owns the process-wide subsystems built from one VaultConfig."""

    def __init__(self, config: VaultConfig, enable_audit_log: bool = True):
        self.config = config
        self._enable_audit_log = enable_audit_log

        # Subsystems (initialized in startup())
        self.session_factory: Optional[sessionmaker] = None
        self.blob_store: Optional[BlobStore] = None
        self.quota_ledger: Optional[QuotaLedger] = None
        self.access_resolver: Optional[AccessResolver] = None
        self.service: Optional[DocumentLifecycleService] = None
        self.reconciler: Optional[BlobReconciler] = None
        self.log_queue: Optional[AsyncLogQueue] = None
        self.retention_manager: Optional[LogRetentionManager] = None

        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def startup(self, create_tables: bool = False) -> None:
        """Initialize all subsystems."""
        if self._started:
            logger.warning("Runtime already started")
            return

        cfg = self.config
        logger.info(f"Starting {cfg.name} runtime ({cfg.environment})...")

        # 1. Audit logging
        if self._enable_audit_log:
            q = cfg.logging.async_queue
            self.log_queue = init_logging(
                log_dir=cfg.logging.directory,
                flush_interval_ms=q.flush_interval_ms,
                flush_batch_size=q.flush_batch_size,
                max_queue_size=q.max_queue_size,
                level=cfg.logging.level,
            )
            self.retention_manager = LogRetentionManager(
                log_dir=cfg.logging.directory,
                retention_days={
                    "execution": cfg.logging.retention.execution_days,
                    "security": cfg.logging.retention.security_days,
                    "reconciliation": cfg.logging.retention.reconciliation_days,
                },
                compress_after_days=cfg.logging.compress_after_days,
            )

        # 2. Metadata DB
        db = cfg.database
        self.session_factory = init_metadata_db(
            db.url,
            create_tables=create_tables,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
            pool_pre_ping=db.pool_pre_ping,
        )

        # 3. Blob store + core components
        self.blob_store = build_blob_store(cfg.blob_store)
        self.quota_ledger = QuotaLedger()
        self.access_resolver = AccessResolver()
        self.service = DocumentLifecycleService(
            self.session_factory,
            self.blob_store,
            access_resolver=self.access_resolver,
            quota_ledger=self.quota_ledger,
            settings=cfg.documents,
            quota_settings=cfg.quota,
        )
        self.reconciler = BlobReconciler(
            self.session_factory,
            self.blob_store,
            quota_ledger=self.quota_ledger,
            access_resolver=self.access_resolver,
            maintenance=cfg.maintenance,
            documents=cfg.documents,
        )

        self._started = True
        log(log_system_event("runtime_started", details={
            "environment": cfg.environment,
            "blob_backend": cfg.blob_store.backend,
        }))
        logger.info("DocVault runtime started")

    def shutdown(self) -> None:
        """Flush logs, close sessions, dispose engines."""
        if not self._started:
            return
        logger.info("Shutting down DocVault runtime...")
        log(log_system_event("runtime_shutdown"))
        shutdown_logging()
        close_all_sessions()
        self._started = False

    def cleanup_logs(self) -> Dict[str, int]:
        """Apply log retention (nightly beat task or ``docvault reconcile --logs``)."""
        if self.retention_manager is None:
            return {"deleted": 0, "compressed": 0}
        return self.retention_manager.cleanup()


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_runtime: Optional[VaultRuntime] = None


def get_runtime() -> VaultRuntime:
    """
    Get the global runtime, creating and starting it from docvault.yaml
    on first use (Celery workers import tasks without a bootstrap step).
    """
    global _runtime
    if _runtime is None:
        _runtime = VaultRuntime(get_config())
    if not _runtime.started:
        _runtime.startup()
    return _runtime


def init_runtime(config: Optional[VaultConfig] = None, **kwargs) -> VaultRuntime:
    """Create (but do not start) the global runtime."""
    global _runtime
    if _runtime is not None and _runtime.started:
        _runtime.shutdown()
    _runtime = VaultRuntime(config or get_config(), **kwargs)
    return _runtime


def reset_runtime() -> None:
    """Shut down and forget the global runtime (tests)."""
    global _runtime
    if _runtime is not None:
        _runtime.shutdown()
    _runtime = None
