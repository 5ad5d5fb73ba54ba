"""
DocVault — Multi-tenant document vault core.

Document lifecycle and storage accounting: quota-checked uploads into a blob
store, append-only version history, soft delete / restore, time-bounded
sharing, and the maintenance sweeps that keep the blob store and metadata
converging.

Entry points:
    docvault.documents.DocumentLifecycleService — the lifecycle API
    docvault.engine.runtime.VaultRuntime        — config-driven wiring
    docvault.cli:main                           — ``docvault`` command
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "storage", "quota", "security", "documents"]
