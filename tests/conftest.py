"""
DocVault Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

Every test that touches the metadata store gets its own SQLite file under
tmp_path (BEGIN IMMEDIATE locking, so concurrency tests behave like a real
database) and a LocalBlobStore rooted in the same temp directory.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from docvault.engine.config import DocumentsConfig

SIGNING_KEY = "test-signing-key"
BASE_URL = "http://vault.test/blobs"


class FakeClock:
    """Callable epoch-seconds clock that tests can move forward."""

    def __init__(self, start: float = 1_800_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Global state isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """Reset config / audit queue singletons between tests."""
    import docvault.engine.config as cfg_mod
    from docvault.engine.logging import shutdown_logging

    monkeypatch.delenv("DOCVAULT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DOCVAULT_SIGNING_KEY", raising=False)
    cfg_mod.set_config(None)
    yield
    shutdown_logging()
    cfg_mod.set_config(None)


# ---------------------------------------------------------------------------
# Metadata DB
# ---------------------------------------------------------------------------

@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'vault.db'}"


@pytest.fixture
def session_factory(db_url):
    from docvault.db.session import close_all_sessions, init_metadata_db

    factory = init_metadata_db(db_url, create_tables=True)
    yield factory
    close_all_sessions()


# ---------------------------------------------------------------------------
# Blob stores
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def base_url():
    return BASE_URL


@pytest.fixture
def blob_store(tmp_path, clock):
    from docvault.storage.blob_store import LocalBlobStore

    return LocalBlobStore(
        root=str(tmp_path / "blobs"),
        signing_key=SIGNING_KEY,
        base_url=BASE_URL,
        clock=clock,
    )


@pytest.fixture
def flaky_blob_store(blob_store):
    """
    A MagicMock that forwards to the real local store; tests switch
    individual methods to failing side effects.
    """
    from docvault.storage.blob_store import BlobStore

    store = MagicMock(spec=BlobStore, wraps=blob_store)
    store.real = blob_store
    return store


@pytest.fixture
def upstream_error():
    """Factory for the error a failing adapter raises."""
    from docvault.engine.errors import UpstreamStorageError

    def make(operation: str = "delete") -> UpstreamStorageError:
        return UpstreamStorageError(
            f"Blob store {operation} failed", operation=operation, cause="connection reset"
        )

    return make


# ---------------------------------------------------------------------------
# Service + seeded workspace
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    """Blobs are purged as soon as a document is soft-deleted."""
    return DocumentsConfig(purge_blobs_on_delete=True)


@pytest.fixture
def restorable_settings():
    """Default settings: blobs stay resident after soft delete so documents can be restored."""
    return DocumentsConfig()


@pytest.fixture
def service(session_factory, blob_store, settings):
    from docvault.documents.service import DocumentLifecycleService

    return DocumentLifecycleService(session_factory, blob_store, settings=settings)


@pytest.fixture
def restorable_service(session_factory, blob_store, restorable_settings):
    from docvault.documents.service import DocumentLifecycleService

    return DocumentLifecycleService(session_factory, blob_store, settings=restorable_settings)


@pytest.fixture
def workspace(service):
    """Workspace owned by user 1 with user 2 added; 10,000,000-byte limit. User 3 is an outsider."""
    ws = service.create_workspace("Acme", 1, storage_limit=10_000_000)
    return service.add_member(ws.id, 1, 2)


@pytest.fixture
def storage_used(session_factory):
    """Read a workspace's storage counter straight from the table."""
    from docvault.db.models import Workspace
    from docvault.db.session import session_scope

    def read(workspace_id: int) -> int:
        with session_scope(session_factory) as session:
            return session.get(Workspace, workspace_id).storage_used

    return read


@pytest.fixture
def pending_keys(session_factory):
    """Blob keys currently queued in pending_blob_deletions, with their reason."""
    from sqlalchemy import select

    from docvault.db.models import PendingBlobDeletion
    from docvault.db.session import session_scope

    def read() -> dict:
        with session_scope(session_factory) as session:
            rows = session.execute(
                select(PendingBlobDeletion.blob_key, PendingBlobDeletion.reason)
            ).all()
            return {key: reason for key, reason in rows}

    return read
