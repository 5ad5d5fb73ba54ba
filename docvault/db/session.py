"""
DocVault Database Session Management.

Provides the single entry point for metadata DB initialisation plus
context managers for DB access.  Uses the global EngineRegistry.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from docvault.db.base import Base, engine_registry

CORE_ENGINE = "docvault_core"

# Scoped session factory for the metadata DB (docvault_core).
# Populated by init_metadata_db(); used by get_session().
_session_factory: Optional[scoped_session] = None


def _install_sqlite_hooks(engine: Engine) -> None:
    """
    Make SQLite behave like a locking database for the ledger.

    pysqlite defers BEGIN until the first DML statement, which lets two
    writers both read a stale counter.  Taking control of BEGIN and issuing
    BEGIN IMMEDIATE acquires the write lock up front, so the conditional
    UPDATEs in QuotaLedger serialise the same way row locks do on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_metadata_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Single entry point for metadata database initialisation.

    All callers (``docvault init`` CLI, Celery workers, tests) go through
    this function.

    What it does
    ────────────
    1. Registers a named engine "docvault_core" in EngineRegistry.
    2. For SQLite URLs, installs the BEGIN IMMEDIATE / foreign-key hooks.
    3. Optionally calls ``Base.metadata.create_all()`` — for dev and
       ``docvault init`` only.
    4. Stores a thread-safe ``scoped_session`` factory as the module-level
       singleton (used by ``get_session()``).

    Args:
        db_url:        SQLAlchemy URL (postgresql://... or sqlite:///...).
        create_tables: When True, run Base.metadata.create_all().
        pool_size:     SQLAlchemy engine pool_size (ignored for SQLite).
        max_overflow:  SQLAlchemy engine max_overflow (ignored for SQLite).
        pool_timeout:  SQLAlchemy engine pool_timeout in seconds.
        pool_recycle:  SQLAlchemy engine pool_recycle in seconds.
        pool_pre_ping: SQLAlchemy engine pool_pre_ping.

    Returns:
        A plain ``sessionmaker`` bound to the initialised engine. Pass it to
        ``DocumentLifecycleService`` so every operation gets its own session.
    """
    global _session_factory

    engine = engine_registry.register(
        CORE_ENGINE, db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
    )

    if engine.dialect.name == "sqlite":
        _install_sqlite_hooks(engine)

    if create_tables:
        # Import models so every table is attached to Base.metadata
        from docvault.db import models  # noqa: F401
        Base.metadata.create_all(engine)

    factory = sessionmaker(bind=engine, expire_on_commit=False)
    if _session_factory is not None:
        _session_factory.remove()
    _session_factory = scoped_session(factory)

    return factory


def get_session() -> Session:
    """
    Get a session for the metadata database (docvault_core).
    Uses scoped_session for thread-safety.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Metadata DB not initialized. Call init_metadata_db() first."
        )
    return _session_factory()


@contextmanager
def session_scope(
    factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for metadata sessions with auto-commit/rollback.

    Usage:
        with session_scope(factory) as session:
            doc = session.get(Document, 42)

    Args:
        factory: Session factory to draw from. Defaults to the scoped
                 factory set up by init_metadata_db().
    """
    session = factory() if factory is not None else get_session()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def close_all_sessions() -> None:
    """Close all sessions and dispose all engines. Used during shutdown."""
    global _session_factory
    if _session_factory:
        _session_factory.remove()
        _session_factory = None
    engine_registry.dispose_all()
