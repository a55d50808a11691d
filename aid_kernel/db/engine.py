"""
Module: aid_kernel.db.engine
Responsibility: Builds the one engine and session factory the marketplace
    uses, for PostgreSQL in production and file-backed SQLite locally and
    in the test suite.
Architecture position: Kernel > DB.  Imports db/base.py; create_tables and
    drop_tables also import the models package to register every table.

Invariants enforced:
    - PostgreSQL: READ COMMITTED plus explicit ``SELECT ... FOR UPDATE``
      (aid_kernel.db.locking), with a server-side ``lock_timeout`` so no
      lock wait is unbounded.
    - SQLite: every transaction opens with BEGIN IMMEDIATE.  SQLite has no
      row locks; taking the write lock up front serializes the
      read-check-write of a contribution or allocation the same way FOR
      UPDATE does.  The driver busy timeout bounds the wait.

Failure modes:
    - RuntimeError from any accessor called before init_engine_from_url().
    - OperationalError on an expired lock wait; translate_lock_errors turns
      it into LockTimeoutError.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from aid_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_transaction_hooks(engine: Engine) -> None:
    """Take over pysqlite's transaction handling so BEGIN IMMEDIATE is emitted.

    pysqlite defers BEGIN until the first DML statement and never emits it
    for SELECT, which would let two writers read the same committed total
    before either takes the write lock.
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


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    lock_timeout_ms: int = 5000,
) -> Engine:
    """
    Build the module engine and session factory.

    ``database_url`` is a PostgreSQL URL or a file-backed SQLite URL.
    In-memory SQLite is not supported: each thread opens its own
    connection.  ``lock_timeout_ms`` bounds any single lock wait; the pool
    arguments pass straight to ``create_engine``.
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    dialect = url.get_backend_name()

    if dialect == "sqlite":
        _engine = create_engine(
            url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            connect_args={
                "timeout": lock_timeout_ms / 1000,
                "check_same_thread": False,
            },
        )
        _install_sqlite_transaction_hooks(_engine)
    else:
        _engine = create_engine(
            url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
            connect_args={"options": f"-c lock_timeout={lock_timeout_ms}"},
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={
            "dialect": dialect,
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "lock_timeout_ms": lock_timeout_ms,
            "echo": echo,
        },
    )

    return _engine


def _factory() -> sessionmaker[Session]:
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


def get_engine() -> Engine:
    """The engine built by ``init_engine_from_url``; RuntimeError before that."""
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    return _factory()()


def get_session_factory() -> sessionmaker[Session]:
    """Factory for callers that open one session per thread."""
    return _factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Commit on normal exit, roll back and re-raise on error, always close.

    Usage:
        with session_scope() as session:
            MarketplaceCoordinator(session, auto_commit=False).claim(...)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from aid_kernel.db.base import Base
    import aid_kernel.models  # noqa: F401  (registers every table on Base.metadata)

    return Base.metadata


def create_tables() -> None:
    """Create every missing marketplace table."""
    metadata = _metadata()
    metadata.create_all(get_engine())
    logger.info("tables_created", extra={"table_count": len(metadata.sorted_tables)})


def drop_tables() -> None:
    """Drop every marketplace table.  Test and local use only."""
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
