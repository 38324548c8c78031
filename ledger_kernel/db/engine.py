"""
Module: ledger_kernel.db.engine
Responsibility: SQLAlchemy engine construction, session factories and the
    transactional scope helper.
Architecture position: Kernel > DB.

Invariants enforced:
    - No module-level engine: callers build an engine and pass sessions
      explicitly, so parallel parse runs never share hidden state.
    - SAVEPOINTs work on every supported backend.  pysqlite's implicit
      transaction handling is disabled so ``Session.begin_nested()`` emits
      real SAVEPOINTs; commit-mode runs rely on this for chunk rollback.

Failure modes:
    - OperationalError when the database is unreachable.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ledger_kernel.logging_config import get_logger

logger = get_logger("db.engine")

IN_MEMORY_URL = "sqlite://"


def build_engine(
    database_url: str = IN_MEMORY_URL,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
) -> Engine:
    """
    Build an engine for ``database_url``.

    SQLite URLs get a single shared connection (StaticPool) so an in-memory
    database survives across sessions, plus the SAVEPOINT fix-up.
    Anything else is treated as a pooled server database (PostgreSQL via
    psycopg2) at READ COMMITTED.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_savepoints(engine)
        dialect = "sqlite"
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
        )
        dialect = engine.dialect.name

    logger.info(
        "engine_initialized",
        extra={"dialect": dialect, "echo": echo},
    )
    return engine


def _enable_sqlite_savepoints(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to ``engine``; objects stay usable after commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Commits on normal exit; rolls back and re-raises on exception.
    """
    session = factory()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """Create every ledger table (models are imported to register them)."""
    import ledger_kernel.models  # noqa: F401
    from ledger_kernel.db.base import Base

    Base.metadata.create_all(engine)
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables(engine: Engine) -> None:
    """Drop every ledger table. FOR TESTING ONLY."""
    import ledger_kernel.models  # noqa: F401
    from ledger_kernel.db.base import Base

    Base.metadata.drop_all(engine)
