"""Database connection and session management."""
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from .config import get_settings

# Base class for models
Base = declarative_base()


def _enable_sqlite_transactions(engine: Engine) -> None:
    """Let SQLAlchemy own transaction boundaries on pysqlite.

    The driver's implicit BEGIN breaks SAVEPOINT handling. Transactions start
    with BEGIN IMMEDIATE so concurrent writers queue up on the database lock,
    which is the closest SQLite has to the project row lock used on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    """Create an engine for the configured database.

    Args:
        database_url: Override for the configured URL
        **kwargs: Extra keyword arguments for ``create_engine``

    Returns:
        Engine: configured SQLAlchemy engine
    """
    settings = get_settings()
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.sqlite_busy_timeout)
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _enable_sqlite_transactions(engine)
        return engine

    return create_engine(
        url,
        pool_pre_ping=True,          # Verify connections before using
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        pool_timeout=30,
        **kwargs,
    )


engine = create_db_engine()

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function to get database session.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
