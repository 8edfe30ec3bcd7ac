"""Database engine and session factory."""

from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from src.db.base import Base
from src.settings import get_settings

_sync_engine = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; sqlite gets cross-thread access and enforced FKs."""
    if database_url.startswith("sqlite"):
        database = make_url(database_url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def get_sync_engine() -> Engine:
    """Get or create the process-wide database engine."""
    global _sync_engine
    if _sync_engine is None:
        settings = get_settings()
        _sync_engine = build_engine(settings.database_url, echo=settings.database_echo)
    return _sync_engine


def get_sync_session_factory(engine: Optional[Engine] = None) -> sessionmaker:
    return sessionmaker(bind=engine or get_sync_engine(), expire_on_commit=False)


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables (embedded / sqlite deployments and tests)."""
    from src.db import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(engine or get_sync_engine())


# Convenience alias
SyncSessionLocal = get_sync_session_factory
