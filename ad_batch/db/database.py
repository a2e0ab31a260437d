"""Database connection and session management."""

import logging
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from ad_batch.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def _build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite:///./"):
        # Ensure data directory exists for file-backed SQLite
        os.makedirs(os.path.dirname(database_url.removeprefix("sqlite:///")), exist_ok=True)

    if not database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_pool_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
        )

    return create_engine(
        database_url,
        connect_args={"check_same_thread": False},
        echo=False,
        poolclass=QueuePool,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
    )


engine = _build_engine(settings.database_url)


# WAL mode plus enforced foreign keys so item rows cascade with their job
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    if engine.dialect.name != "sqlite":
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables that do not exist yet."""
    # Import models so they register on Base.metadata
    from ad_batch.db import models  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("database_initialized", extra={"database_url": str(target.url)})

