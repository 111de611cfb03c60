"""Application database: engine, sessions, and table setup.

The application database holds sync targets and, when it is not Postgres,
the rows backing sync advisory locks. Destination databases are never
reached through this engine; see ``services.connection_cache``.
"""

import os
import logging
from typing import Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from hooksync.config import settings

logger = logging.getLogger(__name__)


def create_app_engine(database_url: str) -> Engine:
    """Create the application database engine.

    SQLite files get their directory created and are shared across threads,
    since sync runs take their advisory lock on a second connection.
    Other databases get pre-ping so a worker survives a restarted server.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


engine = create_app_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """Create missing tables, then migrate tables created by older releases.

    Idempotent.

    Args:
        bind: Engine to initialize (defaults to the application engine).
    """
    # Import all models to ensure they are registered with Base
    from hooksync.models import SyncTarget, AdvisoryLock  # noqa: F401
    from hooksync.database.migrations import migrate_database

    bind = bind or engine
    existing_tables = inspect(bind).get_table_names()
    if existing_tables:
        logger.info(f"Found existing tables: {existing_tables}")
    else:
        logger.info("No existing tables found, creating schema")

    Base.metadata.create_all(bind=bind)

    if existing_tables:
        db = sessionmaker(bind=bind)()
        try:
            migrate_database(db)
        finally:
            db.close()

    logger.info(f"Database initialized with tables: {inspect(bind).get_table_names()}")
