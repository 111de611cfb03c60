"""Database migration utilities."""

import logging
from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Columns added to sync_targets after its first release, with their DDL types.
# Each is nullable or defaulted so existing rows stay valid.
SYNC_TARGET_COLUMN_MIGRATIONS = [
    ("disabled", "BOOLEAN NOT NULL DEFAULT FALSE"),
    ("last_applied_schema", "TEXT NOT NULL DEFAULT ''"),
    ("parallelism", "INTEGER NOT NULL DEFAULT 1"),
    ("sync_stats", "JSON"),
]


def migrate_database(db: Session) -> None:
    """Apply database migrations.

    This function checks for missing columns and adds them if needed.
    It's safe to call multiple times.

    Args:
        db: Database session.
    """
    logger.info("Checking for database migrations...")

    engine = db.get_bind()
    inspector = inspect(engine)

    if 'sync_targets' not in inspector.get_table_names():
        logger.info("Database migrations complete")
        return

    columns = [col['name'] for col in inspector.get_columns('sync_targets')]
    for column_name, column_ddl in SYNC_TARGET_COLUMN_MIGRATIONS:
        if column_name in columns:
            continue
        logger.info(f"Adding {column_name} column to sync_targets table")
        try:
            db.execute(text(f"ALTER TABLE sync_targets ADD COLUMN {column_name} {column_ddl}"))
            db.commit()
            logger.info(f"Successfully added {column_name} column")
        except Exception as e:
            logger.error(f"Failed to add {column_name} column: {e}")
            db.rollback()
            raise

    logger.info("Database migrations complete")


def get_migration_status(db: Session) -> dict:
    """Get the status of database migrations.

    Args:
        db: Database session.

    Returns:
        Dictionary with migration status information.
    """
    engine = db.get_bind()
    inspector = inspect(engine)

    status = {
        'tables': inspector.get_table_names(),
        'migrations_applied': []
    }

    if 'sync_targets' in status['tables']:
        columns = [col['name'] for col in inspector.get_columns('sync_targets')]
        for column_name, _ in SYNC_TARGET_COLUMN_MIGRATIONS:
            if column_name in columns:
                status['migrations_applied'].append(f'sync_targets.{column_name}')

    return status
