"""Non-blocking, cross-process try-locks on the application database.

On Postgres this is ``pg_try_advisory_lock`` held by a dedicated
connection, so the lock disappears when the session does, even if the
worker crashes. Other databases (SQLite in development and tests) get a
row in ``advisory_locks``; rows older than ``sync_lock_stale_seconds``
are treated as abandoned and taken over.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import delete, insert, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from hooksync.config import settings
from hooksync.models.advisory_lock import AdvisoryLock

logger = logging.getLogger(__name__)


def _try_acquire(conn: Connection, namespace: int, key: int, stale_after: timedelta) -> bool:
    if conn.dialect.name == "postgresql":
        acquired = conn.execute(
            text("SELECT pg_try_advisory_lock(:ns, :key)"), {"ns": namespace, "key": key}
        ).scalar()
        conn.commit()
        return bool(acquired)

    table = AdvisoryLock.__table__
    now = datetime.utcnow()
    conn.execute(
        delete(table).where(
            table.c.namespace == namespace,
            table.c.lock_key == key,
            table.c.acquired_at < now - stale_after,
        )
    )
    try:
        conn.execute(insert(table).values(namespace=namespace, lock_key=key, acquired_at=now))
        conn.commit()
    except IntegrityError:
        conn.rollback()
        return False
    return True


def _release(conn: Connection, namespace: int, key: int) -> None:
    if conn.dialect.name == "postgresql":
        conn.execute(text("SELECT pg_advisory_unlock(:ns, :key)"), {"ns": namespace, "key": key})
    else:
        table = AdvisoryLock.__table__
        conn.execute(delete(table).where(table.c.namespace == namespace, table.c.lock_key == key))
    conn.commit()


@contextmanager
def try_advisory_lock(
    engine: Engine,
    namespace: int,
    key: int,
    stale_after: Optional[timedelta] = None,
) -> Iterator[bool]:
    """Try to take the lock for (namespace, key) without waiting.

    Yields True if this caller holds the lock for the duration of the block,
    False if someone else does. A held lock is always released on exit.
    """
    if stale_after is None:
        stale_after = timedelta(seconds=settings.sync_lock_stale_seconds)
    with engine.connect() as conn:
        acquired = _try_acquire(conn, namespace, key, stale_after)
        if not acquired:
            logger.debug(f"Advisory lock ({namespace}, {key}) is held elsewhere")
        try:
            yield acquired
        finally:
            if acquired:
                _release(conn, namespace, key)
