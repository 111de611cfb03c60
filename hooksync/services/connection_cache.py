"""Process-wide cache of SQLAlchemy engines for sync destinations.

Opening connections to customer databases is costly, but holding engines
for every destination forever leaks connections. Connections are borrowed
for the duration of a ``with`` block. Every borrow may prune: once
``prune_interval`` seconds have passed since the last prune, every engine
with no pending borrows (other than the one being borrowed) is disposed.
Idle destinations are assumed unlikely to be reused soon, so this is
deliberately more aggressive than an LRU.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Union

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine

from hooksync.config import settings
from hooksync.services.exceptions import InvalidPrecondition
from hooksync.services.urls import displaysafe_url, sqlalchemy_url

logger = logging.getLogger(__name__)

Timeout = Union[None, str, int, float]


class ReentrantBorrowError(RuntimeError):
    """A thread tried to borrow a URL it is already borrowing."""

    pass


class ConnectionInUseError(InvalidPrecondition):
    """A URL was disconnected while it still had pending borrows."""

    pass


class UnknownTimeoutError(ValueError):
    """A timeout name or destination type has no statement timeout."""

    pass


# (set statement, reset statement) per SQLAlchemy dialect name.
STATEMENT_TIMEOUT_SQL = {
    "postgresql": (
        lambda seconds: f"SET statement_timeout TO {int(seconds * 1000)}",
        "SET statement_timeout TO 0",
    ),
    "snowflake": (
        lambda seconds: f"ALTER SESSION SET STATEMENT_TIMEOUT_IN_SECONDS = {int(seconds)}",
        "ALTER SESSION UNSET STATEMENT_TIMEOUT_IN_SECONDS",
    ),
}


@dataclass
class _CacheEntry:
    engine: Engine
    pending: int = 0
    last_borrowed_at: float = 0.0


class ConnectionCache:
    """Lends pooled connections to arbitrary destination URLs."""

    def __init__(
        self,
        prune_interval: Optional[float] = None,
        engine_factory: Callable[[str], Engine] = create_engine,
        clock: Callable[[], float] = time.monotonic,
        named_timeouts: Optional[Dict[str, float]] = None,
    ):
        """Initialize connection cache.

        Args:
            prune_interval: Seconds between prunes (defaults to settings).
            engine_factory: Builds an engine for a SQLAlchemy URL.
            clock: Monotonic clock used for pruning.
            named_timeouts: Statement timeouts selectable by name.
        """
        if prune_interval is None:
            prune_interval = settings.connection_cache_prune_interval_seconds
        self.prune_interval = prune_interval
        self._engine_factory = engine_factory
        self._clock = clock
        self._named_timeouts = named_timeouts if named_timeouts is not None else {
            "fast": settings.connection_timeout_fast_seconds,
            "slow": settings.connection_timeout_slow_seconds,
        }
        self._entries: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._local = threading.local()
        self._last_pruned_at = clock()

    @property
    def databases(self) -> Dict[str, Engine]:
        """Snapshot of cached engines by URL."""
        with self._lock:
            return {url: entry.engine for url, entry in self._entries.items()}

    def pending(self, url: str) -> int:
        """Number of in-flight borrows of ``url``."""
        with self._lock:
            entry = self._entries.get(url)
            return entry.pending if entry else 0

    def _held_urls(self) -> set:
        held = getattr(self._local, "held", None)
        if held is None:
            held = self._local.held = set()
        return held

    def _resolve_timeout(self, timeout: Timeout) -> Optional[float]:
        if timeout is None:
            return None
        if isinstance(timeout, str):
            if timeout not in self._named_timeouts:
                raise UnknownTimeoutError(
                    f"No timeout named {timeout!r}. Known timeouts: {', '.join(sorted(self._named_timeouts))}"
                )
            return self._named_timeouts[timeout]
        return float(timeout)

    @contextmanager
    def borrow(self, url: str, timeout: Timeout = None, transaction: bool = False) -> Iterator[Connection]:
        """Borrow a connection to ``url`` for the duration of the block.

        Args:
            url: Destination URL, credentials included.
            timeout: Statement timeout in seconds, or a name like ``"fast"``.
                Reverted when the block exits, even on error.
            transaction: Wrap the block in BEGIN/COMMIT, rolling back and
                re-raising on error. Otherwise work is committed when the block
                exits normally.

        Raises:
            ValueError: If url is blank.
            ReentrantBorrowError: If this thread is already borrowing ``url``.
            UnknownTimeoutError: If the timeout name or dialect is unknown.
        """
        if not url:
            raise ValueError("url cannot be blank")
        held = self._held_urls()
        if url in held:
            raise ReentrantBorrowError(f"{displaysafe_url(url)} is already borrowed by this thread")
        timeout_seconds = self._resolve_timeout(timeout)

        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                logger.info(f"Opening connection pool for {displaysafe_url(url)}")
                entry = _CacheEntry(engine=self._engine_factory(sqlalchemy_url(url)))
                self._entries[url] = entry
            entry.pending += 1
            entry.last_borrowed_at = self._clock()
            self._prune(keep=url)

        held.add(url)
        try:
            with entry.engine.connect() as conn:
                with self._statement_timeout(conn, timeout_seconds):
                    if transaction:
                        with conn.begin():
                            yield conn
                    else:
                        yield conn
                        conn.commit()
        finally:
            held.discard(url)
            with self._lock:
                entry.pending -= 1

    @contextmanager
    def _statement_timeout(self, conn: Connection, seconds: Optional[float]):
        if seconds is None:
            yield
            return
        dialect = conn.engine.dialect.name
        if dialect not in STATEMENT_TIMEOUT_SQL:
            raise UnknownTimeoutError(f"Statement timeouts are not supported for {dialect} connections")
        set_sql, reset_sql = STATEMENT_TIMEOUT_SQL[dialect]
        conn.exec_driver_sql(set_sql(seconds))
        conn.commit()
        try:
            yield
        finally:
            conn.rollback()
            conn.exec_driver_sql(reset_sql)
            conn.commit()

    def _prune(self, keep: str) -> None:
        # Caller holds self._lock.
        now = self._clock()
        if now - self._last_pruned_at < self.prune_interval:
            return
        self._last_pruned_at = now
        for url, entry in list(self._entries.items()):
            if url == keep or entry.pending > 0:
                continue
            logger.info(f"Pruning idle connection pool for {displaysafe_url(url)}")
            entry.engine.dispose()
            del self._entries[url]

    def disconnect(self, url: str) -> None:
        """Close and forget the engine for ``url``.

        Raises:
            ValueError: If url is blank.
            ConnectionInUseError: If ``url`` still has pending borrows.
        """
        if not url:
            raise ValueError("url cannot be blank")
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return
            if entry.pending > 0:
                raise ConnectionInUseError(
                    f"{displaysafe_url(url)} still has {entry.pending} active connections"
                )
            entry.engine.dispose()
            del self._entries[url]

    def force_disconnect_all(self) -> None:
        """Dispose every engine regardless of pending borrows. For test teardown."""
        with self._lock:
            for entry in self._entries.values():
                entry.engine.dispose()
            self._entries.clear()
