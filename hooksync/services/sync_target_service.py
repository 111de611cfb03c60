"""Sync target service: runs one replication of an integration's rows.

A run takes a try-lock keyed on the target, reads the upstream rows stamped
after ``last_synced_at`` and no later than ``now``, and either

- writes them to a temporary CSV and merge-upserts it into a Postgres or
  Snowflake destination (creating the schema and table first when the DDL
  differs from what was last applied), or
- POSTs them in ``page_size`` chunks to an HTTPS endpoint, ``parallelism``
  chunks at a time.

HTTP delivery is at-least-once: ``last_synced_at`` only ever advances to the
last row of the longest run of successfully delivered chunks, so a failed
chunk and everything after it are sent again on the next run.
"""

import csv
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from hooksync.config import settings
from hooksync.models.sync_target import SyncTarget
from hooksync.services import db_adapter as dba
from hooksync.services.advisory_lock import try_advisory_lock
from hooksync.services.concurrent import pool_for
from hooksync.services.connection_cache import ConnectionCache
from hooksync.services.encryption_service import EncryptionService
from hooksync.services.http_sync_client import TRANSPORT_ERRORS, HttpSyncClient, build_envelope, json_default
from hooksync.services.replicator import Replicator
from hooksync.services.urls import displaysafe_url, url_scheme

logger = logging.getLogger(__name__)

# First key of the (namespace, id) advisory lock pair; keeps sync locks
# apart from any other advisory locks taken on the application database.
SYNC_LOCK_NAMESPACE = 1_618_300_417

SUPPORTED_PROTOCOLS = "postgres, snowflake, https"


class SyncStatus(str, Enum):
    """Outcome of a ``run_sync`` call."""

    SYNCED = "synced"
    PARTIAL = "partial"
    CONTINUE = "continue"
    IN_PROGRESS = "in_progress"
    DISABLED = "disabled"
    DELETED = "deleted"


@dataclass
class SyncResult:
    """What a sync run did."""

    status: SyncStatus
    rows_synced: int = 0
    last_synced_at: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)


class _TargetDeleted(Exception):
    """The target row disappeared while a run was in flight."""

    pass


def _utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _csv_value(value: Any) -> Any:
    # Written as the only unquoted empty field, which loads as NULL.
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=json_default)
    if isinstance(value, datetime):
        return json_default(value)
    return value


class _Checkpoint:
    """Tracks delivered chunks so progress only covers a contiguous prefix."""

    def __init__(self):
        self._lock = threading.Lock()
        self._chunks: Dict[int, Tuple[bool, datetime, int]] = {}
        self.failed = threading.Event()
        self.errors: List[str] = []
        self.stats: List[Dict[str, Any]] = []

    def record(self, index: int, ok: bool, last_ts: datetime, rows: int, stat: Dict[str, Any], error: Optional[str]):
        with self._lock:
            self._chunks[index] = (ok, last_ts, rows)
            self.stats.append(stat)
            if not ok:
                self.errors.append(error)
                self.failed.set()

    def delivered(self) -> Tuple[Optional[datetime], int, bool]:
        """(last timestamp of the contiguous delivered prefix, rows in it, whether every chunk succeeded)."""
        with self._lock:
            last_ts = None
            rows = 0
            index = 0
            while index in self._chunks and self._chunks[index][0]:
                _, last_ts, count = self._chunks[index]
                rows += count
                index += 1
            return last_ts, rows, index == len(self._chunks)


class SyncTargetService:
    """Service for registering and running sync targets."""

    def __init__(
        self,
        encryption_service: EncryptionService,
        connection_cache: ConnectionCache,
        adapter_for: Callable[[str], dba.DBAdapter] = dba.adapter_for,
        http_client_factory: Callable[[str], HttpSyncClient] = HttpSyncClient,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize sync target service.

        Args:
            encryption_service: Decrypts stored connection URLs.
            connection_cache: Lends connections to database destinations.
            adapter_for: Maps a destination URL to its database adapter.
            http_client_factory: Builds the client for an HTTPS destination URL.
            clock: Current UTC time, checked against run deadlines.
        """
        self.encryption_service = encryption_service
        self.connection_cache = connection_cache
        self.adapter_for = adapter_for
        self.http_client_factory = http_client_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Validation and registration
    # ------------------------------------------------------------------

    @staticmethod
    def valid_period() -> Tuple[int, int]:
        """Inclusive (min, max) range allowed for ``period_seconds``."""
        return settings.sync_min_period_seconds, settings.sync_max_period_seconds

    @staticmethod
    def is_http_url(url: str) -> bool:
        return url_scheme(url) in ("http", "https")

    @staticmethod
    def validate_url(url: str) -> Optional[str]:
        """Return a user-facing error message for a bad destination URL, or None."""
        try:
            parts = urlsplit(url)
            parts.port
        except ValueError:
            return "The URL is not valid"
        if not parts.scheme or not parts.hostname:
            return "The URL is not valid"
        scheme = parts.scheme.lower()
        if scheme == "https" or (scheme == "http" and settings.sync_allow_http):
            if not parts.username and not parts.password:
                return (
                    f"{scheme} urls must include a Basic Auth username and/or password, "
                    f"like '{scheme}://user:pass@{parts.hostname}{parts.path}'"
                )
            return None
        if scheme not in dba.DB_SCHEMES:
            return f"The '{scheme}' protocol is not supported. Supported protocols are: {SUPPORTED_PROTOCOLS}"
        if not parts.username or not parts.password:
            return (
                "Database URLs must include a username and password, "
                f"like '{scheme}://user:pass@{parts.netloc.rpartition('@')[2]}{parts.path}'"
            )
        return None

    def _validate_settings(
        self,
        url: str,
        period_seconds: Optional[int] = None,
        page_size: Optional[int] = None,
        parallelism: Optional[int] = None,
        schema: Optional[str] = None,
        table: Optional[str] = None,
    ) -> None:
        if period_seconds is not None:
            low, high = self.valid_period()
            if not low <= period_seconds <= high:
                raise ValueError(f"period_seconds must be between {low} and {high}, got {period_seconds}")
        if page_size is not None and not 1 <= page_size <= settings.sync_max_page_size:
            raise ValueError(f"page_size must be between 1 and {settings.sync_max_page_size}, got {page_size}")
        if parallelism is not None and not 1 <= parallelism <= settings.sync_max_parallelism:
            raise ValueError(
                f"parallelism must be between 1 and {settings.sync_max_parallelism}, got {parallelism}"
            )
        if self.is_http_url(url):
            if schema or table:
                raise ValueError("schema and table only apply to database destinations")
        else:
            if schema:
                dba.validate_identifier(schema, "schema name")
            if table:
                dba.validate_identifier(table, "table name")

    def verify_connection(self, url: str, integration_id: str = "", integration_service: str = "", table: str = "") -> None:
        """Check that the destination accepts our connection.

        Database URLs run ``SELECT 1``; HTTPS URLs receive an envelope with no rows.

        Raises:
            InvalidConnection: If the destination cannot be used.
            UnsupportedDestination: If no adapter serves the URL.
        """
        timeout = settings.verify_connection_timeout_seconds
        if self.is_http_url(url):
            envelope = build_envelope([], integration_id, integration_service, table, self.clock())
            with self.http_client_factory(url) as client:
                client.verify(envelope)
            return
        self.adapter_for(url).verify_connection(url, timeout=timeout)

    def create_target(
        self,
        db: Session,
        integration_id: str,
        integration_service: str,
        connection_url: str,
        period_seconds: int,
        schema: str = "",
        table: str = "",
        page_size: Optional[int] = None,
        parallelism: int = 1,
        verify: bool = True,
    ) -> SyncTarget:
        """Validate, optionally verify, and store a new sync target.

        Raises:
            ValueError: If the URL or any setting is invalid.
            InvalidConnection: If verification fails.
        """
        error = self.validate_url(connection_url)
        if error:
            raise ValueError(error)
        page_size = page_size or settings.sync_default_page_size
        self._validate_settings(connection_url, period_seconds, page_size, parallelism, schema, table)
        if verify:
            self.verify_connection(connection_url, integration_id, integration_service, table)

        target = SyncTarget(
            integration_id=integration_id,
            integration_service=integration_service,
            connection_url_encrypted=self.encryption_service.encrypt(connection_url),
            destination_schema=schema or "",
            destination_table=table or "",
            period_seconds=period_seconds,
            page_size=page_size,
            parallelism=parallelism,
        )
        db.add(target)
        db.commit()
        db.refresh(target)
        logger.info(f"Created sync target {target.opaque_id} to {displaysafe_url(connection_url)}")
        return target

    def update_target(self, db: Session, target: SyncTarget, **changes: Any) -> SyncTarget:
        """Update the mutable settings of a target.

        Accepts ``period_seconds``, ``schema``, ``table``, ``page_size``,
        ``parallelism`` and ``disabled``; None values are ignored.
        """
        changes = {k: v for k, v in changes.items() if v is not None}
        unknown = set(changes) - {"period_seconds", "schema", "table", "page_size", "parallelism", "disabled"}
        if unknown:
            raise ValueError(f"Cannot update {', '.join(sorted(unknown))}")
        url = self.connection_url(target)
        self._validate_settings(
            url,
            changes.get("period_seconds"),
            changes.get("page_size"),
            changes.get("parallelism"),
            changes.get("schema"),
            changes.get("table"),
        )
        if "schema" in changes:
            target.destination_schema = changes.pop("schema")
        if "table" in changes:
            target.destination_table = changes.pop("table")
        for key, value in changes.items():
            setattr(target, key, value)
        db.commit()
        db.refresh(target)
        logger.info(f"Updated sync target {target.opaque_id}")
        return target

    def update_credentials(self, db: Session, target: SyncTarget, user: str, password: str, verify: bool = True) -> SyncTarget:
        """Replace the user and password embedded in a target's URL.

        The scheme, and so the destination family, cannot change.
        """
        parts = urlsplit(self.connection_url(target))
        host = parts.netloc.rpartition("@")[2]
        new_url = parts._replace(netloc=f"{user}:{password}@{host}").geturl()
        error = self.validate_url(new_url)
        if error:
            raise ValueError(error)
        if verify:
            self.verify_connection(new_url, target.integration_id, target.integration_service, target.destination_table)
        target.connection_url_encrypted = self.encryption_service.encrypt(new_url)
        db.commit()
        db.refresh(target)
        logger.info(f"Updated credentials for sync target {target.opaque_id}")
        return target

    def delete_target(self, db: Session, target: SyncTarget) -> None:
        opaque_id = target.opaque_id
        db.delete(target)
        db.commit()
        logger.info(f"Deleted sync target {opaque_id}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def connection_url(self, target: SyncTarget) -> str:
        return self.encryption_service.decrypt(target.connection_url_encrypted)

    def displaysafe_connection_url(self, target: SyncTarget) -> str:
        return displaysafe_url(self.connection_url(target))

    @staticmethod
    def due_for_sync(db: Session, now: datetime) -> List[SyncTarget]:
        """Enabled targets that have never synced or whose period has elapsed."""
        candidates = (
            db.query(SyncTarget)
            .filter(SyncTarget.disabled == False)  # noqa: E712
            .order_by(SyncTarget.id)
            .all()
        )
        return [t for t in candidates if t.is_due(now)]

    @staticmethod
    def stats_summary(target: SyncTarget) -> Dict[str, Any]:
        """Rolling summary of recent sync attempts, safe to show tenants."""
        stats = target.sync_stats or []
        if not stats:
            return {"count": 0}
        starts = [s["call_start"] for s in stats]
        durations = [s.get("duration") or 0.0 for s in stats]
        rows = sum(s.get("row_count") or 0 for s in stats)
        total_duration = sum(durations)
        return {
            "count": len(stats),
            "earliest": min(starts),
            "latest": max(starts),
            "avg_latency_ms": round(total_duration / len(stats) * 1000, 2),
            "errors": sum(1 for s in stats if s.get("exception") or _is_error_status(s.get("response_status"))),
            "rows_synced": rows,
            "rows_per_second": round(rows / total_duration, 2) if total_duration else None,
        }

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run_sync(
        self,
        db: Session,
        target: SyncTarget,
        replicator: Replicator,
        now: Optional[datetime] = None,
        deadline: Optional[datetime] = None,
    ) -> SyncResult:
        """Replicate rows up to ``now`` into the target's destination.

        Args:
            db: Application database session that owns ``target``.
            target: The sync target.
            replicator: Source of the integration's rows and column catalog.
            now: Upper bound of the sync window (defaults to the current time).
            deadline: When set, stop at the next chunk boundary after this
                time and return ``SyncStatus.CONTINUE``.

        Returns:
            SyncResult describing the outcome. Contention, a disabled target,
            and deletion mid-run are results, not errors.

        Raises:
            SQLAlchemyError: Destination errors during DDL or merge.
            Exception: Any non-transport error from the HTTP path, after
                progress up to the last delivered chunk is saved.
        """
        now = _utc_naive(now or self.clock())
        if target.disabled:
            logger.info(f"Sync target {target.opaque_id} is disabled, skipping")
            return SyncResult(SyncStatus.DISABLED, last_synced_at=target.last_synced_at)

        target_id = target.id
        opaque_id = target.opaque_id
        with try_advisory_lock(db.get_bind(), SYNC_LOCK_NAMESPACE, target_id) as acquired:
            if not acquired:
                logger.warning(f"Sync target {opaque_id} is already being synced")
                return SyncResult(SyncStatus.IN_PROGRESS, last_synced_at=target.last_synced_at)
            try:
                if not self._exists(db, target_id):
                    raise _TargetDeleted()
                # Pick up anything the previous lock holder wrote.
                db.refresh(target)
                url = self.connection_url(target)
                logger.info(f"Syncing {opaque_id} to {displaysafe_url(url)} up to {now.isoformat()}")
                if self.is_http_url(url):
                    return self._run_http_sync(db, target, replicator, url, now, deadline)
                return self._run_db_sync(db, target, replicator, url, now, deadline)
            except _TargetDeleted:
                db.rollback()
                logger.warning(f"Sync target {opaque_id} was deleted during sync")
                return SyncResult(SyncStatus.DELETED)

    def _past(self, deadline: Optional[datetime]) -> bool:
        return deadline is not None and self.clock() >= deadline

    @staticmethod
    def _exists(db: Session, target_id: int) -> bool:
        return db.query(SyncTarget.id).filter(SyncTarget.id == target_id).first() is not None

    def _save(
        self,
        db: Session,
        target: SyncTarget,
        stats: List[Dict[str, Any]],
        advance_to: Optional[datetime] = None,
        **values: Any,
    ) -> Optional[datetime]:
        """Persist run state, unless the target was deleted meanwhile.

        ``last_synced_at`` only moves forward. Returns its saved value.
        """
        # The identity map key survives expiry, so this never reloads the row.
        if not self._exists(db, inspect(target).identity[0]):
            raise _TargetDeleted()
        if advance_to is not None and (target.last_synced_at is None or advance_to > target.last_synced_at):
            target.last_synced_at = advance_to
        for key, value in values.items():
            setattr(target, key, value)
        if stats:
            target.sync_stats = (list(target.sync_stats or []) + stats)[-settings.sync_max_stats:]
        db.commit()
        return target.last_synced_at

    def _destination(self, target: SyncTarget, replicator: Replicator) -> dba.Table:
        schema = dba.Schema(target.destination_schema or settings.sync_default_schema)
        return dba.Table(target.destination_table or replicator.table_name, schema)

    def _run_db_sync(
        self,
        db: Session,
        target: SyncTarget,
        replicator: Replicator,
        url: str,
        now: datetime,
        deadline: Optional[datetime],
    ) -> SyncResult:
        opaque_id = target.opaque_id
        adapter = self.adapter_for(url)
        table = self._destination(target, replicator)
        statements = [
            adapter.create_schema_sql(table.schema, if_not_exists=True),
            adapter.create_table_sql(
                table,
                [replicator.primary_key_column, replicator.remote_key_column],
                if_not_exists=True,
            ),
        ]
        for column in [*replicator.denormalized_columns, replicator.data_column]:
            statements.append(adapter.add_column_sql(table, column, if_not_exists=True))
        schema_sql = ";\n".join(statements) + ";"

        if schema_sql != target.last_applied_schema:
            with self.connection_cache.borrow(url, transaction=True) as conn:
                adapter.execute_batch(conn, statements)
            logger.info(f"Applied schema for sync target {opaque_id}:\n{schema_sql}")
            self._save(db, target, [], last_applied_schema=schema_sql)

        copy_columns = replicator.copy_columns
        fd, path = tempfile.mkstemp(prefix=f"hooksync-{target.id}-", suffix=".csv")
        try:
            os.close(fd)
            with open(path, "w+", newline="") as f:
                row_count, cutoff, continued = self._write_csv(f, target, replicator, now, deadline)
                f.flush()
                f.seek(0)
                call_start = datetime.utcnow()
                started = time.monotonic()
                stat = {
                    "call_start": call_start.isoformat(),
                    "remote_start": call_start.isoformat(),
                    "row_count": row_count,
                    "response_status": None,
                    "exception": None,
                }
                try:
                    with self.connection_cache.borrow(url, transaction=True) as conn:
                        adapter.merge_from_csv(conn, f, table, replicator.primary_key_column, copy_columns)
                except Exception as e:
                    logger.error(
                        f"Merge into {displaysafe_url(url)} failed for sync target {opaque_id}: {type(e).__name__}"
                    )
                    stat.update(duration=time.monotonic() - started, exception=type(e).__name__)
                    self._save(db, target, [stat])
                    raise
                stat["duration"] = time.monotonic() - started
        finally:
            os.unlink(path)

        last_synced_at = self._save(db, target, [stat], advance_to=cutoff if continued else now)
        status = SyncStatus.CONTINUE if continued else SyncStatus.SYNCED
        logger.info(f"Merged {row_count} rows for sync target {opaque_id} ({status.value})")
        return SyncResult(status, rows_synced=row_count, last_synced_at=last_synced_at)

    def _write_csv(
        self,
        f,
        target: SyncTarget,
        replicator: Replicator,
        now: datetime,
        deadline: Optional[datetime],
    ) -> Tuple[int, Optional[datetime], bool]:
        """Write the window to ``f`` one page at a time.

        Returns:
            Tuple of (rows written, timestamp of the last row, whether the
            deadline cut the window short).
        """
        copy_names = [c.name for c in replicator.copy_columns]
        ts_name = replicator.timestamp_column.name
        writer = csv.writer(f, quoting=csv.QUOTE_NOTNULL)
        writer.writerow(copy_names)
        row_count = 0
        cutoff = None
        with replicator.readonly_dataset() as dataset:
            for index, page in enumerate(dataset.pages(target.last_synced_at, now, target.page_size)):
                if index > 0 and self._past(deadline):
                    return row_count, cutoff, True
                writer.writerows([_csv_value(row[name]) for name in copy_names] for row in page)
                row_count += len(page)
                cutoff = _utc_naive(page[-1][ts_name])
        return row_count, cutoff, False

    def _run_http_sync(
        self,
        db: Session,
        target: SyncTarget,
        replicator: Replicator,
        url: str,
        now: datetime,
        deadline: Optional[datetime],
    ) -> SyncResult:
        opaque_id = target.opaque_id
        copy_names = [c.name for c in replicator.copy_columns]
        ts_name = replicator.timestamp_column.name
        table_name = target.destination_table or replicator.table_name
        checkpoint = _Checkpoint()
        continued = False
        error: Optional[Exception] = None

        with self.http_client_factory(url) as client:

            def send(index: int, page: List[Dict[str, Any]]) -> None:
                call_start = datetime.utcnow()
                envelope = build_envelope(
                    [{name: row[name] for name in copy_names} for row in page],
                    replicator.opaque_id,
                    replicator.service_name,
                    table_name,
                    now,
                )
                remote_start = datetime.utcnow()
                started = time.monotonic()
                stat = {
                    "call_start": call_start.isoformat(),
                    "remote_start": remote_start.isoformat(),
                    "row_count": len(page),
                    "response_status": None,
                    "exception": None,
                }
                last_ts = _utc_naive(page[-1][ts_name])
                try:
                    response = client.post_rows(envelope)
                except Exception as e:
                    summary = f"{type(e).__name__}: {e}"
                    stat.update(duration=time.monotonic() - started, exception=summary)
                    checkpoint.record(index, False, last_ts, len(page), stat, summary)
                    if not isinstance(e, TRANSPORT_ERRORS):
                        raise
                    logger.warning(f"Could not reach {client.display_url} for sync target {opaque_id}: {summary}")
                    return
                stat.update(duration=time.monotonic() - started, response_status=response.status_code)
                if response.is_success:
                    checkpoint.record(index, True, last_ts, len(page), stat, None)
                else:
                    logger.warning(
                        f"POST to {client.display_url} for sync target {opaque_id} returned {response.status_code}"
                    )
                    checkpoint.record(index, False, last_ts, len(page), stat, f"HTTP {response.status_code}")

            pool = pool_for(target.parallelism)
            try:
                with replicator.readonly_dataset() as dataset:
                    for index, page in enumerate(dataset.pages(target.last_synced_at, now, target.page_size)):
                        # No retry storm: once a chunk fails, later chunks wait for the next run.
                        if checkpoint.failed.is_set():
                            break
                        if index > 0 and self._past(deadline):
                            continued = True
                            break
                        pool.post(partial(send, index, page))
                pool.join()
            except Exception as e:
                error = e

        delivered_through, rows, all_ok = checkpoint.delivered()
        if all_ok and not continued and error is None:
            delivered_through = now
        last_synced_at = self._save(db, target, checkpoint.stats, advance_to=delivered_through)
        if error is not None:
            logger.error(f"HTTP sync for {opaque_id} failed: {type(error).__name__}: {error}")
            raise error

        if checkpoint.failed.is_set():
            status = SyncStatus.PARTIAL
        elif continued:
            status = SyncStatus.CONTINUE
        else:
            status = SyncStatus.SYNCED
        logger.info(f"Posted {rows} rows for sync target {opaque_id} ({status.value})")
        return SyncResult(status, rows_synced=rows, last_synced_at=last_synced_at, errors=list(checkpoint.errors))


def _is_error_status(status: Optional[int]) -> bool:
    return status is not None and not 200 <= status < 300


def continuation_deadline(started_at: datetime) -> datetime:
    """Deadline for a run started at ``started_at`` inside a time-boxed job."""
    return started_at + timedelta(seconds=settings.sync_max_transaction_seconds)
