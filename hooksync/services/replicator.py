"""The upstream side of a sync: typed rows captured from webhooks.

A ``Replicator`` describes the table an integration writes (its primary
key, stable remote key, denormalized columns, and raw ``data`` column) and
opens a read-only dataset over it, filterable by the timestamp column.
Ingesting webhooks into that table happens elsewhere.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import Connection, Engine

from hooksync.services import db_adapter as dba

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

SA_TYPES = {
    dba.BIGINT: sa.BigInteger,
    dba.BOOLEAN: sa.Boolean,
    dba.DATE: sa.Date,
    dba.DECIMAL: sa.Numeric,
    dba.DOUBLE: sa.Float,
    dba.FLOAT: sa.Float,
    dba.INTEGER: sa.Integer,
    dba.OBJECT: sa.JSON,
    dba.TEXT: sa.Text,
    dba.TIMESTAMP: sa.DateTime,
}


class ReadonlyDataset(ABC):
    """Rows of an integration's table, ordered by timestamp then primary key."""

    @abstractmethod
    def iter_rows(self, since: Optional[datetime], until: datetime) -> Iterator[Row]:
        """Stream rows with ``since < timestamp <= until`` (no lower bound when ``since`` is None)."""

    @abstractmethod
    def pages(self, since: Optional[datetime], until: datetime, page_size: int) -> Iterator[List[Row]]:
        """The same rows as ``iter_rows``, in lists of at most ``page_size``."""


class Replicator(ABC):
    """Column catalog and data access for one upstream integration."""

    opaque_id: str
    service_name: str
    table_name: str

    @property
    @abstractmethod
    def primary_key_column(self) -> dba.Column:
        """Stable primary key, used to match rows on merge."""

    @property
    @abstractmethod
    def remote_key_column(self) -> dba.Column:
        """The upstream service's own identifier for a row."""

    @property
    @abstractmethod
    def denormalized_columns(self) -> List[dba.Column]:
        """Columns pulled out of the raw body for querying."""

    @property
    @abstractmethod
    def data_column(self) -> dba.Column:
        """The raw structured body."""

    @property
    @abstractmethod
    def timestamp_column(self) -> dba.Column:
        """Column that orders rows and bounds each sync window."""

    @abstractmethod
    def readonly_dataset(self):
        """Context manager yielding a ``ReadonlyDataset``."""

    @property
    def copy_columns(self) -> List[dba.Column]:
        """Every column replicated to a destination, in destination order."""
        return [self.primary_key_column, self.remote_key_column, *self.denormalized_columns, self.data_column]


class SqlDataset(ReadonlyDataset):
    """A ``ReadonlyDataset`` over a table reachable through a SQLAlchemy connection."""

    def __init__(self, conn: Connection, replicator: "SqlReplicator"):
        self._conn = conn
        self._replicator = replicator
        columns = list(replicator.copy_columns)
        if replicator.timestamp_column.name not in {c.name for c in columns}:
            columns.append(replicator.timestamp_column)
        self._table = sa.table(
            replicator.table_name,
            *[sa.column(c.name, SA_TYPES[c.type]) for c in columns],
        )
        self._ts = self._table.c[replicator.timestamp_column.name]
        self._pk = self._table.c[replicator.primary_key_column.name]

    def _select(self, since: Optional[datetime], until: datetime):
        stmt = sa.select(self._table).where(self._ts <= until)
        if since is not None:
            stmt = stmt.where(self._ts > since)
        return stmt.order_by(self._ts, self._pk)

    def iter_rows(self, since: Optional[datetime], until: datetime) -> Iterator[Row]:
        result = self._conn.execute(self._select(since, until), execution_options={"yield_per": 500})
        for row in result:
            yield dict(row._mapping)

    def pages(self, since: Optional[datetime], until: datetime, page_size: int) -> Iterator[List[Row]]:
        # Keyset pagination on (timestamp, pk) so each page is a fresh bounded query.
        last_ts = None
        last_pk = None
        while True:
            stmt = self._select(since, until)
            if last_ts is not None:
                stmt = stmt.where(sa.or_(self._ts > last_ts, sa.and_(self._ts == last_ts, self._pk > last_pk)))
            page = [dict(row._mapping) for row in self._conn.execute(stmt.limit(page_size))]
            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            last_ts = page[-1][self._ts.name]
            last_pk = page[-1][self._pk.name]


class SqlReplicator(Replicator):
    """Replicator whose rows live in a table on a SQLAlchemy engine."""

    def __init__(
        self,
        engine: Engine,
        opaque_id: str,
        service_name: str,
        table_name: str,
        primary_key_column: dba.Column,
        remote_key_column: dba.Column,
        timestamp_column: dba.Column,
        data_column: dba.Column,
        denormalized_columns: Optional[List[dba.Column]] = None,
    ):
        self.engine = engine
        self.opaque_id = opaque_id
        self.service_name = service_name
        self.table_name = table_name
        self._primary_key_column = primary_key_column
        self._remote_key_column = remote_key_column
        self._timestamp_column = timestamp_column
        self._data_column = data_column
        self._denormalized_columns = list(denormalized_columns or [])

    @property
    def primary_key_column(self) -> dba.Column:
        return self._primary_key_column

    @property
    def remote_key_column(self) -> dba.Column:
        return self._remote_key_column

    @property
    def denormalized_columns(self) -> List[dba.Column]:
        return self._denormalized_columns

    @property
    def data_column(self) -> dba.Column:
        return self._data_column

    @property
    def timestamp_column(self) -> dba.Column:
        return self._timestamp_column

    @contextmanager
    def readonly_dataset(self) -> Iterator[SqlDataset]:
        with self.engine.connect() as conn:
            if conn.dialect.name == "postgresql":
                conn = conn.execution_options(postgresql_readonly=True)
            try:
                yield SqlDataset(conn, self)
            finally:
                conn.rollback()
