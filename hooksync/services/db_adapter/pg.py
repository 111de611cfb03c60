"""Postgres destination adapter."""

import logging
import secrets
from typing import IO, List, Optional

from hooksync.services.db_adapter import base
from hooksync.services.db_adapter.base import Column, DBAdapter, Index, Partition, Table
from hooksync.services.db_adapter.default_sql import DefaultSql

logger = logging.getLogger(__name__)


class PGAdapter(DefaultSql, DBAdapter):
    """Adapter for Postgres (and wire-compatible) destinations."""

    schemes = ("postgres", "postgresql")

    COLTYPE_MAP = {
        base.BIGINT: "bigint",
        base.BOOLEAN: "boolean",
        base.DATE: "date",
        base.DECIMAL: "numeric",
        base.DOUBLE: "double precision",
        base.FLOAT: "float",
        base.INTEGER: "integer",
        base.OBJECT: "jsonb",
        base.TEXT: "text",
        base.TIMESTAMP: "timestamptz",
    }

    def create_table_sql(
        self,
        table: Table,
        columns: List[Column],
        if_not_exists: bool = False,
        partition: Optional[Partition] = None,
    ) -> str:
        ifne = "IF NOT EXISTS " if if_not_exists else ""
        lines = [f"CREATE TABLE {ifne}{self.qualify_table(table)} ("]
        lines.append(",\n".join(f"  {self.column_create_sql(c)}" for c in columns))
        closing = ")"
        if partition is not None:
            closing += f" PARTITION BY {partition.by} ({self.escape_identifier(partition.column.name)})"
        lines.append(closing)
        return "\n".join(lines)

    def create_index_sqls(self, index: Index, concurrently: bool = False) -> List[str]:
        tgts = ", ".join(self.escape_identifier(c.name) for c in index.targets)
        uniq = " UNIQUE" if index.unique else ""
        conc = " CONCURRENTLY" if concurrently else ""
        idxname = self.escape_identifier(index.name)
        return [f"CREATE{uniq} INDEX{conc} IF NOT EXISTS {idxname} ON {self.qualify_table(index.table)} ({tgts})"]

    def add_column_sql(self, table: Table, column: Column, if_not_exists: bool = False) -> str:
        ifne = " IF NOT EXISTS" if if_not_exists else ""
        return f"ALTER TABLE {self.qualify_table(table)} ADD COLUMN{ifne} {self.column_create_sql(column)}"

    def connect_args(self, timeout: float) -> dict:
        return {"connect_timeout": max(1, int(timeout))}

    def merge_from_csv(
        self,
        connection,
        file: IO,
        table: Table,
        pk_column: Column,
        copy_columns: List[Column],
    ) -> None:
        """Upsert a headered CSV through a uniquely named temp table.

        ``connection`` is a SQLAlchemy connection on a psycopg2 engine;
        the CSV is streamed with ``COPY ... FROM STDIN``.
        """
        qtable = self.qualify_table(table)
        staging = self.escape_identifier(f"{table.name}_staging_{secrets.token_hex(4)}")
        pkname = self.escape_identifier(pk_column.name)
        col_names = ", ".join(self.escape_identifier(c.name) for c in copy_columns)
        src_cols = ", ".join(f"src.{self.escape_identifier(c.name)}" for c in copy_columns)
        assigns = self.assign_columns_sql("src", None, [c for c in copy_columns if c.name != pk_column.name])

        connection.exec_driver_sql(f"CREATE TEMP TABLE {staging} (LIKE {qtable}) ON COMMIT DROP")
        raw = connection.connection
        cursor = raw.cursor()
        try:
            cursor.copy_expert(f"COPY {staging} ({col_names}) FROM STDIN WITH (FORMAT csv, HEADER true)", file)
            loaded = cursor.rowcount
        finally:
            cursor.close()
        if assigns:
            connection.exec_driver_sql(
                f"UPDATE {qtable} AS tgt SET {assigns} FROM {staging} AS src WHERE tgt.{pkname} = src.{pkname}"
            )
        connection.exec_driver_sql(
            f"INSERT INTO {qtable} ({col_names}) SELECT {src_cols} FROM {staging} AS src "
            f"WHERE NOT EXISTS (SELECT 1 FROM {qtable} AS tgt WHERE tgt.{pkname} = src.{pkname})"
        )
        connection.exec_driver_sql(f"DROP TABLE IF EXISTS {staging}")
        logger.info(f"Merged {loaded} rows into {qtable}")
