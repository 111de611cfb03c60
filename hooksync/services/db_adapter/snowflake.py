"""Snowflake destination adapter."""

import logging
import secrets
from typing import IO, List, Optional

from hooksync.services.db_adapter import base
from hooksync.services.db_adapter.base import Column, DBAdapter, Index, Partition, Table
from hooksync.services.db_adapter.default_sql import DefaultSql
from hooksync.services.exceptions import InvalidPrecondition, NotSupportedError

logger = logging.getLogger(__name__)


class SnowflakeAdapter(DefaultSql, DBAdapter):
    """Adapter for Snowflake warehouses, via snowflake-sqlalchemy."""

    schemes = ("snowflake",)

    COLTYPE_MAP = {
        base.BIGINT: "bigint",
        base.BOOLEAN: "boolean",
        base.DATE: "date",
        base.DECIMAL: "numeric",
        base.DOUBLE: "double precision",
        base.FLOAT: "float",
        base.INTEGER: "integer",
        base.OBJECT: "object",
        base.TEXT: "text",
        base.TIMESTAMP: "timestamp_tz",
    }

    def create_table_sql(
        self,
        table: Table,
        columns: List[Column],
        if_not_exists: bool = False,
        partition: Optional[Partition] = None,
    ) -> str:
        if partition is not None:
            raise NotSupportedError("Snowflake does not support declarative partitioning")
        ifne = "IF NOT EXISTS " if if_not_exists else ""
        cols = ",\n".join(f"  {self.column_create_sql(c)}" for c in columns)
        return f"CREATE TABLE {ifne}{self.qualify_table(table)} (\n{cols}\n)"

    def create_index_sqls(self, index: Index, concurrently: bool = False) -> List[str]:
        raise NotSupportedError("Snowflake does not support indices")

    def add_column_sql(self, table: Table, column: Column, if_not_exists: bool = False) -> str:
        add_sql = f"ALTER TABLE {self.qualify_table(table)} ADD COLUMN {self.column_create_sql(column)}"
        if not if_not_exists:
            return add_sql
        if table.schema is None:
            raise InvalidPrecondition("Snowflake conditional column adds need a table schema")
        # No ADD COLUMN IF NOT EXISTS, so check the information schema.
        # ILIKE because Snowflake uppercases unquoted names when it stores them.
        return (
            "EXECUTE IMMEDIATE $$\n"
            "BEGIN\n"
            "  IF (NOT EXISTS(\n"
            "    SELECT * FROM INFORMATION_SCHEMA.COLUMNS\n"
            f"    WHERE TABLE_SCHEMA ILIKE '{table.schema.name}'\n"
            f"      AND TABLE_NAME ILIKE '{table.name}'\n"
            f"      AND COLUMN_NAME ILIKE '{column.name}'\n"
            "  )) THEN\n"
            f"    {add_sql};\n"
            "  END IF;\n"
            "END;\n"
            "$$"
        )

    def connect_args(self, timeout: float) -> dict:
        return {"login_timeout": max(1, int(timeout))}

    def merge_from_csv(
        self,
        connection,
        file: IO,
        table: Table,
        pk_column: Column,
        copy_columns: List[Column],
    ) -> None:
        """Upload the CSV to a temporary stage and MERGE it into ``table``.

        The stage is dropped afterwards whether or not the merge succeeded.
        ``file`` must be a real file on disk since ``PUT`` reads it by path.
        """
        if table.schema is None:
            raise InvalidPrecondition("table must have schema")

        qtable = self.qualify_table(table)
        stage = self.escape_identifier(f"hooksync_stage_{secrets.token_hex(4)}_{table.name}")
        stage = f"{self.escape_identifier(table.schema.name)}.{stage}"
        pkname = self.escape_identifier(pk_column.name)

        def parse_objects(c, lhs, rhs):
            # JSON columns arrive as CSV text.
            if c.type == base.OBJECT:
                return lhs, f"parse_json({rhs})"
            return lhs, rhs

        col_assigns = self.assign_columns_sql("src", None, copy_columns, parse_objects)
        col_names = [self.escape_identifier(c.name) for c in copy_columns]
        col_values = [
            f"parse_json(src.{n})" if c.type == base.OBJECT else f"src.{n}"
            for n, c in zip(col_names, copy_columns)
        ]
        col_placeholders = [f"${i + 1} {n}" for i, n in enumerate(col_names)]

        # FIELD_OPTIONALLY_ENCLOSED_BY is needed for JSON columns to parse.
        connection.exec_driver_sql(
            f"CREATE STAGE {stage} FILE_FORMAT = (TYPE = 'CSV' SKIP_HEADER = 1 FIELD_OPTIONALLY_ENCLOSED_BY = '\"')"
        )
        try:
            connection.exec_driver_sql(f"PUT file://{file.name} @{stage} AUTO_COMPRESS = TRUE")
            connection.exec_driver_sql(
                f"MERGE INTO {qtable} AS tgt\n"
                f"  USING (SELECT {', '.join(col_placeholders)} FROM @{stage}) src\n"
                f"  ON tgt.{pkname} = src.{pkname}\n"
                f"  WHEN MATCHED THEN UPDATE SET {col_assigns}\n"
                f"  WHEN NOT MATCHED THEN INSERT ({', '.join(col_names)}) VALUES ({', '.join(col_values)})"
            )
        finally:
            connection.exec_driver_sql(f"DROP STAGE IF EXISTS {stage}")
        logger.info(f"Merged staged CSV into {qtable}")
