"""SQL generation shared by the database adapters."""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from hooksync.services.db_adapter.base import Column, Schema, Table, is_valid_identifier
from hooksync.services.exceptions import InvalidConnection
from hooksync.services.urls import displaysafe_url, sqlalchemy_url

logger = logging.getLogger(__name__)


class DefaultSql:
    """Mixin with the SQL that most databases agree on.

    Subclasses provide ``COLTYPE_MAP`` and ``identifier_quote_char``.
    """

    COLTYPE_MAP: Dict[str, str] = {}
    identifier_quote_char = '"'

    def escape_identifier(self, name: str) -> str:
        """Quote ``name`` only if it cannot be used as a bare word.

        Raises:
            ValueError: If ``name`` was not validated before reaching here.
        """
        if not is_valid_identifier(name):
            raise ValueError(f"{name!r} is an invalid identifier and should have been validated previously")
        if name.upper() in RESERVED_KEYWORDS or " " in name:
            quo = self.identifier_quote_char
            return f"{quo}{name}{quo}"
        return name

    def qualify_table(self, table: Table) -> str:
        if table.schema is None:
            return self.escape_identifier(table.name)
        return f"{self.escape_identifier(table.schema.name)}.{self.escape_identifier(table.name)}"

    def create_schema_sql(self, schema: Schema, if_not_exists: bool = False) -> str:
        ifne = "IF NOT EXISTS " if if_not_exists else ""
        return f"CREATE SCHEMA {ifne}{self.escape_identifier(schema.name)}"

    def column_create_sql(self, column: Column) -> str:
        coltype = self.COLTYPE_MAP[column.type]
        if column.pk:
            modifiers = " PRIMARY KEY"
        elif column.unique:
            modifiers = " UNIQUE NOT NULL"
        elif not column.nullable:
            modifiers = " NOT NULL"
        else:
            modifiers = ""
        return f"{self.escape_identifier(column.name)} {coltype}{modifiers}"

    def assign_columns_sql(
        self,
        source: Optional[str],
        destination: Optional[str],
        columns: List[Column],
        transform: Optional[Callable[[Column, str, str], Tuple[str, str]]] = None,
    ) -> str:
        """Build ``tgt.a = src.a, tgt.b = src.b`` for an UPDATE or MERGE.

        Args:
            source: Alias prefix for right hand side columns, or None.
            destination: Alias prefix for left hand side columns, or None.
            columns: Columns to assign.
            transform: Optional callable of (column, lhs, rhs) returning a new (lhs, rhs).
        """
        stmts = []
        for c in columns:
            cname = self.escape_identifier(c.name)
            lhs = f"{destination}.{cname}" if destination else cname
            rhs = f"{source}.{cname}" if source else cname
            if transform is not None:
                lhs, rhs = transform(c, lhs, rhs)
            stmts.append(f"{lhs} = {rhs}")
        return ", ".join(stmts)

    def connect_args(self, timeout: float) -> dict:
        """Driver arguments that bound how long connecting may take."""
        return {}

    def verify_connection(self, url: str, timeout: float = 2, statement: str = "SELECT 1") -> None:
        """Connect to ``url`` and run ``statement`` within ``timeout`` seconds.

        Raises:
            InvalidConnection: On timeout or any driver/SQLAlchemy error.
        """
        safe_url = displaysafe_url(url)
        try:
            engine = create_engine(sqlalchemy_url(url), poolclass=NullPool, connect_args=self.connect_args(timeout))
        except (SQLAlchemyError, ValueError) as e:
            raise InvalidConnection(f"Could not connect to {safe_url}: {e}") from None

        def _run():
            with engine.connect() as conn:
                conn.exec_driver_sql(statement)

        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(_run)
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning(f"Timed out verifying connection to {safe_url}")
            raise InvalidConnection(f"Timed out after {timeout} seconds trying to {statement} on {safe_url}") from None
        except SQLAlchemyError as e:
            logger.warning(f"Failed verifying connection to {safe_url}: {type(e).__name__}")
            raise InvalidConnection(f"Could not {statement} on {safe_url}: {_driver_message(e, url)}") from None
        finally:
            executor.shutdown(wait=False)
            engine.dispose()
        logger.info(f"Verified connection to {safe_url}")


def _driver_message(error: SQLAlchemyError, url: str) -> str:
    """First line of the driver's message, with the URL's password removed."""
    orig = getattr(error, "orig", None)
    text = str(orig if orig is not None else error).strip().splitlines()
    line = text[0] if text else type(error).__name__
    password = urlsplit(url).password
    if password:
        line = line.replace(password, "***")
    return line


# These are all PG reserved keywords, as per https://www.postgresql.org/docs/current/sql-keywords-appendix.html
# Snowflake's reserved words are a subset for our purposes.
RESERVED_KEYWORDS = frozenset(
    [
        "ALL", "ANALYSE", "ANALYZE", "AND", "ANY", "ARRAY", "AS", "ASC", "ASYMMETRIC",
        "AUTHORIZATION", "BINARY", "BOTH", "CASE", "CAST", "CHECK", "COLLATE", "COLLATION",
        "COLUMN", "CONCURRENTLY", "CONSTRAINT", "CREATE", "CROSS", "CURRENT_CATALOG",
        "CURRENT_DATE", "CURRENT_ROLE", "CURRENT_SCHEMA", "CURRENT_TIME", "CURRENT_TIMESTAMP",
        "CURRENT_USER", "DEFAULT", "DEFERRABLE", "DESC", "DISTINCT", "DO", "ELSE", "END",
        "EXCEPT", "FALSE", "FETCH", "FOR", "FOREIGN", "FREEZE", "FROM", "FULL", "GRANT",
        "GROUP", "HAVING", "ILIKE", "IN", "INITIALLY", "INNER", "INTERSECT", "INTO", "IS",
        "ISNULL", "JOIN", "LATERAL", "LEADING", "LEFT", "LIKE", "LIMIT", "LOCALTIME",
        "LOCALTIMESTAMP", "NATURAL", "NOT", "NOTNULL", "NULL", "OFFSET", "ON", "ONLY", "OR",
        "ORDER", "OUTER", "OVERLAPS", "PLACING", "PRIMARY", "REFERENCES", "RETURNING", "RIGHT",
        "SELECT", "SESSION_USER", "SIMILAR", "SOME", "SYMMETRIC", "TABLE", "TABLESAMPLE",
        "THEN", "TO", "TRAILING", "TRUE", "UNION", "UNIQUE", "USER", "USING", "VARIADIC",
        "VERBOSE", "WHEN", "WHERE", "WINDOW", "WITH",
    ]
)
