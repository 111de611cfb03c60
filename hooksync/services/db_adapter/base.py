"""Destination-neutral schema descriptions and the adapter interface."""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import IO, List, Optional

from hooksync.services.exceptions import InvalidIdentifier

logger = logging.getLogger(__name__)

BIGINT = "bigint"
BOOLEAN = "bool"
DATE = "date"
DECIMAL = "decimal"
DOUBLE = "double"
FLOAT = "float"
INTEGER = "int"
OBJECT = "object"
TEXT = "text"
TIMESTAMP = "timestamp"

COLUMN_TYPES = frozenset([BIGINT, BOOLEAN, DATE, DECIMAL, DOUBLE, FLOAT, INTEGER, OBJECT, TEXT, TIMESTAMP])

HASH = "HASH"
RANGE = "RANGE"

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*$")


def is_valid_identifier(name: str) -> bool:
    """Return True if ``name`` may be used as a schema, table, or column name."""
    return isinstance(name, str) and bool(IDENTIFIER_PATTERN.match(name))


def validate_identifier(name: str, kind: str = "identifier") -> str:
    """Validate a user-supplied name before it reaches any SQL.

    Args:
        name: The schema, table, or column name.
        kind: What the name is for, used in the error message.

    Returns:
        The name, unchanged.

    Raises:
        InvalidIdentifier: If the name does not start with a letter and
            contain only letters, digits, spaces, and underscores.
    """
    if is_valid_identifier(name):
        return name
    msg = (
        f"{name!r} is not a valid {kind}. Names must start with a letter and "
        "contain only letters, numbers, spaces, and underscores."
    )
    if isinstance(name, str) and ";" in name and "drop" in name.lower():
        msg += " This looks like an SQL injection attempt, and it will not work."
        logger.warning(f"Rejected {kind} that looks like SQL injection: {name!r}")
    raise InvalidIdentifier(msg, identifier=str(name))


@dataclass(frozen=True)
class Schema:
    """A namespace in the destination."""

    name: str

    def __post_init__(self):
        validate_identifier(self.name, "schema name")


@dataclass(frozen=True)
class Table:
    """A destination table, optionally inside a schema."""

    name: str
    schema: Optional[Schema] = None

    def __post_init__(self):
        validate_identifier(self.name, "table name")


@dataclass(frozen=True)
class Column:
    """A destination column description."""

    name: str
    type: str
    nullable: bool = True
    unique: bool = False
    index: bool = False
    pk: bool = False

    def __post_init__(self):
        validate_identifier(self.name, "column name")
        if self.type not in COLUMN_TYPES:
            raise ValueError(f"Column type {self.type!r} is not known")


@dataclass(frozen=True)
class Index:
    """An index over one or more columns of a table."""

    name: str
    table: Table
    targets: List[Column] = field(default_factory=list)
    unique: bool = False

    def __post_init__(self):
        validate_identifier(self.name, "index name")
        if not self.targets:
            raise ValueError("An index needs at least one target column")


@dataclass(frozen=True)
class Partition:
    """How a table is partitioned: HASH or RANGE over one column."""

    column: Column
    by: str = HASH

    def __post_init__(self):
        if self.by not in (HASH, RANGE):
            raise ValueError(f"Partition method must be HASH or RANGE, not {self.by!r}")


class DBAdapter(ABC):
    """Turns destination-neutral descriptions into one database family's SQL."""

    #: URL schemes this adapter serves.
    schemes: tuple = ()

    @abstractmethod
    def create_schema_sql(self, schema: Schema, if_not_exists: bool = False) -> str:
        """DDL creating ``schema``."""

    @abstractmethod
    def create_table_sql(
        self,
        table: Table,
        columns: List[Column],
        if_not_exists: bool = False,
        partition: Optional[Partition] = None,
    ) -> str:
        """DDL creating ``table`` with ``columns``."""

    @abstractmethod
    def create_index_sqls(self, index: Index, concurrently: bool = False) -> List[str]:
        """DDL statements creating ``index``."""

    @abstractmethod
    def add_column_sql(self, table: Table, column: Column, if_not_exists: bool = False) -> str:
        """DDL adding ``column`` to ``table``."""

    @abstractmethod
    def merge_from_csv(
        self,
        connection,
        file: IO,
        table: Table,
        pk_column: Column,
        copy_columns: List[Column],
    ) -> None:
        """Upsert the rows of a headered CSV file into ``table``."""

    @abstractmethod
    def verify_connection(self, url: str, timeout: float = 2, statement: str = "SELECT 1") -> None:
        """Run ``statement`` against ``url``, raising InvalidConnection on any failure."""

    def execute_batch(self, connection, statements: List[str]) -> None:
        """Run each statement on a SQLAlchemy connection, in order."""
        for stmt in statements:
            connection.exec_driver_sql(stmt)
