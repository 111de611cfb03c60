"""Database adapters for sync destinations.

Each adapter turns destination-neutral ``Schema``/``Table``/``Column``/``Index``
descriptions into SQL for one database family and knows how to bulk
merge-upsert a CSV file. ``adapter_for`` picks one by URL scheme.
"""

from hooksync.services.db_adapter.base import (
    BIGINT,
    BOOLEAN,
    DATE,
    DECIMAL,
    DOUBLE,
    FLOAT,
    HASH,
    INTEGER,
    OBJECT,
    RANGE,
    TEXT,
    TIMESTAMP,
    Column,
    DBAdapter,
    Index,
    Partition,
    Schema,
    Table,
    is_valid_identifier,
    validate_identifier,
)
from hooksync.services.db_adapter.pg import PGAdapter
from hooksync.services.db_adapter.snowflake import SnowflakeAdapter
from hooksync.services.exceptions import UnsupportedDestination
from hooksync.services.urls import url_scheme

ADAPTERS = (PGAdapter, SnowflakeAdapter)

DB_SCHEMES = tuple(scheme for cls in ADAPTERS for scheme in cls.schemes)


def adapter_for(url: str) -> DBAdapter:
    """Return the adapter for a destination URL.

    Raises:
        UnsupportedDestination: If no adapter serves the URL's scheme.
    """
    scheme = url_scheme(url)
    for cls in ADAPTERS:
        if scheme in cls.schemes:
            return cls()
    raise UnsupportedDestination(
        f"No database adapter for the '{scheme}' protocol. Supported protocols are: postgres, snowflake",
        scheme=scheme,
    )


__all__ = [
    "ADAPTERS",
    "BIGINT",
    "BOOLEAN",
    "Column",
    "DATE",
    "DBAdapter",
    "DB_SCHEMES",
    "DECIMAL",
    "DOUBLE",
    "FLOAT",
    "HASH",
    "INTEGER",
    "Index",
    "OBJECT",
    "PGAdapter",
    "Partition",
    "RANGE",
    "Schema",
    "SnowflakeAdapter",
    "TEXT",
    "TIMESTAMP",
    "Table",
    "adapter_for",
    "is_valid_identifier",
    "validate_identifier",
]
