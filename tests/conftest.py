"""Shared fixtures."""

import os

from cryptography.fernet import Fernet

# Set required environment variables before importing hooksync modules
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("DATABASE_URL", "sqlite:///./data/test_hooksync.db")

from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from hooksync.database.database import Base
from hooksync.models import AdvisoryLock, SyncTarget  # noqa: F401
from hooksync.services import db_adapter as dba
from hooksync.services.encryption_service import EncryptionService
from hooksync.services.replicator import SqlReplicator


@pytest.fixture
def app_engine(tmp_path):
    """Application database on a SQLite file, so separate connections share it."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'app.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(app_engine):
    """Create a test database session."""
    SessionLocal = sessionmaker(bind=app_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def encryption_service():
    return EncryptionService(Fernet.generate_key().decode())


@pytest.fixture
def source_engine(tmp_path):
    """Upstream database holding an integration's replicated rows."""
    engine = create_engine(f"sqlite:///{tmp_path / 'source.db'}")
    with engine.begin() as conn:
        conn.exec_driver_sql(
            "CREATE TABLE fake_v1_abc (pk INTEGER PRIMARY KEY, my_id TEXT UNIQUE, at DATETIME, data JSON)"
        )
    yield engine
    engine.dispose()


@pytest.fixture
def replicator(source_engine):
    return SqlReplicator(
        source_engine,
        opaque_id="svi_abc",
        service_name="fake_v1",
        table_name="fake_v1_abc",
        primary_key_column=dba.Column("pk", dba.BIGINT, pk=True),
        remote_key_column=dba.Column("my_id", dba.TEXT, unique=True),
        timestamp_column=dba.Column("at", dba.TIMESTAMP),
        data_column=dba.Column("data", dba.OBJECT, nullable=False),
        denormalized_columns=[dba.Column("at", dba.TIMESTAMP, index=True)],
    )


def insert_source_rows(engine, rows):
    """Insert (pk, my_id, at) tuples into the fake upstream table."""
    with engine.begin() as conn:
        for pk, my_id, at in rows:
            conn.exec_driver_sql(
                "INSERT INTO fake_v1_abc (pk, my_id, at, data) VALUES (?, ?, ?, ?)",
                (pk, my_id, at.strftime("%Y-%m-%d %H:%M:%S.%f"), f'{{"my_id": "{my_id}"}}'),
            )


T1 = datetime(2016, 7, 30, 21, 12, 33)
T2 = datetime(2017, 7, 30, 21, 12, 33)
T3 = datetime(2018, 7, 30, 21, 12, 33)
