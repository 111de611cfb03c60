"""Sync target database model."""

import uuid
from datetime import datetime, timedelta
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, CheckConstraint
from hooksync.database.database import Base


def generate_opaque_id() -> str:
    """Generate an external identifier for a sync target."""
    return f"syt_{uuid.uuid4().hex}"


class SyncTarget(Base):
    """One recurring replication destination for one upstream integration."""

    __tablename__ = "sync_targets"

    id = Column(Integer, primary_key=True, index=True)
    opaque_id = Column(String, nullable=False, unique=True, default=generate_opaque_id)
    integration_id = Column(String, nullable=False, index=True)
    integration_service = Column(String, nullable=False)
    connection_url_encrypted = Column(String, nullable=False)
    # Empty means the configured default schema / the integration's table name.
    destination_schema = Column(String, nullable=False, default="")
    destination_table = Column(String, nullable=False, default="")
    period_seconds = Column(Integer, nullable=False)
    page_size = Column(Integer, nullable=False, default=200)
    parallelism = Column(Integer, nullable=False, default=1)
    disabled = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime, nullable=True)
    last_applied_schema = Column(Text, nullable=False, default="")
    sync_stats = Column(JSON, nullable=True, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("page_size >= 1", name='ck_sync_target_page_size'),
        CheckConstraint("parallelism >= 1", name='ck_sync_target_parallelism'),
        CheckConstraint("period_seconds >= 1", name='ck_sync_target_period'),
    )

    def is_due(self, now: datetime) -> bool:
        """Return True if the target has never synced or its period has elapsed."""
        if self.last_synced_at is None:
            return True
        return now >= self.last_synced_at + timedelta(seconds=self.period_seconds)

    def next_scheduled_sync(self, now: datetime) -> datetime:
        """When the scheduler will next pick this target up."""
        return self._next_sync(self.period_seconds, now)

    def next_possible_sync(self, now: datetime, min_period_seconds: int) -> datetime:
        """The earliest a manually requested sync may run."""
        return self._next_sync(min_period_seconds, now)

    def _next_sync(self, period_seconds: int, now: datetime) -> datetime:
        if self.last_synced_at is None:
            return now
        return max(now, self.last_synced_at + timedelta(seconds=period_seconds))
