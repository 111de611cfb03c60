"""Test database models and schema."""

import pytest
from datetime import datetime
from sqlalchemy.exc import IntegrityError

from hooksync.models import AdvisoryLock, SyncTarget


def make_target(**overrides):
    values = dict(
        integration_id="svi_abc",
        integration_service="fake_v1",
        connection_url_encrypted="encrypted_url",
        period_seconds=600,
    )
    values.update(overrides)
    return SyncTarget(**values)


class TestSyncTargetModel:
    """Test SyncTarget model."""

    def test_create_sync_target(self, db_session):
        """Test creating a sync target fills in defaults."""
        target = make_target()
        db_session.add(target)
        db_session.commit()

        assert target.id is not None
        assert target.opaque_id.startswith("syt_")
        assert target.destination_schema == ""
        assert target.destination_table == ""
        assert target.page_size == 200
        assert target.parallelism == 1
        assert target.disabled is False
        assert target.last_synced_at is None
        assert target.last_applied_schema == ""
        assert target.sync_stats == []
        assert target.created_at is not None
        assert target.updated_at is not None

    def test_opaque_ids_are_unique(self, db_session):
        """Test that opaque IDs cannot collide."""
        first = make_target()
        db_session.add(first)
        db_session.commit()

        db_session.add(make_target(opaque_id=first.opaque_id))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_page_size_must_be_positive(self, db_session):
        """Test the page size check constraint."""
        db_session.add(make_target(page_size=0))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_parallelism_must_be_positive(self, db_session):
        """Test the parallelism check constraint."""
        db_session.add(make_target(parallelism=0))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_sync_stats_round_trip(self, db_session):
        """Test that stats are stored as JSON."""
        target = make_target(sync_stats=[{"call_start": "2020-01-01T00:00:00", "row_count": 3}])
        db_session.add(target)
        db_session.commit()
        db_session.expire_all()

        assert db_session.get(SyncTarget, target.id).sync_stats[0]["row_count"] == 3


class TestSyncTargetSchedule:
    """Test SyncTarget scheduling helpers."""

    NOW = datetime(2020, 1, 1, 12, 0, 0)

    def test_never_synced_is_due(self):
        target = make_target()
        assert target.is_due(self.NOW)
        assert target.next_scheduled_sync(self.NOW) == self.NOW

    def test_due_after_period(self):
        target = make_target(last_synced_at=datetime(2020, 1, 1, 11, 50, 0))
        assert target.is_due(self.NOW)
        assert not target.is_due(datetime(2020, 1, 1, 11, 59, 59))

    def test_next_possible_sync_uses_minimum_period(self):
        target = make_target(last_synced_at=datetime(2020, 1, 1, 11, 59, 0), period_seconds=3600)
        assert target.next_scheduled_sync(self.NOW) == datetime(2020, 1, 1, 12, 59, 0)
        assert target.next_possible_sync(self.NOW, 120) == datetime(2020, 1, 1, 12, 1, 0)
        assert target.next_possible_sync(self.NOW, 30) == self.NOW


class TestAdvisoryLockModel:
    """Test AdvisoryLock model."""

    def test_one_row_per_key(self, db_session):
        """Test that a (namespace, key) pair can only be held once."""
        db_session.add(AdvisoryLock(namespace=1, lock_key=2))
        db_session.commit()

        db_session.add(AdvisoryLock(namespace=1, lock_key=2))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_acquired_at_default(self, db_session):
        lock = AdvisoryLock(namespace=1, lock_key=3)
        db_session.add(lock)
        db_session.commit()
        assert lock.acquired_at is not None
