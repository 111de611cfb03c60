"""Advisory lock database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, DateTime
from hooksync.database.database import Base


class AdvisoryLock(Base):
    """A held try-lock, for application databases without native advisory locks.

    Postgres uses ``pg_try_advisory_lock`` instead and never writes here.
    """

    __tablename__ = "advisory_locks"

    namespace = Column(Integer, primary_key=True)
    lock_key = Column(Integer, primary_key=True)
    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)
