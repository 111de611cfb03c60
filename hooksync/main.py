"""Main FastAPI application entry point."""

import logging
from typing import Optional

from fastapi import Depends, FastAPI
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from hooksync import __version__
from hooksync.api.sync_targets import get_connection_cache, router as sync_targets_router
from hooksync.database.database import get_db, init_db
from hooksync.models.sync_target import SyncTarget
from hooksync.services.encryption_service import EncryptionService

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(
    title="hooksync",
    description="Replicates webhook-captured rows into Postgres, Snowflake, and HTTPS destinations",
    version=__version__,
)

app.include_router(sync_targets_router)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    encryption: str
    message: Optional[str] = None


class StatsResponse(BaseModel):
    """System statistics response."""

    sync_targets_count: int
    disabled_sync_targets_count: int
    cached_connections_count: int


@app.on_event("startup")
async def startup_event():
    """Initialize database and validate encryption on startup."""
    # Exits the process if the key is missing or malformed
    EncryptionService()
    init_db()


@app.on_event("shutdown")
async def shutdown_event():
    """Close pooled destination connections."""
    get_connection_cache().force_disconnect_all()


@app.get("/")
async def root():
    return {"message": "hooksync API", "version": __version__}


@app.get("/api/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint.

    Checks database connectivity and encryption key validity.
    """
    health_status = {
        "status": "healthy",
        "database": "connected",
        "encryption": "valid",
    }

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"
        health_status["message"] = str(e)
        return HealthResponse(**health_status)

    encryption_service = EncryptionService()
    if encryption_service.decrypt(encryption_service.encrypt("test")) != "test":
        health_status["encryption"] = "invalid"
        health_status["status"] = "unhealthy"
        health_status["message"] = "Encryption service validation failed"

    return HealthResponse(**health_status)


@app.get("/api/stats", response_model=StatsResponse)
def get_stats(db: Session = Depends(get_db)):
    """Counts of sync targets and open destination connection pools."""
    return StatsResponse(
        sync_targets_count=db.query(SyncTarget).count(),
        disabled_sync_targets_count=db.query(SyncTarget).filter(SyncTarget.disabled == True).count(),  # noqa: E712
        cached_connections_count=len(get_connection_cache().databases),
    )
