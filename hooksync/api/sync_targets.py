"""Sync target API endpoints."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from hooksync.database.database import get_db
from hooksync.models.sync_target import SyncTarget
from hooksync.services.connection_cache import ConnectionCache
from hooksync.services.encryption_service import EncryptionService
from hooksync.services.exceptions import InvalidConnection
from hooksync.services.sync_jobs import ScheduleAt, SyncSchedule, request_sync
from hooksync.services.sync_target_service import SyncTargetService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync_targets", tags=["sync targets"])

_connection_cache: Optional[ConnectionCache] = None
_sync_schedule: Optional[SyncSchedule] = None


class DbSyncTargetCreate(BaseModel):
    """Database sync target creation request."""

    integration_id: str
    integration_service: str
    connection_url: str
    period_seconds: Optional[int] = None
    schema_name: str = ""
    table: str = ""


class HttpSyncTargetCreate(BaseModel):
    """HTTP sync target creation request."""

    integration_id: str
    integration_service: str
    connection_url: str
    period_seconds: Optional[int] = None
    page_size: Optional[int] = None
    parallelism: int = 1


class SyncTargetUpdate(BaseModel):
    """Sync target update request."""

    period_seconds: Optional[int] = None
    schema_name: Optional[str] = None
    table: Optional[str] = None
    page_size: Optional[int] = None
    parallelism: Optional[int] = None
    disabled: Optional[bool] = None


class CredentialsUpdate(BaseModel):
    """Replacement credentials for a sync target's connection URL."""

    user: str
    password: str


class SyncTargetResponse(BaseModel):
    """Sync target response. Never includes credentials."""

    opaque_id: str
    target_type: str
    integration_id: str
    integration_service: str
    connection_url: str
    schema_name: str
    table: str
    period_seconds: int
    page_size: int
    parallelism: int
    disabled: bool
    last_synced_at: Optional[str] = None
    next_scheduled_sync: str
    stats: Dict[str, Any]
    created_at: str


class SyncScheduledResponse(BaseModel):
    """Response to a manual sync request."""

    sync_target: SyncTargetResponse
    scheduled_at: str
    message: str


def get_connection_cache() -> ConnectionCache:
    """Get the process-wide connection cache."""
    global _connection_cache
    if _connection_cache is None:
        _connection_cache = ConnectionCache()
    return _connection_cache


def get_sync_schedule() -> ScheduleAt:
    """Get the process-wide schedule of manually requested syncs."""
    global _sync_schedule
    if _sync_schedule is None:
        _sync_schedule = SyncSchedule()
    return _sync_schedule


def get_sync_target_service(
    connection_cache: ConnectionCache = Depends(get_connection_cache),
) -> SyncTargetService:
    """Get sync target service instance."""
    return SyncTargetService(EncryptionService(), connection_cache)


def _to_response(service: SyncTargetService, target: SyncTarget) -> SyncTargetResponse:
    url = service.connection_url(target)
    return SyncTargetResponse(
        opaque_id=target.opaque_id,
        target_type="http" if service.is_http_url(url) else "db",
        integration_id=target.integration_id,
        integration_service=target.integration_service,
        connection_url=service.displaysafe_connection_url(target),
        schema_name=target.destination_schema,
        table=target.destination_table,
        period_seconds=target.period_seconds,
        page_size=target.page_size,
        parallelism=target.parallelism,
        disabled=target.disabled,
        last_synced_at=target.last_synced_at.isoformat() if target.last_synced_at else None,
        next_scheduled_sync=target.next_scheduled_sync(datetime.utcnow()).isoformat(),
        stats=service.stats_summary(target),
        created_at=target.created_at.isoformat(),
    )


def _get_target_or_404(db: Session, opaque_id: str) -> SyncTarget:
    target = db.query(SyncTarget).filter(SyncTarget.opaque_id == opaque_id).first()
    if target is None:
        raise HTTPException(status_code=404, detail=f"Sync target {opaque_id} not found")
    return target


@router.get("", response_model=List[SyncTargetResponse])
def list_sync_targets(
    integration_id: Optional[str] = None,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
):
    """List sync targets, optionally for one integration."""
    query = db.query(SyncTarget)
    if integration_id:
        query = query.filter(SyncTarget.integration_id == integration_id)
    return [_to_response(service, t) for t in query.order_by(SyncTarget.id).all()]


def _create(service: SyncTargetService, db: Session, url: str, is_http: bool, **kwargs) -> SyncTargetResponse:
    if service.is_http_url(url) != is_http:
        expected = "an https" if is_http else "a database"
        raise HTTPException(status_code=400, detail=f"connection_url must be {expected} URL")
    if kwargs.get("period_seconds") is None:
        kwargs["period_seconds"] = service.valid_period()[0]
    try:
        target = service.create_target(db, connection_url=url, **kwargs)
    except (ValueError, InvalidConnection) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_response(service, target)


@router.post("/db", response_model=SyncTargetResponse, status_code=201)
def create_db_sync_target(
    body: DbSyncTargetCreate,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
):
    """Register a Postgres or Snowflake destination.

    The URL is validated, the connection verified, and the URL stored encrypted.
    """
    return _create(
        service,
        db,
        body.connection_url,
        is_http=False,
        integration_id=body.integration_id,
        integration_service=body.integration_service,
        period_seconds=body.period_seconds,
        schema=body.schema_name,
        table=body.table,
    )


@router.post("/http", response_model=SyncTargetResponse, status_code=201)
def create_http_sync_target(
    body: HttpSyncTargetCreate,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
):
    """Register an HTTPS destination that receives POSTed row batches."""
    return _create(
        service,
        db,
        body.connection_url,
        is_http=True,
        integration_id=body.integration_id,
        integration_service=body.integration_service,
        period_seconds=body.period_seconds,
        page_size=body.page_size,
        parallelism=body.parallelism,
    )


@router.get("/{opaque_id}", response_model=SyncTargetResponse)
def get_sync_target(
    opaque_id: str,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
):
    """Get a sync target with its recent sync statistics."""
    return _to_response(service, _get_target_or_404(db, opaque_id))


@router.patch("/{opaque_id}", response_model=SyncTargetResponse)
def update_sync_target(
    opaque_id: str,
    body: SyncTargetUpdate,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
):
    """Update period, destination names, batching, or the disabled flag."""
    target = _get_target_or_404(db, opaque_id)
    try:
        target = service.update_target(
            db,
            target,
            period_seconds=body.period_seconds,
            schema=body.schema_name,
            table=body.table,
            page_size=body.page_size,
            parallelism=body.parallelism,
            disabled=body.disabled,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_response(service, target)


@router.post("/{opaque_id}/credentials", response_model=SyncTargetResponse)
def update_sync_target_credentials(
    opaque_id: str,
    body: CredentialsUpdate,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
):
    """Replace the user and password of the destination URL."""
    target = _get_target_or_404(db, opaque_id)
    try:
        target = service.update_credentials(db, target, body.user, body.password)
    except (ValueError, InvalidConnection) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_response(service, target)


@router.delete("/{opaque_id}", status_code=204)
def delete_sync_target(
    opaque_id: str,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
):
    """Delete a sync target. A run in flight notices and stops."""
    service.delete_target(db, _get_target_or_404(db, opaque_id))


@router.post("/{opaque_id}/sync", response_model=SyncScheduledResponse)
def request_sync_target_run(
    opaque_id: str,
    db: Session = Depends(get_db),
    service: SyncTargetService = Depends(get_sync_target_service),
    schedule: ScheduleAt = Depends(get_sync_schedule),
):
    """Schedule a sync as soon as the minimum sync period allows."""
    target = _get_target_or_404(db, opaque_id)
    run_at = request_sync(target, schedule)
    return SyncScheduledResponse(
        sync_target=_to_response(service, target),
        scheduled_at=run_at.isoformat(),
        message=f"Sync has been scheduled. It should start at about {run_at.isoformat()}.",
    )
