"""API routes for the guest access service."""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict

from guest_access.api.signatures import SIGNATURE_HEADER, verify_signature
from guest_access.core.orchestrator import Orchestrator
from guest_access.db.models import JobKind
from guest_access.errors import ConfigurationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()
webhook_router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


# Response models


class CredentialOut(BaseModel):
    """Credential as exposed over the API; never carries the code or its hash."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    lock_id: int
    status: str
    valid_from: datetime
    valid_to: datetime
    provider_ref: Optional[str] = None
    created_by: str
    created_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    action: str
    entity: str
    entity_id: Optional[str] = None
    actor: str
    details: dict[str, Any]
    success: bool
    error_message: Optional[str] = None


class ReconciliationRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    started_at: datetime
    completed_at: datetime
    watermark: datetime
    duration_ms: int
    fetched: int
    created: int
    updated: int
    orphaned: int
    errors: int
    status: str
    error_message: Optional[str] = None


# Webhooks


@webhook_router.post("/bookings")
async def booking_webhook(request: Request, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Ingest a booking lifecycle event from the booking system."""
    body = await request.body()

    settings = orchestrator.settings
    if settings.webhook_verify_signatures:
        check = verify_signature(body, request.headers.get(SIGNATURE_HEADER), settings.webhook_secret)
        if not check.valid:
            logger.warning("Rejected booking webhook: %s", check.reason)
            raise HTTPException(status_code=401, detail=check.reason)

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=422, detail="Body is not valid JSON")

    try:
        outcome = await orchestrator.handle_booking_event(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "success": outcome.success,
        "message": outcome.message,
        "booking_id": outcome.booking_id,
        "scheduled_locks": outcome.scheduled_locks,
        "failed_locks": outcome.failed_locks,
    }


# Status endpoints


@router.get("/health")
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.health_check()


@router.get("/bookings/{booking_id}/credentials", response_model=list[CredentialOut])
async def booking_credentials(booking_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Credentials issued for a booking."""
    try:
        return await orchestrator.booking_credentials(booking_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/bookings/{booking_id}/jobs")
async def booking_jobs(booking_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Queued generate/revoke jobs for a booking."""
    return await orchestrator.booking_jobs(booking_id)


# Failed jobs


@router.get("/jobs/failed")
async def failed_jobs(
    kind: Optional[JobKind] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Jobs that are failed or dead-lettered and wait for an operator."""
    return await orchestrator.failed_jobs(kind)


@router.delete("/jobs/failed")
async def clear_failed_jobs(
    kind: Optional[JobKind] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    cleared = await orchestrator.clear_failed_jobs(kind)
    return {"cleared": cleared}


@router.post("/jobs/{job_id}/requeue")
async def requeue_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Retry a failed job from its first attempt."""
    try:
        return await orchestrator.requeue_job(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/audit", response_model=list[AuditEntryOut])
async def audit_log(
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.store.list_audit(entity_id=entity_id, action=action, limit=limit)


@router.get("/reconciliation/status")
async def reconciliation_status(orchestrator: Orchestrator = Depends(get_orchestrator)):
    runs = await orchestrator.store.list_reconciliation_runs(limit=10)
    return {
        "enabled": orchestrator.reconciliation is not None,
        "running": orchestrator.reconciliation.running if orchestrator.reconciliation else False,
        "interval_minutes": orchestrator.settings.reconciliation_interval_minutes,
        "runs": [ReconciliationRunOut.model_validate(run) for run in runs],
    }


@router.post("/reconciliation/run")
async def run_reconciliation(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Run a reconciliation pass now."""
    try:
        result = await orchestrator.reconcile_now()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": result.success,
        "skipped": result.skipped,
        "error": result.error,
        "started_at": result.started_at,
        "completed_at": result.completed_at,
        "stats": {
            "fetched": result.stats.fetched,
            "created": result.stats.created,
            "updated": result.stats.updated,
            "orphaned": result.stats.orphaned,
            "errors": result.stats.errors,
            "duration_ms": result.stats.duration_ms,
        },
    }
