from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, status

from sqlgate.api.dependencies import audit_store_dep, elevated_dep, retention_policy_dep
from sqlgate.core import schemas
from sqlgate.core.exceptions import ResourceNotFoundException
from sqlgate.core.security import actor_dep

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("/events", response_model=schemas.AuditPage)
async def list_events(
    actor: actor_dep,
    store: audit_store_dep,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    event_type: Optional[str] = None,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    action: Optional[str] = None,
    result: Optional[schemas.AuditResult] = None,
    page: int = 1,
    page_size: int = 100,
    sort_by: str = "Timestamp",
    sort_direction: str = "DESC",
):
    """Non-elevated callers only ever see their own events."""
    query = schemas.AuditQuery(
        start_date=start_date,
        end_date=end_date,
        event_type=event_type,
        user_id=user_id,
        correlation_id=correlation_id,
        resource_type=resource_type,
        resource_id=resource_id,
        action=action,
        result=result,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_direction=sort_direction,
    )
    return await store.query(actor, query)


@router.get("/events/{correlation_id}", response_model=List[schemas.AuditEventOut])
async def events_for_operation(correlation_id: str, actor: actor_dep, store: audit_store_dep):
    events = await store.by_correlation_id(actor, correlation_id)
    if not events:
        raise ResourceNotFoundException("Audit events", correlation_id)
    return events


@router.post(
    "/retention/sweep",
    status_code=status.HTTP_200_OK,
    response_model=schemas.RetentionSweepResult,
)
async def sweep_retention(
    payload: schemas.RetentionSweepRequest,
    actor: elevated_dep,
    store: audit_store_dep,
    policy: retention_policy_dep,
):
    return await store.purge_expired(
        policy,
        actor_id=actor.user_id,
        dry_run=payload.dry_run,
        batch_size=payload.batch_size,
        max_execution_seconds=payload.max_execution_seconds,
    )


@router.get("/report", response_model=schemas.AuditReport)
async def audit_report(
    report_type: schemas.AuditReportType,
    actor: elevated_dep,
    store: audit_store_dep,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    top_n: int = 10,
):
    """Aggregated statistics over the last 7 days unless a window is given."""
    return await store.report(
        actor,
        report_type,
        start_date=start_date,
        end_date=end_date,
        user_id=user_id,
        top_n=top_n,
    )
