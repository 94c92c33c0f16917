"""Alert management endpoints for the risk dashboard."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskguard.api.dependencies import get_actor_id, get_pipeline, get_tenant_id
from riskguard.errors import AlertNotFoundError, InvalidTransitionError
from riskguard.models.database import RiskAlert, get_db
from riskguard.pipeline.ingestion import RiskScoringPipeline
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import AlertStatus, Severity
from riskguard.schemas.schemas import AlertActionRequest, AlertPage, RiskAlertResponse

logger = logging.getLogger(__name__)

alerts_router = APIRouter(prefix="/api/alerts", tags=["alerts"])


async def _apply_action(
    db: AsyncSession,
    action: Callable[[RiskRepository, datetime], Awaitable[RiskAlert]],
) -> RiskAlertResponse:
    """Run a lifecycle action and commit, mapping engine errors to HTTP codes."""
    try:
        alert = await action(RiskRepository(db), datetime.now(timezone.utc))
    except AlertNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    await db.commit()
    return RiskAlertResponse.model_validate(alert)


@alerts_router.get("", response_model=AlertPage)
async def get_alerts(
    severity: Severity | None = Query(default=None, description="Filter by severity"),
    status: AlertStatus | None = Query(default=None, description="Filter by alert status"),
    client_company_id: str | None = Query(default=None, description="Filter by client company"),
    created_from: datetime | None = Query(default=None, description="Created at or after"),
    created_to: datetime | None = Query(default=None, description="Created at or before"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> AlertPage:
    """Retrieve the tenant's alerts, newest first.

    Args:
        severity: Optional severity filter.
        status: Optional status filter (open, in_progress, closed, ignored).
        client_company_id: Optional client company filter.
        created_from: Lower bound of the creation timestamp.
        created_to: Upper bound of the creation timestamp.
        limit: Page size.
        offset: Number of alerts to skip.
        tenant_id: Tenant from the ``X-Tenant-ID`` header.
        db: Async database session dependency.

    Returns:
        One page of alerts plus the total number of matches.
    """
    alerts, total = await RiskRepository(db).list_alerts(
        tenant_id,
        severity=severity.value if severity else None,
        status=status.value if status else None,
        client_company_id=client_company_id,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        offset=offset,
    )
    return AlertPage(
        items=[RiskAlertResponse.model_validate(alert) for alert in alerts],
        total=total,
        limit=limit,
        offset=offset,
    )


@alerts_router.get("/since", response_model=list[RiskAlertResponse])
async def get_alerts_since(
    since: datetime = Query(..., description="Return alerts created after this instant"),
    min_severity: Severity | None = Query(default=None, description="Lowest severity to include"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> list[RiskAlertResponse]:
    """New-alert discovery for pollers, oldest first."""
    severities = (
        [level.value for level in Severity if level.rank >= min_severity.rank]
        if min_severity is not None
        else None
    )
    alerts = await RiskRepository(db).alerts_since(tenant_id, since, severities)
    return [RiskAlertResponse.model_validate(alert) for alert in alerts]


@alerts_router.get("/{alert_id}", response_model=RiskAlertResponse)
async def get_alert(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> RiskAlertResponse:
    """Retrieve a single alert.

    Raises:
        HTTPException: 404 if the alert does not exist for the tenant.
    """
    try:
        alert = await RiskRepository(db).get_alert(tenant_id, alert_id)
    except AlertNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return RiskAlertResponse.model_validate(alert)


@alerts_router.post("/{alert_id}/acknowledge", response_model=RiskAlertResponse)
async def acknowledge_alert(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
) -> RiskAlertResponse:
    """open -> in_progress.  No-op when the alert is already in progress."""
    return await _apply_action(
        db,
        lambda repo, now: pipeline.alert_manager.acknowledge(repo, tenant_id, alert_id, now),
    )


@alerts_router.post("/{alert_id}/reopen", response_model=RiskAlertResponse)
async def reopen_alert(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
) -> RiskAlertResponse:
    """in_progress -> open."""
    return await _apply_action(
        db,
        lambda repo, now: pipeline.alert_manager.reopen(repo, tenant_id, alert_id, now),
    )


@alerts_router.post("/{alert_id}/resolve", response_model=RiskAlertResponse)
async def resolve_alert(
    alert_id: str,
    body: AlertActionRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str | None = Depends(get_actor_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
) -> RiskAlertResponse:
    """Close an open or in-progress alert, recording who resolved it and why.

    Raises:
        HTTPException: 400 without an actor, 404 for unknown alerts, 409 if
            the alert is already closed or ignored.
    """
    actor = _require_actor(actor_id, body)
    return await _apply_action(
        db,
        lambda repo, now: pipeline.alert_manager.resolve(
            repo, tenant_id, alert_id, actor, now, _note(body),
        ),
    )


@alerts_router.post("/{alert_id}/ignore", response_model=RiskAlertResponse)
async def ignore_alert(
    alert_id: str,
    body: AlertActionRequest | None = None,
    tenant_id: str = Depends(get_tenant_id),
    actor_id: str | None = Depends(get_actor_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
) -> RiskAlertResponse:
    """Dismiss an open or in-progress alert, recording who dismissed it."""
    actor = _require_actor(actor_id, body)
    return await _apply_action(
        db,
        lambda repo, now: pipeline.alert_manager.ignore(
            repo, tenant_id, alert_id, actor, now, _note(body),
        ),
    )


def _require_actor(actor_id: str | None, body: AlertActionRequest | None) -> str:
    actor = actor_id or (body.actor_id if body is not None else None)
    if not actor:
        raise HTTPException(
            status_code=400,
            detail="An actor is required: send the X-Actor-ID header or actor_id in the body",
        )
    return actor


def _note(body: AlertActionRequest | None) -> str | None:
    return body.note if body is not None else None
