"""Risk score lookup and trend endpoints."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskguard.api.dependencies import get_tenant_id
from riskguard.models.database import get_db
from riskguard.pipeline.reporting import build_score_trend
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import SubjectType
from riskguard.schemas.schemas import (
    RiskScoreResponse,
    ScoreTrendResponse,
    TrendPointResponse,
)

logger = logging.getLogger(__name__)

scores_router = APIRouter(prefix="/api/scores", tags=["scores"])


@scores_router.get("/{subject_type}/{subject_id}", response_model=RiskScoreResponse)
async def get_latest_score(
    subject_type: SubjectType,
    subject_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> RiskScoreResponse:
    """Retrieve the most recent score of a document or company.

    Raises:
        HTTPException: 404 if the subject was never scored.
    """
    score = await RiskRepository(db).latest_score(tenant_id, subject_type, subject_id)
    if score is None:
        raise HTTPException(
            status_code=404,
            detail=f"No score for {subject_type.value} '{subject_id}'",
        )
    return RiskScoreResponse.model_validate(score)


@scores_router.get("/{subject_type}/{subject_id}/trend", response_model=ScoreTrendResponse)
async def get_score_trend(
    subject_type: SubjectType,
    subject_id: str,
    days: int = Query(default=30, ge=1, le=3650, description="Lookback window in days"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> ScoreTrendResponse:
    """Time-ordered score history with current, previous, average, min, max and direction.

    Direction is ``increasing`` / ``decreasing`` when the latest score moved by
    at least five points against the previous one, ``stable`` otherwise.
    """
    trend = await build_score_trend(
        RiskRepository(db),
        tenant_id,
        subject_type,
        subject_id,
        days,
        datetime.now(timezone.utc),
    )
    return ScoreTrendResponse(
        subject_type=subject_type.value,
        subject_id=subject_id,
        days=days,
        points=[TrendPointResponse.model_validate(point) for point in trend.points],
        current=trend.current,
        previous=trend.previous,
        average=trend.average,
        minimum=trend.minimum,
        maximum=trend.maximum,
        change=trend.change,
        direction=trend.direction,
    )
