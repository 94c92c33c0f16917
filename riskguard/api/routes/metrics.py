"""Metrics aggregation endpoints for the risk dashboard."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskguard.api.dependencies import get_tenant_id
from riskguard.models.database import get_db
from riskguard.pipeline.reporting import build_dashboard_metrics, build_top_rules
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import SubjectType
from riskguard.schemas.schemas import (
    CategoryBreakdownResponse,
    DistributionResponse,
    TopRuleResponse,
)

logger = logging.getLogger(__name__)

metrics_router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@metrics_router.get("/breakdown", response_model=list[CategoryBreakdownResponse])
async def get_category_breakdown(
    subject_type: SubjectType | None = Query(default=None, description="Restrict to documents or companies"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> list[CategoryBreakdownResponse]:
    """Triggered-rule counts per category (fraud, compliance, financial, operational).

    Computed over the latest score of every subject, so re-scoring a subject
    replaces its contribution rather than adding to it.
    """
    metrics = await build_dashboard_metrics(RiskRepository(db), tenant_id, subject_type)
    return [CategoryBreakdownResponse.model_validate(item) for item in metrics["breakdown"]]


@metrics_router.get("/distribution", response_model=DistributionResponse)
async def get_distribution(
    subject_type: SubjectType | None = Query(default=None, description="Restrict to documents or companies"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> DistributionResponse:
    """Severity counts and 10-point score buckets over the latest scores."""
    metrics = await build_dashboard_metrics(RiskRepository(db), tenant_id, subject_type)
    return DistributionResponse(
        subjects=metrics["subjects"],
        average_score=metrics["average_score"],
        distribution=metrics["distribution"],
        buckets=metrics["buckets"],
    )


@metrics_router.get("/top-rules", response_model=list[TopRuleResponse])
async def get_top_rules(
    days: int = Query(default=30, ge=1, le=3650, description="Lookback window in days"),
    limit: int = Query(default=10, ge=1, le=100),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> list[TopRuleResponse]:
    """Most frequently triggered rules in the lookback window.

    Descriptions come from the stored score records, so retired codes still
    render with their original wording.
    """
    ranked = await build_top_rules(
        RiskRepository(db), tenant_id, days, datetime.now(timezone.utc), limit,
    )
    return [TopRuleResponse.model_validate(item) for item in ranked]
