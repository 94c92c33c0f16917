"""Risk overview endpoint backing the dashboard landing page."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskguard.api.dependencies import get_tenant_id
from riskguard.models.database import get_db
from riskguard.pipeline.reporting import build_risk_dashboard
from riskguard.pipeline.repository import RiskRepository
from riskguard.schemas.schemas import RiskDashboardResponse, RiskScoreResponse

logger = logging.getLogger(__name__)

risk_router = APIRouter(prefix="/api/risk", tags=["risk"])


@risk_router.get("/dashboard", response_model=RiskDashboardResponse)
async def get_risk_dashboard(
    recent: int = Query(default=10, ge=1, le=100, description="Number of recent scores to include"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> RiskDashboardResponse:
    """High-risk subject counts, open alerts by severity and the latest scores.

    Args:
        recent: How many of the newest score snapshots to return.
        tenant_id: Tenant from the ``X-Tenant-ID`` header.
        db: Async database session dependency.

    Returns:
        The tenant's dashboard summary.
    """
    summary = await build_risk_dashboard(RiskRepository(db), tenant_id, recent)
    logger.debug(
        "Dashboard for tenant %s: %d high-risk subject(s), %d open alert(s)",
        tenant_id,
        summary["high_risk_total"],
        summary["open_alerts_total"],
    )
    return RiskDashboardResponse(
        **{key: value for key, value in summary.items() if key != "recent_scores"},
        recent_scores=[RiskScoreResponse.model_validate(row) for row in summary["recent_scores"]],
    )
