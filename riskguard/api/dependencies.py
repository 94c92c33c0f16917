"""FastAPI dependencies shared by the route modules."""
from __future__ import annotations

from fastapi import Header, HTTPException, Request

from riskguard.pipeline.ingestion import RiskScoringPipeline


def get_pipeline(request: Request) -> RiskScoringPipeline:
    """Return the process-wide pipeline created by the application lifespan."""
    pipeline: RiskScoringPipeline | None = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Scoring pipeline is not ready")
    return pipeline


def get_tenant_id(
    x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1),
) -> str:
    """Tenant of the request, as established by the upstream gateway."""
    return x_tenant_id


def get_actor_id(
    x_actor_id: str | None = Header(default=None, alias="X-Actor-ID"),
) -> str | None:
    return x_actor_id
