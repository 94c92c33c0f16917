"""Client company, counterparty and company scoring endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from riskguard.api.dependencies import get_pipeline, get_tenant_id
from riskguard.errors import ScoringTimeoutError, SubjectNotFoundError
from riskguard.models.database import ClientCompany, get_db
from riskguard.pipeline.ingestion import RiskScoringPipeline
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import CounterpartyProfile
from riskguard.schemas.schemas import (
    BatchReportResponse,
    CompanyCreate,
    CompanyResponse,
    CounterpartyCreate,
    CounterpartyResponse,
    ScoringRunResponse,
)

logger = logging.getLogger(__name__)

companies_router = APIRouter(prefix="/api", tags=["companies"])


@companies_router.post("/companies", response_model=CompanyResponse, status_code=201)
async def create_company(
    body: CompanyCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> CompanyResponse:
    """Register a client company.

    Raises:
        HTTPException: 409 if the company id is already taken.
    """
    if await db.get(ClientCompany, body.id) is not None:
        raise HTTPException(status_code=409, detail=f"Company '{body.id}' already exists")

    company = await RiskRepository(db).add_company(
        ClientCompany(tenant_id=tenant_id, **body.model_dump())
    )
    await db.commit()
    logger.info("Registered company %s for tenant %s", company.id, tenant_id)
    return CompanyResponse.model_validate(company)


@companies_router.get("/companies", response_model=list[CompanyResponse])
async def list_companies(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> list[CompanyResponse]:
    companies = await RiskRepository(db).list_active_companies(tenant_id)
    return [CompanyResponse.model_validate(company) for company in companies]


@companies_router.post("/counterparties", response_model=CounterpartyResponse, status_code=201)
async def register_counterparty(
    body: CounterpartyCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> CounterpartyResponse:
    """Create or update a counterparty's identifying attributes.

    These attributes are what the related-party check clusters on.
    """
    row = await RiskRepository(db).upsert_counterparty(
        tenant_id, CounterpartyProfile(**body.model_dump()),
    )
    await db.commit()
    return CounterpartyResponse.model_validate(row)


@companies_router.post("/companies/{company_id}/score", response_model=ScoringRunResponse)
async def score_company(
    company_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
) -> ScoringRunResponse:
    """Run company-level scoring now.

    Raises:
        HTTPException: 404 if the company is unknown, 409 if it is already
            being scored and the run policy is ``skip``, 504 on timeout.
    """
    try:
        outcome = await pipeline.score_company(tenant_id, company_id)
    except SubjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ScoringTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc

    if outcome is None:
        raise HTTPException(
            status_code=409,
            detail=f"Company '{company_id}' is already being scored",
        )
    return ScoringRunResponse.from_outcome(outcome)


@companies_router.post("/pipeline/batch", response_model=BatchReportResponse, tags=["pipeline"])
async def run_batch(
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
) -> BatchReportResponse:
    """Score every active company of the tenant and return the per-company report."""
    report = await pipeline.run_company_batch(tenant_id)
    return BatchReportResponse.model_validate(report)
