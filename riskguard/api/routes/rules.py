"""Rule configuration endpoints.

The effective catalog of a tenant is the built-in defaults, overridden by
global rows, overridden by the tenant's rows.  Every write invalidates the
cached registry so the next scoring run picks the change up; runs already
in flight keep the snapshot they started with.
"""
from __future__ import annotations

import dataclasses
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from riskguard.api.dependencies import get_pipeline, get_tenant_id
from riskguard.models.database import get_db
from riskguard.pipeline.default_rules import DEFAULT_RULES
from riskguard.pipeline.ingestion import RiskScoringPipeline
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import Rule
from riskguard.schemas.schemas import RuleCreate, RuleResponse, RuleUpdate

logger = logging.getLogger(__name__)

rules_router = APIRouter(prefix="/api/rules", tags=["rules"])

RULE_LEVELS: frozenset[str] = frozenset({"tenant", "global"})


async def _effective_catalog(
    repo: RiskRepository,
    tenant_id: str,
    include_tenant: bool = True,
) -> dict[str, tuple[Rule, str]]:
    global_rules, tenant_rules = await repo.load_rule_layers(tenant_id)
    if not include_tenant:
        tenant_rules = []
    catalog: dict[str, tuple[Rule, str]] = {}
    for origin, layer in (("default", DEFAULT_RULES), ("global", global_rules), ("tenant", tenant_rules)):
        for rule in layer:
            catalog[rule.code] = (rule, origin)
    return catalog


def _response(rule: Rule, origin: str) -> RuleResponse:
    return RuleResponse(
        code=rule.code,
        description=rule.description,
        weight=rule.weight,
        severity=rule.severity,
        category=rule.category,
        scope=rule.scope,
        is_active=rule.is_active,
        origin=origin,
    )


def _owner(level: str, tenant_id: str) -> str | None:
    if level not in RULE_LEVELS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid level '{level}'. Must be one of: {', '.join(sorted(RULE_LEVELS))}",
        )
    return None if level == "global" else tenant_id


def _invalidate(pipeline: RiskScoringPipeline, owner: str | None) -> None:
    # A global row affects every tenant's catalog
    pipeline.registry_cache.invalidate(owner)


@rules_router.get("", response_model=list[RuleResponse])
async def list_rules(
    active_only: bool = Query(default=False, description="Only return active rules"),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> list[RuleResponse]:
    """Return the tenant's effective rule catalog ordered by code."""
    catalog = await _effective_catalog(RiskRepository(db), tenant_id)
    return [
        _response(rule, origin)
        for code, (rule, origin) in sorted(catalog.items())
        if rule.is_active or not active_only
    ]


@rules_router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(
    body: RuleCreate,
    level: str = Query(default="tenant", description="tenant or global"),
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
) -> RuleResponse:
    """Define a new rule code.

    Raises:
        HTTPException: 409 if the code already exists in the effective
            catalog.  Codes are immutable; use PATCH to reconfigure one.
    """
    owner = _owner(level, tenant_id)
    repo = RiskRepository(db)
    if body.code in await _effective_catalog(repo, tenant_id):
        raise HTTPException(
            status_code=409,
            detail=f"Rule '{body.code}' already exists; use PATCH to reconfigure it",
        )

    rule = Rule(**body.model_dump())
    await repo.save_rule(owner, rule)
    await db.commit()
    _invalidate(pipeline, owner)
    logger.info("Created %s rule %s for tenant %s", level, rule.code, tenant_id)
    return _response(rule, level)


@rules_router.patch("/{code}", response_model=RuleResponse)
async def update_rule(
    code: str,
    body: RuleUpdate,
    level: str = Query(default="tenant", description="tenant or global"),
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db),
) -> RuleResponse:
    """Reconfigure weight, description, severity or the active flag of a rule.

    When the rule has no row at ``level`` yet, an override row is created
    from the currently effective definition.

    Raises:
        HTTPException: 404 if the code is not in the effective catalog.
    """
    owner = _owner(level, tenant_id)
    repo = RiskRepository(db)
    catalog = await _effective_catalog(repo, tenant_id, include_tenant=owner is not None)
    if code not in catalog:
        raise HTTPException(status_code=404, detail=f"Rule '{code}' not found")

    changes = body.model_dump(exclude_none=True)
    rule = dataclasses.replace(catalog[code][0], **changes)
    await repo.save_rule(owner, rule)
    await db.commit()
    _invalidate(pipeline, owner)
    logger.info("Updated %s rule %s for tenant %s: %s", level, code, tenant_id, changes)
    return _response(rule, level)
