"""Pydantic v2 schemas for request validation and response serialization.

This module defines all data transfer objects (DTOs) used across the
RiskGuard API:

- ``CompanyCreate`` / ``CompanyResponse``            -- client company registration.
- ``CounterpartyCreate`` / ``CounterpartyResponse``  -- counterparty identifiers.
- ``DocumentCreate``                                 -- incoming invoice payload.
- ``TransferCreate`` / ``TransferBatchResponse``     -- ledger transfer ingestion.
- ``RiskScoreResponse`` / ``ScoringRunResponse``     -- stored scores and run results.
- ``ScoreTrendResponse``                             -- score history with summary.
- ``RiskAlertResponse`` / ``AlertPage``              -- alerts and paginated listings.
- ``AlertActionRequest``                             -- body for resolve / ignore.
- ``RuleCreate`` / ``RuleUpdate`` / ``RuleResponse`` -- rule configuration.
- ``BatchReportResponse``                            -- nightly batch outcome.
- ``DistributionResponse`` / ``TopRuleResponse``     -- dashboard metrics.

All models use ``from __future__ import annotations`` for deferred evaluation
of type hints, enabling forward references within the same module.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from riskguard.pipeline.types import RuleCategory, RuleScope, Severity


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------


class CompanyCreate(BaseModel):
    """Schema for registering a client company.

    Attributes:
        id: Identifier assigned by the accounting platform.
        name: Legal name of the company.
        party_name: Name under which the company appears in ledger transfers.
            Defaults to ``name``.
        is_active: Inactive companies are left out of batch scoring.
    """

    id: str = Field(..., min_length=1, description="Client company identifier.")
    name: str = Field(..., min_length=1, description="Legal name of the company.")
    party_name: str | None = Field(
        default=None,
        description="Name used for the company in ledger transfers.",
    )
    is_active: bool = Field(default=True, description="Include in batch scoring.")


class CompanyResponse(CompanyCreate):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    created_at: datetime | None = None


class CounterpartyCreate(BaseModel):
    """Identifying attributes of a trading partner, used to cluster related parties."""

    name: str = Field(..., min_length=1, description="Counterparty name as it appears on invoices.")
    tax_number: str | None = Field(default=None, description="VKN / TCKN tax number.")
    address: str | None = Field(default=None, description="Registered address.")
    contact: str | None = Field(default=None, description="Phone number or e-mail of the contact.")


class CounterpartyResponse(CounterpartyCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str


class DocumentCreate(BaseModel):
    """Schema for ingesting an invoice.

    Attributes:
        document_id: Unique identifier of the parsed document.
        client_company_id: Company whose books the invoice belongs to.
        counterparty_name: Seller or buyer on the other side.
        counterparty_tax_number: Tax number printed on the invoice, if any.
        invoice_number: Invoice serial number, e.g. ``ABC2024000123``.
        amount: Gross amount.  Must be non-negative.
        currency: ISO 4217 code.  Defaults to ``TRY``.
        issue_date: Date the invoice was issued.
        due_date: Payment due date, if any.
        flags: Rule codes already raised by the document parser, e.g.
            ``INV_TOTAL_MISMATCH``.
    """

    document_id: str = Field(..., min_length=1)
    client_company_id: str = Field(..., min_length=1)
    counterparty_name: str = Field(..., min_length=1)
    counterparty_tax_number: str | None = None
    invoice_number: str | None = None
    amount: float = Field(..., ge=0)
    currency: str = Field(default="TRY", min_length=3, max_length=3)
    issue_date: date
    due_date: date | None = None
    flags: list[str] = Field(default_factory=list)


class TransferCreate(BaseModel):
    """A party-to-party money movement booked for a client company."""

    transfer_id: str = Field(..., min_length=1)
    client_company_id: str = Field(..., min_length=1)
    source_party: str = Field(..., min_length=1)
    target_party: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    occurred_at: datetime
    reference: str | None = None


class TransferBatchResponse(BaseModel):
    received: int
    stored: int


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


class TriggeredRuleResponse(BaseModel):
    code: str
    description: str
    category: str | None = None
    severity: str | None = None
    weight: float
    contribution: float
    source: str
    explanation: str = ""
    scored: bool = True


class RiskScoreResponse(BaseModel):
    """Schema for a stored risk score snapshot."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    subject_type: str
    subject_id: str
    client_company_id: str | None = None
    score: float
    severity: str
    triggered_rules: list[TriggeredRuleResponse]
    generated_at: datetime


class RiskAlertResponse(BaseModel):
    """Schema for a risk alert as returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    client_company_id: str | None = None
    document_id: str | None = None
    subject_type: str
    subject_id: str
    risk_score_id: str | None = None
    type: str
    title: str
    message: str
    severity: str
    status: str
    created_at: datetime
    updated_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None


class ScoringRunResponse(BaseModel):
    """Result of an on-demand scoring run.

    Attributes:
        score: The appended score snapshot.
        alert: The alert created by the run, or the existing one that
            suppressed a new alert.  ``None`` below the alerting floor.
        alert_created: Whether this run created ``alert``.
        skipped_checks: Checks that could not run for lack of data.
    """

    score: RiskScoreResponse
    alert: RiskAlertResponse | None = None
    alert_created: bool = False
    skipped_checks: list[str] = Field(default_factory=list)

    @classmethod
    def from_outcome(cls, outcome: Any) -> ScoringRunResponse:
        """Build the response from a pipeline ``ScoringOutcome``."""
        return cls(
            score=RiskScoreResponse.model_validate(outcome.score),
            alert=(
                RiskAlertResponse.model_validate(outcome.alert)
                if outcome.alert is not None
                else None
            ),
            alert_created=outcome.alert_created,
            skipped_checks=[r.rule_code for r in outcome.result.evaluated if r.skipped],
        )


class TrendPointResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    generated_at: datetime
    score: float
    severity: str


class ScoreTrendResponse(BaseModel):
    """Score history of one subject with summary figures."""

    model_config = ConfigDict(from_attributes=True)

    subject_type: str
    subject_id: str
    days: int
    points: list[TrendPointResponse]
    current: float | None = None
    previous: float | None = None
    average: float | None = None
    minimum: float | None = None
    maximum: float | None = None
    change: float | None = None
    direction: str


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertPage(BaseModel):
    items: list[RiskAlertResponse]
    total: int
    limit: int
    offset: int


class AlertActionRequest(BaseModel):
    """Optional body for resolve / ignore; the actor header takes precedence."""

    actor_id: str | None = None
    note: str | None = Field(
        default=None, max_length=2000, description="Stored on the alert as its resolution note",
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RuleCreate(BaseModel):
    """Schema for defining a rule row.

    ``code`` is immutable once created; changed behavior needs a new code.
    """

    code: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Z][A-Z0-9_]*$")
    description: str = Field(..., min_length=1, max_length=500)
    weight: float = Field(..., ge=0, le=100)
    severity: Severity
    category: RuleCategory
    scope: RuleScope = RuleScope.DOCUMENT
    is_active: bool = True


class RuleUpdate(BaseModel):
    """Mutable attributes of a rule.  Omitted fields keep their value."""

    description: str | None = Field(default=None, min_length=1, max_length=500)
    weight: float | None = Field(default=None, ge=0, le=100)
    severity: Severity | None = None
    is_active: bool | None = None


class RuleResponse(BaseModel):
    """An entry of the tenant's effective rule catalog."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    description: str
    weight: float
    severity: str
    category: str
    scope: str
    is_active: bool
    origin: str = Field(description="Where the effective definition comes from: default, global or tenant.")

    @field_validator("severity", "category", "scope", mode="before")
    @classmethod
    def _enum_value(cls, value: Any) -> Any:
        return getattr(value, "value", value)


# ---------------------------------------------------------------------------
# Batch & metrics
# ---------------------------------------------------------------------------


class SubjectRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subject_type: str
    subject_id: str
    status: str
    score: float | None = None
    severity: str | None = None
    alert_id: str | None = None
    alert_created: bool = False
    error: str | None = None

    @field_validator("subject_type", mode="before")
    @classmethod
    def _enum_value(cls, value: Any) -> Any:
        return getattr(value, "value", value)


class BatchReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    started_at: datetime
    finished_at: datetime | None = None
    scored: int
    skipped: int
    failed: int
    alerts_created: int
    results: list[SubjectRunResponse]


class CategoryBreakdownResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category: str
    subjects: int
    triggers: int
    contribution: float


class DistributionResponse(BaseModel):
    """Severity and score spread over the latest score of every subject."""

    subjects: int
    average_score: float
    distribution: dict[str, int]
    buckets: list[dict[str, int | str]]


class TopRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    description: str
    category: str | None = None
    count: int
    subject_count: int
    last_triggered_at: datetime | None = None


class RiskDashboardResponse(BaseModel):
    """Tenant summary: current high-risk subjects, open alerts and latest runs."""

    subjects: int
    average_score: float
    high_risk: dict[str, int]
    high_risk_total: int
    high_risk_by_subject_type: dict[str, int]
    open_alerts: dict[str, int]
    open_alerts_total: int
    recent_scores: list[RiskScoreResponse]
