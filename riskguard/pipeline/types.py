"""Domain types shared by the detectors, the scorer and the alert manager.

Everything here is an immutable value object.  Detectors receive a subject
snapshot (``DocumentSnapshot`` or ``CompanySnapshot``) built by the repository,
and return ``TriggerResult`` objects; the scorer turns those into a
``ScoreResult``.  None of these types touch the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class RuleCategory(str, Enum):
    FRAUD = "fraud"
    COMPLIANCE = "compliance"
    FINANCIAL = "financial"
    OPERATIONAL = "operational"


class RuleScope(str, Enum):
    DOCUMENT = "document"
    COMPANY = "company"


class SubjectType(str, Enum):
    DOCUMENT = "document"
    COMPANY = "company"


class CheckSource(str, Enum):
    """Which part of the engine produced a trigger."""

    ANOMALY = "anomaly"
    FRAUD_PATTERN = "fraud_pattern"
    EXTERNAL = "external"


class AlertStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    IGNORED = "ignored"


class AlertType(str, Enum):
    THRESHOLD_EXCEEDED = "threshold_exceeded"
    ANOMALY_DETECTED = "anomaly_detected"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Rule:
    """A named risk check and its scoring metadata.

    Attributes:
        code: Unique identifier, e.g. ``"AMOUNT_OUTLIER"``.
        description: Human-readable explanation shown on dashboards.
        severity: Severity class of the rule itself.
        weight: Points contributed to the score when the rule fires.
        category: Reporting category.
        scope: Whether the rule applies to documents or client companies.
        is_active: Inactive rules are neither evaluated nor scored.
    """

    code: str
    description: str
    severity: Severity
    weight: float
    category: RuleCategory
    scope: RuleScope = RuleScope.DOCUMENT
    is_active: bool = True

    def __post_init__(self) -> None:
        if not self.code:
            raise ValueError("Rule code must be a non-empty string")
        if self.weight < 0:
            raise ValueError(f"Rule '{self.code}' has negative weight {self.weight}")

    @property
    def is_critical_fraud(self) -> bool:
        return self.category is RuleCategory.FRAUD and self.severity is Severity.CRITICAL


@dataclass(frozen=True, slots=True)
class TriggerResult:
    """Outcome of one check against one subject.

    Attributes:
        rule_code: Rule the check is bound to.
        triggered: Whether the condition was satisfied.
        explanation: Why the check did or did not fire.
        source: Detector (or external parser) that produced the result.
        skipped: ``True`` when the check could not run, e.g. because the
            subject had too little history.  A skipped check never triggers.
    """

    rule_code: str
    triggered: bool
    explanation: str
    source: CheckSource
    skipped: bool = False


# ---------------------------------------------------------------------------
# Subject snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InvoiceRecord:
    document_id: str
    counterparty: str
    amount: float
    issue_date: date
    due_date: date | None = None
    reference: str | None = None
    client_company_id: str | None = None
    sequence: int = 0  # ingestion order within the tenant


@dataclass(frozen=True, slots=True)
class TransferRecord:
    transfer_id: str
    source_party: str
    target_party: str
    amount: float
    occurred_at: datetime
    reference: str | None = None


@dataclass(frozen=True, slots=True)
class CounterpartyProfile:
    name: str
    tax_number: str | None = None
    address: str | None = None
    contact: str | None = None


@dataclass(frozen=True, slots=True)
class ScoringWindow:
    """Explicit, inclusive time bounds for company-level analysis."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(
                f"Window start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True, slots=True)
class DocumentSnapshot:
    """Everything needed to score a single invoice.

    Attributes:
        tenant_id: Owning tenant.
        invoice: The document being scored.
        history_amounts: Amounts of the company's earlier invoices inside the
            history window, excluding ``invoice``.
        prior_invoices: Earlier-ingested invoices considered for duplicate
            detection.
        as_of: Reference date for future-dating checks.
        external_flags: Rule codes raised upstream by the document parser.
    """

    tenant_id: str
    invoice: InvoiceRecord
    history_amounts: tuple[float, ...] = ()
    prior_invoices: tuple[InvoiceRecord, ...] = ()
    as_of: date | None = None
    external_flags: tuple[str, ...] = ()

    @property
    def amounts(self) -> tuple[float, ...]:
        return self.history_amounts + (self.invoice.amount,)


@dataclass(frozen=True, slots=True)
class CompanySnapshot:
    """Bounded view of a client company's books for structural analysis."""

    tenant_id: str
    client_company_id: str
    window: ScoringWindow
    party_name: str | None = None
    invoices: tuple[InvoiceRecord, ...] = ()
    transfers: tuple[TransferRecord, ...] = ()
    counterparties: tuple[CounterpartyProfile, ...] = ()

    @property
    def amounts(self) -> tuple[float, ...]:
        return tuple(inv.amount for inv in self.invoices) + tuple(
            tr.amount for tr in self.transfers
        )


# ---------------------------------------------------------------------------
# Scoring output
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TriggeredRule:
    """One entry of the triggered-rule record embedded in a score.

    ``description`` and ``weight`` are captured at scoring time so the entry
    still renders after the rule is retired or reweighted.
    """

    code: str
    description: str
    category: str | None
    severity: str | None
    weight: float
    contribution: float
    source: CheckSource
    explanation: str = ""
    scored: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "description": self.description,
            "category": self.category,
            "severity": self.severity,
            "weight": self.weight,
            "contribution": self.contribution,
            "source": self.source.value,
            "explanation": self.explanation,
            "scored": self.scored,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TriggeredRule:
        return cls(
            code=data["code"],
            description=data.get("description", data["code"]),
            category=data.get("category"),
            severity=data.get("severity"),
            weight=float(data.get("weight", 0.0)),
            contribution=float(data.get("contribution", 0.0)),
            source=CheckSource(data.get("source", CheckSource.EXTERNAL.value)),
            explanation=data.get("explanation", ""),
            scored=bool(data.get("scored", True)),
        )


@dataclass(frozen=True, slots=True)
class ScoreResult:
    """Composite risk assessment for one subject and one run.

    Attributes:
        score: Damped, clamped score in [0, 100].
        severity: Bucket derived from ``score`` and the critical override.
        triggered_rules: Triggered rules in aggregation order; unscored codes
            are appended last.
        raw_score: Damped sum before clamping.
        evaluated: Every ``TriggerResult`` of the run, triggered or not.
    """

    score: float
    severity: Severity
    triggered_rules: tuple[TriggeredRule, ...] = ()
    raw_score: float = 0.0
    evaluated: tuple[TriggerResult, ...] = field(default=(), compare=False)

    @property
    def triggered_codes(self) -> list[str]:
        return [rule.code for rule in self.triggered_rules]

    @property
    def scored_rules(self) -> list[TriggeredRule]:
        return [rule for rule in self.triggered_rules if rule.scored]
