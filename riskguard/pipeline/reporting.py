"""Dashboard aggregates over stored risk scores.

Every figure here is computed from ``risk_scores`` rows and the triggered-rule
records embedded in them, so a rule that has since been retired or reworded
is still reported with the description it had when it fired.
"""

from __future__ import annotations

import logging
import statistics
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from riskguard.models.database import RiskScore, as_utc
from riskguard.pipeline.alert_manager import ACTIVE_STATUSES
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import RuleCategory, Severity, SubjectType

logger = logging.getLogger(__name__)

TREND_CHANGE_POINTS = 5.0
HIGH_RISK_SEVERITIES: tuple[Severity, ...] = (Severity.HIGH, Severity.CRITICAL)


@dataclass(frozen=True, slots=True)
class TrendPoint:
    generated_at: datetime
    score: float
    severity: str


@dataclass(frozen=True, slots=True)
class ScoreTrend:
    """Time-ordered score history of one subject plus summary figures.

    ``direction`` compares the latest score with the previous one:
    ``increasing`` or ``decreasing`` when they differ by at least
    ``TREND_CHANGE_POINTS``, otherwise ``stable``.
    """

    points: tuple[TrendPoint, ...] = ()
    current: float | None = None
    previous: float | None = None
    average: float | None = None
    minimum: float | None = None
    maximum: float | None = None
    change: float | None = None
    direction: str = "stable"


@dataclass(frozen=True, slots=True)
class CategoryBreakdown:
    category: str
    subjects: int = 0
    triggers: int = 0
    contribution: float = 0.0


@dataclass(slots=True)
class RuleFrequency:
    code: str
    description: str
    category: str | None
    count: int = 0
    last_triggered_at: datetime | None = None
    subjects: set[str] = field(default_factory=set)

    @property
    def subject_count(self) -> int:
        return len(self.subjects)


def summarize_trend(points: Sequence[TrendPoint]) -> ScoreTrend:
    """Build a ``ScoreTrend`` from points ordered oldest first."""
    if not points:
        return ScoreTrend()

    scores = [point.score for point in points]
    current = scores[-1]
    previous = scores[-2] if len(scores) > 1 else None
    change = round(current - previous, 2) if previous is not None else None

    direction = "stable"
    if change is not None and change >= TREND_CHANGE_POINTS:
        direction = "increasing"
    elif change is not None and change <= -TREND_CHANGE_POINTS:
        direction = "decreasing"

    return ScoreTrend(
        points=tuple(points),
        current=current,
        previous=previous,
        average=round(statistics.fmean(scores), 2),
        minimum=min(scores),
        maximum=max(scores),
        change=change,
        direction=direction,
    )


def category_breakdown(scores: Iterable[RiskScore]) -> list[CategoryBreakdown]:
    """Per-category trigger counts over the given scores.

    Every category is reported, with zeros where nothing fired.  ``subjects``
    counts the scores in which the category appeared at least once.
    """
    subjects: Counter[str] = Counter()
    triggers: Counter[str] = Counter()
    contribution: defaultdict[str, float] = defaultdict(float)

    for score in scores:
        seen: set[str] = set()
        for entry in score.triggered_rules or ():
            category = entry.get("category")
            if category is None:
                continue
            triggers[category] += 1
            contribution[category] += float(entry.get("contribution", 0.0))
            seen.add(category)
        subjects.update(seen)

    return [
        CategoryBreakdown(
            category=category.value,
            subjects=subjects[category.value],
            triggers=triggers[category.value],
            contribution=round(contribution[category.value], 2),
        )
        for category in RuleCategory
    ]


def top_rules(scores: Iterable[RiskScore], limit: int = 10) -> list[RuleFrequency]:
    """Most frequently triggered rule codes, most frequent first."""
    by_code: dict[str, RuleFrequency] = {}
    for score in scores:
        generated_at = as_utc(score.generated_at)
        for entry in score.triggered_rules or ():
            code = entry["code"]
            freq = by_code.get(code)
            if freq is None:
                freq = RuleFrequency(
                    code=code,
                    description=entry.get("description") or code,
                    category=entry.get("category"),
                )
                by_code[code] = freq
            freq.count += 1
            freq.subjects.add(f"{score.subject_type}:{score.subject_id}")
            if freq.last_triggered_at is None or generated_at >= freq.last_triggered_at:
                freq.last_triggered_at = generated_at
                # Keep the wording the rule had most recently
                freq.description = entry.get("description") or freq.description

    ranked = sorted(by_code.values(), key=lambda f: (-f.count, f.code))
    return ranked[:limit]


def score_buckets(scores: Iterable[RiskScore]) -> list[dict[str, int | str]]:
    """Count scores per 10-point bucket; 100 falls into the last bucket."""
    labels = [f"{low}-{low + 9}" for low in range(0, 90, 10)] + ["90-100"]
    counts = dict.fromkeys(labels, 0)
    for score in scores:
        counts[labels[min(int(score.score // 10), 9)]] += 1
    return [{"bucket": label, "count": counts[label]} for label in labels]


def severity_distribution(scores: Iterable[RiskScore]) -> dict[str, int]:
    counts = Counter(score.severity for score in scores)
    return {severity.value: counts.get(severity.value, 0) for severity in Severity}


# ---------------------------------------------------------------------------
# Database-backed views
# ---------------------------------------------------------------------------


async def build_score_trend(
    repo: RiskRepository,
    tenant_id: str,
    subject_type: SubjectType,
    subject_id: str,
    days: int,
    now: datetime,
) -> ScoreTrend:
    rows = await repo.score_history(tenant_id, subject_type, subject_id, now - timedelta(days=days))
    return summarize_trend(
        [TrendPoint(as_utc(row.generated_at), row.score, row.severity) for row in rows]
    )


async def build_dashboard_metrics(
    repo: RiskRepository,
    tenant_id: str,
    subject_type: SubjectType | None = None,
) -> dict[str, Any]:
    """Breakdown and distribution over the latest score of every subject."""
    latest = await repo.latest_scores(tenant_id, subject_type)
    logger.debug("Dashboard metrics for tenant %s over %d subject(s)", tenant_id, len(latest))
    return {
        "subjects": len(latest),
        "average_score": round(statistics.fmean(s.score for s in latest), 2) if latest else 0.0,
        "breakdown": category_breakdown(latest),
        "distribution": severity_distribution(latest),
        "buckets": score_buckets(latest),
    }


async def build_top_rules(
    repo: RiskRepository,
    tenant_id: str,
    days: int,
    now: datetime,
    limit: int = 10,
) -> list[RuleFrequency]:
    """Rules firing on the current score of subjects scored in the last ``days``.

    Superseded scores are left out, so a subject that has since been cleared
    no longer counts towards the rules it used to trigger.
    """
    since = as_utc(now - timedelta(days=days))
    rows = [
        row for row in await repo.latest_scores(tenant_id)
        if as_utc(row.generated_at) >= since
    ]
    return top_rules(rows, limit)


async def build_risk_dashboard(
    repo: RiskRepository,
    tenant_id: str,
    recent_limit: int = 10,
) -> dict[str, Any]:
    """Landing-page summary for a tenant.

    High-risk counts come from the latest score of every subject; open alert
    counts cover both ``open`` and ``in_progress`` alerts.
    """
    latest = await repo.latest_scores(tenant_id)
    distribution = severity_distribution(latest)
    high_risk = {level.value: distribution[level.value] for level in HIGH_RISK_SEVERITIES}

    high_risk_by_type = dict.fromkeys((kind.value for kind in SubjectType), 0)
    high_risk_values = set(high_risk)
    for score in latest:
        if score.severity in high_risk_values:
            high_risk_by_type[score.subject_type] += 1

    alert_counts = await repo.count_alerts_by_severity(tenant_id, ACTIVE_STATUSES)
    open_alerts = {level.value: alert_counts.get(level.value, 0) for level in Severity}

    return {
        "subjects": len(latest),
        "average_score": round(statistics.fmean(s.score for s in latest), 2) if latest else 0.0,
        "high_risk": high_risk,
        "high_risk_total": sum(high_risk.values()),
        "high_risk_by_subject_type": high_risk_by_type,
        "open_alerts": open_alerts,
        "open_alerts_total": sum(open_alerts.values()),
        "recent_scores": await repo.recent_scores(tenant_id, recent_limit),
    }
