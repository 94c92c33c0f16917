"""Risk scoring module for the RiskGuard pipeline.

Aggregates triggered rules into a single composite risk score, classifies it
into a severity bucket, and keeps a per-rule breakdown for audit and
dashboard display.

Scoring:
    Triggered rules are ordered by weight (descending) then code.  The first
    ``damping_full_weight_count`` rules add their full weight, every further
    rule adds ``damping_factor`` of it, and the sum is clamped to [0, 100].

Severity buckets:
    low [0, 40), medium [40, 70), high [70, 90), critical [90, 100].
    A boundary value belongs to the higher bucket.  Any triggered rule with
    category ``fraud`` and severity ``critical`` forces ``critical``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from riskguard.config import ScoringConfig
from riskguard.errors import UnknownRuleError
from riskguard.pipeline.types import (
    Rule,
    ScoreResult,
    Severity,
    TriggeredRule,
    TriggerResult,
)

logger = logging.getLogger(__name__)

SEVERITY_THRESHOLDS: tuple[tuple[float, Severity], ...] = (
    (90.0, Severity.CRITICAL),
    (70.0, Severity.HIGH),
    (40.0, Severity.MEDIUM),
)


def classify_severity(score: float, critical_override: bool = False) -> Severity:
    """Map a score to its severity bucket."""
    if critical_override:
        return Severity.CRITICAL
    for lower_bound, severity in SEVERITY_THRESHOLDS:
        if score >= lower_bound:
            return severity
    return Severity.LOW


@dataclass(frozen=True, slots=True)
class AggregateResult:
    """Pure aggregation output.

    Attributes:
        score: Damped sum clamped to [0, 100], rounded to two decimals.
        raw_score: Damped sum before clamping.
        severity: Bucket for ``score`` including the critical override.
        contributions: ``(rule, contribution)`` pairs in aggregation order.
    """

    score: float
    raw_score: float
    severity: Severity
    contributions: tuple[tuple[Rule, float], ...]


def aggregate_score(
    rules: Iterable[Rule],
    full_weight_count: int = 5,
    damping_factor: float = 0.5,
) -> AggregateResult:
    """Combine triggered rules into one score.

    A pure function of the rules and their weights.  A code appearing more
    than once counts once.  Because the heaviest rules are applied first, the
    score never decreases when a rule is added or a weight is raised.

    Args:
        rules: Rules that fired for the subject.
        full_weight_count: Number of rules applied at full weight.
        damping_factor: Multiplier for every rule after that.

    Returns:
        An ``AggregateResult``.
    """
    unique: dict[str, Rule] = {}
    for rule in rules:
        unique.setdefault(rule.code, rule)
    ordered = sorted(unique.values(), key=lambda rule: (-rule.weight, rule.code))

    contributions: list[tuple[Rule, float]] = []
    raw_score = 0.0
    for index, rule in enumerate(ordered):
        contribution = rule.weight if index < full_weight_count else rule.weight * damping_factor
        contributions.append((rule, contribution))
        raw_score += contribution

    score = round(min(100.0, max(0.0, raw_score)), 2)
    severity = classify_severity(score, any(rule.is_critical_fraud for rule in ordered))
    return AggregateResult(
        score=score,
        raw_score=round(raw_score, 2),
        severity=severity,
        contributions=tuple(contributions),
    )


def resolve_rule(rule_set: Mapping[str, Rule], code: str) -> Rule:
    """Look up ``code`` in a registry snapshot.

    Raises:
        UnknownRuleError: If the snapshot has no such code.
    """
    rule = rule_set.get(code)
    if rule is None:
        raise UnknownRuleError(code)
    return rule


class RiskScorer:
    """Calculates composite risk scores from check results.

    Usage::

        scorer = RiskScorer(ScoringConfig())
        result = scorer.calculate(trigger_results, registry.snapshot())
        if result.severity.rank >= Severity.HIGH.rank:
            ...
    """

    def __init__(self, config: ScoringConfig) -> None:
        self.config = config

    def calculate(
        self,
        results: Iterable[TriggerResult],
        rule_set: Mapping[str, Rule],
    ) -> ScoreResult:
        """Produce a composite risk score from individual check results.

        Triggered codes missing from ``rule_set`` are kept in the record as
        unscored entries instead of failing the run.

        Args:
            results: Check results from the detectors plus external flags.
            rule_set: Registry snapshot taken at the start of the run.

        Returns:
            A ``ScoreResult`` with the score, severity and triggered rules.
        """
        evaluated = tuple(results)
        matched: list[Rule] = []
        by_code: dict[str, TriggerResult] = {}
        unscored: list[TriggeredRule] = []

        for result in evaluated:
            if not result.triggered or result.rule_code in by_code:
                continue
            by_code[result.rule_code] = result
            try:
                rule = resolve_rule(rule_set, result.rule_code)
            except UnknownRuleError as exc:
                logger.warning("%s; recorded without score contribution", exc)
                unscored.append(
                    TriggeredRule(
                        code=result.rule_code,
                        description=result.explanation or result.rule_code,
                        category=None,
                        severity=None,
                        weight=0.0,
                        contribution=0.0,
                        source=result.source,
                        explanation=result.explanation,
                        scored=False,
                    )
                )
                continue
            if not rule.is_active:
                logger.debug("Rule %s is inactive; ignoring trigger", rule.code)
                continue
            matched.append(rule)

        aggregate = aggregate_score(
            matched,
            self.config.damping_full_weight_count,
            self.config.damping_factor,
        )

        triggered_rules = [
            TriggeredRule(
                code=rule.code,
                description=rule.description,
                category=rule.category.value,
                severity=rule.severity.value,
                weight=float(rule.weight),
                contribution=round(contribution, 2),
                source=by_code[rule.code].source,
                explanation=by_code[rule.code].explanation,
            )
            for rule, contribution in aggregate.contributions
        ]
        triggered_rules.extend(unscored)

        logger.info(
            "Risk score: %.2f (raw=%.2f, severity=%s, rules=%s)",
            aggregate.score,
            aggregate.raw_score,
            aggregate.severity.value,
            [rule.code for rule in triggered_rules],
        )

        return ScoreResult(
            score=aggregate.score,
            severity=aggregate.severity,
            triggered_rules=tuple(triggered_rules),
            raw_score=aggregate.raw_score,
            evaluated=evaluated,
        )
