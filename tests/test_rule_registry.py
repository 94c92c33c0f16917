"""
Tests for the rule registry, the check runner and the per-tenant cache.
"""

import dataclasses

import pytest

from riskguard.errors import InsufficientHistoryError, UnknownRuleError
from riskguard.pipeline.default_rules import DEFAULT_RULES
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.rule_registry import (
    RuleRegistry,
    RuleRegistryCache,
    bind_checks,
    merge_rule_layers,
    run_checks,
)
from riskguard.pipeline.types import (
    CheckSource,
    Rule,
    RuleCategory,
    RuleScope,
    Severity,
    TriggerResult,
)

from helpers import OTHER_TENANT, TENANT


def _rule(code, weight=10, **kwargs):
    options = {"severity": Severity.LOW, "category": RuleCategory.OPERATIONAL}
    options.update(kwargs)
    return Rule(code=code, description=f"{code} rule", weight=weight, **options)


def test_default_catalog_loads():
    registry = RuleRegistry(DEFAULT_RULES)
    assert len(registry) == len(DEFAULT_RULES)
    assert registry.get_rule("AMOUNT_OUTLIER").weight == 70
    assert "CIRCULAR_TRANSACTIONS" in registry


def test_unknown_code_raises():
    registry = RuleRegistry(DEFAULT_RULES)
    with pytest.raises(UnknownRuleError) as excinfo:
        registry.get_rule("NOPE")
    assert excinfo.value.code == "NOPE"


def test_register_rejects_existing_code():
    registry = RuleRegistry([_rule("A")])
    with pytest.raises(ValueError):
        registry.register(_rule("A", weight=20))
    registry.register(_rule("B"))
    assert "B" in registry


def test_negative_weight_is_rejected():
    with pytest.raises(ValueError):
        _rule("BAD", weight=-1)


def test_list_active_rules_filters_and_sorts():
    registry = RuleRegistry(
        [
            _rule("C", scope=RuleScope.COMPANY),
            _rule("A"),
            _rule("B", is_active=False),
            _rule("D", category=RuleCategory.FRAUD),
        ]
    )
    assert [r.code for r in registry.list_active_rules()] == ["A", "C", "D"]
    assert [r.code for r in registry.list_active_rules(scope=RuleScope.COMPANY)] == ["C"]
    assert [r.code for r in registry.list_active_rules(category=RuleCategory.FRAUD)] == ["D"]


def test_snapshot_is_unaffected_by_replace_all():
    registry = RuleRegistry([_rule("A", weight=10)])
    snapshot = registry.snapshot()
    registry.replace_all([_rule("A", weight=99), _rule("B")])
    assert snapshot["A"].weight == 10
    assert "B" not in snapshot
    assert registry.get_rule("A").weight == 99


def test_merge_rule_layers_later_layer_wins():
    merged = {r.code: r for r in merge_rule_layers([_rule("A", 10), _rule("B", 10)], [_rule("A", 50)])}
    assert merged["A"].weight == 50
    assert merged["B"].weight == 10


def test_bind_checks_rejects_unknown_code():
    with pytest.raises(UnknownRuleError):
        bind_checks({"NOT_IN_CATALOG": lambda snapshot: None})


def test_run_checks_isolates_failures():
    def boom(snapshot):
        raise RuntimeError("broken check")

    def thin(snapshot):
        raise InsufficientHistoryError("B", 2, 10)

    def fires(snapshot):
        return TriggerResult("C", True, "fired", CheckSource.ANOMALY)

    rules = [_rule("A"), _rule("B"), _rule("C"), _rule("D")]
    results = run_checks({"A": boom, "B": thin, "C": fires}, object(), rules, CheckSource.ANOMALY)

    by_code = {r.rule_code: r for r in results}
    assert set(by_code) == {"A", "B", "C"}
    assert by_code["A"].triggered is False
    assert "RuntimeError" in by_code["A"].explanation
    assert by_code["B"].skipped is True
    assert by_code["B"].triggered is False
    assert by_code["C"].triggered is True


def test_run_checks_honours_disabled_and_inactive():
    fires = lambda snapshot: TriggerResult("A", True, "fired", CheckSource.ANOMALY)  # noqa: E731
    rules = [_rule("A"), _rule("B", is_active=False)]
    checks = {"A": fires, "B": fires}
    assert run_checks(checks, object(), rules, CheckSource.ANOMALY, frozenset({"A"})) == []


async def test_cache_applies_global_then_tenant_overrides(session_factory):
    async with session_factory() as session:
        repo = RiskRepository(session)
        outlier = next(r for r in DEFAULT_RULES if r.code == "AMOUNT_OUTLIER")
        await repo.save_rule(None, dataclasses.replace(outlier, weight=50))
        await repo.save_rule(TENANT, dataclasses.replace(outlier, weight=20))
        await session.commit()

    cache = RuleRegistryCache(session_factory)
    tenant_registry = await cache.get(TENANT)
    other_registry = await cache.get(OTHER_TENANT)
    assert tenant_registry.get_rule("AMOUNT_OUTLIER").weight == 20
    assert other_registry.get_rule("AMOUNT_OUTLIER").weight == 50
    assert other_registry.get_rule("DATE_ANOMALY").weight == 30


async def test_cache_reloads_after_invalidate(session_factory):
    cache = RuleRegistryCache(session_factory)
    first = await cache.get(TENANT)
    assert await cache.get(TENANT) is first

    async with session_factory() as session:
        await RiskRepository(session).save_rule(TENANT, _rule("CUSTOM_CHECK", weight=5))
        await session.commit()

    assert "CUSTOM_CHECK" not in await cache.get(TENANT)
    cache.invalidate(TENANT)
    reloaded = await cache.get(TENANT)
    assert reloaded is not first
    assert reloaded.get_rule("CUSTOM_CHECK").weight == 5
