"""Rule registry: source of truth for rule metadata keyed by code.

A ``RuleRegistry`` holds one effective catalog.  Scoring runs never read the
registry while they evaluate; they take a ``snapshot()`` up front, so a
configuration change (``replace_all``) only affects runs started afterwards.

``RuleRegistryCache`` keeps one registry per tenant in process memory and
reloads it from the database after ``ttl_seconds`` or on ``invalidate``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from riskguard.errors import InsufficientHistoryError, UnknownRuleError
from riskguard.pipeline.default_rules import DEFAULT_RULES
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import (
    CheckSource,
    Rule,
    RuleCategory,
    RuleScope,
    TriggerResult,
)

logger = logging.getLogger(__name__)

SnapshotT = TypeVar("SnapshotT")
CheckFn = Callable[[SnapshotT], TriggerResult]

RuleSet = Mapping[str, Rule]


def bind_checks(
    checks: Mapping[str, CheckFn],
    catalog: Iterable[Rule] = DEFAULT_RULES,
) -> Mapping[str, CheckFn]:
    """Validate a code -> check table against a rule catalog.

    Raises:
        UnknownRuleError: If a check is bound to a code the catalog does not
            define.
    """
    known = {rule.code for rule in catalog}
    for code in checks:
        if code not in known:
            raise UnknownRuleError(code)
    return MappingProxyType(dict(checks))


class RuleRegistry:
    """In-memory catalog of risk rules.

    Usage::

        registry = RuleRegistry(DEFAULT_RULES)
        rule = registry.get_rule("AMOUNT_OUTLIER")
        for rule in registry.list_active_rules(scope=RuleScope.COMPANY):
            ...
    """

    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        self._rules: Mapping[str, Rule] = MappingProxyType({})
        self.replace_all(rules)

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, code: object) -> bool:
        return code in self._rules

    def get_rule(self, code: str) -> Rule:
        """Return the rule registered under ``code``.

        Raises:
            UnknownRuleError: If the code is not registered.
        """
        try:
            return self._rules[code]
        except KeyError:
            raise UnknownRuleError(code) from None

    def list_active_rules(
        self,
        category: RuleCategory | None = None,
        scope: RuleScope | None = None,
    ) -> list[Rule]:
        """Active rules, optionally filtered, ordered by code ascending."""
        rules = [
            rule
            for rule in self._rules.values()
            if rule.is_active
            and (category is None or rule.category is category)
            and (scope is None or rule.scope is scope)
        ]
        return sorted(rules, key=lambda rule: rule.code)

    def snapshot(self) -> RuleSet:
        """Immutable view of the current catalog for one scoring run."""
        return self._rules

    def register(self, rule: Rule) -> None:
        """Add a rule whose code is not registered yet.

        Raises:
            ValueError: If the code is already registered.
        """
        if rule.code in self._rules:
            raise ValueError(f"Rule '{rule.code}' is already registered")
        updated = dict(self._rules)
        updated[rule.code] = rule
        self._rules = MappingProxyType(updated)

    def replace_all(self, rules: Iterable[Rule]) -> None:
        """Swap the whole catalog; later definitions win for repeated codes."""
        catalog: dict[str, Rule] = {}
        for rule in rules:
            catalog[rule.code] = rule
        self._rules = MappingProxyType(catalog)


def merge_rule_layers(*layers: Iterable[Rule]) -> list[Rule]:
    """Overlay rule layers by code; later layers override earlier ones."""
    merged: dict[str, Rule] = {}
    for layer in layers:
        for rule in layer:
            merged[rule.code] = rule
    return list(merged.values())


class RuleRegistryCache:
    """Per-tenant registry cache with TTL refresh.

    The effective catalog for a tenant is the built-in defaults, overridden
    by global database rows, overridden by the tenant's own rows.

    Args:
        session_factory: Factory for the sessions used to load rule rows.
        ttl_seconds: Age after which a cached registry is reloaded.
        defaults: Built-in catalog placed under the database layers.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: float = 300.0,
        defaults: Iterable[Rule] = DEFAULT_RULES,
    ) -> None:
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.defaults: tuple[Rule, ...] = tuple(defaults)
        self._entries: dict[str, tuple[float, RuleRegistry]] = {}
        self._lock = asyncio.Lock()

    async def get(self, tenant_id: str) -> RuleRegistry:
        """Return the tenant's registry, loading it if missing or stale."""
        entry = self._entries.get(tenant_id)
        if entry is not None and time.monotonic() - entry[0] < self.ttl_seconds:
            return entry[1]

        async with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is not None and time.monotonic() - entry[0] < self.ttl_seconds:
                return entry[1]
            registry = await self._load(tenant_id)
            self._entries[tenant_id] = (time.monotonic(), registry)
            return registry

    def invalidate(self, tenant_id: str | None = None) -> None:
        """Drop one tenant's registry, or every registry when ``tenant_id`` is None."""
        if tenant_id is None:
            self._entries.clear()
        else:
            self._entries.pop(tenant_id, None)

    async def _load(self, tenant_id: str) -> RuleRegistry:
        async with self.session_factory() as session:
            global_rules, tenant_rules = await RiskRepository(session).load_rule_layers(
                tenant_id,
            )

        registry = RuleRegistry(merge_rule_layers(self.defaults, global_rules, tenant_rules))
        logger.info(
            "Loaded %d rule(s) for tenant %s (%d global override(s), %d tenant override(s))",
            len(registry),
            tenant_id,
            len(global_rules),
            len(tenant_rules),
        )
        return registry


def run_checks(
    checks: Mapping[str, CheckFn],
    snapshot: object,
    rules: Iterable[Rule],
    source: CheckSource,
    disabled: frozenset[str] = frozenset(),
) -> list[TriggerResult]:
    """Evaluate every check bound to an active rule, isolating failures.

    Checks run in rule-code order.  A check that lacks history is reported as
    skipped; a check that raises anything else is logged and reported as not
    triggered, so one broken check never aborts the run.
    """
    results: list[TriggerResult] = []
    for rule in sorted(rules, key=lambda r: r.code):
        check = checks.get(rule.code)
        if check is None or not rule.is_active or rule.code in disabled:
            continue
        try:
            result = check(snapshot)
        except InsufficientHistoryError as exc:
            logger.debug("%s skipped: %s", rule.code, exc)
            result = TriggerResult(
                rule_code=rule.code,
                triggered=False,
                explanation=str(exc),
                source=source,
                skipped=True,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Check %s failed; treating as not triggered", rule.code, exc_info=True)
            result = TriggerResult(
                rule_code=rule.code,
                triggered=False,
                explanation=f"Check failed: {type(exc).__name__}: {exc}",
                source=source,
            )
        results.append(result)
    return results
