"""Structural fraud-pattern checks over a client company's books.

Checks:
    CIRCULAR_TRANSACTIONS       -- material cycles of length 2-5 in the transfer graph.
    RELATED_PARTY_CONCENTRATION -- counterparties sharing identifiers dominate volume.
    INVOICE_SEQUENCE_ANOMALY    -- gaps, backward jumps or repeats per counterparty.
    ROUND_AMOUNT_PATTERN        -- share of round amounts above the baseline.
    UNUSUAL_TIMING              -- off-hours, weekend or month-end clustering.

All checks read only the records inside ``snapshot.window`` so their cost is
linear in the window size, not in the tenant's whole history.
"""

from __future__ import annotations

import calendar
import logging
import re
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime, time

from riskguard.config import ScoringConfig
from riskguard.errors import InsufficientHistoryError
from riskguard.pipeline.rule_registry import bind_checks, run_checks
from riskguard.pipeline.types import (
    CheckSource,
    CompanySnapshot,
    CounterpartyProfile,
    InvoiceRecord,
    Rule,
    TransferRecord,
    TriggerResult,
)

logger = logging.getLogger(__name__)

INVOICE_NUMBER_PATTERN = re.compile(r"^(?P<prefix>.*?)(?P<number>\d+)$")

BUSINESS_HOURS_START = 9
BUSINESS_HOURS_END = 18
ODD_HOURS_SHARE_LIMIT = 0.30
WEEKEND_SHARE_LIMIT = 0.20
MONTH_END_SHARE_LIMIT = 0.40
MONTH_END_DAYS = 3
CYCLES_REPORTED = 5
CYCLE_SEARCH_MAX_STEPS = 50_000


def find_cycles(
    graph: Mapping[str, Iterable[str]],
    min_length: int = 2,
    max_length: int = 5,
    limit: int | None = None,
    max_steps: int = CYCLE_SEARCH_MAX_STEPS,
) -> list[tuple[str, ...]]:
    """Enumerate simple directed cycles with ``min_length <= len <= max_length``.

    Each cycle is reported once, rotated so that its smallest node comes
    first.  Search depth is bounded by ``max_length``.  The search stops
    once ``limit`` cycles are found or after ``max_steps`` path extensions,
    so a dense graph costs a bounded amount of work.
    """
    adjacency = {node: sorted(set(targets)) for node, targets in graph.items()}
    cycles: list[tuple[str, ...]] = []
    steps = 0

    for start in sorted(adjacency):
        stack: list[tuple[str, list[str]]] = [(start, [start])]
        while stack:
            node, path = stack.pop()
            for neighbour in adjacency.get(node, ()):
                if neighbour == start:
                    if len(path) >= min_length:
                        cycles.append(tuple(path))
                        if limit is not None and len(cycles) >= limit:
                            return sorted(cycles)
                elif neighbour > start and neighbour not in path and len(path) < max_length:
                    steps += 1
                    if steps > max_steps:
                        logger.warning("Cycle search stopped after %d steps", max_steps)
                        return sorted(cycles)
                    stack.append((neighbour, path + [neighbour]))

    return sorted(cycles)


def _normalize(text: str | None) -> str:
    return " ".join((text or "").casefold().split())


class _DisjointSet:
    def __init__(self) -> None:
        self.parent: dict[str, str] = {}

    def find(self, item: str) -> str:
        self.parent.setdefault(item, item)
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, left: str, right: str) -> None:
        left_root, right_root = self.find(left), self.find(right)
        if left_root != right_root:
            self.parent[max(left_root, right_root)] = min(left_root, right_root)


class FraudPatternDetector:
    """Runs the structural checks bound to the active company rules.

    Usage::

        detector = FraudPatternDetector(ScoringConfig())
        results = detector.evaluate(snapshot, registry.list_active_rules())
    """

    source = CheckSource.FRAUD_PATTERN

    def __init__(self, config: ScoringConfig) -> None:
        self.config = config
        self.checks = bind_checks(
            {
                "CIRCULAR_TRANSACTIONS": self.check_circular_transactions,
                "RELATED_PARTY_CONCENTRATION": self.check_related_parties,
                "INVOICE_SEQUENCE_ANOMALY": self.check_invoice_sequence,
                "ROUND_AMOUNT_PATTERN": self.check_round_amounts,
                "UNUSUAL_TIMING": self.check_timing,
            }
        )

    def evaluate(
        self,
        snapshot: CompanySnapshot,
        rules: Iterable[Rule],
    ) -> list[TriggerResult]:
        """Run every structural check whose rule is active."""
        results = run_checks(
            self.checks,
            snapshot,
            rules,
            self.source,
            self.config.disabled_checks,
        )
        logger.info(
            "Company %s: %d fraud pattern(s) detected",
            snapshot.client_company_id,
            sum(1 for r in results if r.triggered),
        )
        return results

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_circular_transactions(self, snapshot: CompanySnapshot) -> TriggerResult:
        """Flag money cycles whose flow reaches the materiality threshold.

        Transfers are aggregated per directed (source, target) pair.  The
        flow of a cycle is its smallest edge, i.e. the amount that actually
        went all the way around.
        """
        flows: dict[tuple[str, str], float] = defaultdict(float)
        for transfer in self._transfers_in_window(snapshot):
            source, target = transfer.source_party.strip(), transfer.target_party.strip()
            if source and target and source != target:
                flows[(source, target)] += transfer.amount

        threshold = self.config.circular_materiality_threshold
        graph: dict[str, list[str]] = defaultdict(list)
        for (source, target), amount in flows.items():
            if amount >= threshold:
                graph[source].append(target)

        # One extra cycle tells whether the report is truncated
        cycles = find_cycles(
            graph,
            self.config.circular_min_length,
            self.config.circular_max_length,
            limit=CYCLES_REPORTED + 1,
        )
        if not cycles:
            return TriggerResult(
                "CIRCULAR_TRANSACTIONS",
                False,
                f"No cycle with flow >= {threshold:,.2f} among {len(flows)} transfer edge(s)",
                self.source,
            )

        descriptions = []
        for cycle in cycles[:CYCLES_REPORTED]:
            edges = list(zip(cycle, cycle[1:] + cycle[:1]))
            flow = min(flows[edge] for edge in edges)
            descriptions.append(f"{' -> '.join(cycle + cycle[:1])} (flow {flow:,.2f})")
        more = " and more" if len(cycles) > CYCLES_REPORTED else ""
        found = len(cycles) if not more else f"At least {len(cycles)}"
        return TriggerResult(
            "CIRCULAR_TRANSACTIONS",
            True,
            f"{found} circular flow(s): {'; '.join(descriptions)}{more}",
            self.source,
        )

    def check_related_parties(self, snapshot: CompanySnapshot) -> TriggerResult:
        """Flag clusters of counterparties that share identifying attributes
        and together account for a disproportionate share of the volume."""
        volumes = self._counterparty_volumes(snapshot)
        total = sum(volumes.values())
        if total <= 0:
            return TriggerResult(
                "RELATED_PARTY_CONCENTRATION", False, "No counterparty volume in window", self.source
            )

        clusters = self._cluster_counterparties(snapshot.counterparties)
        threshold = self.config.related_party_share_threshold
        worst: tuple[float, list[str]] | None = None
        for members in clusters:
            share = sum(volumes.get(member, 0.0) for member in members) / total
            if worst is None or share > worst[0]:
                worst = (share, members)

        if worst is None:
            return TriggerResult(
                "RELATED_PARTY_CONCENTRATION",
                False,
                "No counterparties share identifying attributes",
                self.source,
            )

        share, members = worst
        triggered = share >= threshold
        return TriggerResult(
            "RELATED_PARTY_CONCENTRATION",
            triggered,
            f"Related counterparties {', '.join(members)} hold {share:.1%} of volume "
            f"(threshold: {threshold:.0%})",
            self.source,
        )

    def check_invoice_sequence(self, snapshot: CompanySnapshot) -> TriggerResult:
        """Flag gaps and out-of-order jumps in invoice numbers per counterparty.

        Numbers are split into a prefix and a trailing integer; only invoices
        sharing a counterparty and a prefix are compared, in issue-date order.
        Up to ``sequence_gap_tolerance`` missing numbers (voided invoices) are
        accepted between neighbours.
        """
        series: dict[tuple[str, str], list[tuple[InvoiceRecord, int]]] = defaultdict(list)
        for invoice in self._invoices_in_window(snapshot):
            match = INVOICE_NUMBER_PATTERN.match((invoice.reference or "").strip())
            if match is None:
                continue
            key = (_normalize(invoice.counterparty), match.group("prefix"))
            series[key].append((invoice, int(match.group("number"))))

        tolerance = self.config.sequence_gap_tolerance
        findings: list[str] = []
        for (counterparty, _prefix), entries in sorted(series.items()):
            entries.sort(key=lambda entry: (entry[0].issue_date, entry[0].sequence))
            for (previous, prev_number), (current, number) in zip(entries, entries[1:]):
                step = number - prev_number
                if step == 0:
                    findings.append(f"{counterparty}: number {current.reference} repeated")
                elif step < 0:
                    findings.append(
                        f"{counterparty}: {current.reference} issued after {previous.reference}"
                    )
                elif step - 1 > tolerance:
                    findings.append(
                        f"{counterparty}: {step - 1} number(s) missing between "
                        f"{previous.reference} and {current.reference}"
                    )

        if findings:
            return TriggerResult(
                "INVOICE_SEQUENCE_ANOMALY", True, "; ".join(findings[:5]), self.source
            )
        return TriggerResult(
            "INVOICE_SEQUENCE_ANOMALY",
            False,
            f"{len(series)} invoice series checked (gap tolerance: {tolerance})",
            self.source,
        )

    def check_round_amounts(self, snapshot: CompanySnapshot) -> TriggerResult:
        """Flag an unusually high proportion of round amounts.

        Raises:
            InsufficientHistoryError: Fewer than ``round_amount_min_sample``
                amounts in the window.
        """
        amounts = [inv.amount for inv in self._invoices_in_window(snapshot)]
        amounts += [tr.amount for tr in self._transfers_in_window(snapshot)]
        required = self.config.round_amount_min_sample
        if len(amounts) < required:
            raise InsufficientHistoryError("ROUND_AMOUNT_PATTERN", len(amounts), required)

        unit = self.config.round_amount_unit
        round_count = sum(1 for amount in amounts if self._is_round(amount, unit))
        proportion = round_count / len(amounts)
        baseline = self.config.round_amount_baseline
        triggered = proportion > baseline
        return TriggerResult(
            "ROUND_AMOUNT_PATTERN",
            triggered,
            f"{round_count} of {len(amounts)} amount(s) are multiples of {unit:,.0f} "
            f"({proportion:.1%}, baseline: {baseline:.0%})",
            self.source,
        )

    def check_timing(self, snapshot: CompanySnapshot) -> TriggerResult:
        """Flag transfers clustered outside business hours, on weekends or at
        month-end.

        Raises:
            InsufficientHistoryError: Fewer than ``timing_min_sample`` transfers.
        """
        moments = [tr.occurred_at for tr in self._transfers_in_window(snapshot)]
        required = self.config.timing_min_sample
        if len(moments) < required:
            raise InsufficientHistoryError("UNUSUAL_TIMING", len(moments), required)

        total = len(moments)
        odd_hours = sum(1 for m in moments if not self._within_business_hours(m))
        weekend = sum(1 for m in moments if m.weekday() >= 5)
        month_end = sum(1 for m in moments if self._is_month_end(m))

        patterns = []
        if odd_hours / total > ODD_HOURS_SHARE_LIMIT:
            patterns.append(f"off-hours {odd_hours}/{total}")
        if weekend / total > WEEKEND_SHARE_LIMIT:
            patterns.append(f"weekend {weekend}/{total}")
        if month_end / total > MONTH_END_SHARE_LIMIT:
            patterns.append(f"month-end {month_end}/{total}")

        explanation = (
            "Clustered transfers: " + ", ".join(patterns)
            if patterns
            else f"Timing of {total} transfer(s) looks regular"
        )
        return TriggerResult("UNUSUAL_TIMING", bool(patterns), explanation, self.source)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _transfers_in_window(snapshot: CompanySnapshot) -> list[TransferRecord]:
        return [tr for tr in snapshot.transfers if snapshot.window.contains(tr.occurred_at)]

    @staticmethod
    def _invoices_in_window(snapshot: CompanySnapshot) -> list[InvoiceRecord]:
        start, end = snapshot.window.start.date(), snapshot.window.end.date()
        return [inv for inv in snapshot.invoices if start <= inv.issue_date <= end]

    def _counterparty_volumes(self, snapshot: CompanySnapshot) -> dict[str, float]:
        own = _normalize(snapshot.party_name)
        volumes: dict[str, float] = defaultdict(float)
        for invoice in self._invoices_in_window(snapshot):
            volumes[_normalize(invoice.counterparty)] += abs(invoice.amount)
        for transfer in self._transfers_in_window(snapshot):
            for party in (transfer.source_party, transfer.target_party):
                name = _normalize(party)
                if name and name != own:
                    volumes[name] += abs(transfer.amount)
        return volumes

    def _cluster_counterparties(
        self,
        profiles: Iterable[CounterpartyProfile],
    ) -> list[list[str]]:
        prefix_length = self.config.related_party_tax_prefix_length
        owners: dict[tuple[str, str], str] = {}
        clusters = _DisjointSet()

        for profile in profiles:
            name = _normalize(profile.name)
            if not name:
                continue
            clusters.find(name)
            keys = []
            digits = "".join(ch for ch in profile.tax_number or "" if ch.isdigit())
            if len(digits) >= prefix_length:
                keys.append(("tax", digits[:prefix_length]))
            if _normalize(profile.address):
                keys.append(("address", _normalize(profile.address)))
            if _normalize(profile.contact):
                keys.append(("contact", _normalize(profile.contact)))
            for key in keys:
                if key in owners:
                    clusters.union(owners[key], name)
                else:
                    owners[key] = name

        grouped: dict[str, list[str]] = defaultdict(list)
        for name in clusters.parent:
            grouped[clusters.find(name)].append(name)
        return [sorted(members) for members in grouped.values() if len(members) >= 2]

    @staticmethod
    def _is_round(amount: float, unit: float) -> bool:
        magnitude = abs(amount)
        if magnitude < unit:
            return False
        remainder = magnitude % unit
        return remainder < 0.005 or unit - remainder < 0.005

    @staticmethod
    def _within_business_hours(moment: datetime) -> bool:
        return time(BUSINESS_HOURS_START) <= moment.time() < time(BUSINESS_HOURS_END)

    @staticmethod
    def _is_month_end(moment: datetime) -> bool:
        days_in_month = calendar.monthrange(moment.year, moment.month)[1]
        return moment.day > days_in_month - MONTH_END_DAYS
