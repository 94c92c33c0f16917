"""
Tests for the structural fraud-pattern checks over a company's books.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from riskguard.config import ScoringConfig
from riskguard.errors import InsufficientHistoryError
from riskguard.pipeline.default_rules import DEFAULT_RULES
from riskguard.pipeline.fraud_detector import FraudPatternDetector, find_cycles
from riskguard.pipeline.types import (
    CompanySnapshot,
    CounterpartyProfile,
    InvoiceRecord,
    RuleScope,
    ScoringWindow,
    TransferRecord,
)

COMPANY_RULES = [rule for rule in DEFAULT_RULES if rule.scope is RuleScope.COMPANY]
WINDOW = ScoringWindow(
    start=datetime(2024, 1, 1, tzinfo=timezone.utc),
    end=datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc),
)
ISTANBUL = ZoneInfo("Europe/Istanbul")


@pytest.fixture
def detector():
    return FraudPatternDetector(ScoringConfig())


def _transfer(source, target, amount, occurred_at=None, idx=0):
    return TransferRecord(
        transfer_id=f"TRF-{source}-{target}-{idx}",
        source_party=source,
        target_party=target,
        amount=amount,
        occurred_at=occurred_at or datetime(2024, 6, 12, 10, 0, tzinfo=ISTANBUL),
    )


def _invoice(idx, counterparty, amount, reference=None, issue_date=None):
    return InvoiceRecord(
        document_id=f"DOC-{idx}",
        counterparty=counterparty,
        amount=amount,
        issue_date=issue_date or date(2024, 6, 1) + timedelta(days=idx),
        reference=reference,
        sequence=idx,
    )


def _snapshot(invoices=(), transfers=(), counterparties=(), party_name="Anadolu Gıda"):
    return CompanySnapshot(
        tenant_id="tenant-a",
        client_company_id="CMP-1",
        window=WINDOW,
        party_name=party_name,
        invoices=tuple(invoices),
        transfers=tuple(transfers),
        counterparties=tuple(counterparties),
    )


# ---------------------------------------------------------------------------
# CIRCULAR_TRANSACTIONS
# ---------------------------------------------------------------------------


def test_find_cycles_reports_each_cycle_once():
    graph = {"A": ["B"], "B": ["C"], "C": ["A"]}
    assert find_cycles(graph) == [("A", "B", "C")]


def test_find_cycles_respects_length_bounds():
    graph = {"A": ["B"], "B": ["A", "C"], "C": ["D"], "D": ["A"]}
    assert find_cycles(graph, min_length=2, max_length=2) == [("A", "B")]
    assert ("A", "B", "C", "D") in find_cycles(graph, min_length=2, max_length=4)
    assert find_cycles(graph, min_length=3, max_length=3) == []


def test_inverted_cycle_bounds_are_rejected():
    with pytest.raises(ValueError, match="circular_min_length"):
        ScoringConfig(circular_min_length=4, circular_max_length=3)
    assert ScoringConfig(circular_min_length=3, circular_max_length=3).circular_max_length == 3


def _complete_graph(size):
    parties = [f"P{idx:02d}" for idx in range(size)]
    return {node: [other for other in parties if other != node] for node in parties}


def test_find_cycles_stops_at_limit():
    cycles = find_cycles(_complete_graph(24), limit=6)
    assert len(cycles) == 6
    assert len(set(cycles)) == 6


def test_find_cycles_step_budget_bounds_the_search():
    cycles = find_cycles(_complete_graph(24), max_steps=100)
    assert 0 < len(cycles) < 1000


def test_dense_transfer_graph_is_reported_truncated(detector):
    parties = [f"P{idx:02d}" for idx in range(24)]
    transfers = [
        _transfer(source, target, 20_000)
        for source in parties
        for target in parties
        if source != target
    ]
    result = detector.check_circular_transactions(_snapshot(transfers=transfers))
    assert result.triggered
    assert result.explanation.startswith("At least 6 circular flow(s)")
    assert result.explanation.endswith("and more")


def test_circular_flow_above_threshold(detector):
    transfers = [
        _transfer("Anadolu Gıda", "Delta Ltd", 15_000),
        _transfer("Delta Ltd", "Omega AŞ", 15_000),
        _transfer("Omega AŞ", "Anadolu Gıda", 14_900),
    ]
    result = detector.check_circular_transactions(_snapshot(transfers=transfers))
    assert result.triggered
    assert "flow 14,900.00" in result.explanation


def test_circular_flow_below_threshold(detector):
    transfers = [
        _transfer("Anadolu Gıda", "Delta Ltd", 5_000),
        _transfer("Delta Ltd", "Omega AŞ", 5_000),
        _transfer("Omega AŞ", "Anadolu Gıda", 5_000),
    ]
    assert not detector.check_circular_transactions(_snapshot(transfers=transfers)).triggered


def test_small_transfers_aggregate_per_edge(detector):
    transfers = [_transfer("A", "B", 6_000, idx=idx) for idx in range(2)]
    transfers += [_transfer("B", "A", 12_000)]
    assert detector.check_circular_transactions(_snapshot(transfers=transfers)).triggered


def test_transfers_outside_window_are_ignored(detector):
    old = datetime(2023, 6, 1, 10, 0, tzinfo=timezone.utc)
    transfers = [
        _transfer("A", "B", 50_000, occurred_at=old),
        _transfer("B", "A", 50_000, occurred_at=old),
    ]
    assert not detector.check_circular_transactions(_snapshot(transfers=transfers)).triggered


def test_self_transfers_are_not_cycles(detector):
    transfers = [_transfer("A", "A", 50_000)]
    assert not detector.check_circular_transactions(_snapshot(transfers=transfers)).triggered


# ---------------------------------------------------------------------------
# RELATED_PARTY_CONCENTRATION
# ---------------------------------------------------------------------------


def test_related_parties_sharing_address_dominate(detector):
    counterparties = [
        CounterpartyProfile("Delta Ltd", tax_number="1111110001", address="Kadıköy Cad. 5, İstanbul"),
        CounterpartyProfile("Delta Dış Ticaret", tax_number="2222220002", address="Kadıköy  Cad. 5, İstanbul"),
        CounterpartyProfile("Ege Lojistik", tax_number="3333330003", address="Alsancak, İzmir"),
    ]
    invoices = [
        _invoice(1, "Delta Ltd", 50_000),
        _invoice(2, "Delta Dış Ticaret", 30_000),
        _invoice(3, "Ege Lojistik", 20_000),
    ]
    result = detector.check_related_parties(_snapshot(invoices=invoices, counterparties=counterparties))
    assert result.triggered
    assert "80.0%" in result.explanation


def test_related_parties_sharing_tax_prefix(detector):
    counterparties = [
        CounterpartyProfile("Delta Ltd", tax_number="123456-0001"),
        CounterpartyProfile("Delta Yapı", tax_number="1234569999"),
    ]
    invoices = [_invoice(1, "Delta Ltd", 40_000), _invoice(2, "Delta Yapı", 10_000), _invoice(3, "Other", 10_000)]
    assert detector.check_related_parties(_snapshot(invoices=invoices, counterparties=counterparties)).triggered


def test_related_parties_with_small_share(detector):
    counterparties = [
        CounterpartyProfile("Delta Ltd", contact="+90 212 555 00 00"),
        CounterpartyProfile("Delta Yapı", contact="+90 212 555 00 00"),
    ]
    invoices = [
        _invoice(1, "Delta Ltd", 5_000),
        _invoice(2, "Delta Yapı", 5_000),
        _invoice(3, "Ege Lojistik", 90_000),
    ]
    assert not detector.check_related_parties(_snapshot(invoices=invoices, counterparties=counterparties)).triggered


def test_unrelated_counterparties(detector):
    counterparties = [
        CounterpartyProfile("Delta Ltd", tax_number="1111110001"),
        CounterpartyProfile("Ege Lojistik", tax_number="2222220002"),
    ]
    invoices = [_invoice(1, "Delta Ltd", 50_000), _invoice(2, "Ege Lojistik", 50_000)]
    result = detector.check_related_parties(_snapshot(invoices=invoices, counterparties=counterparties))
    assert not result.triggered
    assert "No counterparties share" in result.explanation


def test_own_transfers_do_not_count_as_counterparty_volume(detector):
    counterparties = [
        CounterpartyProfile("Delta Ltd", address="Ortak Adres 1"),
        CounterpartyProfile("Delta Yapı", address="Ortak Adres 1"),
    ]
    transfers = [_transfer("Anadolu Gıda", "Ege Lojistik", 100_000)]
    invoices = [_invoice(1, "Delta Ltd", 10_000), _invoice(2, "Delta Yapı", 10_000)]
    result = detector.check_related_parties(
        _snapshot(invoices=invoices, transfers=transfers, counterparties=counterparties)
    )
    # 20k of 120k; the company's own side of the transfer is excluded
    assert "16.7%" in result.explanation
    assert not result.triggered


# ---------------------------------------------------------------------------
# INVOICE_SEQUENCE_ANOMALY
# ---------------------------------------------------------------------------


def test_consecutive_numbers_are_clean(detector):
    invoices = [_invoice(idx, "Delta Ltd", 1_000, f"ABC2024{idx:06d}") for idx in range(1, 8)]
    assert not detector.check_invoice_sequence(_snapshot(invoices=invoices)).triggered


def test_small_gap_is_tolerated(detector):
    numbers = [1, 2, 5, 6]
    invoices = [_invoice(idx, "Delta Ltd", 1_000, f"ABC2024{n:06d}") for idx, n in enumerate(numbers)]
    assert not detector.check_invoice_sequence(_snapshot(invoices=invoices)).triggered


def test_large_gap_triggers(detector):
    numbers = [1, 2, 10]
    invoices = [_invoice(idx, "Delta Ltd", 1_000, f"ABC2024{n:06d}") for idx, n in enumerate(numbers)]
    result = detector.check_invoice_sequence(_snapshot(invoices=invoices))
    assert result.triggered
    assert "7 number(s) missing" in result.explanation


def test_backward_jump_triggers(detector):
    numbers = [5, 6, 3]
    invoices = [_invoice(idx, "Delta Ltd", 1_000, f"ABC2024{n:06d}") for idx, n in enumerate(numbers)]
    result = detector.check_invoice_sequence(_snapshot(invoices=invoices))
    assert result.triggered
    assert "issued after" in result.explanation


def test_repeated_number_triggers(detector):
    invoices = [_invoice(idx, "Delta Ltd", 1_000, "ABC2024000001") for idx in range(2)]
    assert "repeated" in detector.check_invoice_sequence(_snapshot(invoices=invoices)).explanation


def test_series_are_split_by_counterparty_and_prefix(detector):
    invoices = [
        _invoice(1, "Delta Ltd", 1_000, "ABC2024000001"),
        _invoice(2, "Ege Lojistik", 1_000, "ABC2024000050"),
        _invoice(3, "Delta Ltd", 1_000, "XYZ2024000900"),
        _invoice(4, "Delta Ltd", 1_000, "ABC2024000002"),
    ]
    assert not detector.check_invoice_sequence(_snapshot(invoices=invoices)).triggered


# ---------------------------------------------------------------------------
# ROUND_AMOUNT_PATTERN
# ---------------------------------------------------------------------------


def test_round_amounts_above_baseline(detector):
    invoices = [_invoice(idx, "Delta Ltd", 5_000 * (idx + 1)) for idx in range(10)]
    result = detector.check_round_amounts(_snapshot(invoices=invoices))
    assert result.triggered
    assert "10 of 10" in result.explanation


def test_irregular_amounts_below_baseline(detector):
    invoices = [_invoice(idx, "Delta Ltd", 1_234.56 + idx * 17.3) for idx in range(10)]
    assert not detector.check_round_amounts(_snapshot(invoices=invoices)).triggered


def test_round_amounts_needs_minimum_sample(detector):
    invoices = [_invoice(idx, "Delta Ltd", 5_000) for idx in range(5)]
    with pytest.raises(InsufficientHistoryError):
        detector.check_round_amounts(_snapshot(invoices=invoices))


def test_amount_below_unit_is_not_round(detector):
    assert not FraudPatternDetector._is_round(0.0, 100.0)
    assert not FraudPatternDetector._is_round(50.0, 100.0)
    assert FraudPatternDetector._is_round(300.0, 100.0)
    assert FraudPatternDetector._is_round(299.999, 100.0)


# ---------------------------------------------------------------------------
# UNUSUAL_TIMING
# ---------------------------------------------------------------------------


def test_regular_business_hours(detector):
    # Monday 10 June to Friday 14 June 2024, 10:00-14:00 local time
    transfers = [
        _transfer("A", "B", 1_000, datetime(2024, 6, 10 + idx % 5, 10 + idx % 4, tzinfo=ISTANBUL), idx)
        for idx in range(10)
    ]
    assert not detector.check_timing(_snapshot(transfers=transfers)).triggered


def test_night_transfers(detector):
    transfers = [
        _transfer("A", "B", 1_000, datetime(2024, 6, 12, 2, 30, tzinfo=ISTANBUL), idx)
        for idx in range(10)
    ]
    result = detector.check_timing(_snapshot(transfers=transfers))
    assert result.triggered
    assert "off-hours 10/10" in result.explanation


def test_weekend_transfers(detector):
    # Saturday 15 June 2024
    transfers = [
        _transfer("A", "B", 1_000, datetime(2024, 6, 15, 11, tzinfo=ISTANBUL), idx)
        for idx in range(10)
    ]
    result = detector.check_timing(_snapshot(transfers=transfers))
    assert "weekend 10/10" in result.explanation


def test_month_end_transfers(detector):
    # Friday 28 June 2024 is within the last three days of the month
    transfers = [
        _transfer("A", "B", 1_000, datetime(2024, 6, 28, 11, tzinfo=ISTANBUL), idx)
        for idx in range(10)
    ]
    result = detector.check_timing(_snapshot(transfers=transfers))
    assert result.triggered
    assert result.explanation == "Clustered transfers: month-end 10/10"


def test_timing_needs_minimum_sample(detector):
    transfers = [_transfer("A", "B", 1_000, idx=idx) for idx in range(3)]
    with pytest.raises(InsufficientHistoryError):
        detector.check_timing(_snapshot(transfers=transfers))


def test_evaluate_runs_only_company_rules(detector):
    results = detector.evaluate(_snapshot(), COMPANY_RULES)
    codes = {r.rule_code for r in results}
    assert codes == {
        "CIRCULAR_TRANSACTIONS",
        "RELATED_PARTY_CONCENTRATION",
        "INVOICE_SEQUENCE_ANOMALY",
        "ROUND_AMOUNT_PATTERN",
        "UNUSUAL_TIMING",
    }
    skipped = {r.rule_code for r in results if r.skipped}
    assert skipped == {"ROUND_AMOUNT_PATTERN", "UNUSUAL_TIMING"}
