"""Statistical anomaly checks on a single document or a company's amount set.

Checks:
    AMOUNT_OUTLIER            -- z-score (or median multiple) against history.
    DATE_ANOMALY              -- due before issue, future-dated, or stale.
    DUPLICATE_INVOICE         -- exact or fuzzy match with an earlier invoice.
    BENFORD_DEVIATION         -- leading-digit chi-square on the subject's amounts.
    COMPANY_BENFORD_DEVIATION -- the same digit test on a company run.

Every check is a pure function of the snapshot and the frozen
``ScoringConfig``; none of them mutates its input.  Checks that need a minimum
sample raise ``InsufficientHistoryError``, which the check runner reports as
skipped rather than triggered.
"""

from __future__ import annotations

import logging
import math
import statistics
from collections.abc import Iterable, Sequence
from datetime import date, timedelta

from riskguard.config import ScoringConfig
from riskguard.errors import InsufficientHistoryError
from riskguard.pipeline.rule_registry import bind_checks, run_checks
from riskguard.pipeline.types import (
    CheckSource,
    CompanySnapshot,
    DocumentSnapshot,
    InvoiceRecord,
    Rule,
    TriggerResult,
)

logger = logging.getLogger(__name__)

# Expected share of each leading digit 1-9 under Benford's law.
BENFORD_PROPORTIONS: dict[int, float] = {
    digit: math.log10(1 + 1 / digit) for digit in range(1, 10)
}


def leading_digit(amount: float) -> int:
    """First significant digit of ``amount``; 0 for zero."""
    if amount == 0:
        return 0
    return int(f"{abs(amount):e}"[0])


def benford_chi_square(amounts: Iterable[float]) -> tuple[float, int]:
    """Chi-square statistic of leading digits against Benford's law.

    Zero amounts carry no leading digit and are left out of the sample.

    Returns:
        ``(chi_square, sample_size)``.
    """
    counts = dict.fromkeys(range(1, 10), 0)
    for amount in amounts:
        digit = leading_digit(amount)
        if digit:
            counts[digit] += 1

    total = sum(counts.values())
    if total == 0:
        return 0.0, 0

    chi_square = 0.0
    for digit, proportion in BENFORD_PROPORTIONS.items():
        expected = total * proportion
        chi_square += (counts[digit] - expected) ** 2 / expected
    return chi_square, total


def _normalize(text: str | None) -> str:
    return " ".join((text or "").casefold().split())


class AnomalyDetector:
    """Runs the statistical checks bound to the active anomaly rules.

    Usage::

        detector = AnomalyDetector(ScoringConfig())
        results = detector.evaluate_document(snapshot, registry.list_active_rules())
    """

    source = CheckSource.ANOMALY

    def __init__(self, config: ScoringConfig) -> None:
        self.config = config
        self.document_checks = bind_checks(
            {
                "AMOUNT_OUTLIER": self.check_amount_outlier,
                "DATE_ANOMALY": self.check_date_anomaly,
                "DUPLICATE_INVOICE": self.check_duplicate,
                "BENFORD_DEVIATION": self.check_benford,
            }
        )
        self.company_checks = bind_checks(
            {"COMPANY_BENFORD_DEVIATION": self.check_company_benford}
        )

    def evaluate_document(
        self,
        snapshot: DocumentSnapshot,
        rules: Iterable[Rule],
    ) -> list[TriggerResult]:
        """Run the document checks whose rules are active."""
        return run_checks(
            self.document_checks,
            snapshot,
            rules,
            self.source,
            self.config.disabled_checks,
        )

    def evaluate_company(
        self,
        snapshot: CompanySnapshot,
        rules: Iterable[Rule],
    ) -> list[TriggerResult]:
        """Run the company-level statistical checks whose rules are active."""
        return run_checks(
            self.company_checks,
            snapshot,
            rules,
            self.source,
            self.config.disabled_checks,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_amount_outlier(self, snapshot: DocumentSnapshot) -> TriggerResult:
        """Flag an amount far from the company's historical distribution.

        Uses the z-score against the population standard deviation.  A flat
        history (std-dev of zero) falls back to a multiple of the median.

        Raises:
            InsufficientHistoryError: Fewer than ``outlier_min_history``
                historical amounts.
        """
        history: Sequence[float] = snapshot.history_amounts
        required = self.config.outlier_min_history
        if len(history) < required:
            raise InsufficientHistoryError("AMOUNT_OUTLIER", len(history), required)

        amount = snapshot.invoice.amount
        mean = statistics.fmean(history)
        std_dev = statistics.pstdev(history, mu=mean)

        if std_dev > 0:
            z_score = (amount - mean) / std_dev
            triggered = abs(z_score) > self.config.outlier_sigma
            explanation = (
                f"Amount {amount:,.2f} is {z_score:+.1f} standard deviations from the "
                f"historical mean {mean:,.2f} (limit: {self.config.outlier_sigma})"
            )
        else:
            median = statistics.median(history)
            limit = abs(median) * self.config.outlier_median_multiple
            triggered = abs(amount) > limit if median else amount != 0
            explanation = (
                f"History is flat at {median:,.2f}; amount {amount:,.2f} "
                f"{'exceeds' if triggered else 'within'} {self.config.outlier_median_multiple}x median"
            )

        logger.debug("AMOUNT_OUTLIER check: triggered=%s", triggered)
        return TriggerResult("AMOUNT_OUTLIER", triggered, explanation, self.source)

    def check_date_anomaly(self, snapshot: DocumentSnapshot) -> TriggerResult:
        """Flag implausible issue and due dates."""
        invoice = snapshot.invoice
        as_of = snapshot.as_of or date.today()
        problems: list[str] = []

        if invoice.due_date is not None and invoice.due_date < invoice.issue_date:
            problems.append(
                f"due date {invoice.due_date.isoformat()} is before issue date "
                f"{invoice.issue_date.isoformat()}"
            )

        horizon = as_of + timedelta(days=self.config.future_date_grace_days)
        if invoice.issue_date > horizon:
            problems.append(
                f"issue date {invoice.issue_date.isoformat()} is "
                f"{(invoice.issue_date - as_of).days} day(s) in the future"
            )

        age_days = (as_of - invoice.issue_date).days
        if age_days > self.config.max_document_age_days:
            problems.append(f"issue date is {age_days} day(s) old")

        triggered = bool(problems)
        explanation = "; ".join(problems) if problems else "Issue and due dates are plausible"
        return TriggerResult("DATE_ANOMALY", triggered, explanation, self.source)

    def check_duplicate(self, snapshot: DocumentSnapshot) -> TriggerResult:
        """Flag an invoice matching an earlier one within the lookback window.

        A match needs the same counterparty and an issue date within
        ``duplicate_lookback_days``, plus either an exact
        (amount, date, reference) match or the same non-empty reference with
        the amount inside the relative tolerance.
        """
        invoice = snapshot.invoice
        for prior in snapshot.prior_invoices:
            if prior.document_id == invoice.document_id:
                continue
            match = self._duplicate_kind(invoice, prior)
            if match is not None:
                explanation = (
                    f"{match.capitalize()} match with document {prior.document_id} "
                    f"({prior.counterparty}, {prior.amount:,.2f}, {prior.issue_date.isoformat()}, "
                    f"ref={prior.reference or '-'})"
                )
                return TriggerResult("DUPLICATE_INVOICE", True, explanation, self.source)

        return TriggerResult(
            "DUPLICATE_INVOICE",
            False,
            f"No matching invoice among {len(snapshot.prior_invoices)} earlier record(s)",
            self.source,
        )

    def check_benford(self, snapshot: DocumentSnapshot) -> TriggerResult:
        return self._benford("BENFORD_DEVIATION", snapshot.amounts)

    def check_company_benford(self, snapshot: CompanySnapshot) -> TriggerResult:
        return self._benford("COMPANY_BENFORD_DEVIATION", snapshot.amounts)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _duplicate_kind(self, invoice: InvoiceRecord, prior: InvoiceRecord) -> str | None:
        if _normalize(invoice.counterparty) != _normalize(prior.counterparty):
            return None
        if abs((invoice.issue_date - prior.issue_date).days) > self.config.duplicate_lookback_days:
            return None

        same_reference = _normalize(invoice.reference) == _normalize(prior.reference)
        if (
            same_reference
            and invoice.issue_date == prior.issue_date
            and math.isclose(invoice.amount, prior.amount, abs_tol=0.005)
        ):
            return "exact"

        tolerance = self.config.duplicate_amount_tolerance * max(
            abs(invoice.amount), abs(prior.amount)
        )
        if (
            same_reference
            and invoice.reference
            and abs(invoice.amount - prior.amount) <= tolerance
        ):
            return "fuzzy"
        return None

    def _benford(self, code: str, amounts: Iterable[float]) -> TriggerResult:
        chi_square, sample = benford_chi_square(amounts)
        required = self.config.benford_min_sample
        if sample < required:
            raise InsufficientHistoryError(code, sample, required)

        threshold = self.config.benford_chi_square_threshold
        triggered = chi_square > threshold
        explanation = (
            f"Leading-digit chi-square {chi_square:.2f} over {sample} amount(s) "
            f"(threshold: {threshold:.2f})"
        )
        logger.debug("%s check: chi_square=%.2f, triggered=%s", code, chi_square, triggered)
        return TriggerResult(code, triggered, explanation, self.source)
