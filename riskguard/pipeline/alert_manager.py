"""Alert lifecycle management.

Lifecycle::

    open ──► in_progress ──► closed
      │  ◄──(reopen)──┘  └──► ignored
      ├──────────────────────► closed
      └──────────────────────► ignored

``closed`` and ``ignored`` are terminal.  Alerts are never deleted.

Alert creation is idempotent: a scoring run whose severity reaches the floor
only creates an alert when no non-terminal alert with the same fingerprint
(subject + sorted triggered codes) was created inside the dedup window.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from riskguard.config import ScoringConfig
from riskguard.errors import InvalidTransitionError
from riskguard.models.database import RiskAlert, RiskScore, as_utc
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.types import (
    AlertStatus,
    AlertType,
    CheckSource,
    ScoreResult,
    Severity,
    SubjectType,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.OPEN: frozenset(
        {AlertStatus.IN_PROGRESS, AlertStatus.CLOSED, AlertStatus.IGNORED}
    ),
    AlertStatus.IN_PROGRESS: frozenset(
        {AlertStatus.OPEN, AlertStatus.CLOSED, AlertStatus.IGNORED}
    ),
    AlertStatus.CLOSED: frozenset(),
    AlertStatus.IGNORED: frozenset(),
}

TERMINAL_STATUSES: frozenset[AlertStatus] = frozenset(
    {AlertStatus.CLOSED, AlertStatus.IGNORED}
)
ACTIVE_STATUSES: tuple[str, ...] = (AlertStatus.OPEN.value, AlertStatus.IN_PROGRESS.value)


def transition(alert_id: str, current: AlertStatus, target: AlertStatus) -> AlertStatus:
    """Validate a status change and return the new status.

    Raises:
        InvalidTransitionError: If ``target`` is not reachable from ``current``.
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(alert_id, current.value, target.value)
    return target


def fingerprint(subject_type: SubjectType, subject_id: str, codes: Iterable[str]) -> str:
    """Stable dedup key for a subject and the set of rules it triggered."""
    key = f"{subject_type.value}:{subject_id}:{','.join(sorted(set(codes)))}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def alert_type_for(result: ScoreResult) -> AlertType:
    if any(rule.source is CheckSource.ANOMALY for rule in result.scored_rules):
        return AlertType.ANOMALY_DETECTED
    return AlertType.THRESHOLD_EXCEEDED


@dataclass(frozen=True, slots=True)
class AlertOutcome:
    """Result of alert evaluation for one scoring run.

    Attributes:
        alert: The new alert, or the existing one that suppressed it.
        created: ``True`` only when this run inserted ``alert``.
    """

    alert: RiskAlert
    created: bool


class AlertManager:
    """Creates alerts from scores and drives their status lifecycle.

    Every method works inside the caller's session and leaves the commit to
    the caller, so a score and its alert are written in one transaction.

    Args:
        config: Frozen scoring configuration (severity floor, dedup window).
    """

    def __init__(self, config: ScoringConfig) -> None:
        self.config = config
        self.floor = Severity(config.alert_severity_floor)

    def should_alert(self, severity: Severity) -> bool:
        return severity.rank >= self.floor.rank

    async def evaluate(
        self,
        repo: RiskRepository,
        score: RiskScore,
        result: ScoreResult,
        now: datetime,
        document_id: str | None = None,
    ) -> AlertOutcome | None:
        """Create (or find) the alert for a freshly appended score.

        Args:
            repo: Repository bound to the run's session.
            score: The persisted score row.
            result: The in-memory score the row was built from.
            now: Timestamp of the run.
            document_id: Document reference for document-level subjects.

        Returns:
            ``None`` when the severity is below the floor, otherwise an
            ``AlertOutcome``.
        """
        if not self.should_alert(result.severity):
            return None

        subject_type = SubjectType(score.subject_type)
        key = fingerprint(subject_type, score.subject_id, result.triggered_codes)
        window_start = now - timedelta(hours=self.config.alert_dedup_window_hours)
        existing = await repo.find_active_alert(
            score.tenant_id, key, ACTIVE_STATUSES, window_start,
        )
        if existing is not None:
            # Same rule set, but weights or amounts may have moved.
            existing.severity = result.severity.value
            existing.title = self._title(subject_type, score.subject_id, result)
            existing.message = self._message(result)
            existing.risk_score_id = score.id
            existing.updated_at = as_utc(now)
            await repo.session.flush()
            logger.info(
                "Alert %s already covers %s %s -- refreshed to score %.2f (%s)",
                existing.id,
                subject_type.value,
                score.subject_id,
                result.score,
                result.severity.value,
            )
            return AlertOutcome(alert=existing, created=False)

        alert = RiskAlert(
            id=str(uuid4()),
            tenant_id=score.tenant_id,
            client_company_id=score.client_company_id,
            document_id=document_id,
            subject_type=subject_type.value,
            subject_id=score.subject_id,
            fingerprint=key,
            risk_score_id=score.id,
            type=alert_type_for(result).value,
            title=self._title(subject_type, score.subject_id, result),
            message=self._message(result),
            severity=result.severity.value,
            status=AlertStatus.OPEN.value,
            created_at=now,
            updated_at=now,
        )
        await repo.add_alert(alert)
        logger.warning(
            "RISK ALERT %s for %s %s -- score %.2f (%s), rules %s",
            alert.id,
            subject_type.value,
            score.subject_id,
            result.score,
            result.severity.value,
            result.triggered_codes,
        )
        return AlertOutcome(alert=alert, created=True)

    # ------------------------------------------------------------------
    # Lifecycle actions
    # ------------------------------------------------------------------

    async def acknowledge(
        self,
        repo: RiskRepository,
        tenant_id: str,
        alert_id: str,
        now: datetime,
    ) -> RiskAlert:
        """open -> in_progress.  Acknowledging an in-progress alert is a no-op."""
        alert = await repo.get_alert(tenant_id, alert_id)
        if AlertStatus(alert.status) is AlertStatus.IN_PROGRESS:
            return alert
        return self._apply(alert, AlertStatus.IN_PROGRESS, now)

    async def reopen(
        self,
        repo: RiskRepository,
        tenant_id: str,
        alert_id: str,
        now: datetime,
    ) -> RiskAlert:
        """in_progress -> open."""
        alert = await repo.get_alert(tenant_id, alert_id)
        if AlertStatus(alert.status) is not AlertStatus.IN_PROGRESS:
            raise InvalidTransitionError(alert_id, alert.status, AlertStatus.OPEN.value)
        return self._apply(alert, AlertStatus.OPEN, now)

    async def resolve(
        self,
        repo: RiskRepository,
        tenant_id: str,
        alert_id: str,
        actor_id: str,
        now: datetime,
        note: str | None = None,
    ) -> RiskAlert:
        alert = await repo.get_alert(tenant_id, alert_id)
        return self._apply(alert, AlertStatus.CLOSED, now, actor_id, note)

    async def ignore(
        self,
        repo: RiskRepository,
        tenant_id: str,
        alert_id: str,
        actor_id: str,
        now: datetime,
        note: str | None = None,
    ) -> RiskAlert:
        alert = await repo.get_alert(tenant_id, alert_id)
        return self._apply(alert, AlertStatus.IGNORED, now, actor_id, note)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _apply(
        alert: RiskAlert,
        target: AlertStatus,
        now: datetime,
        actor_id: str | None = None,
        note: str | None = None,
    ) -> RiskAlert:
        current = AlertStatus(alert.status)
        alert.status = transition(alert.id, current, target).value
        alert.updated_at = now
        if target in TERMINAL_STATUSES:
            alert.resolved_at = now
            alert.resolved_by = actor_id
            alert.resolution_note = note
        logger.info("Alert %s: %s -> %s", alert.id, current.value, target.value)
        return alert

    @staticmethod
    def _title(subject_type: SubjectType, subject_id: str, result: ScoreResult) -> str:
        return (
            f"{result.severity.value.capitalize()} risk score {result.score:.2f} "
            f"for {subject_type.value} {subject_id}"
        )

    @staticmethod
    def _message(result: ScoreResult) -> str:
        lines = [
            f"- {rule.code} (+{rule.contribution:g}): {rule.explanation or rule.description}"
            for rule in result.triggered_rules
        ]
        return "Triggered rules:\n" + "\n".join(lines) if lines else "No rules triggered"
