"""Scoring pipeline for the RiskGuard engine.

This module provides the ``RiskScoringPipeline`` class that orchestrates a
scoring run for one subject (a document or a client company): load the rule
snapshot, build the subject snapshot, run the detectors, aggregate the score,
append it, evaluate the alert, commit, and optionally broadcast new alerts
via WebSocket.

Runs for different subjects may proceed concurrently.  Runs for the same
subject are serialized by ``SubjectLocks``; with the ``skip`` policy a run
that finds its subject busy returns immediately instead of waiting.

Supported ingestion sources:
    - Single documents and transfer lists (``ingest_document``, ``ingest_transfers``)
    - JSON datasets on disk (``ingest_from_json``)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from riskguard.config import ScoringConfig, Settings, settings
from riskguard.errors import RiskEngineError, ScoringTimeoutError
from riskguard.models.database import (
    ClientCompany,
    Invoice,
    LedgerTransfer,
    RiskAlert,
    RiskScore,
    as_utc,
    async_session,
)
from riskguard.pipeline.alert_manager import AlertManager
from riskguard.pipeline.anomaly_detector import AnomalyDetector
from riskguard.pipeline.fraud_detector import FraudPatternDetector
from riskguard.pipeline.repository import RiskRepository
from riskguard.pipeline.risk_scorer import RiskScorer
from riskguard.pipeline.rule_registry import RuleRegistryCache
from riskguard.pipeline.types import (
    CheckSource,
    CompanySnapshot,
    CounterpartyProfile,
    DocumentSnapshot,
    Rule,
    RuleScope,
    ScoreResult,
    ScoringWindow,
    SubjectType,
    TriggerResult,
)

logger = logging.getLogger(__name__)

# Type alias for the optional WebSocket broadcast callback.
BroadcastCallback = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]

RUN_POLICIES: frozenset[str] = frozenset({"wait", "skip"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _as_utc_datetime(value: Any) -> datetime:
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    return as_utc(parsed)


def alert_payload(alert: RiskAlert, score: float) -> dict[str, Any]:
    """JSON-serializable alert summary pushed to dashboard subscribers."""
    return {
        "alert_id": alert.id,
        "tenant_id": alert.tenant_id,
        "client_company_id": alert.client_company_id,
        "document_id": alert.document_id,
        "subject_type": alert.subject_type,
        "subject_id": alert.subject_id,
        "type": alert.type,
        "title": alert.title,
        "severity": alert.severity,
        "status": alert.status,
        "risk_score": score,
        "created_at": alert.created_at.isoformat(),
    }


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ScoringOutcome:
    """Everything one completed scoring run produced.

    Attributes:
        subject_type: ``document`` or ``company``.
        subject_id: Document id or client company id.
        result: In-memory score with the full evaluation trace.
        score: The appended ``RiskScore`` row.
        alert: The alert created by this run or the one that suppressed it.
        alert_created: ``True`` when this run inserted ``alert``.
    """

    subject_type: SubjectType
    subject_id: str
    result: ScoreResult
    score: RiskScore
    alert: RiskAlert | None = None
    alert_created: bool = False


@dataclass(frozen=True, slots=True)
class SubjectRunResult:
    """One line of a batch report."""

    subject_type: SubjectType
    subject_id: str
    status: str  # "scored", "skipped" or "failed"
    score: float | None = None
    severity: str | None = None
    alert_id: str | None = None
    alert_created: bool = False
    error: str | None = None


@dataclass(slots=True)
class BatchReport:
    """Per-subject outcome of a batch run.  A failed subject never aborts the batch."""

    tenant_id: str
    started_at: datetime
    finished_at: datetime | None = None
    results: list[SubjectRunResult] = field(default_factory=list)

    @property
    def scored(self) -> int:
        return sum(1 for r in self.results if r.status == "scored")

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.status == "skipped")

    @property
    def alerts_created(self) -> int:
        return sum(1 for r in self.results if r.alert_created)


# ---------------------------------------------------------------------------
# Per-subject serialization
# ---------------------------------------------------------------------------


class SubjectLocks:
    """In-process lock per subject key.

    Locks are created on first use and dropped once nobody holds or waits
    for them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()

    def is_busy(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                del self._users[key]
                self._locks.pop(key, None)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class RiskScoringPipeline:
    """End-to-end risk scoring pipeline.

    All collaborators are injected so tests (and the FastAPI dependency) can
    assemble the pipeline explicitly; ``from_settings`` wires the defaults.

    Args:
        config: Frozen scoring configuration shared by every run.
        session_factory: Factory for the per-run database sessions.
        registry_cache: Per-tenant rule catalog cache.
        anomaly_detector: Document and company statistical checks.
        fraud_detector: Company structural checks.
        scorer: Score aggregator.
        alert_manager: Alert creation and lifecycle.
        broadcast_callback: Optional async callable invoked with alert data
            when a new alert is created.
        timeout_seconds: Upper bound of a single scoring run.
        run_policy: ``wait`` or ``skip`` for runs on a busy subject.
        batch_concurrency: Companies scored in parallel by ``run_company_batch``.

    Attributes:
        processed_count: Running total of completed scoring runs.
        flagged_count: Running total of runs that created an alert.
    """

    def __init__(
        self,
        config: ScoringConfig,
        session_factory: async_sessionmaker[AsyncSession],
        registry_cache: RuleRegistryCache,
        anomaly_detector: AnomalyDetector,
        fraud_detector: FraudPatternDetector,
        scorer: RiskScorer,
        alert_manager: AlertManager,
        broadcast_callback: BroadcastCallback | None = None,
        timeout_seconds: float = 5.0,
        run_policy: str = "wait",
        batch_concurrency: int = 4,
    ) -> None:
        if run_policy not in RUN_POLICIES:
            raise ValueError(
                f"Unknown run policy '{run_policy}'. Must be one of: {', '.join(sorted(RUN_POLICIES))}"
            )
        self.config = config
        self.session_factory = session_factory
        self.registry_cache = registry_cache
        self.anomaly_detector = anomaly_detector
        self.fraud_detector = fraud_detector
        self.scorer = scorer
        self.alert_manager = alert_manager
        self.broadcast_callback = broadcast_callback
        self.timeout_seconds = timeout_seconds
        self.run_policy = run_policy
        self.batch_concurrency = max(1, batch_concurrency)
        self.locks = SubjectLocks()
        self.processed_count: int = 0
        self.flagged_count: int = 0

    @classmethod
    def from_settings(
        cls,
        source: Settings = settings,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        broadcast_callback: BroadcastCallback | None = None,
    ) -> RiskScoringPipeline:
        """Assemble a pipeline from application settings."""
        config = ScoringConfig.from_settings(source)
        return cls(
            config=config,
            session_factory=session_factory,
            registry_cache=RuleRegistryCache(
                session_factory, ttl_seconds=source.RULE_CACHE_TTL_SECONDS,
            ),
            anomaly_detector=AnomalyDetector(config),
            fraud_detector=FraudPatternDetector(config),
            scorer=RiskScorer(config),
            alert_manager=AlertManager(config),
            broadcast_callback=broadcast_callback,
            timeout_seconds=source.SCORING_TIMEOUT_SECONDS,
            run_policy=source.CONCURRENT_RUN_POLICY,
            batch_concurrency=source.BATCH_CONCURRENCY,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_document(
        self,
        tenant_id: str,
        doc_data: dict[str, Any],
        now: datetime | None = None,
    ) -> ScoringOutcome | None:
        """Persist an invoice and score it.

        Args:
            tenant_id: Owning tenant.
            doc_data: Invoice fields matching the ``Invoice`` ORM model
                (dates may be ISO strings).
            now: Run timestamp; defaults to the current UTC time.

        Returns:
            The ``ScoringOutcome``, or ``None`` when the document id already
            exists or the run was skipped by the concurrency policy.

        Raises:
            SubjectNotFoundError: If the client company is unknown.
            ScoringTimeoutError: If scoring exceeds its time budget.  The
                invoice itself stays ingested.
        """
        document_id: str = doc_data["document_id"]
        async with self.session_factory() as session:
            repo = RiskRepository(session)
            await repo.get_company(tenant_id, doc_data["client_company_id"])
            if await repo.invoice_exists(tenant_id, document_id):
                logger.warning("Duplicate document %s -- skipping", document_id)
                return None

            invoice = Invoice(
                document_id=document_id,
                tenant_id=tenant_id,
                client_company_id=doc_data["client_company_id"],
                counterparty_name=doc_data["counterparty_name"],
                counterparty_tax_number=doc_data.get("counterparty_tax_number"),
                invoice_number=doc_data.get("invoice_number"),
                amount=float(doc_data["amount"]),
                currency=doc_data.get("currency") or "TRY",
                issue_date=_as_date(doc_data["issue_date"]),
                due_date=_as_date(doc_data.get("due_date")),
                flags=list(doc_data.get("flags") or []),
            )
            await repo.add_invoice(invoice)
            await session.commit()

        return await self.score_document(tenant_id, document_id, now)

    async def ingest_transfers(
        self,
        tenant_id: str,
        transfers: list[dict[str, Any]],
    ) -> int:
        """Persist ledger transfers; returns how many new ones were stored."""
        async with self.session_factory() as session:
            repo = RiskRepository(session)
            for company_id in {tr["client_company_id"] for tr in transfers}:
                await repo.get_company(tenant_id, company_id)
            added = await repo.add_transfers(
                tenant_id,
                [
                    LedgerTransfer(
                        transfer_id=tr["transfer_id"],
                        tenant_id=tenant_id,
                        client_company_id=tr["client_company_id"],
                        source_party=tr["source_party"],
                        target_party=tr["target_party"],
                        amount=float(tr["amount"]),
                        occurred_at=_as_utc_datetime(tr["occurred_at"]),
                        reference=tr.get("reference"),
                    )
                    for tr in transfers
                ],
            )
            await session.commit()
        logger.info("Stored %d of %d transfer(s) for tenant %s", added, len(transfers), tenant_id)
        return added

    async def ingest_from_json(self, file_path: str) -> dict[str, Any]:
        """Load a dataset file produced by ``data/generate_data.py``.

        The file holds a JSON object with ``companies``, ``counterparties``,
        ``transfers`` and ``invoices`` arrays; every record carries its
        ``tenant_id``.  Invoices are scored as they are ingested.

        Returns:
            A summary dictionary with keys ``tenants``, ``documents``,
            ``transfers``, ``flagged`` and ``processing_time_seconds``.
        """
        path = Path(file_path)
        logger.info("Loading dataset from %s", path.resolve())

        with path.open("r", encoding="utf-8") as fh:
            dataset: dict[str, list[dict[str, Any]]] = json.load(fh)

        return await self.ingest_dataset(dataset)

    async def ingest_dataset(self, dataset: dict[str, list[dict[str, Any]]]) -> dict[str, Any]:
        start_time = time.perf_counter()
        flagged_before = self.flagged_count

        async with self.session_factory() as session:
            repo = RiskRepository(session)
            for company in dataset.get("companies", []):
                if await session.get(ClientCompany, company["id"]) is not None:
                    logger.warning("Company %s already exists -- skipping", company["id"])
                    continue
                await repo.add_company(ClientCompany(**company))
            for party in dataset.get("counterparties", []):
                await repo.upsert_counterparty(
                    party["tenant_id"],
                    CounterpartyProfile(
                        name=party["name"],
                        tax_number=party.get("tax_number"),
                        address=party.get("address"),
                        contact=party.get("contact"),
                    ),
                )
            await session.commit()

        transfers_by_tenant: dict[str, list[dict[str, Any]]] = {}
        for transfer in dataset.get("transfers", []):
            transfers_by_tenant.setdefault(transfer["tenant_id"], []).append(transfer)
        stored = 0
        for tenant_id, transfers in transfers_by_tenant.items():
            stored += await self.ingest_transfers(tenant_id, transfers)

        invoices = dataset.get("invoices", [])
        total = len(invoices)
        for idx, doc in enumerate(invoices, start=1):
            try:
                outcome = await self.ingest_document(doc["tenant_id"], doc)
            except ScoringTimeoutError as exc:
                logger.error("Document %s not scored: %s", doc["document_id"], exc)
                continue
            if outcome is None:
                print(f"Processing [{idx}/{total}] {doc['document_id']} | SKIPPED")
                continue
            print(
                f"Processing [{idx}/{total}] {doc['document_id']} | "
                f"Score: {outcome.result.score:.2f} ({outcome.result.severity.value}) | "
                f"Rules: {outcome.result.triggered_codes}"
            )

        elapsed = time.perf_counter() - start_time
        summary: dict[str, Any] = {
            "tenants": sorted({c["tenant_id"] for c in dataset.get("companies", [])}),
            "documents": total,
            "transfers": stored,
            "flagged": self.flagged_count - flagged_before,
            "processing_time_seconds": round(elapsed, 4),
        }
        logger.info("Ingestion complete: %s", summary)
        return summary

    # ------------------------------------------------------------------
    # Scoring runs
    # ------------------------------------------------------------------

    async def score_document(
        self,
        tenant_id: str,
        document_id: str,
        now: datetime | None = None,
    ) -> ScoringOutcome | None:
        """Score one document.  Returns ``None`` if skipped as busy."""
        moment = as_utc(now) if now is not None else _utcnow()
        return await self._run(
            tenant_id,
            SubjectType.DOCUMENT,
            document_id,
            lambda: self._score_document(tenant_id, document_id, moment),
        )

    async def score_company(
        self,
        tenant_id: str,
        company_id: str,
        now: datetime | None = None,
        window: ScoringWindow | None = None,
    ) -> ScoringOutcome | None:
        """Score one client company over ``window``.

        The default window ends at ``now`` and spans ``company_window_days``.
        Returns ``None`` if the run was skipped as busy.
        """
        moment = as_utc(now) if now is not None else _utcnow()
        bounds = window or ScoringWindow(
            start=moment - timedelta(days=self.config.company_window_days),
            end=moment,
        )
        return await self._run(
            tenant_id,
            SubjectType.COMPANY,
            company_id,
            lambda: self._score_company(tenant_id, company_id, moment, bounds),
        )

    async def run_company_batch(
        self,
        tenant_id: str,
        now: datetime | None = None,
    ) -> BatchReport:
        """Score every active client company of a tenant.

        Companies are scored concurrently, at most ``batch_concurrency`` at
        a time.  A company that fails or times out is recorded as failed and
        the batch carries on.
        """
        moment = as_utc(now) if now is not None else _utcnow()
        report = BatchReport(tenant_id=tenant_id, started_at=_utcnow())

        async with self.session_factory() as session:
            companies = await RiskRepository(session).list_active_companies(tenant_id)
        company_ids = [company.id for company in companies]
        logger.info("Batch for tenant %s: %d active compan(ies)", tenant_id, len(company_ids))

        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def score_one(company_id: str) -> SubjectRunResult:
            async with semaphore:
                try:
                    outcome = await self.score_company(tenant_id, company_id, moment)
                except RiskEngineError as exc:
                    logger.error("Company %s failed: %s", company_id, exc)
                    return SubjectRunResult(
                        SubjectType.COMPANY, company_id, "failed", error=str(exc),
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Company %s failed unexpectedly", company_id)
                    return SubjectRunResult(
                        SubjectType.COMPANY,
                        company_id,
                        "failed",
                        error=f"{type(exc).__name__}: {exc}",
                    )
            if outcome is None:
                return SubjectRunResult(SubjectType.COMPANY, company_id, "skipped")
            return SubjectRunResult(
                SubjectType.COMPANY,
                company_id,
                "scored",
                score=outcome.result.score,
                severity=outcome.result.severity.value,
                alert_id=outcome.alert.id if outcome.alert is not None else None,
                alert_created=outcome.alert_created,
            )

        report.results = list(await asyncio.gather(*(score_one(cid) for cid in company_ids)))
        report.finished_at = _utcnow()
        logger.info(
            "Batch for tenant %s done: %d scored, %d skipped, %d failed, %d alert(s)",
            tenant_id,
            report.scored,
            report.skipped,
            report.failed,
            report.alerts_created,
        )
        return report

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
        run: Callable[[], Awaitable[ScoringOutcome]],
    ) -> ScoringOutcome | None:
        key = f"{tenant_id}:{subject_type.value}:{subject_id}"
        if self.run_policy == "skip" and self.locks.is_busy(key):
            logger.info("%s %s is already being scored -- skipping", subject_type.value, subject_id)
            return None

        async def locked() -> ScoringOutcome:
            async with self.locks.hold(key):
                return await run()

        try:
            outcome = await asyncio.wait_for(locked(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = ScoringTimeoutError(f"{subject_type.value} {subject_id}", self.timeout_seconds)
            logger.error("%s", error)
            raise error from None

        self.processed_count += 1
        if outcome.alert_created:
            self.flagged_count += 1
            await self._broadcast(outcome)
        return outcome

    async def _score_document(
        self,
        tenant_id: str,
        document_id: str,
        now: datetime,
    ) -> ScoringOutcome:
        registry = await self.registry_cache.get(tenant_id)
        rule_set = registry.snapshot()
        rules = registry.list_active_rules(scope=RuleScope.DOCUMENT)

        async with self.session_factory() as session:
            repo = RiskRepository(session)
            invoice = await repo.get_invoice(tenant_id, document_id)
            snapshot = await repo.build_document_snapshot(
                invoice,
                self.config.history_window_days,
                self.config.duplicate_lookback_days,
                self._business_date(now),
            )

            results = await asyncio.to_thread(self._detect_document, snapshot, rules)
            result = self.scorer.calculate(results, rule_set)

            score = await repo.append_score(
                tenant_id,
                SubjectType.DOCUMENT,
                document_id,
                result,
                now,
                client_company_id=invoice.client_company_id,
            )
            alert = await self.alert_manager.evaluate(
                repo, score, result, now, document_id=document_id,
            )
            await session.commit()

        return ScoringOutcome(
            subject_type=SubjectType.DOCUMENT,
            subject_id=document_id,
            result=result,
            score=score,
            alert=alert.alert if alert else None,
            alert_created=bool(alert and alert.created),
        )

    async def _score_company(
        self,
        tenant_id: str,
        company_id: str,
        now: datetime,
        window: ScoringWindow,
    ) -> ScoringOutcome:
        registry = await self.registry_cache.get(tenant_id)
        rule_set = registry.snapshot()
        rules = registry.list_active_rules(scope=RuleScope.COMPANY)

        async with self.session_factory() as session:
            repo = RiskRepository(session)
            company = await repo.get_company(tenant_id, company_id)
            snapshot = await repo.build_company_snapshot(
                company, window, self.config.business_timezone,
            )

            results = await asyncio.to_thread(self._detect_company, snapshot, rules)
            result = self.scorer.calculate(results, rule_set)

            score = await repo.append_score(
                tenant_id,
                SubjectType.COMPANY,
                company_id,
                result,
                now,
                client_company_id=company_id,
            )
            alert = await self.alert_manager.evaluate(repo, score, result, now)
            await session.commit()

        return ScoringOutcome(
            subject_type=SubjectType.COMPANY,
            subject_id=company_id,
            result=result,
            score=score,
            alert=alert.alert if alert else None,
            alert_created=bool(alert and alert.created),
        )

    def _business_date(self, now: datetime) -> date:
        """Calendar date of ``now`` in the configured business time zone."""
        return as_utc(now).astimezone(ZoneInfo(self.config.business_timezone)).date()

    # Detector passes are CPU-bound and run via asyncio.to_thread.

    def _detect_document(self, snapshot: DocumentSnapshot, rules: list[Rule]) -> list[TriggerResult]:
        results = self.anomaly_detector.evaluate_document(snapshot, rules)
        results.extend(self._external_results(snapshot.external_flags))
        return results

    def _detect_company(self, snapshot: CompanySnapshot, rules: list[Rule]) -> list[TriggerResult]:
        results = self.anomaly_detector.evaluate_company(snapshot, rules)
        results.extend(self.fraud_detector.evaluate(snapshot, rules))
        return results

    def _external_results(self, flags: tuple[str, ...]) -> list[TriggerResult]:
        return [
            TriggerResult(
                rule_code=code,
                triggered=True,
                explanation="Flagged by the document parser",
                source=CheckSource.EXTERNAL,
            )
            for code in dict.fromkeys(flags)
            if code not in self.config.disabled_checks
        ]

    async def _broadcast(self, outcome: ScoringOutcome) -> None:
        if self.broadcast_callback is None or outcome.alert is None:
            return
        try:
            await self.broadcast_callback(alert_payload(outcome.alert, outcome.result.score))
        except Exception:  # noqa: BLE001
            logger.warning("Broadcast of alert %s failed", outcome.alert.id, exc_info=True)
