"""Persistence boundary of the scoring engine.

``RiskRepository`` wraps one ``AsyncSession`` and is the only place that
issues SQL.  Detectors receive the immutable snapshots built here and never
see ORM objects; every write the engine performs (score append, alert insert
or status change, rule configuration) goes through this class and is
committed by the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta, timezone
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from riskguard.errors import AlertNotFoundError, SubjectNotFoundError
from riskguard.models.database import (
    ClientCompany,
    Counterparty,
    Invoice,
    LedgerTransfer,
    RiskAlert,
    RiskRule,
    RiskScore,
    as_utc,
)
from riskguard.pipeline.types import (
    CompanySnapshot,
    CounterpartyProfile,
    DocumentSnapshot,
    InvoiceRecord,
    Rule,
    RuleCategory,
    RuleScope,
    ScoreResult,
    ScoringWindow,
    Severity,
    SubjectType,
    TransferRecord,
)

logger = logging.getLogger(__name__)


def rule_from_row(row: RiskRule) -> Rule:
    return Rule(
        code=row.code,
        description=row.description,
        severity=Severity(row.severity),
        weight=row.weight,
        category=RuleCategory(row.category),
        scope=RuleScope(row.scope),
        is_active=row.is_active,
    )


def invoice_record(row: Invoice) -> InvoiceRecord:
    return InvoiceRecord(
        document_id=row.document_id,
        counterparty=row.counterparty_name,
        amount=row.amount,
        issue_date=row.issue_date,
        due_date=row.due_date,
        reference=row.invoice_number,
        client_company_id=row.client_company_id,
        sequence=row.id,
    )


def transfer_record(row: LedgerTransfer, zone: ZoneInfo | None = None) -> TransferRecord:
    occurred_at = as_utc(row.occurred_at)
    if zone is not None:
        occurred_at = occurred_at.astimezone(zone)
    return TransferRecord(
        transfer_id=row.transfer_id,
        source_party=row.source_party,
        target_party=row.target_party,
        amount=row.amount,
        occurred_at=occurred_at,
        reference=row.reference,
    )


class RiskRepository:
    """Tenant-scoped data access for one unit of work.

    Args:
        session: Active async session.  The repository flushes but never
            commits; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def load_rule_layers(self, tenant_id: str) -> tuple[list[Rule], list[Rule]]:
        """Return ``(global_rules, tenant_rules)`` stored in the database."""
        stmt = select(RiskRule).where(
            (RiskRule.tenant_id.is_(None)) | (RiskRule.tenant_id == tenant_id)
        )
        rows = (await self.session.scalars(stmt)).all()
        global_rules = [rule_from_row(row) for row in rows if row.tenant_id is None]
        tenant_rules = [rule_from_row(row) for row in rows if row.tenant_id is not None]
        return global_rules, tenant_rules

    async def get_rule_row(self, tenant_id: str | None, code: str) -> RiskRule | None:
        stmt = select(RiskRule).where(RiskRule.code == code)
        if tenant_id is None:
            stmt = stmt.where(RiskRule.tenant_id.is_(None))
        else:
            stmt = stmt.where(RiskRule.tenant_id == tenant_id)
        return await self.session.scalar(stmt)

    async def save_rule(self, tenant_id: str | None, rule: Rule) -> RiskRule:
        """Insert or update the rule row for ``(tenant_id, rule.code)``."""
        row = await self.get_rule_row(tenant_id, rule.code)
        if row is None:
            row = RiskRule(tenant_id=tenant_id, code=rule.code)
            self.session.add(row)
        row.description = rule.description
        row.weight = float(rule.weight)
        row.severity = rule.severity.value
        row.category = rule.category.value
        row.scope = rule.scope.value
        row.is_active = rule.is_active
        await self.session.flush()
        return row

    # ------------------------------------------------------------------
    # Input records
    # ------------------------------------------------------------------

    async def get_company(self, tenant_id: str, company_id: str) -> ClientCompany:
        """Raises ``SubjectNotFoundError`` for unknown or foreign companies."""
        company = await self.session.get(ClientCompany, company_id)
        if company is None or company.tenant_id != tenant_id:
            raise SubjectNotFoundError(SubjectType.COMPANY.value, company_id)
        return company

    async def list_active_companies(self, tenant_id: str) -> list[ClientCompany]:
        stmt = (
            select(ClientCompany)
            .where(ClientCompany.tenant_id == tenant_id, ClientCompany.is_active.is_(True))
            .order_by(ClientCompany.id)
        )
        return list((await self.session.scalars(stmt)).all())

    async def add_company(self, company: ClientCompany) -> ClientCompany:
        self.session.add(company)
        await self.session.flush()
        return company

    async def upsert_counterparty(self, tenant_id: str, profile: CounterpartyProfile) -> Counterparty:
        stmt = select(Counterparty).where(
            Counterparty.tenant_id == tenant_id,
            Counterparty.name == profile.name,
        )
        row = await self.session.scalar(stmt)
        if row is None:
            row = Counterparty(tenant_id=tenant_id, name=profile.name)
            self.session.add(row)
        row.tax_number = profile.tax_number
        row.address = profile.address
        row.contact = profile.contact
        await self.session.flush()
        return row

    async def get_invoice(self, tenant_id: str, document_id: str) -> Invoice:
        """Raises ``SubjectNotFoundError`` for unknown or foreign documents."""
        invoice = await self.session.scalar(
            select(Invoice).where(Invoice.tenant_id == tenant_id, Invoice.document_id == document_id)
        )
        if invoice is None:
            raise SubjectNotFoundError(SubjectType.DOCUMENT.value, document_id)
        return invoice

    async def invoice_exists(self, tenant_id: str, document_id: str) -> bool:
        found = await self.session.scalar(
            select(Invoice.id).where(Invoice.tenant_id == tenant_id, Invoice.document_id == document_id)
        )
        return found is not None

    async def add_invoice(self, invoice: Invoice) -> Invoice:
        self.session.add(invoice)
        await self.session.flush()  # assigns the ingestion sequence
        return invoice

    async def add_transfers(self, tenant_id: str, transfers: Iterable[LedgerTransfer]) -> int:
        """Insert the tenant's transfers whose ``transfer_id`` is new; return how many were added."""
        pending = list(transfers)
        if not pending:
            return 0
        existing = set(
            (
                await self.session.scalars(
                    select(LedgerTransfer.transfer_id).where(
                        LedgerTransfer.tenant_id == tenant_id,
                        LedgerTransfer.transfer_id.in_([t.transfer_id for t in pending]),
                    )
                )
            ).all()
        )
        added = 0
        for transfer in pending:
            if transfer.transfer_id in existing:
                logger.warning("Duplicate transfer %s -- skipping", transfer.transfer_id)
                continue
            existing.add(transfer.transfer_id)
            self.session.add(transfer)
            added += 1
        await self.session.flush()
        return added

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def build_document_snapshot(
        self,
        invoice: Invoice,
        history_window_days: int,
        duplicate_lookback_days: int,
        as_of: date,
    ) -> DocumentSnapshot:
        """Collect the history a single invoice is judged against.

        History and duplicate candidates are restricted to invoices of the
        same client company that were ingested before ``invoice``.
        """
        history_start = invoice.issue_date - timedelta(days=history_window_days)
        history_stmt = select(Invoice.amount).where(
            Invoice.tenant_id == invoice.tenant_id,
            Invoice.client_company_id == invoice.client_company_id,
            Invoice.id < invoice.id,
            Invoice.issue_date >= history_start,
            Invoice.issue_date <= invoice.issue_date,
        )
        history = tuple((await self.session.scalars(history_stmt)).all())

        lookback = timedelta(days=duplicate_lookback_days)
        prior_stmt = (
            select(Invoice)
            .where(
                Invoice.tenant_id == invoice.tenant_id,
                Invoice.client_company_id == invoice.client_company_id,
                Invoice.id < invoice.id,
                Invoice.issue_date >= invoice.issue_date - lookback,
                Invoice.issue_date <= invoice.issue_date + lookback,
            )
            .order_by(Invoice.id)
        )
        priors = tuple(invoice_record(row) for row in (await self.session.scalars(prior_stmt)).all())

        return DocumentSnapshot(
            tenant_id=invoice.tenant_id,
            invoice=invoice_record(invoice),
            history_amounts=history,
            prior_invoices=priors,
            as_of=as_of,
            external_flags=tuple(invoice.flags or ()),
        )

    async def build_company_snapshot(
        self,
        company: ClientCompany,
        window: ScoringWindow,
        business_timezone: str | None = None,
    ) -> CompanySnapshot:
        """Load a company's invoices, transfers and counterparties inside ``window``."""
        invoice_stmt = (
            select(Invoice)
            .where(
                Invoice.tenant_id == company.tenant_id,
                Invoice.client_company_id == company.id,
                Invoice.issue_date >= window.start.date(),
                Invoice.issue_date <= window.end.date(),
            )
            .order_by(Invoice.issue_date, Invoice.id)
        )
        transfer_stmt = (
            select(LedgerTransfer)
            .where(
                LedgerTransfer.tenant_id == company.tenant_id,
                LedgerTransfer.client_company_id == company.id,
                LedgerTransfer.occurred_at >= window.start.astimezone(timezone.utc),
                LedgerTransfer.occurred_at <= window.end.astimezone(timezone.utc),
            )
            .order_by(LedgerTransfer.occurred_at, LedgerTransfer.id)
        )
        counterparty_stmt = (
            select(Counterparty)
            .where(Counterparty.tenant_id == company.tenant_id)
            .order_by(Counterparty.name)
        )

        zone = ZoneInfo(business_timezone) if business_timezone else None
        invoices = (await self.session.scalars(invoice_stmt)).all()
        transfers = (await self.session.scalars(transfer_stmt)).all()
        counterparties = (await self.session.scalars(counterparty_stmt)).all()

        return CompanySnapshot(
            tenant_id=company.tenant_id,
            client_company_id=company.id,
            window=window,
            party_name=company.party_name or company.name,
            invoices=tuple(invoice_record(row) for row in invoices),
            transfers=tuple(transfer_record(row, zone) for row in transfers),
            counterparties=tuple(
                CounterpartyProfile(
                    name=row.name,
                    tax_number=row.tax_number,
                    address=row.address,
                    contact=row.contact,
                )
                for row in counterparties
            ),
        )

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------

    async def append_score(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
        result: ScoreResult,
        generated_at: datetime,
        client_company_id: str | None = None,
    ) -> RiskScore:
        """Append a score snapshot.  Existing rows are never touched."""
        row = RiskScore(
            id=str(uuid4()),
            tenant_id=tenant_id,
            subject_type=subject_type.value,
            subject_id=subject_id,
            client_company_id=client_company_id,
            score=result.score,
            severity=result.severity.value,
            triggered_rules=[rule.to_dict() for rule in result.triggered_rules],
            generated_at=as_utc(generated_at),
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def latest_score(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
    ) -> RiskScore | None:
        stmt = (
            select(RiskScore)
            .where(
                RiskScore.tenant_id == tenant_id,
                RiskScore.subject_type == subject_type.value,
                RiskScore.subject_id == subject_id,
            )
            .order_by(RiskScore.generated_at.desc())
            .limit(1)
        )
        return await self.session.scalar(stmt)

    async def score_history(
        self,
        tenant_id: str,
        subject_type: SubjectType,
        subject_id: str,
        since: datetime,
    ) -> list[RiskScore]:
        """Scores of one subject generated at or after ``since``, oldest first."""
        stmt = (
            select(RiskScore)
            .where(
                RiskScore.tenant_id == tenant_id,
                RiskScore.subject_type == subject_type.value,
                RiskScore.subject_id == subject_id,
                RiskScore.generated_at >= as_utc(since),
            )
            .order_by(RiskScore.generated_at)
        )
        return list((await self.session.scalars(stmt)).all())

    async def latest_scores(
        self,
        tenant_id: str,
        subject_type: SubjectType | None = None,
    ) -> list[RiskScore]:
        """The most recent score of every subject of the tenant."""
        latest = select(
            RiskScore.subject_type,
            RiskScore.subject_id,
            func.max(RiskScore.generated_at).label("generated_at"),
        ).where(RiskScore.tenant_id == tenant_id)
        if subject_type is not None:
            latest = latest.where(RiskScore.subject_type == subject_type.value)
        latest = latest.group_by(RiskScore.subject_type, RiskScore.subject_id).subquery()

        stmt = (
            select(RiskScore)
            .join(
                latest,
                (RiskScore.subject_type == latest.c.subject_type)
                & (RiskScore.subject_id == latest.c.subject_id)
                & (RiskScore.generated_at == latest.c.generated_at),
            )
            .where(RiskScore.tenant_id == tenant_id)
            .order_by(RiskScore.subject_type, RiskScore.subject_id)
        )
        return list((await self.session.scalars(stmt)).all())

    async def recent_scores(self, tenant_id: str, limit: int = 10) -> list[RiskScore]:
        stmt = (
            select(RiskScore)
            .where(RiskScore.tenant_id == tenant_id)
            .order_by(RiskScore.generated_at.desc(), RiskScore.id)
            .limit(limit)
        )
        return list((await self.session.scalars(stmt)).all())

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def get_alert(self, tenant_id: str, alert_id: str) -> RiskAlert:
        """Raises ``AlertNotFoundError`` for unknown or foreign alerts."""
        alert = await self.session.get(RiskAlert, alert_id)
        if alert is None or alert.tenant_id != tenant_id:
            raise AlertNotFoundError(alert_id)
        return alert

    async def find_active_alert(
        self,
        tenant_id: str,
        fingerprint: str,
        active_statuses: Sequence[str],
        created_after: datetime,
    ) -> RiskAlert | None:
        stmt = (
            select(RiskAlert)
            .where(
                RiskAlert.tenant_id == tenant_id,
                RiskAlert.fingerprint == fingerprint,
                RiskAlert.status.in_(list(active_statuses)),
                RiskAlert.created_at >= as_utc(created_after),
            )
            .order_by(RiskAlert.created_at.desc())
            .limit(1)
        )
        return await self.session.scalar(stmt)

    async def add_alert(self, alert: RiskAlert) -> RiskAlert:
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def list_alerts(
        self,
        tenant_id: str,
        severity: str | None = None,
        status: str | None = None,
        client_company_id: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[RiskAlert], int]:
        """Filtered alerts, newest first, plus the total matching count."""
        conditions: list[Any] = [RiskAlert.tenant_id == tenant_id]
        if severity is not None:
            conditions.append(RiskAlert.severity == severity)
        if status is not None:
            conditions.append(RiskAlert.status == status)
        if client_company_id is not None:
            conditions.append(RiskAlert.client_company_id == client_company_id)
        if created_from is not None:
            conditions.append(RiskAlert.created_at >= as_utc(created_from))
        if created_to is not None:
            conditions.append(RiskAlert.created_at <= as_utc(created_to))

        total = await self.session.scalar(
            select(func.count()).select_from(RiskAlert).where(*conditions)
        )
        stmt = (
            select(RiskAlert)
            .where(*conditions)
            .order_by(RiskAlert.created_at.desc(), RiskAlert.id)
            .offset(offset)
            .limit(limit)
        )
        return list((await self.session.scalars(stmt)).all()), int(total or 0)

    async def count_alerts_by_severity(
        self,
        tenant_id: str,
        statuses: Sequence[str],
    ) -> dict[str, int]:
        stmt = (
            select(RiskAlert.severity, func.count())
            .where(RiskAlert.tenant_id == tenant_id, RiskAlert.status.in_(list(statuses)))
            .group_by(RiskAlert.severity)
        )
        return {severity: int(count) for severity, count in (await self.session.execute(stmt)).all()}

    async def alerts_since(
        self,
        tenant_id: str,
        since: datetime,
        severities: Sequence[str] | None = None,
    ) -> list[RiskAlert]:
        """Alerts created strictly after ``since``, oldest first."""
        stmt = select(RiskAlert).where(
            RiskAlert.tenant_id == tenant_id,
            RiskAlert.created_at > as_utc(since),
        )
        if severities is not None:
            stmt = stmt.where(RiskAlert.severity.in_(list(severities)))
        stmt = stmt.order_by(RiskAlert.created_at, RiskAlert.id)
        return list((await self.session.scalars(stmt)).all())
