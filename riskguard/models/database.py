"""SQLAlchemy 2.0 async database layer.

This module provides:

- ``Base``            -- declarative base class shared by all ORM models.
- ``ClientCompany``   -- a client company whose books are scored.
- ``Counterparty``    -- identifying attributes of a trading partner.
- ``Invoice``         -- an ingested invoice document.
- ``LedgerTransfer``  -- a party-to-party money movement booked for a company.
- ``RiskRule``        -- rule configuration rows (global or tenant overrides).
- ``RiskScore``       -- append-only score snapshots.
- ``RiskAlert``       -- human-actionable alerts with a status lifecycle.
- ``engine``          -- shared ``AsyncEngine`` instance.
- ``async_session``   -- ``async_sessionmaker`` factory bound to ``engine``.
- ``get_db``          -- async generator for use with FastAPI ``Depends``.
- ``create_tables``   -- coroutine that issues ``CREATE TABLE IF NOT EXISTS`` for all models.

SQLite is configured to run in WAL (Write-Ahead Logging) mode so that dashboard
reads are never blocked by a scoring run writing its snapshot.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from riskguard.config import settings

# ---------------------------------------------------------------------------
# Engine & session factory
# ---------------------------------------------------------------------------


def _set_sqlite_wal(dbapi_connection: Any, connection_record: Any) -> None:  # noqa: ANN401
    """Enable WAL mode immediately after each new SQLite connection is created.

    Args:
        dbapi_connection: The raw DBAPI connection handed to the listener by
            SQLAlchemy's ``connect`` event.
        connection_record: Internal SQLAlchemy connection pool record
            (not used here but required by the event signature).
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine, enabling WAL mode for SQLite backends."""
    new_engine = create_async_engine(database_url, echo=False, future=True)
    if "sqlite" in database_url:
        event.listen(new_engine.sync_engine, "connect", _set_sqlite_wal)
    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


engine: AsyncEngine = build_engine(settings.DATABASE_URL)

async_session: async_sessionmaker[AsyncSession] = build_session_factory(engine)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    """Normalize to aware UTC; naive values (as read back from SQLite) are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------


class ClientCompany(Base):
    """ORM model for the ``client_companies`` table.

    ``party_name`` is the name under which the company itself appears in
    ledger transfers; it is excluded from counterparty volume.
    """

    __tablename__ = "client_companies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    party_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Counterparty(Base):
    """ORM model for the ``counterparties`` table.

    The identifying attributes feed related-party clustering.
    """

    __tablename__ = "counterparties"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_counterparties_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    tax_number: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    contact: Mapped[str | None] = mapped_column(String, nullable=True)


class Invoice(Base):
    """ORM model for the ``invoices`` table.

    The integer primary key doubles as the ingestion order used by duplicate
    detection: only invoices with a smaller ``id`` count as earlier records.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_tenant_company_issue", "tenant_id", "client_company_id", "issue_date"),
        UniqueConstraint("tenant_id", "document_id", name="uq_invoices_tenant_document"),
        Index("ix_invoices_counterparty", "tenant_id", "counterparty_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[str] = mapped_column(String, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    client_company_id: Mapped[str] = mapped_column(
        String, ForeignKey("client_companies.id"), nullable=False
    )
    counterparty_name: Mapped[str] = mapped_column(String, nullable=False)
    counterparty_tax_number: Mapped[str | None] = mapped_column(String, nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="TRY")
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    flags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class LedgerTransfer(Base):
    """ORM model for the ``ledger_transfers`` table."""

    __tablename__ = "ledger_transfers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "transfer_id", name="uq_transfers_tenant_transfer"),
        Index("ix_transfers_tenant_company_time", "tenant_id", "client_company_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transfer_id: Mapped[str] = mapped_column(String, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    client_company_id: Mapped[str] = mapped_column(
        String, ForeignKey("client_companies.id"), nullable=False
    )
    source_party: Mapped[str] = mapped_column(String, nullable=False)
    target_party: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)


# ---------------------------------------------------------------------------
# Risk records
# ---------------------------------------------------------------------------


class RiskRule(Base):
    """ORM model for the ``risk_rules`` table.

    ``tenant_id`` is NULL for global rows.  A tenant row overrides the global
    row (and the built-in default) with the same ``code``.
    """

    __tablename__ = "risk_rules"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_risk_rules_tenant_code"),
        Index("ix_risk_rules_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    scope: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class RiskScore(Base):
    """ORM model for the ``risk_scores`` table.

    Rows are appended by every scoring run and never updated, so the table
    doubles as the score history behind trend charts.
    """

    __tablename__ = "risk_scores"
    __table_args__ = (
        Index(
            "ix_risk_scores_subject_time",
            "tenant_id",
            "subject_type",
            "subject_id",
            "generated_at",
        ),
        Index("ix_risk_scores_tenant_severity", "tenant_id", "severity"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    client_company_id: Mapped[str | None] = mapped_column(String, nullable=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_rules: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        doc="Ordered triggered-rule records captured at scoring time.",
    )
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class RiskAlert(Base):
    """ORM model for the ``risk_alerts`` table.

    Valid ``status`` values:
        - ``open``         -- newly created, awaiting attention.
        - ``in_progress``  -- acknowledged by an analyst.
        - ``closed``       -- resolved (terminal).
        - ``ignored``      -- dismissed (terminal).
    """

    __tablename__ = "risk_alerts"
    __table_args__ = (
        Index("ix_risk_alerts_fingerprint", "tenant_id", "fingerprint", "status"),
        Index("ix_risk_alerts_tenant_status", "tenant_id", "status"),
        Index("ix_risk_alerts_tenant_severity", "tenant_id", "severity"),
        Index("ix_risk_alerts_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    client_company_id: Mapped[str | None] = mapped_column(String, nullable=True)
    document_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    risk_score_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("risk_scores.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create all ORM-mapped tables if they do not already exist.

    Safe to call on every application startup because it is a no-op when
    tables already exist.

    Args:
        bind: Engine to use; defaults to the shared ``engine``.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Async generator that yields a database session for each request.

    Designed for use with FastAPI's ``Depends`` dependency injection system.
    The session is closed (and any pending transaction rolled back) when the
    request context exits, whether normally or via an exception.

    Yields:
        AsyncSession: A live SQLAlchemy async session bound to ``engine``.
    """
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
