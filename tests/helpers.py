"""
Builders shared by the pipeline and API tests.
"""

from datetime import date, datetime, timedelta, timezone

from riskguard.pipeline.alert_manager import AlertManager
from riskguard.pipeline.anomaly_detector import AnomalyDetector
from riskguard.pipeline.fraud_detector import FraudPatternDetector
from riskguard.pipeline.ingestion import RiskScoringPipeline
from riskguard.pipeline.risk_scorer import RiskScorer
from riskguard.pipeline.rule_registry import RuleRegistryCache

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

# Fixed run timestamp for pipeline tests
NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)


def build_pipeline(config, session_factory, **overrides):
    """Assemble a pipeline the way ``from_settings`` does, with overrides."""
    options = {
        "config": config,
        "session_factory": session_factory,
        "registry_cache": RuleRegistryCache(session_factory, ttl_seconds=300),
        "anomaly_detector": AnomalyDetector(config),
        "fraud_detector": FraudPatternDetector(config),
        "scorer": RiskScorer(config),
        "alert_manager": AlertManager(config),
        "timeout_seconds": 5.0,
    }
    options.update(overrides)
    return RiskScoringPipeline(**options)


def invoice_payload(
    document_id,
    amount,
    issue_date,
    number,
    counterparty="Marmara Tekstil A.Ş.",
    company_id="CMP-1",
    **extra,
):
    payload = {
        "document_id": document_id,
        "client_company_id": company_id,
        "counterparty_name": counterparty,
        "counterparty_tax_number": "1234567890",
        "invoice_number": number,
        "amount": amount,
        "issue_date": issue_date,
        "due_date": issue_date + timedelta(days=30),
        "flags": [],
    }
    payload.update(extra)
    return payload


def history_payloads(start=date(2024, 6, 1), company_id="CMP-1"):
    """Ten invoices alternating 900 / 1100 TRY on consecutive days."""
    return [
        invoice_payload(
            f"DOC-H{idx:02d}",
            900.0 if idx % 2 == 0 else 1100.0,
            start + timedelta(days=idx),
            f"ABC2024{idx + 1:06d}",
            company_id=company_id,
        )
        for idx in range(10)
    ]


def as_json(payload):
    """Dates to ISO strings for HTTP bodies."""
    return {
        key: value.isoformat() if isinstance(value, (date, datetime)) else value
        for key, value in payload.items()
    }
