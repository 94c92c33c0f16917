"""
HTTP-level tests for the RiskGuard API.

The pipeline stamps runs with the current time, so invoice dates and
transfer timestamps here are relative to today.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from riskguard.api.websocket import ConnectionManager

from helpers import OTHER_TENANT, TENANT, as_json, history_payloads, invoice_payload

HEADERS = {"X-Tenant-ID": TENANT}
ACTOR = {"X-Tenant-ID": TENANT, "X-Actor-ID": "analyst-1"}


async def _create_company(client, company_id="CMP-1", headers=HEADERS):
    response = await client.post(
        "/api/companies",
        json={"id": company_id, "name": "Anadolu Gıda Ltd.", "party_name": "Anadolu Gıda Ltd."},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


async def _ingest_outlier(client):
    """Ten ordinary invoices followed by one far outside their range."""
    start = date.today() - timedelta(days=15)
    for payload in history_payloads(start=start):
        response = await client.post("/api/documents", json=as_json(payload), headers=HEADERS)
        assert response.status_code == 201
    big = invoice_payload("DOC-BIG", 50_000.0, date.today() - timedelta(days=2), "ABC2024000011")
    response = await client.post("/api/documents", json=as_json(big), headers=HEADERS)
    assert response.status_code == 201
    return response.json()


def _ring_transfers(amount=25_000.0):
    base = datetime.now(timezone.utc).replace(hour=8, minute=0, second=0, microsecond=0) - timedelta(days=10)
    parties = ["Anadolu Gıda Ltd.", "Delta Ltd", "Omega AŞ"]
    return [
        {
            "transfer_id": f"TRF-{idx}",
            "client_company_id": "CMP-1",
            "source_party": parties[idx],
            "target_party": parties[(idx + 1) % 3],
            "amount": amount,
            "occurred_at": (base + timedelta(days=idx)).isoformat(),
        }
        for idx in range(3)
    ]


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": "1.0.0"}


async def test_tenant_header_is_required(client):
    response = await client.get("/api/alerts")
    assert response.status_code == 422


async def test_company_registration(client):
    created = await _create_company(client)
    assert created["tenant_id"] == TENANT
    assert created["is_active"] is True

    duplicate = await client.post(
        "/api/companies", json={"id": "CMP-1", "name": "Başka Şirket"}, headers=HEADERS,
    )
    assert duplicate.status_code == 409

    listed = await client.get("/api/companies", headers=HEADERS)
    assert [c["id"] for c in listed.json()] == ["CMP-1"]
    assert (await client.get("/api/companies", headers={"X-Tenant-ID": OTHER_TENANT})).json() == []


async def test_counterparty_registration(client):
    response = await client.post(
        "/api/counterparties",
        json={"name": "Delta Ltd", "tax_number": "1234567890", "address": "Atatürk Cad. No:5 İzmir"},
        headers=HEADERS,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["tenant_id"] == TENANT
    assert body["tax_number"] == "1234567890"


# ---------------------------------------------------------------------------
# Documents and scores
# ---------------------------------------------------------------------------


async def test_document_for_unknown_company(client):
    payload = invoice_payload("DOC-1", 1000.0, date.today(), "ABC2024000001", company_id="CMP-X")
    response = await client.post("/api/documents", json=as_json(payload), headers=HEADERS)
    assert response.status_code == 404


async def test_negative_amount_is_rejected(client):
    await _create_company(client)
    payload = invoice_payload("DOC-1", -5.0, date.today(), "ABC2024000001")
    response = await client.post("/api/documents", json=as_json(payload), headers=HEADERS)
    assert response.status_code == 422


async def test_duplicate_document_id(client):
    await _create_company(client)
    payload = as_json(invoice_payload("DOC-1", 1000.0, date.today(), "ABC2024000001"))
    first = await client.post("/api/documents", json=payload, headers=HEADERS)
    assert first.status_code == 201
    assert first.json()["score"]["score"] == 0
    assert "AMOUNT_OUTLIER" in first.json()["skipped_checks"]

    second = await client.post("/api/documents", json=payload, headers=HEADERS)
    assert second.status_code == 409


async def test_outlier_document_raises_alert(client):
    await _create_company(client)
    body = await _ingest_outlier(client)

    assert body["score"]["score"] == 70
    assert body["score"]["severity"] == "high"
    assert [r["code"] for r in body["score"]["triggered_rules"]] == ["AMOUNT_OUTLIER"]
    assert body["alert_created"] is True
    assert body["alert"]["type"] == "anomaly_detected"
    assert body["alert"]["document_id"] == "DOC-BIG"


async def test_rescore_reuses_alert(client):
    await _create_company(client)
    first = await _ingest_outlier(client)

    response = await client.post("/api/documents/DOC-BIG/score", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["alert_created"] is False
    assert body["alert"]["id"] == first["alert"]["id"]
    assert body["score"]["id"] != first["score"]["id"]

    missing = await client.post("/api/documents/DOC-NOPE/score", headers=HEADERS)
    assert missing.status_code == 404


async def test_latest_score_and_trend(client):
    await _create_company(client)
    await _ingest_outlier(client)
    await client.post("/api/documents/DOC-BIG/score", headers=HEADERS)

    latest = await client.get("/api/scores/document/DOC-BIG", headers=HEADERS)
    assert latest.status_code == 200
    assert latest.json()["subject_id"] == "DOC-BIG"
    assert latest.json()["triggered_rules"][0]["description"]

    trend = await client.get("/api/scores/document/DOC-BIG/trend", params={"days": 7}, headers=HEADERS)
    assert trend.status_code == 200
    body = trend.json()
    assert len(body["points"]) == 2
    assert body["current"] == 70
    assert body["direction"] == "stable"

    assert (await client.get("/api/scores/document/DOC-NOPE", headers=HEADERS)).status_code == 404
    assert (await client.get("/api/scores/invoice/DOC-BIG", headers=HEADERS)).status_code == 422
    foreign = await client.get("/api/scores/document/DOC-BIG", headers={"X-Tenant-ID": OTHER_TENANT})
    assert foreign.status_code == 404


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


async def test_alert_listing_and_lookup(client):
    await _create_company(client)
    body = await _ingest_outlier(client)
    alert_id = body["alert"]["id"]

    page = (await client.get("/api/alerts", headers=HEADERS)).json()
    assert page["total"] == 1
    assert page["items"][0]["id"] == alert_id

    filtered = await client.get("/api/alerts", params={"severity": "critical"}, headers=HEADERS)
    assert filtered.json()["total"] == 0
    by_company = await client.get("/api/alerts", params={"client_company_id": "CMP-1"}, headers=HEADERS)
    assert by_company.json()["total"] == 1

    single = await client.get(f"/api/alerts/{alert_id}", headers=HEADERS)
    assert single.status_code == 200
    assert single.json()["status"] == "open"

    assert (await client.get("/api/alerts/unknown", headers=HEADERS)).status_code == 404
    foreign = await client.get(f"/api/alerts/{alert_id}", headers={"X-Tenant-ID": OTHER_TENANT})
    assert foreign.status_code == 404
    assert (await client.get("/api/alerts", headers={"X-Tenant-ID": OTHER_TENANT})).json()["total"] == 0


async def test_alerts_since(client):
    await _create_company(client)
    before = datetime.now(timezone.utc) - timedelta(hours=1)
    await _ingest_outlier(client)

    recent = await client.get("/api/alerts/since", params={"since": before.isoformat()}, headers=HEADERS)
    assert recent.status_code == 200
    assert len(recent.json()) == 1

    critical_only = await client.get(
        "/api/alerts/since",
        params={"since": before.isoformat(), "min_severity": "critical"},
        headers=HEADERS,
    )
    assert critical_only.json() == []

    later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
    assert (await client.get("/api/alerts/since", params={"since": later}, headers=HEADERS)).json() == []


async def test_alert_lifecycle(client):
    await _create_company(client)
    alert_id = (await _ingest_outlier(client))["alert"]["id"]

    acknowledged = await client.post(f"/api/alerts/{alert_id}/acknowledge", headers=HEADERS)
    assert acknowledged.status_code == 200
    assert acknowledged.json()["status"] == "in_progress"

    reopened = await client.post(f"/api/alerts/{alert_id}/reopen", headers=HEADERS)
    assert reopened.json()["status"] == "open"

    no_actor = await client.post(f"/api/alerts/{alert_id}/resolve", headers=HEADERS)
    assert no_actor.status_code == 400

    resolved = await client.post(f"/api/alerts/{alert_id}/resolve", headers=ACTOR)
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "closed"
    assert resolved.json()["resolved_by"] == "analyst-1"
    assert resolved.json()["resolved_at"] is not None

    again = await client.post(f"/api/alerts/{alert_id}/resolve", headers=ACTOR)
    assert again.status_code == 409
    assert (await client.post(f"/api/alerts/{alert_id}/reopen", headers=HEADERS)).status_code == 409


async def test_ignore_with_actor_in_body(client):
    await _create_company(client)
    alert_id = (await _ingest_outlier(client))["alert"]["id"]

    response = await client.post(
        f"/api/alerts/{alert_id}/ignore", json={"actor_id": "analyst-2"}, headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert response.json()["resolved_by"] == "analyst-2"


async def test_ignored_alert_keeps_note_and_rejects_resolve(client):
    await _create_company(client)
    alert_id = (await _ingest_outlier(client))["alert"]["id"]

    ignored = await client.post(
        f"/api/alerts/{alert_id}/ignore", json={"note": "known supplier"}, headers=ACTOR,
    )
    assert ignored.status_code == 200
    assert ignored.json()["resolution_note"] == "known supplier"

    resolved = await client.post(f"/api/alerts/{alert_id}/resolve", headers=ACTOR)
    assert resolved.status_code == 409
    stored = (await client.get(f"/api/alerts/{alert_id}", headers=HEADERS)).json()
    assert stored["status"] == "ignored"
    assert stored["resolution_note"] == "known supplier"


async def test_actions_on_foreign_alert(client):
    await _create_company(client)
    alert_id = (await _ingest_outlier(client))["alert"]["id"]
    other = {"X-Tenant-ID": OTHER_TENANT, "X-Actor-ID": "analyst-9"}

    assert (await client.post(f"/api/alerts/{alert_id}/acknowledge", headers=other)).status_code == 404
    assert (await client.post(f"/api/alerts/{alert_id}/resolve", headers=other)).status_code == 404


# ---------------------------------------------------------------------------
# Transfers, company scoring and batch
# ---------------------------------------------------------------------------


async def test_transfers_and_company_score(client):
    await _create_company(client)

    response = await client.post("/api/transfers", json=_ring_transfers(), headers=HEADERS)
    assert response.status_code == 201
    assert response.json() == {"received": 3, "stored": 3}
    repeated = await client.post("/api/transfers", json=_ring_transfers(), headers=HEADERS)
    assert repeated.json() == {"received": 3, "stored": 0}

    scored = await client.post("/api/companies/CMP-1/score", headers=HEADERS)
    assert scored.status_code == 200
    body = scored.json()
    assert "CIRCULAR_TRANSACTIONS" in [r["code"] for r in body["score"]["triggered_rules"]]
    assert body["score"]["severity"] == "critical"
    assert body["alert"]["type"] == "threshold_exceeded"
    assert body["alert"]["subject_type"] == "company"

    assert (await client.post("/api/companies/CMP-X/score", headers=HEADERS)).status_code == 404


async def test_transfer_for_unknown_company(client):
    transfers = _ring_transfers()
    transfers[0]["client_company_id"] = "CMP-X"
    response = await client.post("/api/transfers", json=transfers, headers=HEADERS)
    assert response.status_code == 404


async def test_pipeline_batch(client):
    await _create_company(client)
    await _create_company(client, "CMP-2")
    await client.post("/api/transfers", json=_ring_transfers(), headers=HEADERS)

    response = await client.post("/api/pipeline/batch", headers=HEADERS)
    assert response.status_code == 200
    report = response.json()
    assert report["tenant_id"] == TENANT
    assert report["scored"] == 2
    assert report["failed"] == 0
    assert report["alerts_created"] == 1
    assert {r["subject_id"] for r in report["results"]} == {"CMP-1", "CMP-2"}


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


async def test_metrics(client):
    await _create_company(client)
    await _ingest_outlier(client)

    distribution = (await client.get("/api/metrics/distribution", headers=HEADERS)).json()
    assert distribution["subjects"] == 11
    assert distribution["distribution"]["high"] == 1
    assert distribution["distribution"]["low"] == 10
    assert len(distribution["buckets"]) == 10

    breakdown = (await client.get("/api/metrics/breakdown", headers=HEADERS)).json()
    by_category = {item["category"]: item for item in breakdown}
    assert by_category["financial"]["triggers"] == 1
    assert by_category["fraud"]["triggers"] == 0

    companies_only = await client.get(
        "/api/metrics/distribution", params={"subject_type": "company"}, headers=HEADERS,
    )
    assert companies_only.json()["subjects"] == 0

    top = (await client.get("/api/metrics/top-rules", headers=HEADERS)).json()
    assert top[0]["code"] == "AMOUNT_OUTLIER"
    assert top[0]["count"] == 1


async def test_risk_dashboard(client):
    await _create_company(client)
    alert_id = (await _ingest_outlier(client))["alert"]["id"]

    response = await client.get("/api/risk/dashboard", params={"recent": 5}, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["subjects"] == 11
    assert body["high_risk"] == {"high": 1, "critical": 0}
    assert body["high_risk_by_subject_type"] == {"document": 1, "company": 0}
    assert body["open_alerts"]["high"] == 1
    assert body["open_alerts_total"] == 1
    assert len(body["recent_scores"]) == 5
    assert body["recent_scores"][0]["subject_id"] == "DOC-BIG"

    await client.post(f"/api/alerts/{alert_id}/resolve", headers=ACTOR)
    after = (await client.get("/api/risk/dashboard", headers=HEADERS)).json()
    assert after["open_alerts_total"] == 0
    assert after["high_risk_total"] == 1

    other = (await client.get("/api/risk/dashboard", headers={"X-Tenant-ID": OTHER_TENANT})).json()
    assert other["subjects"] == 0
    assert other["recent_scores"] == []


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


async def test_rule_catalog(client):
    response = await client.get("/api/rules", headers=HEADERS)
    assert response.status_code == 200
    codes = [rule["code"] for rule in response.json()]
    assert codes == sorted(codes)
    assert "AMOUNT_OUTLIER" in codes
    assert {rule["origin"] for rule in response.json()} == {"default"}


async def test_rule_override_and_creation(client):
    patched = await client.patch("/api/rules/AMOUNT_OUTLIER", json={"weight": 35}, headers=HEADERS)
    assert patched.status_code == 200
    assert patched.json()["weight"] == 35
    assert patched.json()["origin"] == "tenant"

    catalog = {r["code"]: r for r in (await client.get("/api/rules", headers=HEADERS)).json()}
    assert catalog["AMOUNT_OUTLIER"]["weight"] == 35
    other = {r["code"]: r for r in (await client.get("/api/rules", headers={"X-Tenant-ID": OTHER_TENANT})).json()}
    assert other["AMOUNT_OUTLIER"]["origin"] == "default"

    deactivated = await client.patch("/api/rules/DATE_ANOMALY", json={"is_active": False}, headers=HEADERS)
    assert deactivated.json()["is_active"] is False
    active = (await client.get("/api/rules", params={"active_only": True}, headers=HEADERS)).json()
    assert "DATE_ANOMALY" not in [r["code"] for r in active]

    new_rule = {
        "code": "VAT_MISMATCH",
        "description": "VAT amount does not match the rate",
        "weight": 15,
        "severity": "medium",
        "category": "compliance",
    }
    created = await client.post("/api/rules", json=new_rule, headers=HEADERS)
    assert created.status_code == 201
    assert created.json()["scope"] == "document"
    assert (await client.post("/api/rules", json=new_rule, headers=HEADERS)).status_code == 409


@pytest.mark.parametrize("code", ["lowercase", "1STARTS_WITH_DIGIT", "HAS-DASH"])
async def test_rule_code_format(client, code):
    body = {"code": code, "description": "x", "weight": 1, "severity": "low", "category": "operational"}
    assert (await client.post("/api/rules", json=body, headers=HEADERS)).status_code == 422


async def test_rule_errors(client):
    missing = await client.patch("/api/rules/NO_SUCH_RULE", json={"weight": 1}, headers=HEADERS)
    assert missing.status_code == 404
    bad_level = await client.patch(
        "/api/rules/AMOUNT_OUTLIER", params={"level": "planet"}, json={"weight": 1}, headers=HEADERS,
    )
    assert bad_level.status_code == 400
    too_heavy = await client.patch("/api/rules/AMOUNT_OUTLIER", json={"weight": 500}, headers=HEADERS)
    assert too_heavy.status_code == 422


# ---------------------------------------------------------------------------
# Alert stream
# ---------------------------------------------------------------------------


class FakeSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)


async def test_broadcast_reaches_only_the_alert_tenant():
    manager = ConnectionManager()
    own, foreign, broken = FakeSocket(), FakeSocket(), FakeSocket(fail=True)
    await manager.connect(own, TENANT)
    await manager.connect(foreign, OTHER_TENANT)
    await manager.connect(broken, TENANT)

    await manager.broadcast({"tenant_id": TENANT, "alert_id": "A-1"})

    assert own.sent == [{"type": "alert", "data": {"tenant_id": TENANT, "alert_id": "A-1"}}]
    assert foreign.sent == []
    assert broken not in manager.active_connections
    assert len(manager.active_connections) == 2
