from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from renewsync.apps.api.main import create_app
from renewsync.core.config import get_settings
from renewsync.core.timeutil import utc_now
from renewsync.domain.models import AuditEvent, ExtractionAudit
from renewsync.persistence.db import SessionLocal
from renewsync.providers.partner.base import PartnerSystem, PartnerUser
from renewsync.providers.partner.fake import FakePartnerClient
from renewsync.services.reconciliation import ReconciliationService
from renewsync.tests.utils.factories import SCENARIO_CAPTURE, seed_point, seed_system


def _apply_env(monkeypatch, **overrides: str) -> None:
    # Apply environment overrides and reset cached settings.
    monkeypatch.delenv("PARTNER_API_BASE_URL", raising=False)
    for key, value in overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _with_partner(app, partner: FakePartnerClient) -> None:
    app.state.partner_client = partner
    app.state.reconciliation_service = ReconciliationService(
        partner_client=partner,
        controller=app.state.renewal_controller,
    )


@pytest.mark.asyncio
async def test_health_probe_and_versioned_envelope(monkeypatch) -> None:
    _apply_env(monkeypatch)
    async with _client(create_app()) as client:
        bare = await client.get("/health")
        versioned = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})

    assert bare.json() == {"status": "ok"}
    payload = versioned.json()
    assert payload["data"]["status"] == "ok"
    assert payload["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert versioned.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_force_renew_lifecycle(monkeypatch) -> None:
    _apply_env(monkeypatch)
    system = await seed_system(system_id="9001")
    await seed_point(system, expires_at=utc_now() + timedelta(days=10))
    app = create_app()

    async with _client(app) as client:
        missing = await client.post("/v1/renewals/unknown/force")
        accepted = await client.post("/v1/renewals/9001/force")
        repeated = await client.post(f"/v1/renewals/{system.id}/force")
        queue = await client.get("/v1/renewals/queue")
        cancelled = await client.delete("/v1/renewals/9001")
        gone = await client.delete("/v1/renewals/9001")

    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "SYSTEM_NOT_FOUND"
    assert accepted.status_code == 202
    assert accepted.json()["data"]["outcome"] == "enqueued"
    assert accepted.json()["data"]["item"]["status"] == "waiting"
    assert repeated.status_code == 200
    assert repeated.json()["data"]["outcome"] == "already_queued"
    queue_data = queue.json()["data"]
    assert queue_data["total"] == 1
    assert queue_data["counts"]["waiting"] == 1
    assert queue_data["is_running"] is False
    assert cancelled.json()["data"]["outcome"] == "removed"
    assert gone.status_code == 404
    assert gone.json()["error"]["code"] == "QUEUE_ITEM_NOT_FOUND"

    async with SessionLocal() as session:
        events = (await session.execute(select(AuditEvent.event_type))).scalars().all()
    assert events.count("renewal.force_requested") == 2
    assert "renewal.cancel_requested" in events


@pytest.mark.asyncio
async def test_scheduled_renewals_listing(monkeypatch) -> None:
    _apply_env(monkeypatch, RENEWAL_LEAD_TIME_MINUTES="60")
    system = await seed_system(system_id="9002")
    await seed_point(system, expires_at=utc_now() + timedelta(minutes=30))

    async with _client(create_app()) as client:
        response = await client.get("/v1/renewals/scheduled")

    items = response.json()["data"]["items"]
    assert [item["external_id"] for item in items] == ["9002"]
    assert items[0]["due"] is True
    assert items[0]["seconds_until_window"] == 0


@pytest.mark.asyncio
async def test_capture_submission_extracts_and_records(monkeypatch) -> None:
    _apply_env(monkeypatch)
    async with _client(create_app()) as client:
        response = await client.post(
            "/v1/extraction/captures",
            json={"text": SCENARIO_CAPTURE, "source": "extension", "system_id": "9003"},
        )
        listing = await client.get("/v1/extraction/audits", params={"system_id": "9003"})
        other = await client.get("/v1/extraction/audits", params={"system_id": "1"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["username"] == "1234567890"
    assert data["method"] == "structured"
    async with SessionLocal() as session:
        rows = (await session.execute(select(ExtractionAudit))).scalars().all()
    assert [(row.system_id, row.source) for row in rows] == [("9003", "extension")]
    audits = listing.json()["data"]["items"]
    assert [(item["username"], item["method"]) for item in audits] == [("1234567890", "structured")]
    assert "password" not in audits[0]
    assert other.json()["data"]["items"] == []


@pytest.mark.asyncio
async def test_capture_without_credentials_is_unprocessable(monkeypatch) -> None:
    _apply_env(monkeypatch)
    async with _client(create_app()) as client:
        response = await client.post("/v1/extraction/captures", json={"text": "Erro ao gerar"})
        empty = await client.post("/v1/extraction/captures", json={"text": ""})

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "CREDENTIALS_NOT_FOUND"
    assert error["details"]["attempted"] == ["structured", "line_heuristic", "regex"]
    assert empty.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_reconciliation_report_without_partner_is_unavailable(monkeypatch) -> None:
    _apply_env(monkeypatch)
    async with _client(create_app()) as client:
        response = await client.get("/v1/reconciliation/report")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "INTEGRATION_UNAVAILABLE"


@pytest.mark.asyncio
async def test_reconciliation_report_push_and_pull(monkeypatch) -> None:
    _apply_env(monkeypatch)
    system = await seed_system(system_id="9004", panel_username="panel", panel_password="secret")
    await seed_point(system, expires_at=utc_now() + timedelta(days=1), username="U1")
    partner = FakePartnerClient(
        users=[PartnerUser(id=1, username="U2", system=9004)],
        systems=[
            PartnerSystem(system_id="9004", username="panel", password="secret"),
            PartnerSystem(system_id="9005", username="other", password="other"),
        ],
    )
    app = create_app()
    _with_partner(app, partner)

    async with _client(app) as client:
        report = await client.get("/v1/reconciliation/report")
        push = await client.post("/v1/reconciliation/push", json={"usernames": ["U1"]})
        pull = await client.post("/v1/reconciliation/pull")
        push_systems = await client.post("/v1/reconciliation/push-systems", json={})
        refreshed = await client.get("/v1/reconciliation/report", params={"refresh": "true"})

    entries = {entry["key"]: entry for entry in report.json()["data"]["entries"]}
    assert entries["U1"]["classification"] == "local_only"
    assert entries["U2"]["classification"] == "api_only"
    assert push.json()["data"]["summary"] == {"created": 1}
    assert pull.json()["data"]["summary"] == {"unchanged": 1, "created": 1}
    assert push_systems.json()["data"]["summary"] == {"unchanged": 2}
    refreshed_entries = {entry["key"]: entry for entry in refreshed.json()["data"]["entries"]}
    assert refreshed_entries["U1"]["classification"] == "both_in_sync"
    assert refreshed_entries["9005"]["classification"] == "both_in_sync"


@pytest.mark.asyncio
async def test_ops_metrics_reports_queue_and_counters(monkeypatch) -> None:
    _apply_env(monkeypatch)
    async with _client(create_app()) as client:
        await client.post("/v1/extraction/captures", json={"text": SCENARIO_CAPTURE, "record": False})
        response = await client.get("/v1/ops/metrics", params={"window_s": 60})

    data = response.json()["data"]
    assert data["window_s"] == 60
    assert data["counters"]["extraction_tier_hits.structured"] == 1
    assert data["renewal_queue"] == {"waiting": 0, "processing": 0, "completed": 0, "error": 0}
    assert data["requests"]["/v1/extraction/captures"]["failures"] == 0.0
    assert "size" in data["db_pool"]
