from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from fleetclaim.apps.api.deps import get_shared_report_service
from fleetclaim.apps.api.main import create_app
from fleetclaim.apps.api.rate_limit import reset_rate_limiter_state
from fleetclaim.core.config import get_settings
from fleetclaim.domain.models import EvidencePackage, IncidentReport, IncidentSeverity
from fleetclaim.persistence.record_store import RecordStore
from fleetclaim.providers.email.fake import FakeEmailSender
from fleetclaim.providers.pdf.fake import FakePdfRenderer
from fleetclaim.providers.telematics.memory import InMemoryTelematicsApi
from fleetclaim.services.evidence import EvidenceCollector
from fleetclaim.services.report_cache import ReportCache
from fleetclaim.services.sessions import SessionCache
from fleetclaim.services.share_links import ShareLinkCodec
from fleetclaim.services.shared_reports import SharedReportService
from fleetclaim.tests.utils.fleet import T0, build_tenants, gps_trail, incident, seed_fleet


@pytest.fixture(autouse=True)
def _fresh_rate_limiter():
    reset_rate_limiter_state()
    yield
    reset_rate_limiter_state()


async def _seeded(vehicle_name: str = "Truck 12"):
    connector, credentials = build_tenants("fleet_a")
    database = seed_fleet(connector.database("fleet_a"))
    database.events.append(incident("ev-1"))
    report = IncidentReport(
        incident_id="ev-1",
        vehicle_id="dev-1",
        vehicle_name=vehicle_name,
        occurred_at=T0,
        severity=IncidentSeverity.HIGH,
        summary="Harsh Braking involving Truck 12",
        evidence=EvidencePackage(gps_trail=gps_trail(T0, 5), weather_condition="Rain"),
    )
    await RecordStore(InMemoryTelematicsApi("fleet_a", database)).save_report(report)
    # Zero TTL re-authenticates on every lookup so tests can break the vendor mid-test.
    sessions = SessionCache(credentials, connector, ttl_s=0)
    token = ShareLinkCodec().encode(report.id, "fleet_a")
    return connector, sessions, report, token


def _client(service: SharedReportService) -> AsyncClient:
    app = create_app()
    app.dependency_overrides[get_shared_report_service] = lambda: service
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _service(sessions, **kwargs) -> SharedReportService:
    return SharedReportService(ShareLinkCodec(), sessions, ReportCache(60), **kwargs)


@pytest.mark.asyncio
async def test_health_and_request_id() -> None:
    _, sessions, _, _ = await _seeded()
    async with _client(_service(sessions)) as client:
        response = await client.get("/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_view_renders_escaped_report_page() -> None:
    _, sessions, report, token = await _seeded(vehicle_name="<script>alert(1)</script>")
    async with _client(_service(sessions)) as client:
        response = await client.get(f"/r/{token}")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "Content-Security-Policy" in response.headers
    assert "<script>alert(1)</script>" not in response.text
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in response.text
    assert report.id in response.text


@pytest.mark.asyncio
async def test_invalid_token_and_missing_report_look_the_same() -> None:
    _, sessions, _, token = await _seeded()
    unknown = ShareLinkCodec().encode("rpt_000000000000", "fleet_a")
    async with _client(_service(sessions)) as client:
        tampered = await client.get(f"/r/{token[:-2]}xx")
        missing = await client.get(f"/r/{unknown}")

    assert tampered.status_code == missing.status_code == 404
    assert tampered.text == missing.text
    assert "Report not found" in missing.text


@pytest.mark.asyncio
async def test_pdf_requires_a_renderer() -> None:
    _, sessions, _, token = await _seeded()
    async with _client(_service(sessions)) as client:
        response = await client.get(f"/r/{token}/pdf")

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "FEATURE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_pdf_uses_rebuilt_full_evidence() -> None:
    _, sessions, report, token = await _seeded()
    renderer = FakePdfRenderer()
    service = _service(sessions, collector=EvidenceCollector(), pdf_renderer=renderer)
    async with _client(service) as client:
        response = await client.get(f"/r/{token}/pdf")
        bad_token = await client.get("/r/bm90YXRva2Vu/pdf")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["Content-Disposition"] == f'attachment; filename="incident-report-{report.id}.pdf"'
    # Stored copy had 5 points; the rebuild sees the full seeded trail.
    assert response.content == f"%PDF-FAKE {report.id} gps=121".encode("utf-8")
    assert bad_token.status_code == 404
    assert bad_token.json()["error"]["message"] == "Report not found"


@pytest.mark.asyncio
async def test_email_validates_address_and_delivers() -> None:
    _, sessions, report, token = await _seeded()
    sender = FakeEmailSender()
    async with _client(_service(sessions, email_sender=sender)) as client:
        invalid = await client.post(f"/r/{token}/email", json={"email": "not-an-address"})
        sent = await client.post(
            f"/r/{token}/email",
            json={"email": " adjuster@insurer.example ", "message": "Claim #42"},
        )

    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "INVALID_EMAIL"
    assert sent.status_code == 200
    assert sent.json() == {"success": True, "message": "Email sent to adjuster@insurer.example"}
    assert sender.sent[0].to == "adjuster@insurer.example"
    assert sender.sent[0].text_body.startswith("Claim #42\n\n")


@pytest.mark.asyncio
async def test_email_failures_map_to_service_unavailable() -> None:
    _, sessions, _, token = await _seeded()
    async with _client(_service(sessions)) as client:
        disabled = await client.post(f"/r/{token}/email", json={"email": "a@insurer.example"})
    async with _client(_service(sessions, email_sender=FakeEmailSender(fail=True))) as client:
        failing = await client.post(f"/r/{token}/email", json={"email": "a@insurer.example"})

    assert disabled.status_code == 503
    assert failing.status_code == 503
    assert failing.json()["error"]["code"] == "UPSTREAM_UNAVAILABLE"


@pytest.mark.asyncio
async def test_share_routes_are_rate_limited(monkeypatch) -> None:
    monkeypatch.setenv("RL_SHARE_BURST", "2")
    monkeypatch.setenv("RL_SHARE_RPS", "0.5")
    get_settings.cache_clear()
    _, sessions, _, token = await _seeded()
    async with _client(_service(sessions)) as client:
        responses = [await client.get(f"/r/{token}") for _ in range(3)]
        other_caller = await client.get(f"/r/{token}", headers={"X-Forwarded-For": "203.0.113.9"})

    assert [response.status_code for response in responses] == [200, 200, 429]
    throttled = responses[2]
    assert throttled.headers["Retry-After"] == "2"
    assert throttled.headers["X-RateLimit-Route-Class"] == "share"
    assert throttled.json()["error"]["code"] == "RATE_LIMITED"
    assert other_caller.status_code == 200


@pytest.mark.asyncio
async def test_cached_report_survives_vendor_outage() -> None:
    connector, sessions, _, token = await _seeded()
    async with _client(_service(sessions)) as client:
        first = await client.get(f"/r/{token}")
        # Fresh cache entries are served without re-authenticating.
        connector.database("fleet_a").password = "rotated"
        second = await client.get(f"/r/{token}")

    assert first.status_code == second.status_code == 200
    assert connector.auth_calls == ["fleet_a"]


@pytest.mark.asyncio
async def test_pdf_falls_back_to_stored_report_when_rebuild_fails() -> None:
    connector, sessions, report, token = await _seeded()
    service = _service(sessions, collector=EvidenceCollector(), pdf_renderer=FakePdfRenderer())
    async with _client(service) as client:
        await client.get(f"/r/{token}")
        connector.database("fleet_a").password = "rotated"
        response = await client.get(f"/r/{token}/pdf")

    assert response.status_code == 200
    assert response.content == f"%PDF-FAKE {report.id} gps=5".encode("utf-8")
