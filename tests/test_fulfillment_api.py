"""Fulfillment endpoints: lookup, receipt email, receipt download."""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from conftest import make_dispatcher, make_payment
from tripreceipts.common.errors import DispatchInProgressError
from tripreceipts.services.after_payment import main
from tripreceipts.services.after_payment.inflight import InFlightRegistry
from tripreceipts.services.after_payment.service import FulfillmentService
from tripreceipts.services.after_payment.store import PaymentRecordStore
from tripreceipts.services.mailer.credentials import CredentialBroker, OAuth2Credentials
from tripreceipts.services.receipts.renderer import ReceiptRenderer


@pytest.fixture
def client(app):
    return TestClient(app)


def csrf_headers(client) -> dict[str, str]:
    token = client.get("/api/payments/csrf-token").json()["csrfToken"]
    return {"X-CSRF-Token": token}


def email_url(order_id: str) -> str:
    return f"/api/after-payments/{order_id}/email-receipt"


def test_get_booking_returns_record(client, seed):
    seed(make_payment("ORDER_1"))

    response = client.get("/api/after-payments/ORDER_1")

    assert response.status_code == 200
    body = response.json()
    assert body["order_id"] == "ORDER_1"
    assert body["paymentType"] == "card"
    assert body["amount"] == 150.0
    assert body["customer"]["tripName"] == "Kandy Tour"


def test_unknown_order_is_404_everywhere(client, relay):
    headers = csrf_headers(client)

    lookup = client.get("/api/after-payments/UNKNOWN")
    email = client.post(email_url("UNKNOWN"), headers=headers)
    download = client.get("/api/after-payments/UNKNOWN/download-receipt")

    for response in (lookup, email, download):
        assert response.status_code == 404
        assert response.json() == {"error": "Payment not found"}
    assert relay.connections == 0


def test_store_failure_is_500(client, fulfillment):
    def broken_session():
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    fulfillment.store.session_factory = broken_session

    response = client.get("/api/after-payments/ORDER_1")

    assert response.status_code == 500
    assert response.json() == {"error": "Server error"}


def test_email_receipt_sends_once(client, seed, relay):
    seed(make_payment("ORDER_1"))

    response = client.post(email_url("ORDER_1"), headers=csrf_headers(client))

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Email sent"}
    assert len(relay.sent) == 1
    assert relay.sent[0]["To"] == "a@b.com"


def test_email_without_csrf_token_is_rejected_before_lookup(client, seed, relay):
    seed(make_payment("ORDER_1"))
    csrf_headers(client)

    response = client.post(email_url("ORDER_1"))

    assert response.status_code == 403
    assert response.json() == {"error": "Invalid CSRF token"}
    assert relay.connections == 0


def test_email_with_wrong_csrf_token_is_rejected(client, seed, relay):
    seed(make_payment("ORDER_1"))
    csrf_headers(client)

    response = client.post(email_url("ORDER_1"), headers={"X-CSRF-Token": "forged"})

    assert response.status_code == 403
    assert relay.connections == 0


def test_relay_failure_returns_500_with_details(client, seed, relay):
    seed(make_payment("ORDER_1"))
    relay.fail_with = ConnectionResetError("connection reset by peer")

    response = client.post(email_url("ORDER_1"), headers=csrf_headers(client))

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Failed to send email"
    assert "connection reset" in body["details"]


@pytest.mark.asyncio
async def test_concurrent_emails_for_one_order_send_once(app, seed, relay, fulfillment):
    seed(make_payment("ORDER_1"))
    relay.gate = asyncio.Event()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        token = (await client.get("/api/payments/csrf-token")).json()["csrfToken"]
        headers = {"X-CSRF-Token": token}

        first = asyncio.create_task(client.post(email_url("ORDER_1"), headers=headers))
        await asyncio.wait_for(relay.started.wait(), timeout=2)
        assert fulfillment.inflight.state("ORDER_1") == "SENDING"
        second = await client.post(email_url("ORDER_1"), headers=headers)
        relay.gate.set()
        first_response = await first

    assert first_response.status_code == 200
    assert second.status_code == 409
    assert len(relay.sent) == 1
    assert fulfillment.inflight.state("ORDER_1") == "IDLE"


@pytest.mark.asyncio
async def test_concurrent_emails_for_different_orders_both_send(app, seed, relay):
    seed(make_payment("ORDER_1"), make_payment("ORDER_2", customer_email="c@d.com"))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        token = (await client.get("/api/payments/csrf-token")).json()["csrfToken"]
        headers = {"X-CSRF-Token": token}

        responses = await asyncio.gather(
            client.post(email_url("ORDER_1"), headers=headers),
            client.post(email_url("ORDER_2"), headers=headers),
        )

    assert [r.status_code for r in responses] == [200, 200]
    assert sorted(m["To"] for m in relay.sent) == ["a@b.com", "c@d.com"]


def test_refresh_failure_returns_500_and_next_attempt_succeeds(app, session_factory, seed, relay):
    seed(make_payment("ORDER_1"))
    responses = [(400, {"error": "invalid_grant"}), (200, {"access_token": "tok-2", "expires_in": 3600})]

    def token_endpoint(request):
        status, body = responses.pop(0)
        return httpx.Response(status, json=body)

    broker = CredentialBroker("id", "secret", "refresh", "https://oauth.test/token", transport=httpx.MockTransport(token_endpoint))
    service = FulfillmentService(
        PaymentRecordStore(session_factory),
        make_dispatcher(relay, OAuth2Credentials(broker, username="bookings@example.com")),
        inflight=InFlightRegistry(),
    )
    app.dependency_overrides[main.get_service] = lambda: service
    client = TestClient(app)
    headers = csrf_headers(client)

    failed = client.post(email_url("ORDER_1"), headers=headers)

    assert failed.status_code == 500
    assert failed.json()["error"] == "Failed to send email"
    assert "credentials" in failed.json()["details"]
    assert relay.connections == 0
    assert service.inflight.state("ORDER_1") == "IDLE"

    retried = client.post(email_url("ORDER_1"), headers=headers)

    assert retried.status_code == 200
    assert relay.xoauth2 == ["user=bookings@example.com\x01auth=Bearer tok-2\x01\x01"]


def test_download_streams_pdf_attachment(client, seed):
    seed(make_payment("ORDER_1"))

    response = client.get("/api/after-payments/ORDER_1/download-receipt")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["content-disposition"] == "attachment; filename=receipt_ORDER_1.pdf"
    assert "content-length" not in response.headers
    assert response.content.startswith(b"%PDF-")
    assert response.content.endswith(b"%%EOF\n")
    assert b"Kandy Tour" in response.content


def test_download_failure_before_first_byte_is_500(app, session_factory, seed, relay):
    seed(make_payment("ORDER_1"))

    class BrokenRenderer:
        async def iter_chunks(self, record):
            raise RuntimeError("font table missing")
            yield b""

    service = FulfillmentService(PaymentRecordStore(session_factory), make_dispatcher(relay), renderer_factory=BrokenRenderer)
    app.dependency_overrides[main.get_service] = lambda: service

    response = TestClient(app).get("/api/after-payments/ORDER_1/download-receipt")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to generate PDF"}


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "receipt_emails_total" in metrics.text


class TrackingRenderer:
    """Real receipt chunks; records closure and can fail after `fail_after` chunks."""

    def __init__(self, fail_after: int | None = None) -> None:
        self.fail_after = fail_after
        self.produced = 0
        self.closed = False

    def __call__(self):
        return self

    async def iter_chunks(self, record):
        try:
            async for chunk in ReceiptRenderer().iter_chunks(record):
                if self.fail_after is not None and self.produced == self.fail_after:
                    raise RuntimeError("renderer crashed")
                self.produced += 1
                yield chunk
        finally:
            self.closed = True


def downloads_counted(service_name: str, outcome: str) -> float:
    return REGISTRY.get_sample_value(
        "receipt_downloads_total", {"service": service_name, "outcome": outcome}
    ) or 0.0


@pytest.mark.asyncio
async def test_client_abort_stops_receipt_generation(session_factory, seed, relay):
    seed(make_payment("ORDER_1"))
    renderer = TrackingRenderer()
    service = FulfillmentService(
        PaymentRecordStore(session_factory),
        make_dispatcher(relay),
        renderer_factory=renderer,
        service_name="download-abort",
    )

    download = await service.download_receipt("ORDER_1")
    first = await anext(download.body)
    await download.body.aclose()

    assert first.startswith(b"%PDF-")
    assert renderer.closed
    assert renderer.produced == 1
    assert downloads_counted("download-abort", "aborted") == 1.0
    assert downloads_counted("download-abort", "completed") == 0.0


@pytest.mark.asyncio
async def test_render_failure_mid_stream_cuts_the_document(session_factory, seed, relay):
    seed(make_payment("ORDER_1"))
    renderer = TrackingRenderer(fail_after=1)
    service = FulfillmentService(
        PaymentRecordStore(session_factory),
        make_dispatcher(relay),
        renderer_factory=renderer,
        service_name="download-failure",
    )

    download = await service.download_receipt("ORDER_1")
    received = bytearray()
    with pytest.raises(RuntimeError, match="renderer crashed"):
        async for chunk in download.body:
            received += chunk

    assert received.startswith(b"%PDF-")
    assert not received.rstrip().endswith(b"%%EOF")
    assert renderer.closed
    assert downloads_counted("download-failure", "failed") == 1.0


@pytest.mark.asyncio
async def test_inflight_registry_rejects_second_claim_until_settled():
    registry = InFlightRegistry()
    release = asyncio.Event()

    task = registry.start("ORDER_1", release.wait)
    with pytest.raises(DispatchInProgressError):
        registry.start("ORDER_1", release.wait)
    assert registry.state("ORDER_1") == "SENDING"

    release.set()
    await task

    assert registry.state("ORDER_1") == "IDLE"
    await registry.start("ORDER_1", release.wait)
