"""Pytest fixtures: in-memory payment store, fake SMTP relay, wired app."""

import os

os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("SESSION_COOKIE_SAMESITE", "lax")

import asyncio
import base64
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import aiosmtplib
import pytest
from sqlalchemy.orm import sessionmaker

from tripreceipts.common.db import Base, build_engine
from tripreceipts.services.after_payment.inflight import InFlightRegistry
from tripreceipts.services.after_payment.models import Payment
from tripreceipts.services.after_payment.service import FulfillmentService
from tripreceipts.services.after_payment.store import PaymentRecordStore
from tripreceipts.services.mailer.credentials import PasswordCredentials
from tripreceipts.services.mailer.dispatcher import MailDispatcher
from tripreceipts.services.session_guard.guard import SessionGuard
from tripreceipts.services.session_guard.store import InMemorySessionStore

CREATED_AT = datetime(2025, 8, 18, 10, 30, tzinfo=timezone.utc)


def make_payment(order_id: str = "ORDER_1", **overrides) -> Payment:
    values = {
        "order_id": order_id,
        "payment_type": "card",
        "currency": "USD",
        "amount": Decimal("150.00"),
        "customer_first_name": "A",
        "customer_last_name": "B",
        "customer_email": "a@b.com",
        "customer_phone": "555",
        "trip_name": "Kandy Tour",
        "created_at": CREATED_AT,
    }
    values.update(overrides)
    return Payment(**values)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite+pysqlite://")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def seed(session_factory):
    """Insert payment rows as the capture flow would."""

    def _seed(*payments: Payment) -> None:
        with session_factory() as db:
            db.add_all(payments)
            db.commit()

    return _seed


class FakeRelay:
    """Stands in for the SMTP server; records every session and message."""

    def __init__(self) -> None:
        self.connections = 0
        self.logins: list[tuple[str, str]] = []
        self.xoauth2: list[str] = []
        self.sent: list = []
        self.reject_auth = False
        self.fail_with: Exception | None = None
        self.started = asyncio.Event()
        self.gate: asyncio.Event | None = None

    def factory(self, **kwargs):
        return FakeSMTP(self, **kwargs)


class FakeSMTP:
    def __init__(self, relay: FakeRelay, hostname: str, port: int, start_tls: bool, timeout: float) -> None:
        self.relay = relay
        self.hostname = hostname
        self.port = port
        self.is_ehlo_or_helo_needed = True

    async def __aenter__(self):
        self.relay.connections += 1
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def ehlo(self):
        self.is_ehlo_or_helo_needed = False

    async def login(self, username: str, password: str):
        if self.relay.reject_auth:
            raise aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Username and Password not accepted")
        self.relay.logins.append((username, password))

    async def execute_command(self, *args: bytes):
        if args[:2] == (b"AUTH", b"XOAUTH2"):
            self.relay.xoauth2.append(base64.b64decode(args[2]).decode())
            if self.relay.reject_auth:
                return SimpleNamespace(code=334, message="eyJzdGF0dXMiOiI0MDEifQ==")
            return SimpleNamespace(code=235, message="2.7.0 Accepted")
        return SimpleNamespace(code=535, message="5.7.8 Username and Password not accepted")

    async def send_message(self, message):
        self.relay.started.set()
        if self.relay.gate is not None:
            await self.relay.gate.wait()
        if self.relay.fail_with is not None:
            raise self.relay.fail_with
        self.relay.sent.append(message)


@pytest.fixture
def relay():
    return FakeRelay()


def make_dispatcher(relay: FakeRelay, strategy=None) -> MailDispatcher:
    return MailDispatcher(
        strategy or PasswordCredentials("bookings@example.com", "app-password"),
        host="smtp.test",
        port=587,
        sender_address="bookings@example.com",
        sender_name="Trip Bookings",
        smtp_factory=relay.factory,
    )


@pytest.fixture
def fulfillment(session_factory, relay):
    return FulfillmentService(PaymentRecordStore(session_factory), make_dispatcher(relay), inflight=InFlightRegistry())


@pytest.fixture
def session_guard():
    return SessionGuard(InMemorySessionStore(), ttl_seconds=600)


@pytest.fixture
def app(fulfillment, session_guard):
    """The real FastAPI app with test collaborators injected."""

    from tripreceipts.services.after_payment import main

    main.app.dependency_overrides[main.get_service] = lambda: fulfillment
    main.app.dependency_overrides[main.get_guard] = lambda: session_guard
    yield main.app
    main.app.dependency_overrides.clear()
