"""Pytest fixtures for storefront tests."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from storefront.errors import GatewayUnavailable, NotFound
from storefront.fulfillment import FulfillmentService
from storefront.gateway import PaymentGateway, PaymentSession, SessionStatus
from storefront.schema import create_all, games, users

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(PaymentGateway):
    """In-memory gateway. Signature verification is inherited unchanged."""

    def __init__(self):
        super().__init__(WEBHOOK_SECRET)
        self.sessions: dict[str, dict] = {}
        self.invoices: dict[str, str] = {}
        self.created: list[str] = []
        self.fail_create = False
        self.fail_retrieve = False

    async def create_session(
        self,
        amount,
        currency,
        correlation,
        *,
        product_name,
        description=None,
        image_url=None,
        customer_email=None,
    ):
        if self.fail_create:
            raise GatewayUnavailable("Failed to create checkout session")
        session_id = f"cs_test_{uuid4().hex}"
        self.sessions[session_id] = {
            "correlation": correlation,
            "amount": amount,
            "currency": currency,
            "product_name": product_name,
            "customer_email": customer_email,
            "payment_status": "unpaid",
            "status": "open",
            "invoice": None,
        }
        self.created.append(session_id)
        return PaymentSession(session_id, f"https://checkout.stripe.test/{session_id}")

    def pay(self, session_id: str, invoice: str | None = None) -> None:
        self.sessions[session_id].update(
            payment_status="paid", status="complete", invoice=invoice
        )

    def expire(self, session_id: str) -> None:
        self.sessions[session_id].update(status="expired")

    async def retrieve_session(self, session_id):
        if self.fail_retrieve:
            raise GatewayUnavailable("Failed to verify payment session")
        s = self.sessions.get(session_id)
        if s is None:
            raise NotFound("Payment session", session_id)
        return SessionStatus(
            session_id=session_id,
            payment_status=s["payment_status"],
            status=s["status"],
            correlation=s["correlation"],
            invoice_url=self.invoices.get(s["invoice"]) if s["invoice"] else None,
        )

    async def resolve_invoice_url(self, invoice_id):
        return self.invoices.get(invoice_id)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    def dispatch(self, recipient, template, context):
        self.sent.append((recipient, template, context))

    async def aclose(self):
        pass


class RecordingRedis:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))

    async def aclose(self):
        pass

    @property
    def event_types(self) -> list[str]:
        return [m["event_type"] for _, m in self.published]


# ── Webhook helpers ──────────────────────────────


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: float | None = None) -> str:
    """Build a Stripe-Signature header for payload."""
    ts = int(time.time() if timestamp is None else timestamp)
    mac = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload.decode('utf-8')}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={mac}"


def checkout_event(
    event_type: str,
    session_id: str,
    correlation,
    *,
    payment_status: str = "paid",
    status: str = "complete",
    invoice: str | None = None,
    event_id: str | None = None,
) -> bytes:
    return json.dumps({
        "id": event_id or f"evt_{uuid4().hex}",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "status": status,
                "invoice": invoice,
                "metadata": correlation.as_metadata(),
            }
        },
    }).encode("utf-8")


# ── Data helpers ─────────────────────────────────


async def add_user(
    session_factory,
    *,
    status: str = "active",
    role: str = "user",
    email: str | None = None,
) -> UUID:
    user_id = uuid4()
    async with session_factory() as session:
        await session.execute(insert(users).values(
            id=user_id,
            email=email or f"{user_id.hex[:8]}@example.com",
            name="Test Parent",
            role=role,
            status=status,
            created_at=datetime.now(timezone.utc),
        ))
        await session.commit()
    return user_id


async def add_game(session_factory, *, price: str = "14.99", name: str = "Math Wizard") -> UUID:
    game_id = uuid4()
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        await session.execute(insert(games).values(
            id=game_id,
            name=name,
            author="Educational Studios",
            type="educational",
            age_group="7-12",
            sku=f"EDU-{game_id.hex[:10]}",
            thumbnail="/uploads/math-wizard-thumb.jpg",
            price=Decimal(price),
            created_at=now,
            updated_at=now,
        ))
        await session.commit()
    return game_id


# ── Fixtures ─────────────────────────────────────


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def buyer(session_factory) -> UUID:
    return await add_user(session_factory, email="parent@example.com")


@pytest.fixture
async def game(session_factory) -> UUID:
    return await add_game(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def service(session_factory, gateway, notifier, redis):
    return FulfillmentService(session_factory, gateway, notifier, redis)
