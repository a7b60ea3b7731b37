"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import hashlib
import hmac
import json
import os
import time

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import pytest
from unittest.mock import MagicMock
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from orderhooks.config import Settings
from orderhooks.database import Base, get_db
from orderhooks.models.menu_item import MenuItem
from orderhooks.models.order import Order
from orderhooks.models.tenant import Tenant
from orderhooks.services.providers import Providers, get_providers
from orderhooks.utils.alerting import reset_cooldowns

STRIPE_TEST_SECRET = "whsec_test_secret"
TWILIO_TEST_TOKEN = "twilio_test_token"
TENANT_PHONE = "+41445550000"
WHATSAPP_SENDER = "+41445550001"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture(autouse=True)
def _clear_alert_cooldowns():
    reset_cooldowns()
    yield
    reset_cooldowns()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        app_env="test",
        stripe_webhook_secret=STRIPE_TEST_SECRET,
        twilio_auth_token=TWILIO_TEST_TOKEN,
        twilio_phone_number=TENANT_PHONE,
        twilio_whatsapp_number=WHATSAPP_SENDER,
        sendgrid_api_key="SG.test",
    )


@pytest.fixture
def twilio_client():
    """Mock Twilio REST client - prevents real sends in tests."""
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid="SM_out_123", status="queued")
    return client


@pytest.fixture
def sendgrid_client():
    client = MagicMock()
    client.send.return_value = MagicMock(headers={"X-Message-Id": "sg_msg_123"})
    return client


@pytest.fixture
def providers(settings, twilio_client, sendgrid_client):
    return Providers(settings=settings, twilio=twilio_client, sendgrid=sendgrid_client)


@pytest.fixture
def app(db, providers):
    """FastAPI app wired to the test session and provider doubles."""
    from orderhooks.main import create_app

    application = create_app()

    async def _override_get_db():
        yield db

    application.dependency_overrides[get_db] = _override_get_db
    application.dependency_overrides[get_providers] = lambda: providers
    return application


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def tenant(db):
    """A Zurich restaurant with a Twilio number and a transfer line."""
    t = Tenant(
        name="Pizzeria Roma",
        twilio_phone=TENANT_PHONE,
        phone_number="+41445550099",
        owner_email="owner@pizzeria-roma.ch",
        address="Langstrasse 10, 8004 Zürich",
        opening_hours="Mo-So 11:00-23:00",
        menu_url="https://pizzeria-roma.ch/menu",
        default_language="de",
    )
    db.add(t)
    await db.commit()
    return t


@pytest.fixture
async def menu(db, tenant):
    items = [
        MenuItem(tenant_id=tenant.id, name="Pizza Margherita", price=18.5),
        MenuItem(tenant_id=tenant.id, name="Tiramisu", price=9.0),
        MenuItem(tenant_id=tenant.id, name="Lasagne", price=22.0, is_available=False),
    ]
    db.add_all(items)
    await db.commit()
    return items


@pytest.fixture
async def order(db, tenant):
    o = Order(
        tenant_id=tenant.id,
        order_number="482913",
        customer_phone="+41791234567",
        customer_email="gast@example.ch",
        items=[{"product_id": "p1", "name": "Pizza Margherita", "quantity": 1, "price": 18.5}],
        source="checkout",
        status="confirmed",
        payment_status="pending",
    )
    db.add(o)
    await db.commit()
    return o


@pytest.fixture
def stripe_signer():
    """Build a Stripe-Signature header for a raw body (t=..., v1=HMAC-SHA256)."""

    def _sign(payload: str, secret: str = STRIPE_TEST_SECRET, timestamp: int | None = None) -> str:
        ts = timestamp if timestamp is not None else int(time.time())
        signed = f"{ts}.{payload}".encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture
def stripe_event():
    """Build a Stripe event body as the exact string that gets signed."""

    def _event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
        return json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "livemode": False,
            "created": 1760000000,
            "data": {"object": obj},
        })

    return _event
