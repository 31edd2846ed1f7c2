from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from billing_service.api.dependencies import get_gateway, get_store
from billing_service.api.main import create_app
from billing_service.core.database import build_engine
from billing_service.models.tables import Customer, Subscription
from billing_service.services.store import BillingStore
from billing_service.services.stripe_gateway import StripeGateway
from tests.factories import API_KEY, FakeStripe


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def gateway(fake_stripe):
    return StripeGateway("sk_test_dummy", sdk=fake_stripe)


@pytest_asyncio.fixture
async def store():
    # In-memory SQLite shared through a StaticPool
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    billing_store = BillingStore(engine)
    await billing_store.initialize_schema()
    try:
        yield billing_store
    finally:
        await engine.dispose()


@pytest.fixture
def http_store(tmp_path):
    """File-backed store for TestClient tests (each request runs on its own loop)."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    billing_store = BillingStore(engine)
    asyncio.run(billing_store.initialize_schema())
    yield billing_store
    asyncio.run(engine.dispose())


@pytest.fixture
def app(http_store, gateway):
    application = create_app()
    application.dependency_overrides[get_store] = lambda: http_store
    application.dependency_overrides[get_gateway] = lambda: gateway
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return {"X-API-Key": API_KEY}


async def count_subscriptions(billing_store: BillingStore, **filters) -> int:
    stmt = select(func.count(Subscription.id))
    for column, value in filters.items():
        stmt = stmt.where(getattr(Subscription, column) == value)
    async with billing_store.session() as session:
        return int(await session.scalar(stmt) or 0)


async def count_customers(billing_store: BillingStore) -> int:
    async with billing_store.session() as session:
        return int(await session.scalar(select(func.count(Customer.id))) or 0)
