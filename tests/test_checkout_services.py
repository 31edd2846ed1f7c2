from __future__ import annotations

import pytest
import stripe

from billing_service.core.errors import InputValidationError, NotFoundError, TransientError
from billing_service.services.checkout import CheckoutOrchestrator, PortalService
from billing_service.services.customer_resolver import CustomerResolver
from billing_service.services.stripe_gateway import LineItem
from tests.conftest import count_subscriptions


@pytest.fixture
def resolver(store, gateway):
    return CustomerResolver(store, gateway)


@pytest.fixture
def orchestrator(resolver, gateway):
    return CheckoutOrchestrator(resolver, gateway)


# --- Customer resolver ---------------------------------------------------

@pytest.mark.asyncio
async def test_resolve_creates_customer_on_first_use(resolver, store, fake_stripe):
    customer = await resolver.resolve("u1", "a@b.co")

    assert customer.provider_customer_id.startswith("cus_test_")
    assert fake_stripe.calls_for("customer.create") == [{"email": "a@b.co", "metadata": {"user_id": "u1"}}]
    stored = await store.get_customer_by_user_id("u1")
    assert stored.provider_customer_id == customer.provider_customer_id


@pytest.mark.asyncio
async def test_resolve_reuses_existing_customer(resolver, store, fake_stripe):
    await store.upsert_customer("u1", "a@b.co", "cus_known")
    customer = await resolver.resolve("u1", "a@b.co")
    assert customer.provider_customer_id == "cus_known"
    assert fake_stripe.calls_for("customer.create") == []


@pytest.mark.asyncio
async def test_resolve_updates_changed_email_without_new_customer(resolver, store, fake_stripe):
    await store.upsert_customer("u1", "old@b.co", "cus_known")
    customer = await resolver.resolve("u1", "new@b.co")
    assert customer.email == "new@b.co"
    assert customer.provider_customer_id == "cus_known"
    assert fake_stripe.calls_for("customer.create") == []


@pytest.mark.asyncio
async def test_resolve_fills_missing_provider_id(resolver, store, fake_stripe):
    row = await store.upsert_customer("u1", "a@b.co")
    customer = await resolver.resolve("u1", "a@b.co")
    assert customer.id == row.id
    assert customer.provider_customer_id.startswith("cus_test_")
    assert len(fake_stripe.calls_for("customer.create")) == 1


@pytest.mark.asyncio
async def test_resolve_propagates_provider_failure(resolver, store, fake_stripe):
    fake_stripe.failures["customer.create"] = stripe.APIConnectionError("down")
    with pytest.raises(TransientError):
        await resolver.resolve("u1", "a@b.co")
    with pytest.raises(NotFoundError):
        await store.get_customer_by_user_id("u1")


# --- Checkout orchestrator ------------------------------------------------

@pytest.mark.asyncio
async def test_subscription_checkout(orchestrator, store, fake_stripe):
    result = await orchestrator.subscription_checkout(
        "u1", "a@b.co", "prod_A", "price_A", "https://x.test/s", "https://x.test/c"
    )
    assert result["session_id"].startswith("cs_test_")
    assert result["checkout_url"].startswith("https://")

    params = fake_stripe.calls_for("checkout.create")[0]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_A", "quantity": 1}]
    assert params["metadata"]["user_id"] == "u1"
    assert params["metadata"]["product_id"] == "prod_A"
    assert params["subscription_data"]["metadata"]["product_id"] == "prod_A"
    assert await count_subscriptions(store) == 0


@pytest.mark.asyncio
async def test_item_checkout_defaults_quantity_to_one(orchestrator, fake_stripe):
    await orchestrator.item_checkout("u1", "a@b.co", "price_A", "https://x.test/s", "https://x.test/c")
    params = fake_stripe.calls_for("checkout.create")[0]
    assert params["mode"] == "payment"
    assert params["line_items"] == [{"price": "price_A", "quantity": 1}]
    assert "product_id" not in params["metadata"]


@pytest.mark.asyncio
async def test_item_checkout_with_quantity_and_product(orchestrator, fake_stripe):
    await orchestrator.item_checkout(
        "u1", "a@b.co", "price_A", "https://x.test/s", "https://x.test/c", quantity=3, product_id="prod_A"
    )
    params = fake_stripe.calls_for("checkout.create")[0]
    assert params["line_items"] == [{"price": "price_A", "quantity": 3}]
    assert params["metadata"]["product_id"] == "prod_A"


@pytest.mark.asyncio
async def test_cart_checkout_preserves_order(orchestrator, store, fake_stripe):
    await orchestrator.cart_checkout(
        "u1",
        "a@b.co",
        [LineItem("price_B", 2), LineItem("price_A", 1)],
        "https://x.test/s",
        "https://x.test/c",
        idempotency_key="cart-1",
    )
    params = fake_stripe.calls_for("checkout.create")[0]
    assert params["line_items"] == [
        {"price": "price_B", "quantity": 2},
        {"price": "price_A", "quantity": 1},
    ]
    assert params["metadata"]["item_count"] == "2"
    assert params["idempotency_key"] == "cart-1"
    assert await count_subscriptions(store) == 0


@pytest.mark.asyncio
async def test_cart_checkout_rejects_empty_cart(orchestrator):
    with pytest.raises(InputValidationError):
        await orchestrator.cart_checkout("u1", "a@b.co", [], "https://x.test/s", "https://x.test/c")


@pytest.mark.asyncio
async def test_checkout_reuses_customer_across_calls(orchestrator, fake_stripe):
    await orchestrator.item_checkout("u1", "a@b.co", "price_A", "https://x.test/s", "https://x.test/c")
    await orchestrator.item_checkout("u1", "a@b.co", "price_B", "https://x.test/s", "https://x.test/c")
    assert len(fake_stripe.calls_for("customer.create")) == 1
    customers = {p["customer"] for p in fake_stripe.calls_for("checkout.create")}
    assert len(customers) == 1


# --- Portal ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_portal_link_for_known_customer(store, gateway, fake_stripe):
    await store.upsert_customer("u1", "a@b.co", "cus_1")
    url = await PortalService(store, gateway).create_portal_link("u1", "https://x.test/account")
    assert url.startswith("https://billing.stripe.test/")
    assert fake_stripe.calls_for("portal.create")[0]["customer"] == "cus_1"


@pytest.mark.asyncio
async def test_portal_link_unknown_user(store, gateway):
    with pytest.raises(NotFoundError) as exc_info:
        await PortalService(store, gateway).create_portal_link("ghost", "https://x.test/account")
    assert exc_info.value.code == "CUSTOMER_NOT_FOUND"


@pytest.mark.asyncio
async def test_portal_link_without_provider_customer(store, gateway):
    await store.upsert_customer("u1", "a@b.co")
    with pytest.raises(InputValidationError) as exc_info:
        await PortalService(store, gateway).create_portal_link("u1", "https://x.test/account")
    assert exc_info.value.code == "NO_PROVIDER_CUSTOMER"
    assert exc_info.value.field == "user_id"
