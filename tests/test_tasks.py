from __future__ import annotations

import datetime as dt

import pytest
import stripe
from dramatiq.brokers.stub import StubBroker

from billing_service.core import tasks
from billing_service.core.tasks import resync_stale_subscriptions_once
from billing_service.services.reconciler import SubscriptionReconciler
from tests.factories import T0, T1, T2, subscription_snapshot

UTC = dt.timezone.utc
LATER = dt.datetime.fromtimestamp(T1 + 3600, UTC)


@pytest.fixture
def reconciler(store, gateway):
    return SubscriptionReconciler(store, gateway)


async def _seed(reconciler, store):
    await store.upsert_customer("u1", "a@b.co", "cus_1")
    for sub_id, product, status in (
        ("sub_a", "prod_A", "active"),
        ("sub_b", "prod_B", "past_due"),
        ("sub_c", "prod_C", "canceled"),
    ):
        await reconciler.apply_snapshot(
            subscription_snapshot(sub_id, status=status, start=T0, end=T1, product=product)
        )


@pytest.mark.asyncio
async def test_resync_refreshes_stale_rows(store, reconciler, fake_stripe):
    await _seed(reconciler, store)
    fake_stripe.subscriptions["sub_a"] = subscription_snapshot("sub_a", start=T1, end=T2, product="prod_A")
    fake_stripe.subscriptions["sub_b"] = subscription_snapshot("sub_b", status="canceled", product="prod_B")

    summary = await resync_stale_subscriptions_once(store, reconciler, now=LATER)

    assert summary == {"candidates": 2, "refreshed": 2, "dropped": 0, "failed": 0}
    assert (await store.get_subscription("u1", "prod_A")).current_period_end == dt.datetime.fromtimestamp(T2, UTC)
    assert (await store.get_subscription("u1", "prod_B")).status == "canceled"
    retrieved = {p["id"] for p in fake_stripe.calls_for("subscription.retrieve")}
    assert retrieved == {"sub_a", "sub_b"}


@pytest.mark.asyncio
async def test_resync_continues_past_failures(store, reconciler, fake_stripe):
    await _seed(reconciler, store)
    # sub_b is unknown to the fake: Stripe rejects it, sub_a still refreshes
    fake_stripe.subscriptions["sub_a"] = subscription_snapshot("sub_a", start=T1, end=T2, product="prod_A")

    summary = await resync_stale_subscriptions_once(store, reconciler, now=LATER)

    assert summary["candidates"] == 2
    assert summary["refreshed"] == 1
    assert summary["failed"] == 1


@pytest.mark.asyncio
async def test_resync_counts_transient_failures(store, reconciler, fake_stripe):
    await _seed(reconciler, store)
    fake_stripe.failures["subscription.retrieve"] = stripe.APIConnectionError("down")

    summary = await resync_stale_subscriptions_once(store, reconciler, now=LATER, batch_limit=1)

    assert summary == {"candidates": 1, "refreshed": 0, "dropped": 0, "failed": 1}


@pytest.mark.asyncio
async def test_resync_with_nothing_stale(store, reconciler):
    await _seed(reconciler, store)
    summary = await resync_stale_subscriptions_once(store, reconciler, now=dt.datetime.fromtimestamp(T0, UTC))
    assert summary["candidates"] == 0


def test_broker_falls_back_to_stub_without_url():
    assert isinstance(tasks.broker, StubBroker)


def test_actor_is_registered():
    assert tasks.resync_stale_subscriptions.actor_name == "resync_stale_subscriptions"
    assert hasattr(tasks.resync_stale_subscriptions, "send")


def test_actor_skips_without_configuration(monkeypatch):
    monkeypatch.setattr(tasks.settings, "DATABASE_URL", None)
    assert tasks.resync_stale_subscriptions(batch_limit=5) is None
