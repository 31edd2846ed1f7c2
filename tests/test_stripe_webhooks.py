import asyncio
import json

import pytest
import stripe

from billing_service.core.config import settings
from tests.conftest import count_subscriptions
from tests.factories import (
    T0,
    T1,
    T2,
    sign_payload,
    signed_request,
    stripe_event,
    subscription_snapshot,
)

WEBHOOK_PATH = "/webhooks/stripe"


@pytest.fixture
def known_customer(http_store):
    return asyncio.run(http_store.upsert_customer("u1", "a@b.co", "cus_1"))


def _post(client, event, secret=None):
    body, headers = signed_request(event) if secret is None else signed_request(event, secret)
    return client.post(WEBHOOK_PATH, content=body, headers=headers)


def test_subscription_created_is_mirrored(client, http_store, known_customer):
    resp = _post(client, stripe_event("customer.subscription.created", subscription_snapshot()))
    assert resp.status_code == 200, resp.text
    assert resp.json() == {"received": True, "type": "customer.subscription.created", "action": "upserted"}

    row = asyncio.run(http_store.get_subscription("u1", "prod_A"))
    assert row.provider_subscription_id == "sub_1"
    assert row.status == "active"
    assert row.customer_id == known_customer.id


def test_redelivery_keeps_one_row_and_bumps_updated_at(client, http_store, known_customer):
    event = stripe_event("customer.subscription.updated", subscription_snapshot(start=T1, end=T2))
    assert _post(client, event).status_code == 200
    first = asyncio.run(http_store.get_subscription("u1", "prod_A"))
    assert _post(client, event).status_code == 200
    second = asyncio.run(http_store.get_subscription("u1", "prod_A"))

    assert asyncio.run(count_subscriptions(http_store)) == 1
    assert second.current_period_start == first.current_period_start
    assert second.current_period_end == first.current_period_end
    assert second.updated_at > first.updated_at


def test_deleted_then_late_invoice_stays_canceled(client, http_store, fake_stripe, known_customer):
    _post(client, stripe_event("customer.subscription.created", subscription_snapshot()))
    resp = _post(client, stripe_event("customer.subscription.deleted", subscription_snapshot(status="active")))
    assert resp.status_code == 200
    assert asyncio.run(http_store.get_subscription("u1", "prod_A")).status == "canceled"

    fake_stripe.subscriptions["sub_1"] = subscription_snapshot(status="canceled")
    resp = _post(client, stripe_event("invoice.payment_succeeded", {"id": "in_1", "subscription": "sub_1"}))
    assert resp.status_code == 200
    assert asyncio.run(http_store.get_subscription("u1", "prod_A")).status == "canceled"


def test_checkout_completed_uses_session_metadata(client, http_store, fake_stripe, known_customer):
    fake_stripe.subscriptions["sub_9"] = subscription_snapshot("sub_9", product="prod_from_price")
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": "paid",
        "customer": "cus_1",
        "subscription": "sub_9",
        "metadata": {"user_id": "u1", "product_id": "prod_A"},
    }
    resp = _post(client, stripe_event("checkout.session.completed", session))
    assert resp.json()["action"] == "upserted"
    row = asyncio.run(http_store.get_subscription("u1", "prod_A"))
    assert row.provider_subscription_id == "sub_9"


def test_unhandled_event_is_acknowledged(client, http_store):
    resp = _post(client, stripe_event("charge.refunded", {"id": "ch_1"}))
    assert resp.status_code == 200
    assert resp.json()["action"] == "ignored"
    assert asyncio.run(count_subscriptions(http_store)) == 0


def test_unknown_customer_is_dropped_with_200(client, http_store):
    resp = _post(client, stripe_event("customer.subscription.created", subscription_snapshot(customer="cus_ghost")))
    assert resp.status_code == 200
    assert resp.json()["action"] == "dropped"
    assert asyncio.run(count_subscriptions(http_store)) == 0


def test_bad_signature_is_rejected(client, http_store, known_customer):
    body = json.dumps(stripe_event("customer.subscription.created", subscription_snapshot())).encode()
    resp = client.post(
        WEBHOOK_PATH,
        content=body,
        headers={"Stripe-Signature": sign_payload(body, secret="whsec_other")},
    )
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["type"] == "auth_error"
    assert error["code"] == "INVALID_SIGNATURE"
    assert asyncio.run(count_subscriptions(http_store)) == 0


def test_missing_signature_header(client):
    resp = client.post(WEBHOOK_PATH, content=b"{}")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "MISSING_SIGNATURE"


def test_webhook_does_not_need_api_key(client, known_customer):
    # signed_request carries no X-API-Key header
    resp = _post(client, stripe_event("customer.subscription.created", subscription_snapshot()))
    assert resp.status_code == 200


def test_rotated_secrets_are_all_accepted(client, monkeypatch, known_customer):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRETS", "whsec_new, whsec_old")
    resp = _post(client, stripe_event("customer.subscription.created", subscription_snapshot()), secret="whsec_old")
    assert resp.status_code == 200
    # the singular secret is ignored once the list is set
    resp = _post(client, stripe_event("customer.subscription.updated", subscription_snapshot()))
    assert resp.status_code == 400


def test_allowlist_filters_other_events(client, monkeypatch, http_store, known_customer):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_ALLOWED_EVENTS", "invoice.*")
    resp = _post(client, stripe_event("customer.subscription.created", subscription_snapshot()))
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "filtered": True, "type": "customer.subscription.created"}
    assert asyncio.run(count_subscriptions(http_store)) == 0


def test_provider_outage_asks_stripe_to_retry(client, fake_stripe, known_customer):
    resp = _post(client, stripe_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}))
    # subscription unknown to Stripe: non-retryable provider rejection
    assert resp.status_code == 502

    fake_stripe.failures["subscription.retrieve"] = stripe.APIConnectionError("down")
    resp = _post(client, stripe_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}))
    assert resp.status_code == 503
    assert resp.json()["error"]["type"] == "transient_error"


def test_unconfigured_webhook_secret_is_500(client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRETS", "")
    resp = client.post(WEBHOOK_PATH, content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "WEBHOOK_NOT_CONFIGURED"


def test_period_on_items_is_read(client, http_store, known_customer):
    snap = subscription_snapshot(start=T0, end=T1, period_on_items=True)
    _post(client, stripe_event("customer.subscription.updated", snap))
    row = asyncio.run(http_store.get_subscription("u1", "prod_A"))
    assert row.current_period_end is not None
    assert int(row.current_period_end.timestamp()) == T1


def test_event_with_bare_id_object_is_acknowledged(client, http_store, known_customer):
    resp = _post(client, {"id": "evt_bad", "type": "customer.subscription.updated", "data": {"object": "sub_1"}})
    assert resp.status_code == 200
    assert resp.json()["action"] == "ignored"
    assert asyncio.run(count_subscriptions(http_store)) == 0
