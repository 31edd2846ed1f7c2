"""Hosted checkout endpoints (subscription, single item, cart)."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from billing_service.api.dependencies import get_checkout_orchestrator
from billing_service.core.config import settings
from billing_service.core.observability import sentry_set_tags
from billing_service.models.schemas import (
    CartCheckoutRequest,
    CheckoutResponse,
    ItemCheckoutRequest,
    SubscriptionCheckoutRequest,
)
from billing_service.services.checkout import CheckoutOrchestrator
from billing_service.services.stripe_gateway import LineItem
from billing_service.utils.helpers import run_with_deadline

router = APIRouter(prefix="/checkout", tags=["checkout"])


def _response(result: dict) -> CheckoutResponse:
    return CheckoutResponse(checkout_session_id=result["session_id"], checkout_url=result["checkout_url"])


@router.post("/subscription", response_model=CheckoutResponse)
async def create_subscription_checkout(
    payload: SubscriptionCheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    """Start a recurring subscription checkout for one product."""
    sentry_set_tags({"checkout.kind": "subscription", "product_id": payload.product_id})
    result = await run_with_deadline(
        orchestrator.subscription_checkout(
            payload.user_id,
            payload.email,
            payload.product_id,
            payload.price_id,
            payload.success_url,
            payload.cancel_url,
            idempotency_key=idempotency_key,
        ),
        settings.REQUEST_TIMEOUT_SECONDS,
        operation="subscription checkout",
    )
    return _response(result)


@router.post("/item", response_model=CheckoutResponse)
async def create_item_checkout(
    payload: ItemCheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    """One-time payment for a single price."""
    sentry_set_tags({"checkout.kind": "item"})
    result = await run_with_deadline(
        orchestrator.item_checkout(
            payload.user_id,
            payload.email,
            payload.price_id,
            payload.success_url,
            payload.cancel_url,
            quantity=payload.quantity,
            product_id=payload.product_id,
            idempotency_key=idempotency_key,
        ),
        settings.REQUEST_TIMEOUT_SECONDS,
        operation="item checkout",
    )
    return _response(result)


@router.post("/cart", response_model=CheckoutResponse)
async def create_cart_checkout(
    payload: CartCheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    """One-time payment for several prices, in the order submitted."""
    sentry_set_tags({"checkout.kind": "cart", "checkout.items": len(payload.items)})
    result = await run_with_deadline(
        orchestrator.cart_checkout(
            payload.user_id,
            payload.email,
            [LineItem(item.price_id, item.quantity) for item in payload.items],
            payload.success_url,
            payload.cancel_url,
            idempotency_key=idempotency_key,
        ),
        settings.REQUEST_TIMEOUT_SECONDS,
        operation="cart checkout",
    )
    return _response(result)
