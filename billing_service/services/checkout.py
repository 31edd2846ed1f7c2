"""Checkout and customer-portal flows.

Each checkout follows the same order: resolve the customer, then ask
Stripe for a hosted session.  No subscription row is written here; the
mirror is only ever updated by the webhook reconciler once Stripe
confirms the purchase.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

from billing_service.core.errors import InputValidationError, NotFoundError
from billing_service.core.observability import sentry_breadcrumb
from billing_service.models.enums import CheckoutMode
from billing_service.services.customer_resolver import CustomerResolver
from billing_service.services.store import BillingStore
from billing_service.services.stripe_gateway import LineItem, StripeGateway

logger = logging.getLogger(__name__)


class CheckoutOrchestrator:
    def __init__(self, resolver: CustomerResolver, gateway: StripeGateway) -> None:
        self.resolver = resolver
        self.gateway = gateway

    async def _create(
        self,
        kind: str,
        mode: CheckoutMode,
        user_id: str,
        email: str,
        line_items: Sequence[LineItem],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str],
    ) -> Dict[str, str]:
        customer = await self.resolver.resolve(user_id, email)
        session = await self.gateway.create_checkout_session(
            mode,
            customer.provider_customer_id,
            line_items,
            success_url,
            cancel_url,
            {"user_id": user_id, "payment_type": kind, **metadata},
            idempotency_key=idempotency_key,
        )
        sentry_breadcrumb(
            category="checkout",
            message=f"checkout:{kind}",
            data={"session_id": session.id, "items": len(line_items)},
        )
        logger.info("Checkout session %s created kind=%s user_id=%s", session.id, kind, user_id)
        return {"session_id": session.id, "checkout_url": session.url}

    async def subscription_checkout(
        self,
        user_id: str,
        email: str,
        product_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, str]:
        """Hosted checkout for a recurring price, one seat."""
        return await self._create(
            "subscription",
            CheckoutMode.SUBSCRIPTION,
            user_id,
            email,
            [LineItem(price_id, 1)],
            success_url,
            cancel_url,
            {"product_id": product_id},
            idempotency_key,
        )

    async def item_checkout(
        self,
        user_id: str,
        email: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        quantity: Optional[int] = None,
        product_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, str]:
        """One-off payment for ``quantity`` (default 1) of a single price."""
        metadata = {"product_id": product_id} if product_id else {}
        return await self._create(
            "item",
            CheckoutMode.PAYMENT,
            user_id,
            email,
            [LineItem(price_id, quantity or 1)],
            success_url,
            cancel_url,
            metadata,
            idempotency_key,
        )

    async def cart_checkout(
        self,
        user_id: str,
        email: str,
        items: Sequence[LineItem],
        success_url: str,
        cancel_url: str,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, str]:
        """One-off payment for several prices; line item order is preserved."""
        if not items:
            raise InputValidationError("items must contain at least one item", field="items")
        return await self._create(
            "cart",
            CheckoutMode.PAYMENT,
            user_id,
            email,
            list(items),
            success_url,
            cancel_url,
            {"item_count": str(len(items))},
            idempotency_key,
        )


class PortalService:
    """Stripe billing-portal links for customers that already exist."""

    def __init__(self, store: BillingStore, gateway: StripeGateway) -> None:
        self.store = store
        self.gateway = gateway

    async def create_portal_link(self, user_id: str, return_url: str) -> str:
        try:
            customer = await self.store.get_customer_by_user_id(user_id)
        except NotFoundError as exc:
            raise NotFoundError(
                f"no billing customer for user_id={user_id}",
                code="CUSTOMER_NOT_FOUND",
                field="user_id",
            ) from exc
        if not customer.provider_customer_id:
            raise InputValidationError(
                "customer has no Stripe customer yet; complete a checkout first",
                code="NO_PROVIDER_CUSTOMER",
                field="user_id",
            )
        url = await self.gateway.create_portal_session(customer.provider_customer_id, return_url)
        sentry_breadcrumb(category="portal", message="portal:create", data={"user_id": user_id})
        return url


__all__ = ["CheckoutOrchestrator", "PortalService"]
