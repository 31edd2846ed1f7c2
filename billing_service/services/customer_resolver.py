"""Map a local ``user_id`` to a Stripe customer, creating one on first use."""

from __future__ import annotations

import logging

from billing_service.core.errors import NotFoundError
from billing_service.models.tables import Customer
from billing_service.services.store import BillingStore
from billing_service.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


class CustomerResolver:
    """Sole writer of ``customers`` rows.

    Two first-time requests for the same user may both create a Stripe
    customer; the later store write wins and the other provider customer
    is simply never used.
    """

    def __init__(self, store: BillingStore, gateway: StripeGateway) -> None:
        self.store = store
        self.gateway = gateway

    async def resolve(self, user_id: str, email: str) -> Customer:
        try:
            customer = await self.store.get_customer_by_user_id(user_id)
        except NotFoundError:
            customer = None

        if customer is not None and customer.provider_customer_id:
            if customer.email != email:
                logger.info("Updating stored email for user_id=%s", user_id)
                customer = await self.store.upsert_customer(user_id, email)
            return customer

        provider_customer_id = await self.gateway.create_customer(email, {"user_id": user_id})
        logger.info(
            "[stripe] bound user_id=%s to customer=%s (existing_row=%s)",
            user_id, provider_customer_id, customer is not None,
        )
        return await self.store.upsert_customer(user_id, email, provider_customer_id)


__all__ = ["CustomerResolver"]
