"""FastAPI dependencies wiring routes to the process-wide singletons.

The engine-backed store and the Stripe gateway are created once in the
application lifespan and kept on ``app.state``.  The services built on
top of them hold no state of their own, so they are assembled per
request; tests replace :func:`get_store` and :func:`get_gateway` through
``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Depends, Request

from billing_service.core.errors import TransientError
from billing_service.services.checkout import CheckoutOrchestrator, PortalService
from billing_service.services.customer_resolver import CustomerResolver
from billing_service.services.reconciler import SubscriptionReconciler
from billing_service.services.store import BillingStore
from billing_service.services.stripe_gateway import StripeGateway
from billing_service.services.subscription_status import SubscriptionStatusService


def get_store(request: Request) -> BillingStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise TransientError("database not initialised", code="DATABASE_UNAVAILABLE")
    return store


def get_gateway(request: Request) -> StripeGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise TransientError("Stripe gateway not initialised", code="PROVIDER_UNAVAILABLE")
    return gateway


def get_resolver(
    store: BillingStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> CustomerResolver:
    return CustomerResolver(store, gateway)


def get_checkout_orchestrator(
    resolver: CustomerResolver = Depends(get_resolver),
    gateway: StripeGateway = Depends(get_gateway),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(resolver, gateway)


def get_portal_service(
    store: BillingStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> PortalService:
    return PortalService(store, gateway)


def get_reconciler(
    store: BillingStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(store, gateway)


def get_status_service(
    store: BillingStore = Depends(get_store),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> SubscriptionStatusService:
    return SubscriptionStatusService(store, reconciler)
