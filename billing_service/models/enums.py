"""Enumeration types used throughout the billing service.

Subscription statuses mirror Stripe's values verbatim.  The reconciler
stores whatever status Stripe reports; these enums exist so callers can
reason about entitlement without string literals scattered around.
"""

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Stripe subscription status."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED})

# Reported by the status endpoint when no mirror row exists.
NO_SUBSCRIPTION_STATUS = "none"


class CheckoutMode(str, Enum):
    """Stripe Checkout session mode."""

    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class WebhookEventType(str, Enum):
    """Stripe events the reconciler acts on."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


def is_entitled_status(status: str | None) -> bool:
    return status in {s.value for s in ENTITLED_STATUSES}
