"""Apply Stripe webhook events to the local subscription mirror.

Stripe is authoritative: every handled event ends in a full-snapshot
upsert keyed by the Stripe subscription id, so redelivery and
out-of-order delivery converge on the same row.  There is no timestamp
or version comparison; the last write wins.

Handled events:

* ``checkout.session.completed``: paid subscription checkouts only; the
  subscription is fetched and written with the session's metadata.
* ``customer.subscription.created`` / ``.updated``: upsert the payload.
* ``customer.subscription.deleted``: upsert with status ``canceled``.
* ``invoice.payment_succeeded`` / ``.payment_failed``: re-fetch the
  referenced subscription and upsert it.

Anything else is acknowledged and ignored.

When a user subscribes again to a product whose row still points at an
older Stripe subscription, the existing row is rebound to the new id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from billing_service.core.errors import ConflictError, NotFoundError, TransientError
from billing_service.core.observability import sentry_breadcrumb, sentry_set_tags
from billing_service.models.enums import CheckoutMode, SubscriptionStatus, WebhookEventType
from billing_service.models.tables import Customer, Subscription
from billing_service.services.store import BillingStore, SubscriptionRecord
from billing_service.services.stripe_gateway import StripeGateway
from billing_service.utils.helpers import from_unix_timestamp

logger = logging.getLogger(__name__)

UPSERTED = "upserted"
REBOUND = "rebound"
IGNORED = "ignored"
DROPPED = "dropped"
NOOP = "noop"

_SUBSCRIPTION_EVENTS = (
    WebhookEventType.SUBSCRIPTION_CREATED.value,
    WebhookEventType.SUBSCRIPTION_UPDATED.value,
)
_INVOICE_EVENTS = (
    WebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value,
    WebhookEventType.INVOICE_PAYMENT_FAILED.value,
)


@dataclass(frozen=True)
class ReconcileResult:
    action: str
    subscription: Optional[Subscription] = None
    reason: Optional[str] = None


# --- Snapshot parsing ---------------------------------------------------

def _id_of(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return value.get("id") or None
    return None


def _first_item(snapshot: Mapping[str, Any]) -> Mapping[str, Any]:
    items = snapshot.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def period_bounds(snapshot: Mapping[str, Any]) -> Tuple[Any, Any]:
    """Return ``(start, end)`` as aware datetimes.

    Newer Stripe API versions moved the period fields from the
    subscription onto each subscription item.
    """
    start = snapshot.get("current_period_start")
    end = snapshot.get("current_period_end")
    if start is None or end is None:
        item = _first_item(snapshot)
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return from_unix_timestamp(start), from_unix_timestamp(end)


def price_of(snapshot: Mapping[str, Any]) -> str:
    price = _first_item(snapshot).get("price")
    return _id_of(price) or ""


def product_of(snapshot: Mapping[str, Any], metadata: Mapping[str, Any]) -> Optional[str]:
    if metadata.get("product_id"):
        return str(metadata["product_id"])
    price = _first_item(snapshot).get("price")
    if isinstance(price, Mapping):
        return _id_of(price.get("product"))
    return None


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub_id = _id_of(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, Mapping) else None
    if isinstance(details, Mapping):
        return _id_of(details.get("subscription"))
    return None


class SubscriptionReconciler:
    """Sole writer of ``subscriptions`` rows."""

    def __init__(self, store: BillingStore, gateway: StripeGateway) -> None:
        self.store = store
        self.gateway = gateway

    async def handle_event(self, event: Mapping[str, Any]) -> ReconcileResult:
        event_type = event.get("type") or ""
        data = event.get("data")
        obj = data.get("object") if isinstance(data, Mapping) else None
        if not isinstance(obj, Mapping):
            logger.warning("[reconcile] event=%s id=%s has no object payload; ignoring", event_type, event.get("id"))
            return ReconcileResult(IGNORED, reason="malformed object")
        sentry_set_tags({"stripe.event_type": event_type})
        sentry_breadcrumb(
            category="stripe",
            message=f"webhook:{event_type}",
            data={"event_id": event.get("id"), "object_id": obj.get("id")},
        )

        if event_type == WebhookEventType.CHECKOUT_SESSION_COMPLETED.value:
            result = await self._on_checkout_completed(obj)
        elif event_type in _SUBSCRIPTION_EVENTS:
            result = await self.apply_snapshot(obj)
        elif event_type == WebhookEventType.SUBSCRIPTION_DELETED.value:
            result = await self.apply_snapshot(obj, force_status=SubscriptionStatus.CANCELED.value)
        elif event_type in _INVOICE_EVENTS:
            sub_id = invoice_subscription_id(obj)
            if not sub_id:
                result = ReconcileResult(NOOP, reason="invoice has no subscription")
            else:
                result = await self.refresh_subscription(sub_id)
        else:
            logger.info("[reconcile] ignoring unhandled event type=%s id=%s", event_type, event.get("id"))
            return ReconcileResult(IGNORED, reason="unhandled event type")

        logger.info(
            "[reconcile] event=%s id=%s action=%s reason=%s",
            event_type, event.get("id"), result.action, result.reason,
        )
        return result

    async def _on_checkout_completed(self, session: Mapping[str, Any]) -> ReconcileResult:
        if session.get("mode") != CheckoutMode.SUBSCRIPTION.value:
            return ReconcileResult(NOOP, reason="not a subscription checkout")
        if session.get("payment_status") != "paid":
            return ReconcileResult(NOOP, reason=f"payment_status={session.get('payment_status')}")
        sub_id = _id_of(session.get("subscription"))
        if not sub_id:
            return ReconcileResult(NOOP, reason="session has no subscription")

        metadata: Dict[str, Any] = dict(session.get("metadata") or {})
        if not metadata.get("user_id") and session.get("client_reference_id"):
            metadata["user_id"] = session["client_reference_id"]
        snapshot = await self.gateway.fetch_subscription(sub_id)
        if not _id_of(snapshot.get("customer")) and _id_of(session.get("customer")):
            snapshot = {**snapshot, "customer": _id_of(session.get("customer"))}
        return await self.apply_snapshot(snapshot, metadata_override=metadata)

    async def refresh_subscription(self, provider_subscription_id: str) -> ReconcileResult:
        """Re-fetch a subscription from Stripe and write it."""
        snapshot = await self.gateway.fetch_subscription(provider_subscription_id)
        return await self.apply_snapshot(snapshot)

    async def _find_customer(self, provider_customer_id: Optional[str], metadata: Mapping[str, Any]) -> Optional[Customer]:
        if provider_customer_id:
            try:
                return await self.store.get_customer_by_provider_id(provider_customer_id)
            except NotFoundError:
                pass
        user_id = metadata.get("user_id")
        if user_id:
            try:
                return await self.store.get_customer_by_user_id(str(user_id))
            except NotFoundError:
                pass
        return None

    async def _known_product(self, provider_subscription_id: str) -> Optional[str]:
        try:
            row = await self.store.get_subscription_by_provider_id(provider_subscription_id)
        except NotFoundError:
            return None
        return row.product_id

    async def apply_snapshot(
        self,
        snapshot: Mapping[str, Any],
        *,
        metadata_override: Optional[Mapping[str, Any]] = None,
        force_status: Optional[str] = None,
    ) -> ReconcileResult:
        """Write one Stripe subscription snapshot into the mirror."""
        sub_id = snapshot.get("id")
        if not sub_id:
            logger.warning("[reconcile] snapshot without id dropped")
            return ReconcileResult(DROPPED, reason="snapshot has no id")

        metadata: Dict[str, Any] = {**(snapshot.get("metadata") or {}), **(metadata_override or {})}
        provider_customer_id = _id_of(snapshot.get("customer"))
        customer = await self._find_customer(provider_customer_id, metadata)
        if customer is None:
            logger.warning(
                "[reconcile] no local customer for subscription=%s customer=%s user_id=%s; dropping",
                sub_id, provider_customer_id, metadata.get("user_id"),
            )
            return ReconcileResult(DROPPED, reason="unknown customer")

        product_id = metadata.get("product_id") or await self._known_product(sub_id) or product_of(snapshot, metadata)
        if not product_id:
            logger.warning("[reconcile] cannot determine product for subscription=%s; dropping", sub_id)
            return ReconcileResult(DROPPED, reason="unknown product")

        status = force_status or snapshot.get("status")
        if not status:
            logger.warning("[reconcile] subscription=%s has no status; dropping", sub_id)
            return ReconcileResult(DROPPED, reason="missing status")

        start, end = period_bounds(snapshot)
        record = SubscriptionRecord(
            customer_id=customer.id,
            user_id=customer.user_id,
            product_id=str(product_id),
            provider_subscription_id=sub_id,
            status=status,
            price_id=price_of(snapshot),
            current_period_start=start,
            current_period_end=end,
        )
        return await self._write(record)

    async def _write(self, record: SubscriptionRecord) -> ReconcileResult:
        last_conflict: Optional[ConflictError] = None
        for attempt in range(2):
            try:
                row = await self.store.upsert_subscription_by_provider_id(record)
                return ReconcileResult(UPSERTED, subscription=row)
            except ConflictError as exc:
                last_conflict = exc
                if exc.existing is None:
                    logger.warning(
                        "[reconcile] write race on subscription=%s (attempt %d)",
                        record.provider_subscription_id, attempt + 1,
                    )
                    continue
                logger.info(
                    "[reconcile] rebinding user_id=%s product_id=%s from %s to %s",
                    record.user_id, record.product_id,
                    exc.existing.provider_subscription_id, record.provider_subscription_id,
                )
            try:
                row = await self.store.rebind_subscription(record)
                return ReconcileResult(REBOUND, subscription=row)
            except ConflictError as exc:
                last_conflict = exc
                logger.warning(
                    "[reconcile] rebind race on subscription=%s (attempt %d)",
                    record.provider_subscription_id, attempt + 1,
                )
        raise TransientError(
            f"could not settle concurrent writes for subscription {record.provider_subscription_id}",
            code="RECONCILE_CONFLICT",
        ) from last_conflict


__all__ = [
    "ReconcileResult",
    "SubscriptionReconciler",
    "invoice_subscription_id",
    "period_bounds",
    "price_of",
    "product_of",
]
