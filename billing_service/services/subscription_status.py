"""Subscription status lookup for the status endpoint.

Reads come from the local mirror.  When a row still claims an entitled
status but its billing period has already ended, the renewal webhook has
probably not arrived yet; the row is refreshed from Stripe before
answering.  If Stripe is unreachable the mirror is returned as is.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

from billing_service.core.errors import BillingError, NotFoundError
from billing_service.models.enums import NO_SUBSCRIPTION_STATUS, is_entitled_status
from billing_service.models.tables import Subscription, utcnow
from billing_service.services.reconciler import SubscriptionReconciler
from billing_service.services.store import BillingStore
from billing_service.utils.helpers import ensure_utc

logger = logging.getLogger(__name__)


def needs_refresh(row: Subscription, now: dt.datetime) -> bool:
    end = ensure_utc(row.current_period_end)
    return is_entitled_status(row.status) and end is not None and end < now


def to_status_payload(row: Optional[Subscription]) -> Dict[str, Any]:
    if row is None:
        return {
            "status": NO_SUBSCRIPTION_STATUS,
            "subscription_id": "",
            "current_period_end": None,
            "product_id": "",
        }
    return {
        "status": row.status,
        "subscription_id": row.provider_subscription_id,
        "current_period_end": ensure_utc(row.current_period_end),
        "product_id": row.product_id,
    }


class SubscriptionStatusService:
    def __init__(self, store: BillingStore, reconciler: Optional[SubscriptionReconciler] = None) -> None:
        self.store = store
        self.reconciler = reconciler

    async def get_status(self, user_id: str, product_id: str, *, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        try:
            row = await self.store.get_subscription(user_id, product_id)
        except NotFoundError:
            return to_status_payload(None)

        now = ensure_utc(now) or utcnow()
        if self.reconciler is not None and needs_refresh(row, now):
            try:
                result = await self.reconciler.refresh_subscription(row.provider_subscription_id)
            except BillingError as exc:
                logger.warning(
                    "[reconcile] read-through refresh failed for subscription=%s: %s; serving mirror",
                    row.provider_subscription_id, exc,
                )
            else:
                fresh = result.subscription
                if fresh is not None and (fresh.user_id, fresh.product_id) == (user_id, product_id):
                    row = fresh
        return to_status_payload(row)


__all__ = ["SubscriptionStatusService", "needs_refresh", "to_status_payload"]
