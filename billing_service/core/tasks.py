"""Dramatiq task definitions for background processing.

The webhook reconciler keeps the subscription mirror current, but a
missed or permanently failed delivery would leave a row stale forever.
``resync_stale_subscriptions`` sweeps rows whose billing period has
ended without reaching a terminal status and refreshes each one from
Stripe.

To run these tasks start a Dramatiq worker pointed at the worker module:

```bash
dramatiq billing_service.worker --processes 1 --threads 2
```

The broker is Redis at ``DRAMATIQ_BROKER_URL``; without it a
``StubBroker`` is installed so the actor can be imported and exercised
in tests.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Dict, Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit

from billing_service.core.config import settings
from billing_service.core.database import build_engine
from billing_service.core.errors import BillingError
from billing_service.core.observability import sentry_breadcrumb
from billing_service.models.tables import utcnow
from billing_service.services.reconciler import DROPPED, SubscriptionReconciler
from billing_service.services.store import BillingStore
from billing_service.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def configure_broker() -> dramatiq.Broker:
    if settings.DRAMATIQ_BROKER_URL:
        new_broker: dramatiq.Broker = RedisBroker(url=settings.DRAMATIQ_BROKER_URL)
        if not _has_mw(new_broker, AgeLimit):
            new_broker.add_middleware(AgeLimit())
        if not _has_mw(new_broker, TimeLimit):
            new_broker.add_middleware(TimeLimit())
        if not _has_mw(new_broker, ShutdownNotifications):
            new_broker.add_middleware(ShutdownNotifications())
        if not _has_mw(new_broker, Retries):
            new_broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000))
        logger.info("Dramatiq broker configured (redis)")
    else:
        new_broker = StubBroker()
        logger.info("DRAMATIQ_BROKER_URL not set; using StubBroker")
    dramatiq.set_broker(new_broker)
    return new_broker


# Export the broker for the Dramatiq CLI
broker = configure_broker()


async def resync_stale_subscriptions_once(
    store: BillingStore,
    reconciler: SubscriptionReconciler,
    *,
    now: Optional[dt.datetime] = None,
    batch_limit: Optional[int] = None,
) -> Dict[str, int]:
    """Refresh up to ``batch_limit`` stale rows and return counters.

    A failure on one row is logged and counted; the sweep continues.
    """
    now = now or utcnow()
    limit = batch_limit or settings.RESYNC_BATCH_LIMIT
    rows = await store.list_stale_subscriptions(now, limit)
    summary = {"candidates": len(rows), "refreshed": 0, "dropped": 0, "failed": 0}
    for row in rows:
        try:
            result = await reconciler.refresh_subscription(row.provider_subscription_id)
        except BillingError as exc:
            summary["failed"] += 1
            logger.warning(
                "[reconcile] resync failed subscription=%s code=%s: %s",
                row.provider_subscription_id, exc.code, exc.message,
            )
            continue
        if result.action == DROPPED:
            summary["dropped"] += 1
        else:
            summary["refreshed"] += 1
    return summary


async def _run_resync(batch_limit: int) -> Dict[str, int]:
    engine = build_engine(settings.DATABASE_URL)
    try:
        store = BillingStore(engine)
        await store.initialize_schema()
        gateway = StripeGateway(
            settings.STRIPE_SECRET_KEY,
            portal_configuration_id=settings.STRIPE_PORTAL_CONFIGURATION_ID,
        )
        return await resync_stale_subscriptions_once(
            store,
            SubscriptionReconciler(store, gateway),
            batch_limit=batch_limit,
        )
    finally:
        await engine.dispose()


@dramatiq.actor(max_retries=0)
def resync_stale_subscriptions(batch_limit: Optional[int] = None):
    """Refresh mirrored subscriptions whose period ended without a renewal event."""
    if not settings.DATABASE_URL or not settings.STRIPE_SECRET_KEY:
        logger.warning("[reconcile] resync skipped; DATABASE_URL or STRIPE_SECRET_KEY not configured")
        return None
    sentry_breadcrumb(category="stripe", message="resync.run.start", data={"batch_limit": batch_limit})
    summary = asyncio.run(_run_resync(batch_limit or settings.RESYNC_BATCH_LIMIT))
    logger.info("[reconcile] resync completed %s", summary)
    sentry_breadcrumb(category="stripe", message="resync.run.end", data=summary)
    return summary
