from __future__ import annotations

import fnmatch
import logging

from fastapi import APIRouter, Depends, Request

from billing_service.api.dependencies import get_gateway, get_reconciler
from billing_service.core.config import get_allowed_event_patterns, get_webhook_secret_list, settings
from billing_service.core.errors import FatalError
from billing_service.services.reconciler import SubscriptionReconciler
from billing_service.services.stripe_gateway import StripeGateway
from billing_service.utils.helpers import run_with_deadline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_gateway),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Handle Stripe webhook events.

    Verifies the Stripe-Signature header against every configured signing
    secret, then applies the event to the subscription mirror.  Responds
    200 for handled, ignored and filtered events, 400 for signature
    errors and 5xx when the write failed so Stripe redelivers.
    """
    secrets = get_webhook_secret_list()
    if not secrets:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise FatalError("Webhook not configured", code="WEBHOOK_NOT_CONFIGURED")

    payload = await request.body()
    event = gateway.verify_webhook(payload, request.headers.get("stripe-signature"), secrets)
    event_type: str = event.get("type", "")

    # Optional backend-side allowlist to reduce noise even if the Dashboard is broad
    patterns = get_allowed_event_patterns()
    if patterns and not any(fnmatch.fnmatch(event_type, pat) for pat in patterns):
        logger.debug("[stripe] event filtered by allowlist type=%s patterns=%s", event_type, patterns)
        return {"received": True, "filtered": True, "type": event_type}

    result = await run_with_deadline(
        reconciler.handle_event(event),
        settings.WEBHOOK_TIMEOUT_SECONDS,
        operation=f"webhook {event_type}",
    )
    return {"received": True, "type": event_type, "action": result.action}
