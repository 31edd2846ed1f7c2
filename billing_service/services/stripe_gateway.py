"""Thin async adapter over the Stripe Python SDK.

The SDK is synchronous, so every call is pushed onto Starlette's
threadpool.  The adapter never touches the database; it only shapes
requests, unwraps responses into plain dicts and translates Stripe
exceptions into the service error hierarchy:

* ``APIConnectionError``, ``RateLimitError`` and 5xx ``APIError`` → ``TransientError``
* any other ``StripeError`` → ``ProviderError``
* ``SignatureVerificationError`` or an unparseable payload → ``InvalidSignatureError``
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import stripe
from starlette.concurrency import run_in_threadpool

from billing_service.core.errors import (
    BillingError,
    InvalidSignatureError,
    ProviderError,
    TransientError,
)
from billing_service.models.enums import CheckoutMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    price_id: str
    quantity: int = 1


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


def to_plain(obj: Any) -> Any:
    """Recursively convert Stripe objects into plain dicts and lists."""
    if isinstance(obj, (str, bytes)):
        return obj
    keys = getattr(obj, "keys", None)
    if callable(keys):
        return {k: to_plain(obj[k]) for k in keys()}
    if isinstance(obj, (list, tuple)):
        return [to_plain(v) for v in obj]
    return obj


def map_stripe_error(exc: Exception, operation: str) -> BillingError:
    """Translate a Stripe SDK exception into a service error."""
    if isinstance(exc, stripe.SignatureVerificationError):
        return InvalidSignatureError("Invalid Stripe signature")
    message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return TransientError(f"stripe {operation} failed: {message}", code="PROVIDER_UNAVAILABLE")
    if isinstance(exc, stripe.APIError):
        status = getattr(exc, "http_status", None)
        if status is None or status >= 500:
            return TransientError(f"stripe {operation} failed: {message}", code="PROVIDER_UNAVAILABLE")
    if isinstance(exc, stripe.StripeError):
        code = getattr(exc, "code", None)
        return ProviderError(
            f"stripe {operation} failed: {message}",
            description=str(code) if code else None,
        )
    return ProviderError(f"stripe {operation} failed: {message}")


class StripeGateway:
    """Stripe calls used by checkout, the portal and the reconciler.

    ``sdk`` defaults to the ``stripe`` module; tests pass a stand-in object
    exposing the same attributes.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        sdk: Any = stripe,
        portal_configuration_id: Optional[str] = None,
    ) -> None:
        self._stripe = sdk
        if api_key:
            self._stripe.api_key = api_key
        self.portal_configuration_id = portal_configuration_id

    async def _call(self, operation: str, fn: Callable[..., Any], **params: Any) -> Any:
        try:
            return await run_in_threadpool(fn, **params)
        except stripe.StripeError as exc:
            err = map_stripe_error(exc, operation)
            logger.warning("[stripe] %s failed type=%s code=%s: %s", operation, exc.__class__.__name__, err.code, exc)
            raise err from exc

    # --- Customers ----------------------------------------------------
    async def create_customer(self, email: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """Create a Stripe customer and return its id."""
        customer = await self._call(
            "customer.create",
            self._stripe.Customer.create,
            email=email,
            metadata=dict(metadata or {}),
        )
        customer_id = to_plain(customer).get("id")
        if not customer_id:
            raise ProviderError("stripe customer.create returned no id")
        logger.info("[stripe] created customer id=%s", customer_id)
        return customer_id

    # --- Checkout -----------------------------------------------------
    async def create_checkout_session(
        self,
        mode: Union[CheckoutMode, str],
        customer_id: str,
        line_items: Sequence[LineItem],
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        mode = CheckoutMode(mode)
        metadata = dict(metadata or {})
        params: Dict[str, Any] = {
            "mode": mode.value,
            "customer": customer_id,
            "line_items": [{"price": li.price_id, "quantity": li.quantity} for li in line_items],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "allow_promotion_codes": True,
            "billing_address_collection": "required",
        }
        if metadata.get("user_id"):
            params["client_reference_id"] = metadata["user_id"]
        if mode is CheckoutMode.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": dict(metadata)}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        session = to_plain(await self._call("checkout.create", self._stripe.checkout.Session.create, **params))
        if not session.get("id") or not session.get("url"):
            raise ProviderError("stripe checkout.create returned no session url")
        logger.info(
            "[stripe] checkout session created id=%s mode=%s customer=%s items=%d",
            session["id"], mode.value, customer_id, len(line_items),
        )
        return CheckoutSession(id=session["id"], url=session["url"])

    # --- Portal -------------------------------------------------------
    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        params: Dict[str, Any] = {"customer": customer_id, "return_url": return_url}
        if self.portal_configuration_id:
            params["configuration"] = self.portal_configuration_id
        portal = to_plain(await self._call("portal.create", self._stripe.billing_portal.Session.create, **params))
        if not portal.get("url"):
            raise ProviderError("stripe portal.create returned no url")
        return portal["url"]

    # --- Subscriptions ------------------------------------------------
    async def fetch_subscription(self, provider_subscription_id: str) -> Dict[str, Any]:
        """Return the current Stripe snapshot of a subscription as a dict."""
        sub = await self._call(
            "subscription.retrieve",
            self._stripe.Subscription.retrieve,
            id=provider_subscription_id,
        )
        return to_plain(sub)

    # --- Webhooks -----------------------------------------------------
    def verify_webhook(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        signing_secret: Union[str, Iterable[str]],
    ) -> Dict[str, Any]:
        """Check the ``Stripe-Signature`` header and return the parsed event.

        ``signing_secret`` may be a single secret or a list tried in order, so
        a rotated secret keeps working while Stripe still signs with the old
        one.
        """
        secrets: List[str] = [signing_secret] if isinstance(signing_secret, str) else list(signing_secret)
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header", code="MISSING_SIGNATURE")
        if not secrets:
            raise InvalidSignatureError("No webhook signing secret configured")

        last_error: Optional[Exception] = None
        for secret in secrets:
            try:
                self._stripe.Webhook.construct_event(
                    payload=raw_body,
                    sig_header=signature_header,
                    secret=secret,
                )
                break
            except stripe.SignatureVerificationError as exc:
                last_error = exc
            except ValueError as exc:
                raise InvalidSignatureError("Unparseable webhook payload", code="INVALID_PAYLOAD") from exc
        else:
            logger.warning("[stripe] invalid signature after trying %d secrets: %s", len(secrets), last_error)
            raise InvalidSignatureError("Invalid Stripe signature")

        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise InvalidSignatureError("Unparseable webhook payload", code="INVALID_PAYLOAD") from exc
        if not isinstance(event, dict) or not event.get("type"):
            raise InvalidSignatureError("Webhook payload is not a Stripe event", code="INVALID_PAYLOAD")
        return event


__all__ = [
    "CheckoutSession",
    "LineItem",
    "StripeGateway",
    "map_stripe_error",
    "to_plain",
]
