"""Observability helpers (logging setup, Sentry init & common scrubbing).

Centralises Sentry initialisation for the API and the worker so configuration
does not drift.  Initialisation is a no-op when the DSN is missing.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from billing_service.core.config import get_log_level, settings

logger = logging.getLogger(__name__)

_SCRUBBED_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key", "stripe-signature")


def configure_logging() -> None:
    """Configure root logging from ``LOG_LEVEL``."""
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger().setLevel(get_log_level())


def _before_send(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
    """Scrub obvious secrets before sending to Sentry.

    - Drop API key, Stripe signature, Authorization & Cookie headers
    - Remove request data/body (keep method + URL)
    """
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for k in list(headers.keys()):
        if k.lower() in _SCRUBBED_HEADERS:
            headers.pop(k, None)
    req.pop("data", None)
    event["request"] = req
    return event


def init_sentry(service: str) -> bool:
    """Initialise Sentry once for a given process.

    Returns True if Sentry was initialised; False otherwise.
    """
    if not settings.SENTRY_DSN:
        return False
    if getattr(init_sentry, "_done", False):  # prevent duplicate init in same process
        return True
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
        environment=settings.ENVIRONMENT,
        release=settings.SENTRY_RELEASE,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", service)
    init_sentry._done = True  # type: ignore[attr-defined]
    return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
    """Set tags on the current Sentry scope (strings only, truncated)."""
    if not settings.SENTRY_DSN:
        return
    for k, v in (tags or {}).items():
        sentry_sdk.set_tag(str(k), str(v)[:128] if v is not None else "")


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
    """Add a breadcrumb for important lifecycle steps."""
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})


def capture_exception(exc: BaseException) -> None:
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.capture_exception(exc)


__all__ = [
    "configure_logging",
    "init_sentry",
    "sentry_set_tags",
    "sentry_breadcrumb",
    "capture_exception",
]
