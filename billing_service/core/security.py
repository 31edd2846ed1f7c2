"""Shared-secret authentication for the ``/api/v1`` routes.

Callers present the configured ``API_KEY`` in the ``X-API-Key`` header.
The comparison is constant time over the raw bytes.  ``/health``, ``/``
and ``/webhooks/*`` do not use this dependency; Stripe webhooks are
authenticated by their signature instead.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Header

from billing_service.core.config import settings
from billing_service.core.errors import AuthError


def api_key_matches(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> None:
    """FastAPI dependency rejecting requests without the shared API key."""
    if not x_api_key:
        raise AuthError("X-API-Key header is required", code="MISSING_API_KEY")
    expected = settings.API_KEY
    if not expected or not api_key_matches(x_api_key, expected):
        raise AuthError("X-API-Key header is invalid", code="INVALID_API_KEY")
