"""Miscellaneous helper functions."""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Awaitable, Optional, TypeVar

from billing_service.core.errors import TransientError

T = TypeVar("T")


def from_unix_timestamp(ts: Any) -> Optional[dt.datetime]:
    """Convert a Stripe epoch-seconds value to an aware UTC datetime.

    ``None``, zero and unparseable values return ``None``.
    """
    if ts is None or isinstance(ts, bool):
        return None
    try:
        seconds = int(ts)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return dt.datetime.fromtimestamp(seconds, tz=dt.timezone.utc)


def ensure_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def isoformat_z(value: Optional[dt.datetime]) -> Optional[str]:
    value = ensure_utc(value)
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


async def run_with_deadline(awaitable: Awaitable[T], seconds: float, *, operation: str = "operation") -> T:
    """Await ``awaitable`` for at most ``seconds``.

    A missed deadline cancels the work and raises :class:`TransientError`
    so callers (and Stripe, for webhooks) retry.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise TransientError(
            f"{operation} exceeded its {seconds:g}s deadline",
            code="DEADLINE_EXCEEDED",
        ) from exc
