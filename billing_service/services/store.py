"""Persistence store for the customer and subscription mirror.

``BillingStore`` owns every SQL statement the service issues.  Each
operation opens its own short-lived ``AsyncSession`` from the store's
session factory and commits before returning, so callers never hold a
transaction across a Stripe round-trip.

Database failures are translated into the typed errors from
:mod:`billing_service.core.errors`:

* ``IntegrityError`` → :class:`ConflictError`
* connection loss, pool exhaustion and operational errors → :class:`TransientError`
* anything else (schema drift, programming errors) → :class:`FatalError`
"""

from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from sqlalchemy import select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_service.core.database import Base, ping
from billing_service.core.errors import (
    BillingError,
    ConflictError,
    FatalError,
    InputValidationError,
    NotFoundError,
    TransientError,
)
from billing_service.models.enums import TERMINAL_STATUSES
from billing_service.models.tables import Customer, Subscription, utcnow
from billing_service.utils.helpers import ensure_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionRecord:
    """Provider snapshot of one subscription, ready to be written."""

    customer_id: str
    user_id: str
    product_id: str
    provider_subscription_id: str
    status: str
    price_id: str = ""
    current_period_start: Optional[dt.datetime] = None
    current_period_end: Optional[dt.datetime] = None


def map_db_error(exc: sa_exc.SQLAlchemyError) -> BillingError:
    """Translate a SQLAlchemy exception into a service error."""
    if isinstance(exc, sa_exc.IntegrityError):
        return ConflictError(f"uniqueness or integrity violation: {exc.orig}", code="INTEGRITY_CONFLICT")
    if isinstance(exc, sa_exc.TimeoutError):
        return TransientError("database pool exhausted", code="DATABASE_UNAVAILABLE")
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return TransientError("database connection lost", code="DATABASE_UNAVAILABLE")
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.DisconnectionError)):
        return TransientError(f"database unavailable: {exc.orig if hasattr(exc, 'orig') else exc}", code="DATABASE_UNAVAILABLE")
    return FatalError(f"database error: {exc}", code="DATABASE_ERROR")


def _touch(row, now: dt.datetime) -> None:
    # updated_at never moves backwards, even if the wall clock does
    previous = ensure_utc(row.updated_at)
    if previous is not None and now <= previous:
        now = previous + dt.timedelta(microseconds=1)
    row.updated_at = now


def _check_record(record: SubscriptionRecord) -> None:
    if not record.provider_subscription_id:
        raise InputValidationError(
            "provider subscription id must not be empty",
            field="provider_subscription_id",
        )
    if not record.user_id or not record.product_id:
        raise InputValidationError("subscription needs a user_id and product_id", field="product_id")
    start = ensure_utc(record.current_period_start)
    end = ensure_utc(record.current_period_end)
    if start is not None and end is not None and start > end:
        raise FatalError(
            f"current_period_start {start.isoformat()} is after current_period_end {end.isoformat()}",
            code="INVALID_PERIOD",
        )


def _apply_record(row: Subscription, record: SubscriptionRecord, now: dt.datetime) -> None:
    row.customer_id = record.customer_id
    row.user_id = record.user_id
    row.product_id = record.product_id
    row.price_id = record.price_id or ""
    row.provider_subscription_id = record.provider_subscription_id
    row.status = record.status
    row.current_period_start = ensure_utc(record.current_period_start)
    row.current_period_end = ensure_utc(record.current_period_end)
    _touch(row, now)


class BillingStore:
    """Async repository over the ``customers`` and ``subscriptions`` tables."""

    def __init__(self, engine: AsyncEngine, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self.engine = engine
        self.sessionmaker = session_factory or async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            try:
                yield session
            except sa_exc.SQLAlchemyError as exc:
                raise map_db_error(exc) from exc

    # --- Schema -------------------------------------------------------
    async def initialize_schema(self) -> None:
        """Create missing tables and indexes; safe to call on every start."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except sa_exc.SQLAlchemyError as exc:
            raise map_db_error(exc) from exc
        logger.info("Database schema ensured (tables=%s)", ", ".join(sorted(Base.metadata.tables)))

    async def ping(self) -> None:
        async with self.session() as session:
            await ping(session)

    # --- Customers ----------------------------------------------------
    async def get_customer_by_user_id(self, user_id: str) -> Customer:
        async with self.session() as session:
            customer = await session.scalar(select(Customer).where(Customer.user_id == user_id))
        if customer is None:
            raise NotFoundError(f"no customer for user_id={user_id}", code="CUSTOMER_NOT_FOUND")
        return customer

    async def get_customer_by_provider_id(self, provider_customer_id: str) -> Customer:
        async with self.session() as session:
            customer = await session.scalar(
                select(Customer).where(Customer.provider_customer_id == provider_customer_id)
            )
        if customer is None:
            raise NotFoundError(
                f"no customer for provider_customer_id={provider_customer_id}",
                code="CUSTOMER_NOT_FOUND",
            )
        return customer

    async def upsert_customer(self, user_id: str, email: str, provider_customer_id: Optional[str] = None) -> Customer:
        """Insert or update the customer keyed by ``user_id``.

        A ``None`` provider id leaves an existing value untouched.  When two
        first-time writers race on ``user_id`` the loser retries as an update,
        so the later write wins.
        """
        for attempt in range(2):
            now = utcnow()
            async with self.session() as session:
                try:
                    customer = await session.scalar(select(Customer).where(Customer.user_id == user_id))
                    if customer is None:
                        customer = Customer(
                            user_id=user_id,
                            email=email,
                            provider_customer_id=provider_customer_id or None,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(customer)
                    else:
                        customer.email = email
                        if provider_customer_id:
                            customer.provider_customer_id = provider_customer_id
                        _touch(customer, now)
                    await session.commit()
                    return customer
                except sa_exc.IntegrityError as exc:
                    await session.rollback()
                    if attempt:
                        raise ConflictError(
                            f"customer write for user_id={user_id} conflicts with an existing row",
                            code="CUSTOMER_CONFLICT",
                        ) from exc
                    logger.info("Customer insert raced for user_id=%s; retrying as update", user_id)
        raise FatalError("unreachable customer upsert state")  # pragma: no cover

    # --- Subscriptions ------------------------------------------------
    async def get_subscription(self, user_id: str, product_id: str) -> Subscription:
        async with self.session() as session:
            row = await session.scalar(
                select(Subscription).where(
                    Subscription.user_id == user_id,
                    Subscription.product_id == product_id,
                )
            )
        if row is None:
            raise NotFoundError(
                f"no subscription for user_id={user_id} product_id={product_id}",
                code="SUBSCRIPTION_NOT_FOUND",
            )
        return row

    async def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Subscription:
        async with self.session() as session:
            row = await session.scalar(
                select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
            )
        if row is None:
            raise NotFoundError(
                f"no subscription for provider_subscription_id={provider_subscription_id}",
                code="SUBSCRIPTION_NOT_FOUND",
            )
        return row

    async def upsert_subscription_by_provider_id(self, record: SubscriptionRecord) -> Subscription:
        """Insert or update the row keyed by ``record.provider_subscription_id``.

        Raises :class:`ConflictError` carrying the holder row, and writes
        nothing, when a different provider subscription already owns
        ``(user_id, product_id)``.
        """
        _check_record(record)
        now = utcnow()
        async with self.session() as session:
            row = await session.scalar(
                select(Subscription).where(Subscription.provider_subscription_id == record.provider_subscription_id)
            )
            holder = await session.scalar(
                select(Subscription).where(
                    Subscription.user_id == record.user_id,
                    Subscription.product_id == record.product_id,
                )
            )
            if holder is not None and holder.provider_subscription_id != record.provider_subscription_id:
                raise ConflictError(
                    f"user_id={record.user_id} product_id={record.product_id} is held by "
                    f"{holder.provider_subscription_id}",
                    code="SUBSCRIPTION_CONFLICT",
                    existing=holder,
                )
            if row is None:
                row = Subscription(created_at=now)
                session.add(row)
            _apply_record(row, record, now)
            await session.commit()
            return row

    async def rebind_subscription(self, record: SubscriptionRecord) -> Subscription:
        """Point the row holding ``(user_id, product_id)`` at a new provider id.

        Any other row that still carries ``record.provider_subscription_id``
        is deleted first so both uniqueness constraints hold after the write.
        """
        _check_record(record)
        now = utcnow()
        async with self.session() as session:
            holder = await session.scalar(
                select(Subscription).where(
                    Subscription.user_id == record.user_id,
                    Subscription.product_id == record.product_id,
                )
            )
            stale = await session.scalar(
                select(Subscription).where(Subscription.provider_subscription_id == record.provider_subscription_id)
            )
            if stale is not None and (holder is None or stale.id != holder.id):
                logger.info(
                    "Removing stale row id=%s for provider_subscription_id=%s during rebind",
                    stale.id,
                    record.provider_subscription_id,
                )
                await session.delete(stale)
                await session.flush()
            if holder is None:
                holder = Subscription(created_at=now)
                session.add(holder)
            _apply_record(holder, record, now)
            await session.commit()
            return holder

    async def list_stale_subscriptions(self, now: dt.datetime, limit: int = 100) -> List[Subscription]:
        """Non-terminal rows whose billing period ended before ``now``."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        stmt = (
            select(Subscription)
            .where(
                Subscription.status.not_in(terminal),
                Subscription.current_period_end.is_not(None),
                Subscription.current_period_end < ensure_utc(now),
            )
            .order_by(Subscription.current_period_end)
            .limit(limit)
        )
        async with self.session() as session:
            result = await session.scalars(stmt)
            return list(result.all())


__all__ = ["BillingStore", "SubscriptionRecord", "map_db_error"]
