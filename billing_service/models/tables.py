"""SQLAlchemy ORM models for the billing mirror.

Two tables: ``customers`` maps a caller-chosen user id to a Stripe
customer, and ``subscriptions`` mirrors one Stripe subscription per
(user, product) pair.  The schema is created idempotently at startup via
``BillingStore.initialize_schema``.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from billing_service.core.database import Base
from billing_service.utils.helpers import ensure_utc


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops the offset on storage; values are normalised to UTC on the
    way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class Customer(Base):
    """Mapping from a local user id to a Stripe customer."""

    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    # Stripe customer reference (e.g., "cus_..."); NULL until the provider call succeeds
    provider_customer_id = Column(String(255), unique=True, nullable=True, index=True)
    created_at = Column(UtcDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UtcDateTime(), default=utcnow, nullable=False)

    subscriptions = relationship("Subscription", back_populates="customer")


class Subscription(Base):
    """Local mirror of a Stripe subscription."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_subscriptions_user_product"),
        CheckConstraint(
            "current_period_start IS NULL OR current_period_end IS NULL "
            "OR current_period_start <= current_period_end",
            name="ck_subscriptions_period_window",
        ),
        Index("ix_subscriptions_status", "status"),
        Index("ix_subscriptions_period_end", "current_period_end"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False)
    user_id = Column(String(255), nullable=False, index=True)
    product_id = Column(String(255), nullable=False, index=True)
    price_id = Column(String(255), nullable=False, default="")
    provider_subscription_id = Column(String(255), unique=True, nullable=False)
    status = Column(String(32), nullable=False)
    current_period_start = Column(UtcDateTime(), nullable=True)
    current_period_end = Column(UtcDateTime(), nullable=True)
    created_at = Column(UtcDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UtcDateTime(), default=utcnow, nullable=False)

    customer = relationship("Customer", back_populates="subscriptions")
