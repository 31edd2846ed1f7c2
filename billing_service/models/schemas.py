"""Pydantic schemas for request and response models.

Request models carry the checkout validation rules so that every violation
surfaces as a ``RequestValidationError`` whose location names the offending
field; :mod:`billing_service.api.error_handlers` turns that into the
``validation_error`` envelope.  Limits that are configurable (price prefix,
maximum quantity, maximum cart size) are read from settings at validation
time.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from billing_service.core.config import settings

# local part, "@", and a domain containing at least one dot
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s.]+(\.[^@\s.]+)+$")


def check_user_id(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("user_id must not be empty")
    return value


def check_email(value: str) -> str:
    if not EMAIL_RE.match(value or ""):
        raise ValueError("email must look like local@domain.tld")
    return value


def check_url(value: str) -> str:
    parsed = urlparse(value or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("must be an absolute http(s) URL")
    return value


def check_price_id(value: str) -> str:
    prefix = settings.PRICE_ID_PREFIX
    if not value or not value.startswith(prefix):
        raise ValueError(f"price_id must be non-empty and start with '{prefix}'")
    return value


def check_quantity(value: Optional[int]) -> Optional[int]:
    if value is None:
        return value
    if value < 1:
        raise ValueError("quantity must be a positive integer")
    if value > settings.MAX_QUANTITY:
        raise ValueError(f"quantity must not exceed {settings.MAX_QUANTITY}")
    return value


class _CheckoutBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    user_id: str
    email: str
    success_url: str
    cancel_url: str

    _check_user_id = field_validator("user_id")(check_user_id)
    _check_email = field_validator("email")(check_email)
    _check_urls = field_validator("success_url", "cancel_url")(check_url)


class SubscriptionCheckoutRequest(_CheckoutBase):
    """Body of ``POST /api/v1/checkout/subscription``."""

    product_id: str = Field(min_length=1)
    price_id: str

    _check_price_id = field_validator("price_id")(check_price_id)


class ItemCheckoutRequest(_CheckoutBase):
    """Body of ``POST /api/v1/checkout/item``."""

    price_id: str
    product_id: Optional[str] = None
    quantity: Optional[StrictInt] = None

    _check_price_id = field_validator("price_id")(check_price_id)
    _check_quantity = field_validator("quantity")(check_quantity)


class CartItem(BaseModel):
    """One line of a cart checkout."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    price_id: str
    quantity: StrictInt
    product_id: Optional[str] = None

    _check_price_id = field_validator("price_id")(check_price_id)
    _check_quantity = field_validator("quantity")(check_quantity)


class CartCheckoutRequest(_CheckoutBase):
    """Body of ``POST /api/v1/checkout/cart``."""

    items: List[CartItem]

    @field_validator("items")
    @classmethod
    def _check_items(cls, value: List[CartItem]) -> List[CartItem]:
        if not value:
            raise ValueError("items must contain at least one item")
        if len(value) > settings.MAX_CART_ITEMS:
            raise ValueError(f"cart cannot contain more than {settings.MAX_CART_ITEMS} items")
        return value


class PortalRequest(BaseModel):
    """Body of ``POST /api/v1/portal``."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    user_id: str
    return_url: str

    _check_user_id = field_validator("user_id")(check_user_id)
    _check_url = field_validator("return_url")(check_url)


class CheckoutResponse(BaseModel):
    checkout_session_id: str
    checkout_url: str


class PortalResponse(BaseModel):
    portal_url: str


class SubscriptionStatusResponse(BaseModel):
    """Mirror view returned by the status endpoint.

    ``status`` is ``"none"`` with empty strings and a null ``current_period_end``
    when no row exists.
    """

    status: str
    subscription_id: str = ""
    current_period_end: Optional[datetime] = None
    product_id: str = ""


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    service: str
