"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.

Required values (database, Stripe keys, API key) are not enforced at
import time so that tests and tooling can import the package; the
application lifespan calls :meth:`Settings.missing_required` and fails
fast instead.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[2]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="ignore",
    )

    # Service
    API_V1_STR: str = "/api/v1"
    SERVICE_NAME: str = Field(default="billing-service")
    SERVICE_VERSION: str = Field(default="1.0.0")
    ENVIRONMENT: str = Field(default="development")
    HTTP_PORT: int = Field(default=8080)
    LOG_LEVEL: str = Field(default="info")

    # Shared-secret authentication for /api/v1/*
    API_KEY: Optional[str] = Field(default=None)

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Optional libpq sslmode applied to Postgres URLs that do not set one.
    DATABASE_SSLMODE: Optional[str] = Field(default=None)
    DATABASE_POOL_SIZE: int = Field(default=5)
    DATABASE_MAX_OVERFLOW: int = Field(default=10)
    DATABASE_POOL_TIMEOUT: float = Field(default=10.0)
    DATABASE_ECHO: bool = Field(default=False)

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRETS: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_ALLOWED_EVENTS: Optional[str] = Field(default=None)
    STRIPE_PORTAL_CONFIGURATION_ID: Optional[str] = Field(default=None)

    # Checkout validation
    PRICE_ID_PREFIX: str = Field(default="price_")
    MAX_QUANTITY: int = Field(default=999)
    MAX_CART_ITEMS: int = Field(default=20)

    # Deadlines (seconds)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0)
    WEBHOOK_TIMEOUT_SECONDS: float = Field(default=10.0)
    SHUTDOWN_GRACE_SECONDS: int = Field(default=15)

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    # Background resync worker
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)
    RESYNC_BATCH_LIMIT: int = Field(default=100)

    def missing_required(self) -> list[str]:
        """Return the names of required settings that are unset."""
        missing: list[str] = []
        if not self.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not self.STRIPE_SECRET_KEY:
            missing.append("STRIPE_SECRET_KEY")
        if not (self.STRIPE_WEBHOOK_SECRET or self.STRIPE_WEBHOOK_SECRETS):
            missing.append("STRIPE_WEBHOOK_SECRET")
        if not self.API_KEY:
            missing.append("API_KEY")
        return missing


# Instantiate global settings
settings = Settings()


def get_webhook_secret_list() -> list[str]:
    """Return list of webhook secrets for signature verification.

    Precedence:
    1. STRIPE_WEBHOOK_SECRETS (comma separated, ordered)
    2. Fallback to singular STRIPE_WEBHOOK_SECRET if set
    """
    secrets: list[str] = []
    if settings.STRIPE_WEBHOOK_SECRETS:
        secrets.extend([s.strip() for s in settings.STRIPE_WEBHOOK_SECRETS.split(",") if s.strip()])
    elif settings.STRIPE_WEBHOOK_SECRET:
        secrets.append(settings.STRIPE_WEBHOOK_SECRET.strip())
    return secrets


def get_allowed_event_patterns() -> list[str]:
    """Return the optional fnmatch allowlist for webhook event types."""
    raw = (settings.STRIPE_WEBHOOK_ALLOWED_EVENTS or "").strip()
    return [p.strip() for p in raw.split(",") if p.strip()]


def get_log_level() -> str:
    level = (settings.LOG_LEVEL or os.getenv("LOG_LEVEL") or "info").upper()
    return "WARNING" if level == "WARN" else level
