"""Dramatiq worker configuration.

This module configures the Dramatiq broker and imports all tasks
so they are registered when the worker starts.

Run with:
    dramatiq billing_service.worker
"""

import logging
import os
import threading
import time
from pathlib import Path

from dotenv import load_dotenv

# Load the repo root .env explicitly to avoid relying on CWD
repo_root = Path(__file__).resolve().parents[1]
root_env = repo_root / ".env"
if root_env.exists():
    load_dotenv(dotenv_path=str(root_env), override=False)

from billing_service.core.config import settings  # noqa: E402
from billing_service.core.observability import configure_logging, init_sentry  # noqa: E402

configure_logging()
logger = logging.getLogger("billing_service.worker")

if init_sentry(f"{settings.SERVICE_NAME}-worker"):
    logger.info("Sentry SDK initialized for worker")

# Importing tasks configures the broker and registers the actors
from billing_service.core.tasks import broker, resync_stale_subscriptions  # noqa: E402,F401

logger.info("Resync actor registered: resync_stale_subscriptions")


def _maybe_start_resync_cron():  # pragma: no cover - simple orchestrator
    """Optional lightweight cron loop (avoids an external scheduler).

    Enabled via ``RESYNC_CRON_ENABLED=true``.
    """
    if os.getenv("RESYNC_CRON_ENABLED", "false").lower() not in {"1", "true", "yes"}:
        return None
    interval = int(os.getenv("RESYNC_CRON_INTERVAL_SECONDS", "900"))
    batch_limit = int(os.getenv("RESYNC_CRON_BATCH_LIMIT", str(settings.RESYNC_BATCH_LIMIT)))

    def loop():
        while True:
            try:
                logger.info("[cron] enqueue resync_stale_subscriptions interval=%ss batch_limit=%s", interval, batch_limit)
                resync_stale_subscriptions.send(batch_limit=batch_limit)
            except Exception:
                logger.exception("[cron] failed to enqueue resync task")
            time.sleep(interval)

    t = threading.Thread(target=loop, name="resync-cron", daemon=True)
    t.start()
    logger.info("Resync cron loop started (interval=%ss)", interval)
    return t


_maybe_start_resync_cron()
