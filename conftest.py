"""Root pytest configuration.

Required settings are pinned before the application package is imported
so tests never depend on a developer's local ``.env``.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_WEBHOOK_SECRETS"] = ""
os.environ["STRIPE_WEBHOOK_ALLOWED_EVENTS"] = ""
os.environ["STRIPE_PORTAL_CONFIGURATION_ID"] = ""
os.environ["API_KEY"] = "test-api-key"
os.environ["SENTRY_DSN"] = ""
os.environ["DRAMATIQ_BROKER_URL"] = ""
os.environ["ENVIRONMENT"] = "test"
