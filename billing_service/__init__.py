"""Top-level package for the billing gateway service.

This package mediates between client applications and Stripe: it creates
hosted checkout sessions (subscription, single item and cart), exposes a
customer portal link, and keeps a local mirror of customers and
subscriptions that is reconciled against signed Stripe webhooks.

To run the API locally you can execute:

```bash
uvicorn billing_service.api.main:app --reload --port 8080
```

or use the ``billing-service`` console script, which honours ``HTTP_PORT``,
``LOG_LEVEL`` and ``SHUTDOWN_GRACE_SECONDS``.
"""

__all__: list[str] = []
