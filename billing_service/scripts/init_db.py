"""Initialize database tables.

Usage::

    python -m billing_service.scripts.init_db
"""

import asyncio

from billing_service.core import database
from billing_service.core.observability import configure_logging
from billing_service.services.store import BillingStore


async def main():
    configure_logging()
    print("Initializing database tables...")
    engine = database.init_engine()
    try:
        await BillingStore(engine).initialize_schema()
    finally:
        await database.dispose_engine()
    print("Database initialization complete!")


if __name__ == "__main__":
    asyncio.run(main())
