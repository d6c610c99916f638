"""
Script to create all database tables.

Creates the webhook_configs and webhook_logs tables from the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio

from hookrelay.database import engine
from hookrelay.logging_config import get_logger
from hookrelay.models.base import Base
from hookrelay.models.webhook import WebhookConfig, WebhookLog  # noqa: F401  registers tables

log = get_logger(component="create_tables")


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("tables_created", tables=sorted(Base.metadata.tables))


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    log.info("tables_dropped")


async def main():
    """Main entry point."""
    await create_all_tables()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
