"""
Dispatcher dependency for FastAPI routes.
"""
import httpx
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.database import get_db
from hookrelay.services.webhook_service import WebhookDispatcher


def get_delivery_transport() -> httpx.AsyncBaseTransport | None:
    """
    Transport for outbound deliveries.

    None selects httpx's default network transport.
    """
    return None


async def get_dispatcher(
    db: AsyncSession = Depends(get_db),
    transport: httpx.AsyncBaseTransport | None = Depends(get_delivery_transport),
) -> WebhookDispatcher:
    return WebhookDispatcher(db, transport=transport)
