"""
Test configuration and fixtures.

Uses SQLite in-memory for fast tests. Outbound webhook POSTs go to an
httpx MockTransport and backoff sleeps are patched out.
"""
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hookrelay.database import get_db
from hookrelay.dependencies.delivery import get_delivery_transport
from hookrelay.main import app
from hookrelay.models.base import Base
from hookrelay.models.webhook import DEFAULT_EVENTS, WebhookConfig, WebhookLog
from hookrelay.services.jwt_service import JWTService


OWNER_ID = "user-owner-0001"
OTHER_USER_ID = "user-other-0002"


class TargetServer:
    """
    Stand-in for the configured target URL.

    Queued responses (or exceptions) are consumed in order; once the
    queue is empty every request gets 200 "ok".
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._queue: list = []

    def queue(self, *outcomes):
        self._queue.extend(outcomes)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self._queue.pop(0) if self._queue else httpx.Response(200, text="ok")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
async def engine():
    """In-memory SQLite shared by every session in a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def target():
    return TargetServer()


@pytest.fixture(autouse=True)
def no_backoff():
    """Record backoff delays instead of sleeping."""
    with patch("hookrelay.services.webhook_service.backoff_sleep", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def make_config(db):
    """Factory for persisted webhook configurations owned by OWNER_ID."""
    async def _make(**overrides) -> WebhookConfig:
        fields = {
            "user_id": OWNER_ID,
            "name": "CRM sync",
            "target_url": "https://crm.example.com/hooks/calls",
            "events": list(DEFAULT_EVENTS),
            "extra_headers": {},
            "timeout_seconds": 5,
            "retry_attempts": 3,
        }
        fields.update(overrides)
        config = WebhookConfig(**fields)
        db.add(config)
        await db.commit()
        await db.refresh(config)
        return config
    return _make


@pytest.fixture
def fetch(session_factory):
    """Read helpers that use a fresh session, so results reflect committed state."""
    class Fetch:
        @staticmethod
        async def config(config_id: str) -> WebhookConfig | None:
            async with session_factory() as session:
                return await session.get(WebhookConfig, config_id)

        @staticmethod
        async def logs(config_id: str) -> list[WebhookLog]:
            async with session_factory() as session:
                result = await session.execute(
                    select(WebhookLog).where(WebhookLog.webhook_config_id == config_id)
                )
                return list(result.scalars().all())

        @staticmethod
        async def log_count() -> int:
            async with session_factory() as session:
                result = await session.execute(select(func.count(WebhookLog.id)))
                return result.scalar_one()

    return Fetch


@pytest.fixture
async def client(session_factory, target):
    """HTTP client bound to the app, with the test database and target transport."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_delivery_transport] = lambda: target.transport

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Bearer headers for a dashboard user; defaults to the config owner."""
    def _headers(user_id: str = OWNER_ID) -> dict[str, str]:
        token = JWTService().create_token(user_id, f"{user_id}@example.com")
        return {"Authorization": f"Bearer {token}"}
    return _headers
