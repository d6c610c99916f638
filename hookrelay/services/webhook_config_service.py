"""
Webhook configuration service.

CRUD for user-owned webhook configurations and read access to their
delivery logs.

SECURITY: All queries MUST include the user_id filter.
Failure to do so will result in data leakage between tenants.
"""
from typing import Any

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.models.webhook import WebhookConfig, WebhookLog


# Fields an owner may set through the management API
EDITABLE_FIELDS = {
    "name",
    "description",
    "target_url",
    "secret",
    "is_active",
    "events",
    "filter_by_event",
    "extra_headers",
    "timeout_seconds",
    "retry_attempts",
    "trigger_token",
}


class WebhookConfigService:
    """Service for managing webhook configurations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_config(self, user_id: str, **fields: Any) -> WebhookConfig:
        """
        Create a webhook configuration owned by user_id.

        Args:
            user_id: Owning user ID
            **fields: Column values; unknown keys are rejected

        Returns:
            Newly created WebhookConfig
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown webhook fields: {', '.join(sorted(unknown))}")

        config = WebhookConfig(user_id=user_id, **fields)
        self.db.add(config)
        await self.db.commit()
        await self.db.refresh(config)
        return config

    async def get_config(self, config_id: str, user_id: str) -> WebhookConfig | None:
        """Get a configuration by ID within the user's scope."""
        stmt = select(WebhookConfig).where(
            WebhookConfig.id == config_id,
            WebhookConfig.user_id == user_id
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_configs(self, user_id: str) -> list[WebhookConfig]:
        """All of the user's configurations, newest first."""
        stmt = (
            select(WebhookConfig)
            .where(WebhookConfig.user_id == user_id)
            .order_by(WebhookConfig.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update_config(self, config_id: str, user_id: str, **changes: Any) -> WebhookConfig | None:
        """
        Apply a partial update.

        Returns:
            Updated WebhookConfig, or None if not found for this user
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown webhook fields: {', '.join(sorted(unknown))}")

        config = await self.get_config(config_id, user_id)
        if not config:
            return None

        for field, value in changes.items():
            setattr(config, field, value)

        await self.db.commit()
        await self.db.refresh(config)
        return config

    async def delete_config(self, config_id: str, user_id: str) -> bool:
        """Delete a configuration and its logs. Returns False if not found."""
        config = await self.get_config(config_id, user_id)
        if not config:
            return False

        await self.db.execute(
            delete(WebhookLog).where(
                WebhookLog.webhook_config_id == config_id,
                WebhookLog.user_id == user_id
            )
        )
        await self.db.delete(config)
        await self.db.commit()
        return True

    async def get_logs(self, config_id: str, user_id: str, limit: int = 50) -> list[WebhookLog]:
        """Most recent delivery logs for a configuration."""
        stmt = (
            select(WebhookLog)
            .where(
                WebhookLog.webhook_config_id == config_id,
                WebhookLog.user_id == user_id
            )
            .order_by(WebhookLog.triggered_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_log_aggregates(self, config_id: str, user_id: str) -> dict[str, Any]:
        """
        Delivery totals computed from the append-only log stream.

        Unlike the counter columns these are derived per query, so they
        are exact for every trigger whose log row was written.
        """
        stmt = select(
            func.count(WebhookLog.id),
            func.coalesce(func.sum(case((WebhookLog.success.is_(True), 1), else_=0)), 0),
            func.avg(WebhookLog.response_time_ms),
            func.max(WebhookLog.triggered_at),
        ).where(
            WebhookLog.webhook_config_id == config_id,
            WebhookLog.user_id == user_id
        )
        result = await self.db.execute(stmt)
        total, successes, avg_ms, last_logged = result.one()
        total = int(total or 0)
        successes = int(successes or 0)
        return {
            "logged_calls": total,
            "logged_successes": successes,
            "logged_failures": total - successes,
            "avg_response_time_ms": round(float(avg_ms)) if avg_ms is not None else None,
            "last_logged_at": last_logged,
        }
