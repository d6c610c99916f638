"""
Webhook models.

WebhookConfig describes where and how a user's triggers are forwarded.
WebhookLog is the append-only audit trail, one row per trigger.

SECURITY: Management queries MUST include the user_id filter.
Failure to do so will result in data leakage between tenants.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from hookrelay.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


DEFAULT_EVENTS = ["call_completed", "call_started", "call_failed"]


class WebhookConfig(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    User-owned webhook configuration.

    The id doubles as the trigger endpoint key. The dispatcher only
    writes the counters and last_triggered_at.
    """
    __tablename__ = "webhook_configs"

    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    filter_by_event: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra_headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    trigger_token: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Rolling counters, incremented in SQL, never reset here
    total_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def success_rate(self) -> int:
        """Rounded success percentage, 0 before the first call."""
        if not self.total_calls:
            return 0
        return round(self.successful_calls / self.total_calls * 100)

    def __repr__(self):
        return f"<WebhookConfig(id={self.id}, name={self.name}, active={self.is_active})>"


class WebhookLog(Base, UUIDPrimaryKeyMixin):
    """
    Outcome of a single trigger.

    Written once after the attempt loop. Intermediate attempts are
    not logged individually; `attempts` records how many were made.
    """
    __tablename__ = "webhook_logs"

    webhook_config_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhook_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    request_method: Mapped[str] = mapped_column(String(10), nullable=False)
    request_payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    request_headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    response_status: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    response_body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    triggered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True
    )

    def __repr__(self):
        return f"<WebhookLog(id={self.id}, config={self.webhook_config_id}, status={self.response_status})>"
