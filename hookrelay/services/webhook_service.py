"""
Webhook Service

Forwards inbound triggers to user-configured URLs with HMAC signing,
bounded retries with exponential backoff, and per-trigger audit logging.
"""
import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.config import settings
from hookrelay.exceptions import (
    BadRequestError,
    DeliveryAttemptError,
    TriggerAuthError,
    WebhookNotFoundError,
)
from hookrelay.logging_config import get_logger
from hookrelay.models.base import utcnow
from hookrelay.models.webhook import WebhookConfig, WebhookLog
from hookrelay.routes.metrics import (
    track_audit_write_failure,
    track_delivery,
    track_delivery_attempt,
)
from hookrelay.sentry_config import capture_exception


DEFAULT_EVENT = "webhook_triggered"
TRIGGER_TOKEN_HEADER = "X-Webhook-Token"


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Generate "sha256=<hex>" HMAC-SHA256 signature for a webhook payload."""
    digest = hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"sha256={digest}"


def verify_webhook_signature(payload: str, secret: str, signature: str) -> bool:
    """Constant-time check of a signature produced by generate_webhook_signature."""
    expected = generate_webhook_signature(payload, secret)
    return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))


def signature_header_name() -> str:
    return f"X-{settings.WEBHOOK_PRODUCT_NAME}-Signature"


def user_agent() -> str:
    return f"{settings.WEBHOOK_PRODUCT_NAME}-Webhook/1.0"


def iso_timestamp(now: datetime | None = None) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_envelope(payload: Any, webhook_id: str, now: datetime | None = None) -> dict:
    """
    Wrap an inbound payload for forwarding.

    The envelope event is taken from payload["event"] when the payload
    is an object with a truthy event, otherwise DEFAULT_EVENT.
    """
    event = payload.get("event") if isinstance(payload, dict) else None
    return {
        "event": event or DEFAULT_EVENT,
        "data": payload,
        "timestamp": iso_timestamp(now),
        "webhook_id": webhook_id,
    }


def serialize_envelope(envelope: dict) -> str:
    """Compact JSON; the exact string that is signed and sent."""
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def set_header(headers: dict[str, str], name: str, value: str) -> None:
    """Set a header, dropping any existing entry with the same name in another casing."""
    for existing in [key for key in headers if key.lower() == name.lower()]:
        del headers[existing]
    headers[name] = value


def build_headers(config: WebhookConfig, body: str) -> dict[str, str]:
    """
    Outbound headers: defaults, then configured extras, then the signature.

    Extra headers replace defaults case-insensitively. The signature is
    only added when the configuration has a secret, and it replaces any
    extra header of the same name.
    """
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent(),
    }
    for name, value in (config.extra_headers or {}).items():
        set_header(headers, name, str(value))

    if config.secret:
        set_header(headers, signature_header_name(), generate_webhook_signature(body, config.secret))
    return headers


def resolve_attempts(retry_attempts: int | None) -> int:
    """Configured attempts, default when unset, clamped to [1, WEBHOOK_MAX_ATTEMPTS]."""
    if not retry_attempts or retry_attempts < 1:
        retry_attempts = settings.WEBHOOK_DEFAULT_RETRY_ATTEMPTS
    return max(1, min(retry_attempts, settings.WEBHOOK_MAX_ATTEMPTS))


def resolve_timeout(timeout_seconds: float | None) -> float:
    if not timeout_seconds or timeout_seconds <= 0:
        return float(settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS)
    return float(timeout_seconds)


def backoff_delay(attempt: int) -> int:
    """Seconds to wait after failed attempt number `attempt` (1-based): 2, 4, 8..."""
    return min(2 ** attempt, settings.WEBHOOK_MAX_BACKOFF_SECONDS)


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


async def backoff_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


class TriggerRequest(BaseModel):
    """What the inbound caller sent, as recorded in the delivery log."""
    method: str
    payload: Any = None
    headers: dict[str, str] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    """Final outcome of the attempt loop for one trigger."""
    success: bool = False
    response_status: int = 0
    response_body: str = ""
    error: str | None = None
    attempts: int = 0
    response_time_ms: int = 0


class TriggerResult(BaseModel):
    """Response returned to the inbound caller."""
    success: bool
    webhook_id: str
    webhook_name: str
    response_status: int = 0
    response_time_ms: int = 0
    error: str | None = None
    forwarded_to: str | None = None
    skipped: bool = False

    @property
    def http_status(self) -> int:
        if self.skipped:
            return 202
        return 200 if self.success else 500

    def to_response(self) -> dict:
        body = self.model_dump(exclude={"skipped"})
        if self.skipped:
            body["skipped"] = True
        return body


class WebhookDispatcher:
    """
    Delivers one trigger per call to dispatch().

    Stateless between invocations: the configuration row is re-read on
    every trigger. Attempts for a trigger are strictly sequential; the
    backoff sleep only suspends this trigger.
    """

    def __init__(self, db: AsyncSession, transport: httpx.AsyncBaseTransport | None = None):
        self.db = db
        self._transport = transport

    async def get_active_config(self, webhook_id: str) -> WebhookConfig:
        """Load an active configuration or raise WebhookNotFoundError."""
        stmt = select(WebhookConfig).where(
            WebhookConfig.id == webhook_id,
            WebhookConfig.is_active.is_(True)
        )
        result = await self.db.execute(stmt)
        config = result.scalar_one_or_none()
        if config is None:
            raise WebhookNotFoundError("Webhook not found or inactive")
        return config

    @staticmethod
    def check_trigger_token(config: WebhookConfig, presented: str | None) -> None:
        """Configurations without a trigger token accept any caller."""
        if not config.trigger_token:
            return
        if not presented or not hmac.compare_digest(
            config.trigger_token.encode("utf-8"), presented.encode("utf-8")
        ):
            raise TriggerAuthError("Invalid trigger token")

    async def dispatch(
        self,
        webhook_id: str | None,
        trigger: TriggerRequest,
        trigger_token: str | None = None,
        authenticated: bool = False,
    ) -> TriggerResult:
        """
        Deliver a trigger to the configuration's target URL.

        Args:
            webhook_id: Configuration id from the trigger URL
            trigger: Parsed inbound request
            trigger_token: Value of the X-Webhook-Token header, if any
            authenticated: Caller is the authenticated owner; skips the token check

        Returns:
            TriggerResult. Delivery failures are reported in it, not raised.

        Raises:
            BadRequestError: webhook_id is empty, or the payload is not encodable as JSON
            WebhookNotFoundError: no active configuration with this id
            TriggerAuthError: trigger token missing or wrong
        """
        if not webhook_id:
            raise BadRequestError("Webhook ID is required")

        config = await self.get_active_config(webhook_id)
        if not authenticated:
            self.check_trigger_token(config, trigger_token)

        envelope = build_envelope(trigger.payload, webhook_id)
        log = get_logger(webhook_id=webhook_id, user_id=config.user_id, event=envelope["event"])

        if config.filter_by_event and envelope["event"] not in (config.events or []):
            log.info("webhook_trigger_skipped", reason="event_not_subscribed")
            return TriggerResult(
                success=False,
                webhook_id=webhook_id,
                webhook_name=config.name,
                error=f"Event '{envelope['event']}' is not subscribed",
                skipped=True,
            )

        try:
            body = serialize_envelope(envelope)
        except ValueError:
            raise BadRequestError("Payload contains values that cannot be encoded as JSON")
        headers = build_headers(config, body)

        user_id = config.user_id
        webhook_name = config.name
        target_url = config.target_url
        attempts = resolve_attempts(config.retry_attempts)
        timeout = resolve_timeout(config.timeout_seconds)

        # Return the connection to the pool for the duration of the attempt
        # loop; the audit writes below start a fresh transaction.
        await self.db.close()

        result = await self.deliver(
            target_url,
            body,
            headers,
            attempts=attempts,
            timeout=timeout,
            log=log,
        )
        track_delivery(result.success, result.response_time_ms / 1000)

        await self.record_outcome(webhook_id, user_id, trigger, result, log=log)

        return TriggerResult(
            success=result.success,
            webhook_id=webhook_id,
            webhook_name=webhook_name,
            response_status=result.response_status,
            response_time_ms=result.response_time_ms,
            error=result.error,
            forwarded_to=target_url,
        )

    async def deliver(
        self,
        url: str,
        body: str,
        headers: dict[str, str],
        attempts: int,
        timeout: float,
        log=None,
    ) -> DeliveryResult:
        """
        POST body to url up to `attempts` times.

        Stops at the first 2xx. Each failed attempt overwrites the
        candidate outcome; only the last one is kept.
        """
        log = log or get_logger(target_url=url)
        result = DeliveryResult()
        content = body.encode("utf-8")
        started = time.monotonic()

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            for attempt in range(1, attempts + 1):
                result.attempts = attempt
                try:
                    response = await self._attempt(client, url, content, headers, timeout)
                except DeliveryAttemptError as e:
                    track_delivery_attempt(e.outcome)
                    result.response_status = e.status_code
                    result.response_body = e.response_body
                    result.error = e.message
                    log.warning(
                        "webhook_attempt_failed",
                        attempt=attempt,
                        max_attempts=attempts,
                        status_code=e.status_code,
                        error=e.message,
                    )
                    if attempt < attempts:
                        delay = backoff_delay(attempt)
                        log.info("webhook_retry_scheduled", attempt=attempt, delay_seconds=delay)
                        await backoff_sleep(delay)
                    continue

                track_delivery_attempt("success")
                result.success = True
                result.response_status = response.status_code
                result.response_body = response.text
                result.error = None
                break

        result.response_time_ms = int((time.monotonic() - started) * 1000)
        result.response_body = result.response_body[:settings.WEBHOOK_RESPONSE_BODY_LIMIT]

        if result.success:
            log.info(
                "webhook_delivered",
                attempts=result.attempts,
                status_code=result.response_status,
                duration_ms=result.response_time_ms,
            )
        else:
            log.error(
                "webhook_delivery_failed",
                attempts=result.attempts,
                status_code=result.response_status,
                error=result.error,
                duration_ms=result.response_time_ms,
            )
        return result

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        url: str,
        content: bytes,
        headers: dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        """One POST, bounded by `timeout`. Raises DeliveryAttemptError on any failure."""
        try:
            response = await asyncio.wait_for(
                client.post(url, content=content, headers=headers),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise DeliveryAttemptError(f"Request timed out after {timeout:g}s", outcome="timeout")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryAttemptError(str(e) or type(e).__name__)

        if not is_success_status(response.status_code):
            raise DeliveryAttemptError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                outcome="http_error",
            )
        return response

    async def record_outcome(
        self,
        webhook_id: str,
        user_id: str,
        trigger: TriggerRequest,
        result: DeliveryResult,
        log=None,
    ) -> None:
        """
        Append the delivery log row and bump the counters.

        Write failures are logged, counted and swallowed; the trigger
        caller still gets the delivery result.
        """
        log = log or get_logger(webhook_id=webhook_id, user_id=user_id)
        now = utcnow()
        log_row = WebhookLog(
            webhook_config_id=webhook_id,
            user_id=user_id,
            request_method=trigger.method,
            request_payload=trigger.payload,
            request_headers=trigger.headers,
            response_status=result.response_status,
            response_body=result.response_body,
            response_time_ms=result.response_time_ms,
            error_message=result.error,
            attempts=result.attempts,
            success=result.success,
            triggered_at=now,
        )
        counter = "successful_calls" if result.success else "failed_calls"
        bump_counters = (
            update(WebhookConfig)
            .where(WebhookConfig.id == webhook_id)
            .values(
                total_calls=WebhookConfig.total_calls + 1,
                last_triggered_at=now,
                **{counter: getattr(WebhookConfig, counter) + 1},
            )
            .execution_options(synchronize_session=False)
        )

        if settings.WEBHOOK_AUDIT_MODE == "transactional":
            try:
                self.db.add(log_row)
                await self.db.execute(bump_counters)
                await self.db.commit()
            except (SQLAlchemyError, OSError) as e:
                await self._audit_failed("transaction", e, log)
            return

        try:
            self.db.add(log_row)
            await self.db.commit()
        except (SQLAlchemyError, OSError) as e:
            await self._audit_failed("log", e, log)

        try:
            await self.db.execute(bump_counters)
            await self.db.commit()
        except (SQLAlchemyError, OSError) as e:
            await self._audit_failed("counters", e, log)

    async def _audit_failed(self, kind: str, error: Exception, log) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as rollback_error:
            log.error("webhook_audit_rollback_failed", error=str(rollback_error))
        track_audit_write_failure(kind)
        capture_exception(error)
        log.error("webhook_audit_write_failed", kind=kind, error=str(error))
