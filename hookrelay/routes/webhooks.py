"""
Webhook configuration API routes.

Owners create and manage their webhook configurations here, read the
delivery log and fire test deliveries. Every route is scoped to the
authenticated user; another user's configuration is reported as 404.
"""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import AnyHttpUrl, BaseModel, Field, TypeAdapter, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.config import settings
from hookrelay.database import get_db
from hookrelay.dependencies.auth import TokenPayload, get_current_user
from hookrelay.dependencies.delivery import get_dispatcher
from hookrelay.exceptions import WebhookError
from hookrelay.logging_config import get_logger
from hookrelay.models.webhook import DEFAULT_EVENTS, WebhookConfig, WebhookLog
from hookrelay.services.webhook_config_service import WebhookConfigService
from hookrelay.services.webhook_service import TriggerRequest, WebhookDispatcher, user_agent


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

log = get_logger(component="webhooks_api")

_http_url = TypeAdapter(AnyHttpUrl)

# PATCH may clear these by sending null
NULLABLE_FIELDS = {"description", "secret", "trigger_token"}


def validate_target_url(value: str) -> str:
    """Accept absolute http(s) URLs; the value is stored as given."""
    try:
        _http_url.validate_python(value)
    except ValidationError:
        raise ValueError("target_url must be an absolute http(s) URL")
    return value


# Pydantic models for request/response
class CreateWebhookRequest(BaseModel):
    """Request model for creating a webhook configuration."""
    name: str = Field(min_length=1, max_length=255)
    target_url: str
    description: str | None = None
    secret: str | None = None
    is_active: bool = True
    events: list[str] = Field(default_factory=lambda: list(DEFAULT_EVENTS))
    filter_by_event: bool = False
    extra_headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: int = Field(default=30, ge=1, le=300)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    trigger_token: str | None = None

    @field_validator("target_url")
    @classmethod
    def check_target_url(cls, v: str) -> str:
        return validate_target_url(v)


class UpdateWebhookRequest(BaseModel):
    """Request model for a partial update. Omitted fields are left alone."""
    name: str | None = Field(default=None, min_length=1, max_length=255)
    target_url: str | None = None
    description: str | None = None
    secret: str | None = None
    is_active: bool | None = None
    events: list[str] | None = None
    filter_by_event: bool | None = None
    extra_headers: dict[str, str] | None = None
    timeout_seconds: int | None = Field(default=None, ge=1, le=300)
    retry_attempts: int | None = Field(default=None, ge=1, le=10)
    trigger_token: str | None = None

    @field_validator("target_url")
    @classmethod
    def check_target_url(cls, v: str | None) -> str | None:
        return validate_target_url(v) if v is not None else v


class TestWebhookRequest(BaseModel):
    """Optional body for a test delivery."""
    event: str = "webhook_test"
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookResponse(BaseModel):
    """Response model for a webhook configuration. Secrets are never echoed."""
    id: str
    user_id: str
    name: str
    description: str | None = None
    target_url: str
    trigger_url: str
    is_active: bool
    events: list[str]
    filter_by_event: bool
    extra_headers: dict[str, str]
    timeout_seconds: int
    retry_attempts: int
    has_secret: bool
    has_trigger_token: bool
    total_calls: int
    successful_calls: int
    failed_calls: int
    success_rate: int
    last_triggered_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class WebhookLogResponse(BaseModel):
    """Response model for one delivery log row."""
    id: str
    webhook_config_id: str
    request_method: str
    request_payload: Any = None
    request_headers: dict[str, str]
    response_status: int
    response_body: str
    response_time_ms: int
    error_message: str | None = None
    attempts: int
    success: bool
    triggered_at: str | None = None


def trigger_url(config_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/webhook-handler/{config_id}"


def config_to_response(config: WebhookConfig) -> WebhookResponse:
    """Convert WebhookConfig model to WebhookResponse."""
    return WebhookResponse(
        id=config.id,
        user_id=config.user_id,
        name=config.name,
        description=config.description,
        target_url=config.target_url,
        trigger_url=trigger_url(config.id),
        is_active=config.is_active,
        events=list(config.events or []),
        filter_by_event=config.filter_by_event,
        extra_headers=dict(config.extra_headers or {}),
        timeout_seconds=config.timeout_seconds,
        retry_attempts=config.retry_attempts,
        has_secret=bool(config.secret),
        has_trigger_token=bool(config.trigger_token),
        total_calls=config.total_calls,
        successful_calls=config.successful_calls,
        failed_calls=config.failed_calls,
        success_rate=config.success_rate,
        last_triggered_at=config.last_triggered_at.isoformat() if config.last_triggered_at else None,
        created_at=config.created_at.isoformat() if config.created_at else None,
        updated_at=config.updated_at.isoformat() if config.updated_at else None,
    )


def log_to_response(entry: WebhookLog) -> WebhookLogResponse:
    """Convert WebhookLog model to WebhookLogResponse."""
    return WebhookLogResponse(
        id=entry.id,
        webhook_config_id=entry.webhook_config_id,
        request_method=entry.request_method,
        request_payload=entry.request_payload,
        request_headers=dict(entry.request_headers or {}),
        response_status=entry.response_status,
        response_body=entry.response_body or "",
        response_time_ms=entry.response_time_ms,
        error_message=entry.error_message,
        attempts=entry.attempts,
        success=entry.success,
        triggered_at=entry.triggered_at.isoformat() if entry.triggered_at else None,
    )


async def get_owned_config(
    service: WebhookConfigService,
    webhook_id: str,
    user_id: str
) -> WebhookConfig:
    config = await service.get_config(webhook_id, user_id)
    if not config:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )
    return config


@router.post("", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a webhook configuration.

    The response includes the trigger URL callers should hit.
    """
    service = WebhookConfigService(db)
    config = await service.create_config(current_user.sub, **request.model_dump())

    log.info("webhook_config_created", webhook_id=config.id, user_id=current_user.sub)
    return config_to_response(config)


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the user's webhook configurations, newest first."""
    service = WebhookConfigService(db)
    configs = await service.list_configs(current_user.sub)
    return [config_to_response(c) for c in configs]


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(
    webhook_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get a single webhook configuration."""
    service = WebhookConfigService(db)
    config = await get_owned_config(service, webhook_id, current_user.sub)
    return config_to_response(config)


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    request: UpdateWebhookRequest,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Partially update a webhook configuration."""
    changes = {
        field: value
        for field, value in request.model_dump(exclude_unset=True).items()
        if value is not None or field in NULLABLE_FIELDS
    }

    service = WebhookConfigService(db)
    config = await service.update_config(webhook_id, current_user.sub, **changes)
    if not config:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )

    log.info(
        "webhook_config_updated",
        webhook_id=webhook_id,
        user_id=current_user.sub,
        fields=sorted(changes),
    )
    return config_to_response(config)


@router.delete("/{webhook_id}", response_model=dict)
async def delete_webhook(
    webhook_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Delete a webhook configuration together with its delivery log."""
    service = WebhookConfigService(db)
    deleted = await service.delete_config(webhook_id, current_user.sub)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found"
        )

    log.info("webhook_config_deleted", webhook_id=webhook_id, user_id=current_user.sub)
    return {"message": "Webhook deleted successfully", "id": webhook_id}


@router.get("/{webhook_id}/logs", response_model=list[WebhookLogResponse])
async def list_webhook_logs(
    webhook_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Most recent delivery log rows, newest first."""
    service = WebhookConfigService(db)
    await get_owned_config(service, webhook_id, current_user.sub)

    entries = await service.get_logs(webhook_id, current_user.sub, limit=limit)
    return [log_to_response(e) for e in entries]


@router.get("/{webhook_id}/stats", response_model=dict)
async def get_webhook_stats(
    webhook_id: str,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Delivery statistics.

    `counters` are the running totals kept on the configuration row;
    `logged` is recomputed from the delivery log.
    """
    service = WebhookConfigService(db)
    config = await get_owned_config(service, webhook_id, current_user.sub)
    aggregates = await service.get_log_aggregates(webhook_id, current_user.sub)

    last_logged_at = aggregates.pop("last_logged_at")
    return {
        "webhook_id": config.id,
        "counters": {
            "total_calls": config.total_calls,
            "successful_calls": config.successful_calls,
            "failed_calls": config.failed_calls,
            "success_rate": config.success_rate,
            "last_triggered_at": config.last_triggered_at.isoformat() if config.last_triggered_at else None,
        },
        "logged": {
            **aggregates,
            "last_logged_at": last_logged_at.isoformat() if last_logged_at else None,
        },
    }


@router.post("/{webhook_id}/test", response_model=dict)
async def test_webhook(
    webhook_id: str,
    request: TestWebhookRequest | None = None,
    current_user: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher)
):
    """
    Send a test delivery to the configured target URL.

    Runs the same pipeline as a real trigger, so it is logged and counted.
    The delivery outcome is reported in the body; the route answers 200
    whenever the delivery was attempted and 202 when the configuration
    filters out the test event.
    """
    request = request or TestWebhookRequest()

    service = WebhookConfigService(db)
    await get_owned_config(service, webhook_id, current_user.sub)

    trigger = TriggerRequest(
        method="POST",
        payload={**request.data, "event": request.event},
        headers={"user-agent": user_agent(), "x-triggered-by": current_user.sub},
    )
    try:
        result = await dispatcher.dispatch(webhook_id, trigger, authenticated=True)
    except WebhookError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail=e.message
        )

    log.info(
        "webhook_test_sent",
        webhook_id=webhook_id,
        user_id=current_user.sub,
        success=result.success,
    )
    if result.skipped:
        return JSONResponse(content=result.to_response(), status_code=status.HTTP_202_ACCEPTED)
    return result.to_response()
