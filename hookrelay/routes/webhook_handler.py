"""
Inbound trigger endpoint.

`/webhook-handler/{webhookId}` forwards whatever it receives to the
configuration's target URL. The last path segment is the configuration id.
Responses always carry permissive CORS headers so browser-based
integrations can call it directly.
"""
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from hookrelay.dependencies.delivery import get_dispatcher
from hookrelay.exceptions import WebhookError
from hookrelay.logging_config import get_logger
from hookrelay.sentry_config import capture_exception
from hookrelay.services.trigger_parser import parse_trigger_payload
from hookrelay.services.webhook_service import (
    TRIGGER_TOKEN_HEADER,
    TriggerRequest,
    WebhookDispatcher,
)


router = APIRouter(tags=["webhook-handler"])

log = get_logger(component="webhook_handler")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}
TRIGGER_METHODS = ["GET", "POST", "PUT", "PATCH"]


def cors_json(content: dict, status_code: int) -> JSONResponse:
    return JSONResponse(content=content, status_code=status_code, headers=CORS_HEADERS)


def recorded_headers(request: Request) -> dict[str, str]:
    """Inbound headers as stored in the delivery log, trigger token masked."""
    headers = dict(request.headers)
    token_header = TRIGGER_TOKEN_HEADER.lower()
    if token_header in headers:
        headers[token_header] = "[redacted]"
    return headers


@router.options("/webhook-handler")
@router.options("/webhook-handler/{trigger_path:path}")
async def trigger_preflight(trigger_path: str = ""):
    """CORS preflight."""
    return Response(status_code=200, headers=CORS_HEADERS)


@router.api_route("/webhook-handler", methods=TRIGGER_METHODS)
async def trigger_without_id():
    """A trigger URL must end with a configuration id."""
    return cors_json({"error": "Webhook ID is required"}, 400)


@router.api_route("/webhook-handler/{trigger_path:path}", methods=TRIGGER_METHODS)
async def handle_trigger(
    trigger_path: str,
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """
    Forward a trigger to the configured target URL.

    Returns 200 when the target accepted the delivery, 500 when all
    attempts failed, 202 when the event was filtered out, and 400/401/404
    for bad trigger URLs, bad trigger tokens and unknown or inactive
    configurations.
    """
    webhook_id = trigger_path.split("/")[-1]

    try:
        payload = await parse_trigger_payload(request)
        trigger = TriggerRequest(
            method=request.method,
            payload=payload,
            headers=recorded_headers(request),
        )
        result = await dispatcher.dispatch(
            webhook_id,
            trigger,
            trigger_token=request.headers.get(TRIGGER_TOKEN_HEADER),
        )
    except WebhookError as e:
        log.info(
            "webhook_trigger_rejected",
            webhook_id=webhook_id or None,
            status_code=e.status_code,
            reason=e.message,
        )
        return cors_json({"error": e.message}, e.status_code)
    except Exception as e:
        capture_exception(e)
        log.exception("webhook_handler_error", webhook_id=webhook_id, error=str(e))
        return cors_json({"error": "Internal server error", "message": str(e)}, 500)

    return cors_json(result.to_response(), result.http_status)
