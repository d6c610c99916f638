"""
Sentry configuration for error tracking.

Captures unhandled exceptions from the trigger endpoint and the management API.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from hookrelay.config import settings
from hookrelay.logging_config import get_logger

log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=strip_secrets,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_initialized", environment=settings.ENVIRONMENT)


SIGNATURE_HEADER_SUFFIX = "-signature"
REDACTED_HEADERS = {"authorization", "x-webhook-token", "apikey"}


def strip_secrets(event, hint):
    """
    Redact credentials and signatures from request headers before sending.

    Trigger requests often carry bearer tokens or trigger tokens that
    must not leave the process.
    """
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            lowered = name.lower()
            if lowered in REDACTED_HEADERS or lowered.endswith(SIGNATURE_HEADER_SUFFIX):
                headers[name] = "[redacted]"
    return event


def capture_exception(exc_info=None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except Exception:
            capture_exception()
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)
