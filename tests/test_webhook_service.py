"""
Tests for the webhook dispatcher: envelope, signing, retries and audit writes.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, call, patch

import httpx
import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from hookrelay.config import settings
from hookrelay.exceptions import BadRequestError, TriggerAuthError, WebhookNotFoundError
from hookrelay.models.webhook import WebhookConfig
from hookrelay.services.webhook_service import (
    DEFAULT_EVENT,
    TriggerRequest,
    TriggerResult,
    WebhookDispatcher,
    backoff_delay,
    build_envelope,
    build_headers,
    generate_webhook_signature,
    iso_timestamp,
    resolve_attempts,
    resolve_timeout,
    serialize_envelope,
    verify_webhook_signature,
)


def sample(name: str, labels: dict) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def post_trigger(payload=None) -> TriggerRequest:
    return TriggerRequest(
        method="POST",
        payload=payload if payload is not None else {"event": "call_completed", "call_id": "c-1"},
        headers={"content-type": "application/json"},
    )


# ============================================
# Envelope and signing
# ============================================

def test_signature_is_deterministic_and_byte_sensitive():
    body = '{"event":"call_completed","data":{"a":1}}'

    first = generate_webhook_signature(body, "s3cr3t")
    second = generate_webhook_signature(body, "s3cr3t")

    assert first == second
    assert first.startswith("sha256=")
    assert len(first) == len("sha256=") + 64
    assert generate_webhook_signature(body.replace("1", "2"), "s3cr3t") != first


def test_signature_matches_hmac_sha256_of_body():
    body = '{"event":"call.completed"}'
    expected = hmac.new(b"s3cr3t", body.encode("utf-8"), hashlib.sha256).hexdigest()

    assert generate_webhook_signature(body, "s3cr3t") == f"sha256={expected}"


def test_verify_signature():
    body = '{"event":"café"}'
    signature = generate_webhook_signature(body, "s3cr3t")

    assert verify_webhook_signature(body, "s3cr3t", signature)
    assert not verify_webhook_signature(body, "other", signature)
    assert not verify_webhook_signature(body, "s3cr3t", "sha256=é")


def test_iso_timestamp_has_milliseconds_and_z():
    now = datetime(2026, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    assert iso_timestamp(now) == "2026-01-02T03:04:05.678Z"


def test_envelope_takes_event_from_payload():
    now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    envelope = build_envelope({"event": "call.completed", "foo": "bar"}, "abc123", now=now)

    assert envelope == {
        "event": "call.completed",
        "data": {"event": "call.completed", "foo": "bar"},
        "timestamp": "2026-01-02T03:04:05.000Z",
        "webhook_id": "abc123",
    }


@pytest.mark.parametrize("payload", [{"foo": "bar"}, {"event": ""}, {"event": None}, ["a", "b"], None])
def test_envelope_defaults_event(payload):
    envelope = build_envelope(payload, "abc123")
    assert envelope["event"] == DEFAULT_EVENT
    assert envelope["data"] == payload


def test_serialized_envelope_is_compact():
    body = serialize_envelope({"event": "x", "data": {"name": "Zoë"}})
    assert body == '{"event":"x","data":{"name":"Zoë"}}'


def test_headers_without_secret():
    config = WebhookConfig(extra_headers={}, secret=None)
    headers = build_headers(config, "{}")

    assert headers == {
        "Content-Type": "application/json",
        "User-Agent": f"{settings.WEBHOOK_PRODUCT_NAME}-Webhook/1.0",
    }


def test_extra_headers_override_defaults_case_insensitively():
    config = WebhookConfig(
        extra_headers={"content-type": "application/vnd.crm+json", "X-Api-Key": 123},
        secret="s3cr3t",
    )
    headers = build_headers(config, "{}")

    assert "Content-Type" not in headers
    assert headers["content-type"] == "application/vnd.crm+json"
    assert headers["X-Api-Key"] == "123"
    assert headers[f"X-{settings.WEBHOOK_PRODUCT_NAME}-Signature"] == generate_webhook_signature("{}", "s3cr3t")


# ============================================
# Retry policy
# ============================================

@pytest.mark.parametrize(
    "configured, expected",
    [(1, 1), (3, 3), (None, 3), (0, 3), (-2, 3), (100, 6)],
)
def test_resolve_attempts(configured, expected):
    assert resolve_attempts(configured) == expected


def test_resolve_timeout_falls_back_to_default():
    assert resolve_timeout(5) == 5.0
    assert resolve_timeout(None) == float(settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS)


def test_backoff_doubles_and_is_capped():
    assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]
    assert backoff_delay(5) == settings.WEBHOOK_MAX_BACKOFF_SECONDS


def test_trigger_result_response_shape():
    result = TriggerResult(success=True, webhook_id="abc", webhook_name="CRM", response_status=200)

    assert result.http_status == 200
    assert result.to_response() == {
        "success": True,
        "webhook_id": "abc",
        "webhook_name": "CRM",
        "response_status": 200,
        "response_time_ms": 0,
        "error": None,
        "forwarded_to": None,
    }
    assert TriggerResult(success=False, webhook_id="abc", webhook_name="CRM").http_status == 500


# ============================================
# Dispatch
# ============================================

async def test_dispatch_empty_id_is_bad_request(db, target):
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    with pytest.raises(BadRequestError):
        await dispatcher.dispatch("", post_trigger())

    assert target.requests == []


async def test_dispatch_unknown_or_inactive_config(db, target, make_config, fetch):
    inactive = await make_config(is_active=False)
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    for webhook_id in ("does-not-exist", inactive.id):
        with pytest.raises(WebhookNotFoundError):
            await dispatcher.dispatch(webhook_id, post_trigger())

    assert target.requests == []
    assert await fetch.log_count() == 0
    assert (await fetch.config(inactive.id)).total_calls == 0


async def test_successful_delivery_is_signed_logged_and_counted(db, target, make_config, fetch):
    config = await make_config(secret="s3cr3t", extra_headers={"X-Tenant": "acme"})
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger())

    assert result.success is True
    assert result.response_status == 200
    assert result.forwarded_to == config.target_url
    assert result.webhook_name == "CRM sync"

    assert len(target.requests) == 1
    sent = target.requests[0]
    body = sent.content.decode("utf-8")
    assert str(sent.url) == config.target_url
    assert sent.method == "POST"
    assert sent.headers["X-Tenant"] == "acme"
    assert sent.headers[f"X-{settings.WEBHOOK_PRODUCT_NAME}-Signature"] == generate_webhook_signature(body, "s3cr3t")
    envelope = json.loads(body)
    assert envelope["event"] == "call_completed"
    assert envelope["webhook_id"] == config.id
    assert envelope["data"] == {"event": "call_completed", "call_id": "c-1"}

    stored = await fetch.config(config.id)
    assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 1, 0)
    assert stored.last_triggered_at is not None

    logs = await fetch.logs(config.id)
    assert len(logs) == 1
    assert logs[0].success is True
    assert logs[0].attempts == 1
    assert logs[0].response_status == 200
    assert logs[0].response_body == "ok"
    assert logs[0].request_method == "POST"
    assert logs[0].request_payload == {"event": "call_completed", "call_id": "c-1"}
    assert logs[0].error_message is None


async def test_always_failing_target_exhausts_attempts(db, target, make_config, fetch, no_backoff):
    config = await make_config(retry_attempts=3)
    target.queue(
        httpx.Response(500, text="boom 1"),
        httpx.Response(500, text="boom 2"),
        httpx.Response(500, text="boom 3"),
    )
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger())

    assert len(target.requests) == 3
    assert no_backoff.await_args_list == [call(2), call(4)]
    assert result.success is False
    assert result.response_status == 500
    assert result.error == "HTTP 500"

    stored = await fetch.config(config.id)
    assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 0, 1)

    logs = await fetch.logs(config.id)
    assert len(logs) == 1
    assert logs[0].response_status == 500
    assert logs[0].response_body == "boom 3"
    assert logs[0].attempts == 3
    assert logs[0].success is False


async def test_retry_stops_at_first_success(db, target, make_config, fetch, no_backoff):
    config = await make_config(retry_attempts=3)
    target.queue(
        httpx.Response(503),
        httpx.ConnectError("connection refused"),
        httpx.Response(200, text="accepted"),
    )
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger())

    assert len(target.requests) == 3
    assert no_backoff.await_count == 2
    assert result.success is True
    assert result.error is None

    stored = await fetch.config(config.id)
    assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 1, 0)
    logs = await fetch.logs(config.id)
    assert logs[0].response_body == "accepted"
    assert logs[0].attempts == 3


async def test_single_attempt_never_sleeps(db, target, make_config, no_backoff):
    config = await make_config(retry_attempts=1)
    target.queue(httpx.Response(500))
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger())

    assert result.success is False
    assert len(target.requests) == 1
    no_backoff.assert_not_awaited()


async def test_timeout_reports_status_zero(db, target, make_config, fetch):
    config = await make_config(retry_attempts=1, timeout_seconds=5)
    target.queue(httpx.ReadTimeout("read timed out"))
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger())

    assert result.success is False
    assert result.response_status == 0
    assert result.error == "Request timed out after 5s"
    logs = await fetch.logs(config.id)
    assert logs[0].response_status == 0
    assert logs[0].error_message == "Request timed out after 5s"


async def test_transport_error_message_is_kept(db, target, make_config):
    config = await make_config(retry_attempts=1)
    target.queue(httpx.ConnectError("connection refused"))
    before = sample("webhook_delivery_attempts_total", {"outcome": "transport_error"})
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger())

    assert result.response_status == 0
    assert result.error == "connection refused"
    assert sample("webhook_delivery_attempts_total", {"outcome": "transport_error"}) == before + 1


async def test_response_body_is_truncated(db, target, make_config, fetch):
    config = await make_config()
    target.queue(httpx.Response(200, text="x" * 1500))
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    await dispatcher.dispatch(config.id, post_trigger())

    logs = await fetch.logs(config.id)
    assert logs[0].response_body == "x" * 1000


async def test_back_to_back_triggers_count_twice(db, target, make_config, fetch):
    config = await make_config()
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    await dispatcher.dispatch(config.id, post_trigger())
    await dispatcher.dispatch(config.id, post_trigger())

    stored = await fetch.config(config.id)
    assert (stored.total_calls, stored.successful_calls) == (2, 2)
    assert len(await fetch.logs(config.id)) == 2


# ============================================
# Event filter and trigger token
# ============================================

async def test_unsubscribed_event_is_skipped_when_filtering(db, target, make_config, fetch):
    config = await make_config(filter_by_event=True, events=["call_completed"])
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger({"event": "call_started"}))

    assert result.skipped is True
    assert result.http_status == 202
    assert result.error == "Event 'call_started' is not subscribed"
    assert result.to_response()["skipped"] is True
    assert target.requests == []
    assert await fetch.log_count() == 0
    assert (await fetch.config(config.id)).total_calls == 0


async def test_unsubscribed_event_is_forwarded_without_filtering(db, target, make_config):
    config = await make_config(filter_by_event=False, events=["call_completed"])
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger({"event": "something_else"}))

    assert result.success is True
    assert len(target.requests) == 1


async def test_trigger_token_is_enforced(db, target, make_config, fetch):
    config = await make_config(trigger_token="tok-123")
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    for presented in (None, "wrong"):
        with pytest.raises(TriggerAuthError):
            await dispatcher.dispatch(config.id, post_trigger(), trigger_token=presented)

    assert target.requests == []
    assert await fetch.log_count() == 0

    result = await dispatcher.dispatch(config.id, post_trigger(), trigger_token="tok-123")
    assert result.success is True


async def test_authenticated_dispatch_skips_token_check(db, target, make_config):
    config = await make_config(trigger_token="tok-123")
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    result = await dispatcher.dispatch(config.id, post_trigger(), authenticated=True)

    assert result.success is True


# ============================================
# Audit writes
# ============================================

async def test_best_effort_audit_failure_still_reports_delivery(db, target, make_config, fetch):
    config = await make_config()
    config_id = config.id
    dispatcher = WebhookDispatcher(db, transport=target.transport)
    log_failures = sample("webhook_audit_write_failures_total", {"kind": "log"})
    counter_failures = sample("webhook_audit_write_failures_total", {"kind": "counters"})

    with patch.object(db, "commit", AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))):
        result = await dispatcher.dispatch(config_id, post_trigger())

    assert result.success is True
    assert len(target.requests) == 1
    assert sample("webhook_audit_write_failures_total", {"kind": "log"}) == log_failures + 1
    assert sample("webhook_audit_write_failures_total", {"kind": "counters"}) == counter_failures + 1
    assert await fetch.log_count() == 0
    assert (await fetch.config(config_id)).total_calls == 0


async def test_best_effort_counters_survive_log_failure(db, target, make_config, fetch):
    config = await make_config()
    config_id = config.id
    dispatcher = WebhookDispatcher(db, transport=target.transport)
    real_commit = db.commit
    calls = {"n": 0}

    async def fail_first_commit():
        calls["n"] += 1
        if calls["n"] == 1:
            raise SQLAlchemyError("log insert failed")
        await real_commit()

    with patch.object(db, "commit", side_effect=fail_first_commit):
        result = await dispatcher.dispatch(config_id, post_trigger())

    assert result.success is True
    assert await fetch.log_count() == 0
    assert (await fetch.config(config_id)).total_calls == 1


async def test_transactional_audit_is_all_or_nothing(db, target, make_config, fetch, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_AUDIT_MODE", "transactional")
    config = await make_config()
    config_id = config.id
    dispatcher = WebhookDispatcher(db, transport=target.transport)
    before = sample("webhook_audit_write_failures_total", {"kind": "transaction"})

    with patch.object(db, "commit", AsyncMock(side_effect=SQLAlchemyError("commit failed"))):
        result = await dispatcher.dispatch(config_id, post_trigger())

    assert result.success is True
    assert sample("webhook_audit_write_failures_total", {"kind": "transaction"}) == before + 1
    assert await fetch.log_count() == 0
    assert (await fetch.config(config_id)).total_calls == 0

    await dispatcher.dispatch(config_id, post_trigger())
    assert len(await fetch.logs(config_id)) == 1
    assert (await fetch.config(config_id)).successful_calls == 1


# ============================================
# JSON strictness, header precedence, connection release
# ============================================

def test_serialized_envelope_rejects_nan():
    with pytest.raises(ValueError):
        serialize_envelope({"event": "x", "data": {"v": float("nan")}})


def test_extra_header_cannot_shadow_signature():
    signature_name = f"X-{settings.WEBHOOK_PRODUCT_NAME}-Signature"
    config = WebhookConfig(
        extra_headers={signature_name.lower(): "sha256=forged"},
        secret="s3cr3t",
    )
    headers = build_headers(config, "{}")

    matching = [name for name in headers if name.lower() == signature_name.lower()]
    assert matching == [signature_name]
    assert headers[signature_name] == generate_webhook_signature("{}", "s3cr3t")


async def test_signature_header_sent_once(db, target, make_config):
    signature_name = f"X-{settings.WEBHOOK_PRODUCT_NAME}-Signature"
    config = await make_config(secret="s3cr3t", extra_headers={signature_name.upper(): "sha256=forged"})
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    await dispatcher.dispatch(config.id, post_trigger())

    sent = target.requests[0]
    assert sent.headers.get_list(signature_name) == [
        generate_webhook_signature(sent.content.decode("utf-8"), "s3cr3t")
    ]


async def test_no_transaction_is_held_during_delivery(db, make_config, fetch):
    config = await make_config(retry_attempts=2)
    config_id = config.id
    observed = []

    def handler(request: httpx.Request) -> httpx.Response:
        observed.append(db.in_transaction())
        return httpx.Response(500) if len(observed) == 1 else httpx.Response(200)

    dispatcher = WebhookDispatcher(db, transport=httpx.MockTransport(handler))

    result = await dispatcher.dispatch(config_id, post_trigger())

    assert observed == [False, False]
    assert result.success is True
    assert (await fetch.config(config_id)).successful_calls == 1
    assert len(await fetch.logs(config_id)) == 1


async def test_unencodable_payload_is_bad_request(db, target, make_config):
    config = await make_config()
    dispatcher = WebhookDispatcher(db, transport=target.transport)

    with pytest.raises(BadRequestError):
        await dispatcher.dispatch(config.id, post_trigger({"event": "x", "v": float("inf")}))

    assert target.requests == []
