import json

import httpx
import pytest

from boxrental.infra.notifications import (
    BOOKING_CANCELLED,
    LoggingNotifier,
    WebhookNotifier,
    dispatch_notification,
    resolve_notifier,
)
from boxrental.settings import settings

HOOK_URL = "https://hooks.example.com/boxrental"


def _notifier(handler, *, max_attempts=3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotifier(HOOK_URL, client=client, max_attempts=max_attempts, backoff_seconds=0)


@pytest.mark.anyio
async def test_webhook_retries_server_errors_then_delivers():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        if len(bodies) < 3:
            return httpx.Response(503)
        return httpx.Response(204)

    await _notifier(handler).notify(BOOKING_CANCELLED, {"booking_id": "b-1"})

    assert len(bodies) == 3
    assert bodies[-1] == {"event": BOOKING_CANCELLED, "payload": {"booking_id": "b-1"}}


@pytest.mark.anyio
async def test_webhook_raises_after_exhausting_attempts():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(500)

    with pytest.raises(RuntimeError, match="notification_webhook_status_500"):
        await _notifier(handler, max_attempts=2).notify(BOOKING_CANCELLED, {})

    assert len(calls) == 2


@pytest.mark.anyio
async def test_webhook_does_not_retry_client_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(400)

    with pytest.raises(RuntimeError):
        await _notifier(handler).notify(BOOKING_CANCELLED, {})

    assert len(calls) == 1


@pytest.mark.anyio
async def test_webhook_reraises_connection_errors_on_last_attempt():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(httpx.ConnectError):
        await _notifier(handler, max_attempts=2).notify(BOOKING_CANCELLED, {})

    assert len(calls) == 2


@pytest.mark.anyio
async def test_dispatch_swallows_delivery_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    delivered = await dispatch_notification(_notifier(handler, max_attempts=1), BOOKING_CANCELLED, {})

    assert delivered is False
    assert await dispatch_notification(None, BOOKING_CANCELLED, {}) is False


def test_resolve_notifier_uses_webhook_when_configured(monkeypatch):
    monkeypatch.setattr(settings, "notification_webhook_url", None)
    assert isinstance(resolve_notifier(), LoggingNotifier)

    monkeypatch.setattr(settings, "notification_webhook_url", HOOK_URL)
    notifier = resolve_notifier()
    assert isinstance(notifier, WebhookNotifier)
    assert notifier.url == HOOK_URL
