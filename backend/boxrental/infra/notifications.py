from __future__ import annotations

import logging
import random
from typing import Any, Protocol

import anyio
import httpx

from boxrental.settings import settings

logger = logging.getLogger(__name__)

BOOKING_MATERIALIZED = "booking_materialized"
BOOKING_CANCELLED = "booking_cancelled"
BOOKING_EXTENDED = "booking_extended"
RECONCILIATION_REQUIRED = "reconciliation_required"


class Notifier(Protocol):
    async def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification", extra={"extra": {"event": event, **payload}})


class WebhookNotifier:
    """Posts notifications as JSON to an outbound webhook (ops channel, mailer relay)."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.url = url
        self.client = client
        self.timeout_seconds = timeout_seconds or settings.notification_timeout_seconds
        self.max_attempts = max(1, max_attempts or settings.notification_webhook_max_attempts)
        self.backoff_seconds = (
            settings.notification_webhook_backoff_seconds if backoff_seconds is None else backoff_seconds
        )

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        client = self.client or httpx.AsyncClient(timeout=self.timeout_seconds)
        close_client = self.client is None
        try:
            response = await self._post_with_retry(client, {"event": event, "payload": payload})
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"notification_webhook_status_{response.status_code}")

    async def _post_with_retry(self, client: httpx.AsyncClient, body: dict[str, Any]) -> httpx.Response:
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.post(self.url, json=body, timeout=self.timeout_seconds)
                if response.status_code == 429 or response.status_code >= 500:
                    if attempt < self.max_attempts:
                        await anyio.sleep(self._delay(attempt))
                        continue
                return response
            except (httpx.TimeoutException, httpx.ConnectError):
                if attempt < self.max_attempts:
                    await anyio.sleep(self._delay(attempt))
                    continue
                raise
        raise RuntimeError("notification_retry_exhausted")  # pragma: no cover

    def _delay(self, attempt: int) -> float:
        delay = self.backoff_seconds * (2 ** (attempt - 1))
        return delay + delay * random.uniform(0.0, 0.3)


def resolve_notifier(app_settings: Any = None) -> Notifier:
    app_settings = app_settings or settings
    url = getattr(app_settings, "notification_webhook_url", None)
    if url:
        return WebhookNotifier(url)
    return LoggingNotifier()


async def dispatch_notification(
    notifier: Notifier | None,
    event: str,
    payload: dict[str, Any],
    *,
    timeout_seconds: float | None = None,
) -> bool:
    """Deliver a notification without letting its failure reach the caller."""
    if notifier is None:
        return False
    timeout = timeout_seconds or settings.notification_timeout_seconds
    try:
        with anyio.fail_after(timeout):
            await notifier.notify(event, payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "notification_failed",
            extra={"extra": {"event": event, "reason": type(exc).__name__}},
        )
        return False
    return True
