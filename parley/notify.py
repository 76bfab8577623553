from __future__ import annotations

import logging
from typing import Protocol

import httpx

from parley.core.config import settings


logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    async def send(self, subject: str, message: str) -> None: ...


class LoggingAlertSink:
    async def send(self, subject: str, message: str) -> None:
        logger.warning("alert: %s\n%s", subject, message)


class WebhookAlertSink:
    """POSTs `{"subject", "text"}` JSON to an incoming-webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url: str = url
        self.timeout_s: float = timeout_s
        self._transport: httpx.AsyncBaseTransport | None = transport

    async def send(self, subject: str, message: str) -> None:
        timeout = httpx.Timeout(self.timeout_s, connect=min(5.0, self.timeout_s))
        async with httpx.AsyncClient(timeout=timeout, trust_env=False, transport=self._transport) as client:
            resp = await client.post(self.url, json={"subject": subject, "text": message})
            _ = resp.raise_for_status()


def default_alert_sink() -> AlertSink:
    if settings.alert_webhook_url:
        return WebhookAlertSink(settings.alert_webhook_url)
    return LoggingAlertSink()
