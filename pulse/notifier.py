"""Alert delivery. Fire and forget: delivery failures never reach the caller."""
from __future__ import annotations

import logging
from typing import Protocol

import httpx

from pulse.config import Settings
from pulse.models import Alert

log = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, alert: Alert) -> None: ...


class NullNotifier:
    """Used when no delivery channel is configured."""

    def send(self, alert: Alert) -> None:
        log.debug("No notifier configured; alert %s not delivered", alert.id)


class WebhookNotifier:
    """POST alert payloads to a chat/incident webhook (Slack, Teams, etc.)."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def payload(self, alert: Alert) -> dict:
        return {
            "text": f"[{alert.severity.upper()}] {alert.title}",
            "alert": {
                "id": alert.id, "type": alert.type, "severity": alert.severity,
                "title": alert.title, "description": alert.description,
                "kpi_id": alert.kpi_id, "department_id": alert.department_id,
            },
        }

    def send(self, alert: Alert) -> None:
        if self._client is not None:
            resp = self._client.post(self.url, json=self.payload(alert), timeout=self.timeout)
        else:
            resp = httpx.post(self.url, json=self.payload(alert), timeout=self.timeout)
        resp.raise_for_status()


def build_notifier(settings: Settings) -> Notifier:
    if settings.webhook_url:
        return WebhookNotifier(settings.webhook_url, timeout=settings.webhook_timeout_seconds)
    return NullNotifier()


def dispatch(notifier: Notifier | None, alert: Alert) -> bool:
    """Deliver *alert*; log and swallow delivery failures. Returns success."""
    if notifier is None:
        return False
    try:
        notifier.send(alert)
    except Exception as exc:
        log.warning("Notification failed for alert %s (%s): %s", alert.id, alert.title, exc)
        return False
    return True
