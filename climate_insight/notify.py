from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

import requests

LOGGER = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None:
        ...


class LogNotifier:
    def notify(self, title: str, body: str) -> None:
        LOGGER.info("Notification: %s - %s", title, body)


class WebhookNotifier:
    """Posts notifications to a chat-style webhook on a background thread."""

    def __init__(self, url: str, timeout_s: float = 5.0):
        self.url = url
        self.timeout_s = timeout_s

    def notify(self, title: str, body: str) -> None:
        thread = threading.Thread(target=self._post, args=(title, body), daemon=True)
        thread.start()

    def _post(self, title: str, body: str) -> None:
        payload = {"title": title, "text": f"{title}\n{body}"}
        try:
            resp = requests.post(self.url, json=payload, timeout=self.timeout_s)
            resp.raise_for_status()
        except requests.exceptions.RequestException as exc:
            LOGGER.warning("Webhook notification failed: %s: %s", type(exc).__name__, exc)


def build_notifier(enabled: bool, webhook_url: Optional[str]) -> Optional[Notifier]:
    if not enabled:
        return None
    if webhook_url:
        return WebhookNotifier(webhook_url)
    return LogNotifier()
