# src/notesync/core/notify.py
"""Failure notification sinks.

The coordinator calls notify() once per incident, after the failure
marker is written. A sink must never raise: a notification that cannot
be delivered is logged and the run's exit status is unaffected.
"""

from __future__ import annotations

from typing import Protocol

import httpx

from notesync.contracts.records import FailureRecord
from notesync.core.config import NotificationSettings
from notesync.core.logging import get_logger

logger = get_logger(__name__)


class NotificationSink(Protocol):
    def notify(self, record: FailureRecord) -> None: ...


class LogNotifier:
    """Writes the failure record to the error log."""

    def notify(self, record: FailureRecord) -> None:
        logger.error("run_failed_notification", **record.to_dict())


class WebhookNotifier:
    """POSTs the failure record as JSON.

    Example:
        notifier = WebhookNotifier("https://hooks.example.org/notes", timeout_seconds=10)
        notifier.notify(record)
    """

    def __init__(self, url: str, *, timeout_seconds: float = 10.0, client: httpx.Client | None = None) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._client = client

    def notify(self, record: FailureRecord) -> None:
        payload = {"event": "notesync.run_failed", **record.to_dict()}
        try:
            if self._client is not None:
                response = self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("notification_failed", url=self._url, error=str(e), error_type=type(e).__name__)
            return
        logger.info("notification_sent", url=self._url, status_code=response.status_code)


def create_notifier(settings: NotificationSettings) -> NotificationSink:
    """WebhookNotifier when a URL is configured, LogNotifier otherwise."""
    if settings.webhook_url:
        return WebhookNotifier(settings.webhook_url, timeout_seconds=settings.timeout_seconds)
    return LogNotifier()
