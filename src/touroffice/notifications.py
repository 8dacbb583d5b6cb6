"""Notifier handoff.

Core operations schedule a notification only after their transaction has
committed. The task carries ids, never contact details; the worker route
hands it to the external notifier, which owns delivery (email, SMS). With
the inline tasks backend the notifier is called in-process instead.
"""

from __future__ import annotations

from typing import Any, Protocol

import requests

from touroffice.config import Settings, get_settings
from touroffice.observability.context import get_correlation_id
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context
from touroffice.tasks.client import TasksClient

logger = get_logger(__name__)

NOTIFICATION_TASK_PATH = "/tasks/notifications/send"

EVENTS = frozenset({
    "proposal_accepted",
    "proposal_declined",
    "booking_confirmed",
    "final_payment_received",
    "discount_applied",
    "lunch_order_sent_to_supplier",
})


def _get_tasks_client() -> TasksClient:
    return _tasks_client


class NotifierError(Exception):
    """The external notifier did not accept the notification."""


def notification_task_id(event: str, aggregate_id: str) -> str:
    return f"notify:{event}:{aggregate_id}"


def schedule_notification(
    event: str,
    *,
    aggregate_type: str,
    aggregate_id: str,
    data: dict[str, Any] | None = None,
) -> bool:
    """Enqueue a notification task. Call only after the commit.

    The state change is already durable, so a failed handoff is logged
    and reported as False instead of raised.

    Raises:
        ValueError: If ``event`` is unknown.
    """
    if event not in EVENTS:
        raise ValueError(f"Unknown notification event: {event}")

    task_id = notification_task_id(event, aggregate_id)
    payload = {
        "event": event,
        "aggregate_type": aggregate_type,
        "aggregate_id": aggregate_id,
        "data": data or {},
    }
    try:
        enqueued = _get_tasks_client().enqueue_http(
            task_id=task_id,
            url_path=NOTIFICATION_TASK_PATH,
            payload=payload,
            correlation_id=get_correlation_id() or None,
        )
    except Exception:
        logger.exception(
            "notification enqueue failed",
            extra={"extra_fields": safe_log_context(task_id=task_id, event=event)},
        )
        return False

    logger.info(
        "notification scheduled",
        extra={
            "extra_fields": safe_log_context(
                task_id=task_id, event=event, enqueued=enqueued
            )
        },
    )
    return enqueued


class Notifier(Protocol):
    def send(self, event: str, payload: dict[str, Any]) -> None: ...


class WebhookNotifier:
    """POSTs notifications to the external notifier service."""

    def __init__(self, url: str, *, timeout_seconds: int = 30) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds

    def send(self, event: str, payload: dict[str, Any]) -> None:
        try:
            response = requests.post(
                self._url,
                json={"event": event, **payload},
                headers={"X-Correlation-ID": get_correlation_id()},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotifierError(str(e)) from e


class LogNotifier:
    """Used when no NOTIFIER_URL is configured."""

    def send(self, event: str, payload: dict[str, Any]) -> None:
        logger.info(
            "notification (log only)",
            extra={
                "extra_fields": safe_log_context(
                    event=event,
                    aggregate_type=payload.get("aggregate_type"),
                    aggregate_id=payload.get("aggregate_id"),
                )
            },
        )


def get_notifier(settings: Settings | None = None) -> Notifier:
    settings = settings or get_settings()
    if settings.notifier_url:
        return WebhookNotifier(
            settings.notifier_url, timeout_seconds=settings.tasks_http_timeout_seconds
        )
    return LogNotifier()


def deliver_notification(payload: dict[str, Any], notifier: Notifier | None = None) -> None:
    """Worker side: forward one notification task to the notifier.

    Raises:
        ValueError: If the payload names an unknown event.
        NotifierError: If the notifier rejects it (the task is retried).
    """
    event = payload.get("event")
    if event not in EVENTS:
        raise ValueError(f"Unknown notification event: {event}")
    (notifier or get_notifier()).send(event, payload)


def build_tasks_client(backend: str | None = None) -> TasksClient:
    """Tasks client whose inline backend delivers notifications in-process."""
    client = TasksClient(backend)
    client.register_handler(NOTIFICATION_TASK_PATH, deliver_notification)
    return client


# Module-level tasks client (can be overridden in tests)
_tasks_client = build_tasks_client()
