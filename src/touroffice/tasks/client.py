"""Tasks client with idempotent enqueue.

Backends, selected by the TASKS_BACKEND setting:
- inline (default): runs the handler registered for the task's path in
  this process; scheduled tasks are only registered
- http: POSTs the task to the worker service
- cloud_tasks: creates a Google Cloud Tasks HTTP task
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
from typing import Protocol

from touroffice.config import get_settings

# Task ids remembered per process; older ids are forgotten first.
MAX_SEEN_IDS = 10_000


class TaskHandler(Protocol):
    """Protocol for task handlers."""

    def __call__(self, payload: dict) -> None:
        """Execute task with given payload."""
        ...


class TasksClient:
    """Tasks client with idempotent enqueue by task_id.

    Tracks the most recent task_ids seen by this process; the same task_id
    is a no-op. Cloud Tasks additionally dedupes by task name across
    processes.
    """

    def __init__(
        self,
        backend: str | None = None,
        *,
        handlers: dict[str, TaskHandler] | None = None,
        max_seen_ids: int = MAX_SEEN_IDS,
    ) -> None:
        self._backend = backend
        self._handlers: dict[str, TaskHandler] = dict(handlers or {})
        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        self._max_seen_ids = max_seen_ids
        self._registered: list[dict] = []

    @property
    def backend(self) -> str:
        return self._backend or get_settings().tasks_backend

    def register_handler(self, url_path: str, handler: TaskHandler) -> None:
        """Handler the inline backend runs for tasks posted to ``url_path``."""
        self._handlers[url_path] = handler

    def _remember(self, task_id: str) -> None:
        self._seen_ids[task_id] = None
        while len(self._seen_ids) > self._max_seen_ids:
            self._seen_ids.popitem(last=False)

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Hand a task to the worker endpoint ``url_path``.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g. "/tasks/notifications/send").
            payload: Task data (ids only, no contact details).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional future execution time.

        Returns:
            True if the task was handed off (or run/registered inline),
            False if task_id was already seen or the http handoff failed.

        Raises:
            ValueError: If the backend is unknown.
            Exception: Whatever an inline handler raises; the task_id is
                not remembered so the task can be retried.
        """
        if task_id in self._seen_ids:
            return False

        backend = self.backend
        if backend == "inline":
            handler = self._handlers.get(url_path)
            if handler is not None and schedule_time is None:
                handler(payload)
            self._remember(task_id)
            self._registered.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            return True

        if backend == "http":
            from touroffice.tasks.http_backend import enqueue_http

            ok = enqueue_http(task_id, url_path, payload, correlation_id, schedule_time)
        elif backend == "cloud_tasks":
            from touroffice.tasks.cloud_tasks_backend import enqueue_cloud_task

            ok = enqueue_cloud_task(
                task_id, url_path, payload, correlation_id, schedule_time
            )
        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {backend}")

        if ok:
            self._remember(task_id)
        return ok

    def was_enqueued(self, task_id: str) -> bool:
        return task_id in self._seen_ids

    def get_registered_tasks(self) -> list[dict]:
        """Inline registrations (useful for testing)."""
        return list(self._registered)

    def clear(self) -> None:
        self._seen_ids.clear()
        self._registered.clear()
