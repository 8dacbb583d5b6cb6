"""Correlation ID propagation across request handlers and task workers."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

# Visible to every call made while handling one request or task.
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def new_correlation_id() -> str:
    """Generate a new correlation ID."""
    return uuid.uuid4().hex


def get_correlation_id() -> str:
    """Correlation ID of the current request/task, or "" outside of one."""
    return correlation_id_var.get()


@contextmanager
def correlation_scope(cid: str | None = None) -> Iterator[str]:
    """Bind a correlation ID for the duration of the block.

    A missing or empty ``cid`` gets a freshly generated one. The previous
    value is restored on exit, including on error.
    """
    value = cid or new_correlation_id()
    token = correlation_id_var.set(value)
    try:
        yield value
    finally:
        correlation_id_var.reset(token)
