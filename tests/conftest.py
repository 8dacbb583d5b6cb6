"""Shared pytest fixtures for Tour Office tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_settings_and_tasks():
    """Reset process-wide settings and the notifications tasks client.

    Settings are cached with lru_cache and the tasks client remembers
    every task_id it has seen; both would leak between tests otherwise.
    The replacement client has no handlers, so scheduled notifications are
    only registered and never reach a notifier.
    """
    from touroffice import notifications
    from touroffice.config import get_settings
    from touroffice.tasks.client import TasksClient

    get_settings.cache_clear()
    notifications._tasks_client = TasksClient(backend="inline")
    yield
    get_settings.cache_clear()
    notifications._tasks_client = TasksClient(backend="inline")
