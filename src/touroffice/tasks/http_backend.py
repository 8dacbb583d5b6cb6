"""HTTP backend for tasks - sends tasks to the worker via HTTP POST.

Used in local/staging environments where api and worker run as separate
containers on the same network. Authenticates with the shared internal
secret.
"""

from datetime import datetime

import requests

from touroffice.config import get_settings
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context

logger = get_logger(__name__)

INTERNAL_SECRET_HEADER = "X-Internal-Task-Secret"


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """POST the task to WORKER_BASE_URL + url_path.

    Returns:
        True if the worker answered 2xx, False otherwise.
    """
    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )
        return True

    settings = get_settings()
    url = f"{settings.worker_base_url.rstrip('/')}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-ID": correlation_id or "",
        "X-Task-Id": task_id,
    }
    if settings.internal_task_secret:
        headers[INTERNAL_SECRET_HEADER] = settings.internal_task_secret

    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=settings.tasks_http_timeout_seconds,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={
                "extra_fields": safe_log_context(
                    task_id=task_id, url_path=url_path, error=str(e)
                )
            },
        )
        return False

    logger.info(
        "HTTP task enqueued",
        extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
    )
    return True
