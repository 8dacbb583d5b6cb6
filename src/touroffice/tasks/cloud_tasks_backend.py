"""Cloud Tasks backend for GCP deployment."""

import json
from datetime import datetime

from google.api_core.exceptions import AlreadyExists
from google.cloud import tasks_v2
from google.protobuf import timestamp_pb2

from touroffice.config import get_settings
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context

logger = get_logger(__name__)


def task_name_for(parent: str, task_id: str) -> str:
    """Cloud Tasks names allow only letters, digits, '-' and '_'."""
    safe_task_id = task_id.replace(":", "-").replace("/", "-")
    return f"{parent}/tasks/{safe_task_id}"


def enqueue_cloud_task(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """Enqueue task via Google Cloud Tasks (deduplicated by task name).

    Returns:
        True if the task was created or already existed.

    Raises:
        RuntimeError: If project, worker URL or service account are missing.
    """
    settings = get_settings()
    if not settings.gcp_project:
        raise RuntimeError("GOOGLE_CLOUD_PROJECT or GCP_PROJECT_ID required")
    if not settings.worker_base_url:
        raise RuntimeError("WORKER_BASE_URL required for Cloud Tasks")
    if not settings.tasks_oidc_service_account:
        raise RuntimeError("TASKS_OIDC_SERVICE_ACCOUNT required for Cloud Tasks")

    client = tasks_v2.CloudTasksClient()
    parent = client.queue_path(
        settings.gcp_project, settings.gcp_location, settings.gcp_tasks_queue
    )
    worker_url = settings.worker_base_url.rstrip("/")

    headers = {"Content-Type": "application/json"}
    if correlation_id:
        headers["X-Correlation-ID"] = correlation_id

    task = {
        "name": task_name_for(parent, task_id),
        "http_request": {
            "http_method": tasks_v2.HttpMethod.POST,
            "url": f"{worker_url}{url_path}",
            "headers": headers,
            "body": json.dumps(payload).encode(),
            "oidc_token": {
                "service_account_email": settings.tasks_oidc_service_account,
                "audience": settings.tasks_oidc_audience or worker_url,
            },
        },
    }

    if schedule_time:
        timestamp = timestamp_pb2.Timestamp()
        timestamp.FromDatetime(schedule_time)
        task["schedule_time"] = timestamp

    try:
        response = client.create_task(parent=parent, task=task)
    except AlreadyExists:
        logger.info(
            "cloud task already exists (dedupe)",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )
        return True

    logger.info(
        "cloud task enqueued",
        extra={
            "extra_fields": safe_log_context(task_name=response.name, url_path=url_path)
        },
    )
    return True
