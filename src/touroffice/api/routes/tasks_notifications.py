"""Worker task route: deliver one notification to the external notifier."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from touroffice.api.task_auth import verify_task_auth
from touroffice.notifications import NotifierError, deliver_notification
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/notifications", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/send")
async def send_notification(request: Request) -> dict:
    """Forward a notification task.

    Returns 5xx when the notifier fails so the task backend retries.
    """
    if not await run_in_threadpool(verify_task_auth, request):
        raise HTTPException(status_code=401, detail="unauthorized")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid json")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid payload")

    fields = safe_log_context(
        event=payload.get("event"),
        aggregate_id=payload.get("aggregate_id"),
    )
    try:
        await run_in_threadpool(deliver_notification, payload)
    except ValueError:
        logger.warning("notification task rejected", extra={"extra_fields": fields})
        raise HTTPException(status_code=400, detail="unknown event")
    except NotifierError:
        logger.exception("notification delivery failed", extra={"extra_fields": fields})
        raise HTTPException(status_code=502, detail="notifier unavailable")

    logger.info("notification delivered", extra={"extra_fields": fields})
    return {"ok": True}
