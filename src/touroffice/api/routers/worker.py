"""Worker health route (APP_ROLE=worker)."""

from fastapi import APIRouter

from touroffice.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/tasks/health")
def tasks_health() -> dict:
    """Tasks subsystem health, with the delivery mode in use."""
    settings = get_settings()
    return {
        "status": "ok",
        "subsystem": "tasks",
        "backend": settings.tasks_backend,
        "notifier": "webhook" if settings.notifier_url else "log",
    }
