"""Health routes mounted for every role."""

from fastapi import APIRouter, Response

from touroffice.infra.db import txn
from touroffice.observability.logging import get_logger

router = APIRouter(tags=["health"])

logger = get_logger(__name__)


@router.get("/health")
def health() -> dict:
    """Liveness: the process is serving requests."""
    return {"status": "ok", "service": "touroffice"}


@router.get("/health/ready")
def ready(response: Response) -> dict:
    """Readiness: the ledger database answers."""
    try:
        with txn() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
    except Exception:
        logger.exception("readiness check failed")
        response.status_code = 503
        return {"status": "unavailable", "database": "down"}
    return {"status": "ok", "database": "up"}
