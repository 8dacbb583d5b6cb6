"""Authentication of task requests on worker routes.

Accepts either the shared internal secret (http backend, local/staging)
or a Cloud Tasks OIDC token for the configured audience.
"""

from __future__ import annotations

import hmac

from fastapi import Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from touroffice.config import get_settings
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context
from touroffice.tasks.http_backend import INTERNAL_SECRET_HEADER

logger = get_logger(__name__)


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[len("Bearer "):]


def verify_task_oidc(token: str) -> bool:
    """Verify a Cloud Tasks OIDC token. Fails closed without an audience."""
    settings = get_settings()
    if not token or not settings.tasks_oidc_audience:
        return False

    try:
        claims = id_token.verify_oauth2_token(
            token, google_requests.Request(), audience=settings.tasks_oidc_audience
        )
    except ValueError as e:
        logger.warning(
            "OIDC token verification failed",
            extra={"extra_fields": safe_log_context(error=str(e))},
        )
        return False

    expected_email = settings.tasks_oidc_service_account
    if expected_email and claims.get("email") != expected_email:
        logger.warning("OIDC service account mismatch")
        return False
    return True


def verify_task_auth(request: Request) -> bool:
    """True if the request carries the internal secret or a valid OIDC token."""
    secret = get_settings().internal_task_secret
    presented = request.headers.get(INTERNAL_SECRET_HEADER, "")
    if secret and presented and hmac.compare_digest(presented, secret):
        return True

    token = extract_bearer_token(request)
    if not token:
        logger.warning(
            "task auth failed: no credentials",
            extra={"extra_fields": safe_log_context(path=request.url.path)},
        )
        return False
    return verify_task_oidc(token)
