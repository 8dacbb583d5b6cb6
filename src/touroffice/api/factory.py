"""FastAPI application factory with role-based route mounting."""

from typing import Literal

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from touroffice.config import get_settings
from touroffice.domain.errors import DomainError, GatewayError
from touroffice.observability.context import CORRELATION_ID_HEADER, correlation_scope
from touroffice.observability.logging import get_logger
from touroffice.observability.redaction import safe_log_context

from .routers import public, worker
from .routes import lunch_orders, offerings, proposals, tasks_notifications, webhooks_stripe

AppRole = Literal["public", "worker"]

logger = get_logger(__name__)

_STATUS_BY_KIND = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
}


def status_for(exc: DomainError) -> int:
    """HTTP status for a domain error."""
    if isinstance(exc, GatewayError):
        return 503 if exc.retryable else 502
    return _STATUS_BY_KIND.get(exc.kind, 400)


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "request failed",
        extra={
            "extra_fields": safe_log_context(
                path=request.url.path,
                kind=exc.kind,
                code=exc.code,
                status_code=status_code,
            )
        },
    )
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create the FastAPI app with routes for the given role.

    Args:
        role: Explicit role override. If None, uses the APP_ROLE setting
              ("public" by default).
    """
    if role is None:
        role = get_settings().app_role  # type: ignore[assignment]

    app = FastAPI(
        title="Tour Office",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        with correlation_scope(request.headers.get(CORRELATION_ID_HEADER)) as cid:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response

    app.add_exception_handler(DomainError, domain_error_handler)

    app.include_router(public.router)
    app.include_router(proposals.router)
    app.include_router(offerings.router)
    app.include_router(lunch_orders.router)
    app.include_router(webhooks_stripe.router)

    # Task handlers are reachable only on the worker service.
    if role == "worker":
        app.include_router(worker.router)
        app.include_router(tasks_notifications.router)

    return app
