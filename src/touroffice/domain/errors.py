"""Error taxonomy shared by every core operation.

Each error carries a machine-readable ``kind`` (validation, conflict,
not_found, gateway) and a stable ``code`` so the API layer can map it to a
structured response without string matching.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for reportable core errors."""

    kind = "domain"
    code = "domain_error"

    def __init__(self, message: str, *, code: str | None = None, **details):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(DomainError):
    """Malformed or out-of-range input. Raised before any transaction opens."""

    kind = "validation"
    code = "invalid_input"


class ConflictError(DomainError):
    """Current state does not permit the operation."""

    kind = "conflict"
    code = "conflict"


class NotFoundError(DomainError):
    """Unknown reference."""

    kind = "not_found"
    code = "not_found"


class GatewayError(DomainError):
    """Payment gateway call failed.

    Only retryable errors may be retried, and only by the caller.
    """

    kind = "gateway"
    code = "gateway_error"
    retryable = False


class RetryableGatewayError(GatewayError):
    """Timeout, connection failure, rate limit or gateway 5xx."""

    code = "gateway_unavailable"
    retryable = True


class TerminalGatewayError(GatewayError):
    """Declined, invalid reference or other 4xx the gateway won't accept."""

    code = "gateway_rejected"


class GatewayConfigurationError(TerminalGatewayError):
    """Authentication/permission failure or missing credentials.

    Fails identically for every call made with the same client, so loops
    stop at the first occurrence.
    """

    code = "gateway_misconfigured"
