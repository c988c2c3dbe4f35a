"""Error taxonomy shared by the core components and the HTTP layer.

Every error a handler can raise on purpose is a ``ServiceError`` carrying
its HTTP status, a machine-readable code and optional extra fields that are
merged into the JSON body. Anything else is an internal error.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("reviewreply.errors")


class StorageError(Exception):
    """Raised by the storage layer when a write could not be applied."""


class ServiceError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        body.update(self.extra)
        return body


class Unauthenticated(ServiceError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class Forbidden(ServiceError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden"


class SubscriptionExpired(Forbidden):
    code = "SUBSCRIPTION_EXPIRED"
    default_message = "Subscription expired"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        extra.setdefault("renewal_required", True)
        super().__init__(message, **extra)


class NotFound(ServiceError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class Conflict(ServiceError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Already exists"


class ValidationFailed(ServiceError):
    status_code = 400
    code = "VALIDATION_FAILED"
    default_message = "Invalid input"

    def __init__(
        self,
        message: str | None = None,
        details: list[dict[str, str]] | None = None,
        **extra: Any,
    ) -> None:
        if details:
            extra["details"] = details
        super().__init__(message, **extra)


class QuotaExceeded(ServiceError):
    status_code = 429
    code = "USAGE_LIMIT_REACHED"
    default_message = "Monthly usage limit reached"


class RateLimited(ServiceError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests. Please try again later."


class ProviderUnavailable(ServiceError):
    """The completion provider failed; ``kind`` names the failure class."""

    status_code = 503
    code = "PROVIDER_UNAVAILABLE"
    default_message = "AI provider unavailable"

    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_ERROR = "transport_error"

    def __init__(self, kind: str, message: str | None = None) -> None:
        self.kind = kind
        super().__init__(message, reason=kind)


class InvalidSignature(ServiceError):
    status_code = 400
    code = "INVALID_SIGNATURE"
    default_message = "Invalid webhook signature"


class PaymentProviderError(ServiceError):
    status_code = 502
    code = "PAYMENT_PROVIDER_ERROR"
    default_message = "Payment provider unavailable."


class PaymentsDisabled(ServiceError):
    status_code = 503
    code = "PAYMENTS_DISABLED"
    default_message = "Payments are disabled."


class InternalError(ServiceError):
    pass


def _field_name(loc: tuple[Any, ...]) -> str:
    parts = [str(part) for part in loc if part not in ("body", "query", "path")]
    return ".".join(parts) or "body"


def install_error_handlers(app: Any, *, development: bool) -> None:
    """Register JSON renderers for the taxonomy on a FastAPI app."""

    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"field": _field_name(tuple(error.get("loc", ()))), "message": error.get("msg", "")}
            for error in exc.errors()
        ]
        return JSONResponse(status_code=400, content=ValidationFailed(details=details).to_body())

    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = InternalError().to_body()
        if development:
            body["message"] = str(exc)
        return JSONResponse(status_code=500, content=body)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
