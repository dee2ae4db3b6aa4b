"""
HTTP translation of service results and faults.

Every error leaves the API as {"error": {"code": ..., "message": ...}}.
ACCESS_DENIED is reported exactly like NOT_FOUND so callers cannot discover
other users' bookings or purchases.
"""

from typing import TypeVar

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from studio_booking.core.logging import get_logger
from studio_booking.domain.errors import ErrorCategory, ErrorKind, Result, ServiceError, StorageUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCategory.POLICY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.EXTERNAL: status.HTTP_502_BAD_GATEWAY,
}

KIND_STATUS = {
    ErrorKind.NOT_ELIGIBLE: status.HTTP_403_FORBIDDEN,
}

HTTP_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION",
}


class ServiceErrorResponse(Exception):
    """Raised by route handlers to return a ServiceError to the client."""

    def __init__(self, error: ServiceError):
        super().__init__(str(error))
        self.error = error


def error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


def status_for(kind: ErrorKind) -> int:
    return KIND_STATUS.get(kind, CATEGORY_STATUS[kind.category])


def public_code(kind: ErrorKind) -> str:
    if kind is ErrorKind.ACCESS_DENIED:
        return ErrorKind.NOT_FOUND.code
    return kind.code


def unwrap(result: Result[T]) -> T:
    """Return the value of a successful result, or raise its error as a response."""
    if not result.ok:
        raise ServiceErrorResponse(result.error)
    return result.value


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceErrorResponse)
    async def service_error_handler(request: Request, exc: ServiceErrorResponse):
        kind = exc.error.kind
        if kind is ErrorKind.ACCESS_DENIED:
            logger.info("access_denied", message=exc.error.message)
        return JSONResponse(
            status_code=status_for(kind),
            content=error_body(public_code(kind), exc.error.message),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(HTTP_STATUS_CODES.get(exc.status_code, "HTTP_ERROR"), str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=error_body(ErrorKind.VALIDATION.code, message),
        )

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
        # Details were logged by the ledger store
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=error_body("STORAGE_UNAVAILABLE", "Service temporarily unavailable, please retry"),
            headers={"Retry-After": "1"},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("unhandled_exception", error=str(exc), error_type=type(exc).__name__, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("INTERNAL_ERROR", "Internal server error"),
        )
