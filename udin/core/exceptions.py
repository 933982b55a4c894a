from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ValidationError(BadRequestError):
    """Bad input shape or range. Never retried automatically."""

    def __init__(self, message: str = "Validation error", details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        self.code = "VALIDATION_ERROR"


class StatusRegressionError(ConflictError):
    """A ledger update tried to move a transaction backwards."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move transaction from {current} to {requested}",
            details={"current": current, "requested": requested},
        )
        self.code = "STATUS_REGRESSION"


class GatewayError(AppError):
    """Upstream payment gateway rejected or failed the call."""

    def __init__(self, message: str = "Payment gateway error", details: dict[str, Any] | None = None):
        super().__init__(message, code="GATEWAY_ERROR", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class StorageError(AppError):
    """Disk or database unavailable; the batch cannot proceed."""

    def __init__(self, message: str = "Storage unavailable", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="STORAGE_ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details
        )


class DuplicateContentError(Exception):
    """Per-file: an active document with the same content already exists for this user."""

    def __init__(self, filename: str, udin: str | None = None):
        self.filename = filename
        self.udin = udin
        suffix = f" (UDIN: {udin})" if udin else ""
        super().__init__(f"File {filename} already exists{suffix}")


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_errors(exc.errors())},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=body,
    )


def jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    """Pydantic error dicts may carry exception objects in ``ctx``."""
    out = []
    for err in errors:
        item = {k: v for k, v in err.items() if k not in ("ctx", "input", "url")}
        if "ctx" in err:
            item["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        out.append(item)
    return out


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from udin.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
