"""Client-side error taxonomy.

``ApiError`` and its subclasses mirror the HTTP status the service answered
with. Gateway errors come from the checkout overlay and are recoverable: a
dismissal is retried without re-charging, a failure may be retried once.
"""

from typing import Any


class ClientError(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ApiError(ClientError):
    """Service answered with an error, or could not be reached (``status_code`` None)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.details = details or {}


class AuthError(ApiError):
    """401: the caller must re-authenticate."""


class ApiValidationError(ApiError):
    """400: bad input shape or range. Not retried."""


class ApiNotFoundError(ApiError):
    """404: missing, or owned by someone else."""


class ApiConflictError(ApiError):
    """409: e.g. a ledger status regression."""


class GatewayDismissed(ClientError):
    """User closed the checkout overlay. Nothing was charged."""

    def __init__(self, message: str = "Payment popup dismissed by user"):
        super().__init__(message)


class GatewayFailed(ClientError):
    """Gateway reported the payment as failed or declined."""

    def __init__(self, message: str = "Payment failed", code: str | None = None, payment_id: str | None = None):
        super().__init__(message)
        self.code = code
        self.payment_id = payment_id


class DraftStoreError(ClientError):
    """Local draft store could not be opened or written. The session continues without it."""


class FlowInProgressError(ClientError):
    def __init__(self, message: str = "A payment is already in progress for this session"):
        super().__init__(message)


class InvalidOrderError(ClientError):
    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class AmountTooLowError(InvalidOrderError):
    def __init__(self, amount_paise: int, minimum_paise: int):
        super().__init__(f"Amount must be at least {minimum_paise / 100:.2f}")
        self.amount_paise = amount_paise
        self.minimum_paise = minimum_paise


_STATUS_ERRORS: dict[int, type[ApiError]] = {
    400: ApiValidationError,
    401: AuthError,
    404: ApiNotFoundError,
    409: ApiConflictError,
}


def error_for_status(status_code: int, body: Any) -> ApiError:
    """Build the matching ApiError from the service's ``{"error": {...}}`` body."""
    err = body.get("error") if isinstance(body, dict) else None
    if not isinstance(err, dict):
        err = {}
    cls = _STATUS_ERRORS.get(status_code, ApiError)
    return cls(
        err.get("message") or f"Request failed ({status_code})",
        status_code=status_code,
        code=err.get("code"),
        details=err.get("details") or {},
    )
