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


# Registration / wallet errors. Each one is distinct so callers can tell
# "no money" from "session closed" from "already on the list".


class AlreadyRegistered(AppError):
    def __init__(self, message: str = "Already registered", details: dict[str, Any] | None = None):
        super().__init__(message, code="ALREADY_REGISTERED", status_code=status.HTTP_409_CONFLICT, details=details)


class SessionNotOpen(AppError):
    """Draft, locked, closed, or maintenance mode."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        self.reason = reason
        super().__init__(
            f"Session is not open ({reason})",
            code="SESSION_NOT_OPEN",
            status_code=status.HTTP_409_CONFLICT,
            details={"reason": reason, **(details or {})},
        )


class InsufficientFunds(AppError):
    def __init__(self, balance: int, amount: int, minimum_balance: int):
        self.balance = balance
        self.amount = amount
        self.minimum_balance = minimum_balance
        super().__init__(
            "Insufficient balance",
            code="INSUFFICIENT_FUNDS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"balance": balance, "amount": amount, "minimum_balance": minimum_balance},
        )


class NotRegistered(AppError):
    def __init__(self, message: str = "Not registered"):
        super().__init__(message, code="NOT_REGISTERED", status_code=status.HTTP_404_NOT_FOUND)


class RosterWriteFailed(AppError):
    def __init__(self, message: str = "Roster write failed", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="ROSTER_WRITE_FAILED", status_code=status.HTTP_503_SERVICE_UNAVAILABLE, details=details
        )


class Unreconciled(AppError):
    """Compensation failed or a write ran out of retries; needs a manual fix."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="UNRECONCILED", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)


class TransferNotAllowed(AppError):
    def __init__(self, message: str):
        super().__init__(message, code="TRANSFER_NOT_ALLOWED", status_code=status.HTTP_400_BAD_REQUEST)


class InvalidTransition(AppError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_TRANSITION", status_code=status.HTTP_409_CONFLICT, details=details)


def _error_body(request: Request, message: str, code: str, details: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": {
            "message": message,
            "code": code,
            "details": details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message, exc.code, exc.details),
    )


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(request, "Validation error", "VALIDATION_ERROR", {"errors": exc.errors()}),
    )


async def store_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from badminton_signup.core.logging import get_logger
    get_logger(__name__).warning("store_unavailable", error=str(exc), error_type=type(exc).__name__)
    return ORJSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=_error_body(request, "Storage temporarily unavailable", "STORE_UNAVAILABLE", {}),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from badminton_signup.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, "Internal server error", "INTERNAL_ERROR", {}),
    )
