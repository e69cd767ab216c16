from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
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


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class NotImplementedAppError(AppError):
    def __init__(self, message: str = "Not implemented"):
        super().__init__(message, code="NOT_IMPLEMENTED", status_code=status.HTTP_501_NOT_IMPLEMENTED)


# Credit ledger


class InvalidAccountError(AppError):
    def __init__(self, message: str = "Invalid account"):
        super().__init__(message, code="INVALID_ACCOUNT", status_code=status.HTTP_400_BAD_REQUEST)


class InvalidAmountError(AppError):
    def __init__(self, message: str = "Amount must be a positive integer"):
        super().__init__(message, code="INVALID_AMOUNT", status_code=status.HTTP_400_BAD_REQUEST)


class InsufficientCreditError(AppError):
    """Balance below the requested amount; nothing was deducted."""

    def __init__(self, current: int, max_credits: int, requested: int):
        self.current = current
        self.max_credits = max_credits
        self.requested = requested
        super().__init__(
            "No credits remaining. Upgrade your plan or wait for the next reset.",
            code="INSUFFICIENT_CREDIT",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"current": current, "max": max_credits, "requested": requested},
        )


class DatastoreUnavailableError(AppError):
    def __init__(self, message: str = "Datastore temporarily unavailable, please retry"):
        super().__init__(message, code="DATASTORE_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


class ProvisioningConflict(Exception):
    """Concurrent first insert of a balance row. Never leaves the ledger."""


# Code generation


class GenerationError(AppError):
    def __init__(self, message: str = "Code generation failed"):
        super().__init__(message, code="GENERATION_FAILED", status_code=status.HTTP_502_BAD_GATEWAY)


class GenerationTimeoutError(AppError):
    def __init__(self, message: str = "Request to generate code timed out. Please try again."):
        super().__init__(message, code="GENERATION_TIMEOUT", status_code=status.HTTP_504_GATEWAY_TIMEOUT)


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
            "details": {"errors": jsonable_encoder(exc.errors())},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
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
