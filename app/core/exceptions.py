from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

from app.core.logging import get_logger

log = get_logger(__name__)


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
    def __init__(self, message: str = "Forbidden", code: str = "FORBIDDEN"):
        super().__init__(message, code=code, status_code=status.HTTP_403_FORBIDDEN)


class AuthorizationError(ForbiddenError):
    """Caller lacks ownership or collaboration rights on a repository."""

    def __init__(self, message: str = "You do not have permission to modify this repository"):
        super().__init__(message, code="AUTHORIZATION_ERROR")


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", details: dict[str, Any] | None = None):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND, details=details)


class ParentNotFoundError(NotFoundError):
    def __init__(self, parent_address: str):
        super().__init__(
            "Parent address is not a member of this repository",
            details={"parent_address": parent_address},
        )
        self.code = "PARENT_NOT_FOUND"


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ValidationError(BadRequestError):
    """Structurally malformed input: non-CSV content, oversized file, no address column."""

    def __init__(self, message: str = "Invalid input", code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        self.code = code


class RowLimitExceededError(ValidationError):
    def __init__(self, max_rows: int):
        super().__init__(
            f"CSV exceeds maximum of {max_rows} rows",
            code="ROW_LIMIT_EXCEEDED",
            details={"max_rows": max_rows},
        )


class ChainCorruptError(AppError):
    """Lineage reconstruction met a cycle or a broken generation link."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="CHAIN_CORRUPT", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)


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
    if isinstance(exc, ChainCorruptError):
        log.error("chain_corrupt", message=exc.message, **exc.details)
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    log.exception("unhandled_exception", exc_info=exc)
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
