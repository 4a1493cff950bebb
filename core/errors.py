"""
core/errors.py -- Response codes and the typed application error hierarchy.

Business logic raises one of these; a single set of FastAPI exception handlers
in api/main.py turns it into the uniform JSON envelope. No route duplicates
status code or formatting logic.

Each subclass fixes its (code, status) pair. Only ValidationError carries a
field error map; RateLimitError carries retry_after for the Retry-After header.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

from __future__ import annotations

from enum import Enum


class ResponseCode(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    SERVER_ERROR = "SERVER_ERROR"
    CONFLICT = "CONFLICT"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"


# One fixed HTTP status per code.
STATUS_FOR_CODE: dict[ResponseCode, int] = {
    ResponseCode.SUCCESS: 200,
    ResponseCode.ERROR: 400,
    ResponseCode.UNAUTHORIZED: 401,
    ResponseCode.FORBIDDEN: 403,
    ResponseCode.NOT_FOUND: 404,
    ResponseCode.CONFLICT: 409,
    ResponseCode.VALIDATION_ERROR: 422,
    ResponseCode.TOO_MANY_REQUESTS: 429,
    ResponseCode.SERVER_ERROR: 500,
}


class ApiError(Exception):
    """Base class for every failure that should reach the client as an envelope."""

    code: ResponseCode = ResponseCode.ERROR
    status_code: int = 400
    default_message: str = "An error occurred"

    def __init__(self, message: str | None = None, errors: dict | None = None) -> None:
        self.message = message or self.default_message
        self.errors = errors or {}
        super().__init__(self.message)


class BadRequestError(ApiError):
    code = ResponseCode.ERROR
    status_code = 400
    default_message = "Bad request"


class ValidationError(ApiError):
    code = ResponseCode.VALIDATION_ERROR
    status_code = 422
    default_message = "Validation failed"


class UnauthorizedError(ApiError):
    code = ResponseCode.UNAUTHORIZED
    status_code = 401
    default_message = "Unauthorized access"


class ForbiddenError(ApiError):
    code = ResponseCode.FORBIDDEN
    status_code = 403
    default_message = "Access forbidden"


class NotFoundError(ApiError):
    code = ResponseCode.NOT_FOUND
    status_code = 404
    default_message = "Resource not found"


class ConflictError(ApiError):
    code = ResponseCode.CONFLICT
    status_code = 409
    default_message = "Conflict"


class RateLimitError(ApiError):
    code = ResponseCode.TOO_MANY_REQUESTS
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: str | None = None, retry_after: int = 60, limit: int | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit


class ServerError(ApiError):
    """Infrastructure failure. The message shown to clients is always generic."""

    code = ResponseCode.SERVER_ERROR
    status_code = 500
    default_message = "An unexpected error occurred"


class DatabaseUnavailableError(ServerError):
    """Raised when the database cannot be reached after all connect retries."""

    status_code = 503
    default_message = "Service temporarily unavailable"
