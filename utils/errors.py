"""
API error taxonomy.

Every handler raises one of these; the exception handlers registered in
main.py turn them into the JSON error envelope.
"""
from typing import Any, Optional


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(ApiError):
    status_code = 401
    code = "AUTH_REQUIRED"


class QuotaExceededError(ApiError):
    status_code = 403
    code = "SUBSCRIPTION_LIMIT_EXCEEDED"


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ApiError):
    status_code = 409
    code = "CONFLICT"


class RateLimitError(ApiError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"


class InfrastructureError(ApiError):
    status_code = 500
    code = "DATABASE_ERROR"
