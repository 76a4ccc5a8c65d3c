"""
Domain error types.

Every failure the services raise is one of the AppError variants below.
The HTTP layer renders them through a single exception handler into
``{"code", "message", "details"}``.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class FieldError(BaseModel):
    """A single field-level validation failure."""
    field: str = Field(..., description="Offending field name")
    message: str = Field(..., description="Human readable explanation")
    code: str = Field(..., description="Machine readable error code")


class AppError(Exception):
    """Base application error for all domain and system failures."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    """Aggregated field-level validation failures."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, fields: list[FieldError]):
        self.fields = list(fields)
        super().__init__(
            "Validation failed",
            details={"fields": [f.model_dump() for f in self.fields]},
        )


class NotFoundError(AppError):
    """Referenced conversation or message does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class InternalError(AppError):
    """Unexpected storage or system failure. The cause is kept for logs only."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None, details: Optional[Any] = None):
        super().__init__(message, details=details)
        self.cause = cause


class InvalidContactFormat(ValueError):
    """Raised by the normalizer when input is neither a phone number nor an email."""

    def __init__(self, raw: str, reason: str = "Invalid phone or email format"):
        super().__init__(f"{reason}: {raw!r}")
        self.raw = raw
        self.reason = reason
