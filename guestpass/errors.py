"""Application error hierarchy.

Every error the core raises on purpose derives from ``AppError`` so the HTTP
layer can render one consistent JSON shape. Anything else is treated as an
internal failure and collapses to a generic message.
"""

from __future__ import annotations

from typing import Any

TOKEN_NOT_FOUND_MESSAGE = "Link not found or expired"
INTERNAL_ERROR_MESSAGE = "An unexpected error occurred"


class AppError(Exception):
    code = "APP_ERROR"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


class ValidationError(AppError):
    """Bad input shape or range; field messages reveal nothing about stored data."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, fields: dict[str, str]) -> None:
        super().__init__(message)
        self.fields = dict(fields)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["error"]["fields"] = self.fields
        return body


class NotFoundError(AppError):
    """Raised for every failed token resolution, whatever the real cause."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = TOKEN_NOT_FOUND_MESSAGE) -> None:
        super().__init__(message)


class RateLimitError(AppError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after_seconds: int = 60) -> None:
        super().__init__("Too many requests")
        self.retry_after_seconds = max(int(retry_after_seconds), 1)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["error"]["retry_after"] = self.retry_after_seconds
        return body


class DeliveryError(AppError):
    """The data change committed but the manage link email was not delivered."""

    code = "EMAIL_DELIVERY_FAILED"
    status_code = 502

    def __init__(self) -> None:
        super().__init__(
            "We could not send your manage link. Please request a new link."
        )


class InternalError(AppError):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self) -> None:
        super().__init__(INTERNAL_ERROR_MESSAGE)
