"""
Exception hierarchy for diarybot.

Two families live here:

- `DiaryBotException` and subclasses: errors that reach the HTTP surface.
  Every one carries a machine-readable `code` so clients can branch on it
  without parsing message text.
- Capability errors (`StoreError`, `LLMError`, `MessagingError`): raised by
  the persistence adapter and the outbound HTTP clients. They never reach a
  client directly; the resilience layer classifies them.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# HTTP-facing exception classes
# ---------------------------------------------------------------------------

class DiaryBotException(Exception):
    """Base class for all application-level errors."""
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class DiaryInputError(DiaryBotException):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INVALID_DIARY_INPUT"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(
            message=message,
            details={"field": field} if field else {},
        )


class MissingSignatureError(DiaryBotException):
    http_status = status.HTTP_400_BAD_REQUEST
    code = "MISSING_SIGNATURE"

    def __init__(self):
        super().__init__(message="Request has no x-line-signature header.")


class InvalidSignatureError(DiaryBotException):
    http_status = status.HTTP_400_BAD_REQUEST
    code = "INVALID_SIGNATURE"

    def __init__(self):
        super().__init__(message="Webhook signature does not match the request body.")


class InvalidWebhookPayloadError(DiaryBotException):
    http_status = status.HTTP_400_BAD_REQUEST
    code = "INVALID_WEBHOOK_PAYLOAD"

    def __init__(self, reason: str):
        super().__init__(message="Webhook body is not a valid LINE payload.", details={"reason": reason})


class AdminAccessDeniedError(DiaryBotException):
    http_status = status.HTTP_403_FORBIDDEN
    code = "ADMIN_ACCESS_DENIED"

    def __init__(self, reason: str):
        super().__init__(message=reason)


class UnknownCircuitError(DiaryBotException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "UNKNOWN_CIRCUIT"

    def __init__(self, key: str):
        super().__init__(
            message=f"No circuit breaker named '{key}'.",
            details={"circuit": key},
        )


# ---------------------------------------------------------------------------
# Capability errors
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Persistence failure. Classified by message text."""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class LLMError(Exception):
    """Chat-completion failure. `status_code` is None for transport errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class MessagingError(Exception):
    """LINE Messaging API failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

async def diarybot_exception_handler(request: Request, exc: DiaryBotException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return structured 422 with machine-readable field errors."""
    field_errors = []
    for error in exc.errors():
        field_errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "details": {"errors": field_errors},
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred.",
        },
    )
