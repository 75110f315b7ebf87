from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("cloudbox")


class CloudboxError(Exception):
    """Base error; carries the outward HTTP status and whether a retry may help."""

    status_code = 500
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    default_message = "Internal error"


class InvalidInput(CloudboxError):
    status_code = 400
    default_message = "Invalid request"


class Unauthenticated(CloudboxError):
    status_code = 401
    default_message = "Not authenticated"


class PayloadTooLarge(CloudboxError):
    # The upload contract reports oversize files as bad input.
    status_code = 400
    default_message = "File too large"


class NotFound(CloudboxError):
    status_code = 404
    default_message = "File not found"


class StorageWriteFailed(CloudboxError):
    default_message = "Storage upload failed"


class MetadataWriteFailed(CloudboxError):
    default_message = "Database save failed"


class SignatureInvalid(CloudboxError):
    status_code = 400
    default_message = "Invalid signature"


class UnresolvedUser(CloudboxError):
    status_code = 400
    default_message = "Could not resolve the user for this event"


class InvalidEvent(CloudboxError):
    status_code = 400
    default_message = "Malformed billing event"


class BillingNotConfigured(CloudboxError):
    status_code = 503
    default_message = "Billing is not configured"


class BillingProviderError(CloudboxError):
    status_code = 502
    retryable = True
    default_message = "Billing provider request failed"


class ServiceUnavailable(CloudboxError):
    status_code = 503
    retryable = True
    default_message = "Service temporarily unavailable"


def error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CloudboxError)
    async def cloudbox_error_handler(request: Request, exc: CloudboxError):
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "event=request_failed path=%s error=%s status=%s retryable=%s message=%s",
            request.url.path,
            type(exc).__name__,
            exc.status_code,
            exc.retryable,
            exc.message,
        )
        headers = {"Retry-After": "30"} if exc.retryable else None
        return error_response(exc.status_code, exc.message, headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(exc.status_code, detail, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query"))
        message = f"{first.get('msg', 'Invalid request')}: {location}" if location else "Invalid request"
        return error_response(400, message)
