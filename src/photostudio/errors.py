"""Application error taxonomy and the FastAPI handlers that render it.

Every error is rendered as ``{"error": <message>}`` plus any extra fields the
exception carries.  Gateway and ledger failures only ever expose a generic
user-safe message.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from photostudio.middleware.security import apply_security_headers, is_https_request

log = structlog.get_logger()


class AppError(Exception):
    status_code: int = 500
    default_message: str = "An unexpected error occurred. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.headers = headers or {}
        self.extra = extra or {}
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class AuthError(AppError):
    status_code = 401
    default_message = "Unauthorized. Please sign in to continue."


class InsufficientCreditsError(AppError):
    status_code = 402
    default_message = "Insufficient credits"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Conflict"


class RateLimitError(AppError):
    status_code = 429
    default_message = "Too many requests. Please try again later."


class SignatureError(AppError):
    status_code = 400
    default_message = "Payment verification failed. Invalid signature."


class WebhookSignatureError(SignatureError):
    status_code = 401
    default_message = "Invalid signature"


class GatewayError(AppError):
    status_code = 500
    default_message = "Failed to create payment order. Please try again."


class LedgerConsistencyError(AppError):
    status_code = 500
    default_message = "Failed to process payment. Please contact support."


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    body = {"error": exc.message, **exc.extra}
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = ValidationError.default_message
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "query")
        message = f"{location}: {errors[0]['msg']}" if location else errors[0]["msg"]
    return JSONResponse(status_code=400, content={"error": message})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("unhandled_error", path=request.url.path, error=str(exc))
    response = JSONResponse(status_code=500, content={"error": AppError.default_message})
    apply_security_headers(response, is_https=is_https_request(request))
    return response


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
