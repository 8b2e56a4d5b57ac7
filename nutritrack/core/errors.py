"""
Error hierarchy and the FastAPI handlers that render it.

Every error response has the same body, {"error": {code, message,
request_id}, "detail": message}, and echoes x-request-id. Webhook
senders only look at the status: 4xx is permanent, 5xx is redelivered.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from nutritrack.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class SignatureVerificationError(AppError):
    """Webhook body or signature header failed verification. Permanent."""
    code = "invalid_signature"
    status_code = 400


class MissingCorrelationError(AppError):
    """Webhook event cannot be mapped back to a user. Permanent."""
    code = "missing_correlation"
    status_code = 400


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class UpstreamProviderError(AppError):
    """Billing provider call failed. Transient; 500 so webhooks get redelivered."""
    code = "upstream_provider_error"
    status_code = 500


class StoreWriteError(AppError):
    code = "store_write_failed"
    status_code = 500


logger = logging.getLogger("nutritrack")


def _request_id(request: Request) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or str(uuid4())
    )


def error_response(request: Request, status_code: int, code: str, message: str, request_id: Optional[str] = None) -> JSONResponse:
    rid = request_id or _request_id(request)
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logger.log(level, "request.error", extra={"request_id": rid, "error_code": code, "status": status_code, "path": request.url.path})
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": rid},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    return error_response(request, exc.status_code, exc.code, exc.message, exc.request_id)


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return error_response(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else "Invalid request"
    return error_response(request, 400, "validation_error", message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": _request_id(request)})
    return error_response(request, 500, "internal_error", "Unexpected error")
