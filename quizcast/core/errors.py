"""Error taxonomy and FastAPI handlers.

Every rejection is an AppError subclass with a stable ``code`` so clients can tell
"you are out of credits" apart from "we could not check your credits".
"""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quizcast.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}

    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class UnauthenticatedError(AppError):
    """No or invalid identity credential. Raised before any store access."""
    code = "unauthenticated"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class QuotaExhaustedError(AppError):
    """Daily free credits are used up; retryable after the next UTC midnight."""
    code = "quota_exhausted"
    status_code = 402

    def __init__(self, message: str, *, resets_on: Optional[str] = None, retry_after_seconds: Optional[int] = None, **kwargs):
        details = dict(kwargs.pop("details", None) or {})
        if resets_on:
            details["resets_on"] = resets_on
        super().__init__(message, details=details, **kwargs)
        self.retry_after_seconds = retry_after_seconds

    def headers(self) -> Dict[str, str]:
        if self.retry_after_seconds is None:
            return {}
        return {"Retry-After": str(self.retry_after_seconds)}


class StoreUnavailableError(AppError):
    """The entitlement store could not be read or written in time. Fail closed."""
    code = "store_unavailable"
    status_code = 503


class ConcurrentUpdateError(AppError):
    """Compare-and-swap lost against a concurrent write to the same record."""
    code = "concurrent_update"
    status_code = 409


class EventUnverifiedError(AppError):
    code = "event_unverified"
    status_code = 400


class ReconciliationError(AppError):
    code = "reconciliation_failed"
    status_code = 422


class MissingUserReferenceError(ReconciliationError):
    code = "missing_user_reference"
    status_code = 400


class IdentityResolutionError(ReconciliationError):
    code = "identity_unresolved"


class MissingIdentityError(IdentityResolutionError):
    code = "identity_missing"


class AmbiguousIdentityError(IdentityResolutionError):
    code = "identity_ambiguous"


class ProviderUnavailableError(AppError):
    code = "provider_unavailable"
    status_code = 502


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class GenerationError(AppError):
    code = "generation_failed"
    status_code = 502


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {"error": error, "detail": message}


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("quizcast")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers())
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("quizcast")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("quizcast")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
