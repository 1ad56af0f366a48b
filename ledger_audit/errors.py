"""Error taxonomy and the JSON error responses they map to."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("ledger_audit.errors")


class LedgerAuditError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class InvalidCredentials(LedgerAuditError):
    """Raised for any login failure; never says which credential was wrong."""

    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = "Invalid email or password"


class Unauthenticated(LedgerAuditError):
    status_code = status.HTTP_401_UNAUTHORIZED
    public_message = "Unauthorized"


class ValidationError(LedgerAuditError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = "Invalid input"

    def __init__(self, message: Optional[str] = None, *, details: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.details = details or []


class NotFound(LedgerAuditError):
    status_code = status.HTTP_404_NOT_FOUND
    public_message = "Not found"


class InternalError(LedgerAuditError):
    pass


class RateLimitExceeded(LedgerAuditError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    public_message = "Too many requests, please try again later"

    def __init__(self, *, limit: int, reset_seconds: int) -> None:
        super().__init__()
        self.headers = {
            "Retry-After": str(reset_seconds),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(reset_seconds),
        }


def error_response(
    status_code: int,
    message: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> JSONResponse:
    payload: Dict[str, Any] = {"success": False, "error": message}
    payload.update(extra)
    return JSONResponse(payload, status_code=status_code, headers=headers)


def _validation_details(exc: RequestValidationError) -> List[Dict[str, Any]]:
    details = []
    for error in exc.errors():
        details.append(
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
                "message": error.get("msg", ""),
                "type": error.get("type", ""),
            }
        )
    return details


def register_error_handlers(app: FastAPI) -> None:
    """Install JSON handlers for the error taxonomy on ``app``."""

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            ValidationError.public_message,
            details=_validation_details(exc),
        )

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        return error_response(exc.status_code, exc.message, details=exc.details)

    @app.exception_handler(InternalError)
    async def _internal(request: Request, exc: InternalError) -> JSONResponse:
        logger.error("Internal error on %s %s: %s", request.method, request.url.path, exc.message)
        return error_response(exc.status_code, InternalError.public_message)

    @app.exception_handler(LedgerAuditError)
    async def _domain(request: Request, exc: LedgerAuditError) -> JSONResponse:
        return error_response(exc.status_code, exc.message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, InternalError.public_message)


__all__ = [
    "InternalError",
    "InvalidCredentials",
    "LedgerAuditError",
    "NotFound",
    "RateLimitExceeded",
    "Unauthenticated",
    "ValidationError",
    "error_response",
    "register_error_handlers",
]
