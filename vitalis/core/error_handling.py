"""
Error Handling & Sanitization
Prevents information leakage through error messages

SECURITY REQUIREMENTS:
- No tokens, codes or provider response bodies in error responses
- Stable error codes for domain errors
- Detailed errors only in sanitized logs
- Consistent error format
"""

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from vitalis.core.logging import log_error
from vitalis.services.errors import (
    AuthExchangeError,
    HealthSyncError,
    InvalidStateError,
    InvalidSyncRequestError,
    NotConnectedError,
    PersistenceError,
    ProviderUnavailableError,
    RateLimitedError,
    RefreshError,
    UnauthorizedError,
    UnknownProviderError,
    UnknownUserError,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR = "An error occurred processing your request"


class ErrorSanitizer:
    """Sanitizes errors to prevent information leakage"""

    DOMAIN_STATUS_CODES = {
        InvalidStateError: 400,
        InvalidSyncRequestError: 400,
        UnknownUserError: 401,
        NotConnectedError: 404,
        UnknownProviderError: 404,
        RefreshError: 409,
        UnauthorizedError: 409,
        RateLimitedError: 429,
        AuthExchangeError: 502,
        ProviderUnavailableError: 503,
        PersistenceError: 503,
    }

    SENSITIVE_PATTERNS = [
        'password', 'secret', 'token', 'key', 'credential',
        'database', 'connection', 'sql', 'query', 'stack',
        'traceback', 'file', 'path', 'internal', 'server',
    ]

    @classmethod
    def status_for(cls, error: HealthSyncError) -> int:
        for error_cls in type(error).__mro__:
            if error_cls in cls.DOMAIN_STATUS_CODES:
                return cls.DOMAIN_STATUS_CODES[error_cls]
        return 500

    @classmethod
    def sanitize_error(cls, error: Exception) -> Dict[str, Any]:
        """
        Sanitize error for client response

        Domain errors expose only their code and user-facing message.
        HTTPException details are passed through unless they look sensitive.
        Everything else becomes a generic 500 with an error id.
        """
        if isinstance(error, HealthSyncError):
            return {
                "error": error.user_message,
                "code": error.code,
                "status_code": cls.status_for(error),
                "type": "domain_error",
            }

        if isinstance(error, HTTPException):
            detail = error.detail
            if isinstance(detail, str) and any(p in detail.lower() for p in cls.SENSITIVE_PATTERNS):
                detail = GENERIC_ERROR
            return {
                "error": detail,
                "status_code": error.status_code,
                "type": "http_exception",
            }

        return {
            "error": GENERIC_ERROR,
            "status_code": 500,
            "type": "internal_error",
            "error_id": cls.generate_error_id(),
        }

    @staticmethod
    def generate_error_id() -> str:
        """Generate a unique error ID for tracking"""
        return str(uuid.uuid4())[:8]


def create_error_response(error: Exception, error_id: Optional[str] = None) -> JSONResponse:
    sanitized = ErrorSanitizer.sanitize_error(error)
    sanitized["error_id"] = error_id or sanitized.get("error_id") or ErrorSanitizer.generate_error_id()
    return JSONResponse(status_code=sanitized["status_code"], content=sanitized)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to catch and sanitize unhandled errors
    Prevents information leakage while keeping an error id in the logs
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            error_id = ErrorSanitizer.generate_error_id()
            log_error(
                f"Unhandled exception [{error_id}] on {request.method} {request.url.path}: "
                f"{type(e).__name__}: {e}",
                logger_name="error_handler",
                exc_info=True,
            )
            return create_error_response(e, error_id)


async def health_sync_error_handler(request: Request, exc: HealthSyncError) -> JSONResponse:
    error_id = ErrorSanitizer.generate_error_id()
    log_error(
        f"{exc.code} [{error_id}] on {request.method} {request.url.path}: {exc}",
        logger_name="error_handler",
    )
    return create_error_response(exc, error_id)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HealthSyncError, health_sync_error_handler)
