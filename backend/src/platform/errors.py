"""
Error responses for the integration credential API.

Every error leaves the API in one shape:

    {"error": {"code": ..., "message": ..., "details": {...}}}

Vault errors are translated here, in one place, so that consumers see
"this integration needs to be reconnected" and never the cause. Stack
traces, ciphertext and provider error text are NEVER returned to clients.

Status codes:
- 401 no bearer token / 403 invalid tenant token
- 402 plan integration limit reached
- 404 integration not found for this tenant
- 409 reconnect required, invalid status transition
- 503 encryption not configured
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.credentials.errors import (
    RECONNECT_MESSAGE,
    DecryptionError,
    EncryptionNotConfiguredError,
    IntegrationLimitReached,
    IntegrationNotFoundError,
    InvalidStatusTransitionError,
    MissingTokenSet,
    ReconnectRequired,
    RefreshNotPossibleError,
    TokenRefreshError,
    VaultError,
)

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

# Vault errors a consumer can only resolve by re-authorizing the integration
RECONNECT_ERRORS = (
    ReconnectRequired,
    MissingTokenSet,
    DecryptionError,
    TokenRefreshError,
    RefreshNotPossibleError,
)


class AppError(Exception):
    """API error carrying its HTTP status and response body."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


class AuthenticationError(AppError):
    """No bearer token on a tenant route (401)."""

    def __init__(self):
        super().__init__("AUTHENTICATION_ERROR", "Authentication required", status.HTTP_401_UNAUTHORIZED)


class AccessDeniedError(AppError):
    """Bearer token present but not a valid tenant token (403)."""

    def __init__(self):
        super().__init__("ACCESS_DENIED", "Access denied", status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = f"{resource} '{identifier}' not found" if identifier else f"{resource} not found"
        super().__init__("NOT_FOUND", message, status.HTTP_404_NOT_FOUND)


class ReconnectRequiredError(AppError):
    """Integration must be re-authorized by the tenant (409)."""

    def __init__(self, details: Optional[dict[str, Any]] = None):
        # Always the generic message; never provider text or cause
        super().__init__(
            "RECONNECT_REQUIRED", RECONNECT_MESSAGE, status.HTTP_409_CONFLICT, details,
        )


def vault_error_to_app_error(exc: VaultError) -> AppError:
    """Map a credential vault error to its API error."""
    if isinstance(exc, RECONNECT_ERRORS):
        integration_id = getattr(exc, "integration_id", None)
        return ReconnectRequiredError(
            details={"integration_id": integration_id} if integration_id else None,
        )

    if isinstance(exc, IntegrationLimitReached):
        return AppError(
            exc.error_code,
            "Your plan's integration limit has been reached.",
            status.HTTP_402_PAYMENT_REQUIRED,
            {"current": exc.current, "max": exc.max},
        )

    if isinstance(exc, IntegrationNotFoundError):
        return NotFoundError("Integration", exc.integration_id)

    if isinstance(exc, InvalidStatusTransitionError):
        return AppError(
            exc.error_code,
            exc.message,
            status.HTTP_409_CONFLICT,
            {"from_status": exc.from_status, "to_status": exc.to_status},
        )

    if isinstance(exc, EncryptionNotConfiguredError):
        return AppError(
            exc.error_code,
            "Credential storage is temporarily unavailable",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return AppError(exc.error_code, "Credential operation failed")


# =============================================================================
# Correlation IDs
# =============================================================================

def get_correlation_id(request: Request) -> str:
    """Correlation ID from the request header, request state, or a new UUID."""
    correlation_id = request.headers.get(CORRELATION_HEADER)
    if correlation_id:
        return correlation_id
    return getattr(request.state, "correlation_id", None) or str(uuid.uuid4())


def error_response(app_error: AppError, correlation_id: Optional[str] = None) -> JSONResponse:
    headers = {CORRELATION_HEADER: correlation_id} if correlation_id else None
    return JSONResponse(
        status_code=app_error.status_code,
        content=app_error.to_dict(),
        headers=headers,
    )


# =============================================================================
# Handlers
# =============================================================================

async def vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
    """FastAPI exception handler for VaultError subclasses."""
    correlation_id = get_correlation_id(request)
    app_error = vault_error_to_app_error(exc)

    logger.warning(
        "Credential vault error",
        extra={
            "correlation_id": correlation_id,
            "error_code": exc.error_code,
            "status_code": app_error.status_code,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return error_response(app_error, correlation_id)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """FastAPI exception handler for AppError subclasses."""
    return error_response(exc, get_correlation_id(request))


def register_error_handlers(app: FastAPI) -> None:
    """Install the vault and application error handlers on an app."""
    app.add_exception_handler(VaultError, vault_error_handler)
    app.add_exception_handler(AppError, app_error_handler)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost safety net: anything that escapes the route handlers becomes a
    standard error response. Stack traces stay server-side.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
        except VaultError as e:
            return await vault_error_handler(request, e)
        except AppError as e:
            return error_response(e, correlation_id)
        except HTTPException as e:
            return error_response(
                AppError("HTTP_ERROR", str(e.detail), e.status_code), correlation_id,
            )
        except Exception as e:
            # Full exception server-side only; the redaction filter strips secrets
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                }
            )
            return error_response(
                AppError(
                    "INTERNAL_ERROR",
                    "An unexpected error occurred",
                    details={"correlation_id": correlation_id},
                ),
                correlation_id,
            )

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
