"""
Multi-tenant context for the integration API.

CRITICAL SECURITY REQUIREMENTS:
- tenant_id is ALWAYS extracted from the verified JWT (org_id), NEVER from
  request body/query/path
- Requests without a valid tenant context are rejected
- All credential queries are scoped by tenant_id

Tokens are HS256 JWTs signed with AUTH_JWT_SECRET by the upstream identity
service. Issuing them is out of scope here.
"""

import os
import logging
from typing import Optional

import jwt
from fastapi import Request, HTTPException, status
from starlette.middleware.base import BaseHTTPMiddleware

from src.platform.errors import AccessDeniedError, AuthenticationError, error_response

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

# Paths served without tenant context
PUBLIC_PATHS = ("/health",)


class TenantContext:
    """Immutable tenant context extracted from a verified JWT."""

    def __init__(self, tenant_id: str, user_id: Optional[str] = None, roles: Optional[list[str]] = None):
        if not tenant_id:
            raise ValueError("tenant_id cannot be empty")
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.roles = roles or []

    def __repr__(self) -> str:
        return f"TenantContext(tenant_id={self.tenant_id}, user_id={self.user_id})"


def decode_tenant_token(token: str, secret: Optional[str] = None) -> TenantContext:
    """
    Verify a bearer JWT and build the tenant context from its claims.

    Raises:
        jwt.InvalidTokenError: Signature, expiry or claims invalid
    """
    secret = secret or os.getenv("AUTH_JWT_SECRET")
    if not secret:
        raise jwt.InvalidTokenError("AUTH_JWT_SECRET is not configured")

    payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    tenant_id = payload.get("org_id")
    if not tenant_id:
        raise jwt.InvalidTokenError("Token has no org_id claim")

    return TenantContext(
        tenant_id=tenant_id,
        user_id=payload.get("sub"),
        roles=payload.get("roles") or [],
    )


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Attaches request.state.tenant_context from the Authorization header."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return error_response(AuthenticationError())

        try:
            request.state.tenant_context = decode_tenant_token(auth_header[len("Bearer "):])
        except jwt.InvalidTokenError as e:
            logger.warning(
                "Rejected request with invalid tenant token",
                extra={"path": request.url.path, "reason": type(e).__name__},
            )
            return error_response(AccessDeniedError())

        return await call_next(request)


def get_tenant_context(request: Request) -> TenantContext:
    """
    Extract tenant context from request state.

    Raises 403 if tenant context is missing.
    Use this in route handlers to access tenant_id.
    """
    if not hasattr(request.state, "tenant_context"):
        logger.error("Route handler accessed without tenant context", extra={
            "path": request.url.path
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Tenant context not available"
        )

    return request.state.tenant_context
