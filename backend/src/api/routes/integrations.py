"""
Integrations API routes.

Lists a tenant's provider connections, reports plan limits, starts new
connection flows and disconnects integrations.

SECURITY: All routes require valid tenant context from JWT. Responses never
contain credential material; vault errors surface as the generic
"this integration needs to be reconnected" shape via vault_error_handler.
"""

import logging

from fastapi import APIRouter, Request, Depends, status

from src.platform.tenant_context import get_tenant_context
from src.database.session import get_db_session
from src.services.integration_lifecycle import IntegrationLifecycleService
from src.api.schemas.integrations import (
    CreateIntegrationRequest,
    IntegrationLimitsResponse,
    IntegrationListResponse,
    IntegrationSummary,
    to_integration_summary,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


@router.get(
    "",
    response_model=IntegrationListResponse,
)
async def list_integrations(
    request: Request,
    include_disconnected: bool = False,
    db_session=Depends(get_db_session),
):
    """
    List integrations for the authenticated tenant.

    needs_reconnect combines stored status with the derived expiry check.
    """
    tenant_ctx = get_tenant_context(request)
    lifecycle = IntegrationLifecycleService(db_session, tenant_ctx.tenant_id)

    integrations = lifecycle.list_integrations(include_disconnected=include_disconnected)
    summaries = [
        to_integration_summary(integration, lifecycle.needs_reconnect(integration))
        for integration in integrations
    ]

    logger.info(
        "Listed integrations",
        extra={"tenant_id": tenant_ctx.tenant_id, "count": len(summaries)},
    )

    return IntegrationListResponse(integrations=summaries, total=len(summaries))


@router.get(
    "/limits",
    response_model=IntegrationLimitsResponse,
)
async def get_integration_limits(
    request: Request,
    db_session=Depends(get_db_session),
):
    """Current integration count against the tenant's plan limit."""
    tenant_ctx = get_tenant_context(request)
    lifecycle = IntegrationLifecycleService(db_session, tenant_ctx.tenant_id)

    check = lifecycle.can_create_integration()
    return IntegrationLimitsResponse(**check.to_dict())


@router.post(
    "",
    response_model=IntegrationSummary,
    status_code=status.HTTP_201_CREATED,
)
async def create_integration(
    request: Request,
    body: CreateIntegrationRequest,
    db_session=Depends(get_db_session),
):
    """
    Create a pending integration.

    Rejected with 402 INTEGRATION_LIMIT_REACHED when the tenant is at its
    plan limit; no row is written in that case.
    """
    tenant_ctx = get_tenant_context(request)
    lifecycle = IntegrationLifecycleService(db_session, tenant_ctx.tenant_id)

    try:
        integration = lifecycle.create_integration(
            provider_name=body.provider_name,
            connection_type=body.connection_type,
            display_name=body.display_name,
            environment=body.environment.value if body.environment else None,
            client_id=body.client_id,
            client_secret=body.client_secret,
            api_key=body.api_key,
            settings=body.settings,
        )
        db_session.commit()
    except Exception:
        db_session.rollback()
        raise

    return to_integration_summary(integration, needs_reconnect=False)


@router.post(
    "/{integration_id}/disconnect",
    response_model=IntegrationSummary,
)
async def disconnect_integration(
    request: Request,
    integration_id: str,
    db_session=Depends(get_db_session),
):
    """Explicitly disconnect an integration. It stops counting toward the plan limit."""
    tenant_ctx = get_tenant_context(request)
    lifecycle = IntegrationLifecycleService(db_session, tenant_ctx.tenant_id)

    try:
        integration = lifecycle.disconnect(integration_id)
        db_session.commit()
    except Exception:
        db_session.rollback()
        raise

    return to_integration_summary(integration, needs_reconnect=False)
