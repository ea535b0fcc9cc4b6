"""
Authenticated HTTP client for provider business APIs.

Obtains a guaranteed-valid access token from IntegrationTokenService and
issues the request with a Bearer header. A 401 from the provider despite a
valid-looking token moves the integration connected -> error and raises
ReconnectRequired; the response body is never logged or surfaced.

Usage:
    async with ProviderHTTPClient(db_session, tenant_id, integration_id) as client:
        response = await client.get("/invoices")
"""

import logging
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session

from src.credentials.errors import ReconnectRequired
from src.integrations.providers import get_provider_config, validate_provider_url
from src.models.integration import IntegrationStatus
from src.services.integration_token_service import IntegrationTokenService

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class ProviderHTTPClient:
    """
    Client for one integration's provider API.

    Handles:
    - Access token lookup / refresh before every request
    - Bearer authorization
    - Demotion to error on provider auth failure
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        integration_id: str,
        token_service: Optional[IntegrationTokenService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        """
        Initialize provider client.

        Args:
            db_session: Database session
            tenant_id: Tenant ID from auth context
            integration_id: Integration to call the provider for
            token_service: Token service (built from db_session if omitted)
            transport: Optional httpx transport (tests use httpx.MockTransport)
            timeout: Request timeout in seconds
        """
        self.db = db_session
        self.tenant_id = tenant_id
        self.integration_id = integration_id
        self.token_service = token_service or IntegrationTokenService(db_session, tenant_id)
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _build_url(self, path_or_url: str) -> str:
        """
        Absolute or base-relative URL the bearer token may be sent to.

        Raises:
            ProviderConfigurationError: URL is not https or its host is not allowed
        """
        if path_or_url.startswith(("http://", "https://")):
            return validate_provider_url(path_or_url)

        integration = self.token_service.store.get_integration(self.integration_id)
        provider = get_provider_config(integration.provider_name)
        base_url = (
            (integration.settings or {}).get("api_base_url")
            or (provider.api_base_url if provider else None)
        )
        if not base_url:
            raise ValueError(f"No API base URL for provider {integration.provider_name}")
        return validate_provider_url(base_url.rstrip("/") + "/" + path_or_url.lstrip("/"))

    async def request(self, method: str, path_or_url: str, **kwargs: Any) -> httpx.Response:
        """
        Issue an authenticated request.

        Raises:
            ReconnectRequired: Token unavailable or rejected by the provider
            DecryptionError / MissingTokenSet: Stored credentials unusable
            ProviderConfigurationError: Target URL not allowed (no token is fetched)
        """
        url = self._build_url(path_or_url)
        access_token = await self.token_service.ensure_valid_access_token(self.integration_id)

        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access_token}"
        headers.setdefault("Accept", "application/json")

        response = await self._client.request(method, url, headers=headers, **kwargs)

        if response.status_code == 401:
            self._record_auth_failure()
            raise ReconnectRequired(self.integration_id, reason="provider_auth_failed")

        return response

    async def get(self, path_or_url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path_or_url, **kwargs)

    async def post(self, path_or_url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path_or_url, **kwargs)

    def _record_auth_failure(self) -> None:
        lifecycle = self.token_service.lifecycle
        integration = lifecycle.store.get_integration(self.integration_id)

        logger.warning(
            "Provider rejected access token",
            extra={
                "tenant_id": self.tenant_id,
                "integration_id": self.integration_id,
                "provider_name": integration.provider_name,
            },
        )

        if integration.status == IntegrationStatus.CONNECTED:
            lifecycle.transition(integration, IntegrationStatus.ERROR, reason="provider_auth_failed")
            self.db.commit()
