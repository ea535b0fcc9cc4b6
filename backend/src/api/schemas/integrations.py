"""
Integration schemas for the Integrations API.

SECURITY: Request models accept secrets once, at creation. Response models
never carry client secrets, API keys, tokens or ciphertext.
"""

from typing import Optional, List, Any

from pydantic import BaseModel, Field, field_validator

from src.integrations.providers import ProviderConfigurationError, validate_provider_url
from src.models.integration import ConnectionType, Integration, ProviderEnvironment

# Settings keys naming URLs that receive credentials
PROVIDER_URL_SETTINGS = ("token_endpoint", "api_base_url")


# =============================================================================
# Request Models
# =============================================================================

class CreateIntegrationRequest(BaseModel):
    """Start a connection flow for a provider."""

    provider_name: str = Field(..., min_length=1, max_length=100)
    connection_type: ConnectionType = ConnectionType.OAUTH
    display_name: Optional[str] = Field(default=None, max_length=255)
    environment: Optional[ProviderEnvironment] = None
    client_id: Optional[str] = Field(default=None, repr=False)
    client_secret: Optional[str] = Field(default=None, repr=False)
    api_key: Optional[str] = Field(default=None, repr=False)
    settings: dict[str, Any] = Field(
        default_factory=dict,
        description="Non-secret provider settings (e.g. tenant_id for Microsoft 365)",
    )

    @field_validator("provider_name")
    @classmethod
    def normalize_provider_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("settings")
    @classmethod
    def check_provider_urls(cls, value: dict[str, Any]) -> dict[str, Any]:
        for key in PROVIDER_URL_SETTINGS:
            if value.get(key) is not None:
                try:
                    validate_provider_url(str(value[key]))
                except ProviderConfigurationError as e:
                    raise ValueError(f"settings.{key}: {e}") from None
        return value


# =============================================================================
# Response Models
# =============================================================================

class IntegrationSummary(BaseModel):
    """Safe integration summary (no credential material)."""

    id: str
    provider_name: str
    connection_type: str
    status: str
    environment: Optional[str] = None
    display_name: Optional[str] = None
    needs_reconnect: bool = False
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class IntegrationListResponse(BaseModel):
    """Response for listing integrations."""

    integrations: List[IntegrationSummary]
    total: int


class IntegrationLimitsResponse(BaseModel):
    """Plan limit status for the tenant."""

    allowed: bool
    current: int
    max: int


# =============================================================================
# Normalizer
# =============================================================================

def to_integration_summary(integration: Integration, needs_reconnect: bool) -> IntegrationSummary:
    """Build the API summary from Integration.to_safe_dict()."""
    safe = integration.to_safe_dict()
    return IntegrationSummary(
        id=safe["id"],
        provider_name=safe["provider_name"],
        connection_type=safe["connection_type"],
        status=safe["status"],
        environment=safe["environment"],
        display_name=safe["display_name"],
        needs_reconnect=needs_reconnect,
        last_error=safe["last_error"],
        created_at=safe["created_at"],
        updated_at=safe["updated_at"],
    )
