"""
Provider registry for OAuth token refresh.

Only the generic token-endpoint contract lives here; provider data models are
owned by the consumers that call provider APIs.

Client authentication:
- basic: Authorization: Basic base64(client_id:client_secret) (default)
- body:  client_id / client_secret sent in the form body

Outbound URLs:
- Every token endpoint and API base URL must be https and its host must be a
  registered provider host or listed in PROVIDER_ALLOWED_HOSTS. Tenant
  settings can name these URLs; client secrets and tokens are sent there.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from src.config.vault import DEFAULT_EXPIRES_IN_SECONDS, get_provider_allowed_hosts

CLIENT_AUTH_BASIC = "basic"
CLIENT_AUTH_BODY = "body"


class ProviderConfigurationError(ValueError):
    """Integration settings lack a value the provider endpoint needs."""
    pass


@dataclass(frozen=True)
class ProviderConfig:
    """Token endpoint configuration for one provider."""
    name: str
    token_endpoint: str
    api_base_url: Optional[str] = None
    client_auth_method: str = CLIENT_AUTH_BASIC
    default_expires_in: int = DEFAULT_EXPIRES_IN_SECONDS
    extra_refresh_params: Dict[str, str] = field(default_factory=dict)
    # settings keys substituted into token_endpoint, e.g. {"tenant_id": None}
    endpoint_settings: Dict[str, Optional[str]] = field(default_factory=dict)

    def resolve_token_endpoint(self, settings: Optional[Dict[str, Any]] = None) -> str:
        """
        Fill endpoint placeholders from integration settings.

        Raises:
            ProviderConfigurationError: A required setting is missing
        """
        if not self.endpoint_settings:
            return self.token_endpoint

        settings = settings or {}
        values = {}
        for key, default in self.endpoint_settings.items():
            value = settings.get(key) or default
            if not value:
                raise ProviderConfigurationError(
                    f"Provider {self.name} requires settings.{key}"
                )
            values[key] = value
        return self.token_endpoint.format(**values)


PROVIDERS: Dict[str, ProviderConfig] = {
    "fortnox": ProviderConfig(
        name="fortnox",
        token_endpoint="https://apps.fortnox.se/oauth-v1/token",
        api_base_url="https://api.fortnox.se/3",
    ),
    "hubspot": ProviderConfig(
        name="hubspot",
        token_endpoint="https://api.hubapi.com/oauth/v1/token",
        api_base_url="https://api.hubapi.com",
        client_auth_method=CLIENT_AUTH_BODY,
        default_expires_in=1800,
    ),
    "microsoft365": ProviderConfig(
        name="microsoft365",
        token_endpoint="https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token",
        api_base_url="https://graph.microsoft.com/v1.0",
        client_auth_method=CLIENT_AUTH_BODY,
        extra_refresh_params={
            "scope": "https://graph.microsoft.com/.default offline_access",
        },
        endpoint_settings={"tenant_id": None},
    ),
}


def get_provider_config(provider_name: str) -> Optional[ProviderConfig]:
    """Look up a provider by name (case-insensitive). None if unknown."""
    if not provider_name:
        return None
    return PROVIDERS.get(provider_name.lower())


def register_provider(config: ProviderConfig) -> None:
    """Register or replace a provider configuration."""
    PROVIDERS[config.name.lower()] = config


def _allowed_hosts() -> set:
    hosts = set(get_provider_allowed_hosts())
    for config in PROVIDERS.values():
        for url in (config.token_endpoint, config.api_base_url):
            if url:
                hosts.add((urlsplit(url).hostname or "").lower())
    hosts.discard("")
    return hosts


def validate_provider_url(url: str) -> str:
    """
    Return url if credentials may be sent to it.

    Raises:
        ProviderConfigurationError: Not https, carries userinfo, or host not allowed
    """
    parts = urlsplit(url or "")
    host = (parts.hostname or "").lower()

    if parts.scheme != "https" or not host:
        raise ProviderConfigurationError("Provider URLs must use https")
    if parts.username or parts.password:
        raise ProviderConfigurationError("Provider URLs must not carry credentials")
    if host not in _allowed_hosts():
        raise ProviderConfigurationError(f"Provider host {host} is not allowed")
    return url
