"""
Access token service for integration consumers.

The single entry point dashboards, sync jobs and analysis features use to
get a bearer token for a provider call:

    service = IntegrationTokenService(db_session, tenant_id)
    access_token = await service.ensure_valid_access_token(integration_id)

Flow:
1. Load the integration (tenant-scoped) and gate on its stored status
2. Decrypt credentials and token set via CredentialStore
3. Hand them to TokenRefreshEngine
4. If the token set changed, re-encrypt and persist it (settings.oauth_data)

Concurrency:
- Refreshes for one integration run under a refresh lease; a caller that
  waited for the lease re-reads the row and reuses the winner's token set
- A failed refresh gets one soft retry: wait briefly, re-read the persisted
  token set and use it if it became valid; otherwise the integration is
  marked expired

SECURITY:
- Consumers only ever receive a plaintext access token or a typed error
- Provider error text never reaches consumers
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from src.config.vault import REFRESH_RETRY_DELAY_SECONDS
from src.credentials.cipher import CipherEnvelope, get_cipher_envelope
from src.credentials.errors import (
    MissingTokenSet,
    ReconnectRequired,
    RefreshNotPossibleError,
    TokenRefreshError,
)
from src.credentials.redaction import AuditEventType, CredentialAuditLogger
from src.credentials.refresh import TokenRefreshEngine, TokenState
from src.credentials.refresh_lock import get_refresh_lock
from src.credentials.store import CredentialStore, DecryptedCredentials
from src.integrations.providers import (
    ProviderConfigurationError,
    get_provider_config,
    validate_provider_url,
)
from src.models.integration import ConnectionType, Integration, IntegrationStatus
from src.services.integration_lifecycle import IntegrationLifecycleService

logger = logging.getLogger(__name__)


class IntegrationTokenService:
    """
    Guarantees a valid access token for one tenant's integrations.

    Commits after persisting refreshed tokens and after status demotions so
    other processes waiting on the refresh lease see the result.
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        cipher: Optional[CipherEnvelope] = None,
        engine: Optional[TokenRefreshEngine] = None,
        refresh_lock=None,
        retry_delay_seconds: float = REFRESH_RETRY_DELAY_SECONDS,
    ):
        """
        Initialize token service.

        Args:
            db_session: Database session
            tenant_id: Tenant ID from auth context
            cipher: Cipher envelope (process-wide default if omitted)
            engine: Token refresh engine (default engine if omitted)
            refresh_lock: Refresh lease (process-wide default if omitted)
            retry_delay_seconds: Delay before the soft-retry re-read

        Raises:
            ValueError: If tenant_id is not provided
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id
        self.cipher = cipher or get_cipher_envelope()
        self.engine = engine or TokenRefreshEngine()
        self.refresh_lock = refresh_lock or get_refresh_lock()
        self.retry_delay_seconds = retry_delay_seconds
        self.store = CredentialStore(db_session, tenant_id, self.cipher)
        self.lifecycle = IntegrationLifecycleService(db_session, tenant_id, cipher=self.cipher)
        self.audit = CredentialAuditLogger(tenant_id)

    async def ensure_valid_access_token(self, integration_id: str) -> str:
        """
        Return a bearer token that will not expire within the refresh buffer.

        API-key integrations return their decrypted API key.

        Raises:
            IntegrationNotFoundError: Unknown integration for this tenant
            ReconnectRequired: Status or refresh failure requires re-authorization
            MissingTokenSet: No usable oauth_data.tokens
            DecryptionError: Stored credentials cannot be decrypted
        """
        integration = self.store.get_integration(integration_id)

        if integration.status != IntegrationStatus.CONNECTED:
            raise ReconnectRequired(integration.id, reason=f"status_{integration.status.value}")

        creds = self.store.get_decrypted_credentials(integration)

        if integration.connection_type == ConnectionType.API_KEY:
            if not creds.api_key:
                raise ReconnectRequired(integration.id, reason="missing_api_key")
            return creds.api_key

        if creds.tokens is None:
            raise MissingTokenSet(integration.id)

        if self.engine.get_state(creds.tokens) == TokenState.VALID:
            return creds.tokens["access_token"]

        return await self._refresh_under_lease(integration)

    async def refresh_access_token(self, integration_id: str) -> str:
        """
        Refresh an OAuth token set now, regardless of the buffer.

        Used by the scheduled refresh job. If another caller refreshed while
        this one waited for the lease, that result is reused.

        While the current access token is still valid, a failed refresh
        leaves the status connected and re-raises the refresh error.

        Raises:
            RefreshNotPossibleError: No refresh token, current token still valid
            TokenRefreshError: Provider failed, current token still valid
            Otherwise same as ensure_valid_access_token()
        """
        integration = self.store.get_integration(integration_id)

        if integration.status != IntegrationStatus.CONNECTED:
            raise ReconnectRequired(integration.id, reason=f"status_{integration.status.value}")
        if integration.connection_type != ConnectionType.OAUTH:
            raise ValueError("Only OAuth integrations can be refreshed")

        return await self._refresh_under_lease(integration)

    # =========================================================================
    # Refresh
    # =========================================================================

    async def _refresh_under_lease(self, integration: Integration) -> str:
        async with self.refresh_lock.hold(integration.id) as lease:
            creds = self._reload_credentials(integration) if lease.waited else None
            if creds is not None and self.engine.get_state(creds.tokens) == TokenState.VALID:
                logger.info(
                    "Reusing token set refreshed by a concurrent caller",
                    extra={"integration_id": integration.id, "tenant_id": self.tenant_id},
                )
                return creds.tokens["access_token"]

            if creds is None:
                creds = self.store.get_decrypted_credentials(integration)
                if creds.tokens is None:
                    raise MissingTokenSet(integration.id)
            return await self._refresh(integration, creds)

    async def _refresh(self, integration: Integration, creds: DecryptedCredentials) -> str:
        provider = get_provider_config(integration.provider_name)
        token_endpoint = self._resolve_token_endpoint(integration, creds, provider)

        # Early refreshes (scheduled job) fail without touching status while
        # the current access token is still outside the buffer
        still_valid = self.engine.get_state(creds.tokens) == TokenState.VALID

        try:
            outcome = await self.engine.refresh(
                creds.tokens,
                creds.client_id,
                creds.client_secret,
                token_endpoint,
                provider=provider,
            )
        except RefreshNotPossibleError as e:
            if still_valid:
                self._log_early_refresh_failure(integration, e.error_code)
                raise
            self._demote(integration, reason=e.reason)
            raise ReconnectRequired(integration.id, reason=e.reason) from None
        except TokenRefreshError as e:
            if still_valid:
                self.audit.log(
                    event_type=AuditEventType.CREDENTIAL_REFRESH_FAILED,
                    integration_id=integration.id,
                    provider_name=integration.provider_name,
                    metadata={"status": e.status, "early_refresh": True},
                )
                self._log_early_refresh_failure(integration, e.error_code)
                raise

            recovered = await self._soft_retry(integration)
            if recovered is not None:
                return recovered

            self.audit.log(
                event_type=AuditEventType.CREDENTIAL_REFRESH_FAILED,
                integration_id=integration.id,
                provider_name=integration.provider_name,
                metadata={"status": e.status},
            )
            self._demote(integration, reason="refresh_failed")
            raise ReconnectRequired(integration.id, reason="refresh_failed") from None

        oauth_data = dict(creds.oauth_data or {})
        oauth_data["tokens"] = outcome.tokens
        self.store.persist_refreshed_tokens(integration.id, oauth_data)
        self.db.commit()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            integration_id=integration.id,
            provider_name=integration.provider_name,
            metadata={
                "expires_at": outcome.tokens.get("expires_at"),
                "source": creds.oauth_source.value,
            },
        )

        return outcome.access_token

    async def _soft_retry(self, integration: Integration) -> Optional[str]:
        """
        Re-read the persisted token set once after a failed refresh.

        A concurrent caller may have rotated the refresh token and persisted a
        fresh set moments ago; if so, use it instead of escalating.
        """
        await asyncio.sleep(self.retry_delay_seconds)
        creds = self._reload_credentials(integration)

        if creds is not None and self.engine.get_state(creds.tokens) == TokenState.VALID:
            logger.info(
                "Refresh failed but a concurrently persisted token set is valid",
                extra={"integration_id": integration.id, "tenant_id": self.tenant_id},
            )
            return creds.tokens["access_token"]
        return None

    def _reload_credentials(self, integration: Integration) -> Optional[DecryptedCredentials]:
        """Re-read the row from the database and decrypt it."""
        self.db.refresh(integration)
        if integration.status != IntegrationStatus.CONNECTED:
            raise ReconnectRequired(integration.id, reason=f"status_{integration.status.value}")
        creds = self.store.get_decrypted_credentials(integration)
        return creds if creds.tokens is not None else None

    def _resolve_token_endpoint(self, integration, creds, provider) -> str:
        if provider is not None:
            try:
                token_endpoint = provider.resolve_token_endpoint(creds.raw_settings)
            except ProviderConfigurationError:
                token_endpoint = None
        else:
            # Unregistered providers may carry their own endpoint in settings
            token_endpoint = creds.raw_settings.get("token_endpoint")

        if not token_endpoint:
            logger.warning(
                "Provider settings incomplete; cannot refresh",
                extra={"integration_id": integration.id, "provider_name": integration.provider_name},
            )
            raise ReconnectRequired(integration.id, reason="provider_not_configured")

        try:
            return validate_provider_url(token_endpoint)
        except ProviderConfigurationError:
            logger.warning(
                "Token endpoint rejected; credentials not sent",
                extra={"integration_id": integration.id, "provider_name": integration.provider_name},
            )
            raise ReconnectRequired(integration.id, reason="endpoint_not_allowed") from None

    def _log_early_refresh_failure(self, integration: Integration, error_code: str) -> None:
        logger.warning(
            "Early token refresh failed; current token still valid, status unchanged",
            extra={
                "integration_id": integration.id,
                "tenant_id": self.tenant_id,
                "provider_name": integration.provider_name,
                "error_code": error_code,
            },
        )

    def _demote(self, integration: Integration, reason: str) -> None:
        """connected -> expired; committed so other callers stop retrying."""
        self.lifecycle.transition(integration, IntegrationStatus.EXPIRED, reason=reason)
        self.db.commit()
