"""
Integration lifecycle gate.

Owns every stored status transition of an Integration and the per-tenant
integration limit.

Status state machine:
    pending   -> connected     authorization callback succeeded, tokens stored
    pending   -> error         authorization callback failed or timed out
    pending   -> disconnected  tenant abandoned the connection flow
    connected -> expired       token refresh failed
    connected -> error         provider rejected a valid-looking token
    error | expired -> connected     tenant re-authorized
    connected | error | expired -> disconnected   tenant disconnected

Stored status is authoritative for gating (e.g. whether to sync).
is_token_expired() is a storage-free derived check for display only.

SECURITY:
- tenant_id MUST come from the auth context, never client input
- Every transition emits an audit event
- Creation beyond the plan limit writes nothing

Usage:
    lifecycle = IntegrationLifecycleService(db_session, tenant_id)
    integration = lifecycle.create_integration("fortnox", client_id=..., client_secret=...)
    lifecycle.mark_connected(integration.id, token_response)
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.config.vault import TOKEN_REFRESH_BUFFER_SECONDS
from src.credentials.cipher import CipherEnvelope, get_cipher_envelope
from src.credentials.errors import (
    DecryptionError,
    IntegrationLimitReached,
    InvalidStatusTransitionError,
)
from src.credentials.redaction import AuditEventType, CredentialAuditLogger
from src.credentials.refresh import TokenState, get_token_state
from src.credentials.store import CredentialStore
from src.integrations.providers import get_provider_config
from src.models.integration import ConnectionType, Integration, IntegrationStatus
from src.services.plan_limits import IntegrationLimitCheck, PlanLimitService

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    IntegrationStatus.PENDING: {
        IntegrationStatus.CONNECTED,
        IntegrationStatus.ERROR,
        IntegrationStatus.DISCONNECTED,
    },
    IntegrationStatus.CONNECTED: {
        IntegrationStatus.EXPIRED,
        IntegrationStatus.ERROR,
        IntegrationStatus.DISCONNECTED,
    },
    IntegrationStatus.ERROR: {
        IntegrationStatus.CONNECTED,
        IntegrationStatus.DISCONNECTED,
    },
    IntegrationStatus.EXPIRED: {
        IntegrationStatus.CONNECTED,
        IntegrationStatus.DISCONNECTED,
    },
    IntegrationStatus.DISCONNECTED: set(),
}


def can_transition(from_status: IntegrationStatus, to_status: IntegrationStatus) -> bool:
    """True if from_status -> to_status is an allowed lifecycle transition."""
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def is_token_expired(
    integration: Integration,
    cipher: Optional[CipherEnvelope] = None,
    now: Optional[float] = None,
) -> bool:
    """
    Derived "needs reconnect" check from the stored expiry.

    Uses the same buffer as the refresh engine. Display-only; never used to
    gate syncs. An OAuth integration without a readable token set counts as
    expired; an integration whose provider does not expose expiry does not.
    """
    if integration.connection_type == ConnectionType.API_KEY:
        return False

    store = CredentialStore(None, integration.tenant_id, cipher or get_cipher_envelope())
    try:
        tokens = store.get_decrypted_credentials(integration).tokens
    except DecryptionError:
        logger.warning(
            "Token set unreadable; reporting integration as expired",
            extra={"integration_id": integration.id, "tenant_id": integration.tenant_id},
        )
        return True

    if not tokens:
        return True

    current = time.time() if now is None else now
    state = get_token_state(tokens, now=current, buffer_seconds=TOKEN_REFRESH_BUFFER_SECONDS)
    return state == TokenState.NEEDS_REFRESH


class IntegrationLifecycleService:
    """
    Creates integrations and records their status transitions.

    All changes are flushed, not committed; the caller owns the transaction.
    """

    def __init__(
        self,
        db_session: Session,
        tenant_id: str,
        cipher: Optional[CipherEnvelope] = None,
    ):
        """
        Initialize lifecycle service.

        Args:
            db_session: Database session
            tenant_id: Tenant ID from auth context
            cipher: Cipher envelope (process-wide default if omitted)

        Raises:
            ValueError: If tenant_id is not provided
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id
        self.cipher = cipher or get_cipher_envelope()
        self.store = CredentialStore(db_session, tenant_id, self.cipher)
        self.limits = PlanLimitService(db_session, tenant_id)
        self.audit = CredentialAuditLogger(tenant_id)

    # =========================================================================
    # Limit gate
    # =========================================================================

    def can_create_integration(self) -> IntegrationLimitCheck:
        """Compare the tenant's non-disconnected integrations to its plan limit."""
        return self.limits.check()

    def create_integration(
        self,
        provider_name: str,
        connection_type: ConnectionType = ConnectionType.OAUTH,
        display_name: Optional[str] = None,
        environment: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_key: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """
        Create a pending integration if the plan limit allows it.

        A tenant has at most one non-disconnected integration per provider. If
        one exists it is returned instead (secrets and labels updated when
        given), so a retried connection flow does not use another slot.

        Client credentials and API keys are encrypted into settings.

        Raises:
            IntegrationLimitReached: Tenant is at its plan limit (nothing written)
            EncryptionNotConfiguredError: Secrets given but encryption disabled in production
        """
        has_secrets = any(value is not None for value in (client_id, client_secret, api_key))

        existing = self.get_active_integration(provider_name)
        if existing is not None:
            return self._reuse_integration(
                existing, has_secrets, display_name, environment,
                client_id, client_secret, api_key, settings,
            )

        check = self.can_create_integration()
        if not check.allowed:
            self.audit.log(
                event_type=AuditEventType.INTEGRATION_LIMIT_REACHED,
                integration_id=None,
                provider_name=provider_name,
                metadata={"current": check.current, "max": check.max},
            )
            raise IntegrationLimitReached(current=check.current, max=check.max)

        if has_secrets:
            # Refuse before the row exists so a failure leaves nothing behind
            self.store.ensure_can_persist()

        integration = Integration(
            tenant_id=self.tenant_id,
            provider_name=provider_name,
            connection_type=connection_type,
            status=IntegrationStatus.PENDING,
            display_name=display_name,
            environment=environment,
            settings={},
        )
        self.db.add(integration)
        self.db.flush()

        if has_secrets or settings:
            self.store.store_client_credentials(
                integration,
                client_id=client_id,
                client_secret=client_secret,
                api_key=api_key,
                extra_settings=settings,
            )

        self.audit.log(
            event_type=AuditEventType.INTEGRATION_CREATED,
            integration_id=integration.id,
            provider_name=provider_name,
            metadata={"connection_type": connection_type.value},
        )

        logger.info(
            "Integration created",
            extra={
                "tenant_id": self.tenant_id,
                "integration_id": integration.id,
                "provider_name": provider_name,
                "current": check.current + 1,
                "max": check.max,
            },
        )

        return integration

    def get_active_integration(self, provider_name: str) -> Optional[Integration]:
        """The tenant's non-disconnected integration for a provider, if any."""
        return (
            self.db.query(Integration)
            .filter(
                Integration.tenant_id == self.tenant_id,
                Integration.provider_name == provider_name,
                Integration.status != IntegrationStatus.DISCONNECTED,
            )
            .order_by(Integration.created_at.asc())
            .first()
        )

    def _reuse_integration(
        self,
        integration: Integration,
        has_secrets: bool,
        display_name: Optional[str],
        environment: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        api_key: Optional[str],
        settings: Optional[Dict[str, Any]],
    ) -> Integration:
        if has_secrets:
            self.store.ensure_can_persist()

        if display_name is not None:
            integration.display_name = display_name
        if environment is not None:
            integration.environment = environment
        self.db.flush()

        if has_secrets or settings:
            self.store.store_client_credentials(
                integration,
                client_id=client_id,
                client_secret=client_secret,
                api_key=api_key,
                extra_settings=settings,
            )

        logger.info(
            "Reusing existing integration for provider",
            extra={
                "tenant_id": self.tenant_id,
                "integration_id": integration.id,
                "provider_name": integration.provider_name,
                "status": integration.status.value,
            },
        )
        return integration

    # =========================================================================
    # Transitions
    # =========================================================================

    def transition(
        self,
        integration: Integration,
        to_status: IntegrationStatus,
        reason: Optional[str] = None,
    ) -> Integration:
        """
        Record a status transition.

        Re-applying the current status is a no-op.

        Raises:
            InvalidStatusTransitionError: Transition not allowed
        """
        from_status = integration.status
        if from_status == to_status:
            return integration

        if not can_transition(from_status, to_status):
            raise InvalidStatusTransitionError(from_status.value, to_status.value)

        integration.status = to_status
        integration.last_error = reason if to_status in (
            IntegrationStatus.ERROR, IntegrationStatus.EXPIRED,
        ) else None
        integration.updated_at = datetime.now(timezone.utc)
        self.db.flush()

        self.audit.log(
            event_type=AuditEventType.INTEGRATION_STATUS_CHANGED,
            integration_id=integration.id,
            provider_name=integration.provider_name,
            metadata={
                "from_status": from_status.value,
                "to_status": to_status.value,
                "reason": reason,
            },
        )

        logger.info(
            "Integration status changed",
            extra={
                "tenant_id": self.tenant_id,
                "integration_id": integration.id,
                "from_status": from_status.value,
                "to_status": to_status.value,
                "reason": reason,
            },
        )

        return integration

    def mark_connected(
        self,
        integration_id: str,
        token_response: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """
        Authorization (or re-authorization) succeeded.

        If token_response is given it is stored as the new token set first.

        Raises:
            InvalidStatusTransitionError: Integration cannot become connected
                (nothing is stored)
        """
        integration = self.store.get_integration(integration_id)
        if (
            integration.status != IntegrationStatus.CONNECTED
            and not can_transition(integration.status, IntegrationStatus.CONNECTED)
        ):
            raise InvalidStatusTransitionError(
                integration.status.value, IntegrationStatus.CONNECTED.value,
            )

        if token_response is not None:
            provider = get_provider_config(integration.provider_name)
            kwargs = {}
            if provider is not None:
                kwargs["default_expires_in"] = provider.default_expires_in
            integration = self.store.store_authorized_tokens(
                integration_id, token_response, **kwargs
            )

        return self.transition(integration, IntegrationStatus.CONNECTED)

    def mark_authorization_failed(
        self,
        integration_id: str,
        reason: str = "authorization_failed",
    ) -> Integration:
        """Authorization callback failed or timed out (pending -> error)."""
        integration = self.store.get_integration(integration_id)
        return self.transition(integration, IntegrationStatus.ERROR, reason=reason)

    def mark_expired(
        self,
        integration_id: str,
        reason: str = "refresh_failed",
    ) -> Integration:
        """Token refresh failed (connected -> expired)."""
        integration = self.store.get_integration(integration_id)
        return self.transition(integration, IntegrationStatus.EXPIRED, reason=reason)

    def mark_error(
        self,
        integration_id: str,
        reason: str = "provider_auth_failed",
    ) -> Integration:
        """Provider rejected a valid-looking token (connected -> error)."""
        integration = self.store.get_integration(integration_id)
        return self.transition(integration, IntegrationStatus.ERROR, reason=reason)

    def disconnect(self, integration_id: str) -> Integration:
        """Explicit tenant disconnect. The row is kept and stops counting toward the limit."""
        integration = self.store.get_integration(integration_id)
        return self.transition(integration, IntegrationStatus.DISCONNECTED, reason="tenant_disconnect")

    # =========================================================================
    # Reads
    # =========================================================================

    def list_integrations(self, include_disconnected: bool = False) -> List[Integration]:
        query = self.db.query(Integration).filter(Integration.tenant_id == self.tenant_id)
        if not include_disconnected:
            query = query.filter(Integration.status != IntegrationStatus.DISCONNECTED)
        return query.order_by(Integration.created_at.asc()).all()

    def needs_reconnect(self, integration: Integration, now: Optional[float] = None) -> bool:
        """Display flag combining stored status and the derived expiry check."""
        if integration.status in (IntegrationStatus.ERROR, IntegrationStatus.EXPIRED):
            return True
        if integration.status != IntegrationStatus.CONNECTED:
            return False
        return is_token_expired(integration, cipher=self.cipher, now=now)
