"""
Integration model - one row per (tenant, provider) connection.

SECURITY REQUIREMENTS:
- client_id, client_secret, api_key and oauth_data tokens are encrypted at rest
  inside the `settings` JSON bag (envelope format iv:tag:ciphertext)
- Secrets are NEVER exposed in API responses or logs
- Tenant-scoped access only

Storage shapes:
- Current: settings.client_id / settings.client_secret / settings.api_key /
  settings.oauth_data (encrypted leaves)
- Legacy: top-level client_id / client_secret / oauth_data columns, possibly
  plaintext. Read fallback only, never written by this codebase.
"""

import enum

from sqlalchemy import Column, String, Enum, Index, JSON, Text

from src.db_base import Base
from src.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class IntegrationStatus(str, enum.Enum):
    """Integration status enumeration."""
    PENDING = "pending"  # Connection flow started, no tokens yet
    CONNECTED = "connected"
    ERROR = "error"  # Authorization failed or provider rejected a valid-looking token
    EXPIRED = "expired"  # Token refresh failed, re-authorization required
    DISCONNECTED = "disconnected"  # Explicitly disconnected by tenant


class ConnectionType(str, enum.Enum):
    """How the integration authenticates against the provider."""
    OAUTH = "oauth"
    API_KEY = "api_key"


class ProviderEnvironment(str, enum.Enum):
    """Provider environment (provider-dependent, optional)."""
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class Integration(Base, TimestampMixin, TenantScopedMixin):
    """
    Stored connection between a tenant and a third-party provider.

    SECURITY:
    - Encrypted leaves inside settings are NEVER logged
    - to_safe_dict() is the only representation allowed in API responses
    """

    __tablename__ = "integrations"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    provider_name = Column(
        String(100),
        nullable=False,
        comment="Provider key (fortnox, hubspot, microsoft365, ...) - open-ended"
    )
    connection_type = Column(
        Enum(ConnectionType),
        nullable=False,
        default=ConnectionType.OAUTH,
        comment="oauth or api_key"
    )
    status = Column(
        Enum(IntegrationStatus),
        nullable=False,
        default=IntegrationStatus.PENDING,
        index=True,
        comment="Authoritative integration status"
    )
    environment = Column(
        String(20),
        nullable=True,
        comment="sandbox or production (provider-dependent)"
    )
    display_name = Column(
        String(255),
        nullable=True,
        comment="User-friendly connection name (allowed in logs)"
    )

    # Current storage location - encrypted leaves, NEVER log
    settings = Column(
        JSON,
        nullable=True,
        comment="Credential bag: encrypted client_id/client_secret/api_key/oauth_data"
    )

    # Legacy storage location - read fallback only
    client_id = Column(
        Text,
        nullable=True,
        comment="LEGACY client id (read-only, may be plaintext)"
    )
    client_secret = Column(
        Text,
        nullable=True,
        comment="LEGACY client secret (read-only, may be plaintext)"
    )
    oauth_data = Column(
        JSON,
        nullable=True,
        comment="LEGACY oauth data (read-only, may be plaintext)"
    )

    last_error = Column(
        String(100),
        nullable=True,
        comment="Machine-readable reason for the last error/expired transition"
    )

    __table_args__ = (
        Index("ix_integrations_tenant_provider", "tenant_id", "provider_name"),
        Index("ix_integrations_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include credential values."""
        return (
            f"<Integration("
            f"id={self.id}, "
            f"provider_name={self.provider_name}, "
            f"status={self.status})>"
        )

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging/API responses.

        SECURITY: Excludes settings and all legacy credential columns.
        """
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "provider_name": self.provider_name,
            "connection_type": self.connection_type.value if self.connection_type else None,
            "status": self.status.value if self.status else None,
            "environment": self.environment,
            "display_name": self.display_name,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
