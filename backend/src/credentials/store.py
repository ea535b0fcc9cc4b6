"""
Credential store adapter for Integration rows.

Produces one fully-decrypted view of an integration's credentials and token
set regardless of which historical storage shape the row uses, and persists
updates only to the current shape.

Storage locations:
- CURRENT: integration.settings.{client_id, client_secret, api_key, oauth_data}
- LEGACY:  integration.{client_id, client_secret, oauth_data} (read-only)

SECURITY REQUIREMENTS:
- Secrets are encrypted leaf-by-leaf before storage
- Decrypted values exist only in process memory and are never logged
- A decryption failure blocks the whole credential read
- Persisting in production without an encryption key fails closed
- Tenant-scoped access only

Usage:
    store = CredentialStore(db_session, tenant_id, cipher)

    integration = store.get_integration(integration_id)
    creds = store.get_decrypted_credentials(integration)
    if creds.tokens is None:
        raise MissingTokenSet(integration.id)

    store.persist_refreshed_tokens(integration.id, merged_oauth_data)
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from src.models.integration import Integration
from src.credentials.cipher import CipherEnvelope, is_encrypted
from src.credentials.errors import (
    DecryptionError,
    EncryptionNotConfiguredError,
    IntegrationNotFoundError,
)
from src.credentials.redaction import CredentialAuditLogger, AuditEventType

logger = logging.getLogger(__name__)

# Fields inside oauth_data.tokens that may be individually encrypted
TOKEN_FIELDS = ("access_token", "refresh_token", "expires_in", "expires_at", "scope")

# Fields that are always encrypted on write
SENSITIVE_TOKEN_FIELDS = ("access_token", "refresh_token")
SETTINGS_SECRET_FIELDS = ("client_id", "client_secret", "api_key")


class CredentialSource(str, Enum):
    """Which storage location a resolved value came from."""
    CURRENT = "current"
    LEGACY = "legacy"
    NONE = "none"


@dataclass
class DecryptedCredentials:
    """
    Decrypted view of an integration's credentials.

    SECURITY: Holds plaintext secrets. Never log or serialize this object.
    """
    client_id: Optional[str]
    client_secret: Optional[str]
    api_key: Optional[str]
    oauth_data: Optional[Dict[str, Any]]
    tokens: Optional[Dict[str, Any]]
    raw_settings: Dict[str, Any] = field(repr=False, default_factory=dict)
    oauth_source: CredentialSource = CredentialSource.NONE
    client_source: CredentialSource = CredentialSource.NONE

    def __repr__(self) -> str:
        """Safe repr - NEVER include secret values."""
        return (
            f"<DecryptedCredentials("
            f"oauth_source={self.oauth_source.value}, "
            f"client_source={self.client_source.value}, "
            f"has_tokens={self.tokens is not None})>"
        )


@dataclass
class MigrationResult:
    """Outcome of migrating one integration to the current encrypted shape."""
    integration_id: str
    changed_fields: List[str] = field(default_factory=list)
    new_settings: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def needs_update(self) -> bool:
        return len(self.changed_fields) > 0


class CredentialStore:
    """
    Two-location credential adapter for Integration rows.

    All methods that touch the database are tenant-scoped.
    """

    def __init__(self, db_session: Session, tenant_id: str, cipher: CipherEnvelope):
        """
        Initialize credential store.

        Args:
            db_session: Database session
            tenant_id: Tenant ID from auth context
            cipher: Configured cipher envelope

        Raises:
            ValueError: If tenant_id is not provided
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id
        self.cipher = cipher
        self.audit = CredentialAuditLogger(tenant_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_integration(self, integration_id: str) -> Integration:
        """
        Get integration by ID (tenant-scoped).

        Raises:
            IntegrationNotFoundError: If not found or not owned by tenant
        """
        integration = self.db.query(Integration).filter(
            Integration.id == integration_id,
            Integration.tenant_id == self.tenant_id,
        ).first()

        if not integration:
            raise IntegrationNotFoundError(integration_id)

        return integration

    def get_decrypted_credentials(self, integration: Integration) -> DecryptedCredentials:
        """
        Resolve and decrypt credentials across both storage locations.

        settings.* always wins over the legacy top-level columns. Values that
        are not envelopes pass through unchanged (legacy plaintext and
        passthrough mode).

        Raises:
            DecryptionError: If any envelope fails to decrypt
        """
        settings = dict(integration.settings or {})

        current_client_id = self.cipher.decrypt_if_needed(settings.get("client_id"))
        current_client_secret = self.cipher.decrypt_if_needed(settings.get("client_secret"))
        api_key = self.cipher.decrypt_if_needed(settings.get("api_key"))

        current_oauth = self._decrypt_oauth_data(settings.get("oauth_data"))

        if current_oauth:
            oauth_data = current_oauth
            oauth_source = CredentialSource.CURRENT
        else:
            # Legacy location followed its own migration path; decrypt independently
            legacy_oauth = self._decrypt_oauth_data(integration.oauth_data)
            oauth_data = legacy_oauth or None
            oauth_source = CredentialSource.LEGACY if legacy_oauth else CredentialSource.NONE

        if current_client_id:
            client_id = current_client_id
            client_source = CredentialSource.CURRENT
        else:
            client_id = self.cipher.decrypt_if_needed(integration.client_id)
            client_source = CredentialSource.LEGACY if client_id else CredentialSource.NONE

        client_secret = current_client_secret or self.cipher.decrypt_if_needed(
            integration.client_secret
        )

        tokens = None
        if isinstance(oauth_data, dict) and isinstance(oauth_data.get("tokens"), dict):
            tokens = oauth_data["tokens"]

        logger.debug(
            "Resolved integration credentials",
            extra={
                "integration_id": integration.id,
                "tenant_id": self.tenant_id,
                "source": oauth_source.value,
                "client_source": client_source.value,
            },
        )

        return DecryptedCredentials(
            client_id=client_id,
            client_secret=client_secret,
            api_key=api_key,
            oauth_data=oauth_data,
            tokens=tokens,
            raw_settings=settings,
            oauth_source=oauth_source,
            client_source=client_source,
        )

    # ------------------------------------------------------------------
    # Writes (current location only)
    # ------------------------------------------------------------------

    def persist_refreshed_tokens(
        self,
        integration_id: str,
        merged_oauth_data: Dict[str, Any],
    ) -> Integration:
        """
        Re-encrypt and store a merged oauth_data object under settings.oauth_data.

        Legacy columns are never touched. Calling this twice with the same
        input is a pure overwrite.

        Raises:
            EncryptionNotConfiguredError: Encryption disabled in production
            IntegrationNotFoundError: Unknown integration
        """
        self.ensure_can_persist()
        integration = self.get_integration(integration_id)

        new_settings = dict(integration.settings or {})
        new_settings["oauth_data"] = self._encrypt_oauth_data(merged_oauth_data)

        # Reassign (not mutate) so the JSON column is flagged dirty
        integration.settings = new_settings
        integration.updated_at = datetime.now(timezone.utc)
        self.db.flush()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            integration_id=integration.id,
            provider_name=integration.provider_name,
            metadata={"location": "settings.oauth_data", "action": "refreshed"},
        )

        return integration

    def store_client_credentials(
        self,
        integration: Integration,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_key: Optional[str] = None,
        extra_settings: Optional[Dict[str, Any]] = None,
    ) -> Integration:
        """
        Encrypt and store client credentials / API key in settings.

        Only provided values are written. extra_settings holds non-secret
        keys (webhook_url, tenant hint, ...); secret keys in it are ignored.

        Raises:
            EncryptionNotConfiguredError: Encryption disabled in production
        """
        self.ensure_can_persist()

        new_settings = dict(integration.settings or {})
        for key, value in (extra_settings or {}).items():
            if key in SETTINGS_SECRET_FIELDS or key == "oauth_data":
                continue
            new_settings[key] = value

        for key, value in (
            ("client_id", client_id),
            ("client_secret", client_secret),
            ("api_key", api_key),
        ):
            if value is not None:
                new_settings[key] = self.cipher.encrypt_if_needed(value)

        integration.settings = new_settings
        integration.updated_at = datetime.now(timezone.utc)
        self.db.flush()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            integration_id=integration.id,
            provider_name=integration.provider_name,
            metadata={
                "location": "settings",
                "fields": [
                    name for name, value in (
                        ("client_id", client_id),
                        ("client_secret", client_secret),
                        ("api_key", api_key),
                    ) if value is not None
                ],
            },
        )

        return integration

    def store_authorized_tokens(
        self,
        integration_id: str,
        token_response: Dict[str, Any],
        default_expires_in: int = 3600,
    ) -> Integration:
        """
        Store the token set from a successful authorization-code exchange.

        Any existing oauth_data (current, else legacy) is kept and its
        tokens sub-object replaced.

        Raises:
            EncryptionNotConfiguredError: Encryption disabled in production
            DecryptionError: Existing oauth_data cannot be decrypted
        """
        integration = self.get_integration(integration_id)
        existing = self.get_decrypted_credentials(integration).oauth_data or {}

        expires_in = token_response.get("expires_in") or default_expires_in
        tokens = {
            "access_token": token_response.get("access_token"),
            "refresh_token": token_response.get("refresh_token"),
            "expires_in": expires_in,
            "expires_at": int(time.time()) + int(expires_in),
            "scope": token_response.get("scope"),
        }
        if token_response.get("token_type"):
            tokens["token_type"] = token_response["token_type"]

        oauth_data = dict(existing)
        oauth_data["tokens"] = tokens
        return self.persist_refreshed_tokens(integration_id, oauth_data)

    # ------------------------------------------------------------------
    # Migration (legacy / plaintext -> current encrypted shape)
    # ------------------------------------------------------------------

    def plan_migration(self, integration: Integration) -> MigrationResult:
        """
        Compute the encrypted current-location settings for an integration.

        - Plaintext secrets in settings are encrypted (envelopes are skipped)
        - Legacy top-level values are copied into settings only when the
          current location is empty; legacy columns are never modified

        Does not write anything; see apply_migration().
        """
        result = MigrationResult(integration_id=integration.id)
        settings = dict(integration.settings or {})

        for key in SETTINGS_SECRET_FIELDS:
            value = settings.get(key)
            if isinstance(value, str) and value and not is_encrypted(value):
                settings[key] = self.cipher.encrypt(value)
                result.changed_fields.append(key)

        for key in ("client_id", "client_secret"):
            legacy_value = getattr(integration, key)
            if not settings.get(key) and legacy_value:
                settings[key] = self.cipher.encrypt_if_needed(
                    self.cipher.decrypt_if_needed(legacy_value)
                )
                result.changed_fields.append(f"legacy.{key}")

        current_oauth = settings.get("oauth_data")
        if current_oauth:
            encrypted_oauth = self._encrypt_oauth_data(self._decrypt_oauth_data(current_oauth))
            if not self._same_encrypted_shape(current_oauth, encrypted_oauth):
                settings["oauth_data"] = encrypted_oauth
                result.changed_fields.append("oauth_data")
        elif integration.oauth_data:
            settings["oauth_data"] = self._encrypt_oauth_data(
                self._decrypt_oauth_data(integration.oauth_data)
            )
            result.changed_fields.append("legacy.oauth_data")

        if result.needs_update:
            result.new_settings = settings
        return result

    def apply_migration(self, integration: Integration, result: MigrationResult) -> None:
        """Write a planned migration to the current location."""
        if not result.needs_update:
            return
        self.ensure_can_persist()

        integration.settings = result.new_settings
        integration.updated_at = datetime.now(timezone.utc)
        self.db.flush()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_MIGRATED,
            integration_id=integration.id,
            provider_name=integration.provider_name,
            metadata={"fields": list(result.changed_fields)},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def ensure_can_persist(self) -> None:
        """Fail closed when persisting without a key in production."""
        if self.cipher.is_encryption_enabled():
            return

        if not self.cipher.config.allows_plaintext_storage:
            logger.error(
                "Refusing to persist credentials without encryption",
                extra={"tenant_id": self.tenant_id, "app_env": self.cipher.config.app_env},
            )
            raise EncryptionNotConfiguredError()

        logger.warning(
            "Persisting credentials in passthrough mode (encryption disabled)",
            extra={"tenant_id": self.tenant_id, "app_env": self.cipher.config.app_env},
        )

    def _decrypt_oauth_data(self, oauth_data: Any) -> Optional[Dict[str, Any]]:
        """Decrypt an oauth_data object (or a whole-object envelope)."""
        if not oauth_data:
            return None

        if isinstance(oauth_data, str):
            plaintext = self.cipher.decrypt_if_needed(oauth_data)
            try:
                oauth_data = json.loads(plaintext)
            except (TypeError, ValueError):
                raise DecryptionError() from None

        if not isinstance(oauth_data, dict):
            raise DecryptionError()

        decrypted = dict(oauth_data)
        for key in SENSITIVE_TOKEN_FIELDS:
            if key in decrypted:
                decrypted[key] = self.cipher.decrypt_if_needed(decrypted[key])

        tokens = decrypted.get("tokens")
        if isinstance(tokens, dict):
            decrypted["tokens"] = {
                key: self.cipher.decrypt_if_needed(value) if key in TOKEN_FIELDS else value
                for key, value in tokens.items()
            }

        return decrypted

    def _encrypt_oauth_data(self, oauth_data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Encrypt sensitive leaves of an oauth_data object."""
        if not oauth_data:
            return oauth_data

        encrypted = dict(oauth_data)
        for key in SENSITIVE_TOKEN_FIELDS:
            if encrypted.get(key):
                encrypted[key] = self.cipher.encrypt_if_needed(encrypted[key])

        tokens = encrypted.get("tokens")
        if isinstance(tokens, dict):
            encrypted_tokens = dict(tokens)
            for key in SENSITIVE_TOKEN_FIELDS:
                if encrypted_tokens.get(key):
                    encrypted_tokens[key] = self.cipher.encrypt_if_needed(encrypted_tokens[key])
            encrypted["tokens"] = encrypted_tokens

        return encrypted

    @staticmethod
    def _same_encrypted_shape(before: Any, after: Any) -> bool:
        """True if every sensitive leaf that is an envelope in `after` already was one in `before`."""
        if not isinstance(before, dict) or not isinstance(after, dict):
            return False

        for key in SENSITIVE_TOKEN_FIELDS:
            if is_encrypted(after.get(key)) and not is_encrypted(before.get(key)):
                return False

        before_tokens = before.get("tokens") or {}
        after_tokens = after.get("tokens") or {}
        for key in SENSITIVE_TOKEN_FIELDS:
            if is_encrypted(after_tokens.get(key)) and not is_encrypted(before_tokens.get(key)):
                return False

        return True
