"""
Credential vault for integration secrets and OAuth token sets.

This module provides:
- AES-256-GCM envelope encryption of single credential values
- A two-location store adapter (current settings.* vs legacy columns)
- The OAuth token refresh engine
- Audit logging with automatic redaction

SECURITY:
- Secrets are encrypted at rest using ENCRYPTION_KEY
- No plaintext secrets outside process memory
- Secrets NEVER appear in logs or API responses
- Allowed in logs: integration_id, provider_name, display_name

Usage:
    from src.credentials import CipherEnvelope, CredentialStore, TokenRefreshEngine
    from src.config.vault import load_cipher_config

    cipher = CipherEnvelope(load_cipher_config())
    store = CredentialStore(db_session, tenant_id, cipher)
    creds = store.get_decrypted_credentials(store.get_integration(integration_id))
"""

from src.credentials.cipher import (
    CipherConfig,
    CipherEnvelope,
    get_cipher_envelope,
    is_encrypted,
)
from src.credentials.errors import (
    VaultError,
    DecryptionError,
    EncryptionNotConfiguredError,
    MissingTokenSet,
    RefreshNotPossibleError,
    TokenRefreshError,
    ReconnectRequired,
    IntegrationLimitReached,
    IntegrationNotFoundError,
    InvalidStatusTransitionError,
)
from src.credentials.store import (
    CredentialStore,
    CredentialSource,
    DecryptedCredentials,
)
from src.credentials.refresh import (
    TokenRefreshEngine,
    TokenState,
    RefreshOutcome,
    needs_refresh,
)
from src.credentials.redaction import (
    redact_credential_data,
    CredentialAuditLogger,
    AuditEventType,
)

__all__ = [
    # Cipher
    "CipherConfig",
    "CipherEnvelope",
    "get_cipher_envelope",
    "is_encrypted",
    # Errors
    "VaultError",
    "DecryptionError",
    "EncryptionNotConfiguredError",
    "MissingTokenSet",
    "RefreshNotPossibleError",
    "TokenRefreshError",
    "ReconnectRequired",
    "IntegrationLimitReached",
    "IntegrationNotFoundError",
    "InvalidStatusTransitionError",
    # Store
    "CredentialStore",
    "CredentialSource",
    "DecryptedCredentials",
    # Refresh
    "TokenRefreshEngine",
    "TokenState",
    "RefreshOutcome",
    "needs_refresh",
    # Redaction
    "redact_credential_data",
    "CredentialAuditLogger",
    "AuditEventType",
]
