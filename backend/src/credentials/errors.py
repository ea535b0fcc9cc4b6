"""
Credential vault error hierarchy.

Provides:
- VaultError: base for all vault failures
- DecryptionError: envelope malformed or authentication failed (never says which)
- EncryptionNotConfiguredError: refusing to persist credentials without a key
- MissingTokenSet: integration has no usable oauth_data.tokens
- RefreshNotPossibleError: token needs refresh but no refresh token is stored
- TokenRefreshError: provider rejected the refresh (or the call timed out)
- ReconnectRequired: consumer-facing "this integration needs reconnecting"
- IntegrationLimitReached: creation blocked by plan limits
- IntegrationNotFoundError / InvalidStatusTransitionError

SECURITY: to_dict() output is safe for API responses. It never contains
secrets, ciphertext, or provider response bodies.
"""

from typing import Optional

RECONNECT_MESSAGE = "This integration needs to be reconnected."


class VaultError(Exception):
    """Base exception for credential vault failures."""

    error_code = "VAULT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class DecryptionError(VaultError):
    """
    Raised when an encrypted value cannot be decrypted.

    Covers malformed envelopes, invalid hex, wrong key and tampered
    ciphertext alike. The cause is deliberately not exposed.
    """

    error_code = "DECRYPTION_FAILED"

    def __init__(self, message: str = "Failed to decrypt credential"):
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": RECONNECT_MESSAGE}


class EncryptionNotConfiguredError(VaultError):
    """Raised when credentials would be persisted without encryption in production."""

    error_code = "ENCRYPTION_NOT_CONFIGURED"

    def __init__(
        self,
        message: str = "ENCRYPTION_KEY is required to store credentials",
    ):
        super().__init__(message)


class MissingTokenSet(VaultError):
    """Raised when an integration has no usable oauth_data.tokens."""

    error_code = "MISSING_TOKEN_SET"

    def __init__(self, integration_id: Optional[str] = None):
        self.integration_id = integration_id
        super().__init__(f"No token set stored for integration {integration_id}")

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": RECONNECT_MESSAGE}


class RefreshNotPossibleError(VaultError):
    """Token needs refresh but cannot be refreshed (no refresh token)."""

    error_code = "REFRESH_NOT_POSSIBLE"

    def __init__(self, reason: str = "no_refresh_token"):
        self.reason = reason
        super().__init__(f"Token refresh not possible: {reason}")


class TokenRefreshError(VaultError):
    """
    Provider rejected the token refresh.

    status is None when the call never produced an HTTP response
    (timeout or transport failure). provider_message is kept for
    server-side diagnostics only and is excluded from to_dict().
    """

    error_code = "TOKEN_REFRESH_FAILED"

    def __init__(self, status: Optional[int], provider_message: Optional[str] = None):
        self.status = status
        self.provider_message = provider_message
        super().__init__(f"Token refresh failed with status {status}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": RECONNECT_MESSAGE,
            "status": self.status,
        }


class ReconnectRequired(VaultError):
    """
    The integration cannot produce a valid access token without the tenant
    re-authorizing it.
    """

    error_code = "RECONNECT_REQUIRED"

    def __init__(self, integration_id: Optional[str] = None, reason: str = "reconnect_required"):
        self.integration_id = integration_id
        self.reason = reason
        super().__init__(f"Integration {integration_id} requires reconnection ({reason})")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": RECONNECT_MESSAGE,
            "integration_id": self.integration_id,
            "reason": self.reason,
        }


class IntegrationLimitReached(VaultError):
    """Creation blocked because the tenant is at its plan's integration limit."""

    error_code = "INTEGRATION_LIMIT_REACHED"

    def __init__(self, current: int, max: int):
        self.current = current
        self.max = max
        super().__init__(f"Integration limit reached ({current}/{max})")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": "Your plan's integration limit has been reached.",
            "current": self.current,
            "max": self.max,
        }


class IntegrationNotFoundError(VaultError):
    """Integration not found or not owned by the tenant."""

    error_code = "INTEGRATION_NOT_FOUND"

    def __init__(self, integration_id: str):
        self.integration_id = integration_id
        super().__init__(f"Integration not found: {integration_id}")


class InvalidStatusTransitionError(VaultError):
    """Requested status change is not an allowed lifecycle transition."""

    error_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot transition integration from {from_status} to {to_status}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "from_status": self.from_status,
            "to_status": self.to_status,
        }
