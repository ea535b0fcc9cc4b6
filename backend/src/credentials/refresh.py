"""
Token refresh engine for OAuth token sets.

Decides whether a token set needs refreshing, performs the refresh call
against the provider token endpoint, and merges the provider response into a
new token set. Persisting the merged set and changing Integration status are
the caller's job (see IntegrationTokenService).

States:
    VALID           now < expires_at - BUFFER (or no expiry exposed)
    NEEDS_REFRESH   now >= expires_at - BUFFER
    REFRESHING      provider call in flight
    REFRESHED       provider returned a new token set
    REFRESH_FAILED  provider rejected the refresh, or the call timed out

SECURITY REQUIREMENTS:
- Tokens and client secrets are never logged
- Provider error bodies are kept on the exception for diagnostics only
- No internal retries; the caller owns retry policy

Usage:
    engine = TokenRefreshEngine()
    outcome = await engine.ensure_valid_access_token(
        tokens, client_id, client_secret, token_endpoint,
    )
    if outcome.refreshed:
        store.persist_refreshed_tokens(integration.id, {**oauth_data, "tokens": outcome.tokens})
"""

import base64
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

import httpx

from src.config.vault import (
    DEFAULT_EXPIRES_IN_SECONDS,
    TOKEN_REFRESH_BUFFER_SECONDS,
    TOKEN_REFRESH_TIMEOUT_SECONDS,
)
from src.credentials.errors import RefreshNotPossibleError, TokenRefreshError
from src.integrations.providers import CLIENT_AUTH_BODY

if TYPE_CHECKING:
    from src.integrations.providers import ProviderConfig

logger = logging.getLogger(__name__)

REFRESH_BUFFER_SECONDS = TOKEN_REFRESH_BUFFER_SECONDS

# Truncate provider error bodies kept for diagnostics
MAX_PROVIDER_MESSAGE_LENGTH = 500


class TokenState(str, Enum):
    """Refresh state of a single token set."""
    VALID = "valid"
    NEEDS_REFRESH = "needs_refresh"
    REFRESHING = "refreshing"
    REFRESHED = "refreshed"
    REFRESH_FAILED = "refresh_failed"


@dataclass
class RefreshOutcome:
    """
    Result of ensure_valid_access_token().

    SECURITY: access_token and tokens are plaintext and excluded from repr.
    """
    access_token: Optional[str] = field(repr=False)
    tokens: Dict[str, Any] = field(repr=False)
    refreshed: bool
    state: TokenState


# ============================================================================
# Expiry helpers
# ============================================================================

def normalize_expires_at(value: Any) -> Optional[float]:
    """
    Normalize expires_at to epoch seconds.

    Accepts epoch seconds (int, float or numeric string) and ISO-8601
    strings. Naive ISO timestamps are taken as UTC.

    Returns:
        Epoch seconds, or None if no expiry is stored

    Raises:
        ValueError: If the value is present but cannot be parsed
    """
    if value is None or value == "":
        return None

    if isinstance(value, bool):
        raise ValueError("expires_at must be a timestamp")

    if isinstance(value, (int, float)):
        return float(value)

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            return float(text)
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported expires_at type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def get_token_state(
    tokens: Optional[Dict[str, Any]],
    now: Optional[float] = None,
    buffer_seconds: int = REFRESH_BUFFER_SECONDS,
) -> TokenState:
    """
    Classify a token set as VALID or NEEDS_REFRESH.

    A token set without expires_at is VALID (providers that do not expose
    expiry are never refreshed proactively). An unparseable expires_at, or a
    missing access_token, is NEEDS_REFRESH.
    """
    if not tokens or not tokens.get("access_token"):
        return TokenState.NEEDS_REFRESH

    try:
        expires_at = normalize_expires_at(tokens.get("expires_at"))
    except ValueError:
        logger.warning("Unparseable expires_at on token set; treating as expiring")
        return TokenState.NEEDS_REFRESH

    if expires_at is None:
        return TokenState.VALID

    current = time.time() if now is None else now
    if current >= expires_at - buffer_seconds:
        return TokenState.NEEDS_REFRESH
    return TokenState.VALID


def needs_refresh(
    tokens: Optional[Dict[str, Any]],
    now: Optional[float] = None,
) -> bool:
    """True if the token set is within the refresh buffer of expiry."""
    return get_token_state(tokens, now=now) == TokenState.NEEDS_REFRESH


def build_basic_auth_header(client_id: Optional[str], client_secret: Optional[str]) -> str:
    """
    Build an HTTP Basic Authorization header value.

    An empty or missing secret is tolerated (public clients).
    """
    raw = f"{client_id or ''}:{client_secret or ''}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def merge_token_response(
    tokens: Dict[str, Any],
    response_data: Dict[str, Any],
    now: float,
    default_expires_in: int = DEFAULT_EXPIRES_IN_SECONDS,
) -> Dict[str, Any]:
    """
    Merge a provider token response into the existing token set.

    - access_token is always replaced
    - refresh_token is replaced only if the provider returned one
    - expires_in defaults when omitted; expires_at = now + expires_in
    - scope is replaced only if the provider returned one
    """
    merged = dict(tokens or {})
    merged["access_token"] = response_data["access_token"]

    if response_data.get("refresh_token"):
        merged["refresh_token"] = response_data["refresh_token"]

    try:
        expires_in = int(response_data.get("expires_in") or default_expires_in)
    except (TypeError, ValueError):
        expires_in = default_expires_in

    merged["expires_in"] = expires_in
    merged["expires_at"] = int(now) + expires_in

    if response_data.get("scope"):
        merged["scope"] = response_data["scope"]

    if response_data.get("token_type"):
        merged["token_type"] = response_data["token_type"]

    return merged


# ============================================================================
# Engine
# ============================================================================

class TokenRefreshEngine:
    """
    Keeps a single token set valid.

    Stateless between calls: holds no locks and never mutates Integration
    rows. Concurrency control lives in refresh_lock.py.
    """

    def __init__(
        self,
        timeout: float = TOKEN_REFRESH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize refresh engine.

        Args:
            timeout: Provider token call timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Returns current epoch seconds
        """
        self.timeout = timeout
        self.transport = transport
        self.clock = clock

    def get_state(self, tokens: Optional[Dict[str, Any]]) -> TokenState:
        return get_token_state(tokens, now=self.clock())

    async def ensure_valid_access_token(
        self,
        tokens: Dict[str, Any],
        client_id: Optional[str],
        client_secret: Optional[str],
        token_endpoint: str,
        provider: Optional["ProviderConfig"] = None,
    ) -> RefreshOutcome:
        """
        Return a valid access token, refreshing if inside the buffer.

        Args:
            tokens: Decrypted token set (oauth_data.tokens)
            client_id: Decrypted OAuth client id
            client_secret: Decrypted OAuth client secret (may be empty)
            token_endpoint: Provider token URL
            provider: Optional provider config (auth method, defaults)

        Returns:
            RefreshOutcome; refreshed=True means tokens must be persisted

        Raises:
            RefreshNotPossibleError: Refresh needed but no refresh token
            TokenRefreshError: Provider rejected the refresh or timed out
        """
        state = self.get_state(tokens)

        if state == TokenState.VALID:
            return RefreshOutcome(
                access_token=tokens.get("access_token"),
                tokens=tokens,
                refreshed=False,
                state=TokenState.VALID,
            )

        return await self.refresh(
            tokens,
            client_id,
            client_secret,
            token_endpoint,
            provider=provider,
        )

    async def refresh(
        self,
        tokens: Dict[str, Any],
        client_id: Optional[str],
        client_secret: Optional[str],
        token_endpoint: str,
        provider: Optional["ProviderConfig"] = None,
    ) -> RefreshOutcome:
        """
        Unconditionally refresh a token set.

        Raises:
            RefreshNotPossibleError: No refresh token available
            TokenRefreshError: Provider rejected the refresh or timed out
        """
        refresh_token = (tokens or {}).get("refresh_token")
        if not refresh_token:
            logger.warning(
                "Token refresh not possible",
                extra={"reason": "no_refresh_token", "provider_name": _provider_name(provider)},
            )
            raise RefreshNotPossibleError("no_refresh_token")

        logger.info(
            "Refreshing OAuth token",
            extra={
                "provider_name": _provider_name(provider),
                "state": TokenState.REFRESHING.value,
            },
        )

        response_data = await self._request_token(
            refresh_token, client_id, client_secret, token_endpoint, provider,
        )

        default_expires_in = DEFAULT_EXPIRES_IN_SECONDS
        if provider is not None and provider.default_expires_in:
            default_expires_in = provider.default_expires_in

        merged = merge_token_response(
            tokens, response_data, now=self.clock(), default_expires_in=default_expires_in,
        )

        logger.info(
            "OAuth token refreshed",
            extra={
                "provider_name": _provider_name(provider),
                "state": TokenState.REFRESHED.value,
                "rotated": bool(response_data.get("refresh_token")),
                "expires_in": merged["expires_in"],
            },
        )

        return RefreshOutcome(
            access_token=merged["access_token"],
            tokens=merged,
            refreshed=True,
            state=TokenState.REFRESHED,
        )

    async def _request_token(
        self,
        refresh_token: str,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_endpoint: str,
        provider: Optional["ProviderConfig"],
    ) -> Dict[str, Any]:
        """POST the refresh grant and return the parsed JSON body."""
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        headers = {"Accept": "application/json"}

        if provider is not None and provider.client_auth_method == CLIENT_AUTH_BODY:
            data["client_id"] = client_id or ""
            data["client_secret"] = client_secret or ""
        else:
            headers["Authorization"] = build_basic_auth_header(client_id, client_secret)

        if provider is not None and provider.extra_refresh_params:
            data.update(provider.extra_refresh_params)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(token_endpoint, data=data, headers=headers)
        except httpx.TimeoutException:
            self._log_failure(provider, status=None, reason="timeout")
            raise TokenRefreshError(status=None, provider_message="timeout") from None
        except httpx.HTTPError as e:
            self._log_failure(provider, status=None, reason=type(e).__name__)
            raise TokenRefreshError(status=None, provider_message=type(e).__name__) from None

        if not response.is_success:
            self._log_failure(provider, status=response.status_code, reason="rejected")
            raise TokenRefreshError(
                status=response.status_code,
                provider_message=response.text[:MAX_PROVIDER_MESSAGE_LENGTH],
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict) or not payload.get("access_token"):
            self._log_failure(provider, status=response.status_code, reason="invalid_response")
            raise TokenRefreshError(
                status=response.status_code,
                provider_message="Token response did not contain an access_token",
            )

        return payload

    @staticmethod
    def _log_failure(provider, status: Optional[int], reason: str) -> None:
        # Provider body is not logged; it may echo request parameters
        logger.warning(
            "OAuth token refresh failed",
            extra={
                "provider_name": _provider_name(provider),
                "state": TokenState.REFRESH_FAILED.value,
                "status": status,
                "reason": reason,
            },
        )


def _provider_name(provider) -> Optional[str]:
    return provider.name if provider is not None else None
