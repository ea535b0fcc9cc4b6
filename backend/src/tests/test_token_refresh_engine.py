"""
Tests for the OAuth token refresh engine.

Provider token endpoints are simulated with httpx.MockTransport; no network
calls are made.
"""

import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from src.credentials.errors import RefreshNotPossibleError, TokenRefreshError, RECONNECT_MESSAGE
from src.credentials.refresh import (
    TokenRefreshEngine,
    TokenState,
    build_basic_auth_header,
    get_token_state,
    merge_token_response,
    needs_refresh,
    normalize_expires_at,
)
from src.integrations.providers import ProviderConfig, get_provider_config


NOW = 1_700_000_000
TOKEN_URL = "https://provider.example.com/oauth/token"


def _tokens(**overrides):
    tokens = {
        "access_token": "A1",
        "refresh_token": "R1",
        "expires_in": 3600,
        "expires_at": NOW - 10,
        "scope": "read",
    }
    tokens.update(overrides)
    return tokens


class RecordingProvider:
    """MockTransport handler that records form bodies and headers."""

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self.body = body if body is not None else {"access_token": "A2", "expires_in": 3600}
        self.text = text
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append({"url": str(request.url), "form": form, "headers": request.headers})
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.body)


def _engine(handler) -> TokenRefreshEngine:
    return TokenRefreshEngine(timeout=5, transport=httpx.MockTransport(handler), clock=lambda: NOW)


# =============================================================================
# Expiry classification
# =============================================================================

class TestNormalizeExpiresAt:

    @pytest.mark.parametrize("value,expected", [
        (1700000000, 1700000000.0),
        (1700000000.5, 1700000000.5),
        ("1700000000", 1700000000.0),
        ("2023-11-14T22:13:20Z", 1700000000.0),
        ("2023-11-14T22:13:20+00:00", 1700000000.0),
        ("2023-11-14T22:13:20", 1700000000.0),
        (datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc), 1700000000.0),
    ])
    def test_supported_formats(self, value, expected):
        assert normalize_expires_at(value) == expected

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing(self, value):
        assert normalize_expires_at(value) is None

    @pytest.mark.parametrize("value", ["next tuesday", True, [1]])
    def test_unparseable(self, value):
        with pytest.raises(ValueError):
            normalize_expires_at(value)


class TestTokenState:

    def test_boundary_inside_buffer(self):
        assert get_token_state(_tokens(expires_at=NOW + 299), now=NOW) == TokenState.NEEDS_REFRESH

    def test_boundary_exactly_at_buffer(self):
        assert get_token_state(_tokens(expires_at=NOW + 300), now=NOW) == TokenState.NEEDS_REFRESH

    def test_boundary_outside_buffer(self):
        assert get_token_state(_tokens(expires_at=NOW + 301), now=NOW) == TokenState.VALID

    def test_already_expired(self):
        assert needs_refresh(_tokens(expires_at=NOW - 10), now=NOW) is True

    def test_no_expiry_is_valid(self):
        tokens = _tokens()
        del tokens["expires_at"]
        assert get_token_state(tokens, now=NOW) == TokenState.VALID

    def test_unparseable_expiry_needs_refresh(self):
        assert get_token_state(_tokens(expires_at="garbage"), now=NOW) == TokenState.NEEDS_REFRESH

    def test_missing_access_token_needs_refresh(self):
        assert get_token_state(_tokens(access_token=None, expires_at=NOW + 3600), now=NOW) == TokenState.NEEDS_REFRESH

    def test_iso_expiry(self):
        tokens = _tokens(expires_at="2023-11-14T23:13:20Z")  # NOW + 3600
        assert get_token_state(tokens, now=NOW) == TokenState.VALID


# =============================================================================
# Merge rules
# =============================================================================

class TestMergeTokenResponse:

    def test_retains_refresh_token_and_scope_when_omitted(self):
        merged = merge_token_response(_tokens(), {"access_token": "A2", "expires_in": 3600}, now=NOW)

        assert merged["access_token"] == "A2"
        assert merged["refresh_token"] == "R1"
        assert merged["scope"] == "read"
        assert merged["expires_at"] == NOW + 3600

    def test_rotates_refresh_token_and_scope(self):
        merged = merge_token_response(
            _tokens(),
            {"access_token": "A2", "refresh_token": "R2", "scope": "read write", "expires_in": 60},
            now=NOW,
        )

        assert merged["refresh_token"] == "R2"
        assert merged["scope"] == "read write"
        assert merged["expires_in"] == 60
        assert merged["expires_at"] == NOW + 60

    def test_default_expires_in(self):
        merged = merge_token_response(_tokens(), {"access_token": "A2"}, now=NOW)

        assert merged["expires_in"] == 3600
        assert merged["expires_at"] == NOW + 3600

    def test_non_numeric_expires_in_uses_default(self):
        merged = merge_token_response(_tokens(), {"access_token": "A2", "expires_in": "soon"}, now=NOW)
        assert merged["expires_in"] == 3600

    def test_does_not_mutate_input(self):
        tokens = _tokens()
        merge_token_response(tokens, {"access_token": "A2"}, now=NOW)
        assert tokens["access_token"] == "A1"


def test_basic_auth_header_allows_empty_secret():
    header = build_basic_auth_header("client-1", "")
    assert header == "Basic " + base64.b64encode(b"client-1:").decode()


# =============================================================================
# Engine
# =============================================================================

class TestEnsureValidAccessToken:

    @pytest.mark.asyncio
    async def test_valid_token_makes_no_call(self):
        provider = RecordingProvider()
        engine = _engine(provider)

        outcome = await engine.ensure_valid_access_token(
            _tokens(expires_at=NOW + 3600), "c", "s", TOKEN_URL,
        )

        assert outcome.refreshed is False
        assert outcome.state == TokenState.VALID
        assert outcome.access_token == "A1"
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_no_expiry_makes_no_call(self):
        provider = RecordingProvider()
        tokens = _tokens()
        del tokens["expires_at"]

        outcome = await _engine(provider).ensure_valid_access_token(tokens, "c", "s", TOKEN_URL)

        assert outcome.refreshed is False
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_refresh_with_basic_auth(self):
        provider = RecordingProvider()

        outcome = await _engine(provider).ensure_valid_access_token(
            _tokens(), "client-1", "secret-1", TOKEN_URL,
        )

        assert outcome.refreshed is True
        assert outcome.state == TokenState.REFRESHED
        assert outcome.access_token == "A2"
        assert outcome.tokens["refresh_token"] == "R1"
        assert outcome.tokens["expires_at"] == NOW + 3600

        request = provider.requests[0]
        assert request["url"] == TOKEN_URL
        assert request["form"] == {"grant_type": "refresh_token", "refresh_token": "R1"}
        assert request["headers"]["authorization"] == build_basic_auth_header("client-1", "secret-1")
        assert request["headers"]["content-type"] == "application/x-www-form-urlencoded"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token(self):
        provider = RecordingProvider(body={"access_token": "A2", "refresh_token": "R2", "expires_in": 3600})

        outcome = await _engine(provider).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)

        assert outcome.tokens["refresh_token"] == "R2"

    @pytest.mark.asyncio
    async def test_body_client_auth(self):
        provider = RecordingProvider()
        hubspot = get_provider_config("hubspot")

        outcome = await _engine(provider).refresh(
            _tokens(), "client-1", "secret-1", hubspot.token_endpoint, provider=hubspot,
        )

        request = provider.requests[0]
        assert "authorization" not in request["headers"]
        assert request["form"]["client_id"] == "client-1"
        assert request["form"]["client_secret"] == "secret-1"
        assert outcome.tokens["expires_in"] == 3600

    @pytest.mark.asyncio
    async def test_provider_default_expires_in(self):
        provider = RecordingProvider(body={"access_token": "A2"})
        hubspot = get_provider_config("hubspot")

        outcome = await _engine(provider).refresh(
            _tokens(), "c", "s", hubspot.token_endpoint, provider=hubspot,
        )

        assert outcome.tokens["expires_in"] == 1800
        assert outcome.tokens["expires_at"] == NOW + 1800

    @pytest.mark.asyncio
    async def test_microsoft_refresh_sends_scope(self):
        provider = RecordingProvider()
        microsoft = get_provider_config("microsoft365")
        endpoint = microsoft.resolve_token_endpoint({"tenant_id": "dir-1"})

        await _engine(provider).refresh(_tokens(), "c", "s", endpoint, provider=microsoft)

        request = provider.requests[0]
        assert request["url"] == "https://login.microsoftonline.com/dir-1/oauth2/v2.0/token"
        assert request["form"]["scope"] == "https://graph.microsoft.com/.default offline_access"

    @pytest.mark.asyncio
    async def test_custom_provider_config(self):
        provider = RecordingProvider(body={"access_token": "A2"})
        config = ProviderConfig(name="acme", token_endpoint=TOKEN_URL, default_expires_in=120)

        outcome = await _engine(provider).refresh(_tokens(), "c", "s", TOKEN_URL, provider=config)

        assert "authorization" in provider.requests[0]["headers"]
        assert outcome.tokens["expires_in"] == 120


class TestRefreshFailures:

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self):
        provider = RecordingProvider()

        with pytest.raises(RefreshNotPossibleError) as exc_info:
            await _engine(provider).ensure_valid_access_token(
                _tokens(refresh_token=None), "c", "s", TOKEN_URL,
            )

        assert exc_info.value.reason == "no_refresh_token"
        assert provider.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 500, 503])
    async def test_non_success_status(self, status_code):
        provider = RecordingProvider(status_code=status_code, text='{"error": "invalid_grant"}')

        with pytest.raises(TokenRefreshError) as exc_info:
            await _engine(provider).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)

        assert exc_info.value.status == status_code
        assert "invalid_grant" in exc_info.value.provider_message

    @pytest.mark.asyncio
    async def test_error_dict_hides_provider_text(self):
        provider = RecordingProvider(status_code=400, text="refresh_token R1 revoked")

        with pytest.raises(TokenRefreshError) as exc_info:
            await _engine(provider).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)

        payload = exc_info.value.to_dict()
        assert payload["message"] == RECONNECT_MESSAGE
        assert "revoked" not in str(payload)

    @pytest.mark.asyncio
    async def test_provider_message_truncated(self):
        provider = RecordingProvider(status_code=400, text="x" * 2000)

        with pytest.raises(TokenRefreshError) as exc_info:
            await _engine(provider).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)

        assert len(exc_info.value.provider_message) == 500

    @pytest.mark.asyncio
    async def test_timeout_has_no_status(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TokenRefreshError) as exc_info:
            await _engine(handler).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)

        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_connection_error_has_no_status(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TokenRefreshError) as exc_info:
            await _engine(handler).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)

        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        provider = RecordingProvider(status_code=200, text="<html>ok</html>")

        with pytest.raises(TokenRefreshError) as exc_info:
            await _engine(provider).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)

        assert exc_info.value.status == 200

    @pytest.mark.asyncio
    async def test_response_without_access_token(self):
        provider = RecordingProvider(body={"token_type": "bearer"})

        with pytest.raises(TokenRefreshError):
            await _engine(provider).ensure_valid_access_token(_tokens(), "c", "s", TOKEN_URL)
