"""
Tests for IntegrationTokenService, the consumer-facing access token entry point.

CRITICAL: These tests verify that:
1. An expired token set is refreshed, re-encrypted and persisted to settings
2. Legacy-only rows are refreshed into the current location, legacy untouched
3. A failed refresh demotes connected -> expired and raises ReconnectRequired
4. A concurrently persisted token set is picked up by the soft retry
5. Concurrent callers for one integration make a single provider call
"""

import asyncio
import time
from urllib.parse import parse_qs

import httpx
import pytest

from src.credentials.cipher import is_encrypted
from src.credentials.errors import (
    DecryptionError,
    IntegrationNotFoundError,
    MissingTokenSet,
    ReconnectRequired,
    RefreshNotPossibleError,
    TokenRefreshError,
)
from src.credentials.refresh import TokenRefreshEngine
from src.credentials.store import CredentialSource, CredentialStore
from src.models.integration import ConnectionType, IntegrationStatus
from src.services.integration_token_service import IntegrationTokenService


class FakeProvider:
    """Token endpoint stand-in; counts calls and records form bodies."""

    def __init__(self, responses=None, delay=0.0):
        self.responses = list(responses or [])
        self.delay = delay
        self.calls = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.calls.append({"url": str(request.url), "form": form})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responses:
            response = self.responses.pop(0)
            if callable(response):
                return response(request)
            return response
        return httpx.Response(200, json={"access_token": "A2", "expires_in": 3600})


def _expired_tokens(cipher=None, **overrides):
    tokens = {
        "access_token": "A1",
        "refresh_token": "R1",
        "expires_in": 3600,
        "expires_at": int(time.time()) - 10,
        "scope": "read",
    }
    tokens.update(overrides)
    if cipher is not None:
        for key in ("access_token", "refresh_token"):
            if tokens.get(key):
                tokens[key] = cipher.encrypt(tokens[key])
    return tokens


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_service(db_session, tenant_id, cipher, refresh_lock):
    def _create(fake_provider, clock=time.time, **kwargs):
        engine = TokenRefreshEngine(
            timeout=5, transport=httpx.MockTransport(fake_provider), clock=clock,
        )
        kwargs.setdefault("retry_delay_seconds", 0)
        return IntegrationTokenService(
            db_session,
            tenant_id,
            cipher=cipher,
            engine=engine,
            refresh_lock=refresh_lock,
            **kwargs,
        )

    return _create


@pytest.fixture
def expired_integration(make_integration, cipher):
    return make_integration(settings={
        "client_id": cipher.encrypt("client-1"),
        "client_secret": cipher.encrypt("secret-1"),
        "oauth_data": {"tokens": _expired_tokens(cipher), "company_id": "c-1"},
    })


# =============================================================================
# Refresh on demand
# =============================================================================

class TestRefreshOnDemand:

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_persisted(
        self, make_service, provider, expired_integration, cipher, db_session,
    ):
        service = make_service(provider)
        before = int(time.time())

        access_token = await service.ensure_valid_access_token(expired_integration.id)

        assert access_token == "A2"
        assert len(provider.calls) == 1
        assert provider.calls[0]["url"] == "https://apps.fortnox.se/oauth-v1/token"
        assert provider.calls[0]["form"]["refresh_token"] == "R1"

        db_session.refresh(expired_integration)
        stored = expired_integration.settings["oauth_data"]
        assert is_encrypted(stored["tokens"]["access_token"])
        assert is_encrypted(stored["tokens"]["refresh_token"])
        assert stored["company_id"] == "c-1"
        assert expired_integration.status == IntegrationStatus.CONNECTED

        tokens = service.store.get_decrypted_credentials(expired_integration).tokens
        assert tokens["access_token"] == "A2"
        assert tokens["refresh_token"] == "R1"
        assert tokens["scope"] == "read"
        assert before + 3600 <= tokens["expires_at"] <= int(time.time()) + 3600

    @pytest.mark.asyncio
    async def test_second_call_reuses_refreshed_token(
        self, make_service, provider, expired_integration,
    ):
        service = make_service(provider)

        first = await service.ensure_valid_access_token(expired_integration.id)
        second = await service.ensure_valid_access_token(expired_integration.id)

        assert first == second == "A2"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_valid_token_makes_no_call(self, make_service, provider, make_integration, cipher):
        integration = make_integration(settings={"oauth_data": {"tokens": _expired_tokens(
            cipher, expires_at=int(time.time()) + 3600,
        )}})

        access_token = await make_service(provider).ensure_valid_access_token(integration.id)

        assert access_token == "A1"
        assert provider.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seconds_left,expected_calls", [
        (299, 1),
        (300, 1),
        (301, 0),
    ])
    async def test_refresh_buffer_boundary(
        self, make_service, provider, make_integration, cipher, seconds_left, expected_calls,
    ):
        now = 1_700_000_000
        integration = make_integration(settings={"oauth_data": {"tokens": _expired_tokens(
            cipher, expires_at=now + seconds_left,
        )}})
        service = make_service(provider, clock=lambda: now)

        access_token = await service.ensure_valid_access_token(integration.id)

        assert len(provider.calls) == expected_calls
        assert access_token == ("A2" if expected_calls else "A1")

    @pytest.mark.asyncio
    async def test_legacy_only_row_refreshes_into_settings(
        self, make_service, provider, make_integration, db_session,
    ):
        legacy_oauth = {"tokens": _expired_tokens()}
        integration = make_integration(
            settings=None,
            client_id="legacy-client",
            client_secret="legacy-secret",
            oauth_data=legacy_oauth,
        )
        service = make_service(provider)

        access_token = await service.ensure_valid_access_token(integration.id)

        db_session.refresh(integration)
        assert access_token == "A2"
        assert integration.oauth_data == legacy_oauth
        assert integration.client_secret == "legacy-secret"
        creds = service.store.get_decrypted_credentials(integration)
        assert creds.oauth_source == CredentialSource.CURRENT
        assert creds.tokens["access_token"] == "A2"
        assert creds.tokens["refresh_token"] == "R1"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_persisted(self, make_service, expired_integration):
        provider = FakeProvider(responses=[
            httpx.Response(200, json={"access_token": "A2", "refresh_token": "R2", "expires_in": 3600}),
        ])
        service = make_service(provider)

        await service.ensure_valid_access_token(expired_integration.id)

        tokens = service.store.get_decrypted_credentials(expired_integration).tokens
        assert tokens["refresh_token"] == "R2"

    @pytest.mark.asyncio
    async def test_forced_refresh(self, make_service, provider, make_integration, cipher):
        integration = make_integration(settings={"oauth_data": {"tokens": _expired_tokens(
            cipher, expires_at=int(time.time()) + 3600,
        )}})

        access_token = await make_service(provider).refresh_access_token(integration.id)

        assert access_token == "A2"
        assert len(provider.calls) == 1


# =============================================================================
# Failure handling
# =============================================================================

class TestRefreshFailure:

    @pytest.mark.asyncio
    async def test_rejected_refresh_demotes_to_expired(
        self, make_service, expired_integration, db_session,
    ):
        provider = FakeProvider(responses=[
            httpx.Response(400, json={"error": "invalid_grant"}),
        ])

        with pytest.raises(ReconnectRequired) as exc_info:
            await make_service(provider).ensure_valid_access_token(expired_integration.id)

        assert exc_info.value.reason == "refresh_failed"
        assert "invalid_grant" not in str(exc_info.value.to_dict())
        db_session.refresh(expired_integration)
        assert expired_integration.status == IntegrationStatus.EXPIRED
        assert expired_integration.last_error == "refresh_failed"

    @pytest.mark.asyncio
    async def test_expired_integration_rejected_without_call(
        self, make_service, make_integration, cipher,
    ):
        provider = FakeProvider()
        integration = make_integration(
            status=IntegrationStatus.EXPIRED,
            settings={"oauth_data": {"tokens": _expired_tokens(cipher)}},
        )

        with pytest.raises(ReconnectRequired):
            await make_service(provider).ensure_valid_access_token(integration.id)

        assert provider.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        IntegrationStatus.PENDING,
        IntegrationStatus.ERROR,
        IntegrationStatus.DISCONNECTED,
    ])
    async def test_non_connected_statuses(self, make_service, provider, make_integration, status):
        integration = make_integration(status=status)

        with pytest.raises(ReconnectRequired):
            await make_service(provider).ensure_valid_access_token(integration.id)

    @pytest.mark.asyncio
    async def test_timeout_demotes_to_expired(self, make_service, expired_integration, db_session):
        def timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        provider = FakeProvider(responses=[timeout])

        with pytest.raises(ReconnectRequired):
            await make_service(provider).ensure_valid_access_token(expired_integration.id)

        db_session.refresh(expired_integration)
        assert expired_integration.status == IntegrationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, make_service, provider, make_integration, cipher, db_session):
        integration = make_integration(settings={"oauth_data": {"tokens": _expired_tokens(
            cipher, refresh_token=None,
        )}})

        with pytest.raises(ReconnectRequired) as exc_info:
            await make_service(provider).ensure_valid_access_token(integration.id)

        assert exc_info.value.reason == "no_refresh_token"
        assert provider.calls == []
        db_session.refresh(integration)
        assert integration.status == IntegrationStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_early_refresh_failure_keeps_connected(
        self, make_service, make_integration, cipher, db_session,
    ):
        integration = make_integration(settings={"oauth_data": {"tokens": _expired_tokens(
            cipher, expires_at=int(time.time()) + 1200,
        )}})
        provider = FakeProvider(responses=[httpx.Response(503)])
        service = make_service(provider)

        with pytest.raises(TokenRefreshError):
            await service.refresh_access_token(integration.id)

        db_session.refresh(integration)
        assert integration.status == IntegrationStatus.CONNECTED
        assert await service.ensure_valid_access_token(integration.id) == "A1"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_early_refresh_without_refresh_token_keeps_connected(
        self, make_service, provider, make_integration, cipher, db_session,
    ):
        integration = make_integration(settings={"oauth_data": {"tokens": _expired_tokens(
            cipher, refresh_token=None, expires_at=int(time.time()) + 1200,
        )}})
        service = make_service(provider)

        with pytest.raises(RefreshNotPossibleError):
            await service.refresh_access_token(integration.id)

        db_session.refresh(integration)
        assert integration.status == IntegrationStatus.CONNECTED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_missing_token_set(self, make_service, provider, make_integration, cipher):
        integration = make_integration(settings={"client_id": cipher.encrypt("c")})

        with pytest.raises(MissingTokenSet):
            await make_service(provider).ensure_valid_access_token(integration.id)

    @pytest.mark.asyncio
    async def test_undecryptable_credentials(self, make_service, provider, make_integration):
        integration = make_integration(settings={"oauth_data": {"tokens": {
            "access_token": "00" * 16 + ":" + "00" * 16 + ":00",
        }}})

        with pytest.raises(DecryptionError):
            await make_service(provider).ensure_valid_access_token(integration.id)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_other_tenant(self, make_service, provider, make_integration, other_tenant_id):
        integration = make_integration(owner_tenant_id=other_tenant_id)

        with pytest.raises(IntegrationNotFoundError):
            await make_service(provider).ensure_valid_access_token(integration.id)


class TestSoftRetry:

    @pytest.mark.asyncio
    async def test_concurrently_persisted_tokens_are_used(
        self, make_service, expired_integration, db_session, tenant_id, cipher,
    ):
        def rotated_elsewhere(request):
            # Another worker refreshed first and rotated R1 away
            store = CredentialStore(db_session, tenant_id, cipher)
            store.persist_refreshed_tokens(expired_integration.id, {"tokens": {
                "access_token": "A-other",
                "refresh_token": "R2",
                "expires_in": 3600,
                "expires_at": int(time.time()) + 3600,
            }})
            db_session.commit()
            return httpx.Response(400, json={"error": "invalid_grant"})

        provider = FakeProvider(responses=[rotated_elsewhere])

        access_token = await make_service(provider).ensure_valid_access_token(expired_integration.id)

        assert access_token == "A-other"
        db_session.refresh(expired_integration)
        assert expired_integration.status == IntegrationStatus.CONNECTED


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_callers_make_one_call(self, make_service, expired_integration):
        provider = FakeProvider(delay=0.05)
        service = make_service(provider)

        results = await asyncio.gather(*[
            service.ensure_valid_access_token(expired_integration.id) for _ in range(3)
        ])

        assert results == ["A2", "A2", "A2"]
        assert len(provider.calls) == 1


# =============================================================================
# Provider resolution and API keys
# =============================================================================

class TestProviderResolution:

    @pytest.mark.asyncio
    async def test_microsoft_endpoint_uses_directory_tenant(
        self, make_service, provider, make_integration, cipher,
    ):
        integration = make_integration(provider_name="microsoft365", settings={
            "tenant_id": "dir-1",
            "oauth_data": {"tokens": _expired_tokens(cipher)},
        })

        await make_service(provider).ensure_valid_access_token(integration.id)

        assert provider.calls[0]["url"] == "https://login.microsoftonline.com/dir-1/oauth2/v2.0/token"

    @pytest.mark.asyncio
    async def test_microsoft_without_directory_tenant(
        self, make_service, provider, make_integration, cipher,
    ):
        integration = make_integration(provider_name="microsoft365", settings={
            "oauth_data": {"tokens": _expired_tokens(cipher)},
        })

        with pytest.raises(ReconnectRequired) as exc_info:
            await make_service(provider).ensure_valid_access_token(integration.id)

        assert exc_info.value.reason == "provider_not_configured"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_provider_with_settings_endpoint(
        self, make_service, provider, make_integration, cipher, monkeypatch,
    ):
        monkeypatch.setenv("PROVIDER_ALLOWED_HOSTS", "auth.acme.test")
        integration = make_integration(provider_name="acme", settings={
            "token_endpoint": "https://auth.acme.test/token",
            "oauth_data": {"tokens": _expired_tokens(cipher)},
        })

        await make_service(provider).ensure_valid_access_token(integration.id)

        assert provider.calls[0]["url"] == "https://auth.acme.test/token"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token_endpoint", [
        "https://attacker.test/token",
        "http://auth.acme.test/token",
        "https://user:pw@auth.acme.test/token",
    ])
    async def test_settings_endpoint_must_be_allowed(
        self, make_service, provider, make_integration, cipher, monkeypatch, token_endpoint,
    ):
        monkeypatch.setenv("PROVIDER_ALLOWED_HOSTS", "auth.acme.test")
        integration = make_integration(provider_name="acme", settings={
            "token_endpoint": token_endpoint,
            "oauth_data": {"tokens": _expired_tokens(cipher)},
        })

        with pytest.raises(ReconnectRequired) as exc_info:
            await make_service(provider).ensure_valid_access_token(integration.id)

        assert exc_info.value.reason == "endpoint_not_allowed"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_provider_without_endpoint(
        self, make_service, provider, make_integration, cipher,
    ):
        integration = make_integration(provider_name="acme", settings={
            "oauth_data": {"tokens": _expired_tokens(cipher)},
        })

        with pytest.raises(ReconnectRequired):
            await make_service(provider).ensure_valid_access_token(integration.id)


class TestApiKeyIntegrations:

    @pytest.mark.asyncio
    async def test_returns_api_key(self, make_service, provider, make_integration, cipher):
        integration = make_integration(
            connection_type=ConnectionType.API_KEY,
            settings={"api_key": cipher.encrypt("key-123")},
        )

        assert await make_service(provider).ensure_valid_access_token(integration.id) == "key-123"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_forced_refresh_rejected(self, make_service, provider, make_integration, cipher):
        integration = make_integration(
            connection_type=ConnectionType.API_KEY,
            settings={"api_key": cipher.encrypt("key-123")},
        )

        with pytest.raises(ValueError):
            await make_service(provider).refresh_access_token(integration.id)
