"""
Shared pytest fixtures for credential vault tests.

Every test gets a fresh in-memory SQLite database (StaticPool so the
FastAPI TestClient thread sees the same connection) and explicit cipher
configurations; nothing reads ENCRYPTION_KEY from the environment.
"""

import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.db_base import Base
from src.credentials.cipher import CipherConfig, CipherEnvelope
from src.credentials.refresh_lock import InProcessRefreshLock
from src.models.integration import ConnectionType, Integration, IntegrationStatus
from src.models.plan import Plan, TenantPlan


TEST_KEY = "0f1e2d3c4b5a69788796a5b4c3d2e1f00f1e2d3c4b5a69788796a5b4c3d2e1f0"
OTHER_KEY = "a1" * 32


# =============================================================================
# Test Database Fixtures
# =============================================================================

@pytest.fixture
def db_engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Register models on Base.metadata
    from src import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()

    yield session

    session.close()


# =============================================================================
# Test Identity Fixtures
# =============================================================================

@pytest.fixture
def tenant_id() -> str:
    """Generate unique tenant ID."""
    return f"tenant-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def other_tenant_id() -> str:
    """Generate unique tenant ID for cross-tenant tests."""
    return f"other-tenant-{uuid.uuid4().hex[:8]}"


# =============================================================================
# Cipher Fixtures
# =============================================================================

@pytest.fixture
def cipher() -> CipherEnvelope:
    """Encryption enabled with a fixed 32-byte key."""
    return CipherEnvelope(CipherConfig.from_key_string(TEST_KEY, app_env="test"))


@pytest.fixture
def passthrough_cipher() -> CipherEnvelope:
    """Encryption disabled outside production (dev passthrough)."""
    return CipherEnvelope(CipherConfig.from_key_string(None, app_env="development"))


@pytest.fixture
def production_passthrough_cipher() -> CipherEnvelope:
    """Encryption disabled in production (persistence must fail closed)."""
    return CipherEnvelope(CipherConfig.from_key_string(None, app_env="production"))


@pytest.fixture
def refresh_lock() -> InProcessRefreshLock:
    return InProcessRefreshLock(wait_seconds=5)


# =============================================================================
# Integration Factories
# =============================================================================

@pytest.fixture
def make_integration(db_session, tenant_id):
    """Factory to create Integration rows in any storage shape."""
    def _create(
        provider_name: str = "fortnox",
        status: IntegrationStatus = IntegrationStatus.CONNECTED,
        connection_type: ConnectionType = ConnectionType.OAUTH,
        settings: dict = None,
        client_id: str = None,
        client_secret: str = None,
        oauth_data=None,
        owner_tenant_id: str = None,
    ) -> Integration:
        integration = Integration(
            tenant_id=owner_tenant_id or tenant_id,
            provider_name=provider_name,
            connection_type=connection_type,
            status=status,
            settings=settings,
            client_id=client_id,
            client_secret=client_secret,
            oauth_data=oauth_data,
        )
        db_session.add(integration)
        db_session.commit()
        return integration

    return _create


@pytest.fixture
def make_plan(db_session, tenant_id):
    """Put the tenant on a plan tier, optionally with an explicit limit row."""
    def _create(slug: str = "starter", max_integrations: int = None, create_plan_row: bool = True):
        if create_plan_row:
            db_session.add(Plan(slug=slug, name=slug.title(), max_integrations=max_integrations))
        db_session.add(TenantPlan(tenant_id=tenant_id, plan_slug=slug))
        db_session.commit()

    return _create
