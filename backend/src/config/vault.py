"""
Credential vault configuration.

All values are read from the environment once at import time, following the
same pattern as the other config modules. The cipher configuration is built
explicitly with load_cipher_config() and passed to CipherEnvelope so that
encryption-disabled behaviour can be tested without mutating os.environ.
"""

import os
from typing import Dict, FrozenSet, Optional

# Refresh tokens this many seconds before expires_at.
# Absorbs clock skew and in-flight request latency. Not configurable.
TOKEN_REFRESH_BUFFER_SECONDS = 300

# Provider omits expires_in -> assume one hour
DEFAULT_EXPIRES_IN_SECONDS = 3600

# Bounded timeout for provider token endpoint calls
TOKEN_REFRESH_TIMEOUT_SECONDS = float(os.getenv("TOKEN_REFRESH_TIMEOUT_SECONDS", "15"))

# Per-integration refresh lease
REFRESH_LOCK_TTL_SECONDS = int(os.getenv("REFRESH_LOCK_TTL_SECONDS", "30"))
REFRESH_LOCK_WAIT_SECONDS = float(os.getenv("REFRESH_LOCK_WAIT_SECONDS", "10"))

# Delay before re-reading the persisted token set after a failed refresh
REFRESH_RETRY_DELAY_SECONDS = float(os.getenv("REFRESH_RETRY_DELAY_SECONDS", "1.0"))

# Scheduled refresh window
TOKEN_REFRESH_JOB_WINDOW_MINUTES = int(os.getenv("TOKEN_REFRESH_JOB_WINDOW_MINUTES", "30"))

# Dry-run mode for the credential encryption migration (set to "false" to write)
CREDENTIAL_MIGRATION_DRY_RUN = (
    os.getenv("CREDENTIAL_MIGRATION_DRY_RUN", "true").lower() == "true"
)

# Default integration limits per plan tier
PLAN_INTEGRATION_LIMITS: Dict[str, int] = {
    "free": 2,
    "starter": 5,
    "professional": 15,
    "enterprise": 50,
}

# Fallback for tenants without a plan or with an unknown tier
DEFAULT_PLAN_SLUG = "free"
DEFAULT_MAX_INTEGRATIONS = PLAN_INTEGRATION_LIMITS[DEFAULT_PLAN_SLUG]

PRODUCTION_ENVIRONMENTS = ("production", "prod")


def get_app_env() -> str:
    """Return the deployment environment name (defaults to production)."""
    return os.getenv("APP_ENV", "production").lower()


def is_production(app_env: Optional[str] = None) -> bool:
    """True when running in a production deployment."""
    return (app_env or get_app_env()) in PRODUCTION_ENVIRONMENTS


def get_redis_url() -> Optional[str]:
    """Redis URL for the distributed refresh lease, or None for in-process."""
    return os.getenv("REDIS_URL") or None


def get_provider_allowed_hosts() -> FrozenSet[str]:
    """
    Extra hosts tenant settings may point token_endpoint / api_base_url at.

    Comma-separated PROVIDER_ALLOWED_HOSTS; registered provider hosts are
    always allowed.
    """
    raw = os.getenv("PROVIDER_ALLOWED_HOSTS", "")
    return frozenset(host.strip().lower() for host in raw.split(",") if host.strip())


def get_default_max_integrations(plan_slug: Optional[str]) -> int:
    """
    Get the default integration limit for a plan tier.

    Args:
        plan_slug: Plan tier identifier

    Returns:
        Integration limit for the tier, or the free-tier limit if unknown
    """
    if not plan_slug:
        return DEFAULT_MAX_INTEGRATIONS
    return PLAN_INTEGRATION_LIMITS.get(plan_slug, DEFAULT_MAX_INTEGRATIONS)


def load_cipher_config():
    """
    Build the process-wide CipherConfig from the environment.

    Call once at startup and pass the result to CipherEnvelope.
    """
    from src.credentials.cipher import CipherConfig

    return CipherConfig.from_key_string(
        os.getenv("ENCRYPTION_KEY"),
        app_env=get_app_env(),
    )
