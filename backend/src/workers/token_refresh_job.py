"""
Scheduled OAuth token refresh.

Proactively refreshes connected OAuth integrations whose access tokens expire
within the job window, so interactive requests rarely pay for a refresh.

FLOW:
1. Load connected OAuth integrations across all tenants
2. Decrypt each token set and check expiry against the window
3. Refresh due integrations through IntegrationTokenService (same lease,
   soft retry and expired demotion as on-demand refresh)

CONSTRAINTS:
- One failing integration never stops the batch
- Integrations without expiry metadata are skipped

Usage:
    python -m src.workers.token_refresh_job
"""

import sys
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.config.vault import TOKEN_REFRESH_JOB_WINDOW_MINUTES
from src.credentials.cipher import CipherEnvelope, get_cipher_envelope
from src.credentials.errors import VaultError
from src.credentials.redaction import CredentialAuditLogger, setup_credential_logging
from src.credentials.refresh import TokenRefreshEngine, TokenState, get_token_state
from src.credentials.store import CredentialStore
from src.models.integration import ConnectionType, Integration, IntegrationStatus
from src.services.integration_token_service import IntegrationTokenService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class RefreshJobStatus(str, Enum):
    REFRESHED = "refreshed"
    NOT_DUE = "not_due"
    FAILED = "failed"


@dataclass
class RefreshJobResult:
    """
    Outcome for one integration.

    SECURITY: Does NOT include token values.
    """
    integration_id: str
    tenant_id: str
    provider_name: str
    status: RefreshJobStatus
    error_code: Optional[str] = None


@dataclass
class RefreshJobStats:
    """Track refresh job statistics."""

    integrations_evaluated: int = 0
    refreshed: int = 0
    not_due: int = 0
    failed: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "integrations_evaluated": self.integrations_evaluated,
            "refreshed": self.refreshed,
            "not_due": self.not_due,
            "failed": self.failed,
            "duration_seconds": round(duration, 2),
        }


def _is_due(
    integration: Integration,
    cipher: CipherEnvelope,
    window_seconds: int,
    now: Optional[float],
) -> bool:
    store = CredentialStore(None, integration.tenant_id, cipher)
    tokens = store.get_decrypted_credentials(integration).tokens
    if not tokens or not tokens.get("expires_at"):
        return False
    if not tokens.get("refresh_token"):
        # No refresh token: only due once inside the refresh buffer
        return get_token_state(tokens, now=now) == TokenState.NEEDS_REFRESH
    state = get_token_state(tokens, now=now, buffer_seconds=window_seconds)
    return state == TokenState.NEEDS_REFRESH


async def run_token_refresh(
    db_session: Session,
    cipher: Optional[CipherEnvelope] = None,
    engine: Optional[TokenRefreshEngine] = None,
    refresh_lock=None,
    window_minutes: int = TOKEN_REFRESH_JOB_WINDOW_MINUTES,
    retry_delay_seconds: Optional[float] = None,
    now: Optional[float] = None,
) -> List[RefreshJobResult]:
    """
    Refresh every connected OAuth integration expiring within the window.

    Args:
        db_session: Database session (not tenant-scoped)
        cipher: Cipher envelope (process-wide default if omitted)
        engine: Token refresh engine (default engine if omitted)
        refresh_lock: Refresh lease (process-wide default if omitted)
        window_minutes: Refresh tokens expiring within this window
        retry_delay_seconds: Soft-retry delay override
        now: Current epoch seconds override

    Returns:
        One RefreshJobResult per evaluated integration
    """
    cipher = cipher or get_cipher_envelope()
    window_seconds = window_minutes * 60
    stats = RefreshJobStats()
    results: List[RefreshJobResult] = []

    integrations = db_session.execute(
        select(Integration).where(
            Integration.status == IntegrationStatus.CONNECTED,
            Integration.connection_type == ConnectionType.OAUTH,
        )
    ).scalars().all()

    for integration in integrations:
        stats.integrations_evaluated += 1
        result = RefreshJobResult(
            integration_id=integration.id,
            tenant_id=integration.tenant_id,
            provider_name=integration.provider_name,
            status=RefreshJobStatus.NOT_DUE,
        )

        try:
            if not _is_due(integration, cipher, window_seconds, now):
                stats.not_due += 1
                results.append(result)
                continue

            service_kwargs = {"cipher": cipher, "engine": engine, "refresh_lock": refresh_lock}
            if retry_delay_seconds is not None:
                service_kwargs["retry_delay_seconds"] = retry_delay_seconds
            service = IntegrationTokenService(db_session, integration.tenant_id, **service_kwargs)

            await service.refresh_access_token(integration.id)
            result.status = RefreshJobStatus.REFRESHED
            stats.refreshed += 1

        except VaultError as exc:
            result.status = RefreshJobStatus.FAILED
            result.error_code = exc.error_code
            stats.failed += 1
            CredentialAuditLogger(integration.tenant_id).log_error(
                integration.id, integration.provider_name, exc.error_code,
            )
            logger.warning(
                "Scheduled token refresh failed",
                extra={
                    "integration_id": integration.id,
                    "tenant_id": integration.tenant_id,
                    "provider_name": integration.provider_name,
                    "error_code": exc.error_code,
                },
            )

        results.append(result)

    logger.info("Token refresh job completed", extra=stats.to_dict())
    return results


def main():
    """Entry point for the token refresh job."""
    from src.database.session import create_job_session

    setup_credential_logging()
    logger.info(
        "Token Refresh Job starting",
        extra={"window_minutes": TOKEN_REFRESH_JOB_WINDOW_MINUTES},
    )

    session = create_job_session()
    try:
        asyncio.run(run_token_refresh(session))
    except Exception as exc:
        logger.error(
            "Token Refresh Job failed",
            extra={"error_type": type(exc).__name__},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Token Refresh Job finished")


if __name__ == "__main__":
    main()
