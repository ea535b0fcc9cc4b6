"""
Credential encryption job - migrates integration credentials to the current
encrypted storage shape.

For every integration:
- Plaintext client_id / client_secret / api_key in settings are encrypted
- Plaintext access/refresh tokens in settings.oauth_data are encrypted
- Legacy top-level client_id / client_secret / oauth_data are copied into
  settings only when the current location is empty
- Values that are already envelopes are skipped (safe to re-run)

CONSTRAINTS:
- Operates cross-tenant (tenant_id comes from each row)
- Legacy top-level columns are never modified
- Refuses to run when ENCRYPTION_KEY is not configured
- Respects CREDENTIAL_MIGRATION_DRY_RUN for safe rollout

Run manually or as a one-off job:
    python -m src.workers.credential_encryption_job
"""

import sys
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config.vault import CREDENTIAL_MIGRATION_DRY_RUN
from src.credentials.cipher import CipherEnvelope, get_cipher_envelope
from src.credentials.errors import EncryptionNotConfiguredError, VaultError
from src.credentials.redaction import setup_credential_logging
from src.credentials.store import CredentialStore
from src.models.integration import Integration

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class MigrationStats:
    """Statistics from a credential encryption run."""

    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    integrations_scanned: int = 0
    integrations_updated: int = 0
    integrations_skipped: int = 0
    dry_run: bool = CREDENTIAL_MIGRATION_DRY_RUN
    errors: list = field(default_factory=list)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "integrations_scanned": self.integrations_scanned,
            "integrations_updated": self.integrations_updated,
            "integrations_skipped": self.integrations_skipped,
            "dry_run": self.dry_run,
            "error_count": len(self.errors),
            "duration_seconds": duration,
        }


def run_migration(
    db_session: Session,
    cipher: Optional[CipherEnvelope] = None,
    dry_run: bool = CREDENTIAL_MIGRATION_DRY_RUN,
) -> MigrationStats:
    """
    Encrypt plaintext credentials across all integrations.

    Args:
        db_session: Database session (not tenant-scoped)
        cipher: Cipher envelope (process-wide default if omitted)
        dry_run: If True, only count without writing

    Returns:
        MigrationStats with results

    Raises:
        EncryptionNotConfiguredError: ENCRYPTION_KEY is not set
    """
    cipher = cipher or get_cipher_envelope()
    if not cipher.is_encryption_enabled():
        logger.error("ENCRYPTION_KEY is not set; refusing to migrate credentials")
        raise EncryptionNotConfiguredError()

    stats = MigrationStats(dry_run=dry_run)
    integrations = db_session.execute(
        select(Integration).order_by(Integration.created_at.asc())
    ).scalars().all()

    logger.info(
        "Credential encryption started",
        extra={"count": len(integrations), "dry_run": dry_run},
    )

    for integration in integrations:
        stats.integrations_scanned += 1
        store = CredentialStore(db_session, integration.tenant_id, cipher)

        try:
            plan = store.plan_migration(integration)

            if not plan.needs_update:
                stats.integrations_skipped += 1
                continue

            if dry_run:
                logger.info(
                    "[DRY RUN] Would encrypt integration credentials",
                    extra={
                        "integration_id": integration.id,
                        "provider_name": integration.provider_name,
                        "fields": plan.changed_fields,
                    },
                )
                stats.integrations_updated += 1
                continue

            store.apply_migration(integration, plan)
            db_session.commit()
            stats.integrations_updated += 1

        except (VaultError, SQLAlchemyError) as exc:
            db_session.rollback()
            stats.errors.append({"integration_id": integration.id, "error": type(exc).__name__})
            logger.error(
                "Failed to migrate integration credentials",
                extra={
                    "integration_id": integration.id,
                    "provider_name": integration.provider_name,
                    "error_type": type(exc).__name__,
                },
            )

    stats.completed_at = datetime.now(timezone.utc)
    logger.info("Credential encryption completed", extra=stats.to_dict())
    return stats


def main():
    """Entry point for the credential encryption job."""
    from src.database.session import create_job_session

    setup_credential_logging()
    logger.info(
        "Credential Encryption Job starting",
        extra={"dry_run": CREDENTIAL_MIGRATION_DRY_RUN},
    )

    session = create_job_session()
    try:
        stats = run_migration(session, dry_run=CREDENTIAL_MIGRATION_DRY_RUN)
        logger.info("Credential Encryption Job stats", extra=stats.to_dict())
        if stats.errors:
            sys.exit(1)
    except EncryptionNotConfiguredError:
        sys.exit(1)
    except Exception as exc:
        logger.error(
            "Credential Encryption Job failed",
            extra={"error_type": type(exc).__name__},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Credential Encryption Job finished")


if __name__ == "__main__":
    main()
