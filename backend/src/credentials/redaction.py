"""
Secret redaction and the credential audit trail.

Anything that reaches a log handler from the vault passes through here first:
- Dict keys that name a secret (token, secret, client_id, settings, ...) are
  replaced wholesale
- Strings are scrubbed of cipher envelopes, Authorization header values and
  form-encoded token parameters
- Identifiers stay readable: integration_id, provider_name, display_name

Audit events (logger "credentials.audit"):
    credential.stored / credential.refreshed / credential.refresh_failed
    credential.migrated / credential.error
    integration.created / integration.status_changed / integration.limit_reached

Usage:
    audit = CredentialAuditLogger(tenant_id)
    audit.log(AuditEventType.CREDENTIAL_REFRESHED, integration.id, "fortnox")
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"
AUDIT_LOGGER_NAME = "credentials.audit"
MAX_REDACTION_DEPTH = 10


class AuditEventType(str, Enum):
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_REFRESH_FAILED = "credential.refresh_failed"
    CREDENTIAL_MIGRATED = "credential.migrated"
    CREDENTIAL_ERROR = "credential.error"
    INTEGRATION_CREATED = "integration.created"
    INTEGRATION_STATUS_CHANGED = "integration.status_changed"
    INTEGRATION_LIMIT_REACHED = "integration.limit_reached"


# Substrings of key names whose values are never logged
SECRET_KEY_MARKERS = (
    "token", "secret", "credential", "auth", "bearer", "password",
    "oauth", "api_key", "apikey", "client_id", "private_key",
    "encryption_key", "settings",
)

# Exact key names that match a marker but carry no secret
SAFE_KEYS = frozenset({
    "integration_id", "provider_name", "display_name", "connection_type",
    "auth_method", "token_endpoint_host",
})

SECRET_VALUE_PATTERNS = (
    re.compile(r"[0-9a-fA-F]{32}:[0-9a-fA-F]{32}:[0-9a-fA-F]*"),
    re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"Basic\s+[A-Za-z0-9+/=]+"),
    re.compile(r"(?:access_token|refresh_token|client_secret)=[^&\s]+"),
)


def is_credential_secret_key(key: str) -> bool:
    """True if a dict key / log extra name should have its value hidden."""
    lowered = key.lower()
    if lowered in SAFE_KEYS:
        return False
    return any(marker in lowered for marker in SECRET_KEY_MARKERS)


def redact_credential_value(value: Any) -> Any:
    """Scrub secret-looking substrings from a string; other types pass through."""
    if not isinstance(value, str):
        return value
    for pattern in SECRET_VALUE_PATTERNS:
        value = pattern.sub(REDACTED_VALUE, value)
    return value


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Return a redacted copy of a dict / list / string structure.

    Use before logging anything that came near a credential.
    """
    if _depth > MAX_REDACTION_DEPTH:
        return data

    if isinstance(data, dict):
        return {
            key: REDACTED_VALUE if is_credential_secret_key(str(key))
            else redact_credential_data(value, _depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_credential_data(item, _depth + 1) for item in data]
    return redact_credential_value(data)


class CredentialAuditLogger:
    """
    Emits one structured record per credential event.

    Records carry tenant_id, integration_id and provider_name plus
    redacted metadata; never a secret.
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        event_type: AuditEventType,
        integration_id: Optional[str],
        provider_name: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = dict(redact_credential_data(metadata or {}))
        record.update({
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tenant_id": self.tenant_id,
            "integration_id": integration_id,
            "provider_name": provider_name,
        })

        self.logger.info(f"Credential audit: {event_type.value}", extra=record)

    def log_error(
        self,
        integration_id: Optional[str],
        provider_name: Optional[str],
        error: str,
    ) -> None:
        self.log(
            AuditEventType.CREDENTIAL_ERROR,
            integration_id,
            provider_name,
            metadata={"error": error},
        )


class CredentialLoggingFilter(logging.Filter):
    """Rewrites log records in place so secrets never reach a handler."""

    # Standard LogRecord attributes; everything else arrived via extra=
    _STANDARD_ATTRS = frozenset(
        logging.LogRecord("", 0, "", 0, "", None, None).__dict__
    ) | {"message", "asctime"}

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_credential_value(record.msg)

        if isinstance(record.args, dict):
            record.args = redact_credential_data(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_credential_value(arg) for arg in record.args)

        for name, value in list(record.__dict__.items()):
            if name in self._STANDARD_ATTRS:
                continue
            if is_credential_secret_key(name):
                setattr(record, name, REDACTED_VALUE)
            elif isinstance(value, (str, dict, list)):
                setattr(record, name, redact_credential_data(value))

        return True


# Loggers that may see decrypted material. Logger filters are not inherited,
# so every module logger is listed.
CREDENTIAL_LOGGERS = (
    AUDIT_LOGGER_NAME,
    "src.credentials.cipher",
    "src.credentials.store",
    "src.credentials.refresh",
    "src.credentials.refresh_lock",
    "src.services.integration_lifecycle",
    "src.services.integration_token_service",
    "src.services.plan_limits",
    "src.integrations.provider_client",
    "src.workers.credential_encryption_job",
    "src.workers.token_refresh_job",
    "src.platform.errors",
    "src.platform.tenant_context",
    "src.api.routes.integrations",
)


def setup_credential_logging() -> None:
    """Attach the redaction filter to every credential logger. Call at startup."""
    redaction_filter = CredentialLoggingFilter()
    for name in CREDENTIAL_LOGGERS:
        target = logging.getLogger(name)
        if not any(isinstance(f, CredentialLoggingFilter) for f in target.filters):
            target.addFilter(redaction_filter)

    logger.info("Credential logging configured with redaction filter")
