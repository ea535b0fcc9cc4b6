"""
Database models for integrations and plan limits.

All tenant-scoped models inherit from TenantScopedMixin.
"""

from src.models.base import TimestampMixin, TenantScopedMixin, generate_uuid
from src.models.integration import (
    Integration,
    IntegrationStatus,
    ConnectionType,
    ProviderEnvironment,
)
from src.models.plan import Plan, TenantPlan

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "generate_uuid",
    "Integration",
    "IntegrationStatus",
    "ConnectionType",
    "ProviderEnvironment",
    "Plan",
    "TenantPlan",
]
