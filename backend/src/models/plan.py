"""
Plan and TenantPlan models for integration limits.

Plans are GLOBAL (not tenant-scoped) - they define product tiers.
TenantPlan records which plan tier a tenant is currently on. Billing
bookkeeping itself lives elsewhere; only the tier is read here.
"""

from sqlalchemy import Column, String, Integer, Boolean

from src.db_base import Base
from src.models.base import TimestampMixin, TenantScopedMixin, generate_uuid


class Plan(Base, TimestampMixin):
    """Pricing tier and its integration limit."""

    __tablename__ = "plans"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    slug = Column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="Tier identifier (free, starter, professional, enterprise)"
    )
    name = Column(
        String(100),
        nullable=False,
        comment="Display name"
    )
    max_integrations = Column(
        Integer,
        nullable=True,
        comment="Max non-disconnected integrations; NULL uses tier default"
    )
    is_active = Column(
        Boolean,
        default=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Plan(slug={self.slug}, max_integrations={self.max_integrations})>"


class TenantPlan(Base, TimestampMixin, TenantScopedMixin):
    """Current plan tier for a tenant (one active row per tenant)."""

    __tablename__ = "tenant_plans"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    plan_slug = Column(
        String(50),
        nullable=False,
        comment="Plan.slug the tenant is subscribed to"
    )
    is_active = Column(
        Boolean,
        default=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<TenantPlan(tenant_id={self.tenant_id}, plan_slug={self.plan_slug})>"
