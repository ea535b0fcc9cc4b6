"""
Per-tenant integration limits derived from the tenant's plan.

The limit is not stored on Integration rows:
- max_integrations: Plan.max_integrations, else the tier default
- current_count: non-disconnected Integration rows for the tenant
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from src.config.vault import DEFAULT_PLAN_SLUG, get_default_max_integrations
from src.models.integration import Integration, IntegrationStatus
from src.models.plan import Plan, TenantPlan

logger = logging.getLogger(__name__)


@dataclass
class IntegrationLimitCheck:
    """Result of can_create_integration()."""
    allowed: bool
    current: int
    max: int

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "current": self.current, "max": self.max}


class PlanLimitService:
    """Reads plan tier and counts integrations for one tenant."""

    def __init__(self, db_session: Session, tenant_id: str):
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.db = db_session
        self.tenant_id = tenant_id

    def get_plan_slug(self) -> str:
        """Active plan tier for the tenant, or the default tier."""
        tenant_plan = self.db.query(TenantPlan).filter(
            TenantPlan.tenant_id == self.tenant_id,
            TenantPlan.is_active.is_(True),
        ).order_by(TenantPlan.created_at.desc()).first()

        return tenant_plan.plan_slug if tenant_plan else DEFAULT_PLAN_SLUG

    def get_max_integrations(self, plan_slug: Optional[str] = None) -> int:
        """Plan row limit wins; NULL or missing plan falls back to the tier default."""
        plan_slug = plan_slug or self.get_plan_slug()

        plan = self.db.query(Plan).filter(
            Plan.slug == plan_slug,
            Plan.is_active.is_(True),
        ).first()

        if plan is not None and plan.max_integrations is not None:
            return plan.max_integrations

        return get_default_max_integrations(plan_slug)

    def count_active_integrations(self) -> int:
        """Count integrations that are not disconnected."""
        return self.db.query(func.count(Integration.id)).filter(
            Integration.tenant_id == self.tenant_id,
            Integration.status != IntegrationStatus.DISCONNECTED,
        ).scalar() or 0

    def check(self) -> IntegrationLimitCheck:
        current = self.count_active_integrations()
        max_integrations = self.get_max_integrations()

        result = IntegrationLimitCheck(
            allowed=current < max_integrations,
            current=current,
            max=max_integrations,
        )

        logger.debug(
            "Integration limit check",
            extra={"tenant_id": self.tenant_id, **result.to_dict()},
        )
        return result
