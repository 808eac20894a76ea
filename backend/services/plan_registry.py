"""Plan Registry - single source of truth for plan codes and their Stripe prices.

Price ids are configured per environment:
    STRIPE_STARTER_PRICE_ID, STRIPE_PROFESSIONAL_PRICE_ID, STRIPE_ENTERPRISE_PRICE_ID

The mirror's plan_id is derived from the subscription price id ONLY.
"""
import os
import logging
from enum import Enum
from typing import Optional, List

logger = logging.getLogger(__name__)


class PlanCode(str, Enum):
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"


PLAN_DEFINITIONS = {
    PlanCode.STARTER: {
        "code": "STARTER",
        "name": "Starter",
        "price_env": "STRIPE_STARTER_PRICE_ID",
    },
    PlanCode.PROFESSIONAL: {
        "code": "PROFESSIONAL",
        "name": "Professional",
        "price_env": "STRIPE_PROFESSIONAL_PRICE_ID",
    },
    PlanCode.ENTERPRISE: {
        "code": "ENTERPRISE",
        "name": "Enterprise",
        "price_env": "STRIPE_ENTERPRISE_PRICE_ID",
    },
}


class PlanRegistryService:
    """Resolves plans from Stripe price ids."""

    def get_price_id(self, plan_code: PlanCode) -> Optional[str]:
        env_name = PLAN_DEFINITIONS[plan_code]["price_env"]
        return (os.getenv(env_name) or "").strip() or None

    def missing_price_ids(self) -> List[str]:
        return [code.value for code in PlanCode if not self.get_price_id(code)]

    def get_plan_from_subscription_price_id(self, price_id: Optional[str]) -> Optional[PlanCode]:
        """
        Derive plan code from Stripe subscription price_id.
        Env is read on every call so rotated prices apply without restart.
        """
        if not price_id:
            return None
        for code in PlanCode:
            if self.get_price_id(code) == price_id:
                return code
        return None

    def resolve_plan_id(self, price_id: Optional[str]) -> Optional[str]:
        """Plan identifier stored on the mirror. Unknown prices are kept verbatim."""
        plan = self.get_plan_from_subscription_price_id(price_id)
        if plan:
            return plan.value
        if price_id:
            logger.warning(f"Unknown Stripe price id {price_id}; storing raw price id as plan")
        return price_id


# Singleton instance
plan_registry = PlanRegistryService()
