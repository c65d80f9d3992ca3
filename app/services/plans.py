"""
Freemius plan catalog.

Maps Freemius plan IDs to the credit amount a purchase grants.
"""

from dataclasses import dataclass

from app.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Plan:
    """Freemius plan configuration."""

    plan_id: str
    credits: int
    name: str

    def __post_init__(self) -> None:
        """Validate plan configuration."""
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")
        if not self.plan_id:
            raise ValueError("Plan ID required")
        if not self.name:
            raise ValueError("Name required")


FREE_PLAN_ID = "34244"

# Plan catalog (must match the Freemius dashboard)
FREEMIUS_PLANS: tuple[Plan, ...] = (
    Plan(plan_id=FREE_PLAN_ID, credits=100, name="Free"),
    Plan(plan_id="34240", credits=5000, name="Optimizer 5K"),
    Plan(plan_id="34242", credits=20000, name="Optimizer 20K"),
    Plan(plan_id="34243", credits=1000000, name="Optimizer 1M"),
)


class PlanCatalog:
    """Lookup of plan IDs to credit amounts."""

    def __init__(self, plans: tuple[Plan, ...] = FREEMIUS_PLANS) -> None:
        self._plans = {plan.plan_id: plan for plan in plans}

    def get(self, plan_id: str | None) -> Plan | None:
        if plan_id is None:
            return None
        return self._plans.get(str(plan_id).strip())

    def credits_for(self, plan_id: str | None) -> int:
        """
        Number of credits granted by a plan.

        Unknown or missing plan IDs grant nothing.
        """
        plan = self.get(plan_id)
        if plan is None:
            logger.warning("unknown_plan_id", plan_id=plan_id)
            return 0
        return plan.credits
