"""
optiroute/models/plan.py

Plan limits keyed by Stripe price id.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

UNLIMITED = -1


class PlanLimits(BaseModel):
    """
    Capability tier of a subscription plan.

    `level` is an ordinal used to tell upgrades from downgrades.
    A limit of UNLIMITED (-1) is unbounded.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: Optional[str]
    name: str
    level: int
    max_stops: int
    max_optimizations: int

    @property
    def stops_unbounded(self) -> bool:
        return self.max_stops == UNLIMITED

    @property
    def optimizations_unbounded(self) -> bool:
        return self.max_optimizations == UNLIMITED


NO_ACCESS_LIMITS = PlanLimits(
    plan_id=None,
    name="No Active Plan",
    level=-1,
    max_stops=0,
    max_optimizations=0,
)
