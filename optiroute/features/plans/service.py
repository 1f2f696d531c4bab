"""
optiroute/features/plans/service.py

Plan catalog and the optimization admission policy.

Handles:
- Plan lookup by Stripe price id
- Stop-count and per-cycle usage limits
- Usage recording (done before the routing call, so a provider failure
  after admission still consumes one optimization)
"""

import logging
from dataclasses import replace
from typing import Dict, Optional

from optiroute.core.config import settings
from optiroute.core.errors import QuotaExceededError
from optiroute.features.identity.profile_store import ProfileStore, update_profile
from optiroute.models.plan import NO_ACCESS_LIMITS, UNLIMITED, PlanLimits
from optiroute.models.subscription import (
    Active,
    Trialing,
    UserSubscriptionProfile,
    is_entitled,
)

logger = logging.getLogger("optiroute")


# Plan configurations, keyed by Stripe price id at lookup time
DEFAULT_PLANS = {
    "pro": {
        "name": "Pro",
        "level": 1,
        "max_stops": 100,
        "max_optimizations": 50,
    },
    "unlimited": {
        "name": "Unlimited",
        "level": 2,
        "max_stops": UNLIMITED,
        "max_optimizations": UNLIMITED,
    },
}


def plan_catalog() -> Dict[str, PlanLimits]:
    """Price id -> limits, using the configured Stripe price ids."""
    price_ids = {
        "pro": settings.STRIPE_PRICE_PRO,
        "unlimited": settings.STRIPE_PRICE_UNLIMITED,
    }
    return {
        price_ids[key]: PlanLimits(plan_id=price_ids[key], **config)
        for key, config in DEFAULT_PLANS.items()
    }


def resolve_limits(plan_id: Optional[str]) -> PlanLimits:
    """Limits for a plan id. Unknown or absent ids get no access."""
    if not plan_id:
        return NO_ACCESS_LIMITS
    return plan_catalog().get(plan_id, NO_ACCESS_LIMITS)


def is_known_plan(plan_id: Optional[str]) -> bool:
    return bool(plan_id) and plan_id in plan_catalog()


def limits_for_profile(profile: UserSubscriptionProfile) -> PlanLimits:
    """Only trialing or active subscriptions get their plan's limits."""
    state = profile.state
    if not is_entitled(state):
        return NO_ACCESS_LIMITS
    return resolve_limits(state.plan_id)


def check_stop_limit(limits: PlanLimits, via_stop_count: int) -> None:
    """
    Reject routes with more stops than the plan allows.

    Total stops = origin + destination + via stops. Exactly `max_stops` admits.

    Raises:
        QuotaExceededError: total exceeds the plan maximum
    """
    total = 2 + via_stop_count
    if limits.stops_unbounded or total <= limits.max_stops:
        return
    if limits.level < 0:
        message = "An active subscription is required to optimize routes."
    else:
        message = (
            f"Your route has {total} stops, but the {limits.name} plan allows "
            f"a maximum of {limits.max_stops}. Please upgrade your plan."
        )
    raise QuotaExceededError(message, details=f"stops={total} max_stops={limits.max_stops}")


def check_usage_limit(limits: PlanLimits, used_this_cycle: int) -> None:
    """
    Reject once the cycle's optimization allowance is used up.

    Never rejects on an unbounded plan.

    Raises:
        QuotaExceededError: used_this_cycle >= max_optimizations
    """
    if limits.optimizations_unbounded:
        return
    if used_this_cycle < limits.max_optimizations:
        return
    if limits.level < 0:
        message = "An active subscription is required to optimize routes."
    else:
        message = (
            f"You have used {used_this_cycle} of {limits.max_optimizations} optimizations "
            f"included in the {limits.name} plan this billing cycle. Please upgrade your plan."
        )
    raise QuotaExceededError(
        message,
        details=f"used={used_this_cycle} max_optimizations={limits.max_optimizations}",
    )


def usage_for_admission(profile: UserSubscriptionProfile, user_id: Optional[str] = None) -> int:
    """
    Optimizations counted against the current cycle.

    A recognised plan with no recorded cycle start counts as a fresh cycle.
    """
    state = profile.state
    if is_entitled(state) and state.cycle_start is None:
        logger.warning(
            "plans.cycle_start_missing",
            extra={"user_id": user_id, "plan_id": state.plan_id, "used": state.used},
        )
        return 0
    return profile.used_this_cycle


def admit_optimization(profile: UserSubscriptionProfile, via_stop_count: int, user_id: Optional[str] = None) -> PlanLimits:
    """Run both checks for one optimization request. Returns the applied limits."""
    limits = limits_for_profile(profile)
    used = usage_for_admission(profile, user_id)
    try:
        check_stop_limit(limits, via_stop_count)
        check_usage_limit(limits, used)
    except QuotaExceededError as e:
        logger.info(
            "optimize.rejected",
            extra={"user_id": user_id, "plan": limits.name, "reason": e.details},
        )
        raise
    logger.info(
        "optimize.admitted",
        extra={"user_id": user_id, "plan": limits.name, "stops": 2 + via_stop_count, "used": used},
    )
    return limits


def _increment_usage(profile: UserSubscriptionProfile) -> UserSubscriptionProfile:
    state = profile.state
    if not isinstance(state, (Active, Trialing)):
        return profile
    base = 0 if state.cycle_start is None else state.used
    return profile.with_state(replace(state, used=base + 1))


async def record_usage(store: ProfileStore, user_id: str) -> UserSubscriptionProfile:
    """Count one optimization against the user's current cycle."""
    return await update_profile(store, user_id, _increment_usage)


async def consume_optimization(store: ProfileStore, user_id: str, via_stop_count: int) -> UserSubscriptionProfile:
    """
    Admit one optimization and count it, as a single versioned write.

    The checks run against the same profile version the increment is based
    on, so two concurrent requests cannot both spend the last unit.

    Raises:
        QuotaExceededError: stop or usage limit exceeded
        ConflictError: the profile kept changing underneath
    """
    def admit_and_count(profile: UserSubscriptionProfile) -> UserSubscriptionProfile:
        admit_optimization(profile, via_stop_count, user_id=user_id)
        return _increment_usage(profile)

    return await update_profile(store, user_id, admit_and_count)
