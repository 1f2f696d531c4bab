"""
optiroute/models/subscription.py

Subscription state and the user profile it is persisted on.

The profile lives in Clerk `public_metadata` as flat keys. Code never edits
the plan/subscription/cycle/usage keys one by one: it reads `profile.state`
(a tagged variant), produces a new variant, and writes it back with
`profile.with_state(...)`, which sets or clears every related key together.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class NoPlan:
    """Never subscribed (or the record is incomplete)."""


@dataclass(frozen=True)
class Trialing:
    plan_id: str
    subscription_id: Optional[str]
    cycle_start: Optional[int]
    used: int = 0
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class Active:
    plan_id: str
    subscription_id: Optional[str]
    cycle_start: Optional[int]
    used: int = 0
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class PastDue:
    """Payment failed or needs action. Access is suspended; the plan is kept so a later payment restores it."""
    plan_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class Canceled:
    """Subscription ended. Every plan-related field is cleared."""


SubscriptionState = Union[NoPlan, Trialing, Active, PastDue, Canceled]

# States that grant access to a plan's limits
ENTITLED_STATES = (Trialing, Active)


def is_entitled(state: SubscriptionState) -> bool:
    return isinstance(state, ENTITLED_STATES)


class UserSubscriptionProfile(BaseModel):
    """
    Subscription fields stored on the Clerk user's public metadata.

    Invariants:
    - has_active_subscription False => plan/cycle/usage/cancel fields are null
      (PastDue keeps plan_id and subscription_id)
    - optimizations_used_this_cycle resets to 0 when plan_id or cycle start changes
    - has_had_free_trial never goes back to False
    - version increments on every write (optimistic concurrency token)
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    plan_id: Optional[str] = Field(default=None, alias="stripePlanId")
    has_active_subscription: bool = Field(default=False, alias="hasActiveSubscription")
    subscription_id: Optional[str] = Field(default=None, alias="stripeSubscriptionId")
    subscription_status: Optional[str] = Field(default=None, alias="subscriptionStatus")
    cycle_start_epoch_seconds: Optional[int] = Field(default=None, alias="subCycleStartDate")
    optimizations_used_this_cycle: Optional[int] = Field(default=None, ge=0, alias="optimizationsUsedThisCycle")
    has_had_free_trial: bool = Field(default=False, alias="hasHadFreeTrial")
    cancel_at_period_end: Optional[bool] = Field(default=None, alias="stripeCancelAtPeriodEnd")
    customer_id: Optional[str] = Field(default=None, alias="stripeCustomerId")
    pending_payment_client_secret: Optional[str] = Field(default=None, alias="pendingPaymentClientSecret")
    pending_payment_intent_id: Optional[str] = Field(default=None, alias="pendingPaymentIntentId")
    pending_invoice_id: Optional[str] = Field(default=None, alias="pendingInvoiceId")
    version: int = Field(default=0, alias="profileVersion")

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> "UserSubscriptionProfile":
        """Build from raw Clerk public_metadata, ignoring unrelated keys."""
        known = {field.alias for field in cls.model_fields.values()}
        data = {k: v for k, v in (metadata or {}).items() if k in known and v is not None}
        return cls.model_validate(data)

    def to_metadata(self) -> Dict[str, Any]:
        """Serialize to Clerk keys. Nulls are kept so Clerk clears them."""
        return self.model_dump(by_alias=True)

    @property
    def used_this_cycle(self) -> int:
        return self.optimizations_used_this_cycle or 0

    @property
    def state(self) -> SubscriptionState:
        if self.has_active_subscription and self.plan_id:
            cls = Trialing if self.subscription_status == "trialing" else Active
            return cls(
                plan_id=self.plan_id,
                subscription_id=self.subscription_id,
                cycle_start=self.cycle_start_epoch_seconds,
                used=self.used_this_cycle,
                cancel_at_period_end=bool(self.cancel_at_period_end),
            )
        if self.subscription_status == "past_due":
            return PastDue(plan_id=self.plan_id, subscription_id=self.subscription_id)
        if self.subscription_status == "canceled":
            return Canceled()
        return NoPlan()

    def with_state(self, state: SubscriptionState) -> "UserSubscriptionProfile":
        """Return a copy whose subscription fields reflect `state` exactly."""
        cleared = {
            "plan_id": None,
            "has_active_subscription": False,
            "subscription_id": None,
            "subscription_status": None,
            "cycle_start_epoch_seconds": None,
            "optimizations_used_this_cycle": None,
            "cancel_at_period_end": None,
        }
        if isinstance(state, ENTITLED_STATES):
            fields = {
                "plan_id": state.plan_id,
                "has_active_subscription": True,
                "subscription_id": state.subscription_id,
                "subscription_status": "trialing" if isinstance(state, Trialing) else "active",
                "cycle_start_epoch_seconds": state.cycle_start,
                "optimizations_used_this_cycle": state.used,
                "cancel_at_period_end": state.cancel_at_period_end,
            }
        elif isinstance(state, PastDue):
            fields = dict(
                cleared,
                plan_id=state.plan_id,
                subscription_id=state.subscription_id,
                subscription_status="past_due",
            )
        elif isinstance(state, Canceled):
            fields = dict(cleared, subscription_status="canceled")
        else:
            fields = cleared

        trial = self.has_had_free_trial or isinstance(state, Trialing)
        return self.model_copy(update=dict(fields, has_had_free_trial=trial))
