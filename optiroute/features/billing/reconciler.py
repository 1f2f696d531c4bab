"""
optiroute/features/billing/reconciler.py

Keeps UserSubscriptionProfile in step with billing webhook events.

`transition` is the only place subscription state changes in response to a
billing event. It is pure: (state, event, now) -> state. The reconciler
around it resolves the user, fills in missing subscription details from the
provider, and persists through the versioned profile store.

Every verified event is acknowledged, including ones that fail here. Such
failures are logged as `billing.reconcile.failed` and are not retried.
"""

import logging
import time
from dataclasses import replace
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool

from optiroute.core.logging import log_event
from optiroute.features.billing.provider import (
    CHECKOUT_COMPLETED,
    CRITICAL_EVENTS,
    HANDLED_EVENTS,
    INVOICE_ACTION_REQUIRED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    BillingEvent,
    BillingProvider,
    SubscriptionSnapshot,
)
from optiroute.features.identity.profile_store import ProfileStore, update_profile
from optiroute.models.subscription import (
    Active,
    Canceled,
    PastDue,
    SubscriptionState,
    Trialing,
    UserSubscriptionProfile,
    is_entitled,
)

logger = logging.getLogger("optiroute")

ENTITLING_STATUSES = frozenset({"active", "trialing"})
SUSPENDED_STATUSES = frozenset({"past_due", "unpaid", "incomplete", "paused"})
ENDED_STATUSES = frozenset({"canceled", "incomplete_expired"})


def _current_plan(state: SubscriptionState) -> Optional[str]:
    return getattr(state, "plan_id", None)


def _current_subscription(state: SubscriptionState) -> Optional[str]:
    return getattr(state, "subscription_id", None)


def _is_other_subscription(state: SubscriptionState, subscription_id: Optional[str]) -> bool:
    stored = _current_subscription(state)
    return bool(stored and subscription_id and stored != subscription_id)


def _in_trial(snapshot: SubscriptionSnapshot, now: int) -> bool:
    return snapshot.status == "trialing" or bool(snapshot.trial_end and snapshot.trial_end > now)


def _entitled_state(
    state: SubscriptionState,
    snapshot: SubscriptionSnapshot,
    now: int,
    always_reset: bool,
) -> SubscriptionState:
    plan_id = snapshot.plan_id or _current_plan(state)
    if not plan_id:
        return state
    cycle_start = snapshot.current_period_start or now

    used = 0
    if is_entitled(state) and not always_reset:
        # Metadata-only updates keep the counter
        if state.plan_id == plan_id and state.cycle_start == cycle_start:
            used = state.used

    cls = Trialing if _in_trial(snapshot, now) else Active
    return cls(
        plan_id=plan_id,
        subscription_id=snapshot.subscription_id,
        cycle_start=cycle_start,
        used=used,
        cancel_at_period_end=snapshot.cancel_at_period_end,
    )


def _subscription_changed(state: SubscriptionState, snapshot: SubscriptionSnapshot, now: int) -> SubscriptionState:
    status = snapshot.status or ""
    if status in ENTITLING_STATUSES:
        return _entitled_state(state, snapshot, now, always_reset=False)
    if status in SUSPENDED_STATUSES | ENDED_STATUSES and _is_other_subscription(state, snapshot.subscription_id):
        # Replaced subscription winding down
        return state
    if status in SUSPENDED_STATUSES:
        return PastDue(
            plan_id=snapshot.plan_id or _current_plan(state),
            subscription_id=snapshot.subscription_id,
        )
    if status in ENDED_STATUSES:
        return Canceled()
    return state


def transition(state: SubscriptionState, event: BillingEvent, now: int) -> SubscriptionState:
    """
    Next subscription state after `event`.

    Rules:
    - subscription created/updated (and completed checkout): active/trialing
      grants the plan, resetting usage only when the plan or cycle start
      changed; suspended statuses move to PastDue; ended ones to Canceled
    - subscription deleted: Canceled
    - invoice paid: entitled on the subscription's plan with usage reset
    - invoice payment failed / action required: PastDue (plan kept)

    Deletions, suspensions, cancellations and payment problems that name a
    subscription other than the stored one are ignored.
    """
    kind = event.event_type
    snapshot = event.subscription

    if kind in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, CHECKOUT_COMPLETED):
        if snapshot is None:
            return state
        return _subscription_changed(state, snapshot, now)

    if kind == SUBSCRIPTION_DELETED:
        if _is_other_subscription(state, event.subscription_id):
            return state
        return Canceled()

    if kind == INVOICE_PAID:
        if snapshot is None:
            snapshot = SubscriptionSnapshot(
                subscription_id=event.subscription_id or _current_subscription(state),
                customer_id=event.customer_id,
                status="active",
                plan_id=None,
                current_period_start=None,
                trial_end=None,
                cancel_at_period_end=bool(getattr(state, "cancel_at_period_end", False)),
            )
        return _entitled_state(state, snapshot, now, always_reset=True)

    if kind in (INVOICE_PAYMENT_FAILED, INVOICE_ACTION_REQUIRED):
        if isinstance(state, Canceled) or _is_other_subscription(state, event.subscription_id):
            return state
        return PastDue(
            plan_id=_current_plan(state),
            subscription_id=event.subscription_id or _current_subscription(state),
        )

    return state


def apply_billing_event(profile: UserSubscriptionProfile, event: BillingEvent, now: int) -> UserSubscriptionProfile:
    """Profile after `event`: new subscription state plus trial and customer bookkeeping."""
    updated = profile.with_state(transition(profile.state, event, now))

    extra = {}
    if event.subscription is not None and _in_trial(event.subscription, now):
        extra["has_had_free_trial"] = True
    if event.customer_id and not updated.customer_id:
        extra["customer_id"] = event.customer_id
    return updated.model_copy(update=extra) if extra else updated


class SubscriptionReconciler:
    def __init__(
        self,
        provider: BillingProvider,
        store: ProfileStore,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.store = store
        self._clock = clock

    async def _with_subscription(self, event: BillingEvent) -> BillingEvent:
        """Attach the current subscription where the event payload lacks it."""
        if event.subscription is not None or not event.subscription_id:
            return event
        if event.event_type == CHECKOUT_COMPLETED and event.checkout_mode not in (None, "subscription"):
            return event
        if event.event_type not in (CHECKOUT_COMPLETED, INVOICE_PAID):
            return event
        snapshot = await run_in_threadpool(self.provider.get_subscription, event.subscription_id)
        return replace(event, subscription=snapshot)

    def _failed(self, event: BillingEvent, reason: str, user_id: Optional[str] = None, exc: Optional[BaseException] = None) -> None:
        log_event(
            "error" if event.event_type in CRITICAL_EVENTS else "warning",
            "billing.reconcile.failed",
            user_id=user_id,
            event_type=event.event_type,
            error_code=reason,
            extra={
                "event_id": event.event_id,
                "customer_id": event.customer_id,
                "error_message": str(exc) if exc else None,
            },
        )

    async def handle(self, event: BillingEvent) -> bool:
        """
        Apply one verified event.

        Returns:
            True if the profile was reconciled, False if the event was skipped
            or failed. Never raises for per-event failures.
        """
        logger.info(
            "billing.webhook.received",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        if event.event_type not in HANDLED_EVENTS:
            logger.info("billing.webhook.unhandled", extra={"event_id": event.event_id, "event_type": event.event_type})
            return False

        user_id = None
        try:
            if event.customer_id:
                user_id = await run_in_threadpool(self.provider.resolve_user_id, event.customer_id)
            if not user_id:
                self._failed(event, "user_unresolved")
                return False

            event = await self._with_subscription(event)
            now = int(self._clock())
            profile = await update_profile(
                self.store,
                user_id,
                lambda current: apply_billing_event(current, event, now),
            )
        except Exception as e:
            self._failed(event, type(e).__name__, user_id=user_id, exc=e)
            return False

        logger.info(
            "billing.reconcile.applied",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "user_id": user_id,
                "state": type(profile.state).__name__,
            },
        )
        return True
