"""
UserSubscriptionProfile <-> Clerk metadata and the subscription state variant.
"""
from optiroute.models.subscription import (
    Active,
    Canceled,
    NoPlan,
    PastDue,
    Trialing,
    UserSubscriptionProfile,
    is_entitled,
)


def test_from_metadata_reads_clerk_keys_and_ignores_others():
    profile = UserSubscriptionProfile.from_metadata({
        "stripePlanId": "price_pro",
        "hasActiveSubscription": True,
        "stripeSubscriptionId": "sub_1",
        "subscriptionStatus": "active",
        "subCycleStartDate": 1_700_000_000,
        "optimizationsUsedThisCycle": 7,
        "stripeCustomerId": "cus_1",
        "profileVersion": 4,
        "favouriteColour": "teal",
    })

    assert profile.plan_id == "price_pro"
    assert profile.customer_id == "cus_1"
    assert profile.version == 4
    assert profile.state == Active(plan_id="price_pro", subscription_id="sub_1", cycle_start=1_700_000_000, used=7)


def test_from_metadata_handles_missing_metadata():
    profile = UserSubscriptionProfile.from_metadata(None)
    assert profile.state == NoPlan()
    assert profile.version == 0
    assert profile.used_this_cycle == 0


def test_to_metadata_keeps_nulls_so_clerk_clears_them():
    metadata = UserSubscriptionProfile().with_state(Canceled()).to_metadata()

    assert metadata["stripePlanId"] is None
    assert metadata["hasActiveSubscription"] is False
    assert metadata["subscriptionStatus"] == "canceled"
    assert "profileVersion" in metadata


def test_trialing_round_trips_through_metadata():
    state = Trialing(plan_id="price_pro", subscription_id="sub_1", cycle_start=10, used=2, cancel_at_period_end=True)
    profile = UserSubscriptionProfile().with_state(state)

    restored = UserSubscriptionProfile.from_metadata(profile.to_metadata())

    assert restored.state == state
    assert restored.has_had_free_trial is True


def test_past_due_keeps_plan_but_loses_access():
    profile = UserSubscriptionProfile().with_state(
        Active(plan_id="price_pro", subscription_id="sub_1", cycle_start=10, used=3)
    ).with_state(PastDue(plan_id="price_pro", subscription_id="sub_1"))

    assert profile.has_active_subscription is False
    assert profile.plan_id == "price_pro"
    assert profile.optimizations_used_this_cycle is None
    assert profile.cycle_start_epoch_seconds is None
    assert not is_entitled(profile.state)


def test_canceled_clears_every_plan_field():
    profile = UserSubscriptionProfile(customer_id="cus_1").with_state(
        Active(plan_id="price_pro", subscription_id="sub_1", cycle_start=10, used=3, cancel_at_period_end=True)
    ).with_state(Canceled())

    assert profile.plan_id is None
    assert profile.subscription_id is None
    assert profile.cancel_at_period_end is None
    assert profile.customer_id == "cus_1"
    assert profile.state == Canceled()


def test_free_trial_flag_is_never_cleared():
    profile = UserSubscriptionProfile(has_had_free_trial=True).with_state(NoPlan())
    assert profile.has_had_free_trial is True


def test_active_flag_without_plan_is_no_plan():
    profile = UserSubscriptionProfile(has_active_subscription=True)
    assert profile.state == NoPlan()
