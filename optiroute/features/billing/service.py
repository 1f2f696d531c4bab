"""
Billing service orchestrator.

Coordinates, for one authenticated user:
- Customer management
- Checkout and customer portal sessions
- Subscription cancel / upgrade
- Billing history and payment method display

All Stripe-specific code is in stripe_provider.py. Provider calls are
blocking and run in the threadpool; their failures surface as
UpstreamProviderError with the provider message in `details`.
"""
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from starlette.concurrency import run_in_threadpool

from optiroute.core.config import settings
from optiroute.core.errors import (
    ConfigurationError,
    NotFoundError,
    PermissionError,
    UpstreamProviderError,
    ValidationError,
)
from optiroute.features.billing.provider import BillingProvider, BillingProviderError
from optiroute.features.identity.clerk_client import ClerkClient, full_name, primary_email
from optiroute.features.identity.profile_store import ProfileStore, update_profile
from optiroute.features.plans.service import is_known_plan, resolve_limits
from optiroute.models.subscription import (
    Canceled,
    PastDue,
    UserSubscriptionProfile,
    is_entitled,
)

logger = logging.getLogger("optiroute")

BILLING_HISTORY_LIMIT = 10
PAYMENT_REQUIRED_STATUSES = ("past_due", "incomplete")


def _change_plan(new_plan_id: str) -> Callable[[UserSubscriptionProfile], UserSubscriptionProfile]:
    def mutate(profile: UserSubscriptionProfile) -> UserSubscriptionProfile:
        state = profile.state
        if is_entitled(state):
            if state.plan_id == new_plan_id:
                return profile
            return profile.with_state(replace(state, plan_id=new_plan_id, used=0, cancel_at_period_end=False))
        if isinstance(state, PastDue):
            return profile.with_state(replace(state, plan_id=new_plan_id))
        return profile.model_copy(update={"plan_id": new_plan_id})
    return mutate


def _clear_pending(profile: UserSubscriptionProfile) -> UserSubscriptionProfile:
    return profile.model_copy(update={
        "pending_payment_client_secret": None,
        "pending_payment_intent_id": None,
        "pending_invoice_id": None,
    })


class BillingService:
    def __init__(
        self,
        provider: BillingProvider,
        store: ProfileStore,
        clerk: ClerkClient,
        app_url: Optional[str] = None,
    ):
        self.provider = provider
        self.store = store
        self.clerk = clerk
        self.app_url = (app_url or settings.NEXT_PUBLIC_APP_URL).rstrip("/")

    async def _call(self, failure: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await run_in_threadpool(fn, *args, **kwargs)
        except BillingProviderError as e:
            logger.error(
                "billing.provider_error",
                extra={"error_message": str(e), "operation": getattr(fn, "__name__", "provider_call")},
            )
            raise UpstreamProviderError(failure, details=str(e))

    async def _set_customer_id(self, user_id: str, customer_id: str) -> None:
        await update_profile(
            self.store,
            user_id,
            lambda p: p.model_copy(update={"customer_id": customer_id}),
        )

    async def _customer_id(self, user_id: str) -> str:
        profile = await self.store.load(user_id)
        if not profile.customer_id:
            raise NotFoundError("Stripe customer not found.")
        return profile.customer_id

    async def create_stripe_customer(self, user_id: str) -> str:
        """
        Create a Stripe customer for the user and remember it on the profile.

        A customer already stored on the profile is returned as is, so its
        subscriptions and invoices stay attached to the user.

        Raises:
            ValidationError: the user has no email address
        """
        profile = await self.store.load(user_id)
        if profile.customer_id:
            logger.info("billing.customer.reused", extra={"user_id": user_id, "customer_id": profile.customer_id})
            return profile.customer_id

        user = await self.clerk.get_user(user_id)
        email = primary_email(user)
        if not email:
            raise ValidationError("User email not found")

        customer_id = await self._call(
            "Failed to create Stripe customer",
            self.provider.create_customer, user_id, email, full_name(user),
        )
        await self._set_customer_id(user_id, customer_id)
        return customer_id

    async def _ensure_customer(self, user_id: str, user: Dict[str, Any], profile: UserSubscriptionProfile) -> str:
        if profile.customer_id:
            return profile.customer_id

        email = primary_email(user)
        if not email:
            raise ValidationError("User email not found for new Stripe customer")

        customer_id = await self._call(
            "Failed to create Stripe Checkout session",
            self.provider.find_customer, user_id, email,
        )
        if not customer_id:
            customer_id = await self._call(
                "Failed to create Stripe Checkout session",
                self.provider.create_customer, user_id, email, full_name(user),
            )
        await self._set_customer_id(user_id, customer_id)
        return customer_id

    async def create_checkout_session(self, user_id: str, price_id: str) -> Dict[str, str]:
        """
        Start a subscription checkout for a catalog plan.

        The free trial is offered only to users who never had one.
        """
        if not is_known_plan(price_id):
            raise ValidationError("Invalid price ID.")

        user = await self.clerk.get_user(user_id)
        profile = UserSubscriptionProfile.from_metadata(user.get("public_metadata"))
        customer_id = await self._ensure_customer(user_id, user, profile)

        trial_days = None if profile.has_had_free_trial else settings.TRIAL_PERIOD_DAYS
        session_id, url = await self._call(
            "Failed to create Stripe Checkout session",
            self.provider.create_checkout_session,
            customer_id,
            price_id,
            f"{self.app_url}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            f"{self.app_url}/#pricing",
            trial_days,
        )
        logger.info(
            "billing.checkout.created",
            extra={"user_id": user_id, "plan_id": price_id, "trial": bool(trial_days)},
        )
        return {"sessionId": session_id, "url": url}

    async def create_customer_portal_session(self, user_id: str) -> Dict[str, str]:
        customer_id = await self._customer_id(user_id)
        url = await self._call(
            "Failed to create billing portal session.",
            self.provider.create_portal_session,
            customer_id,
            f"{self.app_url}/dashboard?billing_portal_return=true",
        )
        return {"url": url}

    async def cancel_subscription(self, user_id: str) -> Dict[str, Any]:
        profile = await self.store.load(user_id)
        if not profile.subscription_id:
            raise NotFoundError("No active subscription found to cancel.")

        canceled = await self._call(
            "Failed to cancel subscription.",
            self.provider.cancel_subscription, profile.subscription_id,
        )
        await update_profile(self.store, user_id, lambda p: p.with_state(Canceled()))
        logger.info("billing.subscription.canceled", extra={"user_id": user_id, "subscription_id": profile.subscription_id})
        return {"success": True, "subscriptionStatus": canceled.status}

    async def update_subscription(self, user_id: str, new_price_id: str) -> Dict[str, Any]:
        """
        Upgrade the user's subscription to `new_price_id`.

        Downgrades are refused; support handles them.

        Returns:
            Result payload. `requiresRedirectToInvoice` is True when the
            prorated invoice needs payment on Stripe's hosted page.

        Raises:
            NotFoundError: no subscription on record
            ValidationError: unknown target plan
            PermissionError: target plan is a downgrade
            ConfigurationError: stored plan is missing or unknown
        """
        profile = await self.store.load(user_id)
        if not profile.subscription_id:
            raise NotFoundError("No active subscription found to update.")
        if not profile.plan_id:
            raise ConfigurationError("Current plan information is missing. Please contact support.")
        if new_price_id == profile.plan_id:
            return {"message": "User is already subscribed to this plan."}

        if not is_known_plan(profile.plan_id):
            raise ConfigurationError("Invalid current plan configuration.")
        if not is_known_plan(new_price_id):
            raise ValidationError("Invalid new plan selected.")

        current = resolve_limits(profile.plan_id)
        target = resolve_limits(new_price_id)
        if target.level < current.level:
            raise PermissionError("Downgrades are handled via support. Please contact us to change your plan.")

        updated = await self._call(
            "Failed to update subscription.",
            self.provider.change_subscription_price, profile.subscription_id, new_price_id,
        )
        await update_profile(self.store, user_id, _change_plan(new_price_id))
        logger.info(
            "billing.subscription.upgraded",
            extra={"user_id": user_id, "from_plan": profile.plan_id, "to_plan": new_price_id, "status": updated.status},
        )

        needs_payment = updated.status in PAYMENT_REQUIRED_STATUSES
        if needs_payment and updated.latest_invoice_id:
            try:
                invoice = await self._call(
                    "Failed to retrieve invoice.",
                    self.provider.get_invoice, updated.latest_invoice_id,
                )
            except UpstreamProviderError as e:
                logger.warning(
                    "billing.invoice.lookup_failed",
                    extra={"user_id": user_id, "invoice_id": updated.latest_invoice_id, "error_details": e.details},
                )
            else:
                if invoice.get("status") == "open" and invoice.get("hosted_invoice_url"):
                    return {
                        "success": True,
                        "requiresRedirectToInvoice": True,
                        "hostedInvoiceUrl": invoice["hosted_invoice_url"],
                        "subscriptionId": updated.subscription_id,
                        "message": "Subscription update requires payment. Please complete payment on the Stripe page.",
                    }

        if needs_payment:
            message = f"Subscription update to {target.name} initiated. Status: {updated.status}. Payment may be required."
        else:
            message = f"Subscription successfully updated to {target.name}."
        return {
            "success": True,
            "subscriptionId": updated.subscription_id,
            "newPlanId": new_price_id,
            "subscriptionStatus": updated.status,
            "requiresRedirectToInvoice": False,
            "message": message,
        }

    async def get_billing_history(self, user_id: str) -> List[Dict[str, Any]]:
        customer_id = await self._customer_id(user_id)
        return await self._call(
            "Failed to fetch billing history.",
            self.provider.list_invoices, customer_id, BILLING_HISTORY_LIMIT,
        )

    async def get_payment_method(self, user_id: str) -> Dict[str, Any]:
        customer_id = await self._customer_id(user_id)
        card = await self._call("Failed to fetch payment method.", self.provider.first_card, customer_id)
        if card is None:
            return {"message": "No payment methods found."}
        return card

    async def clear_pending_payment_details(self, user_id: str) -> Dict[str, Any]:
        await update_profile(self.store, user_id, _clear_pending)
        return {"success": True, "message": "Pending payment details cleared."}
