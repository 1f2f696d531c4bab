"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe SDK.
Handles webhook signature verification and event parsing.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import stripe

from optiroute.features.billing.provider import (
    CHECKOUT_COMPLETED,
    EVENT_ALIASES,
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    SubscriptionSnapshot,
)

logger = logging.getLogger("optiroute")

# Stripe customer metadata key holding the Clerk user id
USER_ID_METADATA_KEY = "clerk_user_id"


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or plain dict; missing or null gives `default`."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def _id_of(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


def _first_item(subscription: Any) -> Any:
    items = _field(_field(subscription, "items"), "data", [])
    return items[0] if items else None


def subscription_snapshot(subscription: Any) -> SubscriptionSnapshot:
    """Normalize a Stripe subscription object."""
    item = _first_item(subscription)
    # Newer API versions moved the billing period onto the subscription item
    period_start = _field(subscription, "current_period_start") or _field(item, "current_period_start")
    return SubscriptionSnapshot(
        subscription_id=_field(subscription, "id"),
        customer_id=_id_of(_field(subscription, "customer")),
        status=_field(subscription, "status"),
        plan_id=_field(_field(item, "price"), "id"),
        current_period_start=int(period_start) if period_start else None,
        trial_end=_field(subscription, "trial_end"),
        cancel_at_period_end=bool(_field(subscription, "cancel_at_period_end", False)),
        latest_invoice_id=_id_of(_field(subscription, "latest_invoice")),
    )


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    direct = _id_of(_field(invoice, "subscription"))
    if direct:
        return direct
    details = _field(_field(invoice, "parent"), "subscription_details")
    return _id_of(_field(details, "subscription"))


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret (only needed for webhooks)
        """
        if not secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        stripe.api_key = self.secret_key

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        customer_data: Dict[str, Any] = {
            "email": email,
            "metadata": {USER_ID_METADATA_KEY: user_id},
        }
        if name:
            customer_data["name"] = name
        try:
            customer = stripe.Customer.create(**customer_data)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")
        logger.info("billing.customer.created", extra={"user_id": user_id, "customer_id": customer.id})
        return customer.id

    def find_customer(self, user_id: str, email: str) -> Optional[str]:
        """Search customers by email and match on the user cross-reference."""
        try:
            customers = stripe.Customer.list(email=email)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}")
        for customer in _field(customers, "data", []):
            if _field(_field(customer, "metadata"), USER_ID_METADATA_KEY) == user_id:
                return _field(customer, "id")
        return None

    def resolve_user_id(self, customer_id: str) -> Optional[str]:
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer retrieval failed: {e}")
        if _field(customer, "deleted", False):
            return None
        return _field(_field(customer, "metadata"), USER_ID_METADATA_KEY)

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: Optional[int] = None,
    ) -> Tuple[str, str]:
        subscription_data: Dict[str, Any] = {}
        if trial_period_days:
            subscription_data["trial_period_days"] = trial_period_days
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                subscription_data=subscription_data,
                allow_promotion_codes=True,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return session.id, session.url

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
        return session.url

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            return subscription_snapshot(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")

    def cancel_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            return subscription_snapshot(stripe.Subscription.cancel(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")

    def change_subscription_price(self, subscription_id: str, new_price_id: str) -> SubscriptionSnapshot:
        """Swap the first item's price, prorating and leaving payment incomplete if needed."""
        try:
            current = stripe.Subscription.retrieve(subscription_id)
            item = _first_item(current)
            if item is None:
                raise BillingProviderError(f"Subscription {subscription_id} has no items")
            updated = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": _field(item, "id"), "price": new_price_id}],
                proration_behavior="create_prorations",
                payment_behavior="default_incomplete",
                cancel_at_period_end=False,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}")
        return subscription_snapshot(updated)

    def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        try:
            invoice = stripe.Invoice.retrieve(invoice_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice retrieval failed: {e}")
        return {
            "id": _field(invoice, "id"),
            "status": _field(invoice, "status"),
            "hosted_invoice_url": _field(invoice, "hosted_invoice_url"),
        }

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        try:
            invoices = stripe.Invoice.list(customer=customer_id, limit=limit)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice listing failed: {e}")
        return [
            {
                "id": _field(invoice, "id"),
                "number": _field(invoice, "number"),
                "amount_due": _field(invoice, "amount_due"),
                "amount_paid": _field(invoice, "amount_paid"),
                "currency": _field(invoice, "currency"),
                "created": _field(invoice, "created"),
                "status": _field(invoice, "status"),
                "invoice_pdf": _field(invoice, "invoice_pdf"),
            }
            for invoice in _field(invoices, "data", [])
        ]

    def first_card(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            methods = stripe.Customer.list_payment_methods(customer_id, type="card", limit=1)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe payment method listing failed: {e}")
        data = _field(methods, "data", [])
        if not data:
            return None
        card = _field(data[0], "card")
        return {
            "brand": _field(card, "brand"),
            "last4": _field(card, "last4"),
            "exp_month": _field(card, "exp_month"),
            "exp_year": _field(card, "exp_year"),
        }

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingProviderError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")
        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Any) -> BillingEvent:
        """Parse Stripe event into a normalized BillingEvent."""
        event_type = EVENT_ALIASES.get(event["type"], event["type"])
        data = _field(_field(event, "data"), "object", {})
        customer_id = _id_of(_field(data, "customer"))

        if event_type.startswith("customer.subscription."):
            snapshot = subscription_snapshot(data)
            return BillingEvent(
                event_id=event["id"],
                event_type=event_type,
                customer_id=customer_id,
                subscription_id=snapshot.subscription_id,
                subscription=snapshot,
            )

        if event_type == CHECKOUT_COMPLETED:
            return BillingEvent(
                event_id=event["id"],
                event_type=event_type,
                customer_id=customer_id,
                subscription_id=_id_of(_field(data, "subscription")),
                checkout_mode=_field(data, "mode"),
            )

        if event_type.startswith("invoice."):
            return BillingEvent(
                event_id=event["id"],
                event_type=event_type,
                customer_id=customer_id,
                subscription_id=_invoice_subscription_id(data),
            )

        return BillingEvent(
            event_id=event["id"],
            event_type=event_type,
            customer_id=customer_id,
            subscription_id=None,
        )
