"""
Billing provider protocol.

Defines the interface the billing service and reconciler rely on, so the
Stripe implementation can be swapped for a fake in tests.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

# Normalized webhook event kinds
CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_ACTION_REQUIRED = "invoice.payment_action_required"

EVENT_ALIASES = {
    "invoice.payment_succeeded": INVOICE_PAID,
}

HANDLED_EVENTS = frozenset({
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    INVOICE_ACTION_REQUIRED,
})

# Losing one of these silently leaves the profile wrong
CRITICAL_EVENTS = frozenset({
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAID,
})


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The parts of a provider subscription the profile cares about."""
    subscription_id: str
    customer_id: Optional[str]
    status: Optional[str]
    plan_id: Optional[str]  # price id of the first subscription item
    current_period_start: Optional[int]
    trial_end: Optional[int]
    cancel_at_period_end: bool = False
    latest_invoice_id: Optional[str] = None


@dataclass(frozen=True)
class BillingEvent:
    """A verified webhook event, normalized."""
    event_id: str
    event_type: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    subscription: Optional[SubscriptionSnapshot] = None
    checkout_mode: Optional[str] = None


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Methods are synchronous (the Stripe SDK is); callers run them in a
    threadpool. Failures raise BillingProviderError.
    """

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        """Create a customer cross-referenced to `user_id`. Returns the customer id."""
        ...

    def find_customer(self, user_id: str, email: str) -> Optional[str]:
        """Existing customer for `email` whose cross-reference is `user_id`, if any."""
        ...

    def resolve_user_id(self, customer_id: str) -> Optional[str]:
        """Internal user id from the customer's cross-reference metadata."""
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: Optional[int] = None,
    ) -> Tuple[str, str]:
        """Returns (session id, checkout url)."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        ...

    def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def cancel_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ...

    def change_subscription_price(self, subscription_id: str, new_price_id: str) -> SubscriptionSnapshot:
        """Swap the subscription's price immediately, prorating."""
        ...

    def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        ...

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        ...

    def first_card(self, customer_id: str) -> Optional[Dict[str, Any]]:
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw webhook body, exactly as received

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass
