"""
Billing API routes.

Authenticated (Clerk session):
- POST     /api/create-stripe-customer
- POST     /api/create-checkout-session
- POST     /api/create-customer-portal-session
- POST     /api/cancel-subscription
- POST     /api/update-subscription
- GET|POST /api/get-billing-history
- GET|POST /api/get-payment-method
- POST     /api/clear-pending-payment-details

Signature-verified:
- POST     /api/stripe-webhooks
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from optiroute.api.deps import get_billing_provider, get_billing_service, get_reconciler
from optiroute.core.auth import get_current_user_id
from optiroute.core.errors import ConfigurationError, ValidationError
from optiroute.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
)
from optiroute.features.billing.reconciler import SubscriptionReconciler
from optiroute.features.billing.service import BillingService

logger = logging.getLogger("optiroute")

router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    model_config = ConfigDict(populate_by_name=True)

    price_id: Optional[str] = Field(default=None, alias="priceId")


class UpdateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_price_id: Optional[str] = Field(default=None, alias="newPriceId")


@router.post("/create-stripe-customer")
async def create_stripe_customer(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    customer_id = await billing.create_stripe_customer(user_id)
    return {"message": "Stripe customer created successfully", "stripeCustomerId": customer_id}


@router.post("/create-checkout-session")
async def create_checkout_session(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe checkout session for a subscription plan.

    Returns:
        {"sessionId": str, "url": "https://checkout.stripe.com/..."}

    Errors:
        400: missing or unknown price id, or no email for a new customer
        500: Stripe API error
    """
    if not request.price_id:
        raise ValidationError("Price ID is required")
    return await billing.create_checkout_session(user_id, request.price_id)


@router.post("/create-customer-portal-session")
async def create_customer_portal_session(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Returns:
        {"url": "https://billing.stripe.com/..."}

    Errors:
        404: no Stripe customer on record
    """
    return await billing.create_customer_portal_session(user_id)


@router.post("/cancel-subscription")
async def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    return await billing.cancel_subscription(user_id)


@router.post("/update-subscription")
async def update_subscription(
    request: UpdateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    """
    Upgrade to a higher plan. Downgrades return 403.

    Returns:
        Upgrade result, or {"message": ...} when already on the plan.
        When payment is needed: {"requiresRedirectToInvoice": true, "hostedInvoiceUrl": ...}
    """
    if not request.new_price_id:
        raise ValidationError("Missing or invalid newPriceId")
    return await billing.update_subscription(user_id, request.new_price_id)


@router.api_route("/get-billing-history", methods=["GET", "POST"])
async def get_billing_history(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    """Last 10 invoices for the user's Stripe customer."""
    return {"billingHistory": await billing.get_billing_history(user_id)}


@router.api_route("/get-payment-method", methods=["GET", "POST"])
async def get_payment_method(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    return await billing.get_payment_method(user_id)


@router.post("/clear-pending-payment-details")
async def clear_pending_payment_details(
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing_service),
):
    return await billing.clear_pending_payment_details(user_id)


@router.post("/stripe-webhooks")
async def stripe_webhooks(
    request: Request,
    provider: BillingProvider = Depends(get_billing_provider),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """
    Handle Stripe webhook events.

    The signature covers the raw body, so it is read as bytes and never
    re-serialized. Once verified, the event is always acknowledged; per-event
    failures are logged by the reconciler.

    Returns:
        {"received": true}

    Errors:
        400: Invalid signature or payload
        500: Webhook secret not configured
    """
    body = await request.body()
    headers = dict(request.headers)

    try:
        event = provider.handle_webhook(headers, body)
    except BillingWebhookError as e:
        logger.warning("billing.webhook.rejected", extra={"error_message": str(e)})
        raise ValidationError(f"Webhook Error: {e}")
    except BillingProviderError as e:
        raise ConfigurationError(f"Server configuration error: {e}")

    await reconciler.handle(event)
    return {"received": True}
