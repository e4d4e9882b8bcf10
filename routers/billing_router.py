"""
Billing Router - Stripe checkout and webhook endpoints under /api/payments
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from database_models import User
from models.contract_models import CheckoutRequest
from services.billing_service import BillingService, verify_webhook
from utils.rate_limit import RateLimit
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/payments", tags=["payments"])


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Handle Stripe webhook events with signature verification.

    Unverifiable deliveries are rejected (401 bad signature, 400 missing
    signature). Verified deliveries always get 200 so Stripe stops retrying,
    even if applying the event failed; failures are logged.

    Args:
        request: FastAPI Request object (for raw body)
        db: Database session dependency

    Returns:
        JSON response with 200 status code
    """
    payload = await request.body()
    event = verify_webhook(payload, request.headers.get("stripe-signature"))

    result = await BillingService(db).process_event(event)
    log_endpoint_event("/api/payments/webhook", None, "received", result)
    return JSONResponse(
        status_code=200,
        content={
            "ok": True,
            "received": True,
            "event_type": result["event_type"],
            "handled": result["handled"],
            "duplicate": result["duplicate"],
        }
    )


@billing_router.get("/webhook")
async def webhook_info():
    """Endpoint check used when registering the webhook."""
    return {"message": "Stripe webhook endpoint"}


@billing_router.get("/subscribe", dependencies=[Depends(RateLimit("general"))])
async def get_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Current subscription, usage and payment history for the signed-in user."""
    return await BillingService(db).subscription_overview(current_user.id)


@billing_router.post("/subscribe", dependencies=[Depends(RateLimit("general"))])
async def create_subscription(
    body: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a Stripe Checkout session for a plan.

    Returns:
        JSON with the checkout URL the client should redirect to
    """
    checkout = await BillingService(db).create_checkout(current_user, body.plan_type, body.billing_cycle)
    log_endpoint_event("/api/payments/subscribe", current_user.id, "success", {
        "plan_type": body.plan_type,
        "billing_cycle": body.billing_cycle,
        "reference": checkout["reference"],
    })
    return checkout
