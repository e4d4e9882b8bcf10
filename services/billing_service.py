"""
Billing Service - Stripe Checkout subscriptions and webhook processing
"""

import json
import logging
import time
from typing import Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings, is_production
from crud.subscription import SubscriptionRepository, WebhookEventRepository, add_period
from database_models import Subscription, User, utcnow
from services.subscription_service import SubscriptionService
from utils.errors import ApiError, ConflictError, InfrastructureError, ValidationError

logger = logging.getLogger(__name__)

# Prices in the smallest currency unit
PLAN_PRICES = {
    "basic": {"monthly": 2900, "yearly": 29000},
    "professional": {"monthly": 9900, "yearly": 99000},
    "enterprise": {"monthly": 29900, "yearly": 299000},
}

ACTIVATION_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")


class WebhookSignatureError(ApiError):
    status_code = 401
    code = "INVALID_SIGNATURE"


class MissingSignatureError(ApiError):
    status_code = 400
    code = "MISSING_SIGNATURE"


def verify_webhook(payload: bytes, signature: Optional[str]) -> dict:
    """
    Verify a webhook delivery and return the event as a plain dict.

    A present signature is always checked against STRIPE_WEBHOOK_SECRET.
    A missing signature is rejected, except outside production when
    ALLOW_UNSIGNED_WEBHOOKS is set; such deliveries are logged as a warning.

    Raises:
        WebhookSignatureError: Signature present but invalid, or no secret to check it with
        MissingSignatureError: No signature and unsigned deliveries not allowed
        ValidationError: Body is not a JSON event
    """
    if signature:
        if not settings.stripe_webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET is not set. Cannot verify webhook signature.")
            raise WebhookSignatureError("Webhook signature cannot be verified")
        try:
            stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise WebhookSignatureError("Invalid webhook signature")
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise ValidationError("Invalid webhook payload", code="INVALID_PAYLOAD")
    elif is_production() or not settings.allow_unsigned_webhooks:
        logger.error("Webhook delivery without Stripe-Signature header rejected")
        raise MissingSignatureError("Missing webhook signature")
    else:
        logger.warning("Accepting unsigned webhook delivery (ALLOW_UNSIGNED_WEBHOOKS is set)")

    try:
        event = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Invalid webhook payload", code="INVALID_PAYLOAD")
    if not isinstance(event, dict) or "type" not in event:
        raise ValidationError("Invalid webhook payload", code="INVALID_PAYLOAD")
    return event


class BillingService:
    """
    Service class for handling billing-related business logic.
    Checkout creation for a signed-in user and webhook side effects.
    """

    def __init__(self, db: AsyncSession, subscriptions: Optional[SubscriptionService] = None):
        """
        Initialize the billing service.

        Args:
            db: AsyncSession instance for database operations
            subscriptions: Ledger service, upgraded when a payment completes
        """
        self.db = db
        self.repo = SubscriptionRepository(db)
        self.events = WebhookEventRepository(db)
        self.subscriptions = subscriptions or SubscriptionService(db)

    async def create_checkout(self, user: User, plan_type: str, billing_cycle: str = "monthly") -> dict:
        """
        Start a Stripe Checkout session for a plan.

        Returns:
            {"authorization_url", "reference", "session_id", "plan_type", "billing_cycle", "amount"}

        Raises:
            ConflictError: SUBSCRIPTION_EXISTS when the user already has an active subscription
            ValidationError: Unknown plan or cycle
            InfrastructureError: Stripe not configured or the session could not be created
        """
        if plan_type not in PLAN_PRICES or billing_cycle not in ("monthly", "yearly"):
            raise ValidationError("Invalid plan type or billing cycle")

        if await self.repo.get_active_for_user(user.id):
            raise ConflictError("You already have an active subscription", code="SUBSCRIPTION_EXISTS")

        if not settings.stripe_secret_key:
            logger.error("STRIPE_SECRET_KEY is not set. Cannot create checkout session.")
            raise InfrastructureError("Payments are not configured", code="PAYMENT_NOT_CONFIGURED")
        price_id = settings.stripe_price_for(plan_type, billing_cycle)
        if not price_id:
            logger.error(f"No Stripe price configured for {plan_type}/{billing_cycle}")
            raise InfrastructureError("Payments are not configured", code="PAYMENT_NOT_CONFIGURED")

        amount = PLAN_PRICES[plan_type][billing_cycle]
        reference = f"sub_{user.id}_{int(time.time() * 1000)}"
        frontend_url = settings.frontend_url or "http://localhost:3000"

        try:
            checkout_session = stripe.checkout.Session.create(
                api_key=settings.stripe_secret_key,
                mode="subscription",
                line_items=[{"price": price_id, "quantity": 1}],
                client_reference_id=reference,
                customer_email=user.email,
                success_url=f"{frontend_url}/dashboard/billing?success=true&reference={reference}",
                cancel_url=f"{frontend_url}/dashboard/billing?cancelled=true",
                metadata={
                    "user_id": user.id,
                    "plan_type": plan_type,
                    "billing_cycle": billing_cycle,
                    "reference": reference,
                },
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create checkout session: {e}", exc_info=True)
            raise InfrastructureError("Failed to initialize payment", code="PAYMENT_INIT_FAILED")

        subscription = await self.repo.create_subscription({
            "user_id": user.id,
            "plan_type": plan_type,
            "billing_cycle": billing_cycle,
            "status": "pending",
            "amount": amount,
            "currency": settings.billing_currency,
            "payment_reference": reference,
            "checkout_session_id": checkout_session.id,
        })
        await self.repo.create_payment({
            "user_id": user.id,
            "subscription_id": subscription.id,
            "amount": amount,
            "currency": settings.billing_currency,
            "status": "pending",
            "transaction_reference": reference,
            "payment_details": {"checkout_session_id": checkout_session.id},
        })
        await self.db.commit()
        logger.info(f"Checkout {reference} started for user {user.id}: {plan_type}/{billing_cycle}")

        return {
            "authorization_url": checkout_session.url,
            "reference": reference,
            "session_id": checkout_session.id,
            "plan_type": plan_type,
            "billing_cycle": billing_cycle,
            "amount": amount,
        }

    async def process_event(self, event: dict) -> dict:
        """
        Apply a verified webhook event.

        Side effects run once per (event type, reference); repeats and unknown
        event types are acknowledged without changes. Errors are logged and
        reported in the result, never raised.

        Returns:
            {"handled": bool, "duplicate": bool, "event_type": str}
        """
        event_type = event.get("type", "")
        result = {"handled": False, "duplicate": False, "event_type": event_type}

        handlers = {
            "checkout.session.completed": self._activate,
            "checkout.session.async_payment_succeeded": self._activate,
            "checkout.session.async_payment_failed": self._checkout_failed,
            "invoice.payment_failed": self._invoice_failed,
            "customer.subscription.deleted": self._subscription_deleted,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring Stripe webhook event: {event_type}")
            return result

        reference = None
        try:
            obj = (event.get("data") or {}).get("object") or {}
            reference = self._reference_for(event_type, obj) or event.get("id")
            if not reference:
                logger.warning(f"Webhook {event_type} has no reference; ignoring")
                return result

            # Idempotency check between the activation variants shares one key
            record_type = "checkout.activated" if event_type in ACTIVATION_EVENTS else event_type
            if not await self.events.record_once(record_type, reference, event.get("id")):
                await self.db.rollback()
                logger.info(f"Duplicate webhook {event_type} for {reference}; skipping")
                result["duplicate"] = True
                return result
            await handler(obj, reference)
            await self.db.commit()
            result["handled"] = True
        except Exception as e:
            # Verified deliveries are always acknowledged
            await self.db.rollback()
            logger.error(f"Error processing webhook {event_type} ({reference}): {e}", exc_info=True)
        return result

    @staticmethod
    def _reference_for(event_type: str, obj: dict) -> Optional[str]:
        if event_type.startswith("checkout.session."):
            return obj.get("client_reference_id") or (obj.get("metadata") or {}).get("reference")
        if event_type == "invoice.payment_failed":
            return obj.get("id")
        if event_type == "customer.subscription.deleted":
            return obj.get("id")
        return None

    async def _activate(self, obj: dict, reference: str) -> None:
        subscription = await self.repo.get_by_reference(reference)
        if not subscription:
            logger.warning(f"No subscription for checkout reference {reference}")
            return

        now = utcnow()
        period_end = add_period(now, subscription.billing_cycle)
        subscription.status = "active"
        subscription.stripe_customer_id = obj.get("customer")
        subscription.stripe_subscription_id = obj.get("subscription")
        subscription.current_period_start = now
        subscription.current_period_end = period_end
        await self.db.flush()

        await self.repo.cancel_other_active(subscription.user_id, subscription.id)

        payment = await self.repo.get_payment_by_reference(reference)
        if payment:
            payment.status = "completed"
            payment.paid_at = now
            payment.provider_transaction_id = obj.get("payment_intent") or obj.get("id")
            payment.payment_details = {**(payment.payment_details or {}), "checkout_session_id": obj.get("id")}

        await self.subscriptions.upgrade_subscription(
            subscription.user_id,
            subscription.plan_type,
            {
                "stripe_customer_id": obj.get("customer"),
                "stripe_subscription_id": obj.get("subscription"),
                "current_period_start": now,
                "current_period_end": period_end,
            },
        )
        logger.info(f"Subscription {subscription.id} activated for user {subscription.user_id}")

    async def _checkout_failed(self, obj: dict, reference: str) -> None:
        subscription = await self.repo.get_by_reference(reference)
        if not subscription:
            logger.warning(f"No subscription for checkout reference {reference}")
            return
        subscription.status = "failed"
        payment = await self.repo.get_payment_by_reference(reference)
        if payment:
            payment.status = "failed"
        await self.db.flush()
        logger.info(f"Checkout {reference} failed for user {subscription.user_id}")

    async def _invoice_failed(self, obj: dict, reference: str) -> None:
        subscription = await self._by_stripe_subscription(obj.get("subscription"))
        if not subscription:
            return
        subscription.status = "past_due"
        await self.db.flush()
        logger.info(f"Subscription {subscription.id} is past due")

    async def _subscription_deleted(self, obj: dict, reference: str) -> None:
        subscription = await self._by_stripe_subscription(obj.get("id"))
        if not subscription:
            return
        subscription.status = "cancelled"
        await self.db.flush()
        await self.subscriptions.cancel_subscription(subscription.user_id)
        logger.info(f"Subscription {subscription.id} cancelled")

    async def _by_stripe_subscription(self, stripe_subscription_id: Optional[str]) -> Optional[Subscription]:
        if not stripe_subscription_id:
            logger.warning("Webhook object has no Stripe subscription id")
            return None
        subscription = await self.repo.get_by_stripe_subscription_id(stripe_subscription_id)
        if not subscription:
            logger.warning(f"No subscription for Stripe subscription {stripe_subscription_id}")
        return subscription

    async def subscription_overview(self, user_id: str) -> dict:
        """Current subscription, ledger view and recent payments."""
        active = await self.repo.get_active_for_user(user_id)
        payments = await self.repo.list_payments_for_user(user_id)
        return {
            "subscription": _subscription_to_dict(active) if active else None,
            "usage": await self.subscriptions.usage_summary(user_id),
            "payment_history": [
                {
                    "id": p.id,
                    "amount": p.amount,
                    "currency": p.currency,
                    "status": p.status,
                    "reference": p.transaction_reference,
                    "paid_at": p.paid_at.isoformat() if p.paid_at else None,
                    "created_at": p.created_at.isoformat() if p.created_at else None,
                }
                for p in payments
            ],
            "plans": PLAN_PRICES,
        }


def _subscription_to_dict(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "plan_type": subscription.plan_type,
        "billing_cycle": subscription.billing_cycle,
        "status": subscription.status,
        "amount": subscription.amount,
        "currency": subscription.currency,
        "reference": subscription.payment_reference,
        "current_period_start": subscription.current_period_start.isoformat() if subscription.current_period_start else None,
        "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
    }
