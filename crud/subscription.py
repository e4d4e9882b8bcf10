"""
Repositories for the usage ledger, purchase attempts, payments and webhook receipts
"""

from datetime import datetime
from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, update, func

from config.settings import PLAN_TRIAL
from database_models import (
    PaymentHistory,
    Subscription,
    UserSubscription,
    WebhookEvent,
    utcnow,
)


class LedgerRepository:
    """
    Repository class for the per-user usage ledger (user_subscriptions).
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        result = await self.db.execute(
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: str) -> UserSubscription:
        """
        Return the ledger row for a user, creating a trial row if missing.

        A concurrent insert that loses the unique race re-reads the winner's row.
        """
        ledger = await self.get_by_user_id(user_id)
        if ledger:
            return ledger

        ledger = UserSubscription(user_id=user_id)
        try:
            async with self.db.begin_nested():
                self.db.add(ledger)
        except IntegrityError:
            return await self.get_by_user_id(user_id)
        return ledger

    async def try_consume_trial(self, user_id: str) -> bool:
        """
        Spend one trial action if any remain.

        The check and the increment are one UPDATE statement, so two requests
        racing on the last trial action cannot both succeed.

        Returns:
            True if a trial action was consumed, False if none remain
            (or the user is not on the trial tier)
        """
        result = await self.db.execute(
            update(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.subscription_type == PLAN_TRIAL,
                UserSubscription.trial_analyses_used < UserSubscription.trial_analyses_limit,
            )
            .values(
                trial_analyses_used=UserSubscription.trial_analyses_used + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_ledger(self, ledger: UserSubscription, updates: dict) -> UserSubscription:
        for key, value in updates.items():
            if hasattr(ledger, key):
                setattr(ledger, key, value)
        await self.db.flush()
        return ledger


class SubscriptionRepository:
    """
    Repository class for purchase attempts (subscriptions) and their payments.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active_for_user(self, user_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == "active")
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.payment_reference == reference)
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_subscription_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.stripe_subscription_id == stripe_subscription_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_subscription(self, data: dict) -> Subscription:
        subscription = Subscription(**data)
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def cancel_other_active(self, user_id: str, keep_id: str) -> int:
        """Cancel every active subscription of a user except ``keep_id``."""
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == "active",
                Subscription.id != keep_id,
            )
            .values(status="cancelled", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def cancel_all_active(self, user_id: str) -> int:
        result = await self.db.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id, Subscription.status == "active")
            .values(status="cancelled", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def create_payment(self, data: dict) -> PaymentHistory:
        payment = PaymentHistory(**data)
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def get_payment_by_reference(self, reference: str) -> Optional[PaymentHistory]:
        result = await self.db.execute(
            select(PaymentHistory).where(PaymentHistory.transaction_reference == reference)
        )
        return result.scalar_one_or_none()

    async def list_payments_for_user(self, user_id: str, limit: int = 20) -> List[PaymentHistory]:
        result = await self.db.execute(
            select(PaymentHistory)
            .where(PaymentHistory.user_id == user_id)
            .order_by(PaymentHistory.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def total_paid(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(PaymentHistory.amount), 0)).where(
                PaymentHistory.user_id == user_id,
                PaymentHistory.status == "completed",
            )
        )
        return int(result.scalar_one())


class WebhookEventRepository:
    """
    Receipt log for webhook deliveries, one row per (event type, reference).
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_once(self, event_type: str, reference: str, provider_event_id: Optional[str] = None) -> bool:
        """
        Record a delivery.

        Returns:
            True the first time a (type, reference) pair is seen, False on a repeat
        """
        try:
            async with self.db.begin_nested():
                self.db.add(
                    WebhookEvent(
                        event_type=event_type,
                        reference=reference,
                        provider_event_id=provider_event_id,
                    )
                )
        except IntegrityError:
            return False
        return True


def add_period(start: datetime, billing_cycle: str) -> datetime:
    """End of a billing period: one calendar month or one year after ``start``."""
    if billing_cycle == "yearly":
        try:
            return start.replace(year=start.year + 1)
        except ValueError:
            # Feb 29 in a non-leap year
            return start.replace(year=start.year + 1, day=28)
    month = start.month + 1
    year = start.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    day = start.day
    while True:
        try:
            return start.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1
