"""
Subscription Service - usage ledger, trial gate, monthly caps and the trial view
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import (
    FAIL_CLOSED,
    FAIL_OPEN,
    PLAN_LIMITS,
    PLAN_TRIAL,
    UNLIMITED,
    settings,
)
from crud.analysis import AnalysisRepository
from crud.contract import ContractRepository
from crud.subscription import LedgerRepository, SubscriptionRepository
from database_models import UserSubscription, utcnow
from utils.errors import QuotaExceededError, ValidationError
from utils.shared_utils import iso

logger = logging.getLogger(__name__)

ACTION_CONTRACT = "contract"
ACTION_ANALYSIS = "analysis"

# Trial view caps
MAX_TRIAL_RISK_CLAUSES = 3
MAX_TRIAL_MISSING_CLAUSES = 3
MAX_TRIAL_RECOMMENDATIONS = 2


@dataclass
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    # None means unbounded (paid tier)
    remaining_trials: Optional[int] = None
    subscription_type: str = PLAN_TRIAL


@dataclass
class RestrictedView:
    risk_clauses: List[Any]
    missing_clauses: List[Any]
    recommendations: List[Any]
    hidden: Dict[str, int] = field(default_factory=dict)
    is_restricted: bool = False

    @property
    def hidden_total(self) -> int:
        return sum(self.hidden.values())


def start_of_month(now: Optional[datetime] = None) -> datetime:
    """First instant of the current UTC calendar month."""
    now = now or datetime.now(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def trial_limit_reason(limit: int) -> str:
    return f"You've used all {limit} free analyses. Please upgrade to continue."


def apply_trial_restrictions(result: Dict[str, Any], is_trial: bool) -> RestrictedView:
    """
    Truncate an analysis payload for trial users.

    Never mutates ``result``; slices are copies. Applying it to its own output
    gives the same lists back, with zero newly hidden items.

    Args:
        result: Mapping with ``risk_clauses``, ``missing_clauses`` and ``recommendations`` lists
        is_trial: Whether the viewer is on the trial tier

    Returns:
        RestrictedView with the visible lists and hidden counts per list
    """
    risk_clauses = list(result.get("risk_clauses") or [])
    missing_clauses = list(result.get("missing_clauses") or [])
    recommendations = list(result.get("recommendations") or [])

    if not is_trial:
        return RestrictedView(
            risk_clauses=risk_clauses,
            missing_clauses=missing_clauses,
            recommendations=recommendations,
            hidden={"risk_clauses": 0, "missing_clauses": 0, "recommendations": 0},
            is_restricted=False,
        )

    return RestrictedView(
        risk_clauses=risk_clauses[:MAX_TRIAL_RISK_CLAUSES],
        missing_clauses=missing_clauses[:MAX_TRIAL_MISSING_CLAUSES],
        recommendations=recommendations[:MAX_TRIAL_RECOMMENDATIONS],
        hidden={
            "risk_clauses": max(0, len(risk_clauses) - MAX_TRIAL_RISK_CLAUSES),
            "missing_clauses": max(0, len(missing_clauses) - MAX_TRIAL_MISSING_CLAUSES),
            "recommendations": max(0, len(recommendations) - MAX_TRIAL_RECOMMENDATIONS),
        },
        is_restricted=True,
    )


class SubscriptionService:
    """
    Service for the usage ledger.
    Handles the trial gate, monthly paid caps and plan changes.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the subscription service with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db
        self.ledger_repo = LedgerRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.contract_repo = ContractRepository(db)
        self.analysis_repo = AnalysisRepository(db)

    async def get_or_create(self, user_id: str) -> UserSubscription:
        return await self.ledger_repo.get_or_create(user_id)

    async def evaluate(self, user_id: str, action_kind: str) -> GateDecision:
        """
        Decide whether a billable action may proceed and, for trial users, spend it.

        The trial counter is consumed here; a denied call leaves it untouched.
        Store errors follow TRIAL_GATE_FAILURE_POLICY (closed by default).

        Args:
            user_id: Owner of the ledger row
            action_kind: "contract" or "analysis"

        Returns:
            GateDecision
        """
        if action_kind not in (ACTION_CONTRACT, ACTION_ANALYSIS):
            raise ValueError(f"Unknown action kind: {action_kind}")

        try:
            # Conditional increment first: a trial user with budget left is
            # admitted without any prior read in this transaction.
            if await self.ledger_repo.try_consume_trial(user_id):
                ledger = await self.ledger_repo.get_by_user_id(user_id)
                await self.db.commit()
                remaining = max(0, ledger.trial_analyses_limit - ledger.trial_analyses_used)
                logger.info(f"Trial {action_kind} consumed for user {user_id}; {remaining} remaining")
                return GateDecision(allowed=True, remaining_trials=remaining, subscription_type=PLAN_TRIAL)

            ledger = await self.ledger_repo.get_or_create(user_id)
            await self.db.commit()

            if ledger.subscription_type != PLAN_TRIAL:
                return GateDecision(allowed=True, subscription_type=ledger.subscription_type)

            # Fresh row (just created) still has budget; otherwise the trial is spent.
            if await self.ledger_repo.try_consume_trial(user_id):
                await self.db.commit()
                await self.db.refresh(ledger)
                remaining = max(0, ledger.trial_analyses_limit - ledger.trial_analyses_used)
                return GateDecision(allowed=True, remaining_trials=remaining, subscription_type=PLAN_TRIAL)

            await self.db.commit()
            logger.info(f"Trial exhausted for user {user_id} ({action_kind})")
            return GateDecision(
                allowed=False,
                reason=trial_limit_reason(ledger.trial_analyses_limit),
                remaining_trials=0,
                subscription_type=PLAN_TRIAL,
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Usage ledger unavailable for user {user_id}: {e}", exc_info=True)
            if settings.trial_gate_failure_policy == FAIL_OPEN:
                return GateDecision(allowed=True, reason="Usage ledger unavailable")
            return GateDecision(allowed=False, reason="Unable to verify your subscription. Please try again.")

    async def check_monthly_limit(self, user_id: str, action_kind: str, plan: str) -> GateDecision:
        """
        Compare this month's row count for a paid plan against its cap.

        Store errors follow PAID_CAP_FAILURE_POLICY (open by default).
        """
        limits = PLAN_LIMITS.get(plan)
        if limits is None:
            logger.warning(f"No monthly limits configured for plan {plan}; allowing")
            return GateDecision(allowed=True, subscription_type=plan)

        key = "contracts_per_month" if action_kind == ACTION_CONTRACT else "analyses_per_month"
        cap = limits[key]
        if cap == UNLIMITED:
            return GateDecision(allowed=True, subscription_type=plan)

        since = start_of_month()
        try:
            if action_kind == ACTION_CONTRACT:
                used = await self.contract_repo.count_since(user_id, since)
            else:
                used = await self.analysis_repo.count_since(user_id, since)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Monthly usage count failed for user {user_id}: {e}", exc_info=True)
            if settings.paid_cap_failure_policy == FAIL_CLOSED:
                return GateDecision(allowed=False, reason="Unable to verify your usage. Please try again.")
            return GateDecision(allowed=True, subscription_type=plan)

        if used >= cap:
            noun = "contracts" if action_kind == ACTION_CONTRACT else "analyses"
            return GateDecision(
                allowed=False,
                reason=f"You've reached your monthly limit of {cap} {noun} on the {plan} plan.",
                subscription_type=plan,
            )
        return GateDecision(allowed=True, subscription_type=plan)

    async def authorize(self, user_id: str, action_kind: str) -> GateDecision:
        """
        Run the trial gate and, for paid tiers, the monthly cap.

        Raises:
            QuotaExceededError: If either check denies the action
        """
        decision = await self.evaluate(user_id, action_kind)
        if decision.allowed and decision.subscription_type != PLAN_TRIAL:
            decision = await self.check_monthly_limit(user_id, action_kind, decision.subscription_type)
        if not decision.allowed:
            raise QuotaExceededError(
                decision.reason or "Subscription limit exceeded",
                details={"action": action_kind, "subscription_type": decision.subscription_type},
            )
        return decision

    async def validate_file_size(self, user_id: str, file_size: int) -> None:
        """Reject uploads larger than the user's plan allows."""
        ledger = await self.get_or_create(user_id)
        limits = PLAN_LIMITS.get(ledger.subscription_type, PLAN_LIMITS[PLAN_TRIAL])
        max_bytes = limits["file_size_mb"] * 1024 * 1024
        if file_size > max_bytes:
            raise ValidationError(
                f"File size exceeds the {limits['file_size_mb']}MB limit for your plan",
                code="FILE_TOO_LARGE",
                details={"max_size_mb": limits["file_size_mb"], "file_size": file_size},
            )

    async def remaining_trials(self, user_id: str) -> Optional[int]:
        ledger = await self.get_or_create(user_id)
        if ledger.subscription_type != PLAN_TRIAL:
            return None
        return max(0, ledger.trial_analyses_limit - ledger.trial_analyses_used)

    async def is_trial_user(self, user_id: str) -> bool:
        ledger = await self.get_or_create(user_id)
        return ledger.subscription_type == PLAN_TRIAL

    async def upgrade_subscription(self, user_id: str, tier: str, provider_data: Optional[dict] = None) -> UserSubscription:
        """
        Move a user to a paid tier.

        Args:
            user_id: Owner of the ledger row
            tier: Paid plan id
            provider_data: Optional customer/subscription ids and period dates from the gateway
        """
        provider_data = provider_data or {}
        ledger = await self.get_or_create(user_id)
        updates = {
            "subscription_type": tier,
            "subscription_status": "active",
        }
        for key in ("stripe_customer_id", "stripe_subscription_id", "current_period_start", "current_period_end"):
            if provider_data.get(key) is not None:
                updates[key] = provider_data[key]
        ledger = await self.ledger_repo.update_ledger(ledger, updates)
        logger.info(f"User {user_id} upgraded to {tier}")
        return ledger

    async def cancel_subscription(self, user_id: str) -> UserSubscription:
        """Mark the ledger cancelled. The tier is kept until the period ends."""
        ledger = await self.get_or_create(user_id)
        ledger = await self.ledger_repo.update_ledger(ledger, {"subscription_status": "cancelled"})
        logger.info(f"Subscription cancelled for user {user_id}")
        return ledger

    async def usage_summary(self, user_id: str) -> dict:
        """Ledger view with this month's usage, for profile and subscription endpoints."""
        ledger = await self.get_or_create(user_id)
        since = start_of_month()
        contracts_this_month = await self.contract_repo.count_since(user_id, since)
        analyses_this_month = await self.analysis_repo.count_since(user_id, since)
        limits = PLAN_LIMITS.get(ledger.subscription_type, PLAN_LIMITS[PLAN_TRIAL])
        is_trial = ledger.subscription_type == PLAN_TRIAL
        return {
            "subscription_type": ledger.subscription_type,
            "subscription_status": ledger.subscription_status,
            "is_trial": is_trial,
            "trial_analyses_used": ledger.trial_analyses_used,
            "trial_analyses_limit": ledger.trial_analyses_limit,
            "remaining_trials": max(0, ledger.trial_analyses_limit - ledger.trial_analyses_used) if is_trial else None,
            "current_period_start": iso(ledger.current_period_start),
            "current_period_end": iso(ledger.current_period_end),
            "limits": limits,
            "usage": {
                "contracts_this_month": contracts_this_month,
                "analyses_this_month": analyses_this_month,
            },
            "updated_at": iso(ledger.updated_at or utcnow()),
        }
