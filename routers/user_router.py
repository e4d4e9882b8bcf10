"""
User Router - profile, usage statistics, account deletion and the usage ledger
"""

import logging
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, user_to_dict
from config import settings, is_production
from crud.analysis import AnalysisRepository
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from database import get_db
from database_models import User
from models.contract_models import ProfileUpdateRequest, SubscriptionUpgradeRequest
from services.subscription_service import SubscriptionService
from utils.errors import ApiError
from utils.rate_limit import RateLimit
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

user_router = APIRouter(prefix="/api/user", tags=["user"])


@user_router.get("/profile", dependencies=[Depends(RateLimit("general"))])
async def get_profile(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Profile with usage statistics."""
    usage = await SubscriptionService(db).usage_summary(current_user.id)
    analyses_by_status = await AnalysisRepository(db).count_by_status(current_user.id)
    return {
        "user": user_to_dict(current_user),
        "subscription": usage,
        "statistics": {
            "analyses_by_status": analyses_by_status,
            "total_analyses": sum(analyses_by_status.values()),
            "total_paid": await SubscriptionRepository(db).total_paid(current_user.id),
        },
    }


@user_router.patch("/profile", dependencies=[Depends(RateLimit("general"))])
async def update_profile(
    body: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    updates = body.model_dump(exclude_unset=True)
    user = await UserRepository(db).update_user(current_user, updates)
    log_endpoint_event("/api/user/profile", user.id, "updated", {"fields": sorted(updates)})
    return {"user": user_to_dict(user)}


@user_router.delete("/profile", dependencies=[Depends(RateLimit("general"))])
async def delete_account(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Soft-delete the account and cancel its subscriptions.
    Data is kept; the session cookie is cleared.
    """
    await UserRepository(db).soft_delete_user(current_user)
    cancelled = await SubscriptionRepository(db).cancel_all_active(current_user.id)
    await SubscriptionService(db).cancel_subscription(current_user.id)
    await db.commit()
    log_endpoint_event("/api/user/profile", current_user.id, "deleted", {"cancelled_subscriptions": cancelled})

    response = JSONResponse(content={"ok": True, "message": "Account deleted successfully"})
    response.set_cookie(
        key=settings.session_cookie_name,
        value="",
        httponly=True,
        secure=is_production(),
        samesite="Lax",
        max_age=0,
    )
    return response


@user_router.get("/subscription", dependencies=[Depends(RateLimit("general"))])
async def get_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return {"subscription": await SubscriptionService(db).usage_summary(current_user.id)}


@user_router.patch("/subscription", dependencies=[Depends(RateLimit("general"))])
async def upgrade_subscription(
    body: SubscriptionUpgradeRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Move the ledger to a paid tier.

    Requires a subscription activated by a verified payment; the ledger takes
    its tier, gateway ids and period from that subscription. Naming a tier
    other than the paid one is rejected.
    """
    active = await SubscriptionRepository(db).get_active_for_user(current_user.id)
    if not active:
        raise ApiError("An active paid subscription is required", status_code=402, code="PAYMENT_REQUIRED")
    if body.subscription_type and body.subscription_type != active.plan_type:
        raise ApiError(
            f"Your paid plan is {active.plan_type}",
            status_code=402,
            code="PAYMENT_REQUIRED",
            details={"paid_plan": active.plan_type, "requested": body.subscription_type},
        )

    tier = active.plan_type
    service = SubscriptionService(db)
    await service.upgrade_subscription(current_user.id, tier, {
        "stripe_customer_id": active.stripe_customer_id,
        "stripe_subscription_id": active.stripe_subscription_id,
        "current_period_start": active.current_period_start,
        "current_period_end": active.current_period_end,
    })
    await db.commit()
    log_endpoint_event("/api/user/subscription", current_user.id, "upgraded", {"tier": tier})
    return {"subscription": await service.usage_summary(current_user.id)}
