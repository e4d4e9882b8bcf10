"""
Authentication routes and dependencies
"""

import logging
from typing import Optional
from fastapi import APIRouter, Header, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from database_models import User
from crud.user import UserRepository
from auth_utils import decode_jwt
from models.contract_models import AuthCallbackRequest, ProfileUpdateRequest
from services.subscription_service import SubscriptionService
from utils.errors import AuthenticationError
from utils.rate_limit import RateLimit
from utils.shared_utils import iso, log_endpoint_event
from config import settings, is_production

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


def _extract_token(auth_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # Cookie first (browser clients), then Bearer header (API consumers)
    if auth_token:
        return auth_token
    if authorization and authorization.startswith("Bearer "):
        return authorization.replace("Bearer ", "", 1).strip() or None
    return None


def _set_session_cookie(response: JSONResponse, token: str, max_age: int) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=is_production(),
        samesite="Lax",
        max_age=max_age,
    )


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "company": user.company,
        "phone": user.phone,
        "preferences": user.preferences or {},
        "created_at": iso(user.created_at),
        "updated_at": iso(user.updated_at),
    }


# Dependency for protected routes
async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Dependency function to get the current authenticated user.

    Authentication priority:
    1. Session cookie (set by /api/auth/callback)
    2. Authorization header (Bearer token) for API consumers
    3. Raise 401 if neither is found

    The profile row is created the first time a valid subject is seen.
    """
    token = _extract_token(request.cookies.get(settings.session_cookie_name), authorization)
    if not token:
        raise AuthenticationError("Missing authentication token")

    payload = decode_jwt(token)
    if not payload:
        raise AuthenticationError("Invalid or expired token", code="INVALID_TOKEN")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token payload", code="INVALID_TOKEN")

    user = await UserRepository(db).get_or_create_user(str(user_id), payload.get("email"))
    if user.deleted_at is not None:
        raise AuthenticationError("User account has been deleted", code="ACCOUNT_DELETED")
    return user


@auth_router.post("/callback", dependencies=[Depends(RateLimit("auth"))])
async def auth_callback(body: AuthCallbackRequest, db: AsyncSession = Depends(get_db)):
    """Exchange the provider's access token for an httpOnly session cookie."""
    payload = decode_jwt(body.access_token)
    if not payload or not payload.get("sub"):
        log_endpoint_event("/api/auth/callback", None, "error", {"reason": "invalid_token"})
        raise AuthenticationError("Invalid or expired token", code="INVALID_TOKEN")

    user_id = str(payload["sub"])
    user = await UserRepository(db).get_or_create_user(user_id, payload.get("email"))
    if user.deleted_at is not None:
        raise AuthenticationError("User account has been deleted", code="ACCOUNT_DELETED")
    await SubscriptionService(db).get_or_create(user_id)

    response = JSONResponse(content={"ok": True, "user": user_to_dict(user)})
    _set_session_cookie(response, body.access_token, settings.session_max_age)
    log_endpoint_event("/api/auth/callback", user_id, "success")
    return response


@auth_router.post("/signout")
async def signout():
    """Clear the session cookie"""
    response = JSONResponse(content={"ok": True, "message": "Signed out successfully"})
    _set_session_cookie(response, "", 0)
    return response


@auth_router.get("/profile")
async def get_profile(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    usage = await SubscriptionService(db).usage_summary(current_user.id)
    return {"user": user_to_dict(current_user), "subscription": usage}


@auth_router.patch("/profile")
async def update_profile(
    body: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    updates = body.model_dump(exclude_unset=True)
    user = await UserRepository(db).update_user(current_user, updates)
    log_endpoint_event("/api/auth/profile", user.id, "success", {"fields": sorted(updates)})
    return {"user": user_to_dict(user)}
