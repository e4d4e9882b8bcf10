"""
Tests for session tokens, the auth callback and account endpoints
"""
from datetime import timedelta

import pytest

from auth_utils import create_expired_jwt, create_jwt, decode_jwt
from config.settings import settings
from crud.subscription import LedgerRepository, SubscriptionRepository
from crud.user import UserRepository
from tests.conftest import auth_headers


def test_jwt_round_trip():
    """
    Test creating and verifying a session token.

    This test verifies:
    - The subject and email claims survive encoding
    - A token signed with another secret is rejected
    """
    token = create_jwt("user-42", email="ada@example.com", expires_in=timedelta(minutes=5))

    payload = decode_jwt(token)
    assert payload["sub"] == "user-42"
    assert payload["email"] == "ada@example.com"

    tampered = token[:-2] + ("AA" if token[-2:] != "AA" else "BB")
    assert decode_jwt(tampered) is None


def test_expired_jwt_is_rejected():
    assert decode_jwt(create_expired_jwt("user-42", expired_seconds_ago=10)) is None


@pytest.mark.asyncio
async def test_get_or_create_user_is_idempotent(test_db):
    """
    Test that the profile row is created on first sight and reused afterwards.

    This test verifies:
    - Email is stored lowercased
    - A second call returns the same row
    """
    repo = UserRepository(test_db)

    created = await repo.get_or_create_user("sub-1", "Ada@Example.com")
    await test_db.commit()
    again = await repo.get_or_create_user("sub-1", "ada@example.com")

    assert created.email == "ada@example.com"
    assert again.id == created.id


@pytest.mark.asyncio
async def test_callback_sets_session_cookie(client, TestAsyncSessionLocal):
    """
    Test exchanging a provider token for the session cookie.

    This test verifies:
    - The cookie is httpOnly and carries the token
    - The profile and trial ledger rows are created
    """
    token = create_jwt("cookie-user", email="cookie@example.com")

    response = await client.post("/api/auth/callback", json={"access_token": token})

    assert response.status_code == 200
    assert response.json()["user"]["email"] == "cookie@example.com"
    set_cookie = response.headers["set-cookie"]
    assert f"{settings.session_cookie_name}={token}" in set_cookie
    assert "httponly" in set_cookie.lower()

    async with TestAsyncSessionLocal() as session:
        ledger = await LedgerRepository(session).get_by_user_id("cookie-user")
        assert ledger.subscription_type == "trial"
        assert ledger.trial_analyses_used == 0

    # The cookie alone authenticates
    client.cookies.set(settings.session_cookie_name, token)
    profile = await client.get("/api/auth/profile")
    assert profile.status_code == 200
    assert profile.json()["user"]["id"] == "cookie-user"
    assert profile.json()["subscription"]["remaining_trials"] == settings.trial_analyses_limit


@pytest.mark.asyncio
async def test_callback_rejects_invalid_token(client):
    response = await client.post("/api/auth/callback", json={"access_token": create_expired_jwt("late")})

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_protected_route_requires_token(client):
    missing = await client.get("/api/auth/profile")
    assert missing.status_code == 401
    assert missing.json()["code"] == "AUTH_REQUIRED"

    expired = await client.get(
        "/api/auth/profile",
        headers={"Authorization": f"Bearer {create_expired_jwt('user-1')}"},
    )
    assert expired.status_code == 401
    assert expired.json()["code"] == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_signout_clears_cookie(client):
    response = await client.post("/api/auth/signout")

    assert response.status_code == 200
    assert "max-age=0" in response.headers["set-cookie"].lower()


@pytest.mark.asyncio
async def test_update_profile_merges_preferences(client):
    headers = auth_headers()
    await client.patch("/api/auth/profile", json={"preferences": {"theme": "dark"}}, headers=headers)

    response = await client.patch(
        "/api/user/profile",
        json={"full_name": "Ada Lovelace", "preferences": {"language": "en"}},
        headers=headers,
    )

    assert response.status_code == 200
    user = response.json()["user"]
    assert user["full_name"] == "Ada Lovelace"
    assert user["preferences"] == {"theme": "dark", "language": "en"}


@pytest.mark.asyncio
async def test_user_profile_includes_statistics(client):
    response = await client.get("/api/user/profile", headers=auth_headers())

    assert response.status_code == 200
    body = response.json()
    assert body["statistics"] == {"analyses_by_status": {}, "total_analyses": 0, "total_paid": 0}
    assert body["subscription"]["is_trial"] is True
    assert body["subscription"]["usage"] == {"contracts_this_month": 0, "analyses_this_month": 0}


@pytest.mark.asyncio
async def test_deleted_account_cannot_authenticate(client, TestAsyncSessionLocal):
    headers = auth_headers("leaving-user")
    async with TestAsyncSessionLocal() as session:
        await SubscriptionRepository(session).create_subscription({
            "user_id": "leaving-user",
            "plan_type": "basic",
            "status": "active",
            "payment_reference": "sub_leaving_1",
        })
        await session.commit()

    response = await client.delete("/api/user/profile", headers=headers)
    assert response.status_code == 200

    again = await client.get("/api/user/profile", headers=headers)
    assert again.status_code == 401
    assert again.json()["code"] == "ACCOUNT_DELETED"
    async with TestAsyncSessionLocal() as session:
        assert await SubscriptionRepository(session).get_active_for_user("leaving-user") is None


@pytest.mark.asyncio
async def test_subscription_upgrade_requires_payment(client):
    response = await client.patch(
        "/api/user/subscription",
        json={"subscription_type": "premium"},
        headers=auth_headers(),
    )

    assert response.status_code == 402
    assert response.json()["code"] == "PAYMENT_REQUIRED"


@pytest.mark.asyncio
async def test_subscription_upgrade_with_active_payment(client, TestAsyncSessionLocal):
    async with TestAsyncSessionLocal() as session:
        await SubscriptionRepository(session).create_subscription({
            "user_id": "user-1",
            "plan_type": "basic",
            "status": "active",
            "payment_reference": "sub_user1_1",
            "stripe_customer_id": "cus_9",
        })
        await session.commit()

    response = await client.patch(
        "/api/user/subscription",
        json={"subscription_type": "basic"},
        headers=auth_headers(),
    )

    assert response.status_code == 200
    assert response.json()["subscription"]["subscription_type"] == "basic"
    assert response.json()["subscription"]["remaining_trials"] is None
    current = await client.get("/api/user/subscription", headers=auth_headers())
    assert current.json()["subscription"]["is_trial"] is False


@pytest.mark.asyncio
async def test_health_reports_dependencies(client, fake_redis):
    response = await client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["checks"] == {"database": "ok", "redis": "ok"}

    fake_redis.fail = True
    degraded = await client.get("/api/health")
    assert degraded.status_code == 200
    assert degraded.json()["checks"]["redis"] == "error"


@pytest.mark.asyncio
async def test_security_headers_and_unknown_route_envelope(client):
    response = await client.get("/api/does-not-exist")

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["x-content-type-options"] == "nosniff"


@pytest.mark.asyncio
async def test_subscription_upgrade_cannot_exceed_paid_plan(client, TestAsyncSessionLocal):
    """
    Test that the ledger tier comes from the paid subscription.

    This test verifies:
    - Asking for a higher tier than the one paid for is rejected
    - The ledger stays on trial after the rejection
    - Omitting the tier applies the paid plan
    """
    async with TestAsyncSessionLocal() as session:
        await SubscriptionRepository(session).create_subscription({
            "user_id": "user-1",
            "plan_type": "basic",
            "status": "active",
            "payment_reference": "sub_user1_2",
        })
        await session.commit()

    response = await client.patch(
        "/api/user/subscription",
        json={"subscription_type": "premium"},
        headers=auth_headers(),
    )

    assert response.status_code == 402
    assert response.json()["code"] == "PAYMENT_REQUIRED"
    assert response.json()["details"] == {"paid_plan": "basic", "requested": "premium"}
    current = await client.get("/api/user/subscription", headers=auth_headers())
    assert current.json()["subscription"]["subscription_type"] == "trial"

    applied = await client.patch("/api/user/subscription", json={}, headers=auth_headers())

    assert applied.status_code == 200
    assert applied.json()["subscription"]["subscription_type"] == "basic"
    assert applied.json()["subscription"]["limits"]["analyses_per_month"] == 25
