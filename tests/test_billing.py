"""
Tests for Stripe checkout and webhook processing
"""
import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe
from sqlalchemy import select

from config.settings import settings
from crud.subscription import LedgerRepository, SubscriptionRepository
from database_models import PaymentHistory, Subscription, UserSubscription, WebhookEvent
from tests.conftest import auth_headers

WEBHOOK_SECRET = "whsec_test_secret"


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)


@pytest.fixture
async def pending_checkout(TestAsyncSessionLocal):
    async with TestAsyncSessionLocal() as session:
        repo = SubscriptionRepository(session)
        subscription = await repo.create_subscription({
            "user_id": "buyer",
            "plan_type": "professional",
            "billing_cycle": "monthly",
            "status": "pending",
            "amount": 9900,
            "payment_reference": "sub_buyer_1",
            "checkout_session_id": "cs_test_1",
        })
        await repo.create_payment({
            "user_id": "buyer",
            "subscription_id": subscription.id,
            "amount": 9900,
            "status": "pending",
            "transaction_reference": "sub_buyer_1",
        })
        session.add(UserSubscription(user_id="buyer", trial_analyses_used=3))
        await session.commit()
        return subscription.id


async def _post_webhook(client, payload: bytes, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return await client.post("/api/payments/webhook", content=payload, headers=headers)


@pytest.mark.asyncio
async def test_forged_signature_is_rejected(client, pending_checkout, TestAsyncSessionLocal):
    payload = _event("checkout.session.completed", {"id": "cs_test_1", "client_reference_id": "sub_buyer_1"})

    response = await _post_webhook(client, payload, _sign(payload, secret="whsec_forged"))

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"
    async with TestAsyncSessionLocal() as session:
        ledger = await LedgerRepository(session).get_by_user_id("buyer")
        assert ledger.subscription_type == "trial"


@pytest.mark.asyncio
async def test_missing_signature_rejected_in_production(client, monkeypatch):
    monkeypatch.setattr(settings, "env", "production")
    monkeypatch.setattr(settings, "allow_unsigned_webhooks", True)

    response = await _post_webhook(client, _event("invoice.paid", {"id": "in_1"}))

    assert response.status_code == 400
    assert response.json()["code"] == "MISSING_SIGNATURE"


@pytest.mark.asyncio
async def test_missing_signature_rejected_by_default(client):
    response = await _post_webhook(client, _event("invoice.paid", {"id": "in_1"}))

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unsigned_delivery_allowed_outside_production_when_enabled(client, monkeypatch):
    monkeypatch.setattr(settings, "allow_unsigned_webhooks", True)

    response = await _post_webhook(client, _event("invoice.paid", {"id": "in_1"}))

    assert response.status_code == 200
    assert response.json()["handled"] is False


@pytest.mark.asyncio
async def test_checkout_completed_activates_exactly_once(client, pending_checkout, TestAsyncSessionLocal):
    obj = {
        "id": "cs_test_1",
        "client_reference_id": "sub_buyer_1",
        "customer": "cus_1",
        "subscription": "sub_stripe_1",
        "payment_intent": "pi_1",
    }
    payload = _event("checkout.session.completed", obj)

    first = await _post_webhook(client, payload, _sign(payload))
    assert first.status_code == 200
    assert first.json()["handled"] is True
    assert first.json()["duplicate"] is False

    second = await _post_webhook(client, payload, _sign(payload))
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    # The async variant of the same checkout is the same activation
    async_payload = _event("checkout.session.async_payment_succeeded", obj, event_id="evt_2")
    third = await _post_webhook(client, async_payload, _sign(async_payload))
    assert third.json()["duplicate"] is True

    async with TestAsyncSessionLocal() as session:
        subscription = await session.get(Subscription, pending_checkout)
        assert subscription.status == "active"
        assert subscription.stripe_subscription_id == "sub_stripe_1"
        assert subscription.current_period_end > subscription.current_period_start

        payment = (await session.execute(
            select(PaymentHistory).where(PaymentHistory.transaction_reference == "sub_buyer_1")
        )).scalar_one()
        assert payment.status == "completed"
        assert payment.provider_transaction_id == "pi_1"

        ledger = await LedgerRepository(session).get_by_user_id("buyer")
        assert ledger.subscription_type == "professional"
        assert ledger.stripe_customer_id == "cus_1"

        receipts = (await session.execute(select(WebhookEvent))).scalars().all()
        assert len(receipts) == 1


@pytest.mark.asyncio
async def test_activation_cancels_previous_active_subscription(client, pending_checkout, TestAsyncSessionLocal):
    async with TestAsyncSessionLocal() as session:
        old = await SubscriptionRepository(session).create_subscription({
            "user_id": "buyer",
            "plan_type": "basic",
            "status": "active",
            "payment_reference": "sub_buyer_0",
        })
        await session.commit()
        old_id = old.id

    payload = _event("checkout.session.completed", {"id": "cs_test_1", "client_reference_id": "sub_buyer_1"})
    await _post_webhook(client, payload, _sign(payload))

    async with TestAsyncSessionLocal() as session:
        assert (await session.get(Subscription, old_id)).status == "cancelled"
        active = await SubscriptionRepository(session).get_active_for_user("buyer")
        assert active.id == pending_checkout


@pytest.mark.asyncio
async def test_invoice_failure_marks_past_due(client, TestAsyncSessionLocal):
    async with TestAsyncSessionLocal() as session:
        subscription = await SubscriptionRepository(session).create_subscription({
            "user_id": "payer",
            "plan_type": "basic",
            "status": "active",
            "payment_reference": "sub_payer_1",
            "stripe_subscription_id": "sub_stripe_9",
        })
        await session.commit()
        subscription_id = subscription.id

    payload = _event("invoice.payment_failed", {"id": "in_9", "subscription": "sub_stripe_9"})
    response = await _post_webhook(client, payload, _sign(payload))

    assert response.json()["handled"] is True
    async with TestAsyncSessionLocal() as session:
        assert (await session.get(Subscription, subscription_id)).status == "past_due"


@pytest.mark.asyncio
async def test_subscription_deleted_cancels_subscription_and_ledger(client, TestAsyncSessionLocal):
    async with TestAsyncSessionLocal() as session:
        subscription = await SubscriptionRepository(session).create_subscription({
            "user_id": "leaver",
            "plan_type": "basic",
            "status": "active",
            "payment_reference": "sub_leaver_1",
            "stripe_subscription_id": "sub_stripe_7",
        })
        session.add(UserSubscription(user_id="leaver", subscription_type="basic"))
        await session.commit()
        subscription_id = subscription.id

    payload = _event("customer.subscription.deleted", {"id": "sub_stripe_7"})
    response = await _post_webhook(client, payload, _sign(payload))

    assert response.json()["handled"] is True
    async with TestAsyncSessionLocal() as session:
        assert (await session.get(Subscription, subscription_id)).status == "cancelled"
        ledger = await LedgerRepository(session).get_by_user_id("leaver")
        assert ledger.subscription_status == "cancelled"


@pytest.mark.asyncio
async def test_unknown_event_is_acknowledged_without_changes(client, TestAsyncSessionLocal):
    payload = _event("customer.created", {"id": "cus_5"})

    response = await _post_webhook(client, payload, _sign(payload))

    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "received": True,
        "event_type": "customer.created",
        "handled": False,
        "duplicate": False,
    }
    async with TestAsyncSessionLocal() as session:
        assert (await session.execute(select(WebhookEvent))).scalars().all() == []


@pytest.mark.asyncio
async def test_malformed_event_body_is_acknowledged(client, pending_checkout, TestAsyncSessionLocal):
    """
    Test verified events whose object has the wrong shape.

    This test verifies:
    - A non-dict metadata or data section still gets 200, unhandled
    - Nothing is recorded and the pending checkout is untouched
    """
    bad_metadata = _event("checkout.session.completed", {"id": "cs_test_1", "metadata": "oops"})
    bad_data = json.dumps({"id": "evt_2", "type": "invoice.payment_failed", "data": ["x"]}).encode()

    for payload in (bad_metadata, bad_data):
        response = await _post_webhook(client, payload, _sign(payload))

        assert response.status_code == 200
        assert response.json()["handled"] is False

    async with TestAsyncSessionLocal() as session:
        assert (await session.execute(select(WebhookEvent))).scalars().all() == []
        subscription = await session.get(Subscription, pending_checkout)
        assert subscription.status == "pending"


@pytest.mark.asyncio
async def test_checkout_creates_pending_subscription(client, monkeypatch, TestAsyncSessionLocal):
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(settings, "stripe_price_basic_monthly", "price_basic_m")
    created = {}

    def fake_create(**kwargs):
        created.update(kwargs)
        return SimpleNamespace(id="cs_test_new", url="https://checkout.stripe.test/cs_test_new")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    response = await client.post(
        "/api/payments/subscribe",
        json={"plan_type": "basic", "billing_cycle": "monthly"},
        headers=auth_headers("shopper", "shopper@example.com"),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["authorization_url"] == "https://checkout.stripe.test/cs_test_new"
    assert data["amount"] == 2900
    assert data["reference"].startswith("sub_shopper_")
    assert created["line_items"] == [{"price": "price_basic_m", "quantity": 1}]
    assert created["client_reference_id"] == data["reference"]

    async with TestAsyncSessionLocal() as session:
        subscription = await SubscriptionRepository(session).get_by_reference(data["reference"])
        assert subscription.status == "pending"
        assert subscription.checkout_session_id == "cs_test_new"
        payment = await SubscriptionRepository(session).get_payment_by_reference(data["reference"])
        assert payment.status == "pending"


@pytest.mark.asyncio
async def test_checkout_rejected_with_active_subscription(client, monkeypatch, TestAsyncSessionLocal):
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    async with TestAsyncSessionLocal() as session:
        await SubscriptionRepository(session).create_subscription({
            "user_id": "subscriber",
            "plan_type": "basic",
            "status": "active",
            "payment_reference": "sub_subscriber_1",
        })
        await session.commit()

    response = await client.post(
        "/api/payments/subscribe",
        json={"plan_type": "professional"},
        headers=auth_headers("subscriber"),
    )

    assert response.status_code == 409
    assert response.json()["code"] == "SUBSCRIPTION_EXISTS"


@pytest.mark.asyncio
async def test_checkout_without_stripe_configuration(client, monkeypatch):
    monkeypatch.setattr(settings, "stripe_secret_key", None)

    response = await client.post(
        "/api/payments/subscribe",
        json={"plan_type": "basic"},
        headers=auth_headers("shopper"),
    )

    assert response.status_code == 500
    assert response.json()["code"] == "PAYMENT_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_checkout_rejects_unknown_plan(client):
    response = await client.post(
        "/api/payments/subscribe",
        json={"plan_type": "platinum"},
        headers=auth_headers("shopper"),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
