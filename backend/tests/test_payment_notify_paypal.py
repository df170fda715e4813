import json

import httpx
import pytest
from sqlalchemy import func, select

from quizmate.main import app
from quizmate.models.payment import PaymentOrder, PaymentTransaction
from quizmate.models.profile import Profile
from quizmate.utils.deps import get_provider_transport

NOTIFY_URL = "/api/payment/paypal/notify"

HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://paypal.test/cert.pem",
    "PAYPAL-TRANSMISSION-ID": "tid-1",
    "PAYPAL-TRANSMISSION-SIG": "c2lnbmF0dXJlLXZhbHVl",
    "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
    "Content-Type": "application/json",
}


def _paypal(verification_status: str = "SUCCESS") -> list[dict[str, object]]:
    """模拟 PayPal，返回收到的验签请求"""
    calls: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        assert request.url.path == "/v1/notifications/verify-webhook-signature"
        calls.append(json.loads(request.content))
        return httpx.Response(200, json={"verification_status": verification_status})

    transport = httpx.MockTransport(handler)
    app.dependency_overrides[get_provider_transport] = lambda: transport
    return calls


def _sale_completed(order_id: str = "paypal_ORDER000000001", total: str = "4.99") -> dict[str, object]:
    return {
        "id": "WH-1",
        "event_type": "PAYMENT.SALE.COMPLETED",
        "resource": {
            "id": "SALE-1",
            "custom": order_id,
            "billing_agreement_id": "I-SUB1",
            "amount": {"total": total, "currency": "USD"},
            "state": "completed",
        },
    }


@pytest.mark.asyncio
async def test_paypal_sale_completed(client, test_session, payment_settings, seed_order):
    _ = await seed_order("paypal_ORDER000000001", method="paypal", amount=499, currency="USD")
    calls = _paypal()

    res = await client.post(NOTIFY_URL, content=json.dumps(_sale_completed()), headers=HEADERS)
    assert res.status_code == 200
    assert res.text == "success"
    assert calls[0]["webhook_id"] == "WH-TEST"
    assert calls[0]["webhook_event"]["id"] == "WH-1"

    order = await test_session.get(PaymentOrder, "paypal_ORDER000000001", populate_existing=True)
    assert order.status == "paid"
    assert order.transaction_id == "SALE-1"
    profile = await test_session.get(Profile, "user-1", populate_existing=True)
    assert profile.subscription_status == "active"


@pytest.mark.asyncio
async def test_paypal_verification_failure(client, test_session, payment_settings, seed_order):
    _ = await seed_order("paypal_ORDER000000001", method="paypal", amount=499, currency="USD")
    _ = _paypal("FAILURE")

    res = await client.post(NOTIFY_URL, content=json.dumps(_sale_completed()), headers=HEADERS)
    assert res.status_code == 400
    assert res.text == "fail"
    order = await test_session.get(PaymentOrder, "paypal_ORDER000000001", populate_existing=True)
    assert order.status == "pending"


@pytest.mark.asyncio
async def test_paypal_currency_mismatch(client, test_session, payment_settings, seed_order, alerts):
    _ = await seed_order("paypal_ORDER000000001", method="paypal", amount=499, currency="USD")
    _ = _paypal()
    event = _sale_completed()
    event["resource"]["amount"] = {"total": "4.99", "currency": "EUR"}

    res = await client.post(NOTIFY_URL, content=json.dumps(event), headers=HEADERS)
    assert res.status_code == 400
    assert [a["event"] for a in alerts] == ["payment_amount_mismatch"]


@pytest.mark.asyncio
async def test_paypal_subscription_cancelled(client, test_session, payment_settings, seed_order):
    _ = await seed_order("paypal_ORDER000000001", method="paypal", amount=499, currency="USD")
    _ = _paypal()
    event = {
        "id": "WH-2",
        "event_type": "BILLING.SUBSCRIPTION.CANCELLED",
        "resource": {"id": "I-SUB1", "custom_id": "paypal_ORDER000000001", "status": "CANCELLED"},
    }

    res = await client.post(NOTIFY_URL, content=json.dumps(event), headers=HEADERS)
    assert res.text == "success"
    order = await test_session.get(PaymentOrder, "paypal_ORDER000000001", populate_existing=True)
    assert order.status == "cancelled"


@pytest.mark.asyncio
async def test_paypal_unrelated_event_is_acknowledged(client, test_session, payment_settings):
    _ = _paypal()
    event = {"id": "WH-3", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {"id": "I-SUB1"}}
    res = await client.post(NOTIFY_URL, content=json.dumps(event), headers=HEADERS)
    assert res.text == "success"


@pytest.mark.asyncio
async def test_paypal_upstream_error_gets_retry(client, test_session, payment_settings, seed_order):
    _ = await seed_order("paypal_ORDER000000001", method="paypal", amount=499, currency="USD")

    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})

    transport = httpx.MockTransport(handler)
    app.dependency_overrides[get_provider_transport] = lambda: transport

    res = await client.post(NOTIFY_URL, content=json.dumps(_sale_completed()), headers=HEADERS)
    assert res.status_code == 400
    count = await test_session.scalar(select(func.count()).select_from(PaymentTransaction))
    assert count == 0


@pytest.mark.asyncio
async def test_paypal_invalid_json(client, payment_settings):
    res = await client.post(NOTIFY_URL, content=b"[1, 2", headers=HEADERS)
    assert res.status_code == 400
    assert res.text == "fail"


@pytest.mark.asyncio
async def test_paypal_renewal_sale_extends_subscription(client, test_session, payment_settings, seed_order):
    _ = await seed_order("paypal_ORDER000000001", method="paypal", amount=499, currency="USD")
    _ = _paypal()

    res = await client.post(NOTIFY_URL, content=json.dumps(_sale_completed()), headers=HEADERS)
    assert res.text == "success"
    profile = await test_session.get(Profile, "user-1", populate_existing=True)
    first_end = profile.subscription_end_date

    renewal = _sale_completed()
    renewal["id"] = "WH-RENEW"
    renewal["resource"]["id"] = "SALE-2"
    for _ in range(2):
        res = await client.post(NOTIFY_URL, content=json.dumps(renewal), headers=HEADERS)
        assert res.text == "success"

    profile = await test_session.get(Profile, "user-1", populate_existing=True)
    assert (profile.subscription_end_date - first_end).days == 30

    txns = (await test_session.execute(select(PaymentTransaction).order_by(PaymentTransaction.id))).scalars().all()
    assert [t.transaction_id for t in txns] == ["SALE-1", "SALE-2"]
    assert txns[1].meta["renewal"] is True

    order = await test_session.get(PaymentOrder, "paypal_ORDER000000001", populate_existing=True)
    assert order.status == "paid"
    assert order.transaction_id == "SALE-1"
