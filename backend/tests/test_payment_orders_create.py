import json
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, urlsplit

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from quizmate.main import app
from quizmate.models.payment import OrderStatus, PaymentOrder
from quizmate.utils.alipay import decode_passback, verify_rsa2
from quizmate.utils.deps import get_provider_transport
from quizmate.utils.wechatpay_v2 import wechatpay_build_xml, wechatpay_parse_xml, wechatpay_sign_md5

ORDER_ID_RE = re.compile(r"^(alipay|wechat|paypal)_[A-Za-z0-9]{16}$")


def _use_transport(handler) -> None:
    transport = httpx.MockTransport(handler)
    app.dependency_overrides[get_provider_transport] = lambda: transport


async def _orders(session: AsyncSession, user_id: str) -> list[PaymentOrder]:
    query = select(PaymentOrder).where(PaymentOrder.user_id == user_id).execution_options(populate_existing=True)
    res = await session.execute(query)
    return list(res.scalars().all())


@pytest.mark.asyncio
async def test_create_order_requires_auth(client):
    res = await client.post("/api/payment/alipay/create-order", json={"plan": "pro_monthly"})
    assert res.status_code == 401
    assert res.json() == {"success": False, "error": {"code": "unauthenticated", "message": "用户未登录"}}


@pytest.mark.asyncio
async def test_create_order_rejects_bad_token(client):
    res = await client.post(
        "/api/payment/alipay/create-order",
        json={"plan": "pro_monthly"},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_create_order_invalid_plan(client, payment_settings, auth_headers):
    for plan in ("free", "gold", ""):
        res = await client.post(
            "/api/payment/alipay/create-order", json={"plan": plan}, headers=auth_headers("user-1")
        )
        assert res.status_code == 400
        assert res.json()["error"]["code"] == "invalid_plan"


@pytest.mark.asyncio
async def test_create_order_unsupported_method(client, payment_settings, auth_headers):
    res = await client.post("/api/payment/phone/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("u"))
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "unsupported_payment_method"


@pytest.mark.asyncio
async def test_create_order_channel_not_configured(client, test_session, payment_settings, auth_headers, monkeypatch):
    monkeypatch.setattr(payment_settings, "alipay_app_id", "")
    res = await client.post(
        "/api/payment/alipay/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("user-nc")
    )
    assert res.status_code == 503
    assert res.json()["error"]["code"] == "payment_channel_unavailable"
    assert await _orders(test_session, "user-nc") == []


@pytest.mark.asyncio
async def test_create_alipay_order(client, test_session, payment_settings, alipay_keys, auth_headers):
    res = await client.post(
        "/api/payment/alipay/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("user-1")
    )
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    assert ORDER_ID_RE.match(data["orderId"])
    assert data["orderId"].startswith("alipay_")
    assert data["amount"] == "29.99"
    assert data["currency"] == "CNY"
    assert "codeUrl" not in data

    params = dict(parse_qsl(urlsplit(data["paymentUrl"]).query))
    assert verify_rsa2(params, alipay_keys["app_public"]) is True
    assert params["notify_url"] == "https://quizmate.test/api/payment/alipay/notify"
    biz = json.loads(params["biz_content"])
    assert biz["out_trade_no"] == data["orderId"]
    assert biz["total_amount"] == "29.99"
    assert decode_passback(biz["passback_params"]) == {"userId": "user-1", "plan": "pro_monthly"}

    orders = await _orders(test_session, "user-1")
    assert len(orders) == 1
    order = orders[0]
    assert order.id == data["orderId"]
    assert order.status == OrderStatus.PENDING.value
    assert order.amount == 2999
    assert order.plan_type == "pro_monthly"
    assert order.expires_at is not None


@pytest.mark.asyncio
async def test_repeated_creation_yields_new_order_ids(client, test_session, payment_settings, auth_headers):
    ids = set()
    for _ in range(3):
        res = await client.post(
            "/api/payment/alipay/create-order", json={"plan": "pro_yearly"}, headers=auth_headers("user-r")
        )
        assert res.status_code == 200
        ids.add(res.json()["orderId"])
    assert len(ids) == 3
    # 未过期的待支付订单保留
    assert {o.status for o in await _orders(test_session, "user-r")} == {"pending"}


@pytest.mark.asyncio
async def test_create_order_cancels_expired_pending(client, test_session, payment_settings, auth_headers):
    now = datetime.now(timezone.utc)
    test_session.add_all(
        [
            PaymentOrder(
                id="alipay_EXPIREDEXPIRED01",
                user_id="user-s",
                plan_type="pro_monthly",
                payment_method="alipay",
                amount=2999,
                currency="CNY",
                status="pending",
                created_at=now - timedelta(hours=5),
                expires_at=now - timedelta(hours=3),
            ),
            PaymentOrder(
                id="alipay_OTHERPLANOTHER01",
                user_id="user-s",
                plan_type="pro_yearly",
                payment_method="alipay",
                amount=29999,
                currency="CNY",
                status="pending",
                created_at=now - timedelta(hours=5),
                expires_at=now - timedelta(hours=3),
            ),
        ]
    )
    await test_session.commit()

    res = await client.post(
        "/api/payment/alipay/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("user-s")
    )
    assert res.status_code == 200

    test_session.expire_all()
    statuses = {o.id: o.status for o in await _orders(test_session, "user-s")}
    assert statuses["alipay_EXPIREDEXPIRED01"] == "cancelled"
    assert statuses["alipay_OTHERPLANOTHER01"] == "pending"
    assert statuses[res.json()["orderId"]] == "pending"


@pytest.mark.asyncio
async def test_create_wechat_order(client, test_session, payment_settings, auth_headers):
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(wechatpay_parse_xml(request.content))
        body = {
            "return_code": "SUCCESS",
            "result_code": "SUCCESS",
            "prepay_id": "wx-prepay",
            "code_url": "weixin://wxpay/bizpayurl?pr=xyz",
        }
        body["sign"] = wechatpay_sign_md5(body, payment_settings.wechat_api_key)
        return httpx.Response(200, content=wechatpay_build_xml(body).encode("utf-8"))

    _use_transport(handler)
    res = await client.post(
        "/api/payment/wechat/create-order", json={"plan": "pro_yearly"}, headers=auth_headers("user-w")
    )
    assert res.status_code == 200
    data = res.json()
    assert data["codeUrl"] == "weixin://wxpay/bizpayurl?pr=xyz"
    assert data["amount"] == "299.99"
    assert "paymentUrl" not in data
    assert seen["out_trade_no"] == data["orderId"]
    assert seen["total_fee"] == "29999"
    assert seen["trade_type"] == "NATIVE"
    assert json.loads(seen["attach"]) == {"userId": "user-w", "plan": "pro_yearly"}

    orders = await _orders(test_session, "user-w")
    assert [o.meta["prepay_id"] for o in orders] == ["wx-prepay"]


@pytest.mark.asyncio
async def test_wechat_provider_failure_cancels_order(client, test_session, payment_settings, auth_headers):
    def handler(_request: httpx.Request) -> httpx.Response:
        body = {"return_code": "FAIL", "return_msg": "签名错误"}
        return httpx.Response(200, content=wechatpay_build_xml(body).encode("utf-8"))

    _use_transport(handler)
    res = await client.post(
        "/api/payment/wechat/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("user-wf")
    )
    assert res.status_code == 502
    assert res.json()["error"]["code"] == "provider_request_failed"
    orders = await _orders(test_session, "user-wf")
    assert [(o.status, o.meta) for o in orders] == [("cancelled", {"checkout_error": "provider_request_failed"})]


@pytest.mark.asyncio
async def test_wechat_network_error_is_provider_failure(client, test_session, payment_settings, auth_headers):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    _use_transport(handler)
    res = await client.post(
        "/api/payment/wechat/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("user-wn")
    )
    assert res.status_code == 502
    assert [o.status for o in await _orders(test_session, "user-wn")] == ["cancelled"]


@pytest.mark.asyncio
async def test_create_paypal_order(client, test_session, payment_settings, auth_headers):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        assert request.url.path == "/v1/billing/subscriptions"
        body = json.loads(request.content)
        assert body["plan_id"] == "P-MONTHLY"
        return httpx.Response(
            201,
            json={
                "id": "I-SUB1",
                "links": [{"rel": "approve", "href": f"https://paypal.test/approve?ba={body['custom_id']}"}],
            },
        )

    _use_transport(handler)
    res = await client.post(
        "/api/payment/paypal/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("user-p")
    )
    assert res.status_code == 200
    data = res.json()
    assert data["orderId"].startswith("paypal_")
    assert data["paymentUrl"] == f"https://paypal.test/approve?ba={data['orderId']}"
    assert data["amount"] == "4.99"
    assert data["currency"] == "USD"

    orders = await _orders(test_session, "user-p")
    assert orders[0].meta["subscription_id"] == "I-SUB1"


@pytest.mark.asyncio
async def test_paypal_without_plan_id_is_unavailable(client, payment_settings, auth_headers, monkeypatch):
    monkeypatch.setattr(payment_settings, "paypal_plan_id_yearly", "")
    res = await client.post(
        "/api/payment/paypal/create-order", json={"plan": "pro_yearly"}, headers=auth_headers("user-p2")
    )
    assert res.status_code == 503


@pytest.mark.asyncio
async def test_commit_failure_returns_no_payment_payload(
    client, test_session: AsyncSession, payment_settings, auth_headers, monkeypatch
):
    async def failing_commit():
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(500)

    _use_transport(handler)
    monkeypatch.setattr(test_session, "commit", failing_commit)
    res = await client.post(
        "/api/payment/wechat/create-order", json={"plan": "pro_monthly"}, headers=auth_headers("user-f")
    )
    assert res.status_code == 500
    body = res.json()
    assert body == {"success": False, "error": {"code": "order_persistence_failed", "message": "订单创建失败"}}
    assert "paymentUrl" not in body
    # 本地订单写入失败时不会向渠道下单
    assert calls == []
