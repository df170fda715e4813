import pytest

from quizmate.models.payment import PaymentOrder, can_transition


@pytest.mark.asyncio
async def test_status_for_owner(client, seed_order, auth_headers):
    _ = await seed_order("alipay_STATUS000000001", user_id="user-a")
    res = await client.get("/api/payment/status/alipay_STATUS000000001", headers=auth_headers("user-a"))
    assert res.status_code == 200
    data = res.json()
    assert data["orderId"] == "alipay_STATUS000000001"
    assert data["status"] == "pending"
    assert data["amount"] == "29.99"
    assert data["currency"] == "CNY"
    assert data["paymentMethod"] == "alipay"
    assert data["planType"] == "pro_monthly"
    assert data["paidAt"] is None
    assert data["transactionId"] is None
    assert data["createdAt"]


@pytest.mark.asyncio
async def test_status_hides_other_users_orders(client, seed_order, auth_headers):
    _ = await seed_order("alipay_STATUS000000001", user_id="user-a")
    other = await client.get("/api/payment/status/alipay_STATUS000000001", headers=auth_headers("user-b"))
    missing = await client.get("/api/payment/status/alipay_NOPE", headers=auth_headers("user-a"))
    assert other.status_code == 404
    assert missing.status_code == 404
    # 两种情况对外不可区分
    assert other.json() == missing.json() == {"success": False, "error": {"code": "not_found", "message": "订单不存在"}}


@pytest.mark.asyncio
async def test_status_requires_auth(client):
    res = await client.get("/api/payment/status/alipay_STATUS000000001")
    assert res.status_code == 401
    assert res.headers.get("www-authenticate") == "Bearer"


@pytest.mark.asyncio
async def test_list_orders_paginates_and_filters(client, test_session, seed_order, auth_headers):
    for i in range(3):
        _ = await seed_order(f"alipay_LIST00000000000{i}", user_id="user-l")
    _ = await seed_order("wechat_LIST000000000009", user_id="user-l", method="wechat", status="paid")
    _ = await seed_order("alipay_LISTOTHER000001", user_id="someone-else")

    res = await client.get("/api/payment/orders", params={"page": 1, "page_size": 2}, headers=auth_headers("user-l"))
    assert res.status_code == 200
    data = res.json()
    assert data["total"] == 4
    assert data["page"] == 1
    assert data["pageSize"] == 2
    assert len(data["items"]) == 2
    # 按创建时间倒序
    assert data["items"][0]["orderId"] == "wechat_LIST000000000009"

    paid = await client.get("/api/payment/orders", params={"status": "paid"}, headers=auth_headers("user-l"))
    assert [o["orderId"] for o in paid.json()["items"]] == ["wechat_LIST000000000009"]


@pytest.mark.asyncio
async def test_cancel_pending_order(client, test_session, seed_order, auth_headers):
    _ = await seed_order("alipay_CANCEL000000001", user_id="user-x")

    other = await client.post("/api/payment/orders/alipay_CANCEL000000001/cancel", headers=auth_headers("user-y"))
    assert other.status_code == 404

    res = await client.post("/api/payment/orders/alipay_CANCEL000000001/cancel", headers=auth_headers("user-x"))
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"

    order = await test_session.get(PaymentOrder, "alipay_CANCEL000000001", populate_existing=True)
    assert order.status == "cancelled"

    again = await client.post("/api/payment/orders/alipay_CANCEL000000001/cancel", headers=auth_headers("user-x"))
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "invalid_order_state"


@pytest.mark.asyncio
async def test_cancel_paid_order_is_rejected(client, seed_order, auth_headers):
    _ = await seed_order("alipay_CANCELPAID00001", user_id="user-x", status="paid")
    res = await client.post("/api/payment/orders/alipay_CANCELPAID00001/cancel", headers=auth_headers("user-x"))
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_pricing_is_public(client, payment_settings, monkeypatch):
    monkeypatch.setattr(payment_settings, "wechat_api_key", "")
    res = await client.get("/api/payment/pricing")
    assert res.status_code == 200
    data = res.json()
    assert [p["plan"] for p in data["plans"]] == ["pro_monthly", "pro_yearly"]
    assert data["plans"][0]["periodDays"] == 30
    assert data["channels"] == {"alipay": True, "wechat": False, "paypal": True}


@pytest.mark.asyncio
async def test_health_and_request_id(client):
    res = await client.get("/health", headers={"X-Request-Id": "req-123"})
    assert res.status_code == 200
    assert res.json() == {"status": "healthy"}
    assert res.headers["X-Request-Id"] == "req-123"

    generated = await client.get("/health", headers={"X-Request-Id": "bad id with spaces"})
    assert generated.headers["X-Request-Id"] != "bad id with spaces"


def test_order_transitions():
    assert can_transition("pending", "paid") is True
    assert can_transition("pending", "cancelled") is True
    assert can_transition("paid", "refunded") is True
    assert can_transition("paid", "pending") is False
    assert can_transition("cancelled", "paid") is False
    assert can_transition("refunded", "paid") is False
    assert can_transition("pending", "bogus") is False
