"""支付路由：下单、渠道回调、订单查询"""
from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from typing import Annotated, Any, cast

import httpx
from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..database import get_db
from ..schemas.payment import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderListResponse,
    OrderSummary,
    PlanItem,
    PricingResponse,
)
from ..services.callback_log import record_callback_event
from ..services.order_service import order_service, order_summary
from ..services.payment_errors import PaymentError
from ..services.payment_providers import (
    CallbackEvent,
    PaymentProvider,
    configured_channels,
    get_payment_provider,
)
from ..services.pricing import format_minor_units, parse_payment_method, parse_plan, pricing_table
from ..services.reconciliation_service import reconciliation_service
from ..utils.deps import get_client_ip, get_current_user_id, get_provider_transport, get_request_id
from ..utils.wechatpay_v2 import wechatpay_parse_xml

router = APIRouter(prefix="/payment", tags=["支付管理"])

logger = logging.getLogger(__name__)

ProviderTransport = Annotated[httpx.AsyncBaseTransport | None, Depends(get_provider_transport)]


@router.get("/pricing", response_model=PricingResponse, summary="价格表")
async def get_pricing():
    return PricingResponse(
        plans=[PlanItem.model_validate(p) for p in pricing_table()],
        channels=configured_channels(get_settings()),
    )


@router.post(
    "/{method}/create-order",
    response_model=CreateOrderResponse,
    response_model_exclude_none=True,
    summary="创建支付订单",
)
async def create_order(
    method: str,
    data: CreateOrderRequest,
    request: Request,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
    transport: ProviderTransport,
):
    payment_method = parse_payment_method(method)
    plan = parse_plan(data.plan)
    provider = get_payment_provider(payment_method, get_settings(), transport=transport)

    order, checkout = await order_service.create_order(
        db,
        user_id=user_id,
        plan=plan,
        provider=provider,
        client_ip=get_client_ip(request),
    )
    return CreateOrderResponse(
        order_id=order.id,
        payment_url=checkout.payment_url,
        code_url=checkout.code_url,
        amount=format_minor_units(order.amount),
        currency=order.currency,
    )


@router.get("/status/{order_id}", response_model=OrderSummary, summary="查询订单状态")
async def get_order_status(
    order_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    order = await order_service.get_order_for_user(db, order_id, user_id)
    return OrderSummary.model_validate(order_summary(order))


@router.get("/orders", response_model=OrderListResponse, summary="我的订单")
async def list_orders(
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
):
    orders, total = await order_service.list_orders(
        db, user_id, page=page, page_size=page_size, status=status_filter
    )
    return OrderListResponse(
        items=[OrderSummary.model_validate(order_summary(o)) for o in orders],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/orders/{order_id}/cancel", response_model=OrderSummary, summary="取消订单")
async def cancel_order(
    order_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    order = await order_service.cancel_order(db, order_id, user_id)
    return OrderSummary.model_validate(order_summary(order))


# ============ 渠道回调 ============


async def _handle_notify(
    request: Request,
    db: AsyncSession,
    provider: PaymentProvider,
    payload: dict[str, Any],
) -> Response:
    """验签、对账并转换为渠道应答；任何结果都不向渠道抛出异常"""
    name = provider.method.value
    request_id = get_request_id(request)
    source_ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent")
    headers = {k: v for k, v in request.headers.items()}

    if not provider.is_configured():
        logger.error("%s notify: 渠道未配置", name)
        await record_callback_event(
            db,
            provider=name,
            order_id=None,
            transaction_id=None,
            amount=None,
            verified=False,
            error_message="channel_not_configured",
            raw_payload=payload,
            source_ip=source_ip,
            user_agent=user_agent,
        )
        return provider.ack(False)

    event: CallbackEvent | None = None
    try:
        event = await provider.verify_callback(payload, headers)
    except PaymentError as e:
        logger.warning("%s notify: 回调校验失败 code=%s %s", name, e.code, e)
        order_id = e.context.get("order_id")
        await record_callback_event(
            db,
            provider=name,
            order_id=str(order_id) if order_id else None,
            transaction_id=None,
            amount=None,
            verified=False,
            error_message=e.code,
            raw_payload=payload,
            source_ip=source_ip,
            user_agent=user_agent,
        )
        return provider.ack(False)

    ok = True
    error_code: str | None = None
    try:
        result = await reconciliation_service.apply(db, event, request_id=request_id)
        logger.info(
            "%s notify: 处理完成 order_id=%s transaction_id=%s outcome=%s",
            name,
            event.order_id,
            event.transaction_id,
            result.outcome.value,
        )
    except PaymentError as e:
        ok = False
        error_code = e.code
        logger.warning(
            "%s notify: 对账失败 order_id=%s transaction_id=%s code=%s",
            name,
            event.order_id,
            event.transaction_id,
            e.code,
        )
    except Exception:
        # 数据库异常等也只回失败应答，让渠道重试
        ok = False
        error_code = "internal_error"
        logger.exception(
            "%s notify: 对账异常 order_id=%s transaction_id=%s",
            name,
            event.order_id,
            event.transaction_id,
        )
        await db.rollback()

    await record_callback_event(
        db,
        provider=name,
        order_id=event.order_id,
        transaction_id=event.transaction_id,
        amount=event.amount,
        verified=True,
        error_message=error_code,
        raw_payload=payload,
        source_ip=source_ip,
        user_agent=user_agent,
    )
    return provider.ack(ok)


@router.post("/alipay/notify", summary="支付宝异步通知")
async def alipay_notify(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    transport: ProviderTransport,
):
    provider = get_payment_provider("alipay", get_settings(), transport=transport)
    form = await request.form()
    payload: dict[str, Any] = {str(k): str(v) for k, v in form.items()}
    return await _handle_notify(request, db, provider, payload)


@router.post("/wechat/notify", summary="微信支付异步通知")
async def wechat_notify(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    transport: ProviderTransport,
):
    provider = get_payment_provider("wechat", get_settings(), transport=transport)
    body = await request.body()
    try:
        payload: dict[str, Any] = dict(wechatpay_parse_xml(body))
    except (ValueError, ET.ParseError):
        logger.warning("wechat notify: 报文不是合法XML len=%s", len(body))
        await record_callback_event(
            db,
            provider="wechat",
            order_id=None,
            transaction_id=None,
            amount=None,
            verified=False,
            error_message="malformed_callback",
            raw_payload=body.decode("utf-8", errors="replace")[:4000],
            source_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return provider.ack(False)
    return await _handle_notify(request, db, provider, payload)


@router.post("/paypal/notify", summary="PayPal Webhook")
async def paypal_notify(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    transport: ProviderTransport,
):
    provider = get_payment_provider("paypal", get_settings(), transport=transport)
    body = await request.body()
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict):
        logger.warning("paypal notify: 报文不是JSON对象 len=%s", len(body))
        await record_callback_event(
            db,
            provider="paypal",
            order_id=None,
            transaction_id=None,
            amount=None,
            verified=False,
            error_message="malformed_callback",
            raw_payload=body.decode("utf-8", errors="replace")[:4000],
            source_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return provider.ack(False)
    return await _handle_notify(request, db, provider, cast(dict[str, Any], parsed))
