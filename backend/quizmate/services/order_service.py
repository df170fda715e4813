"""订单服务：下单、查询、列表、取消"""
from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..models.payment import OrderStatus, PaymentMethod, PaymentOrder, PlanType, can_transition
from .payment_errors import (
    InvalidOrderState,
    NotFound,
    OrderPersistenceFailed,
    PaymentChannelUnavailable,
    PaymentError,
)
from .payment_providers import CheckoutRequest, CheckoutResult, PaymentProvider
from .pricing import format_minor_units, get_plan_price, quote

logger = logging.getLogger(__name__)

_ORDER_ID_ALPHABET = string.ascii_letters + string.digits
ORDER_ID_RANDOM_LENGTH = 16


def generate_order_id(method: PaymentMethod) -> str:
    """生成订单号：渠道前缀 + 16 位随机字符"""
    suffix = "".join(secrets.choice(_ORDER_ID_ALPHABET) for _ in range(ORDER_ID_RANDOM_LENGTH))
    return f"{method.value}_{suffix}"


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite 读回的时间不带时区，统一按 UTC 处理
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def order_summary(order: PaymentOrder) -> dict[str, object]:
    """对外暴露的订单字段"""
    created_at = as_utc(order.created_at)
    paid_at = as_utc(order.paid_at)
    return {
        "orderId": order.id,
        "status": order.status,
        "amount": format_minor_units(order.amount),
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "planType": order.plan_type,
        "createdAt": created_at.isoformat() if created_at else None,
        "paidAt": paid_at.isoformat() if paid_at else None,
        "transactionId": order.transaction_id,
    }


class OrderService:
    """订单服务"""

    @staticmethod
    async def cancel_expired_pending(
        db: AsyncSession, *, user_id: str, plan: PlanType, now: datetime | None = None
    ) -> int:
        """把同一用户同一计划下已过期的待支付订单置为已取消"""
        now = now or datetime.now(timezone.utc)
        res = await db.execute(
            update(PaymentOrder)
            .where(
                PaymentOrder.user_id == user_id,
                PaymentOrder.plan_type == plan.value,
                PaymentOrder.status == OrderStatus.PENDING.value,
                PaymentOrder.expires_at.is_not(None),
                PaymentOrder.expires_at < now,
            )
            .values(status=OrderStatus.CANCELLED.value)
        )
        return int(getattr(res, "rowcount", 0) or 0)

    @staticmethod
    async def create_order(
        db: AsyncSession,
        *,
        user_id: str,
        plan: PlanType,
        provider: PaymentProvider,
        client_ip: str | None = None,
    ) -> tuple[PaymentOrder, CheckoutResult]:
        """先落库待支付订单，再向渠道下单；渠道侧不会出现没有本地记录的订单"""
        method = provider.method
        if not provider.is_configured(plan):
            raise PaymentChannelUnavailable(provider=method.value)

        amount, currency = quote(plan, method)
        price = get_plan_price(plan)
        order_id = generate_order_id(method)
        now = datetime.now(timezone.utc)

        order = PaymentOrder(
            id=order_id,
            user_id=user_id,
            plan_type=plan.value,
            payment_method=method.value,
            amount=amount,
            currency=currency,
            status=OrderStatus.PENDING.value,
            meta={},
            created_at=now,
            expires_at=now + timedelta(minutes=int(get_settings().order_expire_minutes)),
        )
        try:
            cancelled = await OrderService.cancel_expired_pending(db, user_id=user_id, plan=plan, now=now)
            db.add(order)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception(
                "订单写入失败 order_id=%s provider=%s user_id=%s", order_id, method.value, user_id
            )
            raise OrderPersistenceFailed(order_id=order_id, provider=method.value) from e

        if cancelled:
            logger.info("已取消过期待支付订单 user_id=%s plan=%s count=%s", user_id, plan.value, cancelled)

        try:
            checkout = await provider.create_checkout(
                CheckoutRequest(
                    order_id=order_id,
                    user_id=user_id,
                    plan=plan,
                    amount=amount,
                    currency=currency,
                    title=price.title,
                    description=price.description,
                    client_ip=client_ip,
                )
            )
        except PaymentError as e:
            # 渠道下单失败，本地订单作废，调用方重试会生成新订单
            logger.warning(
                "渠道下单失败 order_id=%s provider=%s user_id=%s code=%s", order_id, method.value, user_id, e.code
            )
            await OrderService._close_failed_checkout(db, order, e.code)
            raise

        try:
            order.meta = dict(checkout.metadata)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception(
                "订单渠道信息写入失败 order_id=%s provider=%s user_id=%s", order_id, method.value, user_id
            )
            raise OrderPersistenceFailed(order_id=order_id, provider=method.value) from e

        logger.info(
            "订单已创建 order_id=%s provider=%s user_id=%s amount=%s currency=%s",
            order_id,
            method.value,
            user_id,
            amount,
            currency,
        )
        return order, checkout

    @staticmethod
    async def _close_failed_checkout(db: AsyncSession, order: PaymentOrder, error_code: str) -> None:
        order_id = order.id
        try:
            res = await db.execute(
                update(PaymentOrder)
                .where(PaymentOrder.id == order_id, PaymentOrder.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.CANCELLED.value, meta={"checkout_error": error_code})
            )
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            # 作废失败时订单保持待支付，过期后由下次下单清理
            logger.exception("作废下单失败订单出错 order_id=%s", order_id)
            return
        if getattr(res, "rowcount", 0) == 1:
            await db.refresh(order)

    @staticmethod
    async def get_order_for_user(db: AsyncSession, order_id: str, user_id: str) -> PaymentOrder:
        """只返回属于该用户的订单，否则统一按不存在处理"""
        result = await db.execute(
            select(PaymentOrder).where(PaymentOrder.id == order_id, PaymentOrder.user_id == user_id)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound(order_id=order_id)
        return order

    @staticmethod
    async def list_orders(
        db: AsyncSession,
        user_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
        status: str | None = None,
    ) -> tuple[Sequence[PaymentOrder], int]:
        query = select(PaymentOrder).where(PaymentOrder.user_id == user_id)
        if status:
            query = query.where(PaymentOrder.status == status)

        count_query = select(func.count()).select_from(query.subquery())
        total = int(await db.scalar(count_query) or 0)

        query = query.order_by(PaymentOrder.created_at.desc(), PaymentOrder.id.desc())
        query = query.offset((page - 1) * page_size).limit(page_size)
        result = await db.execute(query)
        return result.scalars().all(), total

    @staticmethod
    async def cancel_order(db: AsyncSession, order_id: str, user_id: str) -> PaymentOrder:
        order = await OrderService.get_order_for_user(db, order_id, user_id)
        if not can_transition(order.status, OrderStatus.CANCELLED.value):
            raise InvalidOrderState("只能取消待支付订单", order_id=order_id, status=order.status)

        res = await db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.id == order_id, PaymentOrder.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.CANCELLED.value)
        )
        if getattr(res, "rowcount", 0) != 1:
            # 并发下已被回调改成已支付
            await db.rollback()
            raise InvalidOrderState("只能取消待支付订单", order_id=order_id)
        await db.commit()
        await db.refresh(order)
        logger.info("订单已取消 order_id=%s user_id=%s", order_id, user_id)
        return order


order_service = OrderService()
