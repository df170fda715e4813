"""回调对账

把验签通过的渠道通知落到订单、用户订阅和交易流水上。
订单状态更新、订阅延期、流水写入在同一个事务里完成；
重复通知依靠条件更新和 (order_id, transaction_id) 唯一约束去重。
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.payment import OrderStatus, PaymentMethod, PaymentOrder, PaymentTransaction, PlanType
from ..models.profile import Profile, ProfilePlan, SubscriptionStatus
from .critical_event_reporter import critical_event_reporter
from .order_service import as_utc
from .payment_errors import (
    AmountMismatch,
    InvalidPlan,
    OrderNotFound,
    ProfileUpdateFailed,
    TransactionAppendFailed,
)
from .payment_providers import CallbackEvent
from .pricing import get_plan_price

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    CANCELLED = "cancelled"
    RENEWED = "renewed"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    order_id: str | None = None

    @property
    def already_processed(self) -> bool:
        return self.outcome == ReconcileOutcome.ALREADY_PROCESSED


def extend_subscription(current_end: datetime | None, paid_at: datetime, period_days: int) -> datetime:
    """续费从当前到期时间和支付时间中较晚的一个开始累加"""
    base = paid_at
    current = as_utc(current_end)
    if current is not None and current > paid_at:
        base = current
    return base + timedelta(days=int(period_days))


class ReconciliationService:
    @staticmethod
    async def _current_status(db: AsyncSession, order_id: str) -> str | None:
        res = await db.execute(select(PaymentOrder.status).where(PaymentOrder.id == order_id))
        return res.scalar_one_or_none()

    @staticmethod
    async def _apply_profile(db: AsyncSession, *, user_id: str, paid_at: datetime, period_days: int) -> datetime:
        res = await db.execute(select(Profile).where(Profile.id == user_id))
        profile = res.scalar_one_or_none()
        if profile is None:
            profile = Profile(id=user_id)
            db.add(profile)
            current_end = None
        else:
            current_end = profile.subscription_end_date

        new_end = extend_subscription(current_end, paid_at, period_days)
        profile.plan = ProfilePlan.PRO.value
        profile.subscription_status = SubscriptionStatus.ACTIVE.value
        profile.subscription_end_date = new_end
        profile.updated_at = paid_at
        await db.flush()
        return new_end

    @staticmethod
    async def _append_transaction(db: AsyncSession, txn: PaymentTransaction) -> None:
        db.add(txn)
        await db.flush()

    @staticmethod
    def _alert(event: str, title: str, data: dict[str, object], request_id: str | None = None) -> None:
        order_id = data.get("order_id")
        critical_event_reporter.fire_and_forget(
            event,
            severity="critical",
            title=title,
            data=data,
            request_id=request_id,
            dedup_key=f"{event}|{order_id}",
        )

    @staticmethod
    def _check_amount(
        event: CallbackEvent, *, amount: int, currency: str, ctx: dict[str, object], request_id: str | None
    ) -> None:
        order_id = str(ctx["order_id"])
        currency_mismatch = bool(event.currency) and str(event.currency).upper() != currency.upper()
        if event.amount == amount and not currency_mismatch:
            return
        logger.error(
            "回调金额不一致 provider=%s order_id=%s transaction_id=%s expected=%s %s got=%s %s",
            event.provider,
            order_id,
            event.transaction_id,
            amount,
            currency,
            event.amount,
            event.currency,
        )
        ReconciliationService._alert(
            "payment_amount_mismatch",
            "支付回调金额与订单不一致",
            {**ctx, "expected": amount, "got": event.amount, "currency": event.currency},
            request_id,
        )
        raise AmountMismatch(order_id=order_id, expected=amount, got=event.amount)

    @staticmethod
    async def _grant(
        db: AsyncSession,
        event: CallbackEvent,
        *,
        paid_at: datetime,
        plan_type: str,
        method: str,
        amount: int,
        currency: str,
        ctx: dict[str, object],
        request_id: str | None,
        renewal: bool = False,
    ) -> datetime | None:
        """延长订阅并写交易流水后提交；流水重复时回滚并返回 None"""
        order_id = str(ctx["order_id"])
        user_id = str(ctx["user_id"])
        transaction_id = str(event.transaction_id or "")
        try:
            period_days = get_plan_price(PlanType(plan_type)).period_days
            new_end = await ReconciliationService._apply_profile(
                db, user_id=user_id, paid_at=paid_at, period_days=period_days
            )
        except (SQLAlchemyError, ValueError, InvalidPlan) as e:
            await db.rollback()
            logger.exception(
                "订阅更新失败 provider=%s order_id=%s transaction_id=%s user_id=%s",
                event.provider,
                order_id,
                transaction_id,
                user_id,
            )
            ReconciliationService._alert("payment_profile_update_failed", "支付成功但订阅更新失败", ctx, request_id)
            raise ProfileUpdateFailed(order_id=order_id, provider=event.provider) from e

        txn_meta: dict[str, object] = {"trade_status": event.trade_status, "plan_type": plan_type}
        if renewal:
            txn_meta["renewal"] = True
        txn = PaymentTransaction(
            user_id=user_id,
            order_id=order_id,
            payment_method=method,
            amount=amount,
            currency=currency,
            status="completed",
            transaction_id=transaction_id,
            meta=txn_meta,
        )
        try:
            await ReconciliationService._append_transaction(db, txn)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(
                "重复交易流水 provider=%s order_id=%s transaction_id=%s",
                event.provider,
                order_id,
                transaction_id,
            )
            return None
        except SQLAlchemyError as e:
            await db.rollback()
            logger.exception(
                "交易流水写入失败 provider=%s order_id=%s transaction_id=%s",
                event.provider,
                order_id,
                transaction_id,
            )
            ReconciliationService._alert(
                "payment_transaction_append_failed", "支付成功但交易流水写入失败", ctx, request_id
            )
            raise TransactionAppendFailed(order_id=order_id, provider=event.provider) from e
        return new_end

    @staticmethod
    async def apply(
        db: AsyncSession, event: CallbackEvent, *, request_id: str | None = None
    ) -> ReconcileResult:
        if event.status is None:
            logger.info(
                "回调无需处理 provider=%s order_id=%s trade_status=%s",
                event.provider,
                event.order_id,
                event.trade_status,
            )
            return ReconcileResult(ReconcileOutcome.IGNORED, event.order_id)

        order_id = str(event.order_id or "")
        res = await db.execute(select(PaymentOrder).where(PaymentOrder.id == order_id))
        order = res.scalar_one_or_none()
        if order is None:
            logger.warning(
                "回调订单不存在 provider=%s order_id=%s transaction_id=%s",
                event.provider,
                order_id,
                event.transaction_id,
            )
            raise OrderNotFound(order_id=order_id, provider=event.provider)

        # rollback 会让 ORM 对象过期，先取出需要的字段
        user_id = order.user_id
        status = order.status
        amount = int(order.amount)
        currency = order.currency
        plan_type = order.plan_type
        method = order.payment_method
        first_transaction_id = order.transaction_id
        meta = dict(order.meta or {})

        if event.status == OrderStatus.CANCELLED:
            return await ReconciliationService._apply_cancel(db, event, order_id=order_id, status=status)

        ctx: dict[str, object] = {
            "order_id": order_id,
            "provider": event.provider,
            "transaction_id": event.transaction_id,
            "user_id": user_id,
        }

        if status == OrderStatus.PAID.value:
            is_renewal = (
                method == PaymentMethod.PAYPAL.value
                and bool(event.transaction_id)
                and event.transaction_id != first_transaction_id
            )
            if is_renewal:
                return await ReconciliationService._apply_renewal(
                    db,
                    event,
                    plan_type=plan_type,
                    method=method,
                    amount=amount,
                    currency=currency,
                    ctx=ctx,
                    request_id=request_id,
                )
            logger.info(
                "订单已处理 provider=%s order_id=%s transaction_id=%s",
                event.provider,
                order_id,
                event.transaction_id,
            )
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, order_id)

        if status != OrderStatus.PENDING.value:
            logger.error(
                "非待支付订单收到付款 provider=%s order_id=%s status=%s transaction_id=%s",
                event.provider,
                order_id,
                status,
                event.transaction_id,
            )
            ReconciliationService._alert(
                "payment_paid_on_closed_order",
                "已关闭订单收到付款，需人工退款",
                {**ctx, "status": status, "amount": event.amount},
                request_id,
            )
            return ReconcileResult(ReconcileOutcome.IGNORED, order_id)

        ReconciliationService._check_amount(event, amount=amount, currency=currency, ctx=ctx, request_id=request_id)

        transaction_id = str(event.transaction_id or "")
        paid_at = datetime.now(timezone.utc)
        meta["callback"] = {"trade_status": event.trade_status, "passback": dict(event.passback)}

        order_update = await db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.id == order_id, PaymentOrder.status == OrderStatus.PENDING.value)
            .values(
                status=OrderStatus.PAID.value,
                paid_at=paid_at,
                transaction_id=transaction_id,
                meta=meta,
            )
        )
        if getattr(order_update, "rowcount", 0) != 1:
            # 并发投递已经抢先处理
            await db.rollback()
            current = await ReconciliationService._current_status(db, order_id)
            logger.info(
                "订单状态已变化 provider=%s order_id=%s status=%s transaction_id=%s",
                event.provider,
                order_id,
                current,
                transaction_id,
            )
            if current == OrderStatus.PAID.value:
                return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, order_id)
            return ReconcileResult(ReconcileOutcome.IGNORED, order_id)

        new_end = await ReconciliationService._grant(
            db,
            event,
            paid_at=paid_at,
            plan_type=plan_type,
            method=method,
            amount=amount,
            currency=currency,
            ctx=ctx,
            request_id=request_id,
        )
        if new_end is None:
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, order_id)

        logger.info(
            "订单已支付 provider=%s order_id=%s transaction_id=%s user_id=%s subscription_end=%s",
            event.provider,
            order_id,
            transaction_id,
            user_id,
            new_end.isoformat(),
        )
        return ReconcileResult(ReconcileOutcome.APPLIED, order_id)

    @staticmethod
    async def _apply_renewal(
        db: AsyncSession,
        event: CallbackEvent,
        *,
        plan_type: str,
        method: str,
        amount: int,
        currency: str,
        ctx: dict[str, object],
        request_id: str | None,
    ) -> ReconcileResult:
        """PayPal 订阅的后续扣款：订单保持已支付，每笔新的 sale 延长一个周期"""
        order_id = str(ctx["order_id"])
        transaction_id = str(event.transaction_id)
        res = await db.execute(
            select(PaymentTransaction.id).where(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.transaction_id == transaction_id,
            )
        )
        if res.scalar_one_or_none() is not None:
            logger.info(
                "续费已处理 provider=%s order_id=%s transaction_id=%s", event.provider, order_id, transaction_id
            )
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, order_id)

        ReconciliationService._check_amount(event, amount=amount, currency=currency, ctx=ctx, request_id=request_id)

        new_end = await ReconciliationService._grant(
            db,
            event,
            paid_at=datetime.now(timezone.utc),
            plan_type=plan_type,
            method=method,
            amount=amount,
            currency=currency,
            ctx=ctx,
            request_id=request_id,
            renewal=True,
        )
        if new_end is None:
            return ReconcileResult(ReconcileOutcome.ALREADY_PROCESSED, order_id)

        logger.info(
            "订阅续费 provider=%s order_id=%s transaction_id=%s user_id=%s subscription_end=%s",
            event.provider,
            order_id,
            transaction_id,
            ctx["user_id"],
            new_end.isoformat(),
        )
        return ReconcileResult(ReconcileOutcome.RENEWED, order_id)

    @staticmethod
    async def _apply_cancel(
        db: AsyncSession, event: CallbackEvent, *, order_id: str, status: str
    ) -> ReconcileResult:
        if status != OrderStatus.PENDING.value:
            logger.info(
                "取消通知忽略 provider=%s order_id=%s status=%s", event.provider, order_id, status
            )
            return ReconcileResult(ReconcileOutcome.IGNORED, order_id)

        res = await db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.id == order_id, PaymentOrder.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.CANCELLED.value)
        )
        if getattr(res, "rowcount", 0) != 1:
            await db.rollback()
            return ReconcileResult(ReconcileOutcome.IGNORED, order_id)
        await db.commit()
        logger.info("订单已由渠道取消 provider=%s order_id=%s", event.provider, order_id)
        return ReconcileResult(ReconcileOutcome.CANCELLED, order_id)


reconciliation_service = ReconciliationService()
