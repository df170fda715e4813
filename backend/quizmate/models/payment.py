"""支付订单模型"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, Integer, String, Text, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from ..database import Base
import enum


class PlanType(str, enum.Enum):
    """订阅计划"""
    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_YEARLY = "pro_yearly"


class PaymentMethod(str, enum.Enum):
    """支付方式"""
    ALIPAY = "alipay"  # 支付宝
    PAYPAL = "paypal"
    WECHAT = "wechat"  # 微信支付
    PHONE = "phone"  # 仅用于手机号登录，不是支付渠道


class OrderStatus(str, enum.Enum):
    """订单状态"""
    PENDING = "pending"  # 待支付
    PAID = "paid"  # 已支付
    CANCELLED = "cancelled"  # 已取消
    REFUNDED = "refunded"  # 已退款（预留）


# 合法的状态迁移，只能前进
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    try:
        return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]
    except ValueError:
        return False


class PaymentOrder(Base):
    """支付订单表"""
    __tablename__: str = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # 带渠道前缀的订单号
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    plan_type: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # 最小货币单位（分）
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, index=True)

    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)  # 第三方交易号
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentTransaction(Base):
    """支付流水（只追加）"""
    __tablename__: str = "transactions"
    __table_args__: tuple[UniqueConstraint] = (
        UniqueConstraint("order_id", "transaction_id", name="uq_transactions_order_transaction"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="completed")
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentCallbackEvent(Base):
    __tablename__: str = "payment_callback_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    provider: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[str | None] = mapped_column(String(200), nullable=True)

    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_payload_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
