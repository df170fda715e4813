"""用户订阅视图"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from ..database import Base
import enum


class ProfilePlan(str, enum.Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, enum.Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"


class Profile(Base):
    """用户资料表（仅订阅相关字段，由对账服务写入）"""
    __tablename__: str = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # 认证服务的用户ID
    plan: Mapped[str] = mapped_column(String(20), default=ProfilePlan.FREE.value)
    subscription_status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.INACTIVE.value)
    subscription_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
