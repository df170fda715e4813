"""数据模型"""
from .profile import Profile, ProfilePlan, SubscriptionStatus
from .payment import (
    OrderStatus,
    PaymentCallbackEvent,
    PaymentMethod,
    PaymentOrder,
    PaymentTransaction,
    PlanType,
)

__all__ = [
    "Profile",
    "ProfilePlan",
    "SubscriptionStatus",
    "OrderStatus",
    "PaymentCallbackEvent",
    "PaymentMethod",
    "PaymentOrder",
    "PaymentTransaction",
    "PlanType",
]
