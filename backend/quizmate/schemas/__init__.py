"""Pydantic模式"""
from .payment import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderListResponse,
    OrderSummary,
    PlanItem,
    PricingResponse,
)

__all__ = [
    "CreateOrderRequest",
    "CreateOrderResponse",
    "OrderListResponse",
    "OrderSummary",
    "PlanItem",
    "PricingResponse",
]
