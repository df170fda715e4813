from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateOrderRequest(BaseModel):
    plan: str = Field(..., max_length=32)


class CreateOrderResponse(CamelModel):
    success: bool = True
    order_id: str
    payment_url: str | None = None
    code_url: str | None = None
    amount: str
    currency: str


class OrderSummary(CamelModel):
    order_id: str
    status: str
    amount: str
    currency: str
    payment_method: str
    plan_type: str
    created_at: str | None = None
    paid_at: str | None = None
    transaction_id: str | None = None


class OrderListResponse(CamelModel):
    items: list[OrderSummary]
    total: int
    page: int
    page_size: int


class PriceItem(BaseModel):
    currency: str
    amount: int
    display: str


class PlanItem(CamelModel):
    plan: str
    title: str
    description: str
    period_days: int
    prices: list[PriceItem]


class PricingResponse(BaseModel):
    plans: list[PlanItem]
    channels: dict[str, bool]
