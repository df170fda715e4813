"""订阅计划与价格表

金额一律使用最小货币单位（分）的整数，只在与渠道交互时格式化为元。
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from ..models.payment import PaymentMethod, PlanType
from .payment_errors import InvalidPlan, UnsupportedPaymentMethod


@dataclass(frozen=True)
class PlanPrice:
    plan: PlanType
    title: str
    description: str
    period_days: int
    prices: dict[str, int]

    def amount_for(self, currency: str) -> int:
        try:
            return int(self.prices[currency])
        except KeyError:
            raise InvalidPlan(plan=self.plan.value, currency=currency)


PLAN_CATALOG: dict[PlanType, PlanPrice] = {
    PlanType.PRO_MONTHLY: PlanPrice(
        plan=PlanType.PRO_MONTHLY,
        title="Pro 高级版（月付）",
        description="无限次AI解析，完整题库访问",
        period_days=30,
        prices={"CNY": 2999, "USD": 499},
    ),
    PlanType.PRO_YEARLY: PlanPrice(
        plan=PlanType.PRO_YEARLY,
        title="Pro 高级版（年付）",
        description="无限次AI解析，完整题库访问",
        period_days=365,
        prices={"CNY": 29999, "USD": 4999},
    ),
}

METHOD_CURRENCY: dict[PaymentMethod, str] = {
    PaymentMethod.ALIPAY: "CNY",
    PaymentMethod.WECHAT: "CNY",
    PaymentMethod.PAYPAL: "USD",
}

_CENT = Decimal("0.01")


def parse_plan(raw: object) -> PlanType:
    """解析可购买的计划，free 没有价格，同样视为无效"""
    value = str(raw or "").strip()
    try:
        plan = PlanType(value)
    except ValueError:
        raise InvalidPlan(plan=value)
    if plan not in PLAN_CATALOG:
        raise InvalidPlan(plan=value)
    return plan


def parse_payment_method(raw: object) -> PaymentMethod:
    value = str(raw or "").strip().lower()
    try:
        method = PaymentMethod(value)
    except ValueError:
        raise UnsupportedPaymentMethod(payment_method=value)
    if method not in METHOD_CURRENCY:
        raise UnsupportedPaymentMethod(payment_method=value)
    return method


def get_plan_price(plan: PlanType) -> PlanPrice:
    try:
        return PLAN_CATALOG[plan]
    except KeyError:
        raise InvalidPlan(plan=str(plan))


def quote(plan: PlanType, method: PaymentMethod) -> tuple[int, str]:
    """返回 (金额分, 币种)"""
    currency = METHOD_CURRENCY.get(method)
    if currency is None:
        raise UnsupportedPaymentMethod(payment_method=method.value)
    return get_plan_price(plan).amount_for(currency), currency


def format_minor_units(amount: int) -> str:
    """2999 -> "29.99" """
    return str((Decimal(int(amount)) / 100).quantize(_CENT))


def parse_major_units(raw: str) -> int:
    """"29.99" -> 2999，超过两位小数视为非法"""
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        raise ValueError(f"invalid amount: {raw!r}")
    if not value.is_finite() or value != value.quantize(_CENT):
        raise ValueError(f"invalid amount: {raw!r}")
    return int(value * 100)


def pricing_table() -> list[dict[str, object]]:
    return [
        {
            "plan": p.plan.value,
            "title": p.title,
            "description": p.description,
            "periodDays": p.period_days,
            "prices": [
                {"currency": cur, "amount": amt, "display": format_minor_units(amt)}
                for cur, amt in sorted(p.prices.items())
            ],
        }
        for p in PLAN_CATALOG.values()
    ]
