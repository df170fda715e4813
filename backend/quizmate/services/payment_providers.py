"""支付渠道适配

每个渠道负责两件事：构造下单所需的支付载荷，以及校验并解析渠道回调。
渠道对象按请求由配置构造，不持有跨请求状态。
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import Response

from ..config import Settings, get_settings
from ..models.payment import OrderStatus, PaymentMethod, PlanType
from ..utils import alipay
from ..utils.paypal import (
    PayPalCredentials,
    paypal_approve_link,
    paypal_create_subscription,
    paypal_get_access_token,
    paypal_verify_webhook_signature,
)
from ..utils.wechatpay_v2 import (
    wechatpay_ack_xml,
    wechatpay_nonce,
    wechatpay_unified_order,
    wechatpay_verify_md5,
)
from .payment_errors import (
    MalformedCallback,
    PaymentChannelUnavailable,
    ProviderRequestFailed,
    SignatureInvalid,
    UnsupportedPaymentMethod,
)
from .pricing import format_minor_units, parse_major_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutRequest:
    order_id: str
    user_id: str
    plan: PlanType
    amount: int
    currency: str
    title: str
    description: str
    client_ip: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    payment_url: str | None = None
    code_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackEvent:
    """验签通过后的渠道通知"""
    provider: str
    order_id: str | None
    trade_status: str
    status: OrderStatus | None  # None 表示不引起状态变化
    amount: int | None
    currency: str | None
    transaction_id: str | None
    passback: dict[str, str] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProvider:
    method: PaymentMethod

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.transport = transport

    def is_configured(self, plan: PlanType | None = None) -> bool:
        raise NotImplementedError

    async def create_checkout(self, req: CheckoutRequest) -> CheckoutResult:
        raise NotImplementedError

    async def verify_callback(self, payload: dict[str, Any], headers: dict[str, str]) -> CallbackEvent:
        raise NotImplementedError

    def ack(self, ok: bool) -> Response:
        if ok:
            return Response(content="success", media_type="text/plain")
        return Response(content="fail", status_code=400, media_type="text/plain")


def _require(value: object, field_name: str, provider: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise MalformedCallback(provider=provider, field=field_name)
    return s


class AlipayProvider(PaymentProvider):
    method = PaymentMethod.ALIPAY

    def is_configured(self, plan: PlanType | None = None) -> bool:
        s = self.settings
        return bool(s.alipay_app_id.strip() and s.alipay_private_key.strip() and s.alipay_public_key.strip())

    async def create_checkout(self, req: CheckoutRequest) -> CheckoutResult:
        s = self.settings
        passback = {"userId": req.user_id, "plan": req.plan.value}
        try:
            url = alipay.build_page_pay_url(
                gateway_url=s.alipay_gateway_url,
                app_id=s.alipay_app_id,
                private_key=s.alipay_private_key,
                notify_url=s.resolve_url(s.alipay_notify_url, "/api/payment/alipay/notify"),
                return_url=s.resolve_url(s.alipay_return_url, "/payment/success"),
                out_trade_no=req.order_id,
                total_amount=format_minor_units(req.amount),
                subject=req.title,
                body=req.description,
                passback_params=alipay.encode_passback(passback),
            )
        except ValueError as e:
            # 私钥格式错误属于配置问题
            raise PaymentChannelUnavailable(provider="alipay", reason=str(e)[:120])
        return CheckoutResult(payment_url=url, metadata={"passback": passback})

    async def verify_callback(self, payload: dict[str, Any], headers: dict[str, str]) -> CallbackEvent:
        params = {str(k): str(v) for k, v in payload.items()}
        if not alipay.verify_rsa2(params, self.settings.alipay_public_key):
            raise SignatureInvalid(provider="alipay", order_id=params.get("out_trade_no"))

        sign_type = str(params.get("sign_type") or "").strip().upper()
        if sign_type and sign_type != "RSA2":
            raise SignatureInvalid(f"unsupported_sign_type:{sign_type}", provider="alipay")

        app_id = str(params.get("app_id") or "").strip()
        if app_id and app_id != self.settings.alipay_app_id:
            raise SignatureInvalid("app_id 不匹配", provider="alipay", app_id=app_id)

        order_id = _require(params.get("out_trade_no"), "out_trade_no", "alipay")
        trade_status = str(params.get("trade_status") or "").strip()

        status: OrderStatus | None = None
        if trade_status in alipay.SUCCESS_TRADE_STATUSES:
            status = OrderStatus.PAID
        elif trade_status in alipay.CLOSED_TRADE_STATUSES:
            status = OrderStatus.CANCELLED

        transaction_id = str(params.get("trade_no") or "").strip() or None
        amount: int | None = None
        if status == OrderStatus.PAID:
            transaction_id = _require(transaction_id, "trade_no", "alipay")
            try:
                amount = parse_major_units(_require(params.get("total_amount"), "total_amount", "alipay"))
            except ValueError:
                raise MalformedCallback("金额格式错误", provider="alipay", order_id=order_id)

        return CallbackEvent(
            provider="alipay",
            order_id=order_id,
            trade_status=trade_status,
            status=status,
            amount=amount,
            currency="CNY",
            transaction_id=transaction_id,
            passback=alipay.decode_passback(params.get("passback_params")),
            raw=params,
        )

    def ack(self, ok: bool) -> Response:
        # 支付宝只认响应体，非 success 即会重试
        return Response(content="success" if ok else "fail", media_type="text/plain")


class WechatPayProvider(PaymentProvider):
    method = PaymentMethod.WECHAT

    def is_configured(self, plan: PlanType | None = None) -> bool:
        s = self.settings
        return bool(s.wechat_app_id.strip() and s.wechat_mch_id.strip() and s.wechat_api_key.strip())

    async def create_checkout(self, req: CheckoutRequest) -> CheckoutResult:
        s = self.settings
        passback = {"userId": req.user_id, "plan": req.plan.value}
        params: dict[str, object] = {
            "appid": s.wechat_app_id,
            "mch_id": s.wechat_mch_id,
            "nonce_str": wechatpay_nonce(),
            "body": req.title,
            "out_trade_no": req.order_id,
            "total_fee": int(req.amount),
            "fee_type": req.currency,
            "spbill_create_ip": req.client_ip or "127.0.0.1",
            "notify_url": s.resolve_url(s.wechat_notify_url, "/api/payment/wechat/notify"),
            "trade_type": "NATIVE",
            "attach": json.dumps(passback, ensure_ascii=False, separators=(",", ":")),
        }
        try:
            result = await wechatpay_unified_order(
                url=s.wechat_unifiedorder_url,
                params=params,
                api_key=s.wechat_api_key,
                timeout=s.payment_http_timeout_seconds,
                transport=self.transport,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderRequestFailed(provider="wechat", order_id=req.order_id, reason=str(e)[:120])

        if result.get("return_code") != "SUCCESS" or result.get("result_code") != "SUCCESS":
            raise ProviderRequestFailed(
                provider="wechat",
                order_id=req.order_id,
                return_msg=result.get("return_msg"),
                err_code=result.get("err_code"),
            )
        if result.get("sign") and not wechatpay_verify_md5(result, s.wechat_api_key):
            raise ProviderRequestFailed("统一下单应答验签失败", provider="wechat", order_id=req.order_id)

        code_url = str(result.get("code_url") or "").strip()
        if not code_url:
            raise ProviderRequestFailed("统一下单缺少 code_url", provider="wechat", order_id=req.order_id)
        return CheckoutResult(
            code_url=code_url,
            metadata={"prepay_id": result.get("prepay_id"), "code_url": code_url, "passback": passback},
        )

    async def verify_callback(self, payload: dict[str, Any], headers: dict[str, str]) -> CallbackEvent:
        params = {str(k): str(v) for k, v in payload.items()}
        if not wechatpay_verify_md5(params, self.settings.wechat_api_key):
            raise SignatureInvalid(provider="wechat", order_id=params.get("out_trade_no"))

        for key, expected in (("appid", self.settings.wechat_app_id), ("mch_id", self.settings.wechat_mch_id)):
            got = str(params.get(key) or "").strip()
            if got and got != expected:
                raise SignatureInvalid(f"{key} 不匹配", provider="wechat")

        order_id = _require(params.get("out_trade_no"), "out_trade_no", "wechat")
        return_code = str(params.get("return_code") or "").strip()
        result_code = str(params.get("result_code") or "").strip()
        trade_status = result_code or return_code

        status: OrderStatus | None = None
        transaction_id = str(params.get("transaction_id") or "").strip() or None
        amount: int | None = None
        if return_code == "SUCCESS" and result_code == "SUCCESS":
            status = OrderStatus.PAID
            transaction_id = _require(transaction_id, "transaction_id", "wechat")
            try:
                amount = int(_require(params.get("total_fee"), "total_fee", "wechat"))
            except ValueError:
                raise MalformedCallback("金额格式错误", provider="wechat", order_id=order_id)

        passback: dict[str, str] = {}
        attach = str(params.get("attach") or "").strip()
        if attach:
            try:
                obj = json.loads(attach)
                if isinstance(obj, dict):
                    passback = {str(k): str(v) for k, v in obj.items()}
            except ValueError:
                logger.warning("wechat: attach 不是合法JSON order_id=%s", order_id)

        return CallbackEvent(
            provider="wechat",
            order_id=order_id,
            trade_status=trade_status,
            status=status,
            amount=amount,
            currency=str(params.get("fee_type") or "CNY"),
            transaction_id=transaction_id,
            passback=passback,
            raw=params,
        )

    def ack(self, ok: bool) -> Response:
        if ok:
            return Response(content=wechatpay_ack_xml("SUCCESS", "OK"), media_type="application/xml")
        return Response(content=wechatpay_ack_xml("FAIL", "处理失败"), media_type="application/xml")


PAYPAL_PAID_EVENTS = frozenset({"PAYMENT.SALE.COMPLETED"})
PAYPAL_CANCEL_EVENTS = frozenset({"BILLING.SUBSCRIPTION.CANCELLED"})


class PayPalProvider(PaymentProvider):
    method = PaymentMethod.PAYPAL

    def _credentials(self) -> PayPalCredentials:
        s = self.settings
        return PayPalCredentials(
            client_id=s.paypal_client_id,
            client_secret=s.paypal_client_secret,
            api_base=s.paypal_api_base,
            timeout_seconds=s.payment_http_timeout_seconds,
        )

    def plan_id_for(self, plan: PlanType) -> str:
        s = self.settings
        mapping = {
            PlanType.PRO_MONTHLY: s.paypal_plan_id_monthly,
            PlanType.PRO_YEARLY: s.paypal_plan_id_yearly,
        }
        return str(mapping.get(plan) or "").strip()

    def is_configured(self, plan: PlanType | None = None) -> bool:
        s = self.settings
        base = bool(s.paypal_client_id.strip() and s.paypal_client_secret.strip() and s.paypal_webhook_id.strip())
        if plan is None:
            return base
        return base and bool(self.plan_id_for(plan))

    async def create_checkout(self, req: CheckoutRequest) -> CheckoutResult:
        s = self.settings
        plan_id = self.plan_id_for(req.plan)
        if not plan_id:
            raise PaymentChannelUnavailable(provider="paypal", plan=req.plan.value)
        creds = self._credentials()
        try:
            token = await paypal_get_access_token(creds, transport=self.transport)
            subscription = await paypal_create_subscription(
                creds,
                access_token=token,
                plan_id=plan_id,
                custom_id=req.order_id,
                return_url=s.resolve_url(s.paypal_return_url, "/payment/success"),
                cancel_url=s.resolve_url(s.paypal_cancel_url, "/payment/cancelled"),
                transport=self.transport,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderRequestFailed(provider="paypal", order_id=req.order_id, reason=str(e)[:120])

        approve = paypal_approve_link(subscription)
        if not approve:
            raise ProviderRequestFailed("PayPal 未返回支付链接", provider="paypal", order_id=req.order_id)
        return CheckoutResult(
            payment_url=approve,
            metadata={"subscription_id": subscription.get("id"), "paypal_plan_id": plan_id},
        )

    async def verify_callback(self, payload: dict[str, Any], headers: dict[str, str]) -> CallbackEvent:
        creds = self._credentials()
        try:
            token = await paypal_get_access_token(creds, transport=self.transport)
            verified = await paypal_verify_webhook_signature(
                creds,
                access_token=token,
                webhook_id=self.settings.paypal_webhook_id,
                headers=headers,
                event=payload,
                transport=self.transport,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderRequestFailed(provider="paypal", reason=str(e)[:120])
        if not verified:
            raise SignatureInvalid(provider="paypal", event_id=payload.get("id"))

        event_type = str(payload.get("event_type") or "").strip()
        resource_raw = payload.get("resource")
        resource: dict[str, Any] = resource_raw if isinstance(resource_raw, dict) else {}
        order_id = str(resource.get("custom_id") or resource.get("custom") or "").strip() or None

        status: OrderStatus | None = None
        amount: int | None = None
        currency: str | None = None
        transaction_id = str(resource.get("id") or "").strip() or None

        if event_type in PAYPAL_PAID_EVENTS:
            status = OrderStatus.PAID
            order_id = _require(order_id, "custom_id", "paypal")
            transaction_id = _require(transaction_id, "resource.id", "paypal")
            amount_obj = resource.get("amount")
            amount_dict: dict[str, Any] = amount_obj if isinstance(amount_obj, dict) else {}
            try:
                amount = parse_major_units(_require(amount_dict.get("total"), "amount.total", "paypal"))
            except ValueError:
                raise MalformedCallback("金额格式错误", provider="paypal", order_id=order_id)
            currency = str(amount_dict.get("currency") or "").strip().upper() or None
        elif event_type in PAYPAL_CANCEL_EVENTS:
            status = OrderStatus.CANCELLED
            order_id = _require(order_id, "custom_id", "paypal")

        return CallbackEvent(
            provider="paypal",
            order_id=order_id,
            trade_status=event_type,
            status=status,
            amount=amount,
            currency=currency,
            transaction_id=transaction_id,
            raw=payload,
        )


_PROVIDERS: dict[PaymentMethod, type[PaymentProvider]] = {
    PaymentMethod.ALIPAY: AlipayProvider,
    PaymentMethod.WECHAT: WechatPayProvider,
    PaymentMethod.PAYPAL: PayPalProvider,
}


def get_payment_provider(
    method: PaymentMethod | str,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PaymentProvider:
    """按请求构造渠道对象"""
    try:
        m = PaymentMethod(str(getattr(method, "value", method)))
        cls = _PROVIDERS[m]
    except (ValueError, KeyError):
        raise UnsupportedPaymentMethod(payment_method=str(method))
    return cls(settings or get_settings(), transport=transport)


def configured_channels(settings: Settings | None = None) -> dict[str, bool]:
    s = settings or get_settings()
    return {m.value: cls(s).is_configured() for m, cls in _PROVIDERS.items()}
