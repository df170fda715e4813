"""支付领域异常

每个异常带一个稳定的错误码，对外只返回错误码和通用提示，
内部细节只写日志。
"""
from __future__ import annotations


class PaymentError(Exception):
    code: str = "payment_error"
    message: str = "支付处理失败"
    status_code: int = 400

    def __init__(self, message: str | None = None, **context: object) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.context: dict[str, object] = dict(context)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = " ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({ctx})"


class Unauthenticated(PaymentError):
    code = "unauthenticated"
    message = "用户未登录"
    status_code = 401


class InvalidPlan(PaymentError):
    code = "invalid_plan"
    message = "无效的订阅计划"
    status_code = 400


class UnsupportedPaymentMethod(PaymentError):
    code = "unsupported_payment_method"
    message = "不支持的支付方式"
    status_code = 400


class PaymentChannelUnavailable(PaymentError):
    code = "payment_channel_unavailable"
    message = "支付渠道暂未开放"
    status_code = 503


class ProviderRequestFailed(PaymentError):
    code = "provider_request_failed"
    message = "支付订单创建失败"
    status_code = 502


class OrderPersistenceFailed(PaymentError):
    code = "order_persistence_failed"
    message = "订单创建失败"
    status_code = 500


class NotFound(PaymentError):
    code = "not_found"
    message = "订单不存在"
    status_code = 404


class InvalidOrderState(PaymentError):
    code = "invalid_order_state"
    message = "订单状态异常"
    status_code = 400


# 以下用于回调链路，只写日志并转换成渠道应答，不直接返回给用户


class SignatureInvalid(PaymentError):
    code = "signature_invalid"
    message = "验签失败"


class MalformedCallback(PaymentError):
    code = "malformed_callback"
    message = "回调缺少字段"


class OrderNotFound(PaymentError):
    code = "order_not_found"
    message = "订单不存在"
    status_code = 404


class AmountMismatch(PaymentError):
    code = "amount_mismatch"
    message = "金额不一致"


class ProfileUpdateFailed(PaymentError):
    code = "profile_update_failed"
    message = "订阅状态更新失败"
    status_code = 500


class TransactionAppendFailed(PaymentError):
    code = "transaction_append_failed"
    message = "交易记录写入失败"
    status_code = 500
