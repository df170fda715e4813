"""支付宝 RSA2 签名与电脑网站支付链接"""
from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from typing import cast
from urllib.parse import quote, unquote, urlencode

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_pem_private_key, load_pem_public_key

logger = logging.getLogger(__name__)

SUCCESS_TRADE_STATUSES = frozenset({"TRADE_SUCCESS", "TRADE_FINISHED"})
CLOSED_TRADE_STATUSES = frozenset({"TRADE_CLOSED"})


def normalize_pem(value: str) -> str:
    if not value:
        return ""
    return value.strip().replace("\\n", "\n")


def build_sign_string(params: dict[str, str]) -> str:
    items: list[tuple[str, str]] = []
    for k, v in params.items():
        if k in {"sign", "sign_type"}:
            continue
        s = str(v)
        if s == "":
            continue
        items.append((k, s))
    items.sort(key=lambda x: x[0])
    return "&".join([f"{k}={v}" for k, v in items])


def sign_rsa2(params: dict[str, str], private_key_pem: str) -> str:
    sign_content = build_sign_string(params)
    key = cast(
        RSAPrivateKey,
        load_pem_private_key(normalize_pem(private_key_pem).encode("utf-8"), password=None),
    )
    signature = key.sign(
        sign_content.encode("utf-8"),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    return base64.b64encode(signature).decode("utf-8")


def verify_rsa2(params: dict[str, str], public_key_pem: str) -> bool:
    sign = params.get("sign")
    if not sign:
        return False
    try:
        signature = base64.b64decode(sign)
    except Exception:
        return False

    try:
        key = cast(RSAPublicKey, load_pem_public_key(normalize_pem(public_key_pem).encode("utf-8")))
    except ValueError:
        logger.error("alipay: 支付宝公钥无法解析")
        return False

    sign_content = build_sign_string(params)
    try:
        key.verify(
            signature,
            sign_content.encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return True
    except Exception:
        return False


def encode_passback(data: dict[str, str]) -> str:
    return quote(json.dumps(data, ensure_ascii=False, separators=(",", ":")), safe="")


def decode_passback(raw: str | None) -> dict[str, str]:
    s = str(raw or "").strip()
    if not s:
        return {}
    try:
        obj = json.loads(unquote(s))
    except ValueError:
        return {}
    if not isinstance(obj, dict):
        return {}
    return {str(k): str(v) for k, v in obj.items()}


def build_page_pay_url(
    *,
    gateway_url: str,
    app_id: str,
    private_key: str,
    notify_url: str,
    return_url: str | None,
    out_trade_no: str,
    total_amount: str,
    subject: str,
    body: str | None = None,
    passback_params: str | None = None,
) -> str:
    biz: dict[str, str] = {
        "out_trade_no": out_trade_no,
        "product_code": "FAST_INSTANT_TRADE_PAY",
        "total_amount": total_amount,
        "subject": subject,
    }
    if body:
        biz["body"] = body
    if passback_params:
        biz["passback_params"] = passback_params

    params: dict[str, str] = {
        "app_id": app_id,
        "method": "alipay.trade.page.pay",
        "format": "JSON",
        "charset": "utf-8",
        "sign_type": "RSA2",
        "timestamp": datetime.now(timezone.utc).astimezone().strftime("%Y-%m-%d %H:%M:%S"),
        "version": "1.0",
        "notify_url": notify_url,
        "biz_content": json.dumps(biz, ensure_ascii=False, separators=(",", ":")),
    }
    if return_url:
        params["return_url"] = return_url
    params["sign"] = sign_rsa2(params, private_key)
    return f"{gateway_url}?{urlencode(params)}"
