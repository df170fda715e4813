"""回调审计记录

每一条渠道通知（无论验签是否通过）都记一行，供人工对账使用。
签名类字段在落库前打码。
"""
from __future__ import annotations

import hashlib
import json
import logging
from typing import cast
from urllib.parse import parse_qsl

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.payment import PaymentCallbackEvent

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = frozenset(
    {
        "sign",
        "signature",
        "sign_data",
        "paypal-transmission-sig",
        "transmission_sig",
        "app_cert_sn",
        "alipay_cert_sn",
    }
)


def _mask_value(v: object) -> object:
    if v is None or isinstance(v, (int, float, bool)):
        return v
    s = str(v)
    if len(s) <= 8:
        return "*" * len(s)
    return f"{s[:3]}***{s[-3:]}"


def _mask_obj(obj: object) -> object:
    if isinstance(obj, dict):
        out: dict[object, object] = {}
        for k, v in cast(dict[object, object], obj).items():
            if str(k).strip().lower() in SENSITIVE_KEYS:
                out[k] = _mask_value(v)
            else:
                out[k] = _mask_obj(v)
        return out
    if isinstance(obj, list):
        return [_mask_obj(x) for x in cast(list[object], obj)]
    return obj


def mask_payload(raw: object) -> str | None:
    """字典直接打码；字符串依次尝试 JSON 和表单格式，都不是则原样返回"""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return json.dumps(_mask_obj(raw), ensure_ascii=False, sort_keys=True)

    s = str(raw)
    if not s.strip():
        return s
    try:
        return json.dumps(_mask_obj(json.loads(s)), ensure_ascii=False, sort_keys=True)
    except ValueError:
        pass
    pairs = parse_qsl(s, keep_blank_values=True) if "=" in s else []
    if pairs:
        return json.dumps(_mask_obj(dict(pairs)), ensure_ascii=False, sort_keys=True)
    return s


async def record_callback_event(
    db: AsyncSession,
    *,
    provider: str,
    order_id: str | None,
    transaction_id: str | None,
    amount: int | None,
    verified: bool,
    error_message: str | None,
    raw_payload: object,
    source_ip: str | None = None,
    user_agent: str | None = None,
) -> None:
    masked = mask_payload(raw_payload)
    payload_hash = hashlib.sha256(masked.encode("utf-8")).hexdigest() if masked else None

    evt = PaymentCallbackEvent(
        provider=str(provider),
        order_id=str(order_id)[:64] if order_id else None,
        transaction_id=str(transaction_id)[:100] if transaction_id else None,
        amount=amount,
        verified=bool(verified),
        error_message=str(error_message)[:200] if error_message else None,
        raw_payload=masked,
        raw_payload_hash=payload_hash,
        source_ip=str(source_ip)[:45] if source_ip else None,
        user_agent=str(user_agent)[:512] if user_agent else None,
    )
    try:
        db.add(evt)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        # 审计失败不影响回调应答
        logger.exception("回调记录写入失败 provider=%s order_id=%s", provider, order_id)
