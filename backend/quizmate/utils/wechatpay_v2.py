from __future__ import annotations

import hashlib
import hmac
import secrets
import string
import xml.etree.ElementTree as ET

import httpx

_NONCE_ALPHABET = string.ascii_letters + string.digits


def wechatpay_nonce(length: int = 32) -> str:
    return "".join(secrets.choice(_NONCE_ALPHABET) for _ in range(length))


def wechatpay_build_sign_string(params: dict[str, str]) -> str:
    items: list[tuple[str, str]] = []
    for k, v in params.items():
        if k == "sign":
            continue
        s = str(v)
        if s == "":
            continue
        items.append((k, s))
    items.sort(key=lambda x: x[0])
    return "&".join([f"{k}={v}" for k, v in items])


def wechatpay_sign_md5(params: dict[str, str], api_key: str) -> str:
    raw = f"{wechatpay_build_sign_string(params)}&key={api_key}".encode("utf-8")
    return hashlib.md5(raw).hexdigest().upper()


def wechatpay_verify_md5(params: dict[str, str], api_key: str) -> bool:
    sign = str(params.get("sign") or "").strip().upper()
    if not sign:
        return False
    expected = wechatpay_sign_md5(params, api_key)
    return hmac.compare_digest(expected, sign)


def wechatpay_build_xml(params: dict[str, object]) -> str:
    parts = ["<xml>"]
    for k, v in params.items():
        if isinstance(v, int) and not isinstance(v, bool):
            parts.append(f"<{k}>{v}</{k}>")
        else:
            parts.append(f"<{k}><![CDATA[{v}]]></{k}>")
    parts.append("</xml>")
    return "".join(parts)


def wechatpay_parse_xml(raw: str | bytes) -> dict[str, str]:
    text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
    if "<!DOCTYPE" in text or "<!ENTITY" in text:
        raise ValueError("DTD is not allowed in wechatpay payload")
    root = ET.fromstring(text)
    return {child.tag: (child.text or "") for child in root}


def wechatpay_ack_xml(return_code: str, return_msg: str) -> str:
    return wechatpay_build_xml({"return_code": return_code, "return_msg": return_msg})


async def wechatpay_unified_order(
    *,
    url: str,
    params: dict[str, object],
    api_key: str,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, str]:
    signed: dict[str, object] = dict(params)
    signed["sign"] = wechatpay_sign_md5({k: str(v) for k, v in signed.items()}, api_key)
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        resp = await client.post(
            url,
            content=wechatpay_build_xml(signed).encode("utf-8"),
            headers={"Content-Type": "application/xml"},
        )
    resp.raise_for_status()
    return wechatpay_parse_xml(resp.content)
