from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

import httpx

VERIFY_HEADER_MAP: dict[str, str] = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


@dataclass(frozen=True)
class PayPalCredentials:
    client_id: str
    client_secret: str
    api_base: str
    timeout_seconds: float = 10.0


def _as_dict(data_raw: object, what: str) -> dict[str, Any]:
    if not isinstance(data_raw, dict):
        raise ValueError(f"paypal {what} response must be an object")
    return cast(dict[str, Any], data_raw)


async def paypal_get_access_token(
    creds: PayPalCredentials,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    async with httpx.AsyncClient(timeout=creds.timeout_seconds, transport=transport) as client:
        res = await client.post(
            f"{creds.api_base.rstrip('/')}/v1/oauth2/token",
            auth=(creds.client_id, creds.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json", "Accept-Language": "en_US"},
        )
        res.raise_for_status()
        data = _as_dict(res.json(), "token")

    token = str(data.get("access_token") or "").strip()
    if not token:
        raise ValueError("paypal token response missing access_token")
    return token


async def paypal_create_subscription(
    creds: PayPalCredentials,
    *,
    access_token: str,
    plan_id: str,
    custom_id: str,
    return_url: str,
    cancel_url: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    payload = {
        "plan_id": plan_id,
        "custom_id": custom_id,
        "application_context": {
            "user_action": "SUBSCRIBE_NOW",
            "return_url": return_url,
            "cancel_url": cancel_url,
        },
    }
    async with httpx.AsyncClient(timeout=creds.timeout_seconds, transport=transport) as client:
        res = await client.post(
            f"{creds.api_base.rstrip('/')}/v1/billing/subscriptions",
            json=payload,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                # 订单号作为幂等键，重试不会在 PayPal 侧重复创建
                "PayPal-Request-Id": custom_id,
                "Prefer": "return=representation",
            },
        )
        res.raise_for_status()
        return _as_dict(res.json(), "subscription")


def paypal_approve_link(subscription: dict[str, Any]) -> str | None:
    links = subscription.get("links")
    if not isinstance(links, list):
        return None
    for link_obj in cast(list[object], links):
        if not isinstance(link_obj, dict):
            continue
        link = cast(dict[str, Any], link_obj)
        if str(link.get("rel") or "") == "approve":
            href = str(link.get("href") or "").strip()
            return href or None
    return None


async def paypal_verify_webhook_signature(
    creds: PayPalCredentials,
    *,
    access_token: str,
    webhook_id: str,
    headers: dict[str, str],
    event: dict[str, Any],
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    lowered = {str(k).lower(): str(v) for k, v in headers.items()}
    payload: dict[str, Any] = {}
    for field, header in VERIFY_HEADER_MAP.items():
        value = lowered.get(header, "").strip()
        if not value:
            return False
        payload[field] = value
    payload["webhook_id"] = webhook_id
    payload["webhook_event"] = event

    async with httpx.AsyncClient(timeout=creds.timeout_seconds, transport=transport) as client:
        res = await client.post(
            f"{creds.api_base.rstrip('/')}/v1/notifications/verify-webhook-signature",
            json=payload,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )
        res.raise_for_status()
        data = _as_dict(res.json(), "verify")

    return str(data.get("verification_status") or "").upper() == "SUCCESS"
