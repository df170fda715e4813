"""访问令牌校验

令牌由托管认证服务签发（HS256），sub 为用户ID字符串。
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from ..config import get_settings

logger = logging.getLogger(__name__)


def decode_token(token: str) -> dict[str, Any] | None:
    """解码并校验令牌，失败返回 None"""
    settings = get_settings()
    options: dict[str, Any] = {"require": ["exp", "sub"]}
    audience = settings.auth_jwt_audience.strip() or None
    if audience is None:
        options["verify_aud"] = False
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=audience,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        logger.info("auth: token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.info("auth: invalid token (%s)", type(e).__name__)
        return None
    return payload


def create_access_token(subject: str, expires_minutes: int = 60, **claims: Any) -> str:
    """签发令牌，仅供本地调试和测试使用"""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": str(subject),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=int(expires_minutes))).timestamp()),
    }
    if settings.auth_jwt_audience.strip():
        payload["aud"] = settings.auth_jwt_audience.strip()
    payload.update(claims)
    return jwt.encode(payload, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)
