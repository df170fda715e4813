"""依赖注入"""
import logging
from typing import Annotated

import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..services.payment_errors import Unauthenticated
from .security import decode_token

security = HTTPBearer(auto_error=False)

logger = logging.getLogger(__name__)


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> str:
    """获取当前登录用户ID"""
    if not credentials:
        logger.info("auth: missing credentials")
        raise Unauthenticated()

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise Unauthenticated()

    sub = str(payload.get("sub") or "").strip()
    if not sub:
        logger.info("auth: token missing sub")
        raise Unauthenticated()
    return sub


def get_provider_transport() -> httpx.AsyncBaseTransport | None:
    """渠道 HTTP 传输层，默认使用 httpx 自带实现"""
    return None


def get_request_id(request: Request) -> str | None:
    rid = getattr(request.state, "request_id", None)
    return str(rid) if rid else None


def get_client_ip(request: Request) -> str | None:
    forwarded = str(request.headers.get("X-Forwarded-For") or "").strip()
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None
