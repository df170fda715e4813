"""关键事件告警

支付链路上需要人工介入的事件（金额不一致、对账部分失败、已取消订单收到付款等）
通过 webhook 推送给运维。未开启或未配置地址时只写日志。
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import cast

import httpx

logger = logging.getLogger(__name__)

SERVICE_NAME = "quizmate-payment"


def _bool_env(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return bool(default)
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _float_env(name: str, default: float) -> float:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _clean_data(data_obj: object) -> dict[str, object] | None:
    if not isinstance(data_obj, dict):
        return None
    out: dict[str, object] = {}
    for k_obj, v_obj in cast(dict[object, object], data_obj).items():
        k = str(k_obj or "").strip()
        if k:
            out[k] = v_obj
    return out


class CriticalEventReporter:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._lock: asyncio.Lock = asyncio.Lock()
        self._last_sent_at: dict[str, float] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self.transport = transport

    def enabled(self) -> bool:
        return _bool_env("CRITICAL_EVENTS_ENABLED", False)

    def webhook_url(self) -> str:
        return str(os.getenv("CRITICAL_EVENTS_WEBHOOK_URL", "") or "").strip()

    def fire_and_forget(
        self,
        event: str,
        *,
        severity: str = "error",
        title: str | None = None,
        message: str | None = None,
        data: dict[str, object] | None = None,
        request_id: str | None = None,
        dedup_key: str | None = None,
    ) -> None:
        """在当前事件循环里异步推送，不阻塞调用方"""
        event = str(event or "").strip()
        if not event:
            return
        logger.error(
            "critical_event event=%s severity=%s title=%s data=%s",
            event,
            severity,
            title,
            data,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("critical_event 无运行中的事件循环，跳过推送 event=%s", event)
            return
        task = loop.create_task(
            self.report(
                event=event,
                severity=severity or "error",
                title=title,
                message=message,
                data=data,
                request_id=request_id or None,
                dedup_key=dedup_key or None,
            )
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def report(
        self,
        *,
        event: str,
        severity: str = "error",
        request_id: str | None = None,
        title: str | None = None,
        message: str | None = None,
        data: dict[str, object] | None = None,
        dedup_key: str | None = None,
    ) -> bool:
        """推送一条事件，返回是否实际发出"""
        if not self.enabled():
            return False
        url = self.webhook_url()
        if not url:
            return False

        now = float(time.time())
        min_interval = _float_env("CRITICAL_EVENTS_MIN_INTERVAL_SECONDS", 30.0)
        key = str(dedup_key or "").strip() or f"{event}|{severity}|{str(title or '')[:80]}"

        async with self._lock:
            last = self._last_sent_at.get(key)
            if last is not None and (now - last) < min_interval:
                return False
            self._last_sent_at[key] = now

        payload: dict[str, object] = {
            "ts": now,
            "event": event,
            "severity": severity,
            "request_id": request_id,
            "title": title,
            "message": message,
            "env": str(os.getenv("APP_ENV") or os.getenv("ENVIRONMENT") or ""),
            "service": SERVICE_NAME,
            "data": _clean_data(data),
        }

        headers: dict[str, str] = {"Content-Type": "application/json"}
        bearer = str(os.getenv("CRITICAL_EVENTS_WEBHOOK_BEARER", "") or "").strip()
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        try:
            async with httpx.AsyncClient(
                timeout=_float_env("CRITICAL_EVENTS_TIMEOUT_SECONDS", 3.0),
                transport=self.transport,
            ) as client:
                res = await client.post(url, json=payload, headers=headers)
                res.raise_for_status()
        except httpx.HTTPError:
            logger.exception("critical_event_report_failed event=%s", event)
            return False
        return True

    async def drain(self) -> None:
        """等待所有已提交的推送结束（关闭时和测试中使用）"""
        if self._pending:
            _ = await asyncio.gather(*list(self._pending), return_exceptions=True)


critical_event_reporter = CriticalEventReporter()
