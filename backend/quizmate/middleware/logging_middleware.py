"""请求日志中间件"""
import time
import logging
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("api.request")

SKIP_PATHS = ("/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """记录方法、路径、状态码和耗时"""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        start_time = time.perf_counter()
        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"
        request_id = getattr(request.state, "request_id", None) or "-"
        should_log = not path.startswith(SKIP_PATHS)

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.error(
                "%s %s - ERROR - %.2fms - %s - rid=%s - %s", method, path, duration_ms, client_ip, request_id, e
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        if should_log:
            status_code = response.status_code
            level = logging.INFO
            if status_code >= 500:
                level = logging.ERROR
            elif status_code >= 400:
                level = logging.WARNING
            logger.log(
                level,
                "%s %s - %s - %.2fms - %s - rid=%s",
                method,
                path,
                status_code,
                duration_ms,
                client_ip,
                request_id,
            )

        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response


class ErrorLoggingMiddleware(BaseHTTPMiddleware):
    """捕获并记录未处理的异常"""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(
                "Unhandled exception: %s %s - %s",
                request.method,
                request.url.path,
                str(e)
            )
            raise
