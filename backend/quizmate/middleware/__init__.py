"""中间件模块"""
from .logging_middleware import ErrorLoggingMiddleware, RequestLoggingMiddleware
from .request_id_middleware import RequestIdMiddleware

__all__ = ["ErrorLoggingMiddleware", "RequestLoggingMiddleware", "RequestIdMiddleware"]
