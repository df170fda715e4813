"""QuizMate 支付服务 - FastAPI主应用"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import init_db
from .routers import api_router
from .middleware import ErrorLoggingMiddleware, RequestIdMiddleware, RequestLoggingMiddleware
from .services.critical_event_reporter import critical_event_reporter
from .services.payment_errors import PaymentError
from .utils.logging_config import setup_logging

settings = get_settings()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    _ = app
    setup_logging(settings.log_level, settings.log_dir)
    await init_db()
    logger.info("数据库初始化完成")

    yield

    await critical_event_reporter.drain()
    logger.info("应用关闭")


app = FastAPI(
    title=settings.app_name,
    description="QuizMate 订阅支付服务：下单、渠道回调对账、订单查询。",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "支付管理", "description": "订单与支付"},
    ],
)


def error_envelope(code: str, message: str) -> dict[str, object]:
    return {"success": False, "error": {"code": code, "message": message}}


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "payment error path=%s code=%s %s", request.url.path, exc.code, exc)
    # 只返回通用提示，不泄露内部上下文
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.code, type(exc).message),
        headers={"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error path=%s", request.url.path)
    return JSONResponse(status_code=500, content=error_envelope("internal_error", "服务器错误"))


app.add_middleware(ErrorLoggingMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.get("/health")
async def health_check():
    """健康检查"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("quizmate.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
