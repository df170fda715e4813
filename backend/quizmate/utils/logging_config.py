"""日志配置"""
import logging
import sys
from pathlib import Path
from datetime import datetime

# 下单、回调、对账相关日志另外落一份，便于按订单号排查
PAYMENT_LOGGERS = (
    "quizmate.routers.payment",
    "quizmate.services.order_service",
    "quizmate.services.reconciliation_service",
    "quizmate.services.payment_providers",
    "quizmate.services.callback_log",
    "quizmate.services.critical_event_reporter",
)


class PaymentLogFilter(logging.Filter):
    def __init__(self, prefixes: tuple[str, ...] = PAYMENT_LOGGERS):
        super().__init__()
        self.prefixes = prefixes

    def filter(self, record: logging.LogRecord) -> bool:
        return any(record.name == p or record.name.startswith(p + ".") for p in self.prefixes)


def setup_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    app_name: str = "quizmate"
) -> None:
    """
    配置日志系统

    控制台输出全部日志；文件分为普通日志、错误日志和支付日志三份，按天切分。

    Args:
        log_level: 日志级别
        log_dir: 日志目录
        app_name: 日志文件名前缀
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    log_format = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"
    formatter = logging.Formatter(log_format, date_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # 清除现有处理器
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    today = datetime.now().strftime("%Y-%m-%d")
    handlers = (
        (f"{app_name}_{today}.log", logging.INFO, None),
        (f"{app_name}_error_{today}.log", logging.ERROR, None),
        (f"{app_name}_payment_{today}.log", logging.INFO, PaymentLogFilter()),
    )
    for filename, level, log_filter in handlers:
        handler = logging.FileHandler(log_path / filename, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(formatter)
        if log_filter is not None:
            handler.addFilter(log_filter)
        root_logger.addHandler(handler)

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.info("Logging configured: level=%s, dir=%s", log_level, log_dir)
