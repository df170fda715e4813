"""QuizMate 订阅支付服务"""

__version__ = "1.0.0"
