"""应用配置"""
import sys
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field, field_validator, model_validator
from functools import lru_cache
from typing import ClassVar, cast


def _running_tests() -> bool:
    return "pytest" in sys.modules


class Settings(BaseSettings):
    """应用设置"""
    # 应用配置
    app_name: str = "QuizMate"
    debug: bool = Field(default_factory=_running_tests)
    log_level: str = "INFO"
    log_dir: str = "logs"

    # 数据库配置
    database_url: str = "sqlite+aiosqlite:///./data/quizmate.db"

    # 认证（托管认证服务签发的JWT）
    auth_jwt_secret: str = Field(
        default="your-super-secret-key-change-in-production",
        validation_alias=AliasChoices("AUTH_JWT_SECRET", "SUPABASE_JWT_SECRET"),
    )
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: str = ""

    cors_allow_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    cors_allow_credentials: bool = False

    site_base_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("SITE_BASE_URL", "NEXT_PUBLIC_BASE_URL"),
    )

    # 支付宝
    alipay_app_id: str = ""
    alipay_private_key: str = ""
    alipay_public_key: str = ""
    alipay_gateway_url: str = "https://openapi-sandbox.dl.alipaydev.com/gateway.do"
    alipay_notify_url: str = ""
    alipay_return_url: str = ""

    # 微信支付（V2 统一下单）
    wechat_app_id: str = ""
    wechat_mch_id: str = ""
    wechat_api_key: str = ""
    wechat_unifiedorder_url: str = "https://api.mch.weixin.qq.com/pay/unifiedorder"
    wechat_notify_url: str = ""

    # PayPal
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_api_base: str = "https://api-m.sandbox.paypal.com"
    paypal_webhook_id: str = ""
    paypal_plan_id_monthly: str = ""
    paypal_plan_id_yearly: str = ""
    paypal_return_url: str = ""
    paypal_cancel_url: str = ""

    # 订单
    order_expire_minutes: int = 120
    payment_http_timeout_seconds: float = 10.0

    model_config: ClassVar[SettingsConfigDict] = cast(
        SettingsConfigDict,
        cast(
            object,
            {
                "env_file": None if _running_tests() else ".env",
                "extra": "ignore",
                "from_attributes": True,
            },
        ),
    )

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _parse_cors_allow_origins(cls, value: object):
        if isinstance(value, str):
            parts = [p.strip() for p in value.replace("，", ",").split(",")]
            return [p for p in parts if p]
        return value

    @field_validator("debug", mode="before")
    @classmethod
    def _parse_debug(cls, value: object):
        if value is None:
            return bool(_running_tests())
        if isinstance(value, bool):
            return bool(value)
        if isinstance(value, int):
            return bool(int(value))
        if isinstance(value, str):
            s = value.strip().lower()
            if not s:
                return bool(_running_tests())
            if s in {"1", "true", "yes", "y", "on"}:
                return True
            if s in {"0", "false", "no", "n", "off"}:
                return False
            return True
        return bool(_running_tests())

    @model_validator(mode="after")
    def _validate_security(self):
        if _running_tests():
            return self
        insecure_defaults = {
            "your-super-secret-key-change-in-production",
            "your-secret-key-here",
        }
        if not self.debug:
            if self.auth_jwt_secret in insecure_defaults or len(self.auth_jwt_secret) < 32:
                raise ValueError("AUTH_JWT_SECRET must be set to a secure value when DEBUG is False")
        return self

    def resolve_url(self, url: str, default_path: str) -> str:
        """未显式配置回调地址时，基于站点地址拼接"""
        raw = str(url or "").strip()
        if raw:
            return raw
        return f"{self.site_base_url.rstrip('/')}{default_path}"


@lru_cache()
def get_settings() -> Settings:
    """获取缓存的设置实例"""
    return Settings()
