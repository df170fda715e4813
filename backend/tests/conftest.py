"""Pytest配置文件"""
import sys
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from quizmate.config import Settings, get_settings
from quizmate.database import Base, get_db
from quizmate.main import app
from quizmate.models.payment import PaymentOrder
from quizmate.models.profile import Profile  # noqa: F401  注册 profiles 表
from quizmate.services.critical_event_reporter import critical_event_reporter
from quizmate.utils.security import create_access_token

# 使用内存数据库进行测试
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WECHAT_API_KEY = "wechat-test-api-key-0123456789abcdef"


def _pem_pair() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


@pytest_asyncio.fixture
async def test_engine():
    """创建测试数据库引擎"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """创建测试会话"""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(test_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """创建测试客户端"""
    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def alipay_keys() -> dict[str, str]:
    """商户密钥和“支付宝平台”密钥各一对"""
    app_private, app_public = _pem_pair()
    platform_private, platform_public = _pem_pair()
    return {
        "app_private": app_private,
        "app_public": app_public,
        "platform_private": platform_private,
        "platform_public": platform_public,
    }


@pytest.fixture
def payment_settings(monkeypatch: pytest.MonkeyPatch, alipay_keys: dict[str, str]) -> Settings:
    """在缓存的配置实例上打开全部渠道"""
    settings = get_settings()
    values = {
        "site_base_url": "https://quizmate.test",
        "alipay_app_id": "2021000000000001",
        "alipay_private_key": alipay_keys["app_private"],
        "alipay_public_key": alipay_keys["platform_public"],
        "wechat_app_id": "wx0000000000000001",
        "wechat_mch_id": "1900000001",
        "wechat_api_key": WECHAT_API_KEY,
        "paypal_client_id": "pp-client",
        "paypal_client_secret": "pp-secret",
        "paypal_api_base": "https://paypal.test",
        "paypal_webhook_id": "WH-TEST",
        "paypal_plan_id_monthly": "P-MONTHLY",
        "paypal_plan_id_yearly": "P-YEARLY",
    }
    for key, value in values.items():
        monkeypatch.setattr(settings, key, value)
    return settings


@pytest.fixture
def seed_order(test_session: AsyncSession):
    """直接写入一笔订单"""
    async def _seed(
        order_id: str,
        *,
        user_id: str = "user-1",
        plan: str = "pro_monthly",
        method: str = "alipay",
        amount: int = 2999,
        currency: str = "CNY",
        status: str = "pending",
    ) -> PaymentOrder:
        now = datetime.now(timezone.utc)
        order = PaymentOrder(
            id=order_id,
            user_id=user_id,
            plan_type=plan,
            payment_method=method,
            amount=amount,
            currency=currency,
            status=status,
            created_at=now,
            expires_at=now + timedelta(minutes=120),
        )
        test_session.add(order)
        await test_session.commit()
        return order

    return _seed


@pytest.fixture
def alerts(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, object]]:
    """截获关键事件告警"""
    sent: list[dict[str, object]] = []

    def _capture(event: str, **kwargs: object) -> None:
        sent.append({"event": event, **kwargs})

    monkeypatch.setattr(critical_event_reporter, "fire_and_forget", _capture)
    return sent


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _make
