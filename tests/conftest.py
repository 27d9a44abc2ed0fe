"""
Shared test fixtures: in-memory SQLite, an in-memory Redis stand-in,
stub store validators and an HTTP client bound to the app.
"""

import base64
import json
import time
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.db.base import Base
from app.db.session import get_db
from app.dependencies import get_current_user_id, get_store_validators
from app.main import app
from app.models.subscription import Platform, SubscriptionLog
from app.services import cache
from app.services.store_validation import StoreValidators, ValidationResult

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

USER_ID = "user-0001"


class FakeRedis:
    """In-memory Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.streams: dict[str, list[dict[str, str]]] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._store.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        if nx and key in self._store:
            return None
        self._store[key] = str(value)
        if ex:
            self._ttls[key] = ex
        return True

    async def setex(self, key: str, seconds: int, value: Any) -> bool:
        return await self.set(key, value, ex=seconds)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self._store)

    async def incr(self, key: str) -> int:
        val = int(self._store.get(key, "0")) + 1
        self._store[key] = str(val)
        return val

    async def expire(self, key: str, seconds: int) -> bool:
        self._ttls[key] = seconds
        return True

    async def ttl(self, key: str) -> int:
        if key not in self._store:
            return -2
        return self._ttls.get(key, -1)

    async def xadd(self, name: str, fields: dict, maxlen: Optional[int] = None, approximate: bool = True) -> str:
        entries = self.streams.setdefault(name, [])
        entries.append(dict(fields))
        return f"{int(time.time() * 1000)}-{len(entries)}"

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class StubValidator:
    """Store validator returning a canned result or raising a canned error."""

    def __init__(self, result: Optional[ValidationResult] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls: list[Any] = []

    async def validate(self, artifact) -> ValidationResult:
        self.calls.append(artifact)
        if self.error is not None:
            raise self.error
        return self.result


def make_result(
    platform: Platform = Platform.ANDROID,
    product_id: str = "com.app.premium",
    token: str = "tok123",
    expiry: Optional[datetime] = None,
    auto_renewing: bool = True,
    is_valid: bool = True,
) -> ValidationResult:
    return ValidationResult(
        platform=platform,
        is_valid=is_valid,
        expiry_date=expiry if expiry is not None else datetime.now(timezone.utc) + timedelta(days=30),
        auto_renewing=auto_renewing,
        canonical_product_id=product_id,
        purchase_token=token,
        package_name="com.rezepta.app" if platform == Platform.ANDROID else None,
    )


def ms(moment: datetime) -> str:
    return str(int(moment.timestamp() * 1000))


def android_envelope(inner: dict[str, Any], message_id: str = "msg-1") -> dict[str, Any]:
    """Pub/Sub push body wrapping a DeveloperNotification."""
    data = base64.b64encode(json.dumps(inner).encode("utf-8")).decode("ascii")
    return {
        "message": {
            "data": data,
            "messageId": message_id,
            "publishTime": "2026-10-01T12:00:00Z",
        },
        "subscription": "projects/rezepta/subscriptions/play-rtdn",
    }


def android_subscription_notification(
    notification_type: int,
    token: str = "tok123",
    product_id: str = "com.app.premium",
    event_time: Optional[datetime] = None,
) -> dict[str, Any]:
    event_time = event_time or datetime.now(timezone.utc)
    return {
        "version": "1.0",
        "packageName": "com.rezepta.app",
        "eventTimeMillis": ms(event_time),
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": token,
            "subscriptionId": product_id,
        },
    }


async def count_logs(session: AsyncSession, user_id: str = USER_ID) -> int:
    result = await session.execute(
        select(func.count()).select_from(SubscriptionLog).where(SubscriptionLog.user_id == user_id)
    )
    return result.scalar_one()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    redis = FakeRedis()
    monkeypatch.setattr(cache, "_redis_client", redis)
    return redis


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def android_validator() -> StubValidator:
    return StubValidator(result=make_result())


@pytest.fixture
def ios_validator() -> StubValidator:
    return StubValidator(result=make_result(platform=Platform.IOS, token="1000000123456789"))


@pytest.fixture
def validators(android_validator, ios_validator) -> StoreValidators:
    return StoreValidators(android=android_validator, ios=ios_validator)


@pytest.fixture
async def client(session_factory, validators) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_current_user_id():
        return USER_ID

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_id] = override_get_current_user_id
    app.dependency_overrides[get_store_validators] = lambda: validators

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
