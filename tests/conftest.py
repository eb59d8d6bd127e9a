"""
Pytest Configuration and Fixtures

Provides fixtures for:
- In-memory Redis (counters, token state, refresh lock)
- Database sessions (async SQLite)
- Mock HTTP services (LLM gateway, tool webhook, Telegram)
- Service container and API test client
- Test data factories
"""
# משתני סביבה לפני ייבוא chatbot - Settings נטען בזמן import
import os
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("AI_GATEWAY_CLIENT_ID", "test-client-id")

import asyncio
import fnmatch
import inspect
import uuid
from typing import Any, Callable
from unittest.mock import patch

import httpx
import pytest
from redis.exceptions import LockError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chatbot.container import build_container
from chatbot.db.database import Base
from chatbot.db.models import ChatbotConfiguration, KnowledgeDocument  # noqa: F401 - רישום כל הטבלאות
from chatbot.main import app

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}
EMBED_TOKEN = "a" * 64


# ============================================================================
# Fake Redis
# ============================================================================

class FakeLock:
    """נעילה תואמת ל-redis.asyncio.lock.Lock - SET NX על מפתח, עם token לבעלות"""

    def __init__(self, redis: "FakeRedis", name: str, timeout: float | None = None) -> None:
        self._redis = redis
        self.name = name
        self.timeout = timeout
        self._token = uuid.uuid4().hex

    async def acquire(self, blocking: bool = True, blocking_timeout: float | None = None) -> bool:
        loop = asyncio.get_running_loop()
        deadline = None if blocking_timeout is None else loop.time() + blocking_timeout
        while True:
            if await self._redis.set(self.name, self._token, nx=True, ex=self.timeout):
                return True
            if not blocking:
                return False
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(0.01)

    async def release(self) -> None:
        if self._redis._store.get(self.name) != self._token:
            raise LockError("Cannot release a lock that's no longer owned")
        await self._redis.delete(self.name)


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def mget(self, *keys: str) -> list[str | None]:
        return [self._store.get(key) for key in keys]

    async def set(self, key: str, value: Any, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = str(value)
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def incr(self, key: str) -> int:
        """INCR אטומי - מגדיל ב-1, מאתחל ל-1 אם לא קיים"""
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        """הגדרת TTL למפתח קיים"""
        if key in self._store:
            self._ttls[key] = ttl

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                deleted += 1
            self._ttls.pop(key, None)
        return deleted

    async def scan_iter(self, match: str | None = None):
        for key in list(self._store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def lock(self, name: str, timeout: float | None = None, **kwargs: Any) -> FakeLock:
        return FakeLock(self, name, timeout)

    def ttl_of(self, key: str) -> int | None:
        return self._ttls.get(key)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("chatbot.core.redis_client.get_redis", _get_fake_redis), \
         patch("chatbot.domain.stores.config_store.get_redis", _get_fake_redis), \
         patch("chatbot.domain.services.rate_limiter.get_redis", _get_fake_redis), \
         patch("chatbot.domain.services.ai_gateway.token_manager.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """sessionmaker שהריפוזיטוריז מקבלים - כמו AsyncSessionLocal בפרודקשן"""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


# ============================================================================
# Mock HTTP services
# ============================================================================

Responder = Callable[[httpx.Request], Any]


def respond(status_code: int = 200, json: Any = None, content: bytes | str | None = None) -> Responder:
    """Responder שבונה httpx.Response חדש לכל בקשה"""
    def _responder(request: httpx.Request) -> httpx.Response:
        if json is not None:
            return httpx.Response(status_code, json=json)
        return httpx.Response(status_code, content=content or b"")
    return _responder


class MockHTTPService:
    """
    httpx.MockTransport עם תור תשובות לכל path ורישום של כל הבקשות.

    התשובה האחרונה בתור חוזרת על עצמה לכל הבקשות הבאות.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[str, list[Responder]] = {}
        self.transport = httpx.MockTransport(self._handle)

    def add(self, path: str, *responders: Responder) -> "MockHTTPService":
        self._routes.setdefault(path, []).extend(responders)
        return self

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": f"no mock for {request.url.path}"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        response = responder(request)
        if inspect.isawaitable(response):
            response = await response
        return response


COMPLETIONS_PATH = "/oauth2/v1/chat/completions"
TOKEN_PATH = "/oauth2/token"


def completion_body(
    content: str | None = "Hi there!",
    tool_calls: list[dict] | None = None,
    model: str = "gpt-4o-mini",
) -> dict:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def tool_call(name: str, arguments: str, call_id: str = "call_1") -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


@pytest.fixture
def gateway_http() -> MockHTTPService:
    return MockHTTPService()


@pytest.fixture
def webhook_http() -> MockHTTPService:
    return MockHTTPService()


@pytest.fixture
def telegram_http() -> MockHTTPService:
    return MockHTTPService()


# ============================================================================
# Container / app
# ============================================================================

@pytest.fixture
def container(session_factory, gateway_http, webhook_http, telegram_http):
    return build_container(
        session_factory,
        gateway_transport=gateway_http.transport,
        webhook_transport=webhook_http.transport,
        telegram_transport=telegram_http.transport,
    )


@pytest.fixture
async def connected(container):
    """טוקנים תקפים לשעה - ה-gateway נחשב מחובר"""
    await container.token_manager.store_tokens("access-1", "refresh-1", 3600)
    return container


@pytest.fixture
async def test_client(container):
    """API client מעל ASGITransport, עם ה-container של הבדיקה"""
    app.state.container = container
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.state.container = None


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def config_factory(session_factory):
    """Factory for creating chatbot configurations"""
    async def _create_config(
        name: str = "Default Configuration",
        persona: str | None = None,
        knowledge: str | None = None,
        knowledge_sources: str | None = None,
        system_prompt: str | None = None,
        greeting: str | None = None,
        n8n_settings: str | None = None,
        telegram_bot_token: str | None = None,
        telegram_webhook_secret: str | None = None,
        embed_token: str | None = None,
        embed_enabled: bool = False,
    ) -> ChatbotConfiguration:
        config = ChatbotConfiguration(
            name=name,
            persona=persona,
            knowledge=knowledge,
            knowledge_sources=knowledge_sources,
            system_prompt=system_prompt,
            greeting=greeting,
            n8n_settings=n8n_settings,
            telegram_bot_token=telegram_bot_token,
            telegram_webhook_secret=telegram_webhook_secret,
            embed_token=embed_token,
            embed_enabled=embed_enabled,
        )
        async with session_factory() as session:
            session.add(config)
            await session.commit()
            await session.refresh(config)
        return config

    return _create_config


@pytest.fixture
def document_factory(session_factory):
    """Factory for knowledge documents"""
    async def _create_document(
        title: str,
        content: str,
        url: str | None = None,
        type: str = "page",
    ) -> KnowledgeDocument:
        document = KnowledgeDocument(title=title, content=content, url=url, type=type)
        async with session_factory() as session:
            session.add(document)
            await session.commit()
            await session.refresh(document)
        return document

    return _create_document

