from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from apiproxy.config import GatewayConfig
from apiproxy.deps import get_counter_store, get_http_client, get_redis, get_telemetry_sink
from apiproxy.models import Base
from apiproxy.routes import create_app
from apiproxy.routing.route_table import RouteTable
from apiproxy.settings import DEFAULT_ROUTE_MAP
from apiproxy.telemetry import TelemetryRecord

MASTER_KEY = "master-secret"  # pragma: allowlist secret


class InMemoryRedis:
    """
    Minimal async Redis replacement supporting the commands the gateway uses.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self.lists: Dict[str, List[str]] = {}
        self.set_calls: List[tuple[str, Optional[int]]] = []

    async def get(self, key: str):
        return self._data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None):
        self.set_calls.append((key, ex))
        self._data[key] = value

    async def delete(self, key: str):
        self._data.pop(key, None)

    async def lpush(self, key: str, value: str) -> int:
        items = self.lists.setdefault(key, [])
        items.insert(0, value)
        return len(items)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        items = self.lists.get(key, [])
        self.lists[key] = items[start : end + 1]
        return True


class BrokenRedis(InMemoryRedis):
    async def get(self, key: str):
        raise ConnectionError("redis down")

    async def set(self, key: str, value: str, ex: int | None = None):
        raise ConnectionError("redis down")


class InMemoryCounterStore:
    """
    Same contract as the SQL store: insert 1, else (current % n) + 1.
    """

    def __init__(self) -> None:
        self.values: Dict[str, int] = {}
        self.calls = 0
        self._lock = asyncio.Lock()

    async def next_index(self, service: str, modulus: int) -> int:
        async with self._lock:
            # Yield while holding the lock so concurrent callers interleave.
            await asyncio.sleep(0)
            self.calls += 1
            current = self.values.get(service)
            new_value = 1 if current is None else (current % modulus) + 1
            self.values[service] = new_value
            return new_value


class FailingCounterStore:
    async def next_index(self, service: str, modulus: int) -> int:
        raise ConnectionError("counter store unreachable")


class RecordingTelemetrySink:
    def __init__(self) -> None:
        self.records: List[TelemetryRecord] = []

    async def write(self, record: TelemetryRecord) -> None:
        self.records.append(record)


class ExplodingTelemetrySink:
    async def write(self, record: TelemetryRecord) -> None:
        raise RuntimeError("telemetry backend down")


def make_config(**overrides: Any) -> GatewayConfig:
    values: Dict[str, Any] = {
        "routes": RouteTable(DEFAULT_ROUTE_MAP),
        "master_key": MASTER_KEY,
        "credential_pools": {
            "openai": '["sk-one", "sk-two", "sk-three"]',
            "claude": '["ak-one", "ak-two"]',
            "gemini": '["g-one"]',
        },
        "cache_enabled": True,
        "cache_ttl_seconds": 1800,
        "non_cacheable_paths": ("/models", "/files"),
        "non_cacheable_model_keywords": ("image", "vision", "dall-e"),
    }
    values.update(overrides)
    return GatewayConfig(**values)


def make_sqlite_session_factory(path: Optional[str] = None) -> sessionmaker[Session]:
    """
    In-memory SQLite by default; pass a file path when several threads
    need their own connections to the same database.
    """
    if path is None:
        engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            f"sqlite+pysqlite:///{path}",
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


class ChunkedStream(httpx.AsyncByteStream):
    """
    Unread upstream body delivered chunk by chunk, like a live SSE stream.
    """

    def __init__(self, chunks: List[bytes]) -> None:
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class UpstreamRecorder:
    """
    httpx.MockTransport handler that records every upstream request.
    """

    def __init__(self, handler: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self._handler = handler or self._default

    @staticmethod
    def _default(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"id": "cmpl-test", "object": "chat.completion", "path": request.url.path},
            headers={"x-upstream": request.url.host},
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)


def install_gateway(
    config: Optional[GatewayConfig] = None,
    *,
    upstream: Optional[UpstreamRecorder] = None,
    redis: Optional[InMemoryRedis] = None,
    counter_store: Any = None,
    telemetry: Any = None,
):
    """
    Build an app with every external collaborator replaced by an in-memory fake.
    """
    app = create_app(config or make_config())
    upstream = upstream or UpstreamRecorder()
    redis = redis or InMemoryRedis()
    counter_store = counter_store or InMemoryCounterStore()
    telemetry = telemetry or RecordingTelemetrySink()
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))

    async def override_get_http_client():
        return http_client

    async def override_get_redis():
        return redis

    async def override_get_counter_store():
        return counter_store

    async def override_get_telemetry_sink():
        return telemetry

    app.dependency_overrides[get_http_client] = override_get_http_client
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_counter_store] = override_get_counter_store
    app.dependency_overrides[get_telemetry_sink] = override_get_telemetry_sink
    return app, upstream, redis, counter_store, telemetry


def gateway_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gateway.test")
