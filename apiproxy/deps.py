import httpx
from fastapi import Depends, Request
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from .db import get_session_factory
from .redis_client import get_redis_client
from .rotation import CounterStore, SqlCounterStore
from .settings import settings
from .telemetry import (
    FanoutTelemetrySink,
    LogTelemetrySink,
    RedisListTelemetrySink,
    TelemetrySink,
)


async def get_redis() -> Redis:
    """
    FastAPI dependency that provides the shared Redis client.

    Tests override this with an in-memory fake.
    """
    return get_redis_client()


async def get_http_client(request: Request) -> httpx.AsyncClient:
    """
    The AsyncClient opened in the app lifespan. It must outlive the
    handler because streamed upstream bodies are relayed after return.
    """
    return request.app.state.http_client


def _open_session() -> Session:
    return get_session_factory()()


async def get_counter_store() -> CounterStore:
    return SqlCounterStore(_open_session)


async def get_telemetry_sink(redis: Redis = Depends(get_redis)) -> TelemetrySink | None:
    if not settings.telemetry_enabled:
        return None
    return FanoutTelemetrySink(
        LogTelemetrySink(),
        RedisListTelemetrySink(
            redis,
            key=settings.telemetry_key,
            maxlen=settings.telemetry_maxlen,
        ),
    )
