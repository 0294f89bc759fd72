from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import Response
from pydantic import BaseModel
from redis.asyncio import Redis

from .cache import RedisCacheGateway
from .config import GatewayConfig, build_gateway_config
from .deps import get_counter_store, get_http_client, get_redis, get_telemetry_sink
from .logging_config import logger, redact_headers
from .pipeline import GatewayPipeline
from .redis_client import close_redis_client
from .rotation import CounterStore
from .routing.context import BODY_METHODS, InboundRequest
from .settings import settings
from .telemetry import TelemetrySink, drain_pending

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class HealthResponse(BaseModel):
    status: str = "ok"


def _inbound_url(request: Request) -> httpx.URL:
    """
    Starlette rebuilds request.url from the decoded path; restore the
    path exactly as the caller encoded it.
    """
    url = httpx.URL(str(request.url))
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return url
    query = request.scope.get("query_string") or b""
    raw_path = raw_path.split(b"?", 1)[0]
    return url.copy_with(raw_path=raw_path + (b"?" + query if query else b""))


async def _read_inbound(request: Request) -> InboundRequest:
    # The body is read exactly once; every stage shares this buffer.
    body = await request.body() if request.method.upper() in BODY_METHODS else b""
    return InboundRequest(
        method=request.method.upper(),
        url=_inbound_url(request),
        headers=httpx.Headers(request.headers.raw),
        body=body,
    )


def create_app(config: GatewayConfig | None = None) -> FastAPI:
    gateway_config = config or build_gateway_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        async with httpx.AsyncClient(
            timeout=settings.upstream_timeout, follow_redirects=True
        ) as client:
            app.state.http_client = client
            yield
            await drain_pending(timeout=5.0)
        await close_redis_client()

    app = FastAPI(title="API Proxy Gateway", version="0.1.0", lifespan=lifespan)
    app.state.gateway_config = gateway_config

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Basic request/response logging with credential headers redacted.
        """
        client_host = request.client.host if request.client else "-"
        logger.info(
            "HTTP %s %s from %s, headers=%s",
            request.method,
            request.url.path,
            client_host,
            redact_headers(request.headers),
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled error while processing %s %s",
                request.method,
                request.url.path,
            )
            raise
        logger.info(
            "HTTP %s %s -> %s", request.method, request.url.path, response.status_code
        )
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse()

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(
        request: Request,
        client: httpx.AsyncClient = Depends(get_http_client),
        redis: Redis = Depends(get_redis),
        counter_store: CounterStore = Depends(get_counter_store),
        telemetry: TelemetrySink | None = Depends(get_telemetry_sink),
    ) -> Response:
        """
        Single entry point for both addressing modes:
        /<service>/<upstream path> and POST /v1/chat/completions.
        """
        pipeline = GatewayPipeline(
            gateway_config,
            client=client,
            counter_store=counter_store,
            cache=RedisCacheGateway(redis) if gateway_config.cache_enabled else None,
            telemetry=telemetry,
        )
        return await pipeline.handle(await _read_inbound(request))

    return app
