"""
Per-request orchestration:

    Received -> Classified -> [cache lookup] -> Dispatched -> [cache store] -> Responded

Every stage failure is terminal and mapped to an HTTP response. A
telemetry record is scheduled for every request that reached
classification; only malformed URLs go unrecorded.
"""

from __future__ import annotations

import time
from typing import Optional, Tuple

import httpx
from starlette.responses import Response

from .cache import CacheAnnotation, CacheEntry, CacheGateway, derive_cache_key
from .config import GatewayConfig
from .credentials import strip_credential_params
from .errors import GatewayError, MalformedRequest
from .logging_config import logger
from .rotation import CounterStore, RotationCoordinator
from .routing.classifier import UNKNOWN_MODEL, RequestClassifier
from .routing.context import InboundRequest, RequestContext
from .telemetry import TelemetryRecord, TelemetrySink, emit_in_background
from .upstream import (
    DispatchResult,
    UpstreamDispatcher,
    apply_cors_headers,
    build_cached_response,
    preflight_response,
)


class GatewayPipeline:
    def __init__(
        self,
        config: GatewayConfig,
        *,
        client: httpx.AsyncClient,
        counter_store: CounterStore,
        cache: Optional[CacheGateway] = None,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self.config = config
        self.cache = cache
        self.telemetry = telemetry
        self.classifier = RequestClassifier(config)
        self.rotation = RotationCoordinator(config, counter_store)
        self.dispatcher = UpstreamDispatcher(config, client)

    async def handle(self, request: InboundRequest) -> Response:
        if request.method.upper() == "OPTIONS":
            return preflight_response()

        started = time.perf_counter()
        try:
            ctx = self.classifier.classify(request)
        except MalformedRequest as exc:
            logger.info("pipeline: rejected malformed url %s", request.url.path)
            return apply_cors_headers(exc.to_response())
        except GatewayError as exc:
            logger.info("pipeline: classification failed: %s", exc.message)
            response = apply_cors_headers(exc.to_response())
            self._record(
                service=self._fallback_service(request),
                model=UNKNOWN_MODEL,
                status=response.status_code,
                started=started,
                cache=CacheAnnotation.NOT_APPLICABLE,
                error=exc.message,
            )
            return response

        cache_annotation = CacheAnnotation.NOT_APPLICABLE
        error = ""
        try:
            response, cache_annotation = await self._serve(ctx)
        except GatewayError as exc:
            logger.warning(
                "pipeline: service=%s model=%s failed with %s: %s",
                ctx.service,
                ctx.model,
                exc.error,
                exc.message,
            )
            response = exc.to_response()
            error = exc.message
        except Exception as exc:
            logger.exception(
                "pipeline: unexpected error for service=%s model=%s", ctx.service, ctx.model
            )
            response = GatewayError("Internal gateway error").to_response()
            error = str(exc) or type(exc).__name__

        apply_cors_headers(response)
        self._record(
            service=ctx.service,
            model=ctx.model,
            status=response.status_code,
            started=started,
            cache=cache_annotation,
            error=error,
        )
        return response

    async def _serve(self, ctx: RequestContext) -> Tuple[Response, str]:
        cache_key: Optional[str] = None
        if ctx.cacheable and self.cache is not None:
            cache_key = self._cache_key(ctx)
            entry = await self._lookup(cache_key)
            if entry is not None:
                logger.info(
                    "pipeline: cache hit service=%s model=%s key=%s",
                    ctx.service,
                    ctx.model,
                    cache_key[:12],
                )
                return build_cached_response(entry, CacheAnnotation.HIT), CacheAnnotation.HIT

        # Rotation only on the dispatch path: cache hits never consume a slot.
        ctx.override_credential = await self.rotation.select_credential(
            ctx.service, ctx.caller_credential
        )
        result = await self.dispatcher.dispatch(ctx, capture=cache_key is not None)

        if cache_key is None:
            return result.response, CacheAnnotation.NOT_APPLICABLE

        if result.captured is not None and 200 <= result.status_code < 300:
            await self._store(cache_key, result)
        result.response.headers["X-Gateway-Cache"] = CacheAnnotation.MISS
        return result.response, CacheAnnotation.MISS

    def _cache_key(self, ctx: RequestContext) -> str:
        url = strip_credential_params(self.dispatcher.target_url(ctx))
        return derive_cache_key(str(url), ctx.request.method, ctx.outbound_body)

    async def _lookup(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self.cache.lookup(key)
        except Exception as exc:
            # Cache outage degrades to a miss.
            logger.warning("pipeline: cache lookup failed, treating as miss: %s", exc)
            return None

    async def _store(self, key: str, result: DispatchResult) -> None:
        try:
            await self.cache.store(key, result.captured, self.config.cache_ttl_seconds)
        except Exception as exc:
            logger.warning("pipeline: cache store failed for key=%s: %s", key[:12], exc)

    def _fallback_service(self, request: InboundRequest) -> str:
        if request.url.path.rstrip("/") == self.config.intelligent_path:
            return "unknown"
        segments = request.path_segments
        return segments[0] if segments else "unknown"

    def _record(
        self,
        *,
        service: str,
        model: str,
        status: int,
        started: float,
        cache: str,
        error: str,
    ) -> None:
        record = TelemetryRecord(
            service=service or "unknown",
            model=model or UNKNOWN_MODEL,
            status=status,
            latency_ms=round((time.perf_counter() - started) * 1000.0, 2),
            cache=cache,
            error=error,
        )
        emit_in_background(self.telemetry, record)


__all__ = ["GatewayPipeline"]
