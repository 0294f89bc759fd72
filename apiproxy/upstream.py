from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Iterable, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from .cache import CacheEntry, cacheable_headers
from .config import GatewayConfig
from .credentials import inject_credential
from .errors import UpstreamUnreachable
from .logging_config import logger
from .routing.context import RequestContext, RoutingMode

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, PATCH, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, x-api-key, x-goog-api-key, "
        "anthropic-version, openai-organization"
    ),
}

# OpenAI-compatible chat endpoint per upstream for intelligent routing.
INTELLIGENT_UPSTREAM_PATHS = {
    "gemini": "/v1beta/openai/chat/completions",
    "groq": "/openai/v1/chat/completions",
}
DEFAULT_INTELLIGENT_UPSTREAM_PATH = "/v1/chat/completions"

_HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# Recomputed by httpx / starlette for the new message.
_REQUEST_DROP_HEADERS = _HOP_BY_HOP_HEADERS | {"host", "content-length"}
# Bodies are relayed decoded (aiter_bytes), so the upstream encoding no
# longer describes them.
_RESPONSE_DROP_HEADERS = _HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


def apply_cors_headers(response: Response) -> Response:
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response


def preflight_response() -> Response:
    return apply_cors_headers(Response(status_code=204))


def _copy_headers(response: Response, headers: Iterable[tuple[str, str]]) -> Response:
    for name, value in headers:
        response.headers.append(name, value)
    return response


def build_cached_response(entry: CacheEntry, annotation: str) -> Response:
    response = Response(content=entry.body, status_code=entry.status_code)
    _copy_headers(response, entry.headers)
    response.headers["X-Gateway-Cache"] = annotation
    return response


@dataclass
class OutboundRequest:
    method: str
    url: httpx.URL
    headers: httpx.Headers
    body: bytes


@dataclass
class DispatchResult:
    response: Response
    status_code: int
    captured: Optional[CacheEntry] = None


class UpstreamDispatcher:
    """
    Rewrites a classified request for its upstream and relays the reply.
    """

    def __init__(self, config: GatewayConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    def target_url(self, ctx: RequestContext) -> httpx.URL:
        inbound = ctx.request
        if ctx.mode is RoutingMode.INTELLIGENT:
            path = INTELLIGENT_UPSTREAM_PATHS.get(
                ctx.service, DEFAULT_INTELLIGENT_UPSTREAM_PATH
            )
            # copy_with keeps the inbound query string untouched.
            return inbound.url.copy_with(
                scheme="https",
                host=self.config.routes[ctx.service],
                port=None,
                path=path,
            )

        # Strip the service segment from the still-encoded path so escapes
        # such as %2F reach the upstream unchanged.
        raw_path, sep, query = inbound.url.raw_path.partition(b"?")
        remainder = raw_path.lstrip(b"/").partition(b"/")[2]
        return inbound.url.copy_with(
            scheme="https",
            host=self.config.routes[ctx.service],
            port=None,
            raw_path=b"/" + remainder + sep + query,
        )

    def build_request(self, ctx: RequestContext) -> OutboundRequest:
        inbound = ctx.request
        headers = httpx.Headers(
            [
                (name, value)
                for name, value in inbound.headers.multi_items()
                if name.lower() not in _REQUEST_DROP_HEADERS
            ]
        )
        url = self.target_url(ctx)
        if ctx.override_credential is not None:
            url = inject_credential(ctx.service, ctx.override_credential, headers, url)
        if ctx.mode is RoutingMode.INTELLIGENT:
            headers["Content-Type"] = "application/json"
        return OutboundRequest(
            method=inbound.method.upper(),
            url=url,
            headers=headers,
            body=ctx.outbound_body,
        )

    async def dispatch(self, ctx: RequestContext, *, capture: bool = False) -> DispatchResult:
        """
        Send the request upstream.

        With ``capture`` the full body is read so it can be cached;
        otherwise it is relayed chunk by chunk as it arrives.
        """
        outbound = self.build_request(ctx)
        request = self.client.build_request(
            outbound.method,
            outbound.url,
            headers=outbound.headers,
            content=outbound.body or None,
        )
        logger.info(
            "upstream: %s %s://%s%s (service=%s mode=%s rotated=%s)",
            outbound.method,
            outbound.url.scheme,
            outbound.url.host,
            outbound.url.path,
            ctx.service,
            ctx.mode.value,
            ctx.override_credential is not None,
        )
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            logger.warning(
                "upstream: failed to reach %s for service=%s: %s",
                outbound.url.host,
                ctx.service,
                exc,
            )
            raise UpstreamUnreachable("Failed to connect to the upstream API.") from exc

        headers = [
            (name, value)
            for name, value in upstream.headers.multi_items()
            if name.lower() not in _RESPONSE_DROP_HEADERS
        ]

        if capture:
            try:
                body = b"".join([chunk async for chunk in upstream.aiter_bytes()])
            except httpx.RequestError as exc:
                raise UpstreamUnreachable("Upstream connection dropped mid-response.") from exc
            finally:
                await upstream.aclose()
            response = _copy_headers(
                Response(content=body, status_code=upstream.status_code), headers
            )
            entry = CacheEntry(
                body=body,
                headers=cacheable_headers(headers),
                status_code=upstream.status_code,
            )
            return DispatchResult(response, upstream.status_code, captured=entry)

        response = StreamingResponse(
            _relay(upstream, ctx.service),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        _copy_headers(response, headers)
        return DispatchResult(response, upstream.status_code)


async def _relay(upstream: httpx.Response, service: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_bytes():
            if chunk:
                yield chunk
    except httpx.HTTPError as exc:
        # Status and headers are already on the wire; end the body early.
        logger.warning("upstream: stream from service=%s interrupted: %s", service, exc)


__all__ = [
    "CORS_HEADERS",
    "DEFAULT_INTELLIGENT_UPSTREAM_PATH",
    "DispatchResult",
    "INTELLIGENT_UPSTREAM_PATHS",
    "OutboundRequest",
    "UpstreamDispatcher",
    "apply_cors_headers",
    "build_cached_response",
    "preflight_response",
]
