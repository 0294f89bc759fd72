import gzip
import json

import httpx
import pytest
from starlette.responses import StreamingResponse

from apiproxy.cache import CacheAnnotation, CacheEntry
from apiproxy.errors import UpstreamUnreachable
from apiproxy.routing.context import InboundRequest, RequestContext, RoutingMode
from apiproxy.upstream import UpstreamDispatcher, build_cached_response, preflight_response
from tests.utils import ChunkedStream, UpstreamRecorder, make_config


def _ctx(
    path: str,
    *,
    service: str,
    mode: RoutingMode = RoutingMode.TRANSPARENT,
    method: str = "POST",
    body: bytes = b"",
    headers: dict | None = None,
    rewritten_body: bytes | None = None,
    override_credential: str | None = None,
) -> RequestContext:
    request = InboundRequest(
        method=method,
        url=httpx.URL(f"http://localhost:8000{path}"),
        headers=httpx.Headers(headers or {}),
        body=body,
    )
    return RequestContext(
        mode=mode,
        service=service,
        model="unknown",
        request=request,
        rewritten_body=rewritten_body,
        override_credential=override_credential,
    )


def _dispatcher(upstream: UpstreamRecorder | None = None) -> UpstreamDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream or UpstreamRecorder()))
    return UpstreamDispatcher(make_config(), client)


def test_transparent_target_url_strips_service_segment():
    dispatcher = _dispatcher()

    url = dispatcher.target_url(
        _ctx("/openai/v1/chat/completions?stream=true&n=2", service="openai")
    )
    assert str(url) == "https://api.openai.com/v1/chat/completions?stream=true&n=2"

    assert dispatcher.target_url(_ctx("/openai/v1/models/", service="openai")).path == "/v1/models/"
    assert dispatcher.target_url(_ctx("/openai", service="openai")).path == "/"


@pytest.mark.parametrize(
    "service,host,path",
    [
        ("openai", "api.openai.com", "/v1/chat/completions"),
        ("groq", "api.groq.com", "/openai/v1/chat/completions"),
        ("gemini", "generativelanguage.googleapis.com", "/v1beta/openai/chat/completions"),
    ],
)
def test_intelligent_target_url_uses_provider_chat_endpoint(service, host, path):
    url = _dispatcher().target_url(
        _ctx("/v1/chat/completions", service=service, mode=RoutingMode.INTELLIGENT)
    )
    assert url.host == host
    assert url.path == path
    assert url.scheme == "https"


def test_build_request_passthrough_keeps_caller_headers():
    ctx = _ctx(
        "/claude/v1/messages",
        service="claude",
        body=b'{"model": "claude-3"}',
        headers={
            "Host": "localhost:8000",
            "Content-Length": "21",
            "x-api-key": "ak-caller",
            "anthropic-version": "2023-06-01",
        },
    )
    outbound = _dispatcher().build_request(ctx)

    assert "host" not in outbound.headers
    assert "content-length" not in outbound.headers
    assert outbound.headers["x-api-key"] == "ak-caller"
    assert outbound.headers["anthropic-version"] == "2023-06-01"
    assert outbound.body == b'{"model": "claude-3"}'


def test_build_request_intelligent_injects_pooled_key_and_rewritten_body():
    ctx = _ctx(
        "/v1/chat/completions",
        service="openai",
        mode=RoutingMode.INTELLIGENT,
        body=b'{"model": "openai/gpt-4o"}',
        rewritten_body=b'{"model": "gpt-4o"}',
        headers={"Authorization": "Bearer master-secret", "Content-Type": "text/plain"},
        override_credential="sk-two",
    )
    outbound = _dispatcher().build_request(ctx)

    assert outbound.headers["authorization"] == "Bearer sk-two"
    assert outbound.headers["content-type"] == "application/json"
    assert outbound.body == b'{"model": "gpt-4o"}'


@pytest.mark.asyncio
async def test_dispatch_capture_returns_cache_entry():
    upstream = UpstreamRecorder()
    dispatcher = _dispatcher(upstream)

    result = await dispatcher.dispatch(
        _ctx("/openai/v1/chat/completions", service="openai", body=b"{}"), capture=True
    )

    assert result.status_code == 200
    assert result.captured is not None
    assert json.loads(result.captured.body)["path"] == "/v1/chat/completions"
    assert ("x-upstream", "api.openai.com") in result.captured.headers
    assert result.response.body == result.captured.body
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_dispatch_streams_by_default():
    dispatcher = _dispatcher()

    result = await dispatcher.dispatch(_ctx("/openai/v1/models", service="openai", method="GET"))

    assert isinstance(result.response, StreamingResponse)
    assert result.captured is None
    assert result.status_code == 200


@pytest.mark.asyncio
async def test_dispatch_connection_error_is_upstream_unreachable():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = _dispatcher(UpstreamRecorder(refuse))

    with pytest.raises(UpstreamUnreachable) as excinfo:
        await dispatcher.dispatch(_ctx("/openai/v1/chat/completions", service="openai"))

    assert excinfo.value.status_code == 502
    assert excinfo.value.message == "Failed to connect to the upstream API."


def test_cached_response_is_annotated():
    entry = CacheEntry(body=b"{}", headers=[("content-type", "application/json")], status_code=200)
    response = build_cached_response(entry, CacheAnnotation.HIT)

    assert response.headers["X-Gateway-Cache"] == "HIT"
    assert response.headers["content-type"] == "application/json"
    assert response.body == b"{}"


def test_preflight_response_has_cors_headers():
    response = preflight_response()

    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "*"
    assert "OPTIONS" in response.headers["access-control-allow-methods"]
    assert "anthropic-version" in response.headers["access-control-allow-headers"]


def test_transparent_target_url_keeps_percent_encoding():
    url = _dispatcher().target_url(
        _ctx("/gemini/v1beta/files/abc%2Fdef?x=1", service="gemini", method="GET")
    )

    assert url.host == "generativelanguage.googleapis.com"
    assert url.raw_path == b"/v1beta/files/abc%2Fdef?x=1"


@pytest.mark.asyncio
async def test_dispatch_capture_decodes_compressed_body():
    payload = {"id": "cmpl-gzip", "choices": []}

    def compressed(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=gzip.compress(json.dumps(payload).encode("utf-8")),
            headers={"content-encoding": "gzip", "content-type": "application/json"},
        )

    result = await _dispatcher(UpstreamRecorder(compressed)).dispatch(
        _ctx("/openai/v1/chat/completions", service="openai", body=b"{}"), capture=True
    )

    assert json.loads(result.captured.body) == payload
    assert all(name.lower() != "content-encoding" for name, _ in result.captured.headers)
    assert "content-encoding" not in result.response.headers


@pytest.mark.asyncio
async def test_dispatch_relays_unread_stream_chunk_by_chunk():
    stream = ChunkedStream([b"data: one\n\n", b"", b"data: two\n\n"])

    def live(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, stream=stream, headers={"content-type": "text/event-stream"}
        )

    result = await _dispatcher(UpstreamRecorder(live)).dispatch(
        _ctx("/openai/v1/chat/completions", service="openai", body=b"{}")
    )

    chunks = [chunk async for chunk in result.response.body_iterator]
    assert chunks == [b"data: one\n\n", b"data: two\n\n"]
    assert result.response.headers["content-type"] == "text/event-stream"
