"""
Inbound request classification.

Two addressing modes are supported:

- Transparent: ``/<service>/<upstream path...>``; the first path segment
  selects the upstream and the rest is forwarded as-is.
- Intelligent: ``POST /v1/chat/completions`` with ``"model":
  "<service>/<model>"``; only callers holding the master key may use it,
  and the provider prefix is stripped before forwarding.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from apiproxy.cache import is_cacheable
from apiproxy.config import GatewayConfig
from apiproxy.credentials import credential_matches, extract_credential
from apiproxy.errors import InvalidModel, InvalidRoute, MalformedRequest, Unauthorized

from .context import InboundRequest, RequestContext, RoutingMode

UNKNOWN_MODEL = "unknown"

# Services that put the model in the URL (e.g. /gemini/v1beta/models/
# gemini-pro:generateContent), keyed by the segment index holding it.
_PATH_MODEL_SEGMENT: Dict[str, int] = {"gemini": 3}


def _load_json_object(body: bytes) -> Optional[Dict[str, Any]]:
    if not body:
        return None
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _model_from_path(service: str, segments: list[str]) -> Optional[str]:
    idx = _PATH_MODEL_SEGMENT.get(service)
    if idx is None or len(segments) <= idx:
        return None
    token = segments[idx].split(":", 1)[0]
    return token or None


class RequestClassifier:
    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    def classify(self, request: InboundRequest) -> RequestContext:
        segments = request.path_segments
        if not segments:
            raise MalformedRequest(
                "Malformed URL: specify an API route, e.g. /<service>/<path>"
            )

        credential = extract_credential(request.headers, request.url.params)

        if (
            request.method.upper() == "POST"
            and request.url.path.rstrip("/") == self.config.intelligent_path
        ):
            return self._classify_intelligent(request, credential)

        service = segments[0]
        if self.config.routes.resolve(service) is None:
            raise InvalidRoute(
                f"Unknown API route key: '{service}'. "
                f"Available routes: {self.config.routes.describe()}",
                details={"routes": self.config.routes.tokens()},
            )
        return self._classify_transparent(request, service, segments, credential)

    def _classify_transparent(
        self,
        request: InboundRequest,
        service: str,
        segments: list[str],
        credential: Optional[str],
    ) -> RequestContext:
        model: Optional[str] = None
        if request.carries_body:
            payload = _load_json_object(request.body)
            if payload is not None:
                value = payload.get("model")
                if isinstance(value, str) and value.strip():
                    model = value.strip()
        if model is None:
            model = _model_from_path(service, segments)

        ctx = RequestContext(
            mode=RoutingMode.TRANSPARENT,
            service=service,
            model=model or UNKNOWN_MODEL,
            request=request,
            caller_credential=credential,
        )
        ctx.cacheable = self._is_cacheable(request, ctx.model)
        return ctx

    def _classify_intelligent(
        self, request: InboundRequest, credential: Optional[str]
    ) -> RequestContext:
        if not credential_matches(credential, self.config.master_key):
            raise Unauthorized("Intelligent routing requires the gateway master key")

        payload = _load_json_object(request.body)
        if payload is None:
            raise InvalidModel("Request body must be a JSON object with a 'model' field")

        raw_model = payload.get("model")
        if not isinstance(raw_model, str) or "/" not in raw_model:
            raise InvalidModel(
                f"Invalid model {raw_model!r}: expected '<provider>/<model>'"
            )
        service, _, upstream_model = raw_model.partition("/")
        if self.config.routes.resolve(service) is None or not upstream_model:
            raise InvalidModel(f"Invalid model {raw_model!r}: unknown provider prefix")

        payload["model"] = upstream_model
        rewritten = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        ctx = RequestContext(
            mode=RoutingMode.INTELLIGENT,
            service=service,
            model=upstream_model,
            request=request,
            rewritten_body=rewritten,
            caller_credential=credential,
        )
        ctx.cacheable = self._is_cacheable(request, upstream_model)
        return ctx

    def _is_cacheable(self, request: InboundRequest, model: str) -> bool:
        if not self.config.cache_enabled:
            return False
        return is_cacheable(
            request.method,
            request.url.path,
            model,
            non_cacheable_paths=self.config.non_cacheable_paths,
            non_cacheable_model_keywords=self.config.non_cacheable_model_keywords,
        )


__all__ = ["RequestClassifier", "UNKNOWN_MODEL"]
