"""
APIProxy: a routing gateway in front of several upstream AI APIs.

This package contains:
- settings / config: environment settings and the immutable GatewayConfig
- logging_config: shared logging setup
- routing: route table and request classification
- cache: cache-key derivation and the Redis response cache
- rotation: round-robin key pools backed by a durable SQL counter
- upstream: outbound request assembly and response relay
- pipeline: per-request orchestration and telemetry
- routes: FastAPI app factory
"""
