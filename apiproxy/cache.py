"""
Content-addressed response cache.

Keys are derived from what is sent upstream (URL, method, body) and never
from credentials, so callers with different keys share entries for
identical requests. Storage is delegated to Redis; concurrent misses for
the same key simply overwrite each other.
"""

from __future__ import annotations

import base64
import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from redis.asyncio import Redis

from .logging_config import logger

CACHE_KEY_TEMPLATE = "gateway:cache:{digest}"
CACHEABLE_METHOD = "POST"

# Response headers that describe the original transfer, not the content.
_UNCACHED_HEADERS = frozenset(
    {
        "connection",
        "content-length",
        "date",
        "keep-alive",
        "set-cookie",
        "transfer-encoding",
    }
)


class CacheAnnotation:
    HIT = "HIT"
    MISS = "MISS"
    NOT_APPLICABLE = "N/A"


@dataclass
class CacheEntry:
    body: bytes
    headers: list[tuple[str, str]] = field(default_factory=list)
    status_code: int = 200
    stored_at: float = field(default_factory=time.time)
    ttl: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "body": base64.b64encode(self.body).decode("ascii"),
                "headers": [list(pair) for pair in self.headers],
                "status_code": self.status_code,
                "stored_at": self.stored_at,
                "ttl": self.ttl,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            body=base64.b64decode(data["body"]),
            headers=[(str(k), str(v)) for k, v in data.get("headers", [])],
            status_code=int(data["status_code"]),
            stored_at=float(data.get("stored_at", 0.0)),
            ttl=int(data.get("ttl", 0)),
        )


def cacheable_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in _UNCACHED_HEADERS]


def is_cacheable(
    method: str,
    path: str,
    model: str,
    *,
    non_cacheable_paths: Iterable[str],
    non_cacheable_model_keywords: Iterable[str],
) -> bool:
    """
    Only generation calls (POST) are cached, and never for excluded
    paths or image/vision/multimodal models.
    """
    if method.upper() != CACHEABLE_METHOD:
        return False
    if any(fragment and fragment in path for fragment in non_cacheable_paths):
        return False
    lowered = (model or "").lower()
    if any(keyword and keyword.lower() in lowered for keyword in non_cacheable_model_keywords):
        return False
    return True


def derive_cache_key(url: str, method: str, body: bytes) -> str:
    """
    Hex SHA-256 over url + method + body.

    Callers must pass a URL with credential query parameters removed.
    """
    digest = hashlib.sha256()
    digest.update(url.encode("utf-8"))
    digest.update(method.upper().encode("utf-8"))
    digest.update(body or b"")
    return digest.hexdigest()


class CacheGateway(Protocol):
    async def lookup(self, key: str) -> Optional[CacheEntry]: ...

    async def store(self, key: str, entry: CacheEntry, ttl: int) -> None: ...


class RedisCacheGateway:
    """
    Stores serialized CacheEntry payloads under gateway:cache:<digest>.
    """

    def __init__(self, redis: Redis) -> None:
        self.redis = redis

    async def lookup(self, key: str) -> Optional[CacheEntry]:
        raw = await self.redis.get(CACHE_KEY_TEMPLATE.format(digest=key))
        if raw is None:
            return None
        try:
            return CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError):
            # Corrupted entry; treat as a miss and let the next store replace it.
            logger.warning("cache: discarding unreadable entry %s", key)
            return None

    async def store(self, key: str, entry: CacheEntry, ttl: int) -> None:
        entry.ttl = ttl
        await self.redis.set(CACHE_KEY_TEMPLATE.format(digest=key), entry.to_json(), ex=ttl)


__all__ = [
    "CACHE_KEY_TEMPLATE",
    "CacheAnnotation",
    "CacheEntry",
    "CacheGateway",
    "RedisCacheGateway",
    "cacheable_headers",
    "derive_cache_key",
    "is_cacheable",
]
