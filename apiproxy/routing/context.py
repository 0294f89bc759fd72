from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx


class RoutingMode(str, Enum):
    TRANSPARENT = "transparent"
    INTELLIGENT = "intelligent"


BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass(frozen=True)
class InboundRequest:
    """
    Snapshot of an inbound call. ``body`` is the single owned buffer
    every stage reads from.
    """

    method: str
    url: httpx.URL
    headers: httpx.Headers
    body: bytes = b""

    @property
    def path_segments(self) -> list[str]:
        return [segment for segment in self.url.path.split("/") if segment]

    @property
    def carries_body(self) -> bool:
        return self.method.upper() in BODY_METHODS


@dataclass
class RequestContext:
    mode: RoutingMode
    service: str
    model: str
    request: InboundRequest
    cacheable: bool = False
    rewritten_body: Optional[bytes] = None
    caller_credential: Optional[str] = None
    override_credential: Optional[str] = None

    @property
    def outbound_body(self) -> bytes:
        if self.rewritten_body is not None:
            return self.rewritten_body
        return self.request.body


__all__ = ["BODY_METHODS", "InboundRequest", "RequestContext", "RoutingMode"]
