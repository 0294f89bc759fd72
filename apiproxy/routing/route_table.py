"""
Static service-token -> upstream-host mapping.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Optional


class RouteTable(Mapping[str, str]):
    """
    Read-only mapping of lowercase service tokens to upstream hosts.

    Built once at startup; instances are shared by every request.
    """

    __slots__ = ("_routes",)

    def __init__(self, routes: Mapping[str, str]) -> None:
        normalised: dict[str, str] = {}
        for token, host in routes.items():
            key = str(token).strip().lower()
            target = str(host).strip()
            if not key or not target:
                raise ValueError(f"Invalid route entry {token!r} -> {host!r}")
            if key in normalised:
                raise ValueError(f"Duplicate route token {key!r}")
            normalised[key] = target
        if not normalised:
            raise ValueError("Route table must contain at least one route")
        self._routes = MappingProxyType(normalised)

    @classmethod
    def from_json(cls, raw: str) -> "RouteTable":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("ROUTE_MAP must be a JSON object")
        return cls(data)

    def __getitem__(self, token: str) -> str:
        return self._routes[token]

    def __iter__(self) -> Iterator[str]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def resolve(self, token: Optional[str]) -> Optional[str]:
        """Return the upstream host for a token, or None when unknown."""
        if not token:
            return None
        return self._routes.get(token)

    def tokens(self) -> list[str]:
        return list(self._routes)

    def describe(self) -> str:
        return ", ".join(self._routes)

    def __repr__(self) -> str:
        return f"RouteTable({dict(self._routes)!r})"


__all__ = ["RouteTable"]
