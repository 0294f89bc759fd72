"""
Immutable runtime configuration handed to every pipeline component.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from .logging_config import logger
from .routing.route_table import RouteTable
from .settings import (
    DEFAULT_ROUTE_MAP,
    Settings,
    load_credential_pool_env,
    settings as default_settings,
)

INTELLIGENT_PATH = "/v1/chat/completions"


@dataclass(frozen=True)
class GatewayConfig:
    routes: RouteTable
    master_key: Optional[str] = None
    # Raw JSON strings keyed by service token; validated at rotation time.
    credential_pools: Mapping[str, str] = field(default_factory=dict)
    cache_enabled: bool = True
    cache_ttl_seconds: int = 1800
    non_cacheable_paths: tuple[str, ...] = ()
    non_cacheable_model_keywords: tuple[str, ...] = ()
    intelligent_path: str = INTELLIGENT_PATH

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "credential_pools", MappingProxyType(dict(self.credential_pools))
        )
        object.__setattr__(
            self,
            "non_cacheable_model_keywords",
            tuple(k.lower() for k in self.non_cacheable_model_keywords),
        )

    @property
    def rotation_enabled(self) -> bool:
        return bool(self.master_key)


def build_gateway_config(
    cfg: Settings | None = None, *, env_file: str | None = None
) -> GatewayConfig:
    """
    Load the route table, master key, key pools and cache policy once.
    """
    cfg = cfg or default_settings
    if cfg.route_map_raw:
        routes = RouteTable.from_json(cfg.route_map_raw)
    else:
        routes = RouteTable(DEFAULT_ROUTE_MAP)

    pools = load_credential_pool_env(routes.tokens(), env_file=env_file)
    logger.info(
        "Gateway config loaded: routes=%s rotation=%s pools=%s cache=%s ttl=%ss",
        routes.describe(),
        bool(cfg.master_key),
        sorted(pools),
        cfg.cache_enabled,
        cfg.cache_ttl_seconds,
    )
    return GatewayConfig(
        routes=routes,
        master_key=cfg.master_key or None,
        credential_pools=pools,
        cache_enabled=cfg.cache_enabled,
        cache_ttl_seconds=cfg.cache_ttl_seconds,
        non_cacheable_paths=tuple(cfg.get_non_cacheable_paths()),
        non_cacheable_model_keywords=tuple(cfg.get_non_cacheable_model_keywords()),
    )


__all__ = ["GatewayConfig", "INTELLIGENT_PATH", "build_gateway_config"]
