"""
Round-robin selection of upstream keys for callers holding the master key.
"""

from __future__ import annotations

import json
from typing import List, Optional

from apiproxy.config import GatewayConfig
from apiproxy.credentials import credential_matches
from apiproxy.errors import NotConfigured, StoreFailure
from apiproxy.logging_config import logger
from apiproxy.settings import credential_pool_env_key

from .counter_store import CounterStore


def pool_offset(raw_index: int, pool_size: int) -> int:
    """
    Map a 1-based counter value onto a 0-based pool offset.

    Values left over from a differently sized pool are folded back into
    range instead of indexing past the end.
    """
    return (raw_index - 1 + pool_size) % pool_size


class RotationCoordinator:
    def __init__(self, config: GatewayConfig, counter_store: CounterStore) -> None:
        self.config = config
        self.counter_store = counter_store

    def is_activated(self, incoming_credential: Optional[str]) -> bool:
        return self.config.rotation_enabled and credential_matches(
            incoming_credential, self.config.master_key
        )

    def resolve_pool(self, service: str) -> List[str]:
        env_key = credential_pool_env_key(service)
        raw = self.config.credential_pools.get(service)
        if raw is None or not raw.strip():
            raise NotConfigured(
                f"Key rotation requested but {env_key} is not configured",
                details={"config_key": env_key},
            )
        try:
            pool = json.loads(raw)
        except ValueError:
            pool = None
        if (
            not isinstance(pool, list)
            or not pool
            or not all(isinstance(item, str) and item for item in pool)
        ):
            raise NotConfigured(
                f"{env_key} must be a non-empty JSON array of strings",
                details={"config_key": env_key},
            )
        return pool

    async def select_credential(
        self, service: str, incoming_credential: Optional[str]
    ) -> Optional[str]:
        """
        Return the pooled key to use for this request, or None when
        rotation is not activated and the caller's own key should be
        forwarded unchanged.
        """
        if not self.is_activated(incoming_credential):
            return None

        pool = self.resolve_pool(service)
        try:
            raw_index = await self.counter_store.next_index(service, len(pool))
        except Exception as exc:
            # Never fall back to the caller's key: the master secret would
            # leak upstream and pool exhaustion would be masked.
            raise StoreFailure(
                f"Rotation counter store unavailable for service '{service}'"
            ) from exc

        offset = pool_offset(int(raw_index), len(pool))
        logger.info(
            "rotation: service=%s raw_index=%s offset=%d pool_size=%d",
            service,
            raw_index,
            offset,
            len(pool),
        )
        return pool[offset]


__all__ = ["RotationCoordinator", "pool_offset"]
