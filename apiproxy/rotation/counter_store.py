"""
Durable round-robin counters shared by every gateway instance.

A single ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` statement both
creates the row on first use (index 1) and advances it modulo the pool
size afterwards, so the database serializes concurrent rotations for the
same service and each caller observes its own index.
"""

from __future__ import annotations

from typing import Callable, Protocol

import anyio
from sqlalchemy import func
from sqlalchemy.orm import Session

from apiproxy.logging_config import logger
from apiproxy.models import RotationState


class CounterStore(Protocol):
    async def next_index(self, service: str, modulus: int) -> int:
        """Atomically advance and return the 1-based index for ``service``."""
        ...


class SqlCounterStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    async def next_index(self, service: str, modulus: int) -> int:
        if modulus < 1:
            raise ValueError(f"modulus must be >= 1, got {modulus}")
        return await anyio.to_thread.run_sync(self._next_index_sync, service, modulus)

    def _next_index_sync(self, service: str, modulus: int) -> int:
        session = self.session_factory()
        try:
            stmt = self._build_upsert_stmt(session, service, modulus)
            value = session.execute(stmt).scalar_one()
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("rotation counter upsert failed for service=%s", service)
            raise
        finally:
            session.close()
        return int(value)

    @staticmethod
    def _build_upsert_stmt(session: Session, service: str, modulus: int):
        dialect_name = getattr(session.get_bind(), "dialect", None)
        dialect_name = getattr(dialect_name, "name", None)

        if dialect_name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as upsert_insert
        else:
            from sqlalchemy.dialects.sqlite import insert as upsert_insert

        insert_stmt = upsert_insert(RotationState).values(service=service, next_index=1)
        return insert_stmt.on_conflict_do_update(
            index_elements=[RotationState.service],
            set_={
                # Stored value may come from a larger pool before a config
                # reload; the modulo folds it back into [1, modulus].
                "next_index": (RotationState.next_index % modulus) + 1,
                "updated_at": func.now(),
            },
        ).returning(RotationState.next_index)


__all__ = ["CounterStore", "SqlCounterStore"]
