from __future__ import annotations

from sqlalchemy import Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class RotationState(TimestampMixin, Base):
    """
    Durable round-robin cursor, one row per service.

    ``next_index`` holds the 1-based position handed out by the most
    recent rotation; it is only ever changed through the atomic upsert in
    apiproxy.rotation.counter_store.
    """

    __tablename__ = "rotation_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    next_index: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))


__all__ = ["RotationState"]
