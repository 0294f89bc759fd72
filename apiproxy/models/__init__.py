from .base import Base, TimestampMixin
from .rotation_state import RotationState

__all__ = [
    "Base",
    "RotationState",
    "TimestampMixin",
]
