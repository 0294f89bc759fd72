from .coordinator import RotationCoordinator, pool_offset
from .counter_store import CounterStore, SqlCounterStore

__all__ = ["CounterStore", "RotationCoordinator", "SqlCounterStore", "pool_offset"]
