"""Rollout managers package."""

from .health import GateResult, HealthGate
from .locking import LockHandle, SingleFlightLock
from .rollback import RollbackController, RollbackResult
from .store import InMemoryRolloutStore, RolloutStore
from .targets import TargetOperator

__all__ = [
    "GateResult",
    "HealthGate",
    "InMemoryRolloutStore",
    "LockHandle",
    "RollbackController",
    "RollbackResult",
    "RolloutStore",
    "SingleFlightLock",
    "TargetOperator",
]
