"""
Rollout Strategies Package

Strategy enums and models, the stage planner, the collaborator interfaces,
managers for health gating, locking, persistence and rollback, and the
coordinator that drives rollouts through them.
"""

from .bucketing import bucket, bucket_order, is_included
from .coordinator import RolloutCoordinator, create_rollout_coordinator
from .enums import (
    EnvironmentType,
    GateVerdict,
    RolloutStatus,
    StageAction,
    StrategyKind,
    TargetStatus,
)
from .interfaces import Deployer, HealthEvaluator
from .managers import (
    GateResult,
    HealthGate,
    InMemoryRolloutStore,
    LockHandle,
    RollbackController,
    RollbackResult,
    RolloutStore,
    SingleFlightLock,
    TargetOperator,
)
from .models import (
    REVERTED_STAGE_INDEX,
    BlueGreenStrategy,
    CanaryStrategy,
    DeployResult,
    DirectStrategy,
    HealthSnapshot,
    HealthThresholds,
    Rollout,
    RolloutEvent,
    RolloutSpec,
    RollingStrategy,
    Stage,
    StrategyConfig,
    Target,
    strategy_from_dict,
)
from .planner import StagePlanner, recommend_strategy

__all__ = [
    # Enums
    "StrategyKind",
    "RolloutStatus",
    "TargetStatus",
    "EnvironmentType",
    "StageAction",
    "GateVerdict",
    # Models
    "Target",
    "HealthThresholds",
    "HealthSnapshot",
    "DeployResult",
    "DirectStrategy",
    "CanaryStrategy",
    "RollingStrategy",
    "BlueGreenStrategy",
    "StrategyConfig",
    "strategy_from_dict",
    "Stage",
    "RolloutEvent",
    "RolloutSpec",
    "Rollout",
    "REVERTED_STAGE_INDEX",
    # Planning
    "StagePlanner",
    "recommend_strategy",
    "bucket",
    "bucket_order",
    "is_included",
    # Interfaces
    "Deployer",
    "HealthEvaluator",
    # Managers
    "GateResult",
    "HealthGate",
    "LockHandle",
    "SingleFlightLock",
    "RolloutStore",
    "InMemoryRolloutStore",
    "TargetOperator",
    "RollbackController",
    "RollbackResult",
    # Coordinator
    "RolloutCoordinator",
    "create_rollout_coordinator",
]
