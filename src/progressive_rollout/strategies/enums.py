"""
Rollout Strategy Enums

Core enumeration types for rollout strategies, rollout and target status,
target environments, stage actions and health gate verdicts.
"""

from enum import Enum


class StrategyKind(Enum):
    """Rollout strategy types."""

    DIRECT = "direct"
    CANARY = "canary"
    ROLLING = "rolling"
    BLUE_GREEN = "blue_green"


class RolloutStatus(Enum):
    """Rollout lifecycle status."""

    PLANNING = "planning"
    DEPLOYING = "deploying"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {RolloutStatus.COMPLETED, RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED}
)


class TargetStatus(Enum):
    """Per-target status within a rollout."""

    PENDING = "pending"
    ACTIVE = "active"
    HEALTHY = "healthy"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class EnvironmentType(Enum):
    """Target environments, in promotion order."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def rank(self) -> int:
        return _ENVIRONMENT_ORDER.index(self)


_ENVIRONMENT_ORDER = (
    EnvironmentType.DEVELOPMENT,
    EnvironmentType.STAGING,
    EnvironmentType.PRODUCTION,
)


class StageAction(Enum):
    """What a stage does to its targets."""

    APPLY = "apply"
    SWITCH_TRAFFIC = "switch_traffic"


class GateVerdict(Enum):
    """Health gate results."""

    PASS = "pass"
    FAIL = "fail"
