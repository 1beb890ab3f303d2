"""Data models for rollout strategies."""

import builtins
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Union

from ..exceptions import (
    InvalidStateTransitionError,
    InvalidStrategyError,
    RolloutValidationError,
)
from .enums import (
    EnvironmentType,
    RolloutStatus,
    StageAction,
    StrategyKind,
    TargetStatus,
)

# current_stage_index value once every touched target has been reverted
REVERTED_STAGE_INDEX = -1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Target:
    """A unit of exposure: a cluster, or a user/request context."""

    target_id: str
    key: str = ""
    environment: EnvironmentType = EnvironmentType.PRODUCTION
    name: str = ""

    def __post_init__(self):
        if not self.target_id:
            raise RolloutValidationError("Target id must not be empty")
        # key and name fall back to the id
        if not self.key:
            object.__setattr__(self, "key", self.target_id)
        if not self.name:
            object.__setattr__(self, "name", self.target_id)

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any]) -> "Target":
        environment = data.get("environment", EnvironmentType.PRODUCTION)
        try:
            environment = EnvironmentType(environment)
        except ValueError:
            raise RolloutValidationError(f"Unknown environment: {environment}")
        return cls(
            target_id=data["target_id"],
            key=data.get("key", ""),
            environment=environment,
            name=data.get("name", ""),
        )


@dataclass(frozen=True)
class HealthThresholds:
    """Limits a health snapshot must satisfy to pass a gate."""

    success_rate_min: float = 0.95
    metric_maxima: builtins.dict[str, float] = field(default_factory=dict)
    # metric -> maximum percentage increase over the baseline snapshot
    max_relative_increase: builtins.dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.success_rate_min <= 1.0:
            raise InvalidStrategyError(
                f"success_rate_min must be within [0, 1], got {self.success_rate_min}"
            )

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any] | None) -> "HealthThresholds":
        data = data or {}
        return cls(
            success_rate_min=float(data.get("success_rate_min", 0.95)),
            metric_maxima={k: float(v) for k, v in data.get("metric_maxima", {}).items()},
            max_relative_increase={
                k: float(v) for k, v in data.get("max_relative_increase", {}).items()
            },
        )


@dataclass(frozen=True)
class HealthSnapshot:
    """Health of a set of targets at one point in time."""

    success_rate: float
    metrics: builtins.dict[str, float] = field(default_factory=dict)
    target_ids: tuple[str, ...] = ()
    captured_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> builtins.dict[str, Any]:
        return {
            "success_rate": self.success_rate,
            "metrics": dict(self.metrics),
            "target_ids": list(self.target_ids),
            "captured_at": self.captured_at.isoformat(),
        }


@dataclass(frozen=True)
class DeployResult:
    """Outcome of one Deployer call."""

    success: bool
    message: str = ""
    details: builtins.dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "") -> "DeployResult":
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, reason: str) -> "DeployResult":
        return cls(success=False, message=reason)


def _check_fraction(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise InvalidStrategyError(f"{name} must be within [0, 1], got {value}")


def _check_duration(name: str, value: float) -> None:
    if value < 0:
        raise InvalidStrategyError(f"{name} must not be negative, got {value}")


@dataclass(frozen=True)
class DirectStrategy:
    """All targets at once."""

    kind: ClassVar[StrategyKind] = StrategyKind.DIRECT

    skip_health_checks: bool = True
    health_check_window_seconds: float = 30.0
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    abort_on_any_failure: bool = True

    def __post_init__(self):
        _check_duration("health_check_window_seconds", self.health_check_window_seconds)


@dataclass(frozen=True)
class CanaryStrategy:
    """Growing percentage of targets, judged between stages."""

    kind: ClassVar[StrategyKind] = StrategyKind.CANARY

    initial_percentage: int = 10
    increment_percentage: int = 20
    evaluation_window_seconds: float = 900.0
    # fraction of a stage's new targets that must apply successfully
    success_threshold: float = 0.9
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    abort_on_any_failure: bool = False

    def __post_init__(self):
        if not 1 <= self.initial_percentage <= 100:
            raise InvalidStrategyError(
                f"initial_percentage must be within [1, 100], got {self.initial_percentage}"
            )
        if not 1 <= self.increment_percentage <= 100:
            raise InvalidStrategyError(
                f"increment_percentage must be within [1, 100], got {self.increment_percentage}"
            )
        _check_duration("evaluation_window_seconds", self.evaluation_window_seconds)
        _check_fraction("success_threshold", self.success_threshold)


@dataclass(frozen=True)
class RollingStrategy:
    """Targets one batch at a time, in environment order."""

    kind: ClassVar[StrategyKind] = StrategyKind.ROLLING

    evaluation_window_seconds: float = 30.0
    pause_between_stages_seconds: float = 0.0
    order: tuple[str, ...] | None = None
    batch_size: int = 1
    success_threshold: float = 0.9
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    abort_on_any_failure: bool = False

    def __post_init__(self):
        if self.batch_size < 1:
            raise InvalidStrategyError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.order is not None:
            object.__setattr__(self, "order", tuple(self.order))
            if len(set(self.order)) != len(self.order):
                raise InvalidStrategyError("Rolling order contains duplicate target ids")
        _check_duration("evaluation_window_seconds", self.evaluation_window_seconds)
        _check_duration("pause_between_stages_seconds", self.pause_between_stages_seconds)
        _check_fraction("success_threshold", self.success_threshold)


@dataclass(frozen=True)
class BlueGreenStrategy:
    """Deploy green, validate, switch all traffic at once."""

    kind: ClassVar[StrategyKind] = StrategyKind.BLUE_GREEN

    validation_period_seconds: float = 300.0
    post_switch_monitoring_period_seconds: float = 60.0
    retention_period_seconds: float = 3600.0
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    abort_on_any_failure: bool = True

    def __post_init__(self):
        _check_duration("validation_period_seconds", self.validation_period_seconds)
        _check_duration(
            "post_switch_monitoring_period_seconds",
            self.post_switch_monitoring_period_seconds,
        )
        _check_duration("retention_period_seconds", self.retention_period_seconds)


StrategyConfig = Union[DirectStrategy, CanaryStrategy, RollingStrategy, BlueGreenStrategy]

_STRATEGY_TYPES: builtins.dict[StrategyKind, type] = {
    StrategyKind.DIRECT: DirectStrategy,
    StrategyKind.CANARY: CanaryStrategy,
    StrategyKind.ROLLING: RollingStrategy,
    StrategyKind.BLUE_GREEN: BlueGreenStrategy,
}


def strategy_from_dict(data: builtins.dict[str, Any]) -> StrategyConfig:
    """Build a strategy config from a mapping whose ``kind`` selects the type."""
    data = dict(data)
    try:
        kind = StrategyKind(data.pop("kind"))
    except KeyError:
        raise InvalidStrategyError("Strategy mapping is missing 'kind'")
    except ValueError as e:
        raise InvalidStrategyError(f"Unknown strategy kind: {e}")

    if "thresholds" in data:
        data["thresholds"] = HealthThresholds.from_dict(data["thresholds"])
    if data.get("order") is not None:
        data["order"] = tuple(data["order"])

    try:
        return _STRATEGY_TYPES[kind](**data)
    except TypeError as e:
        raise InvalidStrategyError(f"Invalid {kind.value} strategy: {e}")


@dataclass(frozen=True)
class Stage:
    """One step of a rollout plan. Computed once, never mutated."""

    index: int
    targets: tuple[Target, ...]
    percentage: int | None = None
    action: StageAction = StageAction.APPLY
    evaluation_window_seconds: float = 0.0
    requires_health_check: bool = False
    pause_after_seconds: float = 0.0
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    success_threshold: float = 1.0
    abort_on_any_failure: bool = True

    @property
    def target_ids(self) -> tuple[str, ...]:
        return tuple(t.target_id for t in self.targets)


@dataclass
class RolloutEvent:
    """Audit trail entry for a rollout."""

    rollout_id: str
    event_type: str
    status: RolloutStatus
    stage_index: int | None = None
    details: builtins.dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class RolloutSpec:
    """Request to start a rollout."""

    subject: str
    target_version: Any
    previous_version: Any
    strategy: StrategyConfig
    targets: builtins.list[Target]
    auto_rollback_enabled: bool = True
    rollout_id: str | None = None
    metadata: builtins.dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.subject:
            raise RolloutValidationError("Rollout subject must not be empty")

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any]) -> "RolloutSpec":
        try:
            return cls(
                subject=data["subject"],
                target_version=data["target_version"],
                previous_version=data.get("previous_version"),
                strategy=strategy_from_dict(data["strategy"]),
                targets=[Target.from_dict(t) for t in data.get("targets", [])],
                auto_rollback_enabled=data.get("auto_rollback_enabled", True),
                rollout_id=data.get("rollout_id"),
                metadata=dict(data.get("metadata", {})),
            )
        except KeyError as e:
            raise RolloutValidationError(f"Rollout spec is missing {e}")


_ALLOWED_TRANSITIONS: builtins.dict[RolloutStatus, frozenset[RolloutStatus]] = {
    RolloutStatus.PLANNING: frozenset({RolloutStatus.DEPLOYING}),
    RolloutStatus.DEPLOYING: frozenset(
        {RolloutStatus.COMPLETED, RolloutStatus.ROLLING_BACK}
    ),
    RolloutStatus.ROLLING_BACK: frozenset(
        {RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED}
    ),
    RolloutStatus.COMPLETED: frozenset(),
    RolloutStatus.ROLLED_BACK: frozenset(),
    RolloutStatus.FAILED: frozenset(),
}


@dataclass
class Rollout:
    """Rollout aggregate root. Mutated only by the coordinator holding its lock."""

    rollout_id: str
    subject: str
    target_version: Any
    previous_version: Any
    strategy: StrategyConfig
    targets: tuple[Target, ...]
    auto_rollback_enabled: bool = True
    status: RolloutStatus = RolloutStatus.PLANNING
    current_stage_index: int = 0
    stage_count: int = 0
    target_statuses: builtins.dict[str, TargetStatus] = field(default_factory=dict)
    target_errors: builtins.dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rolled_back_at: datetime | None = None
    rollback_reason: str | None = None
    error_message: str | None = None
    halted_reason: str | None = None
    failed_stage_index: int | None = None
    unreverted_targets: builtins.dict[str, str] = field(default_factory=dict)
    blue_retained_until: datetime | None = None
    # pre-rollout snapshot for relative thresholds
    baseline: HealthSnapshot | None = None
    events: builtins.list[RolloutEvent] = field(default_factory=list)
    metadata: builtins.dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.targets = tuple(self.targets)
        for target in self.targets:
            self.target_statuses.setdefault(target.target_id, TargetStatus.PENDING)

    @classmethod
    def from_spec(cls, spec: RolloutSpec, stage_count: int) -> "Rollout":
        return cls(
            rollout_id=spec.rollout_id or str(uuid.uuid4()),
            subject=spec.subject,
            target_version=spec.target_version,
            previous_version=spec.previous_version,
            strategy=spec.strategy,
            targets=tuple(spec.targets),
            auto_rollback_enabled=spec.auto_rollback_enabled,
            stage_count=stage_count,
            metadata=dict(spec.metadata),
        )

    @property
    def strategy_kind(self) -> StrategyKind:
        return self.strategy.kind

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition_to(self, status: RolloutStatus) -> None:
        """Move along one edge of the rollout state machine."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Cannot transition rollout {self.rollout_id} "
                f"from {self.status.value} to {status.value}",
                error_code="INVALID_TRANSITION",
                details={"from": self.status.value, "to": status.value},
            )

        now = _utcnow()
        if status == RolloutStatus.DEPLOYING:
            self.started_at = now
        elif status == RolloutStatus.COMPLETED:
            self.completed_at = now
            if isinstance(self.strategy, BlueGreenStrategy):
                self.blue_retained_until = now + timedelta(
                    seconds=self.strategy.retention_period_seconds
                )
        elif status == RolloutStatus.ROLLED_BACK:
            self.rolled_back_at = now
            self.completed_at = now
            self.current_stage_index = REVERTED_STAGE_INDEX
        elif status == RolloutStatus.FAILED:
            self.completed_at = now

        self.status = status

    def mark_target(
        self, target_id: str, status: TargetStatus, error: str | None = None
    ) -> None:
        if target_id not in self.target_statuses:
            raise RolloutValidationError(
                f"Target {target_id} is not part of rollout {self.rollout_id}"
            )
        self.target_statuses[target_id] = status
        if error is not None:
            self.target_errors[target_id] = error

    def targets_with(self, *statuses: TargetStatus) -> builtins.list[Target]:
        return [t for t in self.targets if self.target_statuses[t.target_id] in statuses]

    def touched_targets(self) -> builtins.list[Target]:
        """Targets that currently run the new version."""
        return self.targets_with(TargetStatus.ACTIVE, TargetStatus.HEALTHY)

    def to_dict(self) -> builtins.dict[str, Any]:
        """Status summary, shaped like the persisted record."""
        return {
            "rollout_id": self.rollout_id,
            "subject": self.subject,
            "strategy": self.strategy_kind.value,
            "status": self.status.value,
            "target_version": self.target_version,
            "previous_version": self.previous_version,
            "current_stage_index": self.current_stage_index,
            "stage_count": self.stage_count,
            "target_statuses": {k: v.value for k, v in self.target_statuses.items()},
            "target_errors": dict(self.target_errors),
            "auto_rollback_enabled": self.auto_rollback_enabled,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "rolled_back_at": self.rolled_back_at.isoformat()
            if self.rolled_back_at
            else None,
            "rollback_reason": self.rollback_reason,
            "error_message": self.error_message,
            "halted_reason": self.halted_reason,
            "unreverted_targets": dict(self.unreverted_targets),
            "blue_retained_until": self.blue_retained_until.isoformat()
            if self.blue_retained_until
            else None,
            "event_count": len(self.events),
        }
