"""
Progressive Rollout - Health-gated rollout orchestration engine

Moves a subject (service build, configuration, feature flag) from a previous
version to a target version across a set of targets, stage by stage, judging
health between stages and reverting automatically when a gate fails.

Key Features:
- Direct, canary, rolling and blue/green strategies
- Deterministic SHA-256 bucketing for canary exposure
- Health gates with absolute and baseline-relative thresholds
- Single-flight locking per subject
- Automatic and manual rollback with per-target retry budgets
- Structured logging, Prometheus metrics and YAML/env configuration

Usage:
    >>> from progressive_rollout import RolloutCoordinator, RolloutSpec, CanaryStrategy
    >>> coordinator = RolloutCoordinator(deployer, health_evaluator)
    >>> rollout_id = await coordinator.start(
    ...     RolloutSpec(
    ...         subject="checkout-service",
    ...         target_version="2.4.0",
    ...         previous_version="2.3.1",
    ...         strategy=CanaryStrategy(initial_percentage=10, increment_percentage=30),
    ...         targets=targets,
    ...     )
    ... )
"""

__version__ = "0.1.0"

# Configuration system
from .config import ConfigManager, RolloutEngineConfig, load_config

# Exceptions
from .exceptions import (
    AlreadyInProgressError,
    ConfigurationError,
    HealthGateFailure,
    InvalidStateTransitionError,
    InvalidStrategyError,
    PlanningError,
    RollbackFailure,
    RolloutError,
    RolloutNotFoundError,
    RolloutValidationError,
    TargetDeployError,
)

# Logging and metrics
from .logger import LogConfig, get_logger, setup_logging
from .metrics import RolloutMetrics

# Strategies and orchestration
from .strategies import (
    BlueGreenStrategy,
    CanaryStrategy,
    Deployer,
    DeployResult,
    DirectStrategy,
    EnvironmentType,
    HealthEvaluator,
    HealthSnapshot,
    HealthThresholds,
    InMemoryRolloutStore,
    Rollout,
    RolloutCoordinator,
    RolloutSpec,
    RolloutStatus,
    RolloutStore,
    RollingStrategy,
    SingleFlightLock,
    StagePlanner,
    StrategyKind,
    Target,
    TargetStatus,
    create_rollout_coordinator,
    recommend_strategy,
)

__all__ = [
    "__version__",
    # Configuration
    "RolloutEngineConfig",
    "ConfigManager",
    "load_config",
    # Exceptions
    "RolloutError",
    "ConfigurationError",
    "RolloutValidationError",
    "InvalidStrategyError",
    "PlanningError",
    "AlreadyInProgressError",
    "RolloutNotFoundError",
    "InvalidStateTransitionError",
    "TargetDeployError",
    "HealthGateFailure",
    "RollbackFailure",
    # Observability
    "LogConfig",
    "get_logger",
    "setup_logging",
    "RolloutMetrics",
    # Strategies
    "StrategyKind",
    "RolloutStatus",
    "TargetStatus",
    "EnvironmentType",
    "Target",
    "HealthThresholds",
    "HealthSnapshot",
    "DeployResult",
    "DirectStrategy",
    "CanaryStrategy",
    "RollingStrategy",
    "BlueGreenStrategy",
    "RolloutSpec",
    "Rollout",
    "StagePlanner",
    "recommend_strategy",
    "Deployer",
    "HealthEvaluator",
    "RolloutStore",
    "InMemoryRolloutStore",
    "SingleFlightLock",
    "RolloutCoordinator",
    "create_rollout_coordinator",
]
