"""
Global pytest configuration and fixtures for rollout engine testing.

Engine settings here use millisecond timeouts and zero backoff so full
rollouts, including failures and rollbacks, run in well under a second.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from progressive_rollout.config import ObservabilityConfig, RetryConfig, RolloutEngineConfig
from progressive_rollout.metrics import RolloutMetrics
from progressive_rollout.strategies import (
    InMemoryRolloutStore,
    RolloutCoordinator,
    SingleFlightLock,
)
from tests.utils import RecordingDeployer, ScriptedHealthEvaluator, make_targets

FAST_RETRY = RetryConfig(max_attempts=2, min_wait=0, max_wait=0, multiplier=0)


@pytest.fixture
def engine_config() -> RolloutEngineConfig:
    """Provide a fast engine configuration."""
    return RolloutEngineConfig(
        environment="testing",
        max_global_concurrency=20,
        deploy_timeout_seconds=0.5,
        health_timeout_seconds=0.5,
        deploy_retry=FAST_RETRY,
        rollback_retry=FAST_RETRY,
        observability=ObservabilityConfig(service_name="rollout-tests", log_level="DEBUG"),
    )


@pytest.fixture
def deployer() -> RecordingDeployer:
    return RecordingDeployer(initial_version="v1")


@pytest.fixture
def health_evaluator() -> ScriptedHealthEvaluator:
    return ScriptedHealthEvaluator()


@pytest.fixture
def store() -> InMemoryRolloutStore:
    return InMemoryRolloutStore()


@pytest.fixture
def subject_lock() -> SingleFlightLock:
    return SingleFlightLock()


@pytest.fixture
def metrics() -> RolloutMetrics:
    return RolloutMetrics()


@pytest.fixture
def targets():
    """Ten production clusters."""
    return make_targets(10)


@pytest.fixture
def alerts() -> list:
    """Collects (rollout, failure) pairs passed to alert handlers."""
    return []


@pytest_asyncio.fixture
async def coordinator(
    deployer, health_evaluator, engine_config, store, subject_lock, metrics, alerts
) -> AsyncGenerator[RolloutCoordinator, None]:
    """Provide a coordinator wired to the in-memory fakes."""
    coordinator = RolloutCoordinator(
        deployer,
        health_evaluator,
        config=engine_config,
        store=store,
        lock=subject_lock,
        metrics=metrics,
        alert_handlers=[lambda rollout, failure: alerts.append((rollout, failure))],
    )
    yield coordinator
    await coordinator.shutdown()
