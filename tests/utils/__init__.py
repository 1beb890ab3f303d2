"""
Test utilities package for the rollout engine.

Provides in-memory deployer and health evaluator fakes plus helpers.
"""

from .fakes import (
    ANY_VERSION,
    RecordingDeployer,
    ScriptedHealthEvaluator,
    make_targets,
    wait_until,
)

__all__ = [
    "ANY_VERSION",
    "RecordingDeployer",
    "ScriptedHealthEvaluator",
    "make_targets",
    "wait_until",
]
