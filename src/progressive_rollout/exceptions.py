"""
Core exceptions for the progressive rollout engine.

This module defines the exception hierarchy used throughout the engine,
providing clear error types for the different rollout failure scenarios.
Only configuration, validation, single-flight and lookup errors ever reach
callers of the coordinator; the rest are recorded on the rollout itself.
"""

from typing import Any, Dict, Optional


class RolloutError(Exception):
    """Base exception for all rollout-related errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigurationError(RolloutError):
    """Raised when configuration is invalid or missing."""

    pass


class RolloutValidationError(RolloutError):
    """Raised when rollout input fails validation."""

    pass


class InvalidStrategyError(RolloutValidationError):
    """Raised when a strategy configuration is malformed."""

    pass


class PlanningError(RolloutValidationError):
    """Raised when a stage plan cannot be produced for a target set."""

    pass


class AlreadyInProgressError(RolloutError):
    """Raised when a subject already has an active rollout."""

    def __init__(self, subject: str, active_rollout_id: Optional[str] = None) -> None:
        super().__init__(
            f"Rollout already in progress for subject '{subject}'",
            error_code="ALREADY_IN_PROGRESS",
            details={"subject": subject, "active_rollout_id": active_rollout_id},
        )
        self.subject = subject
        self.active_rollout_id = active_rollout_id


class RolloutNotFoundError(RolloutError):
    """Raised when a rollout id is unknown."""

    def __init__(self, rollout_id: str) -> None:
        super().__init__(
            f"Rollout not found: {rollout_id}",
            error_code="ROLLOUT_NOT_FOUND",
            details={"rollout_id": rollout_id},
        )
        self.rollout_id = rollout_id


class InvalidStateTransitionError(RolloutError):
    """Raised when a rollout is moved along an edge the state machine forbids."""

    pass


class TargetDeployError(RolloutError):
    """Raised when applying a version to a single target fails or times out."""

    def __init__(self, target_id: str, reason: str) -> None:
        super().__init__(
            f"Deploy to target '{target_id}' failed: {reason}",
            error_code="TARGET_DEPLOY_FAILED",
            details={"target_id": target_id, "reason": reason},
        )
        self.target_id = target_id
        self.reason = reason


class HealthGateFailure(RolloutError):
    """Raised when a health snapshot violates the configured thresholds."""

    def __init__(self, reason: str, stage_index: Optional[int] = None) -> None:
        super().__init__(
            reason,
            error_code="HEALTH_GATE_FAILED",
            details={"stage_index": stage_index},
        )
        self.reason = reason
        self.stage_index = stage_index


class RollbackFailure(RolloutError):
    """Raised when one or more targets cannot be reverted; needs an operator."""

    def __init__(self, rollout_id: str, unreverted: Dict[str, str]) -> None:
        super().__init__(
            f"Rollback of {rollout_id} left {len(unreverted)} target(s) unreverted",
            error_code="ROLLBACK_FAILED",
            details={"rollout_id": rollout_id, "unreverted": dict(unreverted)},
        )
        self.rollout_id = rollout_id
        self.unreverted = dict(unreverted)
