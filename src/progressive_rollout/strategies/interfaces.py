"""Capabilities the rollout engine consumes from the outside world."""

import builtins
from abc import ABC, abstractmethod
from typing import Any

from .models import DeployResult, HealthSnapshot, Target


class Deployer(ABC):
    """Applies a version (or flag value) to a single target.

    Implementations must be idempotent: the engine may apply the same
    (target, version) pair more than once after a timeout.
    """

    @abstractmethod
    async def apply(self, target: Target, version: Any) -> DeployResult:
        """Apply ``version`` to ``target``."""

    async def switch_traffic(self, target: Target, version: Any) -> DeployResult:
        """Route the target's traffic to the side running ``version``.

        Used by blue/green rollouts for the atomic switch and for instant
        rollback to the retained blue side. Deployers without separate
        sides treat this as a plain apply.
        """
        return await self.apply(target, version)


class HealthEvaluator(ABC):
    """Produces health snapshots for a set of active targets.

    Any exception raised here is treated as a failed health check.
    """

    @abstractmethod
    async def snapshot(self, targets: builtins.list[Target]) -> HealthSnapshot:
        """Return the current health of ``targets``."""
