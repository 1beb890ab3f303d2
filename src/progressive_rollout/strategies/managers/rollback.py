"""Rollback management for rollouts."""

import asyncio
import builtins
import time
import uuid
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ...logger import get_logger
from ...resilience import RetryPolicy
from ..enums import StrategyKind
from ..interfaces import Deployer
from ..models import Rollout, Target
from .targets import TargetOperator

logger = get_logger(__name__)


@dataclass
class RollbackResult:
    """Outcome of reverting a rollout's touched targets."""

    rollout_id: str
    reverted: builtins.list[str] = field(default_factory=list)
    unreverted: builtins.dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.unreverted


class RollbackController:
    """Reverts touched targets to the rollout's previous version.

    Blue/green rollouts switch traffic back to the retained blue side
    instead of redeploying. The controller reports per-target outcomes; the
    coordinator applies them to the rollout.
    """

    def __init__(
        self,
        deployer: Deployer,
        operator: TargetOperator,
        retry_policy: RetryPolicy,
        max_concurrency: int | None = None,
    ):
        self.deployer = deployer
        self.operator = operator
        self.retry_policy = retry_policy
        self.max_concurrency = max_concurrency
        self.rollback_history: deque = deque(maxlen=1000)

    async def revert(self, rollout: Rollout, touched_targets: Sequence[Target]) -> RollbackResult:
        """Revert every touched target, each with its own retry budget."""
        rollback_id = str(uuid.uuid4())
        started = time.monotonic()
        result = RollbackResult(rollout_id=rollout.rollout_id)

        self.rollback_history.append(
            {
                "rollback_id": rollback_id,
                "rollout_id": rollout.rollout_id,
                "started_at": datetime.now(timezone.utc),
                "target_count": len(touched_targets),
                "status": "running",
            }
        )

        if rollout.strategy_kind == StrategyKind.BLUE_GREEN:
            operation, name = self.deployer.switch_traffic, "switch_back"
        else:
            operation, name = self.deployer.apply, "revert"

        logger.info(
            "Reverting targets",
            rollout_id=rollout.rollout_id,
            operation=name,
            target_count=len(touched_targets),
            previous_version=str(rollout.previous_version),
        )

        if touched_targets:
            semaphore = asyncio.Semaphore(self.max_concurrency or len(touched_targets))

            async def revert_one(target: Target) -> tuple[str, str | None]:
                async with semaphore:
                    error = await self.operator.run(
                        name, operation, target, rollout.previous_version, self.retry_policy
                    )
                return target.target_id, error

            outcomes = await asyncio.gather(*(revert_one(t) for t in touched_targets))
            for target_id, error in outcomes:
                if error is None:
                    result.reverted.append(target_id)
                else:
                    result.unreverted[target_id] = error

        result.duration_seconds = time.monotonic() - started

        record = self.rollback_history[-1]
        record["status"] = "success" if result.success else "failed"
        record["completed_at"] = datetime.now(timezone.utc)
        if not result.success:
            record["unreverted"] = dict(result.unreverted)

        logger.info(
            "Rollback finished",
            rollout_id=rollout.rollout_id,
            reverted=len(result.reverted),
            unreverted=len(result.unreverted),
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result
