"""Per-target operations with timeout, retry budget and shared concurrency ceiling."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from ...exceptions import TargetDeployError
from ...logger import get_logger
from ...metrics import RolloutMetrics
from ...resilience import BulkheadPattern, RetryPolicy, TimeoutHandler
from ..models import DeployResult, Target

logger = get_logger(__name__)

TargetOperation = Callable[[Target, Any], Awaitable[DeployResult]]


class TargetOperator:
    """Runs one deployer call against one target, never raising for failures."""

    def __init__(
        self,
        timeout: TimeoutHandler,
        bulkhead: BulkheadPattern,
        metrics: RolloutMetrics | None = None,
    ):
        self.timeout = timeout
        self.bulkhead = bulkhead
        self.metrics = metrics

    async def run(
        self,
        name: str,
        operation: TargetOperation,
        target: Target,
        version: Any,
        retry_policy: RetryPolicy,
    ) -> str | None:
        """Run ``operation`` with retries; return None on success or the failure reason."""
        try:
            await retry_policy.execute(self._attempt, operation, target, version)
        except asyncio.TimeoutError:
            reason = f"timed out after {self.timeout.timeout_seconds}s"
        except TargetDeployError as e:
            reason = e.reason
        except Exception as e:
            reason = str(e) or type(e).__name__
        else:
            self._record(name, True)
            return None

        self._record(name, False)
        logger.warning(
            "Target operation failed",
            operation=name,
            target_id=target.target_id,
            attempts=retry_policy.max_attempts,
            reason=reason,
        )
        return reason

    async def _attempt(self, operation: TargetOperation, target: Target, version: Any) -> DeployResult:
        # one global permit per attempt, not held across backoff sleeps
        result = await self.bulkhead.execute(self.timeout.execute, operation, target, version)
        if not isinstance(result, DeployResult):
            raise TargetDeployError(target.target_id, f"unexpected deployer result: {result!r}")
        if not result.success:
            raise TargetDeployError(target.target_id, result.message or "deployer reported failure")
        return result

    def _record(self, name: str, success: bool) -> None:
        if self.metrics:
            self.metrics.record_target_operation(name, success)
