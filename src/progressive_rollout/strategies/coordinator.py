"""Main rollout orchestration engine."""

import asyncio
import builtins
import copy
import inspect
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from ..config import RolloutEngineConfig
from ..exceptions import (
    AlreadyInProgressError,
    HealthGateFailure,
    RollbackFailure,
    RolloutNotFoundError,
    RolloutValidationError,
)
from ..logger import RolloutLogContext, get_logger
from ..metrics import RolloutMetrics
from ..resilience import BulkheadPattern, RetryPolicy, TimeoutHandler
from .enums import RolloutStatus, StageAction, TargetStatus
from .interfaces import Deployer, HealthEvaluator
from .managers.health import HealthGate
from .managers.locking import LockHandle, SingleFlightLock
from .managers.rollback import RollbackController
from .managers.store import InMemoryRolloutStore, RolloutStore
from .managers.targets import TargetOperation, TargetOperator
from .models import HealthSnapshot, Rollout, RolloutEvent, RolloutSpec, Stage, Target
from .planner import StagePlanner

logger = get_logger(__name__)

CANCELLED_REASON = "Cancelled"
MANUAL_ROLLBACK_REASON = "Manual rollback"

AlertHandler = Callable[[Rollout, RollbackFailure], Any]


@dataclass
class _RolloutControl:
    """Control channel between the public API and a rollout's task."""

    lock: LockHandle
    wakeup: asyncio.Event
    interrupt_reason: str | None = None
    task: asyncio.Task | None = None


class RolloutCoordinator:
    """Drives rollouts stage by stage with health-gated progression.

    Each rollout runs as one asyncio task holding its subject's single-flight
    lock from start to its terminal status. Evaluation windows and pauses are
    cancellable waits on the rollout's own wakeup event.
    """

    def __init__(
        self,
        deployer: Deployer,
        health_evaluator: HealthEvaluator,
        config: RolloutEngineConfig | None = None,
        store: RolloutStore | None = None,
        lock: SingleFlightLock | None = None,
        bulkhead: BulkheadPattern | None = None,
        metrics: RolloutMetrics | None = None,
        planner: StagePlanner | None = None,
        health_gate: HealthGate | None = None,
        alert_handlers: Iterable[AlertHandler] | None = None,
    ):
        """Initialize rollout coordinator."""
        self.config = config or RolloutEngineConfig()
        self.deployer = deployer
        self.health_evaluator = health_evaluator
        self.store = store or InMemoryRolloutStore()
        self.lock = lock or SingleFlightLock()
        self.bulkhead = bulkhead or BulkheadPattern(
            max_concurrent=self.config.max_global_concurrency, name="rollout-targets"
        )
        self.metrics = metrics or RolloutMetrics(
            enabled=self.config.observability.enable_metrics
        )
        self.planner = planner or StagePlanner()
        self.health_gate = health_gate or HealthGate()

        # Resilience around external calls
        self.health_timeout = TimeoutHandler(
            self.config.health_timeout_seconds, name="health_evaluator"
        )
        self.deploy_retry = RetryPolicy.from_config(self.config.deploy_retry, name="deploy")
        self.operator = TargetOperator(
            TimeoutHandler(self.config.deploy_timeout_seconds, name="deployer"),
            self.bulkhead,
            self.metrics,
        )
        self.rollback_controller = RollbackController(
            deployer,
            self.operator,
            RetryPolicy.from_config(self.config.rollback_retry, name="rollback"),
            max_concurrency=self.config.max_concurrency_per_stage,
        )

        self.alert_handlers: builtins.list[AlertHandler] = list(alert_handlers or [])

        # Rollouts attached to this coordinator, plus recently finished ones
        self._rollouts: builtins.dict[str, Rollout] = {}
        self._controls: builtins.dict[str, _RolloutControl] = {}
        self._history: deque = deque(maxlen=self.config.finished_history_size)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, spec: RolloutSpec) -> str:
        """Plan and start a rollout; returns its id.

        Raises AlreadyInProgressError if the subject has an active rollout,
        and PlanningError/InvalidStrategyError for unusable input. Nothing
        is mutated when it raises.
        """
        stages = self.planner.plan(spec.strategy, spec.targets)
        rollout = Rollout.from_spec(spec, stage_count=len(stages))

        if self._find(rollout.rollout_id) is not None:
            raise RolloutValidationError(
                f"Rollout id already used: {rollout.rollout_id}",
                error_code="DUPLICATE_ROLLOUT_ID",
            )

        handle = self.lock.acquire(spec.subject, owner=rollout.rollout_id)
        try:
            # survives restarts: unfinished records block the subject until recovered
            existing = await self.store.find_active(spec.subject)
            if existing is not None:
                raise AlreadyInProgressError(spec.subject, existing.rollout_id)
            if await self.store.get(rollout.rollout_id) is not None:
                raise RolloutValidationError(
                    f"Rollout id already used: {rollout.rollout_id}",
                    error_code="DUPLICATE_ROLLOUT_ID",
                )

            self._record_event(
                rollout,
                "rollout_created",
                strategy=rollout.strategy_kind.value,
                target_count=len(rollout.targets),
                stage_count=len(stages),
                target_version=str(rollout.target_version),
            )
            await self.store.save(rollout)
        except BaseException:
            handle.release()
            raise

        self.metrics.record_started(rollout.strategy_kind.value)
        self._launch(rollout, stages, handle)
        return rollout.rollout_id

    async def run(self, spec: RolloutSpec) -> Rollout:
        """Start a rollout and wait for its terminal status."""
        rollout_id = await self.start(spec)
        return await self.wait(rollout_id)

    async def wait(self, rollout_id: str, timeout: float | None = None) -> Rollout:
        """Wait until the rollout's task finishes; returns a status snapshot."""
        control = self._controls.get(rollout_id)
        if control is not None and control.task is not None:
            done, _ = await asyncio.wait({control.task}, timeout=timeout)
            if not done:
                raise asyncio.TimeoutError(
                    f"Rollout {rollout_id} still running after {timeout}s"
                )
        return await self.get_status(rollout_id)

    async def cancel(self, rollout_id: str) -> bool:
        """Request cancellation; follows the rollback path with reason "Cancelled"."""
        return await self._interrupt(rollout_id, CANCELLED_REASON, "cancel_requested")

    async def rollback(self, rollout_id: str, reason: str | None = None) -> bool:
        """Manually trigger the same rollback path the health gate uses."""
        return await self._interrupt(
            rollout_id, reason or MANUAL_ROLLBACK_REASON, "rollback_requested"
        )

    def status(self, rollout_id: str) -> Rollout:
        """Read-only snapshot of a rollout held in memory by this coordinator."""
        rollout = self._find(rollout_id)
        if rollout is None:
            raise RolloutNotFoundError(rollout_id)
        return copy.deepcopy(rollout)

    async def get_status(self, rollout_id: str) -> Rollout:
        """Read-only snapshot of any rollout, falling back to the store."""
        rollout = self._find(rollout_id)
        if rollout is not None:
            return copy.deepcopy(rollout)

        stored = await self.store.get(rollout_id)
        if stored is None:
            raise RolloutNotFoundError(rollout_id)
        return stored

    async def list_rollouts(self, status: RolloutStatus | None = None) -> builtins.list[Rollout]:
        """Rollouts known to the store, optionally filtered by status."""
        return await self.store.list(status)

    def active_subjects(self) -> builtins.list[str]:
        """Subjects whose single-flight lock is currently held."""
        return self.lock.held_subjects()

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Register a callback invoked when a rollback leaves targets unreverted."""
        self.alert_handlers.append(handler)

    async def recover(self) -> builtins.list[str]:
        """Resume every unfinished rollout found in the store."""
        resumed = []
        for rollout in await self.store.list_unfinished():
            control = self._controls.get(rollout.rollout_id)
            if control is not None and control.task is not None and not control.task.done():
                continue

            handle = self.lock.try_acquire(rollout.subject, owner=rollout.rollout_id)
            if handle is None:
                logger.warning(
                    "Cannot recover rollout, subject lock is held",
                    rollout_id=rollout.rollout_id,
                    subject=rollout.subject,
                    holder=self.lock.holder(rollout.subject),
                )
                continue

            try:
                stages = self.planner.plan(rollout.strategy, rollout.targets)
            except RolloutValidationError:
                handle.release()
                logger.exception(
                    "Cannot re-plan recovered rollout", rollout_id=rollout.rollout_id
                )
                continue

            self._record_event(
                rollout,
                "rollout_recovered",
                recovered_status=rollout.status.value,
                current_stage_index=rollout.current_stage_index,
            )
            self._launch(rollout, stages, handle)
            resumed.append(rollout.rollout_id)

        if resumed:
            logger.info("Recovered unfinished rollouts", count=len(resumed))
        return resumed

    async def shutdown(self) -> None:
        """Cancel running rollout tasks; their persisted state stays resumable."""
        tasks = [
            c.task for c in self._controls.values() if c.task is not None and not c.task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Rollout task
    # ------------------------------------------------------------------

    def _launch(self, rollout: Rollout, stages: builtins.list[Stage], handle: LockHandle) -> None:
        control = _RolloutControl(lock=handle, wakeup=asyncio.Event())
        self._rollouts[rollout.rollout_id] = rollout
        self._controls[rollout.rollout_id] = control
        self.metrics.record_attached()
        control.task = asyncio.create_task(
            self._drive(rollout, stages, control), name=f"rollout-{rollout.rollout_id}"
        )

    async def _drive(
        self, rollout: Rollout, stages: builtins.list[Stage], control: _RolloutControl
    ) -> None:
        with RolloutLogContext(
            logger,
            rollout.rollout_id,
            rollout.subject,
            strategy=rollout.strategy_kind.value,
        ):
            try:
                if rollout.status == RolloutStatus.ROLLING_BACK:
                    await self._roll_back(rollout, rollout.rollback_reason or CANCELLED_REASON)
                else:
                    await self._execute(rollout, stages, control)
            except asyncio.CancelledError:
                logger.warning(
                    "Rollout task cancelled, state left resumable",
                    status=rollout.status.value,
                )
                raise
            except Exception as e:
                logger.exception("Unexpected error while driving rollout")
                await self._handle_internal_error(rollout, e)
            finally:
                control.lock.release()
                self.metrics.record_detached()
                if rollout.is_terminal:
                    self.metrics.record_finished(
                        rollout.strategy_kind.value, rollout.status.value
                    )
                    self._retire(rollout)

    async def _execute(
        self, rollout: Rollout, stages: builtins.list[Stage], control: _RolloutControl
    ) -> None:
        if rollout.status == RolloutStatus.PLANNING:
            self._transition(rollout, RolloutStatus.DEPLOYING)
            await self._capture_baseline(rollout, stages)
            await self._persist(rollout)

        while rollout.current_stage_index < len(stages):
            stage = stages[rollout.current_stage_index]
            failure = await self._run_stage(rollout, stage, stages, control)
            if failure is None:
                continue

            reason = control.interrupt_reason or failure
            if control.interrupt_reason is None and not rollout.auto_rollback_enabled:
                reason = await self._halt(rollout, failure, control)
            await self._roll_back(rollout, reason)
            return

        await self._complete(rollout)

    async def _run_stage(
        self,
        rollout: Rollout,
        stage: Stage,
        stages: builtins.list[Stage],
        control: _RolloutControl,
    ) -> str | None:
        """Run one stage; returns None once it passed, else the reason to stop."""
        if control.interrupt_reason:
            return control.interrupt_reason

        started = time.monotonic()
        self._record_event(
            rollout,
            "stage_started",
            stage.index,
            action=stage.action.value,
            percentage=stage.percentage,
            target_ids=list(stage.target_ids),
        )

        if stage.action == StageAction.SWITCH_TRAFFIC:
            failure = await self._switch_traffic(rollout, stage, control)
        else:
            failure = await self._apply_targets(rollout, stage, control)
        await self._persist(rollout)

        if failure is not None or control.interrupt_reason:
            return control.interrupt_reason or failure

        if stage.requires_health_check:
            if await self._wait(control, stage.evaluation_window_seconds):
                return control.interrupt_reason

            gate_failure = await self._evaluate_health(rollout, stage)
            if gate_failure is not None:
                rollout.failed_stage_index = stage.index
                return gate_failure.reason

            for target in rollout.targets_with(TargetStatus.ACTIVE):
                rollout.mark_target(target.target_id, TargetStatus.HEALTHY)

        rollout.current_stage_index += 1
        duration = time.monotonic() - started
        self.metrics.record_stage(rollout.strategy_kind.value, duration)
        self._record_event(
            rollout,
            "stage_passed",
            stage.index,
            percentage=stage.percentage,
            duration_seconds=round(duration, 3),
        )
        await self._persist(rollout)

        if stage.pause_after_seconds > 0 and rollout.current_stage_index < len(stages):
            if await self._wait(control, stage.pause_after_seconds):
                return control.interrupt_reason
        return None

    async def _apply_targets(
        self, rollout: Rollout, stage: Stage, control: _RolloutControl
    ) -> str | None:
        # targets already running the new version are not applied again
        pending = [
            t
            for t in stage.targets
            if rollout.target_statuses[t.target_id]
            not in (TargetStatus.ACTIVE, TargetStatus.HEALTHY)
        ]
        if not pending:
            return None

        errors = await self._run_target_operations(
            "apply", self.deployer.apply, rollout, pending, control
        )
        for target in pending:
            if target.target_id not in errors:
                continue
            error = errors[target.target_id]
            if error is None:
                rollout.mark_target(target.target_id, TargetStatus.ACTIVE)
            else:
                rollout.mark_target(target.target_id, TargetStatus.FAILED, error)
                self._record_event(
                    rollout, "target_failed", stage.index, target_id=target.target_id, error=error
                )

        failed = [t.target_id for t in pending if errors.get(t.target_id)]
        if not failed:
            return None

        success_fraction = (len(pending) - len(failed)) / len(pending)
        if stage.abort_on_any_failure or success_fraction < stage.success_threshold:
            rollout.failed_stage_index = stage.index
            return (
                f"Deploy failed on {len(failed)}/{len(pending)} targets in stage "
                f"{stage.index}: {', '.join(failed)}"
            )

        logger.warning(
            "Tolerating target failures within success threshold",
            stage_index=stage.index,
            failed=failed,
            success_fraction=round(success_fraction, 3),
            success_threshold=stage.success_threshold,
        )
        return None

    async def _switch_traffic(
        self, rollout: Rollout, stage: Stage, control: _RolloutControl
    ) -> str | None:
        live = [
            t
            for t in stage.targets
            if rollout.target_statuses[t.target_id]
            in (TargetStatus.ACTIVE, TargetStatus.HEALTHY)
        ]
        errors = await self._run_target_operations(
            "switch", self.deployer.switch_traffic, rollout, live, control
        )

        # a target whose switch failed keeps its status so rollback switches it back
        failed = [target_id for target_id, error in errors.items() if error]
        for target_id in failed:
            rollout.target_errors[target_id] = f"traffic switch failed: {errors[target_id]}"

        if failed and (
            stage.abort_on_any_failure
            or (len(live) - len(failed)) / len(live) < stage.success_threshold
        ):
            rollout.failed_stage_index = stage.index
            return f"Traffic switch failed on {len(failed)}/{len(live)} targets: {', '.join(failed)}"
        return None

    async def _run_target_operations(
        self,
        name: str,
        operation: TargetOperation,
        rollout: Rollout,
        targets: builtins.list[Target],
        control: _RolloutControl,
    ) -> builtins.dict[str, str | None]:
        """Run an operation on targets concurrently; skipped targets are absent."""
        if not targets:
            return {}

        bound = min(len(targets), self.config.max_concurrency_per_stage or len(targets))
        semaphore = asyncio.Semaphore(bound)
        results: builtins.dict[str, str | None] = {}

        async def run_one(target: Target) -> None:
            async with semaphore:
                # checkpoint: nothing new starts once an interrupt is requested
                if control.interrupt_reason:
                    return
                results[target.target_id] = await self.operator.run(
                    name, operation, target, rollout.target_version, self.deploy_retry
                )

        await asyncio.gather(*(run_one(t) for t in targets))
        return results

    async def _evaluate_health(self, rollout: Rollout, stage: Stage) -> HealthGateFailure | None:
        active = rollout.targets_with(TargetStatus.ACTIVE, TargetStatus.HEALTHY)

        # fail closed on any evaluator problem
        reason = None
        snapshot = None
        try:
            snapshot = await self.health_timeout.execute(self.health_evaluator.snapshot, active)
        except asyncio.TimeoutError:
            reason = f"health evaluation timed out after {self.health_timeout.timeout_seconds}s"
        except Exception as e:
            reason = f"health evaluation failed: {e}"
        else:
            if not isinstance(snapshot, HealthSnapshot):
                reason = f"health evaluator returned {type(snapshot).__name__}"
                snapshot = None

        if snapshot is not None:
            result = self.health_gate.evaluate(snapshot, stage.thresholds, rollout.baseline)
            verdict = result.verdict.value
            reason = result.reason
        else:
            verdict = "fail"

        self.metrics.record_gate(verdict)
        self._record_event(
            rollout,
            "health_gate_evaluated",
            stage.index,
            verdict=verdict,
            reason=reason,
            snapshot=snapshot.to_dict() if snapshot else None,
        )

        if verdict == "pass":
            return None

        failure = HealthGateFailure(
            f"Health gate failed at stage {stage.index}: {reason}", stage_index=stage.index
        )
        logger.warning("Health gate failed", **failure.to_dict())
        return failure

    async def _capture_baseline(self, rollout: Rollout, stages: builtins.list[Stage]) -> None:
        if not any(stage.thresholds.max_relative_increase for stage in stages):
            return

        try:
            snapshot = await self.health_timeout.execute(
                self.health_evaluator.snapshot, list(rollout.targets)
            )
        except Exception as e:
            # relative checks are skipped without a baseline; absolute ones still apply
            logger.warning("Baseline capture failed", error=str(e) or type(e).__name__)
            return

        if isinstance(snapshot, HealthSnapshot):
            rollout.baseline = snapshot
            self._record_event(rollout, "baseline_captured", snapshot=snapshot.to_dict())

    async def _wait(self, control: _RolloutControl, seconds: float) -> bool:
        """Cancellable wait; returns True when interrupted."""
        if control.interrupt_reason:
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(control.wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return control.interrupt_reason is not None

    async def _halt(self, rollout: Rollout, failure: str, control: _RolloutControl) -> str:
        """Park a rollout without auto-rollback until an operator intervenes."""
        rollout.halted_reason = failure
        self._record_event(rollout, "rollout_halted", reason=failure)
        await self._persist(rollout)
        logger.warning("Rollout halted, awaiting manual rollback or cancel", reason=failure)

        await control.wakeup.wait()
        return control.interrupt_reason or failure

    async def _roll_back(self, rollout: Rollout, reason: str) -> None:
        if rollout.status != RolloutStatus.ROLLING_BACK:
            self._transition(rollout, RolloutStatus.ROLLING_BACK)
            rollout.rollback_reason = reason
            await self._persist(rollout)

        result = await self.rollback_controller.revert(rollout, rollout.touched_targets())

        for target_id in result.reverted:
            rollout.mark_target(target_id, TargetStatus.ROLLED_BACK)
        for target_id, error in result.unreverted.items():
            rollout.mark_target(target_id, TargetStatus.FAILED, f"revert failed: {error}")

        if result.success:
            self._transition(rollout, RolloutStatus.ROLLED_BACK)
            self._record_event(
                rollout, "rollout_rolled_back", reason=reason, reverted=result.reverted
            )
            await self._persist(rollout)
            return

        failure = RollbackFailure(rollout.rollout_id, result.unreverted)
        rollout.unreverted_targets = dict(result.unreverted)
        rollout.error_message = str(failure)
        self._transition(rollout, RolloutStatus.FAILED)
        self._record_event(rollout, "rollback_failed", **failure.to_dict())
        await self._persist(rollout)

        self.metrics.record_rollback_failure()
        logger.critical(
            "Rollback incomplete, manual intervention required",
            unreverted=result.unreverted,
            reason=reason,
        )
        await self._alert(rollout, failure)

    async def _complete(self, rollout: Rollout) -> None:
        for target in rollout.targets_with(TargetStatus.ACTIVE):
            rollout.mark_target(target.target_id, TargetStatus.HEALTHY)
        self._transition(rollout, RolloutStatus.COMPLETED)
        self._record_event(
            rollout,
            "rollout_completed",
            healthy=len(rollout.targets_with(TargetStatus.HEALTHY)),
            failed=len(rollout.targets_with(TargetStatus.FAILED)),
        )
        await self._persist(rollout)

    async def _handle_internal_error(self, rollout: Rollout, error: Exception) -> None:
        reason = f"Internal error: {error}"
        try:
            if rollout.status == RolloutStatus.PLANNING:
                self._transition(rollout, RolloutStatus.DEPLOYING)
            if rollout.status in (RolloutStatus.DEPLOYING, RolloutStatus.ROLLING_BACK):
                rollout.error_message = reason
                await self._roll_back(rollout, rollout.rollback_reason or reason)
        except Exception:
            logger.exception("Recovery from internal error failed", status=rollout.status.value)

    async def _alert(self, rollout: Rollout, failure: RollbackFailure) -> None:
        for handler in self.alert_handlers:
            try:
                result = handler(copy.deepcopy(rollout), failure)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Alert handler failed", handler=repr(handler))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _interrupt(self, rollout_id: str, reason: str, event_type: str) -> bool:
        control = self._controls.get(rollout_id)
        if control is None:
            # finished, or never launched here; unknown ids raise
            await self.get_status(rollout_id)
            return False

        rollout = self._rollouts[rollout_id]
        if (
            control.task is None
            or control.task.done()
            or rollout.status not in (RolloutStatus.PLANNING, RolloutStatus.DEPLOYING)
        ):
            return False

        if control.interrupt_reason is None:
            control.interrupt_reason = reason
            self._record_event(rollout, event_type, reason=reason)
        control.wakeup.set()
        return True

    def _find(self, rollout_id: str) -> Rollout | None:
        rollout = self._rollouts.get(rollout_id)
        if rollout is not None:
            return rollout
        for finished in reversed(self._history):
            if finished.rollout_id == rollout_id:
                return finished
        return None

    def _retire(self, rollout: Rollout) -> None:
        """Detach a terminal rollout, keeping it in the bounded history."""
        self._controls.pop(rollout.rollout_id, None)
        self._rollouts.pop(rollout.rollout_id, None)
        self._history.append(rollout)

    def _transition(self, rollout: Rollout, status: RolloutStatus) -> None:
        previous = rollout.status
        rollout.transition_to(status)
        self._record_event(
            rollout, "status_changed", from_status=previous.value, to_status=status.value
        )

    def _record_event(
        self,
        rollout: Rollout,
        event_type: str,
        stage_index: int | None = None,
        **details: Any,
    ) -> None:
        """Append to the rollout's audit trail and log it."""
        rollout.events.append(
            RolloutEvent(
                rollout_id=rollout.rollout_id,
                event_type=event_type,
                status=rollout.status,
                stage_index=stage_index,
                details=details,
            )
        )
        logger.info(
            event_type,
            rollout_id=rollout.rollout_id,
            status=rollout.status.value,
            stage_index=stage_index,
            **{k: v for k, v in details.items() if k != "snapshot"},
        )

    async def _persist(self, rollout: Rollout) -> None:
        await self.store.save(rollout)


def create_rollout_coordinator(
    deployer: Deployer,
    health_evaluator: HealthEvaluator,
    config: RolloutEngineConfig | None = None,
    **kwargs: Any,
) -> RolloutCoordinator:
    """Create rollout coordinator instance."""
    return RolloutCoordinator(deployer, health_evaluator, config=config, **kwargs)
