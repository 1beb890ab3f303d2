"""Stage planning: strategy config + ordered targets -> ordered stages."""

import builtins
from collections.abc import Sequence

from ..exceptions import InvalidStrategyError, PlanningError
from ..logger import get_logger
from .bucketing import bucket_order
from .enums import EnvironmentType, StageAction, StrategyKind
from .models import (
    BlueGreenStrategy,
    CanaryStrategy,
    DirectStrategy,
    RollingStrategy,
    Stage,
    StrategyConfig,
    Target,
)

logger = get_logger(__name__)


def _ceil_share(total: int, percentage: int) -> int:
    return -(-total * percentage // 100)


class StagePlanner:
    """Pure, side-effect-free expansion of a strategy into stages."""

    def plan(self, strategy: StrategyConfig, targets: Sequence[Target]) -> builtins.list[Stage]:
        """Plan the stages for a strategy over an ordered target list."""
        targets = list(targets)
        self._validate_targets(targets)

        kind = getattr(strategy, "kind", None)
        if kind == StrategyKind.DIRECT:
            stages = self._plan_direct(strategy, targets)
        elif kind == StrategyKind.CANARY:
            stages = self._plan_canary(strategy, targets)
        elif kind == StrategyKind.ROLLING:
            stages = self._plan_rolling(strategy, targets)
        elif kind == StrategyKind.BLUE_GREEN:
            stages = self._plan_blue_green(strategy, targets)
        else:
            raise InvalidStrategyError(
                f"Unsupported strategy configuration: {type(strategy).__name__}"
            )

        logger.debug(
            "Stage plan computed",
            strategy=kind.value,
            target_count=len(targets),
            stage_count=len(stages),
        )
        return stages

    def _validate_targets(self, targets: builtins.list[Target]) -> None:
        if not targets:
            raise PlanningError("No targets available for rollout", error_code="NO_TARGETS")

        seen: set[str] = set()
        for target in targets:
            if target.target_id in seen:
                raise PlanningError(
                    f"Duplicate target id: {target.target_id}",
                    error_code="DUPLICATE_TARGET",
                )
            seen.add(target.target_id)

    def _plan_direct(
        self, strategy: DirectStrategy, targets: builtins.list[Target]
    ) -> builtins.list[Stage]:
        check = not strategy.skip_health_checks
        return [
            Stage(
                index=0,
                targets=tuple(targets),
                percentage=100,
                evaluation_window_seconds=strategy.health_check_window_seconds if check else 0.0,
                requires_health_check=check,
                thresholds=strategy.thresholds,
                success_threshold=1.0,
                abort_on_any_failure=strategy.abort_on_any_failure,
            )
        ]

    def _plan_canary(
        self, strategy: CanaryStrategy, targets: builtins.list[Target]
    ) -> builtins.list[Stage]:
        total = len(targets)
        # bucket order keeps each stage a prefix of the next one
        ordered = bucket_order(
            sorted(targets, key=lambda t: t.target_id), key=lambda t: t.key
        )

        stages: builtins.list[Stage] = []
        covered = 0
        percentage = strategy.initial_percentage

        while True:
            terminal = percentage >= 100
            wanted = min(_ceil_share(total, percentage), total)
            new_targets = ordered[covered:wanted]

            # intermediate stages adding nobody are skipped; 100% is always emitted
            if new_targets or terminal:
                stages.append(
                    Stage(
                        index=len(stages),
                        targets=tuple(new_targets),
                        percentage=percentage,
                        evaluation_window_seconds=0.0
                        if terminal
                        else strategy.evaluation_window_seconds,
                        requires_health_check=not terminal,
                        thresholds=strategy.thresholds,
                        success_threshold=strategy.success_threshold,
                        abort_on_any_failure=strategy.abort_on_any_failure,
                    )
                )
                covered = max(covered, wanted)

            if terminal:
                break
            percentage = min(percentage + strategy.increment_percentage, 100)

        return stages

    def _plan_rolling(
        self, strategy: RollingStrategy, targets: builtins.list[Target]
    ) -> builtins.list[Stage]:
        ordered = self._rolling_order(strategy, targets)
        batches = [
            ordered[i : i + strategy.batch_size]
            for i in range(0, len(ordered), strategy.batch_size)
        ]

        return [
            Stage(
                index=index,
                targets=tuple(batch),
                evaluation_window_seconds=strategy.evaluation_window_seconds,
                requires_health_check=True,
                pause_after_seconds=strategy.pause_between_stages_seconds
                if index < len(batches) - 1
                else 0.0,
                thresholds=strategy.thresholds,
                success_threshold=strategy.success_threshold,
                abort_on_any_failure=strategy.abort_on_any_failure,
            )
            for index, batch in enumerate(batches)
        ]

    def _rolling_order(
        self, strategy: RollingStrategy, targets: builtins.list[Target]
    ) -> builtins.list[Target]:
        default_order = sorted(
            targets, key=lambda t: (t.environment.rank, t.name, t.target_id)
        )
        if strategy.order is None:
            return default_order

        by_id = {t.target_id: t for t in targets}
        unknown = [target_id for target_id in strategy.order if target_id not in by_id]
        if unknown:
            raise PlanningError(
                f"Rolling order references unknown targets: {', '.join(unknown)}",
                error_code="UNKNOWN_TARGET",
            )

        explicit = [by_id[target_id] for target_id in strategy.order]
        listed = set(strategy.order)
        return explicit + [t for t in default_order if t.target_id not in listed]

    def _plan_blue_green(
        self, strategy: BlueGreenStrategy, targets: builtins.list[Target]
    ) -> builtins.list[Stage]:
        everyone = tuple(targets)
        return [
            Stage(
                index=0,
                targets=everyone,
                action=StageAction.APPLY,
                evaluation_window_seconds=strategy.validation_period_seconds,
                requires_health_check=True,
                thresholds=strategy.thresholds,
                success_threshold=1.0,
                abort_on_any_failure=strategy.abort_on_any_failure,
            ),
            Stage(
                index=1,
                targets=everyone,
                action=StageAction.SWITCH_TRAFFIC,
                evaluation_window_seconds=strategy.post_switch_monitoring_period_seconds,
                requires_health_check=True,
                thresholds=strategy.thresholds,
                success_threshold=1.0,
                abort_on_any_failure=strategy.abort_on_any_failure,
            ),
        ]


def recommend_strategy(targets: Sequence[Target]) -> StrategyConfig:
    """Pick a default strategy from the environments a target set spans."""
    environments = {t.environment for t in targets}
    if not environments:
        raise PlanningError("No targets available for rollout", error_code="NO_TARGETS")

    if len(environments) > 1:
        return RollingStrategy()

    environment = environments.pop()
    if environment == EnvironmentType.DEVELOPMENT:
        return DirectStrategy()
    if environment == EnvironmentType.STAGING:
        return BlueGreenStrategy()
    return CanaryStrategy()
