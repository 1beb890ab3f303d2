"""
End-to-end rollout scenarios against in-memory collaborators.

Each test drives a real RolloutCoordinator with the recording deployer and
scripted health evaluator, then asserts on target versions, rollout status
and the persisted record.
"""

import pytest

from progressive_rollout.exceptions import (
    AlreadyInProgressError,
    PlanningError,
    RolloutNotFoundError,
)
from progressive_rollout.strategies import (
    REVERTED_STAGE_INDEX,
    BlueGreenStrategy,
    CanaryStrategy,
    DirectStrategy,
    HealthSnapshot,
    HealthThresholds,
    Rollout,
    RolloutCoordinator,
    RolloutSpec,
    RolloutStatus,
    RollingStrategy,
    StagePlanner,
    TargetStatus,
)
from tests.utils import RecordingDeployer, ScriptedHealthEvaluator, make_targets, wait_until

CANARY_10_30 = CanaryStrategy(
    initial_percentage=10, increment_percentage=30, evaluation_window_seconds=0
)


def _spec(strategy, targets, subject="checkout", **kwargs):
    return RolloutSpec(
        subject=subject,
        target_version="v2",
        previous_version="v1",
        strategy=strategy,
        targets=targets,
        **kwargs,
    )


def _stage_ids(strategy, targets):
    return [list(stage.target_ids) for stage in StagePlanner().plan(strategy, targets)]


@pytest.mark.integration
class TestCanaryRollouts:
    """Test canary progression and gate-triggered rollback."""

    @pytest.mark.asyncio
    async def test_completes_through_four_stages(
        self, coordinator, deployer, health_evaluator, targets, store, metrics
    ):
        rollout = await coordinator.run(_spec(CANARY_10_30, targets))

        assert rollout.status == RolloutStatus.COMPLETED
        assert rollout.stage_count == 4
        assert rollout.current_stage_index == 4
        assert set(rollout.target_statuses.values()) == {TargetStatus.HEALTHY}
        assert all(deployer.version_of(t.target_id) == "v2" for t in targets)

        # gates after 10%, 40% and 70%; none after the final stage
        assert [len(ids) for ids in health_evaluator.calls] == [1, 4, 7]

        assert coordinator.active_subjects() == []
        assert (await store.get(rollout.rollout_id)).status == RolloutStatus.COMPLETED
        assert metrics.get_sample_value(
            "rollouts_finished_total", {"strategy": "canary", "status": "completed"}
        ) == 1
        assert metrics.get_sample_value("rollouts_active") == 0

    @pytest.mark.asyncio
    async def test_audit_trail(self, coordinator, targets):
        rollout = await coordinator.run(_spec(CANARY_10_30, targets))

        event_types = [e.event_type for e in rollout.events]
        assert event_types[0] == "rollout_created"
        assert event_types[-1] == "rollout_completed"
        assert event_types.count("stage_passed") == 4
        assert event_types.count("health_gate_evaluated") == 3

    @pytest.mark.asyncio
    async def test_gate_failure_before_second_stage_rolls_back(
        self, coordinator, deployer, targets
    ):
        coordinator.health_evaluator.script = [0.80]
        first_stage, *later_stages = _stage_ids(CANARY_10_30, targets)

        rollout = await coordinator.run(_spec(CANARY_10_30, targets))

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.current_stage_index == REVERTED_STAGE_INDEX
        assert rollout.failed_stage_index == 0
        assert "0.8000" in rollout.rollback_reason
        assert "0.9500" in rollout.rollback_reason

        for target_id in first_stage:
            assert rollout.target_statuses[target_id] == TargetStatus.ROLLED_BACK
            assert deployer.version_of(target_id) == "v1"
        never_deployed = [target_id for stage in later_stages for target_id in stage]
        assert not set(deployer.calls_for("apply")) & set(never_deployed)
        assert all(rollout.target_statuses[t] == TargetStatus.PENDING for t in never_deployed)

    @pytest.mark.asyncio
    async def test_gate_failure_later_reverts_every_touched_target(
        self, coordinator, deployer, targets
    ):
        coordinator.health_evaluator.script = [1.0, 0.80]
        stages = _stage_ids(CANARY_10_30, targets)
        touched = stages[0] + stages[1]

        rollout = await coordinator.run(_spec(CANARY_10_30, targets))

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert sorted(rollout.targets_with(TargetStatus.ROLLED_BACK), key=str) == sorted(
            [t for t in targets if t.target_id in touched], key=str
        )
        assert all(deployer.version_of(t) == "v1" for t in touched)
        assert len(deployer.calls_for("apply")) == 2 * len(touched)

    @pytest.mark.asyncio
    async def test_tolerated_failures_within_success_threshold(
        self, coordinator, deployer, targets
    ):
        deployer.fail("cluster-03")
        strategy = CanaryStrategy(initial_percentage=100, success_threshold=0.8)

        rollout = await coordinator.run(_spec(strategy, targets))

        assert rollout.status == RolloutStatus.COMPLETED
        assert rollout.target_statuses["cluster-03"] == TargetStatus.FAILED
        assert rollout.target_errors["cluster-03"] == "apply rejected by cluster-03"
        assert len(rollout.targets_with(TargetStatus.HEALTHY)) == 9

    @pytest.mark.asyncio
    async def test_relative_threshold_uses_baseline(self, coordinator, health_evaluator):
        targets = make_targets(2)
        health_evaluator.script = [
            HealthSnapshot(success_rate=1.0, metrics={"latency_ms": 100}),
            HealthSnapshot(success_rate=1.0, metrics={"latency_ms": 150}),
        ]
        strategy = CanaryStrategy(
            initial_percentage=50,
            increment_percentage=50,
            evaluation_window_seconds=0,
            thresholds=HealthThresholds(max_relative_increase={"latency_ms": 20}),
        )

        rollout = await coordinator.run(_spec(strategy, targets))

        assert health_evaluator.calls[0] == ["cluster-00", "cluster-01"]
        assert rollout.baseline.metrics == {"latency_ms": 100}
        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert "over baseline" in rollout.rollback_reason


@pytest.mark.integration
class TestRollingAndDirectRollouts:
    """Test ordered and all-at-once rollouts."""

    @pytest.mark.asyncio
    async def test_rolling_follows_explicit_order(self, coordinator, deployer):
        targets = make_targets(4)
        strategy = RollingStrategy(
            order=("cluster-02", "cluster-00"), evaluation_window_seconds=0
        )

        rollout = await coordinator.run(_spec(strategy, targets))

        assert rollout.status == RolloutStatus.COMPLETED
        assert deployer.calls_for("apply") == [
            "cluster-02",
            "cluster-00",
            "cluster-01",
            "cluster-03",
        ]

    @pytest.mark.asyncio
    async def test_rolling_deploy_failure_stops_progression(self, coordinator, deployer):
        targets = make_targets(4)
        deployer.fail("cluster-02")

        rollout = await coordinator.run(
            _spec(RollingStrategy(evaluation_window_seconds=0), targets)
        )

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.failed_stage_index == 2
        assert rollout.target_statuses == {
            "cluster-00": TargetStatus.ROLLED_BACK,
            "cluster-01": TargetStatus.ROLLED_BACK,
            "cluster-02": TargetStatus.FAILED,
            "cluster-03": TargetStatus.PENDING,
        }
        assert "cluster-03" not in deployer.calls_for("apply")

    @pytest.mark.asyncio
    async def test_direct_deploy_timeout(self, coordinator, deployer):
        targets = make_targets(2)
        deployer.delay("cluster-00", 5)

        rollout = await coordinator.run(_spec(DirectStrategy(), targets))

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.target_errors["cluster-00"] == "timed out after 0.5s"
        assert rollout.target_statuses["cluster-01"] == TargetStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_health_evaluator_error_fails_closed(self, coordinator, health_evaluator):
        health_evaluator.script = [RuntimeError("metrics backend down")]
        strategy = DirectStrategy(skip_health_checks=False, health_check_window_seconds=0)

        rollout = await coordinator.run(_spec(strategy, make_targets(2)))

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert "metrics backend down" in rollout.rollback_reason

    @pytest.mark.asyncio
    async def test_health_evaluator_timeout_fails_closed(
        self, deployer, engine_config
    ):
        coordinator = RolloutCoordinator(
            deployer, ScriptedHealthEvaluator(delay=5), config=engine_config
        )
        strategy = DirectStrategy(skip_health_checks=False, health_check_window_seconds=0)

        rollout = await coordinator.run(_spec(strategy, make_targets(1)))

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert "timed out" in rollout.rollback_reason

    @pytest.mark.asyncio
    async def test_stage_concurrency_bound(self, deployer, health_evaluator, engine_config):
        config = engine_config.model_copy(update={"max_concurrency_per_stage": 2})
        coordinator = RolloutCoordinator(deployer, health_evaluator, config=config)
        targets = make_targets(6)
        for target in targets:
            deployer.delay(target.target_id, 0.02)

        rollout = await coordinator.run(_spec(DirectStrategy(), targets))

        assert rollout.status == RolloutStatus.COMPLETED
        assert deployer.peak_in_flight == 2


@pytest.mark.integration
class TestBlueGreenRollouts:
    """Test validation, traffic switch and switch-back."""

    STRATEGY = BlueGreenStrategy(
        validation_period_seconds=0,
        post_switch_monitoring_period_seconds=0,
        retention_period_seconds=900,
    )

    @pytest.mark.asyncio
    async def test_switches_traffic_and_retains_blue(self, coordinator, deployer):
        targets = make_targets(3)

        rollout = await coordinator.run(_spec(self.STRATEGY, targets))

        assert rollout.status == RolloutStatus.COMPLETED
        assert all(deployer.serving(t.target_id) == "v2" for t in targets)
        assert sorted(deployer.calls_for("switch")) == [t.target_id for t in targets]
        assert (rollout.blue_retained_until - rollout.completed_at).total_seconds() == 900

    @pytest.mark.asyncio
    async def test_post_switch_failure_switches_back(
        self, coordinator, deployer, health_evaluator
    ):
        targets = make_targets(3)
        health_evaluator.script = [1.0, 0.5]

        rollout = await coordinator.run(_spec(self.STRATEGY, targets))

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.failed_stage_index == 1
        assert all(deployer.serving(t.target_id) == "v1" for t in targets)
        # green stays installed, only traffic moves
        assert all(deployer.version_of(t.target_id) == "v2" for t in targets)
        assert len(deployer.calls_for("switch")) == 6
        assert len(deployer.calls_for("apply")) == 3

    @pytest.mark.asyncio
    async def test_validation_failure_never_switches_forward(
        self, coordinator, deployer, health_evaluator
    ):
        targets = make_targets(2)
        health_evaluator.script = [0.5]

        rollout = await coordinator.run(_spec(self.STRATEGY, targets))

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert [version for op, _, version in deployer.calls if op == "switch"] == ["v1", "v1"]
        assert all(deployer.serving(t.target_id) == "v1" for t in targets)


@pytest.mark.integration
class TestOperatorControls:
    """Test single-flight, cancel, manual rollback and halting."""

    SLOW_CANARY = CanaryStrategy(
        initial_percentage=10, increment_percentage=30, evaluation_window_seconds=30
    )

    @pytest.mark.asyncio
    async def test_single_flight_per_subject(self, coordinator, targets):
        first_stage = _stage_ids(self.SLOW_CANARY, targets)[0]
        rollout_id = await coordinator.start(_spec(self.SLOW_CANARY, targets))
        await wait_until(
            lambda: coordinator.status(rollout_id).target_statuses[first_stage[0]]
            == TargetStatus.ACTIVE
        )
        before = coordinator.status(rollout_id)

        with pytest.raises(AlreadyInProgressError) as exc_info:
            await coordinator.start(_spec(self.SLOW_CANARY, targets))
        assert exc_info.value.active_rollout_id == rollout_id

        # the rejected start leaves the running rollout untouched
        after = coordinator.status(rollout_id)
        assert after.status == before.status == RolloutStatus.DEPLOYING
        assert after.current_stage_index == before.current_stage_index
        assert after.target_statuses == before.target_statuses
        assert len(after.events) == len(before.events)

        other_id = await coordinator.start(_spec(self.SLOW_CANARY, targets, subject="search"))
        assert coordinator.active_subjects() == ["checkout", "search"]

        await coordinator.cancel(rollout_id)
        await coordinator.cancel(other_id)
        await coordinator.wait(rollout_id, timeout=2)
        await coordinator.wait(other_id, timeout=2)

        # free again once the first one is terminal
        third_id = await coordinator.start(_spec(self.SLOW_CANARY, targets))
        assert third_id != rollout_id

    @pytest.mark.asyncio
    async def test_cancel_during_evaluation_window(self, coordinator, deployer, targets):
        first_stage = _stage_ids(self.SLOW_CANARY, targets)[0]
        rollout_id = await coordinator.start(_spec(self.SLOW_CANARY, targets))
        await wait_until(
            lambda: coordinator.status(rollout_id).target_statuses[first_stage[0]]
            == TargetStatus.ACTIVE
        )

        assert await coordinator.cancel(rollout_id)
        rollout = await coordinator.wait(rollout_id, timeout=2)

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.rollback_reason == "Cancelled"
        assert deployer.version_of(first_stage[0]) == "v1"
        assert set(deployer.calls_for("apply")) == set(first_stage)
        assert coordinator.active_subjects() == []

        # terminal rollouts cannot be cancelled again
        assert not await coordinator.cancel(rollout_id)

    @pytest.mark.asyncio
    async def test_manual_rollback(self, coordinator, targets):
        rollout_id = await coordinator.start(_spec(self.SLOW_CANARY, targets))
        await wait_until(lambda: coordinator.status(rollout_id).touched_targets())

        assert await coordinator.rollback(rollout_id, "operator saw elevated latency")
        rollout = await coordinator.wait(rollout_id, timeout=2)

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.rollback_reason == "operator saw elevated latency"
        assert "rollback_requested" in [e.event_type for e in rollout.events]

    @pytest.mark.asyncio
    async def test_cancel_during_pause(self, coordinator, deployer):
        strategy = RollingStrategy(evaluation_window_seconds=0, pause_between_stages_seconds=30)
        rollout_id = await coordinator.start(_spec(strategy, make_targets(3)))
        await wait_until(lambda: coordinator.status(rollout_id).current_stage_index == 1)

        await coordinator.cancel(rollout_id)
        rollout = await coordinator.wait(rollout_id, timeout=2)

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert deployer.calls_for("apply") == ["cluster-00", "cluster-00"]

    @pytest.mark.asyncio
    async def test_cancel_between_target_applies(
        self, deployer, health_evaluator, engine_config, store
    ):
        coordinator = RolloutCoordinator(
            deployer,
            health_evaluator,
            config=engine_config.model_copy(update={"max_concurrency_per_stage": 1}),
            store=store,
        )
        deployer.delay("cluster-00", 0.2)
        rollout_id = await coordinator.start(_spec(DirectStrategy(), make_targets(3)))
        await wait_until(lambda: deployer.in_flight == 1)

        assert await coordinator.cancel(rollout_id)
        rollout = await coordinator.wait(rollout_id, timeout=2)

        # the in-flight apply finishes and is reverted; queued targets never start
        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.rollback_reason == "Cancelled"
        assert deployer.calls == [("apply", "cluster-00", "v2"), ("apply", "cluster-00", "v1")]
        assert rollout.target_statuses == {
            "cluster-00": TargetStatus.ROLLED_BACK,
            "cluster-01": TargetStatus.PENDING,
            "cluster-02": TargetStatus.PENDING,
        }

    @pytest.mark.asyncio
    async def test_halts_without_auto_rollback(self, coordinator, deployer, health_evaluator):
        targets = make_targets(2)
        health_evaluator.script = [0.5]
        strategy = DirectStrategy(skip_health_checks=False, health_check_window_seconds=0)

        rollout_id = await coordinator.start(
            _spec(strategy, targets, auto_rollback_enabled=False)
        )
        await wait_until(lambda: coordinator.status(rollout_id).halted_reason is not None)

        halted = coordinator.status(rollout_id)
        assert halted.status == RolloutStatus.DEPLOYING
        assert "Health gate failed" in halted.halted_reason
        assert coordinator.active_subjects() == ["checkout"]
        assert all(deployer.version_of(t.target_id) == "v2" for t in targets)

        assert await coordinator.rollback(rollout_id)
        rollout = await coordinator.wait(rollout_id, timeout=2)

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert rollout.rollback_reason == "Manual rollback"
        assert all(deployer.version_of(t.target_id) == "v1" for t in targets)

    @pytest.mark.asyncio
    async def test_unknown_rollout(self, coordinator):
        with pytest.raises(RolloutNotFoundError):
            coordinator.status("missing")
        with pytest.raises(RolloutNotFoundError):
            await coordinator.cancel("missing")

    @pytest.mark.asyncio
    async def test_invalid_input_mutates_nothing(self, coordinator, store):
        with pytest.raises(PlanningError):
            await coordinator.start(_spec(CANARY_10_30, []))

        assert await store.list() == []
        assert coordinator.active_subjects() == []


@pytest.mark.integration
class TestRollbackFailure:
    """Test escalation when targets cannot be reverted."""

    @pytest.mark.asyncio
    async def test_unreverted_target_fails_rollout(self, coordinator, deployer, health_evaluator, alerts, metrics):
        targets = make_targets(3)
        health_evaluator.script = [0.5]
        deployer.fail("cluster-01", version="v1")
        strategy = DirectStrategy(skip_health_checks=False, health_check_window_seconds=0)

        rollout = await coordinator.run(_spec(strategy, targets))

        assert rollout.status == RolloutStatus.FAILED
        assert rollout.unreverted_targets == {"cluster-01": "apply rejected by cluster-01"}
        assert rollout.target_statuses == {
            "cluster-00": TargetStatus.ROLLED_BACK,
            "cluster-01": TargetStatus.FAILED,
            "cluster-02": TargetStatus.ROLLED_BACK,
        }
        assert rollout.target_errors["cluster-01"].startswith("revert failed")
        assert "ROLLBACK_FAILED" in rollout.error_message

        assert len(alerts) == 1
        alerted_rollout, failure = alerts[0]
        assert alerted_rollout.rollout_id == rollout.rollout_id
        assert failure.details["unreverted"] == {"cluster-01": "apply rejected by cluster-01"}
        assert metrics.get_sample_value("rollout_rollback_failures_total") == 1
        assert coordinator.active_subjects() == []


@pytest.mark.integration
class TestRecovery:
    """Test resuming rollouts persisted by a previous coordinator."""

    @pytest.mark.asyncio
    async def test_resumes_from_current_stage(self, coordinator, deployer, store, engine_config):
        strategy = RollingStrategy(evaluation_window_seconds=0, pause_between_stages_seconds=30)
        rollout_id = await coordinator.start(_spec(strategy, make_targets(2)))
        await wait_until(lambda: coordinator.status(rollout_id).current_stage_index == 1)

        # simulated crash: the task dies, the persisted record stays unfinished
        await coordinator.shutdown()
        assert (await store.get(rollout_id)).status == RolloutStatus.DEPLOYING

        restarted = RolloutCoordinator(
            deployer, ScriptedHealthEvaluator(), config=engine_config, store=store
        )
        assert await restarted.recover() == [rollout_id]
        rollout = await restarted.wait(rollout_id, timeout=2)

        assert rollout.status == RolloutStatus.COMPLETED
        assert deployer.calls_for("apply") == ["cluster-00", "cluster-01"]
        assert "rollout_recovered" in [e.event_type for e in rollout.events]

    @pytest.mark.asyncio
    async def test_resumes_interrupted_rollback(self, deployer, store, engine_config):
        targets = make_targets(2)
        stranded = Rollout.from_spec(_spec(CANARY_10_30, targets), stage_count=2)
        stranded.transition_to(RolloutStatus.DEPLOYING)
        stranded.mark_target("cluster-00", TargetStatus.ACTIVE)
        stranded.transition_to(RolloutStatus.ROLLING_BACK)
        stranded.rollback_reason = "Health gate failed at stage 0"
        await store.save(stranded)

        restarted = RolloutCoordinator(
            deployer, ScriptedHealthEvaluator(), config=engine_config, store=store
        )
        await restarted.recover()
        rollout = await restarted.wait(stranded.rollout_id, timeout=2)

        assert rollout.status == RolloutStatus.ROLLED_BACK
        assert deployer.calls == [("apply", "cluster-00", "v1")]
        assert rollout.rollback_reason == "Health gate failed at stage 0"

    @pytest.mark.asyncio
    async def test_unfinished_record_blocks_new_rollout(self, deployer, store, engine_config):
        stranded = Rollout.from_spec(_spec(CANARY_10_30, make_targets(2)), stage_count=2)
        stranded.transition_to(RolloutStatus.DEPLOYING)
        await store.save(stranded)

        restarted = RolloutCoordinator(
            deployer, ScriptedHealthEvaluator(), config=engine_config, store=store
        )
        with pytest.raises(AlreadyInProgressError) as exc_info:
            await restarted.start(_spec(CANARY_10_30, make_targets(2)))

        assert exc_info.value.active_rollout_id == stranded.rollout_id
        assert restarted.active_subjects() == []


@pytest.mark.integration
class TestFinishedRollouts:
    """Test that finished rollouts leave memory but stay queryable."""

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, deployer, health_evaluator, engine_config, store):
        coordinator = RolloutCoordinator(
            deployer,
            health_evaluator,
            config=engine_config.model_copy(update={"finished_history_size": 3}),
            store=store,
        )
        rollout_ids = []
        for _ in range(20):
            rollout = await coordinator.run(_spec(DirectStrategy(), make_targets(2)))
            rollout_ids.append(rollout.rollout_id)

        assert coordinator._controls == {}
        assert coordinator._rollouts == {}
        assert [r.rollout_id for r in coordinator._history] == rollout_ids[-3:]

        # evicted from memory, still served from the store
        with pytest.raises(RolloutNotFoundError):
            coordinator.status(rollout_ids[0])
        oldest = await coordinator.get_status(rollout_ids[0])
        assert oldest.status == RolloutStatus.COMPLETED
        assert coordinator.status(rollout_ids[-1]).status == RolloutStatus.COMPLETED
        assert not await coordinator.cancel(rollout_ids[0])

    @pytest.mark.asyncio
    async def test_status_from_another_coordinator(
        self, coordinator, deployer, store, engine_config
    ):
        rollout = await coordinator.run(_spec(DirectStrategy(), make_targets(2)))

        fresh = RolloutCoordinator(
            deployer, ScriptedHealthEvaluator(), config=engine_config, store=store
        )
        archived = await fresh.get_status(rollout.rollout_id)

        assert archived.status == RolloutStatus.COMPLETED
        assert archived.target_statuses == rollout.target_statuses
        assert (await fresh.wait(rollout.rollout_id)).status == RolloutStatus.COMPLETED
        with pytest.raises(RolloutNotFoundError):
            await fresh.get_status("missing")
