"""
Tests for the runner pool manager
"""

import threading

import pytest

from conftest import small_config
from shadow_build.errors import InvalidRunnerState, LeaseTimeout, RunnerUnavailable
from shadow_build.models.changeset import CapabilityClass
from shadow_build.models.runner import ReleaseOutcome, RunnerState
from shadow_build.monitor import ScaleSignal, SignalKind
from shadow_build.pool import LocalProvisioner, RunnerPoolManager, RunnerProvisioner

A = CapabilityClass.A
B = CapabilityClass.B


class FailingProvisioner(RunnerProvisioner):
    def provision(self, runner):
        raise RuntimeError("image not found")


def make_pool(clock, provisioner=None, **limits):
    config = small_config(**limits)
    return RunnerPoolManager(
        policy=config.pool,
        provisioner=provisioner or LocalProvisioner(),
        clock=clock,
        async_provisioning=False,
    )


class TestLease:
    """Lease selection."""

    def test_warm_up_reaches_floor(self, pool):
        assert pool.warm_up() == 1
        assert pool.idle_count(A) == 1
        assert pool.warm_up() == 0

    def test_lease_spawns_below_ceiling(self, pool):
        runner = pool.lease(A, job_id="j1")
        assert runner.state == RunnerState.LEASED
        assert runner.leased_job_id == "j1"
        assert pool.live_count(A) == 1

    def test_affinity_preferred(self, pool):
        r1 = pool.lease(A, affinity_hint="proj-1")
        r2 = pool.lease(A, affinity_hint="proj-2")
        pool.release(r2, ReleaseOutcome.SUCCESS)
        pool.release(r1, ReleaseOutcome.SUCCESS)

        again = pool.lease(A, affinity_hint="proj-2")
        assert again.runner_id == r2.runner_id
        assert pool.get_stats()["affinity_hits"] == 1

    def test_lease_times_out_at_ceiling(self, clock, pool):
        pool.lease(A)
        pool.lease(A)
        with pytest.raises(LeaseTimeout):
            pool.lease(A, deadline=clock())

    def test_blocked_lease_wakes_on_release(self):
        """A waiter gets the runner released by another thread."""
        pool = RunnerPoolManager(policy=small_config(a_floor=0, a_ceiling=1).pool,
                                 async_provisioning=False)
        held = pool.lease(A)
        got = []

        def waiter():
            got.append(pool.lease(A))

        thread = threading.Thread(target=waiter)
        thread.start()
        pool.release(held, ReleaseOutcome.SUCCESS)
        thread.join(timeout=5)
        assert got and got[0].runner_id == held.runner_id
        pool.close()

    def test_repeated_provision_failures(self, clock):
        pool = make_pool(clock, provisioner=FailingProvisioner(), a_ceiling=4)
        with pytest.raises(RunnerUnavailable):
            pool.lease(A, deadline=clock() + 10)
        assert pool.get_stats()["provision_failures"] == 3
        assert pool.live_count(A) == 0
        pool.close()

    def test_ceiling_never_exceeded(self, pool):
        pool.lease(A)
        pool.lease(A)
        assert not pool.can_spawn(A)
        assert pool.live_count(A) == 2


class TestRelease:
    """Release outcomes and retirement."""

    def test_three_failures_retire(self, pool):
        """A runner failing three consecutive builds is never leased again."""
        runner = pool.lease(A, affinity_hint="p")
        for _ in range(2):
            assert pool.release(runner, ReleaseOutcome.FAILURE) == RunnerState.IDLE
            assert pool.lease(A, affinity_hint="p").runner_id == runner.runner_id
        assert pool.release(runner, ReleaseOutcome.FAILURE) == RunnerState.RETIRED

        fresh = pool.lease(A, affinity_hint="p")
        assert fresh.runner_id != runner.runner_id
        assert runner.retire_reason == "failure_streak"

    def test_success_resets_streak(self, pool):
        runner = pool.lease(A)
        pool.release(runner, ReleaseOutcome.FAILURE)
        pool.lease(A)
        pool.release(runner, ReleaseOutcome.SUCCESS)
        assert runner.consecutive_failures == 0
        assert runner.builds == 2

    def test_discarded_leaves_health_alone(self, pool):
        runner = pool.lease(A)
        pool.release(runner, ReleaseOutcome.FAILURE)
        pool.lease(A)
        pool.release(runner, ReleaseOutcome.DISCARDED)
        assert runner.consecutive_failures == 1
        assert runner.builds == 1

    def test_release_sets_affinity(self, pool):
        runner = pool.lease(A, affinity_hint="proj-9")
        pool.release(runner, ReleaseOutcome.SUCCESS)
        assert runner.affinity == "proj-9"
        assert runner.leased_project is None

    def test_assign_overrides_lease_hint(self, pool):
        """Affinity follows the job actually built, not the lease hint."""
        runner = pool.lease(A, affinity_hint="proj-head", job_id="j-head")
        pool.assign(runner, "j-hot", "proj-hot")
        assert runner.leased_job_id == "j-hot"
        pool.release(runner, ReleaseOutcome.SUCCESS)
        assert runner.affinity == "proj-hot"

    def test_assign_idle_runner_rejected(self, pool):
        runner = pool.lease(A)
        pool.release(runner, ReleaseOutcome.SUCCESS)
        with pytest.raises(InvalidRunnerState):
            pool.assign(runner, "j1", "p")

    def test_max_lifetime_retires_on_release(self, clock, pool):
        runner = pool.lease(A)
        clock.advance(pool._policy.max_lifetime_sec + 1)
        assert pool.release(runner, ReleaseOutcome.SUCCESS) == RunnerState.RETIRED

    def test_idle_runner_past_lifetime_not_leased(self, clock, pool):
        pool.warm_up()
        old = pool.list_runners(A)[0]
        clock.advance(pool._policy.max_lifetime_sec + 1)
        runner = pool.lease(A)
        assert runner.runner_id != old.runner_id
        assert old.state == RunnerState.RETIRED

    def test_release_idle_runner_rejected(self, pool):
        runner = pool.lease(A)
        pool.release(runner, ReleaseOutcome.SUCCESS)
        with pytest.raises(InvalidRunnerState):
            pool.release(runner, ReleaseOutcome.SUCCESS)


class TestDrain:
    """Draining and scaling."""

    def test_drain_idle_retires(self, pool):
        pool.warm_up()
        runner = pool.list_runners(A)[0]
        assert pool.drain(runner)
        assert runner.state == RunnerState.RETIRED

    def test_drain_leased_retires_on_release(self, pool):
        runner = pool.lease(A)
        pool.drain(runner)
        assert runner.state == RunnerState.DRAINING
        assert pool.release(runner, ReleaseOutcome.SUCCESS) == RunnerState.RETIRED

    def test_maintain_scales_down_after_window(self, clock, pool):
        r1 = pool.lease(A)
        r2 = pool.lease(A)
        pool.release(r1, ReleaseOutcome.SUCCESS)
        pool.release(r2, ReleaseOutcome.SUCCESS)
        assert pool.idle_count(A) == 2

        assert pool.maintain()["drained"] == 0
        clock.advance(pool._policy.scale_down_window_sec + 1)
        assert pool.maintain()["drained"] == 1
        assert pool.idle_count(A) == 1

    def test_maintain_spawns_to_floor_with_queued_work(self, pool):
        assert pool.maintain({A: 0})["spawned"] == 0
        assert pool.maintain({A: 3})["spawned"] == 1
        assert pool.idle_count(A) == 1

    def test_scale_signals_bounded(self, pool):
        up = ScaleSignal(SignalKind.SCALE_UP, A, delta=5, reason="test")
        down = ScaleSignal(SignalKind.SCALE_DOWN, A, delta=-5, reason="test")
        assert pool.apply_scale_signal(up) == 2
        assert pool.apply_scale_signal(down) == 1

    def test_snapshot_restore(self, clock):
        pool = make_pool(clock, a_floor=1, a_ceiling=2)
        pool.warm_up()
        leased = pool.lease(A)
        pool.warm_up()
        snapshot = pool.snapshot()
        pool.close()

        restored = make_pool(clock, a_floor=1, a_ceiling=2)
        assert restored.restore(snapshot) == 1
        assert leased.runner_id not in {r.runner_id for r in restored.list_runners()}
        restored.close()
