"""
End-to-end tests for the build engine

The engine runs synchronously: dispatch_once() leases a runner, builds the
head job of a capability class and settles it before returning. Mid-build
events (HOT arrivals, cancels, clock jumps) are injected through the
simulated toolchain's before_compile hook.
"""

import threading
import time

import pytest
from pydantic import ValidationError

from conftest import make_changeset, make_units, small_config
from shadow_build.cache import ContentAddressableCache, FileBlobStore
from shadow_build.engine import BuildEngine
from shadow_build.errors import CapacityExceeded, ErrorKind, RunnerUnavailable, UnknownArtifact, UnknownJob
from shadow_build.models.changeset import CapabilityClass, ChangeKind, UnitRole
from shadow_build.models.job import JobState, Tier
from shadow_build.monitor import SignalKind
from shadow_build.pool import LocalProvisioner
from shadow_build.store import JobStore
from shadow_build.toolchain import SimulatedToolchain

A = CapabilityClass.A


def cold_changeset(count=6):
    return make_changeset(
        "proj-cold",
        kind=ChangeKind.DEPENDENCY,
        units=make_units("C", count, role=UnitRole.LOGIC, chain=True),
    )


class TestHotPath:
    """UI-only edits."""

    def test_ui_only_change_builds_and_publishes(self, engine):
        job_id = engine.submit_changeset("proj-1", ["h1", "h2"], "ui_only")
        status = engine.get_status(job_id)
        assert status.tier == "hot"
        assert status.state == "queued"

        engine.dispatch_once(A)

        status = engine.get_status(job_id)
        assert status.state == "succeeded"
        assert not status.sla_violated
        artifact = engine.get_artifact(status.artifact_ref)
        assert artifact.content_hash == status.artifact_ref
        assert artifact.job_ids == [job_id]
        assert artifact.binary_location

    def test_unchanged_resubmission_compiles_nothing(self, engine, toolchain):
        first = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)
        compiled = toolchain.compile_count

        second = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)

        assert toolchain.compile_count == compiled
        assert second.state == JobState.SUCCEEDED
        assert second.artifact_ref == first.artifact_ref

    def test_status_pushed_to_subscribers(self, engine):
        seen = []
        engine.subscribe(lambda status: seen.append((status.job_id, status.state)))
        job = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)
        assert seen == [(job.job_id, "queued"), (job.job_id, "running"), (job.job_id, "succeeded")]

    def test_broken_subscriber_does_not_stop_build(self, engine):
        def broken(status):
            raise RuntimeError("editor went away")

        engine.subscribe(broken)
        job = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)
        assert job.state == JobState.SUCCEEDED


class TestPreemption:
    """HOT arrivals reclaim runners from COLD builds."""

    def test_preempted_cold_job_resumes_from_cache(self, make_engine):
        hot_ids = []
        holder = {}

        def hot_arrives(unit, runner):
            if unit.name == "C3" and not hot_ids:
                hot_ids.append(holder["engine"].submit_changeset("proj-ui", ["v1", "v2"], "ui_only"))

        toolchain = SimulatedToolchain(before_compile=hot_arrives)
        engine = holder["engine"] = make_engine(toolchain=toolchain)
        cold = engine.enqueue_changeset(cold_changeset())
        assert cold.tier == Tier.COLD

        engine.dispatch_once(A)
        assert cold.state == JobState.QUEUED
        assert cold.retry_count == 1
        assert cold.queue_tier == Tier.WARM
        assert JobState.PREEMPTED.value in [state for state, _ in cold.history]
        cold_compiles_first_run = sum(1 for name in toolchain.compiled_units if name.startswith("C"))

        hot = engine.dispatch_once(A)
        assert hot.job_id == hot_ids[0]
        assert hot.state == JobState.SUCCEEDED

        toolchain.compiled_units.clear()
        resumed = engine.dispatch_once(A)
        assert resumed is cold
        assert cold.state == JobState.SUCCEEDED
        assert cold.tier == Tier.COLD
        assert len(toolchain.compiled_units) == 6 - cold_compiles_first_run
        assert len(toolchain.compiled_units) < 6
        assert engine.get_stats()["engine"]["preempted"] == 1

    def test_cold_arrival_never_preempts(self, make_engine):
        holder = {}

        def cold_arrives(unit, runner):
            if unit.name == "C0" and "second" not in holder:
                holder["second"] = holder["engine"].enqueue_changeset(cold_changeset(2))

        engine = holder["engine"] = make_engine(toolchain=SimulatedToolchain(before_compile=cold_arrives))
        first = engine.enqueue_changeset(cold_changeset(3))
        engine.dispatch_once(A)

        assert first.state == JobState.SUCCEEDED
        assert first.retry_count == 0
        assert holder["second"].state == JobState.QUEUED

    def test_hot_arrival_with_spare_capacity_does_not_preempt(self, make_engine):
        holder = {}

        def hot_arrives(unit, runner):
            if unit.name == "C0" and "hot" not in holder:
                holder["hot"] = holder["engine"].submit_changeset("proj-ui", ["v1"], "ui_only")

        engine = holder["engine"] = make_engine(
            config=small_config(a_ceiling=2),
            toolchain=SimulatedToolchain(before_compile=hot_arrives),
        )
        cold = engine.enqueue_changeset(cold_changeset(2))
        engine.dispatch_once(A)
        assert cold.state == JobState.SUCCEEDED
        assert cold.retry_count == 0


class TestRunnerAffinity:

    def test_affinity_follows_the_job_built(self, make_engine):
        """A HOT arrival during the lease takes the runner and sets its affinity."""
        holder = {}

        class SubmittingProvisioner(LocalProvisioner):
            def provision(self, runner):
                super().provision(runner)
                if "hot" not in holder:
                    holder["hot"] = holder["engine"].submit_changeset("proj-hot", ["v1"], "ui_only")

        engine = holder["engine"] = make_engine(provisioner=SubmittingProvisioner())
        warm = engine.enqueue_changeset(make_changeset(
            "proj-warm", kind=ChangeKind.LOGIC, units=make_units("L", 1, role=UnitRole.LOGIC),
        ))

        built = engine.dispatch_once(A)
        assert built.job_id == holder["hot"]
        assert warm.state == JobState.QUEUED
        runner = engine.pool.get_runner(built.runner_id)
        assert runner.affinity == "proj-hot"


class TestFailures:
    """Terminal errors reach the submitter as structured JobErrors."""

    def test_compile_error_fails_job(self, make_engine):
        engine = make_engine(toolchain=SimulatedToolchain(failing_units={"View1": "type mismatch"}))
        job_id = engine.enqueue_changeset(make_changeset()).job_id
        engine.dispatch_once(A)

        status = engine.get_status(job_id)
        assert status.state == "failed"
        assert status.error.kind == ErrorKind.BUILD_FAILED.value
        assert status.error.unit == "View1"
        assert status.error.stage == "compiling_units"
        assert status.error.message == "type mismatch"

        runner = engine.pool.list_runners(A)[0]
        assert runner.consecutive_failures == 0
        assert runner.builds == 1

    def test_corrupt_cache_metadata_recompiles(self, make_engine, toolchain, clock, tmp_path):
        cache = ContentAddressableCache(store=FileBlobStore(tmp_path), clock=clock)
        engine = make_engine(cache=cache)
        engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)
        compiled = toolchain.compile_count
        for meta_path in tmp_path.glob("*/*.json"):
            meta_path.write_text("{trunc")

        again = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)

        assert again.state == JobState.SUCCEEDED
        assert toolchain.compile_count == compiled * 2
        assert engine.pool.list_runners(A)[0].consecutive_failures == 0
        assert cache.get_stats()["corruptions"] == compiled

    def test_infra_failure_retried_then_reported(self, make_engine):
        def unreachable(unit, runner):
            raise RunnerUnavailable(runner.runner_id)

        engine = make_engine(toolchain=SimulatedToolchain(before_compile=unreachable))
        job = engine.enqueue_changeset(make_changeset())

        assert engine.run_until_idle() == 3
        assert job.state == JobState.FAILED
        assert job.error.kind == ErrorKind.INFRA_FAILURE
        assert job.infra_attempts == 3
        assert engine.get_stats()["engine"]["infra_retries"] == 2

    def test_transient_infra_failure_recovers(self, make_engine):
        failures = []

        def flaky(unit, runner):
            if not failures:
                failures.append(runner.runner_id)
                raise RunnerUnavailable(runner.runner_id)

        engine = make_engine(toolchain=SimulatedToolchain(before_compile=flaky))
        job = engine.enqueue_changeset(make_changeset())
        engine.run_until_idle()
        assert job.state == JobState.SUCCEEDED
        assert job.infra_attempts == 1

    def test_running_job_times_out(self, make_engine, clock):
        holder = {}

        def stall(unit, runner):
            job = holder["job"]
            clock.advance(job.expires_at - clock() + 1)
            holder["engine"].check_deadlines()

        engine = holder["engine"] = make_engine(toolchain=SimulatedToolchain(before_compile=stall))
        job = holder["job"] = engine.enqueue_changeset(make_changeset(units=make_units("View", 1)))
        engine.dispatch_once(A)

        assert job.state == JobState.EXPIRED
        assert job.error.kind == ErrorKind.TIMEOUT
        assert engine.get_status(job.job_id).sla_violated
        assert not [r for r in engine.pool.list_runners(A) if r.is_live()]

    def test_queued_job_expires(self, engine, clock):
        job = engine.enqueue_changeset(make_changeset())
        clock.advance(job.expires_at - clock() + 1)
        assert engine.check_deadlines() == [job.job_id]
        assert job.state == JobState.EXPIRED
        assert job.error.kind == ErrorKind.TIMEOUT


class TestCancel:

    def test_cancel_queued(self, engine):
        job = engine.enqueue_changeset(make_changeset())
        assert engine.cancel(job.job_id)
        assert job.state == JobState.CANCELLED
        assert not engine.cancel(job.job_id)
        assert engine.dispatch_once(A) is None

    def test_cancel_running(self, make_engine):
        holder = {}

        def cancel_now(unit, runner):
            holder["engine"].cancel(holder["job"].job_id)

        engine = holder["engine"] = make_engine(toolchain=SimulatedToolchain(before_compile=cancel_now))
        job = holder["job"] = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)

        assert job.state == JobState.CANCELLED
        assert job.error.kind == ErrorKind.CANCELLED
        runner = engine.pool.list_runners(A)[0]
        assert runner.builds == 0
        assert runner.consecutive_failures == 0

    def test_cancel_between_dequeue_and_start(self, engine):
        job = engine.enqueue_changeset(make_changeset())
        assigned, runner = engine._next_assignment(A, lease_wait_sec=0.0)
        assert assigned is job and job.state == JobState.ASSIGNED

        assert engine.cancel(job.job_id)
        engine._run_job(job, runner)
        assert job.state == JobState.CANCELLED
        assert engine.toolchain.compile_count == 0


class TestSubmission:

    def test_queue_full_rejects(self, make_engine):
        config = small_config()
        config.queue.max_depth = 1
        engine = make_engine(config=config)
        engine.submit_changeset("p", ["h1"], "ui_only")
        with pytest.raises(CapacityExceeded):
            engine.submit_changeset("p", ["h2"], "ui_only")
        assert len(engine.list_jobs()) == 1

    def test_malformed_submission(self, engine):
        with pytest.raises(ValidationError):
            engine.submit_changeset("", ["h1"], "ui_only")

    def test_unit_roles_drive_tier(self, engine):
        job_id = engine.submit_changeset(
            "p",
            declared_kind="ui_only",
            units=[
                {"content_hash": "h1", "name": "Header", "role": "view"},
                {"content_hash": "h2", "name": "Podfile", "role": "dependency_manifest"},
            ],
        )
        assert engine.get_status(job_id).tier == "cold"

    def test_unknown_ids(self, engine):
        with pytest.raises(UnknownJob):
            engine.get_status("job-missing")
        with pytest.raises(UnknownArtifact):
            engine.get_artifact("deadbeef")


class TestOperations:
    """Recovery, maintenance and scale signals."""

    def test_recover_inflight_jobs(self, make_engine, tmp_path):
        store = JobStore(tmp_path)
        first = make_engine(store=store)
        queued = first.enqueue_changeset(make_changeset("proj-q"))
        running = first.enqueue_changeset(cold_changeset(2))
        running.transition(JobState.RUNNING)
        store.save(running)

        second = make_engine(store=JobStore(tmp_path))
        assert second.recover() == 2
        restored = second.get_job(running.job_id)
        assert restored.queue_tier == Tier.WARM
        assert restored.tier == Tier.COLD
        assert restored.state == JobState.QUEUED
        assert second.get_job(queued.job_id).queue_tier == Tier.HOT

        assert second.run_until_idle() == 2
        assert store.load(running.job_id).state == JobState.SUCCEEDED

    def test_maintain_report(self, engine):
        report = engine.maintain()
        assert set(report) == {"timed_out", "spawned", "drained", "evicted", "signals", "archived"}

    def test_finished_jobs_archived_from_memory(self, make_engine, clock, tmp_path):
        engine = make_engine(store=JobStore(tmp_path))
        done = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)
        pending = engine.enqueue_changeset(make_changeset("proj-2", units=make_units("W", 1)))

        assert engine.archive_completed() == []
        clock.advance(engine.config.queue.completed_retention_sec + 1)
        assert engine.maintain()["archived"] == 1

        assert [j.job_id for j in engine.list_jobs()] == [pending.job_id]
        assert done.job_id not in engine.monitor._seen
        status = engine.get_status(done.job_id)
        assert status.state == "succeeded"
        assert status.artifact_ref == done.artifact_ref
        assert not engine.cancel(done.job_id)

    def test_archived_job_without_store_is_gone(self, engine, clock):
        job = engine.enqueue_changeset(make_changeset())
        engine.dispatch_once(A)
        clock.advance(engine.config.queue.completed_retention_sec)
        assert engine.archive_completed() == [job.job_id]
        with pytest.raises(UnknownJob):
            engine.get_status(job.job_id)

    def test_slow_hot_builds_raise_scale_up(self, make_engine, clock):
        toolchain = SimulatedToolchain(before_compile=lambda unit, runner: clock.advance(4.5))
        engine = make_engine(toolchain=toolchain)
        signals = []
        engine.monitor.on_signal(signals.append)

        for i in range(3):
            engine.enqueue_changeset(make_changeset(f"proj-{i}", units=make_units(f"V{i}_", 2)))
            engine.dispatch_once(A)
        assert engine.monitor.percentiles(Tier.HOT)["p95"] > 7.5

        engine.maintain()
        clock.advance(11)
        engine.maintain()
        assert (SignalKind.SCALE_UP, A) in [(s.kind, s.capability_class) for s in signals]


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestBackgroundOperation:
    """Dispatcher threads, build workers and draining stop, on the wall clock."""

    def test_jobs_across_tiers_and_classes_complete(self):
        engine = BuildEngine(config=small_config(a_ceiling=2), toolchain=SimulatedToolchain())
        done = threading.Event()
        finished = {}

        def track(status):
            if status.state in ("succeeded", "failed", "expired", "cancelled"):
                finished[status.job_id] = status.state
                if len(finished) == 4:
                    done.set()

        engine.subscribe(track)
        engine.start()
        try:
            assert engine.is_running()
            jobs = [
                engine.submit_changeset("proj-ui", ["v1", "v2"], "ui_only"),
                engine.submit_changeset("proj-logic", ["l1"], "logic"),
                engine.submit_changeset("proj-deps", ["d1"], "dependency"),
                engine.submit_changeset("proj-droid", ["a1"], "ui_only", platform="android"),
            ]
            assert done.wait(timeout=10)
        finally:
            engine.stop(timeout=5)

        assert {finished[job_id] for job_id in jobs} == {"succeeded"}
        assert [engine.get_status(job_id).tier for job_id in jobs] == ["hot", "warm", "cold", "hot"]
        assert not engine.is_running()

    def test_stop_requeues_running_and_assigned_builds(self):
        config = small_config(a_ceiling=2)
        config.executor.build_workers = 1
        started = threading.Event()
        gate = threading.Event()

        def hold_first_build(unit, runner):
            if unit.name.startswith("Slow"):
                started.set()
                gate.wait(timeout=5)

        engine = BuildEngine(config=config, toolchain=SimulatedToolchain(before_compile=hold_first_build))
        engine.start()
        stopper = threading.Thread(target=engine.stop)
        try:
            running = engine.enqueue_changeset(make_changeset("proj-slow", units=make_units("Slow", 1)))
            assert started.wait(timeout=5)
            waiting = engine.enqueue_changeset(make_changeset("proj-next", units=make_units("Next", 1)))
            assert wait_for(lambda: waiting.state == JobState.ASSIGNED)

            stopper.start()
            assert wait_for(running.cancel_token.is_set)
        finally:
            gate.set()
        stopper.join(timeout=10)

        assert not stopper.is_alive()
        assert running.state == JobState.QUEUED
        assert waiting.state == JobState.QUEUED
        assert not running.cancel_token.is_set()
        assert engine.toolchain.link_count == 0
        assert {job.job_id for job in engine.queue.queued_jobs()} == {running.job_id, waiting.job_id}
