"""
Build Engine
============

Facade that wires the classifier, queues, runner pool, cache, executor,
publisher and SLA monitor together, and the dispatcher that moves jobs
from the queues onto runners.

    ChangeSet -> classify -> Job (queued) -> lease Runner -> execute
              -> publish Artifact -> release Runner -> JobStatus
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Any, Sequence, Tuple, Union

from shadow_build.cache import ContentAddressableCache
from shadow_build.classifier import classify_with_reason
from shadow_build.config import EngineConfig
from shadow_build.errors import (
    BuildCancelled, BuildFailed, ErrorKind, LeaseTimeout,
    RunnerUnavailable, TransientInfraError, UnknownJob,
)
from shadow_build.executor import BuildExecutor, BuildResult
from shadow_build.models.changeset import CapabilityClass, ChangeSet, Platform, SourceUnit
from shadow_build.models.job import CancelReason, Job, JobError, JobState, Tier
from shadow_build.models.runner import ReleaseOutcome, Runner
from shadow_build.monitor import SLAMonitor
from shadow_build.pool import RunnerPoolManager, RunnerProvisioner
from shadow_build.priority_queue import PriorityQueueManager
from shadow_build.publisher import ArtifactPublisher
from shadow_build.schemas import (
    ArtifactInfo, JobStatus, SubmitChangeSetRequest, UnitDescriptor,
)
from shadow_build.store import JobStore
from shadow_build.toolchain import SimulatedToolchain, Toolchain

logger = logging.getLogger(__name__)


class BuildEngine:
    """
    Shadow build orchestration engine.

    Usage:
        engine = BuildEngine(config, toolchain=my_toolchain)
        engine.start()
        job_id = engine.submit_changeset("proj-1", ["h1", "h2"], "ui_only")
        status = engine.get_status(job_id)
        engine.stop()

    Tests drive the engine synchronously with dispatch_once() instead of
    start().
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        toolchain: Optional[Toolchain] = None,
        cache: Optional[ContentAddressableCache] = None,
        publisher: Optional[ArtifactPublisher] = None,
        store: Optional[JobStore] = None,
        provisioner: Optional[RunnerProvisioner] = None,
        clock: Callable[[], float] = time.time,
        async_provisioning: bool = True,
    ):
        self._lock = threading.RLock()
        self.config = config or EngineConfig()
        self._clock = clock

        self.cache = cache or ContentAddressableCache(policy=self.config.cache, clock=clock)
        self.pool = RunnerPoolManager(
            policy=self.config.pool,
            provisioner=provisioner,
            clock=clock,
            async_provisioning=async_provisioning,
        )
        self.queue = PriorityQueueManager(policy=self.config.queue, pool=self.pool, clock=clock)
        self.publisher = publisher or ArtifactPublisher()
        self.toolchain = toolchain or SimulatedToolchain()
        self.executor = BuildExecutor(
            toolchain=self.toolchain,
            cache=self.cache,
            publisher=self.publisher,
            policy=self.config.executor,
            clock=clock,
        )
        self.monitor = SLAMonitor(policy=self.config.monitor, tier_policy=self.config.tiers, clock=clock)
        self.store = store

        self.monitor.on_signal(self.pool.apply_scale_signal)
        self.queue.on_expired(self._publish)

        self._jobs: Dict[str, Job] = {}
        self._subscribers: List[Callable[[JobStatus], None]] = []

        # Threading
        self._work = threading.Condition()
        self._stop = threading.Event()
        self._dispatchers: List[threading.Thread] = []
        self._maintainer: Optional[threading.Thread] = None
        self._builds: Optional[ThreadPoolExecutor] = None

        # Metrics
        self._submitted = 0
        self._succeeded = 0
        self._failed = 0
        self._infra_retries = 0
        self._preempted = 0
        self._archived = 0

    # ─────────────────────────────────────────────────────────────────
    # External interface
    # ─────────────────────────────────────────────────────────────────

    def submit_changeset(
        self,
        project_id: str,
        unit_hashes: Sequence[str] = (),
        declared_kind: Any = "unknown",
        units: Optional[Sequence[Union[SourceUnit, Dict[str, Any]]]] = None,
        platform: Union[Platform, str] = Platform.IOS,
    ) -> str:
        """
        Classify and enqueue a change. Returns the job id immediately.

        Raises CapacityExceeded when the queues are full and
        pydantic.ValidationError for malformed input.
        """
        descriptors = [
            UnitDescriptor(**u.to_dict()) if isinstance(u, SourceUnit) else UnitDescriptor(**u)
            for u in (units or ())
        ]
        request = SubmitChangeSetRequest(
            project_id=project_id,
            unit_hashes=list(unit_hashes),
            declared_kind=getattr(declared_kind, "value", declared_kind),
            units=descriptors,
            platform=platform,
        )
        return self.submit(request)

    def submit(self, request: SubmitChangeSetRequest) -> str:
        return self.enqueue_changeset(request.to_changeset()).job_id

    def enqueue_changeset(self, changeset: ChangeSet) -> Job:
        tier, reason = classify_with_reason(changeset)
        job = Job.create(
            changeset,
            tier=tier,
            sla_sec=self.config.sla_for(tier),
            expiry_factor=self.config.queue.expiry_factor,
            now=self._clock(),
        )
        logger.info(f"{changeset.changeset_id} classified {tier.value} ({reason}) -> {job.job_id}")

        with self._lock:
            self._jobs[job.job_id] = job
        try:
            victim = self.queue.enqueue(job)
        except Exception:
            with self._lock:
                self._jobs.pop(job.job_id, None)
            raise

        with self._lock:
            self._submitted += 1
        if victim is not None:
            logger.info(f"HOT job {job.job_id} triggered preemption of {victim.job_id}")
        self._publish(job)
        self._wake()
        return job

    def get_job(self, job_id: str) -> Job:
        """Live job, or its stored record once archived. Raises UnknownJob."""
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None and self.store is not None:
            job = self.store.load(job_id)
        if job is None:
            raise UnknownJob(job_id)
        return job

    def get_status(self, job_id: str) -> JobStatus:
        """Current status of a job. Raises UnknownJob."""
        return JobStatus.from_job(self.get_job(job_id), now=self._clock())

    def get_artifact(self, ref: str) -> ArtifactInfo:
        """Resolve an artifact ref. Raises UnknownArtifact."""
        artifact = self.publisher.get_artifact(ref)
        return ArtifactInfo.from_artifact(artifact, self.publisher.jobs_for(ref))

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not finished. Returns False if it already had."""
        job = self.get_job(job_id)
        if job.is_complete():
            return False
        if self.queue.cancel(job_id):
            if job.state == JobState.CANCELLED:
                self._publish(job)
            return True
        if job.is_complete():
            return False
        # Dequeued but not started yet: the executor sees the token on entry.
        job.cancel_token.request(CancelReason.CANCELLED)
        return True

    def subscribe(self, callback: Callable[[JobStatus], None]) -> None:
        """Push a JobStatus to callback on every job transition."""
        with self._lock:
            self._subscribers.append(callback)

    def list_jobs(self, state: Optional[JobState] = None) -> List[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [j for j in jobs if state is None or j.state == state]

    # ─────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────

    def _next_assignment(
        self,
        capability_class: CapabilityClass,
        lease_wait_sec: float,
    ) -> Optional[Tuple[Job, Runner]]:
        """
        Lease a runner for the head of the class's queues, then dequeue.

        The runner is leased before the job leaves the queue, so a HOT job
        that arrives during the wait is the one that gets it.
        """
        order = self.queue.peek_order(capability_class)
        if not order:
            return None
        head = self.queue.get_job(order[0])
        if head is None:
            return None

        deadline = min(self._clock() + lease_wait_sec, head.expires_at)
        try:
            runner = self.pool.lease(
                capability_class,
                affinity_hint=head.project_id,
                deadline=deadline,
                job_id=head.job_id,
            )
        except LeaseTimeout:
            self.queue.expire_stale()
            return None
        except RunnerUnavailable as e:
            job = self.queue.dequeue(capability_class)
            if job is not None:
                self._retry_or_fail_infra(job, e)
            return None

        job = self.queue.dequeue(capability_class)
        if job is None:
            self.pool.release(runner, ReleaseOutcome.DISCARDED)
            return None
        self.pool.assign(runner, job.job_id, job.project_id)
        return job, runner

    def dispatch_once(self, capability_class: CapabilityClass) -> Optional[Job]:
        """Run the next job of a class synchronously, if a runner is free now."""
        assignment = self._next_assignment(capability_class, lease_wait_sec=0.0)
        if assignment is None:
            return None
        job, runner = assignment
        self._run_job(job, runner)
        return job

    def run_until_idle(self, max_jobs: int = 10000) -> int:
        """Dispatch synchronously until no class can make progress."""
        processed = 0
        progress = True
        while progress and processed < max_jobs:
            progress = False
            for cap in CapabilityClass:
                if self.dispatch_once(cap) is not None:
                    processed += 1
                    progress = True
        return processed

    def _run_job(self, job: Job, runner: Runner) -> Optional[BuildResult]:
        """Execute one job and settle its state and its runner."""
        self.queue.mark_running(job, runner)
        if self._stop.is_set():
            job.cancel_token.request(CancelReason.DRAINED)
        self._publish(job)
        logger.info(f"Running {job.job_id} [{job.tier.value}] on {runner.runner_id}")

        result: Optional[BuildResult] = None
        try:
            result = self.executor.execute(job, runner)
        except BuildCancelled:
            self._settle_cancelled(job, runner)
            return None
        except BuildFailed as e:
            self.pool.release(runner, ReleaseOutcome.SUCCESS)
            self._finish_failed(job, ErrorKind.BUILD_FAILED, e.raw_error, unit=e.unit, stage=e.stage)
            return None
        except TransientInfraError as e:
            self.pool.release(runner, ReleaseOutcome.FAILURE)
            self._retry_or_fail_infra(job, e)
            return None
        except Exception as e:
            logger.exception(f"Unexpected error building {job.job_id}: {e}")
            self.pool.release(runner, ReleaseOutcome.FAILURE)
            self._finish_failed(job, ErrorKind.INFRA_FAILURE, str(e))
            return None
        finally:
            self._wake()

        job.artifact_ref = result.artifact_ref
        self.queue.mark_finished(job)
        job.transition(JobState.SUCCEEDED, self._clock())
        self.pool.release(runner, ReleaseOutcome.SUCCESS)
        with self._lock:
            self._succeeded += 1
        logger.info(
            f"Job {job.job_id} succeeded in {job.latency_sec():.2f}s "
            f"({result.compiled} compiled, {result.cache_hits} cached)"
        )
        self._publish(job)
        return result

    def _settle_cancelled(self, job: Job, runner: Runner) -> None:
        reason = job.cancel_token.reason
        now = self._clock()

        if reason == CancelReason.PREEMPTED:
            self.pool.release(runner, ReleaseOutcome.DISCARDED)
            self.queue.requeue_preempted(job)
            with self._lock:
                self._preempted += 1
        elif reason == CancelReason.DRAINED:
            self.pool.release(runner, ReleaseOutcome.DISCARDED)
            job.runner_id = None
            job.cancel_token.clear()
            self.queue.requeue(job)
        elif reason == CancelReason.TIMEOUT:
            self.pool.drain(runner)
            self.pool.release(runner, ReleaseOutcome.DISCARDED)
            self.queue.mark_finished(job)
            job.fail(self._job_error(job, ErrorKind.TIMEOUT, "deadline exceeded while running"),
                     state=JobState.EXPIRED, now=now)
            logger.warning(f"Job {job.job_id} timed out on {runner.runner_id}")
        else:
            self.pool.release(runner, ReleaseOutcome.DISCARDED)
            self.queue.mark_finished(job)
            job.fail(self._job_error(job, ErrorKind.CANCELLED, "cancelled by owner"),
                     state=JobState.CANCELLED, now=now)
            logger.info(f"Job {job.job_id} cancelled while running")
        self._publish(job)

    def _requeue_unstarted(self, job: Job, runner: Runner) -> None:
        self.pool.release(runner, ReleaseOutcome.DISCARDED)
        job.runner_id = None
        self.queue.requeue(job)
        self._publish(job)

    def _retry_or_fail_infra(self, job: Job, error: Exception) -> None:
        job.infra_attempts += 1
        job.runner_id = None
        if job.infra_attempts > self.config.executor.max_infra_retries:
            self._finish_failed(job, ErrorKind.INFRA_FAILURE, str(error))
            return
        with self._lock:
            self._infra_retries += 1
        logger.warning(
            f"Infra failure on {job.job_id} (attempt {job.infra_attempts}): {error}; re-queueing"
        )
        self.queue.requeue(job)
        self._publish(job)

    def _finish_failed(
        self,
        job: Job,
        kind: ErrorKind,
        message: str,
        unit: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        self.queue.mark_finished(job)
        job.fail(self._job_error(job, kind, message, unit=unit, stage=stage), now=self._clock())
        with self._lock:
            self._failed += 1
        logger.info(f"Job {job.job_id} failed ({kind.value}): {message}")
        self._publish(job)

    def _job_error(
        self,
        job: Job,
        kind: ErrorKind,
        message: str,
        unit: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> JobError:
        return JobError(
            kind=kind,
            message=message,
            unit=unit,
            stage=stage,
            tier=job.tier.value,
            elapsed_sec=self._clock() - job.submitted_at,
        )

    def _publish(self, job: Job) -> None:
        """Persist, sample and push a job's new state."""
        if self.store is not None:
            try:
                self.store.save(job)
            except OSError as e:
                logger.warning(f"Failed to persist {job.job_id}: {e}")
        self.monitor.observe(job)

        with self._lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        status = JobStatus.from_job(job, now=self._clock())
        for cb in subscribers:
            try:
                cb(status)
            except Exception as e:
                logger.exception(f"Subscriber error: {e}")

    # ─────────────────────────────────────────────────────────────────
    # Deadlines, scaling and recovery
    # ─────────────────────────────────────────────────────────────────

    def check_deadlines(self) -> List[str]:
        """Expire stale queued jobs and time out running jobs past expiry."""
        now = self._clock()
        timed_out = [job.job_id for job in self.queue.expire_stale(now)]
        for job, runner in self.queue.running_jobs():
            if job.is_expired(now) and job.cancel_token.request(CancelReason.TIMEOUT):
                logger.warning(f"Job {job.job_id} on {runner.runner_id} passed its expiry")
                timed_out.append(job.job_id)
        return timed_out

    def archive_completed(self, now: Optional[float] = None) -> List[str]:
        """Drop finished jobs from memory once their retention has passed."""
        now = now if now is not None else self._clock()
        retention = self.config.queue.completed_retention_sec
        with self._lock:
            done = [
                job_id for job_id, job in self._jobs.items()
                if job.is_complete()
                and job.completed_at is not None
                and now - job.completed_at >= retention
            ]
            for job_id in done:
                del self._jobs[job_id]
            self._archived += len(done)
        for job_id in done:
            self.monitor.forget(job_id)
        if done:
            logger.debug(f"Archived {len(done)} finished jobs")
        return done

    def maintain(self) -> Dict[str, Any]:
        """One maintenance pass: deadlines, pool scaling, cache pressure, SLA signals, archival."""
        timed_out = self.check_deadlines()
        scaled = self.pool.maintain(self.queue.depths())
        evicted = self.cache.evict() if self.cache.under_pressure() else []
        signals = self.monitor.evaluate({cap: self.pool.utilization(cap) for cap in CapabilityClass})
        archived = self.archive_completed()
        if self.store is not None:
            self.persist()
        return {
            "timed_out": timed_out,
            "spawned": scaled["spawned"],
            "drained": scaled["drained"],
            "evicted": len(evicted),
            "signals": [s.to_dict() for s in signals],
            "archived": len(archived),
        }

    def recover(self) -> int:
        """
        Reload non-terminal jobs from the store after a restart.

        QUEUED jobs return to their own queue; jobs that were assigned,
        running or preempted come back at WARM priority.
        """
        if self.store is None:
            return 0

        self.pool.restore(self.store.load_runners())
        self.publisher.restore(self.store.load_artifacts())

        recovered = 0
        for job in self.store.load_inflight():
            with self._lock:
                if job.job_id in self._jobs:
                    continue
                self._jobs[job.job_id] = job
            if job.state != JobState.QUEUED:
                job.queue_tier = Tier.WARM
                job.runner_id = None
            self.queue.requeue(job)
            self.store.save(job)
            recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} in-flight jobs")
        self.check_deadlines()
        self._wake()
        return recovered

    def persist(self) -> None:
        """Write runner and artifact metadata to the store."""
        if self.store is None:
            return
        self.store.save_runners(self.pool.snapshot())
        self.store.save_artifacts([a.to_dict() for a in self.publisher.list_artifacts()])

    # ─────────────────────────────────────────────────────────────────
    # Background operation
    # ─────────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Warm the pool and start dispatcher and maintenance threads."""
        if self.is_running():
            logger.warning("Engine already running")
            return

        self._stop.clear()
        self.pool.warm_up()
        self._builds = ThreadPoolExecutor(
            max_workers=self.config.executor.build_workers,
            thread_name_prefix="build",
        )
        self._dispatchers = [
            threading.Thread(
                target=self._dispatch_loop,
                args=(cap,),
                daemon=True,
                name=f"ShadowBuildDispatch-{cap.value}",
            )
            for cap in CapabilityClass
        ]
        for thread in self._dispatchers:
            thread.start()
        self._maintainer = threading.Thread(
            target=self._maintain_loop,
            daemon=True,
            name="ShadowBuildMaintain",
        )
        self._maintainer.start()
        logger.info("Build engine started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop dispatching; running builds go back to the queue."""
        self._stop.set()
        self._wake()
        for job, _ in self.queue.running_jobs():
            job.cancel_token.request(CancelReason.DRAINED)
        for thread in self._dispatchers:
            thread.join(timeout=timeout)
        if self._builds is not None:
            self._builds.shutdown(wait=True)
            self._builds = None
        if self._maintainer is not None:
            self._maintainer.join(timeout=timeout)
        self.persist()
        self.pool.close()
        self.cache.close()
        logger.info("Build engine stopped")

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._dispatchers)

    def _wake(self) -> None:
        with self._work:
            self._work.notify_all()

    def _dispatch_loop(self, capability_class: CapabilityClass) -> None:
        logger.debug(f"Dispatcher for class {capability_class.value} started")
        while not self._stop.is_set():
            try:
                with self._work:
                    if self.queue.depth(capability_class) == 0:
                        self._work.wait(timeout=0.5)
                        continue
                assignment = self._next_assignment(capability_class, lease_wait_sec=0.5)
                if assignment is not None:
                    job, runner = assignment
                    if self._stop.is_set():
                        self._requeue_unstarted(job, runner)
                    else:
                        self._builds.submit(self._run_job, job, runner)
            except Exception as e:
                logger.exception(f"Dispatch error: {e}")
                self._stop.wait(timeout=0.5)

    def _maintain_loop(self) -> None:
        interval = self.config.monitor.evaluate_interval_sec
        last_full = 0.0
        while not self._stop.is_set():
            try:
                if time.monotonic() - last_full >= interval:
                    self.maintain()
                    last_full = time.monotonic()
                else:
                    self.check_deadlines()
            except Exception as e:
                logger.exception(f"Maintenance error: {e}")
            self._stop.wait(timeout=1.0)

    # ─────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate statistics of every component."""
        with self._lock:
            by_state: Dict[str, int] = {}
            for job in self._jobs.values():
                by_state[job.state.value] = by_state.get(job.state.value, 0) + 1
            engine = {
                "running": self.is_running(),
                "jobs": by_state,
                "submitted": self._submitted,
                "succeeded": self._succeeded,
                "failed": self._failed,
                "infra_retries": self._infra_retries,
                "preempted": self._preempted,
                "archived": self._archived,
            }
        return {
            "engine": engine,
            "queue": self.queue.get_stats(),
            "pool": self.pool.get_stats(),
            "cache": self.cache.get_stats(),
            "executor": self.executor.get_stats(),
            "publisher": self.publisher.get_stats(),
            "monitor": self.monitor.get_stats(),
        }
