"""
Runner Pool Manager
===================

Owns the ephemeral build runners of each capability class: spawns them,
leases them to jobs, takes them back and retires them. No other component
changes a runner's lifecycle state.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Any

from shadow_build.config import PoolPolicy
from shadow_build.errors import InvalidRunnerState, LeaseTimeout, RunnerUnavailable
from shadow_build.models.changeset import CapabilityClass
from shadow_build.models.runner import Runner, RunnerState, ReleaseOutcome

logger = logging.getLogger(__name__)


class RunnerProvisioner:
    """
    Brings a runner host up and tears it down.

    Implementations talk to the actual fleet (VM images, containers). provision()
    blocks until the host is ready and raises on failure.
    """

    def provision(self, runner: Runner) -> None:
        raise NotImplementedError

    def teardown(self, runner: Runner) -> None:
        pass

    def is_alive(self, runner: Runner) -> bool:
        return True


class LocalProvisioner(RunnerProvisioner):
    """Provisioner for in-process runners, with an optional warm-up delay."""

    def __init__(self, warmup_sec: float = 0.0):
        self.warmup_sec = warmup_sec
        self.provisioned: List[str] = []
        self.torn_down: List[str] = []
        self._lock = threading.Lock()

    def provision(self, runner: Runner) -> None:
        if self.warmup_sec > 0:
            time.sleep(self.warmup_sec)
        with self._lock:
            self.provisioned.append(runner.runner_id)

    def teardown(self, runner: Runner) -> None:
        with self._lock:
            self.torn_down.append(runner.runner_id)


class RunnerPoolManager:
    """
    Leases runners to jobs with project affinity, keeps a warm floor of idle
    runners per class and never exceeds the per-class ceiling.

    Thread-safe: state protected by an RLock; blocked leases wait on a
    Condition that is notified whenever a runner becomes idle or retires.
    """

    def __init__(
        self,
        policy: Optional[PoolPolicy] = None,
        provisioner: Optional[RunnerProvisioner] = None,
        clock: Callable[[], float] = time.time,
        async_provisioning: bool = True,
    ):
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._policy = policy or PoolPolicy()
        self._provisioner = provisioner or LocalProvisioner()
        self._clock = clock
        self._async = async_provisioning
        self._workers = ThreadPoolExecutor(
            max_workers=self._policy.provision_workers,
            thread_name_prefix="runner-provision",
        )

        self._runners: Dict[str, Runner] = {}
        self._base_floors: Dict[CapabilityClass, int] = {
            cap: self._policy.limits_for(cap).warm_floor for cap in CapabilityClass
        }
        self._floors: Dict[CapabilityClass, int] = dict(self._base_floors)
        self._waiters: Dict[CapabilityClass, int] = {cap: 0 for cap in CapabilityClass}
        self._excess_since: Dict[CapabilityClass, Optional[float]] = {
            cap: None for cap in CapabilityClass
        }

        # Metrics
        self._spawn_count = 0
        self._retire_count = 0
        self._lease_count = 0
        self._affinity_hits = 0
        self._lease_timeouts = 0
        self._reclaim_count = 0
        self._provision_failures = 0

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    def get_runner(self, runner_id: str) -> Optional[Runner]:
        with self._lock:
            return self._runners.get(runner_id)

    def list_runners(
        self,
        capability_class: Optional[CapabilityClass] = None,
        include_retired: bool = False,
    ) -> List[Runner]:
        with self._lock:
            return [
                r for r in self._runners.values()
                if (capability_class is None or r.capability_class == capability_class)
                and (include_retired or r.is_live())
            ]

    def _count(self, capability_class: CapabilityClass, *states: RunnerState) -> int:
        return sum(
            1 for r in self._runners.values()
            if r.capability_class == capability_class and r.state in states
        )

    def idle_count(self, capability_class: CapabilityClass) -> int:
        with self._lock:
            return self._count(capability_class, RunnerState.IDLE)

    def live_count(self, capability_class: CapabilityClass) -> int:
        with self._lock:
            return sum(
                1 for r in self._runners.values()
                if r.capability_class == capability_class and r.is_live()
            )

    def can_spawn(self, capability_class: CapabilityClass) -> bool:
        """True while the class is below its hard ceiling."""
        with self._lock:
            return self.live_count(capability_class) < self._ceiling(capability_class)

    def floor(self, capability_class: CapabilityClass) -> int:
        with self._lock:
            return self._floors[capability_class]

    def utilization(self, capability_class: Optional[CapabilityClass] = None) -> float:
        """Fraction of live runners that are leased."""
        with self._lock:
            classes = [capability_class] if capability_class else list(CapabilityClass)
            live = sum(self.live_count(c) for c in classes)
            leased = sum(
                self._count(c, RunnerState.LEASED, RunnerState.DRAINING) for c in classes
            )
            return leased / live if live else 0.0

    def _ceiling(self, capability_class: CapabilityClass) -> int:
        return self._policy.limits_for(capability_class).ceiling

    # ─────────────────────────────────────────────────────────────────
    # Spawning and retiring
    # ─────────────────────────────────────────────────────────────────

    def _spawn_locked(self, capability_class: CapabilityClass) -> Runner:
        runner = Runner.create(capability_class, now=self._clock())
        self._runners[runner.runner_id] = runner
        self._spawn_count += 1
        logger.info(f"Spawning runner {runner.runner_id}")
        if self._async:
            self._workers.submit(self._provision, runner)
        else:
            self._provision(runner)
        return runner

    def _provision(self, runner: Runner) -> None:
        try:
            self._provisioner.provision(runner)
        except Exception as e:
            with self._cond:
                self._provision_failures += 1
                self._retire_locked(runner, f"provision_failed: {e}")
                self._cond.notify_all()
            logger.error(f"Failed to provision runner {runner.runner_id}: {e}")
            return

        with self._cond:
            if runner.state != RunnerState.WARMING:
                return
            if runner.drain_requested:
                self._retire_locked(runner, "drained")
            else:
                runner.state = RunnerState.IDLE
                runner.idle_since = self._clock()
                logger.debug(f"Runner {runner.runner_id} is warm")
            self._cond.notify_all()

    def _retire_locked(self, runner: Runner, reason: str) -> None:
        runner.state = RunnerState.RETIRED
        runner.retired_at = self._clock()
        runner.retire_reason = reason
        runner.leased_job_id = None
        runner.leased_project = None
        self._retire_count += 1
        logger.info(f"Retired runner {runner.runner_id} ({reason})")
        if self._async:
            self._workers.submit(self._teardown, runner)
        else:
            self._teardown(runner)

    def _teardown(self, runner: Runner) -> None:
        try:
            self._provisioner.teardown(runner)
        except Exception as e:
            logger.warning(f"Teardown of {runner.runner_id} failed: {e}")

    def warm_up(self) -> int:
        """Spawn runners until every class reaches its warm floor."""
        spawned = 0
        with self._cond:
            for cap in CapabilityClass:
                ready = self._count(cap, RunnerState.IDLE, RunnerState.WARMING)
                room = self._ceiling(cap) - self.live_count(cap)
                for _ in range(max(0, min(self._floors[cap] - ready, room))):
                    self._spawn_locked(cap)
                    spawned += 1
        return spawned

    # ─────────────────────────────────────────────────────────────────
    # Lease / release / drain
    # ─────────────────────────────────────────────────────────────────

    def _pick_idle_locked(
        self,
        capability_class: CapabilityClass,
        affinity_hint: Optional[str],
    ) -> Optional[Runner]:
        now = self._clock()
        candidates: List[Runner] = []
        for runner in list(self._runners.values()):
            if runner.capability_class != capability_class or runner.state != RunnerState.IDLE:
                continue
            if runner.age_sec(now) >= self._policy.max_lifetime_sec:
                self._retire_locked(runner, "max_lifetime")
                continue
            candidates.append(runner)

        if not candidates:
            return None

        def health_order(r: Runner):
            return (r.consecutive_failures, r.idle_since or 0.0)

        if affinity_hint is not None:
            warm = [r for r in candidates if r.affinity == affinity_hint]
            if warm:
                self._affinity_hits += 1
                return min(warm, key=health_order)
        return min(candidates, key=health_order)

    def lease(
        self,
        capability_class: CapabilityClass,
        affinity_hint: Optional[str] = None,
        deadline: Optional[float] = None,
        job_id: Optional[str] = None,
    ) -> Runner:
        """
        Lease a runner of the given class.

        Prefers an idle runner last used by the same project, then any idle
        runner, then spawns below the ceiling; otherwise blocks until a runner
        frees up or the deadline passes (LeaseTimeout).
        """
        with self._cond:
            self._waiters[capability_class] += 1
            failures_at_start = self._provision_failures
            try:
                while True:
                    if self._provision_failures - failures_at_start >= 3:
                        raise RunnerUnavailable(
                            f"pool-{capability_class.value}", "repeated provisioning failures"
                        )
                    runner = self._pick_idle_locked(capability_class, affinity_hint)
                    if runner is not None:
                        runner.state = RunnerState.LEASED
                        runner.leased_job_id = job_id
                        runner.leased_project = affinity_hint
                        runner.leased_at = self._clock()
                        runner.idle_since = None
                        runner.reclaim_requested = False
                        self._lease_count += 1
                        logger.debug(f"Leased {runner.runner_id} to {job_id}")
                        return runner

                    warming = self._count(capability_class, RunnerState.WARMING)
                    if (
                        warming < self._waiters[capability_class]
                        and self.live_count(capability_class) < self._ceiling(capability_class)
                    ):
                        self._spawn_locked(capability_class)
                        continue

                    timeout = None
                    if deadline is not None:
                        timeout = deadline - self._clock()
                        if timeout <= 0:
                            self._lease_timeouts += 1
                            raise LeaseTimeout(
                                f"No {capability_class.value} runner available for {job_id}"
                            )
                    self._cond.wait(timeout=timeout)
            finally:
                self._waiters[capability_class] -= 1

    def assign(self, runner: Runner, job_id: str, project_id: str) -> None:
        """Record the job a leased runner is actually building."""
        with self._cond:
            current = self._runners.get(runner.runner_id)
            if current is None or current.state not in (RunnerState.LEASED, RunnerState.DRAINING):
                state = current.state.value if current else "unknown"
                raise InvalidRunnerState(f"Cannot assign {job_id} to {runner.runner_id} in state {state}")
            if current.leased_job_id != job_id:
                logger.debug(f"{runner.runner_id} leased for {current.leased_job_id}, building {job_id}")
            current.leased_job_id = job_id
            current.leased_project = project_id

    def release(
        self,
        runner: Runner,
        outcome: ReleaseOutcome,
    ) -> RunnerState:
        """
        Return a leased runner to the pool.

        Failure streaks, lifetime and pending drains are checked here; the
        runner is retired rather than returned to IDLE when any of them trips.
        """
        with self._cond:
            current = self._runners.get(runner.runner_id)
            if current is None or current.state not in (RunnerState.LEASED, RunnerState.DRAINING):
                state = current.state.value if current else "unknown"
                raise InvalidRunnerState(f"Cannot release {runner.runner_id} in state {state}")

            if outcome == ReleaseOutcome.FAILURE:
                current.consecutive_failures += 1
            elif outcome == ReleaseOutcome.SUCCESS:
                current.consecutive_failures = 0
            if outcome != ReleaseOutcome.DISCARDED:
                current.builds += 1
            if current.leased_project is not None:
                current.affinity = current.leased_project

            now = self._clock()
            if current.consecutive_failures >= self._policy.failure_threshold:
                self._retire_locked(current, "failure_streak")
            elif current.age_sec(now) >= self._policy.max_lifetime_sec:
                self._retire_locked(current, "max_lifetime")
            elif current.drain_requested:
                self._retire_locked(current, "drained")
            else:
                current.state = RunnerState.IDLE
                current.idle_since = now
                current.leased_job_id = None
                current.leased_project = None
                current.leased_at = None

            current.reclaim_requested = False
            self._cond.notify_all()
            logger.debug(f"Released {current.runner_id} ({outcome.value}) -> {current.state.value}")
            return current.state

    def drain(self, runner: Runner) -> bool:
        """Take a runner out of service; leased runners retire on release."""
        with self._cond:
            current = self._runners.get(runner.runner_id)
            if current is None or current.state == RunnerState.RETIRED:
                return False
            current.drain_requested = True
            if current.state == RunnerState.IDLE:
                self._retire_locked(current, "drained")
                self._cond.notify_all()
            elif current.state == RunnerState.LEASED:
                current.state = RunnerState.DRAINING
            return True

    def reclaim(self, runner_id: str) -> bool:
        """Record a preemption request for a leased runner."""
        with self._lock:
            runner = self._runners.get(runner_id)
            if runner is None or runner.state not in (RunnerState.LEASED, RunnerState.DRAINING):
                return False
            runner.reclaim_requested = True
            self._reclaim_count += 1
        logger.info(f"Reclaim requested for {runner_id}")
        return True

    # ─────────────────────────────────────────────────────────────────
    # Scaling
    # ─────────────────────────────────────────────────────────────────

    def maintain(self, queue_depths: Optional[Dict[CapabilityClass, int]] = None) -> Dict[str, int]:
        """
        One scaling pass: top up to the warm floor where work is waiting, and
        drain idle runners that stayed above the floor for the scale-down window.
        """
        queue_depths = queue_depths or {}
        spawned = 0
        drained = 0
        now = self._clock()

        with self._cond:
            for cap in CapabilityClass:
                idle = self._count(cap, RunnerState.IDLE)
                warming = self._count(cap, RunnerState.WARMING)
                floor = self._floors[cap]

                if idle + warming < floor and queue_depths.get(cap, 0) > 0:
                    room = self._ceiling(cap) - self.live_count(cap)
                    for _ in range(max(0, min(floor - idle - warming, room))):
                        self._spawn_locked(cap)
                        spawned += 1

                if idle > floor:
                    since = self._excess_since[cap]
                    if since is None:
                        self._excess_since[cap] = now
                    elif now - since >= self._policy.scale_down_window_sec:
                        extra = sorted(
                            (r for r in self._runners.values()
                             if r.capability_class == cap and r.state == RunnerState.IDLE),
                            key=lambda r: r.created_at,
                        )[: idle - floor]
                        for runner in extra:
                            runner.drain_requested = True
                            self._retire_locked(runner, "scale_down")
                            drained += 1
                        self._excess_since[cap] = None
                else:
                    self._excess_since[cap] = None

            if drained:
                self._cond.notify_all()

        return {"spawned": spawned, "drained": drained}

    def adjust_floor(self, capability_class: CapabilityClass, delta: int) -> int:
        """Move the warm floor, bounded by the configured floor and the ceiling."""
        with self._lock:
            floor = self._floors[capability_class] + delta
            floor = max(self._base_floors[capability_class], min(floor, self._ceiling(capability_class)))
            if floor != self._floors[capability_class]:
                logger.info(
                    f"Warm floor for class {capability_class.value}: "
                    f"{self._floors[capability_class]} -> {floor}"
                )
            self._floors[capability_class] = floor
            return floor

    def apply_scale_signal(self, signal: Any) -> int:
        """Sink for SLA monitor scale signals."""
        floor = self.adjust_floor(signal.capability_class, signal.delta)
        if signal.delta > 0:
            self.warm_up()
        return floor

    # ─────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        """Runner metadata for warm-pool reconstruction."""
        with self._lock:
            return {
                "floors": {cap.value: floor for cap, floor in self._floors.items()},
                "runners": [r.to_dict() for r in self._runners.values() if r.is_live()],
            }

    def restore(self, data: Dict[str, Any]) -> int:
        """
        Rebuild the pool from a snapshot. Idle runners the provisioner still
        reports alive come back as IDLE; anything mid-lease is dropped.
        """
        restored = 0
        with self._cond:
            for cap_name, floor in data.get("floors", {}).items():
                cap = CapabilityClass(cap_name)
                self._floors[cap] = max(self._base_floors[cap], min(int(floor), self._ceiling(cap)))

            for record in data.get("runners", []):
                runner = Runner.from_dict(record)
                if runner.state != RunnerState.IDLE or not self._provisioner.is_alive(runner):
                    logger.info(f"Dropping runner {runner.runner_id} ({runner.state.value}) on restore")
                    continue
                if self.live_count(runner.capability_class) >= self._ceiling(runner.capability_class):
                    continue
                runner.idle_since = self._clock()
                runner.drain_requested = False
                self._runners[runner.runner_id] = runner
                restored += 1
            self._cond.notify_all()

        logger.info(f"Restored {restored} idle runners")
        return restored

    def close(self) -> None:
        with self._cond:
            self._cond.notify_all()
        self._workers.shutdown(wait=False)

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics."""
        with self._lock:
            per_class = {}
            for cap in CapabilityClass:
                per_class[cap.value] = {
                    state.value: self._count(cap, state) for state in RunnerState
                    if state != RunnerState.RETIRED
                }
                per_class[cap.value]["floor"] = self._floors[cap]
                per_class[cap.value]["ceiling"] = self._ceiling(cap)
            return {
                "classes": per_class,
                "spawn_count": self._spawn_count,
                "retire_count": self._retire_count,
                "lease_count": self._lease_count,
                "affinity_hits": self._affinity_hits,
                "lease_timeouts": self._lease_timeouts,
                "reclaim_count": self._reclaim_count,
                "provision_failures": self._provision_failures,
                "utilization": self.utilization(),
            }
