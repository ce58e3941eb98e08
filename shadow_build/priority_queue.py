"""
Priority Queue Manager
======================

Three FIFO queues, one per tier, feeding the runner pool. HOT is served
before WARM before COLD; a COLD job that has waited past the starvation
threshold is picked as if it were WARM. HOT arrivals may preempt a running
COLD job when no runner of the right class is free.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Any, Tuple

from shadow_build.config import QueuePolicy
from shadow_build.errors import CapacityExceeded, ErrorKind
from shadow_build.models.changeset import CapabilityClass
from shadow_build.models.job import (
    Job, JobState, JobError, Tier, CancelReason, TIERS_BY_RANK,
)
from shadow_build.models.runner import Runner

logger = logging.getLogger(__name__)


class PriorityQueueManager:
    """
    SLA-tiered job queues with anti-starvation and preemption.

    Thread-safe: state protected by RLock. enqueue never blocks.
    """

    def __init__(
        self,
        policy: Optional[QueuePolicy] = None,
        pool: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._lock = threading.RLock()
        self._policy = policy or QueuePolicy()
        self._pool = pool
        self._clock = clock

        self._queues: Dict[Tier, Deque[Job]] = {tier: deque() for tier in TIERS_BY_RANK}
        self._seq: Dict[str, int] = {}
        self._counter = itertools.count()
        self._running: Dict[str, Tuple[Job, Runner]] = {}

        # Callbacks
        self._on_expired: List[Callable[[Job], None]] = []
        self._on_enqueued: List[Callable[[Job], None]] = []

        # Metrics
        self._enqueued = 0
        self._rejected = 0
        self._dequeued = 0
        self._expired = 0
        self._cancelled = 0
        self._preemptions = 0
        self._starvation_promotions = 0

    def attach_pool(self, pool: Any) -> None:
        self._pool = pool

    def on_expired(self, callback: Callable[[Job], None]) -> None:
        """Register callback for jobs that expired while queued."""
        with self._lock:
            self._on_expired.append(callback)

    def on_enqueued(self, callback: Callable[[Job], None]) -> None:
        with self._lock:
            self._on_enqueued.append(callback)

    # ─────────────────────────────────────────────────────────────────
    # Queue operations
    # ─────────────────────────────────────────────────────────────────

    def _queued_count(self) -> int:
        return sum(len(q) for q in self._queues.values())

    def _push_locked(self, job: Job) -> None:
        if job.state != JobState.QUEUED:
            job.transition(JobState.QUEUED, self._clock())
        self._seq[job.job_id] = next(self._counter)
        self._queues[job.queue_tier].append(job)

    def enqueue(self, job: Job) -> Optional[Job]:
        """
        Accept a job or raise CapacityExceeded immediately.

        Returns the job chosen for preemption, if the arrival triggered one.
        """
        with self._lock:
            if self._queued_count() >= self._policy.max_depth:
                self._rejected += 1
                raise CapacityExceeded(
                    f"Queue at capacity ({self._policy.max_depth}); rejected {job.job_id}"
                )
            self._push_locked(job)
            self._enqueued += 1
            callbacks = list(self._on_enqueued)

        logger.info(f"Enqueued {job.job_id} [{job.tier.value}] for {job.project_id}")
        self._notify(callbacks, job)

        if job.queue_tier == Tier.HOT:
            return self._maybe_preempt(job)
        return None

    def requeue(self, job: Job) -> None:
        """Put a job back in its queue (infra retry, crash recovery)."""
        with self._lock:
            self._running.pop(job.job_id, None)
            self._push_locked(job)
            callbacks = list(self._on_enqueued)
        logger.info(f"Re-queued {job.job_id} [{job.queue_tier.value}]")
        self._notify(callbacks, job)

    def requeue_preempted(self, job: Job) -> None:
        """
        Return a preempted job to the queues. Its tier and SLA are unchanged;
        a COLD job waits in the WARM queue since it already lost its slot once.
        """
        now = self._clock()
        with self._lock:
            self._running.pop(job.job_id, None)
            job.transition(JobState.PREEMPTED, now)
            job.retry_count += 1
            job.runner_id = None
            job.cancel_token.clear()
            if job.tier == Tier.COLD:
                job.queue_tier = Tier.WARM
            self._push_locked(job)
            callbacks = list(self._on_enqueued)
        logger.info(f"Preempted {job.job_id} re-queued (retry {job.retry_count})")
        self._notify(callbacks, job)

    def _effective_rank(self, job: Job, now: float) -> int:
        rank = job.queue_tier.rank
        if job.queue_tier == Tier.COLD and self.is_starving(job, now):
            rank = Tier.WARM.rank
        return rank

    def is_starving(self, job: Job, now: Optional[float] = None) -> bool:
        """A COLD job waiting longer than starvation_factor x its SLA."""
        now = now if now is not None else self._clock()
        return job.waited_sec(now) > self._policy.starvation_factor * job.sla_sec

    def dequeue(self, capability_class: CapabilityClass) -> Optional[Job]:
        """Pop the next job runnable on the given capability class."""
        now = self._clock()
        self.expire_stale(now)

        with self._lock:
            best: Optional[Job] = None
            best_key: Optional[Tuple[int, int]] = None
            for tier in TIERS_BY_RANK:
                for job in self._queues[tier]:
                    if job.capability_class != capability_class:
                        continue
                    key = (self._effective_rank(job, now), self._seq[job.job_id])
                    if best_key is None or key < best_key:
                        best, best_key = job, key

            if best is None:
                return None

            self._queues[best.queue_tier].remove(best)
            self._seq.pop(best.job_id, None)
            if best_key[0] < best.queue_tier.rank:
                self._starvation_promotions += 1
                logger.info(f"Anti-starvation promotion for {best.job_id}")
            best.transition(JobState.ASSIGNED, now)
            self._dequeued += 1
            return best

    def peek_order(self, capability_class: CapabilityClass) -> List[str]:
        """Job ids in the order dequeue would serve them."""
        now = self._clock()
        with self._lock:
            jobs = [
                job for tier in TIERS_BY_RANK for job in self._queues[tier]
                if job.capability_class == capability_class
            ]
            jobs.sort(key=lambda j: (self._effective_rank(j, now), self._seq[j.job_id]))
            return [j.job_id for j in jobs]

    def expire_stale(self, now: Optional[float] = None) -> List[Job]:
        """Move QUEUED jobs past their expiry to EXPIRED."""
        now = now if now is not None else self._clock()
        expired: List[Job] = []
        with self._lock:
            for tier in TIERS_BY_RANK:
                queue = self._queues[tier]
                for job in [j for j in queue if j.is_expired(now)]:
                    queue.remove(job)
                    self._seq.pop(job.job_id, None)
                    job.fail(
                        JobError(
                            kind=ErrorKind.TIMEOUT,
                            message="deadline exceeded while queued",
                            tier=job.tier.value,
                            elapsed_sec=job.waited_sec(now),
                        ),
                        state=JobState.EXPIRED,
                        now=now,
                    )
                    expired.append(job)
            self._expired += len(expired)
            callbacks = list(self._on_expired)

        for job in expired:
            logger.warning(f"Job {job.job_id} expired in queue after {job.waited_sec(now):.1f}s")
            self._notify(callbacks, job)
        return expired

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued or running job. Queued jobs are removed at once;
        running jobs are signalled and stop at the executor's next check.
        """
        now = self._clock()
        with self._lock:
            for tier in TIERS_BY_RANK:
                for job in self._queues[tier]:
                    if job.job_id == job_id:
                        self._queues[tier].remove(job)
                        self._seq.pop(job_id, None)
                        job.fail(
                            JobError(
                                kind=ErrorKind.CANCELLED,
                                message="cancelled by owner",
                                tier=job.tier.value,
                                elapsed_sec=job.waited_sec(now),
                            ),
                            state=JobState.CANCELLED,
                            now=now,
                        )
                        self._cancelled += 1
                        logger.info(f"Cancelled queued job {job_id}")
                        return True

            entry = self._running.get(job_id)
            if entry is not None:
                job, _ = entry
                if job.cancel_token.request(CancelReason.CANCELLED):
                    self._cancelled += 1
                    logger.info(f"Cancellation requested for running job {job_id}")
                return True
        return False

    # ─────────────────────────────────────────────────────────────────
    # Running jobs and preemption
    # ─────────────────────────────────────────────────────────────────

    def mark_running(self, job: Job, runner: Runner) -> None:
        with self._lock:
            job.runner_id = runner.runner_id
            job.transition(JobState.RUNNING, self._clock())
            self._running[job.job_id] = (job, runner)

    def mark_finished(self, job: Job) -> None:
        with self._lock:
            self._running.pop(job.job_id, None)

    def running_jobs(self) -> List[Tuple[Job, Runner]]:
        with self._lock:
            return list(self._running.values())

    def _maybe_preempt(self, hot_job: Job) -> Optional[Job]:
        if self._pool is None:
            return None
        cap = hot_job.capability_class
        if self._pool.idle_count(cap) > 0 or self._pool.can_spawn(cap):
            return None

        with self._lock:
            candidates = [
                (job, runner) for job, runner in self._running.values()
                if job.tier == Tier.COLD
                and job.capability_class == cap
                and job.retry_count < self._policy.max_preemptions
                and not job.cancel_token.is_set()
            ]
            if not candidates:
                return None
            # Least progress lost: the most recently started COLD build.
            victim, runner = max(candidates, key=lambda c: c[0].started_at or 0.0)
            victim.cancel_token.request(CancelReason.PREEMPTED)
            self._preemptions += 1

        self._pool.reclaim(runner.runner_id)
        logger.info(f"Preempting {victim.job_id} on {runner.runner_id} for HOT job {hot_job.job_id}")
        return victim

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            for queue in self._queues.values():
                for job in queue:
                    if job.job_id == job_id:
                        return job
            entry = self._running.get(job_id)
            return entry[0] if entry else None

    def depth(self, capability_class: Optional[CapabilityClass] = None) -> int:
        with self._lock:
            return sum(
                1 for queue in self._queues.values() for job in queue
                if capability_class is None or job.capability_class == capability_class
            )

    def depths(self) -> Dict[CapabilityClass, int]:
        return {cap: self.depth(cap) for cap in CapabilityClass}

    def queued_jobs(self) -> List[Job]:
        with self._lock:
            return [job for tier in TIERS_BY_RANK for job in self._queues[tier]]

    def _notify(self, callbacks: List[Callable[[Job], None]], job: Job) -> None:
        for cb in callbacks:
            try:
                cb(job)
            except Exception as e:
                logger.exception(f"Queue callback error: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get queue statistics."""
        with self._lock:
            return {
                "depth": {tier.value: len(q) for tier, q in self._queues.items()},
                "running": len(self._running),
                "enqueued": self._enqueued,
                "rejected": self._rejected,
                "dequeued": self._dequeued,
                "expired": self._expired,
                "cancelled": self._cancelled,
                "preemptions": self._preemptions,
                "starvation_promotions": self._starvation_promotions,
            }
