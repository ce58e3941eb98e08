"""
SLA Monitor
===========

Tracks end-to-end latency per tier and turns sustained SLA pressure (or
sustained idleness) into scale signals for the runner pool.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Any

import numpy as np

from shadow_build.config import MonitorPolicy, TierPolicy
from shadow_build.models.changeset import CapabilityClass
from shadow_build.models.job import Job, JobState, Tier, TIERS_BY_RANK

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"


@dataclass
class ScaleSignal:
    """Request to move the warm floor of one capability class."""
    kind: SignalKind
    capability_class: CapabilityClass
    delta: int
    reason: str
    tier: Optional[Tier] = None
    emitted_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "capability_class": self.capability_class.value,
            "delta": self.delta,
            "reason": self.reason,
            "tier": self.tier.value if self.tier else None,
            "emitted_at": self.emitted_at,
        }


# Outcomes that count as a latency sample.
_MEASURED_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.EXPIRED})


class SLAMonitor:
    """
    Rolling per-tier latency windows and scale-signal evaluation.

    Usage:
        monitor = SLAMonitor(policy, tier_policy)
        monitor.on_signal(pool.apply_scale_signal)
        monitor.observe(job)                      # on every job transition
        monitor.evaluate({CapabilityClass.A: 0.9})
    """

    def __init__(
        self,
        policy: Optional[MonitorPolicy] = None,
        tier_policy: Optional[TierPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._lock = threading.RLock()
        self._policy = policy or MonitorPolicy()
        self._tiers = tier_policy or TierPolicy()
        self._clock = clock

        self._latencies: Dict[Tier, Deque[float]] = {
            tier: deque(maxlen=self._policy.window_size) for tier in TIERS_BY_RANK
        }
        self._classes: Dict[Tier, Deque[CapabilityClass]] = {
            tier: deque(maxlen=self._policy.window_size) for tier in TIERS_BY_RANK
        }
        self._seen: set = set()

        self._breach_since: Dict[Tier, Optional[float]] = {tier: None for tier in TIERS_BY_RANK}
        self._idle_since: Dict[CapabilityClass, Optional[float]] = {
            cap: None for cap in CapabilityClass
        }

        self._sinks: List[Callable[[ScaleSignal], Any]] = []

        # Metrics
        self._observed = 0
        self._violations: Counter = Counter()
        self._signals: Counter = Counter()

    def on_signal(self, sink: Callable[[ScaleSignal], Any]) -> None:
        """Register a consumer of scale signals."""
        with self._lock:
            self._sinks.append(sink)

    # ─────────────────────────────────────────────────────────────────
    # Observation
    # ─────────────────────────────────────────────────────────────────

    def observe(self, job: Job) -> None:
        """Record a job transition. Only the first terminal outcome is sampled."""
        if job.state not in _MEASURED_STATES:
            return
        latency = job.latency_sec()
        if latency is None:
            return
        with self._lock:
            if job.job_id in self._seen:
                return
            self._seen.add(job.job_id)
            self._latencies[job.tier].append(latency)
            self._classes[job.tier].append(job.capability_class)
            self._observed += 1
            if job.sla_violated():
                self._violations[job.tier] += 1
                logger.debug(
                    f"SLA violated by {job.job_id} [{job.tier.value}]: "
                    f"{latency:.2f}s > {job.sla_sec:.0f}s"
                )

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._seen.discard(job_id)

    def percentiles(self, tier: Tier) -> Dict[str, float]:
        """P50/P95/P99 of the tier's latency window (seconds)."""
        with self._lock:
            samples = list(self._latencies[tier])
        if not samples:
            return {"count": 0, "p50": 0.0, "p95": 0.0, "p99": 0.0}
        latencies = np.asarray(samples, dtype=float)
        return {
            "count": len(samples),
            "p50": float(np.percentile(latencies, 50)),
            "p95": float(np.percentile(latencies, 95)),
            "p99": float(np.percentile(latencies, 99)),
        }

    # ─────────────────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────────────────

    def evaluate(
        self,
        utilization: Optional[Dict[CapabilityClass, float]] = None,
    ) -> List[ScaleSignal]:
        """
        Emit SCALE_UP for the classes serving a tier whose P95 stayed above
        p95_factor x SLA for sustain_sec, and SCALE_DOWN for classes whose
        utilisation stayed below the low-water mark for sustain_sec.
        """
        now = self._clock()
        utilization = utilization or {}
        signals: List[ScaleSignal] = []

        for tier in TIERS_BY_RANK:
            stats = self.percentiles(tier)
            limit = self._policy.p95_factor * self._tiers.sla_for(tier)
            breached = stats["count"] >= self._policy.min_samples and stats["p95"] > limit
            with self._lock:
                if not breached:
                    self._breach_since[tier] = None
                    continue
                since = self._breach_since[tier]
                if since is None:
                    self._breach_since[tier] = now
                    continue
                if now - since < self._policy.sustain_sec:
                    continue
                self._breach_since[tier] = now
                classes = sorted(set(self._classes[tier]), key=lambda c: c.value)

            for cap in classes:
                signals.append(ScaleSignal(
                    kind=SignalKind.SCALE_UP,
                    capability_class=cap,
                    delta=self._policy.floor_step,
                    tier=tier,
                    reason=f"{tier.value} p95 {stats['p95']:.2f}s > {limit:.2f}s",
                    emitted_at=now,
                ))

        for cap in CapabilityClass:
            if cap not in utilization:
                continue
            low = utilization[cap] < self._policy.low_water_utilization
            with self._lock:
                if not low:
                    self._idle_since[cap] = None
                    continue
                since = self._idle_since[cap]
                if since is None:
                    self._idle_since[cap] = now
                    continue
                if now - since < self._policy.sustain_sec:
                    continue
                self._idle_since[cap] = now

            signals.append(ScaleSignal(
                kind=SignalKind.SCALE_DOWN,
                capability_class=cap,
                delta=-self._policy.floor_step,
                reason=f"utilization {utilization[cap]:.2f} < {self._policy.low_water_utilization:.2f}",
                emitted_at=now,
            ))

        for signal in signals:
            self._emit(signal)
        return signals

    def _emit(self, signal: ScaleSignal) -> None:
        with self._lock:
            self._signals[signal.kind] += 1
            sinks = list(self._sinks)
        logger.info(
            f"Scale signal {signal.kind.value} for class "
            f"{signal.capability_class.value}: {signal.reason}"
        )
        for sink in sinks:
            try:
                sink(signal)
            except Exception as e:
                logger.exception(f"Scale signal sink error: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get monitor statistics."""
        tiers: Dict[str, Any] = {}
        for tier in TIERS_BY_RANK:
            stats = self.percentiles(tier)
            with self._lock:
                stats["violations"] = self._violations[tier]
            tiers[tier.value] = stats
        with self._lock:
            return {
                "observed": self._observed,
                "tiers": tiers,
                "signals": {kind.value: self._signals[kind] for kind in SignalKind},
            }
