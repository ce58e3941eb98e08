"""
Job Models
==========

Jobs wrap a ChangeSet with its Tier, SLA clock, and execution state.
"""

from __future__ import annotations

import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum

from shadow_build.errors import BuildCancelled, ErrorKind
from shadow_build.models.changeset import ChangeSet, CapabilityClass


class Tier(str, Enum):
    """Change tiers, in priority order."""
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"

    @property
    def rank(self) -> int:
        """Scheduling rank (lower is served first)."""
        return _TIER_RANK[self]

    @property
    def default_sla_sec(self) -> float:
        return DEFAULT_SLA_SEC[self]

    def promoted(self) -> Tier:
        """The next more urgent tier (HOT stays HOT)."""
        return TIERS_BY_RANK[max(0, self.rank - 1)]


_TIER_RANK = {Tier.HOT: 0, Tier.WARM: 1, Tier.COLD: 2}
TIERS_BY_RANK: Tuple[Tier, ...] = (Tier.HOT, Tier.WARM, Tier.COLD)

DEFAULT_SLA_SEC: Dict[Tier, float] = {
    Tier.HOT: 5.0,
    Tier.WARM: 30.0,
    Tier.COLD: 120.0,
}


class JobState(str, Enum):
    """Job execution states."""
    QUEUED = "queued"
    ASSIGNED = "assigned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PREEMPTED = "preempted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    JobState.SUCCEEDED,
    JobState.FAILED,
    JobState.EXPIRED,
    JobState.CANCELLED,
})


class CancelReason(str, Enum):
    """Why a running job was asked to stop."""
    PREEMPTED = "preempted"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    DRAINED = "drained"


class CancelToken:
    """
    Cooperative cancellation flag shared between the scheduler and the
    executor. The first reason set wins.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[CancelReason] = None

    def request(self, reason: CancelReason) -> bool:
        """Request cancellation. Returns False if already requested."""
        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancelReason]:
        return self._reason

    def clear(self) -> None:
        with self._lock:
            self._reason = None
            self._event.clear()

    def raise_if_set(self) -> None:
        if self._reason is not None:
            raise BuildCancelled(self._reason.value)


@dataclass
class JobError:
    """Structured failure reported back to the submitting collaborator."""
    kind: ErrorKind
    message: str
    unit: Optional[str] = None
    stage: Optional[str] = None
    tier: Optional[str] = None
    elapsed_sec: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "unit": self.unit,
            "stage": self.stage,
            "tier": self.tier,
            "elapsed_sec": self.elapsed_sec,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobError:
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            unit=data.get("unit"),
            stage=data.get("stage"),
            tier=data.get("tier"),
            elapsed_sec=data.get("elapsed_sec", 0.0),
        )


@dataclass
class Job:
    """A ChangeSet scheduled for building."""
    job_id: str
    changeset: ChangeSet
    tier: Tier
    submitted_at: float
    deadline: float                 # submitted_at + SLA
    expires_at: float               # hard timeout for queueing and running

    queue_tier: Optional[Tier] = None
    state: JobState = JobState.QUEUED
    retry_count: int = 0            # preemptions survived
    infra_attempts: int = 0
    runner_id: Optional[str] = None
    artifact_ref: Optional[str] = None
    error: Optional[JobError] = None

    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    history: List[Tuple[str, float]] = field(default_factory=list)

    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False, compare=False)

    def __post_init__(self):
        if self.queue_tier is None:
            self.queue_tier = self.tier
        if not self.history:
            self.history.append((self.state.value, self.submitted_at))

    @property
    def project_id(self) -> str:
        return self.changeset.project_id

    @property
    def capability_class(self) -> CapabilityClass:
        return self.changeset.capability_class

    @property
    def sla_sec(self) -> float:
        return self.deadline - self.submitted_at

    @classmethod
    def create(
        cls,
        changeset: ChangeSet,
        tier: Tier,
        sla_sec: float,
        expiry_factor: float,
        now: Optional[float] = None,
    ) -> Job:
        """Create a new job with generated ID."""
        submitted = now if now is not None else time.time()
        return cls(
            job_id=f"job-{int(submitted)}-{uuid.uuid4().hex[:8]}",
            changeset=changeset,
            tier=tier,
            submitted_at=submitted,
            deadline=submitted + sla_sec,
            expires_at=submitted + sla_sec * expiry_factor,
        )

    def transition(self, state: JobState, now: Optional[float] = None) -> None:
        """Move to a new state and record it in the history."""
        ts = now if now is not None else time.time()
        self.state = state
        self.history.append((state.value, ts))
        if state == JobState.RUNNING:
            self.started_at = ts
        elif state in TERMINAL_STATES:
            self.completed_at = ts

    def is_complete(self) -> bool:
        """Check if job is in a terminal state."""
        return self.state in TERMINAL_STATES

    def is_active(self) -> bool:
        return self.state in (JobState.ASSIGNED, JobState.RUNNING)

    def waited_sec(self, now: float) -> float:
        return now - self.submitted_at

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def sla_violated(self, now: Optional[float] = None) -> bool:
        """True once the job finished, or is still pending, past its deadline."""
        if self.completed_at is not None:
            return self.completed_at > self.deadline
        return (now if now is not None else time.time()) > self.deadline

    def latency_sec(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return self.completed_at - self.submitted_at

    def fail(self, error: JobError, state: JobState = JobState.FAILED, now: Optional[float] = None) -> None:
        self.error = error
        self.transition(state, now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "changeset": self.changeset.to_dict(),
            "tier": self.tier.value,
            "queue_tier": self.queue_tier.value,
            "submitted_at": self.submitted_at,
            "deadline": self.deadline,
            "expires_at": self.expires_at,
            "state": self.state.value,
            "retry_count": self.retry_count,
            "infra_attempts": self.infra_attempts,
            "runner_id": self.runner_id,
            "artifact_ref": self.artifact_ref,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "history": [list(h) for h in self.history],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Job:
        error = data.get("error")
        return cls(
            job_id=data["job_id"],
            changeset=ChangeSet.from_dict(data["changeset"]),
            tier=Tier(data["tier"]),
            queue_tier=Tier(data.get("queue_tier", data["tier"])),
            submitted_at=data["submitted_at"],
            deadline=data["deadline"],
            expires_at=data.get("expires_at", data["deadline"]),
            state=JobState(data.get("state", "queued")),
            retry_count=data.get("retry_count", 0),
            infra_attempts=data.get("infra_attempts", 0),
            runner_id=data.get("runner_id"),
            artifact_ref=data.get("artifact_ref"),
            error=JobError.from_dict(error) if error else None,
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            history=[tuple(h) for h in data.get("history", [])],
        )

    @classmethod
    def from_json(cls, json_str: str) -> Job:
        return cls.from_dict(json.loads(json_str))
