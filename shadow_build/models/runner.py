"""
Runner Models
=============

Runners are ephemeral compute units leased to jobs by the pool manager.
Only the RunnerPoolManager changes a runner's lifecycle state.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Any
from enum import Enum

from shadow_build.models.changeset import CapabilityClass


class RunnerState(str, Enum):
    """Runner lifecycle states."""
    WARMING = "warming"
    IDLE = "idle"
    LEASED = "leased"
    DRAINING = "draining"
    RETIRED = "retired"


class ReleaseOutcome(str, Enum):
    """How a lease ended, from the runner's health point of view."""
    SUCCESS = "success"
    FAILURE = "failure"
    DISCARDED = "discarded"   # cancelled or preempted; no health signal


@dataclass
class Runner:
    """An ephemeral build host."""
    runner_id: str
    capability_class: CapabilityClass
    state: RunnerState = RunnerState.WARMING
    created_at: float = field(default_factory=time.time)

    affinity: Optional[str] = None          # project id of the last build
    consecutive_failures: int = 0
    builds: int = 0

    leased_job_id: Optional[str] = None
    leased_project: Optional[str] = None
    leased_at: Optional[float] = None
    idle_since: Optional[float] = None
    retired_at: Optional[float] = None
    drain_requested: bool = False
    reclaim_requested: bool = False
    retire_reason: Optional[str] = None

    @classmethod
    def create(cls, capability_class: CapabilityClass, now: Optional[float] = None) -> Runner:
        """Create a new WARMING runner with generated ID."""
        return cls(
            runner_id=f"runner-{capability_class.value.lower()}-{uuid.uuid4().hex[:8]}",
            capability_class=capability_class,
            created_at=now if now is not None else time.time(),
        )

    def age_sec(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def is_idle(self) -> bool:
        return self.state == RunnerState.IDLE

    def is_live(self) -> bool:
        """Counts against the pool ceiling."""
        return self.state != RunnerState.RETIRED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runner_id": self.runner_id,
            "capability_class": self.capability_class.value,
            "state": self.state.value,
            "created_at": self.created_at,
            "affinity": self.affinity,
            "consecutive_failures": self.consecutive_failures,
            "builds": self.builds,
            "leased_job_id": self.leased_job_id,
            "leased_project": self.leased_project,
            "leased_at": self.leased_at,
            "idle_since": self.idle_since,
            "retired_at": self.retired_at,
            "drain_requested": self.drain_requested,
            "retire_reason": self.retire_reason,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Runner:
        return cls(
            runner_id=data["runner_id"],
            capability_class=CapabilityClass(data["capability_class"]),
            state=RunnerState(data.get("state", "warming")),
            created_at=data.get("created_at", time.time()),
            affinity=data.get("affinity"),
            consecutive_failures=data.get("consecutive_failures", 0),
            builds=data.get("builds", 0),
            leased_job_id=data.get("leased_job_id"),
            leased_project=data.get("leased_project"),
            leased_at=data.get("leased_at"),
            idle_since=data.get("idle_since"),
            retired_at=data.get("retired_at"),
            drain_requested=data.get("drain_requested", False),
            retire_reason=data.get("retire_reason"),
        )
