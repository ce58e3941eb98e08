"""Data models for the shadow build engine."""

from shadow_build.models.changeset import (
    ChangeSet, SourceUnit, ChangeKind, UnitRole, Platform, CapabilityClass,
)
from shadow_build.models.job import (
    Job, JobState, JobError, Tier, CancelToken, CancelReason, TERMINAL_STATES,
)
from shadow_build.models.runner import Runner, RunnerState, ReleaseOutcome
from shadow_build.models.artifact import Artifact, CacheKey, CacheEntry

__all__ = [
    "ChangeSet", "SourceUnit", "ChangeKind", "UnitRole", "Platform", "CapabilityClass",
    "Job", "JobState", "JobError", "Tier", "CancelToken", "CancelReason", "TERMINAL_STATES",
    "Runner", "RunnerState", "ReleaseOutcome",
    "Artifact", "CacheKey", "CacheEntry",
]
