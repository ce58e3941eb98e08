"""
Errors
======

Exception hierarchy for the build engine. Managers raise these; the engine
turns them into Job states and structured JobErrors for the caller.
"""

from __future__ import annotations

from typing import Optional
from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories reported to the submitting collaborator."""
    INFRA_FAILURE = "infra_failure"
    BUILD_FAILED = "build_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ShadowBuildError(Exception):
    """Base class for engine errors."""


class ConfigError(ShadowBuildError):
    """Invalid engine configuration."""


class CapacityExceeded(ShadowBuildError):
    """The queue is at hard capacity; the job was rejected."""


class UnknownJob(ShadowBuildError, KeyError):
    """No job with the given id."""


class UnknownArtifact(ShadowBuildError, KeyError):
    """No artifact with the given ref."""


class TransientInfraError(ShadowBuildError):
    """Infrastructure trouble that is worth retrying."""


class LeaseTimeout(TransientInfraError):
    """No runner became available before the deadline."""


class RunnerUnavailable(TransientInfraError):
    """The runner could not be reached or died mid-build."""

    def __init__(self, runner_id: str, message: str = "runner unreachable"):
        super().__init__(f"{runner_id}: {message}")
        self.runner_id = runner_id


class InvalidRunnerState(ShadowBuildError):
    """A runner operation was attempted in the wrong lifecycle state."""


class CompilationError(ShadowBuildError):
    """The toolchain rejected a unit's source."""

    def __init__(self, unit: str, raw_error: str):
        super().__init__(f"{unit}: {raw_error}")
        self.unit = unit
        self.raw_error = raw_error


class BuildFailed(ShadowBuildError):
    """A build step failed; terminal for the job."""

    def __init__(self, stage: str, message: str, unit: Optional[str] = None):
        super().__init__(f"[{stage}] {unit + ': ' if unit else ''}{message}")
        self.stage = stage
        self.unit = unit
        self.raw_error = message


class BuildCancelled(ShadowBuildError):
    """The build was stopped by preemption, cancellation, drain or timeout."""

    def __init__(self, reason: str):
        super().__init__(f"build cancelled: {reason}")
        self.reason = reason


class CacheCorruption(ShadowBuildError):
    """A stored cache entry could not be read back intact."""

    def __init__(self, digest: str, message: str):
        super().__init__(f"{digest[:12]}: {message}")
        self.digest = digest
