"""
Shadow Build
============

Orchestration engine for background ("shadow") builds of AI-generated
source changes.

Architecture:
    Classifier     - Maps a ChangeSet to a HOT / WARM / COLD tier
    Queue          - SLA-tiered priority queues with anti-starvation and preemption
    Runner Pool    - Ephemeral build runners per capability class
    Cache          - Content-addressed store of compiled units
    Executor       - Resolve, compile, link and stage one build on one runner
    Publisher      - Content-addressed artifact store
    SLA Monitor    - Latency percentiles and pool scale signals

The engine ties them together: a ChangeSet becomes a Job, the Job waits in
its tier's queue, runs on a leased runner, and ends as a published Artifact
or a structured error.
"""

from shadow_build.models.changeset import (
    ChangeKind, UnitRole, CapabilityClass, Platform, SourceUnit, ChangeSet,
)
from shadow_build.models.job import Tier, JobState, CancelReason, Job, JobError
from shadow_build.models.runner import Runner, RunnerState, ReleaseOutcome
from shadow_build.models.artifact import CacheKey, CacheEntry, Artifact

from shadow_build.errors import (
    ErrorKind, ShadowBuildError, CapacityExceeded, LeaseTimeout,
    RunnerUnavailable, BuildFailed, BuildCancelled,
)
from shadow_build.config import EngineConfig
from shadow_build.classifier import classify
from shadow_build.cache import ContentAddressableCache, MemoryBlobStore, FileBlobStore
from shadow_build.pool import RunnerPoolManager
from shadow_build.priority_queue import PriorityQueueManager
from shadow_build.toolchain import Toolchain, SimulatedToolchain
from shadow_build.executor import BuildExecutor, BuildResult
from shadow_build.publisher import ArtifactPublisher
from shadow_build.monitor import SLAMonitor, ScaleSignal
from shadow_build.engine import BuildEngine

__all__ = [
    # Models
    "ChangeKind", "UnitRole", "CapabilityClass", "Platform", "SourceUnit", "ChangeSet",
    "Tier", "JobState", "CancelReason", "Job", "JobError",
    "Runner", "RunnerState", "ReleaseOutcome",
    "CacheKey", "CacheEntry", "Artifact",
    # Errors
    "ErrorKind", "ShadowBuildError", "CapacityExceeded", "LeaseTimeout",
    "RunnerUnavailable", "BuildFailed", "BuildCancelled",
    # Core
    "EngineConfig",
    "classify",
    "ContentAddressableCache", "MemoryBlobStore", "FileBlobStore",
    "RunnerPoolManager",
    "PriorityQueueManager",
    "Toolchain", "SimulatedToolchain",
    "BuildExecutor", "BuildResult",
    "ArtifactPublisher",
    "SLAMonitor", "ScaleSignal",
    "BuildEngine",
]

__version__ = "0.1.0"
