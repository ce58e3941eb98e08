"""
Build Executor
==============

Runs one job on one runner:

    RESOLVING_DEPENDENCIES -> COMPILING_UNITS -> LINKING -> DEPLOY_STAGING -> DONE

with FAILED reachable from every step. Units are compiled in parallel and
only on a cache miss; every compiled unit goes into the cache as soon as it
is built, so a preempted build resumes on another runner from the cache.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import Callable, Dict, List, Optional, Any, Tuple

from shadow_build.cache import ContentAddressableCache
from shadow_build.config import ExecutorPolicy
from shadow_build.errors import BuildFailed, CompilationError
from shadow_build.models.artifact import Artifact, CacheKey
from shadow_build.models.changeset import SourceUnit
from shadow_build.models.job import Job, CancelToken
from shadow_build.models.runner import Runner
from shadow_build.publisher import ArtifactPublisher
from shadow_build.toolchain import Toolchain

logger = logging.getLogger(__name__)


class BuildStage(str, Enum):
    """Executor state machine."""
    RESOLVING_DEPENDENCIES = "resolving_dependencies"
    COMPILING_UNITS = "compiling_units"
    LINKING = "linking"
    DEPLOY_STAGING = "deploy_staging"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BuildResult:
    """Outcome of a successful build."""
    job_id: str
    runner_id: str
    artifact: Artifact
    artifact_ref: str
    units_total: int = 0
    cache_hits: int = 0
    compiled: int = 0
    stages: List[str] = field(default_factory=list)
    stage_timings: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "runner_id": self.runner_id,
            "artifact_ref": self.artifact_ref,
            "units_total": self.units_total,
            "cache_hits": self.cache_hits,
            "compiled": self.compiled,
            "stages": self.stages,
            "stage_timings": self.stage_timings,
        }


@dataclass
class _ResolvedUnit:
    unit: SourceUnit
    dependency_hashes: List[str]
    key: CacheKey


class BuildExecutor:
    """
    Turns (job, runner) into a published artifact.

    The executor holds no per-job state between calls, so the same job can be
    executed again on a different runner after preemption.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        cache: ContentAddressableCache,
        publisher: ArtifactPublisher,
        policy: Optional[ExecutorPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.toolchain = toolchain
        self.cache = cache
        self.publisher = publisher
        self._policy = policy or ExecutorPolicy()
        self._clock = clock

        self._builds = 0
        self._failures = 0
        self._units_compiled = 0
        self._units_from_cache = 0

    def execute(
        self,
        job: Job,
        runner: Runner,
        cancel: Optional[CancelToken] = None,
        on_stage: Optional[Callable[[Job, BuildStage], None]] = None,
    ) -> BuildResult:
        """
        Build the job's ChangeSet on the runner.

        Raises BuildFailed (terminal), BuildCancelled (preempted, cancelled,
        timed out) or RunnerUnavailable (transient infra).
        """
        cancel = cancel or job.cancel_token
        stages: List[str] = []
        timings: Dict[str, float] = {}
        stage = BuildStage.RESOLVING_DEPENDENCIES

        def enter(next_stage: BuildStage) -> None:
            nonlocal stage
            cancel.raise_if_set()
            stage = next_stage
            stages.append(stage.value)
            logger.debug(f"{job.job_id}: {stage.value}")
            if on_stage is not None:
                on_stage(job, stage)

        def timed(fn, *args):
            started = time.monotonic()
            try:
                return fn(*args)
            finally:
                timings[stage.value] = time.monotonic() - started

        try:
            enter(BuildStage.RESOLVING_DEPENDENCIES)
            resolved, link_order = timed(self._resolve, job)

            enter(BuildStage.COMPILING_UNITS)
            objects, hits, compiled = timed(self._compile_units, job, runner, resolved, cancel)

            enter(BuildStage.LINKING)
            ordered = [(name, objects[name]) for name in link_order]
            try:
                bundle = timed(self.toolchain.link, job.changeset, ordered, runner)
            except CompilationError as e:
                raise BuildFailed(BuildStage.LINKING.value, e.raw_error, unit=e.unit) from e

            enter(BuildStage.DEPLOY_STAGING)
            artifact = Artifact.from_bundle(bundle, job.job_id, job.changeset.platform)
            ref = timed(self.publisher.publish, artifact)

            stage = BuildStage.DONE
            stages.append(stage.value)
            if on_stage is not None:
                on_stage(job, stage)
        except BuildFailed as e:
            self._failures += 1
            stages.append(BuildStage.FAILED.value)
            logger.info(f"Build {job.job_id} failed at {e.stage}: {e.raw_error}")
            raise

        self._builds += 1
        self._units_compiled += compiled
        self._units_from_cache += hits
        logger.info(
            f"Built {job.job_id} on {runner.runner_id}: {len(resolved)} units, "
            f"{hits} cached, {compiled} compiled"
        )
        return BuildResult(
            job_id=job.job_id,
            runner_id=runner.runner_id,
            artifact=self.publisher.get(ref) or artifact,
            artifact_ref=ref,
            units_total=len(resolved),
            cache_hits=hits,
            compiled=compiled,
            stages=stages,
            stage_timings=timings,
        )

    def _resolve(self, job: Job) -> Tuple[List[_ResolvedUnit], List[str]]:
        """Resolve direct dependencies and compute a cache key per unit."""
        changeset = job.changeset
        stage = BuildStage.RESOLVING_DEPENDENCIES.value
        by_name = {u.name: u for u in changeset.units}
        graph: Dict[str, set] = {}
        resolved: List[_ResolvedUnit] = []

        for unit in changeset.units:
            dep_hashes = []
            for dep in unit.dependencies:
                target = by_name.get(dep)
                if target is None:
                    raise BuildFailed(stage, f"unresolved dependency '{dep}'", unit=unit.name)
                dep_hashes.append(target.content_hash)
            graph[unit.name] = set(unit.dependencies)
            key = CacheKey.compute(unit.content_hash, dep_hashes, self.toolchain.version)
            resolved.append(_ResolvedUnit(unit=unit, dependency_hashes=dep_hashes, key=key))

        try:
            order = list(TopologicalSorter(graph).static_order())
        except CycleError as e:
            cycle = e.args[1] if len(e.args) > 1 else []
            raise BuildFailed(stage, f"dependency cycle: {' -> '.join(cycle)}",
                              unit=cycle[0] if cycle else None) from e
        return resolved, order

    def _compile_units(
        self,
        job: Job,
        runner: Runner,
        resolved: List[_ResolvedUnit],
        cancel: CancelToken,
    ) -> Tuple[Dict[str, bytes], int, int]:
        """Serve hits from the cache, compile misses in parallel."""
        objects: Dict[str, bytes] = {}
        misses: List[_ResolvedUnit] = []
        for item in resolved:
            entry = self.cache.lookup(item.key)
            if entry is not None:
                objects[item.unit.name] = entry.blob
            else:
                misses.append(item)
        hits = len(objects)

        if not misses:
            return objects, hits, 0

        def build_one(item: _ResolvedUnit) -> Tuple[str, bytes]:
            cancel.raise_if_set()
            blob = self.toolchain.compile_unit(item.unit, item.dependency_hashes, runner)
            self.cache.put(item.key, blob)
            return item.unit.name, blob

        workers = min(self._policy.compile_parallelism, len(misses))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="compile") as pool:
            futures = [pool.submit(build_one, item) for item in misses]
            try:
                for future in as_completed(futures):
                    name, blob = future.result()
                    objects[name] = blob
            except CompilationError as e:
                for f in futures:
                    f.cancel()
                raise BuildFailed(BuildStage.COMPILING_UNITS.value, e.raw_error, unit=e.unit) from e
            except BaseException:
                for f in futures:
                    f.cancel()
                raise

        cancel.raise_if_set()
        return objects, hits, len(misses)

    def get_stats(self) -> Dict[str, Any]:
        """Get executor statistics."""
        return {
            "toolchain": self.toolchain.version,
            "builds": self._builds,
            "failures": self._failures,
            "units_compiled": self._units_compiled,
            "units_from_cache": self._units_from_cache,
        }
