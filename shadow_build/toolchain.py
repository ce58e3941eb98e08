"""
Toolchains
==========

Platform-specific compilation capability used by the build executor.
A toolchain compiles single units and links compiled units into a bundle;
it raises CompilationError for source errors and RunnerUnavailable when the
host cannot be reached.
"""

from __future__ import annotations

import hashlib
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from shadow_build.errors import CompilationError, RunnerUnavailable
from shadow_build.models.changeset import ChangeSet, SourceUnit
from shadow_build.models.runner import Runner


class Toolchain:
    """Compiler/linker adapter for one platform family."""

    @property
    def version(self) -> str:
        raise NotImplementedError

    def compile_unit(
        self,
        unit: SourceUnit,
        dependency_hashes: Sequence[str],
        runner: Runner,
    ) -> bytes:
        """Compile one unit and return the object blob."""
        raise NotImplementedError

    def link(
        self,
        changeset: ChangeSet,
        objects: Sequence[Tuple[str, bytes]],
        runner: Runner,
    ) -> bytes:
        """Link (unit name, object blob) pairs into a deployable bundle."""
        raise NotImplementedError


class SimulatedToolchain(Toolchain):
    """
    Deterministic toolchain for tests, local runs and the `simulate` command.

    Object blobs depend only on unit hash, dependency hashes and version, so
    identical inputs produce identical outputs on any runner.
    """

    def __init__(
        self,
        version: str = "sim-1.0",
        compile_delay_sec: float = 0.0,
        failing_units: Optional[Dict[str, str]] = None,
        unreachable_runners: Optional[Iterable[str]] = None,
        before_compile: Optional[Callable[[SourceUnit, Runner], None]] = None,
    ):
        self._version = version
        self.compile_delay_sec = compile_delay_sec
        self.failing_units: Dict[str, str] = dict(failing_units or {})
        self.unreachable_runners: Set[str] = set(unreachable_runners or ())
        self.before_compile = before_compile

        self._lock = threading.Lock()
        self.compile_count = 0
        self.link_count = 0
        self.compiled_units: List[str] = []

    @property
    def version(self) -> str:
        return self._version

    def compile_unit(
        self,
        unit: SourceUnit,
        dependency_hashes: Sequence[str],
        runner: Runner,
    ) -> bytes:
        if runner.runner_id in self.unreachable_runners:
            raise RunnerUnavailable(runner.runner_id)
        if self.before_compile is not None:
            self.before_compile(unit, runner)
        if self.compile_delay_sec > 0:
            time.sleep(self.compile_delay_sec)

        error = self.failing_units.get(unit.name) or self.failing_units.get(unit.content_hash)
        if error is not None:
            raise CompilationError(unit.name, error)

        with self._lock:
            self.compile_count += 1
            self.compiled_units.append(unit.name)

        digest = hashlib.sha256()
        digest.update(unit.content_hash.encode("utf-8"))
        for dep in sorted(dependency_hashes):
            digest.update(dep.encode("utf-8"))
        digest.update(self._version.encode("utf-8"))
        return b"obj:" + digest.hexdigest().encode("ascii")

    def link(
        self,
        changeset: ChangeSet,
        objects: Sequence[Tuple[str, bytes]],
        runner: Runner,
    ) -> bytes:
        if runner.runner_id in self.unreachable_runners:
            raise RunnerUnavailable(runner.runner_id)
        with self._lock:
            self.link_count += 1
        parts = [f"bundle:{changeset.platform.value}:{self._version}".encode("utf-8")]
        for name, blob in sorted(objects):
            parts.append(name.encode("utf-8") + b"=" + blob)
        return b"\n".join(parts)
