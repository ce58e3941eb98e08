"""
Shadow Build Test Configuration
===============================

Shared fixtures: a manual clock, component factories and a synchronous
engine driven with dispatch_once().
"""

import logging
import threading

import pytest

from shadow_build.cache import ContentAddressableCache
from shadow_build.config import EngineConfig, PoolLimits
from shadow_build.engine import BuildEngine
from shadow_build.models.changeset import CapabilityClass, ChangeKind, ChangeSet, SourceUnit, UnitRole
from shadow_build.pool import LocalProvisioner, RunnerPoolManager
from shadow_build.publisher import ArtifactPublisher
from shadow_build.toolchain import SimulatedToolchain

logger = logging.getLogger(__name__)


class FakeClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, start: float = 1_000_000.0):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now


def make_units(prefix: str, count: int, role: UnitRole = UnitRole.VIEW, chain: bool = False):
    """count units named <prefix>0..n; with chain=True each depends on the previous one."""
    units = []
    for i in range(count):
        deps = (f"{prefix}{i - 1}",) if chain and i > 0 else ()
        units.append(SourceUnit(
            name=f"{prefix}{i}",
            content_hash=f"{prefix}-hash-{i}",
            role=role,
            dependencies=deps,
        ))
    return units


def make_changeset(project_id="proj-1", kind=ChangeKind.UI_ONLY, units=None, **kwargs):
    return ChangeSet.create(
        project_id=project_id,
        declared_kind=kind,
        units=units if units is not None else make_units("View", 2),
        **kwargs,
    )


def small_config(a_floor=0, a_ceiling=1, b_floor=0, b_ceiling=2) -> EngineConfig:
    """Default config with a small pool and one compile thread for determinism."""
    config = EngineConfig()
    config.pool.limits = {
        CapabilityClass.A: PoolLimits(warm_floor=a_floor, ceiling=a_ceiling),
        CapabilityClass.B: PoolLimits(warm_floor=b_floor, ceiling=b_ceiling),
    }
    config.executor.compile_parallelism = 1
    config.monitor.sustain_sec = 10.0
    config.monitor.min_samples = 3
    config.validate()
    return config


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def toolchain():
    return SimulatedToolchain()


@pytest.fixture
def cache(clock):
    cache = ContentAddressableCache(clock=clock)
    yield cache
    cache.close()


@pytest.fixture
def publisher():
    return ArtifactPublisher()


@pytest.fixture
def provisioner():
    return LocalProvisioner()


@pytest.fixture
def pool(clock, provisioner):
    config = small_config(a_floor=1, a_ceiling=2)
    pool = RunnerPoolManager(
        policy=config.pool,
        provisioner=provisioner,
        clock=clock,
        async_provisioning=False,
    )
    yield pool
    pool.close()


@pytest.fixture
def make_engine(clock, toolchain):
    """Factory for synchronous engines sharing the test clock."""
    engines = []

    def factory(config=None, **kwargs):
        kwargs.setdefault("toolchain", toolchain)
        engine = BuildEngine(
            config=config or small_config(),
            clock=clock,
            async_provisioning=False,
            **kwargs,
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.stop(timeout=1.0)


@pytest.fixture
def engine(make_engine):
    return make_engine()
