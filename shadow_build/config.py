"""
Engine Configuration
====================

Tunables for every component, loaded from TOML or YAML.

Example engine.toml:

    [tiers]
    hot_sla_sec = 5
    warm_sla_sec = 30
    cold_sla_sec = 120

    [queue]
    max_depth = 1000
    starvation_factor = 2.0

    [pool.A]
    warm_floor = 2
    ceiling = 8

    [pool]
    max_lifetime_sec = 3600
    failure_threshold = 3
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Dict, Optional, Any

import yaml

from shadow_build.errors import ConfigError
from shadow_build.models.changeset import CapabilityClass
from shadow_build.models.job import Tier, DEFAULT_SLA_SEC

logger = logging.getLogger(__name__)


@dataclass
class TierPolicy:
    """SLA targets per tier."""
    hot_sla_sec: float = DEFAULT_SLA_SEC[Tier.HOT]
    warm_sla_sec: float = DEFAULT_SLA_SEC[Tier.WARM]
    cold_sla_sec: float = DEFAULT_SLA_SEC[Tier.COLD]

    def sla_for(self, tier: Tier) -> float:
        return {
            Tier.HOT: self.hot_sla_sec,
            Tier.WARM: self.warm_sla_sec,
            Tier.COLD: self.cold_sla_sec,
        }[tier]


@dataclass
class QueuePolicy:
    """Priority queue limits."""
    max_depth: int = 1000
    starvation_factor: float = 2.0    # COLD waits this many SLAs before promotion
    expiry_factor: float = 3.0        # QUEUED/RUNNING jobs expire after this many SLAs
    max_preemptions: int = 3          # a job is not preempted more often than this
    completed_retention_sec: float = 300.0  # finished jobs leave memory after this long


@dataclass
class PoolLimits:
    """Warm floor and hard ceiling for one capability class."""
    warm_floor: int = 1
    ceiling: int = 4


@dataclass
class PoolPolicy:
    """Runner pool settings."""
    limits: Dict[CapabilityClass, PoolLimits] = field(default_factory=lambda: {
        CapabilityClass.A: PoolLimits(warm_floor=1, ceiling=4),
        CapabilityClass.B: PoolLimits(warm_floor=2, ceiling=16),
    })
    max_lifetime_sec: float = 4 * 3600.0
    failure_threshold: int = 3
    scale_down_window_sec: float = 300.0
    provision_workers: int = 4

    def limits_for(self, capability_class: CapabilityClass) -> PoolLimits:
        return self.limits.setdefault(capability_class, PoolLimits())


@dataclass
class CachePolicy:
    """Content-addressable cache settings."""
    max_bytes: int = 10 * 1024 ** 3
    lookup_timeout_sec: float = 0.5
    put_timeout_sec: float = 2.0
    io_workers: int = 8


@dataclass
class ExecutorPolicy:
    """Build executor settings."""
    compile_parallelism: int = 4
    max_infra_retries: int = 2
    build_workers: int = 8


@dataclass
class MonitorPolicy:
    """SLA monitor settings."""
    window_size: int = 200
    p95_factor: float = 1.5
    sustain_sec: float = 60.0
    low_water_utilization: float = 0.2
    min_samples: int = 5
    floor_step: int = 1
    evaluate_interval_sec: float = 10.0


class EngineConfig:
    """
    Complete engine configuration.

    Loaded from a TOML or YAML file; every section is optional.
    """

    def __init__(self):
        self.tiers = TierPolicy()
        self.queue = QueuePolicy()
        self.pool = PoolPolicy()
        self.cache = CachePolicy()
        self.executor = ExecutorPolicy()
        self.monitor = MonitorPolicy()

        self._source_path: Optional[Path] = None

    @property
    def source_path(self) -> Optional[Path]:
        return self._source_path

    def sla_for(self, tier: Tier) -> float:
        return self.tiers.sla_for(tier)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EngineConfig:
        """Build a config from parsed file data, keeping defaults for gaps."""
        config = cls()

        tiers = data.get("tiers", {})
        config.tiers = TierPolicy(
            hot_sla_sec=float(tiers.get("hot_sla_sec", config.tiers.hot_sla_sec)),
            warm_sla_sec=float(tiers.get("warm_sla_sec", config.tiers.warm_sla_sec)),
            cold_sla_sec=float(tiers.get("cold_sla_sec", config.tiers.cold_sla_sec)),
        )

        q = data.get("queue", {})
        config.queue = QueuePolicy(
            max_depth=int(q.get("max_depth", 1000)),
            starvation_factor=float(q.get("starvation_factor", 2.0)),
            expiry_factor=float(q.get("expiry_factor", 3.0)),
            max_preemptions=int(q.get("max_preemptions", 3)),
            completed_retention_sec=float(q.get("completed_retention_sec", 300.0)),
        )

        p = data.get("pool", {})
        pool = PoolPolicy(
            max_lifetime_sec=float(p.get("max_lifetime_sec", 4 * 3600.0)),
            failure_threshold=int(p.get("failure_threshold", 3)),
            scale_down_window_sec=float(p.get("scale_down_window_sec", 300.0)),
            provision_workers=int(p.get("provision_workers", 4)),
        )
        for cls_name in ("A", "B"):
            if cls_name in p:
                section = p[cls_name]
                pool.limits[CapabilityClass(cls_name)] = PoolLimits(
                    warm_floor=int(section.get("warm_floor", 1)),
                    ceiling=int(section.get("ceiling", 4)),
                )
        config.pool = pool

        c = data.get("cache", {})
        config.cache = CachePolicy(
            max_bytes=int(c.get("max_bytes", config.cache.max_bytes)),
            lookup_timeout_sec=float(c.get("lookup_timeout_sec", 0.5)),
            put_timeout_sec=float(c.get("put_timeout_sec", 2.0)),
            io_workers=int(c.get("io_workers", 8)),
        )

        e = data.get("executor", {})
        config.executor = ExecutorPolicy(
            compile_parallelism=int(e.get("compile_parallelism", 4)),
            max_infra_retries=int(e.get("max_infra_retries", 2)),
            build_workers=int(e.get("build_workers", 8)),
        )

        m = data.get("monitor", {})
        config.monitor = MonitorPolicy(
            window_size=int(m.get("window_size", 200)),
            p95_factor=float(m.get("p95_factor", 1.5)),
            sustain_sec=float(m.get("sustain_sec", 60.0)),
            low_water_utilization=float(m.get("low_water_utilization", 0.2)),
            min_samples=int(m.get("min_samples", 5)),
            floor_step=int(m.get("floor_step", 1)),
            evaluate_interval_sec=float(m.get("evaluate_interval_sec", 10.0)),
        )

        config.validate()
        return config

    @classmethod
    def from_toml(cls, path: Path) -> EngineConfig:
        """Load engine config from a TOML file."""
        with open(path, "rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Invalid TOML in {path}: {e}") from e
        config = cls.from_dict(data)
        config._source_path = Path(path)
        logger.info(f"Loaded engine config from {path}")
        return config

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load engine config from a YAML file."""
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        config = cls.from_dict(data)
        config._source_path = Path(path)
        logger.info(f"Loaded engine config from {path}")
        return config

    @classmethod
    def from_file(cls, path: Path) -> EngineConfig:
        path = Path(path)
        if path.suffix == ".toml":
            return cls.from_toml(path)
        if path.suffix in (".yaml", ".yml"):
            return cls.from_yaml(path)
        raise ConfigError(f"Unsupported config format: {path.suffix}")

    def validate(self) -> None:
        """Raise ConfigError on inconsistent settings."""
        for tier in Tier:
            if self.sla_for(tier) <= 0:
                raise ConfigError(f"SLA for {tier.value} must be positive")
        if not (self.tiers.hot_sla_sec <= self.tiers.warm_sla_sec <= self.tiers.cold_sla_sec):
            raise ConfigError("SLA targets must not decrease from hot to cold")
        if self.queue.max_depth < 1:
            raise ConfigError("queue.max_depth must be at least 1")
        if self.queue.starvation_factor < 1.0:
            raise ConfigError("queue.starvation_factor must be >= 1")
        if self.queue.expiry_factor <= self.queue.starvation_factor:
            raise ConfigError("queue.expiry_factor must exceed queue.starvation_factor")
        if self.queue.completed_retention_sec < 0:
            raise ConfigError("queue.completed_retention_sec must not be negative")
        for cap, limits in self.pool.limits.items():
            if limits.warm_floor < 0 or limits.ceiling < 1:
                raise ConfigError(f"pool.{cap.value}: invalid floor/ceiling")
            if limits.warm_floor > limits.ceiling:
                raise ConfigError(f"pool.{cap.value}: warm_floor exceeds ceiling")
        if self.pool.failure_threshold < 1:
            raise ConfigError("pool.failure_threshold must be at least 1")
        if self.pool.max_lifetime_sec <= 0:
            raise ConfigError("pool.max_lifetime_sec must be positive")
        if self.cache.lookup_timeout_sec <= 0 or self.cache.put_timeout_sec <= 0:
            raise ConfigError("cache timeouts must be positive")
        if self.executor.compile_parallelism < 1:
            raise ConfigError("executor.compile_parallelism must be at least 1")
        if self.monitor.p95_factor <= 1.0:
            raise ConfigError("monitor.p95_factor must exceed 1")

    def to_dict(self) -> Dict[str, Any]:
        pool = asdict(self.pool)
        pool["limits"] = {cap.value: asdict(lim) for cap, lim in self.pool.limits.items()}
        return {
            "tiers": asdict(self.tiers),
            "queue": asdict(self.queue),
            "pool": pool,
            "cache": asdict(self.cache),
            "executor": asdict(self.executor),
            "monitor": asdict(self.monitor),
        }
