"""
Artifact Models
===============

Content-addressed values: cache keys and entries for compiled units, and
published build artifacts.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Any

from shadow_build.models.changeset import Platform


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class CacheKey:
    """Deterministic key of a compiler input."""
    digest: str

    @classmethod
    def compute(
        cls,
        unit_hash: str,
        dependency_hashes: Iterable[str],
        toolchain_version: str,
    ) -> CacheKey:
        """Hash of the unit, its direct dependency hashes, and the toolchain."""
        canonical = json.dumps(
            {
                "unit": unit_hash,
                "deps": sorted(set(dependency_hashes)),
                "toolchain": toolchain_version,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return cls(digest=sha256_hex(canonical.encode("utf-8")))

    def __str__(self) -> str:
        return self.digest


@dataclass
class CacheEntry:
    """A compiled module blob. The blob never changes once written."""
    key: CacheKey
    blob: bytes = field(repr=False)
    content_hash: str = ""
    size: int = 0
    created_at: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.content_hash:
            self.content_hash = sha256_hex(self.blob)
        if not self.size:
            self.size = len(self.blob)

    def verify(self) -> bool:
        """Check the blob against its recorded content hash."""
        return sha256_hex(self.blob) == self.content_hash

    def metadata(self) -> Dict[str, Any]:
        return {
            "key": self.key.digest,
            "content_hash": self.content_hash,
            "size": self.size,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Artifact:
    """Published output of a successful job. Never mutated once published."""
    content_hash: str
    job_id: str
    platform: Platform
    binary_location: Optional[str] = None
    size: int = 0
    payload: bytes = field(default=b"", repr=False, compare=False)

    @property
    def ref(self) -> str:
        return self.content_hash

    @classmethod
    def from_bundle(cls, bundle: bytes, job_id: str, platform: Platform) -> Artifact:
        return cls(
            content_hash=sha256_hex(bundle),
            job_id=job_id,
            platform=platform,
            size=len(bundle),
            payload=bundle,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "job_id": self.job_id,
            "platform": self.platform.value,
            "binary_location": self.binary_location,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Artifact:
        return cls(
            content_hash=data["content_hash"],
            job_id=data.get("job_id", ""),
            platform=Platform(data.get("platform", "ios")),
            binary_location=data.get("binary_location"),
            size=data.get("size", 0),
        )
