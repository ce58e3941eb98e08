"""
ChangeSet Models
================

A ChangeSet is the unit of work handed to the engine by the code-generation
collaborator: one project, a set of changed source units, and a declared kind.
ChangeSets are immutable once submitted.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Sequence, Tuple
from enum import Enum


class ChangeKind(str, Enum):
    """Declared kind of a change."""
    UI_ONLY = "ui_only"
    LOGIC = "logic"
    DEPENDENCY = "dependency"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> ChangeKind:
        """Parse a declared kind, mapping anything unrecognised to UNKNOWN."""
        if isinstance(value, ChangeKind):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            return cls.UNKNOWN


class UnitRole(str, Enum):
    """Module boundary a source unit belongs to."""
    VIEW = "view"
    ASSET = "asset"
    LOGIC = "logic"
    SCREEN = "screen"
    STATE_CONTRACT = "state_contract"
    DEPENDENCY_MANIFEST = "dependency_manifest"
    BUILD_CONFIG = "build_config"
    CODE_SIGNING = "code_signing"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> UnitRole:
        if isinstance(value, UnitRole):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            return cls.UNKNOWN


class CapabilityClass(str, Enum):
    """Runner capability classes."""
    A = "A"    # heavyweight, macOS-class hosts
    B = "B"    # containerized, Linux-class hosts


class Platform(str, Enum):
    """Target platform of a build."""
    IOS = "ios"
    MACOS = "macos"
    ANDROID = "android"
    WEB = "web"

    @property
    def capability_class(self) -> CapabilityClass:
        if self in (Platform.IOS, Platform.MACOS):
            return CapabilityClass.A
        return CapabilityClass.B


# Role a hash-only unit takes from the declared kind of its ChangeSet.
IMPLIED_ROLE: Dict[ChangeKind, UnitRole] = {
    ChangeKind.UI_ONLY: UnitRole.VIEW,
    ChangeKind.LOGIC: UnitRole.LOGIC,
    ChangeKind.DEPENDENCY: UnitRole.DEPENDENCY_MANIFEST,
    ChangeKind.UNKNOWN: UnitRole.UNKNOWN,
}


@dataclass(frozen=True)
class SourceUnit:
    """A single compilation unit touched by a change."""
    name: str
    content_hash: str
    role: UnitRole = UnitRole.UNKNOWN
    dependencies: Tuple[str, ...] = ()   # names of other units in the same ChangeSet

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "content_hash": self.content_hash,
            "role": self.role.value,
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SourceUnit:
        return cls(
            name=data.get("name") or data["content_hash"],
            content_hash=data["content_hash"],
            role=UnitRole.parse(data.get("role", "unknown")),
            dependencies=tuple(data.get("dependencies", ())),
        )


@dataclass(frozen=True)
class ChangeSet:
    """An immutable set of source changes for one project."""
    changeset_id: str
    project_id: str
    units: Tuple[SourceUnit, ...]
    declared_kind: ChangeKind = ChangeKind.UNKNOWN
    platform: Platform = Platform.IOS
    created_at: float = field(default_factory=time.time)

    @property
    def content_hash(self) -> str:
        """Hash over the sorted unit content hashes."""
        digest = hashlib.sha256()
        for unit_hash in sorted(u.content_hash for u in self.units):
            digest.update(unit_hash.encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()

    @property
    def capability_class(self) -> CapabilityClass:
        return self.platform.capability_class

    def unit_hashes(self) -> List[str]:
        return [u.content_hash for u in self.units]

    def get_unit(self, name: str) -> Optional[SourceUnit]:
        for unit in self.units:
            if unit.name == name:
                return unit
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changeset_id": self.changeset_id,
            "project_id": self.project_id,
            "units": [u.to_dict() for u in self.units],
            "declared_kind": self.declared_kind.value,
            "platform": self.platform.value,
            "created_at": self.created_at,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ChangeSet:
        return cls(
            changeset_id=data["changeset_id"],
            project_id=data["project_id"],
            units=tuple(SourceUnit.from_dict(u) for u in data.get("units", [])),
            declared_kind=ChangeKind.parse(data.get("declared_kind", "unknown")),
            platform=Platform(data.get("platform", "ios")),
            created_at=data.get("created_at", time.time()),
        )

    @classmethod
    def create(
        cls,
        project_id: str,
        unit_hashes: Sequence[str] = (),
        declared_kind: Any = ChangeKind.UNKNOWN,
        units: Optional[Sequence[SourceUnit]] = None,
        platform: Platform = Platform.IOS,
        created_at: Optional[float] = None,
    ) -> ChangeSet:
        """
        Build a ChangeSet from raw submission data.

        Hash-only units take the role implied by the declared kind; units
        given explicitly keep their own role.
        """
        kind = ChangeKind.parse(declared_kind)
        all_units: List[SourceUnit] = list(units or [])
        known = {u.content_hash for u in all_units}
        implied = IMPLIED_ROLE[kind]
        for unit_hash in unit_hashes:
            if unit_hash in known:
                continue
            all_units.append(SourceUnit(name=unit_hash, content_hash=unit_hash, role=implied))
            known.add(unit_hash)

        return cls(
            changeset_id=f"cs-{uuid.uuid4().hex[:12]}",
            project_id=project_id,
            units=tuple(all_units),
            declared_kind=kind,
            platform=platform,
            created_at=created_at if created_at is not None else time.time(),
        )
