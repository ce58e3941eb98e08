"""
Change Classifier
=================

Maps a ChangeSet to a Tier. Pure and total: every input yields a tier, and
ambiguous input always yields the more expensive one.
"""

from __future__ import annotations

from typing import Tuple

from shadow_build.models.changeset import ChangeSet, ChangeKind, UnitRole
from shadow_build.models.job import Tier

# Roles that force a full rebuild.
STRUCTURAL_ROLES = frozenset({
    UnitRole.DEPENDENCY_MANIFEST,
    UnitRole.BUILD_CONFIG,
    UnitRole.CODE_SIGNING,
    UnitRole.UNKNOWN,
})

LOGIC_ROLES = frozenset({
    UnitRole.LOGIC,
    UnitRole.SCREEN,
    UnitRole.STATE_CONTRACT,
})

VIEW_ROLES = frozenset({
    UnitRole.VIEW,
    UnitRole.ASSET,
})


def classify_with_reason(changeset: ChangeSet) -> Tuple[Tier, str]:
    """Classify a ChangeSet and say which rule decided it."""
    kind = changeset.declared_kind
    roles = {u.role for u in changeset.units}

    structural = roles & STRUCTURAL_ROLES
    if structural:
        names = ",".join(sorted(r.value for r in structural))
        return Tier.COLD, f"structural units touched: {names}"

    if kind == ChangeKind.DEPENDENCY:
        return Tier.COLD, "declared dependency change"

    if kind == ChangeKind.UNKNOWN:
        return Tier.COLD, "unrecognised change kind"

    if roles & LOGIC_ROLES:
        return Tier.WARM, "logic, screen or state-contract units touched"

    if kind == ChangeKind.LOGIC:
        return Tier.WARM, "declared logic change"

    # kind == UI_ONLY from here on
    if not changeset.units:
        return Tier.WARM, "empty ui-only change"

    if roles <= VIEW_ROLES:
        return Tier.HOT, "view units only"

    return Tier.COLD, "unclassified units"


def classify(changeset: ChangeSet) -> Tier:
    """Return the tier for a ChangeSet."""
    return classify_with_reason(changeset)[0]
