"""Optimistic version checks and three-way merge over ticket snapshots."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


@dataclass
class Resolution:
    strategy: str  # retry | merge | abort | force
    description: str


@dataclass
class ConflictInfo:
    ticket_id: str
    expected_version: int
    actual_version: int
    conflicting_fields: list[str] = field(default_factory=list)
    resolution_options: list[Resolution] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Version conflict on {self.ticket_id}: "
            f"expected v{self.expected_version}, found v{self.actual_version}"
        )


@dataclass
class VersionCheckResult:
    valid: bool
    current_version: int
    conflict: ConflictInfo | None = None


@dataclass
class MergeResult:
    merged: dict[str, Any]
    auto_merged: bool
    manual_fields: list[str] = field(default_factory=list)


def _resolution_options(conflicting_fields: list[str]) -> list[Resolution]:
    if conflicting_fields:
        merge = Resolution("merge", "Merge manually, choosing a value for each conflicting field")
    else:
        merge = Resolution("merge", "Merge both sets of changes automatically")
    return [
        Resolution("retry", "Re-read the ticket and re-apply the changes"),
        merge,
        Resolution("abort", "Cancel the update and keep the stored version"),
        Resolution("force", "Overwrite with our changes (last write wins)"),
    ]


def check_version(
    ticket_id: str,
    expected_version: int,
    actual_version: int,
    changed_fields: list[str] | None = None,
) -> VersionCheckResult:
    if expected_version == actual_version:
        return VersionCheckResult(valid=True, current_version=actual_version)

    logger.warning(
        "Version conflict for %s: expected v%d, got v%d",
        ticket_id, expected_version, actual_version,
    )
    changed = list(changed_fields or [])
    return VersionCheckResult(
        valid=False,
        current_version=actual_version,
        conflict=ConflictInfo(
            ticket_id=ticket_id,
            expected_version=expected_version,
            actual_version=actual_version,
            conflicting_fields=changed,
            resolution_options=_resolution_options(changed),
        ),
    )


def increment_version(version: int) -> int:
    return version + 1


def detect_field_conflicts(
    original: Mapping[str, Any],
    current: Mapping[str, Any],
    our_changes: Mapping[str, Any],
) -> list[str]:
    """Fields both writers changed away from ``original`` to different values.

    An absent field compares equal to None.
    """
    conflicts = []
    for name, ours in our_changes.items():
        if name in IMMUTABLE_FIELDS:
            continue
        base = original.get(name)
        theirs = current.get(name)
        if theirs != base and ours != base and theirs != ours:
            conflicts.append(name)
    return conflicts


def attempt_merge(
    original: Mapping[str, Any],
    current: Mapping[str, Any],
    our_changes: Mapping[str, Any],
) -> MergeResult:
    """Three-way merge of our changes onto the current stored snapshot.

    Clean fields are merged even when some fields need manual resolution;
    in that case ``auto_merged`` is False and the conflicting fields keep
    the stored value.
    """
    conflicts = set(detect_field_conflicts(original, current, our_changes))
    merged = dict(current)
    manual_fields = []

    for name, ours in our_changes.items():
        if name in IMMUTABLE_FIELDS:
            continue
        if name in conflicts:
            manual_fields.append(name)
        elif ours != original.get(name):
            merged[name] = ours

    return MergeResult(merged=merged, auto_merged=not manual_fields, manual_fields=manual_fields)
