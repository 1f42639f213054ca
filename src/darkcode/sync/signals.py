"""Change detection between successive collection snapshots."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from darkcode.domain.ranking import top_identity
from darkcode.domain.schemas import Account, Assignment


class ChangeKind(str, Enum):
    ACCOUNTS_CHANGED = "accounts_changed"
    ASSIGNMENTS_CHANGED = "assignments_changed"
    NEW_ASSIGNMENT = "new_assignment"
    NEW_LEADER = "new_leader"
    SESSION_REBOUND = "session_rebound"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    data: dict[str, Any] = field(default_factory=dict)


# Sheet position is provenance, not content: a re-sorted sheet is not a change.
_PROVENANCE_FIELDS = {"source_row_index"}


def _fingerprint(items: Sequence[BaseModel], key: Callable[[Any], str]) -> list[tuple[str, dict[str, Any]]]:
    pairs = [(key(item), item.model_dump(exclude=_PROVENANCE_FIELDS)) for item in items]
    return sorted(pairs, key=lambda pair: pair[0])


def collection_changed(
    previous: Sequence[BaseModel],
    current: Sequence[BaseModel],
    key: Callable[[Any], str],
) -> bool:
    """Structural comparison, insensitive to row order."""
    if len(previous) != len(current):
        return True
    return _fingerprint(previous, key) != _fingerprint(current, key)


def accounts_changed(previous: Sequence[Account], current: Sequence[Account]) -> bool:
    return collection_changed(previous, current, key=lambda a: a.key)


def assignments_changed(previous: Sequence[Assignment], current: Sequence[Assignment]) -> bool:
    return collection_changed(previous, current, key=lambda t: t.key)


def visible_count(assignments: Sequence[Assignment]) -> int:
    return sum(1 for t in assignments if t.is_visible)


def detect_new_assignment(previous: Sequence[Assignment], current: Sequence[Assignment]) -> bool:
    """True when the number of visible assignments grew.

    Never fires against an empty previous snapshot, so the first load is
    not announced as new work.
    """
    if not previous:
        return False
    return visible_count(current) > visible_count(previous)


def detect_new_leader(previous: Sequence[Account], current: Sequence[Account]) -> str | None:
    """Return the new rank-1 username when it changed, else None."""
    before = top_identity(previous)
    if before is None:
        return None
    after = top_identity(current)
    if after is None or after.lower() == before.lower():
        return None
    return after
