"""Assignment completion rules: caps, solution matching, attempt policy."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from darkcode.domain.schemas import Account, Assignment, AssignmentStatus

_WHITESPACE = re.compile(r"\s+")


def winner_count(assignment_name: str, accounts: Iterable[Account]) -> int:
    """Number of accounts that have completed the named assignment."""
    return sum(1 for a in accounts if a.has_completed(assignment_name))


def winner_counts(assignments: Iterable[Assignment], accounts: Iterable[Account]) -> dict[str, int]:
    accounts = list(accounts)
    return {t.name: winner_count(t.name, accounts) for t in assignments}


def cap_reached(assignment: Assignment, winners: int) -> bool:
    """A cap of 0 means unlimited; otherwise full once winners reach the cap."""
    if assignment.is_unlimited:
        return False
    return winners >= assignment.max_completions


def is_full(assignment: Assignment, accounts: Iterable[Account]) -> bool:
    return cap_reached(assignment, winner_count(assignment.name, accounts))


def normalize_solution(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip()).casefold()


def solution_matches(attempt: str, solution: str) -> bool:
    """Compare after whitespace collapsing and case-folding."""
    return normalize_solution(attempt) == normalize_solution(solution)


@dataclass(frozen=True)
class AttemptPolicy:
    """What an account may do with an assignment right now.

    Paused accounts run in sandbox mode: they can attempt closed or
    already-solved assignments, and nothing they solve is recorded.
    """

    closed: bool
    already_solved: bool
    records_progress: bool

    @property
    def can_attempt(self) -> bool:
        return not self.closed and not self.already_solved


def attempt_policy(assignment: Assignment, account: Account, winners: int) -> AttemptPolicy:
    if account.is_paused:
        return AttemptPolicy(closed=False, already_solved=False, records_progress=False)

    finished = assignment.lifecycle_status is AssignmentStatus.FINISHED
    return AttemptPolicy(
        closed=finished or cap_reached(assignment, winners),
        already_solved=account.has_completed(assignment.name),
        records_progress=True,
    )
