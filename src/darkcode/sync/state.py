"""Explicit application state shared by the engine and its consumers.

Only the reconciliation engine assigns the collections; everyone else
reads. Collections are tuples of frozen models, so a reader always holds
a consistent snapshot even while the engine swaps in a newer one.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from darkcode.domain.schemas import Account, Assignment


class LoadPhase(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    POPULATED = "populated"
    REFRESHING = "refreshing"


@dataclass
class AppState:
    accounts: tuple[Account, ...] = ()
    assignments: tuple[Assignment, ...] = ()
    session_account: Account | None = None
    accounts_phase: LoadPhase = LoadPhase.EMPTY
    assignments_phase: LoadPhase = LoadPhase.EMPTY
    connectivity_error: bool = False

    def find_account(self, username: str) -> Account | None:
        """Case-insensitive lookup by username."""
        needle = username.strip().lower()
        for account in self.accounts:
            if account.key == needle:
                return account
        return None

    def find_assignment(self, name: str) -> Assignment | None:
        for assignment in self.assignments:
            if assignment.name == name:
                return assignment
        return None

    def visible_assignments(self) -> list[Assignment]:
        return [a for a in self.assignments if a.is_visible]

    def teardown(self) -> None:
        """Drop all state at the end of a session."""
        self.accounts = ()
        self.assignments = ()
        self.session_account = None
        self.accounts_phase = LoadPhase.EMPTY
        self.assignments_phase = LoadPhase.EMPTY
        self.connectivity_error = False
