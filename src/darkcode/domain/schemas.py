"""Domain entities for accounts and assignments.

Models are frozen: the reconciliation engine hands the same instances to
every consumer, so nothing downstream can mutate canonical state.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AccountStatus(str, Enum):
    """Lifecycle state of an account."""

    ACTIVE = "active"
    PAUSED = "paused"
    BANNED = "banned"


class AssignmentStatus(str, Enum):
    """Lifecycle state of an assignment."""

    ACTIVE = "active"
    PAUSED = "paused"
    FINISHED = "finished"
    UNKNOWN = "unknown"


# Ordered lowest to highest.
ALL_RANKS: tuple[str, ...] = (
    "متدرب",
    "عميل مبتدئ",
    "عميل ميداني",
    "عميل متقدم",
    "عميل نخبوي",
    "نائب المدير",
    "المدير السري",
    "الزعيم الخفي",
)

ADMIN_RANKS: frozenset[str] = frozenset(ALL_RANKS[-3:])

DEFAULT_RANK = ALL_RANKS[0]

# Completion cap used when the sheet leaves it blank; effectively unlimited.
UNLIMITED_COMPLETIONS_SENTINEL = 1000


class Account(BaseModel):
    """One registered person."""

    model_config = ConfigDict(frozen=True)

    username: str
    access_code: str
    display_name: str = ""
    real_name: str = ""
    rank: str = DEFAULT_RANK
    joined_at: str = ""
    points_total: int = 0
    completed_assignments: frozenset[str] = Field(default_factory=frozenset)
    account_status: AccountStatus = AccountStatus.ACTIVE
    is_admin: bool = False
    source_row_index: int = 0

    @property
    def key(self) -> str:
        """Case-insensitive natural key."""
        return self.username.lower()

    @property
    def is_banned(self) -> bool:
        return self.account_status is AccountStatus.BANNED

    @property
    def is_paused(self) -> bool:
        return self.account_status is AccountStatus.PAUSED

    def has_completed(self, assignment_name: str) -> bool:
        return assignment_name in self.completed_assignments


class Assignment(BaseModel):
    """One completable task."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    resource_link: str = "#"
    secret_solution: str = ""
    reward_points: int = 0
    max_completions: int = UNLIMITED_COMPLETIONS_SENTINEL
    lifecycle_status: AssignmentStatus = AssignmentStatus.UNKNOWN
    is_visible: bool = False
    created_at: str = ""
    source_row_index: int = 0

    @property
    def key(self) -> str:
        return self.name

    @property
    def is_unlimited(self) -> bool:
        return self.max_completions == 0
