"""Map decoded sheet rows into Account and Assignment entities.

The sheets are edited by hand and have carried several header spellings
over time (Arabic with and without the final taa marbuta, English legacy
columns). Each canonical field lists its accepted headers in priority
order; the first present, non-empty value wins.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

import structlog

from darkcode.domain.schemas import (
    ADMIN_RANKS,
    DEFAULT_RANK,
    UNLIMITED_COMPLETIONS_SENTINEL,
    Account,
    AccountStatus,
    Assignment,
    AssignmentStatus,
)
from darkcode.sheets.decoder import ROW_INDEX_FIELD

Row = Mapping[str, str]

logger = structlog.get_logger()

# ---------------------------------------------------------------------------
# Column alias tables
# ---------------------------------------------------------------------------

ACCOUNT_COLUMNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("username", ("Username",)),
    ("access_code", ("code",)),
    ("display_name", ("CodeName",)),
    ("real_name", ("Name",)),
    ("rank", ("Rank",)),
    ("points", ("points",)),
    ("status", ("حالة الحساب",)),
    ("completed", ("المهام المنجزه", "المهام المنجزة")),
    ("joined_at", ("طابع زمني", "Timestamp")),
)

ASSIGNMENT_COLUMNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("name", ("اسم المهمه", "اسم المهمة")),
    ("description", ("وصف المهمه", "وصف المهمة")),
    ("link", ("رابط مهمه", "رابط مهمة")),
    ("solution", ("حل المهمه", "حل المهمة")),
    ("status", ("هل المهمه تعمل", "Active")),
    ("points", ("points",)),
    ("max_completions", ("كم فوز",)),
    ("created_at", ("طابع زمني", "Timestamp")),
)

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

ACCOUNT_STATUS_TOKENS: dict[str, AccountStatus] = {
    "شغال": AccountStatus.ACTIVE,
    "موقف": AccountStatus.PAUSED,
    "مبند": AccountStatus.BANNED,
}

ASSIGNMENT_STATUS_TOKENS: dict[str, AssignmentStatus] = {
    "تعمل": AssignmentStatus.ACTIVE,
    "true": AssignmentStatus.ACTIVE,
    "موقفه": AssignmentStatus.PAUSED,
    "منتهيه": AssignmentStatus.FINISHED,
}

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def _lookup(row: Row, columns: tuple[tuple[str, tuple[str, ...]], ...]) -> dict[str, str]:
    """Resolve every canonical field through its alias list."""
    resolved: dict[str, str] = {}
    for field, aliases in columns:
        for alias in aliases:
            value = row.get(alias)
            if value:
                resolved[field] = value
                break
    return resolved


def parse_int(raw: str | None, default: int = 0) -> int:
    """Parse a leading integer the way a spreadsheet user expects.

    ``"150"`` and ``"150 pts"`` both give 150; anything without a leading
    integer gives ``default``.
    """
    if not raw:
        return default
    match = _LEADING_INT.match(raw)
    if match is None:
        return default
    return int(match.group(1))


def translate_account_status(raw: str | None) -> AccountStatus:
    return ACCOUNT_STATUS_TOKENS.get((raw or "").strip(), AccountStatus.ACTIVE)


def translate_assignment_status(raw: str | None) -> AssignmentStatus:
    token = (raw or "").strip()
    status = ASSIGNMENT_STATUS_TOKENS.get(token)
    if status is None:
        status = ASSIGNMENT_STATUS_TOKENS.get(token.lower(), AssignmentStatus.UNKNOWN)
    return status


def split_completed(raw: str | None) -> frozenset[str]:
    """Split the comma-separated completion column, dropping blanks."""
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


def is_admin_rank(rank: str) -> bool:
    return rank.strip() in ADMIN_RANKS


def normalize_account(row: Row) -> Account | None:
    """Build an Account from a decoded row.

    Returns None when the row lacks a username or an access code; such a
    row is not a usable account.
    """
    fields = _lookup(row, ACCOUNT_COLUMNS)
    username = fields.get("username", "")
    access_code = fields.get("access_code", "")
    if not username or not access_code:
        return None

    rank = fields.get("rank", DEFAULT_RANK)
    return Account(
        username=username,
        access_code=access_code,
        display_name=fields.get("display_name", ""),
        real_name=fields.get("real_name", ""),
        rank=rank,
        joined_at=fields.get("joined_at", ""),
        points_total=parse_int(fields.get("points")),
        completed_assignments=split_completed(fields.get("completed")),
        account_status=translate_account_status(fields.get("status")),
        is_admin=is_admin_rank(rank),
        source_row_index=parse_int(row.get(ROW_INDEX_FIELD)),
    )


def normalize_assignment(row: Row) -> Assignment:
    """Build an Assignment from a decoded row. Total over any string map."""
    fields = _lookup(row, ASSIGNMENT_COLUMNS)
    status = translate_assignment_status(fields.get("status"))
    return Assignment(
        name=fields.get("name", ""),
        description=fields.get("description", ""),
        resource_link=fields.get("link", "#"),
        secret_solution=fields.get("solution", ""),
        reward_points=parse_int(fields.get("points")),
        max_completions=parse_int(fields.get("max_completions"), UNLIMITED_COMPLETIONS_SENTINEL),
        lifecycle_status=status,
        is_visible=status is AssignmentStatus.ACTIVE,
        created_at=fields.get("created_at", ""),
        source_row_index=parse_int(row.get(ROW_INDEX_FIELD)),
    )


def normalize_accounts(rows: list[dict[str, str]]) -> list[Account]:
    """Normalize every row, keeping the first row for each username.

    Usernames are unique case-insensitively; later duplicates are dropped.
    """
    accounts: list[Account] = []
    seen: set[str] = set()
    for account in map(normalize_account, rows):
        if account is None:
            continue
        if account.key in seen:
            logger.warning("duplicate_account_dropped", username=account.username, row=account.source_row_index)
            continue
        seen.add(account.key)
        accounts.append(account)
    return accounts


def normalize_assignments(rows: list[dict[str, str]]) -> list[Assignment]:
    return [normalize_assignment(row) for row in rows]
