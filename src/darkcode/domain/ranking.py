"""Deterministic leaderboard ranking.

Accounts are ranked by points DESC; ties keep sheet order (Python's sort
is stable). Administrative ranks and paused accounts never appear.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from darkcode.domain.schemas import Account


@dataclass(frozen=True)
class RankedAccount:
    rank: int
    account: Account


def is_ranked(account: Account) -> bool:
    """Whether an account competes on the leaderboard."""
    return not account.is_admin and not account.is_paused


def leaderboard(accounts: Iterable[Account]) -> list[RankedAccount]:
    """Rank competing accounts, 1-indexed."""
    competitors = sorted(
        (a for a in accounts if is_ranked(a)),
        key=lambda a: -a.points_total,
    )
    return [RankedAccount(rank=idx + 1, account=a) for idx, a in enumerate(competitors)]


def top_identity(accounts: Iterable[Account]) -> str | None:
    """Username holding rank 1, or None when nobody is ranked."""
    ranked = leaderboard(accounts)
    if not ranked:
        return None
    return ranked[0].account.username


def podium(accounts: Iterable[Account], size: int = 3) -> tuple[list[RankedAccount], list[RankedAccount]]:
    """Split the leaderboard into the top ``size`` entries and the rest."""
    ranked = leaderboard(accounts)
    return ranked[:size], ranked[size:]
