"""Shared test fixtures."""

from __future__ import annotations

import pytest

from darkcode.auth.trust_cache import MemoryStore, TrustCache
from darkcode.config import Settings, get_settings
from darkcode.errors import TableFetchError
from darkcode.sheets.client import SheetTable
from darkcode.sheets.decoder import decode_table

ACCOUNTS_HEADER = "Timestamp,Name,CodeName,Username,code,points,Rank,حالة الحساب,المهام المنجزه"
ASSIGNMENTS_HEADER = "Timestamp,اسم المهمه,وصف المهمه,رابط مهمه,حل المهمه,هل المهمه تعمل,points,كم فوز"


def account_line(
    username: str,
    code: str = "1111",
    points: int = 0,
    rank: str = "متدرب",
    status: str = "شغال",
    completed: str = "",
    code_name: str = "",
) -> str:
    return f'2024-01-01,Real {username},{code_name or username.upper()},{username},{code},{points},{rank},{status},"{completed}"'


def assignment_line(
    name: str,
    solution: str = "flag",
    status: str = "تعمل",
    points: int = 10,
    max_winners: str = "",
) -> str:
    return f"2024-01-01,{name},desc of {name},https://example.com/{name},{solution},{status},{points},{max_winners}"


def csv_text(header: str, lines: list[str]) -> str:
    return "\n".join([header, *lines]) + "\n"


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: float = 1_760_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSheetSource:
    """In-memory stand-in for SheetClient.fetch_rows.

    Each table holds CSV text or an exception to raise. ``calls`` records
    the fetch order.
    """

    def __init__(self) -> None:
        self.tables: dict[SheetTable, str | Exception] = {}
        self.calls: list[SheetTable] = []

    def set(self, table: SheetTable, value: str | Exception) -> None:
        self.tables[table] = value

    async def fetch_rows(self, table: SheetTable) -> list[dict[str, str]]:
        self.calls.append(table)
        value = self.tables.get(table, "")
        if isinstance(value, Exception):
            raise value
        return decode_table(value)


@pytest.fixture
def settings(tmp_path) -> Settings:
    get_settings.cache_clear()
    return Settings(
        trust_store_path=str(tmp_path / "store.json"),
        login_delay_seconds=0,
        boot_deadline_seconds=1.0,
        poll_interval_seconds=0.01,
        accounts_sheet_id="acc",
        assignments_sheet_id="tasks",
        audit_sheet_id="logs",
        sheet_base_url="https://sheets.test/d",
        action_endpoint_url="https://actions.test/exec",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def trust_cache(clock: FakeClock) -> TrustCache:
    return TrustCache(MemoryStore(), window_days=14, clock=clock)


@pytest.fixture
def source() -> FakeSheetSource:
    return FakeSheetSource()


@pytest.fixture
def fetch_error() -> TableFetchError:
    return TableFetchError("accounts", "HTTP 503")
