"""Tests for the reconciliation engine."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from darkcode.errors import TableFetchError
from darkcode.sheets.client import SheetTable
from darkcode.sync.engine import BootStage, ReconciliationEngine
from darkcode.sync.signals import ChangeKind
from darkcode.sync.state import AppState, LoadPhase
from tests.conftest import (
    ACCOUNTS_HEADER,
    ASSIGNMENTS_HEADER,
    FakeSheetSource,
    account_line,
    assignment_line,
    csv_text,
)

pytestmark = pytest.mark.asyncio


def _accounts(*lines: str) -> str:
    return csv_text(ACCOUNTS_HEADER, list(lines))


def _assignments(*lines: str) -> str:
    return csv_text(ASSIGNMENTS_HEADER, list(lines))


class HeldSource(FakeSheetSource):
    """Holds every fetch until ``release`` is set and tracks how many overlap."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.active = 0
        self.max_active = 0

    async def fetch_rows(self, table: SheetTable) -> list[dict[str, str]]:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.release.wait()
            return await super().fetch_rows(table)
        finally:
            self.active -= 1


@pytest.fixture
def seeded(source: FakeSheetSource) -> FakeSheetSource:
    source.set(SheetTable.ACCOUNTS, _accounts(account_line("alpha", points=10), account_line("bravo", points=5)))
    source.set(SheetTable.ASSIGNMENTS, _assignments(assignment_line("op1")))
    return source


@pytest_asyncio.fixture
async def loaded(seeded: FakeSheetSource) -> ReconciliationEngine:
    engine = ReconciliationEngine(AppState(), seeded)
    await engine.initial_load()
    seeded.calls.clear()
    return engine


class TestInitialLoad:
    async def test_populates_and_narrates_in_order(self, seeded):
        state = AppState()
        engine = ReconciliationEngine(state, seeded)
        stages: list[BootStage] = []

        report = await engine.initial_load(stages.append)

        assert stages == [BootStage.FETCHING_ACCOUNTS, BootStage.FETCHING_ASSIGNMENTS, BootStage.READY]
        assert report.accounts == 2
        assert report.assignments == 1
        assert report.connectivity_error is False
        assert [a.username for a in state.accounts] == ["alpha", "bravo"]
        assert state.accounts_phase is LoadPhase.POPULATED
        assert state.assignments_phase is LoadPhase.POPULATED
        assert seeded.calls == [SheetTable.ACCOUNTS, SheetTable.ASSIGNMENTS]

    async def test_empty_accounts_flag_connectivity_error(self, source):
        source.set(SheetTable.ASSIGNMENTS, _assignments(assignment_line("op1")))
        state = AppState()

        report = await ReconciliationEngine(state, source).initial_load()

        assert report.connectivity_error is True
        assert state.connectivity_error is True
        assert state.accounts == ()
        assert len(state.assignments) == 1

    async def test_fetch_failure_is_connectivity_error(self, source):
        source.set(SheetTable.ACCOUNTS, TableFetchError("accounts", "HTTP 500"))
        report = await ReconciliationEngine(AppState(), source).initial_load()
        assert report.connectivity_error is True


class TestRefreshCycle:
    async def test_duplicate_username_rows_are_not_a_change(self, loaded, seeded):
        seeded.set(
            SheetTable.ACCOUNTS,
            _accounts(account_line("alpha", points=10), account_line("bravo", points=5), account_line("ALPHA", points=99)),
        )

        report = await loaded.refresh_cycle()

        assert report is not None
        assert report.accounts_applied is False
        assert loaded.state.find_account("alpha").points_total == 10

    async def test_refreshed_accounts_clear_connectivity_error(self, source):
        engine = ReconciliationEngine(AppState(), source)
        await engine.initial_load()
        assert engine.state.connectivity_error is True

        source.set(SheetTable.ACCOUNTS, _accounts(account_line("agent07")))
        report = await engine.refresh_cycle()

        assert report is not None
        assert report.accounts_applied is True
        assert engine.state.connectivity_error is False

    async def test_connectivity_error_kept_while_accounts_empty(self, source):
        engine = ReconciliationEngine(AppState(), source)
        await engine.initial_load()

        await engine.refresh_cycle()

        assert engine.state.connectivity_error is True

    async def test_empty_fetch_never_overwrites(self, loaded, seeded):
        seeded.set(SheetTable.ACCOUNTS, "")
        seeded.set(SheetTable.ASSIGNMENTS, "")

        report = await loaded.refresh_cycle()

        assert report is not None
        assert report.accounts_rejected_empty is True
        assert report.assignments_rejected_empty is True
        assert len(loaded.state.accounts) == 2
        assert len(loaded.state.assignments) == 1

    async def test_fetch_error_keeps_state(self, loaded, seeded):
        seeded.set(SheetTable.ACCOUNTS, TableFetchError("accounts", "timeout"))

        report = await loaded.refresh_cycle()

        assert report is not None
        assert len(loaded.state.accounts) == 2
        assert seeded.calls == [SheetTable.ACCOUNTS, SheetTable.ASSIGNMENTS]

    async def test_unchanged_content_does_not_apply(self, loaded, seeded):
        events = []
        loaded.subscribe(events.append)
        previous = loaded.state.accounts
        seeded.set(SheetTable.ACCOUNTS, _accounts(account_line("bravo", points=5), account_line("alpha", points=10)))

        report = await loaded.refresh_cycle()

        assert report is not None
        assert report.accounts_applied is False
        assert report.assignments_applied is False
        assert loaded.state.accounts is previous
        assert events == []

    async def test_changed_content_applies_and_notifies(self, loaded, seeded):
        events = []
        loaded.subscribe(events.append)
        seeded.set(SheetTable.ACCOUNTS, _accounts(account_line("alpha", points=10), account_line("bravo", points=50)))

        report = await loaded.refresh_cycle()

        assert report is not None
        assert report.accounts_applied is True
        kinds = [e.kind for e in events]
        assert kinds == [ChangeKind.ACCOUNTS_CHANGED, ChangeKind.NEW_LEADER]
        assert events[1].data == {"username": "bravo"}
        assert loaded.state.find_account("BRAVO").points_total == 50

    async def test_new_visible_assignment_signal(self, loaded, seeded):
        events = []
        loaded.subscribe(events.append)
        seeded.set(SheetTable.ASSIGNMENTS, _assignments(assignment_line("op1"), assignment_line("op2")))

        await loaded.refresh_cycle()

        assert [e.kind for e in events] == [ChangeKind.ASSIGNMENTS_CHANGED, ChangeKind.NEW_ASSIGNMENT]

    async def test_accounts_fetched_before_assignments(self, loaded, seeded):
        await loaded.refresh_cycle()
        assert seeded.calls == [SheetTable.ACCOUNTS, SheetTable.ASSIGNMENTS]

    async def test_overlapping_refresh_is_dropped(self, loaded, seeded):
        gate = asyncio.Event()
        original = seeded.fetch_rows

        async def slow_fetch(table):
            await gate.wait()
            return await original(table)

        seeded.fetch_rows = slow_fetch  # type: ignore[method-assign]

        first = asyncio.create_task(loaded.refresh_cycle())
        await asyncio.sleep(0)
        assert loaded.is_refreshing is True

        assert await loaded.refresh_cycle() is None

        gate.set()
        assert await first is not None
        assert loaded.is_refreshing is False
        assert seeded.calls == [SheetTable.ACCOUNTS, SheetTable.ASSIGNMENTS]

    async def test_guard_cleared_after_unexpected_error(self, loaded, seeded):
        seeded.set(SheetTable.ACCOUNTS, RuntimeError("boom"))

        report = await loaded.refresh_cycle()

        assert report is not None
        assert loaded.is_refreshing is False
        assert loaded.state.accounts_phase is LoadPhase.POPULATED
        assert len(loaded.state.accounts) == 2

        seeded.set(SheetTable.ACCOUNTS, _accounts(account_line("alpha", points=99)))
        report = await loaded.refresh_cycle()
        assert report is not None
        assert report.accounts_applied is True

    async def test_subscriber_failure_does_not_break_cycle(self, loaded, seeded):
        def broken(_event):
            raise ValueError("subscriber bug")

        received = []
        loaded.subscribe(broken)
        loaded.subscribe(received.append)
        seeded.set(SheetTable.ACCOUNTS, _accounts(account_line("alpha", points=11), account_line("bravo", points=5)))

        await loaded.refresh_cycle()

        assert [e.kind for e in received] == [ChangeKind.ACCOUNTS_CHANGED]

    async def test_async_subscriber_awaited(self, loaded, seeded):
        received = []

        async def listener(event):
            received.append(event.kind)

        loaded.subscribe(listener)
        seeded.set(SheetTable.ASSIGNMENTS, _assignments(assignment_line("op1", points=99)))

        await loaded.refresh_cycle()

        assert received == [ChangeKind.ASSIGNMENTS_CHANGED]


class TestSessionRebind:
    async def test_rebinds_on_content_change(self, loaded, seeded):
        loaded.state.session_account = loaded.state.find_account("alpha")
        events = []
        loaded.subscribe(events.append)
        seeded.set(SheetTable.ACCOUNTS, _accounts(account_line("alpha", points=70), account_line("bravo", points=5)))

        await loaded.refresh_cycle()

        assert loaded.state.session_account.points_total == 70
        assert ChangeKind.SESSION_REBOUND in [e.kind for e in events]

    async def test_no_rebind_when_unchanged(self, loaded):
        held = loaded.state.find_account("alpha")
        loaded.state.session_account = held
        events = []
        loaded.subscribe(events.append)

        await loaded.refresh_cycle()

        assert loaded.state.session_account is held
        assert events == []

    async def test_missing_account_keeps_session(self, loaded, seeded):
        held = loaded.state.find_account("alpha")
        loaded.state.session_account = held
        seeded.set(SheetTable.ACCOUNTS, _accounts(account_line("bravo", points=5)))

        await loaded.refresh_cycle()

        assert loaded.state.session_account is held


class TestPolling:
    async def test_hidden_consumer_skips_refresh(self, loaded, seeded):
        task = asyncio.create_task(loaded.run(0.001, is_visible=lambda: False))
        await asyncio.sleep(0.02)
        loaded.stop()
        await task
        assert seeded.calls == []

    async def test_visible_consumer_refreshes(self, loaded, seeded):
        task = asyncio.create_task(loaded.run(0.001))
        await asyncio.sleep(0.02)
        loaded.stop()
        await task
        assert seeded.calls[:2] == [SheetTable.ACCOUNTS, SheetTable.ASSIGNMENTS]


class TestFetchGuard:
    async def test_refresh_dropped_while_initial_load_in_flight(self):
        source = HeldSource()
        source.set(SheetTable.ACCOUNTS, TableFetchError("accounts", "HTTP 503"))
        engine = ReconciliationEngine(AppState(), source)

        load = asyncio.create_task(engine.initial_load())
        await asyncio.sleep(0)
        assert engine.is_refreshing is True

        source.set(SheetTable.ACCOUNTS, _accounts(account_line("agent07")))
        assert await engine.refresh_cycle() is None

        source.set(SheetTable.ACCOUNTS, TableFetchError("accounts", "HTTP 503"))
        source.release.set()
        report = await load

        assert report.connectivity_error is True
        assert source.max_active == 1
        assert source.calls == [SheetTable.ACCOUNTS, SheetTable.ASSIGNMENTS]
        assert engine.is_refreshing is False

    async def test_initial_load_waits_for_in_flight_refresh(self):
        source = HeldSource()
        source.set(SheetTable.ACCOUNTS, _accounts(account_line("agent07")))
        engine = ReconciliationEngine(AppState(), source)

        refresh = asyncio.create_task(engine.refresh_cycle())
        await asyncio.sleep(0)
        load = asyncio.create_task(engine.initial_load())
        await asyncio.sleep(0)
        assert source.active == 1
        assert engine.state.accounts_phase is not LoadPhase.LOADING

        source.release.set()
        await refresh
        report = await load

        assert source.max_active == 1
        assert source.calls == [SheetTable.ACCOUNTS, SheetTable.ASSIGNMENTS] * 2
        assert report.accounts == 1
        assert engine.is_refreshing is False
