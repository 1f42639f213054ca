"""Reconciliation engine: keeps canonical collections fresh by polling.

Lifecycle per collection:
  empty -> loading -> populated   (initial load, always replaces)
  populated -> refreshing -> populated | populated-unchanged

Refresh rules:
- An empty fetch never overwrites a non-empty collection; it is treated
  as a transient provider failure.
- A fetch that is structurally equal to the current collection is not
  applied, so consumers are only notified of real changes.
- Accounts are fetched and applied before assignments, and the session
  identity is re-bound from the fresh accounts in between.
- At most one fetch cycle runs at a time. An initial load waits for an
  in-flight refresh; a refresh requested while a load or another refresh
  is in flight is dropped, not queued.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from darkcode.domain.normalizer import normalize_accounts, normalize_assignments
from darkcode.domain.schemas import Account, Assignment
from darkcode.errors import TableFetchError
from darkcode.sheets.client import SheetTable
from darkcode.sync.signals import (
    ChangeEvent,
    ChangeKind,
    accounts_changed,
    assignments_changed,
    detect_new_assignment,
    detect_new_leader,
)
from darkcode.sync.state import AppState, LoadPhase

logger = logging.getLogger(__name__)


class RowSource(Protocol):
    async def fetch_rows(self, table: SheetTable) -> list[dict[str, str]]: ...


class BootStage(str, Enum):
    """Boot narration milestones, emitted in this order."""

    FETCHING_ACCOUNTS = "DECRYPTING PERSONNEL DATA..."
    FETCHING_ASSIGNMENTS = "DOWNLOADING MISSION PARAMETERS..."
    READY = "SYSTEM ONLINE."


ProgressSink = Callable[[BootStage], object]
Subscriber = Callable[[ChangeEvent], Awaitable[None] | None]


@dataclass
class LoadReport:
    accounts: int
    assignments: int
    connectivity_error: bool


@dataclass
class RefreshReport:
    accounts_applied: bool = False
    assignments_applied: bool = False
    accounts_rejected_empty: bool = False
    assignments_rejected_empty: bool = False
    events: list[ChangeEvent] = field(default_factory=list)


class ReconciliationEngine:
    """Owns writes to the canonical collections in an AppState."""

    def __init__(self, state: AppState, source: RowSource) -> None:
        self.state = state
        self.source = source
        self._subscribers: list[Subscriber] = []
        self._fetch_lock = asyncio.Lock()
        self._running = False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def _emit(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Change subscriber failed for %s", event.kind.value)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _fetch_accounts(self) -> list[Account]:
        try:
            rows = await self.source.fetch_rows(SheetTable.ACCOUNTS)
        except TableFetchError as e:
            logger.warning("Accounts fetch failed: %s", e.reason)
            return []
        return normalize_accounts(rows)

    async def _fetch_assignments(self) -> list[Assignment]:
        try:
            rows = await self.source.fetch_rows(SheetTable.ASSIGNMENTS)
        except TableFetchError as e:
            logger.warning("Assignments fetch failed: %s", e.reason)
            return []
        return normalize_assignments(rows)

    # ------------------------------------------------------------------
    # Initial load
    # ------------------------------------------------------------------

    async def initial_load(self, progress: ProgressSink | None = None) -> LoadReport:
        """Fetch both tables and replace the collections unconditionally.

        There is no prior state to protect on first load, so empty results
        are applied as-is. Empty accounts flag a connectivity error for the
        caller to surface.
        """
        notify = progress or (lambda _stage: None)
        async with self._fetch_lock:
            return await self._load(notify)

    async def _load(self, notify: ProgressSink) -> LoadReport:
        notify(BootStage.FETCHING_ACCOUNTS)
        self.state.accounts_phase = LoadPhase.LOADING
        accounts = await self._fetch_accounts()
        self.state.accounts = tuple(accounts)
        self.state.accounts_phase = LoadPhase.POPULATED

        notify(BootStage.FETCHING_ASSIGNMENTS)
        self.state.assignments_phase = LoadPhase.LOADING
        assignments = await self._fetch_assignments()
        self.state.assignments = tuple(assignments)
        self.state.assignments_phase = LoadPhase.POPULATED

        self.state.connectivity_error = not accounts
        if self.state.connectivity_error:
            logger.error("Initial load returned no accounts")

        notify(BootStage.READY)
        logger.info(
            "Initial load complete: accounts=%d assignments=%d",
            len(accounts),
            len(assignments),
        )
        return LoadReport(
            accounts=len(accounts),
            assignments=len(assignments),
            connectivity_error=self.state.connectivity_error,
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    @property
    def is_refreshing(self) -> bool:
        """True while an initial load or a refresh cycle holds the fetch guard."""
        return self._fetch_lock.locked()

    async def refresh_cycle(self) -> RefreshReport | None:
        """Run one refresh cycle. Returns None while a load or refresh is in flight.

        Never raises: every failure is logged and the last-known-good
        collections stay in place.
        """
        if self._fetch_lock.locked():
            logger.debug("Fetch cycle already in flight, skipping refresh")
            return None

        # An uncontended acquire does not suspend, so the guard is taken
        # before the first fetch and released after the last one.
        async with self._fetch_lock:
            return await self._refresh()

    async def _refresh(self) -> RefreshReport:
        report = RefreshReport()
        try:
            await self._refresh_accounts(report)
            await self._rebind_session(report)
            await self._refresh_assignments(report)
        except Exception:
            logger.exception("Refresh cycle failed")
        finally:
            if self.state.accounts_phase is LoadPhase.REFRESHING:
                self.state.accounts_phase = LoadPhase.POPULATED
            if self.state.assignments_phase is LoadPhase.REFRESHING:
                self.state.assignments_phase = LoadPhase.POPULATED
        return report

    async def _refresh_accounts(self, report: RefreshReport) -> None:
        self.state.accounts_phase = LoadPhase.REFRESHING
        fresh = await self._fetch_accounts()
        previous = self.state.accounts

        if not fresh and previous:
            report.accounts_rejected_empty = True
            logger.warning("Accounts refresh returned no rows, keeping %d cached", len(previous))
        elif accounts_changed(previous, fresh):
            self.state.accounts = tuple(fresh)
            report.accounts_applied = True
            await self._publish(report, ChangeEvent(ChangeKind.ACCOUNTS_CHANGED, {"count": len(fresh)}))

            leader = detect_new_leader(previous, fresh)
            if leader is not None:
                await self._publish(report, ChangeEvent(ChangeKind.NEW_LEADER, {"username": leader}))

        if self.state.accounts and self.state.connectivity_error:
            self.state.connectivity_error = False
            logger.info("Accounts available again, connectivity error cleared")

        self.state.accounts_phase = LoadPhase.POPULATED

    async def _rebind_session(self, report: RefreshReport) -> None:
        current = self.state.session_account
        if current is None:
            return
        updated = self.state.find_account(current.username)
        if updated is None or updated == current:
            return
        self.state.session_account = updated
        await self._publish(report, ChangeEvent(ChangeKind.SESSION_REBOUND, {"username": updated.username}))

    async def _refresh_assignments(self, report: RefreshReport) -> None:
        self.state.assignments_phase = LoadPhase.REFRESHING
        fresh = await self._fetch_assignments()
        previous = self.state.assignments

        if not fresh and previous:
            report.assignments_rejected_empty = True
            logger.warning("Assignments refresh returned no rows, keeping %d cached", len(previous))
        elif assignments_changed(previous, fresh):
            self.state.assignments = tuple(fresh)
            report.assignments_applied = True
            await self._publish(report, ChangeEvent(ChangeKind.ASSIGNMENTS_CHANGED, {"count": len(fresh)}))

            if detect_new_assignment(previous, fresh):
                await self._publish(report, ChangeEvent(ChangeKind.NEW_ASSIGNMENT, {}))

        self.state.assignments_phase = LoadPhase.POPULATED

    async def _publish(self, report: RefreshReport, event: ChangeEvent) -> None:
        report.events.append(event)
        await self._emit(event)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def run(self, interval: float, is_visible: Callable[[], bool] | None = None) -> None:
        """Poll until stop() is called.

        A cycle is only started while ``is_visible`` reports the consumer
        in the foreground; a cycle already started always runs to the end.
        """
        visible = is_visible or (lambda: True)
        self._running = True
        logger.info("Polling started (interval=%.1fs)", interval)

        while self._running:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            if not self._running:
                break
            if not visible():
                logger.debug("Consumer not visible, skipping refresh")
                continue
            await self.refresh_cycle()

        logger.info("Polling stopped")

    def stop(self) -> None:
        self._running = False
