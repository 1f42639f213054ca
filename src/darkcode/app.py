"""DarkCode sync core application.

Composes the sheet client, reconciliation engine, session trust machine
and audit trail around one explicit AppState. The state is created with
the application and torn down by close().

  sheet CSV --> decoder --> normalizer --> engine --> AppState --> consumers
                                                         ^
                               session trust machine ----+ (reads accounts)
"""

from __future__ import annotations

import asyncio
import signal
import time
from collections.abc import Callable
from enum import Enum

import httpx
import structlog

from darkcode.actions.audit import Actor, AuditLogger, AuditLogReader, DeviceInfoProvider
from darkcode.actions.client import ActionClient
from darkcode.actions.submission import SubmissionService
from darkcode.auth.session import LoginResult, ScanResult, SessionTrustMachine
from darkcode.auth.trust_cache import JsonFileStore, LocalStore, TrustCache
from darkcode.config import Settings, get_settings
from darkcode.domain.schemas import Account, Assignment
from darkcode.errors import ConnectivityError
from darkcode.log_setup import setup_logging
from darkcode.sheets.client import SheetClient
from darkcode.sync.engine import ProgressSink, ReconciliationEngine
from darkcode.sync.state import AppState

logger = structlog.get_logger()


class BootOutcome(str, Enum):
    READY = "ready"
    CONNECTIVITY_ERROR = "connectivity_error"
    DEADLINE_FORCED = "deadline_forced"


class DarkCodeApp:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        sheet_transport: httpx.AsyncBaseTransport | None = None,
        action_transport: httpx.AsyncBaseTransport | None = None,
        store: LocalStore | None = None,
        device_provider: DeviceInfoProvider | None = None,
        clock: Callable[[], float] = time.time,
        is_visible: Callable[[], bool] | None = None,
        auto_countdown: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.state = AppState()
        self.is_visible = is_visible or (lambda: True)

        self.sheets = SheetClient(self.settings, transport=sheet_transport)
        self.actions = ActionClient(self.settings, transport=action_transport)
        self.audit = AuditLogger(self.actions, device_provider)
        self.audit_reader = AuditLogReader(self.sheets)
        self.engine = ReconciliationEngine(self.state, self.sheets)
        self.trust_cache = TrustCache(
            store or JsonFileStore(self.settings.trust_store_path),
            key=self.settings.trust_store_key,
            window_days=self.settings.trust_window_days,
            clock=clock,
        )
        self.session = SessionTrustMachine(
            lambda: self.state.accounts,
            self.trust_cache,
            self.audit,
            lockout_threshold=self.settings.lockout_threshold,
            lockout_seconds=self.settings.lockout_seconds,
            login_delay=self.settings.login_delay_seconds,
            auto_countdown=auto_countdown,
        )
        self.submissions = SubmissionService(self.engine, self.actions, self.audit)

        self._load_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None

    async def __aenter__(self) -> DarkCodeApp:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------

    async def boot(self, progress: ProgressSink | None = None) -> BootOutcome:
        """Run the initial load under the boot deadline.

        When the deadline passes first, the caller proceeds regardless and
        the load keeps running in the background; if no accounts have
        arrived by then the connectivity error is raised on the state.
        """
        await self._cancel(self._load_task)
        self.state.connectivity_error = False
        self._load_task = asyncio.create_task(self.engine.initial_load(progress))

        done, _ = await asyncio.wait({self._load_task}, timeout=self.settings.boot_deadline_seconds)
        if not done:
            if not self.state.accounts:
                self.state.connectivity_error = True
            logger.warning(
                "boot_deadline_exceeded",
                seconds=self.settings.boot_deadline_seconds,
                accounts=len(self.state.accounts),
            )
            return BootOutcome.DEADLINE_FORCED

        try:
            report = self._load_task.result()
        except Exception:
            logger.exception("boot_failed")
            self.state.connectivity_error = True
            return BootOutcome.CONNECTIVITY_ERROR

        if report.connectivity_error:
            logger.error("boot_connectivity_error")
            return BootOutcome.CONNECTIVITY_ERROR

        logger.info("boot_ready", accounts=report.accounts, assignments=report.assignments)
        return BootOutcome.READY

    async def retry_boot(self, progress: ProgressSink | None = None) -> BootOutcome:
        """User-triggered retry from the connectivity-error state."""
        logger.info("boot_retry")
        return await self.boot(progress)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    @property
    def current_account(self) -> Account | None:
        return self.state.session_account

    async def login(self, username: str, code: str) -> LoginResult:
        result = await self.session.login(username, code)
        if result.ok:
            self.state.session_account = result.account
        return result

    async def scan_login(self, data: str) -> ScanResult:
        result = await self.session.scan_login(data)
        if result.login is not None and result.login.ok:
            self.state.session_account = result.login.account
        return result

    async def logout(self) -> None:
        await self.session.logout()
        self.state.session_account = None

    # ------------------------------------------------------------------
    # Admin edits
    # ------------------------------------------------------------------

    def _require_online(self) -> None:
        if self.state.connectivity_error:
            msg = "No canonical accounts loaded; retry boot first"
            raise ConnectivityError(msg)

    def _require_admin(self) -> Account:
        account = self.state.session_account
        if account is None or not account.is_admin:
            msg = "Administrative rank required"
            raise PermissionError(msg)
        return account

    async def update_account(self, account: Account) -> dict:
        self._require_online()
        admin = self._require_admin()
        response = await self.actions.update_account(account)
        await self.audit.record(Actor.from_account(admin), "ADMIN_UPDATE", f"User: {account.username}")
        await self.engine.refresh_cycle()
        return response

    async def update_assignment(self, assignment: Assignment) -> dict:
        self._require_online()
        admin = self._require_admin()
        response = await self.actions.update_assignment(assignment)
        await self.audit.record(Actor.from_account(admin), "ADMIN_UPDATE", f"Task: {assignment.name}")
        await self.engine.refresh_cycle()
        return response

    # ------------------------------------------------------------------
    # Polling & teardown
    # ------------------------------------------------------------------

    async def run_polling(self) -> None:
        await self.engine.run(self.settings.poll_interval_seconds, self.is_visible)

    def start_polling(self) -> asyncio.Task:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self.run_polling())
        return self._poll_task

    def stop(self) -> None:
        self.engine.stop()

    @staticmethod
    async def _cancel(task: asyncio.Task | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        self.stop()
        await self._cancel(self._poll_task)
        await self._cancel(self._load_task)
        await self.session.close()
        await self.sheets.aclose()
        await self.actions.aclose()
        self.state.teardown()
        logger.info("app_closed")


async def main() -> None:
    """Entry point: boot, then poll until SIGINT/SIGTERM."""
    settings = get_settings()
    setup_logging(settings)

    async with DarkCodeApp(settings) as app:
        stopping = asyncio.Event()

        def _shutdown() -> None:
            stopping.set()
            app.stop()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _shutdown)

        outcome = await app.boot(lambda stage: logger.info("boot_stage", stage=stage.value))
        while outcome is BootOutcome.CONNECTIVITY_ERROR and not stopping.is_set():
            await asyncio.sleep(settings.poll_interval_seconds)
            outcome = await app.retry_boot()

        if not stopping.is_set():
            await app.run_polling()


if __name__ == "__main__":
    asyncio.run(main())
