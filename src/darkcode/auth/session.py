"""Session trust state machine.

Login states:   idle -> authenticating -> authenticated | rejected
Lockout states: open -> locked(remaining) -> open

Lockout and attempt counters live in memory only; a restart resets them.
The trust cache is persisted and lets the scan path skip code entry for
accounts that logged in on this device within the trust window.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import structlog

from darkcode.actions.audit import Actor, AuditLogger
from darkcode.auth.scan import parse_scan_payload
from darkcode.auth.trust_cache import TrustCache
from darkcode.domain.schemas import Account

logger = structlog.get_logger()


class SessionState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


class LockoutState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"


class LoginReason(str, Enum):
    OK = "ok"
    INVALID_CREDENTIALS = "invalid_credentials"
    BANNED = "banned"
    LOCKED = "locked"


@dataclass(frozen=True)
class LoginResult:
    reason: LoginReason
    account: Account | None = None
    attempts: int = 0
    lockout_remaining: int = 0

    @property
    def ok(self) -> bool:
        return self.reason is LoginReason.OK


class ScanDecision(str, Enum):
    LOGGED_IN = "logged_in"
    REJECTED = "rejected"
    NEEDS_CODE = "needs_code"


@dataclass(frozen=True)
class ScanResult:
    decision: ScanDecision
    username: str
    login: LoginResult | None = None


def find_account(accounts: Sequence[Account], username: str, code: str) -> Account | None:
    """Case-insensitive username, exact access code."""
    needle = username.lower()
    for account in accounts:
        if account.key == needle and account.access_code == code:
            return account
    return None


class SessionTrustMachine:
    """Evaluates credentials against the canonical accounts."""

    def __init__(
        self,
        accounts: Callable[[], Sequence[Account]],
        trust_cache: TrustCache,
        audit: AuditLogger | None = None,
        *,
        lockout_threshold: int = 3,
        lockout_seconds: int = 30,
        login_delay: float = 0.8,
        auto_countdown: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._accounts = accounts
        self.trust_cache = trust_cache
        self.audit = audit
        self.lockout_threshold = lockout_threshold
        self.lockout_seconds = lockout_seconds
        self.login_delay = login_delay
        self.auto_countdown = auto_countdown
        self._sleep = sleep

        self.state = SessionState.IDLE
        self.lockout = LockoutState.OPEN
        self.attempts = 0
        self.lockout_remaining = 0
        self.account: Account | None = None
        self._countdown_task: asyncio.Task[None] | None = None

    @property
    def is_locked(self) -> bool:
        return self.lockout is LockoutState.LOCKED

    # ------------------------------------------------------------------
    # Manual login
    # ------------------------------------------------------------------

    async def login(self, username: str, code: str) -> LoginResult:
        """Check credentials and transition the session.

        While locked nothing is evaluated. Banned accounts are rejected
        with their own reason and do not count as a failed attempt.
        """
        if self.is_locked:
            return LoginResult(LoginReason.LOCKED, attempts=self.attempts, lockout_remaining=self.lockout_remaining)

        clean_user = username.strip()
        clean_code = code.strip()
        self.state = SessionState.AUTHENTICATING

        account = find_account(self._accounts(), clean_user, clean_code)
        if account is None:
            return await self._fail(clean_user, clean_code)

        if account.is_banned:
            self.state = SessionState.REJECTED
            logger.info("login_rejected_banned", username=account.username)
            await self._audit(
                Actor.from_account(account), "LOGIN_FAIL", "BANNED USER ATTEMPT", (clean_user, clean_code)
            )
            return LoginResult(LoginReason.BANNED, account=account, attempts=self.attempts)

        await self._audit(Actor.from_account(account), "LOGIN_SUCCESS", "Manual Login")
        self.trust_cache.record(account.username)
        self.attempts = 0
        await self._sleep(self.login_delay)

        self.account = account
        self.state = SessionState.AUTHENTICATED
        logger.info("login_succeeded", username=account.username, status=account.account_status.value)
        return LoginResult(LoginReason.OK, account=account)

    async def _fail(self, username: str, code: str) -> LoginResult:
        self.attempts += 1
        self.state = SessionState.REJECTED
        actor = Actor(username=username)
        logger.info("login_failed", username=username, attempt=self.attempts)
        await self._audit(
            actor,
            "LOGIN_FAIL",
            f"Invalid Credentials (Attempt {self.attempts}/{self.lockout_threshold})",
            (username, code),
        )

        if self.attempts >= self.lockout_threshold:
            self._start_lockout()
            await self._audit(actor, "SYSTEM_LOCKOUT", f"{self.attempts} Failed Attempts", (username, code))

        return LoginResult(
            LoginReason.INVALID_CREDENTIALS,
            attempts=self.attempts,
            lockout_remaining=self.lockout_remaining,
        )

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def _start_lockout(self) -> None:
        self.lockout = LockoutState.LOCKED
        self.lockout_remaining = self.lockout_seconds
        logger.warning("lockout_started", seconds=self.lockout_seconds, attempts=self.attempts)
        if self.auto_countdown:
            self._countdown_task = asyncio.get_running_loop().create_task(self._countdown())

    async def _countdown(self) -> None:
        while self.is_locked:
            await self._sleep(1)
            self.tick()

    def tick(self) -> int:
        """Advance the lockout countdown by one second.

        Reaching zero reopens the session and resets the attempt counter.
        """
        if not self.is_locked:
            return 0
        self.lockout_remaining = max(0, self.lockout_remaining - 1)
        if self.lockout_remaining == 0:
            self.lockout = LockoutState.OPEN
            self.attempts = 0
            self.state = SessionState.IDLE
            logger.info("lockout_ended")
        return self.lockout_remaining

    # ------------------------------------------------------------------
    # Scan login
    # ------------------------------------------------------------------

    async def scan_login(self, data: str) -> ScanResult:
        """Log in from a scanned badge.

        A payload carrying a code is checked like a manual login. A bare
        identifier uses the trust cache: inside the window the account's
        own stored code is checked on its behalf, otherwise the caller
        falls back to manual entry with the identifier pre-filled.

        Raises:
            ScanPayloadError: If the payload is unparseable.
        """
        payload = parse_scan_payload(data)

        if payload.code is not None:
            result = await self.login(payload.username, payload.code)
            return ScanResult(self._decision(result), payload.username, result)

        known = next((a for a in self._accounts() if a.key == payload.username.lower()), None)
        if known is None or not self.trust_cache.is_trusted(payload.username):
            logger.info("scan_needs_code", username=payload.username, known=known is not None)
            return ScanResult(ScanDecision.NEEDS_CODE, payload.username)

        result = await self.login(known.username, known.access_code)
        return ScanResult(self._decision(result), payload.username, result)

    @staticmethod
    def _decision(result: LoginResult) -> ScanDecision:
        return ScanDecision.LOGGED_IN if result.ok else ScanDecision.REJECTED

    # ------------------------------------------------------------------
    # Session end
    # ------------------------------------------------------------------

    async def logout(self) -> None:
        if self.account is not None:
            await self._audit(Actor.from_account(self.account), "LOGOUT", "User Session Ended")
            logger.info("logout", username=self.account.username)
        self.account = None
        self.state = SessionState.IDLE

    async def close(self) -> None:
        if self._countdown_task is not None and not self._countdown_task.done():
            self._countdown_task.cancel()
            try:
                await self._countdown_task
            except asyncio.CancelledError:
                pass
        self._countdown_task = None

    async def _audit(
        self,
        actor: Actor,
        action: str,
        details: str = "",
        attempted: tuple[str, str] | None = None,
    ) -> None:
        if self.audit is not None:
            await self.audit.record(actor, action, details, attempted)
