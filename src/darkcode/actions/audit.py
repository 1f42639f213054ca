"""Audit trail: composing, sending and reading labelled log lines.

A log line is a fixed sequence of labelled segments joined by " || ":

  [ACTOR]: agent07 | Falcon (N/A) || [ACTION]: LOGIN_SUCCESS ||
  [DETAILS]: Manual Login || [LOC]: ... || [DEVICE]: ... ||
  [STATUS]: ... || [AGENT]: ...

Failed logins add an ``[ATTEMPTED_CREDS]`` segment right after DETAILS.
Splitting on the separator and matching each segment's ``[LABEL]:``
prefix recovers the structured fields; anything unlabelled is kept as
free text.
"""

from __future__ import annotations

import locale
import os
import platform
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from darkcode import __version__
from darkcode.actions.client import ActionClient
from darkcode.domain.schemas import Account
from darkcode.sheets.client import SheetClient, SheetTable

logger = structlog.get_logger()

LOG_SEPARATOR = " || "
NOT_AVAILABLE = "N/A"
GUEST = "GUEST"


class Segment(str, Enum):
    ACTOR = "ACTOR"
    ACTION = "ACTION"
    DETAILS = "DETAILS"
    ATTEMPTED_CREDS = "ATTEMPTED_CREDS"
    LOC = "LOC"
    DEVICE = "DEVICE"
    STATUS = "STATUS"
    AGENT = "AGENT"


# Older clients wrote the actor under [USER].
_LABEL_ALIASES: dict[str, Segment] = {"USER": Segment.ACTOR}


@dataclass(frozen=True)
class Actor:
    username: str = GUEST
    display_name: str = NOT_AVAILABLE
    real_name: str = NOT_AVAILABLE

    @classmethod
    def from_account(cls, account: Account) -> Actor:
        return cls(
            username=account.username,
            display_name=account.display_name or NOT_AVAILABLE,
            real_name=account.real_name or NOT_AVAILABLE,
        )

    def render(self) -> str:
        return f"{self.username} | {self.display_name} ({self.real_name})"


class DeviceInfo(BaseModel):
    """Best-effort device metadata. Every field degrades to a placeholder."""

    platform: str = "Unknown"
    cores: str = "Unknown"
    memory: str = "Unknown"
    screen: str = NOT_AVAILABLE
    language: str = "Unknown"
    timezone: str = "Unknown"
    network: str = "Unknown"
    battery: str = "Battery API N/A"
    location: str = "Geo Not Supported"
    user_agent: str = "Unknown"


class DeviceInfoProvider(Protocol):
    async def collect(self) -> DeviceInfo: ...


class HostDeviceInfoProvider:
    """Reports what the host interpreter can observe; never raises."""

    async def collect(self) -> DeviceInfo:
        try:
            language = locale.getlocale()[0] or "Unknown"
        except ValueError:
            language = "Unknown"
        return DeviceInfo(
            platform=platform.system() or "Unknown",
            cores=str(os.cpu_count() or "Unknown"),
            language=language,
            timezone=time.tzname[0] if time.tzname else "Unknown",
            user_agent=f"darkcode-sync/{__version__} ({platform.platform()})",
        )


def _one_line(text: str) -> str:
    # A newline would become a segment boundary once the line is split.
    return " ".join(text.splitlines())


def compose_log_line(
    actor: Actor,
    action: str,
    details: str,
    device: DeviceInfo,
    attempted: tuple[str, str] | None = None,
) -> str:
    segments = [
        f"[{Segment.ACTOR.value}]: {actor.render()}",
        f"[{Segment.ACTION.value}]: {action}",
        f"[{Segment.DETAILS.value}]: {_one_line(details)}",
    ]
    if attempted is not None:
        user, code = attempted
        segments.append(f'[{Segment.ATTEMPTED_CREDS.value}]: User="{user}" | Pass="{code}"')
    segments += [
        f"[{Segment.LOC.value}]: {device.location} | TZ: {device.timezone}",
        f"[{Segment.DEVICE.value}]: OS: {device.platform} | CPU: {device.cores} Cores"
        f" | RAM: {device.memory} | Res: {device.screen}",
        f"[{Segment.STATUS.value}]: Bat: {device.battery} | Net: {device.network} | Lang: {device.language}",
        f"[{Segment.AGENT.value}]: {device.user_agent}",
    ]
    return LOG_SEPARATOR.join(segments)


class LogRecord(BaseModel):
    actor: str = ""
    action: str = ""
    details: str = ""
    attempted_creds: str = ""
    location: str = ""
    device: str = ""
    status: str = ""
    agent: str = ""
    extra: list[str] = Field(default_factory=list)


_SEGMENT_FIELDS: dict[Segment, str] = {
    Segment.ACTOR: "actor",
    Segment.ACTION: "action",
    Segment.DETAILS: "details",
    Segment.ATTEMPTED_CREDS: "attempted_creds",
    Segment.LOC: "location",
    Segment.DEVICE: "device",
    Segment.STATUS: "status",
    Segment.AGENT: "agent",
}


def _match_label(part: str) -> tuple[Segment, str] | None:
    if not part.startswith("[") or "]:" not in part:
        return None
    label, _, rest = part[1:].partition("]:")
    segment = _LABEL_ALIASES.get(label)
    if segment is None:
        try:
            segment = Segment(label)
        except ValueError:
            return None
    return segment, rest.strip()


def parse_log_line(text: str) -> LogRecord:
    """Split a log line back into its labelled fields."""
    fields: dict[str, str] = {}
    extra: list[str] = []
    for part in (p.strip() for p in text.split("||")):
        if not part:
            continue
        matched = _match_label(part)
        if matched is None:
            extra.append(part)
            continue
        segment, value = matched
        fields[_SEGMENT_FIELDS[segment]] = value
    return LogRecord(**fields, extra=extra)


class AuditLogger:
    """Sends audit entries through the write endpoint. Never raises."""

    def __init__(self, actions: ActionClient, device_provider: DeviceInfoProvider | None = None) -> None:
        self.actions = actions
        self.device_provider = device_provider or HostDeviceInfoProvider()

    async def record(
        self,
        actor: Actor,
        action: str,
        details: str = "",
        attempted: tuple[str, str] | None = None,
    ) -> bool:
        try:
            device = await self.device_provider.collect()
            line = compose_log_line(actor, action, details, device, attempted)
            await self.actions.log_action(line)
        except Exception:
            logger.exception("audit_log_failed", action=action, actor=actor.username)
            return False
        logger.debug("audit_logged", action=action, actor=actor.username)
        return True


# ---------------------------------------------------------------------------
# Reading the audit-log table
# ---------------------------------------------------------------------------

_CONTENT_COLUMNS = ("logData", "LOGS", "Data")
_TIMESTAMP_COLUMNS = ("طابع زمني", "Timestamp")
_FALLBACK_CONTENT_MIN_LEN = 20


class Severity(str, Enum):
    ALERT = "alert"
    SUCCESS = "success"
    ADMIN = "admin"
    INFO = "info"
    NEUTRAL = "neutral"


def classify(text: str) -> Severity:
    if "LOGIN_FAIL" in text or "BANNED" in text:
        return Severity.ALERT
    if "SOLVED_TASK" in text:
        return Severity.SUCCESS
    if "ADMIN_UPDATE" in text:
        return Severity.ADMIN
    if "LOGIN_SUCCESS" in text:
        return Severity.INFO
    return Severity.NEUTRAL


def _log_content(row: Mapping[str, str]) -> str:
    for column in _CONTENT_COLUMNS:
        if row.get(column):
            return row[column]
    values = list(row.values())
    return next((v for v in values if len(v) > _FALLBACK_CONTENT_MIN_LEN), values[0] if values else "")


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    content: str
    record: LogRecord
    severity: Severity
    row: Mapping[str, str]


def to_entry(row: Mapping[str, str]) -> AuditEntry:
    content = _log_content(row)
    timestamp = next((row[c] for c in _TIMESTAMP_COLUMNS if row.get(c)), "UNKNOWN")
    return AuditEntry(
        timestamp=timestamp,
        content=content,
        record=parse_log_line(content),
        severity=classify(content),
        row=row,
    )


def filter_entries(entries: list[AuditEntry], needle: str) -> list[AuditEntry]:
    """Case-insensitive search across every column of the source row."""
    if not needle:
        return list(entries)
    lowered = needle.lower()
    return [e for e in entries if lowered in " ".join(e.row.values()).lower()]


class AuditLogReader:
    """Loads the audit-log table for the admin log viewer, newest first."""

    def __init__(self, source: SheetClient) -> None:
        self.source = source

    async def load(self) -> list[AuditEntry]:
        rows = await self.source.fetch_rows(SheetTable.AUDIT_LOG)
        return [to_entry(row) for row in reversed(rows)]
