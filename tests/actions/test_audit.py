"""Tests for composing, sending and reading audit lines."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from darkcode.actions.audit import (
    Actor,
    AuditLogger,
    AuditLogReader,
    DeviceInfo,
    Severity,
    classify,
    compose_log_line,
    filter_entries,
    parse_log_line,
    to_entry,
)
from darkcode.domain.schemas import Account
from darkcode.sheets.client import SheetTable
from tests.conftest import FakeSheetSource

DEVICE = DeviceInfo(platform="Linux", cores="8", timezone="UTC", language="ar", user_agent="darkcode-sync/0.1.0")


class StaticDevice:
    async def collect(self) -> DeviceInfo:
        return DEVICE


class TestComposeAndParse:
    def test_line_layout(self):
        actor = Actor.from_account(Account(username="agent07", access_code="1", display_name="Falcon"))
        line = compose_log_line(actor, "LOGIN_SUCCESS", "Manual Login", DEVICE)

        assert line.startswith("[ACTOR]: agent07 | Falcon (N/A) || [ACTION]: LOGIN_SUCCESS || [DETAILS]: Manual Login")
        assert "[DEVICE]: OS: Linux | CPU: 8 Cores" in line
        assert "[ATTEMPTED_CREDS]" not in line

    def test_fields_recovered(self):
        line = compose_log_line(Actor(), "LOGIN_FAIL", "Invalid Credentials (Attempt 1/3)", DEVICE, ("bob", "99"))
        record = parse_log_line(line)

        assert record.actor == "GUEST | N/A (N/A)"
        assert record.action == "LOGIN_FAIL"
        assert record.details == "Invalid Credentials (Attempt 1/3)"
        assert record.attempted_creds == 'User="bob" | Pass="99"'
        assert record.location == "Geo Not Supported | TZ: UTC"
        assert record.agent == "darkcode-sync/0.1.0"
        assert record.extra == []

    def test_newlines_in_details_do_not_break_segments(self):
        line = compose_log_line(Actor(), "ADMIN_UPDATE", "first\nsecond", DEVICE)
        assert "\n" not in line
        assert parse_log_line(line).details == "first second"

    def test_legacy_user_label_and_free_text(self):
        record = parse_log_line("[USER]: old | X (Y) || [ACTION]: LOGOUT || something else || [WHO]: ?")
        assert record.actor == "old | X (Y)"
        assert record.action == "LOGOUT"
        assert record.extra == ["something else", "[WHO]: ?"]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("[ACTION]: LOGIN_FAIL", Severity.ALERT),
        ("BANNED USER ATTEMPT", Severity.ALERT),
        ("[ACTION]: SOLVED_TASK", Severity.SUCCESS),
        ("[ACTION]: ADMIN_UPDATE", Severity.ADMIN),
        ("[ACTION]: LOGIN_SUCCESS", Severity.INFO),
        ("[ACTION]: LOGOUT", Severity.NEUTRAL),
    ],
)
def test_classify(text, expected):
    assert classify(text) is expected


class TestEntries:
    def test_content_column_aliases(self):
        entry = to_entry({"Timestamp": "2024-01-01", "LOGS": "[ACTION]: LOGOUT"})
        assert entry.timestamp == "2024-01-01"
        assert entry.record.action == "LOGOUT"

    def test_content_falls_back_to_long_value(self):
        entry = to_entry({"a": "short", "b": "[ACTION]: SOLVED_TASK || [DETAILS]: x"})
        assert entry.severity is Severity.SUCCESS
        assert entry.timestamp == "UNKNOWN"

    def test_filter_matches_any_column(self):
        entries = [
            to_entry({"Timestamp": "2024-01-01", "logData": "[ACTOR]: agent07"}),
            to_entry({"Timestamp": "2024-02-02", "logData": "[ACTOR]: rogue"}),
        ]
        assert [e.timestamp for e in filter_entries(entries, "AGENT")] == ["2024-01-01"]
        assert [e.timestamp for e in filter_entries(entries, "2024-02")] == ["2024-02-02"]
        assert len(filter_entries(entries, "")) == 2


@pytest.mark.asyncio
class TestAuditIO:
    async def test_record_sends_line(self):
        actions = AsyncMock()
        audit = AuditLogger(actions, StaticDevice())

        assert await audit.record(Actor(), "LOGOUT", "User Session Ended") is True
        sent = actions.log_action.await_args.args[0]
        assert "[ACTION]: LOGOUT" in sent

    async def test_record_never_raises(self):
        actions = AsyncMock()
        actions.log_action.side_effect = RuntimeError("endpoint down")
        audit = AuditLogger(actions, StaticDevice())

        assert await audit.record(Actor(), "LOGOUT") is False

    async def test_reader_returns_newest_first(self):
        source = FakeSheetSource()
        source.set(SheetTable.AUDIT_LOG, "Timestamp,logData\nt1,[ACTION]: LOGIN_SUCCESS\nt2,[ACTION]: LOGOUT\n")

        entries = await AuditLogReader(source).load()

        assert [e.timestamp for e in entries] == ["t2", "t1"]
        assert source.calls == [SheetTable.AUDIT_LOG]
