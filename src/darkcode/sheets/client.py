"""Async client for the sheet CSV export endpoint."""

from __future__ import annotations

import time
from enum import Enum

import httpx
import structlog

from darkcode.config import Settings
from darkcode.errors import TableFetchError
from darkcode.sheets.decoder import decode_table

logger = structlog.get_logger()


class SheetTable(str, Enum):
    """Logical tables exposed by the sheet source."""

    ACCOUNTS = "accounts"
    ASSIGNMENTS = "assignments"
    AUDIT_LOG = "audit_log"


class SheetClient:
    """Fetches sheet tables as CSV text over HTTP.

    Every request carries a ``cache`` query parameter set to the current
    epoch milliseconds so intermediate caches never serve a stale export.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._sheet_ids: dict[SheetTable, str] = {
            SheetTable.ACCOUNTS: settings.accounts_sheet_id,
            SheetTable.ASSIGNMENTS: settings.assignments_sheet_id,
            SheetTable.AUDIT_LOG: settings.audit_sheet_id,
        }
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=settings.http_timeout_seconds,
            follow_redirects=True,
        )

    async def __aenter__(self) -> SheetClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def url_for(self, table: SheetTable) -> str:
        return self.settings.table_url(self._sheet_ids[table])

    async def fetch_text(self, table: SheetTable) -> str:
        """Fetch the raw CSV text of a table.

        Raises:
            TableFetchError: On transport failure or a non-2xx response.
        """
        params = {"cache": str(int(time.time() * 1000))}
        try:
            response = await self._client.get(self.url_for(table), params=params)
        except httpx.HTTPError as e:
            logger.warning("table_fetch_failed", table=table.value, error=str(e))
            raise TableFetchError(table.value, str(e)) from e

        if not response.is_success:
            logger.warning("table_fetch_failed", table=table.value, status=response.status_code)
            raise TableFetchError(table.value, f"HTTP {response.status_code}")

        return response.text

    async def fetch_rows(self, table: SheetTable) -> list[dict[str, str]]:
        """Fetch and decode a table into header-keyed rows."""
        text = await self.fetch_text(table)
        rows = decode_table(text)
        logger.debug("table_fetched", table=table.value, rows=len(rows))
        return rows
