"""Error taxonomy for the sync core.

Nothing here is fatal to the process: fetch errors are recovered by the
reconciliation engine, connectivity errors surface as a retryable boot
state, and payload errors are reported back to the caller.
"""

from __future__ import annotations


class DarkCodeError(Exception):
    """Base class for all sync-core errors."""


class TableFetchError(DarkCodeError):
    """A table could not be fetched (network error or non-2xx response)."""

    def __init__(self, table: str, reason: str) -> None:
        self.table = table
        self.reason = reason
        super().__init__(f"Failed to fetch table {table}: {reason}")


class ConnectivityError(DarkCodeError):
    """Initial load produced no accounts or did not finish before the boot deadline."""


class ScanPayloadError(DarkCodeError, ValueError):
    """A secondary-login payload could not be parsed into an identifier."""
