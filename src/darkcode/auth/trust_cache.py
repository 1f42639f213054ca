"""Device-local trust cache for the scan login fast path.

One key in the local store holds a JSON object mapping lowercased
usernames to the epoch-millisecond timestamp of their last successful
login on this device. Entries are never evicted; validity is checked at
read time against the trust window.
"""

from __future__ import annotations

import json
import math
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()

MS_PER_DAY = 86_400_000


class LocalStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class JsonFileStore:
    """Key/value store persisted as a single JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read_all(self) -> dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            logger.warning("local_store_unreadable", path=str(self.path))
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> str | None:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)


class MemoryStore:
    """In-process store, for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class TrustCache:
    def __init__(
        self,
        store: LocalStore,
        key: str = "darkcode_trust",
        window_days: int = 14,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.key = key
        self.window_ms = window_days * MS_PER_DAY
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def entries(self) -> dict[str, int]:
        raw = self.store.get(self.key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("trust_cache_corrupt", key=self.key)
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            str(k): int(v) for k, v in data.items() if isinstance(v, (int, float)) and math.isfinite(v)
        }

    def record(self, username: str) -> None:
        """Remember a successful login for this username now."""
        entries = self.entries()
        entries[username.strip().lower()] = self._now_ms()
        self.store.set(self.key, json.dumps(entries, ensure_ascii=False))

    def last_seen(self, username: str) -> int | None:
        return self.entries().get(username.strip().lower())

    def is_trusted(self, username: str) -> bool:
        """True when the last login is strictly within the trust window."""
        stamp = self.last_seen(username)
        if stamp is None:
            return False
        return self._now_ms() - stamp < self.window_ms
