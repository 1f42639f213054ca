"""Parse secondary-login (QR scan) payloads.

Accepted, in priority order:
  {"username": ..., "code": ...} legacy JSON badge
  USER:PIN                       split on the first colon
  USER PIN                       legacy space-separated badge
  USER                           bare identifier, trust fast path only
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from darkcode.errors import ScanPayloadError


@dataclass(frozen=True)
class ScanPayload:
    username: str
    code: str | None = None

    @property
    def is_bare(self) -> bool:
        return self.code is None


def parse_scan_payload(data: str) -> ScanPayload:
    """Parse raw scanner text.

    Raises:
        ScanPayloadError: If no identifier can be extracted.
    """
    text = data.strip()
    if not text:
        msg = "Empty scan payload"
        raise ScanPayloadError(msg)

    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            msg = "Malformed JSON scan payload"
            raise ScanPayloadError(msg) from e
        return _build(str(parsed.get("username") or "").strip(), str(parsed.get("code") or "").strip())

    if ":" in text:
        user, _, code = text.partition(":")
        return _build(user.strip(), code.strip())

    if " " in text:
        parts = text.split()
        return _build(parts[0], parts[1] if len(parts) > 1 else "")

    return ScanPayload(username=text)


def _build(user: str, code: str) -> ScanPayload:
    if not user:
        msg = "Scan payload has no identifier (expected USER:PIN)"
        raise ScanPayloadError(msg)
    if not code:
        msg = "Scan payload has an empty code (expected USER:PIN)"
        raise ScanPayloadError(msg)
    return ScanPayload(username=user, code=code)
