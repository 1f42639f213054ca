"""Fire-and-forget client for the sheet write endpoint.

Every request is a POST with a JSON body ``{"action": <kind>, ...}``. The
endpoint's response is not reliable, so callers get a best-effort dict
and errors are logged rather than raised.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
import structlog

from darkcode.config import Settings
from darkcode.domain.schemas import Account, Assignment

logger = structlog.get_logger()


class ActionKind(str, Enum):
    LOG_ACTION = "LOG_ACTION"
    SOLVE_TASK = "SOLVE_TASK"
    UPDATE_USER = "UPDATE_USER"
    UPDATE_TASK = "UPDATE_TASK"


_FAILED: dict[str, Any] = {"success": False}


def account_to_wire(account: Account) -> dict[str, Any]:
    """Record shape the write endpoint expects for UPDATE_USER."""
    return {
        "timestamp": account.joined_at,
        "name": account.real_name,
        "codeName": account.display_name,
        "username": account.username,
        "code": account.access_code,
        "points": account.points_total,
        "rank": account.rank,
        "completedTasks": sorted(account.completed_assignments),
        "status": account.account_status.value,
        "isAdmin": account.is_admin,
    }


def assignment_to_wire(assignment: Assignment) -> dict[str, Any]:
    """Record shape the write endpoint expects for UPDATE_TASK."""
    return {
        "timestamp": assignment.created_at,
        "taskName": assignment.name,
        "description": assignment.description,
        "link": assignment.resource_link,
        "solution": assignment.secret_solution,
        "status": assignment.lifecycle_status.value,
        "isVisible": assignment.is_visible,
        "points": assignment.reward_points,
        "maxWinners": assignment.max_completions,
    }


class ActionClient:
    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.url = settings.action_endpoint_url
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=settings.http_timeout_seconds,
            follow_redirects=True,
        )

    async def __aenter__(self) -> ActionClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(self, kind: ActionKind, payload: dict[str, Any]) -> dict[str, Any]:
        """POST one action. Returns the parsed body, or ``{"success": False}``."""
        body = {"action": kind.value, **payload}
        try:
            response = await self._client.post(self.url, json=body)
        except httpx.HTTPError as e:
            logger.warning("action_send_failed", action=kind.value, error=str(e))
            return dict(_FAILED)

        try:
            data = response.json()
        except ValueError:
            logger.debug("action_response_unreadable", action=kind.value, status=response.status_code)
            return {"success": response.is_success}

        if not isinstance(data, dict):
            return {"success": response.is_success}
        return data

    async def log_action(self, log_line: str) -> dict[str, Any]:
        return await self.send(
            ActionKind.LOG_ACTION,
            {"logData": log_line, "timestamp": datetime.now(timezone.utc).isoformat()},
        )

    async def solve_task(self, username: str, assignment_name: str, points: int) -> dict[str, Any]:
        return await self.send(
            ActionKind.SOLVE_TASK,
            {"username": username, "taskName": assignment_name, "points": points},
        )

    async def update_account(self, account: Account) -> dict[str, Any]:
        return await self.send(ActionKind.UPDATE_USER, {"data": account_to_wire(account)})

    async def update_assignment(self, assignment: Assignment) -> dict[str, Any]:
        return await self.send(ActionKind.UPDATE_TASK, {"data": assignment_to_wire(assignment)})
