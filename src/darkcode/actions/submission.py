"""Solution submission for assignments."""

from __future__ import annotations

from enum import Enum

import structlog

from darkcode.actions.audit import Actor, AuditLogger
from darkcode.actions.client import ActionClient
from darkcode.domain.progress import attempt_policy, solution_matches, winner_count
from darkcode.domain.schemas import Account, Assignment
from darkcode.sync.engine import ReconciliationEngine

logger = structlog.get_logger()


class SubmissionOutcome(str, Enum):
    SOLVED = "solved"
    SOLVED_UNRECORDED = "solved_unrecorded"
    REJECTED = "rejected"
    CLOSED = "closed"
    ALREADY_SOLVED = "already_solved"
    EMPTY = "empty"


class SubmissionService:
    """Checks an attempt and records the solve through the write endpoint.

    A recorded solve triggers an immediate refresh so the new completion
    and points reach the canonical accounts without waiting for the next
    poll. The refresh is a no-op if one is already in flight.
    """

    def __init__(self, engine: ReconciliationEngine, actions: ActionClient, audit: AuditLogger | None = None) -> None:
        self.engine = engine
        self.actions = actions
        self.audit = audit

    async def submit(self, account: Account, assignment: Assignment, attempt: str) -> SubmissionOutcome:
        if not attempt.strip():
            return SubmissionOutcome.EMPTY

        winners = winner_count(assignment.name, self.engine.state.accounts)
        policy = attempt_policy(assignment, account, winners)
        if policy.closed:
            return SubmissionOutcome.CLOSED
        if policy.already_solved:
            return SubmissionOutcome.ALREADY_SOLVED

        if not solution_matches(attempt, assignment.secret_solution):
            logger.info("solution_rejected", username=account.username, assignment=assignment.name)
            return SubmissionOutcome.REJECTED

        if not policy.records_progress:
            logger.info("solution_accepted_unrecorded", username=account.username, assignment=assignment.name)
            return SubmissionOutcome.SOLVED_UNRECORDED

        await self.actions.solve_task(account.username, assignment.name, assignment.reward_points)
        if self.audit is not None:
            await self.audit.record(
                Actor.from_account(account),
                "SOLVED_TASK",
                f"Task: {assignment.name}, Points: {assignment.reward_points}",
            )
        logger.info(
            "solution_recorded",
            username=account.username,
            assignment=assignment.name,
            points=assignment.reward_points,
        )
        await self.engine.refresh_cycle()
        return SubmissionOutcome.SOLVED
