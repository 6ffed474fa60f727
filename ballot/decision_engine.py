"""
Decision Engine
Turns a canonical proposal into exactly one on-chain vote.

Per proposal: Unseen -> Evaluating -> Decided -> Executing -> Executed,
with ExecutionFailed retryable only by calling evaluate / record_manual_vote
again (re-delivered event or operator request). The engine never retries
on its own.

Two in-memory records back the idempotency guarantees:
  - decisions:  proposal_id -> VoteDecision (cached recommendation)
  - executions: proposal_id -> ExecutionStatus (authoritative "already voted")
Both are bounded; the oldest entry is evicted past the cap.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Literal, TypeVar

from pydantic import BaseModel

from ballot.chain import VotingProtocol, validate_proposal_status
from ballot.errors import (
    AlreadyVotedError,
    BallotError,
    InferenceError,
    is_already_voted,
)
from ballot.inference import AIDecision, InferenceClient
from ballot.proposal import Proposal, VoteOption

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 1000


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class ExecutionResult(BaseModel):
    action: Literal["succeeded", "failed"]
    transaction_hash: str | None = None
    timestamp: str
    error: str | None = None
    already_voted: bool = False


class VoteDecision(BaseModel):
    proposal_id: str
    reasons: list[str]
    timestamp: str
    selected_option: VoteOption | None = None
    execution_result: ExecutionResult | None = None


class ExecutionStatus(BaseModel):
    proposal_id: str
    executed: bool
    success: bool
    execution_tx_hash: str | None = None
    execution_error: str | None = None
    attempted_at: str | None = None
    executed_at: str | None = None
    already_voted: bool = False

    @property
    def last_activity(self) -> str:
        return self.executed_at or self.attempted_at or ""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


T = TypeVar("T")


class BoundedHistory(Generic[T]):
    """Insertion-ordered map that evicts its oldest entry past *limit*.

    "Oldest" is decided by *age_key*, not by insertion order, so a record
    that gets overwritten keeps its real age.
    """

    def __init__(self, limit: int, age_key: Callable[[T], str]):
        self.limit = limit
        self._age_key = age_key
        self._items: dict[str, T] = {}

    def get(self, key: str) -> T | None:
        return self._items.get(key)

    def set(self, key: str, value: T) -> None:
        self._items[key] = value
        while len(self._items) > self.limit:
            oldest = min(self._items, key=lambda k: self._age_key(self._items[k]))
            del self._items[oldest]

    def values(self) -> list[T]:
        return list(self._items.values())

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DecisionEngine:
    """
    AI evaluation plus vote execution, idempotent per proposal id.

    All state is touched only from the event loop thread, so plain dicts are
    enough. Concurrent evaluate() calls for the same id share one evaluation.
    """

    def __init__(
        self,
        protocol: VotingProtocol,
        inference: InferenceClient,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ):
        self.protocol = protocol
        self.inference = inference
        self._decisions: BoundedHistory[VoteDecision] = BoundedHistory(
            history_limit, lambda d: d.timestamp
        )
        self._executions: BoundedHistory[ExecutionStatus] = BoundedHistory(
            history_limit, lambda e: e.last_activity
        )
        self._in_flight: dict[str, asyncio.Task] = {}

    # -- evaluation --------------------------------------------------------

    async def evaluate(self, proposal_id: str | int, proposal: Proposal) -> VoteDecision:
        """Evaluate and vote once. Repeat calls return the cached decision."""
        pid = str(proposal_id)

        running = self._in_flight.get(pid)
        if running is not None:
            logger.info("Evaluation for proposal %s already in progress; joining it", pid)
            return await asyncio.shield(running)

        existing = self._decisions.get(pid)
        if existing is not None:
            if self.is_executed(pid):
                logger.info("Returning existing decision for proposal %s (executed)", pid)
                return existing
            if existing.selected_option is not None:
                if self._execution_failed(pid):
                    # Keep the recommendation, only retry the submission
                    logger.info("Retrying failed vote execution for proposal %s", pid)
                    return await self._single_flight(pid, self.execute(existing, proposal))
                logger.info("Returning existing decision for proposal %s", pid)
                return existing

        return await self._single_flight(pid, self._evaluate(pid, proposal))

    async def _single_flight(self, proposal_id: str, work) -> VoteDecision:
        task = asyncio.ensure_future(work)
        self._in_flight[proposal_id] = task
        task.add_done_callback(lambda done: self._clear_in_flight(proposal_id, done))
        return await asyncio.shield(task)

    def _clear_in_flight(self, proposal_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(proposal_id) is task:
            del self._in_flight[proposal_id]

    async def _wait_in_flight(self, proposal_id: str) -> None:
        """Block until no evaluation or execution is running for the id."""
        running = self._in_flight.get(proposal_id)
        while running is not None:
            logger.info("Waiting for in-flight work on proposal %s", proposal_id)
            await asyncio.wait({running})
            running = self._in_flight.get(proposal_id)

    def _execution_failed(self, proposal_id: str) -> bool:
        status = self._executions.get(proposal_id)
        return status is not None and not status.executed

    async def _evaluate(self, proposal_id: str, proposal: Proposal) -> VoteDecision:
        logger.info("AI evaluating proposal %s: %r", proposal_id, proposal.title)
        try:
            ai_decision = await self.inference.recommend(proposal)
        except InferenceError as exc:
            logger.error("AI evaluation failed for proposal %s: %s", proposal_id, exc)
            return self._save(proposal_id, [f"AI evaluation error: {exc}"])

        if self.is_executed(proposal_id):
            logger.info("Proposal %s was voted while the model answered; keeping that vote", proposal_id)
            existing = self._decisions.get(proposal_id)
            if existing is not None:
                return existing
            return self._already_executed(proposal_id)

        decision = self._save(proposal_id, ai_decision.reasons, ai_decision.selected_option)
        return await self.execute(decision, proposal)

    async def ask_ai(self, proposal: Proposal) -> AIDecision:
        """Recommendation only: nothing is recorded and no vote is cast."""
        return await self.inference.recommend(proposal)

    # -- execution ---------------------------------------------------------

    async def execute(self, decision: VoteDecision, proposal: Proposal | None = None) -> VoteDecision:
        """Cast the decided vote. Failures are recorded, never raised."""
        if decision.selected_option is None:
            return decision

        pid = decision.proposal_id
        if self.is_executed(pid):
            logger.info("Proposal %s already executed; not voting again", pid)
            return decision

        logger.info("Executing autonomous vote for proposal %s", pid)
        try:
            result = await self._vote_on_proposal(pid, decision.selected_option, proposal)
        except (BallotError, TimeoutError, ValueError) as exc:
            logger.error("Failed to execute vote for proposal %s: %s", pid, exc)
            self.record_execution_failure(pid, str(exc))
            decision.reasons.append(f"Voting failed: {exc}")
            return decision

        decision.execution_result = result
        if result.already_voted:
            decision.reasons.append(f"Vote already recorded on-chain: {decision.selected_option.value}")
        else:
            decision.reasons.append(f"Autonomous vote submitted: {decision.selected_option.value}")
        self._decisions.set(pid, decision)
        return decision

    async def _vote_on_proposal(
        self,
        proposal_id: str,
        selected: VoteOption,
        proposal: Proposal | None,
    ) -> ExecutionResult:
        details = proposal
        if details is None or not details.is_ready:
            details = await self.protocol.fetch_proposal(proposal_id)

        validate_proposal_status(details)

        voter = await self.protocol.voting_account_id()
        try:
            if await self.protocol.has_already_voted(proposal_id, voter):
                raise AlreadyVotedError(f"Already voted on proposal {proposal_id}")
            receipt = await self.protocol.cast_vote(proposal_id, details, selected, voter=voter)
        except AlreadyVotedError:
            logger.info("Account %s already voted on proposal %s", voter, proposal_id)
            return self._record_success(proposal_id, None, already_voted=True)
        except (BallotError, TimeoutError) as exc:
            if not is_already_voted(exc):
                raise
            return self._record_success(proposal_id, None, already_voted=True)

        return self._record_success(
            proposal_id, receipt.transaction_hash, already_voted=receipt.already_voted
        )

    def _record_success(
        self,
        proposal_id: str,
        tx_hash: str | None,
        already_voted: bool,
    ) -> ExecutionResult:
        timestamp = _now()
        self._executions.set(proposal_id, ExecutionStatus(
            proposal_id=proposal_id,
            executed=True,
            success=True,
            execution_tx_hash=tx_hash,
            attempted_at=timestamp,
            executed_at=timestamp,
            already_voted=already_voted,
        ))
        return ExecutionResult(
            action="succeeded",
            transaction_hash=tx_hash,
            timestamp=timestamp,
            already_voted=already_voted,
        )

    def record_execution_failure(self, proposal_id: str, error_message: str) -> None:
        self._executions.set(proposal_id, ExecutionStatus(
            proposal_id=proposal_id,
            executed=False,
            success=False,
            execution_error=error_message,
            attempted_at=_now(),
        ))

    # -- manual override ---------------------------------------------------

    async def record_manual_vote(
        self,
        proposal_id: str | int,
        selected: VoteOption,
        reason: str | None = None,
        proposal: Proposal | None = None,
    ) -> VoteDecision:
        """Skip the model, record the operator's choice and run execution.

        Waits for any evaluation already running for the id, then runs under
        the same single-flight guard. A proposal that already has a vote on
        record keeps its decision; nothing new is saved or submitted.
        """
        pid = str(proposal_id)
        await self._wait_in_flight(pid)
        return await self._single_flight(pid, self._manual_vote(pid, selected, reason, proposal))

    async def _manual_vote(
        self,
        proposal_id: str,
        selected: VoteOption,
        reason: str | None,
        proposal: Proposal | None,
    ) -> VoteDecision:
        if self.is_executed(proposal_id):
            logger.info("Proposal %s already executed; manual vote ignored", proposal_id)
            existing = self._decisions.get(proposal_id)
            if existing is not None:
                return existing
            return self._already_executed(proposal_id)

        decision = self._save(proposal_id, [reason or f"Manual vote recorded: {selected.value}"], selected)
        return await self.execute(decision, proposal)

    def _already_executed(self, proposal_id: str) -> VoteDecision:
        """Unsaved placeholder for an executed proposal whose decision is gone."""
        return VoteDecision(
            proposal_id=proposal_id,
            reasons=["Vote already executed for this proposal; no new vote submitted"],
            timestamp=_now(),
        )

    # -- records -----------------------------------------------------------

    def _save(
        self,
        proposal_id: str,
        reasons: list[str],
        selected: VoteOption | None = None,
    ) -> VoteDecision:
        decision = VoteDecision(
            proposal_id=proposal_id,
            reasons=reasons,
            timestamp=_now(),
            selected_option=selected,
        )
        self._decisions.set(proposal_id, decision)

        if selected is None:
            logger.info("Proposal %s: NO DECISION (%s)", proposal_id, " | ".join(reasons))
        else:
            logger.info("Proposal %s: VOTE %s (%s)", proposal_id, selected.value, " | ".join(reasons))
        return decision

    def get_decision(self, proposal_id: str | int) -> VoteDecision | None:
        return self._decisions.get(str(proposal_id))

    def get_execution_status(self, proposal_id: str | int) -> ExecutionStatus | None:
        return self._executions.get(str(proposal_id))

    def is_executed(self, proposal_id: str | int) -> bool:
        status = self._executions.get(str(proposal_id))
        return status is not None and status.executed

    def get_history(self) -> list[VoteDecision]:
        return self._decisions.values()

    def get_vote_stats(self) -> dict[str, Any]:
        history = self.get_history()
        breakdown = {
            option.value.lower(): sum(1 for d in history if d.selected_option == option)
            for option in VoteOption
        }
        return {
            "total": len(history),
            "breakdown": breakdown,
            "last_decision": history[-1].timestamp if history else None,
        }

    def get_execution_stats(self) -> dict[str, Any]:
        executions = self._executions.values()
        return {
            "total": len(executions),
            "successful": sum(1 for e in executions if e.executed and e.success),
            "failed": sum(1 for e in executions if not e.success),
            "pending": sum(1 for e in executions if not e.executed),
            "last_execution": executions[-1].last_activity if executions else None,
        }

    def get_recent_executions(self, limit: int = 10) -> list[ExecutionStatus]:
        executions = sorted(self._executions.values(), key=lambda e: e.last_activity, reverse=True)
        return executions[:limit]

    def clear_history(self) -> None:
        self._decisions.clear()
        self._executions.clear()
        logger.info("Decision and execution history cleared")
