"""
Ballot Agent Gateway
HTTP surface over the proposal voting pipeline.

Read endpoints expose decisions, execution records, queue and event-stream
state. Mutating endpoints (manual vote, history clear) require an operator
bearer key. The event monitor runs as a background task for the lifetime
of the app.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ballot.config import configure_logging, load_config
from ballot.context import AgentContext, build_context
from ballot.errors import (
    BallotError,
    InferenceError,
    ProposalNotFoundError,
    QueueFullError,
)
from ballot.identity import authenticate_operator
from ballot.proposal import Proposal, VoteOption

logger = logging.getLogger("ballot.gateway")

MANUAL_VOTE_CHOICES = {0: VoteOption.FOR, 1: VoteOption.AGAINST, 2: VoteOption.ABSTAIN}

# ---------------------------------------------------------------------------
# App + shared services
# ---------------------------------------------------------------------------

config = load_config()
configure_logging(config.log_level)
context = build_context(config)
STARTED_AT = time.monotonic()


def get_context() -> AgentContext:
    return context


@asynccontextmanager
async def lifespan(_app: FastAPI):
    context.monitor.start()
    try:
        yield
    finally:
        await context.aclose()


app = FastAPI(
    title="Ballot Agent",
    version="1.0.0",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ProposalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proposal_id: str = Field(alias="proposalId")


class ManualVoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proposal_id: str = Field(alias="proposalId")
    vote: int  # 0=For, 1=Against, 2=Abstain
    reason: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_operator(authorization: str, ctx: AgentContext) -> str:
    """Extract Bearer token and resolve it to an operator key fingerprint.

    Raises HTTPException on auth failure.
    """
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token.")

    token = authorization[len("Bearer "):]
    try:
        return authenticate_operator(token, ctx.config.operator_key_fingerprints)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc))


async def _load_proposal(ctx: AgentContext, proposal_id: str) -> Proposal:
    """Canonical proposal from chain; maps failures to HTTP errors."""
    try:
        return await ctx.protocol.fetch_proposal(proposal_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ProposalNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except BallotError as exc:
        raise HTTPException(
            status_code=502,
            detail=f"Failed to load proposal {proposal_id} from chain: {exc}",
        )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/")
@app.get("/health")
def health(ctx: AgentContext = Depends(get_context)):
    vote_stats = ctx.engine.get_vote_stats()
    exec_stats = ctx.engine.get_execution_stats()
    return {
        "status": "operational",
        "service": "ballot-agent",
        "timestamp": _now(),
        "uptime": int(time.monotonic() - STARTED_AT),
        "event_stream": "connected" if ctx.monitor.status()["connected"] else "disconnected",
        "inference_configured": ctx.inference.configured,
        "voter": vote_stats,
        "execution": {
            "total": exec_stats["total"],
            "successful": exec_stats["successful"],
            "failed": exec_stats["failed"],
        },
    }


# ---------------------------------------------------------------------------
# Evaluation + voting
# ---------------------------------------------------------------------------

@app.post("/api/evaluate")
async def evaluate_only(request: ProposalRequest, ctx: AgentContext = Depends(get_context)):
    """
    AI recommendation for a proposal, without voting or recording anything.
    """
    proposal = await _load_proposal(ctx, request.proposal_id)
    try:
        recommendation = await ctx.engine.ask_ai(proposal)
    except InferenceError as exc:
        return JSONResponse(
            status_code=500,
            content={"error": "Evaluation failed", "details": str(exc)},
        )

    return {
        "proposal_id": request.proposal_id,
        "recommendation": recommendation.selected_option.value,
        "reasons": recommendation.reasons,
        "timestamp": _now(),
        "verified_from_chain": True,
        "proposal_title": proposal.title,
        "proposal_status": proposal.status,
        "vote_cast": False,
    }


@app.post("/api/vote")
async def vote(request: ProposalRequest, ctx: AgentContext = Depends(get_context)):
    """
    Evaluate a proposal and cast the vote.

    Flow:
      1. Load the canonical proposal from chain (request body carries only the id).
      2. Run the Decision Engine (idempotent: cached decisions come back as-is).
      3. Return the decision and execution outcome.
    """
    proposal = await _load_proposal(ctx, request.proposal_id)
    decision = await ctx.engine.evaluate(request.proposal_id, proposal)

    result = decision.execution_result
    return {
        "proposal_id": decision.proposal_id,
        "selected_option": decision.selected_option,
        "reasons": decision.reasons,
        "executed": result is not None,
        "transaction_hash": result.transaction_hash if result else None,
        "timestamp": decision.timestamp,
    }


@app.post("/api/manual-vote")
async def manual_vote(
    request: ManualVoteRequest,
    authorization: str = Header(...),
    ctx: AgentContext = Depends(get_context),
):
    """
    Operator override: vote 0=For, 1=Against, 2=Abstain without consulting AI.
    """
    operator = _require_operator(authorization, ctx)

    choice = MANUAL_VOTE_CHOICES.get(request.vote)
    if choice is None:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid vote. Use 0=For, 1=Against, 2=Abstain"},
        )

    proposal = await _load_proposal(ctx, request.proposal_id)
    logger.info("Manual vote %s on proposal %s by %s", choice.value, request.proposal_id, operator[:19])
    decision = await ctx.engine.record_manual_vote(
        request.proposal_id,
        choice,
        request.reason or f"Manual vote: {choice.value}",
        proposal,
    )

    if decision.selected_option != choice:
        recorded = decision.selected_option.value if decision.selected_option else None
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "proposal_id": request.proposal_id,
                "vote": recorded,
                "method": "manual-vote",
                "error": "Proposal already voted; manual vote not submitted",
            },
        )

    status = ctx.engine.get_execution_status(request.proposal_id)
    succeeded = status is not None and status.success
    return JSONResponse(
        status_code=200 if succeeded else 502,
        content={
            "success": succeeded,
            "proposal_id": request.proposal_id,
            "vote": choice.value,
            "method": "manual-vote",
            "transaction_hash": (
                decision.execution_result.transaction_hash
                if decision.execution_result else None
            ),
            "error": status.execution_error if status else None,
        },
    )


# ---------------------------------------------------------------------------
# Decision / execution records
# ---------------------------------------------------------------------------

@app.get("/api/vote/status/{proposal_id}")
def vote_status(proposal_id: str, ctx: AgentContext = Depends(get_context)):
    decision = ctx.engine.get_decision(proposal_id)
    execution = ctx.engine.get_execution_status(proposal_id)

    if decision is None:
        return {
            "proposal_id": proposal_id,
            "evaluated": False,
            "message": "Proposal not yet evaluated",
        }

    return {
        "proposal_id": proposal_id,
        "evaluated": True,
        "selected_option": decision.selected_option,
        "reasons": decision.reasons,
        "timestamp": decision.timestamp,
        "executed": bool(execution and execution.executed),
        "execution_status": execution.model_dump() if execution else None,
    }


@app.get("/api/vote/status")
def pipeline_status(ctx: AgentContext = Depends(get_context)):
    vote_stats = ctx.engine.get_vote_stats()
    exec_stats = ctx.engine.get_execution_stats()
    return {
        "configured": bool(ctx.config.voting_contract_id and ctx.inference.configured),
        "agent_account": ctx.config.agent_account_id,
        "voting_contract": ctx.config.voting_contract_id,
        "submission_mode": ctx.config.submission_mode,
        "voting": {
            "total_evaluated": vote_stats["total"],
            "decisions": vote_stats["breakdown"],
            "last_evaluated": vote_stats["last_decision"],
        },
        "execution": exec_stats,
    }


@app.get("/api/vote/results")
def vote_results(ctx: AgentContext = Depends(get_context)):
    history = ctx.engine.get_history()
    return {
        "results": [
            {
                "proposal_id": d.proposal_id,
                "selected_option": d.selected_option,
                "reasons": d.reasons,
                "executed": ctx.engine.is_executed(d.proposal_id),
                "timestamp": d.timestamp,
            }
            for d in history
        ],
        "total": len(history),
    }


@app.get("/api/vote/stats")
def vote_stats(ctx: AgentContext = Depends(get_context)):
    stats = ctx.engine.get_vote_stats()
    exec_stats = ctx.engine.get_execution_stats()
    monitor = ctx.monitor.status()
    return {
        "voting": {
            "total_votes": stats["total"],
            "decisions": stats["breakdown"],
            "last_activity": stats["last_decision"],
        },
        "execution": {
            **exec_stats,
            "recent_executions": [e.model_dump() for e in ctx.engine.get_recent_executions(5)],
        },
        "monitoring": {
            "event_stream_connected": monitor["connected"],
            "is_connecting": monitor["is_connecting"],
            "reconnect_attempts": monitor["reconnect_attempts"],
        },
    }


@app.get("/api/vote/history")
def vote_history(ctx: AgentContext = Depends(get_context)):
    stats = ctx.engine.get_execution_stats()
    return {
        "executions": [e.model_dump() for e in ctx.engine.get_recent_executions(10)],
        "stats": {
            "total": stats["total"],
            "successful": stats["successful"],
            "failed": stats["failed"],
        },
        "timestamp": _now(),
    }


@app.delete("/api/vote/history")
def clear_history(
    authorization: str = Header(...),
    ctx: AgentContext = Depends(get_context),
):
    _require_operator(authorization, ctx)
    ctx.engine.clear_history()
    return {"message": "History cleared", "timestamp": _now()}


# ---------------------------------------------------------------------------
# Signer / queue
# ---------------------------------------------------------------------------

@app.get("/api/queue-status")
def queue_status(ctx: AgentContext = Depends(get_context)):
    status = ctx.signer.status()
    return {
        "queue": {"is_processing": status.is_processing, "queue_length": status.queue_length},
        "timestamp": _now(),
        "message": "Queue is processing requests" if status.is_processing else "Queue is idle",
    }


@app.get("/api/agent-status")
async def agent_status(ctx: AgentContext = Depends(get_context)):
    """
    Signer identity, registration on the agent contract, and balance.
    Every signer call goes through the queue, one after another.
    """
    connection_error: str | None = None
    agent_info: Any = None
    registered = False
    balance: Any = None

    try:
        account_id = await ctx.signer.account_id()
    except (BallotError, TimeoutError) as exc:
        logger.warning("Could not get signer account: %s", exc)
        connection_error = str(exc)
        account_id = "unknown"

    agent_contract = ctx.config.proxy_contract_id
    if agent_contract and account_id != "unknown":
        try:
            agent_info = await ctx.signer.view(
                agent_contract, "get_agent", {"account_id": account_id}
            )
            if isinstance(agent_info, dict) and agent_info.get("error"):
                connection_error = str(agent_info["error"])
            else:
                registered = agent_info is not None
        except (BallotError, TimeoutError) as exc:
            agent_info = {"error": str(exc)}
            connection_error = str(exc)

    try:
        balance = await ctx.signer.balance()
    except QueueFullError:
        raise HTTPException(status_code=503, detail="Signer queue is full.")
    except (BallotError, TimeoutError) as exc:
        logger.warning("Could not fetch signer balance: %s", exc)
        connection_error = str(exc)

    status = ctx.signer.status()
    return {
        "agent_contract": {
            "contract_id": agent_contract,
            "agent_account_id": account_id,
            "agent_registered": registered,
            "agent_info": agent_info,
            "balance": balance,
            "voting_contract": ctx.config.voting_contract_id,
            "connection_error": connection_error,
        },
        "queue_status": {"is_processing": status.is_processing, "queue_length": status.queue_length},
    }


# ---------------------------------------------------------------------------
# Event stream debug
# ---------------------------------------------------------------------------

@app.get("/debug/websocket-status")
def websocket_status(ctx: AgentContext = Depends(get_context)):
    return ctx.monitor.status()


@app.get("/debug/websocket-activity")
def websocket_activity(ctx: AgentContext = Depends(get_context)):
    return ctx.monitor.activity()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port)
