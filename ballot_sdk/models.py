"""
Ballot SDK: Data Models
"""

from __future__ import annotations

from pydantic import BaseModel


class EvaluationResult(BaseModel):
    """Result of a POST /api/evaluate call."""
    proposal_id: str
    recommendation: str         # For | Against | Abstain
    reasons: list[str] = []
    proposal_title: str | None = None
    proposal_status: str | None = None
    raw: dict                   # full response body


class VoteResult(BaseModel):
    """Result of a POST /api/vote call."""
    proposal_id: str
    selected_option: str | None = None   # None: no decision was made
    reasons: list[str] = []
    executed: bool = False
    transaction_hash: str | None = None
    raw: dict


class ManualVoteResult(BaseModel):
    """Result of a POST /api/manual-vote call."""
    success: bool
    vote: str | None = None
    transaction_hash: str | None = None
    error: str | None = None
    raw: dict


class VoteStatus(BaseModel):
    """Result of a GET /api/vote/status/{id} call."""
    proposal_id: str
    evaluated: bool
    executed: bool = False
    selected_option: str | None = None
    raw: dict


class QueueStatus(BaseModel):
    is_processing: bool
    queue_length: int
