"""
Ballot SDK
Synchronous client for the Ballot Agent HTTP API.
"""

from ballot_sdk.client import BallotClient
from ballot_sdk.models import (
    EvaluationResult,
    ManualVoteResult,
    QueueStatus,
    VoteResult,
    VoteStatus,
)

__all__ = [
    "BallotClient",
    "EvaluationResult",
    "ManualVoteResult",
    "QueueStatus",
    "VoteResult",
    "VoteStatus",
]
