"""
Error Taxonomy

Every failure the voting pipeline distinguishes has its own exception type.
Retry decisions are made on the message text, because the remote signer
and RPC node only ever hand back strings.
"""

from __future__ import annotations


TRANSIENT_MARKERS = ("nonce", "timeout", "network", "connection")
ALREADY_VOTED_MARKER = "already voted"


class BallotError(Exception):
    """Base class for all pipeline errors."""


# ---------------------------------------------------------------------------
# Capability failures
# ---------------------------------------------------------------------------

class QueueFullError(BallotError):
    """Signer call queue is at capacity; the call was never queued."""


class RpcError(BallotError):
    """RPC node returned a non-2xx response or a JSON-RPC error."""


class SignerError(BallotError):
    """Remote signer rejected the call or returned an error payload."""


class InferenceError(BallotError):
    """Inference endpoint failed; no decision can be derived."""


# ---------------------------------------------------------------------------
# Proposal / vote state
# ---------------------------------------------------------------------------

class ProposalNotFoundError(BallotError):
    pass


class ProposalNotReadyError(BallotError):
    """Proposal has no voting options or no snapshot yet."""


class SnapshotError(BallotError):
    """Snapshot descriptor missing or its block height is unusable."""


class InvalidVoteOptionError(BallotError):
    pass


class InvalidProposalStateError(BallotError):
    """Proposal status does not allow voting right now."""


class AlreadyVotedError(BallotError):
    pass


class VoteNotRecordedError(BallotError):
    """Submission returned no tx reference and the chain shows no vote."""


class ProofError(BallotError):
    """Proof endpoint answered with a payload of unexpected shape."""


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

def is_transient(error: BaseException) -> bool:
    """True when the error message carries a known transient marker."""
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def is_already_voted(error: BaseException | str) -> bool:
    return ALREADY_VOTED_MARKER in str(error).lower()
