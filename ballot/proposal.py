"""
Proposal Model
Canonical, read-only view of an on-chain governance proposal.

The voting contract has shipped several response layouts over time
(metadata at the top level, under ``metadata``, or under
``proposal.metadata``; status as a string or as a single-key object).
``normalize_proposal`` is the one place that knows about all of them.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

class ProposalStatus(str, Enum):
    CREATED = "Created"
    APPROVED = "Approved"
    VOTING = "Voting"
    FINISHED = "Finished"
    REJECTED = "Rejected"


class VoteOption(str, Enum):
    FOR = "For"
    AGAINST = "Against"
    ABSTAIN = "Abstain"


class SnapshotInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    root: str | None = None
    length: int | str | None = None
    block_height: int | str | None = None


class SnapshotAndState(BaseModel):
    model_config = ConfigDict(extra="allow")

    snapshot: SnapshotInfo
    timestamp_ns: str | None = None
    total_venear: str | None = None
    venear_growth_config: Any = None


class Proposal(BaseModel):
    id: str
    title: str | None = None
    description: str | None = None
    link: str | None = None
    proposer_id: str | None = None
    status: str | None = None              # ProposalStatus value, or verbatim if unknown
    voting_options: list[str] = []
    voting_start_time_ns: str | None = None  # nanosecond epoch, kept as text
    voting_duration_ns: str | None = None
    snapshot_and_state: SnapshotAndState | None = None

    @property
    def has_snapshot(self) -> bool:
        return self.snapshot_and_state is not None

    @property
    def is_ready(self) -> bool:
        """Options and snapshot both present: safe to evaluate and vote."""
        return bool(self.voting_options) and self.has_snapshot


class AccountProof(BaseModel):
    """Merkle proof + account record, passed through to the vote call."""
    merkle_proof: dict[str, Any]
    v_account: Any


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------

_KNOWN_STATUSES = {s.value.lower(): s.value for s in ProposalStatus}


def normalize_status(status: Any) -> str | None:
    """Accept ``"voting"``, ``"Voting"`` or ``{"Voting": {...}}``."""
    if not status:
        return None
    if isinstance(status, str):
        name = status.strip()
    elif isinstance(status, dict):
        name = str(next(iter(status))).strip()
    else:
        return None
    if not name:
        return None
    return _KNOWN_STATUSES.get(name.lower(), name)


def to_optional_string(value: Any) -> str | None:
    """Stringify numeric-ish values without losing precision.

    Wrapped values (``{"0": x}`` or ``{"value": x}``) are unwrapped first.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, dict):
        for key in ("0", 0, "value"):
            if key in value:
                return to_optional_string(value[key])
        return None
    return str(value)


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def _coerce_options(options: Any) -> list[str]:
    if not isinstance(options, list):
        return []
    return [str(option) for option in options if option is not None]


def _parse_snapshot(raw: Any, proposal_id: str) -> SnapshotAndState | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("snapshot"), dict):
        return None
    try:
        return SnapshotAndState.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Proposal %s has a malformed snapshot descriptor: %s", proposal_id, exc)
        return None


def normalize_proposal(raw: dict[str, Any], fallback_id: str | int) -> Proposal:
    """Build a Proposal from any known ``get_proposal`` response layout."""
    proposal = raw.get("proposal") or {}
    metadata = raw.get("metadata") or proposal.get("metadata") or {}

    proposal_id = to_optional_string(_first(proposal.get("id"), raw.get("id")))
    if proposal_id is None:
        proposal_id = str(fallback_id)

    def field(name: str) -> Any:
        return _first(metadata.get(name), proposal.get(name), raw.get(name))

    return Proposal(
        id=proposal_id,
        title=field("title"),
        description=field("description"),
        link=field("link"),
        proposer_id=field("proposer_id"),
        status=normalize_status(proposal.get("status") or raw.get("status")),
        voting_options=_coerce_options(field("voting_options")),
        voting_start_time_ns=to_optional_string(
            _first(proposal.get("voting_start_time_ns"), raw.get("voting_start_time_ns"))
        ),
        voting_duration_ns=to_optional_string(
            _first(proposal.get("voting_duration_ns"), raw.get("voting_duration_ns"))
        ),
        snapshot_and_state=_parse_snapshot(
            proposal.get("snapshot_and_state") or raw.get("snapshot_and_state"),
            proposal_id,
        ),
    )


def normalize_account_proof(parsed: Any) -> AccountProof | None:
    """Accept ``[merkle_proof, v_account]`` or ``{merkle_proof, v_account}``.

    The proof's ``index`` may arrive as a string; the contract wants a number.
    Returns None for any other shape.
    """
    if isinstance(parsed, list) and parsed:
        merkle_proof = parsed[0] or {}
        v_account = parsed[1] if len(parsed) > 1 else None
    elif isinstance(parsed, dict) and parsed.get("merkle_proof") and parsed.get("v_account"):
        merkle_proof = parsed["merkle_proof"]
        v_account = parsed["v_account"]
    else:
        return None

    if not isinstance(merkle_proof, dict):
        return None

    normalized = dict(merkle_proof)
    index = normalized.get("index")
    if isinstance(index, str):
        try:
            normalized["index"] = int(index, 10)
        except ValueError:
            logger.warning("Merkle proof index %r is not numeric; passing through", index)
    return AccountProof(merkle_proof=normalized, v_account=v_account)
