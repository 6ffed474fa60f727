"""
Chain Read/Verify Protocol

Translates between the pipeline's proposal/vote model and the contract
surface: canonical proposal reads, snapshot-pinned merkle proofs, signed
vote submission (through the signer queue) and read-back verification of
recorded votes.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from ballot.config import AgentConfig
from ballot.errors import (
    BallotError,
    InvalidProposalStateError,
    InvalidVoteOptionError,
    ProofError,
    ProposalNotFoundError,
    ProposalNotReadyError,
    RpcError,
    SignerError,
    SnapshotError,
    VoteNotRecordedError,
    is_already_voted,
)
from ballot.proposal import (
    AccountProof,
    Proposal,
    ProposalStatus,
    SnapshotAndState,
    VoteOption,
    normalize_account_proof,
    normalize_proposal,
)
from ballot.rpc import ChainRpcClient
from ballot.signer import QueuedSigner

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Waits between get_vote attempts (3 attempts total, ~800ms worst case)
VERIFY_RETRY_DELAYS = (0.3, 0.5)

# Where a transaction reference may hide in a signer response, in order
_TX_HASH_PATHS = (
    ("transaction", "hash"),
    ("txHash",),
    ("receipt", "transaction_hash"),
    ("receipt", "id"),
    ("hash",),
    ("transaction_outcome", "id"),
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class VoteReceipt(BaseModel):
    transaction_hash: str | None = None
    already_voted: bool = False


@dataclass(frozen=True)
class VoteVerification:
    recorded: bool
    verified: bool  # False: the check itself failed, the answer is unknown


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def validate_proposal_status(proposal: Proposal) -> None:
    """Raise InvalidProposalStateError unless voting is open right now."""
    status = proposal.status
    if not status or status == ProposalStatus.VOTING.value:
        return
    if status == ProposalStatus.APPROVED.value:
        raise InvalidProposalStateError("Voting has not started yet")
    if status == ProposalStatus.FINISHED.value:
        raise InvalidProposalStateError("Voting has already ended")
    raise InvalidProposalStateError(f"Cannot vote on proposal: status is {status}")


def map_vote_choice_to_index(voting_options: list[str], selected: VoteOption | str) -> int:
    """Position of *selected* in the proposal's options (trimmed, case-insensitive)."""
    if not voting_options:
        raise InvalidVoteOptionError("Voting options are not available for this proposal")

    label = selected.value if isinstance(selected, VoteOption) else str(selected)
    wanted = label.strip().lower()
    for index, option in enumerate(voting_options):
        if option and option.strip().lower() == wanted:
            return index

    raise InvalidVoteOptionError(f'Selected option "{label}" not found in voting options')


def parse_block_height(value: int | str | None) -> int:
    if value is None:
        raise SnapshotError("Snapshot block height is missing")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    try:
        return int(str(value).strip(), 10)
    except ValueError:
        raise SnapshotError(f"Invalid snapshot block height: {value}")


def parse_proposal_id(proposal_id: str | int) -> int:
    try:
        return int(str(proposal_id).strip(), 10)
    except ValueError:
        raise ValueError(f"Invalid proposal id: {proposal_id!r}")


def extract_transaction_hash(result: Any) -> str | None:
    """Find a transaction reference in whatever the signer returned."""
    if isinstance(result, str):
        return result.strip() or None
    if not isinstance(result, dict):
        return None
    for path in _TX_HASH_PATHS:
        node: Any = result
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if node:
            return str(node)
    return None


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class VotingProtocol:
    """Contract reads go to the RPC node; anything signed goes to the signer queue."""

    def __init__(
        self,
        rpc: ChainRpcClient,
        signer: QueuedSigner,
        config: AgentConfig,
        verify_delays: tuple[float, ...] = VERIFY_RETRY_DELAYS,
    ):
        self.rpc = rpc
        self.signer = signer
        self.config = config
        self.verify_delays = verify_delays

    # -- reads -------------------------------------------------------------

    async def fetch_proposal(self, proposal_id: str | int) -> Proposal:
        pid = parse_proposal_id(proposal_id)
        logger.debug("Fetching proposal %d", pid)

        raw = await self.rpc.query(
            self.config.voting_contract_id,
            "get_proposal",
            {"proposal_id": pid},
        )
        if raw is None:
            raise ProposalNotFoundError(f"Proposal {proposal_id} does not exist")

        try:
            parsed = json.loads(raw)
        except ValueError:
            raise RpcError(f"get_proposal returned unparseable data for {proposal_id}")
        if parsed is None:
            raise ProposalNotFoundError(f"Proposal {proposal_id} does not exist")
        if not isinstance(parsed, dict):
            raise RpcError(f"get_proposal returned unexpected payload for {proposal_id}")

        return normalize_proposal(parsed, pid)

    async def fetch_account_proof(
        self,
        account_id: str,
        snapshot_and_state: SnapshotAndState | None,
    ) -> AccountProof:
        """Fetch the account's voting-power proof at the proposal's snapshot block."""
        if snapshot_and_state is None:
            raise SnapshotError("Snapshot data is missing for this proposal")

        block_height = parse_block_height(snapshot_and_state.snapshot.block_height)
        logger.info(
            "Fetching account proof for %s at block %d from %s",
            account_id, block_height, self.config.venear_contract_id,
        )

        raw = await self.rpc.query(
            self.config.venear_contract_id,
            "get_proof",
            {"account_id": account_id},
            block_id=block_height,
            request_id=f"proof-{account_id}",
        )
        if raw is None:
            raise ProofError("Proof RPC response missing result data")

        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.error("Failed to parse proof response JSON: %s", raw[:200])
            raise ProofError("Failed to parse proof response JSON")

        proof = normalize_account_proof(parsed)
        if proof is None:
            logger.error("Unexpected proof response structure: %s", raw[:200])
            raise ProofError("Unexpected proof response structure")
        return proof

    async def verify_vote_recorded(
        self,
        proposal_id: str | int,
        account_id: str,
    ) -> VoteVerification:
        """Poll ``get_vote`` to tolerate read-after-write lag.

        ``verified=False`` means the check itself failed; callers must not read
        it as "not voted".
        """
        pid = parse_proposal_id(proposal_id)
        attempts = len(self.verify_delays) + 1

        for attempt in range(attempts):
            if attempt > 0:
                await asyncio.sleep(self.verify_delays[attempt - 1])
            last = attempt == attempts - 1

            try:
                raw = await self.rpc.query(
                    self.config.voting_contract_id,
                    "get_vote",
                    {"account_id": account_id, "proposal_id": pid},
                    request_id="get-vote",
                )
            except RpcError as exc:
                logger.warning(
                    "get_vote check failed (attempt %d/%d): %s", attempt + 1, attempts, exc
                )
                if last:
                    return VoteVerification(recorded=False, verified=False)
                continue

            if raw is None:
                if last:
                    logger.warning("Vote not found after %d verification attempts", attempts)
                    return VoteVerification(recorded=False, verified=True)
                continue

            try:
                parsed = json.loads(raw)
            except ValueError:
                logger.warning("Failed to parse get_vote response: %s", raw[:200])
                return VoteVerification(recorded=False, verified=False)

            if parsed is not None:
                logger.info("Vote verified on-chain (attempt %d/%d)", attempt + 1, attempts)
                return VoteVerification(recorded=True, verified=True)
            if last:
                return VoteVerification(recorded=False, verified=True)

        return VoteVerification(recorded=False, verified=False)

    async def has_already_voted(self, proposal_id: str | int, account_id: str) -> bool:
        """Only a verified, recorded vote counts; an unverifiable check means no."""
        verification = await self.verify_vote_recorded(proposal_id, account_id)
        if not verification.verified:
            logger.warning(
                "Could not verify existing vote status for proposal %s "
                "(proceeding with vote attempt)", proposal_id,
            )
            return False
        return verification.recorded

    # -- identity ----------------------------------------------------------

    async def signer_account_id(self) -> str:
        try:
            return await self.signer.account_id()
        except (BallotError, TimeoutError) as exc:
            if self.config.agent_account_id:
                logger.warning(
                    "Signer account lookup failed (%s); using configured %s",
                    exc, self.config.agent_account_id,
                )
                return self.config.agent_account_id
            raise SignerError(f"Unable to resolve signer account id: {exc}") from exc

    async def voting_account_id(self) -> str:
        """Account whose voting power is proven and whose vote gets recorded."""
        if self.config.submission_mode == "proxy" and self.config.proxy_contract_id:
            return self.config.proxy_contract_id
        return await self.signer_account_id()

    def _submission_target(self, voting_account: str) -> tuple[str, str]:
        if self.config.submission_mode == "proxy":
            return voting_account, "cast_vote"
        return self.config.voting_contract_id, "vote"

    # -- submission --------------------------------------------------------

    async def cast_vote(
        self,
        proposal_id: str | int,
        proposal: Proposal,
        selected: VoteOption | str,
        voter: str | None = None,
    ) -> VoteReceipt:
        """Submit the vote. *voter* skips the account lookup when already known."""
        if not proposal.voting_options:
            raise ProposalNotReadyError("Voting options not available for this proposal")
        if proposal.snapshot_and_state is None:
            raise SnapshotError("Snapshot data missing for this proposal")

        vote_index = map_vote_choice_to_index(proposal.voting_options, selected)
        if voter is None:
            voter = await self.voting_account_id()
        contract_id, method_name = self._submission_target(voter)
        logger.info(
            "Preparing vote (%s) for proposal %s as %s",
            selected.value if isinstance(selected, VoteOption) else selected,
            proposal_id, voter,
        )

        proof = await self.fetch_account_proof(voter, proposal.snapshot_and_state)

        try:
            raw = await self.signer.function_call(
                contract_id,
                method_name,
                {
                    "proposal_id": parse_proposal_id(proposal_id),
                    "vote": vote_index,
                    "merkle_proof": proof.merkle_proof,
                    "v_account": proof.v_account,
                },
                gas=self.config.vote_gas,
                deposit=self.config.vote_deposit,
            )
        except (BallotError, TimeoutError) as exc:
            if is_already_voted(exc):
                logger.info("Signer reports %s already voted on proposal %s", voter, proposal_id)
                return VoteReceipt(already_voted=True)
            raise

        tx_hash = extract_transaction_hash(raw)
        if tx_hash is None:
            verification = await self.verify_vote_recorded(proposal_id, voter)
            if verification.verified and verification.recorded:
                logger.info("Vote verified on-chain despite missing tx hash")
            elif verification.verified:
                raise VoteNotRecordedError(
                    "Vote not recorded on-chain after verification "
                    f"(tried {len(self.verify_delays) + 1} times)"
                )
            else:
                logger.warning(
                    "Vote verification unavailable (RPC/parse error); "
                    "proceeding without on-chain confirmation"
                )

        logger.info("Vote cast on proposal %s (tx %s)", proposal_id, tx_hash or "unknown")
        return VoteReceipt(transaction_hash=tx_hash)
