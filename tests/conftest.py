"""
Shared fixtures and fakes for the ballot agent test suite.

Nothing here touches the network: chain reads, the signer and the model
are replaced with in-memory fakes or httpx.MockTransport handlers.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from ballot.chain import VoteReceipt
from ballot.config import AgentConfig
from ballot.errors import InferenceError
from ballot.inference import AIDecision
from ballot.proposal import Proposal, VoteOption, normalize_proposal


def encode_result(value: Any) -> dict:
    """JSON-RPC ``query`` success body carrying *value* as a byte array."""
    return {
        "jsonrpc": "2.0",
        "id": "1",
        "result": {"result": list(json.dumps(value).encode()), "logs": []},
    }


def make_raw_proposal(
    proposal_id: int = 7,
    status: Any = "Voting",
    with_snapshot: bool = True,
    options: list[str] | None = None,
) -> dict:
    raw: dict[str, Any] = {
        "id": proposal_id,
        "status": status,
        "voting_start_time_ns": "1700000000000000000",
        "metadata": {
            "title": "Fund validator onboarding",
            "description": "Grants for new validators in under-served regions.",
            "voting_options": options if options is not None else ["For", "Against", "Abstain"],
        },
    }
    if with_snapshot:
        raw["snapshot_and_state"] = {
            "snapshot": {"root": "abc", "length": 12, "block_height": 190000000},
            "timestamp_ns": "1700000000000000000",
            "total_venear": "1000",
        }
    return raw


def make_proposal(**kwargs) -> Proposal:
    raw = make_raw_proposal(**kwargs)
    return normalize_proposal(raw, raw["id"])


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeInference:
    """Stands in for InferenceClient; counts recommend() calls."""

    def __init__(self, option: VoteOption | None = VoteOption.FOR, error: str | None = None):
        self.option = option
        self.error = error
        self.gate: asyncio.Event | None = None
        self.calls = 0
        self.configured = True

    async def recommend(self, proposal: Proposal) -> AIDecision:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise InferenceError(self.error)
        return AIDecision(
            selected_option=self.option,
            reasons=[f"Vote: {self.option.value}", "Reason: test"],
        )

    async def aclose(self) -> None:
        pass


class FakeProtocol:
    """Stands in for VotingProtocol; records every cast_vote call."""

    def __init__(self, proposal: Proposal | None = None):
        self.proposal = proposal or make_proposal()
        self.already_voted = False
        self.cast_error: Exception | None = None
        self.tx_hash = "TX1"
        self.cast_calls: list[tuple[str, VoteOption]] = []
        self.fetch_calls = 0
        self.account_lookups = 0
        self.voters: list[str | None] = []
        self.cast_gate: asyncio.Event | None = None

    async def fetch_proposal(self, proposal_id) -> Proposal:
        self.fetch_calls += 1
        return self.proposal

    async def voting_account_id(self) -> str:
        self.account_lookups += 1
        return "agent.testnet"

    async def has_already_voted(self, proposal_id, account_id) -> bool:
        return self.already_voted

    async def cast_vote(self, proposal_id, proposal, selected, voter=None) -> VoteReceipt:
        self.cast_calls.append((str(proposal_id), selected))
        self.voters.append(voter)
        if self.cast_gate is not None:
            await self.cast_gate.wait()
        if self.cast_error is not None:
            raise self.cast_error
        return VoteReceipt(transaction_hash=self.tx_hash)


@pytest.fixture
def config() -> AgentConfig:
    return AgentConfig(
        voting_contract_id="vote.test",
        venear_contract_id="venear.test",
        rpc_url="https://rpc.test",
        signer_api_url="http://signer.test",
        proxy_contract_id="proxy.test",
        ai_api_key="key",
        ai_api_url="https://ai.test/v1/chat/completions",
    )
