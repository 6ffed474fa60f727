"""
Ballot SDK: Client
Thin synchronous wrapper over the Ballot Agent gateway.
"""

from __future__ import annotations

import httpx

from ballot_sdk.models import (
    EvaluationResult,
    ManualVoteResult,
    QueueStatus,
    VoteResult,
    VoteStatus,
)

MANUAL_VOTE_INDEX = {"for": 0, "against": 1, "abstain": 2}


class BallotClient:
    """
    Client for the Ballot Agent gateway.

    Requests evaluations and votes, reads decision records, and optionally
    casts operator votes with an operator API key.
    """

    def __init__(
        self,
        gateway_url: str,
        api_key: str | None = None,
        timeout: float = 90.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            gateway_url: Base URL of the agent (e.g. "http://localhost:3000")
            api_key: Operator bearer key (only needed for manual votes / history clear)
            timeout: HTTP request timeout in seconds; votes wait on the model
                and the chain, so keep this generous
            transport: Optional httpx transport (tests)
        """
        self.gateway_url = gateway_url.rstrip("/")
        self.api_key = api_key
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def evaluate(self, proposal_id: str | int) -> EvaluationResult:
        """Ask for a recommendation without voting."""
        resp = self._client.post(
            f"{self.gateway_url}/api/evaluate",
            json={"proposalId": str(proposal_id)},
        )
        resp.raise_for_status()
        body = resp.json()

        return EvaluationResult(
            proposal_id=body.get("proposal_id", str(proposal_id)),
            recommendation=body.get("recommendation", "Abstain"),
            reasons=body.get("reasons", []),
            proposal_title=body.get("proposal_title"),
            proposal_status=body.get("proposal_status"),
            raw=body,
        )

    def vote(self, proposal_id: str | int) -> VoteResult:
        """Evaluate and vote. Repeat calls return the recorded decision."""
        resp = self._client.post(
            f"{self.gateway_url}/api/vote",
            json={"proposalId": str(proposal_id)},
        )
        resp.raise_for_status()
        body = resp.json()

        return VoteResult(
            proposal_id=body.get("proposal_id", str(proposal_id)),
            selected_option=body.get("selected_option"),
            reasons=body.get("reasons", []),
            executed=body.get("executed", False),
            transaction_hash=body.get("transaction_hash"),
            raw=body,
        )

    def manual_vote(
        self,
        proposal_id: str | int,
        choice: str,
        reason: str | None = None,
    ) -> ManualVoteResult:
        """
        Cast an operator vote ("For", "Against" or "Abstain").

        Requires api_key to be set on the client.
        """
        if not self.api_key:
            return ManualVoteResult(
                success=False,
                error="No api_key configured on client.",
                raw={"error": "No api_key configured on client."},
            )

        index = MANUAL_VOTE_INDEX.get(choice.strip().lower())
        if index is None:
            raise ValueError(f"Unknown vote choice: {choice!r}")

        payload: dict = {"proposalId": str(proposal_id), "vote": index}
        if reason:
            payload["reason"] = reason

        resp = self._client.post(
            f"{self.gateway_url}/api/manual-vote",
            json=payload,
            headers=self._auth_headers(),
        )
        body = resp.json()

        return ManualVoteResult(
            success=resp.status_code == 200 and body.get("success", False),
            vote=body.get("vote"),
            transaction_hash=body.get("transaction_hash"),
            error=body.get("error") or body.get("detail"),
            raw=body,
        )

    def status(self, proposal_id: str | int) -> VoteStatus:
        resp = self._client.get(f"{self.gateway_url}/api/vote/status/{proposal_id}")
        resp.raise_for_status()
        body = resp.json()

        return VoteStatus(
            proposal_id=body.get("proposal_id", str(proposal_id)),
            evaluated=body.get("evaluated", False),
            executed=body.get("executed", False),
            selected_option=body.get("selected_option"),
            raw=body,
        )

    def queue_status(self) -> QueueStatus:
        resp = self._client.get(f"{self.gateway_url}/api/queue-status")
        resp.raise_for_status()
        return QueueStatus(**resp.json()["queue"])

    def clear_history(self) -> bool:
        if not self.api_key:
            return False
        resp = self._client.delete(
            f"{self.gateway_url}/api/vote/history",
            headers=self._auth_headers(),
        )
        return resp.status_code == 200

    def health(self) -> dict:
        """Check agent health via GET /health."""
        resp = self._client.get(f"{self.gateway_url}/health")
        return resp.json()

    def close(self) -> None:
        self._client.close()
