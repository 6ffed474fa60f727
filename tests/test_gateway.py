"""
Gateway Test Suite
Exercises the HTTP surface with the pipeline's external edges faked out.

The app's shared context is swapped through ``app.dependency_overrides``;
the lifespan (and with it the live event monitor) is never started.
"""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from ballot.call_queue import SignerCallQueue
from ballot.context import AgentContext
from ballot.decision_engine import DecisionEngine
from ballot.errors import ProposalNotFoundError
from ballot.identity import hash_api_key
from ballot.monitor import EventMonitor
from ballot.rpc import ChainRpcClient
from ballot.signer import QueuedSigner, SignerClient
from main import app, get_context

from conftest import FakeInference, FakeProtocol, make_proposal

OPERATOR_KEY = "blt_test-operator-key"


class GatewayProtocol(FakeProtocol):
    async def fetch_proposal(self, proposal_id):
        pid = int(str(proposal_id), 10)
        self.fetch_calls += 1
        if pid == 404:
            raise ProposalNotFoundError(f"Proposal {pid} does not exist")
        return make_proposal(proposal_id=pid)


def signer_handler(request: httpx.Request) -> httpx.Response:
    method = request.url.path.rsplit("/", 1)[-1]
    if method == "getAccountId":
        return httpx.Response(200, json={"accountId": "agent.test"})
    if method == "view":
        return httpx.Response(200, json={"account_id": "agent.test", "checksum": "abc"})
    if method == "getBalance":
        return httpx.Response(200, json={"balance": {"available": "5000"}})
    return httpx.Response(404, text="unknown method")


@pytest.fixture
def ctx(config) -> AgentContext:
    config.operator_key_fingerprints = [hash_api_key(OPERATOR_KEY)]
    queue = SignerCallQueue(pacing_delay=0, retry_delay=0)
    signer = QueuedSigner(
        SignerClient(config.signer_api_url, transport=httpx.MockTransport(signer_handler)),
        queue,
    )
    protocol = GatewayProtocol()
    inference = FakeInference()
    engine = DecisionEngine(protocol, inference)
    return AgentContext(
        config=config,
        queue=queue,
        rpc=ChainRpcClient(config.rpc_url),
        signer=signer,
        inference=inference,
        protocol=protocol,
        engine=engine,
        monitor=EventMonitor(config, protocol, engine),
    )


@pytest.fixture
def client(ctx):
    app.dependency_overrides[get_context] = lambda: ctx
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(key: str = OPERATOR_KEY) -> dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_health(client):
    for path in ("/", "/health"):
        body = client.get(path).json()
        assert body["status"] == "operational"
        assert body["event_stream"] == "disconnected"
        assert body["voter"]["total"] == 0


# ---------------------------------------------------------------------------
# Evaluation and voting
# ---------------------------------------------------------------------------

def test_evaluate_does_not_vote(client, ctx):
    resp = client.post("/api/evaluate", json={"proposalId": "7"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["recommendation"] == "For"
    assert body["vote_cast"] is False
    assert body["proposal_title"] == "Fund validator onboarding"
    assert ctx.protocol.cast_calls == []
    assert ctx.engine.get_decision("7") is None


def test_vote_executes_once(client, ctx):
    first = client.post("/api/vote", json={"proposalId": "7"}).json()
    second = client.post("/api/vote", json={"proposal_id": "7"}).json()

    assert first["selected_option"] == "For"
    assert first["executed"] is True
    assert first["transaction_hash"] == "TX1"
    assert second["timestamp"] == first["timestamp"]
    assert ctx.inference.calls == 1
    assert len(ctx.protocol.cast_calls) == 1


def test_vote_unknown_proposal(client):
    assert client.post("/api/vote", json={"proposalId": "404"}).status_code == 404


def test_vote_malformed_id(client):
    assert client.post("/api/vote", json={"proposalId": "seven"}).status_code == 400


def test_vote_missing_id(client):
    assert client.post("/api/vote", json={}).status_code == 422


def test_evaluate_reports_inference_failure(client, ctx):
    ctx.engine.inference = ctx.inference = FakeInference(error="AI API error: 500")
    resp = client.post("/api/evaluate", json={"proposalId": "7"})

    assert resp.status_code == 500
    assert resp.json()["error"] == "Evaluation failed"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def test_status_before_and_after_vote(client):
    before = client.get("/api/vote/status/7").json()
    assert before["evaluated"] is False

    client.post("/api/vote", json={"proposalId": "7"})
    after = client.get("/api/vote/status/7").json()
    assert after["evaluated"] is True
    assert after["executed"] is True
    assert after["execution_status"]["execution_tx_hash"] == "TX1"


def test_results_stats_and_history(client):
    client.post("/api/vote", json={"proposalId": "7"})
    client.post("/api/vote", json={"proposalId": "8"})

    results = client.get("/api/vote/results").json()
    assert results["total"] == 2
    assert all(r["executed"] for r in results["results"])

    stats = client.get("/api/vote/stats").json()
    assert stats["voting"]["decisions"]["for"] == 2
    assert stats["execution"]["successful"] == 2
    assert len(stats["execution"]["recent_executions"]) == 2
    assert stats["monitoring"]["event_stream_connected"] is False

    history = client.get("/api/vote/history").json()
    assert history["stats"]["total"] == 2

    pipeline = client.get("/api/vote/status").json()
    assert pipeline["configured"] is True
    assert pipeline["voting"]["total_evaluated"] == 2


def test_clear_history_requires_operator(client):
    client.post("/api/vote", json={"proposalId": "7"})

    assert client.delete("/api/vote/history", headers=auth("blt_wrong")).status_code == 401
    assert client.delete("/api/vote/history", headers=auth()).status_code == 200
    assert client.get("/api/vote/results").json()["total"] == 0


# ---------------------------------------------------------------------------
# Manual vote
# ---------------------------------------------------------------------------

def test_manual_vote(client, ctx):
    resp = client.post(
        "/api/manual-vote",
        json={"proposalId": "9", "vote": 1, "reason": "Operator review"},
        headers=auth(),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["vote"] == "Against"
    assert ctx.inference.calls == 0
    assert ctx.engine.get_decision("9").reasons[0] == "Operator review"


def test_manual_vote_auth_and_validation(client, ctx):
    payload = {"proposalId": "9", "vote": 0}
    assert client.post("/api/manual-vote", json=payload).status_code == 422
    assert client.post("/api/manual-vote", json=payload, headers={"Authorization": "Token x"}).status_code == 401
    assert client.post("/api/manual-vote", json=payload, headers=auth("blt_wrong")).status_code == 401
    assert client.post("/api/manual-vote", json={"proposalId": "9", "vote": 5}, headers=auth()).status_code == 400
    assert ctx.protocol.cast_calls == []


def test_manual_vote_reports_failed_submission(client, ctx):
    ctx.protocol.cast_error = ProposalNotFoundError("Proposal vanished")
    resp = client.post("/api/manual-vote", json={"proposalId": "9", "vote": 2}, headers=auth())

    assert resp.status_code == 502
    assert resp.json()["success"] is False
    assert resp.json()["error"] == "Proposal vanished"


# ---------------------------------------------------------------------------
# Signer / queue / monitor
# ---------------------------------------------------------------------------

def test_queue_status(client):
    body = client.get("/api/queue-status").json()
    assert body["queue"] == {"is_processing": False, "queue_length": 0}
    assert body["message"] == "Queue is idle"


def test_agent_status(client):
    body = client.get("/api/agent-status").json()
    agent = body["agent_contract"]

    assert agent["agent_account_id"] == "agent.test"
    assert agent["contract_id"] == "proxy.test"
    assert agent["agent_registered"] is True
    assert agent["balance"] == {"balance": {"available": "5000"}}
    assert agent["connection_error"] is None


def test_websocket_debug(client):
    status = client.get("/debug/websocket-status").json()
    assert status["connected"] is False
    assert status["voting_contract"] == "vote.test"

    activity = client.get("/debug/websocket-activity").json()
    assert activity["message_count"] == 0


def test_manual_vote_after_autonomous_vote_is_refused(client, ctx):
    client.post("/api/vote", json={"proposalId": "7"})
    resp = client.post("/api/manual-vote", json={"proposalId": "7", "vote": 1}, headers=auth())

    assert resp.status_code == 409
    assert resp.json()["vote"] == "For"
    assert len(ctx.protocol.cast_calls) == 1
