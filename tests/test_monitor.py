"""
Event Monitor Tests
The pure transition function, readiness polling, and the async driver
against a scripted websocket.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from ballot.decision_engine import DecisionEngine
from ballot.errors import RpcError
from ballot.monitor import (
    CloseSocket,
    Closed,
    ConnectRequested,
    Errored,
    EventMonitor,
    FrameReceived,
    GiveUp,
    HandleFrame,
    MonitorState,
    Opened,
    OpenSocket,
    Phase,
    ScheduleReconnect,
    SendFilter,
    poll_until_ready,
    transition,
)

from conftest import FakeInference, FakeProtocol, make_proposal

APPROVAL_FRAME = json.dumps({
    "account_id": "vote.test",
    "event_event": "proposal_approve",
    "event_data": [{"proposal_id": 7, "account_id": "reviewer.test"}],
})


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------

def test_connect_then_open_sends_filter():
    state, effects = transition(MonitorState(), ConnectRequested(), 5)
    assert state.phase == Phase.CONNECTING and state.is_connecting
    assert effects == [OpenSocket()]

    state, effects = transition(state, Opened(), 5)
    assert state.phase == Phase.CONNECTED
    assert effects == [SendFilter()]


def test_duplicate_connect_requests_are_ignored():
    connecting = MonitorState(phase=Phase.CONNECTING, is_connecting=True)
    assert transition(connecting, ConnectRequested(), 5) == (connecting, [])

    connected = MonitorState(phase=Phase.CONNECTED)
    assert transition(connected, ConnectRequested(), 5) == (connected, [])


def test_frames_only_handled_while_connected():
    connected = MonitorState(phase=Phase.CONNECTED)
    assert transition(connected, FrameReceived("x"), 5)[1] == [HandleFrame("x")]
    assert transition(MonitorState(), FrameReceived("x"), 5)[1] == []


def test_error_closes_without_scheduling_reconnect():
    state, effects = transition(MonitorState(phase=Phase.CONNECTED), Errored("boom"), 5)
    assert state.phase == Phase.DISCONNECTED
    assert effects == [CloseSocket()]


def test_close_schedules_reconnect_until_exhausted():
    state = MonitorState(phase=Phase.CONNECTED)
    for attempt in range(1, 6):
        state, effects = transition(state, Closed(), 5)
        assert effects == [ScheduleReconnect(attempt)]
        assert state.reconnect_attempts == attempt

    state, effects = transition(state, Closed(), 5)
    assert state.phase == Phase.STOPPED
    assert effects == [GiveUp()]
    assert transition(state, ConnectRequested(), 5) == (state, [])


def test_successful_open_resets_attempts():
    state = MonitorState(phase=Phase.CONNECTING, reconnect_attempts=3, is_connecting=True)
    state, _ = transition(state, Opened(), 5)
    assert state.reconnect_attempts == 0


# ---------------------------------------------------------------------------
# Readiness polling
# ---------------------------------------------------------------------------

class SequenceProtocol(FakeProtocol):
    """Returns a scripted sequence of proposals (or errors) from fetch_proposal."""

    def __init__(self, sequence):
        super().__init__()
        self.sequence = list(sequence)

    async def fetch_proposal(self, proposal_id):
        self.fetch_calls += 1
        item = self.sequence.pop(0) if len(self.sequence) > 1 else self.sequence[0]
        if isinstance(item, Exception):
            raise item
        return item


async def test_poll_returns_once_snapshot_appears():
    protocol = SequenceProtocol([
        RpcError("flaky"),
        make_proposal(with_snapshot=False),
        make_proposal(),
    ])
    proposal = await poll_until_ready(protocol, "7", delays=(0, 0, 0, 0, 0))

    assert proposal is not None and proposal.is_ready
    assert protocol.fetch_calls == 3


async def test_poll_gives_up_after_all_attempts():
    protocol = SequenceProtocol([make_proposal(with_snapshot=False)])
    assert await poll_until_ready(protocol, "7", delays=(0, 0, 0, 0, 0)) is None
    assert protocol.fetch_calls == 5


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

class ScriptedSocket:
    """Async-iterable, async-context-managed stand-in for a websocket."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent: list[str] = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True


def build_monitor(config, protocol=None, inference=None, connect=None):
    protocol = protocol or FakeProtocol()
    engine = DecisionEngine(protocol, inference or FakeInference())
    monitor = EventMonitor(
        config,
        protocol,
        engine,
        connect=connect or (lambda url, **kwargs: ScriptedSocket([])),
        readiness_delays=(0, 0),
        reconnect_base_delay=0,
    )
    return monitor, engine, protocol


async def test_run_gives_up_after_max_reconnects(config):
    calls: list[str] = []

    def refuse(url, **kwargs):
        calls.append(url)
        raise OSError("connection refused")

    monitor, _, _ = build_monitor(config, connect=refuse)
    await monitor.run()

    assert len(calls) == 1 + config.max_reconnect_attempts
    assert monitor.status()["phase"] == "stopped"
    assert monitor.status()["connected"] is False


async def test_run_sends_filter_and_reconnects_after_close(config):
    sockets: list[ScriptedSocket] = []

    attempts = 0

    def connect(url, **kwargs):
        nonlocal attempts
        attempts += 1
        assert kwargs["ping_interval"] == 30
        if attempts > 1:
            raise OSError("connection refused")
        socket = ScriptedSocket(["welcome"])
        sockets.append(socket)
        return socket

    monitor, _, _ = build_monitor(config, connect=connect)
    await monitor.run()
    await asyncio.sleep(0.01)

    # one good session, then the full reconnect budget
    assert attempts == 1 + config.max_reconnect_attempts
    sent = json.loads(sockets[0].sent[0])
    assert sent["And"][0]["operator"]["Equals"] == "vote.test"
    assert monitor.activity()["message_count"] == 1


async def test_approval_frame_triggers_one_vote(config):
    monitor, engine, protocol = build_monitor(config)

    decisions = await monitor.handle_frame(APPROVAL_FRAME)
    await monitor.handle_frame(APPROVAL_FRAME)

    assert len(decisions) == 1
    assert decisions[0].selected_option is not None
    assert protocol.cast_calls == [("7", decisions[0].selected_option)]
    assert engine.is_executed("7")


async def test_unready_proposal_never_reaches_ai(config):
    inference = FakeInference()
    protocol = FakeProtocol(make_proposal(with_snapshot=False))
    monitor, engine, _ = build_monitor(config, protocol=protocol, inference=inference)

    assert await monitor.handle_frame(APPROVAL_FRAME) == []
    assert inference.calls == 0
    assert engine.get_decision("7") is None


@pytest.mark.parametrize("frame", ["pong", "{broken", json.dumps({"event_event": "proposal_create", "event_data": [{"proposal_id": 1}]})])
async def test_irrelevant_frames_are_ignored(config, frame):
    inference = FakeInference()
    monitor, _, _ = build_monitor(config, inference=inference)

    assert await monitor.handle_frame(frame) == []
    assert inference.calls == 0


async def test_failing_event_does_not_stop_the_batch(config):
    class ExplodingInference(FakeInference):
        async def recommend(self, proposal):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("unexpected")
            return await super().recommend(proposal)

    monitor, _, _ = build_monitor(config, inference=ExplodingInference())
    frame = json.dumps([
        {"event_event": "proposal_approve", "event_data": [{"proposal_id": 7}]},
        {"event_event": "proposal_approve", "event_data": [{"proposal_id": 8}]},
    ])

    decisions = await monitor.handle_frame(frame)
    assert [d.proposal_id for d in decisions] == ["8"]


async def test_open_timeout_schedules_reconnect(config):
    sockets: list[ScriptedSocket] = []
    attempts = 0

    def connect(url, **kwargs):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise asyncio.TimeoutError()
        if attempts == 2:
            socket = ScriptedSocket([])
            sockets.append(socket)
            return socket
        raise OSError("connection refused")

    monitor, _, _ = build_monitor(config, connect=connect)
    await monitor.run()

    # the timed-out open was followed by a fresh connect, not a dead task
    assert len(sockets) == 1
    assert sockets[0].sent
    assert attempts == 2 + config.max_reconnect_attempts
    assert monitor.status()["phase"] == "stopped"
