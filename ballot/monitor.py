"""
Event Monitor
Live subscription to the chain's event feed.

Socket callbacks are modelled as typed messages (ConnectRequested, Opened,
FrameReceived, Errored, Closed) fed to a pure ``transition`` function that
returns the next state plus the effects to run. The async driver only
executes effects; it never decides about reconnection itself.

    Disconnected -> Connecting -> Connected -> Disconnected (retry) -> ...
                                            -> Stopped (attempts exhausted)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ballot.chain import VotingProtocol
from ballot.config import AgentConfig
from ballot.decision_engine import DecisionEngine, VoteDecision
from ballot.errors import BallotError
from ballot.events import (
    ChainEvent,
    build_event_filter,
    is_approval_event,
    normalize_event,
    parse_frame,
)
from ballot.proposal import Proposal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Waits before each readiness check; the contract can emit the approval
# event before the snapshot is committed.
READINESS_DELAYS = (0.0, 0.3, 0.5, 0.8, 1.2)

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 10.0


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    STOPPED = "stopped"


@dataclass(frozen=True)
class MonitorState:
    phase: Phase = Phase.DISCONNECTED
    reconnect_attempts: int = 0
    is_connecting: bool = False


# Messages
@dataclass(frozen=True)
class ConnectRequested:
    pass


@dataclass(frozen=True)
class Opened:
    pass


@dataclass(frozen=True)
class FrameReceived:
    text: str


@dataclass(frozen=True)
class Errored:
    error: str


@dataclass(frozen=True)
class Closed:
    pass


# Effects
@dataclass(frozen=True)
class OpenSocket:
    pass


@dataclass(frozen=True)
class SendFilter:
    pass


@dataclass(frozen=True)
class HandleFrame:
    text: str


@dataclass(frozen=True)
class CloseSocket:
    pass


@dataclass(frozen=True)
class ScheduleReconnect:
    attempt: int


@dataclass(frozen=True)
class GiveUp:
    pass


def transition(state: MonitorState, message, max_attempts: int) -> tuple[MonitorState, list]:
    """Next state and effects for one socket message. No I/O."""
    if state.phase == Phase.STOPPED:
        return state, []

    if isinstance(message, ConnectRequested):
        if state.is_connecting or state.phase == Phase.CONNECTED:
            return state, []
        return replace(state, phase=Phase.CONNECTING, is_connecting=True), [OpenSocket()]

    if isinstance(message, Opened):
        return (
            MonitorState(phase=Phase.CONNECTED, reconnect_attempts=0, is_connecting=False),
            [SendFilter()],
        )

    if isinstance(message, FrameReceived):
        if state.phase != Phase.CONNECTED:
            return state, []
        return state, [HandleFrame(message.text)]

    if isinstance(message, Errored):
        # Close only; the Closed message that follows owns the retry decision
        return replace(state, phase=Phase.DISCONNECTED, is_connecting=False), [CloseSocket()]

    if isinstance(message, Closed):
        if state.reconnect_attempts < max_attempts:
            attempts = state.reconnect_attempts + 1
            return (
                MonitorState(phase=Phase.DISCONNECTED, reconnect_attempts=attempts),
                [ScheduleReconnect(attempts)],
            )
        return replace(state, phase=Phase.STOPPED, is_connecting=False), [GiveUp()]

    raise TypeError(f"Unknown monitor message: {message!r}")


# ---------------------------------------------------------------------------
# Readiness polling
# ---------------------------------------------------------------------------

async def poll_until_ready(
    protocol: VotingProtocol,
    proposal_id: str,
    delays: tuple[float, ...] = READINESS_DELAYS,
) -> Proposal | None:
    """Re-read the proposal until it has options and a snapshot, or give up."""
    for attempt, delay in enumerate(delays):
        if delay:
            logger.info(
                "Waiting %.1fs for proposal %s snapshot (attempt %d/%d)",
                delay, proposal_id, attempt + 1, len(delays),
            )
            await asyncio.sleep(delay)

        try:
            proposal = await protocol.fetch_proposal(proposal_id)
        except (BallotError, ValueError) as exc:
            logger.warning(
                "Error fetching proposal %s (attempt %d/%d): %s",
                proposal_id, attempt + 1, len(delays), exc,
            )
            continue

        logger.info(
            "Proposal %s: status=%s snapshot=%s options=%d",
            proposal_id, proposal.status or "unknown",
            "present" if proposal.has_snapshot else "missing",
            len(proposal.voting_options),
        )
        if proposal.is_ready:
            return proposal

    return None


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

@dataclass
class ActivityLog:
    last_message: str | None = None
    last_event_time: str | None = None
    message_count: int = 0


@dataclass
class MonitorContext:
    """Mutable handles owned by the one long-lived monitor task."""
    state: MonitorState = field(default_factory=MonitorState)
    socket: Any = None
    activity: ActivityLog = field(default_factory=ActivityLog)


class EventMonitor:
    """Drives the transition function against a real websocket."""

    def __init__(
        self,
        config: AgentConfig,
        protocol: VotingProtocol,
        engine: DecisionEngine,
        connect: Callable[..., Any] = websockets.connect,
        readiness_delays: tuple[float, ...] = READINESS_DELAYS,
        reconnect_base_delay: float = RECONNECT_BASE_DELAY,
    ):
        self.config = config
        self.protocol = protocol
        self.engine = engine
        self.max_attempts = config.max_reconnect_attempts
        self.readiness_delays = readiness_delays
        self.reconnect_base_delay = reconnect_base_delay
        self.ctx = MonitorContext()
        self._connect = connect
        self._task: asyncio.Task | None = None
        self._handlers: set[asyncio.Task] = set()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        for handler in list(self._handlers):
            handler.cancel()
        self._handlers.clear()
        self.ctx.socket = None
        logger.info("Event monitor stopped")

    async def run(self) -> None:
        """Connect, consume, reconnect until attempts are exhausted."""
        if not self.config.voting_contract_id:
            logger.warning("Voting contract not configured; proposal monitoring disabled")
            return

        logger.info("Starting proposal monitoring for %s", self.config.voting_contract_id)
        pending = [ConnectRequested()]
        while pending:
            message = pending.pop(0)
            pending.extend(await self._apply(message))

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.ctx.socket is not None and self.ctx.state.phase == Phase.CONNECTED,
            "phase": self.ctx.state.phase.value,
            "is_connecting": self.ctx.state.is_connecting,
            "reconnect_attempts": self.ctx.state.reconnect_attempts,
            "max_reconnect_attempts": self.max_attempts,
            "voting_contract": self.config.voting_contract_id,
        }

    def activity(self) -> dict[str, Any]:
        return {
            **self.status(),
            "last_message": self.ctx.activity.last_message,
            "last_event_time": self.ctx.activity.last_event_time,
            "message_count": self.ctx.activity.message_count,
        }

    # -- effect execution --------------------------------------------------

    async def _apply(self, message) -> list:
        """Run one transition and its effects; return follow-up messages."""
        self.ctx.state, effects = transition(self.ctx.state, message, self.max_attempts)
        follow_ups: list = []
        for effect in effects:
            follow_ups.extend(await self._run_effect(effect))
        return follow_ups

    async def _run_effect(self, effect) -> list:
        if isinstance(effect, OpenSocket):
            return await self._open_and_consume()

        if isinstance(effect, SendFilter):
            event_filter = build_event_filter(
                self.config.event_filter_shape,
                self.config.voting_contract_id,
                self.config.approval_event_name,
            )
            await self.ctx.socket.send(json.dumps(event_filter))
            logger.info("Event filter sent (%s)", self.config.event_filter_shape)
            return []

        if isinstance(effect, HandleFrame):
            handler = asyncio.create_task(self.handle_frame(effect.text))
            self._handlers.add(handler)
            handler.add_done_callback(self._handlers.discard)
            return []

        if isinstance(effect, CloseSocket):
            socket, self.ctx.socket = self.ctx.socket, None
            if socket is not None:
                try:
                    await socket.close()
                except (WebSocketException, OSError) as exc:
                    logger.debug("Error while closing event socket: %s", exc)
            return []

        if isinstance(effect, ScheduleReconnect):
            delay = min(self.reconnect_base_delay * effect.attempt, RECONNECT_MAX_DELAY)
            logger.info(
                "Reconnecting event stream in %.1fs (attempt %d/%d)",
                delay, effect.attempt, self.max_attempts,
            )
            if delay:
                await asyncio.sleep(delay)
            return [ConnectRequested()]

        if isinstance(effect, GiveUp):
            logger.error("Max reconnection attempts reached; event monitoring stopped")
            return []

        raise TypeError(f"Unknown monitor effect: {effect!r}")

    async def _open_and_consume(self) -> list:
        logger.info("Connecting to event stream %s", self.config.events_ws_url)
        try:
            async with self._connect(
                self.config.events_ws_url,
                ping_interval=30,
                ping_timeout=10,
            ) as socket:
                self.ctx.socket = socket
                logger.info("Event stream connected")
                await self._apply(Opened())

                async for raw in socket:
                    text = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
                    await self._apply(FrameReceived(text))
        except ConnectionClosed as exc:
            logger.warning("Event stream closed: %s", exc)
        except (WebSocketException, OSError, TimeoutError, asyncio.TimeoutError) as exc:
            logger.error("Event stream error: %s", exc)
            await self._apply(Errored(str(exc)))
        finally:
            self.ctx.socket = None

        return [Closed()]

    # -- event handling ----------------------------------------------------

    async def handle_frame(self, text: str) -> list[VoteDecision]:
        """Process one frame. Never raises; failures are logged per event."""
        self.ctx.activity.last_message = text
        self.ctx.activity.last_event_time = datetime.now(timezone.utc).isoformat()
        self.ctx.activity.message_count += 1

        envelopes = parse_frame(text)
        if not envelopes:
            logger.debug("Ignoring non-event frame: %s", text[:200])
            return []

        decisions: list[VoteDecision] = []
        for envelope in envelopes:
            event = normalize_event(envelope)
            if event is None:
                continue
            try:
                decision = await self.dispatch(event)
            except Exception:
                logger.exception("Failed to process %s for proposal %s", event.event_type, event.proposal_id)
                continue
            if decision is not None:
                decisions.append(decision)
        return decisions

    async def dispatch(self, event: ChainEvent) -> VoteDecision | None:
        if not is_approval_event(event.event_type, self.config.approval_event_name):
            logger.debug("Unhandled event type: %s", event.event_type)
            return None
        return await self.handle_approval(event)

    async def handle_approval(self, event: ChainEvent) -> VoteDecision | None:
        proposal_id = event.proposal_id
        logger.info("Processing approval for proposal %s", proposal_id)
        if event.details.get("reviewer_id"):
            logger.info("Reviewer: %s", event.details["reviewer_id"])

        proposal = await poll_until_ready(self.protocol, proposal_id, self.readiness_delays)
        if proposal is None:
            logger.warning("Skipping vote for proposal %s: proposal never became ready", proposal_id)
            return None

        decision = await self.engine.evaluate(proposal_id, proposal)
        if decision.execution_result is not None and decision.execution_result.transaction_hash:
            logger.info(
                "Proposal %s: vote on-chain (%s)",
                proposal_id, decision.execution_result.transaction_hash,
            )
        elif decision.selected_option is None:
            logger.info("Proposal %s: no voting choice recorded", proposal_id)
        return decision
