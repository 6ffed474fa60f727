"""
Agent Context
Owns every long-lived service instance for one pipeline deployment.

Nothing in the pipeline reaches for module-level singletons; the HTTP layer
and the monitor task both receive this object.
"""

from __future__ import annotations

from dataclasses import dataclass

from ballot.call_queue import SignerCallQueue
from ballot.chain import VotingProtocol
from ballot.config import AgentConfig
from ballot.decision_engine import DecisionEngine
from ballot.inference import InferenceClient
from ballot.monitor import EventMonitor
from ballot.rpc import ChainRpcClient
from ballot.signer import QueuedSigner, SignerClient


@dataclass
class AgentContext:
    config: AgentConfig
    queue: SignerCallQueue
    rpc: ChainRpcClient
    signer: QueuedSigner
    inference: InferenceClient
    protocol: VotingProtocol
    engine: DecisionEngine
    monitor: EventMonitor

    async def aclose(self) -> None:
        await self.monitor.stop()
        await self.queue.shutdown()
        await self.rpc.aclose()
        await self.signer.client.aclose()
        await self.inference.aclose()


def build_context(config: AgentConfig) -> AgentContext:
    """Wire the pipeline together from configuration."""
    queue = SignerCallQueue(call_timeout=config.queue_call_timeout)
    rpc = ChainRpcClient(config.rpc_url, timeout=config.rpc_timeout)
    signer = QueuedSigner(
        SignerClient(config.signer_api_url, timeout=config.signer_timeout),
        queue,
    )
    inference = InferenceClient(
        api_url=config.ai_api_url,
        api_key=config.ai_api_key,
        model=config.ai_model,
        timeout=config.ai_timeout,
    )
    protocol = VotingProtocol(rpc, signer, config)
    engine = DecisionEngine(protocol, inference, history_limit=config.history_limit)
    monitor = EventMonitor(config, protocol, engine)

    return AgentContext(
        config=config,
        queue=queue,
        rpc=rpc,
        signer=signer,
        inference=inference,
        protocol=protocol,
        engine=engine,
        monitor=monitor,
    )
