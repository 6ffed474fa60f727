"""
Agent Configuration

All deployment-specific values come from environment variables. Where
the vote is submitted (proxy account or voting contract) and how the
event feed is filtered are both settings, not separate code paths.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SUBMISSION_MODES = ("proxy", "direct")
EVENT_FILTER_SHAPES = ("account_event", "function_call")


@dataclass
class AgentConfig:
    """Everything the pipeline needs to reach the chain, signer and model."""
    voting_contract_id: str = "vote.ballotbox.testnet"
    venear_contract_id: str = "v.hos03.testnet"
    rpc_url: str = "https://rpc.testnet.near.org"
    events_ws_url: str = "wss://ws-events-v3-testnet.intear.tech/events/log_nep297"
    event_filter_shape: str = "account_event"
    approval_event_name: str = "proposal_approve"

    # Vote submission target
    submission_mode: str = "proxy"
    proxy_contract_id: str | None = None
    vote_gas: str = "300000000000000"
    vote_deposit: str = "1000000000000000000000"  # 0.001 NEAR

    # Remote signer
    signer_api_url: str = "http://localhost:3140"
    agent_account_id: str | None = None

    # Inference
    ai_api_key: str | None = None
    ai_api_url: str = "https://cloud-api.near.ai/v1/chat/completions"
    ai_model: str = "gpt-oss-120b"

    # Timeouts (seconds)
    rpc_timeout: float = 10.0
    signer_timeout: float = 30.0
    ai_timeout: float = 60.0
    queue_call_timeout: float = 30.0

    # Operator keys allowed to use mutating endpoints (sha256:<hex> each)
    operator_key_fingerprints: list[str] = field(default_factory=list)

    max_reconnect_attempts: int = 5
    history_limit: int = 1000
    port: int = 3000
    log_level: str = "INFO"

    def __post_init__(self):
        if self.submission_mode not in SUBMISSION_MODES:
            raise ValueError(
                f"Unknown submission mode '{self.submission_mode}' "
                f"(expected one of {', '.join(SUBMISSION_MODES)})"
            )
        if self.event_filter_shape not in EVENT_FILTER_SHAPES:
            raise ValueError(
                f"Unknown event filter shape '{self.event_filter_shape}' "
                f"(expected one of {', '.join(EVENT_FILTER_SHAPES)})"
            )


def _split_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_config(env: dict[str, str] | None = None) -> AgentConfig:
    """Build an AgentConfig from environment variables (defaults otherwise)."""
    env = os.environ if env is None else env
    defaults = AgentConfig()

    return AgentConfig(
        voting_contract_id=env.get("VOTING_CONTRACT_ID", defaults.voting_contract_id),
        venear_contract_id=env.get("VENEAR_CONTRACT_ID", defaults.venear_contract_id),
        rpc_url=env.get("NEAR_RPC_JSON", defaults.rpc_url),
        events_ws_url=env.get("EVENTS_WS_URL", defaults.events_ws_url),
        event_filter_shape=env.get("EVENT_FILTER_SHAPE", defaults.event_filter_shape),
        approval_event_name=env.get("APPROVAL_EVENT_NAME", defaults.approval_event_name),
        submission_mode=env.get("VOTE_SUBMISSION_MODE", defaults.submission_mode),
        proxy_contract_id=env.get("PROXY_CONTRACT_ID") or None,
        vote_gas=env.get("VOTE_GAS", defaults.vote_gas),
        vote_deposit=env.get("VOTE_DEPOSIT", defaults.vote_deposit),
        signer_api_url=env.get("SIGNER_API_URL", defaults.signer_api_url),
        agent_account_id=env.get("AGENT_ACCOUNT_ID") or None,
        ai_api_key=env.get("NEAR_AI_CLOUD_API_KEY") or None,
        ai_api_url=env.get("AI_API_URL", defaults.ai_api_url),
        ai_model=env.get("AI_MODEL", defaults.ai_model),
        rpc_timeout=float(env.get("RPC_TIMEOUT_SECONDS", defaults.rpc_timeout)),
        signer_timeout=float(env.get("SIGNER_TIMEOUT_SECONDS", defaults.signer_timeout)),
        ai_timeout=float(env.get("AI_TIMEOUT_SECONDS", defaults.ai_timeout)),
        queue_call_timeout=float(
            env.get("QUEUE_CALL_TIMEOUT_SECONDS", defaults.queue_call_timeout)
        ),
        operator_key_fingerprints=_split_list(env.get("OPERATOR_KEY_FINGERPRINTS")),
        max_reconnect_attempts=int(
            env.get("MAX_RECONNECT_ATTEMPTS", defaults.max_reconnect_attempts)
        ),
        history_limit=int(env.get("HISTORY_LIMIT", defaults.history_limit)),
        port=int(env.get("PORT", defaults.port)),
        log_level=env.get("LOG_LEVEL", defaults.log_level),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the whole process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
