"""
Event Feed Normalisation

The event feed has changed field names more than once. Everything that
knows about those names lives here; the monitor only sees ChainEvent.

Accepted synonyms:
  event type     event_event | event | event_type | action.FunctionCall.method_name
  event payload  event_data[0] | data[0] | event_data | data | action.FunctionCall.args
  emitter        account_id | receiver_id
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


APPROVAL_EVENT_TYPES = ("proposal_approve", "approve_proposal")

EVENT_TYPE_FIELDS = ("event_event", "event", "event_type")
EVENT_DATA_FIELDS = ("event_data", "data")
EMITTER_FIELDS = ("account_id", "receiver_id")

NANOS_PER_SECOND = 1_000_000_000


@dataclass
class ChainEvent:
    proposal_id: str
    event_type: str
    account_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def build_event_filter(shape: str, contract_id: str, event_name: str) -> dict[str, Any]:
    """Server-side filter restricting the feed to one contract's event.

    ``account_event`` matches NEP-297 log events by emitter and event name;
    ``function_call`` matches the receipt's nested function-call action.
    """
    if shape == "account_event":
        paths = (("account_id", contract_id), ("event_event", event_name))
    elif shape == "function_call":
        paths = (
            ("receiver_id", contract_id),
            ("action.FunctionCall.method_name", event_name),
        )
    else:
        raise ValueError(f"Unknown event filter shape: {shape}")

    return {
        "And": [
            {"path": path, "operator": {"Equals": value}}
            for path, value in paths
        ]
    }


def is_approval_event(event_type: str, approval_event_name: str) -> bool:
    """Exact match on the known names, or a proposal+approve substring match."""
    lowered = event_type.strip().lower()
    names = {approval_event_name.lower(), *APPROVAL_EVENT_TYPES}
    if lowered in names:
        return True
    return "approve" in lowered and "proposal" in lowered


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse_frame(text: str) -> list[dict[str, Any]]:
    """Split one websocket frame into event envelopes. Non-JSON yields []."""
    stripped = text.strip()
    if not stripped.startswith(("{", "[")):
        return []
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return []
    if isinstance(parsed, list):
        return [event for event in parsed if isinstance(event, dict)]
    if isinstance(parsed, dict):
        return [parsed]
    return []


def _function_call(event: dict[str, Any]) -> dict[str, Any]:
    action = event.get("action")
    if isinstance(action, dict) and isinstance(action.get("FunctionCall"), dict):
        return action["FunctionCall"]
    return {}


def _decode_args(args: Any) -> dict[str, Any]:
    if isinstance(args, dict):
        return args
    if isinstance(args, str):
        for candidate in (args, _b64_or_none(args)):
            if candidate is None:
                continue
            try:
                decoded = json.loads(candidate)
            except ValueError:
                continue
            if isinstance(decoded, dict):
                return decoded
    return {}


def _b64_or_none(text: str) -> str | None:
    try:
        return base64.b64decode(text, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None


def _event_payload(event: dict[str, Any]) -> dict[str, Any]:
    for name in EVENT_DATA_FIELDS:
        data = event.get(name)
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
        if isinstance(data, dict):
            return data
    return _decode_args(_function_call(event).get("args"))


def _event_type(event: dict[str, Any]) -> str | None:
    for name in EVENT_TYPE_FIELDS:
        value = event.get(name)
        if isinstance(value, str) and value:
            return value
    method = _function_call(event).get("method_name")
    return method if isinstance(method, str) and method else None


def _emitter(event: dict[str, Any]) -> str | None:
    for name in EMITTER_FIELDS:
        value = event.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def _seconds_to_nanos(value: Any) -> str | None:
    if value is None:
        return None
    try:
        return str(int(str(value).strip(), 10) * NANOS_PER_SECOND)
    except ValueError:
        return None


def extract_details(payload: dict[str, Any]) -> dict[str, Any]:
    """Hint fields carried by an approval event (the chain stays authoritative)."""
    start_sec = payload.get("voting_start_time_sec")
    return {
        "proposal_id": payload.get("proposal_id"),
        "title": payload.get("title"),
        "description": payload.get("description"),
        "link": payload.get("link"),
        "proposer_id": payload.get("proposer_id"),
        "reviewer_id": payload.get("account_id"),
        "voting_options": payload.get("voting_options"),
        "voting_start_time_sec": start_sec,
        "voting_start_time_ns": _seconds_to_nanos(start_sec),
    }


def normalize_event(event: dict[str, Any]) -> ChainEvent | None:
    """Return a ChainEvent, or None when the envelope lacks an id or a type."""
    payload = _event_payload(event)
    raw_id = payload.get("proposal_id")
    event_type = _event_type(event)
    if raw_id is None or isinstance(raw_id, bool) or not event_type:
        return None

    return ChainEvent(
        proposal_id=str(raw_id),
        event_type=event_type,
        account_id=_emitter(event),
        details=extract_details(payload),
    )
