"""Event types emitted by the agent orchestrator.

The terminal layer (or a headless driver) observes a turn only
through this typed stream.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any

from .models import ToolCallRequest, ToolResult

OUTCOME_DONE = "done"
OUTCOME_ABORTED = "aborted"
OUTCOME_ROUND_LIMIT = "round_limit"
OUTCOME_ERROR = "error"


@dataclass
class AgentEvent:
    """Base event from the orchestrator."""
    event_type: str = ""


@dataclass
class ContentEvent(AgentEvent):
    event_type: str = "content"
    content: str = ""


@dataclass
class TokenCountEvent(AgentEvent):
    event_type: str = "token_count"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ToolCallsEvent(AgentEvent):
    event_type: str = "tool_calls"
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


@dataclass
class ToolResultEvent(AgentEvent):
    event_type: str = "tool_result"
    tool_call: ToolCallRequest | None = None
    result: ToolResult | None = None


@dataclass
class ErrorEvent(AgentEvent):
    event_type: str = "error"
    message: str = ""


@dataclass
class DoneEvent(AgentEvent):
    event_type: str = "done"
    outcome: str = OUTCOME_DONE
    stop_reason: str | None = None


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Serialize an event for JSON output (headless --json mode)."""
    data = asdict(event) if is_dataclass(event) else {"event_type": "unknown"}
    data["event"] = data.pop("event_type")
    return data
