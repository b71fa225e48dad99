"""Core data models for the agent runtime.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# Session-flag categories. ALL_OPERATIONS short-circuits every category.
CATEGORY_FILE = "file"
CATEGORY_BASH = "bash"
CATEGORY_MCP = "mcp"
ALL_OPERATIONS = "all"

BUILTIN_ORIGIN = "builtin"
MCP_TOOL_PREFIX = "mcp__"

# Names the model API accepts for function tools.
TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class EntryKind(str, Enum):
    """Discriminator for conversation entries."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class AgentPhase(str, Enum):
    """Orchestrator turn states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_ROUND = "tool_round"
    DONE = "done"
    ABORTED = "aborted"
    ERROR = "error"


class ConnectionState(str, Enum):
    """Protocol server connection states. See lifecycle.py."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


class DecisionKind(str, Enum):
    """Human answers to a confirmation prompt."""
    APPROVED = "approved"
    APPROVED_REMEMBER = "approved_remember"
    REJECTED = "rejected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the model.

    ``arguments_raw`` is the concatenated argument payload exactly as
    streamed. ``arguments`` is only populated once the assembler has
    seen the terminal signal and parsed the payload; on failure
    ``parse_error`` carries the reason instead.
    """
    id: str
    name: str
    arguments_raw: str = ""
    arguments: dict[str, Any] | None = None
    parse_error: str | None = None

    def to_message(self) -> dict[str, Any]:
        """Shape used inside an assistant message sent back to the model."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_raw},
        }


@dataclass
class ToolResult:
    """Normalized outcome of any tool invocation."""
    success: bool
    output: str | None = None
    error: str | None = None
    data: Any = None

    @classmethod
    def ok(cls, output: str | None = None, data: Any = None) -> ToolResult:
        return cls(success=True, output=output or "Success", data=data)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error or "Error occurred")

    def as_text(self) -> str:
        """Text fed back to the model as the tool message content."""
        if self.success:
            return self.output or "Success"
        return self.error or "Error occurred"


@dataclass
class ToolDescriptor:
    """One entry of the merged tool catalog.

    ``origin`` is ``"builtin"`` or the name of the protocol server the
    tool was discovered on. ``remote_name`` is the server-side name for
    protocol tools (the catalog name is namespaced).
    """
    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}},
    )
    origin: str = BUILTIN_ORIGIN
    remote_name: str | None = None

    @property
    def is_builtin(self) -> bool:
        return self.origin == BUILTIN_ORIGIN

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def namespaced_tool_name(server: str, tool: str) -> str:
    """Catalog name for a protocol-sourced tool."""
    return f"{MCP_TOOL_PREFIX}{server}__{tool}"


@dataclass
class PendingConfirmation:
    """A mutating operation waiting for a human decision."""
    operation: str
    target: str
    category: str
    preview: str | None = None


@dataclass
class Decision:
    """Answer from the Confirmation Gate."""
    kind: DecisionKind
    feedback: str | None = None

    @classmethod
    def approved(cls) -> Decision:
        return cls(DecisionKind.APPROVED)

    @classmethod
    def approved_remember(cls) -> Decision:
        return cls(DecisionKind.APPROVED_REMEMBER)

    @classmethod
    def rejected(cls, feedback: str | None = None) -> Decision:
        return cls(DecisionKind.REJECTED, feedback)

    @property
    def is_approved(self) -> bool:
        return self.kind in (DecisionKind.APPROVED, DecisionKind.APPROVED_REMEMBER)


@dataclass
class ConversationEntry:
    """One visible item of the conversation.

    Owned by the orchestrator; callers get copies via get_entries().
    """
    kind: EntryKind
    content: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    is_streaming: bool = False
    tool_calls: list[ToolCallRequest] | None = None
    tool_call: ToolCallRequest | None = None
    tool_result: ToolResult | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls:
            data["tool_calls"] = [tc.to_message() for tc in self.tool_calls]
        if self.tool_call is not None:
            data["tool_call"] = self.tool_call.to_message()
        if self.tool_result is not None:
            data["tool_result"] = {
                "success": self.tool_result.success,
                "output": self.tool_result.output,
                "error": self.tool_result.error,
            }
        return data


def parse_tool_arguments(raw: str) -> tuple[dict[str, Any] | None, str | None]:
    """Parse a complete argument payload. Returns (arguments, error)."""
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        return None, f"Invalid JSON in tool arguments: {exc}"
    if not isinstance(parsed, dict):
        return None, (
            f"Tool arguments must be a JSON object, got {type(parsed).__name__}"
        )
    return parsed, None
