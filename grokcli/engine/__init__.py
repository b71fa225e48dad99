"""Grok agent runtime: orchestration loop, tool dispatch, MCP client."""
from .models import (
    AgentPhase,
    ConnectionState,
    ConversationEntry,
    Decision,
    DecisionKind,
    EntryKind,
    PendingConfirmation,
    ToolCallRequest,
    ToolDescriptor,
    ToolResult,
)
from .config import EngineConfig
from .errors import (
    ConfigError,
    GrokError,
    InvalidTransitionError,
    ModelAPIError,
    OperationAborted,
    ProtocolError,
    ProtocolTimeoutError,
    ServerNotFoundError,
    ToolRegistrationError,
    TransportClosedError,
    TransportError,
)

__all__ = [
    # Orchestrator (lazy import)
    "GrokAgent",
    "ConfirmationGate",
    "ToolDispatcher",
    "ToolRegistry",
    "StreamAssembler",
    # Models
    "AgentPhase",
    "ConnectionState",
    "ConversationEntry",
    "Decision",
    "DecisionKind",
    "EntryKind",
    "PendingConfirmation",
    "ToolCallRequest",
    "ToolDescriptor",
    "ToolResult",
    # Config
    "EngineConfig",
    "MCPServerConfig",
    "load_settings",
    "resolve_settings",
    # Providers and protocol client (lazy import)
    "ModelClient",
    "GrokProvider",
    "ProtocolClient",
    # Errors
    "ConfigError",
    "GrokError",
    "InvalidTransitionError",
    "ModelAPIError",
    "OperationAborted",
    "ProtocolError",
    "ProtocolTimeoutError",
    "ServerNotFoundError",
    "ToolRegistrationError",
    "TransportClosedError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "GrokAgent":
        from .agent import GrokAgent
        return GrokAgent
    if name == "ConfirmationGate":
        from .confirmation import ConfirmationGate
        return ConfirmationGate
    if name == "ToolDispatcher":
        from .dispatcher import ToolDispatcher
        return ToolDispatcher
    if name == "ToolRegistry":
        from .dispatcher import ToolRegistry
        return ToolRegistry
    if name == "StreamAssembler":
        from .assembler import StreamAssembler
        return StreamAssembler
    if name == "MCPServerConfig":
        from .yaml_config import MCPServerConfig
        return MCPServerConfig
    if name == "load_settings":
        from .yaml_config import load_settings
        return load_settings
    if name == "resolve_settings":
        from .yaml_config import resolve_settings
        return resolve_settings
    if name == "ModelClient":
        from .providers.base import ModelClient
        return ModelClient
    if name == "GrokProvider":
        from .providers.grok_provider import GrokProvider
        return GrokProvider
    if name == "ProtocolClient":
        from .mcp.client import ProtocolClient
        return ProtocolClient
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
