"""Exception hierarchy for the agent runtime.

Specific exceptions for each failure mode. Tool failures never use
this hierarchy to escape the dispatcher; they become ToolResults.
"""
from __future__ import annotations


class GrokError(Exception):
    """Base exception for all runtime errors."""


class ConfigError(GrokError):
    """Settings file or server definition is invalid."""
    def __init__(self, reason: str, source: str | None = None):
        self.reason = reason
        self.source = source
        where = f" ({source})" if source else ""
        super().__init__(f"Invalid configuration{where}: {reason}")


class InvalidTransitionError(GrokError, ValueError):
    """A state machine was asked to move along an edge it does not have."""
    def __init__(self, machine: str, current: str, target: str, allowed: list[str]):
        self.machine = machine
        self.current = current
        self.target = target
        allowed_str = ", ".join(allowed) or "none (terminal)"
        super().__init__(
            f"Invalid {machine} transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class TransportError(GrokError):
    """The channel to a tool server could not be opened or used."""
    def __init__(self, transport: str, reason: str):
        self.transport = transport
        self.reason = reason
        super().__init__(f"{transport} transport error: {reason}")


class TransportClosedError(TransportError):
    """The channel closed while callers were still waiting on it."""
    def __init__(self, transport: str, reason: str = "connection closed"):
        super().__init__(transport, reason)


class ProtocolError(GrokError):
    """Malformed frame, error reply, or a call on a connection that is not ready."""
    def __init__(self, server: str, message: str, code: int | None = None):
        self.server = server
        self.code = code
        self.detail = message
        code_str = f" [{code}]" if code is not None else ""
        super().__init__(f"MCP server '{server}'{code_str}: {message}")


class ProtocolTimeoutError(GrokError):
    """A single protocol request exceeded its time limit."""
    def __init__(self, server: str, method: str, timeout_seconds: float):
        self.server = server
        self.method = method
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"MCP request '{method}' to '{server}' "
            f"timed out after {timeout_seconds}s"
        )


class ServerNotFoundError(GrokError):
    """No connection is registered under that server name."""
    def __init__(self, server: str, available: list[str]):
        self.server = server
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"MCP server '{server}' is not connected. Connected: {avail_str}"
        )


class ToolRegistrationError(GrokError):
    """A built-in tool could not be added to the registry."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Cannot register tool '{tool_name}': {reason}")


class ModelAPIError(GrokError):
    """The model endpoint failed or returned a non-success status."""
    def __init__(self, detail: str, status: int | None = None):
        self.detail = detail
        self.status = status
        status_str = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"Grok API error{status_str}: {detail}")


class OperationAborted(GrokError):
    """The user aborted the current turn."""
    def __init__(self) -> None:
        super().__init__("Operation cancelled by user")
