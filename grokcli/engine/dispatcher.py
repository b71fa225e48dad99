"""Tool registry and execution dispatcher.

Resolution order for a requested name:

1. built-in registry (closed name -> BuiltinTool mapping)
2. protocol catalog, by exact namespaced name (``mcp__server__tool``)
3. otherwise a single "Unknown tool" failure

Every outcome is a ToolResult. Handler exceptions, protocol errors and
timeouts are converted here so a failing tool never ends the turn.
Only asyncio.CancelledError propagates (user abort).
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .confirmation import ConfirmationGate
from .errors import ToolRegistrationError
from .models import (
    CATEGORY_MCP,
    MCP_TOOL_PREFIX,
    TOOL_NAME_RE,
    PendingConfirmation,
    ToolCallRequest,
    ToolDescriptor,
    ToolResult,
)
from .tools.base import BuiltinTool

if TYPE_CHECKING:
    from .mcp.client import ProtocolClient

logger = logging.getLogger(__name__)

REJECTED_DEFAULT = "Operation cancelled by user"


class ToolRegistry:
    """Closed mapping of built-in tool names to handlers."""

    def __init__(self, tools: list[BuiltinTool] | None = None) -> None:
        self._tools: dict[str, BuiltinTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BuiltinTool) -> None:
        name = tool.name
        if not TOOL_NAME_RE.match(name):
            raise ToolRegistrationError(name, "name must match [A-Za-z0-9_-]{1,64}")
        if name.startswith(MCP_TOOL_PREFIX):
            raise ToolRegistrationError(
                name, f"prefix '{MCP_TOOL_PREFIX}' is reserved for protocol tools",
            )
        if name in self._tools:
            raise ToolRegistrationError(name, "already registered")
        self._tools[name] = tool
        logger.debug("Registered built-in tool %s", name)

    def get(self, name: str) -> BuiltinTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return [tool.descriptor() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


class ToolDispatcher:
    """Resolve, gate, invoke, normalize."""

    def __init__(
        self,
        registry: ToolRegistry,
        gate: ConfirmationGate,
        protocol_client: ProtocolClient | None = None,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.protocol_client = protocol_client

    def catalog(self) -> list[ToolDescriptor]:
        """Built-ins first, then tools of Ready protocol servers."""
        descriptors = self.registry.descriptors()
        if self.protocol_client is not None:
            descriptors.extend(self.protocol_client.get_tools())
        return descriptors

    def tool_definitions(self) -> list[dict[str, Any]]:
        return [d.to_openai_tool() for d in self.catalog()]

    async def dispatch(self, call: ToolCallRequest) -> ToolResult:
        """Execute a call as assembled from the model stream."""
        if call.parse_error:
            return ToolResult.fail(f"Invalid tool arguments: {call.parse_error}")
        return await self.execute(call.name, call.arguments or {})

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        try:
            tool = self.registry.get(name)
            if tool is not None:
                return await self._run_builtin(tool, arguments)
            if self.protocol_client is not None and self.protocol_client.has_tool(name):
                return await self._run_protocol(name, arguments)
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return ToolResult.fail(f"Tool '{name}' failed: {exc}")
        logger.warning("Unknown tool requested: %s", name)
        return ToolResult.fail(f"Unknown tool: {name}")

    async def _run_builtin(
        self, tool: BuiltinTool, arguments: dict[str, Any],
    ) -> ToolResult:
        pending = tool.confirmation_for(arguments)
        if pending is not None:
            rejection = await self._confirm(pending)
            if rejection is not None:
                return rejection
        return await tool.execute(arguments)

    async def _run_protocol(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        assert self.protocol_client is not None
        descriptor = self.protocol_client.get_tool(name)
        if descriptor is not None and self.protocol_client.requires_confirmation(
            descriptor.origin,
        ):
            rejection = await self._confirm(PendingConfirmation(
                operation=f"Call MCP tool {descriptor.remote_name or name}",
                target=descriptor.origin,
                category=CATEGORY_MCP,
                preview=_format_arguments(arguments),
            ))
            if rejection is not None:
                return rejection
        return await self.protocol_client.invoke(name, arguments)

    async def _confirm(self, pending: PendingConfirmation) -> ToolResult | None:
        """Await the gate. Returns a failure result on rejection, else None."""
        decision = await self.gate.request(pending)
        if decision.is_approved:
            return None
        return ToolResult.fail(decision.feedback or REJECTED_DEFAULT)


def _format_arguments(arguments: dict[str, Any]) -> str:
    lines = [f"{key}: {value!r}" for key, value in arguments.items()]
    return "\n".join(lines) or "(no arguments)"
