from typing import Any

import pytest
from unittest.mock import AsyncMock, MagicMock

from grokcli.engine.confirmation import ConfirmationGate
from grokcli.engine.dispatcher import ToolDispatcher, ToolRegistry
from grokcli.engine.errors import ToolRegistrationError
from grokcli.engine.models import (
    CATEGORY_FILE,
    CATEGORY_MCP,
    Decision,
    PendingConfirmation,
    ToolCallRequest,
    ToolDescriptor,
    ToolResult,
)
from grokcli.engine.tools.base import BuiltinTool, object_schema


class _EchoTool(BuiltinTool):
    def __init__(self, name: str = "echo", *, mutating: bool = False) -> None:
        self._name = name
        self.mutating = mutating
        self.calls: list[dict[str, Any]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return "Echo the text argument"

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema({"text": {"type": "string"}}, ["text"])

    def confirmation_for(self, arguments):
        if not self.mutating:
            return None
        return PendingConfirmation("Write", arguments.get("text", ""), CATEGORY_FILE)

    async def execute(self, arguments):
        self.calls.append(arguments)
        return ToolResult.ok(arguments.get("text", ""))


class _BrokenTool(_EchoTool):
    async def execute(self, arguments):
        raise OSError("disk on fire")


def _dispatcher(*tools, decision=None, protocol_client=None):
    callback = AsyncMock(return_value=decision or Decision.approved())
    gate = ConfirmationGate(callback)
    return ToolDispatcher(ToolRegistry(list(tools)), gate, protocol_client), callback


def test_registry_rejects_duplicates_and_bad_names() -> None:
    registry = ToolRegistry([_EchoTool()])

    with pytest.raises(ToolRegistrationError):
        registry.register(_EchoTool())
    with pytest.raises(ToolRegistrationError):
        registry.register(_EchoTool("has space"))
    with pytest.raises(ToolRegistrationError):
        registry.register(_EchoTool("x" * 65))
    with pytest.raises(ToolRegistrationError):
        registry.register(_EchoTool("mcp__fs__read"))

    assert registry.names() == ["echo"]
    assert "echo" in registry
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_unknown_tool_is_a_failure_result() -> None:
    dispatcher, _ = _dispatcher(_EchoTool())

    result = await dispatcher.execute("nope", {})

    assert not result.success
    assert result.error == "Unknown tool: nope"


@pytest.mark.asyncio
async def test_handler_exception_becomes_failure() -> None:
    dispatcher, _ = _dispatcher(_BrokenTool("broken"))

    result = await dispatcher.execute("broken", {"text": "x"})

    assert not result.success
    assert "disk on fire" in result.error


@pytest.mark.asyncio
async def test_parse_error_skips_handler() -> None:
    tool = _EchoTool()
    dispatcher, _ = _dispatcher(tool)
    call = ToolCallRequest(id="c1", name="echo", arguments_raw="{bad", parse_error="boom")

    result = await dispatcher.dispatch(call)

    assert not result.success
    assert result.error == "Invalid tool arguments: boom"
    assert tool.calls == []


@pytest.mark.asyncio
async def test_read_only_call_is_not_gated() -> None:
    tool = _EchoTool()
    dispatcher, callback = _dispatcher(tool)

    result = await dispatcher.execute("echo", {"text": "hi"})

    assert result.success
    assert result.output == "hi"
    callback.assert_not_awaited()


@pytest.mark.asyncio
async def test_rejection_feedback_is_returned_verbatim() -> None:
    tool = _EchoTool(mutating=True)
    dispatcher, callback = _dispatcher(tool, decision=Decision.rejected("not now"))

    result = await dispatcher.execute("echo", {"text": "hi"})

    assert not result.success
    assert result.error == "not now"
    assert tool.calls == []
    callback.assert_awaited_once()


@pytest.mark.asyncio
async def test_rejection_without_feedback_uses_default_message() -> None:
    dispatcher, _ = _dispatcher(_EchoTool(mutating=True), decision=Decision.rejected())

    result = await dispatcher.execute("echo", {"text": "hi"})

    assert result.error == "Operation cancelled by user"


def _protocol_client(requires_confirmation: bool) -> MagicMock:
    client = MagicMock()
    descriptor = ToolDescriptor(
        name="mcp__fs__read", description="read", origin="fs", remote_name="read",
    )
    client.get_tools.return_value = [descriptor]
    client.has_tool.side_effect = lambda name: name == descriptor.name
    client.get_tool.return_value = descriptor
    client.requires_confirmation.return_value = requires_confirmation
    client.invoke = AsyncMock(return_value=ToolResult.ok("contents"))
    return client


@pytest.mark.asyncio
async def test_protocol_tool_is_invoked_without_gate_by_default() -> None:
    client = _protocol_client(requires_confirmation=False)
    dispatcher, callback = _dispatcher(_EchoTool(), protocol_client=client)

    result = await dispatcher.execute("mcp__fs__read", {"path": "a"})

    assert result.output == "contents"
    client.invoke.assert_awaited_once_with("mcp__fs__read", {"path": "a"})
    callback.assert_not_awaited()


@pytest.mark.asyncio
async def test_protocol_tool_gated_when_server_requires_it() -> None:
    client = _protocol_client(requires_confirmation=True)
    dispatcher, callback = _dispatcher(
        _EchoTool(), protocol_client=client, decision=Decision.rejected(),
    )

    result = await dispatcher.execute("mcp__fs__read", {"path": "a"})

    assert not result.success
    client.invoke.assert_not_awaited()
    pending = callback.await_args.args[0]
    assert pending.category == CATEGORY_MCP
    assert pending.target == "fs"


@pytest.mark.asyncio
async def test_catalog_lists_builtins_before_protocol_tools() -> None:
    client = _protocol_client(requires_confirmation=False)
    dispatcher, _ = _dispatcher(_EchoTool(), protocol_client=client)

    names = [d["function"]["name"] for d in dispatcher.tool_definitions()]

    assert names == ["echo", "mcp__fs__read"]
