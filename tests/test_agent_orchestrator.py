import asyncio
import json
from typing import Any

import pytest
from unittest.mock import AsyncMock

from grokcli.engine.agent import CANCELLED_MESSAGE, ROUND_LIMIT_MESSAGE, GrokAgent
from grokcli.engine.config import EngineConfig
from grokcli.engine.confirmation import ConfirmationGate
from grokcli.engine.errors import ModelAPIError
from grokcli.engine.events import (
    OUTCOME_ABORTED,
    OUTCOME_DONE,
    OUTCOME_ERROR,
    OUTCOME_ROUND_LIMIT,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    ToolCallsEvent,
    ToolResultEvent,
)
from grokcli.engine.models import (
    CATEGORY_BASH,
    AgentPhase,
    Decision,
    EntryKind,
    PendingConfirmation,
    ToolResult,
)
from grokcli.engine.providers.base import ModelClient
from grokcli.engine.tools.base import BuiltinTool, object_schema


def _text(content: str) -> list[dict[str, Any]]:
    return [
        {"choices": [{"delta": {"content": content}, "finish_reason": None}]},
        {"choices": [{"delta": {}, "finish_reason": "stop"}]},
    ]


def _tool_call(call_id: str, name: str, arguments: dict[str, Any], content: str = "") -> list[dict[str, Any]]:
    raw = json.dumps(arguments)
    chunks = []
    if content:
        chunks.append({"choices": [{"delta": {"content": content}, "finish_reason": None}]})
    chunks.append({"choices": [{"delta": {"tool_calls": [
        {"index": 0, "id": call_id, "function": {"name": name, "arguments": raw[:5]}},
    ]}, "finish_reason": None}]})
    chunks.append({"choices": [{"delta": {"tool_calls": [
        {"index": 0, "function": {"arguments": raw[5:]}},
    ]}, "finish_reason": None}]})
    chunks.append({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
    return chunks


class _ScriptedClient(ModelClient):
    """Replays one scripted chunk list per chat_stream call."""

    def __init__(self, responses: list[Any], *, repeat_last: bool = False) -> None:
        self._responses = list(responses)
        self._repeat_last = repeat_last
        self._model = "grok-test"
        self.requests: list[list[dict[str, Any]]] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def current_model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    async def chat(self, messages, tools=None, *, model=None):
        raise NotImplementedError

    async def chat_stream(self, messages, tools=None, *, model=None):
        self.requests.append([dict(m) for m in messages])
        if len(self._responses) > 1 or not self._repeat_last:
            response = self._responses.pop(0)
        else:
            response = self._responses[0]
        if isinstance(response, Exception):
            raise response
        for chunk in response:
            if chunk == "hang":
                await asyncio.Event().wait()
            yield chunk

    async def close(self) -> None:
        self.closed = True


class _FakeShell(BuiltinTool):
    """Records commands; 'ls' is read-only, anything else needs confirmation."""

    def __init__(self, outputs: dict[str, str] | None = None) -> None:
        self.outputs = outputs or {}
        self.commands: list[str] = []

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return "Run a command"

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema({"command": {"type": "string"}}, ["command"])

    def confirmation_for(self, arguments):
        command = arguments.get("command", "")
        if command.startswith("ls"):
            return None
        return PendingConfirmation("Run bash command", command, CATEGORY_BASH)

    async def execute(self, arguments):
        command = arguments["command"]
        self.commands.append(command)
        return ToolResult.ok(self.outputs.get(command, ""))


class _HangingTool(_FakeShell):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()

    async def execute(self, arguments):
        self.started.set()
        await asyncio.Event().wait()
        return ToolResult.ok("unreachable")


def _agent(client, tools, *, decision=None, max_rounds: int = 400) -> GrokAgent:
    config = EngineConfig(api_key="test", max_tool_rounds=max_rounds, cwd="/tmp")
    gate = ConfirmationGate(AsyncMock(return_value=decision or Decision.approved()))
    return GrokAgent(config, client=client, gate=gate, tools=tools)


async def _collect(agent: GrokAgent, message: str) -> list[Any]:
    return [event async for event in agent.process_user_message_stream(message)]


@pytest.mark.asyncio
async def test_plain_answer_ends_turn() -> None:
    client = _ScriptedClient([_text("Hello!")])
    agent = _agent(client, [_FakeShell()])

    events = await _collect(agent, "hi")

    assert [e.content for e in events if isinstance(e, ContentEvent)] == ["Hello!"]
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].outcome == OUTCOME_DONE
    entries = agent.get_entries()
    assert [e.kind for e in entries] == [EntryKind.USER, EntryKind.ASSISTANT]
    assert entries[1].content == "Hello!"
    assert not entries[1].is_streaming
    assert agent.phase == AgentPhase.DONE
    assert client.requests[0][0]["role"] == "system"
    assert "/tmp" in client.requests[0][0]["content"]


@pytest.mark.asyncio
async def test_tool_round_then_answer() -> None:
    client = _ScriptedClient([
        _tool_call("call_1", "bash", {"command": "ls"}),
        _text("Two files: a.py and b.py"),
    ])
    shell = _FakeShell({"ls": "a.py\nb.py"})
    agent = _agent(client, [shell])

    events = await _collect(agent, "list files")

    assert shell.commands == ["ls"]
    results = [e for e in events if isinstance(e, ToolResultEvent)]
    assert len(results) == 1
    assert results[0].result.output == "a.py\nb.py"
    assert events[-1].outcome == OUTCOME_DONE

    kinds = [e.kind for e in agent.get_entries()]
    assert kinds == [
        EntryKind.USER, EntryKind.ASSISTANT, EntryKind.TOOL_RESULT, EntryKind.ASSISTANT,
    ]

    second_request = client.requests[1]
    assert second_request[-2]["role"] == "assistant"
    assert second_request[-2]["tool_calls"][0]["function"]["arguments"] == '{"command": "ls"}'
    assert second_request[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "a.py\nb.py"}


@pytest.mark.asyncio
async def test_rejection_feedback_reaches_the_model() -> None:
    client = _ScriptedClient([
        _tool_call("call_1", "bash", {"command": "rm -rf build"}),
        _text("Okay, I will leave it."),
    ])
    shell = _FakeShell()
    agent = _agent(client, [shell], decision=Decision.rejected("not now"))

    entries = await agent.process_user_message("clean up")

    assert shell.commands == []
    tool_entry = entries[2]
    assert tool_entry.kind == EntryKind.TOOL_RESULT
    assert not tool_entry.tool_result.success
    assert tool_entry.content == "not now"
    assert {"role": "tool", "tool_call_id": "call_1", "content": "not now"} in client.requests[1]


@pytest.mark.asyncio
async def test_round_limit_stops_the_loop() -> None:
    client = _ScriptedClient([_tool_call("call_1", "bash", {"command": "ls"})], repeat_last=True)
    agent = _agent(client, [_FakeShell()], max_rounds=2)

    events = await _collect(agent, "loop forever")

    assert events[-1].outcome == OUTCOME_ROUND_LIMIT
    assert len(client.requests) == 2
    assert agent.rounds == 2
    assert agent.get_entries()[-1].content == ROUND_LIMIT_MESSAGE


@pytest.mark.asyncio
async def test_model_error_keeps_conversation() -> None:
    client = _ScriptedClient([ModelAPIError("bad key", status=401), _text("fine now")])
    agent = _agent(client, [_FakeShell()])

    events = await _collect(agent, "hi")

    assert isinstance(events[-2], ErrorEvent)
    assert "bad key" in events[-2].message
    assert events[-1].outcome == OUTCOME_ERROR
    entries = agent.get_entries()
    assert entries[-1].content.startswith("Sorry, I encountered an error:")
    assert agent.phase == AgentPhase.ERROR

    events = await _collect(agent, "again")
    assert events[-1].outcome == OUTCOME_DONE
    assert [m["content"] for m in client.requests[1] if m["role"] == "user"] == ["hi", "again"]


@pytest.mark.asyncio
async def test_truncated_stream_records_failed_calls() -> None:
    chunks = _tool_call("call_1", "bash", {"command": "ls"})[:-1]
    client = _ScriptedClient([chunks])
    shell = _FakeShell()
    agent = _agent(client, [shell])

    events = await _collect(agent, "list")

    assert shell.commands == []
    assert any(isinstance(e, ToolCallsEvent) for e in events)
    assert events[-1].outcome == OUTCOME_ERROR
    tool_entry = agent.get_entries()[-1]
    assert tool_entry.kind == EntryKind.TOOL_RESULT
    assert not tool_entry.tool_result.success
    history = agent.get_messages()
    assert history[-2]["tool_calls"][0]["id"] == "call_1"
    assert history[-1]["tool_call_id"] == "call_1"


@pytest.mark.asyncio
async def test_abort_during_tool_execution() -> None:
    client = _ScriptedClient([_tool_call("call_1", "bash", {"command": "ls"})])
    tool = _HangingTool()
    agent = _agent(client, [tool])

    task = asyncio.create_task(_collect(agent, "list"))
    await asyncio.wait_for(tool.started.wait(), timeout=5)
    agent.abort_current_operation()
    events = await asyncio.wait_for(task, timeout=5)

    assert events[-1].outcome == OUTCOME_ABORTED
    assert agent.phase == AgentPhase.ABORTED
    entries = agent.get_entries()
    assert [e.kind for e in entries] == [
        EntryKind.USER, EntryKind.ASSISTANT, EntryKind.TOOL_RESULT, EntryKind.ASSISTANT,
    ]
    assert entries[2].tool_result.error == "Operation cancelled by user"
    assert entries[-1].content == CANCELLED_MESSAGE
    assert not any(e.is_streaming for e in entries)
    assert agent.get_messages()[-1]["tool_call_id"] == "call_1"


@pytest.mark.asyncio
async def test_abort_during_streaming_marks_partial_answer() -> None:
    client = _ScriptedClient([[
        {"choices": [{"delta": {"content": "Working on"}, "finish_reason": None}]},
        "hang",
    ]])
    agent = _agent(client, [_FakeShell()])

    events = []
    async for event in agent.process_user_message_stream("go"):
        events.append(event)
        if isinstance(event, ContentEvent):
            agent.abort_current_operation()

    assert events[-1].outcome == OUTCOME_ABORTED
    entries = agent.get_entries()
    assert entries[-1].content == f"Working on\n\n{CANCELLED_MESSAGE}"
    assert not entries[-1].is_streaming


@pytest.mark.asyncio
async def test_abort_when_idle_is_a_noop() -> None:
    agent = _agent(_ScriptedClient([_text("x")]), [_FakeShell()])

    agent.abort_current_operation()
    events = await _collect(agent, "hi")

    assert events[-1].outcome == OUTCOME_DONE


@pytest.mark.asyncio
async def test_clear_conversation_resets_history_and_flags() -> None:
    agent = _agent(_ScriptedClient([_text("x")]), [_FakeShell()])
    await agent.process_user_message("hi")
    agent.gate.set_session_flag(CATEGORY_BASH, True)

    agent.clear_conversation()

    assert agent.get_entries() == []
    assert [m["role"] for m in agent.get_messages()] == ["system"]
    assert agent.gate.get_session_flags() == {}
    assert agent.phase == AgentPhase.IDLE


@pytest.mark.asyncio
async def test_execute_bash_command_bypasses_gate() -> None:
    shell = _FakeShell({"make": "built"})
    gate_callback = AsyncMock(return_value=Decision.rejected())
    config = EngineConfig(api_key="test")
    agent = GrokAgent(
        config, client=_ScriptedClient([]), gate=ConfirmationGate(gate_callback), tools=[shell],
    )

    result = await agent.execute_bash_command("make")

    assert result.output == "built"
    gate_callback.assert_not_awaited()
    assert agent.get_entries()[-1].kind == EntryKind.TOOL_RESULT


@pytest.mark.asyncio
async def test_model_selection_and_close() -> None:
    client = _ScriptedClient([])
    agent = _agent(client, [_FakeShell()])

    agent.set_model("grok-4")
    await agent.close()

    assert agent.get_current_model() == "grok-4"
    assert client.closed


class _BrokenTool(_FakeShell):
    async def execute(self, arguments):
        raise RuntimeError("disk on fire")


@pytest.mark.asyncio
async def test_raising_tool_does_not_end_the_round() -> None:
    client = _ScriptedClient([
        _tool_call("call_1", "bash", {"command": "ls"}),
        _text("The command crashed."),
    ])
    agent = _agent(client, [_BrokenTool()])

    events = await _collect(agent, "list files")

    results = [e for e in events if isinstance(e, ToolResultEvent)]
    assert len(results) == 1
    assert not results[0].result.success
    assert "disk on fire" in results[0].result.error
    assert events[-1].outcome == OUTCOME_DONE
    assert len(client.requests) == 2
    tool_message = client.requests[1][-1]
    assert tool_message["tool_call_id"] == "call_1"
    assert "disk on fire" in tool_message["content"]


@pytest.mark.asyncio
async def test_closing_the_event_stream_early_releases_the_turn() -> None:
    client = _ScriptedClient([
        [{"choices": [{"delta": {"content": "Working on"}, "finish_reason": None}]}, "hang"],
        _text("Second answer"),
    ])
    agent = _agent(client, [_FakeShell()])

    stream = agent.process_user_message_stream("go")
    async for event in stream:
        if isinstance(event, ContentEvent):
            break
    await stream.aclose()

    assert not agent.is_busy
    assert agent.phase == AgentPhase.ABORTED
    assert not any(e.is_streaming for e in agent.get_entries())
    assert agent.get_entries()[-1].content == f"Working on\n\n{CANCELLED_MESSAGE}"

    events = await _collect(agent, "again")
    assert events[-1].outcome == OUTCOME_DONE


@pytest.mark.asyncio
async def test_cancelled_consumer_task_releases_the_turn() -> None:
    client = _ScriptedClient([
        [{"choices": [{"delta": {"content": "Working on"}, "finish_reason": None}]}, "hang"],
        _text("Second answer"),
    ])
    agent = _agent(client, [_FakeShell()])

    task = asyncio.create_task(_collect(agent, "go"))
    for _ in range(200):
        if agent.phase == AgentPhase.STREAMING:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not agent.is_busy
    assert not any(e.is_streaming for e in agent.get_entries())
    events = await _collect(agent, "again")
    assert events[-1].outcome == OUTCOME_DONE
