"""Agent orchestrator: the tool-calling conversation loop.

One turn::

    IDLE -> REQUESTING -> STREAMING -> TOOL_ROUND -> REQUESTING -> ...
    any active phase -> DONE | ABORTED | ERROR

The orchestrator owns the conversation (visible entries plus the
message history sent to the model) and is the only writer of it.
Callers observe a turn through the typed event stream returned by
process_user_message_stream(), or use process_user_message() to run a
turn to completion.

Abort is cooperative plus best effort: abort_current_operation() sets a
flag checked before every model call and tool invocation, and cancels
the in-flight model read or tool task.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypeVar

from .assembler import StreamAssembler
from .config import EngineConfig
from .confirmation import ConfirmationGate
from .dispatcher import ToolDispatcher, ToolRegistry
from .errors import GrokError, OperationAborted
from .events import (
    OUTCOME_ABORTED,
    OUTCOME_DONE,
    OUTCOME_ERROR,
    OUTCOME_ROUND_LIMIT,
    AgentEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    ToolCallsEvent,
    ToolResultEvent,
)
from .lifecycle import validate_agent_transition
from .mcp.client import ProtocolClient
from .models import (
    AgentPhase,
    ConversationEntry,
    EntryKind,
    ToolCallRequest,
    ToolResult,
)
from .providers.base import ModelClient
from .providers.grok_provider import GrokProvider
from .tools import BuiltinTool, build_builtin_tools

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_MESSAGE = "[Operation cancelled by user]"
ROUND_LIMIT_MESSAGE = (
    "Maximum tool execution rounds reached. Stopping to prevent infinite loops."
)

DEFAULT_SYSTEM_PROMPT = """\
You are Grok CLI, an AI assistant that helps with file editing, coding tasks, \
and system operations from the terminal.

You have access to these tools:
- view_file: view file contents or directory listings
- create_file: create new files
- str_replace_editor: replace text in existing files
- bash: run shell commands (`cd` changes the working directory)
- apt, systemctl, disk, network: system administration helpers
Tools provided by MCP servers are named mcp__<server>__<tool>.

Guidelines:
- View a file before editing it; prefer str_replace_editor for edits.
- Use create_file only for files that do not exist yet.
- File edits and mutating commands require user confirmation. If the user \
rejects an operation, read their feedback and adjust instead of retrying \
the same operation.
- Be concise and direct.

Current working directory: {cwd}"""


class GrokAgent:
    """Drives conversation turns against the model API."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        client: ModelClient | None = None,
        gate: ConfirmationGate | None = None,
        protocol_client: ProtocolClient | None = None,
        tools: list[BuiltinTool] | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.client = client or GrokProvider(
            self.config.api_key,
            base_url=self.config.base_url,
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            timeout_seconds=self.config.request_timeout_seconds,
        )
        self.gate = gate or ConfirmationGate(self.config.decision_callback)
        self.protocol_client = protocol_client
        self.registry = ToolRegistry(
            tools if tools is not None else build_builtin_tools(self.config),
        )
        self.dispatcher = ToolDispatcher(self.registry, self.gate, protocol_client)

        prompt = system_prompt or self.config.system_prompt or DEFAULT_SYSTEM_PROMPT
        self._system_message = {
            "role": "system",
            "content": prompt.replace("{cwd}", os.path.abspath(self.config.cwd)),
        }
        self._messages: list[dict[str, Any]] = [dict(self._system_message)]
        self._entries: list[ConversationEntry] = []
        self._phase = AgentPhase.IDLE
        self._abort = asyncio.Event()
        self._inflight: asyncio.Future[Any] | None = None
        self.rounds = 0

    # ── Accessors ──

    @property
    def phase(self) -> AgentPhase:
        return self._phase

    @property
    def is_busy(self) -> bool:
        return self._phase in (
            AgentPhase.REQUESTING, AgentPhase.STREAMING, AgentPhase.TOOL_ROUND,
        )

    def get_entries(self) -> list[ConversationEntry]:
        """Copies of the conversation entries, oldest first."""
        return [dataclasses.replace(entry) for entry in self._entries]

    def get_messages(self) -> list[dict[str, Any]]:
        """Message history as sent to the model."""
        return [dict(message) for message in self._messages]

    def tool_definitions(self) -> list[dict[str, Any]]:
        return self.dispatcher.tool_definitions()

    def get_current_model(self) -> str:
        return self.client.current_model

    def set_model(self, model: str) -> None:
        self.client.set_model(model)

    def clear_conversation(self) -> None:
        if self.is_busy:
            raise RuntimeError("Cannot clear the conversation while a turn is running")
        self._entries.clear()
        self._messages = [dict(self._system_message)]
        self.gate.reset()
        if self._phase != AgentPhase.IDLE:
            self._set_phase(AgentPhase.IDLE)
        logger.info("Conversation cleared")

    def abort_current_operation(self) -> None:
        """Abort the running turn. No-op when idle."""
        if not self.is_busy:
            return
        logger.info("Abort requested (phase=%s)", self._phase.value)
        self._abort.set()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

    async def execute_bash_command(self, command: str) -> ToolResult:
        """Run a shell command directly, bypassing the model and the gate."""
        if self.is_busy:
            raise RuntimeError("A turn is already running")
        bash = self.registry.get("bash")
        if bash is None:
            return ToolResult.fail("bash tool is not available")
        call = ToolCallRequest(
            id=f"bash_{len(self._entries)}",
            name="bash",
            arguments={"command": command},
        )
        try:
            result = await bash.execute({"command": command})
        except Exception as exc:
            logger.exception("Direct bash command failed")
            result = ToolResult.fail(f"Command failed: {exc}")
        self._entries.append(ConversationEntry(
            kind=EntryKind.TOOL_RESULT,
            content=result.as_text(),
            tool_call=call,
            tool_result=result,
        ))
        return result

    async def close(self) -> None:
        await self.client.close()

    # ── Turn ──

    def _set_phase(self, target: AgentPhase) -> None:
        validate_agent_transition(self._phase, target)
        logger.debug("Agent phase %s -> %s", self._phase.value, target.value)
        self._phase = target

    async def process_user_message(self, message: str) -> list[ConversationEntry]:
        """Run one turn to completion. Returns the entries it produced."""
        start = len(self._entries)
        async for _event in self.process_user_message_stream(message):
            pass
        return [dataclasses.replace(entry) for entry in self._entries[start:]]

    async def process_user_message_stream(self, message: str) -> AsyncIterator[AgentEvent]:
        """Run one turn, yielding events. Always ends with a DoneEvent."""
        if self.is_busy:
            raise RuntimeError("A turn is already running")
        if self._phase != AgentPhase.IDLE:
            self._set_phase(AgentPhase.IDLE)
        self._abort.clear()
        self.rounds = 0

        self._entries.append(ConversationEntry(kind=EntryKind.USER, content=message))
        self._messages.append({"role": "user", "content": message})

        assistant: ConversationEntry | None = None
        round_calls: list[ToolCallRequest] = []
        answered: set[str] = set()
        try:
            while True:
                self._check_abort()
                self._set_phase(AgentPhase.REQUESTING)
                assistant, round_calls, answered = None, [], set()
                assembler = StreamAssembler()
                stream = self.client.chat_stream(
                    list(self._messages), self.tool_definitions() or None,
                )
                try:
                    while True:
                        try:
                            chunk = await self._cancellable(_next_chunk(stream))
                        except StopAsyncIteration:
                            break
                        if self._phase == AgentPhase.REQUESTING:
                            self._set_phase(AgentPhase.STREAMING)
                        for event in assembler.feed(chunk):
                            if isinstance(event, ContentEvent):
                                if assistant is None:
                                    assistant = ConversationEntry(
                                        kind=EntryKind.ASSISTANT, is_streaming=True,
                                    )
                                    self._entries.append(assistant)
                                assistant.content += event.content
                            yield event
                finally:
                    await _close_stream(stream)

                stream_error: str | None = None
                for event in assembler.finish():
                    if isinstance(event, ToolCallsEvent):
                        # Incomplete calls from a stream cut short.
                        yield event
                    elif isinstance(event, ErrorEvent):
                        stream_error = event.message
                round_calls = assembler.tool_calls()
                content = assembler.content

                if round_calls:
                    if assistant is None:
                        assistant = ConversationEntry(kind=EntryKind.ASSISTANT)
                        self._entries.append(assistant)
                    assistant.tool_calls = list(round_calls)
                    self._messages.append({
                        "role": "assistant",
                        "content": content,
                        "tool_calls": [_history_call(call) for call in round_calls],
                    })
                elif content:
                    self._messages.append({"role": "assistant", "content": content})
                if assistant is not None:
                    assistant.is_streaming = False

                if stream_error is not None:
                    for call in round_calls:
                        result = ToolResult.fail(call.parse_error or stream_error)
                        self._record_result(call, result, None)
                        answered.add(call.id)
                    self._set_phase(AgentPhase.ERROR)
                    yield ErrorEvent(message=stream_error)
                    yield DoneEvent(outcome=OUTCOME_ERROR)
                    return

                if not round_calls:
                    self._set_phase(AgentPhase.DONE)
                    yield DoneEvent(outcome=OUTCOME_DONE, stop_reason=assembler.stop_reason)
                    return

                self._set_phase(AgentPhase.TOOL_ROUND)
                for call in round_calls:
                    self._check_abort()
                    entry = ConversationEntry(
                        kind=EntryKind.TOOL_CALL,
                        content=f"Executing {call.name}",
                        tool_call=call,
                    )
                    self._entries.append(entry)
                    result = await self._cancellable(self.dispatcher.dispatch(call))
                    self._record_result(call, result, entry)
                    answered.add(call.id)
                    yield ToolResultEvent(tool_call=call, result=result)

                self.rounds += 1
                logger.info("Tool round %d complete (%d calls)", self.rounds, len(round_calls))
                if self.rounds >= self.config.max_tool_rounds:
                    logger.warning("Tool round limit reached (%d)", self.config.max_tool_rounds)
                    self._entries.append(ConversationEntry(
                        kind=EntryKind.ASSISTANT, content=ROUND_LIMIT_MESSAGE,
                    ))
                    self._messages.append({"role": "assistant", "content": ROUND_LIMIT_MESSAGE})
                    self._set_phase(AgentPhase.DONE)
                    yield DoneEvent(outcome=OUTCOME_ROUND_LIMIT)
                    return

        except OperationAborted:
            self._finish_aborted(assistant, round_calls, answered)
            yield DoneEvent(outcome=OUTCOME_ABORTED)
        except GrokError as exc:
            logger.warning("Turn failed: %s", exc)
            self._clear_streaming()
            self._entries.append(ConversationEntry(
                kind=EntryKind.ASSISTANT,
                content=f"Sorry, I encountered an error: {exc}",
            ))
            if self._phase != AgentPhase.ERROR:
                self._set_phase(AgentPhase.ERROR)
            yield ErrorEvent(message=str(exc))
            yield DoneEvent(outcome=OUTCOME_ERROR)
        finally:
            self._inflight = None
            if self.is_busy:
                # Consumer closed the stream or its task was cancelled mid-turn.
                self._finish_aborted(assistant, round_calls, answered)

    # ── Helpers ──

    def _check_abort(self) -> None:
        if self._abort.is_set():
            raise OperationAborted()

    async def _cancellable(self, awaitable: Awaitable[T]) -> T:
        """Await as a task abort_current_operation() can cancel."""
        task = asyncio.ensure_future(awaitable)
        if self._abort.is_set():
            task.cancel()
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._abort.is_set() and task.cancelled():
                raise OperationAborted() from None
            raise
        finally:
            self._inflight = None

    def _record_result(
        self,
        call: ToolCallRequest,
        result: ToolResult,
        entry: ConversationEntry | None,
    ) -> None:
        """Turn the call entry into its result entry and feed the model."""
        if entry is None:
            entry = ConversationEntry(kind=EntryKind.TOOL_CALL, tool_call=call)
            self._entries.append(entry)
        entry.kind = EntryKind.TOOL_RESULT
        entry.content = result.as_text()
        entry.tool_result = result
        self._messages.append({
            "role": "tool",
            "tool_call_id": call.id,
            "content": result.as_text(),
        })

    def _finish_aborted(
        self,
        assistant: ConversationEntry | None,
        round_calls: list[ToolCallRequest],
        answered: set[str],
    ) -> None:
        logger.info("Turn aborted by user")
        last = self._entries[-1] if self._entries else None
        for call in round_calls:
            if call.id in answered:
                continue
            cancelled = ToolResult.fail("Operation cancelled by user")
            if last is not None and last.kind == EntryKind.TOOL_CALL and last.tool_call is call:
                self._record_result(call, cancelled, last)
            else:
                # never started: keep the history valid without a visible entry
                self._messages.append({
                    "role": "tool", "tool_call_id": call.id, "content": cancelled.as_text(),
                })
        if assistant is not None and assistant.is_streaming:
            assistant.content += f"\n\n{CANCELLED_MESSAGE}" if assistant.content else CANCELLED_MESSAGE
            if not round_calls and assistant.content:
                self._messages.append({"role": "assistant", "content": assistant.content})
        else:
            self._entries.append(ConversationEntry(
                kind=EntryKind.ASSISTANT, content=CANCELLED_MESSAGE,
            ))
        self._clear_streaming()
        self._set_phase(AgentPhase.ABORTED)

    def _clear_streaming(self) -> None:
        for entry in self._entries:
            entry.is_streaming = False


async def _next_chunk(stream: AsyncIterator[dict[str, Any]]) -> dict[str, Any]:
    return await stream.__anext__()


async def _close_stream(stream: AsyncIterator[dict[str, Any]]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except RuntimeError:
            # generator already running or closed after cancellation
            logger.debug("Model stream already closed")


def _history_call(call: ToolCallRequest) -> dict[str, Any]:
    message = call.to_message()
    if call.parse_error:
        # The API rejects histories carrying malformed argument JSON.
        message["function"]["arguments"] = "{}"
    return message
