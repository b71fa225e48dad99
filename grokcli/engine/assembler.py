"""Streaming response assembler.

Reduces the ordered chunk stream of a chat-completions response into
conversation events. Pure state over fragments: no I/O, so it can be
driven from a live stream or from a list in tests.

Chunk shape (OpenAI-compatible)::

    {"choices": [{"delta": {"content": "...",
                            "tool_calls": [{"index": 0, "id": "call_1",
                                            "function": {"name": "bash",
                                                         "arguments": "{\"co"}}]},
                  "finish_reason": null}],
     "usage": {...} | null}

Tool-call fragments are merged by ``index`` (falling back to ``id``),
never by arrival order, because providers interleave deltas for
concurrent calls.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .events import (
    OUTCOME_DONE,
    OUTCOME_ERROR,
    AgentEvent,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    TokenCountEvent,
    ToolCallsEvent,
)
from .models import ToolCallRequest, parse_tool_arguments

logger = logging.getLogger(__name__)

TRUNCATED_ARGUMENTS_ERROR = (
    "Tool call arguments truncated: the response stream ended "
    "before the call was complete"
)


@dataclass
class _PartialCall:
    """Accumulator for one tool-call index."""
    index: int
    id: str | None = None
    name: str = ""
    fragments: list[str] = field(default_factory=list)

    def to_request(self) -> ToolCallRequest:
        return ToolCallRequest(
            id=self.id or f"call_{self.index}",
            name=self.name,
            arguments_raw="".join(self.fragments),
        )


class StreamAssembler:
    """Reassemble one streamed assistant message.

    Call feed() for every chunk in order, then finish() once the
    underlying stream is exhausted (normally or not). Both return the
    events produced by that step.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PartialCall] = {}
        self._ids: dict[str, int] = {}
        self._content: list[str] = []
        self._stop_reason: str | None = None
        self._completed: list[ToolCallRequest] | None = None
        self._finished = False

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def stop_reason(self) -> str | None:
        return self._stop_reason

    @property
    def saw_terminal(self) -> bool:
        return self._stop_reason is not None

    def feed(self, chunk: dict[str, Any]) -> list[AgentEvent]:
        if self._finished:
            raise RuntimeError("feed() called after finish()")
        events: list[AgentEvent] = []

        choices = chunk.get("choices") or []
        choice = choices[0] if choices else None
        if isinstance(choice, dict):
            delta = choice.get("delta") or choice.get("message") or {}
            content = delta.get("content")
            if content:
                self._content.append(content)
                events.append(ContentEvent(content=content))
            for fragment in delta.get("tool_calls") or []:
                self._merge_fragment(fragment)

            finish_reason = choice.get("finish_reason")
            if finish_reason and self._stop_reason is None:
                self._stop_reason = finish_reason
                calls = self._complete_calls()
                if calls:
                    events.append(ToolCallsEvent(tool_calls=calls))

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            events.append(TokenCountEvent(
                prompt_tokens=int(usage.get("prompt_tokens") or 0),
                completion_tokens=int(usage.get("completion_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ))
        return events

    def finish(self) -> list[AgentEvent]:
        """Close the stream. Always ends with a DoneEvent."""
        if self._finished:
            return []
        self._finished = True
        if self.saw_terminal:
            return [DoneEvent(outcome=OUTCOME_DONE, stop_reason=self._stop_reason)]

        events: list[AgentEvent] = []
        message = "Response stream ended before completion"
        if self._calls:
            truncated = self._complete_calls(truncated=True)
            events.append(ToolCallsEvent(tool_calls=truncated))
            names = ", ".join(f"{c.name or '?'} ({c.id})" for c in truncated)
            message += f"; incomplete tool calls: {names}"
        logger.warning("StreamAssembler: %s", message)
        events.append(ErrorEvent(message=message))
        events.append(DoneEvent(outcome=OUTCOME_ERROR))
        return events

    def tool_calls(self) -> list[ToolCallRequest]:
        """Completed calls (empty until the terminal signal)."""
        return list(self._completed or [])

    def _merge_fragment(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        call_id = fragment.get("id")
        if index is None:
            if call_id is not None and call_id in self._ids:
                index = self._ids[call_id]
            else:
                index = len(self._calls)
        index = int(index)

        call = self._calls.get(index)
        if call is None:
            call = _PartialCall(index=index)
            self._calls[index] = call
        if call_id and call.id is None:
            call.id = call_id
            self._ids[call_id] = index

        function = fragment.get("function") or {}
        name = function.get("name")
        if name and not call.name:
            call.name = name
        arguments = function.get("arguments")
        if arguments:
            call.fragments.append(arguments)

    def _complete_calls(self, truncated: bool = False) -> list[ToolCallRequest]:
        calls: list[ToolCallRequest] = []
        for index in sorted(self._calls):
            request = self._calls[index].to_request()
            if truncated:
                request.parse_error = TRUNCATED_ARGUMENTS_ERROR
            else:
                request.arguments, request.parse_error = parse_tool_arguments(
                    request.arguments_raw,
                )
                if request.parse_error:
                    logger.warning(
                        "Tool call %s (%s) has unparseable arguments: %s",
                        request.id, request.name, request.parse_error,
                    )
            calls.append(request)
        self._completed = calls
        return calls
