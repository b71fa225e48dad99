"""Abstract base for model API clients.

The orchestrator only needs two calls: a single completion (chat) and a
chunked stream of chat-completions deltas (chat_stream). Chunks are the
raw decoded JSON objects; reassembly is the StreamAssembler's job.
"""
from __future__ import annotations

import abc
from typing import Any, AsyncIterator


class ModelClient(abc.ABC):
    """Abstract model client interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'grok')."""

    @property
    @abc.abstractmethod
    def current_model(self) -> str:
        """Model identifier used when a call does not name one."""

    @abc.abstractmethod
    def set_model(self, model: str) -> None:
        """Switch the default model for later calls."""

    @abc.abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        model: str | None = None,
    ) -> dict[str, Any]:
        """Return one complete chat-completions response."""

    @abc.abstractmethod
    def chat_stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        model: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield streamed chat-completions chunks in order.

        Raises ModelAPIError on non-success status or network failure.
        """

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""
