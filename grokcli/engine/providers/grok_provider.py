"""OpenAI-compatible chat-completions client for the Grok API.

Built on the ``openai`` SDK pointed at the xAI base URL. Chunks are
handed to the orchestrator as plain dicts (``model_dump``) so the
StreamAssembler never depends on SDK types.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

from ..config import DEFAULT_BASE_URL, DEFAULT_MODEL
from ..errors import ModelAPIError
from .base import ModelClient

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


class GrokProvider(ModelClient):
    """Client for ``{base_url}/chat/completions``."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 1536,
        temperature: float = 0.7,
        timeout_seconds: float = 360.0,
        max_retries: int = 2,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._client = client

    @property
    def name(self) -> str:
        return "grok"

    @property
    def current_model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        logger.info("Model changed: %s -> %s", self._model, model)
        self._model = model

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/chat/completions"

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        *,
        model: str | None,
        stream: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "stream": stream,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise ModelAPIError("API key required")
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout_seconds,
                max_retries=self._max_retries,
            )
        return self._client

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        model: str | None = None,
    ) -> dict[str, Any]:
        payload = self.build_payload(messages, tools, model=model, stream=False)
        try:
            response = await self._get_client().chat.completions.create(**payload)
        except openai.APIError as exc:
            raise _to_model_error(exc) from exc
        return response.model_dump(exclude_none=True)

    async def chat_stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        model: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        payload = self.build_payload(messages, tools, model=model, stream=True)
        logger.debug(
            "chat_stream model=%s messages=%d tools=%d",
            payload["model"], len(messages), len(tools or []),
        )
        try:
            stream = await self._get_client().chat.completions.create(**payload)
        except openai.APIError as exc:
            raise _to_model_error(exc) from exc
        try:
            async for chunk in stream:
                yield chunk.model_dump(exclude_none=True)
        except openai.APIError as exc:
            raise _to_model_error(exc) from exc
        finally:
            await stream.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None


def _to_model_error(exc: openai.APIError) -> ModelAPIError:
    if isinstance(exc, openai.APIStatusError):
        detail = _error_message(exc.body) if exc.body else exc.message
        return ModelAPIError(detail, status=exc.status_code)
    if isinstance(exc, openai.APITimeoutError):
        return ModelAPIError("request timed out")
    return ModelAPIError(exc.message or type(exc).__name__)


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict):
            return str(error.get("message") or error)[:_ERROR_BODY_LIMIT]
        if error:
            return str(error)[:_ERROR_BODY_LIMIT]
    return str(body)[:_ERROR_BODY_LIMIT]
