"""Web search through the Tavily API."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ..models import ToolResult
from .base import BuiltinTool, object_schema, require_str

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
NOT_AVAILABLE = (
    "Web search not available. Set TAVILY_API_KEY environment variable to enable.\n\n"
    "Get a free API key at: https://tavily.com"
)


class WebSearchTool(BuiltinTool):
    """Read-only, so never gated. Registered only when a Tavily key is configured."""

    def __init__(
        self,
        api_key: str | None,
        *,
        endpoint: str = TAVILY_SEARCH_URL,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def name(self) -> str:
        return "web_search"

    @property
    def description(self) -> str:
        return "Search the web for current information using Tavily API"

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "query": {"type": "string", "description": "The search query"},
                "max_results": {
                    "type": "integer",
                    "description": "Maximum number of results (default 5)",
                },
                "search_depth": {"type": "string", "enum": ["basic", "advanced"]},
                "topic": {"type": "string", "enum": ["general", "news", "finance"]},
            },
            ["query"],
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        if not self._api_key:
            return ToolResult.fail(NOT_AVAILABLE)
        query = (require_str(arguments, "query") or "").strip()
        if not query:
            return ToolResult.fail("Search query is required")

        payload = {
            "query": query,
            "search_depth": arguments.get("search_depth") or "basic",
            "max_results": int(arguments.get("max_results") or 5),
            "include_answer": True,
            "topic": arguments.get("topic") or "general",
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._endpoint, json=payload, headers=headers) as response:
                    if response.status == 401:
                        return ToolResult.fail(
                            "Invalid Tavily API key. Check your TAVILY_API_KEY environment variable."
                        )
                    if response.status >= 400:
                        body = await response.text()
                        return ToolResult.fail(f"Tavily API error ({response.status}): {body[:500]}")
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            return ToolResult.fail("Web search timed out. Try a simpler query.")
        except aiohttp.ClientError as exc:
            return ToolResult.fail(f"Web search failed: {exc}")

        logger.info("web_search %r -> %d results", query, len(data.get("results") or []))
        return ToolResult.ok(format_results(data), data=data)


def format_results(data: dict[str, Any]) -> str:
    lines = [f'**Web Search Results for:** "{data.get("query", "")}"']
    response_time = data.get("response_time")
    if isinstance(response_time, (int, float)):
        lines.append(f"*Response time: {response_time:.2f}s*")
    lines.append("")
    if data.get("answer"):
        lines += ["## Summary", str(data["answer"]), ""]
    results = data.get("results") or []
    if not results:
        lines.append("No results found.")
        return "\n".join(lines)
    lines += ["## Sources", ""]
    for index, result in enumerate(results, 1):
        lines += [
            f"### {index}. {result.get('title', '')}",
            f"**URL:** {result.get('url', '')}",
            str(result.get("content", "")),
            "",
        ]
    return "\n".join(lines).rstrip() + "\n"
