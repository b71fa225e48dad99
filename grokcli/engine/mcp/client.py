"""Client side of the extensibility protocol (MCP over JSON-RPC 2.0).

One ServerConnection per configured server. Each connection owns its
transport, a reader task and a pending-request table keyed by
correlation id, so concurrent calls on one server are multiplexed and
never serialized. Connections to different servers are independent: a
failure on one never touches another.

Connection lifecycle::

    DISCONNECTED -> CONNECTING -> HANDSHAKING -> READY -> DISCONNECTING -> DISCONNECTED
    (any non-terminal) -> FAILED
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any

from ... import __version__
from ..errors import (
    GrokError,
    ProtocolError,
    ProtocolTimeoutError,
    ServerNotFoundError,
    TransportClosedError,
)
from ..lifecycle import validate_connection_transition
from ..models import (
    MCP_TOOL_PREFIX,
    TOOL_NAME_RE,
    ConnectionState,
    ToolDescriptor,
    ToolResult,
    namespaced_tool_name,
)
from ..yaml_config import MCPServerConfig
from .transports import Transport, create_transport

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
CLIENT_NAME = "grok-cli"
METHOD_NOT_FOUND = -32601
TOOLS_CHANGED = "notifications/tools/list_changed"

TransportFactory = Callable[[MCPServerConfig], Transport]


def tool_result_from_reply(result: Any) -> ToolResult:
    """Normalize a ``tools/call`` result."""
    if not isinstance(result, dict):
        return ToolResult.ok(json.dumps(result) if result is not None else None)
    parts: list[str] = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            continue
        kind = item.get("type")
        if kind == "text":
            parts.append(str(item.get("text", "")))
        elif kind == "resource":
            resource = item.get("resource") or {}
            parts.append(str(resource.get("text") or f"[resource: {resource.get('uri', '?')}]"))
        else:
            parts.append(f"[{kind}: {item.get('mimeType', 'unknown')}]")
    text = "\n".join(parts)
    structured = result.get("structuredContent")
    if not text and structured is not None:
        text = json.dumps(structured)
    if result.get("isError"):
        return ToolResult(success=False, error=text or "Tool reported an error", data=structured)
    return ToolResult.ok(text or None, data=structured)


class ServerConnection:
    """One tool server: transport, state, discovered tools, pending calls."""

    def __init__(
        self,
        config: MCPServerConfig,
        transport: Transport,
        *,
        handshake_timeout: float = 30.0,
        call_timeout: float = 60.0,
    ) -> None:
        self.config = config
        self.transport = transport
        self.handshake_timeout = handshake_timeout
        self.call_timeout = config.timeout_seconds or call_timeout
        self.state = ConnectionState.DISCONNECTED
        self.error: str | None = None
        self.tools: list[ToolDescriptor] = []
        self.server_info: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _set_state(self, target: ConnectionState) -> None:
        validate_connection_transition(self.state, target)
        logger.info("MCP server %s: %s -> %s", self.name, self.state.value, target.value)
        self.state = target

    # ── Lifecycle ──

    async def connect(self) -> None:
        """Open, handshake and discover. Raises on failure after moving to FAILED."""
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self.transport.connect()
            self._reader_task = asyncio.create_task(
                self._read_loop(), name=f"mcp-reader-{self.name}",
            )
            self._set_state(ConnectionState.HANDSHAKING)
            result = await self.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": CLIENT_NAME, "version": __version__},
                },
                timeout=self.handshake_timeout,
            )
            if not isinstance(result, dict):
                raise ProtocolError(self.name, "malformed initialize result")
            self.server_info = dict(result.get("serverInfo") or {})
            await self.notify("notifications/initialized")
            self.tools = await self.discover_tools(timeout=self.handshake_timeout)
        except (GrokError, OSError) as exc:
            await self._fail(str(exc))
            raise
        self._set_state(ConnectionState.READY)
        logger.info(
            "MCP server %s ready: %d tools (%s)",
            self.name, len(self.tools), self.server_info.get("name", "unknown"),
        )

    async def disconnect(self) -> None:
        """Close the transport and reject in-flight calls."""
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            await self.transport.close()
            return
        self._set_state(ConnectionState.DISCONNECTING)
        await self._teardown(f"server '{self.name}' removed")
        self._set_state(ConnectionState.DISCONNECTED)

    async def _fail(self, reason: str) -> None:
        if self.state != ConnectionState.FAILED:
            self.error = reason
            self._set_state(ConnectionState.FAILED)
            logger.warning("MCP server %s failed: %s", self.name, reason)
        await self._teardown(reason)

    async def _teardown(self, reason: str) -> None:
        self._reject_pending(reason)
        reader = self._reader_task
        self._reader_task = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        for task in list(self._background):
            task.cancel()
        await self.transport.close()
        self.tools = []

    def _reject_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(TransportClosedError(self.transport.kind, reason))

    # ── Requests ──

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and await the reply with the same id."""
        if self.state not in (ConnectionState.HANDSHAKING, ConnectionState.READY):
            raise ProtocolError(self.name, f"not ready (state: {self.state.value})")
        timeout = timeout or self.call_timeout
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        async def exchange() -> Any:
            # The http transport holds the POST open until the reply is in,
            # so the deadline has to cover the send too.
            await self.transport.send(message)
            return await future

        try:
            return await asyncio.wait_for(exchange(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("MCP %s %s (id=%d) timed out after %ss", self.name, method, request_id, timeout)
            self._spawn(self.notify(
                "notifications/cancelled",
                {"requestId": request_id, "reason": "timeout"},
            ))
            raise ProtocolTimeoutError(self.name, method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self.transport.send(message)

    async def discover_tools(self, *, timeout: float | None = None) -> list[ToolDescriptor]:
        """List every tool, following ``nextCursor`` pagination."""
        tools: list[ToolDescriptor] = []
        cursor: str | None = None
        while True:
            result = await self.request(
                "tools/list", {"cursor": cursor} if cursor else {}, timeout=timeout,
            )
            if not isinstance(result, dict):
                raise ProtocolError(self.name, "malformed tools/list result")
            for raw in result.get("tools") or []:
                descriptor = self._describe(raw)
                if descriptor is not None:
                    tools.append(descriptor)
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    def _describe(self, raw: Any) -> ToolDescriptor | None:
        if not isinstance(raw, dict) or not raw.get("name"):
            logger.warning("MCP server %s: skipping malformed tool entry", self.name)
            return None
        name = namespaced_tool_name(self.name, str(raw["name"]))
        if not TOOL_NAME_RE.match(name):
            logger.warning("MCP server %s: tool name %s is not usable, skipped", self.name, name)
            return None
        schema = raw.get("inputSchema")
        if not isinstance(schema, dict):
            schema = {"type": "object", "properties": {}}
        return ToolDescriptor(
            name=name,
            description=str(raw.get("description") or ""),
            parameters=schema,
            origin=self.name,
            remote_name=str(raw["name"]),
        )

    async def call_tool(
        self, remote_name: str, arguments: dict[str, Any], timeout: float | None = None,
    ) -> ToolResult:
        result = await self.request(
            "tools/call", {"name": remote_name, "arguments": arguments}, timeout=timeout,
        )
        return tool_result_from_reply(result)

    # ── Inbound ──

    async def _read_loop(self) -> None:
        reason = "connection closed by server"
        try:
            async for message in self.transport.receive():
                self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("MCP server %s: reader failed", self.name)
            reason = f"read failed: {exc}"
        if self.state in (
            ConnectionState.CONNECTING,
            ConnectionState.HANDSHAKING,
            ConnectionState.READY,
        ):
            await self._fail(reason)
        else:
            self._reject_pending(reason)

    def _handle_message(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        msg_id = message.get("id")
        if method is not None:
            if msg_id is not None:
                self._spawn(self._answer_server_request(msg_id, str(method)))
            elif method == TOOLS_CHANGED:
                self._spawn(self._refresh_tools())
            else:
                logger.debug("MCP server %s notification: %s", self.name, method)
            return

        if msg_id is None or ("result" not in message and "error" not in message):
            logger.debug("MCP server %s: malformed message dropped: %s", self.name, message)
            return
        future = self._pending.get(msg_id)
        if future is None or future.done():
            logger.debug("MCP server %s: reply for unknown id %r", self.name, msg_id)
            return
        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(ProtocolError(
                self.name, str(error.get("message") or "unknown error"), error.get("code"),
            ))
        else:
            future.set_result(message.get("result"))

    async def _answer_server_request(self, msg_id: Any, method: str) -> None:
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg_id}
        if method == "ping":
            reply["result"] = {}
        else:
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"}
        await self._send_quietly(reply)

    async def _send_quietly(self, message: dict[str, Any]) -> None:
        try:
            await self.transport.send(message)
        except GrokError as exc:
            logger.debug("MCP server %s: could not send %s: %s", self.name, message, exc)

    async def _refresh_tools(self) -> None:
        if self.state != ConnectionState.READY:
            return
        try:
            self.tools = await self.discover_tools()
            logger.info("MCP server %s tool list changed: %d tools", self.name, len(self.tools))
        except GrokError as exc:
            logger.warning("MCP server %s: tool re-discovery failed: %s", self.name, exc)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


class ProtocolClient:
    """All configured servers and the merged protocol tool catalog."""

    def __init__(
        self,
        *,
        call_timeout: float = 60.0,
        handshake_timeout: float = 30.0,
        transport_factory: TransportFactory = create_transport,
    ) -> None:
        self.call_timeout = call_timeout
        self.handshake_timeout = handshake_timeout
        self._transport_factory = transport_factory
        self._connections: dict[str, ServerConnection] = {}

    async def add_server(self, config: MCPServerConfig) -> ServerConnection:
        """Connect one server. A failed handshake is reported, not raised."""
        config.validate()
        if config.name in self._connections:
            await self.remove_server(config.name)
        connection = ServerConnection(
            config,
            self._transport_factory(config),
            handshake_timeout=self.handshake_timeout,
            call_timeout=self.call_timeout,
        )
        self._connections[config.name] = connection
        try:
            await connection.connect()
        except (GrokError, OSError) as exc:
            logger.warning("MCP server %s unavailable: %s", config.name, exc)
        return connection

    async def connect_all(self, configs: list[MCPServerConfig]) -> list[ServerConnection]:
        """Connect servers concurrently; one failure never affects the others."""
        results = await asyncio.gather(
            *(self.add_server(config) for config in configs), return_exceptions=True,
        )
        connections: list[ServerConnection] = []
        for config, result in zip(configs, results):
            if isinstance(result, BaseException):
                logger.warning("MCP server %s not added: %s", config.name, result)
            else:
                connections.append(result)
        return connections

    async def remove_server(self, name: str) -> None:
        connection = self._connections.pop(name, None)
        if connection is None:
            raise ServerNotFoundError(name, sorted(self._connections))
        await connection.disconnect()

    async def shutdown(self) -> None:
        connections = list(self._connections.values())
        self._connections.clear()
        await asyncio.gather(
            *(c.disconnect() for c in connections), return_exceptions=True,
        )

    def get_servers(self) -> list[ServerConnection]:
        return list(self._connections.values())

    def get_connection(self, name: str) -> ServerConnection | None:
        return self._connections.get(name)

    def get_transport_type(self, name: str) -> str | None:
        connection = self._connections.get(name)
        return connection.transport.kind if connection else None

    def requires_confirmation(self, server: str) -> bool:
        connection = self._connections.get(server)
        return bool(connection and connection.config.requires_confirmation)

    def get_tools(self) -> list[ToolDescriptor]:
        """Tools of READY servers only."""
        tools: list[ToolDescriptor] = []
        for connection in self._connections.values():
            if connection.state == ConnectionState.READY:
                tools.extend(connection.tools)
        return tools

    def get_tool(self, name: str) -> ToolDescriptor | None:
        for descriptor in self.get_tools():
            if descriptor.name == name:
                return descriptor
        return None

    def has_tool(self, name: str) -> bool:
        return self.get_tool(name) is not None

    async def invoke(
        self, name: str, arguments: dict[str, Any], *, timeout: float | None = None,
    ) -> ToolResult:
        """Call a namespaced tool. Raises protocol/transport errors."""
        server = name[len(MCP_TOOL_PREFIX):].split("__", 1)[0] if name.startswith(
            MCP_TOOL_PREFIX,
        ) else ""
        connection = self._connections.get(server)
        if connection is None:
            raise ServerNotFoundError(server or name, sorted(self._connections))
        if connection.state != ConnectionState.READY:
            raise ProtocolError(server, f"not ready (state: {connection.state.value})")
        descriptor = next((t for t in connection.tools if t.name == name), None)
        if descriptor is None:
            raise ProtocolError(server, f"unknown tool '{name}'")
        logger.info("MCP call %s -> %s.%s", name, server, descriptor.remote_name)
        return await connection.call_tool(
            descriptor.remote_name or name, arguments, timeout=timeout,
        )
