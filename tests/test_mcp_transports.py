import asyncio
import json
import sys
import textwrap
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from grokcli.engine.errors import ProtocolTimeoutError, TransportClosedError, TransportError
from grokcli.engine.mcp.client import ProtocolClient
from grokcli.engine.mcp.transports import (
    HttpTransport,
    SseTransport,
    StdioTransport,
    create_transport,
    decode_frame,
)
from grokcli.engine.models import ConnectionState
from grokcli.engine.yaml_config import MCPServerConfig

ECHO_SERVER = Path(__file__).parent / "fixtures" / "echo_server.py"

# Replies to every request line with {"id": ..., "result": {"echo": params}}.
LINE_ECHO = textwrap.dedent("""
    import json, sys
    print("server starting up", flush=True)
    for line in sys.stdin:
        msg = json.loads(line)
        if "id" in msg:
            print(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": {"echo": msg.get("params")}}), flush=True)
""")


def _rpc_reply(message: dict, result) -> dict:
    return {"jsonrpc": "2.0", "id": message["id"], "result": result}


def _answer(message: dict):
    """Tiny in-process MCP server logic shared by the HTTP fixtures."""
    method = message.get("method")
    if method == "initialize":
        return _rpc_reply(message, {
            "protocolVersion": message["params"]["protocolVersion"],
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "web", "version": "1"},
        })
    if method == "tools/list":
        return _rpc_reply(message, {"tools": [{"name": "upper", "inputSchema": {"type": "object"}}]})
    if method == "tools/call":
        text = message["params"]["arguments"]["text"].upper()
        return _rpc_reply(message, {"content": [{"type": "text", "text": text}]})
    return None


async def _start(app: web.Application) -> TestServer:
    server = TestServer(app)
    await server.start_server()
    return server


def test_decode_frame_flattens_batches_and_drops_junk() -> None:
    assert decode_frame(b"", "t") == []
    assert decode_frame("not json", "t") == []
    assert decode_frame('[{"id": 1}, 5, {"id": 2}]', "t") == [{"id": 1}, {"id": 2}]
    assert decode_frame('{"id": 3}\n', "t") == [{"id": 3}]


def test_create_transport_by_kind() -> None:
    assert isinstance(create_transport(MCPServerConfig(name="a", command="x")), StdioTransport)
    http = create_transport(MCPServerConfig(name="b", transport="streamable_http", url="http://h"))
    assert isinstance(http, HttpTransport)
    assert http.kind == "streamable_http"
    assert isinstance(create_transport(MCPServerConfig(name="c", transport="sse", url="http://h")), SseTransport)


@pytest.mark.asyncio
async def test_stdio_skips_non_json_output() -> None:
    transport = StdioTransport(sys.executable, ["-c", LINE_ECHO])
    await transport.connect()
    try:
        await transport.send({"jsonrpc": "2.0", "id": 7, "method": "x", "params": {"a": 1}})
        messages = transport.receive()
        first = await asyncio.wait_for(messages.__anext__(), timeout=10)
    finally:
        await transport.close()

    assert first == {"jsonrpc": "2.0", "id": 7, "result": {"echo": {"a": 1}}}
    assert transport.closed
    with pytest.raises(TransportClosedError):
        await transport.send({"jsonrpc": "2.0", "method": "late"})


@pytest.mark.asyncio
async def test_stdio_missing_command() -> None:
    transport = StdioTransport("definitely-not-a-real-mcp-server")

    with pytest.raises(TransportError):
        await transport.connect()
    assert transport.closed


@pytest.mark.asyncio
async def test_http_transport_json_sse_and_session_id() -> None:
    seen: list[dict] = []
    deleted: list[str] = []

    async def handle_post(request: web.Request) -> web.StreamResponse:
        message = await request.json()
        seen.append({"message": message, "session": request.headers.get("Mcp-Session-Id")})
        if "id" not in message:
            return web.Response(status=202)
        reply = _answer(message)
        if message["method"] == "tools/list":
            response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await response.prepare(request)
            await response.write(f"event: message\ndata: {json.dumps(reply)}\n\n".encode())
            await response.write_eof()
            return response
        return web.json_response(reply, headers={"Mcp-Session-Id": "sess-1"})

    async def handle_delete(request: web.Request) -> web.Response:
        deleted.append(request.headers.get("Mcp-Session-Id", ""))
        return web.Response(status=204)

    app = web.Application()
    app.router.add_post("/mcp", handle_post)
    app.router.add_delete("/mcp", handle_delete)
    server = await _start(app)
    transport = HttpTransport(str(server.make_url("/mcp")))
    try:
        await transport.connect()
        inbound = transport.receive()
        await transport.send({"jsonrpc": "2.0", "id": 1, "method": "initialize",
                              "params": {"protocolVersion": "2025-03-26"}})
        init = await asyncio.wait_for(inbound.__anext__(), timeout=5)
        await transport.send({"jsonrpc": "2.0", "method": "notifications/initialized"})
        await transport.send({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
        listing = await asyncio.wait_for(inbound.__anext__(), timeout=5)
        await transport.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(inbound.__anext__(), timeout=5)
    finally:
        await server.close()

    assert init["result"]["serverInfo"]["name"] == "web"
    assert listing["result"]["tools"][0]["name"] == "upper"
    assert transport.session_id == "sess-1"
    assert [entry["session"] for entry in seen] == [None, "sess-1", "sess-1"]
    assert deleted == ["sess-1"]


@pytest.mark.asyncio
async def test_http_error_status_raises() -> None:
    async def handle_post(request: web.Request) -> web.Response:
        return web.Response(status=500, text="kaboom")

    app = web.Application()
    app.router.add_post("/mcp", handle_post)
    server = await _start(app)
    transport = HttpTransport(str(server.make_url("/mcp")))
    try:
        await transport.connect()
        with pytest.raises(TransportError, match="500"):
            await transport.send({"jsonrpc": "2.0", "id": 1, "method": "ping"})
    finally:
        await transport.close()
        await server.close()


@pytest.mark.asyncio
async def test_protocol_client_over_http() -> None:
    async def handle_post(request: web.Request) -> web.Response:
        reply = _answer(await request.json())
        if reply is None:
            return web.Response(status=202)
        return web.json_response(reply)

    app = web.Application()
    app.router.add_post("/mcp", handle_post)
    server = await _start(app)
    client = ProtocolClient()
    try:
        connection = await client.add_server(
            MCPServerConfig(name="web", transport="http", url=str(server.make_url("/mcp"))),
        )
        assert connection.state == ConnectionState.READY, connection.error
        result = await client.invoke("mcp__web__upper", {"text": "shout"})
    finally:
        await client.shutdown()
        await server.close()

    assert result.output == "SHOUT"
    assert client.get_transport_type("web") is None


@pytest.mark.asyncio
async def test_call_timeout_covers_slow_http_reply() -> None:
    notifications: list[dict] = []

    async def handle_post(request: web.Request) -> web.StreamResponse:
        message = await request.json()
        if message.get("method") == "tools/call":
            await asyncio.sleep(2)
            return web.json_response(_rpc_reply(message, {"content": [{"type": "text", "text": "late"}]}))
        if "id" not in message:
            notifications.append(message)
            return web.Response(status=202)
        return web.json_response(_answer(message))

    app = web.Application()
    app.router.add_post("/mcp", handle_post)
    server = await _start(app)
    client = ProtocolClient(call_timeout=0.3)
    loop = asyncio.get_running_loop()
    try:
        connection = await client.add_server(
            MCPServerConfig(name="web", transport="http", url=str(server.make_url("/mcp"))),
        )
        assert connection.state == ConnectionState.READY, connection.error
        started = loop.time()
        with pytest.raises(ProtocolTimeoutError):
            await client.invoke("mcp__web__upper", {"text": "slow"})
        elapsed = loop.time() - started
        for _ in range(50):
            if any(n["method"] == "notifications/cancelled" for n in notifications):
                break
            await asyncio.sleep(0.02)
    finally:
        await client.shutdown()
        await server.close()

    assert elapsed < 1.5
    assert connection.pending_count == 0
    cancelled = [n for n in notifications if n["method"] == "notifications/cancelled"]
    assert cancelled and cancelled[0]["params"]["reason"] == "timeout"


def _sse_app(outbox: asyncio.Queue, *, send_endpoint: bool = True) -> web.Application:
    async def stream(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        if send_endpoint:
            await response.write(b"event: endpoint\ndata: /messages?sid=1\n\n")
        else:
            await response.write(b": waiting\n\n")
        while True:
            reply = await outbox.get()
            if reply is None:
                break
            await response.write(f"event: message\ndata: {json.dumps(reply)}\n\n".encode())
        return response

    async def post(request: web.Request) -> web.Response:
        message = await request.json()
        reply = _answer(message)
        if reply is not None:
            outbox.put_nowait(reply)
        return web.Response(status=202)

    app = web.Application()
    app.router.add_get("/sse", stream)
    app.router.add_post("/messages", post)
    return app


@pytest.mark.asyncio
async def test_sse_transport_posts_to_announced_endpoint() -> None:
    outbox: asyncio.Queue = asyncio.Queue()
    server = await _start(_sse_app(outbox))
    transport = SseTransport(str(server.make_url("/sse")))
    try:
        await transport.connect()
        inbound = transport.receive()
        await transport.send({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        reply = await asyncio.wait_for(inbound.__anext__(), timeout=5)
        endpoint = transport.endpoint
        await transport.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(inbound.__anext__(), timeout=5)
    finally:
        outbox.put_nowait(None)
        await server.close()

    assert endpoint == str(server.make_url("/messages?sid=1"))
    assert reply["id"] == 1
    assert reply["result"]["tools"][0]["name"] == "upper"
    assert transport.closed


@pytest.mark.asyncio
async def test_sse_transport_times_out_without_endpoint() -> None:
    outbox: asyncio.Queue = asyncio.Queue()
    server = await _start(_sse_app(outbox, send_endpoint=False))
    transport = SseTransport(str(server.make_url("/sse")), endpoint_timeout=0.2)
    try:
        with pytest.raises(TransportError, match="no endpoint"):
            await transport.connect()
        assert transport.closed
    finally:
        outbox.put_nowait(None)
        await server.close()


@pytest.mark.asyncio
async def test_stdio_end_to_end_with_fastmcp_server() -> None:
    pytest.importorskip("mcp")
    client = ProtocolClient(handshake_timeout=60, call_timeout=30)
    config = MCPServerConfig(name="echo", command=sys.executable, args=[str(ECHO_SERVER)])
    try:
        connection = await client.add_server(config)
        assert connection.state == ConnectionState.READY, connection.error
        assert {t.name for t in client.get_tools()} == {
            "mcp__echo__echo", "mcp__echo__add", "mcp__echo__fail",
        }

        echoed = await client.invoke("mcp__echo__echo", {"text": "hello"})
        sums = await asyncio.gather(*(
            client.invoke("mcp__echo__add", {"a": i, "b": 1}) for i in range(5)
        ))
        failed = await client.invoke("mcp__echo__fail", {"message": "boom"})
    finally:
        await client.shutdown()

    assert echoed.success
    assert echoed.output == "hello"
    assert [r.output for r in sums] == ["1", "2", "3", "4", "5"]
    assert not failed.success
    assert "boom" in failed.error
    assert connection.transport.closed
