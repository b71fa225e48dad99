"""Transports for the extensibility protocol.

All three implementations share one contract:

    await transport.connect()
    await transport.send(message)          # one JSON-RPC object
    async for message in transport.receive():
        ...                                # ends when the channel closes
    await transport.close()

receive() has a single consumer (the connection's reader loop). It
always terminates on close or failure so nobody waits on a dead
channel. Framing problems on the inbound side are logged and skipped;
outbound failures raise TransportError / TransportClosedError.
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator
from urllib.parse import urljoin

import aiohttp

from ..errors import TransportClosedError, TransportError
from ..sse import iter_sse_events
from ..yaml_config import MCPServerConfig

logger = logging.getLogger(__name__)

# Protocol messages can carry whole files; raise asyncio's 64 KiB line limit.
STDIO_LINE_LIMIT = 16 * 1024 * 1024
CLOSE_GRACE_SECONDS = 2.0
SESSION_HEADER = "Mcp-Session-Id"
ACCEPT_HEADER = "application/json, text/event-stream"

_EOF = object()


class Transport(abc.ABC):
    """Abstract channel to one tool server."""

    kind: str = ""

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        """True once the channel can no longer carry messages."""

    @abc.abstractmethod
    async def connect(self) -> None:
        """Open the channel. Raises TransportError on failure."""

    @abc.abstractmethod
    async def send(self, message: dict[str, Any]) -> None:
        """Write one message."""

    @abc.abstractmethod
    def receive(self) -> AsyncIterator[dict[str, Any]]:
        """Yield inbound messages until the channel closes."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the underlying process or sockets. Idempotent."""


def decode_frame(raw: str | bytes, source: str) -> list[dict[str, Any]]:
    """Decode one inbound frame. Batches are flattened, junk is dropped."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    raw = raw.strip()
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("%s: skipping non-JSON line: %s", source, raw[:200])
        return []
    items = parsed if isinstance(parsed, list) else [parsed]
    return [item for item in items if isinstance(item, dict)]


class _QueueTransport(Transport):
    """Shared inbound queue for the HTTP based transports."""

    def __init__(self, url: str, headers: dict[str, str] | None = None,
                 session: aiohttp.ClientSession | None = None) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _open_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _push(self, messages: list[dict[str, Any]]) -> None:
        for message in messages:
            self._inbound.put_nowait(message)

    def _ensure_open(self) -> aiohttp.ClientSession:
        if self._closed or self._session is None:
            raise TransportClosedError(self.kind)
        return self._session

    async def receive(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._inbound.get()
            if item is _EOF:
                return
            yield item

    async def _shutdown(self) -> None:
        if not self._closed:
            self._closed = True
            self._inbound.put_nowait(_EOF)
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


class StdioTransport(Transport):
    """Newline-delimited JSON over a subprocess's stdin/stdout."""

    kind = "stdio"

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.cwd = cwd
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def connect(self) -> None:
        try:
            # create_subprocess_exec passes args as array, no shell
            self._process = await asyncio.create_subprocess_exec(
                self.command, *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
                cwd=self.cwd,
                limit=STDIO_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            self._closed = True
            raise TransportError(self.kind, f"command not found: {self.command}") from exc
        except OSError as exc:
            self._closed = True
            raise TransportError(self.kind, f"failed to start {self.command}: {exc}") from exc
        logger.info("Started stdio server %s (pid=%d)", self.command, self._process.pid)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        while True:
            line = await self._process.stderr.readline()
            if not line:
                return
            logger.debug(
                "[%s stderr] %s",
                self.command, line.decode("utf-8", errors="replace").rstrip(),
            )

    async def send(self, message: dict[str, Any]) -> None:
        process = self._process
        if self._closed or process is None or process.stdin is None:
            raise TransportClosedError(self.kind)
        if process.returncode is not None:
            raise TransportClosedError(self.kind, f"process exited with code {process.returncode}")
        data = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportClosedError(self.kind, f"write failed: {exc}") from exc

    async def receive(self) -> AsyncIterator[dict[str, Any]]:
        process = self._process
        if process is None or process.stdout is None:
            return
        while True:
            try:
                line = await process.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as exc:
                logger.warning("stdio server %s: oversized line dropped: %s", self.command, exc)
                continue
            except (ConnectionResetError, BrokenPipeError):
                line = b""
            if not line:
                break
            for message in decode_frame(line, self.command):
                yield message
        if not self._closed:
            logger.warning(
                "stdio server %s closed its output (exit code %s)",
                self.command, process.returncode,
            )
        self._closed = True

    async def close(self) -> None:
        process = self._process
        self._closed = True
        if process is None:
            return
        self._process = None
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=CLOSE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), timeout=CLOSE_GRACE_SECONDS)
                except ProcessLookupError:
                    pass
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None
        logger.info("Stopped stdio server %s (exit code %s)", self.command, process.returncode)


class HttpTransport(_QueueTransport):
    """One POST per message (request/response and streamable HTTP).

    Reply bodies may be plain JSON or a short SSE stream; both end up on
    the inbound queue. The server's session id is echoed once issued.
    """

    kind = "http"

    def __init__(self, url: str, headers: dict[str, str] | None = None,
                 session: aiohttp.ClientSession | None = None,
                 kind: str = "http") -> None:
        super().__init__(url, headers, session)
        self.kind = kind
        self.session_id: str | None = None

    async def connect(self) -> None:
        self._open_session()

    def _request_headers(self) -> dict[str, str]:
        headers = {
            **self.headers,
            "Accept": ACCEPT_HEADER,
            "Content-Type": "application/json",
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def send(self, message: dict[str, Any]) -> None:
        session = self._ensure_open()
        try:
            async with session.post(
                self.url, json=message, headers=self._request_headers(),
            ) as response:
                issued = response.headers.get(SESSION_HEADER)
                if issued and issued != self.session_id:
                    self.session_id = issued
                    logger.debug("%s session id issued: %s", self.url, issued)
                if response.status in (202, 204):
                    return
                if response.status >= 400:
                    body = await response.text()
                    raise TransportError(
                        self.kind, f"HTTP {response.status} from {self.url}: {body[:300]}",
                    )
                content_type = response.headers.get("Content-Type", "")
                if "text/event-stream" in content_type:
                    async for event in iter_sse_events(response.content):
                        if event.event == "message":
                            self._push(decode_frame(event.data, self.url))
                else:
                    self._push(decode_frame(await response.read(), self.url))
        except aiohttp.ClientError as exc:
            raise TransportError(self.kind, f"request to {self.url} failed: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        if self.session_id and self._session is not None and not self._session.closed:
            try:
                async with self._session.delete(
                    self.url, headers={**self.headers, SESSION_HEADER: self.session_id},
                ):
                    pass
            except aiohttp.ClientError as exc:
                logger.debug("Session delete for %s failed: %s", self.url, exc)
        await self._shutdown()


class SseTransport(_QueueTransport):
    """Long-lived GET event stream for replies, POSTs for outbound messages."""

    kind = "sse"

    def __init__(self, url: str, headers: dict[str, str] | None = None,
                 session: aiohttp.ClientSession | None = None,
                 endpoint_timeout: float = 30.0) -> None:
        super().__init__(url, headers, session)
        self.endpoint_timeout = endpoint_timeout
        self.endpoint: str | None = None
        self._endpoint_ready: asyncio.Future[str] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._response: aiohttp.ClientResponse | None = None

    async def connect(self) -> None:
        session = self._open_session()
        try:
            self._response = await session.get(
                self.url,
                headers={**self.headers, "Accept": "text/event-stream"},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.endpoint_timeout),
            )
        except aiohttp.ClientError as exc:
            await self._shutdown()
            raise TransportError(self.kind, f"cannot open {self.url}: {exc}") from exc
        if self._response.status >= 400:
            status = self._response.status
            self._response.release()
            await self._shutdown()
            raise TransportError(self.kind, f"HTTP {status} from {self.url}")

        self._endpoint_ready = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_stream())
        try:
            self.endpoint = await asyncio.wait_for(
                asyncio.shield(self._endpoint_ready), timeout=self.endpoint_timeout,
            )
        except asyncio.TimeoutError as exc:
            await self.close()
            raise TransportError(self.kind, f"no endpoint event from {self.url}") from exc
        logger.info("SSE stream %s ready, posting to %s", self.url, self.endpoint)

    async def _read_stream(self) -> None:
        assert self._response is not None
        try:
            async for event in iter_sse_events(self._response.content):
                if event.event == "endpoint":
                    if self._endpoint_ready is not None and not self._endpoint_ready.done():
                        self._endpoint_ready.set_result(urljoin(self.url, event.data.strip()))
                elif event.event == "message":
                    self._push(decode_frame(event.data, self.url))
                else:
                    logger.debug("%s: ignoring SSE event %s", self.url, event.event)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("SSE stream %s failed: %s", self.url, exc)
        finally:
            if self._endpoint_ready is not None and not self._endpoint_ready.done():
                self._endpoint_ready.set_exception(
                    TransportClosedError(self.kind, "stream ended before endpoint event"),
                )
            if not self._closed:
                self._closed = True
                self._inbound.put_nowait(_EOF)

    async def send(self, message: dict[str, Any]) -> None:
        session = self._ensure_open()
        if self.endpoint is None:
            raise TransportError(self.kind, "endpoint not known yet")
        try:
            async with session.post(
                self.endpoint, json=message,
                headers={**self.headers, "Content-Type": "application/json"},
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise TransportError(
                        self.kind, f"HTTP {response.status} from {self.endpoint}: {body[:300]}",
                    )
        except aiohttp.ClientError as exc:
            raise TransportError(self.kind, f"post to {self.endpoint} failed: {exc}") from exc

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._response is not None:
            self._response.close()
            self._response = None
        if self._endpoint_ready is not None and not self._endpoint_ready.done():
            self._endpoint_ready.cancel()
        await self._shutdown()


def create_transport(config: MCPServerConfig) -> Transport:
    """Build the transport described by a server definition."""
    if config.transport == "stdio":
        return StdioTransport(config.command or "", config.args, config.env)
    if config.transport in ("http", "streamable_http"):
        return HttpTransport(config.url or "", config.headers, kind=config.transport)
    if config.transport == "sse":
        return SseTransport(config.url or "", config.headers)
    raise TransportError(config.transport, f"unsupported transport for server '{config.name}'")
