"""Command-line entry point.

    grok                          interactive session
    grok "fix the failing test"   interactive session with a first message
    grok -p "list files"          headless: run one turn, print, exit
    grok mcp list|add|add-json|remove|test

Headless mode auto-approves every operation. Interactive mode asks
through a rich prompt and Ctrl+C aborts the running turn.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax

from .. import __version__
from .agent import GrokAgent
from .config import EngineConfig
from .errors import ConfigError, GrokError
from .events import (
    OUTCOME_ABORTED,
    OUTCOME_ERROR,
    OUTCOME_ROUND_LIMIT,
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    ToolCallsEvent,
    ToolResultEvent,
    event_to_dict,
)
from .mcp.client import ProtocolClient
from .models import (
    ALL_OPERATIONS,
    ConnectionState,
    ConversationEntry,
    Decision,
    EntryKind,
    PendingConfirmation,
)
from .yaml_config import (
    GrokSettings,
    MCPServerConfig,
    add_server_to_file,
    apply_engine_overrides,
    remove_server_from_file,
    resolve_settings,
    user_settings_path,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_RESULT_PREVIEW_LINES = 12

HELP_TEXT = """\
[bold]Commands[/bold]
  /clear         clear the conversation and session approvals
  /model [NAME]  show or switch the model
  /help          show this help
  /exit          quit
  !COMMAND       run a shell command directly
Ctrl+C during a response aborts it."""


def configure_logging(level: str, verbose: bool = False) -> None:
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.WARNING)
    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grok",
        description="Conversational coding agent powered by Grok",
        epilog="Run 'grok mcp --help' to manage MCP servers.",
    )
    parser.add_argument("message", nargs="*", help="Initial message to send")
    parser.add_argument(
        "-p", "--prompt",
        help="Process a single prompt headlessly and exit",
    )
    parser.add_argument(
        "-d", "--directory", default=".",
        help="Working directory (default: current directory)",
    )
    parser.add_argument("-m", "--model", help="Model to use")
    parser.add_argument("--base-url", help="Model API base URL")
    parser.add_argument("--api-key", help="API key (default: $GROK_API_KEY)")
    parser.add_argument(
        "--max-tool-rounds", type=int, metavar="N",
        help="Maximum tool execution rounds per turn",
    )
    parser.add_argument("--settings", metavar="FILE", help="Settings YAML to use")
    parser.add_argument(
        "--json", action="store_true",
        help="Headless: print conversation messages as JSON lines",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"grok {__version__}")
    return parser


def build_mcp_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="grok mcp", description="Manage MCP servers")
    parser.add_argument("--settings", metavar="FILE", help="Settings YAML to read/write")
    parser.add_argument("-d", "--directory", default=".", help="Project directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="action", required=True)

    sub.add_parser("list", help="List configured MCP servers")

    add = sub.add_parser("add", help="Add an MCP server")
    add.add_argument("name")
    add.add_argument(
        "-t", "--transport", default="stdio",
        choices=["stdio", "http", "sse", "streamable_http"],
    )
    add.add_argument("-c", "--command", help="Command to run (stdio)")
    add.add_argument("-a", "--args", nargs="*", default=[], help="Command arguments (stdio)")
    add.add_argument("-u", "--url", help="Server URL (http, sse)")
    add.add_argument("--header", action="append", default=[], metavar="KEY=VALUE")
    add.add_argument("-e", "--env", action="append", default=[], metavar="KEY=VALUE")
    add.add_argument(
        "--requires-confirmation", action="store_true",
        help="Ask before each tool call on this server",
    )

    add_json = sub.add_parser("add-json", help="Add an MCP server from a JSON definition")
    add_json.add_argument("name")
    add_json.add_argument("definition", help="JSON object, e.g. '{\"command\": \"npx\"}'")

    remove = sub.add_parser("remove", help="Remove an MCP server")
    remove.add_argument("name")

    test = sub.add_parser("test", help="Connect to a server and list its tools")
    test.add_argument("name")
    return parser


def _pairs(items: list[str], label: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigError(f"{label} must be KEY=VALUE (got {item!r})")
        result[key.strip()] = value
    return result


def load_config(args: argparse.Namespace) -> tuple[EngineConfig, GrokSettings]:
    """Defaults < env < user settings < project settings < CLI flags."""
    directory = os.path.abspath(os.path.expanduser(args.directory))
    if not os.path.isdir(directory):
        raise ConfigError(f"directory does not exist: {directory}")
    config = EngineConfig.from_env()
    settings = resolve_settings(directory, args.settings)
    apply_engine_overrides(config, settings.engine)
    config.cwd = directory
    if args.model:
        config.model = args.model
    if args.base_url:
        config.base_url = args.base_url
    if args.api_key:
        config.api_key = args.api_key
    if args.max_tool_rounds is not None:
        if args.max_tool_rounds < 1:
            raise ConfigError("--max-tool-rounds must be at least 1")
        config.max_tool_rounds = args.max_tool_rounds
    return config, settings


async def connect_servers(
    config: EngineConfig, settings: GrokSettings, console: Console,
) -> ProtocolClient:
    client = ProtocolClient(
        call_timeout=config.mcp_call_timeout_seconds,
        handshake_timeout=config.mcp_handshake_timeout_seconds,
    )
    servers = settings.server_list()
    if servers:
        for connection in await client.connect_all(servers):
            if connection.state == ConnectionState.FAILED:
                console.print(
                    f"[yellow]MCP server {escape(connection.name)} unavailable: "
                    f"{escape(connection.error or 'unknown error')}[/yellow]"
                )
    return client


# ── Terminal input ──

class TerminalInput:
    """Line reads from the terminal through at most one reader thread.

    ``console.input`` blocks a worker thread until Enter. A read whose
    awaiting task is cancelled (Ctrl+C during a confirmation prompt) keeps
    that thread; the next ``read`` waits on it instead of starting a
    second thread that would compete for stdin.
    """

    def __init__(self, console: Console) -> None:
        self._console = console
        self._pending: asyncio.Future[str] | None = None

    async def read(self, prompt: str = "") -> str:
        if self._pending is not None and self._pending.done():
            # Answer to a prompt nobody is waiting for any more.
            stale, self._pending = self._pending, None
            if not stale.cancelled() and stale.exception() is not None:
                logger.debug("Discarding failed stale read: %s", stale.exception())
        if self._pending is None:
            self._pending = asyncio.ensure_future(
                asyncio.to_thread(self._console.input, prompt),
            )
        else:
            self._console.print(prompt, end="")
        pending = self._pending
        try:
            return await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None

    async def choose(self, prompt: str, choices: list[str], default: str) -> str:
        while True:
            answer = (await self.read(
                f"{prompt} [{'/'.join(choices)}] ({default}): ",
            )).strip().lower() or default
            if answer in choices:
                return answer
            self._console.print("[red]Please select one of the available options[/red]")


# ── Confirmation prompt ──

def make_decision_callback(console: Console, terminal: TerminalInput | None = None):
    """Build the gate callback that asks in the terminal."""
    terminal = terminal or TerminalInput(console)

    async def decide(pending: PendingConfirmation) -> Decision:
        body: Any = pending.preview or pending.target
        if pending.preview and pending.preview.startswith("---"):
            body = Syntax(pending.preview, "diff", theme="ansi_dark")
        console.print(Panel(
            body,
            title=f"{escape(pending.operation)}: {escape(pending.target[:80])}",
            border_style="yellow",
        ))
        console.print(
            "  [bold]y[/bold] yes   [bold]a[/bold] yes, don't ask again this session   "
            "[bold]n[/bold] no   [bold]f[/bold] no, with feedback"
        )
        choice = await terminal.choose("Proceed?", ["y", "a", "n", "f"], default="y")
        if choice == "y":
            return Decision.approved()
        if choice == "a":
            return Decision.approved_remember()
        if choice == "f":
            feedback = await terminal.read("Feedback: ")
            return Decision.rejected(feedback.strip() or None)
        return Decision.rejected()

    return decide


# ── Rendering ──

def _preview(text: str) -> str:
    lines = text.splitlines()
    if len(lines) > _RESULT_PREVIEW_LINES:
        hidden = len(lines) - _RESULT_PREVIEW_LINES
        lines = lines[:_RESULT_PREVIEW_LINES] + [f"... ({hidden} more lines)"]
    return "\n".join(lines)


async def render_turn(agent: GrokAgent, message: str, console: Console) -> str:
    """Stream one turn to the console. Returns the turn outcome."""
    outcome = OUTCOME_ERROR
    streaming = False
    async for event in agent.process_user_message_stream(message):
        if isinstance(event, ContentEvent):
            if not streaming:
                console.print()
                streaming = True
            console.print(event.content, end="", markup=False, highlight=False)
            continue
        if streaming:
            console.print()
            streaming = False
        if isinstance(event, ToolCallsEvent):
            for call in event.tool_calls:
                console.print(
                    f"[cyan]⏺ {escape(call.name)}[/cyan]"
                    f"[dim]({escape(call.arguments_raw[:120])})[/dim]"
                )
        elif isinstance(event, ToolResultEvent) and event.result is not None:
            style = "green" if event.result.success else "red"
            console.print(f"[{style}]  ⎿ {escape(_preview(event.result.as_text()))}[/{style}]")
        elif isinstance(event, ErrorEvent):
            console.print(f"[bold red]Error:[/bold red] {escape(event.message)}")
        elif isinstance(event, DoneEvent):
            outcome = event.outcome
            if outcome == OUTCOME_ROUND_LIMIT:
                console.print("[yellow]Maximum tool execution rounds reached.[/yellow]")
            elif outcome == OUTCOME_ABORTED:
                console.print("[yellow][Operation cancelled by user][/yellow]")
    if streaming:
        console.print()
    return outcome


def entry_to_message(entry: ConversationEntry) -> dict[str, Any] | None:
    """Chat-completions shaped message for headless JSON output."""
    if entry.kind == EntryKind.USER:
        return {"role": "user", "content": entry.content}
    if entry.kind == EntryKind.ASSISTANT:
        message: dict[str, Any] = {"role": "assistant", "content": entry.content}
        if entry.tool_calls:
            message["tool_calls"] = [call.to_message() for call in entry.tool_calls]
        return message
    if entry.kind == EntryKind.TOOL_RESULT and entry.tool_call is not None:
        return {"role": "tool", "tool_call_id": entry.tool_call.id, "content": entry.content}
    return None


# ── Modes ──

async def run_headless(
    agent: GrokAgent, prompt: str, console: Console, *, as_json: bool = False,
) -> int:
    agent.gate.set_session_flag(ALL_OPERATIONS, True)
    if not as_json:
        outcome = await render_turn(agent, prompt, console)
        return 1 if outcome == OUTCOME_ERROR else 0
    outcome = OUTCOME_ERROR
    async for event in agent.process_user_message_stream(prompt):
        if isinstance(event, DoneEvent):
            outcome = event.outcome
        print(json.dumps(event_to_dict(event), default=str), flush=True)
    for entry in agent.get_entries():
        message = entry_to_message(entry)
        if message is not None:
            print(json.dumps({"event": "message", **message}), flush=True)
    return 1 if outcome == OUTCOME_ERROR else 0


async def run_interactive(
    agent: GrokAgent,
    console: Console,
    first_message: str | None = None,
    terminal: TerminalInput | None = None,
) -> int:
    terminal = terminal or TerminalInput(console)
    console.print(Panel.fit(
        f"[bold]Grok CLI[/bold] {__version__}  model: [cyan]{escape(agent.get_current_model())}[/cyan]\n"
        f"cwd: {escape(agent.config.cwd)}   type /help for commands",
        border_style="blue",
    ))
    loop = asyncio.get_running_loop()
    pending_message = first_message
    while True:
        if pending_message is not None:
            text, pending_message = pending_message, None
        else:
            try:
                text = await terminal.read("[bold cyan]❯[/bold cyan] ")
            except (EOFError, KeyboardInterrupt):
                console.print()
                return 0
        text = text.strip()
        if not text:
            continue
        if text in ("/exit", "/quit", "exit", "quit"):
            return 0
        if text == "/help":
            console.print(HELP_TEXT)
            continue
        if text == "/clear":
            agent.clear_conversation()
            console.clear()
            continue
        if text.startswith("/model"):
            name = text[len("/model"):].strip()
            if name:
                agent.set_model(name)
                console.print(f"Model set to [cyan]{escape(name)}[/cyan]")
            else:
                console.print(f"Current model: [cyan]{escape(agent.get_current_model())}[/cyan]")
            continue
        if text.startswith("!"):
            result = await agent.execute_bash_command(text[1:].strip())
            style = "green" if result.success else "red"
            console.print(f"[{style}]{escape(result.as_text())}[/{style}]")
            continue

        try:
            loop.add_signal_handler(signal.SIGINT, agent.abort_current_operation)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler not available on this platform")
        try:
            await render_turn(agent, text, console)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass


async def run_agent(args: argparse.Namespace, console: Console) -> int:
    try:
        config, settings = load_config(args)
    except (ConfigError, FileNotFoundError) as exc:
        console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        return 1
    configure_logging(config.log_level, args.verbose)
    if not config.api_key:
        console.print(
            "[bold red]API key required.[/bold red] Set GROK_API_KEY, "
            "pass --api-key, or add it to the settings file."
        )
        return 1

    headless = args.prompt is not None
    terminal = TerminalInput(console)
    if not headless:
        config.decision_callback = make_decision_callback(console, terminal)
    protocol = await connect_servers(config, settings, console)
    agent = GrokAgent(config, protocol_client=protocol)
    try:
        if headless:
            return await run_headless(agent, args.prompt, console, as_json=args.json)
        first = " ".join(args.message).strip() or None
        return await run_interactive(agent, console, first, terminal)
    finally:
        await agent.close()
        await protocol.shutdown()


async def run_mcp_command(args: argparse.Namespace, console: Console) -> int:
    target = Path(args.settings) if args.settings else user_settings_path()
    try:
        if args.action == "add":
            server = MCPServerConfig(
                name=args.name,
                transport=args.transport,
                command=args.command,
                args=list(args.args),
                env=_pairs(args.env, "--env"),
                url=args.url,
                headers=_pairs(args.header, "--header"),
                requires_confirmation=args.requires_confirmation,
            )
            add_server_to_file(target, server)
            console.print(f"[green]✓ Added MCP server: {escape(server.name)}[/green] ({target})")
            return 0
        if args.action == "add-json":
            try:
                raw = json.loads(args.definition)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"invalid JSON: {exc}") from exc
            server = MCPServerConfig.from_dict(args.name, raw)
            add_server_to_file(target, server)
            console.print(f"[green]✓ Added MCP server: {escape(server.name)}[/green] ({target})")
            return 0
        if args.action == "remove":
            if remove_server_from_file(target, args.name):
                console.print(f"[green]✓ Removed MCP server: {escape(args.name)}[/green]")
                return 0
            console.print(f"[red]Server not found: {escape(args.name)}[/red]")
            return 1

        settings = resolve_settings(args.directory, args.settings)
        if args.action == "list":
            return _print_servers(settings, console)
        return await _test_server(settings, args.name, console)
    except (ConfigError, FileNotFoundError) as exc:
        console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        return 1


def _print_servers(settings: GrokSettings, console: Console) -> int:
    if not settings.servers:
        console.print("[yellow]No MCP servers configured[/yellow]")
        return 0
    console.print("[bold]Configured MCP servers:[/bold]")
    for server in settings.server_list():
        console.print(f"\n[bold]{escape(server.name)}[/bold]")
        console.print(f"  Transport: {server.transport}")
        if server.transport == "stdio":
            console.print(f"  Command: {escape(' '.join([server.command or '', *server.args]))}")
        else:
            console.print(f"  URL: {escape(server.url or '')}")
        if server.requires_confirmation:
            console.print("  Requires confirmation: yes")
    return 0


async def _test_server(settings: GrokSettings, name: str, console: Console) -> int:
    server = settings.servers.get(name)
    if server is None:
        console.print(f"[red]Server not found: {escape(name)}[/red]")
        return 1
    config = EngineConfig.from_env()
    client = ProtocolClient(
        call_timeout=config.mcp_call_timeout_seconds,
        handshake_timeout=config.mcp_handshake_timeout_seconds,
    )
    console.print(f"[blue]Testing connection to {escape(name)}...[/blue]")
    try:
        connection = await client.add_server(server)
        if connection.state != ConnectionState.READY:
            console.print(f"[red]✗ Failed: {escape(connection.error or 'unknown error')}[/red]")
            return 1
        console.print(f"[green]✓ Successfully connected to {escape(name)}[/green]")
        console.print(f"  Available tools: {len(connection.tools)}")
        for tool in connection.tools:
            console.print(f"    - {escape(tool.remote_name or tool.name)}: {escape(tool.description)}")
        return 0
    finally:
        await client.shutdown()


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    console = Console()
    if argv[:1] == ["mcp"]:
        args = build_mcp_parser().parse_args(argv[1:])
        configure_logging(os.getenv("GROK_LOG_LEVEL") or "WARNING", args.verbose)
        return asyncio.run(run_mcp_command(args, console))

    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run_agent(args, console))
    except KeyboardInterrupt:
        return 130
    except GrokError as exc:
        console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
