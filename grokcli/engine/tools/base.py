"""Abstract base for built-in tools.

Every built-in tool is a thin wrapper exposed to the dispatcher as
name / description / parameter schema / execute(arguments). Tools that
mutate the machine describe the confirmation they need through
confirmation_for(); returning None means the call is read-only.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
import signal
from typing import Any

from ..models import PendingConfirmation, ToolDescriptor, ToolResult

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 12000


class BuiltinTool(abc.ABC):
    """Abstract tool interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Catalog name the model calls the tool by."""

    @property
    @abc.abstractmethod
    def description(self) -> str:
        """Human/model facing description."""

    @property
    @abc.abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON schema of the arguments object."""

    def confirmation_for(self, arguments: dict[str, Any]) -> PendingConfirmation | None:
        """Return the confirmation this call needs, or None when it is read-only."""
        return None

    @abc.abstractmethod
    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        """Run the tool. May raise; the dispatcher converts exceptions."""

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


def object_schema(
    properties: dict[str, Any], required: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(required or []),
    }


def trim_output(text: str, limit: int = _OUTPUT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    omitted = len(text) - limit
    return f"{text[:limit]}\n... [truncated {omitted} chars]"


def _signal_process_group(
    proc: asyncio.subprocess.Process, sig: signal.Signals,
) -> bool:
    """Send a signal to the process group when available."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


async def _stop_process(proc: asyncio.subprocess.Process) -> None:
    if not _signal_process_group(proc, signal.SIGTERM):
        try:
            proc.kill()
        except ProcessLookupError:
            return
    try:
        await asyncio.wait_for(proc.wait(), timeout=2.0)
    except asyncio.TimeoutError:
        _signal_process_group(proc, signal.SIGKILL)
        await proc.wait()


async def run_command(
    command: str,
    *,
    cwd: str | None = None,
    timeout: float = 30.0,
    env: dict[str, str] | None = None,
) -> ToolResult:
    """Run a shell command and normalize its outcome.

    Cancellation kills the process group and propagates so an abort of
    the current turn also stops the command.
    """
    shell_executable = shutil.which("bash") or None
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env={**os.environ, **(env or {})},
        start_new_session=True,
        executable=shell_executable,
    )
    logger.debug("run_command pid=%s cwd=%s command=%s", proc.pid, cwd, command[:180])
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=timeout,
        )
    except asyncio.TimeoutError:
        await _stop_process(proc)
        return ToolResult.fail(f"Command timed out after {timeout:g}s: {command}")
    except asyncio.CancelledError:
        logger.warning("Command cancelled, terminating pid=%s", proc.pid)
        await _stop_process(proc)
        raise

    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        detail = (stderr or stdout).strip() or "no output"
        return ToolResult.fail(
            f"Command failed (exit code {proc.returncode}): {trim_output(detail)}"
        )
    output = stdout + (f"\nSTDERR: {stderr}" if stderr.strip() else "")
    return ToolResult.ok(
        trim_output(output.strip()) or "Command executed successfully (no output)"
    )


def require_str(arguments: dict[str, Any], key: str) -> str | None:
    """Return a non-empty string argument or None."""
    value = arguments.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None
