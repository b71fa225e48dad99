"""bash tool: run shell commands in a tracked working directory.

Confirmation policy (first match wins):

1. blacklist regex match -> confirm
2. whitelist regex match -> no confirmation
3. dangerous or mutating heuristic match -> confirm
4. anything else (``ls``, ``cat``, ``git status`` ...) -> runs directly
"""
from __future__ import annotations

import logging
import os
import re
import shlex
from typing import Any

from ..models import CATEGORY_BASH, PendingConfirmation, ToolResult
from .base import BuiltinTool, object_schema, require_str, run_command

logger = logging.getLogger(__name__)

DANGER_PATTERNS = [
    r"\bsudo\b",
    r"\bchmod\b",
    r"\bchown\b",
    r"\bchgrp\b",
    r"\bapt(-get)?\s+(install|remove|purge|upgrade|dist-upgrade)\b",
    r"\bsnap\s+(install|remove)\b",
    r"\b(yum|dnf|zypper|brew)\s+install\b",
    r"\bpacman\s+-S\b",
    r"\bsystemctl\s+(start|stop|restart|enable|disable|reload)\b",
    r"\bdd\s+(if|of)=",
    r"\bmkfs(\.| )",
    r"\bfdisk\b",
    r"\bparted\b",
    r"\b(shutdown|reboot|poweroff|halt)\b",
    r"\bkillall\b",
    r"\bkill\b",
    r"\bdocker\s+volume\s+(rm|prune)\b",
    r"\bdocker\s+system\s+prune\b",
    r"(curl|wget)[^\n|]*\|\s*(sh|bash)\b",
    r"/dev/sd[a-z]",
    r":\(\)\s*\{",
]

MUTATING_PATTERNS = [
    r"(^|[;&|]\s*)(rm|rmdir|mv|cp|mkdir|touch|ln|truncate|shred)\b",
    r"\bsed\s+(-[a-z]*\s+)*-i",
    r"\btee\b",
    r"(^|[^0-9&>])>>?\s*[^&\s]",
    r"\bgit\s+(commit|push|reset|checkout|merge|rebase|add|rm|clean|stash|pull|switch|restore)\b",
    r"\b(npm|yarn|pnpm)\s+(install|add|remove|uninstall|publish)\b",
    r"\bpip(3)?\s+(install|uninstall)\b",
    r"\bpython(\d+(\.\d+)?)?\s+-m\s+pip\s+(install|uninstall)\b",
    r"\buv\s+(pip\s+)?(install|add|remove)\b",
]

# Redirections to these targets do not write anything.
_HARMLESS_REDIRECT = re.compile(r"[0-9]?>>?\s*/dev/null|2>&1")


def _compile(patterns: list[str]) -> list[re.Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as exc:
            logger.warning("Ignoring invalid command pattern %r: %s", pattern, exc)
    return compiled


class BashTool(BuiltinTool):
    """Shell execution with ``cd`` tracking."""

    def __init__(
        self,
        cwd: str = ".",
        *,
        timeout: float = 30.0,
        whitelist: list[str] | None = None,
        blacklist: list[str] | None = None,
    ) -> None:
        self._cwd = os.path.abspath(os.path.expanduser(cwd))
        self._timeout = timeout
        self._whitelist = _compile(whitelist or [])
        self._blacklist = _compile(blacklist or [])
        self._danger = _compile(DANGER_PATTERNS)
        self._mutating = _compile(MUTATING_PATTERNS)

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return (
            "Execute a bash command in the current working directory. "
            "Use for listing files, searching, running builds and tests. "
            "`cd DIR` changes the working directory for later commands."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {"command": {"type": "string", "description": "The bash command to execute"}},
            ["command"],
        )

    @property
    def cwd(self) -> str:
        return self._cwd

    def requires_confirmation(self, command: str) -> bool:
        """Return True if the command needs a human decision."""
        command = command.strip()
        if any(p.search(command) for p in self._blacklist):
            return True
        if any(p.search(command) for p in self._whitelist):
            return False
        if any(p.search(command) for p in self._danger):
            return True
        scan = _HARMLESS_REDIRECT.sub(" ", command)
        return any(p.search(scan) for p in self._mutating)

    def confirmation_for(self, arguments: dict[str, Any]) -> PendingConfirmation | None:
        command = require_str(arguments, "command")
        if command is None or _parse_cd(command) is not None:
            return None
        if not self.requires_confirmation(command):
            return None
        return PendingConfirmation(
            operation="Run bash command",
            target=command,
            category=CATEGORY_BASH,
            preview=f"$ {command}\n(cwd: {self._cwd})",
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        command = require_str(arguments, "command")
        if command is None:
            return ToolResult.fail("Command is required")

        target = _parse_cd(command)
        if target is not None:
            return self._change_directory(target)

        logger.info("bash cwd=%s command=%s", self._cwd, command[:120])
        return await run_command(command, cwd=self._cwd, timeout=self._timeout)

    def _change_directory(self, target: str) -> ToolResult:
        path = os.path.expanduser(target or "~")
        if not os.path.isabs(path):
            path = os.path.join(self._cwd, path)
        path = os.path.normpath(path)
        if not os.path.isdir(path):
            return ToolResult.fail(f"Cannot change directory: {target}: no such directory")
        self._cwd = path
        return ToolResult.ok(f"Changed directory to: {path}")


def _parse_cd(command: str) -> str | None:
    """Return the target of a bare ``cd`` command, or None for anything else."""
    try:
        parts = shlex.split(command)
    except ValueError:
        return None
    if not parts or parts[0] != "cd" or len(parts) > 2:
        return None
    if any(ch in command for ch in ";&|"):
        return None
    return parts[1] if len(parts) == 2 else ""
