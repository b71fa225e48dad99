"""apt package management tool."""
from __future__ import annotations

import shlex
from typing import Any

from ..models import CATEGORY_BASH, PendingConfirmation, ToolResult
from .base import BuiltinTool, object_schema, require_str, run_command

# operation -> (command template, needs package, mutating)
OPERATIONS: dict[str, tuple[str, bool, bool]] = {
    "install": ("apt-get install -y {package}", True, True),
    "remove": ("apt-get remove -y {package}", True, True),
    "update": ("apt-get update", False, True),
    "upgrade": ("apt-get upgrade -y", False, True),
    "search": ("apt-cache search {package}", True, False),
    "show": ("apt-cache show {package}", True, False),
}

APT_TIMEOUT_SECONDS = 300.0


class AptTool(BuiltinTool):

    @property
    def name(self) -> str:
        return "apt"

    @property
    def description(self) -> str:
        return "Ubuntu/Debian package management: install, remove, update, upgrade, search, show"

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "operation": {"type": "string", "enum": list(OPERATIONS)},
                "package": {
                    "type": "string",
                    "description": "Package name (install, remove, search, show)",
                },
            },
            ["operation"],
        )

    def build_command(self, arguments: dict[str, Any]) -> tuple[str, bool] | str:
        """Return (command, mutating) or an error message."""
        operation = require_str(arguments, "operation") or ""
        entry = OPERATIONS.get(operation)
        if entry is None:
            return (
                f"Unknown apt operation: {operation or '(none)'}. "
                f"Supported: {', '.join(OPERATIONS)}"
            )
        template, needs_package, mutating = entry
        package = require_str(arguments, "package")
        if needs_package and package is None:
            return "Package name is required"
        command = template.format(package=shlex.quote(package or ""))
        if mutating:
            command = f"sudo -n {command}"
        return command, mutating

    def confirmation_for(self, arguments: dict[str, Any]) -> PendingConfirmation | None:
        built = self.build_command(arguments)
        if isinstance(built, str) or not built[1]:
            return None
        return PendingConfirmation(
            operation="Run apt command",
            target=built[0],
            category=CATEGORY_BASH,
            preview=f"Command: {built[0]}",
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        built = self.build_command(arguments)
        if isinstance(built, str):
            return ToolResult.fail(built)
        return await run_command(built[0], timeout=APT_TIMEOUT_SECONDS)
