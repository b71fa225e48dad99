"""systemd service control tool."""
from __future__ import annotations

import shlex
from typing import Any

from ..models import CATEGORY_BASH, PendingConfirmation, ToolResult
from .base import BuiltinTool, object_schema, require_str, run_command

MUTATING_OPERATIONS = ("start", "stop", "restart", "enable", "disable")
QUERY_OPERATIONS = ("status", "is-active", "is-enabled")


class SystemctlTool(BuiltinTool):

    @property
    def name(self) -> str:
        return "systemctl"

    @property
    def description(self) -> str:
        return "Systemd service management: start, stop, restart, status, enable, disable"

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "operation": {
                    "type": "string",
                    "enum": [*MUTATING_OPERATIONS, *QUERY_OPERATIONS],
                },
                "service": {"type": "string", "description": "Service unit name"},
            },
            ["operation", "service"],
        )

    def build_command(self, arguments: dict[str, Any]) -> tuple[str, bool] | str:
        operation = require_str(arguments, "operation") or ""
        service = require_str(arguments, "service")
        if service is None:
            return "Service name is required"
        if operation in MUTATING_OPERATIONS:
            return f"sudo -n systemctl {operation} {shlex.quote(service)}", True
        if operation in QUERY_OPERATIONS:
            # status exits non-zero for inactive units; keep its output anyway
            return f"systemctl {operation} --no-pager {shlex.quote(service)} || true", False
        return (
            f"Unknown systemctl operation: {operation or '(none)'}. Supported: "
            f"{', '.join(MUTATING_OPERATIONS + QUERY_OPERATIONS)}"
        )

    def confirmation_for(self, arguments: dict[str, Any]) -> PendingConfirmation | None:
        built = self.build_command(arguments)
        if isinstance(built, str) or not built[1]:
            return None
        return PendingConfirmation(
            operation="Run systemctl command",
            target=built[0],
            category=CATEGORY_BASH,
            preview=f"Command: {built[0]}",
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        built = self.build_command(arguments)
        if isinstance(built, str):
            return ToolResult.fail(built)
        return await run_command(built[0])
