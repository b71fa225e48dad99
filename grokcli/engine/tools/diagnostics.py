"""Read-only disk and network diagnostics."""
from __future__ import annotations

import re
import shlex
from typing import Any

from ..models import ToolResult
from .base import BuiltinTool, object_schema, require_str, run_command

_SIZE_RE = re.compile(r"^\d+[kMG]?$")


class DiskTool(BuiltinTool):

    @property
    def name(self) -> str:
        return "disk"

    @property
    def description(self) -> str:
        return "Disk usage monitoring: usage (df), free (memory), du, large-files"

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "operation": {"type": "string", "enum": ["usage", "free", "du", "large-files"]},
                "path": {"type": "string", "description": "Path to inspect"},
                "min_size": {"type": "string", "description": "Minimum size for large-files, e.g. 100M"},
            },
            ["operation"],
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        operation = require_str(arguments, "operation")
        path = shlex.quote(require_str(arguments, "path") or ".")
        if operation == "usage":
            return await run_command(f"df -h {path}")
        if operation == "free":
            return await run_command("free -h")
        if operation == "du":
            return await run_command(f"du -sh {path}")
        if operation == "large-files":
            min_size = require_str(arguments, "min_size") or "100M"
            if not _SIZE_RE.match(min_size):
                return ToolResult.fail(f"Invalid size: {min_size}")
            return await run_command(
                f"find {path} -type f -size +{min_size} -exec ls -lh {{}} + "
                "2>/dev/null | sort -k5 -hr | head -20",
                timeout=120.0,
            )
        return ToolResult.fail(
            f"Unknown disk operation: {operation}. Supported: usage, free, du, large-files"
        )


class NetworkTool(BuiltinTool):

    @property
    def name(self) -> str:
        return "network"

    @property
    def description(self) -> str:
        return "Network diagnostics: ping, interfaces, connections, dns"

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "operation": {"type": "string", "enum": ["ping", "interfaces", "connections", "dns"]},
                "host": {"type": "string", "description": "Target host (ping, dns)"},
                "count": {"type": "integer", "description": "Ping count (default 4)"},
            },
            ["operation"],
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        operation = require_str(arguments, "operation")
        if operation == "interfaces":
            return await run_command("ip addr show")
        if operation == "connections":
            return await run_command("ss -tuln")
        if operation in ("ping", "dns"):
            host = require_str(arguments, "host")
            if host is None:
                return ToolResult.fail(f"Host is required for {operation}")
            if operation == "dns":
                return await run_command(f"nslookup {shlex.quote(host)}")
            count = max(1, min(int(arguments.get("count") or 4), 20))
            return await run_command(f"ping -c {count} {shlex.quote(host)}", timeout=60.0)
        return ToolResult.fail(
            f"Unknown network operation: {operation}. Supported: ping, interfaces, connections, dns"
        )
