"""File viewing and editing tools.

view_file is read-only. create_file and str_replace_editor are gated
under the ``file`` category and carry a unified diff as preview.
Relative paths resolve against the bash tool's current directory.
"""
from __future__ import annotations

import difflib
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..models import CATEGORY_FILE, PendingConfirmation, ToolResult
from .base import BuiltinTool, object_schema, require_str, trim_output

logger = logging.getLogger(__name__)

MAX_VIEW_LINES = 2000
_LISTING_LIMIT = 200


def unified_diff(path: str, before: str, after: str) -> str:
    """Unified diff of two text versions of ``path`` (empty when equal)."""
    lines = difflib.unified_diff(
        before.splitlines(),
        after.splitlines(),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
        lineterm="",
    )
    return "\n".join(lines)


class _FileTool(BuiltinTool):
    def __init__(self, cwd_provider: Callable[[], str]) -> None:
        self._cwd_provider = cwd_provider

    def _resolve(self, raw: str) -> Path:
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = Path(self._cwd_provider()) / path
        return path


class ViewFileTool(_FileTool):

    @property
    def name(self) -> str:
        return "view_file"

    @property
    def description(self) -> str:
        return (
            "View the contents of a file with line numbers, or list a "
            "directory. Optionally restrict to a line range."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "path": {"type": "string", "description": "Path to file or directory"},
                "start_line": {"type": "integer", "description": "First line (1-based)"},
                "end_line": {"type": "integer", "description": "Last line (inclusive)"},
            },
            ["path"],
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        raw = require_str(arguments, "path")
        if raw is None:
            return ToolResult.fail("Path is required")
        path = self._resolve(raw)

        if path.is_dir():
            entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name))
            names = [p.name + ("/" if p.is_dir() else "") for p in entries]
            listing = "\n".join(names[:_LISTING_LIMIT])
            if len(names) > _LISTING_LIMIT:
                listing += f"\n... and {len(names) - _LISTING_LIMIT} more"
            return ToolResult.ok(f"Directory contents of {raw}:\n{listing}")
        if not path.exists():
            return ToolResult.fail(f"File or directory not found: {raw}")

        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        start = max(int(arguments.get("start_line") or 1), 1)
        end = int(arguments.get("end_line") or len(lines))
        end = min(end, len(lines), start + MAX_VIEW_LINES - 1)
        numbered = "\n".join(
            f"{number}: {lines[number - 1]}" for number in range(start, end + 1)
        )
        header = f"Contents of {raw}"
        if start > 1 or end < len(lines):
            header += f" (lines {start}-{end} of {len(lines)})"
        return ToolResult.ok(trim_output(f"{header}:\n{numbered}"))


class CreateFileTool(_FileTool):

    @property
    def name(self) -> str:
        return "create_file"

    @property
    def description(self) -> str:
        return "Create a new file with the given content. Parent directories are created."

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "path": {"type": "string", "description": "Path of the file to create"},
                "content": {"type": "string", "description": "Full file content"},
            },
            ["path", "content"],
        )

    def confirmation_for(self, arguments: dict[str, Any]) -> PendingConfirmation | None:
        raw = require_str(arguments, "path") or ""
        content = str(arguments.get("content") or "")
        return PendingConfirmation(
            operation="Create file",
            target=raw,
            category=CATEGORY_FILE,
            preview=unified_diff(raw, "", content) or content,
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        raw = require_str(arguments, "path")
        if raw is None:
            return ToolResult.fail("Path is required")
        path = self._resolve(raw)
        if path.exists():
            return ToolResult.fail(
                f"File already exists: {raw}. Use str_replace_editor to modify it."
            )
        content = str(arguments.get("content") or "")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("create_file wrote %s (%d chars)", path, len(content))
        return ToolResult.ok(
            f"Created {raw}\n{unified_diff(raw, '', content)}".rstrip(),
        )


class StrReplaceEditorTool(_FileTool):

    @property
    def name(self) -> str:
        return "str_replace_editor"

    @property
    def description(self) -> str:
        return (
            "Replace text in an existing file. old_str must match exactly "
            "and, unless replace_all is set, exactly once."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return object_schema(
            {
                "path": {"type": "string", "description": "Path of the file to edit"},
                "old_str": {"type": "string", "description": "Exact text to replace"},
                "new_str": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
            },
            ["path", "old_str", "new_str"],
        )

    def _plan(self, arguments: dict[str, Any]) -> tuple[Path, str, str] | str:
        """Return (path, before, after) or an error message."""
        raw = require_str(arguments, "path")
        if raw is None:
            return "Path is required"
        old = arguments.get("old_str")
        new = arguments.get("new_str")
        if not isinstance(old, str) or old == "":
            return "old_str is required"
        if not isinstance(new, str):
            return "new_str is required"
        path = self._resolve(raw)
        if not path.is_file():
            return f"File not found: {raw}"
        before = path.read_text(encoding="utf-8")
        count = before.count(old)
        if count == 0:
            return f"String not found in {raw}: {old[:80]!r}"
        if count > 1 and not arguments.get("replace_all"):
            return (
                f"String occurs {count} times in {raw}; add more context "
                "or set replace_all"
            )
        return path, before, before.replace(old, new)

    def confirmation_for(self, arguments: dict[str, Any]) -> PendingConfirmation | None:
        plan = self._plan(arguments)
        if isinstance(plan, str):
            # execute() reports the problem; nothing would be written
            return None
        raw = require_str(arguments, "path") or ""
        return PendingConfirmation(
            operation="Edit file",
            target=raw,
            category=CATEGORY_FILE,
            preview=unified_diff(raw, plan[1], plan[2]),
        )

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        plan = self._plan(arguments)
        if isinstance(plan, str):
            return ToolResult.fail(plan)
        path, before, after = plan
        path.write_text(after, encoding="utf-8")
        raw = str(arguments.get("path"))
        logger.info("str_replace_editor updated %s", path)
        return ToolResult.ok(f"Updated {raw}\n{unified_diff(raw, before, after)}")
