"""Built-in tools exposed to the model."""
from __future__ import annotations

from typing import TYPE_CHECKING

from .apt import AptTool
from .base import BuiltinTool, run_command
from .bash import BashTool
from .diagnostics import DiskTool, NetworkTool
from .systemctl import SystemctlTool
from .text_editor import CreateFileTool, StrReplaceEditorTool, ViewFileTool
from .web_search import WebSearchTool

if TYPE_CHECKING:
    from ..config import EngineConfig

__all__ = [
    "AptTool",
    "BashTool",
    "BuiltinTool",
    "CreateFileTool",
    "DiskTool",
    "NetworkTool",
    "StrReplaceEditorTool",
    "SystemctlTool",
    "ViewFileTool",
    "WebSearchTool",
    "build_builtin_tools",
    "run_command",
]


def build_builtin_tools(config: EngineConfig) -> list[BuiltinTool]:
    """Default tool set. The bash tool comes first; file tools share its cwd."""
    bash = BashTool(
        config.cwd,
        timeout=config.bash_timeout_seconds,
        whitelist=config.command_whitelist,
        blacklist=config.command_blacklist,
    )

    def cwd() -> str:
        return bash.cwd

    tools: list[BuiltinTool] = [
        bash,
        ViewFileTool(cwd),
        CreateFileTool(cwd),
        StrReplaceEditorTool(cwd),
        AptTool(),
        SystemctlTool(),
        DiskTool(),
        NetworkTool(),
    ]
    if config.tavily_api_key:
        tools.append(WebSearchTool(config.tavily_api_key))
    return tools
