"""YAML settings loader.

Loads the engine overrides and the extensibility-server definitions
from settings files. The runtime only consumes the resolved list of
MCPServerConfig; this module owns the file format.

Example YAML:
    engine:
      model: grok-4
      max_tool_rounds: 50
      mcp_call_timeout_seconds: 30
      command_whitelist: ["^make test"]

    mcp_servers:
      filesystem:
        transport: stdio
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "."]
      github:
        transport: http
        url: https://mcp.github.com/v1
        headers:
          Authorization: "Bearer ${GITHUB_TOKEN}"
        requires_confirmation: true
      events:
        transport: sse
        url: http://localhost:8931/sse

Precedence (highest wins): project ``.grok/settings.yaml`` over
user ``~/.grok/settings.yaml``. Server entries are merged by name.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

TRANSPORT_TYPES = ("stdio", "http", "sse", "streamable_http")

# Leaves room for "mcp__<server>__<tool>" within the 64-character tool name limit.
SERVER_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,48}$")

_ENGINE_FIELDS: dict[str, type] = {
    "base_url": str,
    "model": str,
    "max_tokens": int,
    "temperature": float,
    "request_timeout_seconds": float,
    "max_tool_rounds": int,
    "cwd": str,
    "system_prompt": str,
    "mcp_call_timeout_seconds": float,
    "mcp_handshake_timeout_seconds": float,
    "bash_timeout_seconds": float,
    "command_whitelist": list,
    "command_blacklist": list,
    "log_level": str,
}


@dataclass
class MCPServerConfig:
    """Connection definition for one extensibility-protocol server."""
    name: str
    transport: str = "stdio"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    requires_confirmation: bool = False
    timeout_seconds: float | None = None

    def validate(self) -> None:
        """Raise ConfigError when the definition cannot be connected."""
        if not SERVER_NAME_RE.match(self.name or "") or "__" in self.name:
            raise ConfigError(
                f"server name {self.name!r} must be 1-48 letters, digits, '_' or '-' "
                "and must not contain '__'",
            )
        if self.transport not in TRANSPORT_TYPES:
            raise ConfigError(
                f"server '{self.name}': transport must be one of "
                f"{', '.join(TRANSPORT_TYPES)} (got {self.transport!r})",
            )
        if self.transport == "stdio" and not self.command:
            raise ConfigError(f"server '{self.name}': command is required for stdio transport")
        if self.transport != "stdio" and not self.url:
            raise ConfigError(
                f"server '{self.name}': url is required for {self.transport} transport",
            )

    @classmethod
    def from_dict(cls, name: str, raw: dict[str, Any]) -> MCPServerConfig:
        """Build from a YAML/JSON mapping. Accepts a nested ``transport`` mapping."""
        if not isinstance(raw, dict):
            raise ConfigError(f"server '{name}' must be a mapping")
        data = dict(raw)
        transport = data.pop("transport", None) or data.pop("type", None) or "stdio"
        if isinstance(transport, dict):
            nested = dict(transport)
            transport = nested.pop("type", "stdio")
            data = {**nested, **data}
        timeout = data.get("timeout_seconds")
        server = cls(
            name=name,
            transport=str(transport).lower(),
            command=data.get("command"),
            args=[str(a) for a in (data.get("args") or [])],
            env={str(k): _expand(v) for k, v in (data.get("env") or {}).items()},
            url=data.get("url"),
            headers={
                str(k): _expand(v) for k, v in (data.get("headers") or {}).items()
            },
            requires_confirmation=bool(data.get("requires_confirmation", False)),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )
        server.validate()
        return server

    def to_dict(self) -> dict[str, Any]:
        """Mapping written back to the settings file (name is the key)."""
        data: dict[str, Any] = {"transport": self.transport}
        if self.transport == "stdio":
            data["command"] = self.command
            if self.args:
                data["args"] = list(self.args)
            if self.env:
                data["env"] = dict(self.env)
        else:
            data["url"] = self.url
            if self.headers:
                data["headers"] = dict(self.headers)
        if self.requires_confirmation:
            data["requires_confirmation"] = True
        if self.timeout_seconds is not None:
            data["timeout_seconds"] = self.timeout_seconds
        return data


@dataclass
class GrokSettings:
    """Complete parsed settings."""
    engine: dict[str, Any] = field(default_factory=dict)
    servers: dict[str, MCPServerConfig] = field(default_factory=dict)

    def server_list(self) -> list[MCPServerConfig]:
        return list(self.servers.values())


def _expand(value: Any) -> str:
    return os.path.expandvars(str(value))


def user_settings_path() -> Path:
    """Return the user settings path (~/.grok/settings.yaml)."""
    return Path.home() / ".grok" / "settings.yaml"


def project_settings_path(directory: str | Path = ".") -> Path:
    return Path(directory) / ".grok" / "settings.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_settings: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"YAML parse error: {exc}", str(path)) from exc
    if not isinstance(raw, dict):
        raise ConfigError("top level must be a mapping", str(path))
    return raw


def load_settings(path: str | Path) -> GrokSettings:
    """Load and parse one settings file.

    Raises FileNotFoundError when the file does not exist and
    ConfigError when it cannot be parsed or validated.
    """
    path = Path(path)
    raw = _read_yaml(path)

    engine_raw = raw.get("engine") or {}
    if not isinstance(engine_raw, dict):
        raise ConfigError("'engine' must be a mapping", str(path))
    unknown = sorted(set(engine_raw) - set(_ENGINE_FIELDS))
    if unknown:
        logger.warning(
            "load_settings: ignoring unknown engine keys in %s: %s",
            path, ", ".join(unknown),
        )
    engine = {k: v for k, v in engine_raw.items() if k in _ENGINE_FIELDS}

    servers_raw = raw.get("mcp_servers") or {}
    if not isinstance(servers_raw, dict):
        raise ConfigError("'mcp_servers' must be a mapping of name -> server", str(path))
    servers: dict[str, MCPServerConfig] = {}
    for name, cfg in servers_raw.items():
        try:
            servers[str(name)] = MCPServerConfig.from_dict(str(name), cfg)
        except ConfigError as exc:
            raise ConfigError(exc.reason, str(path)) from exc

    logger.info(
        "Settings loaded from %s: engine_keys=[%s] servers=[%s]",
        path,
        ", ".join(sorted(engine)) or "none",
        ", ".join(sorted(servers)) or "none",
    )
    return GrokSettings(engine=engine, servers=servers)


def resolve_settings(
    directory: str | Path = ".",
    explicit_path: str | Path | None = None,
) -> GrokSettings:
    """Merge user and project settings (or load one explicit file)."""
    if explicit_path is not None:
        return load_settings(explicit_path)

    merged = GrokSettings()
    for path in (user_settings_path(), project_settings_path(directory)):
        if not path.is_file():
            logger.debug("resolve_settings: %s not found", path)
            continue
        layer = load_settings(path)
        merged.engine.update(layer.engine)
        merged.servers.update(layer.servers)
    return merged


def apply_engine_overrides(config: EngineConfig, overrides: dict[str, Any]) -> EngineConfig:
    """Apply the ``engine`` section of a settings file onto a config."""
    for key, value in overrides.items():
        expected = _ENGINE_FIELDS.get(key)
        if expected is None or value is None:
            continue
        try:
            if expected is list:
                coerced: Any = [str(v) for v in value]
            else:
                coerced = expected(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"engine.{key}: {exc}") from exc
        setattr(config, key, coerced)
    return config


def add_server_to_file(path: str | Path, server: MCPServerConfig) -> None:
    """Add or replace a server definition in a settings file (created if needed)."""
    server.validate()
    path = Path(path)
    raw = _read_yaml(path) if path.is_file() else {}
    servers = raw.get("mcp_servers") or {}
    servers[server.name] = server.to_dict()
    raw["mcp_servers"] = servers
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(raw, f, sort_keys=False)
    logger.info("Saved MCP server '%s' to %s", server.name, path)


def remove_server_from_file(path: str | Path, name: str) -> bool:
    """Remove a server definition. Returns False when it was not present."""
    path = Path(path)
    if not path.is_file():
        return False
    raw = _read_yaml(path)
    servers = raw.get("mcp_servers") or {}
    if name not in servers:
        return False
    del servers[name]
    raw["mcp_servers"] = servers
    with open(path, "w") as f:
        yaml.safe_dump(raw, f, sort_keys=False)
    logger.info("Removed MCP server '%s' from %s", name, path)
    return True
