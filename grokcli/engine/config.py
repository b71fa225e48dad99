"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via GROK_* env vars,
then via the settings YAML (see yaml_config.py), then CLI flags.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-code-fast-1"


# Optional async callback that asks the human about a pending operation.
# Signature: async def callback(pending: PendingConfirmation) -> Decision
DecisionCallback = Callable[[Any], Awaitable[Any]]


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring %s=%r: must be >= %d", name, raw, minimum)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", name, raw)
        return default


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class EngineConfig:
    """Agent runtime configuration."""

    # Model endpoint
    api_key: str | None = field(default=None, repr=False)
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    max_tokens: int = 1536
    temperature: float = 0.7
    request_timeout_seconds: float = 360.0

    # Orchestration loop
    max_tool_rounds: int = 400
    cwd: str = "."
    system_prompt: str | None = None

    # Extensibility protocol
    mcp_call_timeout_seconds: float = 60.0
    mcp_handshake_timeout_seconds: float = 30.0

    # Bash tool
    bash_timeout_seconds: float = 30.0
    # Regex rules for confirmation policy on bash commands.
    command_whitelist: list[str] = field(default_factory=list)
    command_blacklist: list[str] = field(default_factory=list)

    # Web search tool; registered only when set.
    tavily_api_key: str | None = field(default=None, repr=False)

    # Logging
    log_level: str = "WARNING"

    # Called by the Confirmation Gate when a human decision is needed.
    # When unset, the gate waits for resolve()/confirm()/reject() calls.
    decision_callback: DecisionCallback | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from GROK_* environment variables."""
        grok_vars = sorted(
            k for k in os.environ if k.startswith("GROK_") and k != "GROK_API_KEY"
        )
        if grok_vars:
            logger.info(
                "EngineConfig.from_env: GROK_* env overrides: %s",
                ", ".join(grok_vars),
            )
        else:
            logger.debug("EngineConfig.from_env: no GROK_* env vars set, using defaults")

        config = cls(
            api_key=os.getenv("GROK_API_KEY") or None,
            base_url=os.getenv("GROK_BASE_URL") or cls.base_url,
            model=os.getenv("GROK_MODEL") or cls.model,
            max_tokens=_env_int("GROK_MAX_TOKENS", cls.max_tokens),
            temperature=_env_float("GROK_TEMPERATURE", cls.temperature),
            request_timeout_seconds=_env_float(
                "GROK_REQUEST_TIMEOUT", cls.request_timeout_seconds,
            ),
            max_tool_rounds=_env_int("GROK_MAX_TOOL_ROUNDS", cls.max_tool_rounds),
            mcp_call_timeout_seconds=_env_float(
                "GROK_MCP_CALL_TIMEOUT", cls.mcp_call_timeout_seconds,
            ),
            mcp_handshake_timeout_seconds=_env_float(
                "GROK_MCP_HANDSHAKE_TIMEOUT", cls.mcp_handshake_timeout_seconds,
            ),
            bash_timeout_seconds=_env_float(
                "GROK_BASH_TIMEOUT", cls.bash_timeout_seconds,
            ),
            command_whitelist=_env_list("GROK_COMMAND_WHITELIST"),
            command_blacklist=_env_list("GROK_COMMAND_BLACKLIST"),
            log_level=os.getenv("GROK_LOG_LEVEL") or cls.log_level,
            tavily_api_key=os.getenv("TAVILY_API_KEY") or None,
        )
        logger.info(
            "EngineConfig.from_env: model=%s base_url=%s max_tool_rounds=%d",
            config.model, config.base_url, config.max_tool_rounds,
        )
        return config
