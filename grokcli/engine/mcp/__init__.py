"""Extensibility protocol client and transports."""
from __future__ import annotations

from .client import ProtocolClient, ServerConnection, tool_result_from_reply
from .transports import (
    HttpTransport,
    SseTransport,
    StdioTransport,
    Transport,
    create_transport,
)

__all__ = [
    "HttpTransport",
    "ProtocolClient",
    "ServerConnection",
    "SseTransport",
    "StdioTransport",
    "Transport",
    "create_transport",
    "tool_result_from_reply",
]
