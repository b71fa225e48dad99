"""Model API clients."""
from __future__ import annotations

from .base import ModelClient
from .grok_provider import GrokProvider

__all__ = ["GrokProvider", "ModelClient"]
