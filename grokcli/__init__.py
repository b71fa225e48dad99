"""Grok CLI: a terminal coding agent with MCP tool servers."""

__version__ = "0.1.0"
