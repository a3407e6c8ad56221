"""tmux-backed MCP server for durable terminal sessions."""

__version__ = "0.1.0"

__all__ = ["__version__"]
