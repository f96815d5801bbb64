"""HTTP bridge for MCP servers that speak JSON-RPC over stdio."""

__version__ = "1.0.0"
