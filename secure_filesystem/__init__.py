"""Secure Filesystem MCP Server.

A Model Context Protocol server for file manipulation confined to a set of
allowed directories, with line-range patching and unified diffs.
"""

__version__ = "0.1.0"

from .server import mcp

__all__ = ["mcp"]
