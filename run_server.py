#!/usr/bin/env python
"""
Simple entry point to run the secure filesystem MCP server.
Usage: uv run run_server.py [dir1] [dir2] ...

For use with MCP Inspector or Claude Desktop:
- Command: uv
- Arguments: --directory /path/to/mcp-secure-filesystem run mcp-secure-filesystem [dir1] ...
"""

import sys

from secure_filesystem.__main__ import app

if __name__ == "__main__":
    sys.exit(app())
