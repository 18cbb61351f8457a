"""Command-line interface for the Secure Filesystem MCP Server."""

import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import typer
from typing_extensions import Annotated

from .server import mcp

TRANSPORTS = ("stdio", "sse", "streamable-http")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(
    name="mcp-secure-filesystem",
    help="Secure Filesystem MCP Server",
    add_completion=False,
)


def configure_file_logging(log_file: str, level: int = logging.INFO) -> None:
    """Send package log records to a file as well.

    Args:
        log_file: Path of the log file; missing parent directories are created
        level: Minimum level written to the file
    """
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))

    package_logger = logging.getLogger(__package__)
    package_logger.addHandler(handler)
    if package_logger.level == logging.NOTSET or package_logger.level > level:
        package_logger.setLevel(level)


def configure_debug_logging() -> None:
    """Turn on debug output for the package and the server.

    FastMCP installs its root handlers when the server is built, so the
    root logger level is lowered here. The settings are read again when an
    HTTP transport starts uvicorn.
    """
    mcp.settings.debug = True
    mcp.settings.log_level = "DEBUG"
    logging.getLogger().setLevel(logging.DEBUG)
    logging.getLogger(__package__).setLevel(logging.DEBUG)


@app.callback(invoke_without_command=True)
def main(
    directories: Annotated[
        Optional[List[str]],
        typer.Argument(
            help="Allowed directories (defaults to current directory if none provided)",
            show_default=False,
        ),
    ] = None,
    transport: Annotated[
        str,
        typer.Option(
            "--transport",
            "-t",
            help="Transport protocol to use (stdio, sse or streamable-http)",
        ),
    ] = "stdio",
    port: Annotated[
        int,
        typer.Option(
            "--port",
            "-p",
            help="Port for HTTP transports",
        ),
    ] = 8000,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            "-d",
            help="Enable debug logging",
        ),
    ] = False,
    log_file: Annotated[
        Optional[str],
        typer.Option(
            "--log-file",
            envvar="MCP_LOG_FILE",
            help="Also write logs to this file",
            show_default=False,
        ),
    ] = None,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            help="Show version information",
        ),
    ] = False,
) -> None:
    """Run the Secure Filesystem MCP Server.

    By default, the server will only allow access to the current directory.
    You can specify one or more allowed directories as arguments.
    """
    if version:
        show_version()
        return

    transport = transport.lower()
    if transport not in TRANSPORTS:
        print(
            f"Error: unknown transport '{transport}' "
            f"(expected one of {', '.join(TRANSPORTS)})",
            file=sys.stderr,
        )
        raise typer.Exit(code=2)

    if directories:
        for directory in directories:
            if not os.path.isdir(os.path.expanduser(directory)):
                print(
                    f"Error: allowed directory does not exist or is not a directory: {directory}",
                    file=sys.stderr,
                )
                raise typer.Exit(code=1)
        # Picked up by the server when components are first built
        os.environ["MCP_ALLOWED_DIRS"] = os.pathsep.join(directories)

    level = logging.DEBUG if debug else logging.INFO
    if debug:
        configure_debug_logging()

    if log_file:
        configure_file_logging(log_file, level)

    try:
        if transport != "stdio":
            mcp.settings.port = port
        mcp.run(transport=transport)
    except KeyboardInterrupt:
        print("\nShutting down...", file=sys.stderr)
        sys.exit(0)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def show_version() -> None:
    """Show version information."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as get_version

    try:
        version = get_version("mcp-secure-filesystem")
    except PackageNotFoundError:
        from . import __version__ as version

    print(f"Secure Filesystem MCP Server v{version}")
    print("A Model Context Protocol server for sandboxed file manipulation")


if __name__ == "__main__":
    app()
