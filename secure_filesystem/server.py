"""Secure Filesystem MCP Server.

This module provides a Model Context Protocol server for file manipulation
confined to a set of allowed directories, with line-range patching that
reports unified diffs.
"""

import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger

from .advanced import AdvancedFileOperations
from .grep import GrepTools
from .operations import FileOperations, content_diff as render_content_diff
from .patching import PatchEngine, PatchOptions
from .security import PathSandbox

logger = get_logger(__name__)


def get_allowed_dirs() -> List[Union[str, Path]]:
    """Get the list of allowed directories from environment or arguments.

    Returns:
        List of allowed directory paths
    """
    allowed_dirs = [
        d for d in os.environ.get("MCP_ALLOWED_DIRS", "").split(os.pathsep) if d
    ]

    # Bare directory arguments when run without the CLI
    if not allowed_dirs and len(sys.argv) > 1:
        allowed_dirs = [arg for arg in sys.argv[1:] if not arg.startswith("-")]

    if not allowed_dirs:
        allowed_dirs = [os.getcwd()]

    return allowed_dirs


_components_cache: Dict[str, Any] = {}


def get_components() -> Dict[str, Any]:
    """Initialize and return shared components.

    Returns cached components if already initialized.

    Returns:
        Dictionary with initialized components
    """
    if _components_cache:
        return _components_cache

    allowed_dirs: List[Union[str, Path]] = get_allowed_dirs()
    sandbox = PathSandbox(allowed_dirs, logger=get_logger(f"{__package__}.sandbox"))
    patch_engine = PatchEngine(logger=get_logger(f"{__package__}.patching"))
    operations = FileOperations(sandbox, patch_engine)

    _components_cache.update(
        {
            "sandbox": sandbox,
            "patch_engine": patch_engine,
            "operations": operations,
            "advanced": AdvancedFileOperations(sandbox),
            "grep": GrepTools(sandbox),
            "allowed_dirs": sandbox.get_allowed_dirs(),
        }
    )

    logger.info(
        f"Initialized filesystem components with allowed directories: {sandbox.get_allowed_dirs()}"
    )

    return _components_cache


mcp = FastMCP(
    name="Secure Filesystem MCP Server",
    instructions=(
        "Provides file access confined to the allowed directories. "
        "Use patch_files to edit existing files by line range."
    ),
)


@mcp.tool()
async def batch_read_files(paths: List[str], ctx: Context) -> str:
    """Read the contents of multiple files at once, with line numbers.

    Failed reads do not stop the operation; each file's error is reported
    in place of its content.

    Args:
        paths: List of file paths to read
        ctx: MCP context

    Returns:
        Each file's numbered content, separated by '---'
    """
    try:
        components = get_components()
        return await components["operations"].batch_read_files(paths)
    except Exception as e:
        return f"Error reading files: {str(e)}"


@mcp.tool()
async def write_new_files(files: List[Dict[str, str]], ctx: Context) -> str:
    """Create new files. Existing files are never overwritten.

    Args:
        files: List of {path, content} objects
        ctx: MCP context

    Returns:
        Summary of written and failed files
    """
    try:
        components = get_components()
        return await components["operations"].write_new_files(files)
    except Exception as e:
        return f"Error writing files: {str(e)}"


@mcp.tool()
async def append_files(files: List[Dict[str, str]], ctx: Context) -> str:
    """Append content to the end of files, creating them if needed.

    Args:
        files: List of {path, content} objects
        ctx: MCP context

    Returns:
        Summary of appended and failed files
    """
    try:
        components = get_components()
        return await components["operations"].append_files(files)
    except Exception as e:
        return f"Error appending to files: {str(e)}"


@mcp.tool()
async def patch_files(
    files: List[Dict[str, Any]],
    ctx: Context,
    dry_run: bool = False,
    preserve_indentation: bool = True,
) -> str:
    """Replace line ranges in existing files and show the resulting diffs.

    Line numbers are 1-based and inclusive, and always refer to the file as
    it was before any of its patches were applied. Ranges within one file
    must not overlap.

    Args:
        files: List of {path, patches} objects, where patches is a list of
            {startLine, endLine, newText} objects
        dry_run: Preview the diffs without modifying any file
        preserve_indentation: Keep the indentation of the first replaced line
        ctx: MCP context

    Returns:
        Summary plus a fenced diff and patch status for each file
    """
    try:
        components = get_components()
        return await components["operations"].patch_files(
            files, dry_run, PatchOptions(preserve_indentation=preserve_indentation)
        )
    except Exception as e:
        return f"Error patching files: {str(e)}"


@mcp.tool()
async def delete_files(
    paths: List[str], ctx: Context, recursive: bool = False
) -> str:
    """Delete files, or directories when recursive is set.

    Args:
        paths: List of paths to delete
        recursive: Delete directories together with their contents
        ctx: MCP context

    Returns:
        Summary of deleted and failed paths
    """
    try:
        components = get_components()
        return await components["operations"].delete_files(paths, recursive)
    except Exception as e:
        return f"Error deleting files: {str(e)}"


@mcp.tool()
async def copy_file(
    source: str,
    destination: str,
    ctx: Context,
    recursive: bool = False,
    overwrite: bool = False,
) -> str:
    """Copy a file, or a directory when recursive is set.

    Args:
        source: Source path
        destination: Destination path
        recursive: Copy directories with their contents
        overwrite: Replace an existing destination
        ctx: MCP context

    Returns:
        Success or error message
    """
    try:
        components = get_components()
        return await components["operations"].copy_file(
            source, destination, recursive, overwrite
        )
    except Exception as e:
        return f"Error copying file: {str(e)}"


@mcp.tool()
async def move_files(
    items: List[Dict[str, str]], ctx: Context, overwrite: bool = False
) -> str:
    """Move or rename files and directories.

    Args:
        items: List of {source, destination} objects
        overwrite: Replace existing destinations
        ctx: MCP context

    Returns:
        Summary of moved and failed items
    """
    try:
        components = get_components()
        return await components["operations"].move_files(items, overwrite)
    except Exception as e:
        return f"Error moving files: {str(e)}"


@mcp.tool()
async def create_directories(paths: List[str], ctx: Context) -> str:
    """Create directories, including any missing parents.

    Args:
        paths: List of directory paths
        ctx: MCP context

    Returns:
        Summary of created and failed directories
    """
    try:
        components = get_components()
        return await components["operations"].create_directories(paths)
    except Exception as e:
        return f"Error creating directories: {str(e)}"


@mcp.tool()
async def list_directory(path: str, ctx: Context, format: str = "text") -> str:
    """List the files and directories in a path.

    Args:
        path: Path to the directory
        format: Output format ('text' or 'json')
        ctx: MCP context

    Returns:
        Directory listing
    """
    try:
        components = get_components()
        if format.lower() == "json":
            entries = await components["operations"].list_directory(path)
            return json.dumps(entries, indent=2)
        return await components["operations"].list_directory_formatted(path)
    except Exception as e:
        return f"Error listing directory: {str(e)}"


@mcp.tool()
async def directory_tree(
    path: str, ctx: Context, exclude_patterns: Optional[List[str]] = None
) -> str:
    """Get a recursive JSON tree of files and directories.

    Each entry has 'name' and 'type' ('file' or 'directory'); directories
    also have 'children'.

    Args:
        path: Root directory
        exclude_patterns: Glob patterns to exclude
        ctx: MCP context

    Returns:
        JSON tree
    """
    try:
        components = get_components()
        return await components["advanced"].directory_tree_json(path, exclude_patterns)
    except Exception as e:
        return f"Error creating directory tree: {str(e)}"


@mcp.tool()
async def search_files(
    path: str,
    pattern: str,
    ctx: Context,
    exclude_patterns: Optional[List[str]] = None,
) -> str:
    """Recursively find files and directories whose name contains a pattern.

    Matching is case-insensitive.

    Args:
        path: Starting directory
        pattern: Text to look for in names
        exclude_patterns: Glob patterns to exclude
        ctx: MCP context

    Returns:
        Full paths of matches, one per line
    """
    try:
        components = get_components()
        results = await components["advanced"].search_files(
            path, pattern, exclude_patterns
        )
        return "\n".join(results) if results else "No matches found"
    except Exception as e:
        return f"Error searching files: {str(e)}"


@mcp.tool()
async def search_glob(
    path: str,
    pattern: str,
    ctx: Context,
    exclude_patterns: Optional[List[str]] = None,
    max_results: int = 1000,
) -> str:
    """Find files matching a glob pattern such as '**/*.py'.

    Args:
        path: Starting directory
        pattern: Glob pattern relative to path
        exclude_patterns: Glob patterns to exclude
        max_results: Maximum number of results
        ctx: MCP context

    Returns:
        Full paths of matches, one per line
    """
    try:
        components = get_components()
        results = await components["advanced"].search_glob(
            path, pattern, exclude_patterns, max_results
        )
        if not results:
            return "No matches found"
        return f"Found {len(results)} matches:\n" + "\n".join(results)
    except Exception as e:
        return f"Error searching files: {str(e)}"


@mcp.tool()
async def search_regex(
    path: str,
    pattern: str,
    ctx: Context,
    file_patterns: Optional[List[str]] = None,
    exclude_patterns: Optional[List[str]] = None,
    max_results: int = 1000,
    case_sensitive: bool = True,
    context_lines: int = 0,
    format: str = "text",
) -> str:
    """Search file contents for a regular expression, like grep.

    Args:
        path: Directory or file to search
        pattern: Regular expression
        file_patterns: Only search files whose name matches these globs (e.g. '*.py')
        exclude_patterns: Glob patterns to exclude
        max_results: Maximum number of matches
        case_sensitive: Whether matching is case sensitive
        context_lines: Lines of context before and after each match
        format: Output format ('text' or 'json')
        ctx: MCP context

    Returns:
        Matching lines with line numbers
    """
    try:
        components = get_components()
        result = await components["grep"].search_regex(
            path,
            pattern,
            file_patterns,
            exclude_patterns,
            max_results,
            case_sensitive,
            context_lines,
        )
        if format.lower() == "json":
            return json.dumps(result.to_dict(), indent=2)
        return result.format_text(show_context=context_lines > 0)
    except Exception as e:
        return f"Error searching file contents: {str(e)}"


@mcp.tool()
async def count_lines(
    paths: List[str],
    ctx: Context,
    recursive: bool = False,
    pattern: Optional[str] = None,
    file_patterns: Optional[List[str]] = None,
    exclude_patterns: Optional[List[str]] = None,
    ignore_empty_lines: bool = False,
) -> str:
    """Count lines in files, or in the files inside directories.

    Args:
        paths: Files or directories
        recursive: Descend into subdirectories
        pattern: Only count lines matching this regular expression
        file_patterns: Only count files whose name matches these globs
        exclude_patterns: Glob patterns to exclude
        ignore_empty_lines: Skip blank lines
        ctx: MCP context

    Returns:
        Per-file line counts and the total
    """
    try:
        components = get_components()
        return await components["advanced"].count_lines(
            paths,
            recursive,
            pattern,
            file_patterns,
            exclude_patterns,
            ignore_empty_lines,
        )
    except Exception as e:
        return f"Error counting lines: {str(e)}"


@mcp.tool()
async def checksum_files(
    paths: List[str], ctx: Context, algorithm: str = "sha256"
) -> str:
    """Compute checksums of files.

    Args:
        paths: Files to hash
        algorithm: md5, sha1, sha256 or sha512
        ctx: MCP context

    Returns:
        One '<digest>  <path>' line per file
    """
    try:
        components = get_components()
        return await components["advanced"].checksum_files(paths, algorithm)
    except Exception as e:
        return f"Error computing checksums: {str(e)}"


@mcp.tool()
async def checksum_files_verif(
    files: List[Dict[str, str]], ctx: Context, algorithm: str = "sha256"
) -> str:
    """Verify files against expected checksums.

    Args:
        files: List of {path, expected} objects
        algorithm: md5, sha1, sha256 or sha512
        ctx: MCP context

    Returns:
        OK or FAILED for each file
    """
    try:
        components = get_components()
        return await components["advanced"].checksum_files_verif(files, algorithm)
    except Exception as e:
        return f"Error verifying checksums: {str(e)}"


@mcp.tool()
async def get_file_info(path: str, ctx: Context, format: str = "text") -> str:
    """Retrieve detailed metadata about a file or directory.

    Args:
        path: Path to the file or directory
        format: Output format ('text' or 'json')
        ctx: MCP context

    Returns:
        Formatted file information
    """
    try:
        components = get_components()
        info = await components["operations"].get_file_info(path)

        if format.lower() == "json":
            return json.dumps(info.to_dict(), indent=2)
        return str(info)
    except Exception as e:
        return f"Error getting file info: {str(e)}"


@mcp.tool()
async def file_diff(file1: str, file2: str, ctx: Context) -> str:
    """Show a unified diff between two files.

    Args:
        file1: Original file
        file2: Modified file
        ctx: MCP context

    Returns:
        Fenced unified diff
    """
    try:
        components = get_components()
        return await components["operations"].file_diff(file1, file2)
    except Exception as e:
        return f"Error comparing files: {str(e)}"


@mcp.tool()
async def content_diff(
    content1: str,
    content2: str,
    ctx: Context,
    label1: str = "original",
    label2: str = "modified",
) -> str:
    """Show a unified diff between two strings.

    Args:
        content1: Original text
        content2: Modified text
        label1: Name for the original text
        label2: Name for the modified text
        ctx: MCP context

    Returns:
        Fenced unified diff
    """
    try:
        return render_content_diff(content1, content2, label1, label2)
    except Exception as e:
        return f"Error comparing contents: {str(e)}"


@mcp.tool()
async def list_allowed_directories(ctx: Context) -> str:
    """Returns the list of directories that this server is allowed to access.

    Args:
        ctx: MCP context

    Returns:
        List of allowed directories
    """
    components = get_components()
    allowed_dirs = components["allowed_dirs"]
    return "Allowed directories:\n" + "\n".join(allowed_dirs)


# Entry point for direct execution
if __name__ == "__main__":
    mcp.run()
