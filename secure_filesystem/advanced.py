"""Advanced file operations for the secure filesystem server.

This module provides directory tree rendering, filename and glob search,
line counting and checksum generation and verification.
"""

import fnmatch
import hashlib
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import anyio
from mcp.server.fastmcp.utilities.logging import get_logger

from .operations import BatchResult, _error_text, run_batch
from .security import PathSandbox, is_excluded

logger = get_logger(__name__)

CHECKSUM_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")

_CHUNK_SIZE = 1024 * 1024


class DirectoryTreeNode:
    """Node in a directory tree."""

    def __init__(self, path: Path, is_dir: bool = False):
        self.path = path
        self.name = path.name or str(path)
        self.is_dir = is_dir
        self.children: List["DirectoryTreeNode"] = []

    def add_child(self, child: "DirectoryTreeNode") -> None:
        self.children.append(child)

    def to_dict(self) -> Dict:
        """Convert to dictionary representation.

        Returns:
            ``{name, type}`` for files, plus ``children`` for directories
        """
        result: Dict[str, Any] = {
            "name": self.name,
            "type": "directory" if self.is_dir else "file",
        }
        if self.is_dir:
            result["children"] = [
                child.to_dict()
                for child in sorted(self.children, key=lambda x: (not x.is_dir, x.name))
            ]
        return result


def _hash_file(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _count_file_lines(
    path: Path, pattern: Optional[re.Pattern], ignore_empty_lines: bool
) -> int:
    count = 0
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\r\n")
            if ignore_empty_lines and not line.strip():
                continue
            if pattern is not None and not pattern.search(line):
                continue
            count += 1
    return count


class AdvancedFileOperations:
    """Tree, search, counting and checksum operations."""

    def __init__(self, sandbox: PathSandbox):
        """Initialize with a path sandbox.

        Args:
            sandbox: PathSandbox used to authorize every path
        """
        self.sandbox = sandbox

    async def _walk(
        self,
        root: Path,
        recursive: bool = True,
        exclude_patterns: Optional[List[str]] = None,
    ) -> List[Tuple[Path, bool]]:
        """Collect ``(entry, is_dir)`` pairs below ``root``.

        Excluded entries are pruned together with everything below them, and
        directories whose real path leaves the allowed directories are not
        entered.
        """
        found: List[Tuple[Path, bool]] = []

        async def scan_dir(dir_path: Path) -> None:
            try:
                entries = await anyio.to_thread.run_sync(list, dir_path.iterdir())
            except (PermissionError, FileNotFoundError):
                # Skip directories we can't access
                return

            for entry in sorted(entries):
                if is_excluded(entry.relative_to(root), exclude_patterns):
                    continue
                if not self.sandbox.is_authorized(os.path.realpath(entry)):
                    logger.debug(f"Skipping entry outside allowed directories: {entry}")
                    continue

                is_dir = entry.is_dir()
                found.append((entry, is_dir))
                if is_dir and recursive:
                    await scan_dir(entry)

        await scan_dir(root)
        return found

    async def _resolve_directory(self, path: Union[str, Path]) -> Path:
        abs_path = await self.sandbox.resolve_existing(path)
        if not abs_path.is_dir():
            raise ValueError(f"Not a directory: {path}")
        return abs_path

    async def directory_tree(
        self,
        root_path: Union[str, Path],
        exclude_patterns: Optional[List[str]] = None,
    ) -> List[Dict]:
        """Build a recursive tree of the entries below a directory.

        Args:
            root_path: Root directory for the tree
            exclude_patterns: Glob patterns to exclude

        Returns:
            List of ``{name, type, children}`` dictionaries for the root's entries

        Raises:
            AccessDeniedError: If root_path is outside allowed directories
            ValueError: If root_path is not a directory
        """
        abs_path = await self._resolve_directory(root_path)
        root_node = DirectoryTreeNode(abs_path, True)
        nodes: Dict[Path, DirectoryTreeNode] = {abs_path: root_node}

        for entry, is_dir in await self._walk(abs_path, True, exclude_patterns):
            node = DirectoryTreeNode(entry, is_dir)
            nodes[entry] = node
            nodes[entry.parent].add_child(node)

        return root_node.to_dict()["children"]

    async def directory_tree_json(
        self,
        root_path: Union[str, Path],
        exclude_patterns: Optional[List[str]] = None,
    ) -> str:
        """Build the directory tree and serialize it as indented JSON."""
        tree = await self.directory_tree(root_path, exclude_patterns)
        return json.dumps(tree, indent=2)

    async def search_files(
        self,
        root_path: Union[str, Path],
        pattern: str,
        exclude_patterns: Optional[List[str]] = None,
    ) -> List[str]:
        """Find files and directories whose name contains ``pattern``.

        Matching is case-insensitive and recursive.

        Args:
            root_path: Starting directory
            pattern: Substring to look for in entry names
            exclude_patterns: Glob patterns to exclude

        Returns:
            Full paths of matching entries
        """
        abs_path = await self._resolve_directory(root_path)
        needle = pattern.lower()
        return [
            str(entry)
            for entry, _ in await self._walk(abs_path, True, exclude_patterns)
            if needle in entry.name.lower()
        ]

    async def search_glob(
        self,
        root_path: Union[str, Path],
        pattern: str,
        exclude_patterns: Optional[List[str]] = None,
        max_results: int = 1000,
    ) -> List[str]:
        """Find files matching a glob pattern such as ``**/*.py``.

        Args:
            root_path: Starting directory
            pattern: Glob pattern, relative to root_path
            exclude_patterns: Glob patterns to exclude
            max_results: Maximum number of results to return

        Returns:
            Full paths of matching files
        """
        matches = await self.sandbox.find_matching_files(
            root_path, pattern, recursive=False, exclude_patterns=exclude_patterns
        )
        return [str(match) for match in matches[:max_results]]

    async def count_lines(
        self,
        paths: List[str],
        recursive: bool = False,
        pattern: Optional[str] = None,
        file_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        ignore_empty_lines: bool = False,
    ) -> str:
        """Count lines in files, or in the files below directories.

        Args:
            paths: Files or directories to count
            recursive: Descend into subdirectories of directory arguments
            pattern: Only count lines matching this regular expression
            file_patterns: Only count files whose name matches one of these globs
            exclude_patterns: Glob patterns to exclude inside directories
            ignore_empty_lines: Skip lines that are empty or whitespace only

        Returns:
            Per-file counts followed by the total

        Raises:
            ValueError: If pattern is not a valid regular expression
        """
        try:
            compiled = re.compile(pattern) if pattern else None
        except re.error as e:
            raise ValueError(f"Invalid regex pattern: {pattern} ({e})") from e

        def wanted(file_path: Path) -> bool:
            if not file_patterns:
                return True
            return any(fnmatch.fnmatch(file_path.name, glob) for glob in file_patterns)

        async def count_one(path: str) -> str:
            abs_path = await self.sandbox.resolve_existing(path)
            if abs_path.is_dir():
                files = [
                    entry
                    for entry, is_dir in await self._walk(
                        abs_path, recursive, exclude_patterns
                    )
                    if not is_dir and wanted(entry)
                ]
            else:
                files = [abs_path]

            lines = []
            for file_path in files:
                try:
                    count = await anyio.to_thread.run_sync(
                        _count_file_lines, file_path, compiled, ignore_empty_lines
                    )
                except UnicodeDecodeError:
                    logger.debug(f"Skipping binary file: {file_path}")
                    continue
                counts.append(count)
                lines.append(f"{file_path}: {count} lines")
            return "\n".join(lines) if lines else f"{path}: no text files"

        counts: List[int] = []
        result = await run_batch(
            paths,
            count_one,
            lambda path, e: f"Failed to count lines in {path}: {_error_text(e)}",
        )

        output = ["Line counts:"]
        output.extend(result.successes)
        output.append("")
        output.append(f"Total: {sum(counts)} lines in {len(counts)} files")
        if result.error_count:
            output.append("")
            output.append("Errors:")
            output.extend(result.errors)
        return "\n".join(output)

    async def _checksum(self, path: str, algorithm: str) -> str:
        abs_path = await self.sandbox.resolve_existing(path)
        if abs_path.is_dir():
            raise IsADirectoryError(f"Is a directory: {path}")
        return await anyio.to_thread.run_sync(_hash_file, abs_path, algorithm)

    @staticmethod
    def _check_algorithm(algorithm: str) -> str:
        algorithm = algorithm.lower()
        if algorithm not in CHECKSUM_ALGORITHMS:
            raise ValueError(
                f"Unsupported algorithm: {algorithm} "
                f"(expected one of {', '.join(CHECKSUM_ALGORITHMS)})"
            )
        return algorithm

    async def checksum_files(self, paths: List[str], algorithm: str = "sha256") -> str:
        """Generate checksums for files.

        Args:
            paths: Files to hash
            algorithm: One of md5, sha1, sha256, sha512

        Returns:
            Batch summary and ``<digest>  <path>`` lines
        """
        algorithm = self._check_algorithm(algorithm)

        async def checksum_one(path: str) -> str:
            return f"{await self._checksum(path, algorithm)}  {path}"

        result = await run_batch(
            paths,
            checksum_one,
            lambda path, e: f"Failed to checksum {path}: {_error_text(e)}",
        )
        output = result.render(
            "files", "checksums generated successfully", "files failed"
        )
        if result.success_count:
            output += f"\n\nChecksums ({algorithm}):\n" + "\n".join(result.successes)
        return output

    async def checksum_files_verif(
        self, files: List[Dict[str, str]], algorithm: str = "sha256"
    ) -> str:
        """Verify files against expected checksums.

        Args:
            files: List of {path, expected} dictionaries
            algorithm: One of md5, sha1, sha256, sha512

        Returns:
            Per-file verification results
        """
        algorithm = self._check_algorithm(algorithm)

        async def verify_one(file: Dict[str, str]) -> str:
            actual = await self._checksum(file["path"], algorithm)
            expected = file["expected"].strip().lower()
            if actual != expected:
                raise ValueError(f"checksum mismatch (expected {expected}, got {actual})")
            return f"{file['path']}: OK"

        result: BatchResult = await run_batch(
            files,
            verify_one,
            lambda file, e: f"{file['path']}: FAILED - {_error_text(e)}",
        )

        lines = [
            f"Verified {len(files)} files ({algorithm}): "
            f"{result.success_count} passed, {result.error_count} failed",
            "",
        ]
        lines.extend(item.message for item in result.items)
        return "\n".join(lines)
