"""Regular expression search for the secure filesystem server.

This module provides grep-like searching of file contents inside the
allowed directories, with line numbers and optional context lines.
"""

import fnmatch
import re
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Union

import anyio
from mcp.server.fastmcp.utilities.logging import get_logger

from .security import PathSandbox

logger = get_logger(__name__)


class GrepMatch:
    """Represents a single grep match."""

    def __init__(
        self,
        file_path: str,
        line_number: int,
        line_content: str,
        match_start: int,
        match_end: int,
        context_before: Optional[List[str]] = None,
        context_after: Optional[List[str]] = None,
    ):
        """Initialize a grep match.

        Args:
            file_path: Path to the file containing the match
            line_number: Line number of the match (1-based)
            line_content: Content of the matching line
            match_start: Start index of the match within the line
            match_end: End index of the match within the line
            context_before: Lines before the match
            context_after: Lines after the match
        """
        self.file_path = file_path
        self.line_number = line_number
        self.line_content = line_content
        self.match_start = match_start
        self.match_end = match_end
        self.context_before = context_before or []
        self.context_after = context_after or []

    def to_dict(self) -> Dict:
        return {
            "file_path": self.file_path,
            "line_number": self.line_number,
            "line_content": self.line_content,
            "match_start": self.match_start,
            "match_end": self.match_end,
            "context_before": self.context_before,
            "context_after": self.context_after,
        }

    def __str__(self) -> str:
        return f"{self.file_path}:{self.line_number}: {self.line_content}"


class GrepResult:
    """Result of a regex search."""

    def __init__(self):
        self.matches: List[GrepMatch] = []
        self.file_counts: Dict[str, int] = {}
        self.files_searched = 0
        self.errors: Dict[str, str] = {}
        self.truncated = False

    @property
    def total_matches(self) -> int:
        return len(self.matches)

    def add_match(self, match: GrepMatch) -> None:
        self.matches.append(match)
        self.file_counts[match.file_path] = self.file_counts.get(match.file_path, 0) + 1

    def add_file_error(self, file_path: str, error: str) -> None:
        self.errors[file_path] = error

    def to_dict(self) -> Dict:
        return {
            "matches": [match.to_dict() for match in self.matches],
            "file_counts": self.file_counts,
            "total_matches": self.total_matches,
            "files_searched": self.files_searched,
            "errors": self.errors,
            "truncated": self.truncated,
        }

    def format_text(self, show_context: bool = True) -> str:
        """Format results as text.

        Matches are grouped under a header per file. Each matching line is
        shown as ``<line number>: <content>``; context lines use ``-`` in
        place of ``:``.

        Args:
            show_context: Show context lines if available

        Returns:
            Formatted string with results
        """
        if not self.matches:
            text = "No matches found"
            if self.errors:
                text += f" ({len(self.errors)} files had errors)"
            return text

        lines = []
        current_file = None

        for match in self.matches:
            if match.file_path != current_file:
                if current_file is not None:
                    lines.append("")
                current_file = match.file_path
                lines.append(f"{current_file}:")

            if show_context:
                first = match.line_number - len(match.context_before)
                for offset, context in enumerate(match.context_before):
                    lines.append(f"{first + offset:>6}- {context}")

            lines.append(f"{match.line_number:>6}: {match.line_content}")

            if show_context:
                for offset, context in enumerate(match.context_after, 1):
                    lines.append(f"{match.line_number + offset:>6}- {context}")

        summary = (
            f"\nFound {self.total_matches} matches in {len(self.file_counts)} files"
        )
        if self.truncated:
            summary += " (result limit reached)"
        if self.errors:
            summary += f" ({len(self.errors)} files had errors)"
        lines.append(summary)

        return "\n".join(lines)


class GrepTools:
    """Regex search over files inside the allowed directories."""

    def __init__(self, sandbox: PathSandbox):
        """Initialize with a path sandbox.

        Args:
            sandbox: PathSandbox used to authorize the search root
        """
        self.sandbox = sandbox

    async def _collect_files(
        self,
        path: Path,
        file_patterns: Optional[List[str]],
        exclude_patterns: Optional[List[str]],
    ) -> List[Path]:
        if not path.is_dir():
            return [path]

        candidates = await self.sandbox.find_matching_files(
            path, "*", recursive=True, exclude_patterns=exclude_patterns
        )
        files = []
        for candidate in candidates:
            if not candidate.is_file():
                continue
            if file_patterns and not any(
                fnmatch.fnmatch(candidate.name, glob) for glob in file_patterns
            ):
                continue
            files.append(candidate)
        return files

    async def search_regex(
        self,
        path: Union[str, Path],
        pattern: str,
        file_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        max_results: int = 1000,
        case_sensitive: bool = True,
        context_lines: int = 0,
    ) -> GrepResult:
        """Search file contents for a regular expression.

        Args:
            path: Starting directory or file path
            pattern: Regular expression to search for
            file_patterns: Only search files whose name matches one of these globs
            exclude_patterns: Glob patterns to exclude
            max_results: Maximum number of matches to collect
            case_sensitive: Whether the search is case sensitive
            context_lines: Number of lines to show before and after each match

        Returns:
            GrepResult with matches and statistics

        Raises:
            AccessDeniedError: If path is outside allowed directories
            ValueError: If pattern is not a valid regular expression
        """
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            compiled = re.compile(pattern, flags)
        except re.error as e:
            raise ValueError(f"Invalid regex pattern: {pattern} ({e})") from e

        abs_path = await self.sandbox.resolve_existing(path)
        files = await self._collect_files(abs_path, file_patterns, exclude_patterns)

        result = GrepResult()
        for file_path in files:
            if result.truncated:
                break

            try:
                content = await anyio.to_thread.run_sync(
                    partial(file_path.read_text, encoding="utf-8")
                )
            except UnicodeDecodeError:
                result.add_file_error(str(file_path), "Binary file")
                continue
            except OSError as e:
                result.add_file_error(str(file_path), e.strerror or str(e))
                continue

            result.files_searched += 1
            lines = content.splitlines()

            for index, line in enumerate(lines):
                match = compiled.search(line)
                if match is None:
                    continue

                if result.total_matches >= max_results:
                    result.truncated = True
                    break

                result.add_match(
                    GrepMatch(
                        file_path=str(file_path),
                        line_number=index + 1,
                        line_content=line,
                        match_start=match.start(),
                        match_end=match.end(),
                        context_before=lines[max(0, index - context_lines) : index],
                        context_after=lines[index + 1 : index + 1 + context_lines],
                    )
                )

        logger.debug(
            f"Regex search for {pattern!r} in {abs_path}: "
            f"{result.total_matches} matches in {result.files_searched} files"
        )
        return result
