"""Security module for the secure filesystem server.

This module handles path expansion, normalization and authorization so that
every file operation stays inside the configured allowed directories, both
for the path as requested and for the real path it resolves to.
"""

import fnmatch
import logging
import os
import stat
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

import anyio
from mcp.server.fastmcp.utilities.logging import get_logger

from .errors import (
    AccessDeniedError,
    IOFailureError,
    NoAnchorFoundError,
    ParentMissingError,
)


class PathState(Enum):
    """Outcome of a single metadata lookup."""

    EXISTS = "exists"
    NOT_FOUND = "not_found"
    ERROR = "error"


class PathProbe:
    """Result of probing a path with one ``stat`` call."""

    def __init__(
        self,
        state: PathState,
        stat_result: Optional[os.stat_result] = None,
        error: Optional[OSError] = None,
    ):
        self.state = state
        self.stat_result = stat_result
        self.error = error

    @property
    def is_dir(self) -> bool:
        return self.stat_result is not None and stat.S_ISDIR(self.stat_result.st_mode)


def probe_path(path: str) -> PathProbe:
    """Stat a path and classify the outcome.

    Args:
        path: Absolute path to probe (symlinks are followed)

    Returns:
        PathProbe in state EXISTS, NOT_FOUND or ERROR
    """
    try:
        st = os.stat(path)
    except (FileNotFoundError, NotADirectoryError):
        return PathProbe(PathState.NOT_FOUND)
    except OSError as e:
        return PathProbe(PathState.ERROR, error=e)
    return PathProbe(PathState.EXISTS, stat_result=st)


def expand_home(path: str) -> str:
    """Expand a leading ``~`` or ``~/`` to the current user's home directory."""
    if path == "~" or path.startswith("~/"):
        return str(Path.home()) + path[1:]
    return path


def normalize_path(path: str) -> str:
    """Make a path absolute against the CWD and collapse ``.``/``..`` segments."""
    return os.path.normpath(os.path.join(os.getcwd(), expand_home(path)))


class PathSandbox:
    """Authorizes paths against an immutable list of allowed directories."""

    def __init__(
        self,
        allowed_dirs: List[Union[str, Path]],
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize with a list of allowed directories.

        Args:
            allowed_dirs: Directories that are allowed for file operations.
                          Paths are expanded and normalized to absolute paths.
            logger: Logger to report decisions to (defaults to the module logger)
        """
        self.logger = logger if logger is not None else get_logger(__name__)
        self._roots: List[str] = []
        self._gate_roots: List[str] = []

        for directory in allowed_dirs:
            normalized = normalize_path(str(directory))
            if not os.path.isdir(normalized):
                self.logger.warning(
                    f"Allowed path is not a directory: {normalized}",
                    extra={"path": normalized},
                )
                continue

            if normalized in self._roots:
                continue
            self._roots.append(normalized)

            # The root's real location is as authoritative as its spelling
            for form in (normalized, os.path.realpath(normalized)):
                key = self._gate_key(form)
                if key not in self._gate_roots:
                    self._gate_roots.append(key)

            self.logger.debug(f"Added allowed directory: {normalized}")

        if not self._roots:
            self.logger.warning("No valid allowed directories provided!")

    @staticmethod
    def _gate_key(path: str) -> str:
        return os.path.normpath(path).casefold()

    def is_authorized(self, path: Union[str, Path]) -> bool:
        """Check a normalized absolute path against the allowed directories.

        The comparison is case-insensitive and separator-aware, so a root of
        ``/data`` authorizes ``/data`` and ``/data/x`` but not ``/data-secret``.

        Args:
            path: Normalized absolute path

        Returns:
            True if the path lies inside an allowed directory
        """
        candidate = self._gate_key(str(path))
        for root in self._gate_roots:
            if candidate == root:
                return True
            prefix = root if root.endswith(os.sep) else root + os.sep
            if candidate.startswith(prefix):
                return True
        return False

    def get_allowed_dirs(self) -> List[str]:
        """Get the list of allowed directories.

        Returns:
            Allowed directory paths in configuration order
        """
        return list(self._roots)

    def _deny(self, message: str, path: str, **extra: str) -> AccessDeniedError:
        self.logger.warning(message, extra={"path": path, **extra})
        return AccessDeniedError(message, path=path)

    def _normalize_and_gate(self, raw_path: Union[str, Path]) -> str:
        absolute = normalize_path(str(raw_path))
        self.logger.debug(
            f"Normalized {raw_path} to {absolute}", extra={"path": absolute}
        )
        if not self.is_authorized(absolute):
            raise self._deny(
                f"Access denied - path outside allowed directories: {absolute} "
                f"not in {', '.join(self._roots)}",
                absolute,
            )
        return absolute

    def _check_dangling_link(self, path: str) -> None:
        """Deny a missing path that is a symlink pointing outside the roots."""
        if not os.path.islink(path):
            return
        target = os.path.realpath(path)
        if not self.is_authorized(target):
            raise self._deny(
                f"Access denied - symlink target outside allowed directories: {path}",
                path,
                target=target,
            )

    def _resolve_existing(self, raw_path: Union[str, Path]) -> Path:
        absolute = self._normalize_and_gate(raw_path)
        probe = probe_path(absolute)

        if probe.state is PathState.ERROR:
            raise IOFailureError(
                f"Cannot access {absolute}: {probe.error}",
                path=absolute,
                cause=probe.error,
            )

        if probe.state is PathState.EXISTS:
            real_path = os.path.realpath(absolute)
            if not self.is_authorized(real_path):
                raise self._deny(
                    f"Access denied - symlink target outside allowed directories: {absolute}",
                    absolute,
                    target=real_path,
                )
            self.logger.debug(f"Resolved {absolute} to {real_path}")
            return Path(real_path)

        # Not there yet: anchor on the parent directory
        self._check_dangling_link(absolute)
        parent = os.path.dirname(absolute)
        parent_probe = probe_path(parent)
        if parent_probe.state is PathState.ERROR:
            raise IOFailureError(
                f"Cannot access parent directory {parent}: {parent_probe.error}",
                path=parent,
                cause=parent_probe.error,
            )
        if parent_probe.state is PathState.NOT_FOUND:
            self.logger.error(
                f"Parent directory does not exist: {parent}", extra={"path": parent}
            )
            raise ParentMissingError(
                f"Parent directory does not exist: {parent}", path=parent
            )

        real_parent = os.path.realpath(parent)
        if not self.is_authorized(real_parent):
            raise self._deny(
                f"Access denied - parent directory outside allowed directories: {parent}",
                absolute,
                target=real_parent,
            )
        self.logger.debug(f"Parent of {absolute} exists at {real_parent}")
        return Path(absolute)

    def _resolve_for_creation(self, raw_path: Union[str, Path]) -> Path:
        absolute = self._normalize_and_gate(raw_path)

        current = absolute
        while True:
            probe = probe_path(current)

            if probe.state is PathState.ERROR:
                self.logger.error(
                    f"Cannot stat {current}: {probe.error}", extra={"path": current}
                )
                raise IOFailureError(
                    f"Cannot access {current}: {probe.error}",
                    path=current,
                    cause=probe.error,
                )

            if probe.state is PathState.EXISTS:
                directory = current if probe.is_dir else os.path.dirname(current)
                real_existing = os.path.realpath(directory)
                if not self.is_authorized(real_existing):
                    raise self._deny(
                        "Access denied - nearest existing ancestor outside "
                        f"allowed directories: {directory}",
                        absolute,
                        target=real_existing,
                    )
                self.logger.debug(
                    f"Ancestor {directory} of {absolute} validated at {real_existing}"
                )
                return Path(absolute)

            self._check_dangling_link(current)
            parent = os.path.dirname(current)
            if parent == current:
                self.logger.error(
                    f"Reached filesystem root without an existing ancestor: {absolute}",
                    extra={"path": absolute},
                )
                raise NoAnchorFoundError(
                    "Access denied - no existing ancestor found within allowed "
                    f"directories: {absolute}",
                    path=absolute,
                )
            current = parent

    async def resolve_existing(self, raw_path: Union[str, Path]) -> Path:
        """Resolve a path for reading, modifying or deleting.

        Existing targets resolve to their real (symlink-free) path, which must
        itself be authorized. A target that does not exist yet resolves to its
        literal absolute path, provided its parent directory exists and is
        authorized.

        Args:
            raw_path: Path as supplied by the caller

        Returns:
            Authorized absolute path

        Raises:
            AccessDeniedError: If the path or its real path escapes the roots
            ParentMissingError: If neither the path nor its parent exists
            IOFailureError: If the path cannot be inspected
        """
        return await anyio.to_thread.run_sync(self._resolve_existing, raw_path)

    async def resolve_for_creation(self, raw_path: Union[str, Path]) -> Path:
        """Resolve a path whose intermediate directories may not exist yet.

        Walks upward to the nearest existing ancestor and authorizes its real
        path, so ``mkdir -p`` style creation works without leaving the roots.

        Args:
            raw_path: Path as supplied by the caller

        Returns:
            Authorized normalized absolute path (not symlink-resolved)

        Raises:
            AccessDeniedError: If the path or its nearest ancestor escapes the roots
            NoAnchorFoundError: If no ancestor of the path exists
            IOFailureError: If an ancestor cannot be inspected
        """
        return await anyio.to_thread.run_sync(self._resolve_for_creation, raw_path)

    async def find_matching_files(
        self,
        root_path: Union[str, Path],
        pattern: str,
        recursive: bool = True,
        exclude_patterns: Optional[List[str]] = None,
    ) -> List[Path]:
        """Find files matching a glob pattern within allowed directories.

        Args:
            root_path: Starting directory for search
            pattern: Glob pattern to match against paths
            recursive: Whether to search subdirectories
            exclude_patterns: Optional glob patterns to exclude

        Returns:
            List of matching paths

        Raises:
            AccessDeniedError: If root_path is outside allowed directories
            ValueError: If root_path is not a directory
        """
        abs_path = await self.resolve_existing(root_path)

        if not abs_path.is_dir():
            raise ValueError(f"Search path is not a directory: {abs_path}")

        glob_pattern = pattern
        if recursive and not pattern.startswith("**/"):
            glob_pattern = "**/" + pattern

        matched = await anyio.to_thread.run_sync(list, abs_path.glob(glob_pattern))

        results = []
        for matched_path in matched:
            if is_excluded(matched_path.relative_to(abs_path), exclude_patterns):
                continue
            # Symlinks inside the tree may point elsewhere
            if self.is_authorized(os.path.realpath(matched_path)):
                results.append(matched_path)

        return sorted(results)


def is_excluded(relative_path: Path, exclude_patterns: Optional[List[str]]) -> bool:
    """Check a path, relative to the search root, against glob exclude patterns.

    A pattern excludes the path when it matches the whole relative path or any
    single component of it, so ``node_modules`` and ``**/node_modules/**``
    both prune everything below a ``node_modules`` directory.

    Args:
        relative_path: Path relative to the directory being searched
        exclude_patterns: Glob patterns

    Returns:
        True if the path should be skipped
    """
    for pattern in exclude_patterns or []:
        bare = pattern.strip("/")
        while bare.startswith("**/"):
            bare = bare[3:]
        while bare.endswith("/**"):
            bare = bare[:-3]

        if fnmatch.fnmatch(relative_path.as_posix(), pattern):
            return True
        if bare and any(fnmatch.fnmatch(part, bare) for part in relative_path.parts):
            return True
    return False
