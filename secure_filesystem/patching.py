"""Line-range patching for the secure filesystem server.

Patches name inclusive, 1-indexed line ranges of the file as it was read.
They are applied from the bottom of the file upwards so that every range
still refers to untouched lines when its turn comes.
"""

import logging
import re
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import anyio
from mcp.server.fastmcp.utilities.logging import get_logger

from .diff import create_unified_diff, fenced_block, normalize_line_endings
from .errors import InvalidRangeError, IOFailureError

_LEADING_WHITESPACE = re.compile(r"^\s*")


@dataclass(frozen=True)
class LinePatch:
    """Replacement of lines ``start_line`` to ``end_line`` with ``new_text``."""

    start_line: int
    end_line: int
    new_text: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinePatch":
        """Build a patch from a request dictionary.

        Accepts both ``startLine``/``endLine``/``newText`` and
        ``start_line``/``end_line``/``new_text`` keys.
        """
        try:
            start = data["startLine"] if "startLine" in data else data["start_line"]
            end = data["endLine"] if "endLine" in data else data["end_line"]
            text = data["newText"] if "newText" in data else data["new_text"]
        except KeyError as e:
            raise ValueError(f"Patch is missing field {e}") from e
        return cls(int(start), int(end), str(text))


@dataclass
class PatchOutcome:
    """Per-patch result."""

    patch: LinePatch
    applied: bool = False
    message: Optional[str] = None


@dataclass
class PatchOptions:
    """Options controlling how patches are applied."""

    preserve_indentation: bool = True
    encoding: str = "utf-8"


def validate_patches(
    patches: Sequence[LinePatch],
    line_count: int,
    path: Optional[Union[str, Path]] = None,
) -> None:
    """Check that every range is inside the file and no two ranges overlap.

    Args:
        patches: Patches to check
        line_count: Number of lines in the original content
        path: File the patches target, for error reporting

    Raises:
        InvalidRangeError: On the first invalid or overlapping range
    """
    for patch in patches:
        start, end = patch.start_line, patch.end_line
        if start < 1 or end < start or end > line_count:
            raise InvalidRangeError(
                f"Invalid line range: {start}-{end} (file has {line_count} lines)",
                start,
                end,
                line_count,
                path=path,
            )

    ordered = sorted(patches, key=lambda p: p.start_line)
    for previous, current in zip(ordered, ordered[1:]):
        if current.start_line <= previous.end_line:
            raise InvalidRangeError(
                f"Overlapping line ranges: {previous.start_line}-{previous.end_line} "
                f"and {current.start_line}-{current.end_line}",
                current.start_line,
                current.end_line,
                line_count,
                path=path,
            )


def apply_line_patches(
    content: str,
    patches: Sequence[LinePatch],
    preserve_indentation: bool = True,
    path: Optional[Union[str, Path]] = None,
) -> Tuple[str, List[PatchOutcome]]:
    """Apply line-range patches to text in memory.

    Args:
        content: Original text
        patches: Patches whose ranges refer to ``content``
        preserve_indentation: Re-indent the first replacement line to match
            the first line it replaces
        path: File the content came from, for error reporting

    Returns:
        Tuple of (modified text, outcomes in submission order)

    Raises:
        InvalidRangeError: If any range is invalid; nothing is applied
    """
    lines = normalize_line_endings(content).split("\n")
    validate_patches(patches, len(lines), path)

    outcomes = [PatchOutcome(patch) for patch in patches]
    modified = list(lines)

    # Bottom-up, so earlier ranges still index untouched lines
    order = sorted(
        range(len(patches)), key=lambda i: patches[i].start_line, reverse=True
    )
    for index in order:
        patch = patches[index]
        start = patch.start_line - 1
        replaced = patch.end_line - patch.start_line + 1
        new_lines = normalize_line_endings(patch.new_text).split("\n")

        if preserve_indentation:
            indent = _LEADING_WHITESPACE.match(modified[start]).group(0)
            new_lines[0] = indent + new_lines[0].lstrip()

        modified[start : start + replaced] = new_lines
        outcomes[index].applied = True

    return "\n".join(modified), outcomes


class PatchReport:
    """Result of patching one file."""

    def __init__(
        self,
        path: Path,
        original: str,
        modified: str,
        diff: str,
        outcomes: List[PatchOutcome],
        dry_run: bool,
    ):
        self.path = path
        self.original = original
        self.modified = modified
        self.diff = diff
        self.outcomes = outcomes
        self.dry_run = dry_run

    @property
    def changed(self) -> bool:
        return self.original != self.modified

    def render(self) -> str:
        """Format the diff and per-patch status lines for display.

        Returns:
            Report text
        """
        lines = [fenced_block(self.diff, "diff"), "Patch details:"]
        for i, outcome in enumerate(self.outcomes, 1):
            status = "APPLIED" if outcome.applied else "FAILED"
            patch = outcome.patch
            lines.append(
                f"Patch {i}: {status} (lines {patch.start_line}-{patch.end_line})"
            )
            if outcome.message:
                lines.append(f"  Message: {outcome.message}")
        if self.dry_run:
            lines.append("Dry run: file not modified")
        return "\n".join(lines) + "\n"

    def __str__(self) -> str:
        return self.render()


class PatchEngine:
    """Applies line-range patches to files and reports unified diffs."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        """Initialize the engine.

        Args:
            logger: Logger to report to (defaults to the module logger)
        """
        self.logger = logger if logger is not None else get_logger(__name__)

    async def apply_patches(
        self,
        path: Union[str, Path],
        patches: Sequence[LinePatch],
        dry_run: bool = False,
        options: Optional[PatchOptions] = None,
    ) -> PatchReport:
        """Patch a file that has already been authorized.

        The file is read once, patched in memory and, unless ``dry_run`` is
        set, overwritten with the result. Nothing is written when any patch
        is invalid. There is no lock between the read and the write.

        Args:
            path: Resolved path of the file
            patches: Line-range patches relative to the current file content
            dry_run: Compute the diff without writing
            options: Patch options

        Returns:
            PatchReport with the diff and per-patch outcomes

        Raises:
            InvalidRangeError: If any patch range is invalid
            IOFailureError: If the file cannot be read, decoded or written
        """
        path = Path(path)
        options = options or PatchOptions()

        try:
            raw = await anyio.to_thread.run_sync(
                partial(path.read_text, encoding=options.encoding)
            )
        except UnicodeDecodeError as e:
            raise IOFailureError(
                f"Cannot decode file as {options.encoding}: {path}", path=path, cause=e
            ) from e
        except OSError as e:
            raise IOFailureError(
                f"Cannot read file {path}: {e.strerror or e}", path=path, cause=e
            ) from e

        original = normalize_line_endings(raw)
        try:
            modified, outcomes = apply_line_patches(
                original, patches, options.preserve_indentation, path=path
            )
        except InvalidRangeError as e:
            self.logger.warning(
                f"Rejected patches for {path}: {e}", extra={"path": str(path)}
            )
            raise

        diff = create_unified_diff(original, modified, str(path), str(path))

        if not dry_run:
            try:
                await anyio.to_thread.run_sync(
                    partial(
                        path.write_text, modified, encoding=options.encoding, newline=""
                    )
                )
            except OSError as e:
                raise IOFailureError(
                    f"Cannot write file {path}: {e.strerror or e}", path=path, cause=e
                ) from e

        self.logger.info(
            f"{'Previewed' if dry_run else 'Applied'} {len(patches)} patches to {path}",
            extra={"path": str(path), "dry_run": dry_run},
        )
        return PatchReport(path, original, modified, diff, outcomes, dry_run)
