"""Unified diff rendering.

Used by the patch engine to report edits and by the diff tools to compare
files and strings.
"""

import difflib
import re

NO_NEWLINE_MARKER = "\\ No newline at end of file"

_LINE_ENDINGS = re.compile(r"\r\n?")


def normalize_line_endings(text: str) -> str:
    """Convert CRLF and bare CR line endings to LF."""
    return _LINE_ENDINGS.sub("\n", text)


def create_unified_diff(
    original: str,
    modified: str,
    from_label: str = "original",
    to_label: str = "modified",
    context_lines: int = 3,
) -> str:
    """Create a unified diff between two texts.

    Args:
        original: Text before the change
        modified: Text after the change
        from_label: Name shown on the ``---`` header line
        to_label: Name shown on the ``+++`` header line
        context_lines: Number of unchanged lines around each hunk

    Returns:
        Diff text ending in a newline, or an empty string when the texts are equal
    """
    original_lines = normalize_line_endings(original).splitlines(keepends=True)
    modified_lines = normalize_line_endings(modified).splitlines(keepends=True)

    diff_lines = difflib.unified_diff(
        original_lines,
        modified_lines,
        fromfile=from_label,
        tofile=to_label,
        fromfiledate="original",
        tofiledate="modified",
        n=context_lines,
    )

    result = []
    for line in diff_lines:
        if line.endswith("\n"):
            result.append(line)
        else:
            # Last line of one side had no trailing newline
            result.append(line + "\n")
            result.append(NO_NEWLINE_MARKER + "\n")

    return "".join(result)


def fence_for(text: str, char: str = "`", minimum: int = 3) -> str:
    """Pick a fence longer than any run of ``char`` inside ``text``.

    Args:
        text: Content that will be placed inside the fence
        char: Fence character
        minimum: Shortest fence to return

    Returns:
        The fence string
    """
    longest = max((len(run) for run in re.findall(re.escape(char) + "+", text)), default=0)
    return char * max(minimum, longest + 1)


def fenced_block(text: str, info: str = "diff") -> str:
    """Wrap text in a fenced block that its own content cannot terminate."""
    fence = fence_for(text)
    body = text if text.endswith("\n") or not text else text + "\n"
    return f"{fence}{info}\n{body}{fence}\n"
