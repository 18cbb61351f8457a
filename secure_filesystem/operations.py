"""Base file operations for the secure filesystem server.

This module provides the batch file operations exposed by the server:
reading, writing, appending, patching, deleting, copying, moving and
creating directories. Batch operations process their items concurrently
and report per-item successes and failures without stopping early.
"""

import shutil
import stat
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

import anyio
from mcp.server.fastmcp.utilities.logging import get_logger

from .diff import create_unified_diff, fenced_block, normalize_line_endings
from .errors import FilesystemError, IOFailureError
from .patching import LinePatch, PatchEngine, PatchOptions
from .security import PathSandbox, normalize_path

logger = get_logger(__name__)

T = TypeVar("T")

SEPARATOR = "=" * 40


@dataclass
class BatchItem:
    """Outcome of one item in a batch operation."""

    ok: bool
    message: str


@dataclass
class BatchResult:
    """Outcome of a batch operation, in submission order."""

    items: List[BatchItem] = field(default_factory=list)

    @property
    def successes(self) -> List[str]:
        return [item.message for item in self.items if item.ok]

    @property
    def errors(self) -> List[str]:
        return [item.message for item in self.items if not item.ok]

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def render(
        self,
        noun: str = "files",
        success_text: str = "files processed successfully",
        failure_text: str = "files failed",
        error_separator: str = "\n",
    ) -> str:
        """Format the success and failure counts with any error messages.

        Args:
            noun: What was processed, e.g. "files" or "paths"
            success_text: Text following the success count
            failure_text: Text following the failure count
            error_separator: Separator between error messages

        Returns:
            Summary text
        """
        total = self.success_count + self.error_count
        output = f"Processed {total} {noun}:\n- {self.success_count} {success_text}\n"
        if self.error_count:
            output += f"- {self.error_count} {failure_text}\n\n"
            output += "Errors:\n" + error_separator.join(self.errors)
        return output


async def run_batch(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[str]],
    describe_failure: Callable[[T, Exception], str],
) -> BatchResult:
    """Run ``worker`` on every item concurrently and collect the outcomes.

    A failing item never cancels the others. Outcomes are stored by
    submission index, so the result order does not depend on which item
    finishes first.

    Args:
        items: Items to process
        worker: Coroutine function returning a success message
        describe_failure: Builds the error message for a failed item

    Returns:
        BatchResult in submission order
    """
    outcomes: List[Optional[BatchItem]] = [None] * len(items)

    async def run_one(index: int, item: T) -> None:
        try:
            outcomes[index] = BatchItem(True, await worker(item))
        except Exception as e:
            message = describe_failure(item, e)
            logger.warning(message)
            outcomes[index] = BatchItem(False, message)

    async with anyio.create_task_group() as tg:
        for index, item in enumerate(items):
            tg.start_soon(run_one, index, item)

    return BatchResult([outcome for outcome in outcomes if outcome is not None])


class FileInfo:
    """Information about a file or directory."""

    def __init__(self, path: Path):
        """Initialize with a file path.

        Args:
            path: Path to the file or directory

        Raises:
            FileNotFoundError: If the file or directory does not exist
        """
        self.path = path
        self.name = path.name
        self.is_symlink = path.is_symlink()

        st = path.stat()
        self.is_dir = stat.S_ISDIR(st.st_mode)
        self.is_file = stat.S_ISREG(st.st_mode)
        self.size = st.st_size
        self.created = datetime.fromtimestamp(st.st_ctime)
        self.modified = datetime.fromtimestamp(st.st_mtime)
        self.accessed = datetime.fromtimestamp(st.st_atime)
        self.permissions = stat.filemode(st.st_mode)[1:]
        self.permissions_octal = format(st.st_mode & 0o777, "o")

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "type": "directory" if self.is_dir else "file",
            "size": self.size,
            "created": self.created.isoformat(),
            "modified": self.modified.isoformat(),
            "accessed": self.accessed.isoformat(),
            "is_directory": self.is_dir,
            "is_file": self.is_file,
            "is_symlink": self.is_symlink,
            "permissions": self.permissions,
            "permissions_octal": self.permissions_octal,
        }

    def __str__(self) -> str:
        kind = "Directory" if self.is_dir else "File"
        if self.is_symlink:
            kind += " (symlink)"
        return (
            f"{kind}: {self.path}\n"
            f"Size: {self.size:,} bytes\n"
            f"Created: {self.created.isoformat()}\n"
            f"Modified: {self.modified.isoformat()}\n"
            f"Accessed: {self.accessed.isoformat()}\n"
            f"Permissions: {self.permissions} ({self.permissions_octal})"
        )


def _error_text(error: Exception) -> str:
    if isinstance(error, FilesystemError):
        return error.message
    if isinstance(error, OSError) and error.strerror:
        return error.strerror
    return str(error)


def number_lines(content: str) -> str:
    """Prefix every line with its 1-based line number."""
    lines = normalize_line_endings(content).split("\n")
    if len(lines) > 1 and lines[-1] == "":
        lines.pop()
    return "\n".join(f"{i}: {line}" for i, line in enumerate(lines, 1))


def _write_exclusive(path: Path, content: str, encoding: str) -> None:
    with open(path, "x", encoding=encoding, newline="") as f:
        f.write(content)


def _append(path: Path, content: str, encoding: str) -> None:
    with open(path, "a", encoding=encoding, newline="") as f:
        f.write(content)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


class FileOperations:
    """File operations with sandboxed path resolution."""

    def __init__(
        self, sandbox: PathSandbox, patch_engine: Optional[PatchEngine] = None
    ):
        """Initialize with a path sandbox.

        Args:
            sandbox: PathSandbox used to authorize every path
            patch_engine: PatchEngine for line-range patches
        """
        self.sandbox = sandbox
        self.patch_engine = patch_engine or PatchEngine()

    async def read_file(self, path: Union[str, Path], encoding: str = "utf-8") -> str:
        """Read a text file.

        Args:
            path: Path to the file
            encoding: Text encoding (default: utf-8)

        Returns:
            File contents as string

        Raises:
            AccessDeniedError: If path is outside allowed directories
            IOFailureError: If the file cannot be read or decoded
        """
        abs_path = await self.sandbox.resolve_existing(path)
        try:
            return await anyio.to_thread.run_sync(
                partial(abs_path.read_text, encoding=encoding)
            )
        except UnicodeDecodeError as e:
            raise IOFailureError(
                f"Cannot decode file as {encoding}: {path}", path=abs_path, cause=e
            ) from e
        except OSError as e:
            raise IOFailureError(
                f"Cannot read file: {_error_text(e)}", path=abs_path, cause=e
            ) from e

    async def batch_read_files(
        self, paths: List[str], encoding: str = "utf-8"
    ) -> str:
        """Read several files, prefixing each line with its line number.

        Args:
            paths: Paths to read
            encoding: Text encoding (default: utf-8)

        Returns:
            Every file's numbered content or error, in request order
        """

        async def read_one(path: str) -> str:
            content = await self.read_file(path, encoding)
            return f"File: {path}\n{number_lines(content)}"

        result = await run_batch(
            paths,
            read_one,
            lambda path, e: f"File: {path}\nError: {_error_text(e)}",
        )
        return "\n\n---\n\n".join(item.message for item in result.items)

    async def write_new_files(
        self, files: List[Dict[str, str]], encoding: str = "utf-8"
    ) -> str:
        """Create new files, refusing to overwrite existing ones.

        Missing parent directories are created.

        Args:
            files: List of {path, content} dictionaries
            encoding: Text encoding (default: utf-8)

        Returns:
            Batch summary
        """

        async def write_one(file: Dict[str, str]) -> str:
            abs_path = await self.sandbox.resolve_for_creation(file["path"])
            if abs_path.exists() or abs_path.is_symlink():
                raise FileExistsError(
                    "File already exists. Use patch_files to modify existing files."
                )
            await anyio.to_thread.run_sync(
                partial(abs_path.parent.mkdir, parents=True, exist_ok=True)
            )
            await anyio.to_thread.run_sync(
                _write_exclusive, abs_path, file["content"], encoding
            )
            return f"Successfully wrote to {file['path']}"

        result = await run_batch(
            files,
            write_one,
            lambda file, e: f"Failed to write file {file['path']}: {_error_text(e)}",
        )
        return result.render("files", "files written successfully", "files failed")

    async def append_files(
        self, files: List[Dict[str, str]], encoding: str = "utf-8"
    ) -> str:
        """Append content to files, creating files that do not exist.

        Args:
            files: List of {path, content} dictionaries
            encoding: Text encoding (default: utf-8)

        Returns:
            Batch summary
        """

        async def append_one(file: Dict[str, str]) -> str:
            abs_path = await self.sandbox.resolve_existing(file["path"])
            await anyio.to_thread.run_sync(_append, abs_path, file["content"], encoding)
            return f"Successfully appended to {file['path']}"

        result = await run_batch(
            files,
            append_one,
            lambda file, e: f"Failed to append to file {file['path']}: {_error_text(e)}",
        )
        return result.render("files", "files appended successfully", "files failed")

    async def patch_files(
        self,
        files: List[Dict[str, Any]],
        dry_run: bool = False,
        options: Optional[PatchOptions] = None,
    ) -> str:
        """Apply line-range patches to several files.

        Each file is patched independently; an invalid patch aborts only the
        file it belongs to.

        Args:
            files: List of {path, patches} dictionaries, where patches is a
                list of {startLine, endLine, newText} dictionaries
            dry_run: Show the diffs without writing
            options: Patch options

        Returns:
            Batch summary followed by each patched file's report
        """

        async def patch_one(file: Dict[str, Any]) -> str:
            abs_path = await self.sandbox.resolve_existing(file["path"])
            patches = [
                p if isinstance(p, LinePatch) else LinePatch.from_dict(p)
                for p in file["patches"]
            ]
            report = await self.patch_engine.apply_patches(
                abs_path, patches, dry_run, options
            )
            return f"File: {file['path']}\n{report.render()}"

        result = await run_batch(
            files,
            patch_one,
            lambda file, e: f"Failed to patch {file['path']}: {_error_text(e)}",
        )

        output = result.render(
            "files", "files patched successfully", "files failed", "\n\n"
        )
        if result.success_count:
            output += f"\n\nPatch Results:\n{SEPARATOR}\n"
            output += f"\n{SEPARATOR}\n".join(result.successes)
        return output

    async def delete_files(self, paths: List[str], recursive: bool = False) -> str:
        """Delete files, and directories when ``recursive`` is set.

        A symlink is removed itself, never the file it points to.

        Args:
            paths: Paths to delete
            recursive: Allow deleting directories with their contents

        Returns:
            Batch summary
        """

        async def delete_one(path: str) -> str:
            abs_path = await self.sandbox.resolve_existing(path)
            literal = Path(normalize_path(path))
            if literal.is_symlink():
                await anyio.to_thread.run_sync(literal.unlink)
                return f"Successfully deleted symlink: {path}"

            if not abs_path.exists():
                raise FileNotFoundError(f"Path does not exist: {path}")
            if abs_path.is_dir():
                if not recursive:
                    raise ValueError("Cannot delete directory without recursive flag")
                await anyio.to_thread.run_sync(shutil.rmtree, abs_path)
                return f"Successfully deleted directory: {path}"

            await anyio.to_thread.run_sync(abs_path.unlink)
            return f"Successfully deleted file: {path}"

        result = await run_batch(
            paths,
            delete_one,
            lambda path, e: f"Failed to delete {path}: {_error_text(e)}",
        )
        return result.render("paths", "items deleted successfully", "items failed")

    async def create_directories(self, paths: List[str]) -> str:
        """Create directories along with any missing parents.

        Existing directories are left alone.

        Args:
            paths: Directory paths to create

        Returns:
            Batch summary
        """

        async def create_one(path: str) -> str:
            abs_path = await self.sandbox.resolve_for_creation(path)
            await anyio.to_thread.run_sync(
                partial(abs_path.mkdir, parents=True, exist_ok=True)
            )
            return f"Successfully created directory: {path}"

        result = await run_batch(
            paths,
            create_one,
            lambda path, e: f"Failed to create directory {path}: {_error_text(e)}",
        )
        return result.render(
            "directories", "directories created successfully", "directories failed"
        )

    async def copy_file(
        self,
        source: str,
        destination: str,
        recursive: bool = False,
        overwrite: bool = False,
    ) -> str:
        """Copy a file, or a directory when ``recursive`` is set.

        Every entry of a copied directory is authorized on its own, so a
        symlink inside the tree cannot pull in files from outside.
        A symlink at the destination is replaced, never written through.

        Args:
            source: Source path
            destination: Destination path
            recursive: Allow copying directories
            overwrite: Replace an existing destination

        Returns:
            Success message

        Raises:
            AccessDeniedError: If either path is outside allowed directories
            FileExistsError: If the destination exists and overwrite is False
            ValueError: If the source is a directory and recursive is False
        """
        source_path = await self.sandbox.resolve_existing(source)
        dest_path = await self.sandbox.resolve_for_creation(destination)

        if not source_path.exists():
            raise FileNotFoundError(f"Source does not exist: {source}")

        if dest_path.exists() or dest_path.is_symlink():
            if not overwrite:
                raise FileExistsError(
                    f"Destination already exists: {destination}. "
                    "Use overwrite=true to replace it."
                )
            if dest_path.is_symlink():
                await anyio.to_thread.run_sync(dest_path.unlink)

        if source_path.is_dir():
            if not recursive:
                raise ValueError(
                    "Source is a directory. Use recursive=true to copy directories."
                )
            await self._copy_tree(source_path, dest_path)
            return f"Successfully copied directory {source} to {destination}"

        await anyio.to_thread.run_sync(
            partial(dest_path.parent.mkdir, parents=True, exist_ok=True)
        )
        await anyio.to_thread.run_sync(shutil.copy2, source_path, dest_path)
        return f"Successfully copied file {source} to {destination}"

    async def _copy_tree(self, source: Path, destination: Path) -> None:
        await anyio.to_thread.run_sync(
            partial(destination.mkdir, parents=True, exist_ok=True)
        )
        entries = await anyio.to_thread.run_sync(list, source.iterdir())
        for entry in entries:
            entry_source = await self.sandbox.resolve_existing(entry)
            entry_dest = await self.sandbox.resolve_for_creation(
                destination / entry.name
            )
            # Replace links rather than writing through them
            if entry_dest.is_symlink():
                await anyio.to_thread.run_sync(entry_dest.unlink)
            if entry_source.is_dir():
                await self._copy_tree(entry_source, entry_dest)
            else:
                await anyio.to_thread.run_sync(shutil.copy2, entry_source, entry_dest)

    async def move_files(
        self, items: List[Dict[str, str]], overwrite: bool = False
    ) -> str:
        """Move or rename files and directories.

        Args:
            items: List of {source, destination} dictionaries
            overwrite: Replace existing destinations

        Returns:
            Batch summary
        """

        async def move_one(item: Dict[str, str]) -> str:
            source_path = await self.sandbox.resolve_existing(item["source"])
            dest_path = await self.sandbox.resolve_for_creation(item["destination"])

            if not source_path.exists():
                raise FileNotFoundError(f"Source does not exist: {item['source']}")

            if dest_path.exists() or dest_path.is_symlink():
                if not overwrite:
                    raise FileExistsError(
                        f"Destination already exists: {item['destination']}"
                    )
                await anyio.to_thread.run_sync(_remove, dest_path)

            await anyio.to_thread.run_sync(
                partial(dest_path.parent.mkdir, parents=True, exist_ok=True)
            )
            # shutil.move handles cross-filesystem moves
            await anyio.to_thread.run_sync(shutil.move, source_path, dest_path)
            return f"Successfully moved {item['source']} to {item['destination']}"

        result = await run_batch(
            items,
            move_one,
            lambda item, e: (
                f"Failed to move {item['source']} to {item['destination']}: "
                f"{_error_text(e)}"
            ),
        )
        return result.render(
            "move operations", "items moved successfully", "operations failed"
        )

    async def list_directory(self, path: Union[str, Path]) -> List[Dict]:
        """List directory contents.

        Args:
            path: Path to the directory

        Returns:
            List of file/directory information dictionaries, directories first

        Raises:
            AccessDeniedError: If path is outside allowed directories
            ValueError: If path is not a directory
        """
        abs_path = await self.sandbox.resolve_existing(path)
        if not abs_path.is_dir():
            raise ValueError(f"Not a directory: {path}")

        entries = await anyio.to_thread.run_sync(list, abs_path.iterdir())
        results = []
        for entry in entries:
            try:
                results.append(FileInfo(entry).to_dict())
            except (PermissionError, FileNotFoundError):
                # Dangling symlinks and unreadable entries
                logger.debug(f"Skipping unreadable entry: {entry}")

        return sorted(results, key=lambda x: (not x["is_directory"], x["name"]))

    async def list_directory_formatted(self, path: Union[str, Path]) -> str:
        """List directory contents as ``[DIR] name`` / ``[FILE] name`` lines."""
        entries = await self.list_directory(path)
        if not entries:
            return "Directory is empty"
        return "\n".join(
            f"{'[DIR]' if entry['is_directory'] else '[FILE]'} {entry['name']}"
            for entry in entries
        )

    async def get_file_info(self, path: Union[str, Path]) -> FileInfo:
        """Get detailed information about a file or directory.

        Args:
            path: Path to the file or directory

        Returns:
            FileInfo object with detailed information

        Raises:
            AccessDeniedError: If path is outside allowed directories
            FileNotFoundError: If file does not exist
        """
        abs_path = await self.sandbox.resolve_existing(path)
        if not abs_path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        return await anyio.to_thread.run_sync(FileInfo, abs_path)

    async def file_diff(
        self, file1: str, file2: str, encoding: str = "utf-8"
    ) -> str:
        """Show a unified diff between two files.

        Args:
            file1: Original file
            file2: Modified file
            encoding: Text encoding (default: utf-8)

        Returns:
            Fenced diff, or a note that the files are identical
        """
        content1 = await self.read_file(file1, encoding)
        content2 = await self.read_file(file2, encoding)
        return content_diff(content1, content2, file1, file2)


def content_diff(
    content1: str,
    content2: str,
    label1: str = "original",
    label2: str = "modified",
) -> str:
    """Show a unified diff between two strings.

    Args:
        content1: Original text
        content2: Modified text
        label1: Name for the original text
        label2: Name for the modified text

    Returns:
        Fenced diff, or a note that the contents are identical
    """
    diff = create_unified_diff(content1, content2, label1, label2)
    if not diff:
        return f"No differences between {label1} and {label2}"
    return fenced_block(diff, "diff")
