"""Unit tests for the file operations module.

These tests run every batch operation against a real temporary
filesystem and check the reported summaries as well as the effects on
disk.
"""

import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import anyio
import pytest

from secure_filesystem.operations import (
    BatchResult,
    BatchItem,
    FileOperations,
    content_diff,
    number_lines,
    run_batch,
)
from secure_filesystem.security import PathSandbox


@pytest.fixture
def test_filesystem():
    """Create an allowed directory with a few files and an outside directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        base_dir = Path(os.path.realpath(temp_dir))
        root = base_dir / "allowed"
        outside = base_dir / "outside"
        root.mkdir()
        outside.mkdir()

        (root / "test.txt").write_text("Line 1\nLine 2\nLine 3\n")
        (root / "code.py").write_text("def f():\n    return 1\n")
        subdir = root / "subdir"
        subdir.mkdir()
        (subdir / "nested.txt").write_text("nested")
        (outside / "secret.txt").write_text("secret")

        yield {"root": root, "outside": outside, "subdir": subdir}


@pytest.fixture
def operations(test_filesystem):
    return FileOperations(PathSandbox([test_filesystem["root"]]))


class TestHelpers:
    """Tests for module-level helpers."""

    def test_number_lines(self):
        assert number_lines("a\nb\n") == "1: a\n2: b"
        assert number_lines("a\nb") == "1: a\n2: b"
        assert number_lines("") == "1: "

    def test_batch_result_render(self):
        result = BatchResult(
            [BatchItem(True, "ok"), BatchItem(False, "bad 1"), BatchItem(False, "bad 2")]
        )
        assert result.render("files", "files written", "files failed") == (
            "Processed 3 files:\n"
            "- 1 files written\n"
            "- 2 files failed\n\n"
            "Errors:\nbad 1\nbad 2"
        )

    def test_batch_result_render_without_errors(self):
        result = BatchResult([BatchItem(True, "ok")])
        assert result.render("paths", "done") == "Processed 1 paths:\n- 1 done\n"

    def test_content_diff(self):
        assert content_diff("a\n", "a\n") == "No differences between original and modified"
        diff = content_diff("a\n", "b\n", "left", "right")
        assert diff.startswith("```diff\n--- left\toriginal\n+++ right\tmodified\n")


@pytest.mark.asyncio
class TestRunBatch:
    """Tests for concurrent batch execution."""

    async def test_results_keep_submission_order(self):
        async def worker(delay):
            await anyio.sleep(delay)
            if delay == 0.02:
                raise ValueError("boom")
            return f"slept {delay}"

        result = await run_batch(
            [0.05, 0.0, 0.02], worker, lambda item, e: f"{item} failed: {e}"
        )

        assert [item.message for item in result.items] == [
            "slept 0.05",
            "slept 0.0",
            "0.02 failed: boom",
        ]
        assert result.success_count == 2
        assert result.error_count == 1


@pytest.mark.asyncio
class TestReadAndWrite:
    """Tests for reading, writing and appending."""

    async def test_batch_read_numbers_lines_and_reports_errors(
        self, test_filesystem, operations
    ):
        root = test_filesystem["root"]
        output = await operations.batch_read_files(
            [
                str(root / "test.txt"),
                str(test_filesystem["outside"] / "secret.txt"),
                str(root / "missing.txt"),
            ]
        )
        sections = output.split("\n\n---\n\n")

        assert sections[0] == f"File: {root / 'test.txt'}\n1: Line 1\n2: Line 2\n3: Line 3"
        assert sections[1].startswith(f"File: {test_filesystem['outside'] / 'secret.txt'}\nError: Access denied")
        assert sections[2].startswith(f"File: {root / 'missing.txt'}\nError:")

    async def test_write_new_files_creates_parents(self, test_filesystem, operations):
        root = test_filesystem["root"]
        output = await operations.write_new_files(
            [
                {"path": str(root / "new.txt"), "content": "hello"},
                {"path": str(root / "a" / "b" / "deep.txt"), "content": "deep"},
            ]
        )

        assert output == "Processed 2 files:\n- 2 files written successfully\n"
        assert (root / "new.txt").read_text() == "hello"
        assert (root / "a" / "b" / "deep.txt").read_text() == "deep"

    async def test_write_new_files_refuses_existing_and_outside(
        self, test_filesystem, operations
    ):
        root = test_filesystem["root"]
        output = await operations.write_new_files(
            [
                {"path": str(root / "test.txt"), "content": "overwrite?"},
                {"path": str(test_filesystem["outside"] / "x.txt"), "content": "x"},
            ]
        )

        assert "- 2 files failed" in output
        assert "File already exists. Use patch_files to modify existing files." in output
        assert "Access denied" in output
        assert (root / "test.txt").read_text() == "Line 1\nLine 2\nLine 3\n"
        assert not (test_filesystem["outside"] / "x.txt").exists()

    async def test_write_preserves_content_exactly(self, test_filesystem, operations):
        target = test_filesystem["root"] / "crlf.txt"
        await operations.write_new_files([{"path": str(target), "content": "a\r\nb"}])
        assert target.read_bytes() == b"a\r\nb"

    async def test_append_files(self, test_filesystem, operations):
        root = test_filesystem["root"]
        output = await operations.append_files(
            [
                {"path": str(root / "test.txt"), "content": "Line 4\n"},
                {"path": str(root / "fresh.txt"), "content": "created"},
                {"path": str(root / "nope" / "x.txt"), "content": "x"},
            ]
        )

        assert "- 2 files appended successfully" in output
        assert "Parent directory does not exist" in output
        assert (root / "test.txt").read_text().endswith("Line 3\nLine 4\n")
        assert (root / "fresh.txt").read_text() == "created"


@pytest.mark.asyncio
class TestPatchFiles:
    """Tests for patching through the sandbox."""

    async def test_patch_files_reports_diff_per_file(self, test_filesystem, operations):
        root = test_filesystem["root"]
        output = await operations.patch_files(
            [
                {
                    "path": str(root / "code.py"),
                    "patches": [{"startLine": 2, "endLine": 2, "newText": "return 2"}],
                },
                {
                    "path": str(root / "test.txt"),
                    "patches": [{"startLine": 9, "endLine": 9, "newText": "x"}],
                },
            ]
        )

        assert output.startswith("Processed 2 files:\n- 1 files patched successfully\n")
        assert "Invalid line range: 9-9 (file has 4 lines)" in output
        assert "\n\nPatch Results:\n" in output
        assert f"File: {root / 'code.py'}\n```diff\n" in output
        assert "+    return 2" in output
        assert (root / "code.py").read_text() == "def f():\n    return 2\n"
        assert (root / "test.txt").read_text() == "Line 1\nLine 2\nLine 3\n"

    async def test_patch_files_dry_run(self, test_filesystem, operations):
        target = test_filesystem["root"] / "test.txt"
        output = await operations.patch_files(
            [
                {
                    "path": str(target),
                    "patches": [{"start_line": 1, "end_line": 1, "new_text": "First"}],
                }
            ],
            dry_run=True,
        )

        assert "+First" in output
        assert "Dry run: file not modified" in output
        assert target.read_text() == "Line 1\nLine 2\nLine 3\n"

    async def test_patch_outside_roots_is_denied(self, test_filesystem, operations):
        secret = test_filesystem["outside"] / "secret.txt"
        output = await operations.patch_files(
            [
                {
                    "path": str(secret),
                    "patches": [{"startLine": 1, "endLine": 1, "newText": "pwned"}],
                }
            ]
        )

        assert "Access denied" in output
        assert "Patch Results" not in output
        assert secret.read_text() == "secret"


@pytest.mark.asyncio
class TestDeleteCopyMove:
    """Tests for deleting, copying and moving."""

    async def test_delete_files(self, test_filesystem, operations):
        root = test_filesystem["root"]
        output = await operations.delete_files(
            [str(root / "test.txt"), str(root / "subdir"), str(root / "missing.txt")]
        )

        assert "- 1 items deleted successfully" in output
        assert "Cannot delete directory without recursive flag" in output
        assert "Path does not exist" in output
        assert not (root / "test.txt").exists()
        assert (root / "subdir").exists()

    async def test_delete_directory_recursively(self, test_filesystem, operations):
        root = test_filesystem["root"]
        await operations.delete_files([str(root / "subdir")], recursive=True)
        assert not (root / "subdir").exists()

    async def test_delete_symlink_keeps_target(self, test_filesystem, operations):
        root = test_filesystem["root"]
        link = root / "link.txt"
        try:
            os.symlink(root / "test.txt", link)
        except (OSError, AttributeError):
            pytest.skip("Symlinks not supported on this platform")

        output = await operations.delete_files([str(link)])

        assert "- 1 items deleted successfully" in output
        assert not link.is_symlink()
        assert (root / "test.txt").exists()

    async def test_create_directories(self, test_filesystem, operations):
        root = test_filesystem["root"]
        output = await operations.create_directories(
            [str(root / "x" / "y" / "z"), str(root / "subdir")]
        )

        assert output == (
            "Processed 2 directories:\n- 2 directories created successfully\n"
        )
        assert (root / "x" / "y" / "z").is_dir()

    async def test_copy_file_and_directory(self, test_filesystem, operations):
        root = test_filesystem["root"]

        await operations.copy_file(str(root / "test.txt"), str(root / "copy" / "t.txt"))
        assert (root / "copy" / "t.txt").read_text() == "Line 1\nLine 2\nLine 3\n"

        with pytest.raises(ValueError, match="recursive"):
            await operations.copy_file(str(root / "subdir"), str(root / "subdir2"))

        await operations.copy_file(
            str(root / "subdir"), str(root / "subdir2"), recursive=True
        )
        assert (root / "subdir2" / "nested.txt").read_text() == "nested"

        with pytest.raises(FileExistsError):
            await operations.copy_file(str(root / "code.py"), str(root / "test.txt"))

        await operations.copy_file(
            str(root / "code.py"), str(root / "test.txt"), overwrite=True
        )
        assert (root / "test.txt").read_text() == "def f():\n    return 1\n"

    async def test_copy_tree_refuses_links_leaving_roots(self, test_filesystem, operations):
        root = test_filesystem["root"]
        try:
            os.symlink(
                test_filesystem["outside"] / "secret.txt", root / "subdir" / "leak.txt"
            )
        except (OSError, AttributeError):
            pytest.skip("Symlinks not supported on this platform")

        with pytest.raises(Exception, match="Access denied"):
            await operations.copy_file(
                str(root / "subdir"), str(root / "subdir2"), recursive=True
            )
        assert not (root / "subdir2" / "leak.txt").exists()

    async def test_copy_overwrite_replaces_link_to_outside(
        self, test_filesystem, operations
    ):
        root = test_filesystem["root"]
        victim = test_filesystem["outside"] / "victim.txt"
        victim.write_text("original")
        link = root / "link.txt"
        try:
            os.symlink(victim, link)
        except (OSError, AttributeError):
            pytest.skip("Symlinks not supported on this platform")
        (root / "src.txt").write_text("replacement")

        with pytest.raises(FileExistsError):
            await operations.copy_file(str(root / "src.txt"), str(link))

        await operations.copy_file(str(root / "src.txt"), str(link), overwrite=True)

        assert victim.read_text() == "original"
        assert not link.is_symlink()
        assert link.read_text() == "replacement"

    async def test_copy_tree_replaces_links_in_destination(
        self, test_filesystem, operations
    ):
        root = test_filesystem["root"]
        victim = test_filesystem["outside"] / "victim.txt"
        victim.write_text("original")
        dest = root / "existing"
        dest.mkdir()
        try:
            os.symlink(victim, dest / "nested.txt")
        except (OSError, AttributeError):
            pytest.skip("Symlinks not supported on this platform")

        await operations.copy_file(
            str(root / "subdir"), str(dest), recursive=True, overwrite=True
        )

        assert victim.read_text() == "original"
        assert not (dest / "nested.txt").is_symlink()
        assert (dest / "nested.txt").read_text() == "nested"

    async def test_move_files(self, test_filesystem, operations):
        root = test_filesystem["root"]
        output = await operations.move_files(
            [
                {"source": str(root / "test.txt"), "destination": str(root / "new" / "moved.txt")},
                {"source": str(root / "code.py"), "destination": str(test_filesystem["outside"] / "code.py")},
            ]
        )

        assert "- 1 items moved successfully" in output
        assert "Access denied" in output
        assert (root / "new" / "moved.txt").exists()
        assert not (root / "test.txt").exists()
        assert (root / "code.py").exists()

    async def test_move_overwrite(self, test_filesystem, operations):
        root = test_filesystem["root"]
        item = {"source": str(root / "code.py"), "destination": str(root / "test.txt")}

        output = await operations.move_files([item])
        assert "Destination already exists" in output

        output = await operations.move_files([item], overwrite=True)
        assert "- 1 items moved successfully" in output
        assert (root / "test.txt").read_text() == "def f():\n    return 1\n"


@pytest.mark.asyncio
class TestListingAndInfo:
    """Tests for listing, file info and diffs."""

    async def test_list_directory_formatted(self, test_filesystem, operations):
        output = await operations.list_directory_formatted(str(test_filesystem["root"]))
        assert output.split("\n") == ["[DIR] subdir", "[FILE] code.py", "[FILE] test.txt"]

    async def test_list_empty_directory(self, test_filesystem, operations):
        empty = test_filesystem["root"] / "empty"
        empty.mkdir()
        assert await operations.list_directory_formatted(str(empty)) == "Directory is empty"

    async def test_list_file_is_rejected(self, test_filesystem, operations):
        with pytest.raises(ValueError, match="Not a directory"):
            await operations.list_directory(str(test_filesystem["root"] / "test.txt"))

    async def test_get_file_info(self, test_filesystem, operations):
        info = await operations.get_file_info(str(test_filesystem["root"] / "test.txt"))
        data = info.to_dict()

        assert data["size"] == len("Line 1\nLine 2\nLine 3\n")
        assert data["type"] == "file"
        assert data["is_file"] and not data["is_directory"]
        assert len(data["permissions"]) == 9
        assert str(info).startswith(f"File: {test_filesystem['root'] / 'test.txt'}")

    async def test_get_file_info_missing(self, test_filesystem, operations):
        with pytest.raises(FileNotFoundError):
            await operations.get_file_info(str(test_filesystem["root"] / "missing"))

    async def test_file_diff(self, test_filesystem, operations):
        root = test_filesystem["root"]
        (root / "other.txt").write_text("Line 1\nLine two\nLine 3\n")

        output = await operations.file_diff(str(root / "test.txt"), str(root / "other.txt"))

        assert output.startswith("```diff\n")
        assert "-Line 2" in output
        assert "+Line two" in output

        same = await operations.file_diff(str(root / "test.txt"), str(root / "test.txt"))
        assert same.startswith("No differences")

    async def test_relative_paths_resolve_against_cwd(self, test_filesystem, operations):
        with patch("os.getcwd", return_value=str(test_filesystem["subdir"])):
            content = await operations.read_file("../test.txt")
        assert content.startswith("Line 1")
