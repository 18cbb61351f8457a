"""Unit tests for the advanced operations module."""

import hashlib
import json
import os
import tempfile
from pathlib import Path

import pytest

from secure_filesystem.advanced import AdvancedFileOperations, DirectoryTreeNode
from secure_filesystem.errors import AccessDeniedError
from secure_filesystem.security import PathSandbox


@pytest.fixture
def project_tree():
    """Create a small project layout inside an allowed directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        base_dir = Path(os.path.realpath(temp_dir))
        root = base_dir / "project"
        outside = base_dir / "outside"
        (root / "src" / "pkg").mkdir(parents=True)
        (root / "node_modules" / "dep").mkdir(parents=True)
        outside.mkdir()

        (root / "README.md").write_text("# Project\n\nSome text\n")
        (root / "src" / "main.py").write_text("import os\n\n\ndef main():\n    pass\n")
        (root / "src" / "pkg" / "util.py").write_text("# util\nVALUE = 1\n")
        (root / "node_modules" / "dep" / "index.js").write_text("module.exports = {}\n")
        (root / "data.bin").write_bytes(b"\xff\xfe\x00\x01")
        (outside / "secret.py").write_text("SECRET = 1\n")

        yield {"root": root, "outside": outside}


@pytest.fixture
def advanced(project_tree):
    return AdvancedFileOperations(PathSandbox([project_tree["root"]]))


class TestDirectoryTreeNode:
    def test_to_dict_orders_directories_first(self):
        root = DirectoryTreeNode(Path("/r"), True)
        root.add_child(DirectoryTreeNode(Path("/r/b.txt")))
        root.add_child(DirectoryTreeNode(Path("/r/a"), True))

        assert root.to_dict() == {
            "name": "r",
            "type": "directory",
            "children": [
                {"name": "a", "type": "directory", "children": []},
                {"name": "b.txt", "type": "file"},
            ],
        }


@pytest.mark.asyncio
class TestDirectoryTree:
    async def test_tree_structure(self, project_tree, advanced):
        tree = await advanced.directory_tree(str(project_tree["root"]))
        names = [entry["name"] for entry in tree]

        assert names == ["node_modules", "src", "README.md", "data.bin"]
        src = tree[1]
        assert src["type"] == "directory"
        assert [c["name"] for c in src["children"]] == ["pkg", "main.py"]
        assert src["children"][0]["children"] == [{"name": "util.py", "type": "file"}]

    async def test_tree_excludes(self, project_tree, advanced):
        tree = await advanced.directory_tree(
            str(project_tree["root"]), exclude_patterns=["node_modules", "*.bin"]
        )
        assert [entry["name"] for entry in tree] == ["src", "README.md"]

    async def test_tree_json(self, project_tree, advanced):
        output = await advanced.directory_tree_json(str(project_tree["root"]))
        assert json.loads(output)[0]["name"] == "node_modules"

    async def test_tree_outside_roots(self, project_tree, advanced):
        with pytest.raises(AccessDeniedError):
            await advanced.directory_tree(str(project_tree["outside"]))

    async def test_tree_skips_links_leaving_roots(self, project_tree, advanced):
        try:
            os.symlink(project_tree["outside"], project_tree["root"] / "escape")
        except (OSError, AttributeError):
            pytest.skip("Symlinks not supported on this platform")

        tree = await advanced.directory_tree(str(project_tree["root"]))
        assert "escape" not in [entry["name"] for entry in tree]


@pytest.mark.asyncio
class TestSearch:
    async def test_search_files_is_case_insensitive_substring(
        self, project_tree, advanced
    ):
        root = project_tree["root"]
        results = await advanced.search_files(str(root), "MAIN")
        assert results == [str(root / "src" / "main.py")]

    async def test_search_files_matches_directories(self, project_tree, advanced):
        root = project_tree["root"]
        results = await advanced.search_files(str(root), "pk")
        assert results == [str(root / "src" / "pkg")]

    async def test_search_files_excludes(self, project_tree, advanced):
        root = project_tree["root"]
        results = await advanced.search_files(
            str(root), "index", exclude_patterns=["**/node_modules/**"]
        )
        assert results == []

    async def test_search_glob(self, project_tree, advanced):
        root = project_tree["root"]
        results = await advanced.search_glob(str(root), "**/*.py")
        assert results == [
            str(root / "src" / "main.py"),
            str(root / "src" / "pkg" / "util.py"),
        ]

        limited = await advanced.search_glob(str(root), "**/*.py", max_results=1)
        assert len(limited) == 1

        top_level = await advanced.search_glob(str(root), "*.md")
        assert top_level == [str(root / "README.md")]


@pytest.mark.asyncio
class TestCountLines:
    async def test_count_single_file(self, project_tree, advanced):
        root = project_tree["root"]
        output = await advanced.count_lines([str(root / "src" / "main.py")])

        assert f"{root / 'src' / 'main.py'}: 5 lines" in output
        assert output.endswith("Total: 5 lines in 1 files")

    async def test_count_ignoring_empty_lines(self, project_tree, advanced):
        root = project_tree["root"]
        output = await advanced.count_lines(
            [str(root / "src" / "main.py")], ignore_empty_lines=True
        )
        assert "main.py: 3 lines" in output

    async def test_count_with_pattern(self, project_tree, advanced):
        root = project_tree["root"]
        output = await advanced.count_lines(
            [str(root / "src" / "main.py")], pattern=r"^\s*(import|def)"
        )
        assert "main.py: 2 lines" in output

    async def test_count_directory_recursively(self, project_tree, advanced):
        root = project_tree["root"]
        output = await advanced.count_lines(
            [str(root)],
            recursive=True,
            file_patterns=["*.py"],
            exclude_patterns=["node_modules"],
        )
        assert "Total: 7 lines in 2 files" in output

    async def test_count_directory_top_level_only(self, project_tree, advanced):
        root = project_tree["root"]
        output = await advanced.count_lines([str(root)])
        # README.md counted, data.bin skipped as binary
        assert f"{root / 'README.md'}: 3 lines" in output
        assert "Total: 3 lines in 1 files" in output

    async def test_count_reports_errors(self, project_tree, advanced):
        output = await advanced.count_lines(
            [str(project_tree["outside"] / "secret.py")]
        )
        assert "Errors:" in output
        assert "Access denied" in output

    async def test_invalid_pattern(self, project_tree, advanced):
        with pytest.raises(ValueError, match="Invalid regex"):
            await advanced.count_lines([str(project_tree["root"])], pattern="(")


@pytest.mark.asyncio
class TestChecksums:
    async def test_checksum_files(self, project_tree, advanced):
        root = project_tree["root"]
        readme = root / "README.md"
        expected = hashlib.sha256(readme.read_bytes()).hexdigest()

        output = await advanced.checksum_files([str(readme), str(root / "missing")])

        assert "- 1 checksums generated successfully" in output
        assert "- 1 files failed" in output
        assert f"Checksums (sha256):\n{expected}  {readme}" in output

    @pytest.mark.parametrize("algorithm", ["md5", "sha1", "sha512", "SHA256"])
    async def test_checksum_algorithms(self, project_tree, advanced, algorithm):
        readme = project_tree["root"] / "README.md"
        expected = hashlib.new(algorithm.lower(), readme.read_bytes()).hexdigest()

        output = await advanced.checksum_files([str(readme)], algorithm)
        assert f"{expected}  {readme}" in output

    async def test_unsupported_algorithm(self, project_tree, advanced):
        with pytest.raises(ValueError, match="Unsupported algorithm"):
            await advanced.checksum_files(
                [str(project_tree["root"] / "README.md")], "crc32"
            )

    async def test_checksum_directory_fails(self, project_tree, advanced):
        output = await advanced.checksum_files([str(project_tree["root"] / "src")])
        assert "Is a directory" in output

    async def test_checksum_verification(self, project_tree, advanced):
        root = project_tree["root"]
        readme = root / "README.md"
        good = hashlib.md5(readme.read_bytes()).hexdigest()

        output = await advanced.checksum_files_verif(
            [
                {"path": str(readme), "expected": good.upper()},
                {"path": str(root / "src" / "main.py"), "expected": good},
            ],
            "md5",
        )

        lines = output.split("\n")
        assert lines[0] == "Verified 2 files (md5): 1 passed, 1 failed"
        assert lines[2] == f"{readme}: OK"
        assert lines[3].startswith(f"{root / 'src' / 'main.py'}: FAILED - checksum mismatch")
