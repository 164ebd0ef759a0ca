from unittest.mock import patch

from omnitrix_agent.errors import NotFound, ValidationError
from omnitrix_agent.tools.write_file_tool import WriteFileTool

from tests.tools.base import WorkspaceTestCase


class WriteFileToolTests(WorkspaceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.tool = WriteFileTool(str(self.root))

    def test_creates_file(self) -> None:
        result = self.run_tool(self.tool, {"file_path": "hello.txt", "content": "a\nb\n"})
        self.assertEqual("Created file: hello.txt\nLines written: 2\n", result)
        self.assertEqual("a\nb\n", (self.root / "hello.txt").read_text())

    def test_creates_missing_parent_directories_by_default(self) -> None:
        self.run_tool(self.tool, {"file_path": "deep/er/x.txt", "content": "x"})
        self.assertTrue((self.root / "deep" / "er" / "x.txt").is_file())

    def test_missing_parent_without_create_dirs(self) -> None:
        with self.assertRaises(NotFound):
            self.run_tool(self.tool, {"file_path": "nope/x.txt", "content": "x", "create_dirs": False})
        self.assertFalse((self.root / "nope").exists())

    def test_modifies_file(self) -> None:
        self.write("notes.md", "one\n")
        result = self.run_tool(self.tool, {"file_path": "notes.md", "content": "one\ntwo\nthree\n"})
        self.assertEqual("Modified file: notes.md\nLines: 1 -> 3 (+2)\n", result)

    def test_line_counts_ignore_form_feeds(self) -> None:
        self.write("page.c", "a\x0cb\n")
        result = self.run_tool(self.tool, {"file_path": "page.c", "content": "a\x0cb\nc\x1cd\n"})
        self.assertEqual("Modified file: page.c\nLines: 1 -> 2 (+1)\n", result)

    def test_identical_content_is_a_no_op(self) -> None:
        self.write("same.txt", "unchanged\n")
        with patch("pathlib.Path.write_bytes") as write_bytes:
            result = self.run_tool(self.tool, {"file_path": "same.txt", "content": "unchanged\n"})
        write_bytes.assert_not_called()
        self.assertIn("No changes made", result)

    def test_directory_target_is_rejected(self) -> None:
        (self.root / "pkg").mkdir()
        with self.assertRaises(ValidationError):
            self.run_tool(self.tool, {"file_path": "pkg", "content": "x"})
