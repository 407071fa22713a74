#!/usr/bin/env python
"""
test_path_validation.py - Path Validator and archive planning
=============================================================

Classification rules applied to every user supplied path before any data
is read, and the member list produced by walking directories.
"""

import io
import os
import shutil
import tempfile
import unittest
from pathlib import Path

from tarpipe import (
    ArchiveBuilder,
    FileOpenError,
    FileSink,
    InputError,
    NotFound,
    PathKind,
    UnsupportedPath,
    plan_members,
    validate_path,
)


class _InTempDir(unittest.TestCase):
    """Run each test with a fresh temporary directory as the working directory."""

    def setUp(self) -> None:
        self._old_cwd = os.getcwd()
        self.test_dir = tempfile.mkdtemp()
        os.chdir(self.test_dir)

    def tearDown(self) -> None:
        os.chdir(self._old_cwd)
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def _write(self, rel: str, data: bytes = b"data") -> Path:
        path = Path(rel)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path


class TestValidatePath(_InTempDir):

    def test_regular_file(self) -> None:
        self._write("a.txt", b"hello")
        entry = validate_path("a.txt")
        self.assertEqual(entry.kind, PathKind.FILE)
        self.assertEqual(entry.arcname, "a.txt")
        self.assertEqual(entry.size, 5)
        self.assertFalse(entry.is_dir)

    def test_directory(self) -> None:
        os.mkdir("docs")
        entry = validate_path("docs")
        self.assertEqual(entry.kind, PathKind.DIRECTORY)
        self.assertTrue(entry.is_dir)

    def test_arcname_is_normalized(self) -> None:
        self._write("sub/b.txt")
        self.assertEqual(validate_path("./sub//b.txt").arcname, "sub/b.txt")

    def test_absolute_path_rejected(self) -> None:
        self._write("a.txt")
        with self.assertRaises(UnsupportedPath) as ctx:
            validate_path(os.path.join(self.test_dir, "a.txt"))
        self.assertEqual(ctx.exception.reason, "absolute")
        self.assertEqual(ctx.exception.code, 3)

    def test_absolute_checked_before_existence(self) -> None:
        with self.assertRaises(UnsupportedPath) as ctx:
            validate_path("/definitely/not/here")
        self.assertEqual(ctx.exception.reason, "absolute")

    def test_symlink_rejected_without_following(self) -> None:
        self._write("target.txt")
        os.symlink("target.txt", "link.txt")
        with self.assertRaises(UnsupportedPath) as ctx:
            validate_path("link.txt")
        self.assertEqual(ctx.exception.reason, "symlink")

    def test_dangling_symlink_is_symlink_not_missing(self) -> None:
        os.symlink("nowhere", "dangling")
        with self.assertRaises(UnsupportedPath) as ctx:
            validate_path("dangling")
        self.assertEqual(ctx.exception.reason, "symlink")

    def test_directory_symlink_rejected(self) -> None:
        os.mkdir("real")
        os.symlink("real", "alias")
        with self.assertRaises(UnsupportedPath):
            validate_path("alias")

    def test_directory_symlink_with_trailing_separator_rejected(self) -> None:
        self._write("real/x.txt")
        os.symlink("real", "alias")
        for path in ("alias/", "alias//", "alias/."):
            with self.subTest(path=path):
                with self.assertRaises(UnsupportedPath) as ctx:
                    validate_path(path)
                self.assertEqual(ctx.exception.reason, "symlink")
        with self.assertRaises(UnsupportedPath):
            plan_members(["alias/"])

    def test_dangling_symlink_with_trailing_separator_is_symlink(self) -> None:
        os.symlink("nowhere", "dangling")
        with self.assertRaises(UnsupportedPath) as ctx:
            validate_path("dangling/")
        self.assertEqual(ctx.exception.reason, "symlink")

    def test_real_directory_with_trailing_separator(self) -> None:
        self._write("docs/a.txt")
        entry = validate_path("docs/")
        self.assertEqual(entry.kind, PathKind.DIRECTORY)
        self.assertEqual(entry.arcname, "docs")

    def test_missing_path(self) -> None:
        with self.assertRaises(NotFound) as ctx:
            validate_path("missing.txt")
        self.assertEqual(ctx.exception.path, "missing.txt")
        self.assertIn("missing.txt", str(ctx.exception))

    def test_empty_path_is_missing(self) -> None:
        with self.assertRaises(NotFound):
            validate_path("")

    def test_parent_reference_rejected(self) -> None:
        os.mkdir("inner")
        os.chdir("inner")
        with self.assertRaises(UnsupportedPath) as ctx:
            validate_path("..")
        self.assertEqual(ctx.exception.reason, "parent reference")

    @unittest.skipUnless(hasattr(os, "mkfifo"), "requires os.mkfifo")
    def test_fifo_is_special_file(self) -> None:
        os.mkfifo("pipe")
        with self.assertRaises(UnsupportedPath) as ctx:
            validate_path("pipe")
        self.assertEqual(ctx.exception.reason, "special file")

    def test_errors_share_input_category(self) -> None:
        for exc_type in (UnsupportedPath, NotFound, FileOpenError):
            self.assertTrue(issubclass(exc_type, InputError))


class TestPlanMembers(_InTempDir):

    def test_directory_stored_relative_to_itself(self) -> None:
        self._write("docs/a.txt")
        self._write("docs/sub/b.txt")
        members = plan_members(["docs"])
        names = [m.arcname for m in members]
        self.assertEqual(names, ["sub", "a.txt", "sub/b.txt"])
        self.assertEqual(members[0].kind, PathKind.DIRECTORY)
        self.assertTrue(all(not name.startswith("docs") for name in names))

    def test_caller_order_preserved(self) -> None:
        self._write("z.txt")
        self._write("a.txt")
        self._write("m/inner.txt")
        names = [m.arcname for m in plan_members(["z.txt", "m", "a.txt"])]
        self.assertEqual(names, ["z.txt", "inner.txt", "a.txt"])

    def test_deep_nesting(self) -> None:
        self._write("top/l1/l2/l3/deep.txt")
        names = [m.arcname for m in plan_members(["top"])]
        self.assertIn("l1/l2/l3/deep.txt", names)
        self.assertLess(names.index("l1/l2"), names.index("l1/l2/l3/deep.txt"))

    def test_symlink_inside_directory_rejected(self) -> None:
        self._write("docs/a.txt")
        os.symlink("a.txt", "docs/link.txt")
        with self.assertRaises(UnsupportedPath) as ctx:
            plan_members(["docs"])
        self.assertEqual(ctx.exception.reason, "symlink")
        self.assertTrue(ctx.exception.path.endswith("link.txt"))

    def test_directory_symlink_inside_directory_rejected(self) -> None:
        self._write("elsewhere/x.txt")
        os.mkdir("docs")
        os.symlink(os.path.join(self.test_dir, "elsewhere"), "docs/alias")
        with self.assertRaises(UnsupportedPath):
            plan_members(["docs"])

    @unittest.skipUnless(hasattr(os, "mkfifo"), "requires os.mkfifo")
    def test_fifo_inside_directory_rejected(self) -> None:
        self._write("d/a.txt")
        os.mkfifo("d/p")
        with self.assertRaises(UnsupportedPath) as ctx:
            plan_members(["d"])
        self.assertEqual(ctx.exception.reason, "special file")
        self.assertTrue(ctx.exception.path.endswith("p"))

        buf = io.BytesIO()
        with self.assertRaises(UnsupportedPath):
            ArchiveBuilder(FileSink(buf)).build(["d"])
        self.assertEqual(buf.getvalue(), b"")

    def test_first_failure_in_input_order_wins(self) -> None:
        self._write("ok.txt")
        with self.assertRaises(NotFound):
            plan_members(["ok.txt", "missing.txt", "/abs.txt"])

    def test_planning_logs_validated_mode_and_size(self) -> None:
        self._write("a.txt", b"x" * 10).chmod(0o640)
        os.mkdir("docs")
        os.chmod("docs", 0o750)
        with self.assertLogs("tarpipe", level="DEBUG") as logs:
            plan_members(["a.txt", "docs"])
        output = "\n".join(logs.output)
        self.assertIn("a.txt: file (mode 640), 10", output)
        self.assertIn("docs: directory (mode 750), 0 entries", output)

    def test_empty_directory_yields_no_members(self) -> None:
        os.mkdir("empty")
        self.assertEqual(plan_members(["empty"]), [])


if __name__ == "__main__":
    unittest.main()
