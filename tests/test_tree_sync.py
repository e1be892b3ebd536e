#!/usr/bin/env python
"""
test_tree_sync.py - Directory overlay tests
============================================

Overlay semantics (create/update, never delete), per-file mtime
preservation, the symlink/special-file policy, pattern filters and
stop-on-first-error behavior with partial reports.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path

from write_on_diff import (
    FileIOError,
    SyncOptions,
    TreeSynchronizer,
    ValidationError,
    WriteOutcome,
    write_dir_if_different,
)

OLD_MTIME = 1_000_000_000


def _write_file(path: Path, data: bytes, old: bool = False) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if old:
        os.utime(path, (OLD_MTIME, OLD_MTIME))
    return path


def _snapshot_tree(root: Path) -> dict:
    snapshot = {}
    for p in sorted(root.rglob("*")):
        if p.is_file() and not p.is_symlink():
            snapshot[p.relative_to(root).as_posix()] = p.read_bytes()
    return snapshot


class TreeTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.src = self.test_dir / "src"
        self.dst = self.test_dir / "dst"
        self.src.mkdir()
        self.dst.mkdir()

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)


class TestOverlay(TreeTestCase):
    """Basic overlay behavior"""

    def test_into_empty_destination(self):
        _write_file(self.src / "a.txt", b"hello")
        report = write_dir_if_different(self.src, self.dst)
        self.assertEqual((self.dst / "a.txt").read_bytes(), b"hello")
        self.assertEqual(report.num_created, 1)
        self.assertEqual(report.bytes_written, 5)

    def test_partial_change_propagation(self):
        a = _write_file(self.dst / "a.txt", b"hello", old=True)
        b = _write_file(self.dst / "b.txt", b"world", old=True)
        _write_file(self.src / "a.txt", b"hello")
        _write_file(self.src / "b.txt", b"rust")
        _write_file(self.src / "sub" / "c.txt", b"subdir file")

        report = write_dir_if_different(self.src, self.dst)

        self.assertEqual(a.stat().st_mtime, OLD_MTIME)
        self.assertEqual(b.read_bytes(), b"rust")
        self.assertGreater(b.stat().st_mtime, OLD_MTIME)
        self.assertEqual((self.dst / "sub" / "c.txt").read_bytes(), b"subdir file")

        outcomes = {r.destination.name: r.outcome for r in report.results}
        self.assertEqual(outcomes, {
            "a.txt": WriteOutcome.UNCHANGED,
            "b.txt": WriteOutcome.UPDATED,
            "c.txt": WriteOutcome.CREATED,
        })
        self.assertEqual(report.unchanged, [self.dst / "a.txt"])
        self.assertEqual(report.written, [self.dst / "b.txt", self.dst / "sub" / "c.txt"])

    def test_results_in_name_order(self):
        for name in ("zeta", "alpha", "mid"):
            _write_file(self.src / name, name.encode())
        report = write_dir_if_different(self.src, self.dst)
        self.assertEqual([r.source.name for r in report.results], ["alpha", "mid", "zeta"])

    def test_stale_destination_entries_kept(self):
        _write_file(self.src / "a.txt", b"hello")
        stale = _write_file(self.dst / "stale.txt", b"extra", old=True)
        _write_file(self.dst / "old_dir" / "x", b"x")

        write_dir_if_different(self.src, self.dst)

        self.assertEqual(stale.read_bytes(), b"extra")
        self.assertEqual(stale.stat().st_mtime, OLD_MTIME)
        self.assertTrue((self.dst / "old_dir" / "x").exists())

    def test_empty_source_leaves_destination_alone(self):
        existing = _write_file(self.dst / "a.txt", b"hello", old=True)
        report = write_dir_if_different(self.src, self.dst)
        self.assertEqual(existing.stat().st_mtime, OLD_MTIME)
        self.assertEqual(report.results, [])

    def test_nonexistent_destination_created(self):
        _write_file(self.src / "a.txt", b"hello")
        target = self.test_dir / "x" / "y" / "z"
        report = write_dir_if_different(self.src, target)
        self.assertTrue(target.is_dir())
        self.assertEqual((target / "a.txt").read_bytes(), b"hello")
        self.assertEqual(report.dirs_created, 3)

    def test_deeply_nested(self):
        _write_file(self.src / "a" / "b" / "c" / "d.txt", b"deep")
        report = write_dir_if_different(self.src, self.dst)
        self.assertEqual((self.dst / "a" / "b" / "c" / "d.txt").read_bytes(), b"deep")
        self.assertEqual(report.dirs_created, 3)

    def test_empty_subdirectory_created(self):
        (self.src / "empty").mkdir()
        write_dir_if_different(self.src, self.dst)
        self.assertTrue((self.dst / "empty").is_dir())

    def test_second_run_writes_nothing(self):
        _write_file(self.src / "a.txt", b"hello")
        _write_file(self.src / "sub" / "b.txt", b"world")
        write_dir_if_different(self.src, self.dst)
        mtimes = {p: p.stat().st_mtime_ns for p in self.dst.rglob("*") if p.is_file()}

        report = write_dir_if_different(self.src, self.dst)

        self.assertEqual(report.written, [])
        self.assertEqual(report.num_unchanged, 2)
        self.assertEqual(report.dirs_created, 0)
        for p, mtime in mtimes.items():
            self.assertEqual(p.stat().st_mtime_ns, mtime)

    def test_result_matches_source(self):
        _write_file(self.src / "a.bin", bytes(range(256)))
        _write_file(self.src / "d" / "e.bin", b"\x00" * 10)
        _write_file(self.dst / "a.bin", b"garbage")
        write_dir_if_different(self.src, self.dst)
        self.assertEqual(_snapshot_tree(self.dst), _snapshot_tree(self.src))

    def test_source_equals_destination(self):
        _write_file(self.src / "a.txt", b"hello", old=True)
        report = write_dir_if_different(self.src, self.src)
        self.assertEqual(report.num_unchanged, 1)
        self.assertEqual((self.src / "a.txt").stat().st_mtime, OLD_MTIME)

    def test_custom_checksum(self):
        _write_file(self.src / "a.txt", b"hello")
        _write_file(self.dst / "a.txt", b"hello", old=True)
        report = write_dir_if_different(self.src, self.dst, checksum="sha256")
        self.assertEqual(report.num_unchanged, 1)

    def test_atomic_mode(self):
        _write_file(self.src / "a.txt", b"new")
        _write_file(self.dst / "a.txt", b"old")
        write_dir_if_different(self.src, self.dst, atomic=True)
        self.assertEqual((self.dst / "a.txt").read_bytes(), b"new")
        self.assertEqual([p.name for p in self.dst.iterdir()], ["a.txt"])

    def test_synchronizer_reusable(self):
        _write_file(self.src / "a.txt", b"hello")
        syncer = TreeSynchronizer(SyncOptions())
        first = syncer.sync(self.src, self.dst)
        second = syncer.sync(self.src, self.dst)
        self.assertEqual(first.num_created, 1)
        self.assertEqual(second.num_created, 0)
        self.assertEqual(second.num_unchanged, 1)


class TestDryRun(TreeTestCase):

    def test_nothing_created(self):
        _write_file(self.src / "sub" / "a.txt", b"hello")
        target = self.test_dir / "new"
        report = write_dir_if_different(self.src, target, dry_run=True)
        self.assertFalse(target.exists())
        self.assertEqual(report.num_created, 1)
        self.assertEqual(report.dirs_created, 2)

    def test_nothing_updated(self):
        _write_file(self.src / "a.txt", b"new")
        existing = _write_file(self.dst / "a.txt", b"old", old=True)
        report = write_dir_if_different(self.src, self.dst, dry_run=True)
        self.assertEqual(report.num_updated, 1)
        self.assertEqual(existing.read_bytes(), b"old")
        self.assertEqual(existing.stat().st_mtime, OLD_MTIME)


class TestPatterns(TreeTestCase):

    def test_exclude_files_and_directories(self):
        _write_file(self.src / "keep.txt", b"k")
        _write_file(self.src / "scratch.tmp", b"t")
        _write_file(self.src / "build" / "out.o", b"o")
        _write_file(self.src / "nested" / "deep.tmp", b"t")

        report = write_dir_if_different(self.src, self.dst, exclude=["*.tmp", "build"])

        self.assertEqual(_snapshot_tree(self.dst), {"keep.txt": b"k"})
        reasons = sorted(r.source.name for r in report.results if r.skip_reason == "excluded")
        self.assertEqual(reasons, ["build", "deep.tmp", "scratch.tmp"])

    def test_include_overrides_exclude(self):
        _write_file(self.src / "a.tmp", b"a")
        _write_file(self.src / "important.tmp", b"i")
        write_dir_if_different(self.src, self.dst, exclude=["*.tmp"], include=["important.tmp"])
        self.assertEqual(_snapshot_tree(self.dst), {"important.tmp": b"i"})

    def test_relative_path_pattern(self):
        _write_file(self.src / "docs" / "a.md", b"a")
        _write_file(self.src / "src" / "a.md", b"a")
        write_dir_if_different(self.src, self.dst, exclude=["docs/*"])
        self.assertEqual(_snapshot_tree(self.dst), {"src/a.md": b"a"})


@unittest.skipIf(os.name == "nt", "symlinks need privileges on Windows")
class TestSymlinks(TreeTestCase):

    def test_skipped_by_default(self):
        _write_file(self.src / "real.txt", b"real")
        os.symlink("real.txt", self.src / "link.txt")

        with self.assertLogs("write-on-diff", level="WARNING") as logs:
            report = write_dir_if_different(self.src, self.dst)

        self.assertFalse(os.path.lexists(self.dst / "link.txt"))
        self.assertEqual((self.dst / "real.txt").read_bytes(), b"real")
        skipped = [r for r in report.results if r.skipped]
        self.assertEqual([(r.source.name, r.skip_reason) for r in skipped], [("link.txt", "symlink")])
        self.assertTrue(any("link.txt" in line for line in logs.output))

    def test_follow_file_link(self):
        _write_file(self.test_dir / "outside.txt", b"outside")
        os.symlink(self.test_dir / "outside.txt", self.src / "link.txt")
        write_dir_if_different(self.src, self.dst, follow_symlinks=True)
        copied = self.dst / "link.txt"
        self.assertFalse(copied.is_symlink())
        self.assertEqual(copied.read_bytes(), b"outside")

    def test_follow_directory_link(self):
        _write_file(self.test_dir / "shared" / "s.txt", b"shared")
        os.symlink(self.test_dir / "shared", self.src / "shared")
        write_dir_if_different(self.src, self.dst, follow_symlinks=True)
        self.assertEqual((self.dst / "shared" / "s.txt").read_bytes(), b"shared")

    def test_loop_skipped(self):
        _write_file(self.src / "sub" / "a.txt", b"a")
        os.symlink("..", self.src / "sub" / "up")
        report = write_dir_if_different(self.src, self.dst, follow_symlinks=True)
        self.assertEqual((self.dst / "sub" / "a.txt").read_bytes(), b"a")
        self.assertFalse(os.path.lexists(self.dst / "sub" / "up"))
        self.assertEqual([r.skip_reason for r in report.results if r.skipped], ["symlink loop"])

    def test_link_to_destination_ancestor_skipped(self):
        # src/up resolves to the directory holding both src and dst
        _write_file(self.src / "a.txt", b"a")
        os.symlink("..", self.src / "up")

        report = write_dir_if_different(self.src, self.dst, follow_symlinks=True)

        self.assertEqual([r.skip_reason for r in report.results if r.skipped], ["symlink loop"])
        self.assertFalse(os.path.lexists(self.dst / "up"))
        self.assertEqual(_snapshot_tree(self.dst), {"a.txt": b"a"})

    def test_link_to_destination_skipped(self):
        _write_file(self.src / "a.txt", b"a")
        os.symlink(self.dst, self.src / "mirror")
        report = write_dir_if_different(self.src, self.dst, follow_symlinks=True)
        self.assertEqual([r.skip_reason for r in report.results if r.skipped], ["symlink loop"])
        self.assertEqual(sorted(p.name for p in self.dst.iterdir()), ["a.txt"])

    def test_link_to_ancestor_of_missing_destination_skipped(self):
        dst = self.test_dir / "out" / "site"
        _write_file(self.src / "a.txt", b"a")
        os.symlink("..", self.src / "up")
        report = write_dir_if_different(self.src, dst, follow_symlinks=True)
        self.assertEqual([r.skip_reason for r in report.results if r.skipped], ["symlink loop"])
        self.assertEqual(_snapshot_tree(dst), {"a.txt": b"a"})

    def test_broken_link_skipped(self):
        os.symlink(self.test_dir / "missing", self.src / "dangling")
        report = write_dir_if_different(self.src, self.dst, follow_symlinks=True)
        self.assertEqual([r.skip_reason for r in report.results], ["broken symlink"])
        self.assertFalse(os.path.lexists(self.dst / "dangling"))


@unittest.skipUnless(hasattr(os, "mkfifo"), "requires os.mkfifo")
class TestSpecialFiles(TreeTestCase):

    def test_fifo_skipped(self):
        os.mkfifo(self.src / "pipe")
        _write_file(self.src / "a.txt", b"a")
        report = write_dir_if_different(self.src, self.dst)
        self.assertFalse(os.path.lexists(self.dst / "pipe"))
        self.assertEqual([r.skip_reason for r in report.results if r.skipped], ["special file"])
        self.assertEqual(report.num_files, 1)


class TestErrors(TreeTestCase):

    def test_missing_source(self):
        target = self.test_dir / "never"
        with self.assertRaises(FileIOError) as cm:
            write_dir_if_different(self.test_dir / "nope", target)
        self.assertIsInstance(cm.exception.os_error, FileNotFoundError)
        self.assertFalse(target.exists())

    def test_source_is_a_file(self):
        f = _write_file(self.test_dir / "file.txt", b"x")
        with self.assertRaises(FileIOError):
            write_dir_if_different(f, self.dst)

    def test_destination_inside_source(self):
        with self.assertRaises(ValidationError):
            write_dir_if_different(self.src, self.src / "backup")
        self.assertFalse((self.src / "backup").exists())

    def test_destination_is_a_file(self):
        _write_file(self.src / "a.txt", b"a")
        target = _write_file(self.test_dir / "target", b"file")
        with self.assertRaises(FileIOError):
            write_dir_if_different(self.src, target)

    def test_stops_at_first_error_with_partial_report(self):
        _write_file(self.src / "a.txt", b"a")
        _write_file(self.src / "b" / "inner.txt", b"inner")
        _write_file(self.src / "c.txt", b"c")
        # A regular file where the source has a directory
        _write_file(self.dst / "b", b"not a directory")

        with self.assertRaises(FileIOError) as cm:
            write_dir_if_different(self.src, self.dst)

        self.assertEqual((self.dst / "a.txt").read_bytes(), b"a")
        self.assertFalse((self.dst / "c.txt").exists())
        partial = cm.exception.partial_report
        self.assertIsNotNone(partial)
        self.assertEqual([r.source.name for r in partial.results], ["a.txt"])

    def test_file_where_destination_has_directory(self):
        _write_file(self.src / "x", b"file")
        (self.dst / "x").mkdir()
        with self.assertRaises(FileIOError):
            write_dir_if_different(self.src, self.dst)
        self.assertTrue((self.dst / "x").is_dir())


if __name__ == "__main__":
    unittest.main()
