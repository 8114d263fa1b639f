"""
Tests for tree discovery and the orphan sidecar sweep.
"""

from pathlib import Path

from conftest import T0
from restoresync.discovery import FilePair, discover, sweep
from restoresync.pathing import sidecar_names


def build_trees(fs):
    fs.add_file("/a/x.txt", b"x", mtime_ns=T0)
    fs.add_file("/a/sub/y.txt", b"y", mtime_ns=T0)
    fs.add_file("/a/RestoreInfo/x.txt.chk", b"manifest", mtime_ns=T0)
    fs.add_file("/a/RestoreSync-Dont-Delete.txt", b"", mtime_ns=T0)
    fs.add_file("/b/only.txt", b"o", mtime_ns=T0)
    fs.add_file("/b/sub/z.txt", b"z", mtime_ns=T0)


class TestDiscover:
    def test_union_of_both_trees_in_order(self, fs):
        build_trees(fs)
        pairs = list(discover(fs, Path("/a"), Path("/b")))
        assert [p.rel_path for p in pairs] == ["only.txt", "x.txt", "sub/y.txt", "sub/z.txt"]
        assert pairs[0] == FilePair("only.txt", Path("/a/only.txt"), Path("/b/only.txt"))

    def test_single_tree_has_no_counterpart(self, fs):
        build_trees(fs)
        pairs = list(discover(fs, Path("/a")))
        assert [p.rel_path for p in pairs] == ["x.txt", "sub/y.txt"]
        assert all(p.path_b is None for p in pairs)

    def test_restore_dirs_and_guards_are_hidden(self, fs):
        build_trees(fs)
        names = {p.name for p in discover(fs, Path("/a"), Path("/b"))}
        assert "x.txt.chk" not in names
        assert "RestoreSync-Dont-Delete.txt" not in names

    def test_missing_second_root(self, fs):
        fs.add_file("/a/x.txt", b"x", mtime_ns=T0)
        pairs = list(discover(fs, Path("/a"), Path("/nowhere")))
        assert [p.rel_path for p in pairs] == ["x.txt"]


class TestSweep:
    def test_orphans_removed_owned_kept(self, fs, log):
        fs.add_file("/a/keep.txt", b"k", mtime_ns=T0)
        degraded = sorted(n for n in sidecar_names("keep.txt", ".chk") if n != "keep.txt.chk")[0]
        for name in ("keep.txt.chk", "keep.txt.chked", degraded, "gone.txt.chk", "gone.txt.chked"):
            fs.add_file(Path("/a/RestoreInfo") / name, b"", mtime_ns=T0)
        fs.add_file("/a/sub/RestoreInfo/old.bin.chk", b"", mtime_ns=T0)
        stats = sweep(fs, log, Path("/a"))
        assert stats.sidecars_removed == 3
        assert fs.exists(Path("/a/RestoreInfo/keep.txt.chk"))
        assert fs.exists(Path("/a/RestoreInfo") / degraded)
        assert not fs.exists(Path("/a/RestoreInfo/gone.txt.chk"))
        assert not fs.exists(Path("/a/sub/RestoreInfo/old.bin.chk"))

    def test_unrelated_files_in_restore_dir_survive(self, fs, log):
        fs.add_file("/a/RestoreInfo/notes.txt", b"", mtime_ns=T0)
        assert sweep(fs, log, Path("/a")).sidecars_removed == 0
        assert fs.exists(Path("/a/RestoreInfo/notes.txt"))

    def test_delete_missing_dirs(self, fs, log):
        fs.add_file("/a/kept/f.txt", b"f", mtime_ns=T0)
        fs.add_file("/b/kept/f.txt", b"f", mtime_ns=T0)
        fs.add_file("/b/extra/deep/f.txt", b"f", mtime_ns=T0)
        fs.add_file("/b/guarded/RestoreSync-Dont-Delete.txt", b"", mtime_ns=T0)
        stats = sweep(fs, log, Path("/b"), mirror=Path("/a"), delete_missing=True)
        assert stats.dirs_removed == 1
        assert not fs.exists(Path("/b/extra"))
        assert fs.exists(Path("/b/kept/f.txt"))
        assert fs.exists(Path("/b/guarded/RestoreSync-Dont-Delete.txt"))
        assert log.contains("guard file", "warning")

    def test_without_delete_dirs_stay(self, fs, log):
        fs.add_file("/a/kept/f.txt", b"f", mtime_ns=T0)
        fs.add_file("/b/extra/f.txt", b"f", mtime_ns=T0)
        stats = sweep(fs, log, Path("/b"), mirror=Path("/a"))
        assert stats.dirs_removed == 0
        assert fs.exists(Path("/b/extra/f.txt"))
