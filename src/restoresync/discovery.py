"""
Tree discovery and the sidecar sweep pass.

Discovery walks one or two roots in step and yields a FilePair for every
relative path that is a regular file in either tree. Walking goes through
the FileSystemPort so the same code runs against the in-memory double.
"""

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional, Tuple

from restoresync.fsport import FileSystemPort
from restoresync.logport import LogPort
from restoresync.pathing import (
    MANIFEST_SUFFIX,
    MARKER_SUFFIX,
    RESTORE_DIR_NAME,
    is_guard_file,
    is_restore_dir,
    sidecar_names,
)


@dataclass(frozen=True)
class FilePair:
    """
    One file as seen in both trees.

    Attributes:
        rel_path: path relative to the tree roots (POSIX form)
        path_a: the file in the first tree
        path_b: the file in the second tree, or None for single-tree runs
    """
    rel_path: str
    path_a: Path
    path_b: Optional[Path] = None

    @property
    def name(self) -> str:
        return self.path_a.name


@dataclass
class SweepStats:
    sidecars_removed: int = 0
    dirs_removed: int = 0


def _entries(fs: FileSystemPort, folder: Optional[Path]) -> Dict[str, bool]:
    if folder is None:
        return {}
    st = fs.stat(folder)
    if st is None or not st.is_dir:
        return {}
    return dict(fs.list_dir(folder))


def discover(fs: FileSystemPort, root_a: Path, root_b: Path = None) -> Iterator[FilePair]:
    """Yield file pairs for the union of both trees, in sorted order.

    RestoreInfo directories and guard files are never reported. A name that
    is a file in one tree and a directory in the other is reported as a file
    and walked as a directory.
    """
    root_a = Path(root_a)
    root_b = Path(root_b) if root_b is not None else None
    stack: List[Tuple[PurePosixPath, Optional[Path], Optional[Path]]] = [(PurePosixPath(), root_a, root_b)]
    while stack:
        rel, dir_a, dir_b = stack.pop()
        entries_a = _entries(fs, dir_a)
        entries_b = _entries(fs, dir_b)
        subdirs = []
        for name in sorted(set(entries_a) | set(entries_b)):
            is_dir_a = entries_a.get(name)
            is_dir_b = entries_b.get(name)
            if is_dir_a or is_dir_b:
                if is_restore_dir(name):
                    continue
                subdirs.append(name)
            if is_dir_a is False or is_dir_b is False:
                if is_guard_file(name):
                    continue
                yield FilePair(
                    str(rel / name),
                    root_a.joinpath(*rel.parts, name),
                    root_b.joinpath(*rel.parts, name) if root_b is not None else None,
                )
        for name in reversed(subdirs):
            stack.append((
                rel / name,
                dir_a / name if entries_a.get(name) else None,
                dir_b / name if entries_b.get(name) else None,
            ))


def _orphan_sidecars(fs: FileSystemPort, folder: Path, entries: Dict[str, bool]) -> List[Path]:
    restore_dir = folder / RESTORE_DIR_NAME
    owned = set()
    for name, is_dir in entries.items():
        if not is_dir:
            owned |= sidecar_names(name, MANIFEST_SUFFIX)
            owned |= sidecar_names(name, MARKER_SUFFIX)
    orphans = []
    for name, is_dir in fs.list_dir(restore_dir):
        if is_dir or not name.endswith((MANIFEST_SUFFIX, MARKER_SUFFIX)):
            continue
        if name not in owned:
            orphans.append(restore_dir / name)
    return orphans


def sweep(fs: FileSystemPort, log: LogPort, root: Path, mirror: Path = None,
          delete_missing: bool = False) -> SweepStats:
    """Remove manifests and markers whose data file no longer exists.

    With delete_missing, directories of root that are absent from mirror are
    removed too (one-way sync with deletion, root being the second tree).
    """
    stats = SweepStats()
    stack = [(Path(root), Path(mirror) if mirror is not None else None)]
    while stack:
        folder, mirror_folder = stack.pop()
        entries = _entries(fs, folder)
        mirror_entries = _entries(fs, mirror_folder) if mirror_folder is not None else None
        for name, is_dir in sorted(entries.items()):
            if not is_dir:
                continue
            if is_restore_dir(name):
                for orphan in _orphan_sidecars(fs, folder, entries):
                    fs.delete(orphan)
                    stats.sidecars_removed += 1
                    log.info(1, "Removed orphan ", orphan)
                continue
            if delete_missing and mirror_entries is not None and not mirror_entries.get(name):
                if _holds_guard(fs, folder / name):
                    log.warning(1, "Keeping ", folder / name, ": it holds a guard file")
                else:
                    fs.remove_tree(folder / name)
                    stats.dirs_removed += 1
                    log.info(1, "Removed directory ", folder / name, " (not present in first tree)")
                    continue
            stack.append((folder / name, mirror_folder / name if mirror_folder is not None else None))
    return stats


def _holds_guard(fs: FileSystemPort, folder: Path) -> bool:
    stack = [folder]
    while stack:
        current = stack.pop()
        for name, is_dir in fs.list_dir(current):
            if is_dir:
                stack.append(current / name)
            elif is_guard_file(name):
                return True
    return False
