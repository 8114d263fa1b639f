"""File-system capability used by the integrity and reconciliation code."""

import os
import shutil
import stat as stat_module
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class FileStat:
    """Metadata for one directory entry."""
    length: int
    mtime_ns: int
    is_dir: bool = False
    read_only: bool = False


class FileSystemPort:
    """
    Synchronous file operations.

    Every failure surfaces as OSError. Streams returned by the open_* methods
    are binary file objects supporting read/readinto, write, seek, tell and
    use as a context manager.
    """

    def stat(self, path: Path) -> Optional[FileStat]:
        """Return metadata, or None if nothing exists at path."""
        raise NotImplementedError

    def open_read(self, path: Path, buffered: bool = True):
        raise NotImplementedError

    def open_write(self, path: Path):
        """Open an existing file for in-place writes."""
        raise NotImplementedError

    def open_create(self, path: Path):
        """Create or truncate a file for writing."""
        raise NotImplementedError

    def list_dir(self, path: Path) -> List[Tuple[str, bool]]:
        """Return (name, is_dir) pairs for the entries of a directory."""
        raise NotImplementedError

    def set_mtime(self, path: Path, mtime_ns: int) -> None:
        raise NotImplementedError

    def set_hidden(self, path: Path) -> None:
        raise NotImplementedError

    def make_dirs(self, path: Path) -> None:
        raise NotImplementedError

    def move(self, src: Path, dst: Path) -> None:
        """Rename src to dst, replacing dst if it exists."""
        raise NotImplementedError

    def delete(self, path: Path) -> None:
        raise NotImplementedError

    def remove_tree(self, path: Path) -> None:
        raise NotImplementedError

    def copy(self, src: Path, dst: Path) -> None:
        """Copy file content and modification time."""
        raise NotImplementedError

    def exists(self, path: Path) -> bool:
        return self.stat(path) is not None

    def touch(self, path: Path) -> None:
        """Create path if missing, then set its time to now."""
        raise NotImplementedError


class LocalFileSystem(FileSystemPort):
    """FileSystemPort backed by the operating system."""

    def stat(self, path: Path) -> Optional[FileStat]:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        except NotADirectoryError:
            return None
        is_dir = stat_module.S_ISDIR(st.st_mode)
        return FileStat(
            length=0 if is_dir else st.st_size,
            mtime_ns=st.st_mtime_ns,
            is_dir=is_dir,
            read_only=not os.access(path, os.W_OK),
        )

    def open_read(self, path: Path, buffered: bool = True):
        if buffered:
            return open(path, "rb")
        return open(path, "rb", buffering=0)

    def open_write(self, path: Path):
        return open(path, "r+b")

    def open_create(self, path: Path):
        return open(path, "wb")

    def list_dir(self, path: Path) -> List[Tuple[str, bool]]:
        with os.scandir(path) as entries:
            return [(entry.name, entry.is_dir(follow_symlinks=False)) for entry in entries]

    def set_mtime(self, path: Path, mtime_ns: int) -> None:
        atime_ns = os.stat(path).st_atime_ns
        os.utime(path, ns=(atime_ns, mtime_ns))

    def set_hidden(self, path: Path) -> None:
        # Only BSD/macOS have a hidden flag; elsewhere this is a no-op.
        hidden = getattr(stat_module, "UF_HIDDEN", None)
        if hidden is None or not hasattr(os, "chflags"):
            return
        os.chflags(path, os.stat(path).st_flags | hidden)

    def make_dirs(self, path: Path) -> None:
        os.makedirs(path, exist_ok=True)

    def move(self, src: Path, dst: Path) -> None:
        os.replace(src, dst)

    def delete(self, path: Path) -> None:
        os.remove(path)

    def remove_tree(self, path: Path) -> None:
        shutil.rmtree(path)

    def copy(self, src: Path, dst: Path) -> None:
        shutil.copyfile(src, dst)
        st = os.stat(src)
        os.utime(dst, ns=(st.st_atime_ns, st.st_mtime_ns))

    def touch(self, path: Path) -> None:
        Path(path).touch()
