"""
In-memory FileSystemPort with deterministic fault injection.

Used by the test-suite to simulate bad sectors: a read that covers an
injected byte offset raises OSError (EIO). Buffered handles read ahead in
64 KiB windows, so a single fault fails every buffered read near it, while an
unbuffered handle only fails the read that touches the offset. Writing over
a faulty offset clears the fault, the way a drive remaps a sector on write.
"""

import errno
import io
import time
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from restoresync.fsport import FileStat, FileSystemPort

BUFFER_WINDOW = 64 * 1024


class _Entry:
    __slots__ = ("data", "mtime_ns", "hidden", "read_only")

    def __init__(self, data: bytes, mtime_ns: int, read_only: bool = False):
        self.data = bytearray(data)
        self.mtime_ns = mtime_ns
        self.hidden = False
        self.read_only = read_only


class MemoryStream:
    """Seekable binary handle onto a MemoryFileSystem entry."""

    def __init__(self, fs: "MemoryFileSystem", path: Path, entry: _Entry,
                 readable: bool, writable: bool, window: int = 0):
        self._fs = fs
        self._path = path
        self._entry = entry
        self._readable = readable
        self._writable = writable
        self._window = window
        self._pos = 0
        self.closed = False

    def _check_open(self):
        if self.closed:
            raise ValueError("I/O operation on closed stream")

    def read(self, size: int = -1) -> bytes:
        self._check_open()
        if not self._readable:
            raise io.UnsupportedOperation("not readable")
        data = self._entry.data
        if size is None or size < 0:
            size = len(data) - self._pos
        end = min(len(data), self._pos + size)
        window_end = min(len(data), self._pos + max(size, self._window))
        self._fs._raise_read_fault(self._path, self._pos, window_end)
        chunk = bytes(data[self._pos:end])
        self._pos = max(self._pos, end)
        return chunk

    def readinto(self, buffer) -> int:
        view = memoryview(buffer).cast("B")
        chunk = self.read(len(view))
        view[:len(chunk)] = chunk
        return len(chunk)

    def write(self, payload) -> int:
        self._check_open()
        if not self._writable:
            raise io.UnsupportedOperation("not writable")
        payload = bytes(payload)
        end = self._pos + len(payload)
        self._fs._raise_write_fault(self._path, self._pos, end)
        data = self._entry.data
        if self._pos > len(data):
            data.extend(bytes(self._pos - len(data)))
        data[self._pos:end] = payload
        self._fs._clear_read_faults(self._path, self._pos, end)
        self._fs.write_counts[self._path] += 1
        self._entry.mtime_ns = self._fs.clock()
        self._pos = end
        return len(payload)

    def truncate(self, size: Optional[int] = None) -> int:
        self._check_open()
        if size is None:
            size = self._pos
        data = self._entry.data
        if size < len(data):
            del data[size:]
        else:
            data.extend(bytes(size - len(data)))
        return size

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._check_open()
        if whence == io.SEEK_SET:
            pos = offset
        elif whence == io.SEEK_CUR:
            pos = self._pos + offset
        elif whence == io.SEEK_END:
            pos = len(self._entry.data) + offset
        else:
            raise ValueError(f"invalid whence {whence}")
        if pos < 0:
            raise OSError(errno.EINVAL, "negative seek position", str(self._path))
        self._pos = pos
        return pos

    def tell(self) -> int:
        return self._pos

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class MemoryFileSystem(FileSystemPort):
    """Dictionary-backed file system for tests."""

    def __init__(self, clock=None):
        self.clock = clock or time.time_ns
        self._files: Dict[Path, _Entry] = {}
        self._dirs: Set[Path] = {Path("/")}
        self._read_faults: Dict[Path, Set[int]] = {}
        self._write_faults: Dict[Path, Set[int]] = {}
        self.write_counts: Counter = Counter()

    # -- fixture helpers -----------------------------------------------------

    def add_file(self, path, data: bytes, mtime_ns: int = None, read_only: bool = False) -> Path:
        path = Path(path)
        self.make_dirs(path.parent)
        self._files[path] = _Entry(data, self.clock() if mtime_ns is None else mtime_ns, read_only)
        return path

    def read_bytes(self, path) -> bytes:
        return bytes(self._entry(Path(path)).data)

    def inject_read_fault(self, path, offset: int) -> None:
        self._read_faults.setdefault(Path(path), set()).add(offset)

    def inject_write_fault(self, path, offset: int) -> None:
        self._write_faults.setdefault(Path(path), set()).add(offset)

    def read_faults(self, path) -> Set[int]:
        return set(self._read_faults.get(Path(path), ()))

    def files(self) -> List[Path]:
        return sorted(self._files)

    # -- fault plumbing ------------------------------------------------------

    def _raise_read_fault(self, path: Path, start: int, end: int) -> None:
        for offset in self._read_faults.get(path, ()):
            if start <= offset < end:
                raise OSError(errno.EIO, f"simulated read error at offset {offset}", str(path))

    def _raise_write_fault(self, path: Path, start: int, end: int) -> None:
        for offset in self._write_faults.get(path, ()):
            if start <= offset < end:
                raise OSError(errno.EIO, f"simulated write error at offset {offset}", str(path))

    def _clear_read_faults(self, path: Path, start: int, end: int) -> None:
        faults = self._read_faults.get(path)
        if faults:
            faults.difference_update({o for o in faults if start <= o < end})

    def _entry(self, path: Path) -> _Entry:
        try:
            return self._files[path]
        except KeyError:
            raise FileNotFoundError(errno.ENOENT, "no such file", str(path)) from None

    def _require_dir(self, path: Path) -> None:
        if path not in self._dirs:
            raise FileNotFoundError(errno.ENOENT, "no such directory", str(path))

    # -- FileSystemPort ------------------------------------------------------

    def stat(self, path) -> Optional[FileStat]:
        path = Path(path)
        if path in self._dirs:
            return FileStat(length=0, mtime_ns=0, is_dir=True)
        entry = self._files.get(path)
        if entry is None:
            return None
        return FileStat(length=len(entry.data), mtime_ns=entry.mtime_ns, read_only=entry.read_only)

    def open_read(self, path, buffered: bool = True) -> MemoryStream:
        path = Path(path)
        window = BUFFER_WINDOW if buffered else 0
        return MemoryStream(self, path, self._entry(path), readable=True, writable=False, window=window)

    def open_write(self, path) -> MemoryStream:
        path = Path(path)
        entry = self._entry(path)
        if entry.read_only:
            raise PermissionError(errno.EACCES, "read-only file", str(path))
        return MemoryStream(self, path, entry, readable=True, writable=True)

    def open_create(self, path) -> MemoryStream:
        path = Path(path)
        self._require_dir(path.parent)
        existing = self._files.get(path)
        if existing is not None and existing.read_only:
            raise PermissionError(errno.EACCES, "read-only file", str(path))
        entry = _Entry(b"", self.clock())
        self._files[path] = entry
        self._read_faults.pop(path, None)
        return MemoryStream(self, path, entry, readable=True, writable=True)

    def list_dir(self, path) -> List[Tuple[str, bool]]:
        path = Path(path)
        self._require_dir(path)
        entries = [(p.name, True) for p in self._dirs if p.parent == path and p != path]
        entries += [(p.name, False) for p in self._files if p.parent == path]
        return sorted(entries)

    def set_mtime(self, path, mtime_ns: int) -> None:
        self._entry(Path(path)).mtime_ns = mtime_ns

    def set_hidden(self, path) -> None:
        path = Path(path)
        if path in self._dirs:
            return
        self._entry(path).hidden = True

    def make_dirs(self, path) -> None:
        path = Path(path)
        while path not in self._dirs:
            if path in self._files:
                raise FileExistsError(errno.EEXIST, "file in the way", str(path))
            self._dirs.add(path)
            path = path.parent

    def move(self, src, dst) -> None:
        src, dst = Path(src), Path(dst)
        entry = self._entry(src)
        self._require_dir(dst.parent)
        self._files[dst] = entry
        del self._files[src]
        faults = self._read_faults.pop(src, None)
        self._read_faults.pop(dst, None)
        if faults:
            self._read_faults[dst] = faults

    def delete(self, path) -> None:
        path = Path(path)
        self._entry(path)
        del self._files[path]
        self._read_faults.pop(path, None)

    def remove_tree(self, path) -> None:
        path = Path(path)
        self._require_dir(path)
        for file_path in [p for p in self._files if path in p.parents]:
            self.delete(file_path)
        self._dirs = {d for d in self._dirs if d != path and path not in d.parents}

    def copy(self, src, dst) -> None:
        src, dst = Path(src), Path(dst)
        entry = self._entry(src)
        self._raise_read_fault(src, 0, len(entry.data))
        self._require_dir(dst.parent)
        self._files[dst] = _Entry(bytes(entry.data), entry.mtime_ns)
        self._read_faults.pop(dst, None)
        self.write_counts[dst] += 1

    def touch(self, path) -> None:
        path = Path(path)
        if path not in self._files:
            self._require_dir(path.parent)
            self._files[path] = _Entry(b"", self.clock())
        else:
            self._files[path].mtime_ns = self.clock()
