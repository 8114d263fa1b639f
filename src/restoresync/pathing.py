"""Sidecar path derivation and file-time comparison helpers."""

import hashlib
from pathlib import Path

RESTORE_DIR_NAME = "RestoreInfo"
MANIFEST_SUFFIX = ".chk"
MARKER_SUFFIX = ".chked"

# Paths of this length or longer are shortened.
MAX_PATH_LENGTH = 258

GUARD_FILE_NAMES = frozenset({
    "restoresync-dont-delete.txt",
    "restoresync-don't-delete.txt",
})

# A zero-length file with one of these extensions is almost always the
# remnant of an interrupted copy.
ZERO_LENGTH_SUSPECT_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".cr2", ".raf", ".mov", ".mp3", ".mp4", ".mpeg4", ".aac",
    ".avc", ".mts", ".m2ts", ".heic", ".avi", ".wmv", ".jp2", ".png", ".gif",
    ".tif", ".wma", ".flac", ".doc", ".docx", ".docm", ".xls", ".xlsx",
    ".xlsm", ".ppt", ".pptx", ".pptm", ".pdf",
})

_NS = 1_000_000_000
_COARSE_TOLERANCE_NS = 5 * _NS


def stable_name_hash(name: str) -> int:
    """Process-independent hash of a file name (non-negative)."""
    digest = hashlib.blake2b(name.encode("utf-8", "surrogateescape"), digest_size=4).digest()
    return int.from_bytes(digest, "big") & 0x7FFFFFFF


def sidecar_path(data_path: Path, suffix: str, max_length: int = MAX_PATH_LENGTH) -> Path:
    """
    Path of a sidecar file for data_path inside its RestoreInfo directory.

    If the natural name would be too long, the name degrades to the first
    character plus a hash of the full name, and finally to the first
    character plus the hash modulo 100.
    """
    data_path = Path(data_path)
    folder = data_path.parent / RESTORE_DIR_NAME
    name = data_path.name
    candidate = folder / (name + suffix)
    if len(str(candidate)) < max_length:
        return candidate
    code = stable_name_hash(name)
    candidate = folder / f"{name[:1]}{code}{suffix}"
    if len(str(candidate)) < max_length:
        return candidate
    return folder / f"{name[:1]}{code % 100}{suffix}"


def manifest_path(data_path: Path, max_length: int = MAX_PATH_LENGTH) -> Path:
    return sidecar_path(data_path, MANIFEST_SUFFIX, max_length)


def marker_path(data_path: Path, max_length: int = MAX_PATH_LENGTH) -> Path:
    return sidecar_path(data_path, MARKER_SUFFIX, max_length)


def sidecar_names(data_name: str, suffix: str) -> set:
    """All sidecar names a data file of this name may own in its RestoreInfo dir."""
    code = stable_name_hash(data_name)
    return {
        data_name + suffix,
        f"{data_name[:1]}{code}{suffix}",
        f"{data_name[:1]}{code % 100}{suffix}",
    }


def times_equal(a_ns: int, b_ns: int) -> bool:
    """
    Compare file modification times in nanoseconds.

    When exactly one side has no sub-second part (a coarse file system or an
    archive), the times are equal within 5 seconds. Otherwise they must match
    exactly.
    """
    a_coarse = a_ns % _NS == 0
    b_coarse = b_ns % _NS == 0
    if a_coarse != b_coarse:
        return abs(a_ns - b_ns) < _COARSE_TOLERANCE_NS
    return a_ns == b_ns


def is_guard_file(name: str) -> bool:
    return name.lower() in GUARD_FILE_NAMES


def is_zero_length_suspect(name: str) -> bool:
    return Path(name).suffix.lower() in ZERO_LENGTH_SUSPECT_EXTENSIONS


def is_restore_dir(name: str) -> bool:
    return name.lower() == RESTORE_DIR_NAME.lower()
