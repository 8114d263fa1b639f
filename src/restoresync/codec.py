"""
Binary encoding of checksum manifests.

v1 layout (big-endian):
    magic "RSCHK", version byte
    header: file_length u64, timestamp_ns i64, confidence u8, residual u64,
            checksum_count u64, row1 u32, row2 u32
    header digest (16 bytes)
    parity blocks, row 1 then row 2
    checksum table: per block flags u8, fold (3 bytes), digest (8 bytes)
    table digest (16 bytes)
    trailer: header, header digest, magic, version

v0 (legacy) layout:
    magic "RSCHK", version 0
    header: file_length u64, timestamp_ns i64, checksum_count u64, row u32
    header digest, one parity row, 3-byte fold per block, table digest

Decoding comes in two flavours. Strict decoding lets any OSError escape so
the caller can retry. Tolerant decoding absorbs read faults section by
section: a lost parity block becomes an empty slot, a lost or corrupt
checksum table becomes None, a lost leading header falls back to the
trailer. Only an unrecoverable header raises ManifestUnreadable.
"""

import hashlib
import io
import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple

from restoresync.block import BLOCK_SIZE, Block
from restoresync.errors import ManifestUnreadable
from restoresync.manifest import (
    DIGEST_SIZE,
    FOLD_SIZE,
    FORMAT_V0,
    FORMAT_V1,
    ChecksumEntry,
    ChecksumManifest,
    RepairConfidence,
)

MAGIC = b"RSCHK"
_PREFIX_SIZE = len(MAGIC) + 1
_SUM_SIZE = 16

_V1_HEADER = struct.Struct(">QqBQQII")
_V0_HEADER = struct.Struct(">QqQI")
_V1_ENTRY_SIZE = 1 + FOLD_SIZE + DIGEST_SIZE
_V1_TRAILER_SIZE = _V1_HEADER.size + _SUM_SIZE + _PREFIX_SIZE

_HAS_FOLD = 0x01
_HAS_DIGEST = 0x02


@dataclass
class ManifestHeader:
    """Metadata decoded from a manifest header."""
    format_version: int
    file_length: int
    file_timestamp: int
    confidence: RepairConfidence
    checksum_count: int
    row_sizes: Tuple[int, ...]


def _sum(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=_SUM_SIZE).digest()


def _prefix(version: int) -> bytes:
    return MAGIC + bytes([version])


def _v1_header_bytes(manifest: ChecksumManifest) -> bytes:
    sizes = list(manifest.row_sizes) + [0, 0]
    header = _V1_HEADER.pack(
        manifest.file_length,
        manifest.file_timestamp,
        manifest.confidence.code,
        manifest.confidence.residual_bytes,
        len(manifest.checksums or []),
        sizes[0],
        sizes[1],
    )
    return header + _sum(_prefix(FORMAT_V1) + header)


def _parity_bytes(rows) -> bytes:
    out = bytearray()
    for row in rows:
        for block in row:
            if block is None:
                raise ValueError("cannot encode a manifest with unreadable parity blocks")
            out += block.data
    return bytes(out)


def encode(manifest: ChecksumManifest) -> bytes:
    """Encode as v1."""
    if len(manifest.rows) > 2:
        raise ValueError("at most two parity rows are supported")
    header = _v1_header_bytes(manifest)
    table = bytearray()
    for entry in manifest.checksums or []:
        flags = (_HAS_FOLD if entry.fold is not None else 0) | (_HAS_DIGEST if entry.digest is not None else 0)
        table.append(flags)
        table += entry.fold if entry.fold is not None else bytes(FOLD_SIZE)
        table += entry.digest if entry.digest is not None else bytes(DIGEST_SIZE)
    table = bytes(table)
    return b"".join([
        _prefix(FORMAT_V1),
        header,
        _parity_bytes(manifest.rows),
        table,
        _sum(table),
        header,
        _prefix(FORMAT_V1),
    ])


def encode_v0(manifest: ChecksumManifest) -> bytes:
    """Encode in the legacy single-generation format (first parity row only)."""
    rows = manifest.rows[:1]
    row_size = len(rows[0]) if rows else 0
    entries = manifest.checksums or []
    header = _V0_HEADER.pack(manifest.file_length, manifest.file_timestamp, len(entries), row_size)
    table = b"".join(e.fold if e.fold is not None else bytes(FOLD_SIZE) for e in entries)
    return b"".join([
        _prefix(FORMAT_V0),
        header,
        _sum(_prefix(FORMAT_V0) + header),
        _parity_bytes(rows),
        table,
        _sum(table),
    ])


def _read_exact(stream, size: int) -> Optional[bytes]:
    data = stream.read(size)
    if data is None or len(data) != size:
        return None
    return data


def _parse_v1_header(raw: Optional[bytes]) -> Optional[ManifestHeader]:
    if raw is None:
        return None
    header, digest = raw[:_V1_HEADER.size], raw[_V1_HEADER.size:]
    if _sum(_prefix(FORMAT_V1) + header) != digest:
        return None
    length, stamp, code, residual, count, row1, row2 = _V1_HEADER.unpack(header)
    if code not in (0, 1, 2):
        return None
    return ManifestHeader(
        format_version=FORMAT_V1,
        file_length=length,
        file_timestamp=stamp,
        confidence=RepairConfidence.from_code(code, residual),
        checksum_count=count,
        row_sizes=tuple(size for size in (row1, row2) if size),
    )


def _parse_v0_header(raw: Optional[bytes]) -> Optional[ManifestHeader]:
    if raw is None:
        return None
    header, digest = raw[:_V0_HEADER.size], raw[_V0_HEADER.size:]
    if _sum(_prefix(FORMAT_V0) + header) != digest:
        return None
    length, stamp, count, row = _V0_HEADER.unpack(header)
    return ManifestHeader(
        format_version=FORMAT_V0,
        file_length=length,
        file_timestamp=stamp,
        confidence=RepairConfidence.clean(),
        checksum_count=count,
        row_sizes=(row,) if row else (),
    )


class _Reader:
    """Section reader that either absorbs or re-raises OSError."""

    def __init__(self, stream, tolerant: bool):
        self.stream = stream
        self.tolerant = tolerant
        self.faults = 0

    def read_at(self, offset: int, size: int, whence: int = io.SEEK_SET) -> Optional[bytes]:
        try:
            self.stream.seek(offset, whence)
            return _read_exact(self.stream, size)
        except OSError:
            if not self.tolerant:
                raise
            self.faults += 1
            return None


def _locate_header(reader: _Reader) -> Tuple[ManifestHeader, bool]:
    """Return (header, recovered_from_trailer)."""
    prefix = reader.read_at(0, _PREFIX_SIZE)
    if prefix is not None and prefix[:len(MAGIC)] == MAGIC:
        version = prefix[-1]
        if version == FORMAT_V0:
            header = _parse_v0_header(reader.read_at(_PREFIX_SIZE, _V0_HEADER.size + _SUM_SIZE))
            if header is None:
                raise ManifestUnreadable("legacy manifest header is corrupt")
            return header, False
        if version == FORMAT_V1:
            header = _parse_v1_header(reader.read_at(_PREFIX_SIZE, _V1_HEADER.size + _SUM_SIZE))
            if header is not None:
                return header, False
        elif version > FORMAT_V1:
            raise ManifestUnreadable(f"unsupported manifest version {version}")

    trailer = reader.read_at(-_V1_TRAILER_SIZE, _V1_TRAILER_SIZE, io.SEEK_END)
    if trailer is None or trailer[-_PREFIX_SIZE:] != _prefix(FORMAT_V1):
        raise ManifestUnreadable("manifest header and trailer are unreadable")
    header = _parse_v1_header(trailer[:-_PREFIX_SIZE])
    if header is None:
        raise ManifestUnreadable("manifest header and trailer are corrupt")
    return header, True


def read_header(stream) -> ManifestHeader:
    """Decode only the metadata of a manifest (strict)."""
    header, _ = _locate_header(_Reader(stream, tolerant=False))
    return header


def _decode_v1_table(raw: bytes) -> List[ChecksumEntry]:
    entries = []
    for pos in range(0, len(raw), _V1_ENTRY_SIZE):
        flags = raw[pos]
        fold = raw[pos + 1:pos + 1 + FOLD_SIZE]
        digest = raw[pos + 1 + FOLD_SIZE:pos + _V1_ENTRY_SIZE]
        entries.append(ChecksumEntry(
            fold if flags & _HAS_FOLD else None,
            digest if flags & _HAS_DIGEST else None,
        ))
    return entries


def decode(stream, tolerant: bool = False) -> ChecksumManifest:
    """Decode a manifest from a seekable binary stream."""
    reader = _Reader(stream, tolerant)
    header, from_trailer = _locate_header(reader)

    if header.format_version == FORMAT_V0:
        offset = _PREFIX_SIZE + _V0_HEADER.size + _SUM_SIZE
        entry_size = FOLD_SIZE
    else:
        offset = _PREFIX_SIZE + _V1_HEADER.size + _SUM_SIZE
        entry_size = _V1_ENTRY_SIZE

    rows: List[List[Optional[Block]]] = []
    lost_parity = False
    for size in header.row_sizes:
        row = []
        for _ in range(size):
            raw = reader.read_at(offset, BLOCK_SIZE)
            if raw is None:
                lost_parity = True
                row.append(None)
            else:
                row.append(Block(raw))
            offset += BLOCK_SIZE
        rows.append(row)

    checksums: Optional[List[ChecksumEntry]] = None
    table_size = header.checksum_count * entry_size
    table = reader.read_at(offset, table_size)
    digest = reader.read_at(offset + table_size, _SUM_SIZE)
    if table is not None and digest is not None and _sum(table) == digest:
        if header.format_version == FORMAT_V0:
            checksums = [ChecksumEntry(table[i:i + FOLD_SIZE], None)
                         for i in range(0, len(table), FOLD_SIZE)]
        else:
            checksums = _decode_v1_table(table)

    manifest = ChecksumManifest(
        header.file_length,
        header.file_timestamp,
        rows=rows,
        format_version=header.format_version,
        confidence=header.confidence,
    )
    manifest.checksums = checksums
    manifest.damaged = from_trailer or lost_parity
    return manifest
