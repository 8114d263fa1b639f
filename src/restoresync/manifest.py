"""
Per-file checksum manifest.

A manifest records, for one data file:
- the file length and timestamp it was built from,
- a checksum table with one or two independent generations per block,
- one or two rows of XOR parity blocks used to rebuild isolated bad blocks,
- the repair confidence of the data it describes.

The same instance is used for a collection pass (building it from healthy
data) and for a test/restore pass (start_restore, analyze, end_restore).
"""

import hashlib
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from restoresync.block import BLOCK_SIZE, Block, block_count, block_length
from restoresync.pathing import times_equal

FORMAT_V0 = 0
FORMAT_V1 = 1

FOLD_SIZE = 3
DIGEST_SIZE = 8
_DIGEST_KEY = b"restoresync-gen2"

# Parity rows are sized in 64 KiB steps.
_ROW_STEP = 64 * 1024
_MIN_ROW_BLOCKS = _ROW_STEP // BLOCK_SIZE


def fold_checksum(data) -> bytes:
    """XOR-fold data into 3 bytes (byte i lands in column i % 3)."""
    padded = bytes(data) + b"\0" * (-len(data) % FOLD_SIZE)
    words = len(padded) // FOLD_SIZE
    value = int.from_bytes(padded, "little")
    while words > 1:
        half = words // 2
        shift = half * FOLD_SIZE * 8
        value = (value >> shift) ^ (value & ((1 << shift) - 1))
        words -= half
    return value.to_bytes(FOLD_SIZE, "little")


def strong_digest(data) -> bytes:
    return hashlib.blake2b(bytes(data), digest_size=DIGEST_SIZE, key=_DIGEST_KEY).digest()


def parity_row_sizes(file_length: int) -> Tuple[int, int]:
    """Return the number of parity blocks in the first and second row.

    The first row holds ~0.5% of the file (at least 16 blocks, at most half
    the file's blocks). A second row with a different period is added once
    the file is big enough for ~1% of it to exceed the first row by 64 KiB.
    """
    if file_length == 0:
        return 0, 0
    blocks = block_count(file_length)
    first = (file_length // 200) // _ROW_STEP * _ROW_STEP // BLOCK_SIZE
    if first < _MIN_ROW_BLOCKS:
        first = _MIN_ROW_BLOCKS
    if first > blocks // 2:
        first = max(1, blocks // 2)

    other = (file_length // 100) // _ROW_STEP * _ROW_STEP // BLOCK_SIZE - first
    if other < _MIN_ROW_BLOCKS:
        return first, 0

    if first >= 48:
        second = first + 1
        i = 17
        while i * 2 < first:
            if first % i:
                second = first - i
                break
            i += 2
        return first, second
    for threshold, step in ((24, 9), (12, 5), (6, 3)):
        if first >= threshold and first % step:
            return first, first - step
    return first, first + 1


@dataclass(frozen=True)
class RepairConfidence:
    """How trustworthy the data described by a manifest is.

    Attributes:
        state: "clean", "repaired" or "failed"
        residual_bytes: bytes that were zero-filled by a repair (repaired only)
    """
    state: str = "clean"
    residual_bytes: int = 0

    CODES = {"clean": 0, "repaired": 1, "failed": 2}

    @classmethod
    def clean(cls) -> "RepairConfidence":
        return cls("clean", 0)

    @classmethod
    def repaired(cls, residual_bytes: int) -> "RepairConfidence":
        if residual_bytes <= 0:
            return cls.clean()
        return cls("repaired", residual_bytes)

    @classmethod
    def failed(cls) -> "RepairConfidence":
        return cls("failed", 0)

    @classmethod
    def from_code(cls, code: int, residual_bytes: int) -> "RepairConfidence":
        if code == 1:
            return cls.repaired(residual_bytes)
        if code == 2:
            return cls.failed()
        return cls.clean()

    @property
    def code(self) -> int:
        return self.CODES[self.state]

    @property
    def is_clean(self) -> bool:
        return self.state == "clean"

    def rank(self) -> Tuple[int, int]:
        """Sort key, lower is better."""
        return (self.code, self.residual_bytes)

    def better_than(self, other: "RepairConfidence") -> bool:
        return self.rank() < other.rank()

    def __str__(self):
        if self.state == "repaired":
            return f"repaired ({self.residual_bytes} bytes lost)"
        return self.state


@dataclass
class ChecksumEntry:
    """Checksum generations for one block.

    fold is the legacy 3-byte XOR fold; digest is the keyed BLAKE2b digest.
    Either may be missing (legacy manifests carry only the fold).
    """
    fold: Optional[bytes] = None
    digest: Optional[bytes] = None

    @classmethod
    def of(cls, block: Block) -> "ChecksumEntry":
        return cls(fold_checksum(block.data), strong_digest(block.data))

    @property
    def generations(self) -> int:
        return (self.fold is not None) + (self.digest is not None)

    def merge(self, other: "ChecksumEntry") -> bool:
        changed = False
        if self.fold is None and other.fold is not None:
            self.fold = other.fold
            changed = True
        if self.digest is None and other.digest is not None:
            self.digest = other.digest
            changed = True
        return changed


@dataclass
class RestoreInfo:
    """
    Corrective action for one block, produced by a restore pass.

    Attributes:
        position: byte offset of the block
        data: the restored bytes, or what is left when not recoverable
        not_recoverable: parity could not rebuild the block
        readable: data are the bytes read from the file, which fail their
            checksum; they are kept instead of being replaced with zeros
    """
    position: int
    data: Block
    not_recoverable: bool = False
    readable: bool = False

    @property
    def index(self) -> int:
        return self.position // BLOCK_SIZE


class ChecksumManifest:
    """Checksums and parity for one data file."""

    def __init__(self, file_length: int, file_timestamp: int, *,
                 rows: Optional[List[List[Optional[Block]]]] = None,
                 checksums: Optional[List[ChecksumEntry]] = None,
                 format_version: int = FORMAT_V1,
                 confidence: RepairConfidence = None):
        self.file_length = file_length
        self.file_timestamp = file_timestamp
        self.format_version = format_version
        self.confidence = confidence or RepairConfidence.clean()
        if rows is None:
            rows = [[Block() for _ in range(size)] for size in parity_row_sizes(file_length) if size]
        self.rows = rows
        self.checksums = [] if checksums is None else checksums
        # Set by the decoder when part of the manifest could not be read.
        self.damaged = False
        self._reset_pass()

    @classmethod
    def for_file(cls, file_length: int, file_timestamp: int) -> "ChecksumManifest":
        return cls(file_length, file_timestamp)

    def _reset_pass(self) -> None:
        self._acc: List[List[Optional[Block]]] = [
            [b.copy() if b is not None else None for b in row] for row in self.rows
        ]
        self._good: Set[int] = set()
        self._mismatched: Set[int] = set()
        self._kept: Dict[int, Block] = {}
        self._divergent: Set[int] = set()
        self._foreign: Set[int] = set()
        self._restore_needed = False
        self._upgraded = False

    @property
    def block_count(self) -> int:
        return block_count(self.file_length)

    @property
    def row_sizes(self) -> Tuple[int, ...]:
        return tuple(len(row) for row in self.rows)

    @property
    def upgraded(self) -> bool:
        """True once a pass added missing checksum generations."""
        return self._upgraded

    def is_applicable(self, length: int, timestamp: int, ignore_time: bool = False) -> bool:
        if self.file_length != length:
            return False
        return ignore_time or times_equal(self.file_timestamp, timestamp)

    # -- collection ----------------------------------------------------------

    def collect(self, block: Block, index: int) -> None:
        """Record a healthy block. Blocks must arrive in index order."""
        if index != len(self.checksums):
            raise ValueError(f"collect out of order: got block {index}, expected {len(self.checksums)}")
        self.checksums.append(ChecksumEntry.of(block))
        for row in self.rows:
            row[index % len(row)].xor_in(block)

    # -- test / restore ------------------------------------------------------

    def start_restore(self) -> None:
        self._reset_pass()

    def _entry(self, index: int) -> Optional[ChecksumEntry]:
        if self.checksums is None or index >= len(self.checksums):
            return None
        entry = self.checksums[index]
        return entry if entry.generations else None

    def _matches(self, entry: ChecksumEntry, block: Block) -> Tuple[bool, bool]:
        fold_ok = entry.fold is not None and entry.fold == fold_checksum(block.data)
        digest_ok = entry.digest is not None and entry.digest == strong_digest(block.data)
        return fold_ok, digest_ok

    def has_checksum(self, index: int) -> bool:
        return self._entry(index) is not None

    def validates(self, block: Block, index: int) -> bool:
        """True if a stored generation matches block; no pass state changes."""
        entry = self._entry(index)
        if entry is None:
            return False
        return any(self._matches(entry, block))

    def _accept(self, index: int, block: Block) -> None:
        self._good.add(index)
        for row in self._acc:
            if row and row[index % len(row)] is not None:
                row[index % len(row)].xor_in(block)

    def analyze(self, block: Block, index: int) -> bool:
        """Check one block read during a test or restore pass.

        A match against any stored generation is healthy. A block with no
        stored checksum is accepted and left to verify_integrity. Indices that
        are never analyzed count as unreadable repair candidates.
        """
        if index in self._good:
            return True
        entry = self._entry(index)
        if entry is None:
            self._accept(index, block)
            return True

        fold_ok, digest_ok = self._matches(entry, block)
        if not (fold_ok or digest_ok):
            self._mismatched.add(index)
            self._kept[index] = block.copy()
            return False

        if entry.generations == 2 and fold_ok != digest_ok:
            self._divergent.add(index)
        elif entry.generations == 1:
            # Healthy under the only generation we had: record the other one.
            if entry.digest is None:
                entry.digest = strong_digest(block.data)
            else:
                entry.fold = fold_checksum(block.data)
            self._upgraded = True
        self._accept(index, block)
        return True

    def accept(self, index: int, block: Block) -> None:
        """Take block as correct for index without a checksum match.

        Used when two physically identical copies vouch for each other. Any
        disagreement with the stored checksum invalidates this manifest.
        """
        if index in self._good:
            return
        entry = self._entry(index)
        if entry is not None and not any(self._matches(entry, block)):
            self._foreign.add(index)
        self._accept(index, block)

    def mark_repaired(self, index: int) -> None:
        """Note that the data at index had to be replaced from elsewhere."""
        self._restore_needed = True

    def is_good(self, index: int) -> bool:
        return index in self._good

    def was_mismatched(self, index: int) -> bool:
        """True if a readable block at index failed every stored generation."""
        return index in self._mismatched

    def _rows_consistent(self, pending: Set[int]) -> bool:
        for row in self._acc:
            size = len(row)
            busy = {i % size for i in pending}
            for slot, acc in enumerate(row):
                if slot not in busy and (acc is None or not acc.is_zero()):
                    return False
        return True

    def _candidate_ok(self, index: int, candidate: Block, unchecked_ok: bool) -> bool:
        used = block_length(self.file_length, index)
        if any(candidate.data[used:]):
            return False
        entry = self._entry(index)
        if entry is None:
            return unchecked_ok
        return any(self._matches(entry, candidate))

    def end_restore(self) -> Tuple[int, List[RestoreInfo]]:
        """Finish a restore pass.

        Blocks that were not accepted are rebuilt from parity where exactly
        one of them falls into a parity slot, repeated across both rows until
        nothing more can be rebuilt. Every rebuilt block must validate against
        its stored checksum. The rest are reported as not recoverable: a block
        that was read but failed its checksum keeps the bytes read, an
        unreadable one gets zeros. Both count as non-restored.

        Returns:
            (non_restored_size, restore infos sorted by position)
        """
        pending = set(range(self.block_count)) - self._good
        if pending:
            self._restore_needed = True
        unchecked_ok = self._rows_consistent(pending)
        restored: Dict[int, Block] = {}

        progress = True
        while pending and progress:
            progress = False
            for row in self._acc:
                size = len(row)
                slots = defaultdict(list)
                for index in pending:
                    slots[index % size].append(index)
                for slot, members in slots.items():
                    if len(members) != 1 or row[slot] is None:
                        continue
                    index = members[0]
                    candidate = row[slot].copy()
                    if not self._candidate_ok(index, candidate, unchecked_ok):
                        continue
                    restored[index] = candidate
                    pending.discard(index)
                    self._accept(index, candidate)
                    progress = True

        infos = [RestoreInfo(i * BLOCK_SIZE, block) for i, block in restored.items()]
        non_restored = 0
        for index in pending:
            kept = self._kept.get(index)
            if kept is not None:
                infos.append(RestoreInfo(index * BLOCK_SIZE, kept, not_recoverable=True, readable=True))
            else:
                infos.append(RestoreInfo(index * BLOCK_SIZE, Block(), not_recoverable=True))
            non_restored += block_length(self.file_length, index)
        infos.sort(key=lambda info: info.position)
        return non_restored, infos

    def verify_integrity(self) -> bool:
        """Check the manifest against itself after a full pass.

        Every parity accumulator must have cancelled to zero and the checksum
        table must cover every block. A failure means the manifest, not
        necessarily the data, is corrupt.
        """
        if self.checksums is None or len(self.checksums) < self.block_count:
            return False
        for row in self._acc:
            for acc in row:
                if acc is None or not acc.is_zero():
                    return False
        return True

    def needs_rebuild(self) -> bool:
        if self.damaged or self.checksums is None:
            return True
        if len(self.checksums) < self.block_count:
            return True
        if any(b is None for row in self.rows for b in row):
            return True
        return bool(self._restore_needed or self._divergent or self._foreign)

    # -- merging -------------------------------------------------------------

    def _take_from(self, other: "ChecksumManifest") -> bool:
        changed = False
        if other.checksums:
            if not self.checksums:
                self.checksums = [ChecksumEntry(e.fold, e.digest) for e in other.checksums]
                changed = True
            else:
                for mine, theirs in zip(self.checksums, other.checksums):
                    changed |= mine.merge(theirs)
                for theirs in other.checksums[len(self.checksums):]:
                    self.checksums.append(ChecksumEntry(theirs.fold, theirs.digest))
                    changed = True
        if self.row_sizes == other.row_sizes:
            for row, other_row in zip(self.rows, other.rows):
                for slot, block in enumerate(row):
                    if block is None and other_row[slot] is not None:
                        row[slot] = other_row[slot].copy()
                        changed = True
        return changed

    def improve(self, other: "ChecksumManifest") -> bool:
        """Merge what is readable in either of two manifests into both.

        Both must describe the same content (same length). Returns True if
        either manifest gained something.
        """
        if self.file_length != other.file_length:
            return False
        changed = self._take_from(other)
        changed = other._take_from(self) or changed
        if changed:
            self._reset_pass()
            other._reset_pass()
        return changed

    def __repr__(self):
        return (f"ChecksumManifest(length={self.file_length}, v{self.format_version}, "
                f"rows={self.row_sizes}, checksums={len(self.checksums or [])}, {self.confidence})")
