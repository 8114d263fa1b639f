"""
Arbitration between two copies of the same file during cross-repair.

Both copies are read in lock-step. For every block position pick_block()
decides which bytes are correct from what could be read and what the two
manifests vouch for. Positions it cannot decide are handed to the manifests'
parity reconstruction, and the resulting RestoreInfo pairs are settled by
arbitrate().
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from restoresync.block import Block
from restoresync.manifest import ChecksumManifest, RestoreInfo

__all__ = ["Pick", "RestoreInfo", "arbitrate", "pick_block"]


@dataclass
class Pick:
    """
    Outcome of the lock-step comparison for one position.

    Attributes:
        block: the bytes both copies should hold, or None if undecided
        ambiguous: both copies are readable but differ and nothing can tell
            which one is right; both are left as they are
        trusted_physically: chosen because the copies are byte-identical
    """
    block: Optional[Block] = None
    ambiguous: bool = False
    trusted_physically: bool = False


def _has_checksum(manifest: Optional[ChecksumManifest], index: int) -> bool:
    return manifest is not None and manifest.has_checksum(index)


def pick_block(index: int,
               block_a: Optional[Block],
               block_b: Optional[Block],
               manifest_a: Optional[ChecksumManifest],
               manifest_b: Optional[ChecksumManifest],
               prefer_physical: bool = True) -> Pick:
    """
    Decide the correct bytes for one block position.

    block_a/block_b are None when the block could not be read. Rules, in
    order: identical readable copies are trusted (unless prefer_physical is
    off); otherwise a copy that validates against either manifest wins, own
    manifest first; without any checksum for the position a single readable
    copy wins.
    """
    both_readable = block_a is not None and block_b is not None
    if both_readable and prefer_physical and block_a == block_b:
        return Pick(block_a, trusted_physically=True)

    for manifest, own, other in ((manifest_a, block_a, block_b), (manifest_b, block_b, block_a)):
        if manifest is None:
            continue
        for candidate in (own, other):
            if candidate is not None and manifest.validates(candidate, index):
                return Pick(candidate)

    if _has_checksum(manifest_a, index) or _has_checksum(manifest_b, index):
        return Pick()

    if both_readable:
        if block_a == block_b:
            return Pick(block_a, trusted_physically=True)
        return Pick(ambiguous=True)
    if block_a is not None:
        return Pick(block_a, trusted_physically=True)
    if block_b is not None:
        return Pick(block_b, trusted_physically=True)
    return Pick()


def arbitrate(info_a: Optional[RestoreInfo],
              info_b: Optional[RestoreInfo]) -> Tuple[Block, Block, bool]:
    """
    Settle the restore results of both copies for one undecided position.

    A recoverable result wins over a missing or unrecoverable one and is
    applied to both copies. If both recovered, each keeps its own result.
    If neither did, both get a zero block and the position is lost.

    Returns:
        (bytes for copy A, bytes for copy B, lost)
    """
    a_ok = info_a is not None and not info_a.not_recoverable
    b_ok = info_b is not None and not info_b.not_recoverable
    if a_ok and b_ok:
        return info_a.data, info_b.data, False
    if a_ok:
        return info_a.data, info_a.data, False
    if b_ok:
        return info_b.data, info_b.data, False
    return Block(), Block(), True
