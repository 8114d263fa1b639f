"""
Tests for ChecksumManifest collection, restore passes and merging.
"""

import pytest

from conftest import T0, pattern
from restoresync.block import BLOCK_SIZE, Block
from restoresync.manifest import (
    ChecksumEntry,
    ChecksumManifest,
    RepairConfidence,
    fold_checksum,
    parity_row_sizes,
)


def blocks_of(data: bytes):
    return [Block(data[i:i + BLOCK_SIZE]) for i in range(0, len(data), BLOCK_SIZE)]


def build(data: bytes) -> ChecksumManifest:
    manifest = ChecksumManifest.for_file(len(data), T0)
    for index, block in enumerate(blocks_of(data)):
        manifest.collect(block, index)
    return manifest


def run_pass(manifest, blocks, skip=(), replace=None):
    """Analyze blocks, leaving indices in skip unread; return end_restore()."""
    replace = replace or {}
    manifest.start_restore()
    for index, block in enumerate(blocks):
        if index in skip:
            continue
        manifest.analyze(replace.get(index, block), index)
    return manifest.end_restore()


class TestParityRows:
    def test_small_file_single_row(self):
        first, second = parity_row_sizes(10 * BLOCK_SIZE)
        assert first == 5
        assert second == 0

    def test_empty_file_has_no_rows(self):
        assert parity_row_sizes(0) == (0, 0)
        assert ChecksumManifest.for_file(0, T0).rows == []

    def test_large_file_gets_second_row_with_other_period(self):
        first, second = parity_row_sizes(64 * 1024 * 1024)
        assert first >= 16
        assert second >= 16
        assert first != second

    def test_minimum_row_size(self):
        first, _ = parity_row_sizes(1024 * 1024)
        assert first == 16


class TestCollectAndTest:
    def test_round_trip_is_healthy(self):
        data = pattern(10, tail=100)
        manifest = build(data)
        non_restored, infos = run_pass(manifest, blocks_of(data))
        assert non_restored == 0
        assert infos == []
        assert manifest.verify_integrity()
        assert not manifest.needs_rebuild()

    def test_collect_out_of_order_rejected(self):
        manifest = ChecksumManifest.for_file(3 * BLOCK_SIZE, T0)
        with pytest.raises(ValueError):
            manifest.collect(Block(), 1)

    def test_is_applicable(self):
        manifest = ChecksumManifest.for_file(100, T0)
        assert manifest.is_applicable(100, T0)
        assert not manifest.is_applicable(101, T0)
        assert not manifest.is_applicable(100, T0 + 1)
        assert manifest.is_applicable(100, T0 + 1, ignore_time=True)


class TestRestore:
    def test_unreadable_block_restored_from_parity(self):
        data = pattern(10)
        blocks = blocks_of(data)
        manifest = build(data)
        non_restored, infos = run_pass(manifest, blocks, skip={3})
        assert non_restored == 0
        assert [info.position for info in infos] == [3 * BLOCK_SIZE]
        assert infos[0].data == blocks[3]
        assert not infos[0].not_recoverable
        assert manifest.needs_rebuild()

    def test_corrupt_block_restored(self):
        data = pattern(10, seed=1)
        blocks = blocks_of(data)
        manifest = build(data)
        bad = blocks[2].copy()
        bad.data[17] ^= 0x40
        non_restored, infos = run_pass(manifest, blocks, replace={2: bad})
        assert non_restored == 0
        assert infos[0].data == blocks[2]
        assert manifest.was_mismatched(2)

    def test_partial_last_block_restored(self):
        data = pattern(6, seed=2, tail=999)
        blocks = blocks_of(data)
        manifest = build(data)
        last = len(blocks) - 1
        non_restored, infos = run_pass(manifest, blocks, skip={last})
        assert non_restored == 0
        assert infos[0].data == blocks[last]

    def test_two_blocks_in_same_slot_are_lost(self):
        data = pattern(10, seed=3)
        manifest = build(data)
        # 10 blocks, 5 parity slots: blocks 1 and 6 share slot 1.
        non_restored, infos = run_pass(manifest, blocks_of(data), skip={1, 6})
        assert non_restored == 2 * BLOCK_SIZE
        assert all(info.not_recoverable for info in infos)
        assert all(info.data.is_zero() for info in infos)

    def test_corrupt_lost_block_keeps_bytes_read(self):
        data = pattern(10, seed=6)
        blocks = blocks_of(data)
        manifest = build(data)
        bad = blocks[1].copy()
        bad.data[5] ^= 0x01
        # Block 1 was read but fails its checksum; block 6 was never read.
        non_restored, infos = run_pass(manifest, blocks, skip={6}, replace={1: bad})
        assert non_restored == 2 * BLOCK_SIZE
        kept, unread = infos
        assert kept.not_recoverable and kept.readable
        assert kept.data == bad
        assert unread.not_recoverable and not unread.readable
        assert unread.data.is_zero()

    def test_lost_partial_block_counts_its_length(self):
        data = pattern(2, seed=4, tail=10)
        manifest = build(data)
        # Three blocks, one slot: any two unread blocks are unrecoverable.
        non_restored, _ = run_pass(manifest, blocks_of(data), skip={1, 2})
        assert non_restored == BLOCK_SIZE + 10

    def test_restored_block_must_match_checksum(self):
        data = pattern(10, seed=5)
        manifest = build(data)
        manifest.rows[0][3].data[0] ^= 1
        non_restored, infos = run_pass(manifest, blocks_of(data), skip={3})
        assert non_restored == BLOCK_SIZE
        assert infos[0].not_recoverable


class TestGenerations:
    def test_legacy_entry_is_upgraded(self):
        data = pattern(4, seed=6)
        manifest = build(data)
        for entry in manifest.checksums:
            entry.digest = None
        manifest.start_restore()
        for index, block in enumerate(blocks_of(data)):
            assert manifest.analyze(block, index)
        assert manifest.upgraded
        assert all(entry.generations == 2 for entry in manifest.checksums)

    def test_single_generation_match_is_accepted_but_flagged(self):
        data = pattern(4, seed=7)
        manifest = build(data)
        manifest.checksums[1].fold = bytes(3) if manifest.checksums[1].fold != bytes(3) else b"\x01\x00\x00"
        manifest.start_restore()
        results = [manifest.analyze(b, i) for i, b in enumerate(blocks_of(data))]
        assert all(results)
        assert manifest.needs_rebuild()

    def test_entry_merge(self):
        entry = ChecksumEntry(fold=b"abc")
        assert entry.merge(ChecksumEntry(digest=b"12345678"))
        assert entry.generations == 2
        assert not entry.merge(ChecksumEntry(fold=b"zzz"))
        assert entry.fold == b"abc"


class TestIntegrity:
    def test_corrupt_parity_detected(self):
        data = pattern(10, seed=8)
        manifest = build(data)
        manifest.rows[0][0].data[5] ^= 0xFF
        run_pass(manifest, blocks_of(data))
        assert not manifest.verify_integrity()

    def test_short_table_detected(self):
        data = pattern(10, seed=9)
        manifest = build(data)
        manifest.checksums = manifest.checksums[:5]
        run_pass(manifest, blocks_of(data))
        assert not manifest.verify_integrity()
        assert manifest.needs_rebuild()

    def test_accept_with_wrong_bytes_marks_foreign(self):
        data = pattern(4, seed=10)
        manifest = build(data)
        manifest.start_restore()
        manifest.accept(0, Block(b"not the data"))
        assert manifest.needs_rebuild()


class TestImprove:
    def test_missing_table_taken_from_other(self):
        data = pattern(10, seed=11)
        a = build(data)
        b = build(data)
        a.checksums = None
        b.rows[0][2] = None
        assert a.improve(b)
        assert len(a.checksums) == 10
        assert b.rows[0][2] == a.rows[0][2]
        non_restored, infos = run_pass(a, blocks_of(data), skip={4})
        assert non_restored == 0
        assert infos[0].data == blocks_of(data)[4]

    def test_different_lengths_not_merged(self):
        a = build(pattern(3, seed=12))
        b = build(pattern(4, seed=12))
        a.checksums = None
        assert not a.improve(b)
        assert a.checksums is None


class TestRepairConfidence:
    def test_ordering(self):
        clean = RepairConfidence.clean()
        small = RepairConfidence.repaired(10)
        large = RepairConfidence.repaired(5000)
        failed = RepairConfidence.failed()
        assert clean.better_than(small)
        assert small.better_than(large)
        assert large.better_than(failed)
        assert not clean.better_than(RepairConfidence())

    def test_zero_residual_is_clean(self):
        assert RepairConfidence.repaired(0).is_clean

    def test_code_round_trip(self):
        for conf in (RepairConfidence.clean(), RepairConfidence.repaired(42), RepairConfidence.failed()):
            assert RepairConfidence.from_code(conf.code, conf.residual_bytes) == conf


def test_fold_checksum_is_three_bytes():
    assert len(fold_checksum(bytes(BLOCK_SIZE))) == 3
    assert fold_checksum(bytes(BLOCK_SIZE)) == bytes(3)
    assert fold_checksum(b"\x01" + bytes(BLOCK_SIZE - 1)) != bytes(3)
