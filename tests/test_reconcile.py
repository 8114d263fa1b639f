"""
Tests for the per-pair executor: decisions carried out end to end.
"""

import random
from pathlib import Path
from unittest import mock

import pytest

from conftest import SECOND, T0, pattern
from restoresync.block import BLOCK_SIZE
from restoresync.concurrency import CancellationToken, ConcurrencyController
from restoresync.decision import Action
from restoresync.discovery import FilePair
from restoresync.integrity import IntegrityEngine
from restoresync.manifest import RepairConfidence
from restoresync.pathing import manifest_path, marker_path
from restoresync.reconcile import ReconciliationEngine
from restoresync.settings import A_TO_B, SINGLE, SyncSettings

REL = "music/track.flac"
A = Path("/a") / REL
B = Path("/b") / REL
PAIR = FilePair(REL, A, B)


@pytest.fixture
def make(fs, log, clock):
    def _make(**kw):
        kw.setdefault("parallel", False)
        settings = SyncSettings(**kw)
        integrity = IntegrityEngine(fs, log, settings, ConcurrencyController(parallel=False),
                                    random.Random(1), clock=clock)
        return ReconciliationEngine(fs, log, settings, integrity, random.Random(2))
    return _make


def protect(fs, reconciler, path, data, mtime=T0):
    fs.add_file(path, data, mtime_ns=mtime)
    assert reconciler.integrity.collect(path, CancellationToken()) is not None


class TestCopies:
    def test_seed_copy_builds_manifests(self, fs, make, token):
        data = pattern(5)
        fs.add_file(A, data, mtime_ns=T0)
        outcome = make().reconcile(PAIR, token)
        assert outcome.action == Action.COPY_A_TO_B
        assert outcome.copied == 1
        assert outcome.manifests_built == 1
        assert fs.read_bytes(B) == data
        assert fs.stat(manifest_path(A)) is not None
        assert fs.stat(manifest_path(B)) is not None

    def test_newer_second_copied_back(self, fs, make, token):
        fs.add_file(A, b"old", mtime_ns=T0)
        fs.add_file(B, b"new content", mtime_ns=T0 + SECOND)
        outcome = make().reconcile(PAIR, token)
        assert outcome.action == Action.COPY_B_TO_A
        assert fs.read_bytes(A) == b"new content"
        assert fs.stat(A).mtime_ns == T0 + SECOND

    def test_damaged_winner_restored_from_healthy_loser(self, fs, make, token):
        reconciler = make()
        older = pattern(10, seed=1)
        protect(fs, reconciler, A, pattern(10, seed=2), mtime=T0 + SECOND)
        protect(fs, reconciler, B, older)
        # Blocks 1 and 6 share a parity slot: A cannot repair itself.
        fs.inject_read_fault(A, 1 * BLOCK_SIZE)
        fs.inject_read_fault(A, 6 * BLOCK_SIZE)
        outcome = reconciler.reconcile(PAIR, token)
        assert outcome.action == Action.COPY_A_TO_B
        assert not outcome.failed
        assert fs.read_bytes(A) == older
        assert fs.read_bytes(B) == older
        assert fs.read_faults(A) == set()

    def test_damaged_winner_restored_from_loser_without_manifest(self, fs, make, token):
        reconciler = make()
        older = pattern(8, seed=5)
        protect(fs, reconciler, A, pattern(10, seed=6), mtime=T0 + SECOND)
        fs.add_file(B, older, mtime_ns=T0)
        # Blocks 0 and 5 share a parity slot.
        fs.inject_read_fault(A, 0)
        fs.inject_read_fault(A, 5 * BLOCK_SIZE)
        outcome = reconciler.reconcile(PAIR, token)
        assert not outcome.failed
        assert outcome.non_restored == 0
        assert fs.read_bytes(B) == older
        assert fs.read_bytes(A) == older
        assert fs.read_faults(A) == set()
        assert reconciler.integrity.has_applicable_manifest(A, fs.stat(A))
        assert reconciler.integrity.has_applicable_manifest(B, fs.stat(B))

    def test_loser_with_recorded_loss_is_not_trusted(self, fs, make, token):
        reconciler = make()
        newer = pattern(10, seed=7)
        protect(fs, reconciler, A, newer, mtime=T0 + SECOND)
        fs.add_file(B, pattern(8, seed=8), mtime_ns=T0)
        assert reconciler.integrity.collect(B, token, RepairConfidence.repaired(BLOCK_SIZE)) is not None
        fs.inject_read_fault(A, 1 * BLOCK_SIZE)
        fs.inject_read_fault(A, 6 * BLOCK_SIZE)
        outcome = reconciler.reconcile(PAIR, token)
        assert outcome.non_restored == 2 * BLOCK_SIZE
        copied = fs.read_bytes(B)
        assert len(copied) == len(newer)
        assert copied[:BLOCK_SIZE] == newer[:BLOCK_SIZE]

    def test_unreadable_equal_length_loser_cross_repaired_then_overwritten(self, fs, make, token):
        reconciler = make()
        data = pattern(10, seed=9)
        protect(fs, reconciler, A, data, mtime=T0 + SECOND)
        fs.add_file(B, data, mtime_ns=T0)
        fs.inject_read_fault(A, 1 * BLOCK_SIZE)
        fs.inject_read_fault(A, 6 * BLOCK_SIZE)
        fs.inject_read_fault(B, 3 * BLOCK_SIZE)
        outcome = reconciler.reconcile(PAIR, token)
        assert outcome.action == Action.COPY_A_TO_B
        assert outcome.cross_repaired == 1
        assert outcome.copied == 1
        assert outcome.non_restored == 0
        assert not outcome.failed
        assert fs.read_bytes(A) == data
        assert fs.read_bytes(B) == data
        assert fs.read_faults(A) == set()
        assert fs.read_faults(B) == set()
        assert fs.stat(B).mtime_ns == T0 + SECOND

    def test_damaged_winner_and_loser_are_salvaged(self, fs, make, token):
        reconciler = make()
        newer = pattern(10, seed=3)
        protect(fs, reconciler, A, newer, mtime=T0 + SECOND)
        fs.add_file(B, b"short", mtime_ns=T0)
        fs.inject_read_fault(A, 1 * BLOCK_SIZE)
        fs.inject_read_fault(A, 6 * BLOCK_SIZE)
        fs.inject_read_fault(B, 0)
        outcome = reconciler.reconcile(PAIR, token)
        assert outcome.non_restored == 2 * BLOCK_SIZE
        copied = fs.read_bytes(B)
        assert len(copied) == len(newer)
        assert copied[:BLOCK_SIZE] == newer[:BLOCK_SIZE]
        assert copied[BLOCK_SIZE:2 * BLOCK_SIZE] == bytes(BLOCK_SIZE)

    def test_read_only_source_damage_keeps_backup(self, fs, make, token, log):
        fs.add_file(A, pattern(4, seed=4), mtime_ns=T0 + SECOND)
        fs.add_file(B, b"backup", mtime_ns=T0)
        fs.inject_read_fault(A, BLOCK_SIZE)
        outcome = make(direction=A_TO_B, first_read_only=True).reconcile(PAIR, token)
        assert outcome.failed
        assert fs.read_bytes(B) == b"backup"
        assert all(not str(p).startswith("/a/music/RestoreInfo") for p in fs.files())
        assert log.contains("as backup", "warning")

    def test_sync_mode_never_regresses_second(self, fs, make, token):
        fs.add_file(A, b"older", mtime_ns=T0)
        fs.add_file(B, b"newer!", mtime_ns=T0 + SECOND)
        outcome = make(direction=A_TO_B, sync_mode=True).reconcile(PAIR, token)
        assert outcome.action == Action.REPAIR_IN_PLACE_B
        assert fs.read_bytes(B) == b"newer!"


class TestEqualPairs:
    def test_equal_pair_gets_manifests_then_is_skipped(self, fs, make, token):
        data = pattern(3, seed=5)
        fs.add_file(A, data, mtime_ns=T0)
        fs.add_file(B, data, mtime_ns=T0)
        reconciler = make()
        first = reconciler.reconcile(PAIR, token)
        assert first.action == Action.CROSS_REPAIR
        assert first.manifests_built == 2
        second = reconciler.reconcile(PAIR, token)
        assert second.skipped_recent == 2
        assert fs.write_counts[A] == 0
        assert fs.write_counts[B] == 0

    def test_manifest_propagated_to_twin(self, fs, make, token):
        data = pattern(3, seed=6)
        reconciler = make()
        protect(fs, reconciler, A, data)
        fs.add_file(B, data, mtime_ns=T0)
        # Test the protected copy first.
        reconciler.rng = mock.Mock()
        reconciler.rng.random.return_value = 0.9
        outcome = reconciler.reconcile(PAIR, token)
        assert not outcome.failed
        assert fs.stat(manifest_path(B)) is not None
        assert reconciler.integrity.test(B, token, allow_skip=False).ok

    def test_damaged_copy_healed_from_twin(self, fs, make, token):
        data = pattern(10, seed=7)
        reconciler = make()
        protect(fs, reconciler, A, data)
        protect(fs, reconciler, B, data)
        fs.inject_read_fault(A, 0)
        fs.inject_read_fault(A, 5 * BLOCK_SIZE)
        outcome = reconciler.reconcile(PAIR, token)
        assert outcome.cross_repaired == 1
        assert outcome.non_restored == 0
        assert fs.read_bytes(A) == data
        assert fs.stat(A).mtime_ns == T0

    def test_read_only_first_gets_no_sidecars(self, fs, make, token):
        data = pattern(3, seed=8)
        fs.add_file(A, data, mtime_ns=T0)
        fs.add_file(B, data, mtime_ns=T0)
        outcome = make(direction=A_TO_B, first_read_only=True).reconcile(PAIR, token)
        assert not outcome.failed
        assert fs.stat(manifest_path(A)) is None
        assert fs.stat(marker_path(A)) is None
        assert fs.stat(manifest_path(B)) is not None

    def test_no_repair_reports_failure(self, fs, make, token):
        data = pattern(10, seed=9)
        reconciler = make(repair_files=False)
        protect(fs, reconciler, A, data)
        protect(fs, reconciler, B, data)
        fs.inject_read_fault(B, 0)
        outcome = reconciler.reconcile(PAIR, token)
        assert outcome.failed
        assert fs.read_faults(B) == {0}


class TestOtherActions:
    def test_delete_counterpart(self, fs, make, token):
        reconciler = make(direction=A_TO_B, delete_missing_in_second=True)
        protect(fs, reconciler, B, b"stale")
        outcome = reconciler.reconcile(PAIR, token)
        assert outcome.deleted == 1
        assert fs.stat(B) is None
        assert fs.stat(manifest_path(B)) is None

    def test_guard_file_untouched(self, fs, make, token):
        guard = FilePair("RestoreSync-Dont-Delete.txt", Path("/a/RestoreSync-Dont-Delete.txt"),
                         Path("/b/RestoreSync-Dont-Delete.txt"))
        fs.add_file(guard.path_a, b"keep", mtime_ns=T0)
        outcome = make().reconcile(guard, token)
        assert outcome.action == Action.SKIP
        assert fs.stat(guard.path_b) is None

    def test_zero_length_media_warns(self, fs, make, token, log):
        fs.add_file(Path("/a/clip.mp4"), b"", mtime_ns=T0)
        outcome = make().reconcile(FilePair("clip.mp4", Path("/a/clip.mp4"), Path("/b/clip.mp4")), token)
        assert outcome.action == Action.SKIP
        assert log.contains("previously failed copy", "warning")

    def test_manifests_ensured_without_tests(self, fs, make, token):
        fs.add_file(A, pattern(2), mtime_ns=T0)
        fs.add_file(B, pattern(2), mtime_ns=T0)
        outcome = make(test_files=False).reconcile(PAIR, token)
        assert outcome.action == Action.SKIP
        assert outcome.manifests_built == 2

    def test_single_tree_repair(self, fs, make, token):
        data = pattern(10, seed=10)
        reconciler = make(direction=SINGLE)
        protect(fs, reconciler, A, data)
        fs.inject_read_fault(A, 2 * BLOCK_SIZE)
        outcome = reconciler.reconcile(FilePair(REL, A), token)
        assert outcome.repaired == 1
        assert fs.read_bytes(A) == data

    def test_cancelled_token_stops_pair(self, fs, make):
        from restoresync.errors import OperationCancelled

        fs.add_file(A, b"x", mtime_ns=T0)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            make().reconcile(PAIR, token)
