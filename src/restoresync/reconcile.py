"""
Executor for per-pair decisions.

ReconciliationEngine observes both files of a pair, asks decide() what to
do, and carries the action out through the IntegrityEngine. Failures of a
copy source are handled according to the decision's OnFailure policy.
"""

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from restoresync.concurrency import CancellationToken
from restoresync.decision import Action, Decision, FileState, OnFailure, decide
from restoresync.discovery import FilePair
from restoresync.errors import CopyFailed
from restoresync.fsport import FileStat, FileSystemPort
from restoresync.integrity import CrossRepairResult, IntegrityEngine, TestResult
from restoresync.logport import LogPort
from restoresync.pathing import is_guard_file, is_zero_length_suspect
from restoresync.settings import SINGLE, SyncSettings


@dataclass
class PairOutcome:
    """What happened to one pair; summed into SyncStats by the session."""
    pair: FilePair
    action: Optional[Action] = None
    copied: int = 0
    repaired: int = 0
    cross_repaired: int = 0
    tests_passed: int = 0
    skipped_recent: int = 0
    manifests_built: int = 0
    deleted: int = 0
    non_restored: int = 0
    failed: bool = False
    messages: List[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.failed = True
        self.messages.append(message)


class ReconciliationEngine:
    def __init__(self, fs: FileSystemPort, log: LogPort, settings: SyncSettings,
                 integrity: IntegrityEngine, rng: random.Random = None):
        self.fs = fs
        self.log = log
        self.settings = settings
        self.integrity = integrity
        self.rng = rng or random.Random()

    # -- observation ---------------------------------------------------------

    def _state(self, path: Optional[Path]) -> FileState:
        if path is None:
            return FileState.missing()
        st = self.fs.stat(path)
        if st is None or st.is_dir:
            return FileState.missing()
        if st.length == 0:
            if is_zero_length_suspect(path.name):
                self.log.warning(0, "File ", path, " has zero length, probably a previously failed copy")
            return FileState(True, 0, st.mtime_ns)
        confidence = self.integrity.peek_confidence(path, st)
        return FileState(True, st.length, st.mtime_ns, confidence)

    def reconcile(self, pair: FilePair, token: CancellationToken) -> PairOutcome:
        """Decide and execute the action for one pair."""
        outcome = PairOutcome(pair)
        if is_guard_file(pair.name):
            outcome.action = Action.SKIP
            return outcome
        token.raise_if_cancelled()
        a = self._state(pair.path_a)
        b = FileState.missing() if self.settings.direction == SINGLE else self._state(pair.path_b)
        decision = decide(a, b, self.settings)
        outcome.action = decision.action
        a_writable = self.settings.first_writable

        if decision.action == Action.SKIP:
            if not self.settings.test_files:
                self._ensure_manifest(pair.path_a, a, a_writable, token, outcome)
                if pair.path_b is not None:
                    self._ensure_manifest(pair.path_b, b, True, token, outcome)
        elif decision.action == Action.COPY_A_TO_B:
            self._copy(pair.path_a, pair.path_b, decision, a_writable, True, token, outcome)
        elif decision.action == Action.COPY_B_TO_A:
            self._copy(pair.path_b, pair.path_a, decision, True, a_writable, token, outcome)
        elif decision.action == Action.REPAIR_IN_PLACE_A:
            self._verify(pair.path_a, a_writable, token, outcome)
        elif decision.action == Action.REPAIR_IN_PLACE_B:
            if a.has_content:
                self.log.info(0, "Keeping ", pair.path_b, ": ", decision.reason)
            self._verify(pair.path_b, True, token, outcome)
        elif decision.action == Action.CROSS_REPAIR:
            self._equal(pair, a_writable, token, outcome)
        elif decision.action == Action.DELETE_COUNTERPART:
            self._delete(pair.path_b, decision, outcome)
        return outcome

    # -- actions -------------------------------------------------------------

    def _ensure_manifest(self, path: Path, state: FileState, writable: bool,
                         token: CancellationToken, outcome: PairOutcome) -> None:
        if not (state.has_content and writable and self.settings.create_manifests):
            return
        if self.integrity.has_applicable_manifest(path, self.fs.stat(path)):
            return
        if self.integrity.collect(path, token) is not None:
            outcome.manifests_built += 1

    def _record_test(self, result: TestResult, outcome: PairOutcome) -> None:
        if not result.tested:
            outcome.skipped_recent += 1
        elif result.ok:
            outcome.tests_passed += 1
        if result.manifest_built:
            outcome.manifests_built += 1

    def _build_missing(self, writable: bool) -> bool:
        return writable and self.settings.create_manifests

    def _rebuild_if_needed(self, path: Path, result: TestResult, writable: bool,
                           token: CancellationToken, outcome: PairOutcome) -> None:
        if not (result.ok and result.needs_rebuild and writable):
            return
        if result.manifest_missing and not self.settings.create_manifests:
            return
        if self.integrity.collect(path, token) is not None:
            outcome.manifests_built += 1

    def _verify(self, path: Path, writable: bool, token: CancellationToken, outcome: PairOutcome) -> None:
        """Test one file and repair it in place from its own manifest."""
        result = self.integrity.test(path, token, writable=writable,
                                     build_missing=self._build_missing(writable))
        self._record_test(result, outcome)
        if result.ok:
            self._rebuild_if_needed(path, result, writable, token, outcome)
            return
        if result.manifest_missing:
            outcome.fail(f"{path} is unreadable and has no manifest")
            return
        if not (self.settings.repair_files and writable):
            outcome.fail(f"{path} failed its test and was not repaired")
            return
        repaired = self.integrity.repair(path, token, allow_residual=True)
        outcome.repaired += 1
        outcome.non_restored += repaired.non_restored
        if repaired.manifest_rebuilt:
            outcome.manifests_built += 1

    def _copy(self, src: Path, dst: Path, decision: Decision, src_writable: bool, dst_writable: bool,
              token: CancellationToken, outcome: PairOutcome) -> None:
        if not dst_writable:
            self.log.warning(0, "Not copying ", src, " over read-only ", dst)
            return
        try:
            self._do_copy(src, dst, src_writable, False, decision.reason, token, outcome)
            return
        except CopyFailed as e:
            self.log.error(0, "Copying ", src, " failed: ", e)

        if decision.on_failure == OnFailure.REVERSE:
            self._reverse(src, dst, decision, token, outcome)
            return
        if decision.seed and src_writable and self.settings.repair_files:
            self._salvage(src, dst, decision, token, outcome)
            return
        self.log.warning(0, "Keeping ", dst, " as backup of damaged ", src)
        outcome.fail(f"{src} is damaged; {dst} was left untouched")

    def _do_copy(self, src: Path, dst: Path, src_writable: bool, allow_residual: bool, reason: str,
                 token: CancellationToken, outcome: PairOutcome) -> None:
        result = self.integrity.copy(src, dst, token, src_writable=src_writable,
                                     allow_residual=allow_residual, reason=reason)
        outcome.copied += 1
        outcome.non_restored += result.non_restored
        if result.repaired_blocks:
            outcome.repaired += 1
        if result.manifest_built:
            outcome.manifests_built += 1

    def _salvage(self, src: Path, dst: Path, decision: Decision,
                 token: CancellationToken, outcome: PairOutcome) -> None:
        """Repair src as far as possible, then copy what is left."""
        repaired = self.integrity.repair(src, token, allow_residual=True)
        if repaired.manifest_missing:
            outcome.fail(f"{src} is unreadable and has no manifest")
            return
        outcome.repaired += 1
        outcome.non_restored += repaired.non_restored
        if repaired.manifest_rebuilt:
            outcome.manifests_built += 1
        self._do_copy(src, dst, True, True, decision.reason, token, outcome)

    def _reverse(self, src: Path, dst: Path, decision: Decision,
                 token: CancellationToken, outcome: PairOutcome) -> None:
        """The copy source is damaged beyond self-repair: fall back on dst."""
        if not self.settings.repair_files:
            outcome.fail(f"{src} is damaged and repair is disabled")
            return
        fallback = self.integrity.test(dst, token, allow_skip=False)
        dst_st = self.fs.stat(dst)
        # A dst that tests ok beats a damaged src, manifest or not, unless
        # its manifest records lost data.
        if fallback.ok and self.integrity.peek_confidence(dst, dst_st).is_clean:
            self.log.warning(0, "Restoring damaged ", src, " from ", dst)
            self._do_copy(dst, src, True, False, "(other copy was damaged)", token, outcome)
            return

        if self.fs.stat(src).length == dst_st.length:
            self._cross(src, dst, True, True, token, outcome)
            self._do_copy(src, dst, True, True, decision.reason, token, outcome)
        else:
            self._salvage(src, dst, decision, token, outcome)

    def _cross(self, path_a: Path, path_b: Path, a_writable: bool, b_writable: bool,
               token: CancellationToken, outcome: PairOutcome) -> CrossRepairResult:
        result = self.integrity.cross_repair(path_a, path_b, token, a_writable=a_writable,
                                             b_writable=b_writable)
        outcome.cross_repaired += 1
        if a_writable:
            outcome.non_restored += result.non_restored_a
        if b_writable:
            outcome.non_restored += result.non_restored_b
        outcome.manifests_built += int(result.manifest_a_rebuilt) + int(result.manifest_b_rebuilt)
        if result.ambiguous_positions:
            outcome.messages.append(f"{len(result.ambiguous_positions)} blocks of {path_a} and {path_b} "
                                    f"differ with nothing to tell which is right")
        return result

    def _equal(self, pair: FilePair, a_writable: bool, token: CancellationToken, outcome: PairOutcome) -> None:
        """Test both copies of an equal pair; heal them from each other on failure."""
        sides = [(pair.path_a, a_writable), (pair.path_b, True)]
        if self.rng.random() < 0.5:
            sides.reverse()
        (first, first_writable), (second, second_writable) = sides

        result = self.integrity.test(first, token, writable=first_writable,
                                     build_missing=self._build_missing(first_writable))
        self._record_test(result, outcome)
        if result.ok:
            self._rebuild_if_needed(first, result, first_writable, token, outcome)
            second_st = self.fs.stat(second)
            if (second_writable and not result.manifest_missing and not result.needs_rebuild
                    and not self.integrity.has_applicable_manifest(second, second_st)
                    and self.integrity.has_applicable_manifest(first, second_st)):
                self.integrity.copy_manifest(first, second)
            result = self.integrity.test(second, token, writable=second_writable,
                                         build_missing=self._build_missing(second_writable))
            self._record_test(result, outcome)
            if result.ok:
                self._rebuild_if_needed(second, result, second_writable, token, outcome)
                return

        if not self.settings.repair_files:
            outcome.fail(f"{result.path} failed its test and was not repaired")
            return
        self._cross(pair.path_a, pair.path_b, a_writable, True, token, outcome)

    def _delete(self, path: Path, decision: Decision, outcome: PairOutcome) -> None:
        self.fs.delete(path)
        self.integrity.delete_sidecars(path)
        outcome.deleted += 1
        self.log.info(0, "Deleted ", path, " (", decision.reason, ")")
