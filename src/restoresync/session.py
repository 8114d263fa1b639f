"""
One sync run over a tree pair (or a single tree).

Discovery runs first on the calling thread; pairs are then reconciled one
task per pair on a thread pool as wide as the worker gate. A pair that
fails is logged and counted; it never aborts the run.
"""

import random
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional

from restoresync.concurrency import CancellationToken, ConcurrencyController
from restoresync.discovery import FilePair, discover, sweep
from restoresync.errors import OperationCancelled, RestoreSyncError
from restoresync.fsport import FileSystemPort
from restoresync.integrity import IntegrityEngine
from restoresync.logport import LogPort
from restoresync.progress import TwoLineProgress
from restoresync.reconcile import PairOutcome, ReconciliationEngine
from restoresync.settings import SINGLE, SyncSettings


@dataclass
class SyncStats:
    """Counters for one run."""
    pairs: int = 0
    copied: int = 0
    repaired: int = 0
    cross_repaired: int = 0
    tests_passed: int = 0
    skipped_recent: int = 0
    manifests_built: int = 0
    deleted: int = 0
    failed: int = 0
    non_restored_bytes: int = 0
    sidecars_removed: int = 0
    dirs_removed: int = 0
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    def add(self, outcome: PairOutcome) -> None:
        self.pairs += 1
        self.copied += outcome.copied
        self.repaired += outcome.repaired
        self.cross_repaired += outcome.cross_repaired
        self.tests_passed += outcome.tests_passed
        self.skipped_recent += outcome.skipped_recent
        self.manifests_built += outcome.manifests_built
        self.deleted += outcome.deleted
        self.non_restored_bytes += outcome.non_restored
        if outcome.failed:
            self.failed += 1

    @property
    def ok(self) -> bool:
        return self.failed == 0 and self.non_restored_bytes == 0 and not self.cancelled

    def as_dict(self) -> dict:
        return asdict(self)

    def summary_lines(self) -> List[str]:
        lines = [
            f"📊 Pairs: {self.pairs}",
            f"📄 Copied: {self.copied}",
            f"🩹 Repaired: {self.repaired}",
            f"🔀 Cross-repaired: {self.cross_repaired}",
            f"✅ Tests passed: {self.tests_passed}",
            f"⏭️  Skipped (recently tested): {self.skipped_recent}",
            f"🧮 Manifests built: {self.manifests_built}",
            f"🗑️  Deleted: {self.deleted} files, {self.dirs_removed} dirs, "
            f"{self.sidecars_removed} orphan sidecars",
        ]
        if self.failed:
            lines.append(f"❌ Failed: {self.failed}")
        if self.non_restored_bytes:
            lines.append(f"❌ Bytes not restored: {self.non_restored_bytes:,}")
        if self.cancelled:
            lines.append("⚠️ Run was interrupted")
        lines.append(f"⏱️  Elapsed: {self.elapsed_seconds:.1f}s")
        return lines


class SyncSession:
    """Wires the engines together for one run."""

    def __init__(self, fs: FileSystemPort, log: LogPort, settings: SyncSettings,
                 controller: ConcurrencyController = None, rng: random.Random = None,
                 token: CancellationToken = None, show_progress: bool = None):
        self.fs = fs
        self.log = log
        self.settings = settings
        self.controller = controller or ConcurrencyController(parallel=settings.parallel)
        self.rng = rng or random.Random()
        self.token = token or CancellationToken()
        self.show_progress = show_progress
        self.integrity = IntegrityEngine(fs, log, settings, self.controller, self.rng)
        self.engine = ReconciliationEngine(fs, log, settings, self.integrity, self.rng)

    def _reconcile_one(self, pair: FilePair) -> Optional[PairOutcome]:
        with self.controller.worker():
            try:
                return self.engine.reconcile(pair, self.token)
            except OperationCancelled:
                return None
            except (RestoreSyncError, OSError) as e:
                self.log.error(0, "Failed on ", pair.rel_path, ": ", e)
                outcome = PairOutcome(pair)
                outcome.fail(str(e))
                return outcome

    def _run_pairs(self, pairs: List[FilePair], stats: SyncStats) -> None:
        with TwoLineProgress(total=len(pairs), prefix="🔁 Syncing", enabled=self.show_progress) as progress:
            if self.controller.worker_slots == 1:
                for pair in pairs:
                    if self.token.cancelled:
                        break
                    progress.update(desc=pair.rel_path)
                    outcome = self._reconcile_one(pair)
                    if outcome is not None:
                        stats.add(outcome)
                    progress.update(advance=1)
                return

            with ThreadPoolExecutor(max_workers=self.controller.worker_slots) as executor:
                pending = {executor.submit(self._reconcile_one, pair) for pair in pairs}
                try:
                    while pending:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        for fut in done:
                            outcome = fut.result()
                            if outcome is not None:
                                stats.add(outcome)
                                progress.update(desc=outcome.pair.rel_path)
                            progress.update(advance=1)
                except KeyboardInterrupt:
                    self.log.warning(0, "Interrupted, finishing the current blocks...")
                    self.token.cancel()
                    for fut in pending:
                        fut.cancel()
                    raise

    def run(self, root_a: Path, root_b: Path = None) -> SyncStats:
        """Reconcile every pair under the roots, then sweep orphan sidecars."""
        started = time.monotonic()
        stats = SyncStats()
        single = self.settings.direction == SINGLE
        pairs = list(discover(self.fs, root_a, None if single else root_b))
        self.log.info(0, "Found ", len(pairs), " files")
        try:
            self._run_pairs(pairs, stats)
        except KeyboardInterrupt:
            stats.cancelled = True
        if self.token.cancelled:
            stats.cancelled = True
        elif self.settings.create_manifests or self.settings.delete_missing_in_second:
            self._sweep(root_a, None if single else root_b, stats)
        stats.elapsed_seconds = time.monotonic() - started
        return stats

    def _sweep(self, root_a: Path, root_b: Optional[Path], stats: SyncStats) -> None:
        results = []
        if self.settings.first_writable:
            results.append(sweep(self.fs, self.log, root_a))
        if root_b is not None:
            results.append(sweep(self.fs, self.log, root_b, mirror=root_a,
                                 delete_missing=self.settings.delete_missing_in_second))
        for result in results:
            stats.sidecars_removed += result.sidecars_removed
            stats.dirs_removed += result.dirs_removed


def run_sync(fs: FileSystemPort, log: LogPort, settings: SyncSettings, root_a: Path,
             root_b: Path = None, **kwargs) -> SyncStats:
    return SyncSession(fs, log, settings, **kwargs).run(root_a, root_b)
