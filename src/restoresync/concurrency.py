"""Concurrency gates and cooperative cancellation for a sync session."""

import os
import threading
from contextlib import contextmanager

from restoresync.errors import OperationCancelled


class CancellationToken:
    """Cooperative cancellation flag, polled once per block and per pair."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


class ConcurrencyController:
    """
    Bounded gates owned by one session.

    - worker gate: file pairs reconciled at once (cpu * 3 / 2)
    - copy gate: bulk copies at once (max(cpu * 5 / 8, 2), never above
      the worker gate)
    - large-read gate: manifest builds, one at a time

    With parallel=False every gate has a single slot.
    """

    def __init__(self, cpu_count: int = None, parallel: bool = True):
        cpus = cpu_count or os.cpu_count() or 1
        if parallel:
            self.worker_slots = max(1, cpus * 3 // 2)
            self.copy_slots = min(max(cpus * 5 // 8, 2), self.worker_slots)
        else:
            self.worker_slots = 1
            self.copy_slots = 1
        self.large_read_slots = 1
        self.parallel = parallel
        self._worker_gate = threading.BoundedSemaphore(self.worker_slots)
        self._copy_gate = threading.BoundedSemaphore(self.copy_slots)
        self._large_read_gate = threading.BoundedSemaphore(self.large_read_slots)

    @contextmanager
    def worker(self):
        with self._worker_gate:
            yield

    @contextmanager
    def copying(self):
        with self._copy_gate:
            yield

    @contextmanager
    def large_read(self):
        with self._large_read_gate:
            yield

    def __repr__(self):
        return (f"ConcurrencyController(workers={self.worker_slots}, copies={self.copy_slots}, "
                f"large_reads={self.large_read_slots})")
