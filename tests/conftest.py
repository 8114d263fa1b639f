"""
Shared fixtures: an in-memory file system with a deterministic clock, a
recording log, and engines wired to them.
"""

import random

import pytest

from restoresync.block import BLOCK_SIZE
from restoresync.concurrency import CancellationToken, ConcurrencyController
from restoresync.integrity import IntegrityEngine
from restoresync.logport import MemoryLog
from restoresync.memfs import MemoryFileSystem
from restoresync.settings import SyncSettings

# 2023-11-14T22:13:20Z plus a sub-second part, so times are never "coarse".
T0 = 1_700_000_000_000_000_123
SECOND = 1_000_000_000


class StepClock:
    """Clock that advances one second per call."""

    def __init__(self, start: int = T0 + 3600 * SECOND):
        self.now = start

    def __call__(self) -> int:
        self.now += SECOND
        return self.now


def pattern(blocks: int, seed: int = 0, tail: int = 0) -> bytes:
    """Deterministic, non-repeating content of blocks * BLOCK_SIZE + tail bytes."""
    rng = random.Random(seed)
    return rng.randbytes(blocks * BLOCK_SIZE + tail)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def fs(clock):
    return MemoryFileSystem(clock=clock)


@pytest.fixture
def log():
    return MemoryLog()


@pytest.fixture
def token():
    return CancellationToken()


@pytest.fixture
def settings():
    return SyncSettings(parallel=False)


@pytest.fixture
def engine(fs, log, settings, clock):
    return IntegrityEngine(fs, log, settings, ConcurrencyController(parallel=False),
                           random.Random(7), clock=clock)
