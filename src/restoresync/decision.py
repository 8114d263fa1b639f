"""
Pure decision procedure for one file pair.

decide() maps the observable state of the two files plus the run policy to
a single Action. It never touches the file system; the reconciliation
executor carries the action out.
"""

from dataclasses import dataclass
from enum import Enum

from restoresync.manifest import RepairConfidence
from restoresync.pathing import times_equal
from restoresync.settings import BIDIRECTIONAL, SINGLE, SyncSettings


class Action(Enum):
    COPY_A_TO_B = "copy-a-to-b"
    COPY_B_TO_A = "copy-b-to-a"
    REPAIR_IN_PLACE_A = "repair-a"
    REPAIR_IN_PLACE_B = "repair-b"
    CROSS_REPAIR = "cross-repair"
    SKIP = "skip"
    DELETE_COUNTERPART = "delete-counterpart"


class OnFailure(Enum):
    """What a copy does when its source turns out to be damaged."""
    # Self-repair the source; else copy a healthy destination back over it;
    # else cross-repair both.
    REVERSE = "reverse"
    # Leave the destination untouched as a backup.
    KEEP_BACKUP = "keep-backup"
    # Same as KEEP_BACKUP; the destination is never regressed.
    MONOTONIC = "monotonic"


@dataclass(frozen=True)
class FileState:
    """Observable state of one side of a pair."""
    exists: bool
    length: int = 0
    mtime_ns: int = 0
    confidence: RepairConfidence = RepairConfidence()

    @classmethod
    def missing(cls) -> "FileState":
        return cls(False)

    @property
    def has_content(self) -> bool:
        return self.exists and self.length > 0


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    on_failure: OnFailure = OnFailure.KEEP_BACKUP
    seed: bool = False


def _newer_or_longer(x: FileState, y: FileState, same_time: bool) -> bool:
    if not same_time:
        return x.mtime_ns > y.mtime_ns
    return x.length > y.length


def _test_or_skip(action: Action, reason: str, policy: SyncSettings) -> Decision:
    if policy.test_files:
        return Decision(action, reason)
    return Decision(Action.SKIP, reason)


def decide(a: FileState, b: FileState, policy: SyncSettings) -> Decision:
    """Choose what to do with one file pair.

    Args:
        a: state of the file in the first tree
        b: state of the file in the second tree (ignored for SINGLE runs)
        policy: run settings

    Returns:
        Decision naming the action, a human-readable reason, and how a copy
        should react if its source fails verification.
    """
    if policy.direction == SINGLE:
        if not a.has_content:
            return Decision(Action.SKIP, "file is empty")
        return _test_or_skip(Action.REPAIR_IN_PLACE_A, "single tree", policy)

    if not a.has_content and not b.has_content:
        return Decision(Action.SKIP, "both files missing or empty")

    if a.has_content and not b.has_content:
        return Decision(Action.COPY_A_TO_B, "(file was new)", OnFailure.KEEP_BACKUP, seed=True)

    if b.has_content and not a.has_content:
        if policy.direction == BIDIRECTIONAL:
            return Decision(Action.COPY_B_TO_A, "(file was new)", OnFailure.KEEP_BACKUP, seed=True)
        if not a.exists and policy.delete_missing_in_second:
            return Decision(Action.DELETE_COUNTERPART, "not present in first tree anymore")
        if a.exists:
            return _test_or_skip(Action.REPAIR_IN_PLACE_B, "first file is empty, second kept as backup", policy)
        return _test_or_skip(Action.REPAIR_IN_PLACE_B, "first file missing, second kept", policy)

    same_time = times_equal(a.mtime_ns, b.mtime_ns)
    equal = same_time and a.length == b.length
    a_better = a.confidence.better_than(b.confidence)
    b_better = b.confidence.better_than(a.confidence)

    if policy.direction == BIDIRECTIONAL:
        if a_better:
            return Decision(Action.COPY_A_TO_B, "(other copy is degraded)", OnFailure.REVERSE)
        if b_better:
            return Decision(Action.COPY_B_TO_A, "(other copy is degraded)", OnFailure.REVERSE)
        if _newer_or_longer(a, b, same_time):
            return Decision(Action.COPY_A_TO_B, "(file newer or bigger)", OnFailure.REVERSE)
        if _newer_or_longer(b, a, same_time):
            return Decision(Action.COPY_B_TO_A, "(file newer or bigger)", OnFailure.REVERSE)
        return _test_or_skip(Action.CROSS_REPAIR, "files are equal", policy)

    if policy.sync_mode:
        if _newer_or_longer(a, b, same_time):
            return Decision(Action.COPY_A_TO_B, "(file newer or bigger)", OnFailure.MONOTONIC)
    else:
        if b_better:
            return _test_or_skip(Action.REPAIR_IN_PLACE_B, "first file is degraded, second kept as backup", policy)
        if not equal or a_better:
            on_failure = OnFailure.KEEP_BACKUP if policy.first_read_only else OnFailure.REVERSE
            reason = "(other copy is degraded)" if equal else "(file differs)"
            return Decision(Action.COPY_A_TO_B, reason, on_failure)

    if equal:
        return _test_or_skip(Action.CROSS_REPAIR, "files are equal", policy)
    return _test_or_skip(Action.REPAIR_IN_PLACE_B, "second file is newer, left untouched", policy)
