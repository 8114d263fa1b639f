"""Run configuration."""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOME = Path.home() / ".restoresync"
DEFAULT_LOG_DIR = Path.home() / ".logs" / "restoresync"

BIDIRECTIONAL = "bidirectional"
A_TO_B = "a-to-b"
SINGLE = "single"


def home_dir() -> Path:
    value = os.environ.get("RESTORESYNC_HOME")
    return Path(os.path.expanduser(value)) if value else DEFAULT_HOME


@dataclass
class SyncSettings:
    """
    Policy and behaviour switches for one run.

    Attributes:
        direction: BIDIRECTIONAL, A_TO_B, or SINGLE (one tree, no counterpart)
        first_read_only: never write anything under the first tree
        sync_mode: in A_TO_B, only copy when the first file is newer
        delete_missing_in_second: in A_TO_B, delete files absent from the first tree
        test_files: verify files against their manifests
        repair_files: repair files that fail verification
        create_manifests: build manifests for files that lack applicable ones
        skip_recently_tested: probabilistically skip files confirmed recently
        prefer_physical: trust byte-identical copies without consulting checksums
        ignore_manifest_time: accept manifests whose timestamp differs from the data
        parallel: run file pairs concurrently
    """
    direction: str = BIDIRECTIONAL
    first_read_only: bool = False
    sync_mode: bool = False
    delete_missing_in_second: bool = False
    test_files: bool = True
    repair_files: bool = True
    create_manifests: bool = True
    skip_recently_tested: bool = True
    prefer_physical: bool = True
    ignore_manifest_time: bool = False
    parallel: bool = True

    def __post_init__(self):
        if self.direction not in (BIDIRECTIONAL, A_TO_B, SINGLE):
            raise ValueError(f"Unknown direction: {self.direction}")
        if self.direction == BIDIRECTIONAL and (self.first_read_only or self.sync_mode
                                                 or self.delete_missing_in_second):
            raise ValueError("read-only, sync and delete options need direction a-to-b")
        if self.repair_files and not self.test_files:
            self.repair_files = False

    @property
    def first_writable(self) -> bool:
        return not self.first_read_only
