import os
import re
import sys
import time
from pathlib import Path

import click
from rich.console import Console

from restoresync import __version__
from restoresync.concurrency import CancellationToken
from restoresync.discovery import sweep
from restoresync.fsport import LocalFileSystem
from restoresync.logport import ConsoleLog
from restoresync.report import default_report_path, write_report
from restoresync.session import SyncSession, SyncStats
from restoresync.settings import A_TO_B, BIDIRECTIONAL, DEFAULT_LOG_DIR, SINGLE, SyncSettings

_LOG_SETUP = False
_LOG_FILE = None
_LOG_PATH = None


_ANSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


class MasterLogTee:
    """Terminal stream that also appends plain text to the master log.

    Colour and cursor escapes are stripped from the log copy. Once the
    terminal side reports a broken pipe the tee goes quiet; a failing log
    file never interrupts the terminal.
    """

    def __init__(self, terminal, log_file):
        self.terminal = terminal
        self.log_file = log_file
        self.encoding = getattr(terminal, "encoding", None) or "utf-8"
        self.pipe_closed = False

    def write(self, text):
        if self.pipe_closed:
            return 0
        if isinstance(text, bytes):
            text = text.decode(self.encoding, errors="replace")
        try:
            written = self.terminal.write(text)
        except BrokenPipeError:
            self.pipe_closed = True
            return 0
        try:
            self.log_file.write(_ANSI.sub("", text))
        except OSError:
            pass
        return written

    def flush(self):
        if self.pipe_closed:
            return
        try:
            self.terminal.flush()
        except BrokenPipeError:
            self.pipe_closed = True
            return
        try:
            self.log_file.flush()
        except OSError:
            pass

    def isatty(self):
        return self.terminal.isatty()

    def fileno(self):
        return self.terminal.fileno()


def _setup_master_log() -> None:
    global _LOG_SETUP, _LOG_FILE, _LOG_PATH
    if _LOG_SETUP:
        return
    _LOG_SETUP = True
    if os.environ.get("RESTORESYNC_LOG_DISABLED") == "1":
        return
    log_file = os.environ.get("RESTORESYNC_LOG_FILE")
    log_dir = os.environ.get("RESTORESYNC_LOG_DIR")
    if log_file:
        log_path = Path(os.path.expanduser(log_file))
    else:
        log_path = (Path(os.path.expanduser(log_dir)) if log_dir else DEFAULT_LOG_DIR) / "restoresync.log"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _LOG_FILE = open(log_path, "a", encoding="utf-8", buffering=1)
    except OSError:
        return
    _LOG_PATH = log_path
    sys.stdout = MasterLogTee(sys.stdout, _LOG_FILE)
    sys.stderr = MasterLogTee(sys.stderr, _LOG_FILE)


def _emit_run_header() -> str:
    timestamp = time.strftime("%Y-%m-%dT%H:%M:%S%z")
    script = Path(sys.argv[0]).name or "restoresync"
    print(f"🧾 {script} v{__version__} @ {timestamp}")
    if _LOG_PATH:
        print(f"🧾 log: {_LOG_PATH}")
    return timestamp


def _make_session(settings: SyncSettings) -> SyncSession:
    log = ConsoleLog(Console(highlight=False))
    return SyncSession(LocalFileSystem(), log, settings, token=CancellationToken())


def _finish(stats: SyncStats, settings: SyncSettings, report, root_a, root_b, started) -> None:
    for line in stats.summary_lines():
        print(line)
    if report:
        out = Path(report) if report != "-" else default_report_path(started.replace(":", ""))
        write_report(stats, settings, out, root_a, root_b, started)
    if not stats.ok:
        sys.exit(1)


@click.group()
@click.version_option(__version__)
def cli():
    """RestoreSync: two-tree sync with block checksums and self-repair."""
    _setup_master_log()


@cli.command("sync")
@click.argument("tree_a", type=click.Path(exists=True, file_okay=False))
@click.argument("tree_b", type=click.Path(file_okay=False))
@click.option("--a-to-b", is_flag=True, help="One-way: the first tree is the source.")
@click.option("--read-only-source", is_flag=True, help="Never write anything under the first tree (needs --a-to-b).")
@click.option("--sync-mode", is_flag=True, help="Only copy when the source file is newer (needs --a-to-b).")
@click.option("--delete", "delete_missing", is_flag=True,
              help="Delete files and dirs of the second tree missing from the first (needs --a-to-b).")
@click.option("--no-test", is_flag=True, help="Do not test files against their manifests.")
@click.option("--no-repair", is_flag=True, help="Report damaged files but do not repair them.")
@click.option("--no-manifests", is_flag=True, help="Do not create missing manifests.")
@click.option("--no-prefer-physical", is_flag=True,
              help="Let checksums decide even when both copies of a block are identical.")
@click.option("--force-test", is_flag=True, help="Test every file, even recently confirmed ones.")
@click.option("--serial", is_flag=True, help="Process one file at a time.")
@click.option("--report", type=click.Path(dir_okay=False), default=None,
              help="Write a JSON run report ('-' for the default location).")
def sync_cmd(tree_a, tree_b, a_to_b, read_only_source, sync_mode, delete_missing, no_test, no_repair,
             no_manifests, no_prefer_physical, force_test, serial, report):
    """Synchronize TREE_A and TREE_B, testing and repairing files on the way."""
    started = _emit_run_header()
    try:
        settings = SyncSettings(
            direction=A_TO_B if a_to_b else BIDIRECTIONAL,
            first_read_only=read_only_source,
            sync_mode=sync_mode,
            delete_missing_in_second=delete_missing,
            test_files=not no_test,
            repair_files=not no_repair,
            create_manifests=not no_manifests,
            skip_recently_tested=not force_test,
            prefer_physical=not no_prefer_physical,
            parallel=not serial,
        )
    except ValueError as e:
        raise click.UsageError(str(e))
    Path(tree_b).mkdir(parents=True, exist_ok=True)
    print(f"🔁 {tree_a} {'→' if a_to_b else '⇄'} {tree_b}")
    stats = _make_session(settings).run(Path(tree_a), Path(tree_b))
    _finish(stats, settings, report, tree_a, tree_b, started)


@cli.command("protect")
@click.argument("tree", type=click.Path(exists=True, file_okay=False))
@click.option("--serial", is_flag=True, help="Process one file at a time.")
def protect_cmd(tree, serial):
    """Create manifests for files in TREE that lack applicable ones."""
    started = _emit_run_header()
    settings = SyncSettings(direction=SINGLE, test_files=False, repair_files=False, parallel=not serial)
    stats = _make_session(settings).run(Path(tree))
    _finish(stats, settings, None, tree, None, started)


@cli.command("verify")
@click.argument("tree", type=click.Path(exists=True, file_okay=False))
@click.option("--repair", is_flag=True, help="Repair damaged files in place from their manifests.")
@click.option("--force-test", is_flag=True, help="Test every file, even recently confirmed ones.")
@click.option("--serial", is_flag=True, help="Process one file at a time.")
@click.option("--report", type=click.Path(dir_okay=False), default=None,
              help="Write a JSON run report ('-' for the default location).")
def verify_cmd(tree, repair, force_test, serial, report):
    """Test every file in TREE against its manifest."""
    started = _emit_run_header()
    settings = SyncSettings(direction=SINGLE, repair_files=repair, skip_recently_tested=not force_test,
                            parallel=not serial)
    stats = _make_session(settings).run(Path(tree))
    _finish(stats, settings, report, tree, None, started)


@cli.command("sweep")
@click.argument("tree_a", type=click.Path(exists=True, file_okay=False))
@click.argument("tree_b", type=click.Path(exists=True, file_okay=False), required=False)
def sweep_cmd(tree_a, tree_b):
    """Remove manifests and markers whose data files no longer exist."""
    _emit_run_header()
    fs = LocalFileSystem()
    log = ConsoleLog(Console(highlight=False))
    removed = 0
    for tree in (tree_a, tree_b):
        if tree:
            removed += sweep(fs, log, Path(tree)).sidecars_removed
    print(f"🧹 Removed {removed} orphan sidecars")


if __name__ == "__main__":
    cli()
