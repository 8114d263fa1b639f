"""
Integrity engine: builds, tests and repairs files against their manifests.

All passes read data in whole blocks. Block read faults never escape; they
turn into repair candidates. Manifest writes and block writes during a
repair do escape (OSError and BlockWriteError respectively) so the owning
pair task can log them and move on.
"""

import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from restoresync import codec
from restoresync.block import BLOCK_SIZE, Block, block_length
from restoresync.concurrency import CancellationToken, ConcurrencyController
from restoresync.errors import BlockWriteError, CopyFailed, ManifestUnreadable, OperationCancelled
from restoresync.fsport import FileStat, FileSystemPort
from restoresync.logport import LogPort
from restoresync.manifest import FORMAT_V1, ChecksumManifest, RepairConfidence
from restoresync.pathing import manifest_path, marker_path, times_equal
from restoresync.restore import arbitrate, pick_block
from restoresync.settings import SyncSettings

_DAY_NS = 86_400 * 1_000_000_000
TEMP_SUFFIX = ".rstmp"


@dataclass
class TestResult:
    """Outcome of testing one file against its manifest."""
    path: Path
    ok: bool
    tested: bool = True
    needs_rebuild: bool = False
    bad_blocks: int = 0
    recoverable: bool = True
    manifest_missing: bool = False
    manifest_built: bool = False


@dataclass
class RepairResult:
    """Outcome of repairing one file from its own manifest."""
    path: Path
    repaired_blocks: int = 0
    non_restored: int = 0
    applied: bool = False
    manifest_rebuilt: bool = False
    manifest_missing: bool = False

    @property
    def ok(self) -> bool:
        return not self.manifest_missing and self.non_restored == 0


@dataclass
class CopyResult:
    src: Path
    dst: Path
    repaired_blocks: int = 0
    non_restored: int = 0
    manifest_built: bool = False
    manifest_copied: bool = False


@dataclass
class CrossRepairResult:
    """Outcome of repairing two copies of one file from each other."""
    path_a: Path
    path_b: Path
    fixed_a: int = 0
    fixed_b: int = 0
    lost_positions: List[int] = field(default_factory=list)
    ambiguous_positions: List[int] = field(default_factory=list)
    non_restored_a: int = 0
    non_restored_b: int = 0
    manifest_a_rebuilt: bool = False
    manifest_b_rebuilt: bool = False

    @property
    def clean(self) -> bool:
        return not self.lost_positions and not self.ambiguous_positions


class IntegrityEngine:
    """Manifest passes over files reached through a FileSystemPort."""

    def __init__(self, fs: FileSystemPort, log: LogPort, settings: SyncSettings = None,
                 controller: ConcurrencyController = None, rng: random.Random = None, clock=None):
        self.fs = fs
        self.log = log
        self.settings = settings or SyncSettings()
        self.controller = controller or ConcurrencyController(parallel=False)
        self.rng = rng or random.Random()
        self.clock = clock or time.time_ns

    # -- manifest storage ----------------------------------------------------

    def load_manifest(self, data_path: Path) -> Optional[ChecksumManifest]:
        """Read the manifest of data_path, or None if absent or unreadable.

        A buffered strict read is tried first; on a read fault the manifest
        is re-read unbuffered, salvaging whatever sections are readable.
        """
        path = manifest_path(data_path)
        if not self.fs.exists(path):
            return None
        try:
            with self.fs.open_read(path) as stream:
                return codec.decode(stream)
        except ManifestUnreadable as e:
            self.log.warning(1, "Manifest ", path, " is unreadable (", e, "), it will be rebuilt")
            return None
        except OSError:
            pass
        try:
            with self.fs.open_read(path, buffered=False) as stream:
                manifest = codec.decode(stream, tolerant=True)
        except (OSError, ManifestUnreadable) as e:
            self.log.warning(1, "Manifest ", path, " is unreadable (", e, "), it will be rebuilt")
            return None
        self.log.warning(1, "Manifest ", path, " had read errors, salvaged what was readable")
        return manifest

    def applicable_manifest(self, data_path: Path, st: FileStat = None) -> Optional[ChecksumManifest]:
        """Load the manifest only if it describes the current data file."""
        st = st or self.fs.stat(data_path)
        if st is None:
            return None
        manifest = self.load_manifest(data_path)
        if manifest is None:
            return None
        if not manifest.is_applicable(st.length, st.mtime_ns, self.settings.ignore_manifest_time):
            self.log.info(1, "Manifest of ", data_path, " is outdated, ignoring it")
            return None
        return manifest

    def peek_confidence(self, data_path: Path, st: FileStat) -> RepairConfidence:
        """Confidence stored in an applicable manifest; clean otherwise."""
        try:
            with self.fs.open_read(manifest_path(data_path)) as stream:
                header = codec.read_header(stream)
        except (OSError, ManifestUnreadable):
            return RepairConfidence.clean()
        if header.file_length != st.length:
            return RepairConfidence.clean()
        if not self.settings.ignore_manifest_time and not times_equal(header.file_timestamp, st.mtime_ns):
            return RepairConfidence.clean()
        return header.confidence

    def has_applicable_manifest(self, data_path: Path, st: FileStat) -> bool:
        """Header-only check that data_path has a manifest describing it."""
        try:
            with self.fs.open_read(manifest_path(data_path)) as stream:
                header = codec.read_header(stream)
        except (OSError, ManifestUnreadable):
            return False
        if header.file_length != st.length:
            return False
        return self.settings.ignore_manifest_time or times_equal(header.file_timestamp, st.mtime_ns)

    def _ensure_restore_dir(self, sidecar: Path) -> None:
        folder = sidecar.parent
        if not self.fs.exists(folder):
            self.fs.make_dirs(folder)
            self.fs.set_hidden(folder)

    def save_manifest(self, data_path: Path, manifest: ChecksumManifest) -> Path:
        """Write manifest as v1 beside data_path, stamped with the data time."""
        path = manifest_path(data_path)
        self._ensure_restore_dir(path)
        manifest.format_version = FORMAT_V1
        tmp = path.with_name(path.name + TEMP_SUFFIX)
        with self.fs.open_create(tmp) as stream:
            stream.write(codec.encode(manifest))
        self.fs.move(tmp, path)
        self.fs.set_mtime(path, manifest.file_timestamp)
        return path

    def copy_manifest(self, src_data: Path, dst_data: Path) -> None:
        src, dst = manifest_path(src_data), manifest_path(dst_data)
        self._ensure_restore_dir(dst)
        self.fs.copy(src, dst)

    def delete_sidecars(self, data_path: Path) -> None:
        for path in (manifest_path(data_path), marker_path(data_path)):
            if self.fs.exists(path):
                self.fs.delete(path)

    # -- confirmation marker -------------------------------------------------

    def touch_marker(self, data_path: Path) -> None:
        path = marker_path(data_path)
        self._ensure_restore_dir(path)
        self.fs.touch(path)

    def recently_confirmed(self, data_path: Path, st: FileStat) -> bool:
        """Decide whether a test of data_path may be skipped this time.

        The chance of skipping shrinks with the age of the last confirmation:
        always skipped within ~2.2 years, never after ~6.8 years.
        """
        if not self.settings.skip_recently_tested:
            return False
        marker = self.fs.stat(marker_path(data_path))
        man = self.fs.stat(manifest_path(data_path))
        if marker is None or man is None:
            return False
        if marker.mtime_ns <= st.mtime_ns or not times_equal(man.mtime_ns, st.mtime_ns):
            return False
        days = (self.clock() - marker.mtime_ns) / _DAY_NS
        return days < 366 * 2.2 + 366 * 4.6 * self.rng.random()

    # -- block plumbing ------------------------------------------------------

    def _read_at(self, stream, index: int, path: Path) -> Optional[Block]:
        block = Block()
        try:
            stream.seek(index * BLOCK_SIZE)
            block.read_from(stream)
        except OSError as e:
            self.log.warning(2, "I/O error reading block at offset ", index * BLOCK_SIZE, " of ", path, ": ", e)
            return None
        return block

    def _scan(self, path: Path, manifest: ChecksumManifest, token: CancellationToken) -> int:
        """Feed every block of path through manifest.analyze; return bad count."""
        bad = 0
        with self.fs.open_read(path, buffered=False) as stream:
            for index in range(manifest.block_count):
                token.raise_if_cancelled()
                block = self._read_at(stream, index, path)
                if block is None:
                    bad += 1
                elif not manifest.analyze(block, index):
                    bad += 1
                    self.log.warning(2, "Checksum of block at offset ", index * BLOCK_SIZE,
                                     " of ", path, " not OK")
        return bad

    def _readable(self, path: Path, length: int, token: CancellationToken) -> bool:
        ok = True
        with self.fs.open_read(path, buffered=False) as stream:
            for index in range((length + BLOCK_SIZE - 1) // BLOCK_SIZE):
                token.raise_if_cancelled()
                if self._read_at(stream, index, path) is None:
                    ok = False
        return ok

    def _write_blocks(self, path: Path, writes: List[Tuple[int, Block]], length: int, mtime_ns: int) -> None:
        """Write (position, block) pairs in place, then restore the file time."""
        position = 0
        try:
            with self.fs.open_write(path) as stream:
                for position, block in writes:
                    stream.seek(position)
                    block.write_to(stream, block_length(length, position // BLOCK_SIZE))
        except OSError as e:
            raise BlockWriteError(path, position, e) from e
        finally:
            try:
                self.fs.set_mtime(path, mtime_ns)
            except OSError as e:
                self.log.warning(1, "Could not restore modification time of ", path, ": ", e)

    def _mark_failed(self, data_path: Path, manifest: Optional[ChecksumManifest]) -> None:
        if manifest is None:
            return
        manifest.confidence = RepairConfidence.failed()
        try:
            self.save_manifest(data_path, manifest)
        except (OSError, ValueError) as e:
            self.log.warning(1, "Could not record failed repair of ", data_path, ": ", e)

    # -- passes --------------------------------------------------------------

    def collect(self, data_path: Path, token: CancellationToken,
                confidence: RepairConfidence = None) -> Optional[ChecksumManifest]:
        """Build and save a fresh manifest from data_path.

        Returns None (after logging) if the data could not be read.
        """
        st = self.fs.stat(data_path)
        if st is None:
            return None
        manifest = ChecksumManifest.for_file(st.length, st.mtime_ns)
        if confidence is not None:
            manifest.confidence = confidence
        try:
            with self.controller.large_read():
                with self.fs.open_read(data_path) as stream:
                    for index in range(manifest.block_count):
                        token.raise_if_cancelled()
                        block = Block()
                        block.read_from(stream)
                        manifest.collect(block, index)
        except OSError as e:
            self.log.error(1, "Could not create manifest for ", data_path, ": ", e)
            return None
        self.save_manifest(data_path, manifest)
        self.log.info(1, "Created manifest for ", data_path)
        return manifest

    def test(self, data_path: Path, token: CancellationToken, *,
             writable: bool = True, allow_skip: bool = True,
             build_missing: bool = False) -> TestResult:
        """Verify data_path against its manifest without modifying the data.

        Without an applicable manifest the file is only checked for
        readability and reported as needing a manifest, or, with
        build_missing, a manifest is collected in the same read. On success the
        confirmation marker is touched and an upgraded manifest is saved,
        unless the file lives in a read-only tree.
        """
        st = self.fs.stat(data_path)
        manifest = self.applicable_manifest(data_path, st)
        if manifest is None:
            if build_missing and writable:
                built = self.collect(data_path, token) is not None
                if built:
                    self.touch_marker(data_path)
                return TestResult(data_path, built, manifest_missing=True, manifest_built=built)
            ok = self._readable(data_path, st.length, token)
            if not ok:
                self.log.error(1, "File ", data_path, " has unreadable blocks and no manifest to repair from")
            return TestResult(data_path, ok, needs_rebuild=True, manifest_missing=True)

        if allow_skip and self.recently_confirmed(data_path, st):
            return TestResult(data_path, True, tested=False)

        manifest.start_restore()
        self._scan(data_path, manifest, token)
        non_restored, infos = manifest.end_restore()
        if infos:
            recoverable = non_restored == 0
            if recoverable:
                self.log.warning(1, "File ", data_path, " has ", len(infos), " bad blocks, all can be restored")
            else:
                self.log.error(1, "File ", data_path, " has ", len(infos), " bad blocks, ",
                               non_restored, " bytes cannot be restored from its manifest")
            return TestResult(data_path, False, needs_rebuild=True, bad_blocks=len(infos),
                              recoverable=recoverable)

        if not manifest.verify_integrity():
            self.log.warning(1, "Manifest of ", data_path, " is inconsistent, it will be rebuilt")
            return TestResult(data_path, True, needs_rebuild=True)

        needs_rebuild = manifest.needs_rebuild()
        if writable:
            if not needs_rebuild and (manifest.upgraded or manifest.format_version != FORMAT_V1):
                self.save_manifest(data_path, manifest)
            self.touch_marker(data_path)
        self.log.success(1, "Tested ", data_path)
        return TestResult(data_path, True, needs_rebuild=needs_rebuild)

    def repair(self, data_path: Path, token: CancellationToken, *,
               allow_residual: bool = True, dry_run: bool = False) -> RepairResult:
        """Repair data_path in place from its own manifest.

        Unreadable blocks that cannot be restored are zero-filled when
        allow_residual is set; readable ones keep the bytes read. The rebuilt
        manifest records the residual loss either way. With
        dry_run nothing is written; the result tells whether a repair would
        be complete.
        """
        st = self.fs.stat(data_path)
        manifest = self.applicable_manifest(data_path, st)
        if manifest is None:
            return RepairResult(data_path, manifest_missing=True)

        manifest.start_restore()
        self._scan(data_path, manifest, token)
        non_restored, infos = manifest.end_restore()
        result = RepairResult(data_path, repaired_blocks=sum(1 for i in infos if not i.not_recoverable),
                              non_restored=non_restored)
        if dry_run:
            return result

        if not infos:
            if not manifest.verify_integrity() or manifest.needs_rebuild():
                result.manifest_rebuilt = self.collect(data_path, token, manifest.confidence) is not None
            return result
        if non_restored and not allow_residual:
            return result

        writes = [(info.position, info.data) for info in infos if not info.readable]
        if writes:
            try:
                self._write_blocks(data_path, writes, st.length, st.mtime_ns)
            except BlockWriteError:
                self._mark_failed(data_path, manifest)
                raise
            result.applied = True
        for info in infos:
            if info.readable:
                self.log.warning(2, "Keeping readable but not recoverable block at offset ", info.position,
                                 " of ", data_path, ", its checksum says it is wrong")
            elif info.not_recoverable:
                self.log.error(2, "Block at offset ", info.position, " of ", data_path,
                               " could not be restored, filled with zeros")
            else:
                self.log.info(2, "Restored block at offset ", info.position, " of ", data_path)
        confidence = RepairConfidence.repaired(non_restored)
        result.manifest_rebuilt = self.collect(data_path, token, confidence) is not None
        if non_restored:
            self.log.error(1, "Repaired ", data_path, " with ", non_restored, " bytes lost")
        else:
            self.log.success(1, "Repaired ", data_path)
        return result

    def copy(self, src: Path, dst: Path, token: CancellationToken, *,
             src_writable: bool = True, dst_writable: bool = True,
             allow_residual: bool = False, reason: str = "") -> CopyResult:
        """Copy src over dst, verifying (or building) src's manifest on the way.

        With an applicable source manifest every block is checked while
        copying and bad blocks are restored in the copy (and in src when it
        is writable). Without one, the manifest is collected during the copy
        so the source is read only once, and any read fault aborts the copy.

        Raises:
            CopyFailed: source bytes would be lost and allow_residual is off
            BlockWriteError: writing the destination failed
        """
        st = self.fs.stat(src)
        manifest = self.applicable_manifest(src, st)
        had_manifest = manifest is not None
        if manifest is None:
            manifest = ChecksumManifest.for_file(st.length, st.mtime_ns)
        else:
            manifest.start_restore()

        tmp = dst.with_name(dst.name + TEMP_SUFFIX)
        result = CopyResult(src, dst)
        infos = []
        self.fs.make_dirs(dst.parent)
        with self.controller.copying():
            position = 0
            try:
                with self.fs.open_read(src, buffered=False) as s_in, self.fs.open_create(tmp) as s_out:
                    for index in range(manifest.block_count):
                        token.raise_if_cancelled()
                        position = index * BLOCK_SIZE
                        block = self._read_at(s_in, index, src)
                        if block is None:
                            if not had_manifest:
                                raise CopyFailed(src, message=f"read error at offset {position} of {src}")
                            block = Block()
                        elif had_manifest:
                            if not manifest.analyze(block, index):
                                self.log.warning(2, "Checksum of block at offset ", position, " of ", src, " not OK")
                        else:
                            manifest.collect(block, index)
                        s_out.seek(position)
                        block.write_to(s_out, block_length(st.length, index))
                if had_manifest:
                    non_restored, infos = manifest.end_restore()
                    if non_restored and not allow_residual:
                        raise CopyFailed(src, non_restored)
                    result.non_restored = non_restored
                    result.repaired_blocks = sum(1 for i in infos if not i.not_recoverable)
                    fixes = [(i.position, i.data) for i in infos if not i.readable]
                    if fixes:
                        self._write_blocks(tmp, fixes, st.length, st.mtime_ns)
                self.fs.set_mtime(tmp, st.mtime_ns)
                self.fs.move(tmp, dst)
            except (CopyFailed, OperationCancelled):
                self._discard(tmp)
                raise
            except BlockWriteError:
                self._discard(tmp)
                raise
            except OSError as e:
                self._discard(tmp)
                raise BlockWriteError(dst, position, e) from e

        fixes = [(i.position, i.data) for i in infos if not i.readable]
        for info in infos:
            if info.readable:
                self.log.warning(2, "Keeping readable but not recoverable block at offset ", info.position,
                                 " of ", src, " also in ", dst, ", its checksum says it is wrong")
        if fixes and src_writable:
            try:
                self._write_blocks(src, fixes, st.length, st.mtime_ns)
                self.log.info(1, "Restored ", result.repaired_blocks, " blocks of ", src, " while copying")
            except BlockWriteError as e:
                self.log.warning(1, "Could not write restored blocks back to ", src, ": ", e)
        self.log.success(0, "Copied ", src, " to ", dst, " ", reason)
        self._after_copy(src, dst, manifest, had_manifest, infos, result, src_writable, dst_writable, token)
        return result

    def _after_copy(self, src, dst, manifest, had_manifest, infos, result,
                    src_writable, dst_writable, token) -> None:
        """Give dst (and src if needed) a manifest matching the copied data."""
        if not dst_writable:
            return
        if not had_manifest:
            if not self.settings.create_manifests:
                self.delete_sidecars(dst)
                return
            self.save_manifest(dst, manifest)
            result.manifest_built = True
            if src_writable:
                self.save_manifest(src, manifest)
            self.touch_marker(dst)
            return
        if infos or manifest.needs_rebuild() or not manifest.verify_integrity():
            confidence = RepairConfidence.repaired(result.non_restored)
            rebuilt = self.collect(dst, token, confidence)
            result.manifest_built = rebuilt is not None
            if rebuilt is not None and src_writable:
                self.save_manifest(src, rebuilt)
            return
        if manifest.upgraded or manifest.format_version != FORMAT_V1:
            self.save_manifest(dst, manifest)
            if src_writable:
                self.save_manifest(src, manifest)
        else:
            self.copy_manifest(src, dst)
        result.manifest_copied = True
        self.touch_marker(dst)

    def _discard(self, path: Path) -> None:
        try:
            if self.fs.exists(path):
                self.fs.delete(path)
        except OSError as e:
            self.log.warning(1, "Could not remove temporary file ", path, ": ", e)

    def cross_repair(self, path_a: Path, path_b: Path, token: CancellationToken, *,
                     a_writable: bool = True, b_writable: bool = True) -> CrossRepairResult:
        """Repair two equal-length copies of one file from each other.

        Both copies are read block by block. Each position is settled by
        pick_block(); undecided positions go through both manifests' parity
        reconstruction and arbitrate(). Positions nothing can restore are
        zero-filled where unreadable, kept where readable, and counted once
        per copy.
        """
        st_a, st_b = self.fs.stat(path_a), self.fs.stat(path_b)
        if st_a.length != st_b.length:
            raise ValueError(f"cannot cross-repair files of different length: {path_a}, {path_b}")
        length = st_a.length
        ma = self.applicable_manifest(path_a, st_a)
        mb = self.applicable_manifest(path_b, st_b)
        if ma is not None and mb is not None and ma.improve(mb):
            self.log.info(1, "Merged manifests of ", path_a, " and ", path_b)
        for manifest in (ma, mb):
            if manifest is not None:
                manifest.start_restore()

        result = CrossRepairResult(path_a, path_b)
        writes_a: Dict[int, Block] = {}
        writes_b: Dict[int, Block] = {}
        pending: Dict[int, Tuple[Optional[Block], Optional[Block]]] = {}
        count = (length + BLOCK_SIZE - 1) // BLOCK_SIZE

        with self.controller.copying():
            with self.fs.open_read(path_a, buffered=False) as sa, self.fs.open_read(path_b, buffered=False) as sb:
                for index in range(count):
                    token.raise_if_cancelled()
                    block_a = self._read_at(sa, index, path_a)
                    block_b = self._read_at(sb, index, path_b)
                    pick = pick_block(index, block_a, block_b, ma, mb, self.settings.prefer_physical)
                    if pick.ambiguous:
                        result.ambiguous_positions.append(index * BLOCK_SIZE)
                        self.log.warning(2, "Blocks at offset ", index * BLOCK_SIZE, " of ", path_a, " and ",
                                         path_b, " differ and nothing tells which is right, left as they are")
                        if ma is not None:
                            ma.accept(index, block_a)
                        if mb is not None:
                            mb.accept(index, block_b)
                        continue
                    if pick.block is None:
                        pending[index] = (block_a, block_b)
                        continue
                    truth = pick.block
                    for manifest, own in ((ma, block_a), (mb, block_b)):
                        if manifest is None:
                            continue
                        if not manifest.analyze(truth, index):
                            manifest.accept(index, truth)
                        if own != truth:
                            manifest.mark_repaired(index)
                    if block_a != truth:
                        writes_a[index] = truth
                    if block_b != truth:
                        writes_b[index] = truth

            if pending:
                restored_a = self._restore_map(ma)
                restored_b = self._restore_map(mb)
                for index, (block_a, block_b) in sorted(pending.items()):
                    data_a, data_b, lost = arbitrate(restored_a.get(index), restored_b.get(index))
                    position = index * BLOCK_SIZE
                    # Readable bytes are never replaced with zeros.
                    if not (lost and block_a is not None):
                        writes_a[index] = data_a
                    if not (lost and block_b is not None):
                        writes_b[index] = data_b
                    if lost:
                        result.lost_positions.append(position)
                        lost_bytes = block_length(length, index)
                        result.non_restored_a += lost_bytes
                        result.non_restored_b += lost_bytes
                        self.log.error(2, "Block at offset ", position, " is lost in both ", path_a,
                                       " and ", path_b, ", unreadable copies filled with zeros")

            self._apply_side(path_a, writes_a, a_writable, st_a, ma, result, "a")
            self._apply_side(path_b, writes_b, b_writable, st_b, mb, result, "b")

        residual = max(result.non_restored_a, result.non_restored_b)
        if a_writable and (writes_a or ma is None or ma.needs_rebuild()):
            result.manifest_a_rebuilt = self._rebuild_after_repair(path_a, ma, residual, token)
        if b_writable and (writes_b or mb is None or mb.needs_rebuild()):
            result.manifest_b_rebuilt = self._rebuild_after_repair(path_b, mb, residual, token)

        if result.clean:
            self.log.success(1, "Repaired ", path_a, " and ", path_b, " from each other")
        else:
            self.log.error(1, "Repaired ", path_a, " and ", path_b, " with ",
                           len(result.lost_positions), " lost blocks")
        return result

    def _restore_map(self, manifest: Optional[ChecksumManifest]) -> dict:
        if manifest is None:
            return {}
        _, infos = manifest.end_restore()
        return {info.index: info for info in infos}

    def _apply_side(self, path, writes, writable, st, manifest, result, side) -> None:
        if not writes:
            return
        if not writable:
            self.log.warning(1, "Not repairing ", len(writes), " blocks of read-only ", path)
            return
        ordered = sorted((index * BLOCK_SIZE, block) for index, block in writes.items())
        try:
            self._write_blocks(path, ordered, st.length, st.mtime_ns)
        except BlockWriteError:
            self._mark_failed(path, manifest)
            raise
        setattr(result, f"fixed_{side}", len(ordered))

    def _rebuild_after_repair(self, path, manifest, residual, token) -> bool:
        if manifest is None and not self.settings.create_manifests:
            return False
        return self.collect(path, token, RepairConfidence.repaired(residual)) is not None
