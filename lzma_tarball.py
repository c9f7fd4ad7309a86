"""lzma_tarball: XZ-compressed tarball writer and reader.

A tarball is produced in two strictly sequential phases:

- BUILD: registered (source file, archive name) entries are streamed, one open
  file at a time, into an uncompressed GNU tar scratch container.
- COMPRESS: the finished container is read in fixed-size chunks and pushed
  through an XZ encoder; progress samples are emitted at most once per elapsed
  whole second.

The scratch container is private to one `compress` call and is deleted before
the call returns, whether it succeeded or not.

Reading decodes the XZ stream, walks the tar members in stream mode and
unpacks them under an ExtractionPolicy (overwrite, permission mask, zero-block
tolerance, mtime / ownership / permission / xattr preservation).

Best-effort skips (reported back to the caller, never silent):
- directory walks skip entries that raise OSError (WalkErrors.SKIP, default);
- listings skip members whose name is not valid UTF-8.

CLI (subcommands):
  a  create tarball
  l  list
  t  test (decode every member)
  x  extract

Notable flags:
  --level 0..9        XZ preset, clamped
  --chunk-kb N        read size of the compression loop in KiB
  --exclude GLOB      skip matching files while walking directories
  --strict-walk       abort instead of skipping unreadable walk entries
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import fnmatch
import itertools
import logging
import lzma
import os
import pathlib
import queue
import stat
import sys
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

log = logging.getLogger(__name__)

# -----------------------------
# Versioning / format
# -----------------------------
TOOL_VERSION = "0.2.0"
__version__ = TOOL_VERSION

TAR_FORMAT = tarfile.GNU_FORMAT
TAR_ENCODING = "utf-8"
XZ_FORMAT = lzma.FORMAT_XZ
XATTR_PREFIX = "SCHILY.xattr."

# -----------------------------
# Defaults / knobs
# -----------------------------
MIN_LEVEL = 0
MAX_LEVEL = 9
DEF_LEVEL = 6
DEF_CHUNK_KB = 64
KB = 1024
COPY_CHUNK = 1024 * 1024
SCRATCH_BASE = "archive"

# -----------------------------
# Errors
# -----------------------------
class TarballError(Exception):
    """Base class for every failure surfaced by this module."""


class PathNotFoundError(TarballError):
    """Metadata of an explicitly registered source path could not be read."""


class ConfigurationIncompleteError(TarballError):
    """A terminal operation was invoked before its required settings were made."""


class InvalidConfigurationError(TarballError, ValueError):
    """A setting or archive name was given a value it cannot take."""


class ArchiveNotFoundError(TarballError):
    """The archive given to a reader does not exist."""


class ArchiveWriteError(TarballError):
    """The tar container could not be written (wraps the first I/O error)."""


class ArchiveReadError(TarballError):
    """The codec or the tar parser failed while decoding an archive."""


class CompressionError(TarballError):
    """The XZ encoder rejected input or could not be finalized."""


class ExtractionError(TarballError):
    """A member could not be unpacked, or is missing after unpack."""


class IOFailure(TarballError):
    """Generic filesystem failure: creating a directory, opening or writing a file."""


class CleanupError(TarballError):
    """The scratch container could not be deleted."""

# -----------------------------
# Utilities
# -----------------------------
def ensure_parent(p: pathlib.Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)

def iter_file_chunks(f, chunk_size: int) -> Iterable[bytes]:
    while True:
        b = f.read(chunk_size)
        if not b:
            break
        yield b

def relpath_str(root: pathlib.Path, p: pathlib.Path) -> str:
    return p.relative_to(root).as_posix()

def strip_archive_name(name: str) -> str:
    # tar stores relative names only
    return name.replace("\\", "/").lstrip("/")

def clamp_level(level: int) -> int:
    return max(MIN_LEVEL, min(MAX_LEVEL, int(level)))

def is_text_name(name: str) -> bool:
    """Names read with surrogateescape carry undecodable bytes as lone surrogates."""
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True

_SCRATCH_SEQ = itertools.count()

def mint_scratch_path(scratch_dir: os.PathLike, base: str = SCRATCH_BASE) -> pathlib.Path:
    """Return a scratch container path no other call in any process will mint."""
    seq = next(_SCRATCH_SEQ)
    return pathlib.Path(scratch_dir) / f"{base}-{time.time_ns()}-{os.getpid()}-{seq}.tar"

def remove_scratch(path: pathlib.Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise CleanupError(f"failed to remove tar container {path}: {exc}") from exc
    log.debug("removed tar container %s", path)

def _discard(path: pathlib.Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)

# -----------------------------
# Progress
# -----------------------------
@dataclass(frozen=True)
class ProgressSample:
    bytes_processed: int
    bytes_per_second: int
    fraction_complete: float


ProgressListener = Callable[[ProgressSample], None]


class ProgressMeter:
    """Bytes seen vs. wall-clock time for the compression loop.

    `update` returns a sample only when a new whole second has elapsed since
    the meter started, so listeners get at most one sample per second and none
    for runs that finish inside the first second. Throughput uses integer
    division by the elapsed whole seconds, so it reads low right after each
    second boundary.
    """

    __slots__ = ("total", "processed", "clock", "t0", "last_second")

    def __init__(self, total: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.total = total
        self.processed = 0
        self.clock = clock
        self.t0 = clock()
        self.last_second = 0

    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(1.0, self.processed / self.total)

    def update(self, nbytes: int) -> Optional[ProgressSample]:
        self.processed += nbytes
        whole = int(self.clock() - self.t0)
        if whole <= self.last_second:
            return None
        self.last_second = whole
        return ProgressSample(
            bytes_processed=self.processed,
            bytes_per_second=self.processed // whole,
            fraction_complete=self.fraction(),
        )


def log_progress(sample: ProgressSample) -> None:
    log.info(
        "compressed %.1f%% (%d bytes, %d B/s)",
        sample.fraction_complete * 100.0, sample.bytes_processed, sample.bytes_per_second,
    )


class ProgressQueue:
    """Listener that hands samples to another thread through a queue."""

    def __init__(self) -> None:
        self.queue: "queue.Queue[ProgressSample]" = queue.Queue()

    def __call__(self, sample: ProgressSample) -> None:
        self.queue.put(sample)

    def drain(self) -> List[ProgressSample]:
        out: List[ProgressSample] = []
        while True:
            try:
                out.append(self.queue.get_nowait())
            except queue.Empty:
                return out

# -----------------------------
# Entry collection
# -----------------------------
@dataclass(frozen=True)
class ArchiveEntry:
    source: pathlib.Path
    destination: str

    def __post_init__(self) -> None:
        if not strip_archive_name(self.destination):
            raise InvalidConfigurationError(f"empty archive name for {self.source}")

    @property
    def archive_name(self) -> str:
        return strip_archive_name(self.destination)


@dataclass(frozen=True)
class SkippedPath:
    path: pathlib.Path
    reason: str


class WalkErrors(Enum):
    SKIP = "skip"
    RAISE = "raise"


PathPredicate = Callable[[pathlib.Path], bool]


def _stat_source(p: pathlib.Path) -> os.stat_result:
    try:
        return os.stat(p)
    except OSError as exc:
        raise PathNotFoundError(f"cannot read metadata of {p}: {exc}") from exc

def collect_file(source: os.PathLike, destination: str) -> ArchiveEntry:
    p = pathlib.Path(source)
    _stat_source(p)
    return ArchiveEntry(p, str(destination))

def collect_directory(
    root: os.PathLike,
    prefix: str,
    predicate: Optional[PathPredicate] = None,
    walk_errors: WalkErrors = WalkErrors.SKIP,
) -> Tuple[List[ArchiveEntry], List[SkippedPath]]:
    """Collect every regular file under `root` as `<prefix>/<relative path>`.

    The walk is depth-first with siblings sorted, so the entry order does not
    depend on the filesystem. Symlinks are not followed. Entries that raise
    OSError are recorded as skipped, or abort the walk with
    PathNotFoundError when `walk_errors` is WalkErrors.RAISE.
    """
    root = pathlib.Path(root)
    if not stat.S_ISDIR(_stat_source(root).st_mode):
        raise PathNotFoundError(f"not a directory: {root}")
    prefix = str(prefix).rstrip("/")
    entries: List[ArchiveEntry] = []
    skipped: List[SkippedPath] = []

    def on_error(exc: OSError) -> None:
        where = pathlib.Path(exc.filename) if exc.filename else root
        if walk_errors is WalkErrors.RAISE:
            raise PathNotFoundError(f"cannot walk {where}: {exc}") from exc
        log.warning("skipping %s: %s", where, exc)
        skipped.append(SkippedPath(where, str(exc)))

    for dp, dnames, fnames in os.walk(root, onerror=on_error):
        dnames.sort()
        for n in sorted(fnames):
            p = pathlib.Path(dp, n)
            try:
                st = os.lstat(p)
            except OSError as exc:
                on_error(exc)
                continue
            if not stat.S_ISREG(st.st_mode):
                continue
            if predicate is not None and not predicate(p):
                continue
            entries.append(ArchiveEntry(p, f"{prefix}/{relpath_str(root, p)}"))
    log.debug("collected %d file(s) under %s (%d skipped)", len(entries), root, len(skipped))
    return entries, skipped

def collect_path(
    source: os.PathLike,
    destination: str,
    predicate: Optional[PathPredicate] = None,
    walk_errors: WalkErrors = WalkErrors.SKIP,
) -> Tuple[List[ArchiveEntry], List[SkippedPath]]:
    p = pathlib.Path(source)
    if stat.S_ISDIR(_stat_source(p).st_mode):
        return collect_directory(p, destination, predicate, walk_errors)
    return [collect_file(p, destination)], []

def duplicate_names(entries: Iterable[ArchiveEntry]) -> List[str]:
    seen = set()
    dups: List[str] = []
    for e in entries:
        n = e.archive_name
        if n in seen and n not in dups:
            dups.append(n)
        seen.add(n)
    return dups

# -----------------------------
# Build container
# -----------------------------
def _append_entry(tar: tarfile.TarFile, entry: ArchiveEntry) -> None:
    with open(entry.source, "rb") as f:
        info = tar.gettarinfo(arcname=entry.archive_name, fileobj=f)
        tar.addfile(info, f)
    log.debug("streamed %s -> %s (%d bytes)", entry.source, info.name, info.size)

def build_container(entries: Sequence[ArchiveEntry], scratch_path: pathlib.Path) -> int:
    """Write `entries` into a GNU tar file at `scratch_path`; return its size.

    Entries are added in registration order and only one source file is open
    at a time. The trailer is written before returning.
    """
    log.debug("building tar container %s from %d entries", scratch_path, len(entries))
    try:
        with tarfile.open(scratch_path, "w", format=TAR_FORMAT, encoding=TAR_ENCODING) as tar:
            for entry in entries:
                try:
                    _append_entry(tar, entry)
                except (OSError, tarfile.TarError) as exc:
                    raise ArchiveWriteError(
                        f"failed to add {entry.source} as {entry.archive_name}: {exc}"
                    ) from exc
        return os.stat(scratch_path).st_size
    except OSError as exc:
        raise ArchiveWriteError(f"failed to write tar container {scratch_path}: {exc}") from exc

# -----------------------------
# Compress container
# -----------------------------
def _encode_stream(
    src,
    out,
    level: int,
    chunk_size: int,
    meter: ProgressMeter,
    listeners: Sequence[ProgressListener],
) -> None:
    try:
        encoder = lzma.LZMACompressor(format=XZ_FORMAT, preset=level)
    except lzma.LZMAError as exc:
        raise CompressionError(f"cannot start XZ encoder at level {level}: {exc}") from exc
    for chunk in iter_file_chunks(src, chunk_size):
        try:
            data = encoder.compress(chunk)
        except lzma.LZMAError as exc:
            raise CompressionError(f"XZ encoder rejected input: {exc}") from exc
        out.write(data)
        sample = meter.update(len(chunk))
        if sample is not None:
            for listener in listeners:
                listener(sample)
    log.debug("reached end of tar container after %d bytes", meter.processed)
    try:
        tail = encoder.flush()
    except lzma.LZMAError as exc:
        raise CompressionError(f"cannot finalize XZ stream: {exc}") from exc
    out.write(tail)

def compress_container(
    scratch_path: pathlib.Path,
    output_path: pathlib.Path,
    level: int,
    chunk_size: int,
    listeners: Sequence[ProgressListener] = (),
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """XZ-compress the finished container into `output_path`; return its size.

    Missing parent directories of `output_path` are created first. A partial
    output file is removed when anything fails.
    """
    try:
        src = open(scratch_path, "rb")
    except OSError as exc:
        raise IOFailure(f"cannot open tar container {scratch_path}: {exc}") from exc
    with src:
        total = os.fstat(src.fileno()).st_size
        try:
            ensure_parent(output_path)
            out = open(output_path, "wb")
        except OSError as exc:
            raise IOFailure(f"cannot create {output_path}: {exc}") from exc
        log.debug(
            "compressing %s (%d bytes) at level %d with %d byte chunks",
            scratch_path, total, level, chunk_size,
        )
        try:
            with out:
                try:
                    _encode_stream(src, out, level, chunk_size, ProgressMeter(total, clock), listeners)
                except OSError as exc:
                    raise IOFailure(f"failed while writing {output_path}: {exc}") from exc
        except Exception:
            _discard(output_path)
            raise
    return os.stat(output_path).st_size

# -----------------------------
# Writer
# -----------------------------
@dataclass(frozen=True)
class CompressionConfig:
    level: int = DEF_LEVEL
    chunk_kb: int = DEF_CHUNK_KB
    output_path: Optional[pathlib.Path] = None
    scratch_dir: Optional[pathlib.Path] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "level", clamp_level(self.level))
        if int(self.chunk_kb) <= 0:
            raise InvalidConfigurationError(f"chunk size must be a positive number of KB, got {self.chunk_kb}")

    @property
    def chunk_size(self) -> int:
        return int(self.chunk_kb) * KB


@dataclass(frozen=True)
class CompressionResult:
    output_path: pathlib.Path
    compressed_size: int
    # size of the uncompressed tar container, headers and padding included
    original_size: int
    elapsed_time: float
    entry_count: int
    skipped: Tuple[SkippedPath, ...] = ()

    @property
    def ratio(self) -> float:
        return self.compressed_size / float(self.original_size or 1)


@dataclass(frozen=True)
class TarballWriter:
    """Immutable builder for one XZ tarball.

    Every `with_*` step returns a new writer; nothing touches the filesystem
    until `compress` is called, except the metadata checks made when sources
    are registered.

        result = (TarballWriter()
                  .with_compression_level(9)
                  .with_output("out/site.tar.xz")
                  .with_path("public", "site")
                  .compress(log_progress))
    """

    config: CompressionConfig = field(default_factory=CompressionConfig)
    entries: Tuple[ArchiveEntry, ...] = ()
    skipped: Tuple[SkippedPath, ...] = ()
    walk_errors: WalkErrors = WalkErrors.SKIP
    listeners: Tuple[ProgressListener, ...] = ()
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    def with_compression_level(self, level: int) -> TarballWriter:
        return dataclasses.replace(self, config=dataclasses.replace(self.config, level=level))

    def with_chunk_kb(self, kb: int) -> TarballWriter:
        return dataclasses.replace(self, config=dataclasses.replace(self.config, chunk_kb=kb))

    def with_output(self, output_path: os.PathLike) -> TarballWriter:
        cfg = dataclasses.replace(self.config, output_path=pathlib.Path(output_path))
        return dataclasses.replace(self, config=cfg)

    def with_scratch_dir(self, scratch_dir: os.PathLike) -> TarballWriter:
        cfg = dataclasses.replace(self.config, scratch_dir=pathlib.Path(scratch_dir))
        return dataclasses.replace(self, config=cfg)

    def with_walk_errors(self, policy: WalkErrors) -> TarballWriter:
        return dataclasses.replace(self, walk_errors=policy)

    def with_progress(self, listener: ProgressListener) -> TarballWriter:
        return dataclasses.replace(self, listeners=self.listeners + (listener,))

    def with_clock(self, clock: Callable[[], float]) -> TarballWriter:
        return dataclasses.replace(self, clock=clock)

    def with_files(self, entries: Iterable[ArchiveEntry]) -> TarballWriter:
        return dataclasses.replace(self, entries=self.entries + tuple(entries))

    def with_file(self, source: os.PathLike, destination: str) -> TarballWriter:
        return self.with_files([collect_file(source, destination)])

    def _with_collected(self, collected: Tuple[List[ArchiveEntry], List[SkippedPath]]) -> TarballWriter:
        entries, skipped = collected
        return dataclasses.replace(
            self, entries=self.entries + tuple(entries), skipped=self.skipped + tuple(skipped),
        )

    def with_directory_contents(self, directory: os.PathLike, prefix: str) -> TarballWriter:
        return self._with_collected(collect_directory(directory, prefix, None, self.walk_errors))

    def with_filtered_directory_contents(
        self, directory: os.PathLike, prefix: str, predicate: PathPredicate,
    ) -> TarballWriter:
        return self._with_collected(collect_directory(directory, prefix, predicate, self.walk_errors))

    def with_path(
        self, source: os.PathLike, destination: str, predicate: Optional[PathPredicate] = None,
    ) -> TarballWriter:
        return self._with_collected(collect_path(source, destination, predicate, self.walk_errors))

    def compress(self, progress: Optional[ProgressListener] = None) -> CompressionResult:
        cfg = self.config
        if cfg.output_path is None:
            raise ConfigurationIncompleteError("output path not set")
        if not self.entries:
            raise ConfigurationIncompleteError("no files or directories to compress")
        for name in duplicate_names(self.entries):
            log.warning("archive name %r registered more than once", name)
        listeners = self.listeners + ((progress,) if progress is not None else ())
        scratch = mint_scratch_path(cfg.scratch_dir or tempfile.gettempdir())

        t0 = time.perf_counter()
        try:
            original_size = build_container(self.entries, scratch)
            compressed_size = compress_container(
                scratch, cfg.output_path, cfg.level, cfg.chunk_size, listeners, self.clock,
            )
        finally:
            remove_scratch(scratch)
        elapsed = time.perf_counter() - t0

        log.debug(
            "wrote %s: tar_bytes=%d xz_bytes=%d time=%.2fs",
            cfg.output_path, original_size, compressed_size, elapsed,
        )
        return CompressionResult(
            output_path=cfg.output_path,
            compressed_size=compressed_size,
            original_size=original_size,
            elapsed_time=elapsed,
            entry_count=len(self.entries),
            skipped=self.skipped,
        )

# -----------------------------
# Extraction policy
# -----------------------------
@dataclass(frozen=True)
class ExtractionPolicy:
    overwrite: bool = False
    permission_mask: int = 0
    ignore_zero_blocks: bool = False
    preserve_mtime: bool = True
    preserve_ownership: bool = True
    preserve_permissions: bool = True
    extract_extended_attributes: bool = False

    def file_mode(self, mode: int) -> int:
        # setuid/setgid/sticky survive only when permissions are preserved
        keep = 0o7777 if self.preserve_permissions else 0o777
        return mode & keep & ~self.permission_mask

# -----------------------------
# Listing records
# -----------------------------
@dataclass(frozen=True)
class EntryInfo:
    name: str
    size: int
    mode: int
    mtime: int
    kind: str


@dataclass(frozen=True)
class SkippedEntry:
    index: int
    reason: str


@dataclass(frozen=True)
class Listing:
    entries: List[EntryInfo]
    skipped: List[SkippedEntry]

    @property
    def names(self) -> List[str]:
        return [e.name for e in self.entries]


@dataclass(frozen=True)
class DecompressionResult:
    extracted_entry_names: List[str]
    # re-statted after unpack; directories count as 0
    total_size: int
    elapsed_time: float
    kept_existing: List[str] = field(default_factory=list)
    skipped: List[SkippedEntry] = field(default_factory=list)


def member_kind(member: tarfile.TarInfo) -> str:
    if member.isreg():
        return "file"
    if member.isdir():
        return "dir"
    if member.issym():
        return "symlink"
    if member.islnk():
        return "hardlink"
    return "other"

def member_target(root: pathlib.Path, name: str) -> pathlib.Path:
    rel = pathlib.PurePosixPath(strip_archive_name(name))
    if ".." in rel.parts:
        raise ExtractionError(f"entry {name!r} escapes the output directory")
    return root.joinpath(*rel.parts)

def measure_extracted(root: pathlib.Path, names: Iterable[str]) -> int:
    total = 0
    for name in names:
        p = member_target(root, name)
        try:
            st = os.lstat(p)
        except OSError as exc:
            raise ExtractionError(f"extracted entry {name} is missing: {exc}") from exc
        if not stat.S_ISDIR(st.st_mode):
            total += st.st_size
    return total

# -----------------------------
# Unpack
# -----------------------------
class _Unpacker:
    """Materializes tar members below `root` under one ExtractionPolicy."""

    __slots__ = ("root", "real_root", "policy", "kept", "dirs")

    def __init__(self, root: pathlib.Path, policy: ExtractionPolicy) -> None:
        self.root = root
        self.real_root = os.path.realpath(root)
        self.policy = policy
        self.kept: List[str] = []
        self.dirs: List[Tuple[pathlib.Path, tarfile.TarInfo]] = []

    def _contain(self, path: pathlib.Path, name: str) -> None:
        # symlinks already unpacked must not carry later members out of root
        real = os.path.realpath(path)
        if os.path.commonpath([self.real_root, real]) != self.real_root:
            raise ExtractionError(f"entry {name!r} resolves outside the output directory: {real}")

    def unpack(self, tar: tarfile.TarFile, member: tarfile.TarInfo) -> None:
        target = member_target(self.root, member.name)
        self._contain(target if member.isdir() else target.parent, member.name)
        try:
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                # applied last so restrictive modes cannot block later members
                self.dirs.append((target, member))
                return
            ensure_parent(target)
            if member.isreg():
                written = self._write_file(tar, member, target)
            elif member.issym():
                written = self._make_link(member, target, symbolic=True)
            elif member.islnk():
                written = self._make_link(member, target, symbolic=False)
            else:
                log.warning("skipping %s: unsupported member type %r", member.name, member.type)
                return
            if written:
                self._apply_metadata(target, member)
        except OSError as exc:
            raise ExtractionError(f"failed to unpack {member.name}: {exc}") from exc

    def finish(self) -> None:
        try:
            for target, member in sorted(self.dirs, key=lambda d: str(d[0]), reverse=True):
                self._apply_metadata(target, member)
        except OSError as exc:
            raise ExtractionError(f"failed to set metadata on {target}: {exc}") from exc

    def _make_room(self, member: tarfile.TarInfo, target: pathlib.Path) -> bool:
        """Return False when an existing path must be kept."""
        if not os.path.lexists(target):
            return True
        if not self.policy.overwrite:
            log.debug("keeping existing %s", target)
            self.kept.append(member.name)
            return False
        if target.is_dir() and not target.is_symlink():
            raise ExtractionError(f"cannot overwrite directory {target} with {member.name}")
        os.unlink(target)
        return True

    def _write_file(self, tar: tarfile.TarFile, member: tarfile.TarInfo, target: pathlib.Path) -> bool:
        if not self._make_room(member, target):
            return False
        src = tar.extractfile(member)
        with open(target, "xb") as out:
            for chunk in iter_file_chunks(src, COPY_CHUNK):
                out.write(chunk)
        log.debug("extracted %s (%d bytes)", member.name, member.size)
        return True

    def _make_link(self, member: tarfile.TarInfo, target: pathlib.Path, symbolic: bool) -> bool:
        if not self._make_room(member, target):
            return False
        if symbolic:
            os.symlink(member.linkname, target)
        else:
            source = member_target(self.root, member.linkname)
            self._contain(source.parent, member.linkname)
            os.link(source, target, follow_symlinks=False)
        return True

    def _apply_metadata(self, target: pathlib.Path, member: tarfile.TarInfo) -> None:
        p = self.policy
        # a hard link to a symlink is itself a symlink
        is_link = member.issym() or target.is_symlink()
        if p.preserve_ownership:
            self._chown(target, member, is_link)
        if is_link:
            return
        os.chmod(target, p.file_mode(member.mode))
        if p.extract_extended_attributes:
            self._set_xattrs(target, member)
        if p.preserve_mtime:
            os.utime(target, (member.mtime, member.mtime))

    @staticmethod
    def _chown(target: pathlib.Path, member: tarfile.TarInfo, is_link: bool) -> None:
        # Only root can give files away; everyone else keeps their own ownership.
        if not hasattr(os, "chown") or not hasattr(os, "geteuid") or os.geteuid() != 0:
            return
        os.chown(target, member.uid, member.gid, follow_symlinks=not is_link)

    @staticmethod
    def _set_xattrs(target: pathlib.Path, member: tarfile.TarInfo) -> None:
        setxattr = getattr(os, "setxattr", None)
        if setxattr is None:
            log.debug("no xattr support on this platform; ignoring attributes of %s", member.name)
            return
        for key, value in member.pax_headers.items():
            if key.startswith(XATTR_PREFIX):
                setxattr(target, key[len(XATTR_PREFIX):], value.encode("utf-8", "surrogateescape"))

# -----------------------------
# Reader
# -----------------------------
@dataclass(frozen=True)
class TarballReader:
    """Immutable builder for reading one XZ tarball.

    `with_archive` fails fast when the archive does not exist. `entries`,
    `listing` and `verify` need only the archive; `decompress` also needs an
    output directory, which is created when missing.
    """

    archive: Optional[pathlib.Path] = None
    output_dir: Optional[pathlib.Path] = None
    policy: ExtractionPolicy = field(default_factory=ExtractionPolicy)

    def with_archive(self, archive: os.PathLike) -> TarballReader:
        p = pathlib.Path(archive)
        if not p.exists():
            raise ArchiveNotFoundError(f"archive not found: {p}")
        return dataclasses.replace(self, archive=p)

    def with_output_directory(self, output_dir: os.PathLike) -> TarballReader:
        return dataclasses.replace(self, output_dir=pathlib.Path(output_dir))

    def with_policy(self, policy: ExtractionPolicy) -> TarballReader:
        return dataclasses.replace(self, policy=policy)

    def _with(self, **changes) -> TarballReader:
        return self.with_policy(dataclasses.replace(self.policy, **changes))

    def with_overwrite(self, overwrite: bool = True) -> TarballReader:
        return self._with(overwrite=overwrite)

    def with_mask(self, mask: int) -> TarballReader:
        return self._with(permission_mask=mask)

    def with_ignore_zeros(self, ignore: bool = True) -> TarballReader:
        return self._with(ignore_zero_blocks=ignore)

    def with_preserve_mtime(self, preserve: bool = True) -> TarballReader:
        return self._with(preserve_mtime=preserve)

    def with_preserve_ownership(self, preserve: bool = True) -> TarballReader:
        return self._with(preserve_ownership=preserve)

    def with_preserve_permissions(self, preserve: bool = True) -> TarballReader:
        return self._with(preserve_permissions=preserve)

    def with_extended_attributes(self, extract: bool = True) -> TarballReader:
        return self._with(extract_extended_attributes=extract)

    def _require_archive(self) -> pathlib.Path:
        if self.archive is None:
            raise ConfigurationIncompleteError("archive not set")
        if not self.archive.exists():
            raise ArchiveNotFoundError(f"archive not found: {self.archive}")
        return self.archive

    @contextlib.contextmanager
    def _open_tar(self) -> Iterator[tarfile.TarFile]:
        archive = self._require_archive()
        try:
            with lzma.open(archive, "rb", format=XZ_FORMAT) as xz:
                with tarfile.open(
                    fileobj=xz,
                    mode="r|",
                    ignore_zeros=self.policy.ignore_zero_blocks,
                    encoding=TAR_ENCODING,
                ) as tar:
                    yield tar
        except (lzma.LZMAError, tarfile.TarError, EOFError) as exc:
            raise ArchiveReadError(f"failed to read {archive}: {exc}") from exc
        except OSError as exc:
            raise ArchiveReadError(f"cannot read {archive}: {exc}") from exc

    def listing(self) -> Listing:
        entries: List[EntryInfo] = []
        skipped: List[SkippedEntry] = []
        with self._open_tar() as tar:
            for index, member in enumerate(tar):
                if not is_text_name(member.name):
                    log.warning("skipping member %d: name is not valid UTF-8 (%r)", index, member.name)
                    skipped.append(SkippedEntry(index, f"name is not valid UTF-8: {member.name!r}"))
                    continue
                entries.append(EntryInfo(
                    name=member.name,
                    size=member.size,
                    mode=member.mode,
                    mtime=int(member.mtime),
                    kind=member_kind(member),
                ))
        return Listing(entries, skipped)

    def entries(self) -> List[str]:
        return self.listing().names

    def verify(self) -> int:
        """Decode every member's data; return the member count."""
        count = 0
        with self._open_tar() as tar:
            for member in tar:
                if member.isreg():
                    for _ in iter_file_chunks(tar.extractfile(member), COPY_CHUNK):
                        pass
                count += 1
        log.debug("verified %d member(s) in %s", count, self.archive)
        return count

    def decompress(self) -> DecompressionResult:
        self._require_archive()
        if self.output_dir is None:
            raise ConfigurationIncompleteError("output directory not set")
        t0 = time.perf_counter()
        out_dir = self.output_dir
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"cannot create output directory {out_dir}: {exc}") from exc

        listing = self.listing()
        unpacker = _Unpacker(out_dir, self.policy)
        with self._open_tar() as tar:
            for member in tar:
                if is_text_name(member.name):
                    unpacker.unpack(tar, member)
        unpacker.finish()

        names = listing.names
        total = measure_extracted(out_dir, names)
        elapsed = time.perf_counter() - t0
        log.debug("extracted %d entr(y/ies) into %s: %d bytes in %.2fs", len(names), out_dir, total, elapsed)
        return DecompressionResult(
            extracted_entry_names=names,
            total_size=total,
            elapsed_time=elapsed,
            kept_existing=unpacker.kept,
            skipped=listing.skipped,
        )

# -----------------------------
# Commands
# -----------------------------
def octal(s: str) -> int:
    return int(s, 8)

def print_progress(sample: ProgressSample) -> None:
    mbps = sample.bytes_per_second / 1024.0 / 1024.0
    sys.stderr.write(
        f"\r  {sample.fraction_complete * 100.0:6.2f}%  {sample.bytes_processed}B  {mbps:.2f}MB/s"
    )
    sys.stderr.flush()

def exclude_predicate(patterns: Sequence[str]) -> Optional[PathPredicate]:
    if not patterns:
        return None

    def keep(p: pathlib.Path) -> bool:
        return not any(fnmatch.fnmatch(p.name, pat) or fnmatch.fnmatch(p.as_posix(), pat) for pat in patterns)

    return keep

def cmd_add(args: argparse.Namespace) -> None:
    writer = (TarballWriter()
              .with_compression_level(args.level)
              .with_chunk_kb(args.chunk_kb)
              .with_output(args.archive)
              .with_walk_errors(WalkErrors.RAISE if args.strict_walk else WalkErrors.SKIP))
    if args.scratch_dir:
        writer = writer.with_scratch_dir(args.scratch_dir)
    predicate = exclude_predicate(args.exclude)
    for inp in args.inputs:
        p = pathlib.Path(inp)
        writer = writer.with_path(p, pathlib.Path(os.path.abspath(p)).name or SCRATCH_BASE, predicate)

    result = writer.compress(None if args.quiet else print_progress)
    if not args.quiet:
        sys.stderr.write("\n")
    print(f"OK: wrote {result.output_path}")
    print(f"  entries={result.entry_count} tar_bytes={result.original_size} xz_bytes={result.compressed_size} ratio={result.ratio:.4f} time={result.elapsed_time:.2f}s")
    for s in result.skipped:
        print(f"  skipped {s.path}: {s.reason}")

def cmd_list(args: argparse.Namespace) -> None:
    reader = TarballReader().with_ignore_zeros(args.ignore_zeros).with_archive(args.archive)
    listing = reader.listing()
    print(f"{reader.archive}: {len(listing.entries)} entr(y/ies)")
    for e in listing.entries:
        print(f"{e.size:12d}  {e.name}")
    for s in listing.skipped:
        print(f"  skipped member {s.index}: {s.reason}")

def cmd_test(args: argparse.Namespace) -> None:
    reader = TarballReader().with_archive(args.archive)
    print(f"Testing {reader.archive}")
    count = reader.verify()
    print(f"OK: {count} member(s) decoded")

def cmd_extract(args: argparse.Namespace) -> None:
    policy = ExtractionPolicy(
        overwrite=args.overwrite,
        permission_mask=args.mask,
        ignore_zero_blocks=args.ignore_zeros,
        preserve_mtime=args.preserve_mtime,
        preserve_ownership=args.preserve_ownership,
        preserve_permissions=args.preserve_permissions,
        extract_extended_attributes=args.xattrs,
    )
    result = (TarballReader()
              .with_archive(args.archive)
              .with_output_directory(args.outdir)
              .with_policy(policy)
              .decompress())
    for name in result.extracted_entry_names:
        print(f"  {name}")
    print(f"OK: extracted {len(result.extracted_entry_names)} entr(y/ies) to {args.outdir}")
    print(f"  total_size={result.total_size} kept_existing={len(result.kept_existing)} time={result.elapsed_time:.2f}s")

def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="lzma-tarball", add_help=True)
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    pa = sub.add_parser("a", help="create tarball")
    pa.add_argument("archive")
    pa.add_argument("inputs", nargs="+")
    pa.add_argument("--level", type=int, default=DEF_LEVEL, help="XZ preset 0-9 (clamped)")
    pa.add_argument("--chunk-kb", type=int, default=DEF_CHUNK_KB, help="compression read size in KiB")
    pa.add_argument("--scratch-dir", default=None, help="directory for the transient tar container (default: system temp dir)")
    pa.add_argument("--exclude", action="append", default=[], metavar="GLOB",
                    help="skip files whose name or path matches GLOB (repeatable)")
    pa.add_argument("--strict-walk", action="store_true",
                    help="fail on unreadable entries while walking directories instead of skipping them")
    pa.add_argument("--quiet", action="store_true", help="no progress output")
    pa.set_defaults(func=cmd_add)

    pl = sub.add_parser("l", help="list")
    pl.add_argument("archive")
    pl.add_argument("--ignore-zeros", action="store_true", help="read past zero blocks (concatenated tarballs)")
    pl.set_defaults(func=cmd_list)

    pt = sub.add_parser("t", help="test")
    pt.add_argument("archive")
    pt.set_defaults(func=cmd_test)

    px = sub.add_parser("x", help="extract")
    px.add_argument("archive")
    px.add_argument("outdir")
    px.add_argument("--overwrite", action="store_true", help="replace existing files")
    px.add_argument("--mask", type=octal, default=0, help="permission bits to clear, octal (e.g. 022)")
    px.add_argument("--ignore-zeros", action="store_true", help="read past zero blocks (concatenated tarballs)")
    px.add_argument("--preserve-mtime", action=argparse.BooleanOptionalAction, default=True)
    px.add_argument("--preserve-ownership", action=argparse.BooleanOptionalAction, default=True)
    px.add_argument("--preserve-permissions", action=argparse.BooleanOptionalAction, default=True)
    px.add_argument("--xattrs", action="store_true", help="restore extended attributes")
    px.set_defaults(func=cmd_extract)

    return ap

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except TarballError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
