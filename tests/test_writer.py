"""Tests for building and compressing tarballs."""

import lzma
import os
import tarfile
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

import lzma_tarball
from lzma_tarball import (
    ArchiveWriteError,
    CleanupError,
    CompressionConfig,
    ConfigurationIncompleteError,
    IOFailure,
    InvalidConfigurationError,
    PathNotFoundError,
    ProgressQueue,
    TarballWriter,
    mint_scratch_path,
)


class StepClock:
    """Advances one second per call."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        t = self.now
        self.now += 1.0
        return t


def _writer(scratch_dir, output):
    return (TarballWriter()
            .with_compression_level(1)
            .with_scratch_dir(scratch_dir)
            .with_output(output))


class TestCompressionConfig:
    """Level clamping and chunk size."""

    def test_level_is_clamped(self):
        assert CompressionConfig(level=15).level == 9
        assert CompressionConfig(level=-1).level == 0
        assert CompressionConfig(level=4).level == 4

    def test_builder_clamps(self):
        assert TarballWriter().with_compression_level(15).config.level == 9
        assert TarballWriter().with_compression_level(-1).config.level == 0

    def test_defaults(self):
        cfg = CompressionConfig()
        assert cfg.level == 6
        assert cfg.chunk_size == 64 * 1024

    def test_chunk_kb_must_be_positive(self):
        with pytest.raises(ValueError):
            TarballWriter().with_chunk_kb(0)
        with pytest.raises(InvalidConfigurationError):
            TarballWriter().with_chunk_kb(-4)
        assert TarballWriter().with_chunk_kb(8).config.chunk_size == 8192


class TestCompress:
    """End-to-end compress calls."""

    def test_output_is_xz_wrapped_gnu_tar(self, source_tree, temp_dir, scratch_dir):
        output = temp_dir / "nested" / "dir" / "out.tar.xz"
        result = _writer(scratch_dir, output).with_directory_contents(source_tree, "pkg").compress()

        assert result.output_path == output
        assert result.compressed_size == output.stat().st_size
        assert result.entry_count == 4
        with lzma.open(output) as xz, tarfile.open(fileobj=xz, mode="r|") as tar:
            names = [m.name for m in tar]
        assert names == ["pkg/a.txt", "pkg/b/beta.bin", "pkg/b/debug.log", "pkg/b/c/gamma.txt"]

    def test_original_size_is_container_size(self, temp_dir, scratch_dir):
        payload = temp_dir / "payload.bin"
        payload.write_bytes(os.urandom(1000))
        result = _writer(scratch_dir, temp_dir / "out.tar.xz").with_file(payload, "payload.bin").compress()

        assert result.original_size > 1000
        # header block, data padded to 512, two zero blocks, record padding
        assert result.original_size % tarfile.RECORDSIZE == 0
        with lzma.open(temp_dir / "out.tar.xz") as xz:
            assert len(xz.read()) == result.original_size

    def test_scratch_container_removed_after_success(self, source_tree, temp_dir, scratch_dir):
        _writer(scratch_dir, temp_dir / "out.tar.xz").with_directory_contents(source_tree, "").compress()
        assert list(scratch_dir.iterdir()) == []

    def test_scratch_container_removed_after_build_failure(self, source_tree, temp_dir, scratch_dir):
        doomed = source_tree / "a.txt"
        writer = _writer(scratch_dir, temp_dir / "out.tar.xz").with_directory_contents(source_tree, "")
        doomed.unlink()

        with pytest.raises(ArchiveWriteError) as excinfo:
            writer.compress()
        assert isinstance(excinfo.value.__cause__, FileNotFoundError)
        assert list(scratch_dir.iterdir()) == []
        assert not (temp_dir / "out.tar.xz").exists()

    def test_scratch_container_removed_when_output_cannot_be_created(self, source_tree, temp_dir, scratch_dir):
        blocker = temp_dir / "blocker"
        blocker.write_bytes(b"")
        writer = _writer(scratch_dir, blocker / "out.tar.xz").with_directory_contents(source_tree, "")

        with pytest.raises(IOFailure):
            writer.compress()
        assert list(scratch_dir.iterdir()) == []

    def test_listener_error_propagates_and_cleans_up(self, source_tree, temp_dir, scratch_dir):
        def boom(sample):
            raise RuntimeError("listener failed")

        writer = (_writer(scratch_dir, temp_dir / "out.tar.xz")
                  .with_chunk_kb(1)
                  .with_clock(StepClock())
                  .with_directory_contents(source_tree, ""))
        with pytest.raises(RuntimeError):
            writer.compress(boom)
        assert list(scratch_dir.iterdir()) == []
        assert not (temp_dir / "out.tar.xz").exists()

    def test_cleanup_failure_is_reported(self, source_tree, temp_dir, scratch_dir, monkeypatch):
        def refuse(path, *args, **kwargs):
            raise PermissionError(1, "Operation not permitted", str(path))

        writer = _writer(scratch_dir, temp_dir / "out.tar.xz").with_directory_contents(source_tree, "")
        monkeypatch.setattr(lzma_tarball.os, "unlink", refuse)
        with pytest.raises(CleanupError) as excinfo:
            writer.compress()
        assert isinstance(excinfo.value.__cause__, PermissionError)

    def test_requires_output_and_entries(self, source_tree, temp_dir):
        with pytest.raises(ConfigurationIncompleteError):
            TarballWriter().with_file(source_tree / "a.txt", "a.txt").compress()
        with pytest.raises(ConfigurationIncompleteError):
            TarballWriter().with_output(temp_dir / "out.tar.xz").compress()

    def test_missing_file_fails_at_registration(self, temp_dir):
        with pytest.raises(PathNotFoundError):
            TarballWriter().with_file(temp_dir / "missing", "missing")

    def test_duplicate_names_are_written_and_logged(self, source_tree, temp_dir, scratch_dir, caplog):
        writer = (_writer(scratch_dir, temp_dir / "out.tar.xz")
                  .with_file(source_tree / "a.txt", "same.txt")
                  .with_file(source_tree / "b" / "debug.log", "same.txt"))
        writer.compress()
        assert "same.txt" in caplog.text
        with lzma.open(temp_dir / "out.tar.xz") as xz, tarfile.open(fileobj=xz, mode="r|") as tar:
            assert [m.name for m in tar] == ["same.txt", "same.txt"]


class TestProgress:
    """Progress reporting from the chunk loop."""

    def test_samples_follow_chunks(self, temp_dir, scratch_dir):
        payload = temp_dir / "payload.bin"
        payload.write_bytes(os.urandom(10 * 1024))
        channel = ProgressQueue()
        result = (_writer(scratch_dir, temp_dir / "out.tar.xz")
                  .with_chunk_kb(1)
                  .with_clock(StepClock())
                  .with_progress(channel)
                  .with_file(payload, "payload.bin")
                  .compress())

        samples = channel.drain()
        assert len(samples) == result.original_size // 1024
        assert [s.bytes_processed for s in samples] == [1024 * (i + 1) for i in range(len(samples))]
        assert samples[-1].fraction_complete == 1.0
        assert all(s.bytes_per_second == 1024 for s in samples)

    def test_fast_run_emits_nothing(self, source_tree, temp_dir, scratch_dir):
        seen = []
        (_writer(scratch_dir, temp_dir / "out.tar.xz")
         .with_clock(lambda: 0.0)
         .with_directory_contents(source_tree, "")
         .compress(seen.append))
        assert seen == []

    def test_listeners_run_on_compressing_thread(self, temp_dir, scratch_dir):
        payload = temp_dir / "payload.bin"
        payload.write_bytes(b"x" * 4096)
        threads = set()
        (_writer(scratch_dir, temp_dir / "out.tar.xz")
         .with_chunk_kb(1)
         .with_clock(StepClock())
         .with_file(payload, "payload.bin")
         .compress(lambda s: threads.add(threading.get_ident())))
        assert threads == {threading.get_ident()}


class TestConcurrency:
    """Independent writers must not collide on scratch containers."""

    def test_scratch_paths_are_unique(self, scratch_dir):
        paths = {mint_scratch_path(scratch_dir) for _ in range(100)}
        assert len(paths) == 100

    def test_parallel_writers(self, source_tree, temp_dir, scratch_dir):
        def run(i):
            return (_writer(scratch_dir, temp_dir / f"out{i}.tar.xz")
                    .with_directory_contents(source_tree, f"copy{i}")
                    .compress())

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(run, range(8)))

        assert len({r.output_path for r in results}) == 8
        assert all(r.entry_count == 4 for r in results)
        assert list(scratch_dir.iterdir()) == []
