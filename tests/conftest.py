"""Pytest configuration for lzma_tarball tests."""

import tempfile
from pathlib import Path

import pytest

import lzma_tarball


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def scratch_dir(temp_dir):
    """Private directory for scratch tar containers."""
    path = temp_dir / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def source_tree(temp_dir):
    """A small directory tree with nested files and a log file."""
    root = temp_dir / "src"
    (root / "b" / "c").mkdir(parents=True)
    (root / "a.txt").write_bytes(b"alpha\n")
    (root / "b" / "beta.bin").write_bytes(bytes(range(256)) * 8)
    (root / "b" / "c" / "gamma.txt").write_bytes(b"gamma" * 1000)
    (root / "b" / "debug.log").write_bytes(b"noise\n")
    return root


@pytest.fixture
def make_archive(temp_dir, scratch_dir):
    """Compress a directory into an .tar.xz under temp_dir and return its path."""

    def _make(source, name="out.tar.xz", prefix=""):
        output = temp_dir / name
        (lzma_tarball.TarballWriter()
         .with_compression_level(1)
         .with_scratch_dir(scratch_dir)
         .with_output(output)
         .with_directory_contents(source, prefix)
         .compress())
        return output

    return _make
