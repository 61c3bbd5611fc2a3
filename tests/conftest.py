import os
from pathlib import Path

import pytest


class FakeExtractor:
    """Stands in for 7z/unar: writes the given files into the output dir."""

    def __init__(self, name="fake", succeed=True, produce=("Movie.mkv",), accept=None):
        self.name = name
        self.succeed = succeed
        self.produce = tuple(produce)
        self.accept = set(accept) if accept is not None else None
        self.calls = []

    def extract(self, archive: Path, out_dir: Path) -> bool:
        self.calls.append(archive)
        if not self.succeed:
            return False
        if self.accept is not None and archive.name not in self.accept:
            return False
        for name in self.produce:
            target = out_dir / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(b"video")
        return True


class FakeSorter:
    def __init__(self, results=True):
        self.results = results
        self.calls = []

    def sort(self, source_dir, kind, query_hint, output_root) -> bool:
        self.calls.append((source_dir, kind, query_hint, output_root))
        if isinstance(self.results, list):
            return self.results.pop(0)
        return self.results


@pytest.fixture
def make_extractor():
    return FakeExtractor


@pytest.fixture
def make_sorter():
    return FakeSorter


@pytest.fixture
def recording_sleep():
    delays = []

    def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def write_member():
    """Create an archive member with a fixed size and mtime."""

    def _write(path: Path, size: int = 10, mtime: int = 1_600_000_000) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * size)
        os.utime(path, (mtime, mtime))
        return path

    return _write
