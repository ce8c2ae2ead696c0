"""Tests for FileStats and the oldest-first sorting helper."""

import os
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

from logmgmt import AttributeReadError, FileStats, sort_files_oldest_first


def test_file_stats_cache_and_sort_files(tmp_path: Path) -> None:
    """FileStats should cache file size and timestamps and sort_files_oldest_first should put the oldest first."""
    file_new = tmp_path / "new.txt"
    file_old = tmp_path / "old.txt"
    file_new.write_text("new")
    file_old.write_text("older")

    now = int(time.time())
    old_time = now - 60
    os.utime(file_new, (now, now))
    os.utime(file_old, (old_time, old_time))

    cache = FileStats("mtime")
    assert cache.get_file_millis(file_old) == old_time * 1000
    assert cache.get_modified_millis(file_new) == now * 1000
    assert cache.get_file_bytes(file_old) == len("older")

    assert sort_files_oldest_first([file_new, file_old], cache) == [file_old, file_new]


def test_sort_is_stable_for_equal_timestamps(tmp_path: Path) -> None:
    """Files with identical mtimes must keep their enumeration order."""
    files = [tmp_path / f"f{i}.crl" for i in range(5)]
    for f in files:
        f.write_text("x")
        os.utime(f, (1000, 1000))

    enumeration = [files[3], files[0], files[4], files[1], files[2]]
    assert sort_files_oldest_first(enumeration, FileStats("mtime")) == enumeration


def test_stats_are_sampled_once(tmp_path: Path) -> None:
    """A cached stat survives the file being removed."""
    file = tmp_path / "gone.log"
    file.write_text("12345")
    cache = FileStats("mtime")
    assert cache.get_file_bytes(file) == 5
    file.unlink()
    assert cache.get_file_bytes(file) == 5
    assert cache.is_cached(file)


def test_missing_file_raises_attribute_read_error(tmp_path: Path) -> None:
    with pytest.raises(AttributeReadError, match="missing.log"):
        FileStats("mtime").stat(tmp_path / "missing.log")


def test_unavailable_birthtime_returns_none(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Without st_birthtime on the stat result the creation time is unknown (None)."""
    file = tmp_path / "a.log"
    file.write_text("a")
    real = file.stat()
    fake = SimpleNamespace(st_mtime=real.st_mtime, st_mtime_ns=real.st_mtime_ns, st_size=real.st_size, st_mode=real.st_mode)
    monkeypatch.setattr(Path, "stat", lambda self, **kw: fake)

    cache = FileStats("birthtime")
    assert cache.get_file_millis(file) is None
    assert cache.get_modified_millis(file) == real.st_mtime_ns // 1_000_000


def test_sort_skips_unreadable_files(tmp_path: Path) -> None:
    present = tmp_path / "present.crl"
    present.write_text("x")
    assert sort_files_oldest_first([tmp_path / "absent.crl", present], FileStats("mtime")) == [present]
