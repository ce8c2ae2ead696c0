import os
from pathlib import Path
from typing import Optional

from logmgmt import FileStats, Logger, LogLevel

# Fixed reference time (whole seconds), so day boundaries are exact
NOW: float = 1_700_000_000.0
DAY: int = 24 * 60 * 60


def set_mtime(file: Path, seconds: float) -> None:
    ns = int(seconds) * 1_000_000_000
    os.utime(file, ns=(ns, ns))


def make_file(directory: Path, name: str, content: str = "x", age_days: Optional[float] = None, now: float = NOW) -> Path:
    file = directory / name
    file.parent.mkdir(parents=True, exist_ok=True)
    file.write_text(content)
    if age_days is not None:
        set_mtime(file, now - age_days * DAY)
    return file


def make_logger(level: LogLevel = LogLevel.INFO, age_type: str = "mtime") -> tuple[Logger, FileStats]:
    file_stats = FileStats(age_type)
    return Logger(level, file_stats), file_stats
