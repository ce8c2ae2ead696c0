#
# logmgmt
#
# Scheduled housekeeping for server log and archive files: archive into a dated tree, clean up by age, prune rolling archives.
#
# Copyright (c) 2026 The logmgmt authors
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import errno
import os
import re
import secrets
import shutil
import socket
import stat
import sys
import tempfile
import traceback
import zipfile
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from os import stat_result
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, NoReturn, Optional, TextIO, no_type_check


VERSION: str = "dev-1.0.0"

SCRIPT_START = datetime.now().timestamp()

MILLISECONDS_PER_DAY: int = 24 * 60 * 60 * 1000

DEFAULT_HOST: str = "unknown"
DEFAULT_APPLICATION: str = "default"
DEFAULT_SERVER_GROUP: str = "gateway"
DEFAULT_OUTPUT_DELAY: int = 5
DEFAULT_ARCHIVES_TO_KEEP: int = 5
DEFAULT_ARCHIVE_DIR_PATTERN: str = "archive"
DEFAULT_ARCHIVE_FILE_PATTERN: str = "*.crl"

TEMP_FILENAME_LENGTH: int = 8
PATH_SEPARATOR: str = "/"

# Fixed English abbreviations, independent of the process locale
MONTH_ABBREVIATIONS: tuple[str, ...] = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

# Properties file keys
APPLICATION_NAME: str = "application.name"
INPUT_FILE_DELETE: str = "input.file.delete"
INPUT_PATH: str = "input.path"
INPUT_PATTERN: str = "input.pattern"
OUTPUT_COMPRESS: str = "output.compress"
OUTPUT_DELAY: str = "output.delay"
OUTPUT_BASE_PATH: str = "output.path"


class LogMgmtError(Exception):
    pass


class ConfigurationError(LogMgmtError):
    pass


class InputError(ConfigurationError):
    pass


class AttributeReadError(LogMgmtError):
    pass


class OutputError(LogMgmtError):
    pass


class DestinationError(OutputError):
    pass


class TransferError(OutputError):
    pass


class ConfigNamespace(SimpleNamespace):
    pass


class FileStats:
    """Lazily read, per-run cache of file attributes. Every file is stat'ed at most once."""

    age_type: str
    _file_stats_cache: dict[Path, stat_result]

    def __init__(self, age_type: str = "mtime") -> None:
        self.age_type = age_type
        self._file_stats_cache = {}

    def stat(self, file: Path) -> stat_result:
        if file not in self._file_stats_cache:
            try:
                self._file_stats_cache[file] = file.stat()
            except OSError as e:
                raise AttributeReadError(f"Unable to read the attributes of '{file}': {e}") from e
        return self._file_stats_cache[file]

    def is_cached(self, file: Path) -> bool:
        return file in self._file_stats_cache

    def _get_millis(self, file: Path, attribute: str) -> Optional[int]:
        file_stat = self.stat(file)
        nanos = getattr(file_stat, f"st_{attribute}_ns", None)
        if nanos is not None:
            return int(nanos) // 1_000_000
        seconds = getattr(file_stat, f"st_{attribute}", None)  # st_birthtime is missing on many platforms
        return None if seconds is None else int(seconds * 1000)

    def get_file_millis(self, file: Path) -> Optional[int]:
        return self._get_millis(file, self.age_type)

    def get_modified_millis(self, file: Path) -> int:
        return int(self._get_millis(file, "mtime") or 0)

    def get_file_bytes(self, file: Path) -> int:
        return self.stat(file).st_size

    def is_dir(self, file: Path) -> bool:
        return stat.S_ISDIR(self.stat(file).st_mode)


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        try:
            return next(m for m in cls if m.name.startswith(prefix.upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)


class Logger:
    _level: LogLevel
    _file_stats: FileStats
    _decisions: dict[Path, list[tuple[str, Optional[str]]]]

    def __init__(self, level: LogLevel, file_stats: FileStats) -> None:
        self._level = level
        self._file_stats = file_stats
        self._decisions = defaultdict(list)

    def _get_file_attributes(self, file: Path) -> str:
        if not self._file_stats.is_cached(file):  # never stat here, the file may be gone already
            return "attributes: n/a"
        modified = datetime.fromtimestamp(self._file_stats.get_modified_millis(file) / 1000)
        return f"mtime: {modified}, size: {ModernStrictArgumentParser.format_size(self._file_stats.get_file_bytes(file))}"

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._level)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=file or sys.stderr)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def add_decision(self, level: LogLevel, file: Path, message: str, debug: Optional[str] = None, pos: int = 0) -> None:
        if not self.has_log_level(level):
            return
        if self.has_log_level(LogLevel.DEBUG):  # Decision history and file details only with debug log level
            details = ", ".join(d for d in (debug, self._get_file_attributes(file)) if d)
            self._decisions[file].insert(pos, (message, details))
        elif self._decisions[file]:
            self._decisions[file][0] = (message, None)
        else:
            self._decisions[file].insert(0, (message, None))

    def get_decision(self, file: Path) -> Optional[str]:
        decisions = self._decisions.get(file)
        return decisions[0][0] if decisions else None

    def _format_decision(self, decision: tuple[str, Optional[str]]) -> str:
        message, debug = decision
        return message + (f" ({debug})" if debug is not None else "")

    def print_decisions(self) -> None:
        if not self._decisions:
            return
        longest_file_name_length = max(len(str(p)) for p in self._decisions)
        for file in sorted(self._decisions, key=str):
            decisions = self._decisions[file]
            if not decisions:
                continue
            self._raw_verbose(LogLevel.INFO, f"{str(file):<{longest_file_name_length}}: {self._format_decision(decisions[0])}")
            if not self.has_log_level(LogLevel.DEBUG):
                continue
            for idx, decision in enumerate(decisions[1:]):
                self._raw_verbose(LogLevel.DEBUG, f"{' ' * ((longest_file_name_length + 2) + idx * 4)}└── {self._format_decision(decision)}")


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=36, width=160, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


class ModernStrictArgumentParser(argparse.ArgumentParser):
    @no_type_check
    def __init__(self, *a, non_blank=(), **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, **kw)
        self._errors: list[str] = []
        self._non_blank: tuple[str, ...] = tuple(non_blank)

    def add_error(self, msg: str) -> None:
        if msg not in self._errors:
            self._errors.append(msg)

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        print("\nError(s):", file=sys.stderr)
        for line in message.split("\n"):
            print(f"  • {line}", file=sys.stderr)
        print(f"\nHint: Try '{self.prog} --help' for more information.", file=sys.stderr)
        sys.exit(1)

    # Argument type helpers
    def positive_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value <= 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer > 0")
        return int_value

    def non_negative_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value < 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer >= 0")
        return int_value

    def verbose_argument(self, value: str) -> LogLevel:
        try:
            return LogLevel.from_name_or_number(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

    @staticmethod
    def format_size(bytes: int) -> str:
        units = ["", "K", "M", "G", "T", "E", "P"]
        idx, value = 0, float(bytes)
        while value >= 1024 and idx < len(units) - 1:
            value /= 1024
            idx += 1
        return f"{value:.2f}".rstrip("0").rstrip(".") + units[idx]

    # Internal helper methods
    def _suggest(self, argument: str) -> list[str]:
        opts = [o for a in self._actions for o in a.option_strings if o.startswith("--")]
        cand = [o for o in opts if abs(len(o) - len(argument)) <= 2 and sum(a != b for a, b in zip(o, argument)) <= 2]
        return cand[:1]

    @no_type_check
    def _collect_raw_args(self, args):  # noqa: ANN202, ANN001
        if args is not None:
            return list(args)
        return sys.argv[1:]  # default argparse behavior

    @no_type_check
    def _detect_duplicate_flags(self, raw_args) -> None:  # noqa: ANN001
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if not tok.startswith("-"):
                continue

            # Extract option (handles -V3, -V=3, --age=5)
            opt = tok.split("=", 1)[0]

            # Handle -V3 → -V
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        # Default verbosity, if none given
        if ns.verbose is None:
            ns.verbose = LogLevel.INFO

        # test mode implies info output, otherwise it is silent
        if ns.test and ns.verbose < LogLevel.INFO:
            ns.verbose = LogLevel.INFO

        for dest in self._non_blank:
            value = getattr(ns, dest, None)
            if value is None or not str(value).strip():
                self.add_error(f"--{dest.replace('_', '-')} was blank or not supplied")

    # Main hook
    @no_type_check
    def parse_known_args(self, args=None, namespace=None) -> tuple[argparse.Namespace, list[str]]:  # noqa: ANN001
        self._errors = []
        raw_args = self._collect_raw_args(args)
        self._detect_duplicate_flags(raw_args)

        ns, unknown = super().parse_known_args(raw_args, namespace or argparse.Namespace())

        if unknown:
            sug = self._suggest(unknown[0])
            if sug:
                self.add_error(f"Unknown option: {unknown[0]} (did you mean {sug[0]}?)")
            else:
                self.add_error(f"Unknown option: {unknown[0]}")

        self._validate_arguments(ns)

        if self._errors:
            msg = "\n".join(f"{e}" for e in self._errors)
            self.error(msg)

        return ns, unknown


def _add_common_arguments(parser: ModernStrictArgumentParser) -> None:
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    # fmt: off
    g_behavior.add_argument("--test", "--dry-run", "-X", action="store_true", help="Show planned actions but do not modify any files")
    g_behavior.add_argument("--verbose", "-V", "-v", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.INFO, metavar="lev",
        help="Verbosity level: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'info'; use numbers or names)")
    # fmt: on

    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-h", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)


def create_archive_parser() -> ModernStrictArgumentParser:
    parser = ModernStrictArgumentParser(
        prog="logmgmt",
        description=f"logmgmt {VERSION}\n\nMove (or zip) aged log files into a dated, host-qualified archive tree",
        usage="logmgmt --properties-file FILE [options]\n\nExample:\n  logmgmt --properties-file /etc/logmgmt/server.properties --server-group web --custom-prefix node1",
        epilog="Files older than 'output.delay' days are moved out of 'input.path' unless --test is set.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
        non_blank=("properties_file",),
    )

    g_main = parser.add_argument_group("Main arguments")
    g_main.add_argument("--properties-file", "-p", required=True, metavar="FILE", help="Properties file defining input path/pattern and output settings")
    g_main.add_argument("--server-group", "-g", default=DEFAULT_SERVER_GROUP, metavar="GROUP", help=f"Server group used for organizing the output (default: {DEFAULT_SERVER_GROUP})")
    g_main.add_argument("--custom-prefix", "-c", default=None, metavar="PREFIX", help="Custom string added to the output filenames")
    g_main.add_argument("--base-override", "-b", default=None, metavar="DIR", help="Override the search directory ('input.path') of the properties file")

    _add_common_arguments(parser)
    return parser


def create_cleanup_parser() -> ModernStrictArgumentParser:
    parser = ModernStrictArgumentParser(
        prog="cleanup-files",
        description=f"cleanup-files {VERSION}\n\nDelete files older than a number of days from a directory tree",
        usage="cleanup-files --directory DIR --age DAYS [options]\n\nExample:\n  cleanup-files --directory /opt/wildfly/standalone/log --age 30",
        epilog="Use with caution!! This tool deletes files unless --test is set.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
        non_blank=("directory", "pattern"),
    )

    g_main = parser.add_argument_group("Main arguments")
    g_main.add_argument("--directory", "-d", required=True, metavar="DIR", help="Directory to monitor (searched recursively)")
    g_main.add_argument("--age", "-a", required=True, type=parser.positive_int_argument, metavar="DAYS", help="Delete all files older than this number of days")
    g_main.add_argument("--pattern", default="*", metavar="GLOB", help="Restrict deletes to files matching this glob pattern (default: '*')")
    g_main.add_argument("--age-type", choices=["birthtime", "mtime", "ctime"], default="birthtime", metavar="time", help="Time attribute used for the file age (default: birthtime)")

    _add_common_arguments(parser)
    return parser


def create_prune_parser() -> ModernStrictArgumentParser:
    parser = ModernStrictArgumentParser(
        prog="cleanup-ves-archives",
        description=f"cleanup-ves-archives {VERSION}\n\nKeep only the most recent files in every rolling archive directory",
        usage="cleanup-ves-archives --search-loc DIR [options]\n\nExample:\n  cleanup-ves-archives --search-loc /opt/valicert --keep 5",
        epilog="Use with caution!! This tool deletes files unless --test is set.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
        non_blank=("search_loc", "archive_dir", "pattern"),
    )

    g_main = parser.add_argument_group("Main arguments")
    g_main.add_argument("--search-loc", "-s", required=True, metavar="DIR", help="Starting location for the archive directory search")
    g_main.add_argument("--keep", "-k", type=parser.non_negative_int_argument, default=DEFAULT_ARCHIVES_TO_KEEP, metavar="N", help=f"Number of most recent files to keep (default: {DEFAULT_ARCHIVES_TO_KEEP})")
    g_main.add_argument("--archive-dir", default=DEFAULT_ARCHIVE_DIR_PATTERN, metavar="GLOB", help=f"Name (glob) of the archive directories (default: '{DEFAULT_ARCHIVE_DIR_PATTERN}')")
    g_main.add_argument("--pattern", default=DEFAULT_ARCHIVE_FILE_PATTERN, metavar="GLOB", help=f"Glob pattern of the archived files (default: '{DEFAULT_ARCHIVE_FILE_PATTERN}')")

    _add_common_arguments(parser)
    return parser


def parse_arguments(parser: ModernStrictArgumentParser, argv: Optional[Sequence[str]] = None) -> ConfigNamespace:
    args = parser.parse_args(argv)
    return ConfigNamespace(**vars(args))


def load_properties(filename: str) -> dict[str, str]:
    try:
        text = Path(filename).read_text(encoding="latin-1")
    except FileNotFoundError:
        raise ConfigurationError(f"Identified properties file '{filename}' does not exist")
    except OSError as e:
        raise ConfigurationError(f"Unable to load the properties file '{filename}': {e}") from e
    return parse_properties(text)


_PROPERTY_RE = re.compile(r"((?:\\.|[^\\=:\s])*)\s*[=:]?\s*(.*)", re.DOTALL)
_PROPERTY_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _unescape_property(value: str) -> str:
    return re.sub(r"\\(.)", lambda m: _PROPERTY_ESCAPES.get(m.group(1), m.group(1)), value)


def _split_property(line: str) -> tuple[str, str]:
    match = _PROPERTY_RE.fullmatch(line)
    if match is None:
        raise ConfigurationError(f"Unable to parse the property line '{line}'")
    return _unescape_property(match.group(1)), _unescape_property(match.group(2))


def parse_properties(text: str) -> dict[str, str]:
    """Parse java.util.Properties style text (``key=value``, ``key: value`` or ``key value``)."""
    properties: dict[str, str] = {}
    logical = ""
    for raw_line in text.splitlines():
        line = raw_line.lstrip()
        if not logical and (not line or line[0] in "#!"):
            continue
        if (len(line) - len(line.rstrip("\\"))) % 2 == 1:  # odd number of trailing backslashes continues the line
            logical += line[:-1]
            continue
        key, value = _split_property(logical + line)
        properties[key] = value
        logical = ""
    if logical:
        key, value = _split_property(logical)
        properties[key] = value
    return properties


@dataclass(frozen=True)
class ArchiveConfig:
    base_path: str
    server_group: str = DEFAULT_SERVER_GROUP
    application: str = DEFAULT_APPLICATION
    custom_prefix: Optional[str] = None
    compress: bool = False
    output_delay_days: int = DEFAULT_OUTPUT_DELAY

    def __post_init__(self) -> None:
        if not self.base_path or not self.base_path.strip():
            raise ConfigurationError(f"The required property '{OUTPUT_BASE_PATH}' was not supplied")
        if self.output_delay_days < 0:
            raise ConfigurationError(f"The property '{OUTPUT_DELAY}' must be >= 0, value supplied: {self.output_delay_days}")

    @classmethod
    def from_properties(cls, properties: dict[str, str], server_group: Optional[str], custom_prefix: Optional[str], logger: Logger) -> "ArchiveConfig":
        application = (properties.get(APPLICATION_NAME) or "").strip().lower()
        if not application:
            logger.verbose(LogLevel.WARN, f"Input application name is empty, using '{DEFAULT_APPLICATION}'")
            application = DEFAULT_APPLICATION

        delay_value = (properties.get(OUTPUT_DELAY) or "").strip()
        try:
            delay = int(delay_value) if delay_value else DEFAULT_OUTPUT_DELAY
        except ValueError:
            raise ConfigurationError(f"The property '{OUTPUT_DELAY}' must be an integer, value supplied: '{delay_value}'")

        return cls(
            base_path=(properties.get(OUTPUT_BASE_PATH) or "").strip(),
            server_group=(server_group or "").strip().lower() or DEFAULT_SERVER_GROUP,
            application=application,
            custom_prefix=(custom_prefix or "").strip() or None,
            compress=(properties.get(OUTPUT_COMPRESS) or "").strip().lower() == "true",
            output_delay_days=delay,
        )


def find_files(root: Path, pattern: str) -> list[Path]:
    """Find entries below ``root`` matching the glob ``pattern``.

    A plain name pattern (``*.log``, ``archive``) is matched against entry names at any depth, files and
    directories alike. A pattern with a path component (``logs/*.log``, ``**/*.gz``) is applied relative to
    ``root`` with pathlib glob semantics.
    """
    if PATH_SEPARATOR in pattern or "**" in pattern:
        matches = root.glob(pattern)
    else:
        matches = root.rglob(pattern)
    return sorted(p for p in matches if p != root)


class CandidateSource:
    """Root path + glob pattern, optionally narrowed by ``accept`` and ordered by ``order``."""

    root: Path
    pattern: str

    def __init__(
        self,
        root: Optional[str],
        pattern: Optional[str],
        logger: Logger,
        accept: Optional[Callable[[Path], bool]] = None,
        order: Optional[Callable[[list[Path]], list[Path]]] = None,
    ) -> None:
        if root is None or not root.strip():
            raise InputError(f"The required input path ('{INPUT_PATH}') was not supplied")
        if pattern is None or not pattern.strip():
            raise InputError(f"The required glob pattern ('{INPUT_PATTERN}') was not supplied")
        path = Path(root)
        if not path.exists():
            raise InputError(f"The input path '{root}' does not exist")
        if not path.is_dir():
            raise InputError(f"The input path '{root}' is not a directory")
        self.root = path
        self.pattern = pattern
        self._logger = logger
        self._accept = accept
        self._order = order

    def find(self) -> list[Path]:
        self._logger.verbose(LogLevel.INFO, f"Searching '{self.root}' for files matching glob '{self.pattern}'")
        try:
            matches = find_files(self.root, self.pattern)
        except OSError as e:
            self._logger.verbose(LogLevel.ERROR, f"Unexpected error while searching '{self.root}' for candidate files: {e}")
            return []
        if self._accept is not None:
            matches = [m for m in matches if self._accept(m)]
        if not matches:
            self._logger.verbose(LogLevel.WARN, f"Unable to find a file in '{self.root}' matching glob '{self.pattern}'")
            return []
        self._logger.verbose(LogLevel.DEBUG, "Files found: " + ", ".join(f'"{p}"' for p in matches))
        return self._order(matches) if self._order is not None else matches


def is_eligible_for_cleanup(file: Path, age_days: int, now: float, file_stats: FileStats, logger: Logger) -> bool:
    if file_stats.is_dir(file):
        logger.add_decision(LogLevel.DEBUG, file, "Skipping: directory")
        return False
    created = file_stats.get_file_millis(file)
    if created is None:
        logger.verbose(LogLevel.WARN, f"Unable to obtain the file {file_stats.age_type} for '{file}', it will not be deleted")
        logger.add_decision(LogLevel.WARN, file, f"Skipping: {file_stats.age_type} unavailable")
        return False
    if int(now * 1000) - created > age_days * MILLISECONDS_PER_DAY:
        return True
    logger.add_decision(LogLevel.INFO, file, f"Keeping: not older than {age_days} days", debug=f"{file_stats.age_type}: {datetime.fromtimestamp(created / 1000)}")
    return False


def get_age_in_days(file: Path, now: float, file_stats: FileStats) -> int:
    return int((int(now * 1000) - file_stats.get_modified_millis(file)) / MILLISECONDS_PER_DAY)  # truncated toward zero


def is_ready_for_archive(file: Path, delay_days: int, now: float, file_stats: FileStats, logger: Logger) -> bool:
    age = get_age_in_days(file, now, file_stats)
    if age >= delay_days:
        return True
    logger.add_decision(LogLevel.INFO, file, f"Skipping: not old enough to archive ({age} < {delay_days} days)")
    return False


def sort_files_oldest_first(files: Iterable[Path], file_stats: FileStats, logger: Optional[Logger] = None) -> list[Path]:
    readable: list[Path] = []
    for file in files:
        try:
            file_stats.stat(file)
        except AttributeReadError as e:
            if logger is not None:
                logger.verbose(LogLevel.WARN, f"{e}, file will be skipped")
            continue
        readable.append(file)
    return sorted(readable, key=file_stats.get_modified_millis)  # sorted() is stable, ties keep enumeration order


def select_for_removal(files: Sequence[Path], keep: int) -> list[Path]:
    if len(files) <= keep:
        return []
    return list(files[: len(files) - keep])


def get_host_name(logger: Optional[Logger] = None) -> str:
    try:
        host = socket.getfqdn()
    except OSError as e:
        if logger is not None:
            logger.verbose(LogLevel.WARN, f"Unable to determine the local host name, using '{DEFAULT_HOST}': {e}")
        return DEFAULT_HOST
    if not host:
        return DEFAULT_HOST
    return host[: host.index(".")] if host.find(".") > 0 else host


def strip_version(extension: str) -> str:
    return re.sub(r"-[0-9]+$", "", extension)


def split_extension(filename: str) -> tuple[str, str]:
    pos = filename.rfind(".")
    if pos <= 0:
        return filename, ""
    return filename[:pos], strip_version(filename[pos + 1 :])


_posix_permissions_cache: dict[Path, bool] = {}


def _nearest_existing_directory(path: str) -> Path:
    directory = Path(path)
    while not directory.is_dir() and directory != directory.parent:
        directory = directory.parent
    return directory


def _keeps_permission_bits(directory: Path) -> bool:
    try:
        with tempfile.NamedTemporaryFile(dir=directory, prefix=".logmgmt-") as probe:
            for mode in (0o640, 0o604):
                os.chmod(probe.name, mode)
                if stat.S_IMODE(os.stat(probe.name).st_mode) != mode:
                    return False
    except OSError:
        return False
    return True


def supports_posix_permissions(path: str) -> bool:
    """Check whether the filesystem holding ``path`` keeps POSIX permission bits.

    The nearest existing ancestor of ``path`` is probed with a temporary file; the answer is
    cached per probed directory for the rest of the run.
    """
    directory = _nearest_existing_directory(path)
    if directory not in _posix_permissions_cache:
        _posix_permissions_cache[directory] = _keeps_permission_bits(directory)
    return _posix_permissions_cache[directory]


def _exists(path: str) -> bool:
    try:
        os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return False
    return True


def version_filename(path: str, base: str, extension: str, claimed: Iterable[str] = ()) -> str:
    claimed = set(claimed)
    candidate, version = base, 0
    while path + candidate + extension in claimed or _exists(path + candidate + extension):
        version += 1
        candidate = f"{base}-{version}"
    return candidate + extension


def compute_destination(file: Path, config: ArchiveConfig, file_stats: FileStats, host: str, claimed: Iterable[str] = ()) -> tuple[str, str]:
    """Return ``(path, filename)`` for ``file`` inside the archive tree.

    ``path`` is ``base/group/application/YYYY/Mon/`` (always ``/`` separated), ``filename`` is
    ``host_[prefix_]stem_YYYYMMDD[-N].ext``. Neither ``path + filename`` on disk nor any entry of ``claimed``
    is returned. Nothing is created.
    """
    modified = datetime.fromtimestamp(file_stats.get_modified_millis(file) / 1000)

    path = config.base_path if config.base_path.endswith(PATH_SEPARATOR) else config.base_path + PATH_SEPARATOR
    path += PATH_SEPARATOR.join([config.server_group, config.application, f"{modified.year:04d}", MONTH_ABBREVIATIONS[modified.month - 1]])
    path += PATH_SEPARATOR

    stem, extension = split_extension(file.name)
    parts = [host]
    if config.custom_prefix:
        parts.append(config.custom_prefix)
    parts += [stem, f"{modified.year:04d}{modified.month:02d}{modified.day:02d}"]

    if config.compress:
        extension = ".zip"
    elif extension:
        extension = "." + extension

    return path, version_filename(path, "_".join(parts), extension, claimed)


def ensure_destination_path(path: str) -> None:
    try:
        if supports_posix_permissions(path):
            os.makedirs(path, mode=0o755, exist_ok=True)
        else:
            os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise DestinationError(f"Unable to create the destination path '{path}': {e}") from e


def intermediate_path() -> str:
    return str(Path(tempfile.gettempdir()) / f"{secrets.token_hex(TEMP_FILENAME_LENGTH // 2)}.zip")


def move_file(source: Path, destination: str) -> None:
    try:
        try:
            os.replace(source, destination)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            shutil.copy2(source, destination)  # across filesystems: copy, then drop the source
            source.unlink()
    except OSError as e:
        raise TransferError(f"Unable to move '{source}' to '{destination}': {e}") from e


def _discard_partial_archive(archive: str, logger: Logger) -> None:
    try:
        Path(archive).unlink(missing_ok=True)
    except OSError as e:
        logger.verbose(LogLevel.WARN, f"Unable to remove partial archive '{archive}': {e}")


def write_archive(source: Path, archive: str, logger: Logger) -> None:
    try:
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False) as zip_file:
            zip_file.write(source, arcname=source.name)
    except OSError as e:
        _discard_partial_archive(archive, logger)
        raise TransferError(f"Unable to write '{source}' into zip file '{archive}': {e}") from e


def compress_file(source: Path, destination: str, logger: Logger, intermediate: Optional[str] = None) -> None:
    """Zip ``source`` into ``destination``, optionally building the zip at ``intermediate`` first.

    The source is removed only after the archive is complete at its destination.
    """
    write_archive(source, intermediate or destination, logger)
    if intermediate is not None:
        logger.verbose(LogLevel.DEBUG, f"Moving intermediate archive '{intermediate}' to '{destination}'")
        try:
            move_file(Path(intermediate), destination)
        except TransferError:
            _discard_partial_archive(intermediate, logger)
            raise
    try:
        source.unlink()
    except OSError as e:
        raise TransferError(f"'{source}' was archived to '{destination}' but could not be removed: {e}") from e


@dataclass
class RunSummary:
    candidates: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    bytes_recovered: int = 0

    def log(self, logger: Logger, action: str) -> None:
        logger.verbose(LogLevel.INFO, f"Total files found:    {self.candidates:03d}")
        logger.verbose(LogLevel.INFO, f"Total files {action + ':':<10}{self.processed:03d}")
        logger.verbose(LogLevel.INFO, f"Total files skipped:  {self.skipped:03d}")
        logger.verbose(LogLevel.INFO, f"Total files failed:   {self.failed:03d}")


@dataclass
class PlannedTransfer:
    source: Path
    path: str
    filename: str

    @property
    def destination(self) -> str:
        return self.path + self.filename


class Archiver:
    _config: ArchiveConfig
    _logger: Logger
    _file_stats: FileStats
    _dry_run: bool
    _now: float
    _host: str

    def __init__(self, config: ArchiveConfig, logger: Logger, file_stats: FileStats, dry_run: bool = False, now: Optional[float] = None, host: Optional[str] = None) -> None:
        self._config = config
        self._logger = logger
        self._file_stats = file_stats
        self._dry_run = dry_run
        self._now = SCRIPT_START if now is None else now
        self._host = host or get_host_name(logger)

    def _fail(self, file: Path, summary: RunSummary, level: LogLevel, error: Exception) -> None:
        self._logger.verbose(level, f"{error}, file will be skipped")
        self._logger.add_decision(level, file, f"Failed: {error}")
        summary.failed += 1

    def plan(self, candidates: Sequence[Path]) -> tuple[list[PlannedTransfer], RunSummary]:
        summary = RunSummary(candidates=len(candidates))
        claimed: set[str] = set()
        transfers: list[PlannedTransfer] = []
        action = "Compressing" if self._config.compress else "Moving"
        for file in candidates:
            try:
                if not is_ready_for_archive(file, self._config.output_delay_days, self._now, self._file_stats, self._logger):
                    summary.skipped += 1
                    continue
                path, filename = compute_destination(file, self._config, self._file_stats, self._host, claimed)
            except AttributeReadError as e:
                self._fail(file, summary, LogLevel.WARN, e)
                continue
            except OSError as e:  # the destination existence check itself failed
                self._fail(file, summary, LogLevel.ERROR, e)
                continue
            claimed.add(path + filename)
            self._logger.add_decision(LogLevel.INFO, file, f"{action} to '{path}{filename}'", debug=f"age: {get_age_in_days(file, self._now, self._file_stats)} days")
            transfers.append(PlannedTransfer(file, path, filename))
        return transfers, summary

    def transfer(self, transfer: PlannedTransfer) -> None:
        action = "COMPRESS" if self._config.compress else "MOVE"
        if self._dry_run:
            self._logger.verbose(LogLevel.INFO, f"DRY-RUN {action}: {transfer.source} -> {transfer.destination}")
            return
        ensure_destination_path(transfer.path)
        self._logger.verbose(LogLevel.INFO, f"{action}: {transfer.source} -> {transfer.destination}")
        if not self._config.compress:
            move_file(transfer.source, transfer.destination)
        elif supports_posix_permissions(transfer.path):
            compress_file(transfer.source, transfer.destination, self._logger)
        else:  # zip creation on remote shares is unreliable there, build locally first
            compress_file(transfer.source, transfer.destination, self._logger, intermediate=intermediate_path())

    def process(self, candidates: Sequence[Path]) -> RunSummary:
        transfers, summary = self.plan(candidates)
        self._logger.print_decisions()
        for transfer in transfers:
            try:
                self.transfer(transfer)
            except OutputError as e:
                self._logger.verbose(LogLevel.ERROR, f"{e}, file will be skipped")
                summary.failed += 1
                continue
            summary.processed += 1
        summary.log(self._logger, "archived")
        return summary


def run_deletion(file: Path, logger: Logger, file_stats: FileStats, dry_run: bool) -> bool:
    time = datetime.fromtimestamp(file_stats.get_modified_millis(file) / 1000)
    if dry_run:
        logger.verbose(LogLevel.INFO, f"DRY-RUN DELETE: {file} (mtime: {time})")  # Just simulate deletion
        return True
    logger.verbose(LogLevel.INFO, f"DELETING: {file} (mtime: {time})")
    try:
        file.unlink()
    except OSError as e:  # Catch deletion error, print it, and continue
        logger.verbose(LogLevel.WARN, f"Error while deleting file '{file}': {e}")
        return False
    return True


def delete_files(files: Iterable[Path], logger: Logger, file_stats: FileStats, dry_run: bool, summary: RunSummary) -> None:
    for file in files:
        try:
            size = file_stats.get_file_bytes(file)  # sampled before the file is gone
        except AttributeReadError as e:
            logger.verbose(LogLevel.WARN, f"{e}, file will be skipped")
            summary.failed += 1
            continue
        if run_deletion(file, logger, file_stats, dry_run):
            summary.processed += 1
            summary.bytes_recovered += size
        else:
            summary.failed += 1


def cleanup_files(source: CandidateSource, age_days: int, logger: Logger, file_stats: FileStats, dry_run: bool = False, now: Optional[float] = None) -> RunSummary:
    now = SCRIPT_START if now is None else now
    candidates = source.find()
    summary = RunSummary(candidates=len(candidates))
    eligible: list[Path] = []
    for file in candidates:
        try:
            if not is_eligible_for_cleanup(file, age_days, now, file_stats, logger):
                summary.skipped += 1
                continue
        except AttributeReadError as e:
            logger.verbose(LogLevel.WARN, f"{e}, file will be skipped")
            logger.add_decision(LogLevel.WARN, file, "Failed: attributes unavailable")
            summary.failed += 1
            continue
        logger.add_decision(LogLevel.INFO, file, f"Deleting: older than {age_days} days")
        eligible.append(file)

    logger.print_decisions()
    delete_files(eligible, logger, file_stats, dry_run, summary)

    summary.log(logger, "deleted")
    logger.verbose(LogLevel.INFO, f"Recovered {ModernStrictArgumentParser.format_size(summary.bytes_recovered)} ({summary.bytes_recovered} bytes)")
    return summary


def prune_archives(
    search_loc: str,
    keep: int,
    logger: Logger,
    file_stats: FileStats,
    dry_run: bool = False,
    dir_pattern: str = DEFAULT_ARCHIVE_DIR_PATTERN,
    file_pattern: str = DEFAULT_ARCHIVE_FILE_PATTERN,
) -> RunSummary:
    summary = RunSummary()
    directories = CandidateSource(search_loc, dir_pattern, logger, accept=Path.is_dir).find()
    if not directories:
        logger.verbose(LogLevel.WARN, "There are no candidate archive directories to process")
        return summary

    # A file belongs to its nearest archive directory only, nested archive directories never share files
    owners = set(directories)
    to_remove: list[Path] = []
    for directory in directories:

        def is_owned_file(file: Path, directory: Path = directory) -> bool:
            return file.is_file() and next((p for p in file.parents if p in owners), None) == directory

        try:
            source = CandidateSource(str(directory), file_pattern, logger, accept=is_owned_file, order=lambda files: sort_files_oldest_first(files, file_stats, logger))
        except InputError as e:  # vanished since the directory search
            logger.verbose(LogLevel.WARN, str(e))
            continue
        files = source.find()
        if not files:
            logger.verbose(LogLevel.INFO, f"There are no archived files for removal in '{directory}'")
            continue

        summary.candidates += len(files)
        removals = select_for_removal(files, keep)
        summary.skipped += len(files) - len(removals)
        logger.verbose(LogLevel.DEBUG, f"There were {len(files)} archived files in '{directory}', deleting {len(removals)}")
        for index, file in enumerate(reversed(files[len(removals) :]), start=1):
            logger.add_decision(LogLevel.INFO, file, f"Keeping last {index:02d}/{keep:02d}")
        for file in removals:
            logger.add_decision(LogLevel.INFO, file, f"Pruning: older than the {keep} most recent files")
        to_remove.extend(removals)

    logger.print_decisions()
    delete_files(to_remove, logger, file_stats, dry_run, summary)

    summary.log(logger, "pruned")
    logger.verbose(LogLevel.INFO, f"Recovered {ModernStrictArgumentParser.format_size(summary.bytes_recovered)} ({summary.bytes_recovered} bytes)")
    return summary


def _is_within(path: Path, base: Path) -> bool:
    try:
        path.resolve().relative_to(base)
    except ValueError:
        return False
    return True


def run_archive(args: ConfigNamespace, logger: Logger, file_stats: FileStats) -> RunSummary:
    properties = load_properties(args.properties_file)
    if not properties:
        raise ConfigurationError(f"Error reading the input properties file '{args.properties_file}', no properties found")

    input_path = properties.get(INPUT_PATH)
    if args.base_override:
        logger.verbose(LogLevel.WARN, f"Client modified search path base from '{input_path}' to '{args.base_override}'")
        input_path = args.base_override

    config = ArchiveConfig.from_properties(properties, args.server_group, args.custom_prefix, logger)
    output_base = Path(config.base_path).resolve()
    source = CandidateSource(input_path, properties.get(INPUT_PATTERN), logger, accept=lambda p: p.is_file() and not _is_within(p, output_base))
    logger.verbose(LogLevel.DEBUG, f"Archive configuration: {config}")

    candidates = source.find()
    if not candidates:
        logger.verbose(LogLevel.INFO, "There are no candidate input files to process")
        return RunSummary()
    return Archiver(config, logger, file_stats, dry_run=args.test).process(candidates)


def run_cleanup(args: ConfigNamespace, logger: Logger, file_stats: FileStats) -> RunSummary:
    source = CandidateSource(args.directory, args.pattern, logger)
    return cleanup_files(source, args.age, logger, file_stats, dry_run=args.test)


def run_prune(args: ConfigNamespace, logger: Logger, file_stats: FileStats) -> RunSummary:
    return prune_archives(args.search_loc, args.keep, logger, file_stats, dry_run=args.test, dir_pattern=args.archive_dir, file_pattern=args.pattern)


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    sys.exit(exit_code)


def _run(parser: ModernStrictArgumentParser, runner: Callable[[ConfigNamespace, Logger, FileStats], RunSummary], argv: Optional[Sequence[str]] = None) -> None:
    args: Optional[ConfigNamespace] = None

    try:
        args = parse_arguments(parser, argv)

        file_stats = FileStats(getattr(args, "age_type", "mtime"))
        logger = Logger(args.verbose, file_stats)

        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")
        if args.test:
            logger.verbose(LogLevel.INFO, "*** TEST MODE *** no files will be modified")

        runner(args, logger, file_stats)

    except ConfigurationError as e:
        parser.print_usage(sys.stderr)
        handle_exception(e, 1, args.stacktrace if args is not None else True)
    except OSError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True)
    except Exception as e:
        handle_exception(e, 9, args.stacktrace if args is not None else True, prefix="UNEXPECTED ERROR")


def main(argv: Optional[Sequence[str]] = None) -> None:
    _run(create_archive_parser(), run_archive, argv)


def cleanup_main(argv: Optional[Sequence[str]] = None) -> None:
    _run(create_cleanup_parser(), run_cleanup, argv)


def prune_main(argv: Optional[Sequence[str]] = None) -> None:
    _run(create_prune_parser(), run_prune, argv)


if __name__ == "__main__":
    main()
