#!/usr/bin/env python3
"""
Blame Report - per-line authorship report for files tracked by git (v1.0.0)

For every line of every file matching a glob pattern, records which commit
last touched it, who authored and who committed that change, and when.

Pipeline:
- File discovery (glob, recursive)
- git blame --porcelain per file, captured in full
- Porcelain parsing with per-file commit metadata caching
- Aggregation into a delimited report (one row per line, no header)
- Optional JSON export of lines grouped by committer date

Version: 1.0.0
"""

import glob
import json
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import click
import yaml
from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm

just_fix_windows_console()


# Version information
VERSION = "1.0.0"

DEFAULT_PATTERN = "**/*.js"
FIELD_DELIMITER = ";"
ROW_SEPARATOR = "\n"

# Porcelain metadata keys, in the order git emits them for one commit.
# "boundary" carries no value.
METADATA_KEYS = (
    "author",
    "author-mail",
    "author-time",
    "author-tz",
    "committer",
    "committer-mail",
    "committer-time",
    "committer-tz",
    "summary",
    "boundary",
    "previous",
    "filename",
)

# SHA-1 or SHA-256 object names
COMMIT_ID_PATTERN = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")

# Settings a --config file may carry; none of them change the row format
CONFIG_KEYS = ("quiet", "verbose", "no_color", "strict")


# ============================================================================
# ERRORS
# ============================================================================


class BlameReportError(Exception):
    """Base class for failures that abort a report run"""


class MalformedBlameError(BlameReportError):
    """Porcelain output does not have the expected line structure"""

    def __init__(self, file_path: str, line_no: int, message: str):
        self.file_path = file_path
        self.line_no = line_no
        super().__init__(f"{file_path}: line {line_no} of blame output: {message}")


class GitBlameError(BlameReportError):
    """git blame could not be run or did not give usable output"""

    def __init__(
        self,
        file_path: str,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.file_path = file_path
        self.returncode = returncode
        self.stderr = stderr
        detail = f"{file_path}: {message}"
        if stderr:
            detail = f"{detail}: {stderr}"
        super().__init__(detail)


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


@dataclass(frozen=True)
class Identity:
    """Name, email and time of one side (author or committer) of a commit"""

    name: Optional[str] = None
    email: Optional[str] = None
    date: Optional[datetime] = None


@dataclass(frozen=True)
class CommitInfo:
    """
    Identity and timing of one commit as seen from one file's blame.

    Decoded once per distinct commit per file and shared by reference
    between all LineRecords of that commit.
    """

    author: Identity
    committer: Identity


@dataclass(frozen=True)
class LineRecord:
    file: str
    line: int
    info: CommitInfo


@dataclass
class BlameMetrics:
    """Counters collected over one report run"""

    files_processed: int = 0
    lines_annotated: int = 0
    commits_decoded: int = 0
    cache_hits: int = 0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        cache_total = self.cache_hits + self.commits_decoded
        cache_hit_rate = (self.cache_hits / cache_total * 100) if cache_total > 0 else 0

        return {
            "files_processed": self.files_processed,
            "lines_annotated": self.lines_annotated,
            "commits_decoded": self.commits_decoded,
            "total_time_seconds": round(self.total_time, 2),
            "cache_statistics": {
                "hits": self.cache_hits,
                "misses": self.commits_decoded,
                "hit_rate_percent": round(cache_hit_rate, 1),
            },
        }


# ============================================================================
# COMMIT METADATA DECODER
# ============================================================================


def _match_key(line: str, key: str) -> Optional[str]:
    """Return the value of a `<key> <value>` line, or None if the key differs"""
    if line == key:
        return ""
    prefix = key + " "
    if line.startswith(prefix):
        return line[len(prefix) :]
    return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def decode_commit_info(raw_lines: Sequence[str], cursor: int) -> Tuple[CommitInfo, int]:
    """
    Decode the metadata block starting at raw_lines[cursor].

    Each expected key is matched in order against the current line; a key
    that does not match is skipped and the next key is tried against the
    same line. Keys are therefore optional, but never reordered.

    Args:
        raw_lines: Lines of the porcelain output (never modified)
        cursor: Index of the first line after the commit header

    Returns:
        The decoded CommitInfo and the index of the first unconsumed line
    """
    collected: Dict[str, str] = {}
    for key in METADATA_KEYS:
        if cursor >= len(raw_lines):
            break
        value = _match_key(raw_lines[cursor], key)
        if value is None:
            continue
        collected[key] = value
        cursor += 1

    info = CommitInfo(
        author=Identity(
            name=collected.get("author"),
            email=collected.get("author-mail"),
            date=_parse_timestamp(collected.get("author-time")),
        ),
        committer=Identity(
            name=collected.get("committer"),
            email=collected.get("committer-mail"),
            date=_parse_timestamp(collected.get("committer-time")),
        ),
    )
    return info, cursor


# ============================================================================
# ANNOTATION STREAM PARSER
# ============================================================================


def parse_blame_output(
    blame: str, file_path: str, strict: bool = False
) -> List[LineRecord]:
    """
    Turn one file's `git blame --porcelain` output into LineRecords.

    A commit seen for the first time is followed by its metadata block;
    later lines of the same commit only carry the header. Which case
    applies is decided by whether the commit id is already cached.

    Args:
        blame: Complete porcelain output for one file
        file_path: Identifier stored on every record
        strict: Also require hex commit ids and TAB-prefixed content lines

    Returns:
        One record per annotated line, numbered 1..N in file order
    """
    raw_lines = blame.split("\n")
    records: List[LineRecord] = []
    commit_info_by_hash: Dict[str, CommitInfo] = {}
    cursor = 0

    # The last element is the empty string after the final newline
    while len(raw_lines) - cursor > 1:
        header = raw_lines[cursor]
        tokens = header.split()
        if not tokens:
            raise MalformedBlameError(
                file_path, cursor + 1, "expected a commit header, got an empty line"
            )
        commit_hash = tokens[0]
        if strict and not COMMIT_ID_PATTERN.match(commit_hash):
            raise MalformedBlameError(
                file_path, cursor + 1, f"not a commit id: {commit_hash!r}"
            )
        cursor += 1

        info = commit_info_by_hash.get(commit_hash)
        if info is None:
            info, cursor = decode_commit_info(raw_lines, cursor)
            commit_info_by_hash[commit_hash] = info

        records.append(LineRecord(file=file_path, line=len(records) + 1, info=info))

        # Line contents are not part of the report
        if cursor < len(raw_lines):
            if strict and not raw_lines[cursor].startswith("\t"):
                raise MalformedBlameError(
                    file_path,
                    cursor + 1,
                    f"expected a TAB-prefixed content line, got {raw_lines[cursor]!r}",
                )
            cursor += 1

    return records


# ============================================================================
# REPORT AGGREGATION & SERIALIZATION
# ============================================================================


def format_date(dt: Optional[datetime]) -> str:
    """Render the UTC calendar date as en-US numeric M/D/YYYY (no zero padding)"""
    if dt is None:
        return ""
    day = dt.astimezone(timezone.utc)
    return f"{day.month}/{day.day}/{day.year}"


def _text(value: Any) -> str:
    return "" if value is None else str(value)


class BlameAggregator:
    """
    Accumulates LineRecords across files and renders the report.

    Each file's records are inserted as one block ahead of everything added
    before, so the last discovered file comes first while lines inside a
    block stay ascending.
    """

    def __init__(self):
        self.records: List[LineRecord] = []

    def add_file(self, records: List[LineRecord]):
        """Prepend one file's records as a block"""
        self.records[0:0] = records

    def format_row(self, record: LineRecord) -> str:
        committer = record.info.committer
        author = record.info.author
        fields = [
            record.file,
            record.line,
            committer.name,
            committer.email,
            format_date(committer.date),
            author.name,
            author.email,
            format_date(author.date),
        ]
        return FIELD_DELIMITER.join(_text(value) for value in fields)

    def render(self) -> str:
        """Report text: one row per record, no header, no trailing separator"""
        return ROW_SEPARATOR.join(self.format_row(record) for record in self.records)

    def collect_by_date(
        self, records: Optional[List[LineRecord]] = None
    ) -> Dict[str, List[LineRecord]]:
        """Group records by committer calendar date, keeping record order"""
        if records is None:
            records = self.records

        collected: Dict[str, List[LineRecord]] = {}
        for record in records:
            date = format_date(record.info.committer.date)
            collected.setdefault(date, []).append(record)
        return collected

    def _identity_to_dict(self, identity: Identity) -> Dict[str, Any]:
        return {
            "name": identity.name,
            "email": identity.email,
            "date": format_date(identity.date),
            "timestamp": identity.date.isoformat() if identity.date else None,
        }

    def record_to_dict(self, record: LineRecord) -> Dict[str, Any]:
        return {
            "file": record.file,
            "line": record.line,
            "committer": self._identity_to_dict(record.info.committer),
            "author": self._identity_to_dict(record.info.author),
        }

    def export_by_date(self, output_path: str) -> int:
        """Export the date-grouped view to JSON"""
        by_date = self.collect_by_date()
        data = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_lines": len(self.records),
            "dates": {
                date: [self.record_to_dict(record) for record in records]
                for date, records in by_date.items()
            },
        }

        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return len(data["dates"])


# ============================================================================
# GIT & FILESYSTEM COLLABORATORS
# ============================================================================


def discover_files(pattern: str = DEFAULT_PATTERN, root: str = ".") -> Iterator[str]:
    """
    Lazily yield absolute paths of regular files matching a glob pattern.
    `**` matches across directories. Order is whatever the filesystem gives.
    """
    for match in glob.iglob(os.path.join(root, pattern), recursive=True):
        if os.path.isfile(match):
            yield os.path.abspath(match)


def run_git_blame(file_path: str) -> str:
    """
    Run `git blame --porcelain` for one file from its own directory and
    return the complete stdout as text.
    """
    cmd = [
        "git",
        "--no-pager",
        "blame",
        "--porcelain",
        "--",
        os.path.basename(file_path),
    ]

    try:
        result = subprocess.run(
            cmd,
            cwd=os.path.dirname(file_path) or None,
            stdin=subprocess.DEVNULL,
            capture_output=True,
        )
    except OSError as e:
        raise GitBlameError(file_path, f"failed to run git: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise GitBlameError(
            file_path,
            f"git blame exited with status {result.returncode}",
            returncode=result.returncode,
            stderr=stderr,
        )

    try:
        output = result.stdout.decode("utf-8")
    except UnicodeDecodeError as e:
        raise GitBlameError(file_path, f"blame output is not valid UTF-8 ({e})") from e

    if not output:
        raise GitBlameError(file_path, "git blame produced no output")

    return output


# ============================================================================
# RUN OPTIONS
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Read run settings from an explicitly given YAML or JSON file.

    Only CONFIG_KEYS are accepted (kebab-case spelling allowed), each as a
    boolean. The pattern and the row format cannot be set from a file.
    """
    file_ext = os.path.splitext(config_path)[1].lower()
    if file_ext not in (".yaml", ".yml", ".json"):
        raise ValueError(f"Unsupported config file format: {file_ext}")

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration must be a mapping, got {type(data).__name__}")

    settings = {str(k).replace("-", "_"): v for k, v in data.items()}
    unknown = sorted(set(settings) - set(CONFIG_KEYS))
    if unknown:
        raise ValueError(
            f"Unsupported configuration keys: {', '.join(unknown)} "
            f"(allowed: {', '.join(CONFIG_KEYS)})"
        )
    for key, value in settings.items():
        if not isinstance(value, bool):
            raise ValueError(f"'{key}' must be true or false, got {value!r}")
    return settings


@dataclass
class RunOptions:
    quiet: bool = False
    verbose: bool = False
    no_color: bool = False
    strict: bool = False

    @classmethod
    def resolve(
        cls, flags: Dict[str, Optional[bool]], config_path: Optional[str] = None
    ) -> "RunOptions":
        """Flags given on the command line win over the config file"""
        settings = load_config_file(config_path) if config_path else {}
        settings.update({k: v for k, v in flags.items() if v is not None})
        return cls(**settings)


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Status output for one report run, written to stderr since stdout
    carries the report. Ticks a tqdm bar per annotated file and colors
    banners with colorama.
    """

    def __init__(
        self,
        quiet: bool = False,
        verbose: bool = False,
        use_colors: bool = True,
        stream=None,
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.stream = stream or sys.stderr
        self.started_at = time.time()
        self.progress_bar: Optional[tqdm] = None

    def _colorize(self, text: str, color: str) -> str:
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def _print(self, text: str = ""):
        # Keep messages from tearing an active progress bar
        if self.progress_bar is not None:
            self.progress_bar.write(text, file=self.stream)
        else:
            print(text, file=self.stream)

    def run_started(self, pattern: str, root: str):
        """Banner plus an open-ended bar; the glob is consumed lazily"""
        if self.quiet:
            return
        self.started_at = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        self._print(separator)
        self._print(self._colorize(f"🔄 Annotating '{pattern}'", Fore.BLUE + Style.BRIGHT))
        self._print(f"   under {os.path.abspath(root)}")
        self._print(separator)

        self.progress_bar = tqdm(
            desc=self._colorize("Annotating files", Fore.CYAN),
            unit=" files",
            ncols=100,
            file=self.stream,
        )

    def file_annotated(self, file_path: str, line_count: int, commit_count: int):
        if self.progress_bar is None:
            return
        if self.verbose:
            self.progress_bar.set_postfix_str(
                f"{os.path.basename(file_path)}: {line_count:,} lines, "
                f"{commit_count:,} commits"
            )
        self.progress_bar.update(1)

    def run_finished(self):
        if self.progress_bar is not None:
            self.progress_bar.close()
            self.progress_bar = None

    def warning(self, message: str):
        if not self.quiet:
            self._print(self._colorize(f"⚠️  {message}", Fore.YELLOW + Style.BRIGHT))

    def error(self, message: str):
        """Always shown, even when quiet"""
        self._print(self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT))

    def success(self, message: str):
        if not self.quiet:
            self._print(self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT))

    def summary(self, metrics: "BlameMetrics", pattern: str, output: Optional[str] = None):
        """Counters for the finished run; cache reuse only when verbose"""
        if self.quiet:
            return
        elapsed = time.time() - self.started_at

        separator = self._colorize("=" * 70, Fore.CYAN)
        self._print(f"\n{separator}")
        self._print(self._colorize("📊 BLAME SUMMARY", Fore.MAGENTA + Style.BRIGHT))
        self._print(separator)
        self._print(f"   Pattern: {pattern}")
        self._print(f"   Files annotated: {metrics.files_processed:,}")
        self._print(f"   Lines annotated: {metrics.lines_annotated:,}")
        self._print(f"   Distinct commits: {metrics.commits_decoded:,}")
        if output:
            self._print(f"   Report file: {output}")

        if self.verbose:
            cache = metrics.to_dict()["cache_statistics"]
            self._print(
                f"   Commit metadata reused: {cache['hits']:,} lines "
                f"({cache['hit_rate_percent']}%)"
            )

        self._print(self._colorize(f"\n⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW))
        self._print(separator)


# ============================================================================
# REPORT DRIVER
# ============================================================================


class BlameReport:
    """
    Runs discovery, git blame and parsing for every matched file, one file
    at a time, and accumulates the records for rendering.
    """

    def __init__(
        self,
        pattern: str = DEFAULT_PATTERN,
        root: str = ".",
        strict: bool = False,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.pattern = pattern
        self.root = root
        self.strict = strict
        self.reporter = reporter or ProgressReporter()
        self.aggregator = BlameAggregator()
        self.metrics = BlameMetrics()
        self.files: List[str] = []

    def process_file(self, file_path: str) -> List[LineRecord]:
        """Blame, parse and accumulate a single file"""
        blame = run_git_blame(file_path)
        records = parse_blame_output(blame, file_path, strict=self.strict)
        self.aggregator.add_file(records)

        distinct_commits = len({id(record.info) for record in records})
        self.files.append(file_path)
        self.metrics.files_processed += 1
        self.metrics.lines_annotated += len(records)
        self.metrics.commits_decoded += distinct_commits
        self.metrics.cache_hits += len(records) - distinct_commits
        self.reporter.file_annotated(file_path, len(records), distinct_commits)
        return records

    def run(self) -> str:
        """
        Process every matching file and render the report.
        The first failure propagates; nothing partial is returned.
        """
        start_time = time.time()
        self.reporter.run_started(self.pattern, self.root)
        try:
            for file_path in discover_files(self.pattern, self.root):
                self.process_file(file_path)
        finally:
            self.reporter.run_finished()

        self.metrics.total_time = time.time() - start_time
        if not self.files:
            self.reporter.warning(f"No files matched '{self.pattern}'")

        return self.aggregator.render()


def create_csv_for_files(
    pattern: str = DEFAULT_PATTERN,
    root: str = ".",
    strict: bool = False,
    reporter: Optional[ProgressReporter] = None,
) -> str:
    """
    Build the complete report for all files matching pattern.

    Returns:
        Rows of file;line;committer;committer-mail;committer-date;author;
        author-mail;author-date joined by newlines, most recently discovered
        file first. Empty string when nothing matches.
    """
    report = BlameReport(
        pattern=pattern,
        root=root,
        strict=strict,
        reporter=reporter or ProgressReporter(quiet=True),
    )
    return report.run()


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("pattern", required=False, default=DEFAULT_PATTERN)
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    show_default=True,
    help="Directory the pattern is matched from",
)
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    help="Write the report to this file instead of stdout",
)
@click.option(
    "--by-date",
    type=click.Path(dir_okay=False),
    help="Also export lines grouped by committer date as JSON",
)
@click.option(
    "--strict",
    is_flag=True,
    default=None,
    help="Reject blame output that is not well-formed porcelain",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML or JSON file setting quiet, verbose, no-color or strict",
)
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show per-file progress and cache statistics",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.version_option(version=VERSION)
def main(pattern, root, output, by_date, config, **flags):
    """
    Print a per-line blame report for every file matching PATTERN
    (default: **/*.js).

    Row format: file;line;committer;committer-mail;committer-date;
    author;author-mail;author-date
    """
    try:
        options = RunOptions.resolve(flags, config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        ProgressReporter(use_colors=False).error(f"Invalid configuration: {e}")
        sys.exit(1)

    reporter = ProgressReporter(
        quiet=options.quiet, verbose=options.verbose, use_colors=not options.no_color
    )
    report = BlameReport(
        pattern=pattern, root=root, strict=options.strict, reporter=reporter
    )

    try:
        text = report.run()

        if output:
            with open(output, "w", encoding="utf-8") as f:
                f.write(text)

        if by_date:
            try:
                date_count = report.aggregator.export_by_date(by_date)
            except OSError:
                # No report file without its by-date companion
                if output and os.path.exists(output):
                    os.remove(output)
                raise
            reporter.success(f"Grouped lines by {date_count:,} dates: {by_date}")

        if not output:
            click.echo(text)

    except (BlameReportError, OSError) as e:
        reporter.error(f"Blame report failed: {str(e)}")
        if options.verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)

    reporter.summary(report.metrics, pattern, output)
    if output:
        reporter.success(f"Report written to: {output}")


if __name__ == "__main__":
    main()
