"""legacy_import.csv_reader

Self-healing reader for legacy CSV exports.

Legacy exports routinely contain lines with stray or unbalanced quotes.
Reading happens in two layers:

  1. Pre-filter: lines with an odd number of '"' characters that cannot be
     the start or middle of a quoted multi-line value are dropped.
  2. Strict parse: ``csv`` in strict mode.  When it reports an error at a
     line, that line is removed and the parse is retried.  Consecutive
     failures at the same line are bounded by MAX_RETRIES_PER_LINE.

The result is a ParsedCsv: an iterable of typed rows that can be iterated
any number of times.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from legacy_import.normalize import format_local_ts, parse_inet, parse_int_prefix
from legacy_import.shared import CsvQuarantineError, LogSink

log = logging.getLogger(__name__)

MAX_RETRIES_PER_LINE = 5

COLUMN_TYPES = frozenset({"integer", "varchar", "boolean", "timestamp", "inet", "string"})


# ---------------------------------------------------------------------------
# Retry state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryState:
    last_failing_line: int | None = None
    attempt_count: int = 0

    def after_failure(self, line_number: int) -> "RetryState":
        """Return the state after a parse failure at line_number.

        Raises CsvQuarantineError once the same line has already been
        retried MAX_RETRIES_PER_LINE times in a row.
        """
        if line_number != self.last_failing_line:
            return RetryState(line_number, 1)
        if self.attempt_count >= MAX_RETRIES_PER_LINE:
            raise CsvQuarantineError(
                f"parser failed {self.attempt_count + 1} consecutive times "
                f"at line {line_number}"
            )
        return RetryState(line_number, self.attempt_count + 1)


class _LineParseError(Exception):
    def __init__(self, line_number: int, message: str) -> None:
        super().__init__(f"{message} at line {line_number}")
        self.line_number = line_number


# ---------------------------------------------------------------------------
# Pre-filter
# ---------------------------------------------------------------------------

def count_quotes(line: str) -> int:
    return sum(segment.count('"') for segment in line.split(","))


def is_quote_defect(line: str) -> bool:
    """True when a line has unbalanced quotes and cannot continue a field.

    A line with an odd quote count is kept when it does not end with '"'
    (it may open a multi-line value) or when it ends with ',"' (it opens an
    empty-start quoted value).
    """
    if count_quotes(line) % 2 == 0:
        return False
    if not line.endswith('"') or line.endswith(',"'):
        return False
    return True


def prefilter_lines(text: str, sink: LogSink | None = None) -> tuple[list[str], list[str]]:
    """Split text into lines, returning (kept, removed)."""
    kept: list[str] = []
    removed: list[str] = []
    for line in text.split("\n"):
        if is_quote_defect(line.rstrip("\r")):
            removed.append(line)
            if sink is not None:
                sink.write(f"REMOVED LINE: {line}")
        else:
            kept.append(line)
    return kept, removed


# ---------------------------------------------------------------------------
# Typed coercion
# ---------------------------------------------------------------------------

def coerce_value(value: str | None, column_type: str) -> Any:
    """Coerce one raw CSV value to its declared column type."""
    if column_type == "integer":
        number = parse_int_prefix(value)
        return number if number is not None else value
    if column_type == "varchar":
        return "" if value is None else str(value)
    if column_type == "boolean":
        return value == "true"
    if column_type == "timestamp":
        return format_local_ts(value)
    if column_type == "inet":
        return parse_inet(value)
    return value


def coerce_row(raw: dict[str, str | None], column_types: dict[str, str]) -> dict[str, Any]:
    return {name: coerce_value(raw.get(name), ctype) for name, ctype in column_types.items()}


# ---------------------------------------------------------------------------
# Strict parse
# ---------------------------------------------------------------------------

def _strict_parse(text: str) -> list[dict[str, str | None]]:
    """Parse the whole text, raising _LineParseError on the first defect."""
    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    rows: list[dict[str, str | None]] = []
    header: list[str] | None = None
    try:
        for values in reader:
            if not values or all(not v.strip() for v in values):
                continue
            if header is None:
                header = [h.strip() for h in values]
                continue
            if len(values) != len(header):
                raise _LineParseError(
                    reader.line_num,
                    f"invalid record length: expected {len(header)} columns, "
                    f"got {len(values)}",
                )
            rows.append({h: v.strip() for h, v in zip(header, values)})
    except csv.Error as exc:
        raise _LineParseError(reader.line_num, str(exc)) from exc
    return rows


def heal_and_parse(
    lines: list[str],
    sink: LogSink | None = None,
) -> tuple[list[dict[str, str | None]], list[str]]:
    """Parse lines, removing each line the parser fails on, until clean.

    Returns (raw_rows, removed_lines).
    """
    state = RetryState()
    removed: list[str] = []
    lines = list(lines)
    while True:
        try:
            return _strict_parse("\n".join(lines)), removed
        except _LineParseError as exc:
            line_number = exc.line_number
            if not 0 < line_number <= len(lines):
                raise CsvQuarantineError(str(exc)) from exc
            state = state.after_failure(line_number)
            bad = lines.pop(line_number - 1)
            removed.append(bad)
            if sink is not None:
                sink.write(f"REMOVED LINE: {bad} ({exc})", err=True)


# ---------------------------------------------------------------------------
# ParsedCsv
# ---------------------------------------------------------------------------

@dataclass
class ParsedCsv:
    """Healed CSV rows, typed lazily on every iteration."""

    path: Path
    column_types: dict[str, str]
    raw_rows: list[dict[str, str | None]]
    quarantined: list[str]

    def __iter__(self) -> Iterator[dict[str, Any]]:
        for raw in self.raw_rows:
            yield coerce_row(raw, self.column_types)

    def __len__(self) -> int:
        return len(self.raw_rows)


def read_csv(
    path: Path,
    column_types: dict[str, str],
    sink: LogSink | None = None,
) -> ParsedCsv:
    """Read a legacy CSV export into typed rows.

    Args:
        path: CSV file with a header row.
        column_types: column name → one of COLUMN_TYPES.  Only these
            columns are emitted.
        sink: optional log sink receiving quarantine messages.

    Raises:
        CsvQuarantineError: the parser failed more than
            MAX_RETRIES_PER_LINE consecutive times at one line.
    """
    unknown = set(column_types.values()) - COLUMN_TYPES
    if unknown:
        raise ValueError(f"unknown column types: {sorted(unknown)}")
    if sink is not None:
        sink.write(f"Parsing CSV file: {path}")
    text = path.read_text(encoding="utf-8-sig")
    kept, removed = prefilter_lines(text, sink)
    raw_rows, healed = heal_and_parse(kept, sink)
    quarantined = removed + healed
    if quarantined:
        log.info("%s: %d line(s) quarantined", path.name, len(quarantined))
    return ParsedCsv(path, dict(column_types), raw_rows, quarantined)
