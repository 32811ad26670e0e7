"""legacy_import.shared

Shared utilities used by every import stage.
Includes the exception hierarchy, LogMirror (console + cumulative log
buffer), RejectWriter, RunCounters, progress reporting and report-writing
support.
"""

from __future__ import annotations

import atexit
import csv
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import click


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportAbort(Exception):
    """Base class for conditions that must terminate the run."""


class SetupError(ImportAbort):
    """Raised when a store table, the index or a connection is unusable."""


class CsvQuarantineError(ImportAbort):
    """Raised when the CSV parser keeps failing at the same line."""


class RemapFileError(ImportAbort):
    """Raised when the persisted id remap file cannot be read."""


# ---------------------------------------------------------------------------
# Log sink
# ---------------------------------------------------------------------------

class LogSink(Protocol):
    def write(self, message: str, err: bool = False) -> None:
        """Emit one log line."""
        ...


class LogMirror:
    """Echo every line to the console and keep a cumulative copy.

    The buffer is written to ``path`` by ``flush()``.  ``install()`` also
    registers ``flush`` with atexit, so the file is rewritten on any exit.
    """

    def __init__(self, path: Path | None, prefix: str = "") -> None:
        self._path = path
        self._prefix = prefix
        self._lines: list[str] = []

    def write(self, message: str, err: bool = False) -> None:
        line = f"{self._prefix}{message}"
        click.echo(line, err=err)
        self._lines.append(line)

    @property
    def text(self) -> str:
        return "".join(f"{line}\n" for line in self._lines)

    def flush(self) -> Path | None:
        if self._path is None:
            return None
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(self.text, encoding="utf-8")
        return self._path

    def install(self) -> None:
        atexit.register(self.flush)
        handler = MirrorHandler(self)
        handler.setFormatter(logging.Formatter("%(message)s"))
        pkg_log = logging.getLogger("legacy_import")
        pkg_log.addHandler(handler)
        pkg_log.setLevel(logging.INFO)
        pkg_log.propagate = False


class MirrorHandler(logging.Handler):
    """Route stdlib ``logging`` records into a LogSink."""

    def __init__(self, sink: LogSink) -> None:
        super().__init__()
        self._sink = sink

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._sink.write(self.format(record), err=record.levelno >= logging.WARNING)
        except Exception:  # noqa: BLE001
            self.handleError(record)


@dataclass
class NullSink:
    """Collect lines in memory without echoing (used in tests)."""

    lines: list[str] = field(default_factory=list)

    def write(self, message: str, err: bool = False) -> None:
        self.lines.append(message)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

REJECT_COLUMNS = ("id", "user_id", "image_id", "created_at", "updated_at", "body")


class RejectWriter:
    """CSV of comments left out of the import: invalid ids, missing parents.

    Every row uses the same column layout (``columns`` plus
    ``_reject_reason``) whatever shape the caller passes; unknown keys are
    dropped and missing ones written empty.  The file is created on the
    first rejected row only.
    """

    def __init__(self, path: Path, columns: tuple[str, ...] = REJECT_COLUMNS) -> None:
        self._path = path
        self._columns = columns
        self._fh = None
        self._writer = None
        self.reasons: dict[str, int] = {}

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._writer is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.writer(self._fh)
            self._writer.writerow([*self._columns, "_reject_reason"])
        values = ["" if row.get(c) is None else str(row.get(c)) for c in self._columns]
        self._writer.writerow([*values, reason])
        self._fh.flush()
        self.reasons[reason] = self.reasons.get(reason, 0) + 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Reader
    rows_read: int = 0
    lines_quarantined: int = 0
    rows_rejected: int = 0
    # Derivation
    records_derived: int = 0
    resolver_errors: int = 0
    # Reconciliation
    planned_inserts: int = 0
    planned_updates: int = 0
    skipped_missing_parent: int = 0
    skipped_replace_disabled: int = 0
    references_rewritten: int = 0
    # Sink
    records_inserted: int = 0
    records_updated: int = 0
    records_missing_on_update: int = 0
    insert_batches_failed: int = 0
    update_batches_failed: int = 0
    documents_indexed: int = 0
    documents_created_on_update: int = 0
    index_errors: int = 0
    parents_recounted: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

def format_elapsed(seconds: float) -> str:
    """Return 'MM:SS' for a duration in seconds."""
    total = max(0, int(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


@dataclass
class ProgressMeter:
    """Per-batch progress lines: elapsed, estimated remaining, throughput."""

    label: str
    total: int
    sink: LogSink
    clock: Any = time.monotonic
    done: int = 0
    _started: float | None = field(default=None, init=False, repr=False)

    def step(self, size: int) -> None:
        now = self.clock()
        if self._started is None:
            self._started = now
        elapsed = now - self._started
        if self.done > 0 and elapsed > 0:
            remaining = format_elapsed(elapsed / self.done * (self.total - self.done))
            rate = int(self.done / elapsed)
        else:
            remaining, rate = "00:00", 0
        self.sink.write(
            f"{self.label}: {self.done} of {self.total} "
            f"(batch {size}) elapsed {format_elapsed(elapsed)} "
            f"remaining {remaining} items/s {rate}"
        )
        self.done += size


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    import_enabled: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "import_enabled": import_enabled,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
