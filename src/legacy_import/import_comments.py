"""legacy_import.import_comments

Legacy comment import: CLI entry point and run orchestration.

Consumes two CSV exports:
  - comments CSV  (id, user_id, image_id, body, created_at, updated_at)
  - authors CSV   (id, name)

Produces:
  - rows in the records table (inserted under fresh ids or updated in place)
  - matching documents in the search index
  - refreshed child counts on every touched parent row
  - the id remap file, a run report and a cumulative processing log

Run order:
  1.  Setup checks: tables, index health, remap file.     (fatal on failure)
  2.  Snapshots: store parents + authors, authors CSV.
  3.  Parse comments CSV (self-healing), drop rows without an integer id,
      sort by legacy id.
  4.  Derive records batch by batch.
  5.  Import disabled → print the first record and stop.
  6.  Reserve id block, reconcile into insert/update/skip batches.
  7.  Dual write inserts, then updates.
  8.  Flush remap file (without entries of failed insert batches),
      recount parent child counts.
"""

from __future__ import annotations

import json
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import click
import psycopg
from dotenv import load_dotenv
from opensearchpy.exceptions import OpenSearchException

from legacy_import.csv_reader import read_csv
from legacy_import.fields import FieldSpec, Record, csv_column_types, derive_records
from legacy_import.profile import ProfileValidationError, load_profile
from legacy_import.reconcile import (
    SKIP_MISSING_PARENT,
    ReconcilePlan,
    reconcile,
    reserve_id_block,
)
from legacy_import.remap import RemapStore
from legacy_import.resolvers import (
    AUTHOR_CSV_COLUMNS,
    AuthorDirectory,
    ParentDirectory,
    ResolverContext,
    ResolverSettings,
    build_comment_fields,
)
from legacy_import.search_index import SearchIndex
from legacy_import.shared import (
    ImportAbort,
    LogMirror,
    LogSink,
    RejectWriter,
    RunCounters,
    format_elapsed,
    write_run_report,
)
from legacy_import.sink import DualWriteSink
from legacy_import.store import TargetStore

SEPARATOR = "-" * 40


@dataclass
class RunSettings:
    comments_csv: Path
    authors_csv: Path
    remap_path: Path | None
    batch_size: int = 250
    import_enabled: bool = True
    replace_existing: bool = True
    parent_marker_base_url: str = "https://derpibooru.org/images"
    resolver: ResolverSettings = field(default_factory=ResolverSettings)


@dataclass
class RunResult:
    records: list[Record]
    plan: ReconcilePlan | None = None


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------

def load_comment_rows(
    path: Path,
    specs: list[FieldSpec],
    sink: LogSink,
    counters: RunCounters,
    rejects: RejectWriter,
) -> list[dict[str, Any]]:
    """Parse the comments CSV; keep rows with an integer id, sorted by id."""
    parsed = read_csv(path, csv_column_types(specs), sink)
    counters.lines_quarantined += len(parsed.quarantined)
    rows: list[dict[str, Any]] = []
    for row in parsed:
        counters.rows_read += 1
        if not isinstance(row.get("id"), int):
            rejects.write({k: row.get(k) for k in parsed.column_types}, "invalid_id")
            counters.rows_rejected += 1
            continue
        rows.append(row)
    rows.sort(key=lambda r: r["id"])
    return rows


def load_author_directory(
    path: Path,
    store: TargetStore,
    sink: LogSink,
    counters: RunCounters,
) -> AuthorDirectory:
    parsed = read_csv(path, AUTHOR_CSV_COLUMNS, sink)
    counters.lines_quarantined += len(parsed.quarantined)
    return AuthorDirectory.from_snapshots(parsed, store.fetch_authors())


def run_import(
    settings: RunSettings,
    store: TargetStore,
    index: SearchIndex,
    sink: LogSink,
    counters: RunCounters,
    rejects: RejectWriter,
) -> RunResult:
    """Execute one import run against already-connected collaborators.

    Raises ImportAbort subclasses for fatal conditions; per-record and
    per-batch failures are logged and counted instead.
    """
    for table in store.check_tables():
        sink.write(f"Table {table!r} found in the database.")
    index.check_health(sink)
    remap = RemapStore.load(settings.remap_path)
    sink.write(f"Loaded {len(remap)} id remap entries")
    sink.write(SEPARATOR)

    parents = ParentDirectory.from_snapshot(
        store.fetch_parents(), settings.parent_marker_base_url
    )
    authors = load_author_directory(settings.authors_csv, store, sink, counters)
    ctx = ResolverContext(authors=authors, parents=parents, settings=settings.resolver)
    specs = build_comment_fields(ctx)

    rows = load_comment_rows(settings.comments_csv, specs, sink, counters, rejects)
    sink.write(SEPARATOR)
    sink.write(f"Mapping {len(rows)} CSV rows to {store.tables.records!r} columns")
    records = derive_records(rows, specs, settings.batch_size, sink, counters)
    sink.write(SEPARATOR)

    if not settings.import_enabled:
        sink.write("!!! Importing is disabled (enable with --import); nothing written.")
        if records:
            sink.write(
                "First record example: "
                + json.dumps(records[0].values, indent=2, default=str)
            )
        return RunResult(records)

    sink.write("Starting database import")
    block = reserve_id_block(store, len(records))
    sink.write(f"Last id: {block.first - 1}; sequence restarted at {block.sequence_restart}")
    plan = reconcile(
        records,
        remap,
        block,
        replace_existing=settings.replace_existing,
        batch_size=settings.batch_size,
        sink=sink,
        counters=counters,
    )
    for skipped in plan.skipped:
        if skipped.reason == SKIP_MISSING_PARENT:
            record = skipped.record
            rejects.write({**record.values, **record.legacy}, skipped.reason)

    writer = DualWriteSink(store, index, authors.display_name, sink, counters)
    failed = writer.write_inserts(plan.insert_batches)
    dropped = sum(remap.forget(record.legacy_id) for record in failed)
    if dropped:
        sink.write(f"Dropped {dropped} id remap entries of failed insert batches", err=True)
    writer.write_updates(plan.update_batches)

    remap_path = remap.flush()
    if remap_path is not None:
        sink.write(f"Saved id remap ({remap.created} new) to {remap_path}")

    writer.recount_parents(plan.touched_parents, settings.batch_size)
    return RunResult(records, plan)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _fatal(mirror: LogMirror, message: str) -> NoReturn:
    """Log a fatal condition, write the processing log and exit 1."""
    mirror.write(f"FATAL: {message}", err=True)
    mirror.flush()
    sys.exit(1)


@click.command()
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN")
@click.option("--opensearch-node", required=True, envvar="OPENSEARCH_NODE", help="OpenSearch node URL")
@click.option("--comments-csv", required=True, envvar="CSV_COMMENTS", type=click.Path(exists=True, dir_okay=False))
@click.option("--authors-csv", required=True, envvar="CSV_USERS", type=click.Path(exists=True, dir_okay=False))
@click.option("--remap-path", default=None, envvar="IMPORT_ID_MAP", type=click.Path(dir_okay=False), help="JSON legacy→new id map (created if absent)")
@click.option("--profile", "profile_path", default=None, envvar="IMPORT_PROFILE", type=click.Path(exists=True, dir_okay=False), help="YAML import profile")
@click.option("--index-name", default=None, envvar="OPENSEARCH_INDEX", help="Overrides the profile index")
@click.option("--batch-size", default=None, envvar="IMPORT_BATCH_LIMIT", type=click.IntRange(min=1), help="Overrides the profile batch size")
@click.option("--import/--no-import", "import_enabled", default=True, envvar="IMPORT_ENABLED", show_default=True, help="Write to the store and index; otherwise preview only")
@click.option("--replace/--no-replace", "replace_existing", default=True, envvar="IMPORT_REPLACE", show_default=True, help="Update records imported by an earlier run")
@click.option("--anonymous-fallback/--no-anonymous-fallback", default=True, envvar="IMPORT_ANONYMOUS", show_default=True, help="Unmatched authors become anonymous")
@click.option("--fallback-user-id", default=None, envvar="IMPORTER_USER_ID", type=int, help="Author id used for unmatched authors when anonymous fallback is off")
@click.option("--suffix-known", default=None, envvar="SUFFIX_DETAILS", help="Body suffix template when the legacy author is known")
@click.option("--suffix-unknown", default=None, envvar="SUFFIX_DETAILS_NOT_EXIST", help="Body suffix template when the legacy author is unknown")
@click.option("--log-path", default="processing.log", show_default=True, type=click.Path(dir_okay=False))
@click.option("--rejects-path", default="./artifacts/rejects/comments_rejects.csv", show_default=True, type=click.Path(dir_okay=False))
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    db_dsn: str,
    opensearch_node: str,
    comments_csv: str,
    authors_csv: str,
    remap_path: str | None,
    profile_path: str | None,
    index_name: str | None,
    batch_size: int | None,
    import_enabled: bool,
    replace_existing: bool,
    anonymous_fallback: bool,
    fallback_user_id: int | None,
    suffix_known: str | None,
    suffix_unknown: str | None,
    log_path: str,
    rejects_path: str,
    run_id: str | None,
) -> None:
    """Import legacy comment CSV exports into PostgreSQL and OpenSearch."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    started = time.monotonic()
    mirror = LogMirror(Path(log_path), prefix=f"[{run_id}] ")
    mirror.install()
    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))

    mirror.write(f"Starting comment import (import_enabled={import_enabled})")

    if not anonymous_fallback and fallback_user_id is None:
        _fatal(mirror, "--fallback-user-id is required with --no-anonymous-fallback")

    try:
        profile = load_profile(Path(profile_path) if profile_path else None)
    except ProfileValidationError as exc:
        _fatal(mirror, f"invalid profile {profile_path}: {exc}")

    settings = RunSettings(
        comments_csv=Path(comments_csv),
        authors_csv=Path(authors_csv),
        remap_path=Path(remap_path) if remap_path else None,
        batch_size=batch_size or profile.batch_size,
        import_enabled=import_enabled,
        replace_existing=replace_existing,
        parent_marker_base_url=profile.parent_marker_base_url,
        resolver=ResolverSettings(
            anonymous_fallback=anonymous_fallback,
            fallback_user_id=fallback_user_id,
            suffix_known=suffix_known if suffix_known is not None else profile.suffix_known,
            suffix_unknown=suffix_unknown if suffix_unknown is not None else profile.suffix_unknown,
        ),
    )

    store = None
    index = None
    try:
        store = TargetStore.connect(db_dsn, profile.tables)
        mirror.write("Import database connected")
        index = SearchIndex.connect(opensearch_node, index_name or profile.index)
        mirror.write("Connected to OpenSearch")
        run_import(settings, store, index, mirror, counters, rejects)
    except ImportAbort as exc:
        _fatal(mirror, str(exc))
    except (psycopg.Error, OpenSearchException) as exc:
        _fatal(mirror, f"{type(exc).__name__}: {exc}")
    finally:
        if index is not None:
            index.close()
        if store is not None:
            store.close()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, import_enabled,
        {"comments_csv": comments_csv, "authors_csv": authors_csv,
         "remap_path": str(remap_path)},
        counters,
    )
    mirror.write(SEPARATOR)
    mirror.write(
        f"Done: {counters.rows_read} rows read, "
        f"{counters.lines_quarantined} lines quarantined, "
        f"{counters.records_inserted} inserted, "
        f"{counters.records_updated} updated, "
        f"{counters.skipped_missing_parent + counters.skipped_replace_disabled} skipped, "
        f"{counters.insert_batches_failed + counters.update_batches_failed} failed batches"
    )
    mirror.write(f"Run report: {report_path}")
    mirror.write(f"Finished in {format_elapsed(time.monotonic() - started)}")
    mirror.flush()


def cli() -> None:
    """Console-script entry point: load .env, then run the command."""
    load_dotenv(override=False)
    main()


if __name__ == "__main__":
    cli()
