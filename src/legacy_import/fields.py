"""legacy_import.fields

Ordered field-derivation pipeline.

A FieldSpec list is the declarative description of one target table.
Every typed CSV row becomes a Record in two passes over that list:

  1. Defaulting: each field keeps its row value, else takes the declared
     default, else the value of its source column.
  2. Resolution: each field with a resolver and a defined value is passed
     through ``resolver(record, value) -> (record, value)``.  Resolvers
     run strictly in list order, so later ones see what earlier ones set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

from legacy_import.shared import LogSink, ProgressMeter, RunCounters

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Record:
    """Target-table values plus shadow fields holding legacy identifiers.

    ``values`` is what gets persisted.  ``legacy`` keeps the identifiers the
    export used (id, user_id, image_id) after the values are remapped.
    """

    values: dict[str, Any]
    legacy: dict[str, Any] = field(default_factory=dict)

    @property
    def legacy_id(self) -> Any:
        return self.legacy.get("id")

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def with_values(self, **changes: Any) -> "Record":
        return replace(self, values={**self.values, **changes})

    def with_legacy(self, **changes: Any) -> "Record":
        return replace(self, legacy={**self.legacy, **changes})


Resolver = Callable[[Record, Any], "tuple[Record, Any]"]


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str
    source_column: str | None = None
    default: Any = None
    resolver: Resolver | None = None


def csv_column_types(specs: Iterable[FieldSpec]) -> dict[str, str]:
    """Return {source_column: type} for every field read from the CSV."""
    return {s.source_column: s.type for s in specs if s.source_column}


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def apply_defaults(row: dict[str, Any], specs: list[FieldSpec]) -> Record:
    values: dict[str, Any] = {}
    for spec in specs:
        value = row.get(spec.name)
        if value is None:
            value = spec.default
        if value is None and spec.source_column:
            value = row.get(spec.source_column)
        values[spec.name] = value
    return Record(values=values)


def resolve_record(
    record: Record,
    specs: list[FieldSpec],
    counters: RunCounters | None = None,
) -> Record:
    """Run every resolver in field order.

    A resolver that raises leaves its field as None; the remaining
    resolvers still run.
    """
    for spec in specs:
        if spec.resolver is None:
            continue
        value = record.values.get(spec.name)
        if value is None:
            continue
        try:
            record, value = spec.resolver(record, value)
        except Exception as exc:  # noqa: BLE001
            log.warning(
                "Error resolving %s=%r for record %r (%s: %s); field cleared",
                spec.name, value, record.legacy_id, type(exc).__name__, exc,
            )
            if counters is not None:
                counters.resolver_errors += 1
            value = None
        record = record.with_values(**{spec.name: value})
    return record


def derive_record(
    row: dict[str, Any],
    specs: list[FieldSpec],
    counters: RunCounters | None = None,
) -> Record:
    return resolve_record(apply_defaults(row, specs), specs, counters)


def derive_records(
    rows: list[dict[str, Any]],
    specs: list[FieldSpec],
    batch_size: int,
    sink: LogSink,
    counters: RunCounters,
) -> list[Record]:
    """Derive every row, one batch at a time, in input order."""
    progress = ProgressMeter("Processing records", len(rows), sink)
    records: list[Record] = []
    for start in range(0, len(rows), batch_size):
        batch = rows[start:start + batch_size]
        progress.step(len(batch))
        records.extend(derive_record(row, specs, counters) for row in batch)
    counters.records_derived += len(records)
    sink.write(f"Processing records complete: {len(records)} derived")
    return records
