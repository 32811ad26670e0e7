"""Unit tests for legacy_import.fields."""

from __future__ import annotations

from legacy_import.fields import (
    FieldSpec,
    Record,
    apply_defaults,
    csv_column_types,
    derive_record,
    derive_records,
    resolve_record,
)
from legacy_import.shared import NullSink, RunCounters


def _tag(record, value):
    return record.with_legacy(tag=value), value


def _double(record, value):
    return record, value * 2


def _boom(record, value):
    raise RuntimeError("lookup failed")


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

class TestRecord:
    def test_with_values_returns_copy(self):
        rec = Record({"a": 1})
        updated = rec.with_values(a=2, b=3)
        assert rec.values == {"a": 1}
        assert updated.values == {"a": 2, "b": 3}

    def test_legacy_id(self):
        assert Record({}, {"id": 9}).legacy_id == 9
        assert Record({}).legacy_id is None


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

class TestApplyDefaults:
    SPECS = [
        FieldSpec("id", "integer", "id"),
        FieldSpec("flag", "boolean", default=False),
        FieldSpec("note", "varchar"),
        FieldSpec("renamed", "string", "raw_body"),
    ]

    def test_default_and_source_column(self):
        rec = apply_defaults({"id": 1, "raw_body": "x"}, self.SPECS)
        assert rec.values == {"id": 1, "flag": False, "note": None, "renamed": "x"}

    def test_row_value_wins_over_default(self):
        rec = apply_defaults({"id": 1, "flag": True}, self.SPECS)
        assert rec.values["flag"] is True

    def test_key_order_follows_specs(self):
        rec = apply_defaults({"raw_body": "x", "id": 1}, self.SPECS)
        assert list(rec.values) == ["id", "flag", "note", "renamed"]

    def test_csv_column_types(self):
        assert csv_column_types(self.SPECS) == {"id": "integer", "raw_body": "string"}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class TestResolveRecord:
    def test_resolvers_run_in_order_and_see_earlier_results(self):
        seen = {}

        def _observe(record, value):
            seen["a"] = record.get("a")
            return record, value

        specs = [
            FieldSpec("a", "integer", resolver=_double),
            FieldSpec("b", "integer", resolver=_observe),
        ]
        rec = resolve_record(Record({"a": 2, "b": 1}), specs)
        assert rec.values == {"a": 4, "b": 1}
        assert seen["a"] == 4

    def test_none_value_skips_resolver(self):
        specs = [FieldSpec("a", "integer", resolver=_boom)]
        rec = resolve_record(Record({"a": None}), specs)
        assert rec.values == {"a": None}

    def test_resolver_may_set_shadow_fields(self):
        specs = [FieldSpec("a", "integer", resolver=_tag)]
        rec = resolve_record(Record({"a": 5}), specs)
        assert rec.legacy == {"tag": 5}

    def test_resolver_error_clears_field_and_continues(self):
        counters = RunCounters()
        specs = [
            FieldSpec("a", "integer", resolver=_boom),
            FieldSpec("b", "integer", resolver=_double),
        ]
        rec = resolve_record(Record({"a": 1, "b": 3}), specs, counters)
        assert rec.values == {"a": None, "b": 6}
        assert counters.resolver_errors == 1


# ---------------------------------------------------------------------------
# Batch derivation
# ---------------------------------------------------------------------------

class TestDeriveRecords:
    SPECS = [FieldSpec("id", "integer", "id", resolver=_tag)]

    def test_derive_record(self):
        rec = derive_record({"id": 3}, self.SPECS)
        assert rec.values == {"id": 3}
        assert rec.legacy == {"tag": 3}

    def test_preserves_order_across_batches(self):
        sink = NullSink()
        counters = RunCounters()
        rows = [{"id": i} for i in range(7)]
        records = derive_records(rows, self.SPECS, 3, sink, counters)
        assert [r.get("id") for r in records] == list(range(7))
        assert counters.records_derived == 7
        progress = [line for line in sink.lines if line.startswith("Processing records:")]
        assert len(progress) == 3
        assert sink.lines[-1] == "Processing records complete: 7 derived"

    def test_empty_input(self):
        sink = NullSink()
        assert derive_records([], self.SPECS, 5, sink, RunCounters()) == []
