"""Unit tests for legacy_import.remap."""

from __future__ import annotations

import json

import pytest

from legacy_import.remap import RemapStore
from legacy_import.shared import RemapFileError


class TestLoad:
    def test_missing_file_is_empty(self, tmp_path):
        store = RemapStore.load(tmp_path / "map.json")
        assert len(store) == 0
        assert store.lookup(1) is None

    def test_no_path_is_empty(self):
        store = RemapStore.load(None)
        assert len(store) == 0
        assert store.flush() is None

    def test_existing_entries(self, tmp_path):
        path = tmp_path / "map.json"
        path.write_text(json.dumps({"42": 1000, "43": 1001}))
        store = RemapStore.load(path)
        assert store.lookup(42) == 1000
        assert store.lookup("43") == 1001
        assert 42 in store

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "map.json"
        path.write_text("{not json")
        with pytest.raises(RemapFileError):
            RemapStore.load(path)

    def test_non_object(self, tmp_path):
        path = tmp_path / "map.json"
        path.write_text("[1, 2]")
        with pytest.raises(RemapFileError):
            RemapStore.load(path)

    def test_non_integer_value(self, tmp_path):
        path = tmp_path / "map.json"
        path.write_text(json.dumps({"1": "abc"}))
        with pytest.raises(RemapFileError):
            RemapStore.load(path)


class TestRecordAndFlush:
    def test_record_counts_new_entries(self, tmp_path):
        store = RemapStore.load(tmp_path / "map.json")
        store.record(42, 1000)
        store.record(42, 1000)
        assert store.created == 1
        assert store.lookup(42) == 1000

    def test_conflicting_mapping_rejected(self, tmp_path):
        store = RemapStore(tmp_path / "map.json", {"42": 1000})
        with pytest.raises(ValueError):
            store.record(42, 2000)
        assert store.lookup(42) == 1000

    def test_flush_writes_full_map(self, tmp_path):
        path = tmp_path / "nested" / "map.json"
        store = RemapStore(path, {"1": 10})
        store.record(2, 11)
        assert store.flush() == path
        assert json.loads(path.read_text()) == {"1": 10, "2": 11}
        assert [p.name for p in path.parent.iterdir()] == ["map.json"]

    def test_flush_then_reload(self, tmp_path):
        path = tmp_path / "map.json"
        store = RemapStore.load(path)
        store.record(5, 50)
        store.flush()
        assert RemapStore.load(path).as_dict() == {"5": 50}


class TestForget:
    def test_forget_entry_recorded_this_run(self, tmp_path):
        path = tmp_path / "map.json"
        store = RemapStore(path, {"1": 10})
        store.record(2, 11)
        assert store.forget(2) is True
        assert store.created == 0
        assert store.lookup(2) is None
        store.flush()
        assert json.loads(path.read_text()) == {"1": 10}

    def test_loaded_entries_kept(self, tmp_path):
        store = RemapStore(tmp_path / "map.json", {"1": 10})
        assert store.forget(1) is False
        assert store.forget(99) is False
        assert store.lookup(1) == 10
