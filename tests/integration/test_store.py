"""Integration tests for legacy_import.store.

These tests run against an ephemeral PostgreSQL database with the target
schema applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import ipaddress

import psycopg
import pytest

from legacy_import.fields import Record
from legacy_import.shared import SetupError
from legacy_import.store import StoreTables, TargetStore


def _record(new_id: int, image_id: int, body: str = "hello", user_id: int | None = None) -> Record:
    return Record({
        "id": new_id,
        "body_textile": "",
        "ip": ipaddress.IPv4Address("127.1.2.3"),
        "fingerprint": "lfp",
        "user_agent": "",
        "referrer": "",
        "anonymous": user_id is None,
        "hidden_from_users": False,
        "user_id": user_id,
        "deleted_by_id": None,
        "image_id": image_id,
        "created_at": "2020-01-01 10:00:00",
        "updated_at": "2020-01-01 10:00:00",
        "edit_reason": None,
        "edited_at": None,
        "deletion_reason": "",
        "destroyed_content": False,
        "name_at_post_time": None,
        "body": body,
        "approved": True,
    })


@pytest.fixture
def store(db_conn):
    conn, _ = db_conn
    conn.execute("INSERT INTO users (id, name) VALUES (3, 'alice'), (4, 'bob')")
    conn.execute(
        "INSERT INTO images (id, description) VALUES "
        "(9, 'Original: https://derpibooru.org/images/55'), (10, '')"
    )
    return TargetStore(conn, StoreTables())


# ---------------------------------------------------------------------------
# Setup checks and snapshots
# ---------------------------------------------------------------------------

class TestSetup:
    def test_tables_found(self, store):
        assert store.check_tables() == ["images", "comments", "users"]

    def test_missing_table(self, db_conn):
        conn, _ = db_conn
        store = TargetStore(conn, StoreTables(parents="pictures"))
        with pytest.raises(SetupError, match="pictures"):
            store.check_tables()

    def test_connect_failure_is_setup_error(self):
        with pytest.raises(SetupError):
            TargetStore.connect("host=127.0.0.1 port=1 dbname=nope connect_timeout=1", StoreTables())

    def test_snapshots(self, store):
        assert store.fetch_authors() == [(3, "alice"), (4, "bob")]
        assert store.fetch_parents() == [
            (9, "Original: https://derpibooru.org/images/55"),
            (10, ""),
        ]


# ---------------------------------------------------------------------------
# Id sequence
# ---------------------------------------------------------------------------

class TestSequence:
    def test_max_id_empty(self, store):
        assert store.max_id() == 0

    def test_restart_sequence(self, store, db_conn):
        conn, _ = db_conn
        store.restart_sequence(503)
        assert conn.execute("SELECT nextval('comments_id_seq')").fetchone()[0] == 503


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

class TestWrites:
    def test_multi_row_insert(self, store, db_conn):
        conn, _ = db_conn
        assert store.insert_records([_record(500, 9), _record(501, 9, user_id=3)]) == 2
        assert store.max_id() == 501
        row = conn.execute(
            "SELECT ip, anonymous, user_id, created_at::text FROM comments WHERE id = 501"
        ).fetchone()
        assert row == (ipaddress.IPv4Address("127.1.2.3"), False, 3, "2020-01-01 10:00:00")

    def test_failed_insert_leaves_nothing(self, store, db_conn):
        conn, _ = db_conn
        store.insert_records([_record(500, 9)])
        with pytest.raises(psycopg.errors.UniqueViolation):
            store.insert_records([_record(502, 9), _record(500, 9)])
        assert conn.execute("SELECT count(*) FROM comments").fetchone()[0] == 1

    def test_update_record(self, store, db_conn):
        conn, _ = db_conn
        store.insert_records([_record(500, 9)])
        assert store.update_record(_record(500, 10, body="changed")) == 1
        assert conn.execute(
            "SELECT body, image_id FROM comments WHERE id = 500"
        ).fetchone() == ("changed", 10)

    def test_update_missing_row_is_noop(self, store):
        assert store.update_record(_record(999, 9)) == 0


# ---------------------------------------------------------------------------
# Recount
# ---------------------------------------------------------------------------

class TestRecount:
    def test_count_and_apply(self, store, db_conn):
        conn, _ = db_conn
        store.insert_records([_record(500, 9), _record(501, 9)])
        counts = store.count_children([9, 10])
        assert counts == {9: 2, 10: 0}
        assert store.apply_child_counts(list(counts.items())) == 2
        rows = conn.execute("SELECT id, comments_count FROM images ORDER BY id").fetchall()
        assert rows == [(9, 2), (10, 0)]

    def test_empty_inputs(self, store):
        assert store.count_children([]) == {}
        assert store.apply_child_counts([]) == 0
