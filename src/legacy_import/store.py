"""legacy_import.store

PostgreSQL side of the import: table checks, snapshots, id sequence
control, batch insert/update and the parent child-count recount.

Table and sequence names come from configuration, so every statement
composes identifiers with psycopg.sql.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

import psycopg
from psycopg import sql

from legacy_import.fields import Record
from legacy_import.shared import SetupError


@dataclass(frozen=True)
class StoreTables:
    records: str = "comments"
    parents: str = "images"
    authors: str = "users"
    sequence: str | None = None
    parent_key: str = "image_id"
    parent_count_column: str = "comments_count"

    @property
    def records_sequence(self) -> str:
        return self.sequence or f"{self.records}_id_seq"


class TargetStore:
    """Thin wrapper over an autocommit psycopg connection."""

    def __init__(self, conn: psycopg.Connection, tables: StoreTables) -> None:
        self._conn = conn
        self.tables = tables

    @classmethod
    def connect(cls, dsn: str, tables: StoreTables) -> "TargetStore":
        try:
            conn = psycopg.connect(dsn, autocommit=True)
        except psycopg.Error as exc:
            raise SetupError(f"destination database connection error: {exc}") from exc
        return cls(conn, tables)

    def close(self) -> None:
        self._conn.close()

    # -- setup ---------------------------------------------------------------

    def table_exists(self, name: str) -> bool:
        row = self._conn.execute("SELECT to_regclass(%s)", (name,)).fetchone()
        return row is not None and row[0] is not None

    def check_tables(self) -> list[str]:
        """Raise SetupError unless every configured table exists."""
        names = [self.tables.parents, self.tables.records, self.tables.authors]
        for name in names:
            if not self.table_exists(name):
                raise SetupError(
                    f"table {name!r} not found; check the configured table names"
                )
        return names

    # -- snapshots -----------------------------------------------------------

    def fetch_parents(self) -> list[tuple[int, str | None]]:
        query = sql.SQL("SELECT id, description FROM {} ORDER BY id").format(
            sql.Identifier(self.tables.parents)
        )
        return [(row[0], row[1]) for row in self._conn.execute(query).fetchall()]

    def fetch_authors(self) -> list[tuple[int, str]]:
        query = sql.SQL("SELECT id, name FROM {} ORDER BY id").format(
            sql.Identifier(self.tables.authors)
        )
        return [(row[0], row[1]) for row in self._conn.execute(query).fetchall()]

    # -- id sequence ---------------------------------------------------------

    def max_id(self) -> int:
        query = sql.SQL("SELECT id FROM {} ORDER BY id DESC LIMIT 1").format(
            sql.Identifier(self.tables.records)
        )
        row = self._conn.execute(query).fetchone()
        return int(row[0]) if row else 0

    def restart_sequence(self, value: int) -> None:
        self._conn.execute(
            sql.SQL("ALTER SEQUENCE {} RESTART WITH {}").format(
                sql.Identifier(self.tables.records_sequence), sql.Literal(int(value))
            )
        )

    # -- writes --------------------------------------------------------------

    def insert_records(self, records: list[Record]) -> int:
        """Insert all records with one multi-row INSERT.  Returns row count."""
        if not records:
            return 0
        columns = list(records[0].values)
        row_sql = sql.SQL("({})").format(
            sql.SQL(", ").join(sql.Placeholder() * len(columns))
        )
        query = sql.SQL("INSERT INTO {} ({}) VALUES {}").format(
            sql.Identifier(self.tables.records),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join([row_sql] * len(records)),
        )
        params: list[Any] = [r.values.get(c) for r in records for c in columns]
        with self._conn.transaction():
            cur = self._conn.execute(query, params)
        return cur.rowcount

    def update_record(self, record: Record) -> int:
        columns = [c for c in record.values if c != "id"]
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            sql.Identifier(self.tables.records),
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns
            ),
        )
        params = [record.values.get(c) for c in columns] + [record.values["id"]]
        cur = self._conn.execute(query, params)
        return cur.rowcount

    # -- recount -------------------------------------------------------------

    def count_children(self, parent_ids: Iterable[int]) -> dict[int, int]:
        ids = list(parent_ids)
        if not ids:
            return {}
        query = sql.SQL(
            "SELECT {key}, COUNT(*) FROM {records} WHERE {key} = ANY(%s) GROUP BY {key}"
        ).format(
            key=sql.Identifier(self.tables.parent_key),
            records=sql.Identifier(self.tables.records),
        )
        counts = {pid: 0 for pid in ids}
        for parent_id, count in self._conn.execute(query, (ids,)).fetchall():
            counts[parent_id] = int(count)
        return counts

    def apply_child_counts(self, counts: list[tuple[int, int]]) -> int:
        """Write (parent_id, count) pairs with one UPDATE … FROM (VALUES …)."""
        if not counts:
            return 0
        values = sql.SQL(", ").join(
            [sql.SQL("(%s::integer, %s::integer)")] * len(counts)
        )
        query = sql.SQL(
            "UPDATE {parents} AS p SET {col} = u.child_count "
            "FROM (VALUES {values}) AS u(parent_id, child_count) "
            "WHERE p.id = u.parent_id"
        ).format(
            parents=sql.Identifier(self.tables.parents),
            col=sql.Identifier(self.tables.parent_count_column),
            values=values,
        )
        params = [v for pair in counts for v in pair]
        cur = self._conn.execute(query, params)
        return cur.rowcount
