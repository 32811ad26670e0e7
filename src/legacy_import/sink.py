"""legacy_import.sink

Dual write of reconciled batches to the store and the search index, plus
the parent child-count recount.

Insert batches: one multi-row INSERT, then one bulk index request.  The
bulk request is awaited, but its failures are only logged and counted.
Update batches: per record, one UPDATE then an update-or-create on the
index.  An index error other than "document missing" ends that batch's
loop; the next batch still runs.
A store failure abandons only the current batch; the records of failed
insert batches are returned so their remap entries can be dropped.  An
update that matches no store row skips the index write.  Nothing is retried.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol

import psycopg
from opensearchpy.exceptions import OpenSearchException

from legacy_import.fields import Record
from legacy_import.normalize import local_ts_to_iso_utc
from legacy_import.reconcile import Batch, chunk
from legacy_import.search_index import BulkOutcome
from legacy_import.shared import LogSink, ProgressMeter, RunCounters


class RecordStore(Protocol):
    def insert_records(self, records: list[Record]) -> int: ...

    def update_record(self, record: Record) -> int: ...

    def count_children(self, parent_ids: list[int]) -> dict[int, int]: ...

    def apply_child_counts(self, counts: list[tuple[int, int]]) -> int: ...


class DocumentIndex(Protocol):
    def bulk_index(self, documents: list[tuple[Any, dict[str, Any]]]) -> BulkOutcome: ...

    def update_or_create(self, doc_id: Any, doc: dict[str, Any]) -> str: ...


def to_document(record: Record, author: str) -> dict[str, Any]:
    """Project a record onto its search document (no legacy shadow fields)."""
    ip = record.get("ip")
    return {
        "ip": str(ip) if ip is not None else None,
        "author": author,
        "approved": record.get("approved"),
        "body": record.get("body"),
        "image_id": record.get("image_id"),
        "fingerprint": record.get("fingerprint"),
        "user_id": record.get("user_id"),
        "hidden_from_users": record.get("hidden_from_users"),
        "anonymous": record.get("anonymous"),
        "image_tag_ids": record.get("image_tag_ids") or [],
        "posted_at": local_ts_to_iso_utc(record.get("created_at")),
    }


class DualWriteSink:
    def __init__(
        self,
        store: RecordStore,
        index: DocumentIndex,
        author_name: Callable[[Record], str],
        sink: LogSink,
        counters: RunCounters,
    ) -> None:
        self._store = store
        self._index = index
        self._author_name = author_name
        self._sink = sink
        self._counters = counters

    def _document(self, record: Record) -> dict[str, Any]:
        return to_document(record, self._author_name(record))

    # -- inserts -------------------------------------------------------------

    def write_inserts(self, batches: list[Batch]) -> list[Record]:
        """Insert and index every batch; return the records of failed batches."""
        failed: list[Record] = []
        progress = ProgressMeter("Insert batches", sum(len(b) for b in batches), self._sink)
        for batch in batches:
            if not batch.records:
                continue
            progress.step(len(batch))
            try:
                self._store.insert_records(batch.records)
            except psycopg.Error as exc:
                self._counters.insert_batches_failed += 1
                self._sink.write(
                    f"Error inserting batch of {len(batch)} "
                    f"(ids {batch.records[0].get('id')}..{batch.records[-1].get('id')}): "
                    f"{type(exc).__name__}: {exc}",
                    err=True,
                )
                failed.extend(batch.records)
                continue
            self._counters.records_inserted += len(batch)
            self._sink.write(f"Batch inserted {len(batch)} records")
            self._index_batch(batch)
        return failed

    def _index_batch(self, batch: Batch) -> None:
        documents = [(r.get("id"), self._document(r)) for r in batch]
        try:
            outcome = self._index.bulk_index(documents)
        except OpenSearchException as exc:
            self._counters.index_errors += len(batch)
            self._sink.write(f"Bulk index failed: {type(exc).__name__}: {exc}", err=True)
            return
        self._counters.documents_indexed += outcome.indexed
        if outcome.errors:
            self._counters.index_errors += len(outcome.errors)
            for error in outcome.errors[:10]:
                self._sink.write(f"Bulk index item error: {error}", err=True)

    # -- updates -------------------------------------------------------------

    def write_updates(self, batches: list[Batch]) -> None:
        progress = ProgressMeter("Update batches", sum(len(b) for b in batches), self._sink)
        for batch in batches:
            if not batch.records:
                continue
            progress.step(len(batch))
            self._sink.write(
                " - BATCH UPDATE: " + ", ".join(str(r.get("id")) for r in batch)
            )
            try:
                for record in batch:
                    if not self._store.update_record(record):
                        self._counters.records_missing_on_update += 1
                        self._sink.write(
                            f" - RECORD {record.get('id')} NOT IN STORE; search document not written",
                            err=True,
                        )
                        continue
                    self._counters.records_updated += 1
                    result = self._index.update_or_create(
                        record.get("id"), self._document(record)
                    )
                    if result == "created":
                        self._counters.documents_created_on_update += 1
                    self._counters.documents_indexed += 1
            except psycopg.Error as exc:
                self._counters.update_batches_failed += 1
                self._sink.write(
                    f"Error updating batch: {type(exc).__name__}: {exc}", err=True
                )
            except OpenSearchException as exc:
                self._counters.update_batches_failed += 1
                self._counters.index_errors += 1
                self._sink.write(
                    f"Error updating search document: {type(exc).__name__}: {exc}",
                    err=True,
                )

    # -- recount -------------------------------------------------------------

    def recount_parents(self, parent_ids: list[int], batch_size: int) -> None:
        self._sink.write(f"Adjusting child counts for {len(parent_ids)} parent(s)")
        progress = ProgressMeter("Recount", len(parent_ids), self._sink)
        for ids in chunk(parent_ids, batch_size):
            progress.step(len(ids))
            try:
                counts = self._store.count_children(ids)
                pairs = [(pid, counts.get(pid, 0)) for pid in ids]
                self._store.apply_child_counts(pairs)
            except psycopg.Error as exc:
                self._sink.write(
                    f"Error adjusting child counts: {type(exc).__name__}: {exc}",
                    err=True,
                )
                continue
            self._counters.parents_recounted += len(ids)
