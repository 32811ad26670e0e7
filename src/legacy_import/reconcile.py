"""legacy_import.reconcile

Batch reconciliation: decide, for every resolved record, whether it is
inserted under a freshly reserved id, updated under the id it received in
an earlier run, or skipped.

Processing order (records must arrive in ascending legacy-id order):
  1.  The caller reserves an IdBlock (current max id + 1 .. + count) and
      the store's id sequence is moved past it once, up front.
  2.  Per record:
      a.  no resolved parent           → Skip (missing_parent)
      b.  remapped + replace enabled   → Update under the remapped id
      c.  remapped + replace disabled  → Skip (replace_disabled)
      d.  not remapped                 → Insert under the next block id,
                                         remap entry recorded
      e.  'comment_<legacy id>' markers in the body are rewritten to the
          referent's new id when the referent was visited earlier in this
          pass.  Forward references are left unchanged.
  3.  Insert and update queues are chunked into fixed-size batches.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

from legacy_import.fields import Record
from legacy_import.remap import RemapStore
from legacy_import.shared import LogSink, RunCounters

REFERENCE_RE = re.compile(r"comment_(\d+)")

SKIP_MISSING_PARENT = "missing_parent"
SKIP_REPLACE_DISABLED = "replace_disabled"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

class Disposition(enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    SKIP = "skip"


@dataclass
class Batch:
    disposition: Disposition
    records: list[Record]

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class SkippedRecord:
    record: Record
    reason: str


@dataclass
class ReconcilePlan:
    insert_batches: list[Batch] = field(default_factory=list)
    update_batches: list[Batch] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)
    touched_parents: list[int] = field(default_factory=list)

    @property
    def insert_count(self) -> int:
        return sum(len(b) for b in self.insert_batches)

    @property
    def update_count(self) -> int:
        return sum(len(b) for b in self.update_batches)


class IdBlockExhausted(RuntimeError):
    pass


@dataclass
class IdBlock:
    """Contiguous ids ``first .. first + size - 1`` reserved for one run."""

    first: int
    size: int
    _next: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._next = self.first

    @property
    def sequence_restart(self) -> int:
        """Value the store's id sequence must restart at."""
        return self.first + self.size

    def next_id(self) -> int:
        if self._next >= self.first + self.size:
            raise IdBlockExhausted(f"id block {self.first}+{self.size} exhausted")
        new_id = self._next
        self._next += 1
        return new_id


class SequenceStore(Protocol):
    def max_id(self) -> int: ...

    def restart_sequence(self, value: int) -> None: ...


def reserve_id_block(store: SequenceStore, count: int) -> IdBlock:
    """Reserve ``count`` ids above the store's current maximum."""
    block = IdBlock(store.max_id() + 1, count)
    store.restart_sequence(block.sequence_restart)
    return block


def chunk(items: list[Any], size: int) -> list[list[Any]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# Reference rewriting
# ---------------------------------------------------------------------------

def rewrite_references(
    body: str,
    visited: set[Any],
    remap: RemapStore,
) -> tuple[str, int]:
    """Rewrite 'comment_<legacy id>' markers whose referent was visited.

    Returns (new_body, number_of_markers_rewritten).
    """
    rewritten = 0

    def _sub(m: re.Match[str]) -> str:
        nonlocal rewritten
        ref = int(m.group(1))
        if ref not in visited:
            return m.group(0)
        new_id = remap.lookup(ref)
        if new_id is None:
            return m.group(0)
        rewritten += 1
        return f"comment_{new_id}"

    return REFERENCE_RE.sub(_sub, body), rewritten


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def reconcile(
    records: list[Record],
    remap: RemapStore,
    id_block: IdBlock,
    *,
    replace_existing: bool,
    batch_size: int,
    sink: LogSink | None = None,
    counters: RunCounters | None = None,
    parent_field: str = "image_id",
    body_field: str = "body",
) -> ReconcilePlan:
    counters = counters if counters is not None else RunCounters()
    plan = ReconcilePlan()
    inserts: list[Record] = []
    updates: list[Record] = []
    visited: set[Any] = set()
    touched: dict[int, None] = {}

    for record in records:
        legacy_id = record.legacy_id
        visited.add(legacy_id)
        parent_id = record.get(parent_field)

        if parent_id is None:
            plan.skipped.append(SkippedRecord(record, SKIP_MISSING_PARENT))
            counters.skipped_missing_parent += 1
            if sink is not None:
                sink.write(f" - SKIPPING RECORD {legacy_id}: no {parent_field}")
            continue

        existing_id = remap.lookup(legacy_id)
        if existing_id is not None and not replace_existing:
            plan.skipped.append(SkippedRecord(record, SKIP_REPLACE_DISABLED))
            counters.skipped_replace_disabled += 1
            if sink is not None:
                sink.write(f" - SKIPPING RECORD {existing_id}: replace disabled")
            continue

        if existing_id is not None:
            disposition = Disposition.UPDATE
            new_id = existing_id
        else:
            disposition = Disposition.INSERT
            new_id = id_block.next_id()
            remap.record(legacy_id, new_id)

        changes: dict[str, Any] = {"id": new_id}
        body = record.get(body_field)
        if isinstance(body, str) and "comment_" in body:
            new_body, n = rewrite_references(body, visited, remap)
            if n:
                changes[body_field] = new_body
                counters.references_rewritten += n
        record = record.with_values(**changes)
        touched.setdefault(parent_id, None)

        if disposition is Disposition.UPDATE:
            updates.append(record)
            counters.planned_updates += 1
            if sink is not None:
                sink.write(f" - UPDATING RECORD {new_id} (legacy {legacy_id})")
        else:
            inserts.append(record)
            counters.planned_inserts += 1
            if sink is not None:
                sink.write(f" - INSERTING RECORD {new_id} (legacy {legacy_id})")

    plan.insert_batches = [Batch(Disposition.INSERT, b) for b in chunk(inserts, batch_size)]
    plan.update_batches = [Batch(Disposition.UPDATE, b) for b in chunk(updates, batch_size)]
    plan.touched_parents = list(touched)
    return plan
