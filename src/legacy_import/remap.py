"""legacy_import.remap

Durable legacy-id → new-id mapping.

The map is a JSON object ``{"<legacy id>": <new id>, ...}`` loaded once at
the start of a run and written back wholesale at the end.  New entries are
buffered in memory in between, so an interrupted run loses the mappings it
created.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from legacy_import.shared import RemapFileError


class RemapStore:
    """Persist legacy → new id mappings so re-imports update, not duplicate."""

    def __init__(self, path: Path | None, entries: dict[str, int] | None = None) -> None:
        self._path = path
        self._entries: dict[str, int] = dict(entries or {})
        self._created: set[str] = set()

    @classmethod
    def load(cls, path: Path | None) -> "RemapStore":
        """Load the map from path; a missing file (or no path) is empty."""
        if path is None or not path.exists():
            return cls(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise RemapFileError(f"cannot read id remap file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise RemapFileError(f"id remap file {path} must contain a JSON object")
        entries: dict[str, int] = {}
        for key, value in data.items():
            if not isinstance(value, int) or isinstance(value, bool):
                raise RemapFileError(
                    f"id remap file {path}: entry {key!r} has non-integer id {value!r}"
                )
            entries[str(key)] = value
        return cls(path, entries)

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def created(self) -> int:
        """Number of entries recorded during this run."""
        return len(self._created)

    def lookup(self, legacy_id: Any) -> int | None:
        return self._entries.get(str(legacy_id))

    def record(self, legacy_id: Any, new_id: int) -> None:
        """Buffer a new mapping.  An existing mapping is never replaced."""
        key = str(legacy_id)
        existing = self._entries.get(key)
        if existing is not None:
            if existing != new_id:
                raise ValueError(
                    f"legacy id {key} already mapped to {existing}, refusing {new_id}"
                )
            return
        self._entries[key] = new_id
        self._created.add(key)

    def forget(self, legacy_id: Any) -> bool:
        """Drop a mapping recorded during this run.

        Mappings loaded from the file are kept.  Returns True when an entry
        was removed.
        """
        key = str(legacy_id)
        if key not in self._created:
            return False
        self._created.discard(key)
        del self._entries[key]
        return True

    def flush(self) -> Path | None:
        """Atomically replace the file with the full current map."""
        if self._path is None:
            return None
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._entries, fh, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return self._path

    def as_dict(self) -> dict[str, int]:
        return dict(self._entries)

    def __contains__(self, legacy_id: Any) -> bool:
        return str(legacy_id) in self._entries

    def __len__(self) -> int:
        return len(self._entries)
