"""legacy_import.profile

YAML import profiles.

A profile names the target tables, the search index and the defaults a
deployment uses, so the command line only carries what changes per run.

Example (config/import_profile.yml):

    tables:
      records: comments
      parents: images
      authors: users
    index: comments
    parent_marker_base_url: https://example.org/images
    batch_size: 250
    suffix:
      known: "\\n\\nImported from ${user.name}"
      unknown: "\\n\\nImported (unknown author)"

Every key is optional; missing keys keep the built-in defaults.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from legacy_import.store import StoreTables

ALLOWED_KEYS = frozenset({
    "tables",
    "index",
    "parent_marker_base_url",
    "batch_size",
    "suffix",
})

ALLOWED_TABLE_KEYS = frozenset({
    "records", "parents", "authors", "sequence", "parent_key", "parent_count_column",
})

ALLOWED_SUFFIX_KEYS = frozenset({"known", "unknown"})


class ProfileValidationError(ValueError):
    """Raised when a YAML profile fails schema validation."""


@dataclass
class ImportProfile:
    tables: StoreTables = field(default_factory=StoreTables)
    index: str = "comments"
    parent_marker_base_url: str = "https://derpibooru.org/images"
    batch_size: int = 250
    suffix_known: str = ""
    suffix_unknown: str = ""
    source_hash: str | None = None


def validate_profile(data: Any) -> None:
    """Raise ProfileValidationError if data does not match the schema."""
    if not isinstance(data, dict):
        raise ProfileValidationError("profile must be a mapping")
    unknown = set(data) - ALLOWED_KEYS
    if unknown:
        raise ProfileValidationError(f"unknown profile keys: {sorted(unknown)}")

    tables = data.get("tables") or {}
    if not isinstance(tables, dict):
        raise ProfileValidationError("'tables' must be a mapping")
    unknown = set(tables) - ALLOWED_TABLE_KEYS
    if unknown:
        raise ProfileValidationError(f"unknown table keys: {sorted(unknown)}")
    for key, value in tables.items():
        if not isinstance(value, str) or not value:
            raise ProfileValidationError(f"tables.{key} must be a non-empty string")

    suffix = data.get("suffix") or {}
    if not isinstance(suffix, dict):
        raise ProfileValidationError("'suffix' must be a mapping")
    unknown = set(suffix) - ALLOWED_SUFFIX_KEYS
    if unknown:
        raise ProfileValidationError(f"unknown suffix keys: {sorted(unknown)}")

    batch_size = data.get("batch_size")
    if batch_size is not None and (
        not isinstance(batch_size, int) or isinstance(batch_size, bool) or batch_size < 1
    ):
        raise ProfileValidationError(
            f"batch_size must be a positive integer, got {batch_size!r}"
        )


def load_profile(path: Path | None) -> ImportProfile:
    """Load and validate a profile; None returns the built-in defaults.

    Raises:
        ProfileValidationError: the YAML does not match the schema.
        FileNotFoundError: the file does not exist.
    """
    if path is None:
        return ImportProfile()
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    validate_profile(data)
    defaults = ImportProfile()
    suffix = data.get("suffix") or {}
    return ImportProfile(
        tables=StoreTables(**(data.get("tables") or {})),
        index=str(data.get("index", defaults.index)),
        parent_marker_base_url=str(
            data.get("parent_marker_base_url", defaults.parent_marker_base_url)
        ),
        batch_size=int(data.get("batch_size", defaults.batch_size)),
        suffix_known=str(suffix.get("known", "")),
        suffix_unknown=str(suffix.get("unknown", "")),
        source_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )
