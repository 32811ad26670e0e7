"""legacy_import.resolvers

Resolvers for the comment FieldSpec list, and the read-only context they
consult.

Every resolver is a plain function ``(ctx, record, value) -> (record,
value)``; ``build_comment_fields`` binds the context with
functools.partial so the pipeline sees the ``(record, value)`` shape.

Context snapshots (authors CSV, store authors, store parents) are fetched
once per run and never mutated.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Iterable, Mapping

from legacy_import.fields import FieldSpec, Record
from legacy_import.normalize import parse_int_prefix, synthetic_client

NULL_AUTHOR = "NULL"
ANONYMOUS_NAME = "Anonymous"
FALLBACK_NAME = "Importer"

AUTHOR_CSV_COLUMNS = {"id": "integer", "name": "varchar"}

_PLACEHOLDER_RE = re.compile(r"\$\{(user|record)\.(.*?)\}")


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthorDirectory:
    """Legacy author names (from the export) joined to store authors by name."""

    legacy_names: Mapping[Any, str]
    store_ids_by_name: Mapping[str, int]
    store_names_by_id: Mapping[int, str]

    @classmethod
    def from_snapshots(
        cls,
        legacy_rows: Iterable[dict[str, Any]],
        store_rows: Iterable[tuple[int, str]],
    ) -> "AuthorDirectory":
        legacy_names = {row["id"]: row["name"] for row in legacy_rows}
        ids_by_name: dict[str, int] = {}
        names_by_id: dict[int, str] = {}
        for store_id, name in store_rows:
            ids_by_name.setdefault(name, store_id)
            names_by_id[store_id] = name
        return cls(legacy_names, ids_by_name, names_by_id)

    def legacy_name(self, legacy_id: Any) -> str | None:
        return self.legacy_names.get(legacy_id) or None

    def match(self, legacy_id: Any) -> int | None:
        name = self.legacy_name(legacy_id)
        if name is None:
            return None
        return self.store_ids_by_name.get(name)

    def display_name(self, record: Record) -> str:
        """Author shown in search documents for a resolved record."""
        user_id = record.get("user_id")
        if user_id is not None and user_id in self.store_names_by_id:
            return self.store_names_by_id[user_id]
        if record.get("anonymous"):
            return ANONYMOUS_NAME
        return FALLBACK_NAME


@dataclass(frozen=True)
class ParentDirectory:
    """Map legacy parent ids to new ids via 'Original: <url>/<id>' markers."""

    base_url: str
    new_ids: Mapping[int, int]

    @staticmethod
    def marker_pattern(base_url: str) -> re.Pattern[str]:
        return re.compile(rf"Original: {re.escape(base_url.rstrip('/'))}/(\d+)(?!\d)")

    @classmethod
    def from_snapshot(
        cls,
        rows: Iterable[tuple[int, str | None]],
        base_url: str,
    ) -> "ParentDirectory":
        pattern = cls.marker_pattern(base_url)
        new_ids: dict[int, int] = {}
        for parent_id, description in rows:
            for m in pattern.finditer(description or ""):
                # first parent carrying a marker wins
                new_ids.setdefault(int(m.group(1)), parent_id)
        return cls(base_url, new_ids)

    def resolve(self, legacy_parent_id: Any) -> int | None:
        if isinstance(legacy_parent_id, int):
            key = legacy_parent_id
        else:
            key = parse_int_prefix(str(legacy_parent_id))
            if key is None or str(key) != str(legacy_parent_id).strip():
                return None
        return self.new_ids.get(key)


@dataclass(frozen=True)
class ResolverSettings:
    anonymous_fallback: bool = True
    fallback_user_id: int | None = None
    suffix_known: str = ""
    suffix_unknown: str = ""


@dataclass(frozen=True)
class ResolverContext:
    authors: AuthorDirectory
    parents: ParentDirectory
    settings: ResolverSettings = field(default_factory=ResolverSettings)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------

def resolve_legacy_id(ctx: ResolverContext, record: Record, legacy_id: Any) -> tuple[Record, Any]:
    return record.with_legacy(id=legacy_id), legacy_id


def resolve_author(ctx: ResolverContext, record: Record, legacy_user_id: Any) -> tuple[Record, Any]:
    """Map the legacy author to a store author, or an anonymous/fallback one.

    A synthetic client address and fingerprint are always derived from the
    legacy author id ('NULL' authors use the legacy record id instead), so
    re-runs produce identical values.
    """
    record = record.with_legacy(user_id=legacy_user_id)
    is_null = str(legacy_user_id).strip() == NULL_AUTHOR
    if is_null:
        key = f"record:{record.legacy_id}"
        anonymous = True
        store_id = None
    else:
        key = f"author:{legacy_user_id}"
        anonymous = bool(record.get("anonymous"))
        store_id = ctx.authors.match(legacy_user_id)
    address, fingerprint = synthetic_client(key)

    if store_id is None:
        if ctx.settings.anonymous_fallback:
            anonymous = True
        user_id = None if anonymous else ctx.settings.fallback_user_id
    else:
        user_id = store_id
        anonymous = False

    record = record.with_values(ip=address, fingerprint=fingerprint, anonymous=anonymous)
    return record, user_id


def resolve_parent(ctx: ResolverContext, record: Record, legacy_parent_id: Any) -> tuple[Record, Any]:
    record = record.with_legacy(image_id=legacy_parent_id)
    return record, ctx.parents.resolve(legacy_parent_id)


def render_suffix(template: str, author_name: str | None, record: Record) -> str:
    def _sub(m: re.Match[str]) -> str:
        scope, name = m.group(1), m.group(2)
        if scope == "user":
            if name == "name":
                return author_name if author_name is not None else "N/A"
            return ""
        value = record.get(name)
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template or "")


def resolve_body(ctx: ResolverContext, record: Record, body: Any) -> tuple[Record, Any]:
    """Rewrite the legacy parent id in the body and append the author suffix."""
    author_name = ctx.authors.legacy_name(record.legacy.get("user_id"))
    template = (
        ctx.settings.suffix_known if author_name is not None
        else ctx.settings.suffix_unknown
    )
    suffix = render_suffix(template, author_name, record)

    text = str(body)
    legacy_parent = record.legacy.get("image_id")
    new_parent = record.get("image_id")
    if legacy_parent not in (None, "") and new_parent is not None:
        text = text.replace(str(legacy_parent), str(new_parent))
    return record, text + suffix


# ---------------------------------------------------------------------------
# Comment field list
# ---------------------------------------------------------------------------

def build_comment_fields(ctx: ResolverContext) -> list[FieldSpec]:
    """FieldSpec list for the comments table.  Order is significant."""
    return [
        FieldSpec("id", "integer", "id", resolver=partial(resolve_legacy_id, ctx)),
        FieldSpec("body_textile", "varchar", default=""),
        FieldSpec("ip", "inet"),
        FieldSpec("fingerprint", "varchar"),
        FieldSpec("user_agent", "varchar", default=""),
        FieldSpec("referrer", "varchar", default=""),
        FieldSpec("anonymous", "boolean", default=False),
        FieldSpec("hidden_from_users", "boolean", default=False),
        FieldSpec("user_id", "integer", "user_id", resolver=partial(resolve_author, ctx)),
        FieldSpec("deleted_by_id", "integer"),
        FieldSpec("image_id", "integer", "image_id", resolver=partial(resolve_parent, ctx)),
        FieldSpec("created_at", "timestamp", "created_at"),
        FieldSpec("updated_at", "timestamp", "updated_at"),
        FieldSpec("edit_reason", "varchar"),
        FieldSpec("edited_at", "timestamp"),
        FieldSpec("deletion_reason", "varchar", default=""),
        FieldSpec("destroyed_content", "boolean", default=False),
        FieldSpec("name_at_post_time", "varchar"),
        FieldSpec("body", "string", "body", resolver=partial(resolve_body, ctx)),
        FieldSpec("approved", "boolean", default=True),
    ]
