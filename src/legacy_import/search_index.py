"""legacy_import.search_index

OpenSearch side of the dual write.

The only index error handled specially is a partial update against a
document that does not exist (``document_missing_exception``): it becomes
DocumentMissingError so callers can fall back to creating the document.
Every other client error propagates unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from opensearchpy import NotFoundError, OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException

from legacy_import.shared import LogSink, SetupError

log = logging.getLogger(__name__)

DOCUMENT_MISSING = "document_missing_exception"


class DocumentMissingError(Exception):
    """Raised when a partial update targets a missing document."""

    def __init__(self, doc_id: Any) -> None:
        super().__init__(f"document {doc_id} missing")
        self.doc_id = doc_id


class IndexUnavailableError(SetupError):
    """Raised when the target index is absent, closed or red."""


@dataclass
class BulkOutcome:
    indexed: int = 0
    errors: list[str] = field(default_factory=list)


class SearchIndex:
    def __init__(self, client: OpenSearch, index_name: str) -> None:
        self._client = client
        self.index_name = index_name

    @classmethod
    def connect(cls, node: str, index_name: str) -> "SearchIndex":
        client = OpenSearch(hosts=[node], connection_class=RequestsHttpConnection)
        try:
            client.info()
        except OpenSearchException as exc:
            raise SetupError(f"error connecting to OpenSearch at {node}: {exc}") from exc
        return cls(client, index_name)

    def close(self) -> None:
        self._client.close()

    def check_health(self, sink: LogSink) -> str:
        """Return the index health; raise IndexUnavailableError if unusable.

        A yellow index is usable (typically a replica issue) and only logs
        a warning.
        """
        try:
            indices = self._client.cat.indices(format="json")
        except OpenSearchException as exc:
            raise IndexUnavailableError(
                f"cannot read index status for {self.index_name!r}: {exc}"
            ) from exc
        entry = next((i for i in indices if i.get("index") == self.index_name), None)
        if entry is None:
            raise IndexUnavailableError(
                f"index {self.index_name!r} not found; check the configured index name"
            )
        status = entry.get("status")
        health = entry.get("health")
        if status != "open":
            raise IndexUnavailableError(
                f"index {self.index_name!r} is not open (status: {status})"
            )
        if health == "red":
            raise IndexUnavailableError(f"index {self.index_name!r} health is red")
        if health == "yellow":
            sink.write(
                f"WARNING: index {self.index_name!r} health is yellow, "
                "possibly a replica issue; continuing",
                err=True,
            )
        else:
            sink.write(f"Index {self.index_name!r} found in OpenSearch")
        return str(health)

    def bulk_index(self, documents: list[tuple[Any, dict[str, Any]]]) -> BulkOutcome:
        """Index (id, document) pairs in one bulk request."""
        outcome = BulkOutcome()
        if not documents:
            return outcome
        body: list[dict[str, Any]] = []
        for doc_id, doc in documents:
            body.append({"index": {"_index": self.index_name, "_id": str(doc_id)}})
            body.append(doc)
        response = self._client.bulk(body=body, index=self.index_name)
        for item in response.get("items", []):
            result = item.get("index", {})
            error = result.get("error")
            if error:
                reason = error.get("reason") if isinstance(error, dict) else error
                outcome.errors.append(f"{result.get('_id')}: {reason}")
            else:
                outcome.indexed += 1
        return outcome

    def update(self, doc_id: Any, doc: dict[str, Any]) -> None:
        try:
            self._client.update(index=self.index_name, id=str(doc_id), body={"doc": doc})
        except NotFoundError as exc:
            if exc.error == DOCUMENT_MISSING:
                raise DocumentMissingError(doc_id) from exc
            raise

    def create(self, doc_id: Any, doc: dict[str, Any]) -> None:
        self._client.index(index=self.index_name, id=str(doc_id), body=doc)

    def update_or_create(self, doc_id: Any, doc: dict[str, Any]) -> str:
        """Partially update a document, creating it when it is missing."""
        try:
            self.update(doc_id, doc)
            return "updated"
        except DocumentMissingError:
            log.info("document %s missing from %s; creating", doc_id, self.index_name)
            self.create(doc_id, doc)
            return "created"
