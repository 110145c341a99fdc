"""Document store with unique-key upsert and simple range queries.

Each collection declares its unique key fields. Documents are JSON-compatible
dicts (pydantic `model_dump(mode="json")`). A collection keeps its documents
in memory and, when given a file, rewrites that file after every write.
"""

import copy
import json
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Any

from xauto.store.state_store import write_json_atomic

Document = dict[str, Any]
Predicate = Callable[[Document], bool]

ASCENDING = 1
DESCENDING = -1


class DuplicateKeyError(Exception):
    """insert() was called with a key that already exists."""


def _sort_value(value: Any) -> tuple[int, Any]:
    # Missing values sort before everything else in ascending order
    if value is None:
        return (0, "")
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


class Collection:
    """A keyed set of documents.

    Attributes:
        name: Collection name (also the JSON file stem).
        key_fields: Field names that together form the unique key.
    """

    def __init__(
        self,
        name: str,
        key_fields: Sequence[str],
        path: Path | None = None,
    ):
        self.name = name
        self.key_fields = tuple(key_fields)
        self.path = path
        self._docs: dict[str, Document] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self.path is None or not self.path.exists():
            return
        with open(self.path, encoding="utf-8") as f:
            docs = json.load(f)
        for doc in docs:
            self._docs[self._key_of(doc)] = doc

    def _save(self) -> None:
        if self.path is None:
            return
        write_json_atomic(self.path, list(self._docs.values()))

    def _key_of(self, doc: Document) -> str:
        try:
            parts = [str(doc[field]) for field in self.key_fields]
        except KeyError as e:
            raise KeyError(f"{self.name}: document missing key field {e}") from e
        return "\x1f".join(parts)

    def _key_from_values(self, values: Sequence[Any]) -> str:
        if len(values) != len(self.key_fields):
            raise ValueError(
                f"{self.name}: expected {len(self.key_fields)} key values, got {len(values)}"
            )
        return "\x1f".join(str(v) for v in values)

    async def find_by_key(self, *values: Any) -> Document | None:
        self._ensure_loaded()
        doc = self._docs.get(self._key_from_values(values))
        return copy.deepcopy(doc) if doc is not None else None

    async def find_by_keys_in(
        self,
        field: str,
        values: Iterable[Any],
        *,
        where: Predicate | None = None,
    ) -> list[Document]:
        """Return documents whose `field` is one of `values` (batch lookup)."""
        self._ensure_loaded()
        wanted = {str(v) for v in values}
        if not wanted:
            return []
        return [
            copy.deepcopy(doc)
            for doc in self._docs.values()
            if str(doc.get(field)) in wanted and (where is None or where(doc))
        ]

    async def upsert_by_key(self, doc: Document) -> Document:
        """Insert or merge-set a document by its unique key."""
        self._ensure_loaded()
        key = self._key_of(doc)
        current = self._docs.get(key, {})
        current.update(copy.deepcopy(doc))
        self._docs[key] = current
        self._save()
        return copy.deepcopy(current)

    async def insert(self, doc: Document) -> Document:
        self._ensure_loaded()
        key = self._key_of(doc)
        if key in self._docs:
            raise DuplicateKeyError(f"{self.name}: duplicate key {key!r}")
        self._docs[key] = copy.deepcopy(doc)
        self._save()
        return copy.deepcopy(doc)

    async def range_query(
        self,
        *,
        where: Predicate | None = None,
        sort: Sequence[tuple[str, int]] = (),
        limit: int | None = None,
    ) -> list[Document]:
        """Filter, sort (multi-key, stable) and truncate documents."""
        self._ensure_loaded()
        docs = [doc for doc in self._docs.values() if where is None or where(doc)]
        for field, direction in reversed(sort):
            docs.sort(
                key=lambda d, f=field: _sort_value(d.get(f)),
                reverse=direction == DESCENDING,
            )
        if limit is not None:
            docs = docs[:limit]
        return [copy.deepcopy(doc) for doc in docs]

    async def delete_where(self, where: Predicate) -> int:
        self._ensure_loaded()
        doomed = [key for key, doc in self._docs.items() if where(doc)]
        for key in doomed:
            del self._docs[key]
        if doomed:
            self._save()
        return len(doomed)

    async def count(self) -> int:
        self._ensure_loaded()
        return len(self._docs)


class DocumentStore:
    """The engine's collections, optionally persisted under a data directory."""

    def __init__(self, data_dir: str | Path | None = None):
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self.bookmarks = self._collection("bookmark_items", ("tweet_id",))
        self.summaries = self._collection("item_summaries", ("tweet_id", "version"))
        self.digests = self._collection("digest_reports", ("period", "period_key"))
        self.job_runs = self._collection("job_runs", ("run_id",))
        self.providers = self._collection("provider_configs", ("provider",))

    def _collection(self, name: str, key_fields: Sequence[str]) -> Collection:
        path = self.data_dir / f"{name}.json" if self.data_dir is not None else None
        return Collection(name, key_fields, path)
