"""
In-memory Atomic Store adapter.

Used when USE_MOCK_DB is set (local development without Firebase
credentials) and by the test suite. A single lock plays the role of the
database's document-level write serialization, so conditional writes behave
like they do on the real store.
"""

import copy
import threading
from typing import Any, Dict, List, Optional, Tuple

from app.store.base import (
    AtomicStore,
    Document,
    DocumentExistsError,
    DocumentNotFoundError,
    Mutation,
    Precondition,
    next_version,
)


def _lookup(document: Document, field_path: str) -> Any:
    value: Any = document
    for part in field_path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class MemoryAtomicStore(AtomicStore):
    """Process-local store; one instance per app (or per test)."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.Lock()

    def _collection(self, name: str) -> Dict[str, Document]:
        return self._collections.setdefault(name, {})

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            document = self._collection(collection).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def insert_unique(self, collection: str, doc_id: str, data: Document) -> Document:
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise DocumentExistsError(collection, doc_id)
            stored = copy.deepcopy(data)
            stored["version"] = 1
            docs[doc_id] = stored
            return copy.deepcopy(stored)

    def update_if(self, collection: str, doc_id: str, mutate: Mutation) -> Optional[Document]:
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            updated = mutate(copy.deepcopy(current))
            if updated is None:
                return None
            updated["version"] = next_version(current)
            docs[doc_id] = copy.deepcopy(updated)
            return updated

    def increment_if_below(
        self,
        collection: str,
        doc_id: str,
        counter_field: str,
        ceiling_field: str,
        changes: Optional[Document] = None,
        precondition: Optional[Precondition] = None,
    ) -> Optional[Document]:
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            if precondition is not None and not precondition(copy.deepcopy(current)):
                return None
            if current.get(counter_field, 0) >= current[ceiling_field]:
                return None
            current[counter_field] = current.get(counter_field, 0) + 1
            current.update(copy.deepcopy(changes or {}))
            current["version"] = next_version(current)
            return copy.deepcopy(current)

    def query_in(self, collection: str, field_path: str, values: List[Any]) -> List[Tuple[str, Document]]:
        wanted = set(values)
        with self._lock:
            return [
                (doc_id, copy.deepcopy(document))
                for doc_id, document in self._collection(collection).items()
                if _lookup(document, field_path) in wanted
            ]
