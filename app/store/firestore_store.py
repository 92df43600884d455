"""
Firestore Atomic Store adapter.

- Unique insert: DocumentReference.create (fails with AlreadyExists)
- Conditional writes: @firestore.transactional read-check-write; Firestore
  aborts and re-runs the function when another writer commits first
- Every round trip carries STORE_TIMEOUT_SECONDS
"""

from typing import Any, List, Optional, Tuple
import logging

from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions

from app.config.firebase import get_db
from app.core.errors import ConcurrencyConflictError, InfrastructureError
from app.core.settings import settings
from app.store.base import (
    AtomicStore,
    Document,
    DocumentExistsError,
    DocumentNotFoundError,
    Mutation,
    Precondition,
    next_version,
)
from app.utils.firestore_helpers import chunked, where_filter

logger = logging.getLogger(__name__)


def _infrastructure_error(operation: str, collection: str, exc: Exception) -> InfrastructureError:
    logger.error(f"Firestore {operation} on {collection} failed: {exc}", exc_info=True)
    return InfrastructureError(
        f"Store unavailable during {operation}",
        details={"collection": collection, "reason": type(exc).__name__},
    )


class FirestoreAtomicStore(AtomicStore):
    """AtomicStore backed by Cloud Firestore."""

    def __init__(self, db: Optional[firestore.Client] = None):
        self.db = db or get_db()
        self.timeout = settings.STORE_TIMEOUT_SECONDS
        self.max_attempts = settings.MAX_CONDITIONAL_WRITE_ATTEMPTS

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            snapshot = self.db.collection(collection).document(doc_id).get(timeout=self.timeout)
        except (google_exceptions.GoogleAPICallError, google_exceptions.RetryError) as e:
            raise _infrastructure_error("get", collection, e)
        return snapshot.to_dict() if snapshot.exists else None

    def insert_unique(self, collection: str, doc_id: str, data: Document) -> Document:
        stored = {**data, "version": 1}
        try:
            self.db.collection(collection).document(doc_id).create(stored, timeout=self.timeout)
        except google_exceptions.AlreadyExists:
            raise DocumentExistsError(collection, doc_id)
        except (google_exceptions.GoogleAPICallError, google_exceptions.RetryError) as e:
            raise _infrastructure_error("insert", collection, e)
        return stored

    def update_if(self, collection: str, doc_id: str, mutate: Mutation) -> Optional[Document]:
        doc_ref = self.db.collection(collection).document(doc_id)
        timeout = self.timeout

        @firestore.transactional
        def _apply(transaction) -> Optional[Document]:
            snapshot = doc_ref.get(transaction=transaction, timeout=timeout)
            if not snapshot.exists:
                raise DocumentNotFoundError(collection, doc_id)
            current = snapshot.to_dict()
            updated = mutate(dict(current))
            if updated is None:
                return None
            updated["version"] = next_version(current)
            transaction.set(doc_ref, updated)
            return updated

        return self._run(_apply, "update_if", collection, doc_id)

    def increment_if_below(
        self,
        collection: str,
        doc_id: str,
        counter_field: str,
        ceiling_field: str,
        changes: Optional[Document] = None,
        precondition: Optional[Precondition] = None,
    ) -> Optional[Document]:
        doc_ref = self.db.collection(collection).document(doc_id)
        timeout = self.timeout

        @firestore.transactional
        def _apply(transaction) -> Optional[Document]:
            snapshot = doc_ref.get(transaction=transaction, timeout=timeout)
            if not snapshot.exists:
                raise DocumentNotFoundError(collection, doc_id)
            current = snapshot.to_dict()
            if precondition is not None and not precondition(dict(current)):
                return None
            count = current.get(counter_field, 0)
            if count >= current[ceiling_field]:
                return None
            update = {
                counter_field: count + 1,
                "version": next_version(current),
                **(changes or {}),
            }
            transaction.update(doc_ref, update)
            return {**current, **update}

        return self._run(_apply, "increment_if_below", collection, doc_id)

    def _run(self, apply, operation: str, collection: str, doc_id: str) -> Optional[Document]:
        transaction = self.db.transaction(max_attempts=self.max_attempts)
        try:
            return apply(transaction)
        except google_exceptions.Aborted as e:
            raise self._conflict(collection, doc_id) from e
        except ValueError as e:
            # Raised by the transactional wrapper once every attempt was aborted
            if isinstance(e.__cause__, google_exceptions.Aborted):
                raise self._conflict(collection, doc_id) from e
            raise
        except (google_exceptions.GoogleAPICallError, google_exceptions.RetryError) as e:
            raise _infrastructure_error(operation, collection, e)

    def _conflict(self, collection: str, doc_id: str) -> ConcurrencyConflictError:
        logger.warning(f"Conditional write on {collection}/{doc_id} kept losing after {self.max_attempts} attempts")
        return ConcurrencyConflictError(
            "Too many concurrent updates, please retry",
            details={"collection": collection, "id": doc_id, "attempts": self.max_attempts},
        )

    def query_in(self, collection: str, field_path: str, values: List[Any]) -> List[Tuple[str, Document]]:
        results: List[Tuple[str, Document]] = []
        collection_ref = self.db.collection(collection)
        try:
            for batch in chunked(list(values)):
                query = where_filter(collection_ref, field_path, "in", batch)
                for doc in query.stream(timeout=self.timeout):
                    results.append((doc.id, doc.to_dict()))
        except (google_exceptions.GoogleAPICallError, google_exceptions.RetryError) as e:
            raise _infrastructure_error("query", collection, e)
        return results
