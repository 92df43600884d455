"""
Atomic Store Port - the only way the engine touches shared mutable state.

DESIGN PRINCIPLES:
- Every mutation is a single-document conditional write
- No read-then-write sequences in services; preconditions travel with the write
- The port is storage-agnostic (Firestore, in-memory, ...)
- Each committed write bumps the document ``version``
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar
import logging

from google.api_core import exceptions as google_exceptions
from google.api_core import retry

from app.core.errors import InfrastructureError
from app.core.settings import settings

logger = logging.getLogger(__name__)

INCIDENTS = "incidents"
GUESTS = "guests"

Document = Dict[str, Any]
Mutation = Callable[[Document], Optional[Document]]
Precondition = Callable[[Document], bool]
T = TypeVar("T")


class DocumentNotFoundError(Exception):
    """Conditional write targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class DocumentExistsError(Exception):
    """Unique insert rejected because the key is already taken."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class AtomicStore(ABC):
    """
    Persistence capability required by the engine.

    Adapters must make ``update_if`` and ``increment_if_below`` atomic with
    respect to every other writer of the same document, across processes.
    """

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return a copy of the document, or None if absent."""

    @abstractmethod
    def insert_unique(self, collection: str, doc_id: str, data: Document) -> Document:
        """
        Create the document only if ``doc_id`` is unused.

        Raises:
            DocumentExistsError: the key is already taken
        """

    @abstractmethod
    def update_if(self, collection: str, doc_id: str, mutate: Mutation) -> Optional[Document]:
        """
        Atomic conditional read-modify-write of one document.

        ``mutate`` receives a copy of the committed document and returns the
        full replacement, or None when its precondition does not hold. The
        function must be pure: adapters may call it more than once under
        contention.

        Returns:
            The committed document, or None if the precondition failed
            (nothing was written).

        Raises:
            DocumentNotFoundError: no such document
            ConcurrencyConflictError: contention outlasted the attempt budget
        """

    @abstractmethod
    def increment_if_below(
        self,
        collection: str,
        doc_id: str,
        counter_field: str,
        ceiling_field: str,
        changes: Optional[Document] = None,
        precondition: Optional[Precondition] = None,
    ) -> Optional[Document]:
        """
        ``counter_field += 1`` only if ``counter_field < ceiling_field``.

        ``changes`` are applied in the same write. ``precondition`` (pure,
        may run more than once) sees the committed document inside the same
        atomic section; returning False rejects the increment. Returns the
        committed document, or None when the counter is already at the
        ceiling or the precondition failed.

        Raises:
            DocumentNotFoundError: no such document
        """

    @abstractmethod
    def query_in(self, collection: str, field_path: str, values: List[Any]) -> List[Tuple[str, Document]]:
        """Return ``(doc_id, document)`` pairs whose ``field_path`` is one of ``values``."""


def next_version(document: Document) -> int:
    return int(document.get("version") or 0) + 1


def read_retry() -> retry.Retry:
    """
    Backoff policy for read-only store calls.

    Only infrastructure failures are retried. Writes never go through this:
    a failed write has an unknown effect until state is re-read.
    """
    return retry.Retry(
        predicate=retry.if_exception_type(InfrastructureError),
        initial=0.1,
        maximum=1.0,
        multiplier=2.0,
        timeout=settings.READ_RETRY_DEADLINE_SECONDS,
        on_error=lambda exc: logger.warning(f"Store read failed, retrying: {exc}"),
    )


def retried_read(read: Callable[..., T], *args, **kwargs) -> T:
    """
    Run a read-only store call under ``read_retry()``.

    Raises:
        InfrastructureError: the store stayed unavailable for the whole deadline
    """
    try:
        return read_retry()(read)(*args, **kwargs)
    except google_exceptions.RetryError as e:
        cause = e.cause if e.cause is not None else e
        logger.error(f"Store read gave up after {settings.READ_RETRY_DEADLINE_SECONDS}s: {cause}")
        raise InfrastructureError(
            "Store unavailable, please retry later",
            details={
                "reason": str(cause),
                "deadline_seconds": settings.READ_RETRY_DEADLINE_SECONDS,
            },
        ) from e
