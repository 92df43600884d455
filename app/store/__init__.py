"""
Store selection - Firestore in deployment, in-memory when USE_MOCK_DB is set.
"""

import logging
from typing import Optional

from app.core.settings import settings
from app.store.base import AtomicStore

logger = logging.getLogger(__name__)

_store: Optional[AtomicStore] = None


def get_store() -> AtomicStore:
    """Get or create the AtomicStore singleton."""
    global _store
    if _store is None:
        if settings.USE_MOCK_DB:
            from app.store.memory_store import MemoryAtomicStore
            _store = MemoryAtomicStore()
            logger.info("[STORE] USING IN-MEMORY STORE")
        else:
            from app.store.firestore_store import FirestoreAtomicStore
            _store = FirestoreAtomicStore()
            logger.info("[STORE] USING FIRESTORE")
    return _store


def set_store(store: Optional[AtomicStore]) -> None:
    """Replace the singleton (tests, alternative adapters)."""
    global _store
    _store = store
