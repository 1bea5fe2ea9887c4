"""
Path based document store contract.

Services receive a DocumentStore instance instead of importing a module level
Firestore client, so the same code runs against Firestore or the in-process
MemoryStore. Paths are slash separated: 'posts/<id>',
'conversations/<id>/messages/<id>'.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .. import config

logger = logging.getLogger(__name__)

ADDED = 'added'
MODIFIED = 'modified'
REMOVED = 'removed'

ASCENDING = 'asc'
DESCENDING = 'desc'


def doc_path(*parts):
    return '/'.join(str(p).strip('/') for p in parts)


def split_path(path):
    """Return (collection_path, document_id) for a document path."""
    collection, _, doc_id = path.rpartition('/')
    return collection, doc_id


@dataclass
class Snapshot:
    id: str
    path: str
    exists: bool
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return dict(self.data) if self.exists else None

    def get(self, key, default=None):
        return self.data.get(key, default)


@dataclass
class Change:
    type: str
    snapshot: Snapshot


class Subscription:
    """Handle for a live listener. unsubscribe() may be called more than once."""

    def __init__(self, unsubscribe_fn: Callable[[], None]):
        self._unsubscribe_fn = unsubscribe_fn
        self._lock = threading.Lock()
        self.active = True

    def unsubscribe(self):
        with self._lock:
            if not self.active:
                return
            self.active = False
        try:
            self._unsubscribe_fn()
        except Exception as e:
            logger.warning(f"Failed to detach listener: {str(e)}")


class DocumentStore:
    """
    Base class for store adapters.

    Each store owns its own bounded write queue; call close() (or flush())
    before the process exits so queued writes are committed.
    """

    def __init__(self, write_queue_max_operations: int = None):
        from .write_queue import BatchWriteQueue
        self.write_queue = BatchWriteQueue(
            self,
            max_operations=write_queue_max_operations or config.WRITE_QUEUE_MAX_OPERATIONS,
        )

    # Reads and single writes
    def new_id(self, collection: str) -> str:
        raise NotImplementedError

    def get(self, path: str) -> Snapshot:
        raise NotImplementedError

    def set(self, path: str, data: Dict[str, Any], merge: bool = False):
        raise NotImplementedError

    def update(self, path: str, data: Dict[str, Any]):
        raise NotImplementedError

    def delete(self, path: str):
        raise NotImplementedError

    def query(self, collection: str, filters=(), order_by: Optional[str] = None,
              direction: str = ASCENDING, limit: Optional[int] = None) -> List[Snapshot]:
        raise NotImplementedError

    # Atomic writes
    def batch(self):
        raise NotImplementedError

    def run_transaction(self, fn):
        """
        Run fn(transaction) atomically and return its result.

        The transaction offers get() and query() reads followed by set(),
        update() and delete() writes. Every read must happen before the
        first write.
        """
        raise NotImplementedError

    # Live listeners
    def subscribe_document(self, path: str, callback: Callable[[Snapshot], None]) -> Subscription:
        raise NotImplementedError

    def subscribe_collection(self, collection: str, callback: Callable[[List[Change]], None]) -> Subscription:
        raise NotImplementedError

    def flush(self):
        return self.write_queue.flush()

    def close(self):
        """Commit everything still queued. Safe to call repeatedly."""
        try:
            committed = self.write_queue.flush()
            if committed:
                logger.info(f"Flushed {committed} queued writes on shutdown")
        except Exception as e:
            logger.error(f"Failed to flush queued writes on shutdown: {str(e)}")
