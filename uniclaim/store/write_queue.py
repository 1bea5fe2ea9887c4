"""
Bounded queue of pending writes committed through store batches.
"""

import logging
import threading

logger = logging.getLogger(__name__)

SET = 'set'
UPDATE = 'update'
DELETE = 'delete'


class BatchWriteQueue:
    """
    Collects set/update/delete operations and commits them in batches.

    Reaching max_operations triggers a flush, so a batch never grows past the
    backing store's per-commit limit. flush() commits whatever is pending.
    """

    def __init__(self, store, max_operations=400):
        if max_operations < 1:
            raise ValueError('max_operations must be positive')
        self._store = store
        self._max_operations = max_operations
        self._pending = []
        self._lock = threading.RLock()

    def __len__(self):
        with self._lock:
            return len(self._pending)

    @property
    def max_operations(self):
        return self._max_operations

    def enqueue_set(self, path, data, merge=False):
        self._enqueue((SET, path, data, merge))

    def enqueue_update(self, path, data):
        self._enqueue((UPDATE, path, data, False))

    def enqueue_delete(self, path):
        self._enqueue((DELETE, path, None, False))

    def _enqueue(self, operation):
        with self._lock:
            self._pending.append(operation)
            full = len(self._pending) >= self._max_operations
        if full:
            self.flush()

    def flush(self):
        """
        Commit queued operations in chunks of at most max_operations.

        Returns:
            int: number of operations committed

        Raises whatever the store raised for the failing chunk. Operations in
        that chunk and after it are discarded so a poisoned write cannot block
        the queue forever.
        """
        with self._lock:
            pending, self._pending = self._pending, []
        committed = 0
        for start in range(0, len(pending), self._max_operations):
            chunk = pending[start:start + self._max_operations]
            batch = self._store.batch()
            for kind, path, data, merge in chunk:
                if kind == SET:
                    batch.set(path, data, merge=merge)
                elif kind == UPDATE:
                    batch.update(path, data)
                else:
                    batch.delete(path)
            try:
                batch.commit()
            except Exception as e:
                dropped = len(pending) - committed
                logger.error(f"Write queue flush failed after {committed} operations, dropping {dropped}: {str(e)}")
                raise
            committed += len(chunk)
        if committed:
            logger.debug(f"Write queue committed {committed} operations")
        return committed
