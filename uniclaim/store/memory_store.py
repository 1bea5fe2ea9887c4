"""
In-process DocumentStore with Firestore write semantics.

Used for local development (UNICLAIM_STORE=memory) and by the test suite.
Understands the Firestore sentinels (SERVER_TIMESTAMP, DELETE_FIELD,
Increment, ArrayUnion, ArrayRemove) and dotted field paths in update().
Batches and transactions are all-or-nothing; listeners are invoked
synchronously after the commit that changed their documents.
"""

import copy
import itertools
import logging
import operator
import threading
import uuid
from datetime import datetime, timedelta, timezone

from firebase_admin import firestore

from ..errors import NotFoundError, ValidationError
from .document_store import (
    ADDED, DESCENDING, MODIFIED, REMOVED,
    Change, DocumentStore, Snapshot, Subscription, split_path,
)

logger = logging.getLogger(__name__)

_MISSING = object()

_COMPARATORS = {
    '==': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
    'in': lambda value, options: value in options,
    'not-in': lambda value, options: value not in options,
    'array_contains': lambda value, item: isinstance(value, list) and item in value,
    'array_contains_any': lambda value, items: isinstance(value, list) and any(i in value for i in items),
}


def _get_field(data, field_path):
    current = data
    for part in field_path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _is_sentinel(value):
    return value is firestore.SERVER_TIMESTAMP or value is firestore.DELETE_FIELD or isinstance(
        value, (firestore.Increment, firestore.ArrayUnion, firestore.ArrayRemove))


def _transform(value, existing, now):
    """Resolve a written value against the value currently stored."""
    if value is firestore.SERVER_TIMESTAMP:
        return now
    if isinstance(value, firestore.Increment):
        base = existing if isinstance(existing, (int, float)) and not isinstance(existing, bool) else 0
        return base + value.value
    if isinstance(value, firestore.ArrayUnion):
        result = list(existing) if isinstance(existing, list) else []
        for item in value.values:
            if item not in result:
                result.append(item)
        return result
    if isinstance(value, firestore.ArrayRemove):
        result = list(existing) if isinstance(existing, list) else []
        return [item for item in result if item not in value.values]
    if isinstance(value, dict):
        return {
            k: _transform(v, _MISSING, now)
            for k, v in value.items()
            if v is not firestore.DELETE_FIELD
        }
    if isinstance(value, list):
        return [_transform(v, _MISSING, now) for v in value]
    return copy.deepcopy(value)


def _merge_into(target, data, now):
    for key, value in data.items():
        if value is firestore.DELETE_FIELD:
            target.pop(key, None)
        elif isinstance(value, dict) and value and not _is_sentinel(value):
            child = target.get(key)
            if not isinstance(child, dict):
                child = {}
            _merge_into(child, value, now)
            target[key] = child
        else:
            target[key] = _transform(value, target.get(key, _MISSING), now)


def _drop_listener(listeners, key, token):
    callbacks = listeners.get(key)
    if callbacks is None:
        return
    callbacks.pop(token, None)
    if not callbacks:
        del listeners[key]


def _apply_update(target, data, now):
    for key, value in data.items():
        parts = key.split('.')
        parent = target
        for part in parts[:-1]:
            child = parent.get(part)
            if not isinstance(child, dict):
                child = {}
                parent[part] = child
            parent = child
        leaf = parts[-1]
        if value is firestore.DELETE_FIELD:
            parent.pop(leaf, None)
        else:
            parent[leaf] = _transform(value, parent.get(leaf, _MISSING), now)


class _MemoryBatch:
    def __init__(self, store):
        self._store = store
        self._operations = []

    def set(self, path, data, merge=False):
        self._operations.append(('set', path, data, merge))

    def update(self, path, data):
        self._operations.append(('update', path, data, False))

    def delete(self, path):
        self._operations.append(('delete', path, None, False))

    def __len__(self):
        return len(self._operations)

    def commit(self):
        if self._operations:
            self._store._commit(self._operations)


class _MemoryTransaction(_MemoryBatch):
    def get(self, path):
        return self._store.get(path)

    def query(self, collection, filters=(), order_by=None, direction='asc', limit=None):
        return self._store.query(collection, filters, order_by, direction, limit)


class MemoryStore(DocumentStore):
    """Thread-safe dictionary backed store."""

    def __init__(self, write_queue_max_operations=None):
        super().__init__(write_queue_max_operations)
        self._documents = {}
        self._lock = threading.RLock()
        self._last_timestamp = None
        self._tokens = itertools.count(1)
        self._document_listeners = {}
        self._collection_listeners = {}

    def _server_now(self):
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _snapshot(self, path):
        collection, doc_id = split_path(path)
        data = self._documents.get(path)
        if data is None:
            return Snapshot(id=doc_id, path=path, exists=False)
        return Snapshot(id=doc_id, path=path, exists=True, data=copy.deepcopy(data))

    def new_id(self, collection):
        return uuid.uuid4().hex[:20]

    def get(self, path):
        with self._lock:
            return self._snapshot(path)

    def set(self, path, data, merge=False):
        self._commit([('set', path, data, merge)])

    def update(self, path, data):
        self._commit([('update', path, data, False)])

    def delete(self, path):
        self._commit([('delete', path, None, False)])

    def batch(self):
        return _MemoryBatch(self)

    def run_transaction(self, fn):
        with self._lock:
            transaction = _MemoryTransaction(self)
            result = fn(transaction)
            events = self._apply(transaction._operations) if len(transaction) else []
        self._dispatch(events)
        return result

    def _commit(self, operations):
        with self._lock:
            events = self._apply(operations)
        self._dispatch(events)

    def _apply(self, operations):
        """Apply operations atomically and return the resulting change events."""
        now = self._server_now()
        working = {}
        for kind, path, data, merge in operations:
            if path not in working:
                current = self._documents.get(path)
                working[path] = copy.deepcopy(current) if current is not None else None
            current = working[path]
            if kind == 'delete':
                working[path] = None
            elif kind == 'update':
                if current is None:
                    raise NotFoundError(f"Document not found: {path}")
                _apply_update(current, data, now)
            elif merge:
                target = current if current is not None else {}
                _merge_into(target, data, now)
                working[path] = target
            else:
                if not isinstance(data, dict):
                    raise ValidationError(f"Document data must be a mapping: {path}")
                working[path] = _transform(data, _MISSING, now)

        events = []
        for path, after in working.items():
            before = self._documents.get(path)
            if before is None and after is None:
                continue
            if after is None:
                del self._documents[path]
                # Removed documents report the data they had before the delete
                snapshot = Snapshot(id=split_path(path)[1], path=path, exists=False, data=before)
                events.append((path, REMOVED, snapshot))
                continue
            if before == after:
                continue
            self._documents[path] = after
            events.append((path, ADDED if before is None else MODIFIED, self._snapshot(path)))
        return events

    def query(self, collection, filters=(), order_by=None, direction='asc', limit=None):
        prefix = collection.rstrip('/') + '/'
        with self._lock:
            matches = []
            for path, data in self._documents.items():
                if not path.startswith(prefix) or '/' in path[len(prefix):]:
                    continue
                if all(self._matches(data, f) for f in filters):
                    matches.append(path)
            if order_by:
                matches = [p for p in matches if _get_field(self._documents[p], order_by) is not _MISSING]
                matches.sort(
                    key=lambda p: (_get_field(self._documents[p], order_by), split_path(p)[1]),
                    reverse=direction == DESCENDING,
                )
            else:
                matches.sort(key=lambda p: split_path(p)[1])
            if limit:
                matches = matches[:limit]
            return [self._snapshot(p) for p in matches]

    @staticmethod
    def _matches(data, condition):
        field_path, op, expected = condition
        compare = _COMPARATORS.get(op)
        if compare is None:
            raise ValidationError(f"Unsupported query operator: {op}")
        value = _get_field(data, field_path)
        if value is _MISSING:
            return False
        try:
            return bool(compare(value, expected))
        except TypeError:
            return False

    def subscribe_document(self, path, callback):
        token = next(self._tokens)
        with self._lock:
            self._document_listeners.setdefault(path, {})[token] = callback
            initial = self._snapshot(path)

        def _detach():
            with self._lock:
                _drop_listener(self._document_listeners, path, token)

        subscription = Subscription(_detach)
        self._safe_call(callback, initial, path)
        return subscription

    def subscribe_collection(self, collection, callback):
        collection = collection.rstrip('/')
        token = next(self._tokens)
        with self._lock:
            self._collection_listeners.setdefault(collection, {})[token] = callback
            initial = [Change(ADDED, snapshot) for snapshot in self.query(collection)]

        def _detach():
            with self._lock:
                _drop_listener(self._collection_listeners, collection, token)

        subscription = Subscription(_detach)
        if initial:
            self._safe_call(callback, initial, collection)
        return subscription

    def _dispatch(self, events):
        if not events:
            return
        document_calls = []
        collection_changes = {}
        with self._lock:
            for path, change_type, snapshot in events:
                for callback in list(self._document_listeners.get(path, {}).values()):
                    document_calls.append((callback, snapshot, path))
                collection = split_path(path)[0]
                if self._collection_listeners.get(collection):
                    collection_changes.setdefault(collection, []).append(Change(change_type, snapshot))
            collection_calls = [
                (callback, changes, collection)
                for collection, changes in collection_changes.items()
                for callback in list(self._collection_listeners.get(collection, {}).values())
            ]
        for callback, snapshot, path in document_calls:
            self._safe_call(callback, snapshot, path)
        for callback, changes, collection in collection_calls:
            self._safe_call(callback, changes, collection)

    @staticmethod
    def _safe_call(callback, payload, source):
        try:
            callback(payload)
        except Exception as e:
            logger.error(f"Listener for {source} failed: {str(e)}")
