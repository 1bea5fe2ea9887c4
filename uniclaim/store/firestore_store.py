"""
DocumentStore adapter over the Firebase Admin Firestore client.
"""

import logging
from contextlib import contextmanager

from firebase_admin import firestore
from google.api_core import exceptions as gcp_exceptions
# Firebase Admin for constants, Google Cloud Firestore for the transactional decorator
from google.cloud import firestore as gc_firestore

from ..errors import NotFoundError, PermissionDeniedError
from .document_store import (
    ADDED, DESCENDING, MODIFIED, REMOVED,
    Change, DocumentStore, Snapshot, Subscription,
)

logger = logging.getLogger(__name__)

_CHANGE_TYPES = {'ADDED': ADDED, 'MODIFIED': MODIFIED, 'REMOVED': REMOVED}


@contextmanager
def _translate_errors(path):
    try:
        yield
    except gcp_exceptions.NotFound as e:
        raise NotFoundError(f"Document not found: {path}") from e
    except gcp_exceptions.PermissionDenied as e:
        raise PermissionDeniedError(f"Store rejected access to {path}") from e


def _wrap(doc):
    exists = bool(doc.exists)
    return Snapshot(
        id=doc.id,
        path=doc.reference.path,
        exists=exists,
        data=(doc.to_dict() or {}) if exists else {},
    )


def _build_query(client, collection, filters=(), order_by=None, direction='asc', limit=None):
    query = client.collection(collection)
    for field_path, op, value in filters:
        query = query.where(field_path, op, value)
    if order_by:
        query = query.order_by(
            order_by,
            direction=firestore.Query.DESCENDING if direction == DESCENDING else firestore.Query.ASCENDING,
        )
    if limit:
        query = query.limit(limit)
    return query


class _FirestoreBatch:
    def __init__(self, client):
        self._client = client
        self._batch = client.batch()
        self._paths = []

    def set(self, path, data, merge=False):
        self._batch.set(self._client.document(path), data, merge=merge)
        self._paths.append(path)

    def update(self, path, data):
        self._batch.update(self._client.document(path), data)
        self._paths.append(path)

    def delete(self, path):
        self._batch.delete(self._client.document(path))
        self._paths.append(path)

    def __len__(self):
        return len(self._paths)

    def commit(self):
        if not self._paths:
            return
        with _translate_errors(', '.join(self._paths[:3])):
            self._batch.commit()


class _FirestoreTransaction:
    def __init__(self, client, transaction):
        self._client = client
        self._transaction = transaction

    def get(self, path):
        with _translate_errors(path):
            return _wrap(self._client.document(path).get(transaction=self._transaction))

    def query(self, collection, filters=(), order_by=None, direction='asc', limit=None):
        query = _build_query(self._client, collection, filters, order_by, direction, limit)
        with _translate_errors(collection):
            return [_wrap(doc) for doc in self._transaction.get(query)]

    def set(self, path, data, merge=False):
        self._transaction.set(self._client.document(path), data, merge=merge)

    def update(self, path, data):
        self._transaction.update(self._client.document(path), data)

    def delete(self, path):
        self._transaction.delete(self._client.document(path))


class FirestoreStore(DocumentStore):
    """Production store backed by Cloud Firestore."""

    def __init__(self, client=None, write_queue_max_operations=None):
        super().__init__(write_queue_max_operations)
        self._client = client or firestore.client()

    @property
    def client(self):
        return self._client

    def new_id(self, collection):
        return self._client.collection(collection).document().id

    def get(self, path):
        with _translate_errors(path):
            return _wrap(self._client.document(path).get())

    def set(self, path, data, merge=False):
        with _translate_errors(path):
            self._client.document(path).set(data, merge=merge)

    def update(self, path, data):
        with _translate_errors(path):
            self._client.document(path).update(data)

    def delete(self, path):
        with _translate_errors(path):
            self._client.document(path).delete()

    def query(self, collection, filters=(), order_by=None, direction='asc', limit=None):
        query = _build_query(self._client, collection, filters, order_by, direction, limit)
        with _translate_errors(collection):
            return [_wrap(doc) for doc in query.stream()]

    def batch(self):
        return _FirestoreBatch(self._client)

    def run_transaction(self, fn):
        client = self._client

        @gc_firestore.transactional
        def _run(transaction):
            return fn(_FirestoreTransaction(client, transaction))

        return _run(client.transaction())

    def subscribe_document(self, path, callback):
        doc_id = path.rpartition('/')[2]

        def on_snapshot(docs, changes, read_time):
            # A deleted document arrives as an empty list or a non-existent snapshot
            if docs and docs[0].exists:
                snapshot = _wrap(docs[0])
            else:
                snapshot = Snapshot(id=doc_id, path=path, exists=False)
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Document listener for {path} failed: {str(e)}")

        watch = self._client.document(path).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe)

    def subscribe_collection(self, collection, callback):
        def on_snapshot(col_snapshot, changes, read_time):
            deltas = [
                Change(type=_CHANGE_TYPES.get(change.type.name, MODIFIED), snapshot=_wrap(change.document))
                for change in changes
            ]
            if not deltas:
                return
            try:
                callback(deltas)
            except Exception as e:
                logger.error(f"Collection listener for {collection} failed: {str(e)}")

        watch = self._client.collection(collection).on_snapshot(on_snapshot)
        return Subscription(watch.unsubscribe)
