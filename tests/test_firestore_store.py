from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as gcp_exceptions

from uniclaim.database import create_store
from uniclaim.errors import NotFoundError, PermissionDeniedError
from uniclaim.store.document_store import ADDED, REMOVED
from uniclaim.store.firestore_store import FirestoreStore
from uniclaim.store.memory_store import MemoryStore


def fake_doc(doc_id, data, path=None):
    doc = MagicMock()
    doc.id = doc_id
    doc.exists = data is not None
    doc.to_dict.return_value = data
    doc.reference.path = path or f"posts/{doc_id}"
    return doc


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def store(client):
    return FirestoreStore(client=client)


def test_get_wraps_snapshot(store, client):
    client.document.return_value.get.return_value = fake_doc('p1', {'title': 'Umbrella'})

    snapshot = store.get('posts/p1')

    client.document.assert_called_with('posts/p1')
    assert snapshot.exists and snapshot.data == {'title': 'Umbrella'}
    assert snapshot.path == 'posts/p1'


def test_store_errors_are_translated(store, client):
    client.document.return_value.update.side_effect = gcp_exceptions.NotFound('missing')
    with pytest.raises(NotFoundError):
        store.update('posts/p1', {'status': 'completed'})

    client.document.return_value.get.side_effect = gcp_exceptions.PermissionDenied('rules')
    with pytest.raises(PermissionDeniedError):
        store.get('posts/p1')


def test_query_applies_filters_order_and_limit(store, client):
    query = client.collection.return_value
    query.where.return_value = query
    query.order_by.return_value = query
    query.limit.return_value = query
    query.stream.return_value = [fake_doc('a', {'n': 1}), fake_doc('b', {'n': 2})]

    results = store.query('posts', filters=[('type', '==', 'found')], order_by='n', limit=2)

    query.where.assert_called_once_with('type', '==', 'found')
    query.order_by.assert_called_once()
    query.limit.assert_called_once_with(2)
    assert [s.id for s in results] == ['a', 'b']


def test_batch_commits_once_and_skips_empty(store, client):
    empty = store.batch()
    empty.commit()
    client.batch.return_value.commit.assert_not_called()

    batch = store.batch()
    batch.set('posts/p1', {'a': 1})
    batch.delete('posts/p2')
    assert len(batch) == 2
    batch.commit()
    client.batch.return_value.commit.assert_called_once()


def test_document_subscription_reports_deletion(store, client):
    seen = []
    store.subscribe_document('conversations/c1', seen.append)
    on_snapshot = client.document.return_value.on_snapshot.call_args.args[0]

    on_snapshot([fake_doc('c1', {'post_id': 'p1'}, 'conversations/c1')], [], None)
    on_snapshot([], [], None)

    assert [s.exists for s in seen] == [True, False]
    assert seen[1].id == 'c1'


def test_collection_subscription_maps_change_types(store, client):
    batches = []
    subscription = store.subscribe_collection('conversations/c1/messages', batches.append)
    on_snapshot = client.collection.return_value.on_snapshot.call_args.args[0]
    added, removed = MagicMock(), MagicMock()
    added.type.name = 'ADDED'
    added.document = fake_doc('m1', {'text': 'hi'})
    removed.type.name = 'REMOVED'
    removed.document = fake_doc('m0', {'text': 'old'})

    on_snapshot([], [added, removed], None)
    subscription.unsubscribe()

    assert [(c.type, c.snapshot.id) for c in batches[0]] == [(ADDED, 'm1'), (REMOVED, 'm0')]
    client.collection.return_value.on_snapshot.return_value.unsubscribe.assert_called_once()


def test_create_store_backends():
    assert isinstance(create_store('memory'), MemoryStore)
    with pytest.raises(ValueError):
        create_store('sqlite')
