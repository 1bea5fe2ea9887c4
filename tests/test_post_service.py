from datetime import datetime, timedelta, timezone

import pytest

from uniclaim.errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from uniclaim.services.post_service import (
    UNCLAIMED_REASON,
    is_claim_eligible,
    is_publicly_listed,
    validate_status_transition,
)
from uniclaim.services.conversation_service import message_path


def test_create_post_defaults(engine, poster):
    before = datetime.now(timezone.utc)
    post = engine.posts.create_post(poster, {'title': '  Black Umbrella ', 'type': 'Found'})

    assert post['title'] == 'Black Umbrella'
    assert post['type'] == 'found'
    assert post['status'] == 'pending'
    assert post['found_action'] == 'keep'
    assert post['turnover_details'] is None
    assert post['creator'] == {'display_name': 'Paula Poster', 'avatar_url': 'https://example.com/p.png'}
    assert timedelta(days=29) < post['expiry_date'] - before <= timedelta(days=30, minutes=1)


@pytest.mark.parametrize('data,code', [
    ({'type': 'found'}, 'MISSING_TITLE'),
    ({'title': 'Phone', 'type': 'misplaced'}, 'INVALID_POST_TYPE'),
])
def test_create_post_validation(engine, poster, data, code):
    with pytest.raises(ValidationError) as exc:
        engine.posts.create_post(poster, data)
    assert exc.value.code == code


def test_lost_posts_have_no_found_action(engine, lost_post):
    assert lost_post['found_action'] is None


def test_public_listing_filters(engine, store, poster, found_post, lost_post):
    hidden = engine.posts.create_post(poster, {'title': 'Hidden', 'type': 'found'})
    store.update(f"posts/{hidden['id']}", {'is_hidden': True})
    done = engine.posts.create_post(poster, {'title': 'Done', 'type': 'lost'})
    store.update(f"posts/{done['id']}", {'status': 'completed'})

    listed = [p['id'] for p in engine.posts.list_public_posts()]
    assert sorted(listed) == sorted([found_post['id'], lost_post['id']])
    assert [p['id'] for p in engine.posts.list_public_posts('lost')] == [lost_post['id']]


def test_listing_predicates():
    assert is_publicly_listed({'status': 'pending'})
    assert not is_publicly_listed({'status': 'unclaimed'})
    assert not is_publicly_listed({'status': 'pending', 'moved_to_unclaimed': True})
    assert not is_publicly_listed({'status': 'pending', 'turnover_details': {'turnover_status': 'not_received'}})
    assert is_publicly_listed({'status': 'pending', 'found_action': 'turnover_campus_security',
                               'turnover_details': {'turnover_status': 'declared'}})
    assert not is_claim_eligible({'status': 'resolved'})
    assert not is_publicly_listed(None)


def test_post_status_transitions():
    assert validate_status_transition('pending', 'unclaimed')[0]
    assert validate_status_transition('unclaimed', 'pending')[0]
    assert not validate_status_transition('completed', 'pending')[0]
    assert not validate_status_transition('bogus', 'pending')[0]


def test_expiry_moves_post_to_unclaimed_and_retires_requests(engine, store, found_post, lost_post, alice, submit):
    cid, submitted = submit(found_post, alice)
    store.update(f"posts/{found_post['id']}", {'expiry_date': datetime.now(timezone.utc) - timedelta(days=1)})
    seen = []
    store.subscribe_document(message_path(cid, submitted.message_id), lambda s: seen.append(
        s.data['state']['rejection_reason'] if s.exists else None))

    result = engine.posts.expire_inactive_posts()

    assert result['success'] is True
    assert result['updated_count'] == 1
    assert result['updated_posts'] == [{'id': found_post['id'], 'title': 'Black Umbrella'}]
    post = engine.posts.get_post(found_post['id'])
    assert post['status'] == 'unclaimed'
    assert post['original_status'] == 'pending'
    assert post['moved_to_unclaimed'] is True
    assert UNCLAIMED_REASON in seen
    assert engine.conversations.conversations_for_post(found_post['id']) == []
    assert engine.posts.get_post(lost_post['id'])['status'] == 'pending'


def test_expiry_with_future_clock(engine, found_post, lost_post):
    result = engine.posts.expire_inactive_posts(now=datetime.now(timezone.utc) + timedelta(days=31))
    assert result['updated_count'] == 2


def test_move_to_unclaimed_is_idempotent(engine, found_post):
    engine.posts.move_to_unclaimed(found_post['id'])
    post = engine.posts.move_to_unclaimed(found_post['id'])
    assert post['status'] == 'unclaimed'


def test_completed_post_cannot_be_unclaimed(engine, store, found_post):
    store.update(f"posts/{found_post['id']}", {'status': 'completed'})
    with pytest.raises(InvalidTransitionError):
        engine.posts.move_to_unclaimed(found_post['id'])


def test_reserved_post_cannot_be_unclaimed(engine, store, found_post):
    store.update(f"posts/{found_post['id']}", {'resolving_request': {
        'message_id': 'm1', 'reserved_at': datetime.now(timezone.utc)}})
    with pytest.raises(InvalidTransitionError):
        engine.posts.move_to_unclaimed(found_post['id'])


def test_activate_restores_previous_status(engine, found_post, admin):
    engine.posts.move_to_unclaimed(found_post['id'])

    post = engine.posts.activate(found_post['id'], admin)

    assert post['status'] == 'pending'
    assert post['moved_to_unclaimed'] is False
    assert 'original_status' not in post
    assert post['activated_by'] == 'admin1'
    assert post['expiry_date'] > datetime.now(timezone.utc) + timedelta(days=29)
    assert post['id'] in [p['id'] for p in engine.posts.list_public_posts()]


def test_activate_rules(engine, found_post, admin, poster):
    with pytest.raises(InvalidTransitionError):
        engine.posts.activate(found_post['id'], admin)
    engine.posts.move_to_unclaimed(found_post['id'])
    with pytest.raises(PermissionDeniedError):
        engine.posts.activate(found_post['id'], poster)
    with pytest.raises(NotFoundError):
        engine.posts.activate('missing', admin)


def test_delete_post_retires_conversations(engine, store, found_post, poster, alice, notifications, submit):
    submit(found_post, alice)

    engine.posts.delete_post(found_post['id'], poster)

    assert not store.get(f"posts/{found_post['id']}").exists
    assert engine.conversations.conversations_for_post(found_post['id']) == []
    assert len(notifications('alice', 'request_rejected')) == 1


def test_only_creator_or_admin_deletes(engine, found_post, alice, admin):
    with pytest.raises(PermissionDeniedError):
        engine.posts.delete_post(found_post['id'], alice)
    engine.posts.delete_post(found_post['id'], admin)
    with pytest.raises(NotFoundError):
        engine.posts.get_post(found_post['id'])
