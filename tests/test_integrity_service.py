from unittest.mock import patch

from uniclaim.services.integrity_service import POST_CLOSED, POST_MISSING, POST_UNCLAIMED


def test_healthy_conversations_are_not_ghosts(engine, found_post, alice):
    engine.conversations.get_or_create(found_post['id'], alice)
    assert engine.integrity.find_ghost_conversations() == []


def test_finds_and_removes_ghosts(engine, store, poster, alice, found_post, lost_post):
    open_cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    closed_cid = engine.conversations.get_or_create(lost_post['id'], alice)['id']
    unclaimed = engine.posts.create_post(poster, {'title': 'Mug', 'type': 'found'})
    unclaimed_cid = engine.conversations.get_or_create(unclaimed['id'], alice)['id']
    store.update(f"posts/{lost_post['id']}", {'status': 'completed'})
    store.update(f"posts/{unclaimed['id']}", {'moved_to_unclaimed': True})
    store.set('conversations/orphan', {'post_id': 'deleted-post', 'participant_ids': ['alice']})
    engine.conversations.send_message(closed_cid, alice, 'anyone?')

    ghosts = {g['conversation_id']: g['reason'] for g in engine.integrity.find_ghost_conversations()}
    assert ghosts == {closed_cid: POST_CLOSED, unclaimed_cid: POST_UNCLAIMED, 'orphan': POST_MISSING}

    result = engine.integrity.cleanup_ghost_conversations()

    assert result['success'] is True
    assert result['deleted_count'] == 3
    assert [s.id for s in store.query('conversations')] == [open_cid]
    assert store.query(f"conversations/{closed_cid}/messages") == []


def test_cleanup_reports_failures(engine, store):
    store.set('conversations/orphan', {'post_id': 'deleted-post'})
    with patch.object(engine.conversations, 'delete_conversation', side_effect=RuntimeError('unavailable')):
        result = engine.integrity.cleanup_ghost_conversations()
    assert result['success'] is False
    assert result['failed'] == ['orphan']
