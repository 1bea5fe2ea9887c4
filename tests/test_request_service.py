from datetime import datetime, timezone

import pytest
from unittest.mock import patch

from uniclaim.errors import ConflictError, InvalidTransitionError, PermissionDeniedError, ValidationError
from uniclaim.services.conversation_service import conversation_path, message_path
from uniclaim.services.outcomes import Accepted, ConflictDetected, Rejected, Submitted, UploadFailed
from uniclaim.services.request_state_machine import ACCEPTED, CLAIM_REQUEST, HANDOVER_REQUEST, PENDING, REJECTED


def test_claim_on_found_post(engine, store, bucket, found_post, alice, notifications, submit):
    cid, outcome = submit(found_post, alice, evidence_count=2)

    assert isinstance(outcome, Submitted)
    assert outcome.request_type == CLAIM_REQUEST
    message = engine.requests.get_request(cid, outcome.message_id)
    assert message['state']['status'] == PENDING
    assert message['text'] == 'Claim request: It has my initials on the handle'
    assert message['request']['requester_id'] == 'alice'
    assert len(message['request']['evidence_photos']) == 2
    assert message['request']['id_photo_url'].startswith('https://storage.googleapis.com/')
    assert len(bucket.objects) == 3

    conversation = engine.conversations.get(cid)
    assert conversation['has_claim_request'] is True
    assert conversation['claim_request_id'] == outcome.message_id
    assert len(notifications('poster', CLAIM_REQUEST)) == 1


def test_handover_on_lost_post(engine, lost_post, alice, submit):
    cid, outcome = submit(lost_post, alice)
    assert outcome.request_type == HANDOVER_REQUEST
    assert engine.conversations.get(cid)['has_handover_request'] is True


@pytest.mark.parametrize('reason,code', [
    ('', 'MISSING_REASON'),
    ('   ', 'MISSING_REASON'),
    ('x' * 501, 'REASON_TOO_LONG'),
])
def test_invalid_reason_is_rejected_before_any_write(engine, store, bucket, found_post, alice, make_image, reason, code):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']

    with pytest.raises(ValidationError) as exc:
        engine.requests.submit_request(cid, alice, reason, make_image(), [make_image()])

    assert exc.value.code == code
    assert bucket.objects == {}
    assert engine.conversations.get_messages(cid) == []


def test_missing_id_photo(engine, bucket, found_post, alice, make_image):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    with pytest.raises(ValidationError) as exc:
        engine.requests.submit_request(cid, alice, 'mine', None, [make_image()])
    assert exc.value.code == 'MISSING_ID_PHOTO'
    assert bucket.objects == {}


def test_evidence_count_limits(engine, found_post, lost_post, alice, make_image):
    claim_cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    handover_cid = engine.conversations.get_or_create(lost_post['id'], alice)['id']

    with pytest.raises(ValidationError):
        engine.requests.submit_request(claim_cid, alice, 'mine', make_image(), [])
    with pytest.raises(ValidationError):
        engine.requests.submit_request(claim_cid, alice, 'mine', make_image(), [make_image() for _ in range(6)])
    with pytest.raises(ValidationError) as exc:
        engine.requests.submit_request(handover_cid, alice, 'found it', make_image(), [make_image() for _ in range(4)])
    assert exc.value.code == 'INVALID_EVIDENCE_COUNT'


def test_invalid_image_is_rejected_before_upload(engine, bucket, found_post, alice, make_image):
    from uniclaim.models import MediaFile
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']

    with pytest.raises(ValidationError):
        engine.requests.submit_request(cid, alice, 'mine', make_image(), [MediaFile('x.jpg', b'garbage')])
    assert bucket.objects == {}


def test_second_request_is_a_conflict_without_side_effects(engine, bucket, found_post, alice, submit):
    cid, first = submit(found_post, alice)
    uploaded = dict(bucket.objects)
    message_count = len(engine.conversations.get_messages(cid))

    _, second = submit(found_post, alice)

    assert isinstance(second, ConflictDetected)
    assert second.existing_message_id == first.message_id
    assert second.to_response()[1] == 409
    assert bucket.objects == uploaded
    assert len(engine.conversations.get_messages(cid)) == message_count


def test_stale_flag_pointing_at_missing_message_is_cleared(engine, store, found_post, alice, submit):
    cid, first = submit(found_post, alice)
    store.delete(message_path(cid, first.message_id))

    _, second = submit(found_post, alice)

    assert isinstance(second, Submitted)
    assert engine.conversations.get(cid)['claim_request_id'] == second.message_id


def test_flag_pointing_at_rejected_request_allows_resubmission(engine, store, found_post, alice, poster, submit):
    cid, first = submit(found_post, alice)
    store.update(message_path(cid, first.message_id), {'state.status': REJECTED})

    _, second = submit(found_post, alice)
    assert isinstance(second, Submitted)


def test_precondition_catches_request_written_after_the_guard(engine, store, found_post, alice, bob, submit, bucket):
    cid, first = submit(found_post, alice)
    store.update(conversation_path(cid), {'has_claim_request': False})
    # Guard passes on the cleared flag; the flag is restored before the transactional write
    original = engine.requests._check_existing_request

    def guard_then_race(*args):
        result = original(*args)
        store.update(conversation_path(cid), {'has_claim_request': True, 'claim_request_id': first.message_id})
        return result

    with patch.object(engine.requests, '_check_existing_request', side_effect=guard_then_race):
        _, second = submit(found_post, alice)

    assert isinstance(second, ConflictDetected)
    assert second.existing_message_id == first.message_id
    assert len([m for m in engine.conversations.get_messages(cid) if m['message_type'] == CLAIM_REQUEST]) == 1
    assert len(bucket.objects) == 2


def test_reserved_post_refuses_new_requests(engine, store, bucket, found_post, alice, make_image):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    store.update(f"posts/{found_post['id']}", {'resolving_request': {
        'message_id': 'other', 'reserved_at': datetime.now(timezone.utc)}})

    with pytest.raises(ConflictError) as exc:
        engine.requests.submit_request(cid, alice, 'mine', make_image(), [make_image()])

    assert exc.value.code == 'ITEM_NOT_AVAILABLE'
    assert engine.conversations.get_messages(cid) == []
    assert bucket.objects == {}


def test_reservation_taken_during_upload_aborts_the_write(engine, store, bucket, found_post, alice, make_image):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    original = engine.requests._check_existing_request

    def guard_then_reserve(*args):
        result = original(*args)
        store.update(f"posts/{found_post['id']}", {'resolving_request': {
            'message_id': 'other', 'reserved_at': datetime.now(timezone.utc)}})
        return result

    with patch.object(engine.requests, '_check_existing_request', side_effect=guard_then_reserve):
        with pytest.raises(ConflictError) as exc:
            engine.requests.submit_request(cid, alice, 'mine', make_image(), [make_image()])

    assert exc.value.code == 'ITEM_NOT_AVAILABLE'
    assert engine.conversations.get_messages(cid) == []
    assert engine.conversations.get(cid)['has_claim_request'] is False
    assert bucket.objects == {}


def test_upload_failure_leaves_no_request(engine, store, bucket, found_post, alice, make_image):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    id_photo, good, bad = make_image('id.jpg'), make_image('good.jpg'), make_image('bad.jpg')
    bucket.failing_contents.add(bad.content)

    outcome = engine.requests.submit_request(cid, alice, 'mine', id_photo, [good, bad])

    assert isinstance(outcome, UploadFailed)
    assert outcome.failed_files == ['bad.jpg']
    body, status = outcome.to_response()
    assert status == 502 and body['code'] == 'UPLOAD_FAILED'
    assert engine.conversations.get_messages(cid) == []
    conversation = engine.conversations.get(cid)
    assert conversation['has_claim_request'] is False
    assert conversation['claim_request_id'] is None
    assert bucket.objects == {}


def test_poster_cannot_request_own_item(engine, store, found_post, poster, alice, make_image):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    with pytest.raises(ValidationError) as exc:
        engine.requests.submit_request(cid, poster, 'mine', make_image(), [make_image()])
    assert exc.value.code == 'OWN_POST'


def test_request_on_unavailable_post(engine, store, found_post, alice, make_image):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    store.update(f"posts/{found_post['id']}", {'status': 'unclaimed', 'moved_to_unclaimed': True})
    with pytest.raises(ConflictError):
        engine.requests.submit_request(cid, alice, 'mine', make_image(), [make_image()])


def test_accept_needs_verification_photo(engine, found_post, alice, poster, submit):
    cid, submitted = submit(found_post, alice)
    with pytest.raises(ValidationError) as exc:
        engine.requests.respond(cid, submitted.message_id, poster, 'accept')
    assert exc.value.code == 'MISSING_VERIFICATION_PHOTO'


def test_accept_with_photo(engine, found_post, alice, poster, notifications, submit, accept):
    cid, submitted = submit(found_post, alice)

    outcome = accept(cid, submitted.message_id, poster)

    assert isinstance(outcome, Accepted)
    assert outcome.verification_bypassed is False
    message = engine.requests.get_request(cid, submitted.message_id)
    assert message['state']['status'] == ACCEPTED
    assert message['state']['responded_by'] == 'poster'
    assert message['state']['responder_id_photo_url'].startswith('https://storage.googleapis.com/')
    assert len(notifications('alice', 'request_accepted')) == 1
    # Accepted requests stay active, so a second submission still conflicts
    _, again = submit(found_post, alice)
    assert isinstance(again, ConflictDetected)


def test_elevated_responder_may_skip_photo(engine, found_post, alice, security, submit):
    cid, submitted = submit(found_post, alice)

    outcome = engine.requests.respond(cid, submitted.message_id, security, 'accept')

    assert outcome.verification_bypassed is True
    message = engine.requests.get_request(cid, submitted.message_id)
    assert message['state']['verification_bypassed'] is True
    assert message['state']['responder_id_photo_url'] is None


def test_bypass_can_be_disabled(engine, found_post, alice, admin, submit):
    engine.requests.allow_elevated_bypass = False
    cid, submitted = submit(found_post, alice)
    with pytest.raises(ValidationError):
        engine.requests.respond(cid, submitted.message_id, admin, 'accept')


def test_reject_clears_flag_and_removes_photos(engine, bucket, found_post, alice, poster, notifications, submit):
    cid, submitted = submit(found_post, alice)

    outcome = engine.requests.respond(cid, submitted.message_id, poster, 'reject', rejection_reason='Wrong colour')

    assert isinstance(outcome, Rejected)
    assert outcome.superseded is False
    message = engine.requests.get_request(cid, submitted.message_id)
    assert message['state']['status'] == REJECTED
    assert message['state']['rejection_reason'] == 'Wrong colour'
    conversation = engine.conversations.get(cid)
    assert conversation['has_claim_request'] is False
    assert bucket.objects == {}
    assert 'Wrong colour' in notifications('alice', 'request_rejected')[0]['message']

    _, again = submit(found_post, alice)
    assert isinstance(again, Submitted)


def test_terminal_requests_cannot_move(engine, found_post, alice, poster, submit, accept):
    cid, submitted = submit(found_post, alice)
    engine.requests.respond(cid, submitted.message_id, poster, 'reject')

    with pytest.raises(InvalidTransitionError):
        accept(cid, submitted.message_id, poster)
    with pytest.raises(InvalidTransitionError):
        engine.requests.respond(cid, submitted.message_id, poster, 'reject')


def test_only_poster_or_staff_may_respond(engine, found_post, alice, bob, submit):
    cid, submitted = submit(found_post, alice)
    with pytest.raises(PermissionDeniedError):
        engine.requests.respond(cid, submitted.message_id, alice, 'reject')
    with pytest.raises(ValidationError):
        engine.requests.respond(cid, submitted.message_id, alice, 'maybe')


def test_confirm_requires_accepted_request(engine, found_post, alice, poster, submit):
    cid, submitted = submit(found_post, alice)
    with pytest.raises(InvalidTransitionError):
        engine.requests.confirm(cid, submitted.message_id, poster)


def test_requester_cannot_confirm(engine, found_post, alice, poster, submit, accept):
    cid, submitted = submit(found_post, alice)
    accept(cid, submitted.message_id, poster)
    with pytest.raises(PermissionDeniedError):
        engine.requests.confirm(cid, submitted.message_id, alice)


def test_text_message_is_not_a_request(engine, found_post, alice):
    cid = engine.conversations.get_or_create(found_post['id'], alice)['id']
    message_id = engine.conversations.send_message(cid, alice, 'hello')
    with pytest.raises(ValidationError) as exc:
        engine.requests.get_request(cid, message_id)
    assert exc.value.code == 'NOT_A_REQUEST'
