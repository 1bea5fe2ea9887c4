import pytest

from uniclaim.errors import InvalidTransitionError, ValidationError
from uniclaim.services.request_state_machine import (
    ACCEPTED,
    CLAIM_REQUEST,
    CONFIRMED,
    HANDOVER_REQUEST,
    PENDING,
    REJECTED,
    active_request_pointers,
    is_active,
    is_terminal,
    request_flag_fields,
    request_status,
    request_type_for_post,
    require_transition,
    validate_transition,
)


@pytest.mark.parametrize('current,target', [
    (PENDING, ACCEPTED),
    (PENDING, REJECTED),
    (ACCEPTED, CONFIRMED),
    (ACCEPTED, REJECTED),
])
def test_allowed_transitions(current, target):
    ok, _ = validate_transition(current, target)
    assert ok
    require_transition(current, target)


@pytest.mark.parametrize('current,target', [
    (PENDING, CONFIRMED),
    (REJECTED, ACCEPTED),
    (REJECTED, PENDING),
    (CONFIRMED, REJECTED),
    (CONFIRMED, PENDING),
    (ACCEPTED, PENDING),
    ('unknown', ACCEPTED),
])
def test_rejected_transitions(current, target):
    ok, message = validate_transition(current, target)
    assert not ok
    assert message
    with pytest.raises(InvalidTransitionError):
        require_transition(current, target)


def test_active_and_terminal_statuses():
    assert is_active(PENDING) and is_active(ACCEPTED)
    assert not is_active(REJECTED)
    assert is_terminal(CONFIRMED) and is_terminal(REJECTED)
    assert not is_terminal(PENDING)


def test_request_type_follows_post_type():
    assert request_type_for_post('found') == CLAIM_REQUEST
    assert request_type_for_post('lost') == HANDOVER_REQUEST
    with pytest.raises(ValidationError):
        request_type_for_post('stolen')


def test_flag_fields_and_pointers():
    assert request_flag_fields(CLAIM_REQUEST) == ('has_claim_request', 'claim_request_id')
    assert request_flag_fields(HANDOVER_REQUEST) == ('has_handover_request', 'handover_request_id')

    conversation = {
        'has_claim_request': True, 'claim_request_id': 'm1',
        'has_handover_request': True, 'handover_request_id': None,
    }
    assert active_request_pointers(conversation) == [(CLAIM_REQUEST, 'm1')]


def test_request_status_handles_missing_state():
    assert request_status({'state': {'status': PENDING}}) == PENDING
    assert request_status({}) is None
    assert request_status(None) is None
