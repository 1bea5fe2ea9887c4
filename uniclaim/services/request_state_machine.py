"""
Transition rules for claim and handover requests.

    pending ──> accepted_pending_confirmation ──> confirmed
       │                     │
       └──────> rejected <───┘

pending is the initial state; rejected and confirmed are terminal.
"""

from ..errors import InvalidTransitionError, ValidationError
from ..models import POST_TYPE_FOUND, POST_TYPE_LOST

PENDING = 'pending'
ACCEPTED = 'accepted_pending_confirmation'
REJECTED = 'rejected'
CONFIRMED = 'confirmed'

ACTIVE_STATUSES = (PENDING, ACCEPTED)
TERMINAL_STATUSES = (REJECTED, CONFIRMED)

CLAIM_REQUEST = 'claim_request'
HANDOVER_REQUEST = 'handover_request'
REQUEST_TYPES = (CLAIM_REQUEST, HANDOVER_REQUEST)

AUTO_REJECTION_REASON = 'another request has been confirmed for this item'

VALID_TRANSITIONS = {
    PENDING: [ACCEPTED, REJECTED],
    ACCEPTED: [CONFIRMED, REJECTED],
    REJECTED: [],
    CONFIRMED: [],
}


def validate_transition(current_status, new_status):
    """
    Check whether a request may move from one status to another.

    Args:
        current_status (str): status stored on the request message
        new_status (str): desired status

    Returns:
        tuple: (is_valid, message)
    """
    if current_status not in VALID_TRANSITIONS:
        return False, f"Invalid current status: {current_status}"
    if new_status not in VALID_TRANSITIONS[current_status]:
        return False, f"Invalid transition from {current_status} to {new_status}"
    return True, "Valid transition"


def require_transition(current_status, new_status):
    ok, message = validate_transition(current_status, new_status)
    if not ok:
        raise InvalidTransitionError(message)


def is_active(status):
    return status in ACTIVE_STATUSES


def is_terminal(status):
    return status in TERMINAL_STATUSES


def request_type_for_post(post_type):
    """Lost posts receive handovers from finders, found posts receive claims from owners."""
    if post_type == POST_TYPE_FOUND:
        return CLAIM_REQUEST
    if post_type == POST_TYPE_LOST:
        return HANDOVER_REQUEST
    raise ValidationError(f"Unknown post type: {post_type}", code='INVALID_POST_TYPE')


def request_flag_fields(message_type):
    """Return the (flag, pointer) conversation fields guarding a request type."""
    if message_type == CLAIM_REQUEST:
        return 'has_claim_request', 'claim_request_id'
    if message_type == HANDOVER_REQUEST:
        return 'has_handover_request', 'handover_request_id'
    raise ValidationError(f"Not a request message type: {message_type}", code='INVALID_REQUEST_TYPE')


def request_status(message):
    return ((message or {}).get('state') or {}).get('status')


def active_request_pointers(conversation):
    """Message ids the conversation currently marks as active requests."""
    pointers = []
    for message_type in REQUEST_TYPES:
        flag, pointer = request_flag_fields(message_type)
        if conversation.get(flag) and conversation.get(pointer):
            pointers.append((message_type, conversation[pointer]))
    return pointers
