"""
Turnover Service for found items.

A finder either keeps the item or turns it over to a custodian (OSA or
campus security). Turning over needs an explicit "already handed over"
confirmation; answering no sends the finder back to the picker. A declared
turnover is later confirmed or marked not received by an authorized
custodian.
"""

import logging

from firebase_admin import firestore

from ..errors import ConflictError, InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from ..models import (
    CLOSED_POST_STATUSES,
    FOUND_ACTION_KEEP,
    FOUND_ACTION_TURNOVER_CAMPUS_SECURITY,
    FOUND_ACTION_TURNOVER_OSA,
    FOUND_ACTIONS,
    POST_TYPE_FOUND,
    ROLE_ADMIN,
    ROLE_CAMPUS_SECURITY,
    TURNOVER_CONFIRMED,
    TURNOVER_DECLARED,
    TURNOVER_NOT_RECEIVED,
    ActingUser,
)
from .conversation_service import ConversationRegistry, conversation_path

logger = logging.getLogger(__name__)

PICKING = 'picking'
AWAITING_HANDOVER_CONFIRMATION = 'awaiting_handover_confirmation'
DECIDED = 'decided'

CUSTODIAN_LABELS = {
    FOUND_ACTION_TURNOVER_OSA: 'OSA',
    FOUND_ACTION_TURNOVER_CAMPUS_SECURITY: 'Campus Security',
}

# Roles allowed to confirm receipt for each custodian
CONFIRMER_ROLES = {
    FOUND_ACTION_TURNOVER_OSA: (ROLE_ADMIN,),
    FOUND_ACTION_TURNOVER_CAMPUS_SECURITY: (ROLE_ADMIN, ROLE_CAMPUS_SECURITY),
}

# Custodian vocabulary mapped onto the stored turnover statuses
CONFIRMATION_ALIASES = {
    'confirmed': TURNOVER_CONFIRMED,
    'collected': TURNOVER_CONFIRMED,
    'received': TURNOVER_CONFIRMED,
    'not_received': TURNOVER_NOT_RECEIVED,
    'not_available': TURNOVER_NOT_RECEIVED,
}


class FoundActionSelection:
    """Picker state for the keep / turnover decision"""

    def __init__(self):
        self.state = PICKING
        self.selected_action = None

    def select(self, action):
        if action not in FOUND_ACTIONS:
            raise ValidationError(f"Unknown found action: {action}", code='INVALID_FOUND_ACTION')
        self.selected_action = action
        self.state = DECIDED if action == FOUND_ACTION_KEEP else AWAITING_HANDOVER_CONFIRMATION
        return self.state

    def answer_handover(self, handed_over):
        """Answer "did you already hand the item over?" for a turnover choice."""
        if self.state != AWAITING_HANDOVER_CONFIRMATION:
            raise ValidationError("No turnover choice is waiting for confirmation", code='NO_PENDING_TURNOVER')
        if handed_over:
            self.state = DECIDED
        else:
            self.reset()
        return self.state

    def reset(self):
        self.state = PICKING
        self.selected_action = None

    @property
    def decided_action(self):
        return self.selected_action if self.state == DECIDED else None

    @classmethod
    def resolve(cls, action, handed_over=False):
        """
        Run one pass through the picker.

        Returns:
            str: the decided action

        Raises:
            ValidationError: a turnover was chosen but not confirmed as handed over
        """
        selection = cls()
        if selection.select(action) == AWAITING_HANDOVER_CONFIRMATION:
            selection.answer_handover(bool(handed_over))
        if selection.decided_action is None:
            raise ValidationError(
                "Please hand the item over to the custodian before declaring a turnover, or choose to keep it",
                code='TURNOVER_NOT_CONFIRMED',
            )
        return selection.decided_action


def found_action_fields(action, finder: ActingUser, reason=None):
    """Post fields recording a decided found action."""
    if action == FOUND_ACTION_KEEP:
        return {'found_action': FOUND_ACTION_KEEP, 'turnover_details': None}
    return {
        'found_action': action,
        'turnover_details': {
            'turnover_action': action,
            'turnover_status': TURNOVER_DECLARED,
            'turnover_reason': reason,
            'original_finder': {'uid': finder.uid, **finder.profile()},
            'turnover_decision_at': firestore.SERVER_TIMESTAMP,
            'confirmed_by': None,
            'confirmed_at': None,
            'confirmation_notes': None,
        },
    }


def turnover_status(post):
    return ((post or {}).get('turnover_details') or {}).get('turnover_status')


class TurnoverService:

    def __init__(self, store, notifier):
        self._store = store
        self._notifier = notifier

    def declare(self, post_id, actor: ActingUser, action, handed_over=False, reason=None):
        """
        Record the finder's custody choice on an existing found post.

        Returns:
            dict: the updated post
        """
        path = f"posts/{post_id}"
        snapshot = self._store.get(path)
        if not snapshot.exists:
            raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
        post = snapshot.data
        if post.get('type') != POST_TYPE_FOUND:
            raise ValidationError("Only found items can be turned over", code='NOT_A_FOUND_ITEM')
        if post.get('creator_id') != actor.uid:
            raise PermissionDeniedError("Only the finder can declare a turnover")
        if post.get('status') in CLOSED_POST_STATUSES or post.get('moved_to_unclaimed'):
            raise ConflictError("This item is no longer open", code='POST_NOT_OPEN')
        if turnover_status(post) in (TURNOVER_DECLARED, TURNOVER_CONFIRMED):
            raise ConflictError("A turnover has already been declared for this item", code='TURNOVER_ALREADY_DECLARED')

        decided = FoundActionSelection.resolve(action, handed_over)
        updates = found_action_fields(decided, actor, reason)
        updates['updated_at'] = firestore.SERVER_TIMESTAMP
        self._store.update(path, updates)
        logger.info(f"Post {post_id} found action set to {decided} by {actor.uid}")
        return {'id': post_id, **self._store.get(path).data}

    def confirm(self, post_id, confirmer: ActingUser, status, notes=None):
        """
        Resolve a declared turnover.

        Args:
            post_id: post under turnover
            confirmer: custodian staff member
            status: 'confirmed' / 'collected' or 'not_received'
            notes: optional free text stored with the confirmation

        Returns:
            dict: the updated post
        """
        resolved = CONFIRMATION_ALIASES.get((status or '').strip().lower())
        if resolved is None:
            raise ValidationError(f"Unknown turnover status: {status}", code='INVALID_TURNOVER_STATUS')
        path = f"posts/{post_id}"

        def apply(transaction):
            snapshot = transaction.get(path)
            if not snapshot.exists:
                raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
            post = snapshot.data
            if post.get('status') in CLOSED_POST_STATUSES or post.get('moved_to_unclaimed'):
                raise ConflictError("This item is no longer open", code='POST_NOT_OPEN')
            details = post.get('turnover_details') or {}
            if details.get('turnover_status') != TURNOVER_DECLARED:
                raise InvalidTransitionError(
                    f"Turnover is {details.get('turnover_status') or 'not declared'}, expected declared")
            allowed = CONFIRMER_ROLES.get(details.get('turnover_action'), (ROLE_ADMIN,))
            if confirmer.role not in allowed:
                raise PermissionDeniedError("You are not authorized to confirm this turnover")
            handed_over = []
            if resolved == TURNOVER_CONFIRMED:
                for conversation in transaction.query('conversations', filters=[('post_id', '==', post_id)]):
                    conversation_updates = ConversationRegistry.custody_transfer_updates(
                        conversation.data, post.get('creator_id'), confirmer)
                    if conversation_updates:
                        handed_over.append((conversation.id, conversation_updates))
            updates = {
                'turnover_details.turnover_status': resolved,
                'turnover_details.confirmed_by': confirmer.uid,
                'turnover_details.confirmed_at': firestore.SERVER_TIMESTAMP,
                'turnover_details.confirmation_notes': notes,
                'updated_at': firestore.SERVER_TIMESTAMP,
            }
            if resolved == TURNOVER_CONFIRMED:
                # Custody moves to the confirming custodian, who now answers claims
                updates['creator_id'] = confirmer.uid
                updates['creator'] = confirmer.profile()
                updates['is_hidden'] = False
            else:
                updates['is_hidden'] = True
            transaction.update(path, updates)
            # Open conversations follow the item to its custodian
            for conversation_id, conversation_updates in handed_over:
                transaction.update(conversation_path(conversation_id), conversation_updates)
            return post

        post = self._store.run_transaction(apply)
        details = post.get('turnover_details') or {}
        finder_id = (details.get('original_finder') or {}).get('uid') or post.get('creator_id')
        custodian = CUSTODIAN_LABELS.get(details.get('turnover_action'), 'the custodian')
        title = post.get('title', 'your item')
        if resolved == TURNOVER_CONFIRMED:
            notification = {
                'type': 'turnover_confirmed',
                'title': 'Item Received',
                'body': f"{custodian} confirmed receipt of \"{title}\".",
                'data': {'post_id': post_id, 'turnover_status': resolved},
            }
        else:
            notification = {
                'type': 'turnover_not_received',
                'title': 'Item Not Received',
                'body': f"{custodian} has not received \"{title}\". Please contact them.",
                'data': {'post_id': post_id, 'turnover_status': resolved},
            }
        self._notifier.send_notification_to_users([finder_id], notification)
        logger.info(f"Turnover of post {post_id} marked {resolved} by {confirmer.uid}")
        return {'id': post_id, **self._store.get(path).data}
