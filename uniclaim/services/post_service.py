"""
Post Service for lost and found reports.
Handles creation, public listing, expiry to unclaimed and admin reactivation.
"""

import logging
from datetime import datetime, timedelta, timezone

from firebase_admin import firestore

from .. import config
from ..errors import InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from ..models import (
    CLOSED_POST_STATUSES,
    FOUND_ACTION_KEEP,
    FOUND_ACTION_TURNOVER_OSA,
    POST_COMPLETED,
    POST_PENDING,
    POST_RESOLVED,
    POST_TYPE_FOUND,
    POST_TYPES,
    POST_UNCLAIMED,
    TURNOVER_DECLARED,
    TURNOVER_NOT_RECEIVED,
    ActingUser,
)
from .confirmation_coordinator import is_reservation_active
from .turnover_service import FoundActionSelection, found_action_fields, turnover_status

logger = logging.getLogger(__name__)

UNCLAIMED_REASON = 'this item was moved to unclaimed'
DELETED_REASON = 'this item was removed by its owner'

VALID_POST_TRANSITIONS = {
    POST_PENDING: [POST_UNCLAIMED, POST_RESOLVED, POST_COMPLETED],
    POST_UNCLAIMED: [POST_PENDING],
    POST_RESOLVED: [POST_COMPLETED],
    POST_COMPLETED: [],
}


def validate_status_transition(current_status, new_status):
    """
    Validate if a post status transition is allowed.

    Returns:
        tuple: (is_valid, error_message)
    """
    if current_status not in VALID_POST_TRANSITIONS:
        return False, f"Invalid current status: {current_status}"
    if new_status not in VALID_POST_TRANSITIONS[current_status]:
        return False, f"Invalid transition from {current_status} to {new_status}"
    return True, "Valid transition"


def is_publicly_listed(post):
    """Whether a post belongs in the public feed."""
    if not post:
        return False
    if post.get('moved_to_unclaimed') or post.get('is_hidden') or post.get('is_deleted'):
        return False
    if post.get('status') in CLOSED_POST_STATUSES or post.get('status') == POST_UNCLAIMED:
        return False
    status = turnover_status(post)
    if status == TURNOVER_NOT_RECEIVED:
        return False
    # OSA custody has to be verified before anyone can claim against it
    if status == TURNOVER_DECLARED and post.get('found_action') == FOUND_ACTION_TURNOVER_OSA:
        return False
    return True


def is_claim_eligible(post):
    """Listed, pending and not held by a confirm in progress."""
    return (is_publicly_listed(post) and post.get('status') == POST_PENDING
            and not is_reservation_active(post.get('resolving_request')))


def _as_utc(value):
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PostService:

    def __init__(self, store, coordinator, expiry_days=None):
        self._store = store
        self._coordinator = coordinator
        self.expiry_days = expiry_days or config.POST_EXPIRY_DAYS

    def _new_expiry(self):
        return datetime.now(timezone.utc) + timedelta(days=self.expiry_days)

    def create_post(self, creator: ActingUser, data):
        """
        Create a lost or found post.

        Args:
            creator: reporting user
            data: {'title', 'description', 'type', 'category', 'location',
                   'found_action', 'handed_over', 'turnover_reason'}

        Returns:
            dict: the stored post including 'id'
        """
        data = data or {}
        title = (data.get('title') or '').strip()
        if not title:
            raise ValidationError("Title is required", code='MISSING_TITLE')
        post_type = (data.get('type') or '').strip().lower()
        if post_type not in POST_TYPES:
            raise ValidationError(f"Post type must be one of {', '.join(POST_TYPES)}", code='INVALID_POST_TYPE')

        post = {
            'title': title,
            'description': (data.get('description') or '').strip(),
            'type': post_type,
            'category': data.get('category'),
            'location': data.get('location'),
            'status': POST_PENDING,
            'found_action': None,
            'turnover_details': None,
            'creator_id': creator.uid,
            'creator': creator.profile(),
            'created_at': firestore.SERVER_TIMESTAMP,
            'updated_at': firestore.SERVER_TIMESTAMP,
            'expiry_date': self._new_expiry(),
            'moved_to_unclaimed': False,
            'is_expired': False,
            'is_hidden': False,
            'resolving_request': None,
        }
        if post_type == POST_TYPE_FOUND:
            action = FoundActionSelection.resolve(data.get('found_action') or FOUND_ACTION_KEEP,
                                                  data.get('handed_over'))
            post.update(found_action_fields(action, creator, data.get('turnover_reason')))

        post_id = self._store.new_id('posts')
        self._store.set(f"posts/{post_id}", post)
        logger.info(f"Created {post_type} post {post_id} for {creator.uid}")
        return self.get_post(post_id)

    def get_post(self, post_id):
        snapshot = self._store.get(f"posts/{post_id}")
        if not snapshot.exists:
            raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
        return {'id': post_id, **snapshot.data}

    def list_public_posts(self, post_type=None):
        filters = [('type', '==', post_type)] if post_type else []
        posts = [{'id': s.id, **s.data} for s in self._store.query('posts', filters=filters)]
        posts = [p for p in posts if is_publicly_listed(p)]
        posts.sort(key=lambda p: (p.get('created_at') is not None, p.get('created_at')), reverse=True)
        return posts

    def move_to_unclaimed(self, post_id, actor_id=None):
        """
        Move a post to unclaimed, rejecting open requests and retiring its conversations.

        Returns:
            dict: the updated post
        """
        path = f"posts/{post_id}"

        def apply(transaction):
            snapshot = transaction.get(path)
            if not snapshot.exists:
                raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
            post = snapshot.data
            if post.get('moved_to_unclaimed'):
                return False
            current = post.get('status', POST_PENDING)
            ok, message = validate_status_transition(current, POST_UNCLAIMED)
            if not ok:
                raise InvalidTransitionError(message)
            if is_reservation_active(post.get('resolving_request')):
                raise InvalidTransitionError("A resolution is in progress for this item")
            transaction.update(path, {
                'status': POST_UNCLAIMED,
                'original_status': current,
                'moved_to_unclaimed': True,
                'is_expired': True,
                'moved_to_unclaimed_at': firestore.SERVER_TIMESTAMP,
                'updated_at': firestore.SERVER_TIMESTAMP,
            })
            return True

        if self._store.run_transaction(apply):
            logger.info(f"Post {post_id} moved to unclaimed")
            self._coordinator.retire_post(post_id, actor_id or 'system', UNCLAIMED_REASON)
        return self.get_post(post_id)

    def activate(self, post_id, admin: ActingUser):
        """
        Bring an unclaimed post back to its previous status with a fresh expiry date.

        Returns:
            dict: the updated post
        """
        if not admin.is_admin:
            raise PermissionDeniedError("Only admins can activate posts")
        path = f"posts/{post_id}"
        new_expiry = self._new_expiry()

        def apply(transaction):
            snapshot = transaction.get(path)
            if not snapshot.exists:
                raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
            post = snapshot.data
            if not post.get('moved_to_unclaimed') and post.get('status') != POST_UNCLAIMED:
                raise InvalidTransitionError("Only unclaimed posts can be activated")
            restored = post.get('original_status') or POST_PENDING
            if restored in CLOSED_POST_STATUSES or restored == POST_UNCLAIMED:
                restored = POST_PENDING
            transaction.update(path, {
                'status': restored,
                'original_status': firestore.DELETE_FIELD,
                'moved_to_unclaimed': False,
                'is_expired': False,
                'expiry_date': new_expiry,
                'activated_by': admin.uid,
                'activated_at': firestore.SERVER_TIMESTAMP,
                'updated_at': firestore.SERVER_TIMESTAMP,
            })
            return restored

        restored = self._store.run_transaction(apply)
        logger.info(f"Post {post_id} activated by {admin.uid}, status restored to {restored}")
        return self.get_post(post_id)

    def expire_inactive_posts(self, now=None):
        """
        Move pending posts whose expiry date has passed to unclaimed.

        Returns:
            dict: Summary of updated posts
        """
        now = now or datetime.now(timezone.utc)
        updated_posts = []
        failed = []
        for snapshot in self._store.query('posts', filters=[('status', '==', POST_PENDING)]):
            post = snapshot.data
            expiry = _as_utc(post.get('expiry_date'))
            if post.get('moved_to_unclaimed') or not isinstance(expiry, datetime) or expiry > now:
                continue
            try:
                self.move_to_unclaimed(snapshot.id)
                updated_posts.append({'id': snapshot.id, 'title': post.get('title', 'Unknown')})
            except Exception as e:
                logger.error(f"Failed to expire post {snapshot.id}: {str(e)}")
                failed.append(snapshot.id)
        return {
            'success': not failed,
            'updated_count': len(updated_posts),
            'updated_posts': updated_posts,
            'failed': failed,
        }

    def delete_post(self, post_id, actor: ActingUser):
        post = self.get_post(post_id)
        if post.get('creator_id') != actor.uid and not actor.is_admin:
            raise PermissionDeniedError("Only the creator or an admin can delete this post")
        if is_reservation_active(post.get('resolving_request')):
            raise InvalidTransitionError("A resolution is in progress for this item")
        self._coordinator.retire_post(post_id, actor.uid, DELETED_REASON)
        self._store.delete(f"posts/{post_id}")
        logger.info(f"Post {post_id} deleted by {actor.uid}")
