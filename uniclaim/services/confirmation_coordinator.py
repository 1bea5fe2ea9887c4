"""
Confirmation Coordinator.

Keeps "at most one confirmed request per post" across every conversation of
the post. A confirm first reserves the post, then rejects every rival request,
notifies each affected requester once, marks the winner confirmed and the
post completed, and only then deletes the post's conversations. Conversation
deletion is cleanup: failures are logged and reported, never raised.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List

from firebase_admin import firestore

from .. import config
from ..errors import ConflictError, InvalidTransitionError, NotFoundError
from ..models import CLOSED_POST_STATUSES, POST_COMPLETED, POST_PENDING, ActingUser
from .conversation_service import conversation_path, message_path, messages_path
from .request_state_machine import (
    ACCEPTED,
    ACTIVE_STATUSES,
    AUTO_REJECTION_REASON,
    CLAIM_REQUEST,
    CONFIRMED,
    REJECTED,
    REQUEST_TYPES,
    request_flag_fields,
    request_status,
)

logger = logging.getLogger(__name__)


@dataclass
class RejectedRequest:
    conversation_id: str
    message_id: str
    requester_id: str
    message_type: str


@dataclass
class ResolutionResult:
    post_id: str
    rejected: List[RejectedRequest] = field(default_factory=list)
    deleted_conversations: List[str] = field(default_factory=list)
    cleanup_misses: List[str] = field(default_factory=list)

    @property
    def rejected_message_ids(self):
        return [r.message_id for r in self.rejected]


def is_reservation_active(reservation, ttl_seconds=None, now=None):
    """A resolution reservation blocks other confirms until it is cleared or goes stale."""
    if not reservation:
        return False
    ttl_seconds = ttl_seconds or config.RESOLUTION_RESERVATION_TTL_SECONDS
    reserved_at = reservation.get('reserved_at')
    if not isinstance(reserved_at, datetime):
        return True
    if reserved_at.tzinfo is None:
        reserved_at = reserved_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return now - reserved_at < timedelta(seconds=ttl_seconds)


def _request_label(message_type):
    return 'claim' if message_type == CLAIM_REQUEST else 'handover'


class ConfirmationCoordinator:

    def __init__(self, store, registry, notifier, reservation_ttl=None):
        self._store = store
        self._registry = registry
        self._notifier = notifier
        self.reservation_ttl = reservation_ttl or config.RESOLUTION_RESERVATION_TTL_SECONDS

    def resolve(self, post_id, conversation_id, message_id, confirmer: ActingUser):
        """
        Make the given request the single resolution of its post.

        Args:
            post_id: post being resolved
            conversation_id: conversation holding the winning request
            message_id: winning request message
            confirmer: user confirming the request

        Returns:
            ResolutionResult

        Raises:
            ConflictError: the post is already resolved or another confirm holds it
            NotFoundError: the post or the winning request vanished
        """
        post = self._reserve(post_id, conversation_id, message_id, confirmer)
        try:
            rejected = self._reject_active_requests(post_id, confirmer.uid, AUTO_REJECTION_REASON,
                                                    exclude_conversation_id=conversation_id)
            self._notify_rejected(post_id, post, rejected, AUTO_REJECTION_REASON)
            request = self._finalize(post_id, conversation_id, message_id, confirmer)
        except Exception:
            self._release(post_id, message_id)
            raise

        logger.info(f"Post {post_id} resolved by request {message_id}; {len(rejected)} rival requests rejected")
        self._notify_winner(post_id, post, request, message_id)
        deleted, misses = self._retire_conversations(post_id)
        return ResolutionResult(post_id=post_id, rejected=rejected,
                                deleted_conversations=deleted, cleanup_misses=misses)

    def retire_post(self, post_id, actor_id, reason):
        """
        Reject every open request of a post and delete its conversations.
        Used when a post leaves circulation without a winner.

        Returns:
            ResolutionResult
        """
        post_snapshot = self._store.get(f"posts/{post_id}")
        post = post_snapshot.data if post_snapshot.exists else {}
        rejected = self._reject_active_requests(post_id, actor_id, reason)
        self._notify_rejected(post_id, post, rejected, reason)
        deleted, misses = self._retire_conversations(post_id)
        return ResolutionResult(post_id=post_id, rejected=rejected,
                                deleted_conversations=deleted, cleanup_misses=misses)

    def _reserve(self, post_id, conversation_id, message_id, confirmer):
        path = f"posts/{post_id}"
        ttl = self.reservation_ttl

        def reserve(transaction):
            snapshot = transaction.get(path)
            if not snapshot.exists:
                raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
            post = snapshot.data
            if post.get('status') in CLOSED_POST_STATUSES:
                raise ConflictError("This item has already been resolved", code='ITEM_ALREADY_RESOLVED')
            if post.get('status', POST_PENDING) != POST_PENDING or post.get('moved_to_unclaimed'):
                raise ConflictError("This item is no longer open", code='POST_NOT_OPEN')
            current = post.get('resolving_request') or {}
            if current.get('message_id') != message_id and is_reservation_active(current, ttl):
                raise ConflictError("Another request for this item is being confirmed", code='RESOLUTION_IN_PROGRESS')
            transaction.update(path, {
                'resolving_request': {
                    'conversation_id': conversation_id,
                    'message_id': message_id,
                    'confirmer_id': confirmer.uid,
                    'reserved_at': datetime.now(timezone.utc),
                },
            })
            return post

        return self._store.run_transaction(reserve)

    def _release(self, post_id, message_id):
        path = f"posts/{post_id}"

        def release(transaction):
            snapshot = transaction.get(path)
            if not snapshot.exists:
                return
            current = snapshot.data.get('resolving_request') or {}
            if current.get('message_id') == message_id:
                transaction.update(path, {'resolving_request': None})

        try:
            self._store.run_transaction(release)
        except Exception as e:
            logger.error(f"Failed to release resolution reservation on post {post_id}: {str(e)}")

    def _reject_active_requests(self, post_id, actor_id, reason, exclude_conversation_id=None):
        """Reject open requests in every conversation of the post, one batch per conversation."""
        rejected = []
        for conversation in self._registry.conversations_for_post(post_id):
            conversation_id = conversation['id']
            if conversation_id == exclude_conversation_id:
                continue
            active = self._store.query(messages_path(conversation_id),
                                       filters=[('state.status', 'in', list(ACTIVE_STATUSES))])
            flagged = any(conversation.get(request_flag_fields(t)[0]) for t in REQUEST_TYPES)
            if not active and not flagged:
                continue

            batch = self._store.batch()
            for message in active:
                batch.update(message_path(conversation_id, message.id), {
                    'state.status': REJECTED,
                    'state.responded_by': actor_id,
                    'state.responded_at': firestore.SERVER_TIMESTAMP,
                    'state.rejection_reason': reason,
                    'state.auto_rejected': True,
                })
            conversation_updates = {'updated_at': firestore.SERVER_TIMESTAMP}
            for message_type in REQUEST_TYPES:
                flag, pointer = request_flag_fields(message_type)
                conversation_updates[flag] = False
                conversation_updates[pointer] = None
            batch.update(conversation_path(conversation_id), conversation_updates)
            try:
                batch.commit()
            except NotFoundError:
                logger.info(f"Conversation {conversation_id} disappeared before its requests could be rejected")
                continue

            for message in active:
                request = message.data.get('request') or {}
                rejected.append(RejectedRequest(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    requester_id=request.get('requester_id') or message.data.get('sender_id'),
                    message_type=message.data.get('message_type'),
                ))
                logger.info(f"Request {message.id} in {conversation_id} rejected: {reason}")
        return rejected

    def _notify_rejected(self, post_id, post, rejected, reason):
        if not rejected:
            return
        by_requester = OrderedDict()
        for item in rejected:
            by_requester.setdefault(item.requester_id, []).append(item)
        title = (post or {}).get('title', 'this item')
        notifications = {}
        for requester_id, items in by_requester.items():
            label = _request_label(items[0].message_type)
            if len(items) == 1:
                body = f"Your {label} request for \"{title}\" was rejected: {reason}."
            else:
                body = f"{len(items)} of your requests for \"{title}\" were rejected: {reason}."
            notifications[requester_id] = {
                'type': 'request_rejected',
                'title': 'Request Rejected',
                'body': body,
                'data': {
                    'post_id': post_id,
                    'message_ids': [i.message_id for i in items],
                    'conversation_ids': sorted({i.conversation_id for i in items}),
                },
            }
        self._notifier.send_grouped(notifications)

    def _finalize(self, post_id, conversation_id, message_id, confirmer):
        post_path_ = f"posts/{post_id}"
        msg_path = message_path(conversation_id, message_id)
        conv_path = conversation_path(conversation_id)

        def finalize(transaction):
            post_snapshot = transaction.get(post_path_)
            message_snapshot = transaction.get(msg_path)
            conversation_snapshot = transaction.get(conv_path)
            if not post_snapshot.exists:
                raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
            reservation = post_snapshot.data.get('resolving_request') or {}
            if reservation.get('message_id') != message_id:
                raise ConflictError("Another request for this item was confirmed first", code='RESOLUTION_LOST')
            if not message_snapshot.exists:
                raise NotFoundError("Request no longer exists", code='MESSAGE_NOT_FOUND')
            message = message_snapshot.data
            if request_status(message) != ACCEPTED:
                raise InvalidTransitionError(f"Request is {request_status(message)}, expected {ACCEPTED}")
            request = dict(message.get('request') or {})
            state = message.get('state') or {}

            transaction.update(msg_path, {
                'state.status': CONFIRMED,
                'state.confirmed_by': confirmer.uid,
                'state.confirmed_at': firestore.SERVER_TIMESTAMP,
            })
            transaction.update(post_path_, {
                'status': POST_COMPLETED,
                'resolving_request': None,
                'resolution': {
                    'request_type': message.get('message_type'),
                    'conversation_id': conversation_id,
                    'message_id': message_id,
                    'requester_id': request.get('requester_id'),
                    'requester_name': request.get('requester_name'),
                    'reason': request.get('reason'),
                    'id_photo_url': request.get('id_photo_url'),
                    'evidence_photos': request.get('evidence_photos', []),
                    'responder_id_photo_url': state.get('responder_id_photo_url'),
                    'verification_bypassed': bool(state.get('verification_bypassed')),
                    'confirmed_by': confirmer.uid,
                    'confirmed_at': firestore.SERVER_TIMESTAMP,
                },
                'resolved_at': firestore.SERVER_TIMESTAMP,
                'updated_at': firestore.SERVER_TIMESTAMP,
            })
            if conversation_snapshot.exists:
                flag, pointer = request_flag_fields(message.get('message_type'))
                transaction.update(conv_path, {
                    flag: False,
                    pointer: None,
                    'updated_at': firestore.SERVER_TIMESTAMP,
                })
            request['message_type'] = message.get('message_type')
            return request

        return self._store.run_transaction(finalize)

    def _notify_winner(self, post_id, post, request, message_id):
        requester_id = request.get('requester_id')
        if not requester_id:
            return
        label = _request_label(request.get('message_type'))
        self._notifier.send_notification_to_users([requester_id], {
            'type': 'request_confirmed',
            'title': 'Request Confirmed',
            'body': f"Your {label} request for \"{post.get('title', 'this item')}\" has been confirmed.",
            'data': {'post_id': post_id, 'message_id': message_id},
        })

    def _retire_conversations(self, post_id):
        try:
            deleted, misses = self._registry.delete_conversations_for_post(post_id)
        except Exception as e:
            logger.error(f"Conversation cleanup for post {post_id} failed: {str(e)}")
            return [], [f"posts/{post_id}"]
        if misses:
            logger.error(f"Conversation cleanup for post {post_id} missed {len(misses)} conversations: {misses}")
        return deleted, misses
