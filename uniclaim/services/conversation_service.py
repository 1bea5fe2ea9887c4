"""
Conversation Service.

One conversation exists per (post, counterpart) pair. Conversation ids are
derived from the pair so concurrent get_or_create calls converge on the same
document. Each conversation keeps a bounded message log.
"""

import logging
from typing import Dict, List, Optional

from firebase_admin import firestore

from .. import config
from ..errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from ..models import CLOSED_POST_STATUSES, ActingUser, normalize_profile
from .request_state_machine import active_request_pointers
from .user_service import get_user_profile

logger = logging.getLogger(__name__)

TEXT_MESSAGE = 'text'
SYSTEM_MESSAGE = 'system'


def conversation_path(conversation_id):
    return f"conversations/{conversation_id}"


def messages_path(conversation_id):
    return f"conversations/{conversation_id}/messages"


def message_path(conversation_id, message_id):
    return f"conversations/{conversation_id}/messages/{message_id}"


class ConversationRegistry:
    """Owns conversation identity, participant bookkeeping and the message log"""

    def __init__(self, store, max_messages=None):
        self._store = store
        self.max_messages = max_messages or config.MAX_CONVERSATION_MESSAGES

    @staticmethod
    def conversation_id_for(post_id, counterpart_id):
        return f"{post_id}_{counterpart_id}"

    def get_or_create(self, post_id: str, counterpart: ActingUser) -> Dict:
        """
        Return the conversation between a post's creator and a counterpart, creating it on first use.

        Args:
            post_id: post the conversation is about
            counterpart: user contacting the post creator

        Returns:
            dict: conversation data including 'id'

        Raises:
            ValidationError: counterpart is the post creator
            NotFoundError: post does not exist
            ConflictError: post is no longer open for conversations
        """
        if not counterpart or not counterpart.uid:
            raise ValidationError("A counterpart is required", code='MISSING_COUNTERPART')
        post_snapshot = self._store.get(f"posts/{post_id}")
        if not post_snapshot.exists:
            raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
        post = post_snapshot.data
        poster_id = post.get('creator_id')
        if counterpart.uid == poster_id:
            raise ValidationError("You cannot start a conversation on your own post", code='SELF_CONVERSATION')

        conversation_id = self.conversation_id_for(post_id, counterpart.uid)
        existing = self._store.get(conversation_path(conversation_id))
        if existing.exists:
            return {'id': conversation_id, **existing.data}

        if post.get('status') in CLOSED_POST_STATUSES or post.get('moved_to_unclaimed'):
            raise ConflictError("This item is no longer open for conversations", code='POST_NOT_OPEN')

        poster_profile = normalize_profile(post.get('creator')) if post.get('creator') else get_user_profile(self._store, poster_id)
        conversation = {
            'post_id': post_id,
            'post_title': post.get('title', ''),
            'post_type': post.get('type'),
            'post_creator_id': poster_id,
            'counterpart_id': counterpart.uid,
            'participant_ids': [poster_id, counterpart.uid],
            'participants': {
                poster_id: poster_profile,
                counterpart.uid: normalize_profile(counterpart.profile()),
            },
            'unread_counts': {poster_id: 0, counterpart.uid: 0},
            'has_claim_request': False,
            'claim_request_id': None,
            'has_handover_request': False,
            'handover_request_id': None,
            'last_message': None,
            'created_at': firestore.SERVER_TIMESTAMP,
            'updated_at': firestore.SERVER_TIMESTAMP,
        }

        def create(transaction):
            snapshot = transaction.get(conversation_path(conversation_id))
            if snapshot.exists:
                return False
            transaction.set(conversation_path(conversation_id), conversation)
            return True

        if self._store.run_transaction(create):
            logger.info(f"Created conversation {conversation_id} for post {post_id}")
        return self.get(conversation_id)

    def get(self, conversation_id):
        snapshot = self._store.get(conversation_path(conversation_id))
        if not snapshot.exists:
            raise NotFoundError("Conversation no longer exists", code='CONVERSATION_NOT_FOUND')
        return {'id': conversation_id, **snapshot.data}

    def get_for_participant(self, conversation_id, user: ActingUser):
        conversation = self.get(conversation_id)
        if user.uid not in conversation.get('participant_ids', []) and not user.is_admin:
            raise PermissionDeniedError("You are not a participant of this conversation")
        return conversation

    def get_message(self, conversation_id, message_id):
        snapshot = self._store.get(message_path(conversation_id, message_id))
        if not snapshot.exists:
            raise NotFoundError("Message no longer exists", code='MESSAGE_NOT_FOUND')
        return {'id': message_id, **snapshot.data}

    def get_messages(self, conversation_id, limit: Optional[int] = None) -> List[Dict]:
        snapshots = self._store.query(messages_path(conversation_id), order_by='timestamp', limit=limit)
        return [{'id': s.id, **s.data} for s in snapshots]

    def new_message_id(self, conversation_id):
        return self._store.new_id(messages_path(conversation_id))

    def list_for_user(self, user_id):
        snapshots = self._store.query('conversations', filters=[('participant_ids', 'array_contains', user_id)])
        conversations = [{'id': s.id, **s.data} for s in snapshots]
        # Sorted here to avoid a composite index on (participant_ids, updated_at)
        conversations.sort(key=lambda c: (c.get('updated_at') is not None, c.get('updated_at')), reverse=True)
        return conversations

    def conversations_for_post(self, post_id):
        snapshots = self._store.query('conversations', filters=[('post_id', '==', post_id)])
        return [{'id': s.id, **s.data} for s in snapshots]

    def append_message(self, conversation_id, sender: ActingUser, text, message_type=TEXT_MESSAGE,
                       fields=None, conversation_updates=None, precondition=None, message_id=None):
        """
        Append a message and keep the log within max_messages.

        The message, last_message snapshot, unread counters and the eviction
        of overflowing messages are written in one transaction.
        precondition(conversation, transaction) runs inside it before any
        write and may raise to abort.

        Returns:
            str: the new message id
        """
        message_id = message_id or self.new_message_id(conversation_id)
        message = {
            'sender_id': sender.uid,
            'sender_name': sender.display_name,
            'sender_avatar_url': sender.avatar_url,
            'text': text,
            'message_type': message_type,
            'timestamp': firestore.SERVER_TIMESTAMP,
            'read_by': [sender.uid],
        }
        message.update(fields or {})

        def write(transaction):
            snapshot = transaction.get(conversation_path(conversation_id))
            if not snapshot.exists:
                raise NotFoundError("Conversation no longer exists", code='CONVERSATION_NOT_FOUND')
            conversation = snapshot.data
            participant_ids = conversation.get('participant_ids', [])
            if sender.uid not in participant_ids:
                raise PermissionDeniedError("You are not a participant of this conversation")
            if precondition:
                precondition(conversation, transaction)
            # Requests the conversation points at, including one this append creates, stay pinned
            pinned = {pointer_id for _, pointer_id in active_request_pointers({**conversation, **(conversation_updates or {})})}
            existing = transaction.query(messages_path(conversation_id), order_by='timestamp')
            overflow = len(existing) + 1 - self.max_messages
            evicted = [m.id for m in existing if m.id not in pinned][:max(overflow, 0)]
            updates = {
                'last_message': {
                    'text': text,
                    'sender_id': sender.uid,
                    'message_type': message_type,
                    'timestamp': firestore.SERVER_TIMESTAMP,
                },
                'updated_at': firestore.SERVER_TIMESTAMP,
            }
            for uid in participant_ids:
                if uid != sender.uid:
                    updates[f"unread_counts.{uid}"] = firestore.Increment(1)
            updates.update(conversation_updates or {})
            transaction.set(message_path(conversation_id, message_id), message)
            for evicted_id in evicted:
                transaction.delete(message_path(conversation_id, evicted_id))
            transaction.update(conversation_path(conversation_id), updates)
            return evicted

        evicted = self._store.run_transaction(write)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} messages from conversation {conversation_id}")
        return message_id

    def send_message(self, conversation_id, sender: ActingUser, text):
        text = (text or '').strip()
        if not text:
            raise ValidationError("Message text is required", code='EMPTY_MESSAGE')
        return self.append_message(conversation_id, sender, text)

    def _commit_in_batches(self, operations):
        """Commit (kind, path, data) operations in order, one batch per chunk."""
        for start in range(0, len(operations), config.MAX_BATCH_OPERATIONS):
            batch = self._store.batch()
            for kind, path, data in operations[start:start + config.MAX_BATCH_OPERATIONS]:
                if kind == 'delete':
                    batch.delete(path)
                else:
                    batch.update(path, data)
            batch.commit()

    def mark_as_read(self, conversation_id, user: ActingUser):
        """
        Mark every message as read by the user and reset their unread counter.

        Returns:
            int: number of messages newly marked as read
        """
        self.get_for_participant(conversation_id, user)
        unread = [m for m in self.get_messages(conversation_id) if user.uid not in (m.get('read_by') or [])]
        self._store.update(conversation_path(conversation_id), {f"unread_counts.{user.uid}": 0})
        try:
            self._commit_in_batches([
                ('update', message_path(conversation_id, m['id']), {'read_by': firestore.ArrayUnion([user.uid])})
                for m in unread
            ])
        except NotFoundError:
            # A message was evicted or the conversation deleted while marking
            logger.info(f"Conversation {conversation_id} changed while marking messages read")
        return len(unread)

    def delete_conversation(self, conversation_id):
        """Delete a conversation and its messages. Messages go first."""
        operations = [('delete', message_path(conversation_id, m.id), None)
                      for m in self._store.query(messages_path(conversation_id))]
        operations.append(('delete', conversation_path(conversation_id), None))
        self._commit_in_batches(operations)
        logger.info(f"Deleted conversation {conversation_id}")

    @staticmethod
    def custody_transfer_updates(conversation, previous_owner_id, new_owner: ActingUser):
        """
        Field updates that hand a conversation from the previous post creator to a new custodian.

        Returns:
            dict, or None when the conversation does not belong to previous_owner_id
            or the new custodian is its counterpart
        """
        if conversation.get('post_creator_id') != previous_owner_id:
            return None
        if conversation.get('counterpart_id') == new_owner.uid:
            return None
        participants = dict(conversation.get('participants') or {})
        participants.pop(previous_owner_id, None)
        participants[new_owner.uid] = normalize_profile(new_owner.profile())
        unread_counts = dict(conversation.get('unread_counts') or {})
        unread_counts[new_owner.uid] = unread_counts.pop(previous_owner_id, 0)
        return {
            'post_creator_id': new_owner.uid,
            'participant_ids': [new_owner.uid if uid == previous_owner_id else uid
                                for uid in conversation.get('participant_ids', [])],
            'participants': participants,
            'unread_counts': unread_counts,
            'updated_at': firestore.SERVER_TIMESTAMP,
        }

    def delete_conversations_for_post(self, post_id):
        """
        Delete every conversation of a post.

        Returns:
            tuple: (deleted_ids, failed_ids)
        """
        deleted, failed = [], []
        for conversation in self.conversations_for_post(post_id):
            try:
                self.delete_conversation(conversation['id'])
                deleted.append(conversation['id'])
            except Exception as e:
                logger.error(f"Failed to delete conversation {conversation['id']} of post {post_id}: {str(e)}")
                failed.append(conversation['id'])
        return deleted, failed
