"""
Live view of a single conversation.

A viewer listens to the conversation document and its message collection.
When the conversation document disappears (for example after an item is
resolved) the viewer detaches both listeners and reports the exit once.
"""

import logging
import threading

from ..errors import NotFoundError
from ..store.document_store import REMOVED
from .conversation_service import conversation_path, messages_path

logger = logging.getLogger(__name__)

EXIT_CONVERSATION_DELETED = 'conversation_deleted'
EXIT_CLOSED = 'closed'


class ConversationViewer:
    """
    Args:
        store: DocumentStore
        registry: ConversationRegistry used for sends
        conversation_id: conversation to follow
        viewer: ActingUser holding the view
        on_messages: optional callable(list_of_messages) after each message delta
        on_conversation: optional callable(conversation_dict) on conversation updates
        on_exit: optional callable(reason) invoked once when the conversation is deleted
    """

    def __init__(self, store, registry, conversation_id, viewer,
                 on_messages=None, on_conversation=None, on_exit=None):
        self._store = store
        self._registry = registry
        self.conversation_id = conversation_id
        self.viewer = viewer
        self._on_messages = on_messages
        self._on_conversation = on_conversation
        self._on_exit = on_exit
        self._lock = threading.RLock()
        self._messages = {}
        self._subscriptions = []
        self.conversation = None
        self.exit_reason = None
        self._opened = False

    @property
    def is_open(self):
        return self._opened and self.exit_reason is None

    @property
    def messages(self):
        with self._lock:
            ordered = sorted(self._messages.values(), key=lambda m: (m.get('timestamp') is None, m.get('timestamp') or 0, m['id']))
        return ordered

    def open(self):
        """Start listening. Raises NotFoundError when the conversation is already gone."""
        self._registry.get_for_participant(self.conversation_id, self.viewer)
        self._opened = True
        self._subscriptions.append(
            self._store.subscribe_document(conversation_path(self.conversation_id), self._handle_conversation))
        if self.exit_reason is None:
            self._subscriptions.append(
                self._store.subscribe_collection(messages_path(self.conversation_id), self._handle_messages))
        if self.exit_reason is not None:
            # Deleted between the existence check and the subscription
            self._detach()
        return self

    def _handle_conversation(self, snapshot):
        if not snapshot.exists:
            self._exit(EXIT_CONVERSATION_DELETED)
            return
        with self._lock:
            self.conversation = {'id': snapshot.id, **snapshot.data}
        if self._on_conversation:
            self._on_conversation(self.conversation)

    def _handle_messages(self, changes):
        if self.exit_reason is not None:
            return
        with self._lock:
            for change in changes:
                if change.type == REMOVED:
                    self._messages.pop(change.snapshot.id, None)
                else:
                    self._messages[change.snapshot.id] = {'id': change.snapshot.id, **change.snapshot.data}
        if self._on_messages:
            self._on_messages(self.messages)

    def _exit(self, reason):
        with self._lock:
            if self.exit_reason is not None:
                return
            self.exit_reason = reason
        logger.info(f"Viewer of {self.conversation_id} for {self.viewer.uid} exiting: {reason}")
        self._detach()
        if self._on_exit:
            try:
                self._on_exit(reason)
            except Exception as e:
                logger.warning(f"Exit handler for {self.conversation_id} failed: {str(e)}")

    def _detach(self):
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.unsubscribe()

    def send(self, text):
        if not self.is_open:
            raise NotFoundError("Conversation is no longer available", code='CONVERSATION_CLOSED')
        return self._registry.send_message(self.conversation_id, self.viewer, text)

    def close(self):
        with self._lock:
            if self.exit_reason is None:
                self.exit_reason = EXIT_CLOSED
        self._detach()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
