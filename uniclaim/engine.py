"""
Explicit wiring of the store and services.

The application builds one Engine and keeps it in app.extensions; nothing
below holds process-wide state.
"""

from dataclasses import dataclass

from flask import current_app

from .services.confirmation_coordinator import ConfirmationCoordinator
from .services.conversation_service import ConversationRegistry
from .services.integrity_service import IntegrityService
from .services.media_service import MediaStore
from .services.notification_service import NotificationDispatcher
from .services.post_service import PostService
from .services.request_service import RequestService
from .services.turnover_service import TurnoverService

EXTENSION_KEY = 'uniclaim'


@dataclass
class Engine:
    store: object
    media: MediaStore
    notifier: NotificationDispatcher
    conversations: ConversationRegistry
    coordinator: ConfirmationCoordinator
    requests: RequestService
    posts: PostService
    turnover: TurnoverService
    integrity: IntegrityService

    def close(self):
        self.store.close()


def build_engine(store, bucket=None, messaging=None, media=None):
    """
    Construct every service around one store.

    Args:
        store: DocumentStore
        bucket: storage bucket for verification photos (resolved lazily when None)
        messaging: firebase_admin.messaging compatible module for push delivery
        media: ready-made MediaStore, overrides bucket

    Returns:
        Engine
    """
    media = media or MediaStore(bucket=bucket)
    notifier = NotificationDispatcher(store, messaging=messaging)
    conversations = ConversationRegistry(store)
    coordinator = ConfirmationCoordinator(store, conversations, notifier)
    return Engine(
        store=store,
        media=media,
        notifier=notifier,
        conversations=conversations,
        coordinator=coordinator,
        requests=RequestService(store, conversations, media, notifier, coordinator),
        posts=PostService(store, coordinator),
        turnover=TurnoverService(store, notifier),
        integrity=IntegrityService(store, conversations),
    )


def get_engine() -> Engine:
    return current_app.extensions[EXTENSION_KEY]
