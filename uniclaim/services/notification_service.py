"""
Notification Service.
Writes in-app notification documents and, when enabled, pushes them over FCM.
Delivery is best-effort: failures are logged and never raised to the caller.
"""

import logging
from typing import Dict, Iterable

from firebase_admin import firestore
from firebase_admin.messaging import UnregisteredError

from .. import config

_logger = logging.getLogger(__name__)


def _stringify(data):
    # FCM data payloads only accept string values
    return {str(k): '' if v is None else str(v) for k, v in (data or {}).items()}


class NotificationDispatcher:
    """Fan-out of in-app notifications to one or more users"""

    def __init__(self, store, messaging=None, push_enabled=None):
        self._store = store
        self._messaging = messaging
        self._push_enabled = config.ENABLE_PUSH_NOTIFICATIONS if push_enabled is None else push_enabled

    def _notification_doc(self, user_id, notification):
        return {
            'user_id': user_id,
            'type': notification.get('type', 'general'),
            'title': notification.get('title', ''),
            'message': notification.get('body', ''),
            'data': dict(notification.get('data') or {}),
            'is_read': False,
            'timestamp': firestore.SERVER_TIMESTAMP,
        }

    def send_notification_to_users(self, user_ids: Iterable[str], notification: Dict) -> int:
        """
        Send the same notification to several users.

        Args:
            user_ids: recipients; duplicates and empty ids are ignored
            notification: {'type', 'title', 'body', 'data'}

        Returns:
            int: number of notification documents written
        """
        recipients = [uid for uid in dict.fromkeys(user_ids or []) if uid]
        return self.send_grouped({uid: notification for uid in recipients})

    def send_grouped(self, notifications_by_user: Dict[str, Dict]) -> int:
        """
        Write one notification per user in a single batch.

        Args:
            notifications_by_user: {user_id: {'type', 'title', 'body', 'data'}}

        Returns:
            int: number of notification documents written (0 on failure)
        """
        if not notifications_by_user:
            return 0
        try:
            batch = self._store.batch()
            for user_id, notification in notifications_by_user.items():
                notification_id = self._store.new_id('notifications')
                doc = self._notification_doc(user_id, notification)
                doc['notification_id'] = notification_id
                batch.set(f"notifications/{notification_id}", doc)
            batch.commit()
        except Exception as e:
            _logger.warning(f"Failed to write notifications for {list(notifications_by_user)}: {str(e)}")
            return 0

        if self._push_enabled:
            for user_id, notification in notifications_by_user.items():
                self._push(user_id, notification)
        return len(notifications_by_user)

    def _push(self, user_id, notification):
        try:
            user_doc = self._store.get(f"users/{user_id}")
            data = user_doc.data if user_doc.exists else {}
            tokens = [t for t in (data.get('fcm_tokens') or [data.get('fcm_token')]) if t]
            if not tokens:
                return
            messaging = self._messaging
            if messaging is None:
                from firebase_admin import messaging
            message = messaging.MulticastMessage(
                tokens=tokens,
                notification=messaging.Notification(
                    title=notification.get('title', ''),
                    body=notification.get('body', ''),
                ),
                data=_stringify({'type': notification.get('type'), **(notification.get('data') or {})}),
            )
            response = messaging.send_each_for_multicast(message)
            if response.failure_count:
                _logger.warning(f"Push to {user_id} failed for {response.failure_count} of {len(tokens)} devices")
                self._prune_tokens(user_id, data, tokens, response.responses)
        except Exception as e:
            _logger.warning(f"Push notification to {user_id} failed: {str(e)}")

    def _prune_tokens(self, user_id, user_data, tokens, results):
        """Queue removal of device tokens FCM reports as unregistered."""
        stale = [token for token, result in zip(tokens, results)
                 if not result.success and isinstance(result.exception, UnregisteredError)]
        if not stale:
            return
        updates = {'fcm_tokens': firestore.ArrayRemove(stale)}
        if user_data.get('fcm_token') in stale:
            updates['fcm_token'] = firestore.DELETE_FIELD
        # Deferred: committed by the next write-queue flush
        self._store.write_queue.enqueue_update(f"users/{user_id}", updates)
        _logger.info(f"Queued removal of {len(stale)} stale device tokens for {user_id}")
