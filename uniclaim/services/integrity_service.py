"""
Integrity checks for conversations left behind by missed cleanups.
"""

import logging

from ..models import CLOSED_POST_STATUSES

logger = logging.getLogger(__name__)

POST_MISSING = 'post_missing'
POST_CLOSED = 'post_closed'
POST_UNCLAIMED = 'post_unclaimed'


class IntegrityService:

    def __init__(self, store, registry):
        self._store = store
        self._registry = registry

    def find_ghost_conversations(self):
        """
        Find conversations whose post is gone or no longer open.

        Returns:
            list: [{'conversation_id', 'post_id', 'reason'}]
        """
        posts = {}
        ghosts = []
        for snapshot in self._store.query('conversations'):
            post_id = snapshot.data.get('post_id')
            if post_id not in posts:
                post_snapshot = self._store.get(f"posts/{post_id}") if post_id else None
                posts[post_id] = post_snapshot.data if post_snapshot and post_snapshot.exists else None
            post = posts[post_id]
            reason = None
            if post is None:
                reason = POST_MISSING
            elif post.get('status') in CLOSED_POST_STATUSES:
                reason = POST_CLOSED
            elif post.get('moved_to_unclaimed'):
                reason = POST_UNCLAIMED
            if reason:
                ghosts.append({'conversation_id': snapshot.id, 'post_id': post_id, 'reason': reason})
        return ghosts

    def cleanup_ghost_conversations(self):
        """
        Delete every ghost conversation.

        Returns:
            dict: Summary of the cleanup
        """
        ghosts = self.find_ghost_conversations()
        deleted, failed = [], []
        for ghost in ghosts:
            try:
                self._registry.delete_conversation(ghost['conversation_id'])
                deleted.append(ghost['conversation_id'])
            except Exception as e:
                logger.error(f"Failed to delete ghost conversation {ghost['conversation_id']}: {str(e)}")
                failed.append(ghost['conversation_id'])
        if deleted:
            logger.info(f"Removed {len(deleted)} ghost conversations")
        return {
            'success': not failed,
            'deleted_count': len(deleted),
            'deleted': deleted,
            'failed': failed,
        }
