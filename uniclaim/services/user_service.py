"""
User service for reading profiles into the canonical display shape.
"""
import logging

from ..models import normalize_profile

logger = logging.getLogger(__name__)


def get_user_profile(store, user_id):
    """
    Get the display profile of a user.

    Args:
        store: DocumentStore
        user_id: ID of the user

    Returns:
        dict: {'display_name', 'avatar_url'}; a placeholder profile when the user document is missing
    """
    if not user_id:
        return normalize_profile(None)
    try:
        snapshot = store.get(f"users/{user_id}")
    except Exception as e:
        logger.warning(f"Failed to load profile for {user_id}: {str(e)}")
        return normalize_profile(None)
    return normalize_profile(snapshot.data if snapshot.exists else None)
