"""
Shared constants and small value types for posts, conversations and users.
Documents themselves stay plain dicts, the way Firestore hands them back.
"""

from dataclasses import dataclass, field

# Post types
POST_TYPE_LOST = 'lost'
POST_TYPE_FOUND = 'found'
POST_TYPES = (POST_TYPE_LOST, POST_TYPE_FOUND)

# Post statuses
POST_PENDING = 'pending'
POST_UNCLAIMED = 'unclaimed'
POST_RESOLVED = 'resolved'
POST_COMPLETED = 'completed'
CLOSED_POST_STATUSES = (POST_RESOLVED, POST_COMPLETED)

# Found-item custody choices
FOUND_ACTION_KEEP = 'keep'
FOUND_ACTION_TURNOVER_OSA = 'turnover_osa'
FOUND_ACTION_TURNOVER_CAMPUS_SECURITY = 'turnover_campus_security'
FOUND_ACTIONS = (FOUND_ACTION_KEEP, FOUND_ACTION_TURNOVER_OSA, FOUND_ACTION_TURNOVER_CAMPUS_SECURITY)
TURNOVER_ACTIONS = (FOUND_ACTION_TURNOVER_OSA, FOUND_ACTION_TURNOVER_CAMPUS_SECURITY)

# Turnover statuses
TURNOVER_DECLARED = 'declared'
TURNOVER_CONFIRMED = 'confirmed'
TURNOVER_NOT_RECEIVED = 'not_received'

# Roles
ROLE_USER = 'user'
ROLE_ADMIN = 'admin'
ROLE_CAMPUS_SECURITY = 'campus_security'
ELEVATED_ROLES = (ROLE_ADMIN, ROLE_CAMPUS_SECURITY)

DEFAULT_AVATAR_URL = '/static/images/default-avatar.png'
UNKNOWN_DISPLAY_NAME = 'Unknown User'


@dataclass(frozen=True)
class ActingUser:
    """The authenticated caller and the display fields copied into documents"""
    uid: str
    display_name: str = UNKNOWN_DISPLAY_NAME
    avatar_url: str = DEFAULT_AVATAR_URL
    role: str = ROLE_USER

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    @property
    def is_elevated(self):
        return self.role in ELEVATED_ROLES

    def profile(self):
        return {'display_name': self.display_name, 'avatar_url': self.avatar_url}


@dataclass
class MediaFile:
    """An image received from a client, held in memory until uploaded"""
    filename: str
    content: bytes = field(repr=False)
    content_type: str = 'image/jpeg'

    @property
    def size(self):
        return len(self.content)


def _first_text(raw, *keys):
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def normalize_profile(raw):
    """
    Collapse the many shapes of stored user data into one display profile.

    Args:
        raw: user document, cached participant entry, or None

    Returns:
        dict: {'display_name': str, 'avatar_url': str}
    """
    raw = raw or {}
    display_name = _first_text(raw, 'display_name', 'displayName', 'name')
    if not display_name:
        first = _first_text(raw, 'first_name', 'firstName') or ''
        last = _first_text(raw, 'last_name', 'lastName') or ''
        display_name = f"{first} {last}".strip()
    if not display_name:
        email = _first_text(raw, 'email')
        if email:
            display_name = email.split('@')[0]
    avatar_url = _first_text(raw, 'avatar_url', 'profile_picture', 'profilePicture',
                             'profileImageUrl', 'photo_url', 'photoURL')
    return {
        'display_name': display_name or UNKNOWN_DISPLAY_NAME,
        'avatar_url': avatar_url or DEFAULT_AVATAR_URL,
    }
