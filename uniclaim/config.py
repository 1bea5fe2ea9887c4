"""
Runtime configuration for the UniClaim backend.
Values come from the environment (optionally a local .env file).
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


# Firebase
FIREBASE_CREDENTIALS_PATH = os.environ.get('GOOGLE_APPLICATION_CREDENTIALS') or os.environ.get('FIREBASE_ADMIN_KEY_PATH')
FIREBASE_STORAGE_BUCKET = os.environ.get('FIREBASE_STORAGE_BUCKET', 'uniclaim.appspot.com')

# 'firestore' in production, 'memory' for local runs without credentials
STORE_BACKEND = os.environ.get('UNICLAIM_STORE', 'firestore').strip().lower()

SECRET_KEY = os.environ.get('SECRET_KEY')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

# Conversations
MAX_CONVERSATION_MESSAGES = _env_int('MAX_CONVERSATION_MESSAGES', 50)
MAX_REASON_LENGTH = _env_int('MAX_REASON_LENGTH', 500)

# Media
UPLOAD_MAX_CONCURRENT = _env_int('UPLOAD_MAX_CONCURRENT', 3)
TRUSTED_MEDIA_DOMAIN = os.environ.get('TRUSTED_MEDIA_DOMAIN', 'storage.googleapis.com')
MAX_IMAGE_SIZE = _env_int('MAX_IMAGE_SIZE', 15 * 1024 * 1024)
MAX_CLAIM_EVIDENCE_PHOTOS = 5
MAX_HANDOVER_EVIDENCE_PHOTOS = 3

# Firestore rejects batches above 500 operations
MAX_BATCH_OPERATIONS = 500
WRITE_QUEUE_MAX_OPERATIONS = _env_int('WRITE_QUEUE_MAX_OPERATIONS', 400)

# Post lifecycle
POST_EXPIRY_DAYS = _env_int('POST_EXPIRY_DAYS', 30)
RESOLUTION_RESERVATION_TTL_SECONDS = _env_int('RESOLUTION_RESERVATION_TTL_SECONDS', 120)

# Elevated responders (admin, campus security) may accept without a verification photo
ALLOW_ELEVATED_VERIFICATION_BYPASS = _env_bool('ALLOW_ELEVATED_VERIFICATION_BYPASS', True)

ENABLE_PUSH_NOTIFICATIONS = _env_bool('ENABLE_PUSH_NOTIFICATIONS', False)
ENABLE_SCHEDULER = _env_bool('ENABLE_SCHEDULER', True)
