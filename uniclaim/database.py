import os
import logging
import firebase_admin
from firebase_admin import credentials, firestore, storage

from . import config
from .store.firestore_store import FirestoreStore
from .store.memory_store import MemoryStore

logger = logging.getLogger(__name__)


def initialize_firebase():
    """Initialize Firebase Admin SDK with the provided credentials"""
    try:
        project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
        # Preferred config path under /config/credentials
        config_credentials_path = os.path.join(project_root, 'config', 'credentials', 'firebaseAdminKey.json')
        path = config.FIREBASE_CREDENTIALS_PATH
        if not path and os.path.isfile(config_credentials_path):
            path = config_credentials_path
        # Last resort: write JSON from env to config path
        if not path or not os.path.isfile(path):
            env_json = os.environ.get('FIREBASE_ADMIN_KEY_JSON')
            if env_json:
                os.makedirs(os.path.dirname(config_credentials_path), exist_ok=True)
                with open(config_credentials_path, 'w', encoding='utf-8') as f:
                    f.write(env_json)
                path = config_credentials_path
        cred = credentials.Certificate(path)
        firebase_admin.initialize_app(cred, {
            'storageBucket': config.FIREBASE_STORAGE_BUCKET
        })
    except ValueError:
        # App already initialized
        pass

    return firestore.client()


def get_storage_bucket():
    """Get Firebase Storage bucket"""
    return storage.bucket()


def create_store(backend=None):
    """
    Build the document store selected by UNICLAIM_STORE.

    Args:
        backend: 'firestore' or 'memory'; defaults to the configured backend

    Returns:
        DocumentStore
    """
    backend = (backend or config.STORE_BACKEND).lower()
    if backend == 'memory':
        logger.info("Using in-memory document store")
        return MemoryStore()
    if backend != 'firestore':
        raise ValueError(f"Unknown store backend: {backend}")
    return FirestoreStore(initialize_firebase())
