import io
import threading
import time

import pytest
from PIL import Image

from uniclaim.engine import build_engine
from uniclaim.models import ROLE_ADMIN, ROLE_CAMPUS_SECURITY, ActingUser, MediaFile
from uniclaim.services.media_service import MediaStore
from uniclaim.store.memory_store import MemoryStore


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name
        self.public_url = None

    def upload_from_string(self, content, content_type=None):
        with self.bucket.lock:
            self.bucket.in_flight += 1
            self.bucket.max_in_flight = max(self.bucket.max_in_flight, self.bucket.in_flight)
        try:
            if self.bucket.upload_delay:
                time.sleep(self.bucket.upload_delay)
            if content in self.bucket.failing_contents:
                raise ConnectionError("simulated storage outage")
            with self.bucket.lock:
                self.bucket.objects[self.name] = content
        finally:
            with self.bucket.lock:
                self.bucket.in_flight -= 1
        self.public_url = f"{self.bucket.url_prefix}/{self.bucket.name}/{self.name}"

    def make_public(self):
        pass

    def delete(self):
        with self.bucket.lock:
            if self.name not in self.bucket.objects:
                raise FileNotFoundError(self.name)
            del self.bucket.objects[self.name]
            self.bucket.deleted.append(self.name)


class FakeBucket:
    """Stand-in for a Firebase Storage bucket"""

    def __init__(self, name='test-bucket'):
        self.name = name
        self.url_prefix = 'https://storage.googleapis.com'
        self.objects = {}
        self.deleted = []
        self.failing_contents = set()
        self.upload_delay = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.lock = threading.Lock()

    def blob(self, name):
        return FakeBlob(self, name)


_image_seeds = iter(range(1, 1_000_000))


@pytest.fixture
def make_image():
    """Factory for small JPEG images. Every call yields a unique size, so no two share bytes."""
    def _make(name='photo.jpg', fmt='JPEG'):
        seed = next(_image_seeds)
        size = (16 + seed % 256, 16 + (seed // 256) % 256)
        buf = io.BytesIO()
        Image.new('RGB', size, ((seed * 37) % 256, (seed * 91) % 256, 90)).save(buf, format=fmt)
        content_type = 'image/png' if fmt == 'PNG' else 'image/jpeg'
        return MediaFile(filename=name, content=buf.getvalue(), content_type=content_type)
    return _make


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def bucket():
    return FakeBucket()


@pytest.fixture
def media(bucket):
    return MediaStore(bucket=bucket, max_concurrent=3)


@pytest.fixture
def engine(store, media):
    return build_engine(store, media=media)


@pytest.fixture
def poster():
    return ActingUser(uid='poster', display_name='Paula Poster', avatar_url='https://example.com/p.png')


@pytest.fixture
def alice():
    return ActingUser(uid='alice', display_name='Alice Reyes')


@pytest.fixture
def bob():
    return ActingUser(uid='bob', display_name='Bob Santos')


@pytest.fixture
def admin():
    return ActingUser(uid='admin1', display_name='OSA Desk', role=ROLE_ADMIN)


@pytest.fixture
def security():
    return ActingUser(uid='guard1', display_name='Campus Security', role=ROLE_CAMPUS_SECURITY)


@pytest.fixture
def found_post(engine, poster):
    return engine.posts.create_post(poster, {'title': 'Black Umbrella', 'type': 'found', 'found_action': 'keep'})


@pytest.fixture
def lost_post(engine, poster):
    return engine.posts.create_post(poster, {'title': 'Blue Wallet', 'type': 'lost'})


@pytest.fixture
def submit(engine, make_image):
    """Open a conversation for the user and submit a request with valid photos."""
    def _submit(post, user, evidence_count=1, reason='It has my initials on the handle'):
        conversation = engine.conversations.get_or_create(post['id'], user)
        outcome = engine.requests.submit_request(
            conversation['id'], user, reason,
            make_image('id.jpg'),
            [make_image(f'evidence_{i}.jpg') for i in range(evidence_count)],
        )
        return conversation['id'], outcome
    return _submit


@pytest.fixture
def accept(engine, make_image):
    def _accept(conversation_id, message_id, responder):
        return engine.requests.respond(conversation_id, message_id, responder, 'accept',
                                       verification_photo=make_image('responder_id.jpg'))
    return _accept


def notifications_for(store, user_id, ntype=None):
    filters = [('user_id', '==', user_id)]
    if ntype:
        filters.append(('type', '==', ntype))
    return [s.data for s in store.query('notifications', filters=filters)]


@pytest.fixture
def notifications(store):
    def _notifications(user_id, ntype=None):
        return notifications_for(store, user_id, ntype)
    return _notifications
