"""
Typed outcomes returned by the request workflow.

Callers match on the class (or the `kind` tag) instead of wiring one
callback per result. Every outcome knows how to render itself as the
(response_dict, status_code) pair the routes return.
"""

from dataclasses import asdict, dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class Submitted:
    conversation_id: str
    message_id: str
    request_type: str
    kind: str = field(default='submitted', init=False)

    def to_response(self):
        return {'success': True, **asdict(self)}, 201


@dataclass(frozen=True)
class UploadFailed:
    error: str
    failed_files: List[str] = field(default_factory=list)
    kind: str = field(default='upload_failed', init=False)

    def to_response(self):
        return {'success': False, 'code': 'UPLOAD_FAILED', **asdict(self)}, 502


@dataclass(frozen=True)
class ConflictDetected:
    conversation_id: str
    existing_message_id: Optional[str]
    reason: str = 'A pending request already exists for this conversation'
    kind: str = field(default='conflict_detected', init=False)

    def to_response(self):
        return {'success': False, 'code': 'PENDING_REQUEST_EXISTS', **asdict(self)}, 409


@dataclass(frozen=True)
class Accepted:
    conversation_id: str
    message_id: str
    verification_bypassed: bool = False
    kind: str = field(default='accepted', init=False)

    def to_response(self):
        return {'success': True, **asdict(self)}, 200


@dataclass(frozen=True)
class Confirmed:
    post_id: str
    conversation_id: str
    message_id: str
    rejected_requests: List[str] = field(default_factory=list)
    cleanup_misses: List[str] = field(default_factory=list)
    kind: str = field(default='confirmed', init=False)

    def to_response(self):
        return {'success': True, **asdict(self)}, 200


@dataclass(frozen=True)
class Rejected:
    conversation_id: str
    message_id: str
    reason: Optional[str] = None
    # True when the request lost a confirmation race instead of being declined
    superseded: bool = False
    kind: str = field(default='rejected', init=False)

    def to_response(self):
        if self.superseded:
            return {'success': False, 'code': 'ITEM_ALREADY_RESOLVED', **asdict(self)}, 409
        return {'success': True, **asdict(self)}, 200
