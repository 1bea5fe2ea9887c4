"""
Request Service for claim and handover requests.

A request lives as a message inside the conversation between the post
creator and the requester. Uploads always finish before the request state is
written, so a failed upload never leaves a half-created request behind.
Results come back as outcome objects (see outcomes.py).
"""

import logging
from typing import List, Optional

from firebase_admin import firestore

from .. import config
from ..errors import ConflictError, NotFoundError, PermissionDeniedError, UploadError, ValidationError
from ..models import ActingUser, MediaFile
from .conversation_service import conversation_path, message_path
from .outcomes import Accepted, ConflictDetected, Confirmed, Rejected, Submitted, UploadFailed
from .post_service import is_claim_eligible
from .request_state_machine import (
    ACCEPTED,
    AUTO_REJECTION_REASON,
    CLAIM_REQUEST,
    CONFIRMED,
    PENDING,
    REJECTED,
    REQUEST_TYPES,
    is_active,
    request_flag_fields,
    request_status,
    request_type_for_post,
    require_transition,
)

logger = logging.getLogger(__name__)

ACCEPT = 'accept'
REJECT = 'reject'


class _ActiveRequestExists(ConflictError):
    code = 'PENDING_REQUEST_EXISTS'

    def __init__(self, message_id):
        super().__init__("A pending request already exists for this conversation")
        self.existing_message_id = message_id


def _label(message_type):
    return 'Claim' if message_type == CLAIM_REQUEST else 'Handover'


class RequestService:

    def __init__(self, store, registry, media, notifier, coordinator, allow_elevated_bypass=None):
        self._store = store
        self._registry = registry
        self._media = media
        self._notifier = notifier
        self._coordinator = coordinator
        self.allow_elevated_bypass = (config.ALLOW_ELEVATED_VERIFICATION_BYPASS
                                      if allow_elevated_bypass is None else allow_elevated_bypass)

    def get_request(self, conversation_id, message_id):
        message = self._registry.get_message(conversation_id, message_id)
        if message.get('message_type') not in REQUEST_TYPES:
            raise ValidationError("Message is not a claim or handover request", code='NOT_A_REQUEST')
        return message

    def submit_request(self, conversation_id, requester: ActingUser, reason: str,
                       id_photo: Optional[MediaFile], evidence_photos: List[MediaFile], on_progress=None):
        """
        Create a claim (found post) or handover (lost post) request.

        Args:
            conversation_id: conversation between the requester and the post creator
            requester: user submitting the request
            reason: why the requester should get / return the item
            id_photo: photo of the requester's ID
            evidence_photos: item or ownership evidence
            on_progress: optional upload progress callback

        Returns:
            Submitted, ConflictDetected or UploadFailed
        """
        reason = (reason or '').strip()
        if not reason:
            raise ValidationError("Please provide a reason for your request", code='MISSING_REASON')
        if len(reason) > config.MAX_REASON_LENGTH:
            raise ValidationError(f"Reason must be at most {config.MAX_REASON_LENGTH} characters",
                                  code='REASON_TOO_LONG')
        if id_photo is None:
            raise ValidationError("An ID photo is required", code='MISSING_ID_PHOTO')
        evidence = [f for f in (evidence_photos or []) if f is not None]

        conversation = self._registry.get(conversation_id)
        if requester.uid not in conversation.get('participant_ids', []):
            raise PermissionDeniedError("You are not a participant of this conversation")
        post_id = conversation.get('post_id')
        post_snapshot = self._store.get(f"posts/{post_id}")
        if not post_snapshot.exists:
            raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
        post = post_snapshot.data
        owner_id = post.get('creator_id') or conversation.get('post_creator_id')
        if requester.uid in (owner_id, conversation.get('post_creator_id')):
            raise ValidationError("You cannot send a request for your own post", code='OWN_POST')
        if not is_claim_eligible(post):
            raise ConflictError("This item is not accepting requests", code='ITEM_NOT_AVAILABLE')

        message_type = request_type_for_post(post.get('type'))
        max_evidence = (config.MAX_CLAIM_EVIDENCE_PHOTOS if message_type == CLAIM_REQUEST
                        else config.MAX_HANDOVER_EVIDENCE_PHOTOS)
        if not 1 <= len(evidence) <= max_evidence:
            raise ValidationError(f"Please attach between 1 and {max_evidence} photos",
                                  code='INVALID_EVIDENCE_COUNT')
        self._media.validate_images([id_photo] + evidence)

        conflict = self._check_existing_request(conversation_id, conversation, message_type)
        if conflict is not None:
            return conflict

        folder = f"{message_type}s/{post_id}/{requester.uid}"
        try:
            urls = self._media.upload_images([id_photo] + evidence, folder, on_progress)
        except UploadError as e:
            logger.warning(f"{_label(message_type)} request upload failed in {conversation_id}: {e.message}")
            return UploadFailed(error=e.message, failed_files=e.failed_files)

        message_id = self._registry.new_message_id(conversation_id)
        flag, pointer = request_flag_fields(message_type)
        fields = {
            'request': {
                'requester_id': requester.uid,
                'requester_name': requester.display_name,
                'reason': reason,
                'id_photo_url': urls[0],
                'evidence_photos': urls[1:],
                'post_id': post_id,
                'requested_at': firestore.SERVER_TIMESTAMP,
            },
            'state': {
                'status': PENDING,
                'responded_by': None,
                'responded_at': None,
                'responder_id_photo_url': None,
                'verification_bypassed': False,
                'confirmed_by': None,
                'confirmed_at': None,
                'rejection_reason': None,
            },
        }

        def no_active_request(current, transaction):
            # A confirm may have reserved or closed the post since the checks above
            latest = transaction.get(f"posts/{post_id}")
            if not latest.exists or not is_claim_eligible(latest.data):
                raise ConflictError("This item is not accepting requests", code='ITEM_NOT_AVAILABLE')
            existing_id = current.get(pointer)
            if current.get(flag) and existing_id:
                existing = transaction.get(message_path(conversation_id, existing_id))
                if existing.exists and is_active(request_status(existing.data)):
                    raise _ActiveRequestExists(existing_id)

        try:
            self._registry.append_message(
                conversation_id, requester, f"{_label(message_type)} request: {reason}",
                message_type=message_type,
                fields=fields,
                conversation_updates={flag: True, pointer: message_id},
                precondition=no_active_request,
                message_id=message_id,
            )
        except _ActiveRequestExists as e:
            self._media.delete_images(urls)
            return ConflictDetected(conversation_id=conversation_id, existing_message_id=e.existing_message_id)
        except Exception:
            self._media.delete_images(urls)
            raise

        logger.info(f"{_label(message_type)} request {message_id} submitted in {conversation_id} by {requester.uid}")
        self._notifier.send_notification_to_users([owner_id], {
            'type': message_type,
            'title': f"New {_label(message_type)} Request",
            'body': f"{requester.display_name} sent a {_label(message_type).lower()} request for \"{post.get('title', 'your item')}\".",
            'data': {'post_id': post_id, 'conversation_id': conversation_id, 'message_id': message_id},
        })
        return Submitted(conversation_id=conversation_id, message_id=message_id, request_type=message_type)

    def _check_existing_request(self, conversation_id, conversation, message_type):
        """
        Guard against a second open request in the same conversation.

        A flag pointing at a message that no longer exists, or that already
        reached a terminal state, is stale and gets cleared.
        """
        flag, pointer = request_flag_fields(message_type)
        if not conversation.get(flag):
            return None
        existing_id = conversation.get(pointer)
        if existing_id:
            existing = self._store.get(message_path(conversation_id, existing_id))
            if existing.exists and is_active(request_status(existing.data)):
                return ConflictDetected(conversation_id=conversation_id, existing_message_id=existing_id)
        logger.info(f"Clearing stale {flag} flag on conversation {conversation_id} (pointer {existing_id})")
        self._store.update(conversation_path(conversation_id), {flag: False, pointer: None})
        return None

    def _current_owner_id(self, conversation):
        """The post's creator right now. Custody can move after the conversation was opened."""
        post_snapshot = self._store.get(f"posts/{conversation.get('post_id')}")
        if post_snapshot.exists and post_snapshot.data.get('creator_id'):
            return post_snapshot.data['creator_id']
        return conversation.get('post_creator_id')

    def _require_responder(self, user, conversation):
        if user.uid != self._current_owner_id(conversation) and not user.is_elevated:
            raise PermissionDeniedError("Only the post creator can act on this request")

    def _transition(self, conversation_id, message_id, message_type, updates, clear_flag=False):
        """Apply a state change to a request and its conversation atomically."""
        target = updates['state.status']
        flag, pointer = request_flag_fields(message_type)

        def apply(transaction):
            message_snapshot = transaction.get(message_path(conversation_id, message_id))
            conversation_snapshot = transaction.get(conversation_path(conversation_id))
            if not message_snapshot.exists:
                raise NotFoundError("Request no longer exists", code='MESSAGE_NOT_FOUND')
            if not conversation_snapshot.exists:
                raise NotFoundError("Conversation no longer exists", code='CONVERSATION_NOT_FOUND')
            require_transition(request_status(message_snapshot.data), target)
            conversation_updates = {'updated_at': firestore.SERVER_TIMESTAMP}
            if clear_flag and conversation_snapshot.data.get(pointer) == message_id:
                conversation_updates[flag] = False
                conversation_updates[pointer] = None
            transaction.update(message_path(conversation_id, message_id), updates)
            transaction.update(conversation_path(conversation_id), conversation_updates)
            return message_snapshot.data

        return self._store.run_transaction(apply)

    def respond(self, conversation_id, message_id, responder: ActingUser, decision,
                verification_photo: Optional[MediaFile] = None, rejection_reason=None):
        """
        Accept or reject a pending request.

        Accepting needs a verification photo of the responder's ID unless the
        responder holds an elevated role and the bypass is enabled.

        Returns:
            Accepted, Rejected or UploadFailed
        """
        decision = (decision or '').strip().lower()
        if decision not in (ACCEPT, REJECT):
            raise ValidationError("Decision must be 'accept' or 'reject'", code='INVALID_DECISION')
        conversation = self._registry.get(conversation_id)
        message = self.get_request(conversation_id, message_id)
        message_type = message.get('message_type')
        self._require_responder(responder, conversation)
        status = request_status(message)
        request = message.get('request') or {}

        if decision == REJECT:
            require_transition(status, REJECTED)
            reason = (rejection_reason or '').strip() or None
            self._transition(conversation_id, message_id, message_type, {
                'state.status': REJECTED,
                'state.responded_by': responder.uid,
                'state.responded_at': firestore.SERVER_TIMESTAMP,
                'state.rejection_reason': reason,
            }, clear_flag=True)
            logger.info(f"Request {message_id} in {conversation_id} rejected by {responder.uid}")
            self._notify_requester(request, conversation, message_type, 'request_rejected', 'Request Rejected',
                                   f"Your {_label(message_type).lower()} request was rejected"
                                   + (f": {reason}" if reason else '.'), message_id)
            photos = [request.get('id_photo_url')] + list(request.get('evidence_photos') or [])
            self._media.delete_images([p for p in photos if p])
            return Rejected(conversation_id=conversation_id, message_id=message_id, reason=reason)

        require_transition(status, ACCEPTED)
        bypassed = False
        if verification_photo is None:
            if not (responder.is_elevated and self.allow_elevated_bypass):
                raise ValidationError("A verification photo is required to accept this request",
                                      code='MISSING_VERIFICATION_PHOTO')
            bypassed = True

        photo_url = None
        if not bypassed:
            self._media.validate_images([verification_photo])
            try:
                photo_url = self._media.upload_image(verification_photo,
                                                     f"verification_photos/{conversation.get('post_id')}")
            except UploadError as e:
                return UploadFailed(error=e.message, failed_files=e.failed_files)

        try:
            self._transition(conversation_id, message_id, message_type, {
                'state.status': ACCEPTED,
                'state.responded_by': responder.uid,
                'state.responded_at': firestore.SERVER_TIMESTAMP,
                'state.responder_id_photo_url': photo_url,
                'state.verification_bypassed': bypassed,
            })
        except Exception:
            if photo_url:
                self._media.delete_images([photo_url])
            raise

        if bypassed:
            logger.warning(f"Request {message_id} accepted by {responder.uid} without a verification photo")
        else:
            logger.info(f"Request {message_id} in {conversation_id} accepted by {responder.uid}")
        self._notify_requester(request, conversation, message_type, 'request_accepted', 'Request Accepted',
                               f"Your {_label(message_type).lower()} request was accepted and awaits confirmation.",
                               message_id)
        return Accepted(conversation_id=conversation_id, message_id=message_id, verification_bypassed=bypassed)

    def confirm(self, conversation_id, message_id, confirmer: ActingUser):
        """
        Confirm an accepted request, resolving the post.

        Returns:
            Confirmed, or Rejected(superseded=True) when another request won first
        """
        conversation = self._registry.get(conversation_id)
        message = self.get_request(conversation_id, message_id)
        if confirmer.uid != self._current_owner_id(conversation) and not confirmer.is_admin:
            raise PermissionDeniedError("Only the post creator or an admin can confirm this request")
        require_transition(request_status(message), CONFIRMED)
        post_id = conversation.get('post_id')

        try:
            result = self._coordinator.resolve(post_id, conversation_id, message_id, confirmer)
        except ConflictError as e:
            logger.info(f"Confirm of {message_id} on post {post_id} lost to another request: {e.message}")
            self._reject_superseded(conversation_id, message_id, message.get('message_type'), confirmer)
            return Rejected(conversation_id=conversation_id, message_id=message_id,
                            reason=AUTO_REJECTION_REASON, superseded=True)

        return Confirmed(
            post_id=post_id,
            conversation_id=conversation_id,
            message_id=message_id,
            rejected_requests=result.rejected_message_ids,
            cleanup_misses=result.cleanup_misses,
        )

    def _reject_superseded(self, conversation_id, message_id, message_type, confirmer):
        flag, pointer = request_flag_fields(message_type)

        def apply(transaction):
            message_snapshot = transaction.get(message_path(conversation_id, message_id))
            conversation_snapshot = transaction.get(conversation_path(conversation_id))
            if not message_snapshot.exists or not is_active(request_status(message_snapshot.data)):
                return
            transaction.update(message_path(conversation_id, message_id), {
                'state.status': REJECTED,
                'state.responded_by': confirmer.uid,
                'state.responded_at': firestore.SERVER_TIMESTAMP,
                'state.rejection_reason': AUTO_REJECTION_REASON,
                'state.auto_rejected': True,
            })
            if conversation_snapshot.exists and conversation_snapshot.data.get(pointer) == message_id:
                transaction.update(conversation_path(conversation_id), {flag: False, pointer: None})

        try:
            self._store.run_transaction(apply)
        except NotFoundError:
            logger.info(f"Superseded request {message_id} was already removed")

    def _notify_requester(self, request, conversation, message_type, ntype, title, body, message_id):
        requester_id = request.get('requester_id')
        if not requester_id:
            return
        self._notifier.send_notification_to_users([requester_id], {
            'type': ntype,
            'title': title,
            'body': body,
            'data': {
                'post_id': conversation.get('post_id'),
                'conversation_id': conversation.get('id'),
                'message_id': message_id,
                'request_type': message_type,
            },
        })
