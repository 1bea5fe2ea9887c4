from flask import Blueprint, jsonify, request

from ..auth import current_user, login_required
from ..engine import get_engine
from ..models import MediaFile

request_bp = Blueprint('requests', __name__, url_prefix='/api/conversations')


def _media_file(storage):
    """Read an uploaded werkzeug FileStorage into a MediaFile; None when no file was sent."""
    if storage is None or not storage.filename:
        return None
    return MediaFile(
        filename=storage.filename,
        content=storage.read(),
        content_type=storage.mimetype or 'image/jpeg',
    )


def _form_value(name):
    if request.form and name in request.form:
        return request.form.get(name)
    data = request.get_json(silent=True) or {}
    return data.get(name)


@request_bp.route('/<conversation_id>/requests', methods=['POST'])
@login_required
def submit_request(conversation_id):
    """
    Submit a claim or handover request.

    Multipart form: reason, id_photo (file), evidence_photos (one or more files)
    """
    outcome = get_engine().requests.submit_request(
        conversation_id,
        current_user(),
        request.form.get('reason'),
        _media_file(request.files.get('id_photo')),
        [_media_file(f) for f in request.files.getlist('evidence_photos')],
    )
    body, status = outcome.to_response()
    return jsonify(body), status


@request_bp.route('/<conversation_id>/requests/<message_id>', methods=['GET'])
@login_required
def get_request(conversation_id, message_id):
    engine = get_engine()
    engine.conversations.get_for_participant(conversation_id, current_user())
    message = engine.requests.get_request(conversation_id, message_id)
    return jsonify({'success': True, 'request': message}), 200


@request_bp.route('/<conversation_id>/requests/<message_id>/respond', methods=['POST'])
@login_required
def respond_to_request(conversation_id, message_id):
    """
    Accept or reject a request.

    Form or JSON: decision ('accept'|'reject'), rejection_reason;
    multipart file verification_photo when accepting.
    """
    outcome = get_engine().requests.respond(
        conversation_id,
        message_id,
        current_user(),
        _form_value('decision'),
        verification_photo=_media_file(request.files.get('verification_photo')),
        rejection_reason=_form_value('rejection_reason'),
    )
    body, status = outcome.to_response()
    return jsonify(body), status


@request_bp.route('/<conversation_id>/requests/<message_id>/confirm', methods=['POST'])
@login_required
def confirm_request(conversation_id, message_id):
    outcome = get_engine().requests.confirm(conversation_id, message_id, current_user())
    body, status = outcome.to_response()
    return jsonify(body), status
