from flask import Blueprint, jsonify, request, Response, stream_with_context
import json
import logging
import queue
import threading

from ..auth import current_user, login_required
from ..engine import get_engine
from ..errors import UniclaimError
from ..services.conversation_viewer import ConversationViewer

logger = logging.getLogger(__name__)

conversation_bp = Blueprint('conversations', __name__, url_prefix='/api')


def _sse_message(event: str, payload: dict) -> str:
    """Format payload as an SSE event; datetimes are rendered as ISO strings."""
    return f"event: {event}\ndata: {json.dumps(payload, default=lambda v: v.isoformat() if hasattr(v, 'isoformat') else str(v))}\n\n"


@conversation_bp.route('/posts/<post_id>/conversations', methods=['POST'])
@login_required
def open_conversation(post_id):
    """Get or create the conversation between the caller and the post creator."""
    conversation = get_engine().conversations.get_or_create(post_id, current_user())
    return jsonify({'success': True, 'conversation': conversation}), 200


@conversation_bp.route('/conversations', methods=['GET'])
@login_required
def list_conversations():
    conversations = get_engine().conversations.list_for_user(current_user().uid)
    return jsonify({'success': True, 'conversations': conversations}), 200


@conversation_bp.route('/conversations/<conversation_id>', methods=['GET'])
@login_required
def get_conversation(conversation_id):
    registry = get_engine().conversations
    conversation = registry.get_for_participant(conversation_id, current_user())
    messages = registry.get_messages(conversation_id)
    return jsonify({'success': True, 'conversation': conversation, 'messages': messages}), 200


@conversation_bp.route('/conversations/<conversation_id>/messages', methods=['POST'])
@login_required
def send_message(conversation_id):
    data = request.get_json(silent=True) or {}
    message_id = get_engine().conversations.send_message(conversation_id, current_user(), data.get('text'))
    return jsonify({'success': True, 'message_id': message_id}), 201


@conversation_bp.route('/conversations/<conversation_id>/read', methods=['POST'])
@login_required
def mark_read(conversation_id):
    count = get_engine().conversations.mark_as_read(conversation_id, current_user())
    return jsonify({'success': True, 'marked': count}), 200


@conversation_bp.route('/conversations/<conversation_id>/stream')
@login_required
def stream_conversation(conversation_id):
    """Real-time stream of one conversation.

    Emits 'conversation' and 'messages' events while the conversation exists
    and a final 'exit' event once it is deleted, then ends the stream.
    """
    engine = get_engine()
    user = current_user()

    def gen():
        q = queue.Queue(maxsize=100)
        stop_event = threading.Event()

        def push(event, payload):
            try:
                q.put_nowait(_sse_message(event, payload))
            except queue.Full:
                logger.warning(f"Dropping {event} event for {conversation_id}: stream queue full")

        def on_exit(reason):
            push('exit', {'conversation_id': conversation_id, 'reason': reason})
            stop_event.set()

        viewer = ConversationViewer(
            engine.store, engine.conversations, conversation_id, user,
            on_messages=lambda messages: push('messages', {'messages': messages}),
            on_conversation=lambda conversation: push('conversation', {'conversation': conversation}),
            on_exit=on_exit,
        )
        try:
            viewer.open()
        except UniclaimError as e:
            yield _sse_message('error', e.to_dict())
            return

        def keepalive():
            while not stop_event.is_set():
                try:
                    q.put_nowait(": keepalive\n\n")
                except queue.Full:
                    pass
                stop_event.wait(30)

        ka_thread = threading.Thread(target=keepalive, daemon=True)
        ka_thread.start()

        try:
            while True:
                try:
                    yield q.get(timeout=1.0)
                except queue.Empty:
                    if stop_event.is_set():
                        break
        finally:
            stop_event.set()
            viewer.close()

    return Response(stream_with_context(gen()), mimetype='text/event-stream')
