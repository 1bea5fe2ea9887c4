from flask import Blueprint, jsonify, request

from ..auth import current_user, login_required
from ..engine import get_engine
from ..errors import NotFoundError, PermissionDeniedError
from ..services.post_service import is_publicly_listed

post_bp = Blueprint('posts', __name__, url_prefix='/api/posts')


@post_bp.route('', methods=['POST'])
@login_required
def create_post():
    """Create a lost or found post. Found posts carry the custody choice."""
    data = request.get_json(silent=True) or {}
    post = get_engine().posts.create_post(current_user(), data)
    return jsonify({'success': True, 'post': post}), 201


@post_bp.route('', methods=['GET'])
def list_posts():
    post_type = request.args.get('type')
    posts = get_engine().posts.list_public_posts(post_type=post_type)
    return jsonify({'success': True, 'posts': posts, 'count': len(posts)}), 200


@post_bp.route('/<post_id>', methods=['GET'])
def get_post(post_id):
    post = get_engine().posts.get_post(post_id)
    user = current_user()
    if not is_publicly_listed(post):
        # Hidden posts are only visible to their creator and admins
        if user is None or (user.uid != post.get('creator_id') and not user.is_elevated):
            raise NotFoundError(f"Post {post_id} not found", code='POST_NOT_FOUND')
    return jsonify({'success': True, 'post': post}), 200


@post_bp.route('/<post_id>', methods=['DELETE'])
@login_required
def delete_post(post_id):
    get_engine().posts.delete_post(post_id, current_user())
    return jsonify({'success': True, 'post_id': post_id}), 200


@post_bp.route('/<post_id>/turnover', methods=['POST'])
@login_required
def declare_turnover(post_id):
    """
    Record the finder's custody decision.

    Body: {'found_action': 'keep'|'turnover_osa'|'turnover_campus_security',
           'handed_over': bool, 'reason': str}
    """
    data = request.get_json(silent=True) or {}
    post = get_engine().turnover.declare(
        post_id,
        current_user(),
        data.get('found_action'),
        handed_over=bool(data.get('handed_over')),
        reason=data.get('reason'),
    )
    return jsonify({'success': True, 'post': post}), 200


@post_bp.route('/<post_id>/turnover/confirm', methods=['POST'])
@login_required
def confirm_turnover(post_id):
    """Custodian confirmation. Body: {'status': 'confirmed'|'collected'|'not_received', 'notes': str}"""
    user = current_user()
    if not user.is_elevated:
        raise PermissionDeniedError("Only custodian staff can confirm turnovers")
    data = request.get_json(silent=True) or {}
    post = get_engine().turnover.confirm(post_id, user, data.get('status'), notes=data.get('notes'))
    return jsonify({'success': True, 'post': post}), 200
