from flask import Blueprint, jsonify

from ..auth import admin_required, current_user
from ..engine import get_engine

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


@admin_bp.route('/posts/<post_id>/activate', methods=['POST'])
@admin_required
def activate_post(post_id):
    """Return an unclaimed post to circulation with a fresh expiry date."""
    post = get_engine().posts.activate(post_id, current_user())
    return jsonify({'success': True, 'post': post}), 200


@admin_bp.route('/posts/<post_id>/unclaim', methods=['POST'])
@admin_required
def unclaim_post(post_id):
    post = get_engine().posts.move_to_unclaimed(post_id, actor_id=current_user().uid)
    return jsonify({'success': True, 'post': post}), 200


@admin_bp.route('/posts/expire', methods=['POST'])
@admin_required
def expire_posts():
    """Run the expiry sweep now instead of waiting for the scheduler."""
    result = get_engine().posts.expire_inactive_posts()
    return jsonify(result), 200 if result.get('success') else 207


@admin_bp.route('/integrity/ghost-conversations', methods=['GET'])
@admin_required
def list_ghost_conversations():
    ghosts = get_engine().integrity.find_ghost_conversations()
    return jsonify({'success': True, 'ghosts': ghosts, 'count': len(ghosts)}), 200


@admin_bp.route('/integrity/ghost-conversations', methods=['POST'])
@admin_required
def cleanup_ghost_conversations():
    result = get_engine().integrity.cleanup_ghost_conversations()
    return jsonify(result), 200 if result.get('success') else 207
