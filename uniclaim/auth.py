import hashlib
from datetime import timedelta
from functools import wraps

from flask import jsonify, session

from .models import DEFAULT_AVATAR_URL, ROLE_ADMIN, ROLE_USER, UNKNOWN_DISPLAY_NAME, ActingUser, normalize_profile


def configure_session(app):
    """Configure session settings"""
    app.permanent_session_lifetime = timedelta(minutes=30)  # Session expires after 30 minutes

    @app.before_request
    def before_request():
        session.permanent = True
        session.modified = True


def authenticate_user(store, user_id, password):
    """Authenticate a user with their ID and password"""
    # Validate inputs
    if not user_id or not password:
        return {"error": "User ID and password are required"}

    # Hash the password (SHA-256)
    hashed_password = hashlib.sha256(password.encode()).hexdigest()

    user = store.get(f"users/{user_id}")
    if not user.exists:
        return {"error": "User ID not found"}

    user_data = user.data
    if user_data.get('password') != hashed_password:
        return {"error": "Incorrect password"}

    # Check if account is active
    if 'status' in user_data and user_data['status'] != 'active':
        return {"error": "Account is not active"}

    return {'user_id': user_id, **user_data}


def login_user(user_data):
    """Store user info in session"""
    profile = normalize_profile(user_data)
    session['user_id'] = user_data['user_id']
    session['display_name'] = profile['display_name']
    session['avatar_url'] = profile['avatar_url']
    session['role'] = user_data.get('role') or ROLE_USER


def is_authenticated():
    """Check if user is authenticated"""
    return 'user_id' in session


def is_admin():
    """Check if authenticated user is an admin"""
    return is_authenticated() and session.get('role') == ROLE_ADMIN


def current_user():
    """The acting user of this request, or None when nobody is logged in"""
    if not is_authenticated():
        return None
    return ActingUser(
        uid=session['user_id'],
        display_name=session.get('display_name') or UNKNOWN_DISPLAY_NAME,
        avatar_url=session.get('avatar_url') or DEFAULT_AVATAR_URL,
        role=session.get('role') or ROLE_USER,
    )


def logout_user():
    """Clear user session"""
    session.clear()


def login_required(f):
    """Decorator to require an authenticated user for an API route"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not is_authenticated():
            return jsonify({'success': False, 'error': 'Unauthorized', 'code': 'UNAUTHORIZED'}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Decorator to require admin authentication for an API route"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not is_authenticated():
            return jsonify({'success': False, 'error': 'Unauthorized', 'code': 'UNAUTHORIZED'}), 401
        if not is_admin():
            return jsonify({'success': False, 'error': 'Admin access required', 'code': 'FORBIDDEN'}), 403
        return f(*args, **kwargs)
    return decorated_function
