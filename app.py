from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from datetime import datetime
import atexit
import logging
import os

from uniclaim import config
from uniclaim.auth import configure_session, authenticate_user, login_user, logout_user, current_user
from uniclaim.database import create_store
from uniclaim.engine import EXTENSION_KEY, build_engine
from uniclaim.errors import UniclaimError
from uniclaim.routes.admin_routes import admin_bp
from uniclaim.routes.conversation_routes import conversation_bp
from uniclaim.routes.post_routes import post_bp
from uniclaim.routes.request_routes import request_bp
from uniclaim.services.scheduler_service import UniclaimScheduler

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO))
logger = logging.getLogger(__name__)


def create_app(engine=None, start_scheduler=None):
    """
    Build the Flask application.

    Args:
        engine: prebuilt Engine (tests pass one around a MemoryStore)
        start_scheduler: run background jobs; defaults to ENABLE_SCHEDULER when the engine is built here
    """
    app = Flask(__name__)
    app.secret_key = config.SECRET_KEY or os.urandom(24)

    # Enable CORS for all routes
    CORS(app)

    # Configure session
    configure_session(app)

    owns_engine = engine is None
    if owns_engine:
        engine = build_engine(create_store())
        # Commit queued writes before the process exits
        atexit.register(engine.close)
    app.extensions[EXTENSION_KEY] = engine

    # Register blueprints
    app.register_blueprint(post_bp)
    app.register_blueprint(conversation_bp)
    app.register_blueprint(request_bp)
    app.register_blueprint(admin_bp)

    @app.errorhandler(UniclaimError)
    def handle_uniclaim_error(e):
        if e.status_code >= 500:
            logger.error(f"{e.code}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return jsonify({'success': False, 'error': e.description, 'code': e.name.upper().replace(' ', '_')}), e.code
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({'success': False, 'error': 'Internal server error', 'code': 'INTERNAL_ERROR'}), 500

    @app.route('/api/login', methods=['POST'])
    def login():
        data = request.get_json(silent=True) or request.form
        user_data = authenticate_user(engine.store, data.get('user_id', ''), data.get('password', ''))

        # Check for authentication errors
        if "error" in user_data:
            return jsonify({'success': False, 'error': user_data['error']}), 401

        # Store user info in session
        login_user(user_data)
        user = current_user()
        return jsonify({'success': True, 'user': {'uid': user.uid, 'role': user.role, **user.profile()}}), 200

    @app.route('/api/logout', methods=['POST'])
    def logout():
        logout_user()
        return jsonify({'success': True}), 200

    # Health check endpoint for network connectivity testing
    @app.route('/api/health', methods=['GET'])
    def health_check():
        return jsonify({
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "service": "uniclaim-api",
            "queued_writes": len(engine.store.write_queue),
        })

    if start_scheduler is None:
        start_scheduler = owns_engine and config.ENABLE_SCHEDULER
    if start_scheduler:
        scheduler = UniclaimScheduler(engine.posts, engine.integrity, engine.store)
        try:
            scheduler.start()
        except Exception as e:
            logger.warning(f"⚠️ Failed to start scheduler: {e}")
        app.extensions['uniclaim_scheduler'] = scheduler

    return app


if __name__ == '__main__':
    app = create_app()
    # Allow overriding host/port via environment for testing
    host = os.environ.get('HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', '5000'))
    app.run(debug=os.environ.get('FLASK_DEBUG', 'false').lower() in ('1', 'true'), host=host, port=port)
