"""
QA Lifecycle Hub
Flask Application Factory.

Usage:
    from qahub import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from flask_migrate import Migrate

from qahub.config import config
from qahub.middleware.jwt_auth import init_jwt_middleware
from qahub.middleware.logging_config import configure_logging
from qahub.models import db
from qahub.realtime.socket_events import init_realtime, socketio  # noqa: F401
from qahub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Models (register tables on db.metadata) ─────────────────────────
    from qahub.models import auth as _auth_models  # noqa: F401
    from qahub.models import testing as _testing_models  # noqa: F401

    # ── JWT auth middleware ──────────────────────────────────────────────
    init_jwt_middleware(app)

    # ── Real-time channel: Socket.IO + session registry + dispatcher ────
    init_realtime(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from qahub.blueprints.lifecycle_bp import lifecycle_bp

    app.register_blueprint(lifecycle_bp)

    @app.route("/api/v1/health", methods=["GET"])
    def health():
        """Liveness check: 200 while the process is up."""
        registry = app.extensions["session_registry"]
        return jsonify({
            "status": "ok",
            "online_users": len(registry.online_users()),
        }), 200

    @app.errorhandler(404)
    def _not_found(error):
        return jsonify({"error": "Not found", "code": "ERR_NOT_FOUND"}), 404

    @app.errorhandler(405)
    def _method_not_allowed(error):
        return jsonify({"error": "Method not allowed", "code": "ERR_METHOD_NOT_ALLOWED"}), 405

    @app.errorhandler(500)
    def _server_error(error):
        logger.error("500 error: %s", error, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    if not app.config.get("TESTING"):
        logger.info("QA Lifecycle Hub started (config=%s)", config_name)

    return app
