"""
JWT Auth Middleware: parses the Bearer token from Authorization, sets g.jwt_user_id.

The hook never rejects a request by itself; lifecycle views call
``current_actor()``, which raises AuthenticationError when no usable
identity is present.
"""

import jwt as pyjwt
from flask import g, request

from qahub.core.exceptions import AuthenticationError
from qahub.models import db
from qahub.models.auth import User
from qahub.services.jwt_service import decode_access_token


# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def bearer_token(header: str | None) -> str | None:
    header = header or ""
    if not header.startswith("Bearer "):
        return None
    return header[7:].strip() or None


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_role = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        token = bearer_token(request.headers.get("Authorization"))
        if not token:
            return

        try:
            payload = decode_access_token(token)
            g.jwt_user_id = int(payload.get("sub"))
            g.jwt_role = payload.get("role")
        except (pyjwt.InvalidTokenError, TypeError, ValueError):
            # Expired or tampered: leave the request anonymous
            pass


def current_actor() -> User:
    """Return the active User behind this request or raise AuthenticationError."""
    user_id = getattr(g, "jwt_user_id", None)
    if user_id is None:
        raise AuthenticationError()
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise AuthenticationError("User is unknown or inactive")
    return user
