"""
Real-time channel: Socket.IO handlers backed by the Session Registry.

Handshake: ``auth={"token": <access jwt>}`` or an ``Authorization: Bearer``
header. Unknown, expired or inactive identities are refused.

Client → server:
    join-room   "<room>" | {"room": "<room>"}   ad-hoc rooms only (cycle_*, category_*)
    leave-room  "<room>" | {"room": "<room>"}

Server → client: lifecycle events named by the Notification Dispatcher,
each payload ``{type, message, data, timestamp}``.
"""

import logging

from flask import current_app, request
from flask_socketio import ConnectionRefusedError, SocketIO

from qahub.middleware.jwt_auth import bearer_token
from qahub.models import db
from qahub.models.auth import User
from qahub.services.jwt_service import user_id_from_token
from qahub.services.notification_dispatcher import NotificationDispatcher
from qahub.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

socketio = SocketIO()

# Role and department rooms are assigned at connect; clients cannot pick them
CLIENT_ROOM_PREFIXES = ("cycle_", "category_")


def _emit_to_connection(event: str, payload: dict, sid) -> None:
    socketio.emit(event, payload, to=sid)


def init_realtime(app) -> None:
    """Bind Socket.IO and build this app's registry + dispatcher."""
    origins = app.config.get("CORS_ORIGINS", "*")
    socketio.init_app(
        app,
        async_mode=app.config.get("SOCKETIO_ASYNC_MODE", "threading"),
        cors_allowed_origins="*" if origins in ("*", "") else [o.strip() for o in origins.split(",") if o.strip()],
    )
    registry = SessionRegistry()
    app.extensions["session_registry"] = registry
    app.extensions["notification_dispatcher"] = NotificationDispatcher(registry, emit=_emit_to_connection)


def _registry() -> SessionRegistry:
    return current_app.extensions["session_registry"]


def _room_from(data) -> str | None:
    if isinstance(data, dict):
        data = data.get("room")
    if isinstance(data, str) and data.strip():
        return data.strip()
    return None


@socketio.on("connect")
def handle_connect(auth=None):
    token = auth.get("token") if isinstance(auth, dict) else None
    token = token or bearer_token(request.headers.get("Authorization"))
    user_id = user_id_from_token(token) if token else None
    if user_id is None:
        logger.info("Refused socket connection: missing or invalid token", extra={"sid": request.sid})
        raise ConnectionRefusedError("authentication required")

    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        logger.info("Refused socket connection for user %s: unknown or inactive", user_id,
                    extra={"sid": request.sid})
        raise ConnectionRefusedError("user is unknown or inactive")

    _registry().register(user.id, request.sid, role=user.role, department=user.department)
    logger.info("User %s connected (%s)", user.id, user.role,
                extra={"sid": request.sid, "user_id": user.id})


@socketio.on("disconnect")
def handle_disconnect(*args):
    user_id = _registry().unregister(request.sid)
    if user_id is not None:
        logger.info("User %s disconnected", user_id, extra={"sid": request.sid, "user_id": user_id})


@socketio.on("join-room")
def handle_join_room(data):
    room = _room_from(data)
    if room is None or not room.startswith(CLIENT_ROOM_PREFIXES):
        return {"ok": False, "error": "room must start with one of: " + ", ".join(CLIENT_ROOM_PREFIXES)}
    if not _registry().join_room(request.sid, room):
        return {"ok": False, "error": "connection is not registered"}
    logger.debug("Joined %s", room, extra={"sid": request.sid})
    return {"ok": True, "room": room}


@socketio.on("leave-room")
def handle_leave_room(data):
    room = _room_from(data)
    if room is None:
        return {"ok": False, "error": "room is required"}
    left = _registry().leave_room(request.sid, room)
    return {"ok": left, "room": room}


@socketio.on_error_default
def handle_socket_error(exc):
    logger.error("Socket handler failed: %s", exc, exc_info=True, extra={"sid": request.sid})
