"""
Session Registry: who is connected, and which rooms each connection is in.

One instance per application (``app.extensions["session_registry"]``); it is
never a module-level singleton, so tests can build a fresh registry without
a network layer.

Invariants:
  - a user has at most one tracked connection; a newer connection evicts the
    older mapping together with its room memberships
  - unregister removes the mapping and every membership of that connection
  - a connection sits only in the role and department rooms of its latest
    registration
  - empty rooms are dropped

Connections are opaque hashables (Socket.IO session ids in production).
"""

import logging
import threading

logger = logging.getLogger(__name__)


def department_room(department: str) -> str:
    return f"dept_{department}"


def cycle_room(cycle_id) -> str:
    return f"cycle_{cycle_id}"


def category_room(name: str) -> str:
    return f"category_{name}"


class SessionRegistry:
    """Thread-safe map of users, connections and rooms."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._user_conn: dict[int, str] = {}
        self._conn_user: dict[str, int] = {}
        self._user_role: dict[int, str | None] = {}
        self._rooms: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}
        self._auto_rooms: dict[str, set[str]] = {}

    # ── Connection lifecycle ─────────────────────────────────────────────

    def register(self, user_id: int, connection, role: str | None = None,
                 department: str | None = None):
        """
        Track ``connection`` as the live connection of ``user_id``.

        Auto-joins the role room (named after the role) and, when given,
        ``dept_<department>``. Re-registering a connection moves it out of
        role and department rooms it no longer qualifies for.

        Returns:
            The evicted previous connection of this user, or None.
        """
        with self._lock:
            evicted = None
            previous = self._user_conn.get(user_id)
            if previous is not None and previous != connection:
                self._drop_connection(previous)
                evicted = previous
                logger.info(
                    "User %s reconnected; evicted connection %s", user_id, previous,
                    extra={"sid": previous},
                )

            other_user = self._conn_user.get(connection)
            if other_user is not None and other_user != user_id:
                self._drop_connection(connection)

            self._user_conn[user_id] = connection
            self._conn_user[connection] = user_id
            self._user_role[user_id] = role
            self._memberships.setdefault(connection, set())

            auto = set()
            if role:
                auto.add(role)
            if department:
                auto.add(department_room(department))
            for room in self._auto_rooms.get(connection, set()) - auto:
                self._leave(connection, room)
            for room in auto:
                self._join(connection, room)
            self._auto_rooms[connection] = auto

            logger.debug("Registered user %s on %s (role=%s)", user_id, connection, role,
                         extra={"sid": connection})
            return evicted

    def unregister(self, connection):
        """Forget ``connection``. Returns the user id it belonged to, or None."""
        with self._lock:
            user_id = self._drop_connection(connection)
            if user_id is not None:
                logger.debug("Unregistered user %s from %s", user_id, connection,
                             extra={"sid": connection})
            return user_id

    # ── Rooms ────────────────────────────────────────────────────────────

    def join_room(self, connection, room: str) -> bool:
        """Add a registered connection to ``room``. False if the connection is unknown."""
        if not room:
            return False
        with self._lock:
            if connection not in self._conn_user:
                return False
            self._join(connection, room)
            return True

    def leave_room(self, connection, room: str) -> bool:
        with self._lock:
            rooms = self._memberships.get(connection)
            if not rooms or room not in rooms:
                return False
            self._leave(connection, room)
            return True

    # ── Lookups ──────────────────────────────────────────────────────────

    def resolve(self, user_id):
        with self._lock:
            return self._user_conn.get(user_id)

    def resolve_room(self, room: str) -> set:
        with self._lock:
            return set(self._rooms.get(room, ()))

    def user_for(self, connection):
        with self._lock:
            return self._conn_user.get(connection)

    def is_online(self, user_id) -> bool:
        with self._lock:
            return user_id in self._user_conn

    def online_users(self) -> list[int]:
        with self._lock:
            return sorted(self._user_conn)

    def online_users_by_role(self, role: str) -> list[int]:
        with self._lock:
            return sorted(u for u, r in self._user_role.items() if r == role and u in self._user_conn)

    def rooms_for(self, connection) -> set:
        with self._lock:
            return set(self._memberships.get(connection, ()))

    def all_connections(self) -> set:
        with self._lock:
            return set(self._conn_user)

    # ── Internals (caller holds the lock) ────────────────────────────────

    def _join(self, connection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(connection)
        self._memberships.setdefault(connection, set()).add(room)

    def _leave(self, connection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection)
            if not members:
                del self._rooms[room]
        rooms = self._memberships.get(connection)
        if rooms is not None:
            rooms.discard(room)

    def _drop_connection(self, connection):
        for room in list(self._memberships.get(connection, ())):
            self._leave(connection, room)
        self._memberships.pop(connection, None)
        self._auto_rooms.pop(connection, None)
        user_id = self._conn_user.pop(connection, None)
        if user_id is not None and self._user_conn.get(user_id) == connection:
            del self._user_conn[user_id]
            self._user_role.pop(user_id, None)
        return user_id
