"""
Notification Dispatcher: committed transition -> targeted real-time events.

Fan-out rules are fixed per (entity_type, action):

    defect.assign                 assignee + category_<group> room
    defect.resolve                reported_by (retest-required tag)
    defect.confirm / close        reported_by
    defect.reject_retest          assigned_to
    test_cycle.open               each assigned tester
    test_cycle.start/pause/resume each assigned tester + cycle_<id> room
    test_cycle.stop / cancel      each assigned tester + cycle_<id> room + Test Manager room
    test_plan.approve / reject    created_by + Test Manager room
    test_execution.record_result  cycle_<id> room
    test_scenario.*               owner (unless the actor) + Test Manager room

Delivery is at-most-once: a recipient with no live connection is dropped
(debug log) and nothing is retried. Emit failures are logged and never
raised to the caller, because the transition has already committed.

Usage:
    dispatcher = NotificationDispatcher(registry, emit=_emit_to_sid)
    sent = dispatcher.dispatch("defect", "assign", before, after, actor)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from qahub.core.exceptions import DispatchFailure
from qahub.models.auth import ROLE_TEST_MANAGER
from qahub.models.testing import CYCLE_COMPLETED
from qahub.services.session_registry import category_room, cycle_room

logger = logging.getLogger(__name__)

BROADCAST = "*"


@dataclass
class Notification:
    """One delivered event. ``target`` is ``user:<id>``, a room name, or ``*``."""
    type: str
    message: str
    target: str
    payload: dict
    timestamp: str
    connections: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "message": self.message,
            "target": self.target,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


def _user_target(user_id) -> str:
    return f"user:{user_id}"


class NotificationDispatcher:
    """
    Resolve recipients through a SessionRegistry and push events via ``emit``.

    Args:
        registry: SessionRegistry (or anything with resolve / resolve_room /
            all_connections).
        emit: ``emit(event, payload, connection)``; in the app this wraps
            ``socketio.emit(event, payload, to=sid)``.
        clock: Optional zero-arg callable returning an aware datetime.
    """

    def __init__(self, registry, emit: Callable, clock: Callable | None = None) -> None:
        self.registry = registry
        self.emit = emit
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._rules = {
            ("defect", "assign"): self._defect_assigned,
            ("defect", "resolve"): self._defect_resolved,
            ("defect", "confirm"): self._defect_closed,
            ("defect", "close"): self._defect_closed,
            ("defect", "reject_retest"): self._defect_reopened,
            ("test_cycle", "open"): self._cycle_opened,
            ("test_cycle", "start"): self._cycle_progress,
            ("test_cycle", "pause"): self._cycle_progress,
            ("test_cycle", "resume"): self._cycle_progress,
            ("test_cycle", "stop"): self._cycle_closed,
            ("test_cycle", "cancel"): self._cycle_closed,
            ("test_plan", "approve"): self._plan_reviewed,
            ("test_plan", "reject"): self._plan_reviewed,
            ("test_execution", "record_result"): self._execution_completed,
        }

    # ══════════════════════════════════════════════════════════════════════
    # Public API
    # ══════════════════════════════════════════════════════════════════════

    def dispatch(self, entity_type: str, action: str, before: dict, after: dict, actor,
                 derived_updates: dict | None = None) -> list[Notification]:
        """
        Fan out one committed transition.

        Returns the notifications that reached at least one live connection.
        """
        if entity_type == "test_scenario":
            rule = self._scenario_updated
        else:
            rule = self._rules.get((entity_type, action))
        if rule is None:
            return []

        base = {
            "entity_type": entity_type,
            "entity_id": after.get("id"),
            "status": after.get("status"),
            "previous_status": (before or {}).get("status"),
            "actor_id": getattr(actor, "id", None),
            "action": action,
        }
        plan = rule(action, before or {}, after, base, derived_updates or {})
        return self._deliver(plan, entity_type, after.get("id"), action)

    def alert(self, alert_type: str, message: str, severity: str = "info",
              roles: list[str] | None = None) -> list[Notification]:
        """Emit ``system-alert`` to the given role rooms, or to everyone."""
        data = {"alert_type": alert_type, "severity": severity}
        if roles:
            plan = [("system-alert", message, ("room", role), data) for role in roles]
        else:
            plan = [("system-alert", message, ("all", None), data)]
        return self._deliver(plan, "system", None, alert_type)

    # ══════════════════════════════════════════════════════════════════════
    # Delivery
    # ══════════════════════════════════════════════════════════════════════

    def _connections_for(self, kind: str, key) -> tuple[str, set]:
        if kind == "user":
            conn = self.registry.resolve(key) if key is not None else None
            return _user_target(key), ({conn} if conn is not None else set())
        if kind == "room":
            return key, self.registry.resolve_room(key)
        return BROADCAST, self.registry.all_connections()

    def _deliver(self, plan, entity_type, entity_id, action) -> list[Notification]:
        timestamp = self.clock().isoformat()
        sent: list[Notification] = []
        seen: set[tuple[str, str]] = set()

        for event, message, (kind, key), data in plan:
            target, connections = self._connections_for(kind, key)
            if not connections:
                logger.debug(
                    "Dropped %s for %s: no live connection", event, target,
                    extra={"event_type": event, "entity_type": entity_type,
                           "entity_id": entity_id, "action": action},
                )
                continue

            payload = {"type": event, "message": message, "data": data, "timestamp": timestamp}
            delivered = []
            for conn in sorted(connections, key=str):
                if (event, conn) in seen:
                    delivered.append(conn)
                    continue
                try:
                    self.emit(event, payload, conn)
                except Exception as exc:
                    failure = DispatchFailure(event, target, exc)
                    logger.warning("%s; main flow unaffected", failure, exc_info=True,
                                   extra={"event_type": event, "sid": conn})
                    continue
                seen.add((event, conn))
                delivered.append(conn)

            if delivered:
                sent.append(Notification(
                    type=event, message=message, target=target,
                    payload=payload, timestamp=timestamp, connections=delivered,
                ))
        return sent

    # ══════════════════════════════════════════════════════════════════════
    # Fan-out rules -> [(event, message, (kind, key), data), ...]
    # ══════════════════════════════════════════════════════════════════════

    # ── Defect ───────────────────────────────────────────────────────────

    def _defect_assigned(self, action, before, after, base, derived):
        group = after.get("assigned_group") or after.get("category")
        data = {
            **base,
            "defect_code": after.get("defect_code"),
            "title": after.get("title"),
            "severity": after.get("severity"),
            "assigned_to": after.get("assigned_to"),
            "assigned_group": group,
            "status_path": derived.get("status_path"),
        }
        plan = [(
            "defect-assigned",
            "A new defect has been assigned to you for investigation",
            ("user", after.get("assigned_to")),
            data,
        )]
        if group:
            plan.append((
                "defect-assigned-to-category",
                f"A new {group} defect has been assigned",
                ("room", category_room(group)),
                data,
            ))
        return plan

    def _defect_resolved(self, action, before, after, base, derived):
        data = {**base, "defect_code": after.get("defect_code"),
                "retest_required": bool(after.get("retest_required"))}
        if after.get("retest_required"):
            return [(
                "defect-retest-required",
                "A defect has been resolved and requires retesting",
                ("user", after.get("reported_by")),
                data,
            )]
        return [(
            "defect-resolved",
            "A defect you reported has been resolved",
            ("user", after.get("reported_by")),
            data,
        )]

    def _defect_closed(self, action, before, after, base, derived):
        data = {**base, "defect_code": after.get("defect_code"),
                "retest_result": after.get("retest_result")}
        return [(
            "defect-confirmed-closed",
            "A defect you reported has been confirmed closed",
            ("user", after.get("reported_by")),
            data,
        )]

    def _defect_reopened(self, action, before, after, base, derived):
        data = {**base, "defect_code": after.get("defect_code"),
                "retest_result": after.get("retest_result"),
                "reopen_count": after.get("reopen_count")}
        return [(
            "defect-reopened",
            "A defect assigned to you failed retest and has been reopened",
            ("user", after.get("assigned_to")),
            data,
        )]

    # ── Test cycle ───────────────────────────────────────────────────────

    def _cycle_data(self, base, after):
        return {**base, "cycle_name": after.get("cycle_name"),
                "completion_percentage": after.get("completion_percentage")}

    def _cycle_opened(self, action, before, after, base, derived):
        data = self._cycle_data(base, after)
        return [
            ("test-cycle-opened", "A test cycle you are assigned to is open", ("user", uid), data)
            for uid in after.get("assigned_testers") or []
        ]

    def _cycle_progress(self, action, before, after, base, derived):
        event = {
            "start": "test-cycle-started",
            "pause": "test-cycle-paused",
            "resume": "test-cycle-resumed",
        }[action]
        message = {
            "start": "Test cycle has started",
            "pause": "Test cycle has been paused",
            "resume": "Test cycle has resumed",
        }[action]
        data = self._cycle_data(base, after)
        plan = [(event, message, ("user", uid), data) for uid in after.get("assigned_testers") or []]
        plan.append((event, message, ("room", cycle_room(after.get("id"))), data))
        return plan

    def _cycle_closed(self, action, before, after, base, derived):
        completed = after.get("status") == CYCLE_COMPLETED
        event = "test-cycle-completed" if completed else "test-cycle-cancelled"
        message = "Test cycle has been completed" if completed else "Test cycle has been cancelled"
        data = {**self._cycle_data(base, after), "outcome": after.get("status")}
        plan = [(event, message, ("user", uid), data) for uid in after.get("assigned_testers") or []]
        plan.append((event, message, ("room", cycle_room(after.get("id"))), data))
        plan.append((
            "test-cycle-completed-notification",
            f"A test cycle has been {'completed' if completed else 'cancelled'}",
            ("room", ROLE_TEST_MANAGER),
            data,
        ))
        return plan

    # ── Test plan ────────────────────────────────────────────────────────

    def _plan_reviewed(self, action, before, after, base, derived):
        approved = action == "approve"
        verb = "approved" if approved else "rejected"
        data = {**base, "name": after.get("name"), "reviewer_id": base["actor_id"]}
        if not approved:
            data["reason"] = after.get("rejection_reason")
        return [
            (f"test-plan-{verb}", f"Your test plan has been {verb}",
             ("user", after.get("created_by")), data),
            (f"test-plan-{verb}-notification", f"A test plan has been {verb}",
             ("room", ROLE_TEST_MANAGER), data),
        ]

    # ── Test execution ───────────────────────────────────────────────────

    def _execution_completed(self, action, before, after, base, derived):
        cycle = derived.get("test_cycle") or {}
        data = {
            **base,
            "test_cycle_id": after.get("test_cycle_id"),
            "test_scenario_id": after.get("test_scenario_id"),
            "tester_id": after.get("assigned_tester"),
            "completion_percentage": cycle.get("completion_percentage"),
        }
        return [(
            "test-execution-completed",
            f"Test execution completed with status: {after.get('status')}",
            ("room", cycle_room(after.get("test_cycle_id"))),
            data,
        )]

    # ── Test scenario ────────────────────────────────────────────────────

    def _scenario_updated(self, action, before, after, base, derived):
        data = {**base, "scenario_code": after.get("scenario_code"),
                "version": after.get("version")}
        plan = []
        owner = after.get("owner_id")
        if owner is not None and owner != base["actor_id"]:
            plan.append((
                "scenario-updated", "A test scenario you own has been updated",
                ("user", owner), data,
            ))
        plan.append((
            "scenario-updated-notification", "A test scenario has been updated",
            ("room", ROLE_TEST_MANAGER), data,
        ))
        return plan
