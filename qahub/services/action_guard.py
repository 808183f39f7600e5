"""
Action Guard: role + ownership authorization for lifecycle transitions.

Evaluation is deterministic and deny-by-default:
  0. inactive (or missing) actors are denied
  1. Test Manager is allowed every transition on every entity
  2. other roles must appear in the per-(entity_type, action) whitelist
  3. where the whitelist names ownership fields, the actor must hold one of them

A deny short-circuits before the state machine runs.
"""

import logging
from dataclasses import dataclass

from qahub.core.exceptions import AuthorizationError
from qahub.models.auth import ROLE_TEST_MANAGER, ROLE_TESTER, ROLE_TROUBLESHOOTER

logger = logging.getLogger(__name__)


_TESTER_OWNS_SCENARIO = {"roles": {ROLE_TESTER}, "owner_fields": ("owner_id",)}
_TESTER_OWNS_PLAN = {"roles": {ROLE_TESTER}, "owner_fields": ("created_by",)}
_TESTER_RUNS_EXECUTION = {"roles": {ROLE_TESTER}, "owner_fields": ("assigned_tester",)}
_ASSIGNEE_WORKS_DEFECT = {"roles": {ROLE_TROUBLESHOOTER}, "owner_fields": ("assigned_to",)}
_REPORTER_RETESTS_DEFECT = {"roles": {ROLE_TESTER}, "owner_fields": ("reported_by",)}

# (entity_type, action) -> whitelist for non-manager roles.
# Anything missing here is Test Manager only.
ACTION_RULES = {
    ("test_scenario", "submit_for_review"): _TESTER_OWNS_SCENARIO,
    ("test_scenario", "edit"): _TESTER_OWNS_SCENARIO,
    ("test_plan", "submit"): _TESTER_OWNS_PLAN,
    ("test_plan", "edit"): _TESTER_OWNS_PLAN,
    ("test_execution", "begin"): _TESTER_RUNS_EXECUTION,
    ("test_execution", "record_result"): _TESTER_RUNS_EXECUTION,
    ("test_execution", "retest"): _TESTER_RUNS_EXECUTION,
    ("defect", "start_progress"): _ASSIGNEE_WORKS_DEFECT,
    ("defect", "resolve"): _ASSIGNEE_WORKS_DEFECT,
    ("defect", "request_confirmation"): {
        "roles": {ROLE_TROUBLESHOOTER, ROLE_TESTER},
        "owner_fields": ("assigned_to", "reported_by"),
    },
    ("defect", "confirm"): _REPORTER_RETESTS_DEFECT,
    ("defect", "reject_retest"): _REPORTER_RETESTS_DEFECT,
}


@dataclass(frozen=True)
class Decision:
    """Allow / Deny(reason). Truthy when allowed."""
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason}


ALLOW = Decision(True)


def _field(entity, name):
    if isinstance(entity, dict):
        return entity.get(name)
    return getattr(entity, name, None)


def _holds(actor_id, value) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, set)):
        return actor_id in value
    return value == actor_id


def authorize(entity_type: str, entity, action: str, actor) -> Decision:
    """Decide whether ``actor`` may perform ``action`` on ``entity``."""
    if actor is None or not getattr(actor, "is_active", False):
        return Decision(False, "actor is not active")

    if actor.is_test_manager:
        return ALLOW

    rule = ACTION_RULES.get((entity_type, action))
    if rule is None:
        return Decision(False, f"'{entity_type}.{action}' is restricted to {ROLE_TEST_MANAGER}")

    if actor.role not in rule["roles"]:
        return Decision(False, f"role '{actor.role}' may not perform '{entity_type}.{action}'")

    owner_fields = rule.get("owner_fields") or ()
    if owner_fields and not any(_holds(actor.id, _field(entity, f)) for f in owner_fields):
        return Decision(False, f"actor is not the {' or '.join(owner_fields)} of this {entity_type}")

    return ALLOW


def check_action(entity_type: str, entity, action: str, actor) -> None:
    """Like authorize() but raises AuthorizationError on deny."""
    decision = authorize(entity_type, entity, action, actor)
    if not decision:
        actor_id = getattr(actor, "id", None)
        logger.info(
            "Denied %s.%s for user %s: %s", entity_type, action, actor_id, decision.reason,
            extra={"entity_type": entity_type, "entity_id": _field(entity, "id"), "action": action},
        )
        raise AuthorizationError(actor_id, entity_type, action, decision.reason)


def allowed_actions(entity_type: str, entity, actor, actions) -> list[str]:
    """Filter ``actions`` down to those the guard allows for ``actor``."""
    return [a for a in actions if authorize(entity_type, entity, a, actor)]
