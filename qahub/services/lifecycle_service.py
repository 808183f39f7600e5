"""
Lifecycle Service: guard → state machine → commit → dispatch.

Every lifecycle write goes through here:

  1. load the entity (NotFoundError)
  2. reject unknown action names (ValidationError)
  3. Action Guard (AuthorizationError)
  4. optimistic-lock check against ``expected_version`` (ConflictError)
  5. state machine: preconditions, then mutation
  6. commit; a lost race on ``lock_version`` becomes ConflictError
  7. notification dispatch; failures are logged and swallowed

Nothing is dispatched unless step 6 succeeded.

Usage:
    from qahub.services.lifecycle_service import transition

    out = transition("defect", 7, "resolve", actor,
                     resolution_notes="Fixed mapping", retest_required=True)
    out["new_status"]  # "Resolved"
"""

import logging

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from qahub.core.exceptions import ConflictError, NotFoundError, ValidationError
from qahub.models import db
from qahub.models.auth import ROLE_TESTER, ROLE_TROUBLESHOOTER, User
from qahub.models.testing import (
    CYCLE_FROZEN_STATUSES,
    SCENARIO_ACTIVE,
    SCENARIO_END_DATED,
    SCENARIO_UNDER_REVIEW,
    Defect,
    TestCycle,
    TestExecution,
    TestPlan,
    TestScenario,
)
from qahub.services import action_guard
from qahub.services.state_machine import (
    TRANSITIONS,
    apply_cycle_testers,
    apply_plan_edit,
    apply_scenario_edit,
    apply_transition,
    available_transitions,
    parse_user_id,
    parse_user_ids,
    validate_transition,
)

logger = logging.getLogger(__name__)


MODELS = {
    "test_scenario": TestScenario,
    "test_plan": TestPlan,
    "test_cycle": TestCycle,
    "test_execution": TestExecution,
    "defect": Defect,
}

# PUT /test-scenarios/<id> {"status": ...} → transition name
SCENARIO_STATUS_ACTIONS = {
    SCENARIO_UNDER_REVIEW: "submit_for_review",
    SCENARIO_ACTIVE: "approve",
    SCENARIO_END_DATED: "end_date",
}


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

def _model_for(entity_type: str):
    model = MODELS.get(entity_type)
    if model is None:
        raise ValidationError(f"Unknown entity type: {entity_type}", details={"entity_type": entity_type})
    return model


def get_entity(entity_type: str, entity_id: int):
    model = _model_for(entity_type)
    entity = db.session.get(model, entity_id)
    if entity is None:
        raise NotFoundError(resource=model.__name__, resource_id=entity_id)
    return entity


def _check_version(entity, expected_version) -> None:
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer",
                              details={"expected_version": expected_version})
    if expected != entity.lock_version:
        raise ConflictError(type(entity).__name__, "lock_version", expected, entity.lock_version)


def _require_user(user_id: int, role: str, field: str) -> User:
    """Load an active user holding ``role``, or raise ValidationError on ``field``."""
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        raise ValidationError(f"{field}: no active user with id {user_id}",
                              details={field: "unknown_user", "user_id": user_id})
    if user.role != role:
        raise ValidationError(f"{field}: user {user_id} is not a {role}",
                              details={field: "role", "user_id": user_id, "expected_role": role})
    return user


def _commit(entity) -> None:
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.info("Lost update on %s id=%s", type(entity).__name__, entity.id)
        raise ConflictError(type(entity).__name__, "lock_version", entity.lock_version)


def _notify(entity_type, action, before, after, actor, derived) -> list:
    dispatcher = current_app.extensions.get("notification_dispatcher")
    if dispatcher is None:
        return []
    try:
        return dispatcher.dispatch(entity_type, action, before, after, actor, derived_updates=derived)
    except Exception:
        logger.warning(
            "Notification dispatch failed for %s.%s; main flow unaffected", entity_type, action,
            exc_info=True,
            extra={"entity_type": entity_type, "entity_id": after.get("id"), "action": action},
        )
        return []


def _finish(result, before: dict, actor) -> dict:
    """Commit, dispatch and shape the response for a TransitionResult."""
    if result.created:
        db.session.add(result.entity)
    _commit(result.entity)

    after = result.entity.to_dict()
    sent = _notify(result.entity_type, result.action, before, after, actor, result.derived_updates)

    return {
        "entity_type": result.entity_type,
        "action": result.action,
        "previous_status": result.previous_status,
        "new_status": result.new_status,
        "entity": after,
        "derived_updates": result.derived_updates,
        "created": result.created,
        "available_transitions": available_transitions(result.entity_type, result.entity),
        "notified": [n.target for n in sent],
    }


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

def transition(entity_type: str, entity_id: int, action: str, actor, *,
               expected_version=None, **params) -> dict:
    """
    Execute one lifecycle transition end to end.

    Returns:
        {"entity_type", "action", "previous_status", "new_status", "entity",
         "derived_updates", "created", "available_transitions", "notified"}

    Raises:
        NotFoundError, ValidationError, AuthorizationError,
        InvalidTransitionError, ConflictError
    """
    entity = get_entity(entity_type, entity_id)

    if action not in TRANSITIONS[entity_type]:
        raise ValidationError(
            f"Unknown transition '{action}' for {entity_type}",
            details={"action": action, "allowed": list(TRANSITIONS[entity_type])},
        )

    action_guard.check_action(entity_type, entity, action, actor)
    _check_version(entity, expected_version)

    if (entity_type == "defect" and action == "assign"
            and params.get("assigned_to") not in (None, "")
            and validate_transition(entity_type, entity, action)["valid"]):
        _require_user(parse_user_id(params["assigned_to"], "assigned_to"), ROLE_TROUBLESHOOTER, "assigned_to")

    before = entity.to_dict()

    cycle = None
    attempts = None
    if entity_type == "test_execution":
        cycle = db.session.get(TestCycle, entity.test_cycle_id)
        attempts = TestExecution.query.filter_by(test_cycle_id=entity.test_cycle_id).all()

    result = apply_transition(
        entity_type, entity, action, actor,
        auto_start_on_assign=current_app.config.get("DEFECT_AUTO_START_ON_ASSIGN", True),
        cycle=cycle,
        cycle_attempts=attempts,
        **params,
    )
    return _finish(result, before, actor)


def transition_scenario_status(scenario_id: int, status: str, actor, *, expected_version=None) -> dict:
    """Map a requested scenario status onto its transition."""
    action = SCENARIO_STATUS_ACTIONS.get(status)
    if action is None:
        raise ValidationError(
            f"Cannot move a scenario to status '{status}'",
            details={"status": status, "allowed": list(SCENARIO_STATUS_ACTIONS)},
        )
    return transition("test_scenario", scenario_id, action, actor, expected_version=expected_version)


# ═════════════════════════════════════════════════════════════════════════════
# Edits
# ═════════════════════════════════════════════════════════════════════════════

def edit_scenario(scenario_id: int, changes: dict, actor, *, expected_version=None) -> dict:
    """Versioned content edit of a scenario."""
    scenario = get_entity("test_scenario", scenario_id)
    action_guard.check_action("test_scenario", scenario, "edit", actor)
    _check_version(scenario, expected_version)

    before = scenario.to_dict()
    result = apply_scenario_edit(scenario, changes, actor)
    return _finish(result, before, actor)


def edit_plan(plan_id: int, changes: dict, actor, *, expected_version=None) -> dict:
    plan = get_entity("test_plan", plan_id)
    action_guard.check_action("test_plan", plan, "edit", actor)
    _check_version(plan, expected_version)

    before = plan.to_dict()
    result = apply_plan_edit(plan, changes, actor)
    return _finish(result, before, actor)


def set_cycle_testers(cycle_id: int, tester_ids, actor, *, expected_version=None) -> dict:
    cycle = get_entity("test_cycle", cycle_id)
    action_guard.check_action("test_cycle", cycle, "assign_testers", actor)
    _check_version(cycle, expected_version)

    if cycle.status not in CYCLE_FROZEN_STATUSES:
        for tester_id in parse_user_ids(tester_ids):
            _require_user(tester_id, ROLE_TESTER, "testers")

    before = cycle.to_dict()
    result = apply_cycle_testers(cycle, tester_ids)
    return _finish(result, before, actor)


# ═════════════════════════════════════════════════════════════════════════════
# Read
# ═════════════════════════════════════════════════════════════════════════════

def describe(entity_type: str, entity_id: int, actor) -> dict:
    """Entity plus the transitions its status allows, and those ``actor`` may run."""
    entity = get_entity(entity_type, entity_id)
    available = available_transitions(entity_type, entity)
    return {
        **entity.to_dict(),
        "available_transitions": available,
        "allowed_transitions": action_guard.allowed_actions(entity_type, entity, actor, available),
    }
