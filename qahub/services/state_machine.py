"""
Entity State Machine: status lifecycles for the five QA artifacts.

Each entity type has a declarative transition table:

    {"<action>": {"from": [<source statuses>], "to": <target | [targets]>}}

``apply_transition`` validates the source status, runs every precondition
(parameter checks, tester-count guard, superseded-attempt guard) and only
then mutates the entity. It never touches ``db.session``: committing and
notifying are the caller's job (see lifecycle_service).

Usage:
    from qahub.services.state_machine import apply_transition

    result = apply_transition(
        "defect", defect, "resolve", actor,
        resolution_notes="Index rebuilt", retest_required=True,
    )
    result.previous_status, result.new_status, result.derived_updates
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from qahub.core.exceptions import InvalidTransitionError, ValidationError
from qahub.models.testing import (
    CYCLE_CANCELLED,
    CYCLE_COMPLETED,
    CYCLE_FROZEN_STATUSES,
    CYCLE_IN_PROGRESS,
    CYCLE_OPEN,
    CYCLE_PAUSED,
    CYCLE_PLANNING,
    DEFECT_ASSIGNED,
    DEFECT_CONFIRMED_CLOSED,
    DEFECT_IN_PROGRESS,
    DEFECT_OPEN,
    DEFECT_PENDING_CONFIRMATION,
    DEFECT_REOPENED,
    DEFECT_RESOLVED,
    EXECUTION_BLOCKED,
    EXECUTION_FAILED,
    EXECUTION_IN_PROGRESS,
    EXECUTION_NOT_STARTED,
    EXECUTION_PASSED,
    EXECUTION_SKIPPED,
    EXECUTION_TERMINAL_STATUSES,
    PLAN_APPROVED,
    PLAN_CANCELLED,
    PLAN_COMPLETED,
    PLAN_DRAFT,
    PLAN_EDITABLE_STATUSES,
    PLAN_IN_PROGRESS,
    PLAN_UNDER_REVIEW,
    RETEST_FAILED,
    RETEST_PASSED,
    SCENARIO_ACTIVE,
    SCENARIO_DRAFT,
    SCENARIO_END_DATED,
    SCENARIO_SIGNIFICANT_FIELDS,
    SCENARIO_UNDER_REVIEW,
    TestExecution,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Transition tables
# ═════════════════════════════════════════════════════════════════════════════

SCENARIO_TRANSITIONS = {
    "submit_for_review": {"from": [SCENARIO_DRAFT], "to": SCENARIO_UNDER_REVIEW},
    "approve": {"from": [SCENARIO_UNDER_REVIEW], "to": SCENARIO_ACTIVE},
    "end_date": {"from": [SCENARIO_ACTIVE, SCENARIO_UNDER_REVIEW], "to": SCENARIO_END_DATED},
}

PLAN_TRANSITIONS = {
    "submit": {"from": [PLAN_DRAFT], "to": PLAN_UNDER_REVIEW},
    "approve": {"from": [PLAN_UNDER_REVIEW], "to": PLAN_APPROVED},
    "reject": {"from": [PLAN_UNDER_REVIEW], "to": PLAN_DRAFT},
    "start": {"from": [PLAN_APPROVED], "to": PLAN_IN_PROGRESS},
    "complete": {"from": [PLAN_IN_PROGRESS], "to": PLAN_COMPLETED},
    "cancel": {"from": [PLAN_IN_PROGRESS], "to": PLAN_CANCELLED},
}

CYCLE_TRANSITIONS = {
    "open": {"from": [CYCLE_PLANNING], "to": CYCLE_OPEN},
    "start": {"from": [CYCLE_PLANNING, CYCLE_OPEN], "to": CYCLE_IN_PROGRESS},
    "pause": {"from": [CYCLE_IN_PROGRESS], "to": CYCLE_PAUSED},
    "resume": {"from": [CYCLE_PAUSED], "to": CYCLE_IN_PROGRESS},
    "stop": {
        "from": [CYCLE_IN_PROGRESS, CYCLE_PAUSED],
        "to": [CYCLE_COMPLETED, CYCLE_CANCELLED],
        "param": "outcome",
        "default": CYCLE_COMPLETED,
    },
    "cancel": {"from": [CYCLE_PLANNING, CYCLE_OPEN], "to": CYCLE_CANCELLED},
}

EXECUTION_TRANSITIONS = {
    "begin": {"from": [EXECUTION_NOT_STARTED], "to": EXECUTION_IN_PROGRESS},
    "record_result": {
        "from": [EXECUTION_IN_PROGRESS],
        "to": [EXECUTION_PASSED, EXECUTION_FAILED, EXECUTION_BLOCKED, EXECUTION_SKIPPED],
        "param": "result",
    },
    "retest": {"from": [EXECUTION_FAILED, EXECUTION_BLOCKED], "to": EXECUTION_NOT_STARTED},
}

DEFECT_TRANSITIONS = {
    # Passes through Assigned; lands in In Progress unless auto-start is off
    "assign": {"from": [DEFECT_OPEN, DEFECT_REOPENED], "to": DEFECT_IN_PROGRESS, "via": DEFECT_ASSIGNED},
    "start_progress": {"from": [DEFECT_ASSIGNED], "to": DEFECT_IN_PROGRESS},
    "resolve": {"from": [DEFECT_IN_PROGRESS], "to": DEFECT_RESOLVED},
    "request_confirmation": {"from": [DEFECT_RESOLVED], "to": DEFECT_PENDING_CONFIRMATION},
    "close": {"from": [DEFECT_RESOLVED], "to": DEFECT_CONFIRMED_CLOSED},
    "confirm": {"from": [DEFECT_PENDING_CONFIRMATION], "to": DEFECT_CONFIRMED_CLOSED},
    "reject_retest": {"from": [DEFECT_PENDING_CONFIRMATION], "to": DEFECT_REOPENED},
}

TRANSITIONS = {
    "test_scenario": SCENARIO_TRANSITIONS,
    "test_plan": PLAN_TRANSITIONS,
    "test_cycle": CYCLE_TRANSITIONS,
    "test_execution": EXECUTION_TRANSITIONS,
    "defect": DEFECT_TRANSITIONS,
}

ENTITY_TYPES = tuple(TRANSITIONS)

SCENARIO_EDITABLE_FIELDS = ("title", "module_feature", "description", "action", "expected_outcome")
PLAN_EDITABLE_FIELDS = ("name", "description", "objective", "scope", "test_type")


# ═════════════════════════════════════════════════════════════════════════════
# Result
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class TransitionResult:
    """Outcome of a successful transition.

    ``entity`` is the row in its new state. For a retest that is the newly
    created attempt (``created=True``); the superseded attempt is untouched.
    """
    entity_type: str
    action: str
    previous_status: str
    new_status: str
    entity: Any
    derived_updates: dict = field(default_factory=dict)
    created: bool = False

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "entity": self.entity.to_dict() if hasattr(self.entity, "to_dict") else self.entity,
            "derived_updates": self.derived_updates,
            "created": self.created,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Validation helpers
# ═════════════════════════════════════════════════════════════════════════════

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _rules_for(entity_type: str) -> dict:
    rules = TRANSITIONS.get(entity_type)
    if rules is None:
        raise ValidationError(
            f"Unknown entity type: {entity_type}",
            details={"entity_type": entity_type},
        )
    return rules


def _target_label(rule: dict) -> str:
    to = rule["to"]
    return to if isinstance(to, str) else "/".join(to)


def validate_transition(entity_type: str, entity, action: str) -> dict:
    """Validate whether an action is valid for the entity's current status."""
    rule = _rules_for(entity_type).get(action)
    if not rule:
        return {"valid": False, "from": entity.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if entity.status not in rule["from"]:
        return {"valid": False, "from": entity.status, "to": _target_label(rule),
                "reason": f"Cannot '{action}' from status '{entity.status}'"}

    return {"valid": True, "from": entity.status, "to": _target_label(rule), "reason": None}


def available_transitions(entity_type: str, entity) -> list[str]:
    """Get list of valid actions for an entity's current status."""
    return [
        action for action, rule in _rules_for(entity_type).items()
        if entity.status in rule["from"]
    ]


def _resolve_target(action: str, rule: dict, params: dict) -> str:
    to = rule["to"]
    if isinstance(to, str):
        return to
    param = rule["param"]
    value = params.get(param) or rule.get("default")
    if value not in to:
        raise ValidationError(
            f"{param} must be one of: {', '.join(to)}",
            details={param: value},
        )
    return value


# ── Parameter coercion ───────────────────────────────────────────────────────

def _required_text(params: dict, key: str) -> str:
    value = params.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", details={key: "string"})
    if not (value or "").strip():
        raise ValidationError(f"{key} is required", details={key: "required"})
    return value.strip()


def _check_optional_text(params: dict, *keys: str) -> None:
    for key in keys:
        value = params.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string", details={key: "string"})


def parse_user_id(value, key: str) -> int:
    """Coerce a user id from JSON (int or digit string). Booleans are refused."""
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"{key} must be a user id", details={key: "integer"})
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{key} must be a user id", details={key: "integer"})


def parse_user_ids(values, key: str = "testers") -> list[int]:
    """Deduplicated list of user ids, order kept."""
    if not isinstance(values, list):
        raise ValidationError(f"{key} must be a list of user ids", details={key: "list"})
    return list(dict.fromkeys(parse_user_id(v, key) for v in values))


# ═════════════════════════════════════════════════════════════════════════════
# Completion percentage (derived)
# ═════════════════════════════════════════════════════════════════════════════

def current_attempts(attempts) -> list:
    """Drop attempts that a later retest has superseded."""
    superseded = {a.previous_attempt_id for a in attempts if a.previous_attempt_id is not None}
    return [a for a in attempts if a.id is None or a.id not in superseded]


def completion_percentage(attempts) -> float:
    """Terminal current attempts / current attempts * 100, two decimals."""
    current = current_attempts(attempts)
    if not current:
        return 0.0
    done = sum(1 for a in current if a.status in EXECUTION_TERMINAL_STATUSES)
    return round(done / len(current) * 100, 2)


def _merge_attempt(attempts, attempt) -> list:
    merged = []
    found = False
    for a in attempts:
        if a is attempt or (attempt.id is not None and a.id == attempt.id):
            merged.append(attempt)
            found = True
        else:
            merged.append(a)
    if not found:
        merged.append(attempt)
    return merged


def _recompute_cycle(cycle, attempts) -> dict:
    pct = completion_percentage(attempts)
    if cycle.status in CYCLE_FROZEN_STATUSES:
        logger.debug("Cycle %s is %s; completion stays frozen", cycle.id, cycle.status)
        return {"id": cycle.id, "completion_percentage": cycle.completion_percentage, "frozen": True}
    cycle.completion_percentage = pct
    return {"id": cycle.id, "completion_percentage": pct, "frozen": False}


# ═════════════════════════════════════════════════════════════════════════════
# Preconditions (run before any mutation)
# ═════════════════════════════════════════════════════════════════════════════

def _precheck(entity_type: str, entity, action: str, params: dict, cycle_attempts) -> None:
    if entity_type == "test_plan":
        if action == "reject":
            _required_text(params, "rejection_reason")

    elif entity_type == "test_cycle":
        if action == "start" and not (entity.assigned_testers or []):
            raise InvalidTransitionError(
                entity_type, action, entity.status, CYCLE_IN_PROGRESS,
                "at least one assigned tester is required",
            )

    elif entity_type == "test_execution":
        if action == "record_result":
            _check_optional_text(params, "notes")

        if action == "retest" and entity.id is not None and cycle_attempts:
            if any(a.previous_attempt_id == entity.id for a in cycle_attempts):
                raise InvalidTransitionError(
                    entity_type, action, entity.status, EXECUTION_NOT_STARTED,
                    "attempt has already been superseded by a retest",
                )

    elif entity_type == "defect":
        if action == "assign":
            if params.get("assigned_to") in (None, ""):
                raise ValidationError("assigned_to is required", details={"assigned_to": "required"})
            parse_user_id(params["assigned_to"], "assigned_to")
            _check_optional_text(params, "assigned_group")

        if action == "resolve":
            _required_text(params, "resolution_notes")
            _check_optional_text(params, "root_cause", "solution")
            retest_required = params.get("retest_required")
            if retest_required is not None and not isinstance(retest_required, bool):
                raise ValidationError(
                    "retest_required must be true or false",
                    details={"retest_required": "boolean"},
                )

        if action in ("confirm", "reject_retest"):
            _check_optional_text(params, "retest_notes")

        if action == "request_confirmation" and not entity.retest_required:
            raise InvalidTransitionError(
                entity_type, action, entity.status, DEFECT_PENDING_CONFIRMATION,
                "defect does not require a retest; use 'close'",
            )

        if action == "close" and entity.retest_required:
            raise InvalidTransitionError(
                entity_type, action, entity.status, DEFECT_CONFIRMED_CLOSED,
                "defect requires a retest confirmation",
            )


# ═════════════════════════════════════════════════════════════════════════════
# Side effects per entity
# ═════════════════════════════════════════════════════════════════════════════

def _apply_scenario(scenario, action, target, actor, now, params) -> dict:
    scenario.status = target
    scenario.last_updated = now
    if action == "approve":
        scenario.reviewed_by = actor.id
        scenario.review_date = now
    elif action == "end_date":
        scenario.end_date = now
    return {}


def _apply_plan(plan, action, target, actor, now, params) -> dict:
    plan.status = target
    if action == "approve":
        plan.approved_by = actor.id
        plan.approved_at = now
        plan.rejection_reason = None
    elif action == "reject":
        plan.rejection_reason = params["rejection_reason"].strip()
    elif action == "start":
        plan.start_date = now
    elif action in ("complete", "cancel"):
        plan.end_date = now
    return {}


def _apply_cycle(cycle, action, target, actor, now, params) -> dict:
    cycle.status = target
    if action == "start" and cycle.start_date is None:
        cycle.start_date = now
    elif action in ("stop", "cancel"):
        cycle.end_date = now
        return {"test_cycle": {"id": cycle.id, "completion_percentage": cycle.completion_percentage,
                               "frozen": True}}
    return {}


def _apply_execution(execution, action, target, actor, now, params, cycle, cycle_attempts) -> dict:
    derived: dict = {}

    if action == "begin":
        execution.status = target
        execution.execution_date = now

    elif action == "record_result":
        execution.status = target
        execution.completion_date = now
        started = _as_utc(execution.execution_date)
        if started is not None:
            execution.actual_duration = max(int((now - started).total_seconds() // 60), 0)
        if params.get("notes"):
            execution.notes = params["notes"]
        if cycle is not None:
            attempts = _merge_attempt(cycle_attempts or [], execution)
            derived["test_cycle"] = _recompute_cycle(cycle, attempts)

    return derived


def _apply_defect(defect, action, target, actor, now, params, auto_start_on_assign) -> dict:
    derived: dict = {}

    if action == "assign":
        defect.assigned_to = parse_user_id(params["assigned_to"], "assigned_to")
        if params.get("assigned_group"):
            defect.assigned_group = params["assigned_group"]
        defect.assigned_date = now
        if auto_start_on_assign:
            defect.status = target
            derived["status_path"] = [DEFECT_ASSIGNED, DEFECT_IN_PROGRESS]
        else:
            defect.status = DEFECT_ASSIGNED
            derived["status_path"] = [DEFECT_ASSIGNED]
        return derived

    defect.status = target

    if action == "resolve":
        defect.resolution_notes = params["resolution_notes"].strip()
        if params.get("root_cause"):
            defect.root_cause = params["root_cause"]
        if params.get("solution"):
            defect.solution = params["solution"]
        retest_required = params.get("retest_required")
        defect.retest_required = True if retest_required is None else retest_required
        defect.resolved_date = now

    elif action == "close":
        defect.closed_date = now

    elif action == "confirm":
        defect.retest_result = RETEST_PASSED
        defect.retest_date = now
        defect.retest_notes = params.get("retest_notes")
        defect.closed_date = now

    elif action == "reject_retest":
        defect.retest_result = RETEST_FAILED
        defect.retest_date = now
        defect.retest_notes = params.get("retest_notes")
        defect.reopen_count = (defect.reopen_count or 0) + 1
        derived["reopen_count"] = defect.reopen_count

    return derived


def _create_retest_attempt(execution, actor, cycle, cycle_attempts) -> tuple[TestExecution, dict]:
    attempt = TestExecution(
        test_cycle_id=execution.test_cycle_id,
        test_scenario_id=execution.test_scenario_id,
        assigned_tester=execution.assigned_tester,
        status=EXECUTION_NOT_STARTED,
        retest_count=(execution.retest_count or 0) + 1,
        previous_attempt_id=execution.id,
    )
    derived = {"previous_attempt": {"id": execution.id, "status": execution.status}}
    if cycle is not None:
        attempts = list(cycle_attempts or [])
        if not any(a is execution or (execution.id is not None and a.id == execution.id) for a in attempts):
            attempts.append(execution)
        attempts.append(attempt)
        derived["test_cycle"] = _recompute_cycle(cycle, attempts)
    return attempt, derived


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

def apply_transition(
    entity_type: str,
    entity,
    action: str,
    actor,
    *,
    now: datetime | None = None,
    auto_start_on_assign: bool = True,
    cycle=None,
    cycle_attempts=None,
    **params,
) -> TransitionResult:
    """
    Validate and apply one lifecycle transition in memory.

    Args:
        entity_type: One of ENTITY_TYPES.
        entity: Model instance (or any object exposing the same attributes).
        action: Transition name from the entity's table.
        actor: Acting User; ``actor.id`` is recorded where the table says so.
        now: Clock override for deterministic tests.
        auto_start_on_assign: Defect ``assign`` lands in In Progress when True.
        cycle: Parent TestCycle, for executions; enables the completion recompute.
        cycle_attempts: All attempt rows of that cycle (including ``entity``).
        **params: Action parameters (``result``, ``outcome``, ``resolution_notes`` ...).

    Returns:
        TransitionResult

    Raises:
        ValidationError: unknown action or bad parameter.
        InvalidTransitionError: current status is not a source of ``action``,
            or a guard precondition (testers, retest flag) fails.
    """
    rules = _rules_for(entity_type)
    rule = rules.get(action)
    if rule is None:
        raise ValidationError(
            f"Unknown transition '{action}' for {entity_type}",
            details={"action": action, "allowed": list(rules)},
        )

    # 1. Source status
    validation = validate_transition(entity_type, entity, action)
    if not validation["valid"]:
        raise InvalidTransitionError(
            entity_type, action, entity.status, validation["to"], validation["reason"],
        )

    # 2. Parameters and guards
    target = _resolve_target(action, rule, params)
    _precheck(entity_type, entity, action, params, cycle_attempts)

    # 3. Execute
    now = now or _utcnow()
    previous_status = entity.status

    if entity_type == "test_execution" and action == "retest":
        attempt, derived = _create_retest_attempt(entity, actor, cycle, cycle_attempts)
        logger.info(
            "test_execution %s retest -> new attempt (retest_count=%s)",
            entity.id, attempt.retest_count,
            extra={"entity_type": entity_type, "entity_id": entity.id, "action": action},
        )
        return TransitionResult(
            entity_type=entity_type,
            action=action,
            previous_status=previous_status,
            new_status=attempt.status,
            entity=attempt,
            derived_updates=derived,
            created=True,
        )

    if entity_type == "test_scenario":
        derived = _apply_scenario(entity, action, target, actor, now, params)
    elif entity_type == "test_plan":
        derived = _apply_plan(entity, action, target, actor, now, params)
    elif entity_type == "test_cycle":
        derived = _apply_cycle(entity, action, target, actor, now, params)
    elif entity_type == "test_execution":
        derived = _apply_execution(entity, action, target, actor, now, params, cycle, cycle_attempts)
    else:
        derived = _apply_defect(entity, action, target, actor, now, params, auto_start_on_assign)

    logger.info(
        "%s %s: %s -> %s", entity_type, action, previous_status, entity.status,
        extra={"entity_type": entity_type, "entity_id": entity.id, "action": action},
    )

    return TransitionResult(
        entity_type=entity_type,
        action=action,
        previous_status=previous_status,
        new_status=entity.status,
        entity=entity,
        derived_updates=derived,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Edits (not status transitions)
# ═════════════════════════════════════════════════════════════════════════════

def apply_scenario_edit(scenario, changes: dict, actor, *, now: datetime | None = None) -> TransitionResult:
    """
    Apply a content edit to a scenario.

    A change to any of SCENARIO_SIGNIFICANT_FIELDS bumps ``version`` and
    records the editor as reviewer. End-Dated scenarios are read-only.
    """
    if scenario.status == SCENARIO_END_DATED:
        raise InvalidTransitionError(
            "test_scenario", "edit", scenario.status,
            reason="end-dated scenarios are read-only",
        )

    updates = {k: changes[k] for k in SCENARIO_EDITABLE_FIELDS if k in changes}
    if not updates:
        raise ValidationError(
            "No editable fields supplied",
            details={"allowed": list(SCENARIO_EDITABLE_FIELDS)},
        )
    _check_optional_text(updates, *SCENARIO_EDITABLE_FIELDS)
    if "title" in updates and not (updates["title"] or "").strip():
        raise ValidationError("title cannot be empty", details={"title": "required"})

    now = now or _utcnow()
    changed = [k for k, v in updates.items() if getattr(scenario, k) != v]
    for key in changed:
        setattr(scenario, key, updates[key])

    bumped = any(k in SCENARIO_SIGNIFICANT_FIELDS for k in changed)
    if bumped:
        scenario.version = (scenario.version or 1) + 1
        scenario.reviewed_by = actor.id
        scenario.review_date = now
    scenario.last_updated = now

    return TransitionResult(
        entity_type="test_scenario",
        action="edit",
        previous_status=scenario.status,
        new_status=scenario.status,
        entity=scenario,
        derived_updates={"changed_fields": changed, "version_bumped": bumped,
                         "version": scenario.version},
    )


def apply_plan_edit(plan, changes: dict, actor) -> TransitionResult:
    """Edit plan content; only Draft and Under Review plans are editable."""
    if plan.status not in PLAN_EDITABLE_STATUSES:
        raise InvalidTransitionError(
            "test_plan", "edit", plan.status,
            reason="only Draft or Under Review plans can be edited",
        )

    updates = {k: changes[k] for k in PLAN_EDITABLE_FIELDS if k in changes}
    if not updates:
        raise ValidationError(
            "No editable fields supplied",
            details={"allowed": list(PLAN_EDITABLE_FIELDS)},
        )
    _check_optional_text(updates, *PLAN_EDITABLE_FIELDS)
    if "name" in updates and not (updates["name"] or "").strip():
        raise ValidationError("name cannot be empty", details={"name": "required"})

    changed = [k for k, v in updates.items() if getattr(plan, k) != v]
    for key in changed:
        setattr(plan, key, updates[key])

    return TransitionResult(
        entity_type="test_plan",
        action="edit",
        previous_status=plan.status,
        new_status=plan.status,
        entity=plan,
        derived_updates={"changed_fields": changed},
    )


def apply_cycle_testers(cycle, tester_ids) -> TransitionResult:
    """Replace a cycle's assigned testers. Closed cycles are read-only."""
    if cycle.status in CYCLE_FROZEN_STATUSES:
        raise InvalidTransitionError(
            "test_cycle", "assign_testers", cycle.status,
            reason="cycle is closed",
        )
    cleaned = parse_user_ids(tester_ids)

    before = list(cycle.assigned_testers or [])
    cycle.assigned_testers = cleaned

    return TransitionResult(
        entity_type="test_cycle",
        action="assign_testers",
        previous_status=cycle.status,
        new_status=cycle.status,
        entity=cycle,
        derived_updates={
            "added": [t for t in cleaned if t not in before],
            "removed": [t for t in before if t not in cleaned],
        },
    )
