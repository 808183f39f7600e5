"""
Lifecycle blueprint: HTTP transition endpoints.

Every route requires ``Authorization: Bearer <jwt>``. The service layer owns
all business logic and commits; views only parse input and shape output.

Endpoint groups:
  Defects          POST /api/v1/defects/<id>/{assign,start,resolve,request-confirmation,retest,close}
  Test cycles      POST /api/v1/test-cycles/<id>/{open,start,pause,resume,stop,cancel}
                   PUT  /api/v1/test-cycles/<id>/testers
  Test plans       POST /api/v1/test-plans/<id>/{submit,approve,reject,start,complete,cancel}
                   PUT  /api/v1/test-plans/<id>
  Test scenarios   PUT  /api/v1/test-scenarios/<id>
  Test executions  POST /api/v1/test-executions/<id>/{begin,result,retest}
  Read             GET  /api/v1/<collection>/<id>
  Presence         GET  /api/v1/realtime/online

Optional ``expected_version`` in any write body must match the row's
``lock_version`` or the request fails with 409.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from qahub.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from qahub.middleware.jwt_auth import current_actor
from qahub.models import db
from qahub.models.auth import USER_ROLES
from qahub.models.testing import RETEST_FAILED, RETEST_PASSED
from qahub.services import lifecycle_service as svc
from qahub.utils.errors import E, api_error

logger = logging.getLogger(__name__)

lifecycle_bp = Blueprint("lifecycle", __name__, url_prefix="/api/v1")

COLLECTIONS = {
    "defects": "defect",
    "test-cycles": "test_cycle",
    "test-plans": "test_plan",
    "test-scenarios": "test_scenario",
    "test-executions": "test_execution",
}

# URL segment -> transition name, per collection
CYCLE_ACTIONS = {a: a for a in ("open", "start", "pause", "resume", "stop", "cancel")}
PLAN_ACTIONS = {a: a for a in ("submit", "approve", "reject", "start", "complete", "cancel")}
EXECUTION_ACTIONS = {"begin": "begin", "result": "record_result", "retest": "retest"}

# Body keys forwarded to the state machine
ACTION_PARAMS = {
    ("test_cycle", "stop"): ("outcome",),
    ("test_plan", "reject"): ("rejection_reason",),
    ("test_execution", "record_result"): ("result", "notes"),
    ("defect", "assign"): ("assigned_to", "assigned_group"),
    ("defect", "resolve"): ("resolution_notes", "root_cause", "solution", "retest_required"),
    ("defect", "confirm"): ("retest_notes",),
    ("defect", "reject_retest"): ("retest_notes",),
}


# ── Error handlers ────────────────────────────────────────────────────────────


@lifecycle_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@lifecycle_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    code = E.VALIDATION_REQUIRED if "required" in error.details.values() else E.VALIDATION_INVALID
    return api_error(code, str(error), details=error.details)


@lifecycle_bp.errorhandler(AuthenticationError)
def _handle_unauthenticated(error: AuthenticationError):
    return api_error(E.UNAUTHENTICATED, str(error))


@lifecycle_bp.errorhandler(AuthorizationError)
def _handle_forbidden(error: AuthorizationError):
    return api_error(E.FORBIDDEN, str(error), details={"action": error.action, "reason": error.reason})


@lifecycle_bp.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(error: InvalidTransitionError):
    return api_error(E.CONFLICT_STATE, str(error), details={
        "entity_type": error.entity_type,
        "action": error.action,
        "current_status": error.current_status,
        "target_status": error.target_status,
        "reason": error.reason,
    })


@lifecycle_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_VERSION, str(error), details={
        "field": error.field, "expected": error.value, "current": error.current,
    })


@lifecycle_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.error("Database error on %s %s", request.method, request.path, exc_info=error)
    return api_error(E.DATABASE, "Database error")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _params(entity_type: str, action: str, data: dict) -> dict:
    keys = ACTION_PARAMS.get((entity_type, action), ())
    return {k: data[k] for k in keys if k in data}


def _run(entity_type: str, entity_id: int, action: str):
    actor = current_actor()
    data = _body()
    result = svc.transition(
        entity_type, entity_id, action, actor,
        expected_version=data.get("expected_version"),
        **_params(entity_type, action, data),
    )
    return jsonify(result), 200


def _lookup(actions: dict, segment: str) -> str:
    action = actions.get(segment)
    if action is None:
        raise ValidationError(
            f"Unknown transition '{segment}'",
            details={"action": segment, "allowed": list(actions)},
        )
    return action


# ═════════════════════════════════════════════════════════════════════════
# Defects
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/defects/<int:defect_id>/assign", methods=["POST"])
def assign_defect(defect_id):
    """Assign to a troubleshooter. Body: assigned_to (required), assigned_group."""
    return _run("defect", defect_id, "assign")


@lifecycle_bp.route("/defects/<int:defect_id>/start", methods=["POST"])
def start_defect(defect_id):
    return _run("defect", defect_id, "start_progress")


@lifecycle_bp.route("/defects/<int:defect_id>/resolve", methods=["POST"])
def resolve_defect(defect_id):
    """Body: resolution_notes (required), root_cause, solution, retest_required (default true)."""
    return _run("defect", defect_id, "resolve")


@lifecycle_bp.route("/defects/<int:defect_id>/request-confirmation", methods=["POST"])
def request_defect_confirmation(defect_id):
    return _run("defect", defect_id, "request_confirmation")


@lifecycle_bp.route("/defects/<int:defect_id>/retest", methods=["POST"])
def retest_defect(defect_id):
    """Body: result = Passed | Failed, retest_notes. Passed confirms, Failed reopens."""
    data = _body()
    result = data.get("result")
    if result == RETEST_PASSED:
        action = "confirm"
    elif result == RETEST_FAILED:
        action = "reject_retest"
    else:
        raise ValidationError(
            f"result must be one of: {RETEST_PASSED}, {RETEST_FAILED}",
            details={"result": "required" if result is None else result},
        )
    return _run("defect", defect_id, action)


@lifecycle_bp.route("/defects/<int:defect_id>/close", methods=["POST"])
def close_defect(defect_id):
    """Close a resolved defect that needs no retest."""
    return _run("defect", defect_id, "close")


# ═════════════════════════════════════════════════════════════════════════
# Test cycles
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/test-cycles/<int:cycle_id>/<segment>", methods=["POST"])
def cycle_transition(cycle_id, segment):
    """open | start | pause | resume | stop (outcome) | cancel."""
    return _run("test_cycle", cycle_id, _lookup(CYCLE_ACTIONS, segment))


@lifecycle_bp.route("/test-cycles/<int:cycle_id>/testers", methods=["PUT"])
def set_cycle_testers(cycle_id):
    """Replace assigned testers. Body: {"testers": [user_id, ...]}."""
    actor = current_actor()
    data = _body()
    if "testers" not in data:
        raise ValidationError("testers is required", details={"testers": "required"})
    result = svc.set_cycle_testers(
        cycle_id, data["testers"], actor, expected_version=data.get("expected_version"),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Test plans
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/test-plans/<int:plan_id>/<segment>", methods=["POST"])
def plan_transition(plan_id, segment):
    """submit | approve | reject (rejection_reason) | start | complete | cancel."""
    return _run("test_plan", plan_id, _lookup(PLAN_ACTIONS, segment))


@lifecycle_bp.route("/test-plans/<int:plan_id>", methods=["PUT"])
def update_plan(plan_id):
    actor = current_actor()
    data = _body()
    result = svc.edit_plan(plan_id, data, actor, expected_version=data.get("expected_version"))
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Test scenarios
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/test-scenarios/<int:scenario_id>", methods=["PUT"])
def update_scenario(scenario_id):
    """
    ``status`` → lifecycle transition (Under Review, Active, End-Dated).
    Content fields → versioned edit. The two cannot be mixed in one request.
    """
    actor = current_actor()
    data = _body()
    expected_version = data.get("expected_version")
    content = {k: v for k, v in data.items() if k not in ("status", "expected_version")}

    if "status" in data:
        if content:
            raise ValidationError(
                "Send status changes separately from content edits",
                details={"status": data["status"], "fields": sorted(content)},
            )
        result = svc.transition_scenario_status(
            scenario_id, data["status"], actor, expected_version=expected_version,
        )
    else:
        result = svc.edit_scenario(scenario_id, content, actor, expected_version=expected_version)
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Test executions
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/test-executions/<int:execution_id>/<segment>", methods=["POST"])
def execution_transition(execution_id, segment):
    """begin | result (result, notes) | retest."""
    return _run("test_execution", execution_id, _lookup(EXECUTION_ACTIONS, segment))


# ═════════════════════════════════════════════════════════════════════════
# Read + presence
# ═════════════════════════════════════════════════════════════════════════


@lifecycle_bp.route("/<collection>/<int:entity_id>", methods=["GET"])
def get_entity(collection, entity_id):
    entity_type = COLLECTIONS.get(collection)
    if entity_type is None:
        return api_error(E.NOT_FOUND, f"Unknown collection: {collection}")
    actor = current_actor()
    return jsonify(svc.describe(entity_type, entity_id, actor)), 200


@lifecycle_bp.route("/realtime/online", methods=["GET"])
def online_users():
    """Who is connected right now (Test Manager only)."""
    actor = current_actor()
    if not actor.is_test_manager:
        raise AuthorizationError(actor.id, "realtime", "view_online", "Test Manager only")
    registry = current_app.extensions["session_registry"]
    return jsonify({
        "online": registry.online_users(),
        "by_role": {role: registry.online_users_by_role(role) for role in sorted(USER_ROLES)},
    }), 200
