"""
QA Lifecycle Hub
Testing domain models.

Models:
    - TestScenario:   reusable scenario in the catalog (versioned content)
    - TestPlan:       approval-gated plan grouping cycles
    - TestCycle:      execution window with assigned testers and derived completion
    - TestExecution:  one attempt at running a scenario inside a cycle
    - Defect:         defect raised during execution, with retest confirmation

Architecture ref:
    Test Plan ──1:N──▶ Test Cycle ──1:N──▶ Test Execution ──N:1──▶ Test Scenario
    Test Execution ──0:1──▶ previous attempt (retest chain)
    Defect ──N:1──▶ Test Cycle / Test Execution / Test Scenario (optional)

Only status-relevant fields live here; rows are created by the authoring
collaborator and the lifecycle core advances them afterwards. Every table
carries ``lock_version`` (SQLAlchemy ``version_id_col``) so two writers
racing on the same row cannot silently overwrite each other.
"""

from datetime import datetime, timezone

from qahub.models import db


# ── Constants ────────────────────────────────────────────────────────────

SCENARIO_DRAFT = "Draft"
SCENARIO_UNDER_REVIEW = "Under Review"
SCENARIO_ACTIVE = "Active"
SCENARIO_END_DATED = "End-Dated"

SCENARIO_STATUSES = {
    SCENARIO_DRAFT, SCENARIO_UNDER_REVIEW, SCENARIO_ACTIVE, SCENARIO_END_DATED,
}

# Content edits to these fields bump TestScenario.version
SCENARIO_SIGNIFICANT_FIELDS = ("title", "description", "action", "expected_outcome")

PLAN_DRAFT = "Draft"
PLAN_UNDER_REVIEW = "Under Review"
PLAN_APPROVED = "Approved"
PLAN_IN_PROGRESS = "In Progress"
PLAN_COMPLETED = "Completed"
PLAN_CANCELLED = "Cancelled"

PLAN_STATUSES = {
    PLAN_DRAFT, PLAN_UNDER_REVIEW, PLAN_APPROVED,
    PLAN_IN_PROGRESS, PLAN_COMPLETED, PLAN_CANCELLED,
}

PLAN_EDITABLE_STATUSES = {PLAN_DRAFT, PLAN_UNDER_REVIEW}

CYCLE_PLANNING = "Planning"
CYCLE_OPEN = "Open"
CYCLE_IN_PROGRESS = "In Progress"
CYCLE_PAUSED = "Paused"
CYCLE_COMPLETED = "Completed"
CYCLE_CANCELLED = "Cancelled"

CYCLE_STATUSES = {
    CYCLE_PLANNING, CYCLE_OPEN, CYCLE_IN_PROGRESS,
    CYCLE_PAUSED, CYCLE_COMPLETED, CYCLE_CANCELLED,
}

# completion_percentage no longer moves once a cycle is in one of these
CYCLE_FROZEN_STATUSES = {CYCLE_COMPLETED, CYCLE_CANCELLED}

EXECUTION_NOT_STARTED = "Not Started"
EXECUTION_IN_PROGRESS = "In Progress"
EXECUTION_PASSED = "Passed"
EXECUTION_FAILED = "Failed"
EXECUTION_BLOCKED = "Blocked"
EXECUTION_SKIPPED = "Skipped"

EXECUTION_STATUSES = {
    EXECUTION_NOT_STARTED, EXECUTION_IN_PROGRESS, EXECUTION_PASSED,
    EXECUTION_FAILED, EXECUTION_BLOCKED, EXECUTION_SKIPPED,
}

EXECUTION_TERMINAL_STATUSES = {
    EXECUTION_PASSED, EXECUTION_FAILED, EXECUTION_BLOCKED, EXECUTION_SKIPPED,
}

DEFECT_OPEN = "Open"
DEFECT_ASSIGNED = "Assigned"
DEFECT_IN_PROGRESS = "In Progress"
DEFECT_RESOLVED = "Resolved"
DEFECT_PENDING_CONFIRMATION = "Pending Confirmation"
DEFECT_CONFIRMED_CLOSED = "Confirmed Closed"
DEFECT_REOPENED = "Reopened"

DEFECT_STATUSES = {
    DEFECT_OPEN, DEFECT_ASSIGNED, DEFECT_IN_PROGRESS, DEFECT_RESOLVED,
    DEFECT_PENDING_CONFIRMATION, DEFECT_CONFIRMED_CLOSED, DEFECT_REOPENED,
}

RETEST_NOT_RETESTED = "Not Retested"
RETEST_PASSED = "Passed"
RETEST_FAILED = "Failed"


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# TEST SCENARIO
# ═════════════════════════════════════════════════════════════════════════════

class TestScenario(db.Model):
    """
    Catalog scenario.

    ``version`` counts content-significant edits; status transitions never
    touch it. End-Dated is terminal.
    """

    __tablename__ = "test_scenarios"

    id = db.Column(db.Integer, primary_key=True)
    scenario_code = db.Column(db.String(50), nullable=False, unique=True)
    title = db.Column(db.String(200), nullable=False)
    module_feature = db.Column(db.String(100), default="")
    description = db.Column(db.Text, default="")
    action = db.Column(db.Text, default="")
    expected_outcome = db.Column(db.Text, default="")
    status = db.Column(
        db.String(30), default=SCENARIO_DRAFT, nullable=False, index=True,
        comment="Draft | Under Review | Active | End-Dated",
    )
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    review_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, default=1, nullable=False)
    last_updated = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    lock_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": lock_version}

    def to_dict(self):
        return {
            "id": self.id,
            "scenario_code": self.scenario_code,
            "title": self.title,
            "module_feature": self.module_feature,
            "description": self.description,
            "action": self.action,
            "expected_outcome": self.expected_outcome,
            "status": self.status,
            "owner_id": self.owner_id,
            "reviewed_by": self.reviewed_by,
            "review_date": _iso(self.review_date),
            "end_date": _iso(self.end_date),
            "version": self.version,
            "last_updated": _iso(self.last_updated),
            "lock_version": self.lock_version,
        }

    def __repr__(self):
        return f"<TestScenario {self.id}: {self.scenario_code} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST PLAN
# ═════════════════════════════════════════════════════════════════════════════

class TestPlan(db.Model):
    """
    Approval-gated plan. Editable only while Draft or Under Review.
    """

    __tablename__ = "test_plans"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    objective = db.Column(db.Text, default="")
    scope = db.Column(db.Text, default="")
    test_type = db.Column(db.String(50), default="Functional")
    status = db.Column(
        db.String(30), default=PLAN_DRAFT, nullable=False, index=True,
        comment="Draft | Under Review | Approved | In Progress | Completed | Cancelled",
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    lock_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": lock_version}

    cycles = db.relationship(
        "TestCycle", backref="plan", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "objective": self.objective,
            "scope": self.scope,
            "test_type": self.test_type,
            "status": self.status,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "rejection_reason": self.rejection_reason,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "lock_version": self.lock_version,
        }

    def __repr__(self):
        return f"<TestPlan {self.id}: {self.name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST CYCLE
# ═════════════════════════════════════════════════════════════════════════════

class TestCycle(db.Model):
    """
    Execution window within a plan.

    ``assigned_testers`` is a JSON list of user ids. ``completion_percentage``
    is derived from the current execution attempts and is never set by a
    caller directly.
    """

    __tablename__ = "test_cycles"

    id = db.Column(db.Integer, primary_key=True)
    test_plan_id = db.Column(
        db.Integer, db.ForeignKey("test_plans.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    cycle_name = db.Column(db.String(200), nullable=False)
    status = db.Column(
        db.String(30), default=CYCLE_PLANNING, nullable=False, index=True,
        comment="Planning | Open | In Progress | Paused | Completed | Cancelled",
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    assigned_testers = db.Column(db.JSON, default=list, comment="JSON list of tester user ids")
    environment = db.Column(db.String(100), nullable=True)
    completion_percentage = db.Column(db.Float, default=0.0, nullable=False)
    planned_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    planned_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    lock_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": lock_version}

    executions = db.relationship(
        "TestExecution", backref="cycle", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "test_plan_id": self.test_plan_id,
            "cycle_name": self.cycle_name,
            "status": self.status,
            "created_by": self.created_by,
            "assigned_testers": list(self.assigned_testers or []),
            "environment": self.environment,
            "completion_percentage": self.completion_percentage,
            "planned_start_date": _iso(self.planned_start_date),
            "planned_end_date": _iso(self.planned_end_date),
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "lock_version": self.lock_version,
        }

    def __repr__(self):
        return f"<TestCycle {self.id}: {self.cycle_name} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST EXECUTION
# ═════════════════════════════════════════════════════════════════════════════

class TestExecution(db.Model):
    """
    One attempt at a scenario inside a cycle.

    A retest never rewrites a finished attempt: it inserts a new row that
    points back through ``previous_attempt_id``.
    """

    __tablename__ = "test_executions"

    id = db.Column(db.Integer, primary_key=True)
    test_cycle_id = db.Column(
        db.Integer, db.ForeignKey("test_cycles.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    test_scenario_id = db.Column(
        db.Integer, db.ForeignKey("test_scenarios.id"), nullable=False, index=True,
    )
    assigned_tester = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    status = db.Column(
        db.String(30), default=EXECUTION_NOT_STARTED, nullable=False, index=True,
        comment="Not Started | In Progress | Passed | Failed | Blocked | Skipped",
    )
    execution_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completion_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_duration = db.Column(db.Integer, nullable=True, comment="Minutes")
    notes = db.Column(db.Text, nullable=True)
    retest_count = db.Column(db.Integer, default=0, nullable=False)
    previous_attempt_id = db.Column(
        db.Integer, db.ForeignKey("test_executions.id"), nullable=True, index=True,
    )

    lock_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": lock_version}

    def to_dict(self):
        return {
            "id": self.id,
            "test_cycle_id": self.test_cycle_id,
            "test_scenario_id": self.test_scenario_id,
            "assigned_tester": self.assigned_tester,
            "status": self.status,
            "execution_date": _iso(self.execution_date),
            "completion_date": _iso(self.completion_date),
            "actual_duration": self.actual_duration,
            "notes": self.notes,
            "retest_count": self.retest_count,
            "previous_attempt_id": self.previous_attempt_id,
            "lock_version": self.lock_version,
        }

    def __repr__(self):
        return f"<TestExecution {self.id}: cycle={self.test_cycle_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# DEFECT
# ═════════════════════════════════════════════════════════════════════════════

class Defect(db.Model):
    """
    Defect with a retest-confirmation loop.

    ``retest_result`` is only written by the confirm / reject_retest
    transitions, i.e. while the defect is Pending Confirmation.
    """

    __tablename__ = "defects"

    id = db.Column(db.Integer, primary_key=True)
    defect_code = db.Column(db.String(50), nullable=False, unique=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), default="Medium", nullable=False, index=True)
    category = db.Column(db.String(30), default="Functional", nullable=False, index=True)
    status = db.Column(
        db.String(30), default=DEFECT_OPEN, nullable=False, index=True,
        comment="Open | Assigned | In Progress | Resolved | Pending Confirmation | "
                "Confirmed Closed | Reopened",
    )
    reported_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    assigned_group = db.Column(db.String(100), nullable=True, comment="e.g. DBA, Functional SME, Developer")

    test_cycle_id = db.Column(db.Integer, db.ForeignKey("test_cycles.id"), nullable=True)
    test_execution_id = db.Column(db.Integer, db.ForeignKey("test_executions.id"), nullable=True)
    test_scenario_id = db.Column(db.Integer, db.ForeignKey("test_scenarios.id"), nullable=True)

    reported_date = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    assigned_date = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_date = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_date = db.Column(db.DateTime(timezone=True), nullable=True)

    resolution_notes = db.Column(db.Text, nullable=True)
    root_cause = db.Column(db.Text, nullable=True)
    solution = db.Column(db.Text, nullable=True)

    retest_required = db.Column(db.Boolean, default=True, nullable=False)
    retest_result = db.Column(db.String(20), default=RETEST_NOT_RETESTED, nullable=True)
    retest_date = db.Column(db.DateTime(timezone=True), nullable=True)
    retest_notes = db.Column(db.Text, nullable=True)
    reopen_count = db.Column(db.Integer, default=0, nullable=False)

    lock_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": lock_version}

    def to_dict(self):
        return {
            "id": self.id,
            "defect_code": self.defect_code,
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "category": self.category,
            "status": self.status,
            "reported_by": self.reported_by,
            "assigned_to": self.assigned_to,
            "assigned_group": self.assigned_group,
            "test_cycle_id": self.test_cycle_id,
            "test_execution_id": self.test_execution_id,
            "test_scenario_id": self.test_scenario_id,
            "reported_date": _iso(self.reported_date),
            "assigned_date": _iso(self.assigned_date),
            "resolved_date": _iso(self.resolved_date),
            "closed_date": _iso(self.closed_date),
            "resolution_notes": self.resolution_notes,
            "root_cause": self.root_cause,
            "solution": self.solution,
            "retest_required": self.retest_required,
            "retest_result": self.retest_result,
            "retest_date": _iso(self.retest_date),
            "retest_notes": self.retest_notes,
            "reopen_count": self.reopen_count,
            "lock_version": self.lock_version,
        }

    def __repr__(self):
        return f"<Defect {self.id}: {self.defect_code} [{self.status}]>"
