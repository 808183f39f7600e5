"""
Lifecycle API end-to-end tests.

HTTP transitions through the Flask test client; real-time fan-out observed
through Socket.IO test clients connected as the affected users.
"""

import pytest
from sqlalchemy.exc import OperationalError

from qahub.models import db as _db
from qahub.models.testing import (
    Defect,
    TestCycle,
    TestExecution,
    TestPlan,
    TestScenario,
)
from qahub.services import lifecycle_service as svc


# ── Factories ────────────────────────────────────────────────────────────


def _scenario(owner, **kw):
    s = TestScenario(
        scenario_code=kw.pop("scenario_code", "SC-001"),
        title=kw.pop("title", "Post goods receipt"),
        owner_id=owner.id,
        **kw,
    )
    _db.session.add(s)
    _db.session.commit()
    return s


def _plan(creator, **kw):
    p = TestPlan(name=kw.pop("name", "Regression R1"), created_by=creator.id, **kw)
    _db.session.add(p)
    _db.session.commit()
    return p


def _cycle(creator, plan=None, **kw):
    plan = plan or _plan(creator)
    c = TestCycle(
        test_plan_id=plan.id,
        cycle_name=kw.pop("cycle_name", "Cycle 1"),
        created_by=creator.id,
        **kw,
    )
    _db.session.add(c)
    _db.session.commit()
    return c


def _execution(cycle, scenario, tester, **kw):
    e = TestExecution(
        test_cycle_id=cycle.id,
        test_scenario_id=scenario.id,
        assigned_tester=tester.id,
        **kw,
    )
    _db.session.add(e)
    _db.session.commit()
    return e


def _defect(reporter, **kw):
    d = Defect(
        defect_code=kw.pop("defect_code", "DEF-001"),
        title=kw.pop("title", "Posting fails with 500"),
        reported_by=reporter.id,
        **kw,
    )
    _db.session.add(d)
    _db.session.commit()
    return d


def _reload(model, pk):
    _db.session.expire_all()
    return _db.session.get(model, pk)


def _events(sc):
    return [(m["name"], m["args"][0]) for m in sc.get_received()]


def _names(sc):
    return [name for name, _ in _events(sc)]


# ═════════════════════════════════════════════════════════════════════════
# Defect lifecycle
# ═════════════════════════════════════════════════════════════════════════


class TestDefectLifecycle:
    def test_resolve_from_open_is_conflict(self, client, auth, manager, tester):
        d = _defect(tester)
        res = client.post(f"/api/v1/defects/{d.id}/resolve", headers=auth(manager),
                          json={"resolution_notes": "Fixed"})
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["current_status"] == "Open"
        assert _reload(Defect, d.id).status == "Open"

    def test_assign_moves_to_in_progress_and_notifies(
        self, client, auth, connect, manager, tester, troubleshooter, make_user,
    ):
        watcher = make_user("wade", "Troubleshooter", department="DBA")
        d = _defect(tester, category="Data")
        assignee_sc = connect(troubleshooter)
        watcher_sc = connect(watcher)
        ack = watcher_sc.emit("join-room", "category_DBA", callback=True)
        assert ack == {"ok": True, "room": "category_DBA"}

        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(manager),
                          json={"assigned_to": troubleshooter.id, "assigned_group": "DBA"})

        assert res.status_code == 200
        body = res.get_json()
        assert body["previous_status"] == "Open"
        assert body["new_status"] == "In Progress"
        assert body["derived_updates"]["status_path"] == ["Assigned", "In Progress"]
        assert body["entity"]["assigned_to"] == troubleshooter.id
        assert f"user:{troubleshooter.id}" in body["notified"]

        assignee_events = _events(assignee_sc)
        assert [n for n, _ in assignee_events] == ["defect-assigned"]
        payload = assignee_events[0][1]
        assert payload["type"] == "defect-assigned"
        assert payload["data"]["entity_id"] == d.id
        assert payload["data"]["status"] == "In Progress"
        assert "timestamp" in payload

        assert _names(watcher_sc) == ["defect-assigned-to-category"]

    def test_assign_requires_assignee(self, client, auth, manager, tester):
        d = _defect(tester)
        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(manager), json={})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"assigned_to": "required"}

    def test_assign_rejects_malformed_assignee(self, client, auth, manager, tester):
        d = _defect(tester)
        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(manager),
                          json={"assigned_to": "abc"})
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"] == {"assigned_to": "integer"}
        assert _reload(Defect, d.id).status == "Open"

    @pytest.mark.parametrize("kind, reason", [
        ("missing", "unknown_user"),
        ("inactive", "unknown_user"),
        ("viewer", "role"),
        ("tester", "role"),
    ])
    def test_assign_requires_active_troubleshooter(self, client, auth, manager, tester, make_user, kind, reason):
        if kind == "missing":
            assignee_id = 9999
        elif kind == "inactive":
            assignee_id = make_user("ivan", "Troubleshooter", is_active=False).id
        elif kind == "viewer":
            assignee_id = make_user("val", "Viewer").id
        else:
            assignee_id = tester.id
        d = _defect(tester)

        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(manager),
                          json={"assigned_to": assignee_id})

        assert res.status_code == 400
        assert res.get_json()["details"]["assigned_to"] == reason
        defect = _reload(Defect, d.id)
        assert defect.status == "Open"
        assert defect.assigned_to is None

    def test_assign_from_closed_is_conflict_before_assignee_check(self, client, auth, manager, tester):
        d = _defect(tester, status="Confirmed Closed")
        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(manager),
                          json={"assigned_to": 9999})
        assert res.status_code == 409

    def test_resolve_notifies_reporter_retest_required(
        self, client, auth, connect, tester, troubleshooter,
    ):
        d = _defect(tester, status="In Progress", assigned_to=troubleshooter.id)
        reporter_sc = connect(tester)

        res = client.post(f"/api/v1/defects/{d.id}/resolve", headers=auth(troubleshooter),
                          json={"resolution_notes": "Index rebuilt", "root_cause": "Stale index"})

        assert res.status_code == 200
        defect = _reload(Defect, d.id)
        assert defect.status == "Resolved"
        assert defect.retest_required is True
        assert defect.resolved_date is not None

        events = _events(reporter_sc)
        assert [n for n, _ in events] == ["defect-retest-required"]
        assert events[0][1]["data"]["retest_required"] is True

    def test_resolve_requires_notes(self, client, auth, tester, troubleshooter):
        d = _defect(tester, status="In Progress", assigned_to=troubleshooter.id)
        res = client.post(f"/api/v1/defects/{d.id}/resolve", headers=auth(troubleshooter), json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"
        assert _reload(Defect, d.id).status == "In Progress"

    def test_resolve_rejects_non_text_notes(self, client, auth, tester, troubleshooter):
        d = _defect(tester, status="In Progress", assigned_to=troubleshooter.id)
        res = client.post(f"/api/v1/defects/{d.id}/resolve", headers=auth(troubleshooter),
                          json={"resolution_notes": 123})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"resolution_notes": "string"}
        assert _reload(Defect, d.id).status == "In Progress"

    def test_resolve_retest_flag_must_be_boolean(self, client, auth, manager, tester, troubleshooter):
        d = _defect(tester, status="In Progress", assigned_to=troubleshooter.id)
        res = client.post(f"/api/v1/defects/{d.id}/resolve", headers=auth(troubleshooter),
                          json={"resolution_notes": "Config change", "retest_required": "false"})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"retest_required": "boolean"}
        assert _reload(Defect, d.id).status == "In Progress"

        res = client.post(f"/api/v1/defects/{d.id}/resolve", headers=auth(troubleshooter),
                          json={"resolution_notes": "Config change", "retest_required": False})
        assert res.status_code == 200
        assert _reload(Defect, d.id).retest_required is False

        res = client.post(f"/api/v1/defects/{d.id}/close", headers=auth(manager))
        assert res.status_code == 200
        assert _reload(Defect, d.id).status == "Confirmed Closed"

    def test_unassigned_troubleshooter_cannot_resolve(self, client, auth, tester, troubleshooter, make_user):
        other = make_user("olga", "Troubleshooter")
        d = _defect(tester, status="In Progress", assigned_to=troubleshooter.id)
        res = client.post(f"/api/v1/defects/{d.id}/resolve", headers=auth(other),
                          json={"resolution_notes": "x"})
        assert res.status_code == 403

    def test_retest_passed_confirms(self, client, auth, connect, tester, troubleshooter):
        d = _defect(tester, status="Resolved", assigned_to=troubleshooter.id, retest_required=True)

        res = client.post(f"/api/v1/defects/{d.id}/request-confirmation", headers=auth(troubleshooter))
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "Pending Confirmation"

        reporter_sc = connect(tester)
        res = client.post(f"/api/v1/defects/{d.id}/retest", headers=auth(tester),
                          json={"result": "Passed", "retest_notes": "Works now"})

        assert res.status_code == 200
        defect = _reload(Defect, d.id)
        assert defect.status == "Confirmed Closed"
        assert defect.retest_result == "Passed"
        assert defect.retest_notes == "Works now"
        assert defect.closed_date is not None
        assert _names(reporter_sc) == ["defect-confirmed-closed"]

    def test_retest_failed_reopens(self, client, auth, connect, tester, troubleshooter):
        d = _defect(tester, status="Pending Confirmation", assigned_to=troubleshooter.id)
        assignee_sc = connect(troubleshooter)

        res = client.post(f"/api/v1/defects/{d.id}/retest", headers=auth(tester),
                          json={"result": "Failed"})

        assert res.status_code == 200
        defect = _reload(Defect, d.id)
        assert defect.status == "Reopened"
        assert defect.retest_result == "Failed"
        assert defect.reopen_count == 1
        assert _names(assignee_sc) == ["defect-reopened"]

        res = client.get(f"/api/v1/defects/{d.id}", headers=auth(tester))
        assert res.get_json()["available_transitions"] == ["assign"]

    def test_retest_requires_valid_result(self, client, auth, tester, troubleshooter):
        d = _defect(tester, status="Pending Confirmation", assigned_to=troubleshooter.id)
        res = client.post(f"/api/v1/defects/{d.id}/retest", headers=auth(tester), json={"result": "Maybe"})
        assert res.status_code == 400
        assert _reload(Defect, d.id).status == "Pending Confirmation"

    def test_close_without_retest(self, client, auth, manager, tester):
        d = _defect(tester, status="Resolved", retest_required=False)
        res = client.post(f"/api/v1/defects/{d.id}/close", headers=auth(manager))
        assert res.status_code == 200
        assert _reload(Defect, d.id).status == "Confirmed Closed"

    def test_close_refused_when_retest_required(self, client, auth, manager, tester):
        d = _defect(tester, status="Resolved", retest_required=True)
        res = client.post(f"/api/v1/defects/{d.id}/close", headers=auth(manager))
        assert res.status_code == 409
        assert res.get_json()["details"]["reason"] == "defect requires a retest confirmation"

    def test_viewer_denied_without_side_effects(self, client, auth, connect, viewer, tester, troubleshooter):
        d = _defect(tester)
        assignee_sc = connect(troubleshooter)

        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(viewer),
                          json={"assigned_to": troubleshooter.id})

        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"
        defect = _reload(Defect, d.id)
        assert defect.status == "Open"
        assert defect.assigned_to is None
        assert assignee_sc.get_received() == []


# ═════════════════════════════════════════════════════════════════════════
# Test cycles
# ═════════════════════════════════════════════════════════════════════════


class TestCycleLifecycle:
    def test_start_requires_testers_then_notifies(self, client, auth, connect, manager, tester, make_user):
        dashboard_user = make_user("dana", "Test Manager")
        c = _cycle(manager)

        res = client.post(f"/api/v1/test-cycles/{c.id}/start", headers=auth(manager))
        assert res.status_code == 409
        assert res.get_json()["details"]["reason"] == "at least one assigned tester is required"
        assert _reload(TestCycle, c.id).status == "Planning"

        res = client.put(f"/api/v1/test-cycles/{c.id}/testers", headers=auth(manager),
                         json={"testers": [tester.id]})
        assert res.status_code == 200
        assert res.get_json()["derived_updates"]["added"] == [tester.id]

        tester_sc = connect(tester)
        dashboard_sc = connect(dashboard_user)
        dashboard_sc.emit("join-room", {"room": f"cycle_{c.id}"}, callback=True)

        res = client.post(f"/api/v1/test-cycles/{c.id}/start", headers=auth(manager))
        assert res.status_code == 200
        cycle = _reload(TestCycle, c.id)
        assert cycle.status == "In Progress"
        assert cycle.start_date is not None

        assert _names(tester_sc) == ["test-cycle-started"]
        assert _names(dashboard_sc) == ["test-cycle-started"]

    def test_testers_required_in_body(self, client, auth, manager):
        c = _cycle(manager)
        res = client.put(f"/api/v1/test-cycles/{c.id}/testers", headers=auth(manager), json={})
        assert res.status_code == 400

    def test_unknown_tester_cannot_unlock_start(self, client, auth, manager):
        c = _cycle(manager)
        res = client.put(f"/api/v1/test-cycles/{c.id}/testers", headers=auth(manager),
                         json={"testers": [9999]})
        assert res.status_code == 400
        assert res.get_json()["details"]["testers"] == "unknown_user"
        assert _reload(TestCycle, c.id).assigned_testers in (None, [])

        res = client.post(f"/api/v1/test-cycles/{c.id}/start", headers=auth(manager))
        assert res.status_code == 409
        assert _reload(TestCycle, c.id).status == "Planning"

    def test_testers_must_be_active_testers(self, client, auth, manager, tester, troubleshooter, make_user):
        c = _cycle(manager, assigned_testers=[tester.id])
        benched = make_user("bea", "Tester", is_active=False)

        res = client.put(f"/api/v1/test-cycles/{c.id}/testers", headers=auth(manager),
                         json={"testers": [tester.id, troubleshooter.id]})
        assert res.status_code == 400
        assert res.get_json()["details"] == {
            "testers": "role", "user_id": troubleshooter.id, "expected_role": "Tester",
        }

        res = client.put(f"/api/v1/test-cycles/{c.id}/testers", headers=auth(manager),
                         json={"testers": [benched.id]})
        assert res.status_code == 400
        assert _reload(TestCycle, c.id).assigned_testers == [tester.id]

    def test_testers_reject_malformed_ids(self, client, auth, manager):
        c = _cycle(manager)
        res = client.put(f"/api/v1/test-cycles/{c.id}/testers", headers=auth(manager),
                         json={"testers": [True]})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"testers": "integer"}

    def test_stop_completed_notifies_managers(self, client, auth, connect, manager, tester):
        c = _cycle(manager, status="In Progress", assigned_testers=[tester.id])
        manager_sc = connect(manager)

        res = client.post(f"/api/v1/test-cycles/{c.id}/stop", headers=auth(manager),
                          json={"outcome": "Completed"})

        assert res.status_code == 200
        assert res.get_json()["derived_updates"]["test_cycle"]["frozen"] is True
        assert _reload(TestCycle, c.id).status == "Completed"
        assert _names(manager_sc) == ["test-cycle-completed-notification"]

    def test_stop_rejects_bad_outcome(self, client, auth, manager, tester):
        c = _cycle(manager, status="In Progress", assigned_testers=[tester.id])
        res = client.post(f"/api/v1/test-cycles/{c.id}/stop", headers=auth(manager),
                          json={"outcome": "Done"})
        assert res.status_code == 400
        assert _reload(TestCycle, c.id).status == "In Progress"

    def test_unknown_segment(self, client, auth, manager):
        c = _cycle(manager)
        res = client.post(f"/api/v1/test-cycles/{c.id}/explode", headers=auth(manager))
        assert res.status_code == 400
        assert "open" in res.get_json()["details"]["allowed"]

    def test_tester_cannot_start_cycle(self, client, auth, manager, tester):
        c = _cycle(manager, assigned_testers=[tester.id])
        res = client.post(f"/api/v1/test-cycles/{c.id}/start", headers=auth(tester))
        assert res.status_code == 403


# ═════════════════════════════════════════════════════════════════════════
# Test executions
# ═════════════════════════════════════════════════════════════════════════


class TestExecutionLifecycle:
    def test_result_updates_completion(self, client, auth, connect, manager, tester):
        c = _cycle(manager, status="In Progress", assigned_testers=[tester.id])
        s1 = _scenario(tester, scenario_code="SC-1")
        s2 = _scenario(tester, scenario_code="SC-2")
        e1 = _execution(c, s1, tester)
        _execution(c, s2, tester)
        manager_sc = connect(manager)
        manager_sc.emit("join-room", f"cycle_{c.id}", callback=True)

        res = client.post(f"/api/v1/test-executions/{e1.id}/begin", headers=auth(tester))
        assert res.status_code == 200

        res = client.post(f"/api/v1/test-executions/{e1.id}/result", headers=auth(tester),
                          json={"result": "Failed", "notes": "Wrong tax code"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["new_status"] == "Failed"
        assert body["derived_updates"]["test_cycle"]["completion_percentage"] == 50.0

        assert _reload(TestCycle, c.id).completion_percentage == 50.0
        execution = _reload(TestExecution, e1.id)
        assert execution.notes == "Wrong tax code"
        assert execution.completion_date is not None

        events = _events(manager_sc)
        assert [n for n, _ in events] == ["test-execution-completed"]
        assert events[0][1]["message"] == "Test execution completed with status: Failed"

    def test_retest_creates_new_attempt(self, client, auth, manager, tester):
        c = _cycle(manager, status="In Progress", assigned_testers=[tester.id])
        s = _scenario(tester)
        e = _execution(c, s, tester, status="Failed")

        res = client.post(f"/api/v1/test-executions/{e.id}/retest", headers=auth(tester))

        assert res.status_code == 200
        body = res.get_json()
        assert body["created"] is True
        assert body["entity"]["status"] == "Not Started"
        assert body["entity"]["previous_attempt_id"] == e.id
        assert body["entity"]["retest_count"] == 1
        assert body["derived_updates"]["test_cycle"]["completion_percentage"] == 0.0
        assert _reload(TestExecution, e.id).status == "Failed"

        res = client.post(f"/api/v1/test-executions/{e.id}/retest", headers=auth(tester))
        assert res.status_code == 409
        assert res.get_json()["details"]["reason"] == "attempt has already been superseded by a retest"

    def test_other_tester_cannot_record(self, client, auth, manager, tester, other_tester):
        c = _cycle(manager, status="In Progress", assigned_testers=[tester.id])
        e = _execution(c, _scenario(tester), tester, status="In Progress")
        res = client.post(f"/api/v1/test-executions/{e.id}/result", headers=auth(other_tester),
                          json={"result": "Passed"})
        assert res.status_code == 403
        assert _reload(TestExecution, e.id).status == "In Progress"

    def test_result_on_completed_cycle_keeps_percentage(self, client, auth, manager, tester):
        c = _cycle(manager, status="Completed", assigned_testers=[tester.id], completion_percentage=0.0)
        e = _execution(c, _scenario(tester), tester, status="In Progress")
        res = client.post(f"/api/v1/test-executions/{e.id}/result", headers=auth(tester),
                          json={"result": "Passed"})
        assert res.status_code == 200
        assert res.get_json()["derived_updates"]["test_cycle"]["frozen"] is True
        assert _reload(TestCycle, c.id).completion_percentage == 0.0


# ═════════════════════════════════════════════════════════════════════════
# Test plans
# ═════════════════════════════════════════════════════════════════════════


class TestPlanLifecycle:
    def test_submit_and_approve(self, client, auth, connect, manager, tester):
        p = _plan(tester)
        creator_sc = connect(tester)

        res = client.post(f"/api/v1/test-plans/{p.id}/submit", headers=auth(tester))
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "Under Review"

        res = client.post(f"/api/v1/test-plans/{p.id}/approve", headers=auth(manager))
        assert res.status_code == 200
        plan = _reload(TestPlan, p.id)
        assert plan.status == "Approved"
        assert plan.approved_by == manager.id
        assert _names(creator_sc) == ["test-plan-approved"]

    def test_reject_requires_reason(self, client, auth, connect, manager, tester):
        p = _plan(tester, status="Under Review")

        res = client.post(f"/api/v1/test-plans/{p.id}/reject", headers=auth(manager), json={})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"rejection_reason": "required"}

        creator_sc = connect(tester)
        res = client.post(f"/api/v1/test-plans/{p.id}/reject", headers=auth(manager),
                          json={"rejection_reason": "Missing exit criteria"})
        assert res.status_code == 200
        assert _reload(TestPlan, p.id).status == "Draft"
        events = _events(creator_sc)
        assert events[0][0] == "test-plan-rejected"
        assert events[0][1]["data"]["reason"] == "Missing exit criteria"

    def test_reject_reason_must_be_text(self, client, auth, manager, tester):
        p = _plan(tester, status="Under Review")
        res = client.post(f"/api/v1/test-plans/{p.id}/reject", headers=auth(manager),
                          json={"rejection_reason": 5})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"rejection_reason": "string"}
        assert _reload(TestPlan, p.id).status == "Under Review"

    def test_edit_only_while_editable(self, client, auth, manager, tester):
        p = _plan(tester)
        res = client.put(f"/api/v1/test-plans/{p.id}", headers=auth(tester), json={"objective": "Cover MM"})
        assert res.status_code == 200
        assert _reload(TestPlan, p.id).objective == "Cover MM"

        approved = _plan(tester, name="Other", status="Approved")
        res = client.put(f"/api/v1/test-plans/{approved.id}", headers=auth(manager), json={"objective": "x"})
        assert res.status_code == 409


# ═════════════════════════════════════════════════════════════════════════
# Test scenarios
# ═════════════════════════════════════════════════════════════════════════


class TestScenarioLifecycle:
    def test_status_flow(self, client, auth, manager, tester):
        s = _scenario(tester)

        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(tester), json={"status": "Under Review"})
        assert res.status_code == 200
        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(manager), json={"status": "Active"})
        assert res.status_code == 200

        scenario = _reload(TestScenario, s.id)
        assert scenario.status == "Active"
        assert scenario.reviewed_by == manager.id
        assert scenario.version == 1

    def test_significant_edit_bumps_version(self, client, auth, tester):
        s = _scenario(tester, status="Active")
        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(tester),
                         json={"expected_outcome": "Document posted"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["derived_updates"]["version_bumped"] is True
        assert _reload(TestScenario, s.id).version == 2

    def test_end_dated_is_read_only(self, client, auth, manager, tester):
        s = _scenario(tester, status="End-Dated")
        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(manager), json={"title": "New"})
        assert res.status_code == 409
        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(manager), json={"status": "Active"})
        assert res.status_code == 409
        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(manager), json={"status": "Draft"})
        assert res.status_code == 400

    def test_status_and_content_cannot_mix(self, client, auth, manager, tester):
        s = _scenario(tester)
        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(manager),
                         json={"status": "Under Review", "title": "Renamed"})
        assert res.status_code == 400
        assert _reload(TestScenario, s.id).title == "Post goods receipt"

    def test_edit_rejects_non_text_title(self, client, auth, tester):
        s = _scenario(tester)
        res = client.put(f"/api/v1/test-scenarios/{s.id}", headers=auth(tester), json={"title": 7})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"title": "string"}
        assert _reload(TestScenario, s.id).title == "Post goods receipt"


# ═════════════════════════════════════════════════════════════════════════
# Cross-cutting: auth, lookup, optimistic lock, read
# ═════════════════════════════════════════════════════════════════════════


class TestCrossCutting:
    def test_missing_token_is_401(self, client, tester):
        d = _defect(tester)
        res = client.post(f"/api/v1/defects/{d.id}/close")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_garbage_token_is_401(self, client, tester):
        d = _defect(tester)
        res = client.post(f"/api/v1/defects/{d.id}/close", headers={"Authorization": "Bearer nope"})
        assert res.status_code == 401

    def test_inactive_user_is_401(self, client, auth, make_user, tester):
        ghost = make_user("gary", "Test Manager", is_active=False)
        d = _defect(tester)
        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(ghost), json={"assigned_to": 1})
        assert res.status_code == 401

    def test_unknown_entity_is_404(self, client, auth, manager):
        res = client.post("/api/v1/defects/9999/assign", headers=auth(manager), json={"assigned_to": 1})
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_unknown_collection_is_404(self, client, auth, manager):
        res = client.get("/api/v1/widgets/1", headers=auth(manager))
        assert res.status_code == 404

    def test_stale_expected_version_is_409(self, client, auth, manager, tester, troubleshooter):
        d = _defect(tester)
        current = d.lock_version
        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(manager),
                          json={"assigned_to": troubleshooter.id, "expected_version": current + 5})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"
        assert _reload(Defect, d.id).status == "Open"

        res = client.post(f"/api/v1/defects/{d.id}/assign", headers=auth(manager),
                          json={"assigned_to": troubleshooter.id, "expected_version": current})
        assert res.status_code == 200
        assert res.get_json()["entity"]["lock_version"] == current + 1

    def test_get_lists_available_and_allowed(self, client, auth, tester, troubleshooter):
        d = _defect(tester, status="Resolved", assigned_to=troubleshooter.id)
        res = client.get(f"/api/v1/defects/{d.id}", headers=auth(troubleshooter))
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "Resolved"
        assert body["available_transitions"] == ["request_confirmation", "close"]
        assert body["allowed_transitions"] == ["request_confirmation"]

    def test_health_needs_no_token(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    @pytest.mark.parametrize("username,role,expected", [
        ("mo", "Test Manager", 200),
        ("ted", "Tester", 403),
    ])
    def test_online_users_manager_only(self, client, auth, connect, make_user, username, role, expected):
        user = make_user(username, role)
        connect(user)
        res = client.get("/api/v1/realtime/online", headers=auth(user))
        assert res.status_code == expected
        if expected == 200:
            body = res.get_json()
            assert user.id in body["online"]
            assert body["by_role"]["Test Manager"] == [user.id]

    def test_database_failure_is_500_and_rolled_back(self, client, auth, monkeypatch, manager, tester):
        d = _defect(tester, status="Resolved", retest_required=False)

        def _fail():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(_db.session, "commit", _fail)
        res = client.post(f"/api/v1/defects/{d.id}/close", headers=auth(manager))
        assert res.status_code == 500
        assert res.get_json() == {"error": "Database error", "code": "ERR_DATABASE"}
        monkeypatch.undo()
        assert _reload(Defect, d.id).status == "Resolved"

    def test_unexpected_error_is_json_500(self, app, client, auth, monkeypatch, manager, tester):
        d = _defect(tester)

        def _boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)
        monkeypatch.setattr(svc, "describe", _boom)
        res = client.get(f"/api/v1/defects/{d.id}", headers=auth(manager))
        assert res.status_code == 500
        assert res.get_json() == {"error": "Internal server error", "code": "ERR_INTERNAL"}
