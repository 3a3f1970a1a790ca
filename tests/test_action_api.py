"""
HTTP API tests.

Test blocks:
  1. Authentication and tenant scope at the edge (401 / 403 / 404)
  2. Action endpoints: create, list, detail, update, assign, bulk, delete, analytics
  3. Ingestion and AI generation endpoints
  4. Routing rule endpoints
  5. Notification inbox endpoints
"""

from datetime import datetime, timedelta, timezone

import pytest

from feedback_actions.models import db
from feedback_actions.models.auth import ROLE_ADMIN, ROLE_COMPANY_ADMIN
from feedback_actions.services.notification import NotificationService


@pytest.fixture()
def admin_headers(company_admin, auth_headers):
    return auth_headers(company_admin)


@pytest.fixture()
def member_headers(member, auth_headers):
    return auth_headers(member)


class TestEdge:
    def test_health_needs_no_token(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_missing_token_is_401(self, client):
        res = client.get("/api/v1/actions")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_garbage_token_is_401(self, client):
        res = client.get("/api/v1/actions", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_platform_admin_is_403(self, client, make_user, auth_headers):
        admin = make_user(None, role=ROLE_ADMIN)
        res = client.get("/api/v1/actions", headers=auth_headers(admin))
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_inactive_user_is_401(self, client, tenant, make_user, auth_headers):
        user = make_user(tenant)
        headers = auth_headers(user)
        user.is_active = False
        db.session.commit()
        assert client.get("/api/v1/actions", headers=headers).status_code == 401

    def test_inactive_tenant_is_403(self, client, make_tenant, make_user, auth_headers):
        dormant = make_tenant(is_active=False)
        user = make_user(dormant)
        assert client.get("/api/v1/actions", headers=auth_headers(user)).status_code == 403

    def test_cross_tenant_action_is_404(self, client, other_tenant, make_action, admin_headers):
        foreign = make_action(other_tenant)
        for method, url, body in (
            ("get", f"/api/v1/actions/{foreign.id}", None),
            ("put", f"/api/v1/actions/{foreign.id}", {"priority": "low"}),
            ("delete", f"/api/v1/actions/{foreign.id}", None),
            ("post", f"/api/v1/actions/{foreign.id}/assign", {"team": "Ops"}),
        ):
            res = getattr(client, method)(url, json=body, headers=admin_headers)
            assert res.status_code == 404, url
            assert res.get_json() == {"error": "Action not found", "code": "ERR_NOT_FOUND"}

    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestActionEndpoints:
    def test_create_and_fetch(self, client, tenant, member, admin_headers):
        res = client.post("/api/v1/actions", json={
            "description": "Fix broken payroll export",
            "priority": "high",
            "assigned_to": member.id,
            "tenant_id": 999,
        }, headers=admin_headers)
        assert res.status_code == 201
        body = res.get_json()
        assert body["tenant_id"] == tenant.id
        assert body["assigned_to"] == member.id
        assert body["status"] == "pending"
        assert len(body["assignment_history"]) == 1

        detail = client.get(f"/api/v1/actions/{body['id']}", headers=admin_headers)
        assert detail.status_code == 200
        assert detail.get_json()["title"] == "Fix broken payroll export"
        assert NotificationService.unread_count(member.id) == 1

    def test_create_validation_is_400(self, client, admin_headers):
        res = client.post("/api/v1/actions", json={"description": "abc", "priority": "asap"}, headers=admin_headers)
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert set(body["details"]) == {"description", "priority"}

    def test_create_with_foreign_assignee_is_404(self, client, other_tenant, make_user, admin_headers):
        outsider = make_user(other_tenant)
        res = client.post("/api/v1/actions", json={
            "description": "Fix broken payroll export", "priority": "low", "assigned_to": outsider.id,
        }, headers=admin_headers)
        assert res.status_code == 404

    def test_list_with_filters_and_pagination(self, client, tenant, other_tenant, make_action, admin_headers):
        for _ in range(3):
            make_action(tenant, priority="high")
        make_action(tenant, priority="low")
        make_action(other_tenant, priority="high")

        res = client.get("/api/v1/actions?priority=high&limit=2", headers=admin_headers)
        assert res.status_code == 200
        body = res.get_json()
        assert len(body["actions"]) == 2
        assert body["pagination"]["total"] == 3
        assert body["pagination"]["pages"] == 2
        assert "assignment_history" not in body["actions"][0]

    def test_invalid_list_filter_is_400(self, client, admin_headers):
        res = client.get("/api/v1/actions?status=sleeping", headers=admin_headers)
        assert res.status_code == 400
        assert "status" in res.get_json()["details"]

    def test_trend_filters(self, client, tenant, make_action, admin_headers):
        chronic = make_action(tenant, trend_issue_status="chronic", trend_change_direction="down")
        make_action(tenant, trend_issue_status="new", trend_change_direction="down")
        make_action(tenant)

        res = client.get("/api/v1/actions?issue_status=chronic", headers=admin_headers)
        assert [a["id"] for a in res.get_json()["actions"]] == [chronic.id]
        res = client.get("/api/v1/actions?change_direction=down", headers=admin_headers)
        assert res.get_json()["pagination"]["total"] == 2

        bad = client.get("/api/v1/actions?issue_status=spiking&change_direction=sideways", headers=admin_headers)
        assert bad.status_code == 400
        assert set(bad.get_json()["details"]) == {"issue_status", "change_direction"}

    def test_search_treats_wildcards_literally(self, client, tenant, make_action, admin_headers):
        literal = make_action(tenant, title="Raise 100% of tickets")
        make_action(tenant, title="Raise 1000 tickets")
        res = client.get("/api/v1/actions?search=100%25", headers=admin_headers)
        assert [a["id"] for a in res.get_json()["actions"]] == [literal.id]

    def test_update_and_resolve(self, client, tenant, member, make_action, member_headers):
        action = make_action(tenant, assigned_to_id=member.id)
        res = client.put(f"/api/v1/actions/{action.id}", json={"status": "resolved"}, headers=member_headers)
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "resolved"
        assert body["completed_by"] == member.id
        assert body["completed_at"] is not None

    def test_empty_update_is_400(self, client, tenant, make_action, admin_headers):
        action = make_action(tenant)
        res = client.put(f"/api/v1/actions/{action.id}", json={"title": "ignored"}, headers=admin_headers)
        assert res.status_code == 400

    def test_reassignment_blocked_by_survey_assigners(self, client, tenant, member, make_user, make_survey,
                                                      make_action, auth_headers, admin_headers):
        assigner = make_user(tenant)
        survey = make_survey(tenant, permissions={"enabled": True, "allowed_assigners": [assigner.id]})
        action = make_action(tenant, survey_id=survey.id, assigned_to_id=member.id)

        denied = client.post(f"/api/v1/actions/{action.id}/assign", json={"assigned_to": assigner.id},
                             headers=auth_headers(member))
        assert denied.status_code == 403

        allowed = client.post(f"/api/v1/actions/{action.id}/assign", json={"assigned_to": assigner.id},
                              headers=auth_headers(assigner))
        assert allowed.status_code == 200
        assert allowed.get_json()["assigned_to"] == assigner.id

        by_admin = client.post(f"/api/v1/actions/{action.id}/assign", json={"team": "Payroll"},
                               headers=admin_headers)
        assert by_admin.status_code == 200
        history = by_admin.get_json()["assignment_history"]
        assert [h["to_team"] for h in history][-1] == "Payroll"

    def test_hidden_survey_action_is_not_listed(self, client, tenant, company_admin, make_survey,
                                                make_action, member_headers):
        survey = make_survey(tenant, permissions={"enabled": True, "allowed_viewers": [company_admin.id]})
        hidden = make_action(tenant, survey_id=survey.id)
        make_action(tenant)
        listed = client.get("/api/v1/actions", headers=member_headers).get_json()
        assert hidden.id not in [a["id"] for a in listed["actions"]]
        assert client.get(f"/api/v1/actions/{hidden.id}", headers=member_headers).status_code == 403

    def test_bulk_requires_company_admin(self, client, tenant, make_action, member_headers, admin_headers):
        a = make_action(tenant)
        b = make_action(tenant)
        body = {"action_ids": [a.id, b.id, 987654], "updates": {"priority": "high"}}
        assert client.post("/api/v1/actions/bulk", json=body, headers=member_headers).status_code == 403

        res = client.post("/api/v1/actions/bulk", json=body, headers=admin_headers)
        assert res.status_code == 200
        result = res.get_json()
        assert result["updated"] == 2
        assert result["failed"] == 1
        assert result["results"][2]["error"] == "ERR_NOT_FOUND"

    def test_delete_is_soft_and_admin_only(self, client, tenant, make_action, member_headers, admin_headers):
        action = make_action(tenant)
        assert client.delete(f"/api/v1/actions/{action.id}", headers=member_headers).status_code == 403
        assert client.delete(f"/api/v1/actions/{action.id}", headers=admin_headers).status_code == 200
        assert client.get(f"/api/v1/actions/{action.id}", headers=admin_headers).status_code == 404

    def test_analytics(self, client, tenant, make_action, admin_headers):
        now = datetime.now(timezone.utc)
        make_action(tenant, status="resolved", created_at=now - timedelta(days=2), completed_at=now - timedelta(days=1))
        make_action(tenant, priority="high")
        res = client.get("/api/v1/actions/analytics?period=7", headers=admin_headers)
        assert res.status_code == 200
        assert client.get("/api/v1/actions/analytics?period=0", headers=admin_headers).status_code == 400


class TestIngestionEndpoints:
    def test_from_feedback_is_company_admin_only(self, client, tenant, make_feedback, member_headers,
                                                 admin_headers):
        feedback = make_feedback(tenant, sentiment="negative", summary="Benefits portal keeps crashing")
        assert client.post(f"/api/v1/actions/from-feedback/{feedback.id}", headers=member_headers).status_code == 403
        res = client.post(f"/api/v1/actions/from-feedback/{feedback.id}", headers=admin_headers)
        assert res.status_code == 201
        body = res.get_json()
        assert body["priority"] == "high"
        assert body["source"] == "survey_feedback"
        assert body["feedback_id"] == feedback.id

    def test_from_foreign_feedback_is_404(self, client, other_tenant, make_feedback, admin_headers):
        foreign = make_feedback(other_tenant, sentiment="negative")
        assert client.post(f"/api/v1/actions/from-feedback/{foreign.id}", headers=admin_headers).status_code == 404

    def test_generate_uses_fallback_without_model(self, client, tenant, make_feedback, admin_headers):
        negative = make_feedback(tenant, sentiment="negative", summary="Nobody replies to tickets")
        res = client.post("/api/v1/actions/generate", json={"feedback_ids": [negative.id]}, headers=admin_headers)
        assert res.status_code == 201
        body = res.get_json()
        assert body["used_fallback"] is True
        assert len(body["actions"]) == 1
        assert body["actions"][0]["source"] == "ai_generated"

    def test_generate_requires_ids(self, client, admin_headers):
        res = client.post("/api/v1/actions/generate", json={}, headers=admin_headers)
        assert res.status_code == 400


class TestRuleEndpoints:
    def test_escalation_rule_crud(self, client, company_admin, admin_headers):
        res = client.post("/api/v1/rules/escalation", json={
            "name": "Overdue highs",
            "trigger": {"type": "sla_breach", "threshold_hours": 4},
            "conditions": {"priorities": ["high"]},
            "action": {"escalate_to_role": ROLE_COMPANY_ADMIN},
        }, headers=admin_headers)
        assert res.status_code == 201
        rule = res.get_json()
        assert rule["trigger"] == {"type": "sla_breach", "threshold_hours": 4}

        listed = client.get("/api/v1/rules/escalation", headers=admin_headers).get_json()
        assert listed["active"] == 1
        assert [r["id"] for r in listed["rules"]] == [rule["id"]]

        updated = client.put(f"/api/v1/rules/escalation/{rule['id']}", json={"is_active": False},
                             headers=admin_headers)
        assert updated.status_code == 200
        assert updated.get_json()["is_active"] is False

        assert client.delete(f"/api/v1/rules/escalation/{rule['id']}", headers=admin_headers).status_code == 200
        assert client.get("/api/v1/rules/escalation", headers=admin_headers).get_json()["rules"] == []

    def test_invalid_escalation_rule(self, client, admin_headers):
        res = client.post("/api/v1/rules/escalation", json={
            "name": "Bad", "trigger": {"type": "whenever"}, "action": {},
        }, headers=admin_headers)
        assert res.status_code == 400
        details = res.get_json()["details"]
        assert "trigger.type" in details
        assert "action" in details

    @pytest.mark.parametrize("field,value", [
        ("trigger", "sla_breach"),
        ("conditions", ["high"]),
        ("action", "escalate"),
        ("description", 42),
    ])
    def test_escalation_rule_wrong_shapes_are_rejected(self, client, admin_headers, field, value):
        payload = {
            "name": "Shape check",
            "trigger": {"type": "sla_breach", "threshold_hours": 4},
            "action": {"escalate_to_role": ROLE_COMPANY_ADMIN},
        }
        payload[field] = value
        res = client.post("/api/v1/rules/escalation", json=payload, headers=admin_headers)
        assert res.status_code == 400
        assert field in res.get_json()["details"]

    def test_escalation_rule_update_with_wrong_shape(self, client, admin_headers):
        rule = client.post("/api/v1/rules/escalation", json={
            "name": "SLA", "trigger": {"type": "sla_breach"},
            "action": {"escalate_to_role": ROLE_COMPANY_ADMIN},
        }, headers=admin_headers).get_json()
        res = client.put(f"/api/v1/rules/escalation/{rule['id']}", json={"conditions": "high"},
                         headers=admin_headers)
        assert res.status_code == 400
        assert "conditions" in res.get_json()["details"]

    @pytest.mark.parametrize("payload,field", [
        ({"assignment": ["single_owner"]}, "assignment"),
        ({"assignment": {"mode": "team", "team": 7}}, "assignment.team"),
        ({"assignment": {"mode": "team", "team": "Ops"}, "description": ["x"]}, "description"),
    ])
    def test_assignment_rule_wrong_shapes_are_rejected(self, client, admin_headers, payload, field):
        res = client.post("/api/v1/rules/assignment", json={"name": "Shape check", **payload},
                          headers=admin_headers)
        assert res.status_code == 400
        assert field in res.get_json()["details"]

    def test_rules_are_company_admin_only(self, client, member_headers):
        assert client.get("/api/v1/rules/escalation", headers=member_headers).status_code == 403
        assert client.get("/api/v1/rules/assignment", headers=member_headers).status_code == 403

    def test_manual_trigger(self, client, tenant, company_admin, make_action, admin_headers):
        make_action(tenant, due_date=datetime.now(timezone.utc) - timedelta(days=3))
        client.post("/api/v1/rules/escalation", json={
            "name": "SLA", "trigger": {"type": "sla_breach", "threshold_hours": 1},
            "action": {"escalate_to_role": ROLE_COMPANY_ADMIN},
        }, headers=admin_headers)
        res = client.post("/api/v1/rules/escalation/trigger", headers=admin_headers)
        assert res.status_code == 200
        assert res.get_json() == {"success": True, "escalatedCount": 1, "tenants": 1}

    def test_assignment_rule_crud(self, client, member, admin_headers):
        res = client.post("/api/v1/rules/assignment", json={
            "name": "Payroll owner",
            "conditions": [{"field": "category", "operator": "==", "value": "payroll"}],
            "assignment": {"mode": "single_owner", "user_id": member.id},
        }, headers=admin_headers)
        assert res.status_code == 201
        rule = res.get_json()
        assert rule["assignment"]["user_id"] == member.id

        created = client.post("/api/v1/actions", json={
            "description": "Payroll export is late", "priority": "medium", "category": "payroll",
        }, headers=admin_headers).get_json()
        assert created["assigned_to"] == member.id
        assert created["auto_assigned"] is True

        patched = client.patch(f"/api/v1/rules/assignment/{rule['id']}",
                               json={"assignment": {"mode": "round_robin"}}, headers=admin_headers)
        assert patched.status_code == 400
        assert client.delete(f"/api/v1/rules/assignment/{rule['id']}", headers=admin_headers).status_code == 200

    def test_foreign_rule_is_404(self, client, other_tenant, auth_headers, make_user, admin_headers):
        other_admin = make_user(other_tenant, role=ROLE_COMPANY_ADMIN)
        rule = client.post("/api/v1/rules/escalation", json={
            "name": "Theirs", "trigger": {"type": "no_assignment"},
            "action": {"escalate_to_role": ROLE_COMPANY_ADMIN},
        }, headers=auth_headers(other_admin)).get_json()
        res = client.delete(f"/api/v1/rules/escalation/{rule['id']}", headers=admin_headers)
        assert res.status_code == 404


class TestNotificationEndpoints:
    def test_inbox_flow(self, client, member, member_headers):
        first = NotificationService.send(user_id=member.id, type="action_assigned", message="one")["notification"]
        NotificationService.send(user_id=member.id, type="action_overdue", message="two")

        inbox = client.get("/api/v1/notifications", headers=member_headers).get_json()
        assert inbox["pagination"]["total"] == 2
        assert inbox["unread_count"] == 2

        assert client.patch(f"/api/v1/notifications/{first.id}/read", headers=member_headers).status_code == 200
        count = client.get("/api/v1/notifications/unread-count", headers=member_headers).get_json()
        assert count == {"unread_count": 1}

        assert client.patch("/api/v1/notifications/read-all", headers=member_headers).get_json() == {"marked_read": 1}
        assert client.patch(f"/api/v1/notifications/{first.id}/archive", headers=member_headers).status_code == 200
        assert client.delete(f"/api/v1/notifications/{first.id}", headers=member_headers).status_code == 200
        assert client.delete("/api/v1/notifications", headers=member_headers).get_json() == {"deleted": 1}

    def test_other_users_notification_is_404(self, client, member, company_admin, admin_headers):
        notif = NotificationService.send(user_id=member.id, type="system", message="x")["notification"]
        assert client.patch(f"/api/v1/notifications/{notif.id}/read", headers=admin_headers).status_code == 404
        assert client.delete(f"/api/v1/notifications/{notif.id}", headers=admin_headers).status_code == 404

    def test_inbox_requires_token(self, client):
        assert client.get("/api/v1/notifications").status_code == 401
