"""
Action plan and checklist step tests.

Test blocks:
  1. create: default checklist, one live plan per action, ownership checks
  2. Lifecycle: submit / confirm / start / complete / cancel / delete
  3. Steps: status changes, progress, custom steps, reorder, delete
  4. HTTP endpoints and tenant isolation
"""

from datetime import datetime, timedelta, timezone

import pytest

from feedback_actions.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from feedback_actions.models import db as _db
from feedback_actions.models.auth import ROLE_COMPANY_ADMIN
from feedback_actions.models.notification import Notification
from feedback_actions.models.plan import ActionPlan
from feedback_actions.services import action_plan_service as plans
from feedback_actions.services.action_plan_service import calculate_progress

NOW = datetime(2025, 4, 1, 9, tzinfo=timezone.utc)

PLAN_BODY = {
    "what_will_be_done": "Run listening sessions with every shift",
    "expected_outcome": "Shift leads hear concerns directly",
}


@pytest.fixture()
def owned_action(tenant, member, make_action):
    return make_action(tenant, assigned_to_id=member.id)


@pytest.fixture()
def draft(owned_action, member, actor_for):
    return plans.create_plan(owned_action.id, dict(PLAN_BODY), actor_for(member), now=NOW)


def _running(plan, admin, owner, actor_for):
    plans.confirm_plan(plan.id, actor_for(admin), now=NOW)
    return plans.start_plan(plan.id, actor_for(owner), now=NOW)


def _finish_required(plan, owner, actor_for):
    for step in list(plan.steps):
        if step.is_required:
            plans.update_step_status(step.id, {"status": "completed"}, actor_for(owner), now=NOW)


class TestCreatePlan:
    def test_draft_with_default_checklist(self, draft, owned_action, member):
        assert draft.status == "draft"
        assert draft.primary_owner_id == member.id
        assert [s.step_number for s in draft.steps] == [1, 2, 3, 4, 5]
        assert [s.step_type for s in draft.steps] == [
            "review", "analysis", "action", "communication", "measurement",
        ]
        assert draft.steps[-1].is_required is False
        assert draft.progress == {
            "total_steps": 5, "completed_steps": 0, "skipped_steps": 0,
            "percent_complete": 0, "current_step_number": 1,
        }
        assert owned_action.has_action_plan is True

    def test_one_live_plan_per_action(self, draft, owned_action, member, actor_for):
        with pytest.raises(ConflictError):
            plans.create_plan(owned_action.id, dict(PLAN_BODY), actor_for(member))

    def test_deleted_plan_frees_the_action(self, draft, owned_action, company_admin, actor_for):
        plans.delete_plan(draft.id, actor_for(company_admin))
        assert owned_action.has_action_plan is False
        again = plans.create_plan(owned_action.id, dict(PLAN_BODY), actor_for(company_admin))
        assert again.id != draft.id
        assert plans.get_plan_for_action(owned_action.id, actor_for(company_admin)).id == again.id

    def test_only_admin_or_assignee_may_plan(self, tenant, make_user, owned_action, actor_for):
        bystander = make_user(tenant)
        with pytest.raises(ForbiddenError):
            plans.create_plan(owned_action.id, dict(PLAN_BODY), actor_for(bystander))

    def test_owner_and_collaborators_must_be_tenant_users(self, owned_action, company_admin, member,
                                                         make_user, other_tenant, actor_for):
        outsider = make_user(other_tenant)
        with pytest.raises(ValidationError) as exc:
            plans.create_plan(owned_action.id, {**PLAN_BODY, "primary_owner": outsider.id},
                              actor_for(company_admin))
        assert "primary_owner" in exc.value.details

        plan = plans.create_plan(owned_action.id, {**PLAN_BODY, "collaborators": [member.id, outsider.id]},
                                 actor_for(company_admin))
        assert plan.collaborators == [member.id]

    @pytest.mark.parametrize("body,field", [
        ({"expected_outcome": "Shift leads hear concerns"}, "what_will_be_done"),
        ({**PLAN_BODY, "target_audience": {"type": "everyone"}}, "target_audience"),
        ({**PLAN_BODY, "planned_start_date": "2025-05-01", "planned_end_date": "2025-04-01"},
         "planned_end_date"),
    ])
    def test_invalid_payload(self, owned_action, company_admin, actor_for, body, field):
        with pytest.raises(ValidationError) as exc:
            plans.create_plan(owned_action.id, body, actor_for(company_admin))
        assert field in exc.value.details

    def test_resolved_action_cannot_be_planned(self, tenant, company_admin, make_action, actor_for):
        done = make_action(tenant, status="resolved", completed_at=NOW)
        with pytest.raises(ConflictError):
            plans.create_plan(done.id, dict(PLAN_BODY), actor_for(company_admin))

    def test_foreign_action_is_not_found(self, other_tenant, company_admin, make_action, actor_for):
        foreign = make_action(other_tenant)
        with pytest.raises(NotFoundError):
            plans.create_plan(foreign.id, dict(PLAN_BODY), actor_for(company_admin))


class TestLifecycle:
    def test_submit_confirm_start_complete(self, draft, owned_action, member, company_admin, make_user,
                                           tenant, actor_for):
        second_admin = make_user(tenant, role=ROLE_COMPANY_ADMIN)
        submitted = plans.submit_plan(draft.id, actor_for(member), now=NOW)
        assert submitted.status == "pending_approval"
        waiting = Notification.query.filter_by(event="action_plan_submitted").all()
        assert sorted(n.user_id for n in waiting) == sorted([company_admin.id, second_admin.id])

        with pytest.raises(ForbiddenError):
            plans.confirm_plan(draft.id, actor_for(member))
        confirmed = plans.confirm_plan(draft.id, actor_for(company_admin), now=NOW)
        assert confirmed.status == "approved"
        assert confirmed.confirmed_by_id == company_admin.id
        approved = Notification.query.filter_by(event="action_plan_approved").one()
        assert approved.user_id == member.id

        started = plans.start_plan(draft.id, actor_for(member), now=NOW)
        assert started.status == "in_progress"
        assert owned_action.status == "in-progress"

        _finish_required(draft, member, actor_for)
        completed = plans.complete_plan(draft.id, {"completion_notes": "Sessions held"}, actor_for(member),
                                        now=NOW + timedelta(days=3))
        assert completed.status == "completed"
        assert completed.percent_complete == 80
        assert completed.completion_notes == "Sessions held"
        assert owned_action.status == "resolved"
        assert owned_action.completed_by_id == member.id

    @pytest.mark.parametrize("verb", ["start", "complete"])
    def test_unconfirmed_plan_cannot_run(self, draft, member, actor_for, verb):
        with pytest.raises(ConflictError):
            if verb == "start":
                plans.start_plan(draft.id, actor_for(member))
            else:
                plans.complete_plan(draft.id, {}, actor_for(member))

    def test_submit_twice_conflicts(self, draft, member, actor_for):
        plans.submit_plan(draft.id, actor_for(member))
        with pytest.raises(ConflictError):
            plans.submit_plan(draft.id, actor_for(member))

    def test_complete_lists_incomplete_required_steps(self, draft, member, company_admin, actor_for):
        _running(draft, company_admin, member, actor_for)
        plans.update_step_status(draft.steps[0].id, {"status": "completed"}, actor_for(member))
        with pytest.raises(ValidationError) as exc:
            plans.complete_plan(draft.id, {}, actor_for(member))
        assert [s["step_number"] for s in exc.value.details["incomplete_steps"]] == [2, 3, 4]

    def test_cancel_releases_action_and_freezes_plan(self, draft, owned_action, member, actor_for):
        cancelled = plans.cancel_plan(draft.id, {"reason": "Superseded"}, actor_for(member), now=NOW)
        assert cancelled.status == "cancelled"
        assert cancelled.rejection_reason == "Superseded"
        assert owned_action.has_action_plan is False
        with pytest.raises(ConflictError):
            plans.update_plan(draft.id, {"expected_outcome": "Something else entirely"}, actor_for(member))
        with pytest.raises(ConflictError):
            plans.cancel_plan(draft.id, {}, actor_for(member))

    def test_update_plan_fields(self, draft, member, actor_for):
        updated = plans.update_plan(draft.id, {"success_criteria": ["eNPS +5"], "status": "completed"},
                                    actor_for(member))
        assert updated.success_criteria == ["eNPS +5"]
        assert updated.status == "draft"
        with pytest.raises(ValidationError):
            plans.update_plan(draft.id, {"status": "completed"}, actor_for(member))

    def test_collaborator_may_edit_bystander_may_not(self, draft, tenant, make_user, company_admin,
                                                     actor_for):
        helper = make_user(tenant)
        bystander = make_user(tenant)
        plans.update_plan(draft.id, {"collaborators": [helper.id]}, actor_for(company_admin))
        plans.update_plan(draft.id, {"success_criteria": ["Attendance > 80%"]}, actor_for(helper))
        with pytest.raises(ForbiddenError):
            plans.update_plan(draft.id, {"success_criteria": []}, actor_for(bystander))

    def test_delete_is_company_admin_only(self, draft, member, actor_for):
        with pytest.raises(ForbiddenError):
            plans.delete_plan(draft.id, actor_for(member))


class TestSteps:
    def test_status_changes_drive_progress(self, draft, member, company_admin, actor_for):
        _running(draft, company_admin, member, actor_for)
        first, second = draft.steps[0], draft.steps[1]

        started = plans.update_step_status(first.id, {"status": "in_progress"}, actor_for(member), now=NOW)
        assert started.started_at is not None
        plans.update_step_status(first.id, {"status": "completed", "notes": "Read 120 comments"},
                                 actor_for(member), now=NOW)
        plans.update_step_status(second.id, {"status": "skipped", "skip_reason": "Known root cause"},
                                 actor_for(member), now=NOW)

        assert first.completed_by_id == member.id
        assert first.notes == "Read 120 comments"
        assert second.skipped_by_id == member.id
        assert draft.progress == {
            "total_steps": 5, "completed_steps": 1, "skipped_steps": 1,
            "percent_complete": 40, "current_step_number": 3,
        }

    def test_required_step_needs_skip_reason(self, draft, member, company_admin, actor_for):
        _running(draft, company_admin, member, actor_for)
        with pytest.raises(ValidationError) as exc:
            plans.update_step_status(draft.steps[0].id, {"status": "skipped"}, actor_for(member))
        assert "skip_reason" in exc.value.details
        optional = draft.steps[-1]
        skipped = plans.update_step_status(optional.id, {"status": "skipped"}, actor_for(member))
        assert skipped.skip_reason == "Skipped by user"

    def test_steps_only_move_while_plan_runs(self, draft, member, actor_for):
        with pytest.raises(ConflictError):
            plans.update_step_status(draft.steps[0].id, {"status": "completed"}, actor_for(member))

    def test_insert_custom_step(self, draft, member, actor_for):
        step = plans.add_step(draft.id, {"title": "Brief shift leads", "step_type": "communication",
                                         "insert_after": 1}, actor_for(member))
        assert step.step_number == 2
        steps, progress = plans.list_steps(draft.id, actor_for(member))
        assert [s.step_number for s in steps] == [1, 2, 3, 4, 5, 6]
        assert steps[1].id == step.id
        assert progress["total_steps"] == 6
        appended = plans.add_step(draft.id, {"title": "Retro", "is_required": False}, actor_for(member))
        assert appended.step_number == 7

    def test_step_assignee_must_be_in_tenant(self, draft, member, make_user, other_tenant, actor_for):
        outsider = make_user(other_tenant)
        with pytest.raises(ValidationError):
            plans.add_step(draft.id, {"title": "Follow up", "assigned_to": outsider.id}, actor_for(member))
        with pytest.raises(ValidationError):
            plans.update_step(draft.steps[0].id, {"assigned_to": outsider.id}, actor_for(member))

    def test_update_step_details(self, draft, member, actor_for):
        step = plans.update_step(draft.steps[0].id, {"title": "Review all comments", "is_required": False},
                                 actor_for(member))
        assert step.title == "Review all comments"
        assert step.is_required is False
        with pytest.raises(ValidationError):
            plans.update_step(step.id, {"is_required": "yes"}, actor_for(member))

    def test_delete_step_renumbers(self, draft, member, company_admin, actor_for):
        doomed = draft.steps[1].id
        with pytest.raises(ForbiddenError):
            plans.delete_step(doomed, actor_for(member))
        plans.delete_step(doomed, actor_for(company_admin))
        steps, progress = plans.list_steps(draft.id, actor_for(member))
        assert [s.step_number for s in steps] == [1, 2, 3, 4]
        assert doomed not in {s.id for s in steps}
        assert progress["total_steps"] == 4

    def test_reorder(self, draft, member, actor_for):
        ids = [s.id for s in draft.steps]
        reordered = plans.reorder_steps(draft.id, {"step_ids": list(reversed(ids))}, actor_for(member))
        assert [s.id for s in reordered] == list(reversed(ids))
        assert [s.step_number for s in reordered] == [1, 2, 3, 4, 5]
        with pytest.raises(ValidationError):
            plans.reorder_steps(draft.id, {"step_ids": ids[:3]}, actor_for(member))

    def test_progress_rounds_half_up(self):
        class Step:
            def __init__(self, number, status):
                self.step_number, self.status, self.title = number, status, f"Step {number}"

            @property
            def is_done(self):
                return self.status in ("completed", "skipped")

        steps = [Step(1, "completed")] + [Step(n, "pending") for n in range(2, 9)]
        progress = calculate_progress(steps)
        assert progress["percent_complete"] == 13
        assert progress["current_step_title"] == "Step 2"
        assert calculate_progress([])["percent_complete"] == 0


class TestPlanEndpoints:
    @pytest.fixture()
    def member_headers(self, member, auth_headers):
        return auth_headers(member)

    @pytest.fixture()
    def admin_headers(self, company_admin, auth_headers):
        return auth_headers(company_admin)

    def test_full_flow_over_http(self, client, owned_action, member_headers, admin_headers):
        empty = client.get(f"/api/v1/actions/{owned_action.id}/plan", headers=member_headers)
        assert empty.status_code == 200
        assert empty.get_json() == {"action_plan": None, "steps": []}

        res = client.post(f"/api/v1/actions/{owned_action.id}/plan", json=PLAN_BODY, headers=member_headers)
        assert res.status_code == 201
        plan = res.get_json()
        assert len(plan["steps"]) == 5
        plan_id = plan["id"]

        assert client.post(f"/api/v1/action-plans/{plan_id}/submit", headers=member_headers).status_code == 200
        assert client.post(f"/api/v1/action-plans/{plan_id}/confirm", headers=member_headers).status_code == 403
        assert client.post(f"/api/v1/action-plans/{plan_id}/confirm", headers=admin_headers).status_code == 200
        assert client.post(f"/api/v1/action-plans/{plan_id}/start", headers=member_headers).get_json()[
            "status"] == "in_progress"

        step_id = plan["steps"][0]["id"]
        moved = client.put(f"/api/v1/action-steps/{step_id}/status", json={"status": "completed"},
                           headers=member_headers)
        assert moved.status_code == 200
        assert moved.get_json()["progress"]["percent_complete"] == 20

        early = client.post(f"/api/v1/action-plans/{plan_id}/complete", json={}, headers=member_headers)
        assert early.status_code == 400
        assert len(early.get_json()["details"]["incomplete_steps"]) == 3

        listed = client.get(f"/api/v1/action-plans/{plan_id}/steps", headers=member_headers).get_json()
        assert listed["progress"]["completed_steps"] == 1

    def test_wrong_state_is_409(self, client, draft, member_headers):
        res = client.post(f"/api/v1/action-plans/{draft.id}/start", headers=member_headers)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_foreign_plan_is_404(self, client, draft, other_tenant, make_user, auth_headers):
        foreign_admin = make_user(other_tenant, role=ROLE_COMPANY_ADMIN)
        headers = auth_headers(foreign_admin)
        assert client.get(f"/api/v1/action-plans/{draft.id}", headers=headers).status_code == 404
        assert client.put(f"/api/v1/action-steps/{draft.steps[0].id}", json={"title": "Hijacked"},
                          headers=headers).status_code == 404

    def test_wrong_shapes_are_400(self, client, draft, member_headers):
        assert client.put(f"/api/v1/action-plans/{draft.id}", json={"collaborators": "everyone"},
                          headers=member_headers).status_code == 400
        assert client.post(f"/api/v1/action-plans/{draft.id}/steps/reorder", json={"step_ids": "1,2"},
                           headers=member_headers).status_code == 400
        assert client.put(f"/api/v1/action-steps/{draft.steps[0].id}/status", json={"status": "done"},
                          headers=member_headers).status_code == 400

    def test_delete_plan_endpoint(self, client, draft, admin_headers):
        res = client.delete(f"/api/v1/action-plans/{draft.id}", headers=admin_headers)
        assert res.status_code == 200
        _db.session.expire_all()
        assert _db.session.get(ActionPlan, draft.id).is_deleted is True
        assert client.get(f"/api/v1/action-plans/{draft.id}", headers=admin_headers).status_code == 404

    def test_requires_authentication(self, client, draft):
        assert client.get(f"/api/v1/action-plans/{draft.id}").status_code == 401
