"""
Action Plan Service: plan lifecycle and checklist steps.

A plan is created in ``draft`` with the default five-step checklist, must be
confirmed by a company admin before execution, and completes only once every
required step is completed or skipped. Completing a plan resolves its action.

Authorization:
    - read: anyone who may view the parent action
    - mutate: company admins, the plan owner, its collaborators and the
      action's assignee
    - confirm, delete plan, delete step: company admins only

Wrong-state transitions raise ConflictError; payload and checklist problems
raise ValidationError. Every public function commits its own writes.
"""

import logging
import math

from sqlalchemy import func, select

from feedback_actions.core.exceptions import ConflictError, ForbiddenError, ValidationError
from feedback_actions.models import db
from feedback_actions.models.action import STATUS_RESOLVED, Action
from feedback_actions.models.auth import ROLE_COMPANY_ADMIN, User
from feedback_actions.models.plan import (
    DEFAULT_CHECKLIST,
    PLAN_APPROVED,
    PLAN_CANCELLED,
    PLAN_COMPLETED,
    PLAN_DRAFT,
    PLAN_IN_PROGRESS,
    PLAN_PENDING_APPROVAL,
    ActionPlan,
    ActionStep,
)
from feedback_actions.services import action_store
from feedback_actions.services.action_validator import (
    validate_plan_create,
    validate_plan_update,
    validate_step_create,
    validate_step_order,
    validate_step_status,
    validate_step_update,
)
from feedback_actions.services.helpers.scoped_queries import get_scoped
from feedback_actions.services.notification import NotificationService
from feedback_actions.services.scope_guard import ActorScope, ensure_can_view, require_role
from feedback_actions.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _log_extra(plan, actor: ActorScope | None = None):
    return {
        "tenant_id": plan.tenant_id,
        "action_id": plan.action_id,
        "plan_id": plan.id,
        "actor_id": actor.user_id if actor else None,
    }


def _tenant_user_ids(tenant_id, user_ids) -> set[int]:
    if not user_ids:
        return set()
    stmt = select(User.id).where(User.id.in_(user_ids), User.tenant_id == tenant_id)
    return set(db.session.execute(stmt).scalars())


def _require_tenant_user(tenant_id, user_id, field):
    if user_id is not None and user_id not in _tenant_user_ids(tenant_id, [user_id]):
        raise ValidationError("Invalid action plan payload", details={field: "user not found in tenant"})


def _load_plan(plan_id, actor: ActorScope) -> tuple[ActionPlan, Action]:
    plan = get_scoped(ActionPlan, plan_id, tenant_id=actor.tenant_id, resource="Action plan")
    action = action_store.find_by_id(plan.action_id, actor.tenant_id)
    ensure_can_view(actor, action)
    return plan, action


def _load_step(step_id, actor: ActorScope) -> tuple[ActionStep, ActionPlan, Action]:
    step = get_scoped(ActionStep, step_id, tenant_id=actor.tenant_id, resource="Step")
    plan, action = _load_plan(step.plan_id, actor)
    return step, plan, action


def can_edit_plan(actor: ActorScope, plan: ActionPlan, action: Action) -> bool:
    if actor.is_company_admin:
        return True
    if actor.user_id is None:
        return False
    return (
        actor.user_id == plan.primary_owner_id
        or actor.user_id in (plan.collaborators or [])
        or actor.user_id == action.assigned_to_id
    )


def _ensure_can_edit(actor, plan, action):
    if not can_edit_plan(actor, plan, action):
        raise ForbiddenError("Only company admins or the plan's owners can change this plan")


def _ensure_status(plan, *allowed, verb):
    if plan.status not in allowed:
        raise ConflictError(f"Cannot {verb} plan with status: {plan.status}")


def _ensure_open(plan, verb="update"):
    if plan.is_terminal:
        raise ConflictError(f"Cannot {verb} plan with status: {plan.status}")


def calculate_progress(steps) -> dict:
    """Progress counters for a set of steps (skipped steps count as done)."""
    ordered = sorted(steps, key=lambda s: s.step_number)
    total = len(ordered)
    completed = sum(1 for s in ordered if s.status == "completed")
    skipped = sum(1 for s in ordered if s.status == "skipped")
    percent = math.floor((completed + skipped) / total * 100 + 0.5) if total else 0
    current = next((s for s in ordered if not s.is_done), None)
    return {
        "total_steps": total,
        "completed_steps": completed,
        "skipped_steps": skipped,
        "percent_complete": percent,
        "current_step_number": current.step_number if current else total,
        "current_step_title": current.title if current else "All steps complete",
    }


def refresh_progress(plan: ActionPlan) -> dict:
    """Recalculate and stage the plan's progress counters (caller commits)."""
    progress = calculate_progress(plan.steps)
    for key in ("total_steps", "completed_steps", "skipped_steps", "percent_complete", "current_step_number"):
        setattr(plan, key, progress[key])
    return progress


def _renumber(plan: ActionPlan) -> None:
    for number, step in enumerate(sorted(plan.steps, key=lambda s: (s.step_number, s.id)), start=1):
        step.step_number = number


def _notify(**kwargs):
    try:
        return NotificationService.send(**kwargs)
    except Exception:
        logger.exception("Notification dispatch failed", extra={"tenant_id": kwargs.get("tenant_id")})
        return None


# ── Plans ────────────────────────────────────────────────────────────────────


def create_plan(action_id, data, actor: ActorScope, *, now=None) -> ActionPlan:
    """Create a draft plan with the default checklist.

    Raises:
        ValidationError, NotFoundError, ForbiddenError,
        ConflictError (the action already has a live plan, or is resolved).
    """
    clean = validate_plan_create(data)
    now = now or utcnow()
    action = action_store.find_by_id(action_id, actor.tenant_id)
    ensure_can_view(actor, action)

    if not actor.is_company_admin and (actor.user_id is None or actor.user_id != action.assigned_to_id):
        raise ForbiddenError("Only company admins or the assignee can plan this action")
    owner_id = clean.get("primary_owner", actor.user_id)
    if action.status == STATUS_RESOLVED:
        raise ConflictError("Cannot plan a resolved action")
    existing = ActionPlan.query_active().filter_by(tenant_id=actor.tenant_id, action_id=action.id).first()
    if existing is not None:
        raise ConflictError("Action plan already exists for this action")
    _require_tenant_user(actor.tenant_id, owner_id, "primary_owner")

    collaborators = clean.get("collaborators") or []
    known = _tenant_user_ids(actor.tenant_id, collaborators)
    plan = ActionPlan(
        tenant_id=actor.tenant_id,
        action_id=action.id,
        what_will_be_done=clean["what_will_be_done"],
        expected_outcome=clean["expected_outcome"],
        target_audience=clean.get("target_audience") or {"type": "all_employees"},
        success_criteria=clean.get("success_criteria") or [],
        primary_owner_id=owner_id,
        collaborators=[c for c in dict.fromkeys(collaborators) if c in known],
        planned_start_date=clean.get("planned_start_date"),
        planned_end_date=clean.get("planned_end_date"),
        status=PLAN_DRAFT,
        created_by_id=actor.user_id,
        created_at=now,
        updated_at=now,
    )
    for number, (title, step_type, required) in enumerate(DEFAULT_CHECKLIST, start=1):
        plan.steps.append(ActionStep(
            tenant_id=actor.tenant_id,
            step_number=number,
            title=title,
            step_type=step_type,
            is_required=required,
        ))
    db.session.add(plan)
    refresh_progress(plan)
    action.has_action_plan = True
    action_store.save(action)
    logger.info("Action plan created", extra=_log_extra(plan, actor))
    return plan


def get_plan(plan_id, actor: ActorScope) -> ActionPlan:
    plan, _ = _load_plan(plan_id, actor)
    return plan


def get_plan_for_action(action_id, actor: ActorScope) -> ActionPlan | None:
    """The live plan of an action, or None when it has none yet."""
    action = action_store.find_by_id(action_id, actor.tenant_id)
    ensure_can_view(actor, action)
    return ActionPlan.query_active().filter_by(tenant_id=actor.tenant_id, action_id=action.id).first()


def update_plan(plan_id, data, actor: ActorScope, *, now=None) -> ActionPlan:
    clean = validate_plan_update(data)
    plan, action = _load_plan(plan_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_open(plan)

    if "collaborators" in clean:
        known = _tenant_user_ids(actor.tenant_id, clean["collaborators"])
        clean["collaborators"] = [c for c in dict.fromkeys(clean["collaborators"]) if c in known]
    for field, value in clean.items():
        setattr(plan, field, value)
    plan.updated_at = now or utcnow()
    db.session.commit()

    if plan.status in (PLAN_APPROVED, PLAN_IN_PROGRESS):
        logger.info(
            "Action plan modified during execution: %s", ", ".join(sorted(clean)),
            extra=_log_extra(plan, actor),
        )
    return plan


def submit_plan(plan_id, actor: ActorScope, *, now=None) -> ActionPlan:
    """draft -> pending_approval; company admins are asked to confirm."""
    plan, action = _load_plan(plan_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_status(plan, PLAN_DRAFT, verb="submit")
    plan.status = PLAN_PENDING_APPROVAL
    plan.updated_at = now or utcnow()
    db.session.commit()
    logger.info("Action plan submitted for approval", extra=_log_extra(plan, actor))

    approvers = db.session.execute(
        select(User.id).where(
            User.tenant_id == plan.tenant_id,
            User.role == ROLE_COMPANY_ADMIN,
            User.is_active.is_(True),
            User.id != actor.user_id,
        ).order_by(User.id)
    ).scalars().all()
    if approvers:
        NotificationService.send_bulk(
            approvers,
            type="action_plan_submitted",
            message=f'The plan for "{action.title}" is waiting for approval',
            reference={"type": "ActionPlan", "id": plan.id},
            action_url=f"/actions/{action.id}/plan",
            data={"action_plan_id": plan.id, "action_id": action.id},
            tenant_id=plan.tenant_id,
        )
    return plan


def confirm_plan(plan_id, actor: ActorScope, *, now=None) -> ActionPlan:
    """Human confirmation: draft | pending_approval -> approved (companyAdmin)."""
    require_role(actor, ROLE_COMPANY_ADMIN)
    plan, action = _load_plan(plan_id, actor)
    _ensure_status(plan, PLAN_DRAFT, PLAN_PENDING_APPROVAL, verb="confirm")
    now = now or utcnow()
    plan.status = PLAN_APPROVED
    plan.confirmed_by_id = actor.user_id
    plan.confirmed_at = now
    plan.updated_at = now
    db.session.commit()
    logger.info("Action plan confirmed", extra=_log_extra(plan, actor))

    if plan.primary_owner_id and plan.primary_owner_id != actor.user_id:
        _notify(
            user_id=plan.primary_owner_id,
            type="action_plan_approved",
            message="Your action plan has been approved and is ready to execute",
            reference={"type": "ActionPlan", "id": plan.id},
            action_url=f"/actions/{action.id}/plan",
            data={"action_plan_id": plan.id, "action_id": action.id},
            tenant_id=plan.tenant_id,
        )
    return plan


def start_plan(plan_id, actor: ActorScope, *, now=None) -> ActionPlan:
    """approved -> in_progress; the action moves to in-progress."""
    plan, action = _load_plan(plan_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_status(plan, PLAN_APPROVED, verb="start")
    now = now or utcnow()
    plan.status = PLAN_IN_PROGRESS
    plan.actual_start_date = plan.actual_start_date or now
    plan.updated_at = now
    if action.status != STATUS_RESOLVED:
        action.status = "in-progress"
        action.updated_at = now
    action_store.save(action)
    logger.info("Action plan execution started", extra=_log_extra(plan, actor))
    return plan


def complete_plan(plan_id, data, actor: ActorScope, *, now=None) -> ActionPlan:
    """in_progress -> completed once every required step is done; resolves the action.

    Raises:
        ValidationError: required steps are still open (listed in ``details``).
    """
    data = data if isinstance(data, dict) else {}
    notes = data.get("completion_notes")
    if notes is not None and (not isinstance(notes, str) or len(notes) > 5000):
        raise ValidationError(
            "Invalid action plan payload",
            details={"completion_notes": "must be a string of at most 5000 characters"},
        )
    plan, action = _load_plan(plan_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_status(plan, PLAN_IN_PROGRESS, verb="complete")

    incomplete = [s for s in plan.steps if s.is_required and not s.is_done]
    if incomplete:
        raise ValidationError(
            f"Cannot complete plan. {len(incomplete)} required step(s) are incomplete.",
            details={"incomplete_steps": [
                {"step_number": s.step_number, "title": s.title} for s in incomplete
            ]},
        )

    now = now or utcnow()
    refresh_progress(plan)
    plan.status = PLAN_COMPLETED
    plan.completed_by_id = actor.user_id
    plan.completed_at = now
    plan.actual_end_date = now
    plan.completion_notes = notes
    plan.updated_at = now
    if action.status != STATUS_RESOLVED:
        action.status = STATUS_RESOLVED
        action.completed_at = now
        action.completed_by_id = actor.user_id
        action.updated_at = now
    action_store.save(action)
    logger.info("Action plan completed", extra=_log_extra(plan, actor))
    return plan


def cancel_plan(plan_id, data, actor: ActorScope, *, now=None) -> ActionPlan:
    data = data if isinstance(data, dict) else {}
    reason = data.get("reason")
    if reason is not None and (not isinstance(reason, str) or len(reason) > 500):
        raise ValidationError(
            "Invalid action plan payload", details={"reason": "must be a string of at most 500 characters"},
        )
    plan, action = _load_plan(plan_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_open(plan, verb="cancel")
    now = now or utcnow()
    plan.status = PLAN_CANCELLED
    plan.rejected_by_id = actor.user_id
    plan.rejected_at = now
    plan.rejection_reason = reason or "Cancelled by user"
    plan.updated_at = now
    action.has_action_plan = False
    action_store.save(action)
    logger.info("Action plan cancelled", extra=_log_extra(plan, actor))
    return plan


def delete_plan(plan_id, actor: ActorScope) -> ActionPlan:
    """Soft-delete a plan (companyAdmin); the action may then get a new one."""
    require_role(actor, ROLE_COMPANY_ADMIN)
    plan, action = _load_plan(plan_id, actor)
    plan.soft_delete(by_user_id=actor.user_id)
    action.has_action_plan = False
    action_store.save(action)
    logger.info("Action plan deleted", extra=_log_extra(plan, actor))
    return plan


# ── Steps ────────────────────────────────────────────────────────────────────


def list_steps(plan_id, actor: ActorScope) -> tuple[list[ActionStep], dict]:
    plan, _ = _load_plan(plan_id, actor)
    return sorted(plan.steps, key=lambda s: s.step_number), calculate_progress(plan.steps)


def add_step(plan_id, data, actor: ActorScope) -> ActionStep:
    """Append a custom step, or insert it after ``insert_after`` (later steps shift down)."""
    clean = validate_step_create(data)
    plan, action = _load_plan(plan_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_open(plan, verb="add steps to")
    _require_tenant_user(actor.tenant_id, clean.get("assigned_to"), "assigned_to")

    last = db.session.execute(
        select(func.max(ActionStep.step_number)).where(ActionStep.plan_id == plan.id)
    ).scalar_one() or 0
    insert_after = clean.get("insert_after")
    if insert_after is not None and insert_after < last:
        number = insert_after + 1
        for existing in plan.steps:
            if existing.step_number >= number:
                existing.step_number += 1
    else:
        number = last + 1

    step = ActionStep(
        tenant_id=plan.tenant_id,
        step_number=number,
        title=clean["title"],
        description=clean.get("description"),
        step_type=clean.get("step_type", "action"),
        is_required=clean.get("is_required", True),
        assigned_to_id=clean.get("assigned_to"),
        due_date=clean.get("due_date"),
        notes=clean.get("notes"),
    )
    plan.steps.append(step)
    refresh_progress(plan)
    db.session.commit()
    logger.info("Custom step added", extra={**_log_extra(plan, actor), "step_id": step.id})
    return step


def update_step(step_id, data, actor: ActorScope) -> ActionStep:
    clean = validate_step_update(data)
    step, plan, action = _load_step(step_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_open(plan, verb="edit steps of")
    if "assigned_to" in clean:
        _require_tenant_user(actor.tenant_id, clean["assigned_to"], "assigned_to")
        step.assigned_to_id = clean.pop("assigned_to")
    for field, value in clean.items():
        setattr(step, field, value)
    refresh_progress(plan)
    db.session.commit()
    return step


def update_step_status(step_id, data, actor: ActorScope, *, now=None) -> ActionStep:
    """Move a step to pending / in_progress / completed / skipped.

    Only steps of an in-progress plan change status. Skipping a required step
    needs a ``skip_reason``.
    """
    clean = validate_step_status(data)
    step, plan, action = _load_step(step_id, actor)
    _ensure_can_edit(actor, plan, action)
    if plan.status != PLAN_IN_PROGRESS:
        raise ConflictError("Cannot update step. Action plan is not in progress.")

    status = clean["status"]
    if status == "skipped" and step.is_required and not clean.get("skip_reason"):
        raise ValidationError(
            "Required steps cannot be skipped without a reason",
            details={"skip_reason": "is required to skip a required step"},
        )

    now = now or utcnow()
    previous = step.status
    step.status = status
    if status == "in_progress" and step.started_at is None:
        step.started_at = now
    elif status == "completed":
        step.completed_at = now
        step.completed_by_id = actor.user_id
        if clean.get("notes"):
            step.notes = clean["notes"]
    elif status == "skipped":
        step.skipped_at = now
        step.skipped_by_id = actor.user_id
        step.skip_reason = clean.get("skip_reason") or "Skipped by user"
    progress = refresh_progress(plan)
    plan.updated_at = now
    db.session.commit()
    logger.info(
        "Step %s -> %s (%d%% complete)", previous, status, progress["percent_complete"],
        extra={**_log_extra(plan, actor), "step_id": step.id},
    )
    return step


def delete_step(step_id, actor: ActorScope) -> ActionPlan:
    """Remove a step (companyAdmin) and close the numbering gap."""
    require_role(actor, ROLE_COMPANY_ADMIN)
    step, plan, _ = _load_step(step_id, actor)
    _ensure_open(plan, verb="remove steps from")
    plan.steps.remove(step)
    _renumber(plan)
    refresh_progress(plan)
    db.session.commit()
    logger.info("Step deleted", extra={**_log_extra(plan, actor), "step_id": step_id})
    return plan


def reorder_steps(plan_id, data, actor: ActorScope) -> list[ActionStep]:
    """Renumber steps in the given order; ``step_ids`` must list every step of the plan."""
    order = validate_step_order(data)
    plan, action = _load_plan(plan_id, actor)
    _ensure_can_edit(actor, plan, action)
    _ensure_open(plan, verb="reorder steps of")
    by_id = {s.id: s for s in plan.steps}
    if set(order) != set(by_id):
        raise ValidationError("Invalid step order", details={"step_ids": "must list every step of the plan once"})
    for number, step_id in enumerate(order, start=1):
        by_id[step_id].step_number = number
    refresh_progress(plan)
    db.session.commit()
    return sorted(plan.steps, key=lambda s: s.step_number)
