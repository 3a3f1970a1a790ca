"""
Action Service: the gated entry point for every Action mutation.

All creation paths (manual, survey feedback ingestion, AI batch) funnel into
``create_action``; every update path appends history and dispatches
notifications through the same helpers. ``tenant_id`` and the actor are
always supplied by the caller's guard, never read from the payload.

Transaction policy: each public function commits its own writes, then
dispatches notifications. Notification failures are logged, never raised.
"""

import logging
from datetime import timedelta

from sqlalchemy import select

from feedback_actions.core.exceptions import (
    ActionEngineError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from feedback_actions.models import db
from feedback_actions.models.action import STATUS_RESOLVED, Action, AssignmentHistory
from feedback_actions.models.auth import ROLE_ADMIN, ROLE_COMPANY_ADMIN, User
from feedback_actions.models.survey import FeedbackAnalysis
from feedback_actions.services import action_store
from feedback_actions.services.action_validator import (
    validate_assign,
    validate_bulk_update,
    validate_create,
    validate_update,
)
from feedback_actions.services.helpers.scoped_queries import get_scoped
from feedback_actions.services.notification import NotificationService
from feedback_actions.services.rule_matcher import propose_assignment
from feedback_actions.services.scope_guard import (
    ActorScope,
    ensure_can_assign,
    ensure_can_view,
    hidden_survey_ids,
    require_role,
)
from feedback_actions.utils.helpers import utcnow

logger = logging.getLogger(__name__)

PRIORITY_DUE_OFFSET_DAYS = {"high": 1, "medium": 7, "low": 14, "long-term": 30}

ROOT_CAUSE_KEYWORDS = (
    ("compensation", ("compensation", "salary", "pay", "benefits")),
    ("process", ("process", "workflow", "procedure", "inefficiency")),
    ("communication", ("communication", "transparency", "feedback")),
    ("management", ("management", "leadership", "supervisor")),
    ("workload", ("workload", "burnout", "overtime", "stress")),
    ("culture", ("culture", "diversity", "inclusion", "environment")),
    ("resources", ("resources", "tools", "training", "equipment")),
)


# ── Helpers ──────────────────────────────────────────────────────────────────


def due_date_for(priority, now):
    return now + timedelta(days=PRIORITY_DUE_OFFSET_DAYS.get(priority, 7))


def root_cause_for(categories) -> str:
    """Map feedback categories onto the root-cause enum via keyword match."""
    for raw in categories or []:
        if not isinstance(raw, str):
            continue
        lowered = raw.lower()
        for root_cause, keywords in ROOT_CAUSE_KEYWORDS:
            if any(k in lowered for k in keywords):
                return root_cause
    return "unknown"


def _tenant_user(tenant_id, user_id, label="User") -> User:
    """Load a user that must belong to ``tenant_id``; foreign users are NotFound."""
    stmt = select(User).where(User.id == user_id, User.tenant_id == tenant_id)
    user = db.session.execute(stmt).scalar_one_or_none()
    if user is None:
        raise NotFoundError(resource=label, resource_id=user_id, tenant_id=tenant_id)
    return user


def _append_history(action, *, from_user, to_user, to_team, by_user, auto, note, at):
    entry = AssignmentHistory(
        tenant_id=action.tenant_id,
        from_user_id=from_user,
        to_user_id=to_user,
        to_team=to_team,
        by_user_id=by_user,
        auto=auto,
        note=note,
        at=at,
    )
    action.history.append(entry)
    return entry


def _notify(**kwargs):
    try:
        return NotificationService.send(**kwargs)
    except Exception:
        logger.exception("Notification dispatch failed", extra={"tenant_id": kwargs.get("tenant_id")})
        return None


def _log_extra(action, actor_id=None):
    return {"tenant_id": action.tenant_id, "action_id": action.id, "actor_id": actor_id}


# ── Feedback enrichment ──────────────────────────────────────────────────────


def enrich_from_feedback(action: Action, feedback: FeedbackAnalysis, provided: dict) -> None:
    """Fill provenance, problem statement, root cause and evidence from feedback.

    Only fields the caller did not set are touched, so applying it twice
    yields the same action.
    """
    meta = provided.get("metadata") or {}
    categories = [c for c in (feedback.categories or []) if isinstance(c, str)]

    if action.survey_id is None:
        action.survey_id = meta.get("survey_id") or feedback.survey_id
    if action.response_id is None:
        action.response_id = meta.get("response_id") or feedback.response_id
    if action.sentiment is None:
        action.sentiment = meta.get("sentiment") or feedback.sentiment
    if action.confidence is None and feedback.confidence is not None:
        action.confidence = feedback.confidence

    if not action.problem_statement:
        action.problem_statement = (
            feedback.summary or (", ".join(categories) if categories else None) or action.description
        )

    root_cause = provided.get("root_cause") or {}
    if root_cause.get("category", "unknown") == "unknown" and action.root_cause_category in (None, "unknown"):
        action.root_cause_category = root_cause_for(categories)

    if "category" not in provided and categories and action.category in (None, "general"):
        action.category = categories[0]

    if not action.evidence:
        action.evidence = {
            "response_count": 1,
            "respondent_count": 1,
            "response_ids": [action.response_id] if action.response_id else [],
            "comment_excerpts": [{
                "text": (feedback.summary or "")[:500],
                "sentiment": feedback.sentiment or "neutral",
                "response_id": action.response_id,
            }],
            "confidence_score": (
                round(action.confidence * 100) if action.confidence is not None else None
            ),
        }


# ── Create ───────────────────────────────────────────────────────────────────


def create_action(data, tenant_id, actor_user_id, *, skip_notification=False, now=None) -> Action:
    """Create an action through the single gated entry point.

    Args:
        data: Raw command. ``tenant_id`` and unknown keys are discarded.
        tenant_id: Service-enforced tenant scope.
        actor_user_id: Creating user, or None for system-generated actions.
        skip_notification: Suppress the assignee notification (batch callers).
        now: Clock override.

    Raises:
        ValidationError: Schema violation (field-level ``details``).
        NotFoundError: Feedback, assignee or actor outside the tenant.
    """
    clean = validate_create(data)
    now = now or utcnow()

    if actor_user_id is not None:
        _tenant_user(tenant_id, actor_user_id)

    feedback = None
    if clean.get("feedback_id") is not None:
        feedback = get_scoped(FeedbackAnalysis, clean["feedback_id"], tenant_id=tenant_id, resource="Feedback")

    assigned_to = clean.get("assigned_to")
    if assigned_to is not None:
        _tenant_user(tenant_id, assigned_to, label="Assignee")

    meta = clean.get("metadata") or {}
    root_cause = clean.get("root_cause") or {}
    action = Action(
        tenant_id=tenant_id,
        title=clean.get("title") or clean["description"][:80],
        description=clean["description"],
        priority=clean["priority"],
        status="pending",
        category=clean.get("category") or "general",
        source=clean.get("source") or "manual",
        tags=clean.get("tags") or [],
        team=clean.get("team"),
        department=clean.get("department"),
        problem_statement=clean.get("problem_statement"),
        root_cause_category=root_cause.get("category") or "unknown",
        root_cause_summary=root_cause.get("summary"),
        affected_audience=clean.get("affected_audience") or {"segments": [], "estimated_count": 0},
        priority_reason=clean.get("priority_reason"),
        urgency_reason=clean.get("urgency_reason"),
        estimated_hours=clean.get("estimated_hours"),
        evidence=clean.get("evidence"),
        survey_id=meta.get("survey_id"),
        response_id=meta.get("response_id"),
        sentiment=meta.get("sentiment"),
        confidence=meta.get("confidence"),
        urgency=meta.get("urgency"),
        feedback_id=feedback.id if feedback else None,
        created_by_id=actor_user_id,
        created_at=now,
        updated_at=now,
    )
    if feedback is not None:
        enrich_from_feedback(action, feedback, clean)

    assigned_team = clean.get("assigned_to_team")
    auto, note = False, None
    if assigned_to is None:
        proposal = propose_assignment(tenant_id, {
            **clean,
            "category": action.category,
            "source": action.source,
            "survey_id": action.survey_id,
            "sentiment": action.sentiment,
            "root_cause": action.root_cause_category,
        })
        if proposal:
            assigned_to = proposal["assigned_to"]
            assigned_team = proposal["assigned_to_team"] or assigned_team
            if proposal["priority"]:
                action.priority = proposal["priority"]
            auto, note = True, proposal["note"]

    action.assigned_to_id = assigned_to
    action.assigned_to_team = assigned_team
    action.auto_assigned = auto
    action.due_date = clean.get("due_date") or due_date_for(action.priority, now)
    _append_history(
        action, from_user=None, to_user=assigned_to, to_team=assigned_team,
        by_user=actor_user_id, auto=auto, note=note, at=now,
    )

    action_store.create(action)
    logger.info("Action created", extra=_log_extra(action, actor_user_id))

    if assigned_to is not None and not skip_notification:
        _notify(
            user_id=assigned_to,
            type="action_assigned",
            message=f"New {action.priority} priority action assigned: {action.description[:100]}",
            reference={"type": "Action", "id": action.id},
            action_url=f"/actions/{action.id}",
            data={"action_id": action.id, "priority": action.priority, "auto_assigned": auto},
            tenant_id=tenant_id,
        )
    return action


def create_action_from_feedback(feedback_id, tenant_id, *, now=None) -> Action:
    """Survey-feedback ingestion: one system-created action per feedback item.

    Negative sentiment yields a high-priority action, which is fanned out to
    its owners as urgent.
    """
    feedback = get_scoped(FeedbackAnalysis, feedback_id, tenant_id=tenant_id, resource="Feedback")
    categories = [c for c in (feedback.categories or []) if isinstance(c, str)]
    description = feedback.summary or (
        f"Follow up on feedback about {', '.join(categories)}" if categories
        else "Follow up on survey feedback"
    )
    priority = "high" if feedback.sentiment == "negative" else "medium"
    action = create_action(
        {
            "description": description,
            "priority": priority,
            "feedback_id": feedback.id,
            "source": "survey_feedback",
        },
        tenant_id,
        None,
        skip_notification=priority == "high",
        now=now,
    )
    if action.priority == "high":
        try:
            NotificationService.notify_urgent_action(action)
        except Exception:
            logger.exception("Urgent fan-out failed", extra=_log_extra(action))
    return action


# ── Read ─────────────────────────────────────────────────────────────────────


def get_action(action_id, actor: ActorScope) -> Action:
    action = action_store.find_by_id(action_id, actor.tenant_id)
    ensure_can_view(actor, action)
    return action


def list_actions(actor: ActorScope, filters: dict | None = None, *, page=1, limit=20, sort=None) -> dict:
    filters = dict(filters or {})
    filters["exclude_survey_ids"] = hidden_survey_ids(actor)
    items, total = action_store.find_by_filter(
        actor.tenant_id, filters, page=page, limit=limit, sort=sort,
    )
    limit = min(max(int(limit or 20), 1), action_store.MAX_PAGE_SIZE)
    return {
        "actions": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
        "summary": action_store.summary_counts(actor.tenant_id, filters),
    }


# ── Update ───────────────────────────────────────────────────────────────────


def _apply_status(action, new_status, actor_user_id, actor_role, now) -> bool:
    """Apply a status transition. Returns True when the status changed."""
    old = action.status
    if old == STATUS_RESOLVED and new_status == STATUS_RESOLVED:
        raise ConflictError("Action is already resolved")
    if old == new_status:
        return False
    if old == STATUS_RESOLVED:
        if actor_role != ROLE_COMPANY_ADMIN:
            raise ForbiddenError("Only company admins can reopen a resolved action")
        action.completed_at = None
        action.completed_by_id = None
    if new_status == STATUS_RESOLVED:
        if action.completed_at is None:
            action.completed_at = now
        action.completed_by_id = actor_user_id
    action.status = new_status
    return True


def update_action(action_id, changes, tenant_id, actor_user_id, actor_role, *, now=None) -> Action:
    """Apply whitelisted field changes.

    Authorization: admin/companyAdmin, or the current assignee.

    Raises:
        ValidationError, NotFoundError, ForbiddenError,
        ConflictError (re-resolving), ConcurrentModificationError.
    """
    clean = validate_update(changes)
    now = now or utcnow()
    action = action_store.find_by_id(action_id, tenant_id)

    is_admin = actor_role in (ROLE_ADMIN, ROLE_COMPANY_ADMIN)
    if not is_admin and (actor_user_id is None or action.assigned_to_id != actor_user_id):
        raise ForbiddenError("Only admins or the current assignee can update this action")

    old_status = action.status
    status_changed = False
    if "status" in clean:
        status_changed = _apply_status(action, clean["status"], actor_user_id, actor_role, now)
    for field in ("description", "priority", "team", "due_date", "tags", "category", "resolution"):
        if field in clean:
            setattr(action, field, clean[field])
    action.updated_at = now

    action_store.save(action)
    logger.info("Action updated", extra=_log_extra(action, actor_user_id))

    if status_changed and action.assigned_to_id and action.assigned_to_id != actor_user_id:
        _notify(
            user_id=action.assigned_to_id,
            type="action_status_updated",
            message=f'Action "{action.title}" moved from {old_status} to {action.status}',
            reference={"type": "Action", "id": action.id},
            action_url=f"/actions/{action.id}",
            data={"action_id": action.id, "old_status": old_status, "new_status": action.status},
            tenant_id=tenant_id,
        )
    return action


def assign_action(action_id, data, actor: ActorScope, *, now=None) -> Action:
    """Manually (re)assign an action to a user and/or team.

    Reassigning to the current assignee still appends a history entry.
    """
    clean = validate_assign(data)
    now = now or utcnow()
    action = action_store.find_by_id(action_id, actor.tenant_id)
    ensure_can_assign(actor, action)

    if clean.get("assigned_to") is not None:
        _tenant_user(actor.tenant_id, clean["assigned_to"], label="Assignee")

    previous = action.assigned_to_id
    if "assigned_to" in clean:
        action.assigned_to_id = clean["assigned_to"]
    if "team" in clean:
        action.assigned_to_team = clean["team"]
    action.auto_assigned = False
    action.updated_at = now
    _append_history(
        action, from_user=previous, to_user=action.assigned_to_id,
        to_team=action.assigned_to_team, by_user=actor.user_id,
        auto=False, note="Manual assignment", at=now,
    )
    action_store.save(action)
    logger.info("Action assigned", extra=_log_extra(action, actor.user_id))

    new_owner = action.assigned_to_id
    if new_owner and new_owner != previous and new_owner != actor.user_id:
        _notify(
            user_id=new_owner,
            type="action_assigned",
            message=f"New {action.priority} priority action assigned: {action.description[:100]}",
            reference={"type": "Action", "id": action.id},
            action_url=f"/actions/{action.id}",
            data={"action_id": action.id, "assigned_by": actor.user_id},
            tenant_id=actor.tenant_id,
        )
    return action


def bulk_update(data, actor: ActorScope, *, now=None) -> dict:
    """Best-effort per-item update of priority/status/assignee/team.

    Each action commits independently; failures are reported per item.

    Returns:
        ``{"results": [{"id", "ok", ["error", "message"]}], "updated", "failed", "total"}``
    """
    require_role(actor, ROLE_COMPANY_ADMIN)
    action_ids, updates = validate_bulk_update(data)
    now = now or utcnow()

    if updates.get("assigned_to") is not None:
        _tenant_user(actor.tenant_id, updates["assigned_to"], label="Assignee")
    touches_assignment = "assigned_to" in updates or "team" in updates

    results = []
    assigned_counts: dict[int, int] = {}
    for action_id in action_ids:
        try:
            action = action_store.find_by_id(action_id, actor.tenant_id)
            if touches_assignment:
                ensure_can_assign(actor, action)
            if "status" in updates:
                _apply_status(action, updates["status"], actor.user_id, actor.role, now)
            if "priority" in updates:
                action.priority = updates["priority"]
            if touches_assignment:
                previous = action.assigned_to_id
                if "assigned_to" in updates:
                    action.assigned_to_id = updates["assigned_to"]
                if "team" in updates:
                    action.assigned_to_team = updates["team"]
                action.auto_assigned = False
                _append_history(
                    action, from_user=previous, to_user=action.assigned_to_id,
                    to_team=action.assigned_to_team, by_user=actor.user_id,
                    auto=False, note="Bulk assignment", at=now,
                )
                owner = action.assigned_to_id
                if owner and owner != previous and owner != actor.user_id:
                    assigned_counts[owner] = assigned_counts.get(owner, 0) + 1
            action.updated_at = now
            action_store.save(action)
            results.append({"id": action_id, "ok": True})
        except ActionEngineError as exc:
            db.session.rollback()
            results.append({"id": action_id, "ok": False, "error": exc.code, "message": exc.to_dict()["error"]})
        except Exception:
            db.session.rollback()
            logger.exception(
                "Bulk update failed for action %s", action_id,
                extra={"tenant_id": actor.tenant_id, "actor_id": actor.user_id},
            )
            results.append({"id": action_id, "ok": False, "error": "ERR_INTERNAL", "message": "Internal error"})

    for owner, count in assigned_counts.items():
        _notify(
            user_id=owner,
            type="bulk_action_assigned",
            message=f"{count} action(s) have been assigned to you",
            action_url="/actions",
            data={"count": count, "assigned_by": actor.user_id},
            tenant_id=actor.tenant_id,
        )

    updated = sum(1 for r in results if r["ok"])
    logger.info(
        "Bulk update finished: %d/%d updated", updated, len(results),
        extra={"tenant_id": actor.tenant_id, "actor_id": actor.user_id},
    )
    return {"results": results, "updated": updated, "failed": len(results) - updated, "total": len(results)}


def delete_action(action_id, actor: ActorScope) -> Action:
    """Soft-delete an action (companyAdmin only)."""
    require_role(actor, ROLE_COMPANY_ADMIN)
    action = action_store.find_by_id(action_id, actor.tenant_id)
    action_store.soft_delete(action, actor.user_id)
    logger.info("Action deleted", extra=_log_extra(action, actor.user_id))
    return action


def get_analytics(actor: ActorScope, *, period_days=30, now=None) -> dict:
    return action_store.analytics(actor.tenant_id, period_days=period_days, now=now)
