"""
Escalation Engine: periodic evaluator over tenant escalation rules.

Each tick walks active tenants, then each tenant's active rules in
descending priority. A rule's trigger type selects a candidate filter;
candidates are intersected with the rule conditions and exclude actions
already escalated, so a second tick with no intervening mutation is a
no-op. Every escalation commits on its own; a failing action is rolled back
and logged, and the tick continues.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta

from sqlalchemy import select

from feedback_actions.models import db
from feedback_actions.models.action import STATUS_RESOLVED, Action, AssignmentHistory
from feedback_actions.models.auth import Tenant, User
from feedback_actions.models.rules import EscalationRule
from feedback_actions.services.notification import NotificationService
from feedback_actions.services.rule_matcher import escalation_condition_clauses, load_active_rules
from feedback_actions.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

TRIGGER_LABELS = {
    "sla_breach": "SLA breach (overdue)",
    "no_progress": "no progress",
    "high_priority_stale": "high priority action not started",
    "no_assignment": "no assignment",
}


# ── Trigger filters ──────────────────────────────────────────────────────────


def _sla_breach(cutoff):
    return [Action.due_date.isnot(None), Action.due_date < cutoff]


def _no_progress(cutoff):
    return [Action.updated_at < cutoff, Action.status.in_(("pending", "open"))]


def _high_priority_stale(cutoff):
    return [Action.priority == "high", Action.status == "pending", Action.created_at < cutoff]


def _no_assignment(cutoff):
    return [Action.assigned_to_id.is_(None), Action.created_at < cutoff]


TRIGGER_FILTERS = {
    "sla_breach": _sla_breach,
    "no_progress": _no_progress,
    "high_priority_stale": _high_priority_stale,
    "no_assignment": _no_assignment,
}


def candidate_actions(rule: EscalationRule, now, batch_size=DEFAULT_BATCH_SIZE) -> list[Action]:
    """Actions the rule would escalate right now, oldest first, capped at ``batch_size``."""
    build = TRIGGER_FILTERS.get(rule.trigger_type)
    if build is None:
        logger.warning(
            "Unknown escalation trigger %r", rule.trigger_type,
            extra={"tenant_id": rule.tenant_id, "rule_id": rule.id},
        )
        return []
    cutoff = now - timedelta(hours=rule.threshold_hours or 0)
    stmt = (
        select(Action)
        .where(
            Action.tenant_id == rule.tenant_id,
            Action.is_deleted.is_(False),
            Action.escalated_to_id.is_(None),
            Action.status != STATUS_RESOLVED,
            *build(cutoff),
            *escalation_condition_clauses(rule.conditions),
        )
        .order_by(Action.created_at, Action.id)
        .limit(batch_size)
    )
    return list(db.session.execute(stmt).scalars())


def resolve_target(rule: EscalationRule) -> User | None:
    """Explicit user first, else the earliest-created active user holding the role."""
    if rule.escalate_to_id:
        stmt = select(User).where(
            User.id == rule.escalate_to_id,
            User.tenant_id == rule.tenant_id,
            User.is_active.is_(True),
        )
        user = db.session.execute(stmt).scalar_one_or_none()
        if user is not None:
            return user
    if rule.escalate_to_role:
        stmt = (
            select(User)
            .where(
                User.tenant_id == rule.tenant_id,
                User.role == rule.escalate_to_role,
                User.is_active.is_(True),
            )
            .order_by(User.created_at, User.id)
            .limit(1)
        )
        return db.session.execute(stmt).scalar_one_or_none()
    return None


def escalation_note(rule: EscalationRule) -> str:
    note = f"Auto-escalated: {rule.name}"
    if rule.add_note:
        note += f" - {rule.add_note}"
    return note


def _escalate(action: Action, rule: EscalationRule, target: User, now) -> int | None:
    """Apply one escalation and commit. Returns the previous assignee."""
    previous = action.assigned_to_id
    action.escalated_to_id = target.id
    if rule.change_priority_to and rule.change_priority_to != action.priority:
        action.priority = rule.change_priority_to
    action.auto_assigned = False
    action.updated_at = now
    action.history.append(AssignmentHistory(
        tenant_id=action.tenant_id,
        from_user_id=previous,
        to_user_id=target.id,
        by_user_id=None,
        auto=True,
        note=escalation_note(rule),
        at=now,
    ))
    db.session.commit()
    return previous


def _notify_escalation(action: Action, rule: EscalationRule, target: User, previous) -> None:
    reason = TRIGGER_LABELS.get(rule.trigger_type, rule.trigger_type)
    NotificationService.send(
        user_id=target.id,
        type="action_escalated",
        title="Action Escalated to You",
        message=f'"{action.title}" was escalated: {reason}',
        reference={"type": "Action", "id": action.id},
        action_url=f"/actions/{action.id}",
        data={"action_id": action.id, "rule_id": rule.id, "trigger": rule.trigger_type},
        tenant_id=action.tenant_id,
    )
    if rule.notify_original_assignee and previous and previous != target.id:
        NotificationService.send(
            user_id=previous,
            type="action_escalated",
            message=f'"{action.title}" was escalated to {target.display_name}: {reason}',
            reference={"type": "Action", "id": action.id},
            action_url=f"/actions/{action.id}",
            data={"action_id": action.id, "rule_id": rule.id, "escalated_to": target.id},
            tenant_id=action.tenant_id,
        )


def evaluate_rule(rule: EscalationRule, now, batch_size=DEFAULT_BATCH_SIZE) -> int:
    """Escalate every candidate of one rule. Returns the successful count."""
    escalated = 0
    candidates = candidate_actions(rule, now, batch_size)
    target = resolve_target(rule) if candidates else None
    if candidates and target is None:
        logger.warning(
            "Escalation rule %s has no resolvable target; %d candidates skipped",
            rule.id, len(candidates),
            extra={"tenant_id": rule.tenant_id, "rule_id": rule.id},
        )
        candidates = []

    for action in candidates:
        action_id = action.id
        try:
            previous = _escalate(action, rule, target, now)
        except Exception:
            db.session.rollback()
            logger.exception(
                "Escalation of action %s failed", action_id,
                extra={"tenant_id": rule.tenant_id, "action_id": action_id, "rule_id": rule.id},
            )
            continue
        escalated += 1
        logger.warning(
            "Action %s escalated to user %s by rule %s", action.id, target.id, rule.id,
            extra={"tenant_id": rule.tenant_id, "action_id": action.id, "rule_id": rule.id},
        )
        _notify_escalation(action, rule, target, previous)

    rule.last_run_at = now
    if escalated:
        rule.total_escalations = (rule.total_escalations or 0) + escalated
        rule.last_escalation_at = now
    db.session.commit()
    return escalated


def check_tenant(tenant_id: int, now=None, batch_size=DEFAULT_BATCH_SIZE) -> int:
    """Run every active rule of one tenant (manual trigger path)."""
    now = now or utcnow()
    total = 0
    for rule in load_active_rules(EscalationRule, tenant_id):
        total += evaluate_rule(rule, now, batch_size)
    return total


def check_all_tenants(now=None, batch_size=DEFAULT_BATCH_SIZE, budget_seconds=None) -> dict:
    """One scheduler tick across all active tenants.

    Returns:
        ``{"success", "escalatedCount", "durationMs", "tenants", "timed_out"}``.
        Tenants not reached within ``budget_seconds`` are picked up next tick.
    """
    now = now or utcnow()
    started = time.monotonic()
    escalated = 0
    tenants = 0
    timed_out = False

    stmt = select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id)
    for tenant_id in list(db.session.execute(stmt).scalars()):
        if budget_seconds is not None and time.monotonic() - started > budget_seconds:
            timed_out = True
            logger.warning("Escalation tick budget exhausted after %d tenants", tenants)
            break
        escalated += check_tenant(tenant_id, now, batch_size)
        tenants += 1

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info("Escalation tick: %d escalated across %d tenants in %dms", escalated, tenants, duration_ms)
    return {
        "success": True,
        "escalatedCount": escalated,
        "durationMs": duration_ms,
        "tenants": tenants,
        "timed_out": timed_out,
    }
