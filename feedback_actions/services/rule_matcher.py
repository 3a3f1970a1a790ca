"""
Rule matcher shared by assignment and escalation rules.

Both rule kinds are loaded per tenant, active only, in descending
``priority`` (ties broken by id), and the first rule whose conditions match
wins. Assignment rules use field/operator clauses; escalation rules use the
``{priorities, categories, survey_ids}`` membership form.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from feedback_actions.models import db
from feedback_actions.models.action import STATUS_RESOLVED, Action
from feedback_actions.models.auth import User
from feedback_actions.models.rules import AssignmentRule

logger = logging.getLogger(__name__)


def load_active_rules(model, tenant_id: int) -> list:
    stmt = (
        select(model)
        .where(model.tenant_id == tenant_id, model.is_active.is_(True))
        .order_by(model.priority.desc(), model.id)
    )
    return list(db.session.execute(stmt).scalars())


# ── Clause matching (assignment rules) ───────────────────────────────────────


def _as_number(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def clause_matches(clause: dict, payload: dict) -> bool:
    field = clause.get("field")
    operator = clause.get("operator", "==")
    expected = clause.get("value")
    actual = payload.get(field)
    if actual is None and isinstance(payload.get("metadata"), dict):
        actual = payload["metadata"].get(field)

    if operator == "==":
        return actual is not None and str(actual).lower() == str(expected).lower()
    if operator == "!=":
        return actual is None or str(actual).lower() != str(expected).lower()
    if operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple)):
            return any(str(expected).lower() == str(a).lower() for a in actual)
        return str(expected).lower() in str(actual).lower()
    if operator == "in":
        options = expected if isinstance(expected, (list, tuple)) else [expected]
        return actual is not None and str(actual).lower() in {str(o).lower() for o in options}
    if operator in ("<=", ">="):
        a, e = _as_number(actual), _as_number(expected)
        if a is None or e is None:
            return False
        return a <= e if operator == "<=" else a >= e
    logger.warning("Unknown rule operator %r ignored", operator)
    return False


def assignment_rule_matches(rule: AssignmentRule, payload: dict) -> bool:
    clauses = rule.conditions or []
    if not clauses:
        return True
    results = (clause_matches(c, payload) for c in clauses)
    return any(results) if (rule.logic or "AND").upper() == "OR" else all(results)


# ── Membership matching (escalation rules) ───────────────────────────────────


def escalation_condition_clauses(conditions: dict | None) -> list:
    """Membership conditions as SQL clauses; an empty list means no restriction."""
    conditions = conditions or {}
    clauses = []
    if conditions.get("priorities"):
        clauses.append(Action.priority.in_(conditions["priorities"]))
    if conditions.get("categories"):
        clauses.append(Action.category.in_(conditions["categories"]))
    if conditions.get("survey_ids"):
        clauses.append(Action.survey_id.in_(conditions["survey_ids"]))
    return clauses


# ── Assignment proposal ──────────────────────────────────────────────────────


def _active_members(tenant_id: int, member_ids) -> list[int]:
    member_ids = [m for m in (member_ids or []) if isinstance(m, int)]
    if not member_ids:
        return []
    stmt = select(User.id).where(
        User.tenant_id == tenant_id, User.id.in_(member_ids), User.is_active.is_(True),
    )
    valid = set(db.session.execute(stmt).scalars())
    return [m for m in member_ids if m in valid]


def _least_loaded(tenant_id: int, members: list[int]) -> int:
    stmt = (
        select(Action.assigned_to_id, func.count(Action.id))
        .where(
            Action.tenant_id == tenant_id,
            Action.assigned_to_id.in_(members),
            Action.status != STATUS_RESOLVED,
            Action.is_deleted.is_(False),
        )
        .group_by(Action.assigned_to_id)
    )
    loads = dict(db.session.execute(stmt).all())
    return min(members, key=lambda m: (loads.get(m, 0), members.index(m)))


def _resolve(rule: AssignmentRule, tenant_id: int) -> dict | None:
    team = rule.target_team or None
    if rule.mode == "team":
        return {"assigned_to": None, "assigned_to_team": team} if team else None

    if rule.mode in ("round_robin", "least_load"):
        members = _active_members(tenant_id, rule.team_members)
        if not members:
            return None
        if rule.mode == "round_robin":
            cursor = rule.last_assigned_index if rule.last_assigned_index is not None else -1
            rule.last_assigned_index = (cursor + 1) % len(members)
            user_id = members[rule.last_assigned_index]
        else:
            user_id = _least_loaded(tenant_id, members)
        return {"assigned_to": user_id, "assigned_to_team": team}

    if rule.target_user_id and _active_members(tenant_id, [rule.target_user_id]):
        return {"assigned_to": rule.target_user_id, "assigned_to_team": team}
    if team:
        return {"assigned_to": None, "assigned_to_team": team}
    return None


def propose_assignment(tenant_id: int, payload: dict) -> dict | None:
    """Walk active assignment rules and propose an owner for a new action.

    Returns ``{"assigned_to", "assigned_to_team", "priority", "rule_id", "note"}``
    or None. A matching rule whose target cannot be resolved (inactive or
    foreign user, empty member list) is logged and the walk continues.
    Round-robin cursor changes are left in the session for the caller's commit.
    """
    for rule in load_active_rules(AssignmentRule, tenant_id):
        if not assignment_rule_matches(rule, payload):
            continue
        proposal = _resolve(rule, tenant_id)
        if proposal is None:
            logger.warning(
                "Assignment rule %s matched but has no resolvable target",
                rule.id, extra={"tenant_id": tenant_id, "rule_id": rule.id},
            )
            continue
        proposal["priority"] = rule.priority_override or None
        proposal["rule_id"] = rule.id
        proposal["note"] = f"Auto-assigned by rule: {rule.name}"
        return proposal
    return None
