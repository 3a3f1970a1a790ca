"""
Tenant CRUD for escalation and assignment rules.

All operations are companyAdmin-only and tenant-scoped; a rule id from
another tenant is NotFound. Payloads are validated against the closed
trigger / mode / operator sets before anything is written.
"""

import logging

from feedback_actions.core.exceptions import ValidationError
from feedback_actions.models import db
from feedback_actions.models.action import PRIORITIES
from feedback_actions.models.auth import ROLE_COMPANY_ADMIN, User
from feedback_actions.models.rules import (
    ASSIGNMENT_MODES,
    CONDITION_LOGIC,
    CONDITION_OPERATORS,
    DEFAULT_THRESHOLD_HOURS,
    ESCALATE_TO_ROLES,
    TRIGGER_TYPES,
    AssignmentRule,
    EscalationRule,
)
from feedback_actions.services import escalation
from feedback_actions.services.helpers.scoped_queries import get_scoped
from feedback_actions.services.rule_matcher import load_active_rules
from feedback_actions.services.scope_guard import ActorScope, require_role

logger = logging.getLogger(__name__)


def _int_list(value, field, errors):
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, int) and not isinstance(v, bool) for v in value):
        errors[field] = "must be a list of integers"
        return []
    return value


def _tenant_user_id(tenant_id, user_id, field, errors):
    if user_id is None:
        return None
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        errors[field] = "must be an integer"
        return None
    user = db.session.get(User, user_id)
    if user is None or user.tenant_id != tenant_id:
        errors[field] = "user not found in tenant"
        return None
    return user_id


def _name(data, errors, required):
    name = data.get("name")
    if name is None:
        if required:
            errors["name"] = "is required"
        return None
    if not isinstance(name, str) or not (2 <= len(name.strip()) <= 200):
        errors["name"] = "must be 2-200 characters"
        return None
    return name.strip()


def _object(value, field, errors):
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors[field] = "must be an object"
        return {}
    return value


def _description(data, errors):
    value = data.get("description")
    if value is not None and (not isinstance(value, str) or len(value) > 1000):
        errors["description"] = "must be a string of at most 1000 characters"
        return None
    return value


def _priority(data, errors):
    value = data.get("priority", 0)
    if not isinstance(value, int) or isinstance(value, bool):
        errors["priority"] = "must be an integer"
        return 0
    return value


# ── Escalation rules ─────────────────────────────────────────────────────────


def _escalation_fields(data, tenant_id, *, partial) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object", details={"_schema": "must be an object"})
    errors, clean = {}, {}

    name = _name(data, errors, required=not partial)
    if name is not None:
        clean["name"] = name
    if "description" in data:
        clean["description"] = _description(data, errors)
    if "is_active" in data:
        clean["is_active"] = bool(data["is_active"])
    if "priority" in data or not partial:
        clean["priority"] = _priority(data, errors)

    trigger = data.get("trigger")
    if trigger is not None or not partial:
        trigger = _object(trigger, "trigger", errors)
        if trigger.get("type") not in TRIGGER_TYPES:
            errors["trigger.type"] = f"must be one of: {', '.join(TRIGGER_TYPES)}"
        threshold = trigger.get("threshold_hours", DEFAULT_THRESHOLD_HOURS)
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
            errors["trigger.threshold_hours"] = "must be a number >= 0"
        clean["trigger_type"] = trigger.get("type")
        clean["threshold_hours"] = threshold

    if "conditions" in data:
        conditions = _object(data.get("conditions"), "conditions", errors)
        priorities = conditions.get("priorities") or []
        if not isinstance(priorities, list) or any(p not in PRIORITIES for p in priorities):
            errors["conditions.priorities"] = f"must be a list of: {', '.join(PRIORITIES)}"
        categories = conditions.get("categories") or []
        if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
            errors["conditions.categories"] = "must be a list of strings"
        clean["conditions"] = {
            "priorities": priorities,
            "categories": categories,
            "survey_ids": _int_list(conditions.get("survey_ids"), "conditions.survey_ids", errors),
        }

    action = data.get("action")
    if action is not None or not partial:
        action = _object(action, "action", errors)
        clean["escalate_to_id"] = _tenant_user_id(tenant_id, action.get("escalate_to"), "action.escalate_to", errors)
        role = action.get("escalate_to_role")
        if role is not None and role not in ESCALATE_TO_ROLES:
            errors["action.escalate_to_role"] = f"must be one of: {', '.join(ESCALATE_TO_ROLES)}"
        clean["escalate_to_role"] = role
        if clean["escalate_to_id"] is None and role is None and "action.escalate_to" not in errors:
            errors.setdefault("action", "escalate_to or escalate_to_role is required")
        change = action.get("change_priority_to")
        if change is not None and change not in PRIORITIES:
            errors["action.change_priority_to"] = f"must be one of: {', '.join(PRIORITIES)}"
        clean["change_priority_to"] = change
        clean["notify_original_assignee"] = bool(action.get("notify_original_assignee", True))
        note = action.get("add_note")
        if note is not None and (not isinstance(note, str) or len(note) > 500):
            errors["action.add_note"] = "must be a string of at most 500 characters"
        clean["add_note"] = note

    if errors:
        raise ValidationError("Invalid escalation rule", details=errors)
    return clean


def list_escalation_rules(actor: ActorScope) -> list[EscalationRule]:
    require_role(actor, ROLE_COMPANY_ADMIN)
    return (
        EscalationRule.query_for_tenant(actor.tenant_id)
        .order_by(EscalationRule.priority.desc(), EscalationRule.id)
        .all()
    )


def create_escalation_rule(data, actor: ActorScope) -> EscalationRule:
    require_role(actor, ROLE_COMPANY_ADMIN)
    rule = EscalationRule(
        tenant_id=actor.tenant_id,
        created_by_id=actor.user_id,
        **_escalation_fields(data, actor.tenant_id, partial=False),
    )
    db.session.add(rule)
    db.session.commit()
    logger.info("Escalation rule created", extra={"tenant_id": actor.tenant_id, "rule_id": rule.id})
    return rule


def update_escalation_rule(rule_id, data, actor: ActorScope) -> EscalationRule:
    require_role(actor, ROLE_COMPANY_ADMIN)
    rule = get_scoped(EscalationRule, rule_id, tenant_id=actor.tenant_id, resource="Escalation rule")
    for key, value in _escalation_fields(data, actor.tenant_id, partial=True).items():
        setattr(rule, key, value)
    db.session.commit()
    logger.info("Escalation rule updated", extra={"tenant_id": actor.tenant_id, "rule_id": rule.id})
    return rule


def delete_escalation_rule(rule_id, actor: ActorScope) -> None:
    require_role(actor, ROLE_COMPANY_ADMIN)
    rule = get_scoped(EscalationRule, rule_id, tenant_id=actor.tenant_id, resource="Escalation rule")
    db.session.delete(rule)
    db.session.commit()
    logger.info("Escalation rule deleted", extra={"tenant_id": actor.tenant_id, "rule_id": rule_id})


def trigger_escalation_check(actor: ActorScope, *, batch_size=escalation.DEFAULT_BATCH_SIZE, now=None) -> dict:
    """Run the caller's tenant rules immediately."""
    require_role(actor, ROLE_COMPANY_ADMIN)
    count = escalation.check_tenant(actor.tenant_id, now=now, batch_size=batch_size)
    return {"success": True, "escalatedCount": count, "tenants": 1}


# ── Assignment rules ─────────────────────────────────────────────────────────


def _assignment_fields(data, tenant_id, *, partial) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object", details={"_schema": "must be an object"})
    errors, clean = {}, {}

    name = _name(data, errors, required=not partial)
    if name is not None:
        clean["name"] = name
    if "description" in data:
        clean["description"] = _description(data, errors)
    if "is_active" in data:
        clean["is_active"] = bool(data["is_active"])
    if "priority" in data or not partial:
        clean["priority"] = _priority(data, errors)

    if "conditions" in data or not partial:
        conditions = data.get("conditions") or []
        if not isinstance(conditions, list):
            errors["conditions"] = "must be a list"
            conditions = []
        for i, clause in enumerate(conditions):
            if not isinstance(clause, dict) or not isinstance(clause.get("field"), str):
                errors[f"conditions.{i}"] = "must be {field, operator, value}"
            elif clause.get("operator", "==") not in CONDITION_OPERATORS:
                errors[f"conditions.{i}.operator"] = f"must be one of: {', '.join(CONDITION_OPERATORS)}"
        clean["conditions"] = conditions
    if "logic" in data:
        logic = str(data.get("logic") or "AND").upper()
        if logic not in CONDITION_LOGIC:
            errors["logic"] = "must be AND or OR"
        clean["logic"] = logic

    assignment = data.get("assignment")
    if assignment is not None or not partial:
        assignment = _object(assignment, "assignment", errors)
        mode = assignment.get("mode", "single_owner")
        if mode not in ASSIGNMENT_MODES:
            errors["assignment.mode"] = f"must be one of: {', '.join(ASSIGNMENT_MODES)}"
        clean["mode"] = mode
        clean["target_user_id"] = _tenant_user_id(tenant_id, assignment.get("user_id"), "assignment.user_id", errors)
        team = assignment.get("team")
        if team is not None and not isinstance(team, str):
            errors["assignment.team"] = "must be a string"
            team = None
        clean["target_team"] = team
        clean["team_members"] = _int_list(assignment.get("members"), "assignment.members", errors)
        clean["last_assigned_index"] = -1
        if mode == "single_owner" and not clean["target_user_id"] and not clean["target_team"]:
            errors.setdefault("assignment.user_id", "user_id or team is required")
        if mode == "team" and not clean["target_team"]:
            errors["assignment.team"] = "is required for team mode"
        if mode in ("round_robin", "least_load") and not clean["team_members"]:
            errors.setdefault("assignment.members", "must list at least one member")

    if "priority_override" in data:
        override = data.get("priority_override")
        if override is not None and override not in PRIORITIES:
            errors["priority_override"] = f"must be one of: {', '.join(PRIORITIES)}"
        clean["priority_override"] = override

    if errors:
        raise ValidationError("Invalid assignment rule", details=errors)
    return clean


def list_assignment_rules(actor: ActorScope) -> list[AssignmentRule]:
    require_role(actor, ROLE_COMPANY_ADMIN)
    return (
        AssignmentRule.query_for_tenant(actor.tenant_id)
        .order_by(AssignmentRule.priority.desc(), AssignmentRule.id)
        .all()
    )


def create_assignment_rule(data, actor: ActorScope) -> AssignmentRule:
    require_role(actor, ROLE_COMPANY_ADMIN)
    rule = AssignmentRule(tenant_id=actor.tenant_id, **_assignment_fields(data, actor.tenant_id, partial=False))
    db.session.add(rule)
    db.session.commit()
    logger.info("Assignment rule created", extra={"tenant_id": actor.tenant_id, "rule_id": rule.id})
    return rule


def update_assignment_rule(rule_id, data, actor: ActorScope) -> AssignmentRule:
    require_role(actor, ROLE_COMPANY_ADMIN)
    rule = get_scoped(AssignmentRule, rule_id, tenant_id=actor.tenant_id, resource="Assignment rule")
    for key, value in _assignment_fields(data, actor.tenant_id, partial=True).items():
        setattr(rule, key, value)
    db.session.commit()
    return rule


def delete_assignment_rule(rule_id, actor: ActorScope) -> None:
    require_role(actor, ROLE_COMPANY_ADMIN)
    rule = get_scoped(AssignmentRule, rule_id, tenant_id=actor.tenant_id, resource="Assignment rule")
    db.session.delete(rule)
    db.session.commit()


def active_rule_counts(tenant_id) -> dict:
    return {
        "escalation": len(load_active_rules(EscalationRule, tenant_id)),
        "assignment": len(load_active_rules(AssignmentRule, tenant_id)),
    }
