"""
Feedback Action Engine
Routing rule models.

Models:
    - EscalationRule: time-driven trigger + conditions + escalation target
    - AssignmentRule: create-time routing (single owner / team / round-robin / least-load)

Both rule kinds are evaluated by descending ``priority``; the first match wins.
"""

from datetime import datetime, timezone

from feedback_actions.models import db
from feedback_actions.models.base import TenantModel


# ── Constants ────────────────────────────────────────────────────────────────

TRIGGER_TYPES = ("sla_breach", "no_progress", "high_priority_stale", "no_assignment")
ESCALATE_TO_ROLES = ("companyAdmin",)
DEFAULT_THRESHOLD_HOURS = 24

ASSIGNMENT_MODES = ("single_owner", "team", "round_robin", "least_load")
CONDITION_OPERATORS = ("==", "!=", "contains", "in", "<=", ">=")
CONDITION_LOGIC = ("AND", "OR")


def _iso(value):
    return value.isoformat() if value else None


class EscalationRule(TenantModel):
    """Tenant escalation rule.

    ``conditions`` shape::

        {"priorities": [...], "categories": [...], "survey_ids": [...]}

    An empty or missing list means "no restriction" for that dimension.
    """

    __tablename__ = "escalation_rules"
    __table_args__ = (
        db.Index("ix_escalation_rules_tenant_active_priority", "tenant_id", "is_active", "priority"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=0)

    trigger_type = db.Column(db.String(30), nullable=False)
    threshold_hours = db.Column(db.Float, nullable=False, default=DEFAULT_THRESHOLD_HOURS)
    conditions = db.Column(db.JSON, default=dict)

    escalate_to_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    escalate_to_role = db.Column(db.String(30), nullable=True)
    change_priority_to = db.Column(db.String(20), nullable=True)
    notify_original_assignee = db.Column(db.Boolean, nullable=False, default=True)
    add_note = db.Column(db.String(500), nullable=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    total_escalations = db.Column(db.Integer, nullable=False, default=0)
    last_escalation_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        conditions = self.conditions or {}
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "priority": self.priority,
            "trigger": {
                "type": self.trigger_type,
                "threshold_hours": self.threshold_hours,
            },
            "conditions": {
                "priorities": conditions.get("priorities", []),
                "categories": conditions.get("categories", []),
                "survey_ids": conditions.get("survey_ids", []),
            },
            "action": {
                "escalate_to": self.escalate_to_id,
                "escalate_to_role": self.escalate_to_role,
                "change_priority_to": self.change_priority_to,
                "notify_original_assignee": self.notify_original_assignee,
                "add_note": self.add_note,
            },
            "last_run_at": _iso(self.last_run_at),
            "stats": {
                "total_escalations": self.total_escalations,
                "last_escalation_at": _iso(self.last_escalation_at),
            },
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<EscalationRule {self.id}: {self.name} [{self.trigger_type}]>"


class AssignmentRule(TenantModel):
    """Create-time routing rule.

    ``conditions`` is a list of ``{"field", "operator", "value"}`` clauses
    combined with ``logic`` (AND / OR). ``team_members`` feeds the
    round-robin and least-load modes.
    """

    __tablename__ = "assignment_rules"
    __table_args__ = (
        db.Index("ix_assignment_rules_tenant_active_priority", "tenant_id", "is_active", "priority"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=0)

    conditions = db.Column(db.JSON, default=list)
    logic = db.Column(db.String(5), nullable=False, default="AND")

    mode = db.Column(db.String(20), nullable=False, default="single_owner")
    target_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    target_team = db.Column(db.String(120), nullable=True)
    team_members = db.Column(db.JSON, default=list)
    last_assigned_index = db.Column(db.Integer, nullable=False, default=-1)
    priority_override = db.Column(db.String(20), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "priority": self.priority,
            "conditions": self.conditions or [],
            "logic": self.logic,
            "assignment": {
                "mode": self.mode,
                "user_id": self.target_user_id,
                "team": self.target_team,
                "members": self.team_members or [],
                "last_assigned_index": self.last_assigned_index,
            },
            "priority_override": self.priority_override,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<AssignmentRule {self.id}: {self.name} [{self.mode}]>"
