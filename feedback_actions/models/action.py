"""
Feedback Action Engine
Action domain models.

Models:
    - Action: canonical follow-up work item, tenant-scoped, soft-deletable
    - AssignmentHistory: append-only ownership log (one row per assignment mutation)
"""

from datetime import datetime, timezone

from feedback_actions.models import db
from feedback_actions.models.base import TenantModel, tenant_index
from feedback_actions.models.soft_delete import SoftDeleteMixin
from feedback_actions.utils.helpers import as_utc


# ── Constants ────────────────────────────────────────────────────────────────

PRIORITIES = ("high", "medium", "low", "long-term")
STATUSES = ("pending", "open", "in-progress", "resolved")
SOURCES = ("manual", "survey_feedback", "ai_generated")
ROOT_CAUSE_CATEGORIES = (
    "compensation", "process", "communication", "management",
    "workload", "culture", "resources", "unknown",
)
URGENCY_LEVELS = ("low", "medium", "high")
CHANGE_DIRECTIONS = ("up", "down", "stable")
ISSUE_STATUSES = ("new", "worsening", "improving", "chronic", "resolved")

STATUS_RESOLVED = "resolved"


def _iso(value):
    return value.isoformat() if value else None


class Action(SoftDeleteMixin, TenantModel):
    """Tracked unit of follow-up work derived from feedback or created manually."""

    __tablename__ = "actions"
    __table_args__ = (
        tenant_index("actions", "status"),
        tenant_index("actions", "priority"),
        tenant_index("actions", "assigned_to_id"),
        tenant_index("actions", "due_date"),
        tenant_index("actions", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    version = db.Column(db.Integer, nullable=False, default=1)

    # Classification
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="pending")
    category = db.Column(db.String(120), nullable=False, default="general")
    source = db.Column(db.String(30), nullable=False, default="manual")
    tags = db.Column(db.JSON, default=list)

    # Content
    problem_statement = db.Column(db.Text, nullable=True)
    root_cause_category = db.Column(db.String(30), nullable=False, default="unknown")
    root_cause_summary = db.Column(db.Text, nullable=True)
    affected_audience = db.Column(db.JSON, default=lambda: {"segments": [], "estimated_count": 0})
    priority_reason = db.Column(db.String(500), nullable=True)
    urgency_reason = db.Column(db.String(500), nullable=True)
    resolution = db.Column(db.Text, nullable=True)

    # Ownership
    team = db.Column(db.String(120), nullable=True)
    department = db.Column(db.String(120), nullable=True)
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    assigned_to_team = db.Column(db.String(120), nullable=True)
    auto_assigned = db.Column(db.Boolean, nullable=False, default=False)
    escalated_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    has_action_plan = db.Column(db.Boolean, nullable=False, default=False)

    # Timing
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    estimated_hours = db.Column(db.Float, nullable=True)
    actual_hours = db.Column(db.Float, nullable=True)

    # Provenance
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    feedback_id = db.Column(
        db.Integer, db.ForeignKey("feedback_analyses.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    survey_id = db.Column(db.Integer, nullable=True, index=True)
    response_id = db.Column(db.Integer, nullable=True)
    sentiment = db.Column(db.String(20), nullable=True)
    confidence = db.Column(db.Float, nullable=True)
    urgency = db.Column(db.String(20), nullable=True)
    evidence = db.Column(db.JSON, nullable=True)

    # Trend (calculated_at NULL means not yet classified)
    trend_previous_survey_id = db.Column(db.Integer, nullable=True)
    trend_metric_name = db.Column(db.String(120), nullable=True)
    trend_change_direction = db.Column(db.String(10), nullable=True)
    trend_issue_status = db.Column(db.String(20), nullable=True)
    trend_is_recurring = db.Column(db.Boolean, nullable=True)
    trend_first_detected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trend_calculated_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    history = db.relationship(
        "AssignmentHistory",
        back_populates="action",
        order_by="AssignmentHistory.id",
        cascade="all, delete-orphan",
        lazy="select",
    )

    __mapper_args__ = {"version_id_col": version}

    # ── Derived fields ───────────────────────────────────────────────────

    @property
    def is_overdue(self) -> bool:
        if not self.due_date or self.status == STATUS_RESOLVED:
            return False
        return as_utc(self.due_date) < datetime.now(timezone.utc)

    @property
    def resolution_time_hours(self) -> float | None:
        if not self.completed_at or not self.created_at:
            return None
        delta = as_utc(self.completed_at) - as_utc(self.created_at)
        return round(delta.total_seconds() / 3600, 2)

    @property
    def metadata_dict(self) -> dict:
        return {
            "survey_id": self.survey_id,
            "response_id": self.response_id,
            "sentiment": self.sentiment,
            "confidence": self.confidence,
            "urgency": self.urgency,
        }

    @property
    def trend_data(self) -> dict | None:
        if self.trend_calculated_at is None:
            return None
        return {
            "previous_survey_id": self.trend_previous_survey_id,
            "metric_name": self.trend_metric_name,
            "change_direction": self.trend_change_direction,
            "issue_status": self.trend_issue_status,
            "is_recurring": self.trend_is_recurring,
            "first_detected_at": _iso(self.trend_first_detected_at),
            "calculated_at": _iso(self.trend_calculated_at),
        }

    def to_dict(self, include_history=True):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "version": self.version,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "category": self.category,
            "source": self.source,
            "tags": self.tags or [],
            "problem_statement": self.problem_statement,
            "root_cause": {
                "category": self.root_cause_category,
                "summary": self.root_cause_summary,
            },
            "affected_audience": self.affected_audience or {"segments": [], "estimated_count": 0},
            "priority_reason": self.priority_reason,
            "urgency_reason": self.urgency_reason,
            "resolution": self.resolution,
            "team": self.team,
            "department": self.department,
            "assigned_to": self.assigned_to_id,
            "assigned_to_team": self.assigned_to_team,
            "auto_assigned": self.auto_assigned,
            "escalated_to": self.escalated_to_id,
            "has_action_plan": bool(self.has_action_plan),
            "due_date": _iso(self.due_date),
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by_id,
            "estimated_hours": self.estimated_hours,
            "actual_hours": self.actual_hours,
            "created_by": self.created_by_id,
            "feedback_id": self.feedback_id,
            "metadata": self.metadata_dict,
            "evidence": self.evidence,
            "trend_data": self.trend_data,
            "is_overdue": self.is_overdue,
            "resolution_time_hours": self.resolution_time_hours,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_history:
            d["assignment_history"] = [h.to_dict() for h in self.history]
        return d

    def __repr__(self):
        return f"<Action {self.id}: {self.title[:40]} [{self.status}]>"


class AssignmentHistory(TenantModel):
    """Append-only ownership log entry.

    ``by_user_id`` is NULL for system-driven changes (auto-assignment by the
    escalation tick, survey ingestion).
    """

    __tablename__ = "action_assignment_history"

    id = db.Column(db.Integer, primary_key=True)
    action_id = db.Column(
        db.Integer, db.ForeignKey("actions.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_user_id = db.Column(db.Integer, nullable=True)
    to_user_id = db.Column(db.Integer, nullable=True)
    to_team = db.Column(db.String(120), nullable=True)
    by_user_id = db.Column(db.Integer, nullable=True)
    at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    auto = db.Column(db.Boolean, nullable=False, default=False)
    note = db.Column(db.String(500), nullable=True)

    action = db.relationship("Action", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "from": self.from_user_id,
            "to": self.to_user_id,
            "to_team": self.to_team,
            "by": self.by_user_id,
            "at": _iso(self.at),
            "auto": self.auto,
            "note": self.note,
        }

    def __repr__(self):
        return f"<AssignmentHistory action={self.action_id} {self.from_user_id}->{self.to_user_id}>"
