"""
Feedback Action Engine
Action plan models.

Models:
    - ActionPlan: execution plan for one action, confirmed by a company admin
      before work starts; soft-deletable
    - ActionStep: ordered checklist item of a plan

Plan lifecycle::

    draft -> pending_approval -> approved -> in_progress -> completed
    draft -> approved                       (direct confirmation)
    any non-terminal status -> cancelled

Progress counters on the plan are recalculated from its steps after every
step mutation; a skipped step counts towards completion.
"""

from datetime import datetime, timezone

from feedback_actions.models import db
from feedback_actions.models.base import TenantModel, tenant_index
from feedback_actions.models.soft_delete import SoftDeleteMixin
from feedback_actions.utils.helpers import as_utc


# ── Constants ────────────────────────────────────────────────────────────────

PLAN_DRAFT = "draft"
PLAN_PENDING_APPROVAL = "pending_approval"
PLAN_APPROVED = "approved"
PLAN_IN_PROGRESS = "in_progress"
PLAN_COMPLETED = "completed"
PLAN_CANCELLED = "cancelled"
TERMINAL_PLAN_STATUSES = (PLAN_COMPLETED, PLAN_CANCELLED)

AUDIENCE_TYPES = ("all_employees", "department", "segment", "individuals")

STEP_TYPES = ("review", "analysis", "action", "communication", "measurement")
STEP_STATUSES = ("pending", "in_progress", "completed", "skipped")
DONE_STEP_STATUSES = ("completed", "skipped")

DEFAULT_CHECKLIST = (
    ("Review survey comments", "review", True),
    ("Identify root cause", "analysis", True),
    ("Define corrective action", "action", True),
    ("Communicate plan to employees", "communication", True),
    ("Measure follow-up sentiment", "measurement", False),
)


def _iso(value):
    return value.isoformat() if value else None


def _now():
    return datetime.now(timezone.utc)


class ActionPlan(SoftDeleteMixin, TenantModel):
    """Execution plan for an action. At most one live plan per action."""

    __tablename__ = "action_plans"
    __table_args__ = (
        tenant_index("action_plans", "status"),
        tenant_index("action_plans", "primary_owner_id"),
        tenant_index("action_plans", "planned_end_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    action_id = db.Column(
        db.Integer, db.ForeignKey("actions.id", ondelete="CASCADE"), nullable=False, index=True,
    )

    # Content
    what_will_be_done = db.Column(db.Text, nullable=False)
    expected_outcome = db.Column(db.Text, nullable=False)
    target_audience = db.Column(db.JSON, default=lambda: {"type": "all_employees"})
    success_criteria = db.Column(db.JSON, default=list)

    # Ownership
    primary_owner_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    collaborators = db.Column(db.JSON, default=list)

    # Timeline
    planned_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    planned_end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(20), nullable=False, default=PLAN_DRAFT)
    confirmed_by_id = db.Column(db.Integer, nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by_id = db.Column(db.Integer, nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejection_reason = db.Column(db.String(500), nullable=True)
    completed_by_id = db.Column(db.Integer, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completion_notes = db.Column(db.Text, nullable=True)

    # Progress (recalculated from steps)
    total_steps = db.Column(db.Integer, nullable=False, default=0)
    completed_steps = db.Column(db.Integer, nullable=False, default=0)
    skipped_steps = db.Column(db.Integer, nullable=False, default=0)
    percent_complete = db.Column(db.Integer, nullable=False, default=0)
    current_step_number = db.Column(db.Integer, nullable=False, default=1)

    created_by_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    steps = db.relationship(
        "ActionStep",
        back_populates="plan",
        order_by="ActionStep.step_number",
        cascade="all, delete-orphan",
        lazy="select",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PLAN_STATUSES

    @property
    def is_overdue(self) -> bool:
        if not self.planned_end_date or self.is_terminal:
            return False
        return as_utc(self.planned_end_date) < datetime.now(timezone.utc)

    @property
    def progress(self) -> dict:
        return {
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "skipped_steps": self.skipped_steps,
            "percent_complete": self.percent_complete,
            "current_step_number": self.current_step_number,
        }

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "action_id": self.action_id,
            "what_will_be_done": self.what_will_be_done,
            "expected_outcome": self.expected_outcome,
            "target_audience": self.target_audience or {"type": "all_employees"},
            "success_criteria": self.success_criteria or [],
            "primary_owner": self.primary_owner_id,
            "collaborators": self.collaborators or [],
            "planned_start_date": _iso(self.planned_start_date),
            "planned_end_date": _iso(self.planned_end_date),
            "actual_start_date": _iso(self.actual_start_date),
            "actual_end_date": _iso(self.actual_end_date),
            "status": self.status,
            "confirmed_by": self.confirmed_by_id,
            "confirmed_at": _iso(self.confirmed_at),
            "rejected_by": self.rejected_by_id,
            "rejected_at": _iso(self.rejected_at),
            "rejection_reason": self.rejection_reason,
            "completed_by": self.completed_by_id,
            "completed_at": _iso(self.completed_at),
            "completion_notes": self.completion_notes,
            "progress": self.progress,
            "is_overdue": self.is_overdue,
            "created_by": self.created_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in sorted(self.steps, key=lambda s: s.step_number)]
        return d

    def __repr__(self):
        return f"<ActionPlan {self.id}: action={self.action_id} [{self.status}]>"


class ActionStep(TenantModel):
    """One checklist item. ``step_number`` is 1-based and dense within a plan."""

    __tablename__ = "action_steps"
    __table_args__ = (
        db.Index("ix_action_steps_plan_number", "plan_id", "step_number"),
        tenant_index("action_steps", "assigned_to_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("action_plans.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    step_number = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000), nullable=True)
    step_type = db.Column(db.String(20), nullable=False, default="action")
    status = db.Column(db.String(20), nullable=False, default="pending")
    is_required = db.Column(db.Boolean, nullable=False, default=True)

    assigned_to_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(2000), nullable=True)

    skipped_by_id = db.Column(db.Integer, nullable=True)
    skipped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    skip_reason = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    plan = db.relationship("ActionPlan", back_populates="steps")

    @property
    def is_done(self) -> bool:
        return self.status in DONE_STEP_STATUSES

    @property
    def is_overdue(self) -> bool:
        if not self.due_date or self.is_done:
            return False
        return as_utc(self.due_date) < datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "step_number": self.step_number,
            "title": self.title,
            "description": self.description,
            "step_type": self.step_type,
            "status": self.status,
            "is_required": self.is_required,
            "assigned_to": self.assigned_to_id,
            "due_date": _iso(self.due_date),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by_id,
            "notes": self.notes,
            "skipped_by": self.skipped_by_id,
            "skipped_at": _iso(self.skipped_at),
            "skip_reason": self.skip_reason,
            "is_overdue": self.is_overdue,
        }

    def __repr__(self):
        return f"<ActionStep {self.id}: plan={self.plan_id} #{self.step_number} [{self.status}]>"
