"""
Feedback Action Engine
Survey-side read models.

Survey authoring and response capture live in the survey subsystem. The action
engine reads these tables by id only; it never walks the object graph beyond a
single feedback -> response -> survey lookup.

Models:
    - Survey: title, creation order and per-survey action permissions
    - SurveyResponse: one submitted response, linked to its survey
    - FeedbackAnalysis: AI analysis of a response (sentiment, categories, summary)
"""

from datetime import datetime, timezone

from feedback_actions.models import db
from feedback_actions.models.base import TenantModel


SENTIMENTS = {"positive", "neutral", "negative"}


class Survey(TenantModel):
    """A tenant survey.

    ``action_permissions`` shape::

        {
            "enabled": bool,
            "allowed_viewers": [user_id, ...],
            "allowed_assigners": [user_id, ...],
            "restrict_to_department": str | None,
        }
    """

    __tablename__ = "surveys"
    __table_args__ = (
        db.Index("ix_surveys_tenant_created", "tenant_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(20), default="active")
    action_permissions = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def permissions(self) -> dict:
        return self.action_permissions or {}

    @property
    def has_restricted_permissions(self) -> bool:
        return bool(self.permissions.get("enabled"))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "status": self.status,
            "action_permissions": self.permissions,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Survey {self.id}: {self.title[:40]}>"


class SurveyResponse(TenantModel):
    __tablename__ = "survey_responses"

    id = db.Column(db.Integer, primary_key=True)
    survey_id = db.Column(
        db.Integer, db.ForeignKey("surveys.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<SurveyResponse {self.id} survey={self.survey_id}>"


class FeedbackAnalysis(TenantModel):
    """Read-only analysis record produced by the feedback pipeline."""

    __tablename__ = "feedback_analyses"

    id = db.Column(db.Integer, primary_key=True)
    survey_id = db.Column(
        db.Integer, db.ForeignKey("surveys.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    response_id = db.Column(
        db.Integer, db.ForeignKey("survey_responses.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    sentiment = db.Column(db.String(20), default="neutral")
    categories = db.Column(db.JSON, default=list)
    summary = db.Column(db.Text, nullable=True)
    confidence = db.Column(db.Float, nullable=True, comment="Model confidence 0..1")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "survey_id": self.survey_id,
            "response_id": self.response_id,
            "sentiment": self.sentiment,
            "categories": self.categories or [],
            "summary": self.summary,
            "confidence": self.confidence,
        }

    def __repr__(self):
        return f"<FeedbackAnalysis {self.id} [{self.sentiment}]>"
