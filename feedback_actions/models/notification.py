"""
Feedback Action Engine
Notification domain model.

Models:
    - Notification: in-app notification record with read/archive tracking
"""

from datetime import datetime, timezone

from feedback_actions.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {"info", "success", "warning", "error", "alert", "action", "survey", "system"}
NOTIFICATION_PRIORITIES = {"low", "medium", "high", "urgent"}
NOTIFICATION_STATUSES = {"unread", "read", "archived"}
NOTIFICATION_SOURCES = {"system", "user", "action_engine", "ai", "cron", "api"}
SCOPE_PLATFORM = "platform"
SCOPE_TENANT = "tenant"


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. ``tenant_id`` NULL means platform scope.
    ``event`` keeps the lifecycle type that produced the record
    (``action_assigned``, ``action_escalated``, ...) while ``type`` holds the
    display type from NOTIFICATION_TYPES.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index(
            "ix_notifications_user_scope_tenant_status_created",
            "user_id", "scope", "tenant_id", "status", "created_at",
        ),
        db.Index("ix_notifications_expires_at", "expires_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True)
    scope = db.Column(db.String(20), nullable=False, default=SCOPE_TENANT)

    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.String(1000), nullable=False, default="")
    type = db.Column(db.String(20), nullable=False, default="system")
    event = db.Column(db.String(50), nullable=True, index=True)
    category = db.Column(db.String(30), nullable=False, default="system")
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="unread")
    source = db.Column(db.String(30), nullable=False, default="system")

    # Link to source entity
    reference_type = db.Column(db.String(30), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    action_url = db.Column(db.String(500), nullable=True)
    data = db.Column(db.JSON, default=dict)

    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.status = "read"
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "scope": self.scope,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "event": self.event,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "source": self.source,
            "reference": (
                {"type": self.reference_type, "id": self.reference_id}
                if self.reference_type else None
            ),
            "action_url": self.action_url,
            "data": self.data or {},
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
