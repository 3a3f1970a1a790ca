"""
Soft Delete Mixin.

Adds ``is_deleted`` / ``deleted_at`` / ``deleted_by_id`` columns and query
helpers. Models that include this mixin are marked as deleted rather than
physically removed, and every list/get path filters on ``query_active()``.

Usage:
    class Action(SoftDeleteMixin, TenantModel):
        ...

    action.soft_delete(by_user_id=7)
    db.session.commit()

    Action.query_active().filter_by(tenant_id=1).all()
"""

from datetime import datetime, timezone

from feedback_actions.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None)
    deleted_by_id = db.Column(db.Integer, nullable=True)

    def soft_delete(self, by_user_id=None):
        """Mark this record as deleted."""
        self.is_deleted = True
        self.deleted_at = datetime.now(timezone.utc)
        self.deleted_by_id = by_user_id

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.is_deleted.is_(False))
