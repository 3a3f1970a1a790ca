"""
Feedback Action Engine
Scheduled Jobs.

Jobs:
    - action_escalation_check: escalation rule tick across all tenants
    - action_trend_calculation: one trend classifier batch
    - action_overdue_scanner: daily overdue notice to assignees
    - notification_cleanup: retention cleanup of read/archived notifications
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timezone
from typing import Any

from sqlalchemy import select

from feedback_actions.models import db
from feedback_actions.models.action import STATUS_RESOLVED, Action
from feedback_actions.models.notification import Notification
from feedback_actions.services import escalation, trend_classifier
from feedback_actions.services.notification import NotificationService
from feedback_actions.services.scheduler_service import register_job
from feedback_actions.utils.helpers import utcnow

logger = logging.getLogger(__name__)

OVERDUE_BATCH_SIZE = 500


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Escalation Check
# ═══════════════════════════════════════════════════════════════════════════

@register_job("action_escalation_check")
def run_escalation_check(app, now=None) -> dict[str, Any]:
    """Evaluate escalation rules for every active tenant."""
    return escalation.check_all_tenants(
        now=now,
        batch_size=app.config.get("ESCALATION_BATCH_SIZE_PER_RULE", escalation.DEFAULT_BATCH_SIZE),
        budget_seconds=app.config.get("JOB_BATCH_BUDGET_SECONDS"),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Trend Calculation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("action_trend_calculation")
def run_trend_calculation(app, now=None) -> dict[str, Any]:
    """Classify one batch of actions whose trend is not yet computed."""
    return trend_classifier.calculate_trends(
        batch_size=app.config.get("TREND_BATCH_SIZE", trend_classifier.DEFAULT_BATCH_SIZE),
        now=now,
        budget_seconds=app.config.get("JOB_BATCH_BUDGET_SECONDS"),
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Overdue Scanner
# ═══════════════════════════════════════════════════════════════════════════

def _notified_since(since):
    return (
        select(Notification.id)
        .where(
            Notification.event == "action_overdue",
            Notification.reference_type == "Action",
            Notification.reference_id == Action.id,
            Notification.created_at >= since,
        )
        .exists()
    )


@register_job("action_overdue_scanner")
def scan_overdue_actions(app, now=None) -> dict[str, Any]:
    """Notify assignees of overdue actions, at most once per action per day."""
    now = now or utcnow()
    start_of_day = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    results = {"overdue": 0, "notifications_created": 0, "skipped": 0}

    overdue = db.session.execute(
        select(Action)
        .where(
            Action.is_deleted.is_(False),
            Action.status != STATUS_RESOLVED,
            Action.assigned_to_id.isnot(None),
            Action.due_date.isnot(None),
            Action.due_date < now,
            ~_notified_since(start_of_day),
        )
        .order_by(Action.due_date, Action.id)
        .limit(OVERDUE_BATCH_SIZE)
    ).scalars().all()

    for action in overdue:
        results["overdue"] += 1
        outcome = NotificationService.send(
            user_id=action.assigned_to_id,
            type="action_overdue",
            title=f"Action overdue: {action.title[:150]}",
            message=f'"{action.title}" was due {action.due_date:%Y-%m-%d}.',
            reference={"type": "Action", "id": action.id},
            action_url=f"/actions/{action.id}",
            data={"action_id": action.id, "due_date": action.due_date.isoformat()},
            tenant_id=action.tenant_id,
        )
        if outcome.get("success"):
            results["notifications_created"] += 1
        else:
            results["skipped"] += 1

    logger.info("Overdue scanner: %s", results, extra={"job_name": "action_overdue_scanner"})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 4: Notification Cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("notification_cleanup")
def cleanup_notifications(app, now=None) -> dict[str, Any]:
    """Delete read/archived notifications past retention, plus expired ones."""
    retention = app.config.get("NOTIFICATION_RETENTION_DAYS", 90)
    deleted = NotificationService.cleanup_old(retention, now=now)
    logger.info("Notification cleanup: deleted %d", deleted, extra={"job_name": "notification_cleanup"})
    return {"deleted": deleted, "retention_days": retention}
