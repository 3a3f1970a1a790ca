"""
Feedback Action Engine
Notification Dispatcher.

Central service for lifecycle-bound notifications: preference filtering,
type/category/priority derivation, persistence, best-effort real-time emit,
fan-out, and the reader-side operations (list, read, archive, delete).

Dispatch never raises: a failed notification must not fail the mutation that
spawned it. Callers commit their own writes BEFORE dispatching, because
``send`` commits (and on failure rolls back) the session.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, or_, select

from feedback_actions.models import db
from feedback_actions.models.auth import ROLE_COMPANY_ADMIN, User
from feedback_actions.models.notification import (
    NOTIFICATION_PRIORITIES,
    NOTIFICATION_SOURCES,
    NOTIFICATION_STATUSES,
    NOTIFICATION_TYPES,
    SCOPE_PLATFORM,
    SCOPE_TENANT,
    Notification,
)
from feedback_actions.services import realtime
from feedback_actions.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── Type tables ──────────────────────────────────────────────────────────────

TYPE_CATEGORY_MAP = {
    "action_assigned": "action",
    "action_status_updated": "action",
    "action_escalated": "action",
    "action_overdue": "action",
    "action_completed": "action",
    "bulk_action_assigned": "action",
    "action_urgent": "action",
    "ai_actions_generated": "action",
    "action_plan_submitted": "action",
    "action_plan_approved": "action",
    "survey_response": "survey",
    "feedback_received": "survey",
    "system": "system",
}

TYPE_PRIORITY_MAP = {
    "action_escalated": "urgent",
    "action_overdue": "high",
    "action_assigned": "medium",
    "bulk_action_assigned": "medium",
    "action_status_updated": "low",
    "action_completed": "low",
}

# Preference key that can opt a user out of each lifecycle type
PREFERENCE_KEY_BY_TYPE = {
    "action_assigned": "action_assigned",
    "bulk_action_assigned": "action_assigned",
    "action_status_updated": "action_assigned",
    "action_escalated": "action_escalated",
    "action_overdue": "action_overdue",
    "action_completed": "action_completed",
    "action_plan_submitted": "action_assigned",
    "action_plan_approved": "action_assigned",
    "survey_response": "survey_responses",
    "feedback_received": "survey_responses",
    "system": "system_alerts",
}

TITLES = {
    "action_assigned": "New Action Assigned",
    "action_status_updated": "Action Status Updated",
    "action_escalated": "Action Escalated",
    "action_overdue": "Action Overdue",
    "action_completed": "Action Completed",
    "bulk_action_assigned": "Actions Assigned",
    "action_plan_submitted": "Action Plan Awaiting Approval",
    "action_plan_approved": "Action Plan Approved",
    "survey_response": "New Survey Response",
    "feedback_received": "New Feedback Received",
    "system": "System Notification",
}


def map_to_valid_type(event_type: str) -> str:
    """Remap lifecycle/legacy types onto the stored display types."""
    if event_type in NOTIFICATION_TYPES:
        return event_type
    if event_type.startswith("action_") or event_type.startswith("bulk_action"):
        return "action"
    if event_type.startswith("survey_") or event_type.startswith("feedback_"):
        return "survey"
    return "system"


def category_for(event_type: str) -> str:
    if event_type in TYPE_CATEGORY_MAP:
        return TYPE_CATEGORY_MAP[event_type]
    mapped = map_to_valid_type(event_type)
    return mapped if mapped in ("action", "survey") else "system"


def generate_title(event_type: str) -> str:
    return TITLES.get(event_type, "Notification")


def _opt_out_reason(user: User, event_type: str) -> str | None:
    prefs = user.notification_preferences or {}
    if prefs.get("in_app") is False:
        return "in_app_disabled"
    key = PREFERENCE_KEY_BY_TYPE.get(event_type)
    if key and prefs.get(key) is False:
        return f"{key}_disabled"
    return None


def _skipped(reason: str) -> dict:
    return {"success": False, "skipped": True, "reason": reason}


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def send(*, user_id, type, title=None, message="", priority=None,
             reference=None, action_url=None, data=None, source="action_engine",
             tenant_id=None, broadcast_tenant=False, expires_at=None) -> dict:
        """
        Create a single notification for ``user_id`` and emit it in real time.

        Args:
            type: Lifecycle type (``action_assigned``, ``action_escalated``, ...)
                  or a display type from NOTIFICATION_TYPES.
            reference: ``{"type": "Action", "id": 12}``.
            tenant_id: Expected tenant of the recipient; a mismatch is skipped.
            broadcast_tenant: Also emit on the tenant channel.

        Returns:
            ``{"success": True, "notification": Notification}`` on success,
            ``{"success": False, "skipped": True, "reason": ...}`` when filtered,
            ``{"success": False, "error": ...}`` when persistence failed.
        """
        try:
            user = db.session.get(User, user_id) if user_id is not None else None
            if user is None:
                return _skipped("user_not_found")
            if not user.is_active:
                return _skipped("user_inactive")
            if tenant_id is not None and user.tenant_id != tenant_id:
                logger.warning(
                    "Notification recipient outside tenant",
                    extra={"tenant_id": tenant_id, "actor_id": user_id},
                )
                return _skipped("tenant_mismatch")

            reason = _opt_out_reason(user, type)
            if reason:
                logger.debug("Notification %s to user %s skipped: %s", type, user_id, reason)
                return _skipped(reason)

            if priority not in NOTIFICATION_PRIORITIES:
                priority = TYPE_PRIORITY_MAP.get(type, "medium")
            if source not in NOTIFICATION_SOURCES:
                source = "system"
            reference = reference or {}

            notif = Notification(
                user_id=user.id,
                tenant_id=user.tenant_id,
                scope=SCOPE_TENANT if user.tenant_id is not None else SCOPE_PLATFORM,
                title=(title or generate_title(type))[:200],
                message=(message or "")[:1000],
                type=map_to_valid_type(type),
                event=type,
                category=category_for(type),
                priority=priority,
                status="unread",
                source=source,
                reference_type=reference.get("type"),
                reference_id=reference.get("id"),
                action_url=action_url,
                data=data or {},
                expires_at=expires_at,
            )
            db.session.add(notif)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            logger.exception("Failed to persist notification %s for user %s", type, user_id)
            return {"success": False, "error": str(exc)}

        payload = notif.to_dict()
        realtime.emit_to_user(notif.user_id, "notification", payload)
        if broadcast_tenant and notif.tenant_id is not None:
            realtime.emit_to_tenant(notif.tenant_id, "notification", payload)
        return {"success": True, "notification": notif}

    @staticmethod
    def send_bulk(user_ids, **payload) -> dict:
        """Send the same notification to several users.

        Returns:
            ``{"successful", "skipped", "failed", "total"}`` counts.
        """
        results = {"successful": 0, "skipped": 0, "failed": 0, "total": 0}
        for uid in dict.fromkeys(user_ids):
            results["total"] += 1
            outcome = NotificationService.send(user_id=uid, **payload)
            if outcome.get("success"):
                results["successful"] += 1
            elif outcome.get("skipped"):
                results["skipped"] += 1
            else:
                results["failed"] += 1
        return results

    @staticmethod
    def notify_urgent_action(action) -> dict:
        """Fan an urgent action out to its owner(s).

        Recipients: the assignee if set, else active members of
        ``assigned_to_team`` (by department), else the tenant's active
        companyAdmins. Duplicates collapse.
        """
        recipients: list[int] = []
        if action.assigned_to_id:
            recipients.append(action.assigned_to_id)
        elif action.assigned_to_team:
            stmt = select(User.id).where(
                User.tenant_id == action.tenant_id,
                User.department == action.assigned_to_team,
                User.is_active.is_(True),
            ).order_by(User.id)
            recipients.extend(db.session.execute(stmt).scalars())
        if not recipients:
            stmt = select(User.id).where(
                User.tenant_id == action.tenant_id,
                User.role == ROLE_COMPANY_ADMIN,
                User.is_active.is_(True),
            ).order_by(User.id)
            recipients.extend(db.session.execute(stmt).scalars())

        recipients = list(dict.fromkeys(recipients))
        if not recipients:
            logger.warning(
                "No recipients for urgent action",
                extra={"tenant_id": action.tenant_id, "action_id": action.id},
            )
            return {"sent": False, "reason": "no_recipients", "recipients": []}

        result = NotificationService.send_bulk(
            recipients,
            type="action_urgent",
            title=f"Urgent: {action.title}",
            message=(action.description or "Urgent action requires your attention")[:200],
            priority="urgent" if action.priority == "high" else "high",
            reference={"type": "Action", "id": action.id},
            action_url=f"/actions/{action.id}",
            data={"action_id": action.id, "category": action.category, "priority": action.priority},
            tenant_id=action.tenant_id,
        )
        return {"sent": result["successful"] > 0, "recipients": recipients, **result}

    # ── Reader operations ─────────────────────────────────────────────────

    @staticmethod
    def _visible(user_id):
        return Notification.query.filter(
            Notification.user_id == user_id,
            Notification.is_deleted.is_(False),
            or_(Notification.expires_at.is_(None), Notification.expires_at > utcnow()),
        )

    @staticmethod
    def list_for_user(user_id, *, status=None, type=None, priority=None,
                      page=1, limit=20):
        """List a user's notifications, newest first.

        ``status``, ``type`` and ``priority`` accept comma-separated values.
        Returns ``(items, total)``.
        """
        q = NotificationService._visible(user_id)
        for column, raw, allowed in (
            (Notification.status, status, NOTIFICATION_STATUSES),
            (Notification.type, type, NOTIFICATION_TYPES),
            (Notification.priority, priority, NOTIFICATION_PRIORITIES),
        ):
            if raw:
                values = [v.strip() for v in str(raw).split(",") if v.strip() in allowed]
                if values:
                    q = q.filter(column.in_(values))
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit).offset((page - 1) * limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id) -> int:
        return NotificationService._visible(user_id).filter(
            Notification.status == "unread",
        ).count()

    @staticmethod
    def _get_own(notification_id, user_id):
        return NotificationService._visible(user_id).filter(
            Notification.id == notification_id,
        ).first()

    @staticmethod
    def mark_read(notification_id, user_id):
        notif = NotificationService._get_own(notification_id, user_id)
        if not notif:
            return None
        if notif.status == "unread":
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id) -> int:
        """Mark every unread notification of the user as read. Returns count."""
        items = NotificationService._visible(user_id).filter(
            Notification.status == "unread",
        ).all()
        for n in items:
            n.mark_read()
        db.session.commit()
        return len(items)

    @staticmethod
    def archive(notification_id, user_id):
        notif = NotificationService._get_own(notification_id, user_id)
        if not notif:
            return None
        notif.status = "archived"
        db.session.commit()
        return notif

    @staticmethod
    def delete(notification_id, user_id) -> bool:
        notif = NotificationService._get_own(notification_id, user_id)
        if not notif:
            return False
        notif.is_deleted = True
        db.session.commit()
        return True

    @staticmethod
    def delete_all(user_id) -> int:
        items = NotificationService._visible(user_id).all()
        for n in items:
            n.is_deleted = True
        db.session.commit()
        return len(items)

    # ── Maintenance ───────────────────────────────────────────────────────

    @staticmethod
    def cleanup_old(retention_days: int = 90, *, now=None) -> int:
        """Hard-delete read/archived notifications older than the retention
        window, plus anything past ``expires_at``. Returns the deleted count."""
        now = now or utcnow()
        cutoff = now - timedelta(days=retention_days)
        deleted = Notification.query.filter(
            or_(
                (Notification.status.in_(["read", "archived"])) & (Notification.created_at < cutoff),
                (Notification.expires_at.isnot(None)) & (Notification.expires_at < now),
            )
        ).delete(synchronize_session=False)
        db.session.commit()
        return deleted

    @staticmethod
    def counts_by_status(user_id) -> dict:
        rows = db.session.execute(
            select(Notification.status, func.count(Notification.id))
            .where(Notification.user_id == user_id, Notification.is_deleted.is_(False))
            .group_by(Notification.status)
        ).all()
        return {status: count for status, count in rows}
