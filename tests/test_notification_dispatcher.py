"""
Notification dispatcher tests.

Covers:
    - send: persistence, derived category/priority, realtime emit
    - Preference opt-outs, inactive / foreign recipients
    - Legacy type remapping
    - Urgent fan-out recipient resolution
    - Reader operations and retention cleanup
"""

from datetime import datetime, timedelta, timezone

import pytest

from feedback_actions.models import db as _db
from feedback_actions.models.notification import Notification
from feedback_actions.services import realtime
from feedback_actions.services.notification import (
    NotificationService,
    category_for,
    map_to_valid_type,
)


def _send(user, type="action_assigned", **kwargs):
    return NotificationService.send(user_id=user.id, type=type, message="hello", **kwargs)


class TestSend:
    def test_persists_and_emits(self, member):
        result = _send(member, reference={"type": "Action", "id": 42}, action_url="/actions/42")
        assert result["success"] is True
        notif = result["notification"]
        assert notif.title == "New Action Assigned"
        assert notif.type == "action"
        assert notif.event == "action_assigned"
        assert notif.category == "action"
        assert notif.priority == "medium"
        assert notif.status == "unread"
        assert notif.tenant_id == member.tenant_id
        assert notif.scope == "tenant"
        assert notif.reference_id == 42

        events = realtime.recorded_events(realtime.user_channel(member.id))
        assert len(events) == 1
        assert events[0]["event"] == "notification"
        assert events[0]["payload"]["id"] == notif.id

    @pytest.mark.parametrize("event_type,priority", [
        ("action_escalated", "urgent"),
        ("action_overdue", "high"),
        ("action_assigned", "medium"),
        ("action_status_updated", "low"),
    ])
    def test_default_priority_map(self, member, event_type, priority):
        assert _send(member, type=event_type)["notification"].priority == priority

    def test_explicit_priority_wins(self, member):
        assert _send(member, priority="high")["notification"].priority == "high"

    def test_tenant_broadcast(self, member):
        _send(member, broadcast_tenant=True)
        assert len(realtime.recorded_events(realtime.tenant_channel(member.tenant_id))) == 1

    def test_type_opt_out_creates_nothing(self, tenant, make_user):
        user = make_user(tenant, preferences={"action_assigned": False})
        result = _send(user)
        assert result == {"success": False, "skipped": True, "reason": "action_assigned_disabled"}
        assert Notification.query.count() == 0
        assert realtime.recorded_events() == []

    def test_channel_opt_out(self, tenant, make_user):
        user = make_user(tenant, preferences={"in_app": False})
        assert _send(user, type="action_escalated")["reason"] == "in_app_disabled"

    def test_opt_out_is_per_type(self, tenant, make_user):
        user = make_user(tenant, preferences={"action_overdue": False})
        assert _send(user, type="action_assigned")["success"] is True

    def test_inactive_and_missing_users_are_skipped(self, tenant, make_user):
        inactive = make_user(tenant, is_active=False)
        assert _send(inactive)["reason"] == "user_inactive"
        assert NotificationService.send(user_id=999999, type="system")["reason"] == "user_not_found"

    def test_recipient_outside_tenant_is_skipped(self, member, other_tenant):
        assert _send(member, tenant_id=other_tenant.id)["reason"] == "tenant_mismatch"

    def test_persistence_failure_is_reported_not_raised(self, member, monkeypatch):
        def broken_commit():
            raise RuntimeError("database is locked")

        monkeypatch.setattr(_db.session, "commit", broken_commit)
        result = _send(member)
        assert result["success"] is False
        assert "database is locked" in result["error"]

    def test_realtime_failure_is_swallowed(self, member, monkeypatch):
        class Broken:
            def publish(self, channel, message):
                raise ConnectionError("redis down")

        monkeypatch.setattr(realtime, "_backend", Broken())
        assert _send(member)["success"] is True
        assert Notification.query.count() == 1


class TestTypeMapping:
    @pytest.mark.parametrize("raw,mapped", [
        ("action_whatever", "action"),
        ("bulk_action_assigned", "action"),
        ("survey_closed", "survey"),
        ("feedback_received", "survey"),
        ("billing_event", "system"),
        ("warning", "warning"),
    ])
    def test_remap(self, raw, mapped):
        assert map_to_valid_type(raw) == mapped

    def test_category(self):
        assert category_for("action_overdue") == "action"
        assert category_for("survey_closed") == "survey"
        assert category_for("weird") == "system"

    def test_legacy_type_is_stored_remapped(self, member):
        notif = _send(member, type="action_reminder")["notification"]
        assert notif.type == "action"
        assert notif.event == "action_reminder"
        assert notif.title == "Notification"


class TestUrgentFanOut:
    def test_assignee_first(self, tenant, member, company_admin, make_action):
        action = make_action(tenant, priority="high", assigned_to_id=member.id)
        result = NotificationService.notify_urgent_action(action)
        assert result["recipients"] == [member.id]
        assert result["sent"] is True

    def test_team_members_by_department(self, tenant, company_admin, make_user, make_action):
        a = make_user(tenant, department="Payroll")
        b = make_user(tenant, department="Payroll")
        make_user(tenant, department="Payroll", is_active=False)
        make_user(tenant, department="Sales")
        action = make_action(tenant, priority="high", assigned_to_team="Payroll")
        assert NotificationService.notify_urgent_action(action)["recipients"] == [a.id, b.id]

    def test_company_admins_as_last_resort(self, tenant, member, company_admin, make_user, make_action):
        second_admin = make_user(tenant, role="companyAdmin")
        action = make_action(tenant, priority="high", assigned_to_team="Nobody")
        result = NotificationService.notify_urgent_action(action)
        assert result["recipients"] == [company_admin.id, second_admin.id]
        assert result["successful"] == 2

    def test_no_recipients(self, tenant, make_action):
        action = make_action(tenant, priority="high")
        assert NotificationService.notify_urgent_action(action) == {
            "sent": False, "reason": "no_recipients", "recipients": [],
        }

    def test_send_bulk_collapses_duplicates(self, tenant, member, make_user):
        opted_out = make_user(tenant, preferences={"system_alerts": False})
        result = NotificationService.send_bulk([member.id, member.id, opted_out.id], type="system")
        assert result == {"successful": 1, "skipped": 1, "failed": 0, "total": 2}


class TestReaderOperations:
    def test_list_and_unread_count(self, member):
        first = _send(member)["notification"]
        _send(member, type="action_overdue")
        items, total = NotificationService.list_for_user(member.id)
        assert total == 2
        assert NotificationService.unread_count(member.id) == 2

        NotificationService.mark_read(first.id, member.id)
        assert NotificationService.unread_count(member.id) == 1
        read, total_read = NotificationService.list_for_user(member.id, status="read")
        assert [n.id for n in read] == [first.id]
        assert total_read == 1
        assert NotificationService.counts_by_status(member.id) == {"read": 1, "unread": 1}

    def test_filters_ignore_unknown_values(self, member):
        _send(member, priority="high")
        _send(member, priority="low")
        items, total = NotificationService.list_for_user(member.id, priority="high,bogus")
        assert total == 1

    def test_cannot_touch_other_users_notifications(self, member, company_admin):
        notif = _send(member)["notification"]
        assert NotificationService.mark_read(notif.id, company_admin.id) is None
        assert NotificationService.archive(notif.id, company_admin.id) is None
        assert NotificationService.delete(notif.id, company_admin.id) is False

    def test_mark_all_archive_delete(self, member):
        a = _send(member)["notification"]
        _send(member)
        assert NotificationService.mark_all_read(member.id) == 2
        assert NotificationService.archive(a.id, member.id).status == "archived"
        assert NotificationService.delete(a.id, member.id) is True
        _, total = NotificationService.list_for_user(member.id)
        assert total == 1
        assert NotificationService.delete_all(member.id) == 1
        assert NotificationService.list_for_user(member.id)[1] == 0

    def test_expired_notifications_are_hidden(self, member):
        _send(member, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert NotificationService.list_for_user(member.id)[1] == 0


class TestCleanup:
    def test_retention_cleanup(self, member):
        now = datetime.now(timezone.utc)
        old_read = _send(member)["notification"]
        old_read.status = "read"
        old_read.created_at = now - timedelta(days=120)
        old_unread = _send(member)["notification"]
        old_unread.created_at = now - timedelta(days=120)
        fresh_read = _send(member)["notification"]
        fresh_read.status = "read"
        expired = _send(member, expires_at=now - timedelta(days=1))["notification"]
        _db.session.commit()
        kept = {old_unread.id, fresh_read.id}

        assert NotificationService.cleanup_old(90, now=now) == 2
        _db.session.expire_all()
        remaining = {n.id for n in Notification.query.all()}
        assert remaining == kept
        assert expired.id not in remaining
