"""
Feedback Action Engine
Notification Blueprint: the recipient's own inbox.

Endpoints:
    GET    /api/v1/notifications                 list (status/type/priority, page/limit)
    GET    /api/v1/notifications/unread-count
    PATCH  /api/v1/notifications/<id>/read
    PATCH  /api/v1/notifications/read-all
    PATCH  /api/v1/notifications/<id>/archive
    DELETE /api/v1/notifications/<id>
    DELETE /api/v1/notifications
"""

from flask import Blueprint, g, jsonify, request

from feedback_actions.blueprints import page_args, pagination, register_error_handlers
from feedback_actions.middleware.tenant_context import require_actor
from feedback_actions.services.notification import NotificationService
from feedback_actions.utils.errors import E, api_error

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1/notifications")
register_error_handlers(notification_bp)


@notification_bp.route("", methods=["GET"])
@require_actor
def list_notifications():
    page, limit = page_args()
    items, total = NotificationService.list_for_user(
        g.actor.user_id,
        status=request.args.get("status"),
        type=request.args.get("type"),
        priority=request.args.get("priority"),
        page=page,
        limit=limit,
    )
    return jsonify({
        "notifications": [n.to_dict() for n in items],
        "pagination": pagination(page, limit, total),
        "unread_count": NotificationService.unread_count(g.actor.user_id),
        "counts": NotificationService.counts_by_status(g.actor.user_id),
    })


@notification_bp.route("/unread-count", methods=["GET"])
@require_actor
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(g.actor.user_id)})


@notification_bp.route("/<int:nid>/read", methods=["PATCH"])
@require_actor
def mark_read(nid):
    notif = NotificationService.mark_read(nid, g.actor.user_id)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/read-all", methods=["PATCH"])
@require_actor
def mark_all_read():
    return jsonify({"marked_read": NotificationService.mark_all_read(g.actor.user_id)})


@notification_bp.route("/<int:nid>/archive", methods=["PATCH"])
@require_actor
def archive(nid):
    notif = NotificationService.archive(nid, g.actor.user_id)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/<int:nid>", methods=["DELETE"])
@require_actor
def delete_notification(nid):
    if not NotificationService.delete(nid, g.actor.user_id):
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify({"deleted": True, "id": nid})


@notification_bp.route("", methods=["DELETE"])
@require_actor
def delete_all():
    return jsonify({"deleted": NotificationService.delete_all(g.actor.user_id)})
