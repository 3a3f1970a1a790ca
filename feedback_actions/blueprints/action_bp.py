"""
Feedback Action Engine
Action Blueprint.

Endpoints:
    GET    /api/v1/actions                      list (filters, page/limit, sort)
    POST   /api/v1/actions                      create
    GET    /api/v1/actions/analytics            aggregation view
    POST   /api/v1/actions/bulk                 bulk update (companyAdmin)
    POST   /api/v1/actions/generate             AI batch from feedback
    POST   /api/v1/actions/from-feedback/<id>   survey feedback ingestion
    GET    /api/v1/actions/<id>                 detail
    PUT    /api/v1/actions/<id>                 update
    DELETE /api/v1/actions/<id>                 soft delete (companyAdmin)
    POST   /api/v1/actions/<id>/assign          manual assignment
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from feedback_actions.blueprints import json_body, page_args, register_error_handlers, tenant_actor
from feedback_actions.core.exceptions import ValidationError
from feedback_actions.middleware.tenant_context import require_actor
from feedback_actions.models.action import CHANGE_DIRECTIONS, ISSUE_STATUSES, PRIORITIES, STATUSES
from feedback_actions.models.auth import ROLE_COMPANY_ADMIN
from feedback_actions.services import action_generation, action_service
from feedback_actions.services.scope_guard import require_role
from feedback_actions.utils.helpers import parse_datetime, parse_int

logger = logging.getLogger(__name__)

action_bp = Blueprint("action_bp", __name__, url_prefix="/api/v1/actions")
register_error_handlers(action_bp)


def _list_filters() -> dict:
    args = request.args
    errors = {}
    filters = {}
    for key, allowed in (
        ("priority", PRIORITIES),
        ("status", STATUSES),
        ("issue_status", ISSUE_STATUSES),
        ("change_direction", CHANGE_DIRECTIONS),
    ):
        value = args.get(key)
        if value:
            if value not in allowed:
                errors[key] = f"must be one of: {', '.join(allowed)}"
            filters[key] = value
    if args.get("assigned_to"):
        assigned = parse_int(args.get("assigned_to"))
        if assigned is None:
            errors["assigned_to"] = "must be an integer"
        filters["assigned_to"] = assigned
    for key in ("team", "category", "search"):
        if args.get(key):
            filters[key] = args.get(key)
    for key in ("created_from", "created_to"):
        if args.get(key):
            try:
                filters[key] = parse_datetime(args.get(key))
            except ValueError:
                errors[key] = "must be an ISO-8601 date"
    if errors:
        raise ValidationError("Invalid list filters", details=errors)
    return filters


@action_bp.route("", methods=["GET"])
@require_actor
def list_actions():
    actor = tenant_actor()
    page, limit = page_args()
    result = action_service.list_actions(
        actor, _list_filters(), page=page, limit=limit, sort=request.args.get("sort"),
    )
    return jsonify({
        "actions": [a.to_dict(include_history=False) for a in result["actions"]],
        "pagination": result["pagination"],
        "summary": result["summary"],
    })


@action_bp.route("", methods=["POST"])
@require_actor
def create_action():
    actor = tenant_actor()
    action = action_service.create_action(json_body(), actor.tenant_id, actor.user_id)
    return jsonify(action.to_dict()), 201


@action_bp.route("/analytics", methods=["GET"])
@require_actor
def analytics():
    actor = tenant_actor()
    period = parse_int(request.args.get("period"), 30)
    if period < 1 or period > 365:
        raise ValidationError("Invalid period", details={"period": "must be between 1 and 365 days"})
    return jsonify(action_service.get_analytics(actor, period_days=period))


@action_bp.route("/bulk", methods=["POST"])
@require_actor
def bulk_update():
    actor = tenant_actor()
    return jsonify(action_service.bulk_update(json_body(), actor))


@action_bp.route("/generate", methods=["POST"])
@require_actor
def generate_from_feedback():
    actor = tenant_actor()
    data = json_body()
    result = action_generation.generate_from_feedback(
        data.get("feedback_ids"), actor.tenant_id, actor.user_id,
    )
    return jsonify({
        "message": f"{len(result['actions'])} actions generated",
        "actions": [a.to_dict() for a in result["actions"]],
        "feedback_processed": result["feedback_processed"],
        "used_fallback": result["used_fallback"],
        "errors": result["errors"],
    }), 201


@action_bp.route("/from-feedback/<int:feedback_id>", methods=["POST"])
@require_actor
def create_from_feedback(feedback_id):
    actor = tenant_actor()
    require_role(actor, ROLE_COMPANY_ADMIN)
    action = action_service.create_action_from_feedback(feedback_id, actor.tenant_id)
    return jsonify(action.to_dict()), 201


@action_bp.route("/<int:action_id>", methods=["GET"])
@require_actor
def get_action(action_id):
    actor = tenant_actor()
    return jsonify(action_service.get_action(action_id, actor).to_dict())


@action_bp.route("/<int:action_id>", methods=["PUT", "PATCH"])
@require_actor
def update_action(action_id):
    actor = tenant_actor()
    action = action_service.update_action(
        action_id, json_body(), actor.tenant_id, actor.user_id, actor.role,
    )
    return jsonify(action.to_dict())


@action_bp.route("/<int:action_id>", methods=["DELETE"])
@require_actor
def delete_action(action_id):
    actor = tenant_actor()
    action_service.delete_action(action_id, actor)
    return jsonify({"deleted": True, "id": action_id})


@action_bp.route("/<int:action_id>/assign", methods=["POST"])
@require_actor
def assign_action(action_id):
    actor = tenant_actor()
    action = action_service.assign_action(action_id, json_body(), actor)
    return jsonify(action.to_dict())
