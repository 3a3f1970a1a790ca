"""
Feedback Action Engine
Blueprint registry and shared request helpers.
"""

import logging

from flask import g, jsonify, request
from werkzeug.exceptions import HTTPException

from feedback_actions.core.exceptions import ActionEngineError
from feedback_actions.models import db
from feedback_actions.services.scope_guard import require_tenant_scope
from feedback_actions.utils.helpers import parse_int

logger = logging.getLogger(__name__)


def page_args(default_limit=20, max_limit=100) -> tuple[int, int]:
    """Read ``page`` / ``limit`` query params (page >= 1, limit capped)."""
    page = max(parse_int(request.args.get("page"), 1), 1)
    limit = parse_int(request.args.get("limit"), default_limit)
    limit = min(max(limit, 1), max_limit)
    return page, limit


def pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit}


def json_body() -> dict:
    return request.get_json(silent=True) or {}


def tenant_actor():
    """The request actor, checked for tenant scope (raises ForbiddenError)."""
    actor = g.actor
    require_tenant_scope(actor)
    return actor


def register_error_handlers(bp):
    """Render engine errors verbatim; log anything unexpected as a 500."""

    @bp.errorhandler(ActionEngineError)
    def _handle_engine_error(error: ActionEngineError):
        db.session.rollback()
        if error.status_code >= 500:
            logger.warning("Dependency failure on %s: %s", request.endpoint, error)
        return jsonify(error.to_dict()), error.status_code

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        db.session.rollback()
        actor = getattr(g, "actor", None)
        logger.exception(
            "Unexpected error in endpoint=%s", request.endpoint,
            extra={
                "tenant_id": actor.tenant_id if actor else None,
                "actor_id": actor.user_id if actor else None,
                "action_id": (request.view_args or {}).get("action_id"),
            },
        )
        return jsonify({"error": "Internal server error", "code": "ERR_INTERNAL"}), 500
