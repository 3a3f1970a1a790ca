"""
Tenant Context Middleware: turns the JWT claims into an ActorScope.

Chain order:
  jwt_auth.py  ->  tenant_context.py  ->  route handler

The user row is authoritative: role, department and tenant come from the
directory, not from the token, so a demoted or deactivated user loses access
immediately. A tenant that is missing or inactive yields 403.
"""

import logging
from functools import wraps

from flask import g, request

from feedback_actions.models import db
from feedback_actions.models.auth import Tenant, User
from feedback_actions.services.scope_guard import ActorScope
from feedback_actions.utils.errors import E, api_error

logger = logging.getLogger(__name__)

TENANT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.actor = None

        if not request.path.startswith("/api/v1/") or request.path.startswith(TENANT_SKIP_PREFIXES):
            return None

        user_id = getattr(g, "actor_user_id", None)
        if user_id is None:
            return None

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            logger.warning("Token for unknown or inactive user %s", user_id)
            return api_error(E.UNAUTHORIZED, "Authentication required")

        if user.tenant_id is not None:
            tenant = db.session.get(Tenant, user.tenant_id)
            if tenant is None or not tenant.is_active:
                logger.warning(
                    "Request for inactive tenant", extra={"tenant_id": user.tenant_id, "actor_id": user.id},
                )
                return api_error(E.FORBIDDEN, "Tenant is not active")

        claimed = getattr(g, "actor_tenant_id", None)
        if claimed is not None and claimed != user.tenant_id:
            logger.warning(
                "Token tenant %s does not match user tenant", claimed,
                extra={"tenant_id": user.tenant_id, "actor_id": user.id},
            )
            return api_error(E.UNAUTHORIZED, "Authentication required")

        g.actor = ActorScope(
            user_id=user.id,
            tenant_id=user.tenant_id,
            role=user.role,
            department=user.department,
        )
        return None


def require_actor(fn):
    """Route decorator: 401 unless the request carries a valid actor."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "actor", None) is None:
            return api_error(E.UNAUTHORIZED, "Authentication required")
        return fn(*args, **kwargs)

    return wrapper
