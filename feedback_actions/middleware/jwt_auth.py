"""
JWT Auth Middleware: parses the Bearer token and sets g.actor_*.

The middleware never rejects a request itself; endpoints that need an actor
call ``require_actor`` (tenant_context) and answer 401 when it is missing.
"""

import logging

import jwt as pyjwt
from flask import g, request

from feedback_actions.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.actor_user_id = None
        g.actor_tenant_id = None
        g.actor_role = None
        g.actor_department = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        if path.startswith(JWT_SKIP_PREFIXES):
            return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token on %s", path)
            return
        except pyjwt.InvalidTokenError as exc:
            logger.info("Invalid access token on %s: %s", path, exc)
            return

        g.actor_user_id = payload["sub"]
        g.actor_tenant_id = payload.get("tenant_id")
        g.actor_role = payload.get("role")
        g.actor_department = payload.get("department")
