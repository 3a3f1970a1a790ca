"""
Tenant-Scope Guard: authorization decisions for every Action operation.

Each decision takes a scope tuple ``(role, tenant_id, department)`` carried by
ActorScope plus the resource being touched. Three layers compose:

  1. Tenant layer: platform administrators (role ``admin``) are barred from
     tenant endpoints; every load is conjoined with ``tenant_id``.
  2. Role layer: companyAdmin > member; members act on what they hold.
  3. Survey layer: a survey may restrict who views / assigns the actions
     derived from it (``action_permissions``), optionally per department.

Usage:
    actor = ActorScope(user_id=7, tenant_id=1, role="member", department="Ops")
    require_tenant_scope(actor)
    ensure_can_view(actor, action)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from feedback_actions.core.exceptions import ForbiddenError
from feedback_actions.models import db
from feedback_actions.models.auth import ROLE_ADMIN, ROLE_COMPANY_ADMIN, TENANT_ROLES
from feedback_actions.models.survey import Survey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActorScope:
    """Capability record handed from the request layer to services."""

    user_id: int | None
    tenant_id: int | None
    role: str
    department: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_company_admin(self) -> bool:
        return self.role == ROLE_COMPANY_ADMIN


def require_tenant_scope(actor: ActorScope) -> None:
    """Reject callers that cannot act inside a tenant."""
    if actor.is_admin:
        raise ForbiddenError("Platform administrators cannot access tenant action endpoints")
    if actor.tenant_id is None or actor.role not in TENANT_ROLES:
        raise ForbiddenError("A tenant role is required")


def require_role(actor: ActorScope, *roles: str) -> None:
    if actor.role not in roles:
        raise ForbiddenError(f"Requires role: {', '.join(roles)}")


# ── Survey-scoped permissions ─────────────────────────────────────────────


def survey_for_action(action) -> Survey | None:
    """Load the originating survey of an action (same tenant only)."""
    if not action.survey_id:
        return None
    stmt = select(Survey).where(Survey.id == action.survey_id, Survey.tenant_id == action.tenant_id)
    return db.session.execute(stmt).scalar_one_or_none()


def _department_allowed(actor: ActorScope, perms: dict) -> bool:
    restrict = perms.get("restrict_to_department")
    if not restrict:
        return True
    return actor.department == restrict


def can_view_survey_actions(actor: ActorScope, survey: Survey | None) -> bool:
    if actor.is_admin or survey is None or not survey.has_restricted_permissions:
        return True
    perms = survey.permissions
    if not _department_allowed(actor, perms):
        return False
    viewers = perms.get("allowed_viewers") or []
    if not viewers or actor.user_id in viewers:
        return True
    return actor.is_company_admin


def can_view_action(actor: ActorScope, action, survey: Survey | None = None) -> bool:
    if survey is None:
        survey = survey_for_action(action)
    return can_view_survey_actions(actor, survey)


def can_assign_action(actor: ActorScope, action, survey: Survey | None = None) -> bool:
    """Assignment-class permission.

    When the originating survey lists ``allowed_assigners``, membership in that
    list (or companyAdmin) grants assignment. Otherwise companyAdmins and the
    current assignee may reassign.
    """
    if actor.is_admin:
        return True
    if survey is None:
        survey = survey_for_action(action)
    if survey is not None and survey.has_restricted_permissions:
        perms = survey.permissions
        if not _department_allowed(actor, perms):
            return False
        assigners = perms.get("allowed_assigners") or []
        if assigners:
            return actor.is_company_admin or actor.user_id in assigners
    return actor.is_company_admin or (
        actor.user_id is not None and action.assigned_to_id == actor.user_id
    )


def ensure_can_view(actor: ActorScope, action) -> None:
    if not can_view_action(actor, action):
        logger.info(
            "Survey permission denied (view)",
            extra={"tenant_id": actor.tenant_id, "actor_id": actor.user_id, "action_id": action.id},
        )
        raise ForbiddenError("You do not have permission to view actions for this survey")


def ensure_can_assign(actor: ActorScope, action) -> None:
    if not can_assign_action(actor, action):
        logger.info(
            "Survey permission denied (assign)",
            extra={"tenant_id": actor.tenant_id, "actor_id": actor.user_id, "action_id": action.id},
        )
        raise ForbiddenError("You do not have permission to assign this action")


def hidden_survey_ids(actor: ActorScope) -> list[int]:
    """Surveys in the actor's tenant whose actions the actor may not view.

    List queries exclude actions whose ``survey_id`` is in this list.
    """
    if actor.is_admin or actor.tenant_id is None:
        return []
    stmt = select(Survey).where(Survey.tenant_id == actor.tenant_id)
    return [
        s.id for s in db.session.execute(stmt).scalars()
        if s.has_restricted_permissions and not can_view_survey_actions(actor, s)
    ]
