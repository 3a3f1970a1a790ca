"""
Tenant-scoped query helpers.

Every get-by-id in the engine goes through these helpers instead of
``db.session.get(Model, pk)``. A bare ``get`` bypasses tenant isolation.

Usage:
    action = get_scoped(Action, action_id, tenant_id=tenant_id)

Soft-deleted rows (models with an ``is_deleted`` column) are treated as
missing unless ``include_deleted=True``.
"""

import logging

from sqlalchemy import select

from feedback_actions.core.exceptions import NotFoundError
from feedback_actions.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk, *, tenant_id, include_deleted: bool = False, resource: str | None = None):
    """Fetch a single entity by PK, conjoined with ``tenant_id``.

    Cross-tenant access is indistinguishable from a missing record: both
    raise NotFoundError -> HTTP 404.

    Args:
        model: SQLAlchemy model class with ``id`` and ``tenant_id`` columns.
        pk: Primary key value to look up.
        tenant_id: Tenant scope. Required; ``None`` is rejected.
        include_deleted: Return soft-deleted rows as well.
        resource: Name used in the NotFoundError (defaults to the model name).

    Raises:
        ValueError: If tenant_id is None or the model has no tenant_id column.
        NotFoundError: If the entity does not exist, belongs to another tenant,
                       or is soft-deleted.
    """
    if tenant_id is None:
        raise ValueError(
            f"{model.__name__} id={pk} requires a tenant_id scope. "
            "Unscoped lookups are forbidden."
        )
    if not hasattr(model, "tenant_id"):
        raise ValueError(f"{model.__name__} has no tenant_id column; refusing unscoped lookup")

    name = resource or model.__name__
    try:
        pk = int(pk)
    except (TypeError, ValueError):
        raise NotFoundError(resource=name, resource_id=pk, tenant_id=tenant_id)

    stmt = select(model).where(model.id == pk, model.tenant_id == tenant_id)
    if not include_deleted and hasattr(model, "is_deleted"):
        stmt = stmt.where(model.is_deleted.is_(False))

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in tenant %s", name, pk, tenant_id)
        raise NotFoundError(resource=name, resource_id=pk, tenant_id=tenant_id)
    return result

