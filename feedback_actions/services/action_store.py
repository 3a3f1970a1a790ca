"""
Action Store: persistence boundary for Action records.

Every read is tenant-scoped and excludes soft-deleted rows. Writes go through
``save`` so an optimistic version conflict surfaces as
ConcurrentModificationError instead of a raw ORM exception.

Aggregates for the analytics view live here as well, since they are plain
GROUP BY queries over the same scoped base.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.orm.exc import StaleDataError

from feedback_actions.core.exceptions import ConcurrentModificationError, ValidationError
from feedback_actions.models import db
from feedback_actions.models.action import STATUS_RESOLVED, Action
from feedback_actions.services.helpers.scoped_queries import get_scoped
from feedback_actions.utils.helpers import LIKE_ESCAPE, as_utc, like_pattern, utcnow

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "created_at": Action.created_at,
    "updated_at": Action.updated_at,
    "due_date": Action.due_date,
    "priority": Action.priority,
    "status": Action.status,
    "title": Action.title,
}
DEFAULT_SORT = "-created_at"
MAX_PAGE_SIZE = 100


def find_by_id(action_id, tenant_id) -> Action:
    return get_scoped(Action, action_id, tenant_id=tenant_id)


def _base_query(tenant_id):
    return Action.query_active().filter(Action.tenant_id == tenant_id)


def apply_filters(query, filters: dict):
    """Conjoin the supported list filters onto a query.

    Supported keys: priority, status, assigned_to, team, category,
    issue_status, change_direction, created_from, created_to, search,
    exclude_survey_ids.
    """
    if filters.get("priority"):
        query = query.filter(Action.priority == filters["priority"])
    if filters.get("status"):
        query = query.filter(Action.status == filters["status"])
    if filters.get("assigned_to") is not None:
        query = query.filter(Action.assigned_to_id == filters["assigned_to"])
    if filters.get("team"):
        query = query.filter(or_(Action.team == filters["team"], Action.assigned_to_team == filters["team"]))
    if filters.get("category"):
        query = query.filter(Action.category == filters["category"])
    if filters.get("issue_status"):
        query = query.filter(Action.trend_issue_status == filters["issue_status"])
    if filters.get("change_direction"):
        query = query.filter(Action.trend_change_direction == filters["change_direction"])
    if filters.get("created_from"):
        query = query.filter(Action.created_at >= filters["created_from"])
    if filters.get("created_to"):
        query = query.filter(Action.created_at <= filters["created_to"])
    if filters.get("search"):
        like = like_pattern(filters["search"].strip())
        query = query.filter(or_(
            Action.title.ilike(like, escape=LIKE_ESCAPE),
            Action.description.ilike(like, escape=LIKE_ESCAPE),
            Action.team.ilike(like, escape=LIKE_ESCAPE),
            Action.category.ilike(like, escape=LIKE_ESCAPE),
        ))
    if filters.get("exclude_survey_ids"):
        query = query.filter(or_(
            Action.survey_id.is_(None),
            Action.survey_id.notin_(filters["exclude_survey_ids"]),
        ))
    return query


def _order_by(sort: str | None):
    sort = sort or DEFAULT_SORT
    desc = sort.startswith("-")
    key = sort.lstrip("-")
    column = SORT_FIELDS.get(key)
    if column is None:
        raise ValidationError(
            "Invalid sort key",
            details={"sort": f"must be one of: {', '.join(sorted(SORT_FIELDS))} (prefix '-' for descending)"},
        )
    return (column.desc() if desc else column.asc()), (Action.id.desc() if desc else Action.id.asc())


def find_by_filter(tenant_id, filters: dict | None = None, *, page=1, limit=20, sort=None):
    """Return ``(items, total)`` for one page of the filtered tenant actions."""
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 20), 1), MAX_PAGE_SIZE)
    query = apply_filters(_base_query(tenant_id), filters or {})
    total = query.count()
    items = query.order_by(*_order_by(sort)).limit(limit).offset((page - 1) * limit).all()
    return items, total


def create(action: Action) -> Action:
    db.session.add(action)
    return save(action)


def save(action: Action) -> Action:
    """Commit pending changes to an action."""
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConcurrentModificationError("Action", action.id)
    return action


def soft_delete(action: Action, by_user_id) -> Action:
    action.soft_delete(by_user_id=by_user_id)
    return save(action)


# ── Aggregates ───────────────────────────────────────────────────────────────


def _grouped_counts(query, column) -> dict:
    rows = query.with_entities(column, func.count(Action.id)).group_by(column).all()
    return {key: count for key, count in rows if key is not None}


def summary_counts(tenant_id, filters: dict | None = None) -> dict:
    """Headline counts for the list view (same filters as the page)."""
    query = apply_filters(_base_query(tenant_id), filters or {})
    by_status = _grouped_counts(query, Action.status)
    return {
        "total": sum(by_status.values()),
        "pending": by_status.get("pending", 0),
        "open": by_status.get("open", 0),
        "in_progress": by_status.get("in-progress", 0),
        "resolved": by_status.get(STATUS_RESOLVED, 0),
        "high_priority": query.filter(Action.priority == "high").count(),
    }


def analytics(tenant_id, *, period_days=30, now=None) -> dict:
    """Aggregation view over actions created in the last ``period_days``."""
    now = now or utcnow()
    since = now - timedelta(days=period_days)
    query = _base_query(tenant_id).filter(Action.created_at >= since)

    by_team = (
        query.with_entities(Action.team, func.count(Action.id))
        .filter(Action.team.isnot(None))
        .group_by(Action.team)
        .order_by(func.count(Action.id).desc(), Action.team)
        .limit(10)
        .all()
    )

    timeline: dict[str, int] = {}
    for (created_at,) in query.with_entities(Action.created_at).all():
        day = as_utc(created_at).date().isoformat()
        timeline[day] = timeline.get(day, 0) + 1

    overdue = query.filter(
        Action.status != STATUS_RESOLVED,
        Action.due_date.isnot(None),
        Action.due_date < now,
    ).count()

    resolved_rows = db.session.execute(
        select(Action.created_at, Action.completed_at).where(
            Action.tenant_id == tenant_id,
            Action.is_deleted.is_(False),
            Action.created_at >= since,
            Action.status == STATUS_RESOLVED,
            Action.completed_at.isnot(None),
        )
    ).all()
    durations = [
        (as_utc(done) - as_utc(created)).total_seconds() / 3600
        for created, done in resolved_rows
    ]
    avg_resolution = round(sum(durations) / len(durations), 2) if durations else None

    return {
        "period_days": period_days,
        "total": query.count(),
        "by_priority": _grouped_counts(query, Action.priority),
        "by_status": _grouped_counts(query, Action.status),
        "by_team": [{"team": team, "count": count} for team, count in by_team],
        "timeline": [{"date": day, "count": timeline[day]} for day in sorted(timeline)],
        "overdue": overdue,
        "avg_resolution_time_hours": avg_resolution,
    }
