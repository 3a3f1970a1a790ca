"""
Trend Classifier: labels each action's recurrence status against the
tenant's previous survey.

Processes actions with a feedback link whose trend has not been computed,
in bounded batches. Each action does one feedback -> response -> survey
lookup, then counts earlier similar actions (case-insensitive category
match) to derive ``issue_status``:

    P = 0             -> new
    P > 0, R = P      -> worsening (everything was resolved, now back)
    P > 0, R < P      -> chronic

Per-action failures are rolled back and logged; the batch continues.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy import func, select

from feedback_actions.models import db
from feedback_actions.models.action import STATUS_RESOLVED, Action
from feedback_actions.models.survey import FeedbackAnalysis, Survey, SurveyResponse
from feedback_actions.utils.helpers import LIKE_ESCAPE, like_pattern, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

SENTIMENT_DIRECTION = {"negative": "down", "positive": "up"}


def pending_actions(batch_size=DEFAULT_BATCH_SIZE) -> list[Action]:
    stmt = (
        select(Action)
        .where(
            Action.feedback_id.isnot(None),
            Action.trend_calculated_at.is_(None),
            Action.is_deleted.is_(False),
        )
        .order_by(Action.id)
        .limit(batch_size)
    )
    return list(db.session.execute(stmt).scalars())


def current_survey_id(feedback: FeedbackAnalysis | None) -> int | None:
    if feedback is None:
        return None
    if feedback.response_id is not None:
        response = db.session.get(SurveyResponse, feedback.response_id)
        if response is not None and response.tenant_id == feedback.tenant_id:
            return response.survey_id
    return feedback.survey_id


def previous_survey(tenant_id: int, survey: Survey) -> Survey | None:
    stmt = (
        select(Survey)
        .where(
            Survey.tenant_id == tenant_id,
            Survey.id != survey.id,
            Survey.created_at < survey.created_at,
        )
        .order_by(Survey.created_at.desc(), Survey.id.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _similar(action: Action, term: str):
    return (
        Action.tenant_id == action.tenant_id,
        Action.category.ilike(like_pattern(term), escape=LIKE_ESCAPE),
        Action.created_at < action.created_at,
        Action.is_deleted.is_(False),
        Action.id != action.id,
    )


def similar_counts(action: Action, term: str) -> tuple[int, int, object]:
    """Return ``(previous, resolved, earliest_created_at)`` for earlier similar actions."""
    if not term:
        return 0, 0, None
    where = _similar(action, term)
    previous, earliest = db.session.execute(
        select(func.count(Action.id), func.min(Action.created_at)).where(*where)
    ).one()
    resolved = db.session.execute(
        select(func.count(Action.id)).where(*where, Action.status == STATUS_RESOLVED)
    ).scalar_one()
    return previous, resolved, earliest


def issue_status_for(previous: int, resolved: int) -> str:
    if previous == 0:
        return "new"
    if resolved == previous:
        return "worsening"
    return "chronic"


def _mark_new(action: Action, now, metric_name=None) -> None:
    action.trend_metric_name = metric_name
    action.trend_issue_status = "new"
    action.trend_is_recurring = False
    action.trend_first_detected_at = action.created_at
    action.trend_calculated_at = now


def classify(action: Action, now) -> None:
    """Compute and stage the trend fields of one action (caller commits)."""
    feedback = db.session.get(FeedbackAnalysis, action.feedback_id)
    if feedback is not None and feedback.tenant_id != action.tenant_id:
        feedback = None
    categories = [c for c in ((feedback.categories if feedback else None) or []) if isinstance(c, str)]
    metric_name = categories[0] if categories else "General"

    survey_id = current_survey_id(feedback)
    survey = db.session.get(Survey, survey_id) if survey_id else None
    if survey is None or survey.tenant_id != action.tenant_id:
        _mark_new(action, now)
        return

    prior = previous_survey(action.tenant_id, survey)
    if prior is None:
        _mark_new(action, now, metric_name)
        return

    term = categories[0] if categories else (action.category or "")
    previous, resolved, earliest = similar_counts(action, term)
    recurring = previous > 0

    action.trend_previous_survey_id = prior.id
    action.trend_metric_name = metric_name
    action.trend_change_direction = SENTIMENT_DIRECTION.get(feedback.sentiment, "stable")
    action.trend_issue_status = issue_status_for(previous, resolved)
    action.trend_is_recurring = recurring
    action.trend_first_detected_at = earliest if recurring and earliest else action.created_at
    action.trend_calculated_at = now


def calculate_trends(batch_size=DEFAULT_BATCH_SIZE, now=None, budget_seconds=None) -> dict:
    """Classify one batch of pending actions.

    Returns:
        ``{"processed", "errors", "total"}``; ``timed_out`` is set when the
        wall-clock budget cut the batch short.
    """
    now = now or utcnow()
    started = time.monotonic()
    actions = pending_actions(batch_size)
    processed = errors = 0
    timed_out = False

    for action in actions:
        if budget_seconds is not None and time.monotonic() - started > budget_seconds:
            timed_out = True
            break
        action_id = action.id
        try:
            classify(action, now)
            db.session.commit()
            processed += 1
        except Exception:
            db.session.rollback()
            errors += 1
            logger.exception(
                "Trend calculation failed for action %s", action_id,
                extra={"action_id": action_id},
            )

    result = {"processed": processed, "errors": errors, "total": len(actions)}
    if timed_out:
        result["timed_out"] = True
    logger.info("Trend calculation batch complete: %s", result)
    return result
