"""
AI batch generation of actions from analysed feedback.

One prompt covers the whole batch. The model is asked for a JSON array of
suggestions; anything that does not parse as a list (or an LLM failure) is a
miss, as is a list from which no action could be created. On a miss the
deterministic fallback creates one high-priority investigation action per
negative feedback item. Every created action goes through
``action_service.create_action`` with per-action notifications suppressed;
the tenant's company admins get a single summary notification instead.
"""

from __future__ import annotations

import json
import logging

from flask import current_app
from sqlalchemy import select

from feedback_actions.ai.llm_client import LLMClient
from feedback_actions.core.exceptions import ActionEngineError, DependencyFailure, NotFoundError, ValidationError
from feedback_actions.models import db
from feedback_actions.models.action import PRIORITIES
from feedback_actions.models.auth import ROLE_COMPANY_ADMIN, User
from feedback_actions.models.survey import FeedbackAnalysis
from feedback_actions.services.action_service import create_action
from feedback_actions.services.notification import NotificationService

logger = logging.getLogger(__name__)

AI_TAGS = ["ai-generated", "feedback-analysis"]
FALLBACK_TEAM = "Customer Service"
FALLBACK_CATEGORY = "Customer Issue"
MAX_FEEDBACK_IDS = 100

PROMPT_TEMPLATE = (
    "Create a compact JSON array of suggested actions for these feedbacks. "
    "Each item: {{\"title\", \"description\", \"priority\" (high|medium|low|long-term), "
    "\"team\", \"category\", \"feedbackId\"}}. Respond with JSON only. Feedback: {feedback}"
)


def build_prompt(feedbacks: list[FeedbackAnalysis]) -> str:
    summary = [
        {
            "id": f.id,
            "sentiment": f.sentiment,
            "categories": f.categories or [],
            "summary": f.summary,
        }
        for f in feedbacks
    ]
    return PROMPT_TEMPLATE.format(feedback=json.dumps(summary))


def parse_suggestions(text: str) -> list[dict] | None:
    """Return the suggestion list, or None when the text is not a JSON array."""
    if not text:
        return None
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        return None
    if not isinstance(parsed, list):
        return None
    return [item for item in parsed if isinstance(item, dict)]


def fallback_suggestions(feedbacks: list[FeedbackAnalysis]) -> list[dict]:
    return [
        {
            "description": f"Investigate: {(f.summary or '')[:200] or 'Follow-up required'}",
            "priority": "high",
            "team": FALLBACK_TEAM,
            "category": FALLBACK_CATEGORY,
            "feedbackId": f.id,
        }
        for f in feedbacks
        if f.sentiment == "negative"
    ]


def _command(suggestion: dict, feedback_ids: set[int], default_feedback_id: int) -> dict:
    feedback_id = suggestion.get("feedbackId")
    if feedback_id not in feedback_ids:
        feedback_id = default_feedback_id
    priority = suggestion.get("priority")
    return {
        "title": suggestion.get("title") or (suggestion.get("description") or "")[:80] or None,
        "description": suggestion.get("description"),
        "priority": priority if priority in PRIORITIES else "medium",
        "team": suggestion.get("team") or "General",
        "category": suggestion.get("category") or "AI Generated",
        "feedback_id": feedback_id,
        "source": "ai_generated",
        "tags": list(AI_TAGS),
    }


def _create_all(suggestions, feedbacks, tenant_id, actor_user_id, now):
    known_ids = {f.id for f in feedbacks}
    created, errors = [], []
    for index, suggestion in enumerate(suggestions):
        try:
            action = create_action(
                _command(suggestion, known_ids, feedbacks[0].id),
                tenant_id,
                actor_user_id,
                skip_notification=True,
                now=now,
            )
        except ActionEngineError as exc:
            db.session.rollback()
            logger.warning(
                "Skipped AI suggestion %d: %s", index, exc,
                extra={"tenant_id": tenant_id, "actor_id": actor_user_id},
            )
            errors.append({"index": index, **exc.to_dict()})
            continue
        created.append(action)
    return created, errors


def generate_from_feedback(feedback_ids, tenant_id, actor_user_id, llm=None, *, now=None) -> dict:
    """Generate actions for a batch of feedback items.

    Returns:
        ``{"actions": [Action], "feedback_processed", "used_fallback", "errors": [...]}``

    Raises:
        ValidationError: ``feedback_ids`` is not a non-empty list of ints.
        NotFoundError: none of the ids exist in the tenant.
    """
    if (
        not isinstance(feedback_ids, list)
        or not feedback_ids
        or len(feedback_ids) > MAX_FEEDBACK_IDS
        or not all(isinstance(i, int) and not isinstance(i, bool) for i in feedback_ids)
    ):
        raise ValidationError(
            "Feedback IDs array required",
            details={"feedback_ids": f"must be a non-empty list of at most {MAX_FEEDBACK_IDS} integers"},
        )

    stmt = (
        select(FeedbackAnalysis)
        .where(FeedbackAnalysis.id.in_(feedback_ids), FeedbackAnalysis.tenant_id == tenant_id)
        .order_by(FeedbackAnalysis.id)
    )
    feedbacks = list(db.session.execute(stmt).scalars())
    if not feedbacks:
        raise NotFoundError(resource="Feedback", tenant_id=tenant_id)

    llm = llm or LLMClient(current_app.config.get("LLM_DEFAULT_MODEL"))
    suggestions = None
    try:
        suggestions = parse_suggestions(llm.complete(build_prompt(feedbacks), max_tokens=800).get("text"))
    except DependencyFailure as exc:
        logger.warning("LLM unavailable for action generation: %s", exc, extra={"tenant_id": tenant_id})
    used_fallback = suggestions is None
    if used_fallback:
        suggestions = fallback_suggestions(feedbacks)

    created, errors = _create_all(suggestions, feedbacks, tenant_id, actor_user_id, now)
    if not created and not used_fallback:
        fallback = fallback_suggestions(feedbacks)
        if fallback:
            logger.info(
                "No usable LLM suggestions, falling back for %d negative feedback items", len(fallback),
                extra={"tenant_id": tenant_id, "actor_id": actor_user_id},
            )
            used_fallback = True
            created, fallback_errors = _create_all(fallback, feedbacks, tenant_id, actor_user_id, now)
            errors.extend(fallback_errors)

    if created:
        admins = db.session.execute(
            select(User.id).where(
                User.tenant_id == tenant_id,
                User.role == ROLE_COMPANY_ADMIN,
                User.is_active.is_(True),
            ).order_by(User.id)
        ).scalars().all()
        NotificationService.send_bulk(
            admins,
            type="ai_actions_generated",
            title="AI-Generated Actions Created",
            message=f"{len(created)} new action(s) generated from feedback analysis",
            action_url="/app/actions",
            data={"action_count": len(created), "generated_by": actor_user_id},
            tenant_id=tenant_id,
        )

    logger.info(
        "Generated %d actions from %d feedback items (fallback=%s)",
        len(created), len(feedbacks), used_fallback,
        extra={"tenant_id": tenant_id, "actor_id": actor_user_id},
    )
    return {
        "actions": created,
        "feedback_processed": len(feedbacks),
        "used_fallback": used_fallback,
        "errors": errors,
    }
