"""
Trend classifier tests.

Covers:
    - Chronic / worsening / new classification against the previous survey
    - Change direction from feedback sentiment
    - Survey resolution via the response record
    - Batch bounds, skip rules and per-action error isolation
"""

from datetime import datetime, timedelta, timezone

import pytest

from feedback_actions.models import db as _db
from feedback_actions.models.survey import FeedbackAnalysis, SurveyResponse
from feedback_actions.services import trend_classifier
from feedback_actions.utils.helpers import as_utc

RUN_AT = datetime(2025, 2, 1, tzinfo=timezone.utc)
S1_AT = datetime(2024, 12, 1, tzinfo=timezone.utc)
S2_AT = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture()
def surveys(tenant, make_survey):
    previous = make_survey(tenant, title="Q4 pulse", created_at=S1_AT)
    current = make_survey(tenant, title="Q1 pulse", created_at=S2_AT)
    return previous, current


def _current_action(tenant, survey, make_feedback, make_action, sentiment="negative",
                    categories=("compensation",), **fields):
    feedback = make_feedback(tenant, survey, sentiment=sentiment, categories=list(categories))
    fields.setdefault("category", categories[0] if categories else "general")
    fields.setdefault("created_at", S2_AT + timedelta(days=3))
    return make_action(tenant, feedback_id=feedback.id, **fields)


class TestClassification:
    def test_chronic_when_some_prior_resolved(self, tenant, surveys, make_feedback, make_action):
        previous, current = surveys
        make_action(tenant, category="compensation", status="resolved",
                    created_at=S1_AT + timedelta(days=2), completed_at=S1_AT + timedelta(days=5))
        make_action(tenant, category="Compensation review", created_at=S1_AT + timedelta(days=1))
        action = _current_action(tenant, current, make_feedback, make_action)

        result = trend_classifier.calculate_trends(now=RUN_AT)
        assert result == {"processed": 1, "errors": 0, "total": 1}

        _db.session.refresh(action)
        trend = action.trend_data
        assert trend["issue_status"] == "chronic"
        assert trend["is_recurring"] is True
        assert trend["previous_survey_id"] == previous.id
        assert trend["change_direction"] == "down"
        assert trend["metric_name"] == "compensation"
        assert as_utc(action.trend_first_detected_at) == S1_AT + timedelta(days=1)
        assert as_utc(action.trend_calculated_at) == RUN_AT

    def test_chronic_when_none_resolved(self, tenant, surveys, make_feedback, make_action):
        _, current = surveys
        make_action(tenant, category="compensation", created_at=S1_AT)
        action = _current_action(tenant, current, make_feedback, make_action)
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "chronic"

    def test_worsening_when_all_prior_resolved(self, tenant, surveys, make_feedback, make_action):
        _, current = surveys
        for offset in (1, 2):
            make_action(tenant, category="compensation", status="resolved",
                        created_at=S1_AT + timedelta(days=offset), completed_at=S1_AT + timedelta(days=9))
        action = _current_action(tenant, current, make_feedback, make_action)
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "worsening"
        assert action.trend_is_recurring is True

    def test_new_when_nothing_similar(self, tenant, surveys, make_feedback, make_action):
        previous, current = surveys
        make_action(tenant, category="workload", created_at=S1_AT)
        action = _current_action(tenant, current, make_feedback, make_action, sentiment="positive")
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "new"
        assert action.trend_is_recurring is False
        assert action.trend_change_direction == "up"
        assert action.trend_previous_survey_id == previous.id
        assert as_utc(action.trend_first_detected_at) == as_utc(action.created_at)

    def test_later_actions_are_not_counted(self, tenant, surveys, make_feedback, make_action):
        _, current = surveys
        action = _current_action(tenant, current, make_feedback, make_action)
        make_action(tenant, category="compensation", created_at=RUN_AT)
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "new"

    def test_other_tenant_actions_are_not_counted(self, tenant, other_tenant, surveys, make_feedback,
                                                  make_action):
        _, current = surveys
        make_action(other_tenant, category="compensation", created_at=S1_AT)
        action = _current_action(tenant, current, make_feedback, make_action)
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "new"

    def test_wildcards_in_category_match_literally(self, tenant, surveys, make_feedback, make_action):
        _, current = surveys
        make_action(tenant, category="50 percent raises", created_at=S1_AT)
        action = _current_action(tenant, current, make_feedback, make_action, categories=("50%_raise",))
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "new"

    def test_literal_wildcard_category_still_matches(self, tenant, surveys, make_feedback, make_action):
        _, current = surveys
        make_action(tenant, category="Q4 50%_raise plan", created_at=S1_AT)
        action = _current_action(tenant, current, make_feedback, make_action, categories=("50%_raise",))
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "chronic"

    def test_neutral_sentiment_is_stable(self, tenant, surveys, make_feedback, make_action):
        _, current = surveys
        action = _current_action(tenant, current, make_feedback, make_action, sentiment="neutral")
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_change_direction == "stable"

    def test_no_survey_is_new(self, tenant, make_feedback, make_action):
        feedback = make_feedback(tenant, sentiment="negative", categories=["pay"])
        action = make_action(tenant, feedback_id=feedback.id)
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "new"
        assert action.trend_is_recurring is False
        assert action.trend_previous_survey_id is None
        assert as_utc(action.trend_calculated_at) == RUN_AT

    def test_first_survey_is_new(self, tenant, make_survey, make_feedback, make_action):
        only = make_survey(tenant, created_at=S2_AT)
        make_action(tenant, category="compensation", created_at=S1_AT)
        action = _current_action(tenant, only, make_feedback, make_action)
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_issue_status == "new"
        assert action.trend_metric_name == "compensation"

    def test_survey_resolved_through_response(self, tenant, surveys, make_action):
        previous, current = surveys
        response = SurveyResponse(tenant_id=tenant.id, survey_id=current.id)
        _db.session.add(response)
        _db.session.flush()
        feedback = FeedbackAnalysis(tenant_id=tenant.id, response_id=response.id,
                                    sentiment="negative", categories=["compensation"])
        _db.session.add(feedback)
        _db.session.commit()
        make_action(tenant, category="compensation", created_at=S1_AT)
        action = make_action(tenant, feedback_id=feedback.id, category="compensation",
                             created_at=S2_AT + timedelta(days=1))
        trend_classifier.calculate_trends(now=RUN_AT)
        _db.session.refresh(action)
        assert action.trend_previous_survey_id == previous.id
        assert action.trend_issue_status == "chronic"

    def test_issue_status_table(self):
        assert trend_classifier.issue_status_for(0, 0) == "new"
        assert trend_classifier.issue_status_for(3, 3) == "worsening"
        assert trend_classifier.issue_status_for(3, 1) == "chronic"
        assert trend_classifier.issue_status_for(3, 0) == "chronic"


class TestBatching:
    def test_batch_size_bounds_each_run(self, tenant, make_feedback, make_action):
        for _ in range(3):
            feedback = make_feedback(tenant)
            make_action(tenant, feedback_id=feedback.id)
        assert trend_classifier.calculate_trends(batch_size=2, now=RUN_AT)["processed"] == 2
        assert trend_classifier.calculate_trends(batch_size=2, now=RUN_AT)["processed"] == 1
        assert trend_classifier.calculate_trends(batch_size=2, now=RUN_AT)["total"] == 0

    def test_skips_unlinked_deleted_and_calculated(self, tenant, make_feedback, make_action):
        feedback = make_feedback(tenant)
        make_action(tenant)
        make_action(tenant, feedback_id=feedback.id, is_deleted=True)
        make_action(tenant, feedback_id=feedback.id, trend_calculated_at=RUN_AT)
        assert trend_classifier.calculate_trends(now=RUN_AT)["total"] == 0

    def test_errors_are_isolated(self, tenant, make_feedback, make_action, monkeypatch):
        bad = make_action(tenant, feedback_id=make_feedback(tenant).id)
        good = make_action(tenant, feedback_id=make_feedback(tenant).id)
        bad_id = bad.id
        original = trend_classifier.classify

        def flaky(action, now):
            if action.id == bad_id:
                raise RuntimeError("lookup failed")
            return original(action, now)

        monkeypatch.setattr(trend_classifier, "classify", flaky)
        result = trend_classifier.calculate_trends(now=RUN_AT)
        assert result == {"processed": 1, "errors": 1, "total": 2}
        _db.session.refresh(bad)
        _db.session.refresh(good)
        assert bad.trend_calculated_at is None
        assert good.trend_calculated_at is not None

    def test_budget_cuts_batch_short(self, tenant, make_feedback, make_action):
        make_action(tenant, feedback_id=make_feedback(tenant).id)
        result = trend_classifier.calculate_trends(now=RUN_AT, budget_seconds=-1)
        assert result["timed_out"] is True
        assert result["processed"] == 0
