"""
Action payload validation.

Each ``validate_*`` function takes the raw request/command dict, strips keys
outside its schema, coerces types, and returns a clean dict. All field errors
are collected and raised together as one ValidationError whose ``details``
maps field name -> message.
"""

from feedback_actions.core.exceptions import ValidationError
from feedback_actions.models.action import (
    PRIORITIES,
    ROOT_CAUSE_CATEGORIES,
    SOURCES,
    STATUSES,
    URGENCY_LEVELS,
)
from feedback_actions.models.plan import AUDIENCE_TYPES, STEP_STATUSES, STEP_TYPES
from feedback_actions.models.survey import SENTIMENTS
from feedback_actions.utils.helpers import parse_datetime


class _FieldError(Exception):
    pass


# ── Field coercers ───────────────────────────────────────────────────────────


def _string(min_len=0, max_len=None, nullable=False):
    def check(value):
        if value is None:
            if nullable:
                return None
            raise _FieldError("must be a string")
        if not isinstance(value, str):
            raise _FieldError("must be a string")
        value = value.strip()
        if len(value) < min_len:
            raise _FieldError(f"must be at least {min_len} characters")
        if max_len is not None and len(value) > max_len:
            raise _FieldError(f"must be at most {max_len} characters")
        return value
    return check


def _enum(choices, nullable=False):
    def check(value):
        if value is None and nullable:
            return None
        if value not in choices:
            raise _FieldError(f"must be one of: {', '.join(choices)}")
        return value
    return check


def _integer(minimum=None, nullable=False):
    def check(value):
        if value is None:
            if nullable:
                return None
            raise _FieldError("must be an integer")
        if isinstance(value, bool):
            raise _FieldError("must be an integer")
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise _FieldError("must be an integer")
        if minimum is not None and value < minimum:
            raise _FieldError(f"must be >= {minimum}")
        return value
    return check


def _number(minimum=None, maximum=None, nullable=True):
    def check(value):
        if value is None:
            if nullable:
                return None
            raise _FieldError("must be a number")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _FieldError("must be a number")
        if minimum is not None and value < minimum:
            raise _FieldError(f"must be >= {minimum}")
        if maximum is not None and value > maximum:
            raise _FieldError(f"must be <= {maximum}")
        return float(value)
    return check


def _boolean():
    def check(value):
        if not isinstance(value, bool):
            raise _FieldError("must be a boolean")
        return value
    return check


def _datetime(nullable=True):
    def check(value):
        if value is None:
            if nullable:
                return None
            raise _FieldError("is required")
        try:
            return parse_datetime(value)
        except ValueError:
            raise _FieldError("must be an ISO-8601 datetime")
    return check


def _list_of(item_check, max_items=None):
    def check(value):
        if value is None:
            return []
        if not isinstance(value, list):
            raise _FieldError("must be a list")
        if max_items is not None and len(value) > max_items:
            raise _FieldError(f"must contain at most {max_items} items")
        return [item_check(v) for v in value]
    return check


def _object(schema):
    def check(value):
        if value is None:
            return None
        if not isinstance(value, dict):
            raise _FieldError("must be an object")
        clean = {}
        for key, sub_check in schema.items():
            if key in value:
                try:
                    clean[key] = sub_check(value[key])
                except _FieldError as exc:
                    raise _FieldError(f"{key} {exc}")
        return clean
    return check


# ── Schemas ──────────────────────────────────────────────────────────────────

_EXCERPT = _object({
    "text": _string(max_len=500),
    "sentiment": _enum(tuple(SENTIMENTS), nullable=True),
    "response_id": _integer(nullable=True),
})

CREATE_SCHEMA = {
    "title": _string(min_len=3, max_len=200),
    "description": _string(min_len=5, max_len=5000),
    "priority": _enum(PRIORITIES),
    "category": _string(max_len=120),
    "team": _string(min_len=2, max_len=120, nullable=True),
    "department": _string(max_len=120, nullable=True),
    "tags": _list_of(_string(min_len=1, max_len=50), max_items=20),
    "source": _enum(SOURCES),
    "due_date": _datetime(),
    "assigned_to": _integer(nullable=True),
    "assigned_to_team": _string(max_len=120, nullable=True),
    "feedback_id": _integer(nullable=True),
    "estimated_hours": _number(minimum=0),
    "problem_statement": _string(max_len=2000, nullable=True),
    "root_cause": _object({
        "category": _enum(ROOT_CAUSE_CATEGORIES),
        "summary": _string(max_len=1000, nullable=True),
    }),
    "affected_audience": _object({
        "segments": _list_of(_string(max_len=120)),
        "estimated_count": _integer(minimum=0),
    }),
    "priority_reason": _string(max_len=500, nullable=True),
    "urgency_reason": _string(max_len=500, nullable=True),
    "evidence": _object({
        "response_count": _integer(minimum=0),
        "respondent_count": _integer(minimum=0),
        "response_ids": _list_of(_integer()),
        "comment_excerpts": _list_of(_EXCERPT, max_items=50),
        "confidence_score": _number(minimum=0, maximum=100),
    }),
    "metadata": _object({
        "survey_id": _integer(nullable=True),
        "response_id": _integer(nullable=True),
        "sentiment": _enum(tuple(SENTIMENTS), nullable=True),
        "confidence": _number(minimum=0, maximum=1),
        "urgency": _enum(URGENCY_LEVELS, nullable=True),
    }),
}
CREATE_REQUIRED = ("description", "priority")

UPDATE_SCHEMA = {
    "description": _string(min_len=5, max_len=5000),
    "priority": _enum(PRIORITIES),
    "team": _string(min_len=2, max_len=120, nullable=True),
    "status": _enum(STATUSES),
    "due_date": _datetime(),
    "tags": _list_of(_string(min_len=1, max_len=50), max_items=20),
    "category": _string(max_len=120),
    "resolution": _string(max_len=5000, nullable=True),
}

BULK_UPDATE_SCHEMA = {
    "priority": _enum(PRIORITIES),
    "status": _enum(STATUSES),
    "assigned_to": _integer(nullable=True),
    "team": _string(min_len=2, max_len=120, nullable=True),
}
BULK_MAX_IDS = 500

ASSIGN_SCHEMA = {
    "assigned_to": _integer(nullable=True),
    "team": _string(min_len=2, max_len=120, nullable=True),
}


_AUDIENCE = _object({
    "type": _enum(AUDIENCE_TYPES),
    "departments": _list_of(_string(min_len=1, max_len=120)),
    "segment_criteria": _object({
        "field": _string(max_len=120),
        "value": _string(max_len=200),
    }),
    "estimated_count": _integer(minimum=0),
})

PLAN_SCHEMA = {
    "what_will_be_done": _string(min_len=5, max_len=2000),
    "expected_outcome": _string(min_len=5, max_len=1000),
    "target_audience": _AUDIENCE,
    "success_criteria": _list_of(_string(min_len=1, max_len=500), max_items=20),
    "primary_owner": _integer(),
    "collaborators": _list_of(_integer(), max_items=50),
    "planned_start_date": _datetime(),
    "planned_end_date": _datetime(),
}
PLAN_REQUIRED = ("what_will_be_done", "expected_outcome")
PLAN_UPDATE_FIELDS = (
    "what_will_be_done", "expected_outcome", "target_audience", "success_criteria",
    "collaborators", "planned_start_date", "planned_end_date",
)

STEP_SCHEMA = {
    "title": _string(min_len=2, max_len=200),
    "description": _string(max_len=1000, nullable=True),
    "step_type": _enum(STEP_TYPES),
    "is_required": _boolean(),
    "assigned_to": _integer(nullable=True),
    "due_date": _datetime(),
    "notes": _string(max_len=2000, nullable=True),
    "insert_after": _integer(minimum=0),
}

STEP_STATUS_SCHEMA = {
    "status": _enum(STEP_STATUSES),
    "notes": _string(max_len=2000, nullable=True),
    "skip_reason": _string(min_len=1, max_len=500, nullable=True),
}

def _apply(schema, data, required=(), message="Invalid action payload"):
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object", details={"_schema": "must be an object"})
    errors = {}
    clean = {}
    for field in required:
        if data.get(field) in (None, ""):
            errors[field] = "is required"
    for field, check in schema.items():
        if field not in data or field in errors:
            continue
        try:
            clean[field] = check(data[field])
        except _FieldError as exc:
            errors[field] = str(exc)
    if errors:
        raise ValidationError(message, details=errors)
    return clean


# ── Public API ───────────────────────────────────────────────────────────────


def validate_create(data) -> dict:
    """Validate a create command. ``tenant_id`` and unknown keys are dropped."""
    return _apply(CREATE_SCHEMA, data, CREATE_REQUIRED)


def validate_update(data) -> dict:
    clean = _apply(UPDATE_SCHEMA, data)
    if not clean:
        raise ValidationError(
            "No updatable fields provided",
            details={"_schema": f"allowed fields: {', '.join(UPDATE_SCHEMA)}"},
        )
    return clean


def validate_bulk_update(data) -> tuple[list[int], dict]:
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object", details={"_schema": "must be an object"})
    errors = {}
    ids = data.get("action_ids")
    if not isinstance(ids, list) or not ids:
        errors["action_ids"] = "must be a non-empty list"
    elif len(ids) > BULK_MAX_IDS:
        errors["action_ids"] = f"must contain at most {BULK_MAX_IDS} items"
    else:
        try:
            ids = list(dict.fromkeys(_integer()(i) for i in ids))
        except _FieldError:
            errors["action_ids"] = "must contain integers"
    updates = {}
    try:
        updates = _apply(BULK_UPDATE_SCHEMA, data.get("updates") or {})
    except ValidationError as exc:
        errors.update({f"updates.{k}": v for k, v in exc.details.items()})
    if not errors and not updates:
        errors["updates"] = f"must contain at least one of: {', '.join(BULK_UPDATE_SCHEMA)}"
    if errors:
        raise ValidationError("Invalid bulk update payload", details=errors)
    return ids, updates


def validate_assign(data) -> dict:
    clean = _apply(ASSIGN_SCHEMA, data)
    if not clean:
        raise ValidationError(
            "Provide assigned_to and/or team",
            details={"assigned_to": "is required when team is absent"},
        )
    return clean


def _check_window(clean: dict) -> None:
    start, end = clean.get("planned_start_date"), clean.get("planned_end_date")
    if start and end and end < start:
        raise ValidationError(
            "Invalid action plan payload",
            details={"planned_end_date": "must not be before planned_start_date"},
        )


def validate_plan_create(data) -> dict:
    clean = _apply(PLAN_SCHEMA, data, PLAN_REQUIRED, message="Invalid action plan payload")
    _check_window(clean)
    return clean


def validate_plan_update(data) -> dict:
    schema = {k: PLAN_SCHEMA[k] for k in PLAN_UPDATE_FIELDS}
    clean = _apply(schema, data, message="Invalid action plan payload")
    if not clean:
        raise ValidationError(
            "No updatable fields provided",
            details={"_schema": f"allowed fields: {', '.join(PLAN_UPDATE_FIELDS)}"},
        )
    _check_window(clean)
    return clean


def validate_step_create(data) -> dict:
    return _apply(STEP_SCHEMA, data, ("title",), message="Invalid step payload")


def validate_step_update(data) -> dict:
    schema = {k: v for k, v in STEP_SCHEMA.items() if k != "insert_after"}
    clean = _apply(schema, data, message="Invalid step payload")
    if not clean:
        raise ValidationError(
            "No updatable fields provided",
            details={"_schema": f"allowed fields: {', '.join(schema)}"},
        )
    return clean


def validate_step_status(data) -> dict:
    return _apply(STEP_STATUS_SCHEMA, data, ("status",), message="Invalid step status payload")


def validate_step_order(data) -> list[int]:
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object", details={"_schema": "must be an object"})
    order = data.get("step_ids")
    try:
        ids = _list_of(_integer())(order)
    except _FieldError as exc:
        raise ValidationError("Invalid step order", details={"step_ids": str(exc)})
    if not ids or len(set(ids)) != len(ids):
        raise ValidationError("Invalid step order", details={"step_ids": "must be a non-empty list of distinct ids"})
    return ids
