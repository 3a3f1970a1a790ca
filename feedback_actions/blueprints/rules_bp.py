"""
Feedback Action Engine
Routing Rules Blueprint (companyAdmin only).

Endpoints:
    GET/POST          /api/v1/rules/escalation
    PUT/DELETE        /api/v1/rules/escalation/<id>
    POST              /api/v1/rules/escalation/trigger
    GET/POST          /api/v1/rules/assignment
    PUT/DELETE        /api/v1/rules/assignment/<id>
"""

from flask import Blueprint, current_app, jsonify

from feedback_actions.blueprints import json_body, register_error_handlers, tenant_actor
from feedback_actions.middleware.tenant_context import require_actor
from feedback_actions.services import rule_service

rules_bp = Blueprint("rules_bp", __name__, url_prefix="/api/v1/rules")
register_error_handlers(rules_bp)


# ═══════════════════════════════════════════════════════════════════════════
#  ESCALATION RULES
# ═══════════════════════════════════════════════════════════════════════════

@rules_bp.route("/escalation", methods=["GET"])
@require_actor
def list_escalation_rules():
    actor = tenant_actor()
    rules = rule_service.list_escalation_rules(actor)
    return jsonify({
        "rules": [r.to_dict() for r in rules],
        "active": rule_service.active_rule_counts(actor.tenant_id)["escalation"],
    })


@rules_bp.route("/escalation", methods=["POST"])
@require_actor
def create_escalation_rule():
    rule = rule_service.create_escalation_rule(json_body(), tenant_actor())
    return jsonify(rule.to_dict()), 201


@rules_bp.route("/escalation/<int:rule_id>", methods=["PUT", "PATCH"])
@require_actor
def update_escalation_rule(rule_id):
    rule = rule_service.update_escalation_rule(rule_id, json_body(), tenant_actor())
    return jsonify(rule.to_dict())


@rules_bp.route("/escalation/<int:rule_id>", methods=["DELETE"])
@require_actor
def delete_escalation_rule(rule_id):
    rule_service.delete_escalation_rule(rule_id, tenant_actor())
    return jsonify({"deleted": True, "id": rule_id})


@rules_bp.route("/escalation/trigger", methods=["POST"])
@require_actor
def trigger_escalation():
    """Run the caller's tenant escalation rules now."""
    result = rule_service.trigger_escalation_check(
        tenant_actor(),
        batch_size=current_app.config.get("ESCALATION_BATCH_SIZE_PER_RULE", 50),
    )
    return jsonify(result)


# ═══════════════════════════════════════════════════════════════════════════
#  ASSIGNMENT RULES
# ═══════════════════════════════════════════════════════════════════════════

@rules_bp.route("/assignment", methods=["GET"])
@require_actor
def list_assignment_rules():
    actor = tenant_actor()
    rules = rule_service.list_assignment_rules(actor)
    return jsonify({
        "rules": [r.to_dict() for r in rules],
        "active": rule_service.active_rule_counts(actor.tenant_id)["assignment"],
    })


@rules_bp.route("/assignment", methods=["POST"])
@require_actor
def create_assignment_rule():
    rule = rule_service.create_assignment_rule(json_body(), tenant_actor())
    return jsonify(rule.to_dict()), 201


@rules_bp.route("/assignment/<int:rule_id>", methods=["PUT", "PATCH"])
@require_actor
def update_assignment_rule(rule_id):
    rule = rule_service.update_assignment_rule(rule_id, json_body(), tenant_actor())
    return jsonify(rule.to_dict())


@rules_bp.route("/assignment/<int:rule_id>", methods=["DELETE"])
@require_actor
def delete_assignment_rule(rule_id):
    rule_service.delete_assignment_rule(rule_id, tenant_actor())
    return jsonify({"deleted": True, "id": rule_id})
