"""
Feedback Action Engine
Action Plan Blueprint.

Endpoints:
    GET/POST          /api/v1/actions/<id>/plan
    GET/PUT/DELETE    /api/v1/action-plans/<id>
    POST              /api/v1/action-plans/<id>/{submit,confirm,start,complete,cancel}
    GET/POST          /api/v1/action-plans/<id>/steps
    POST              /api/v1/action-plans/<id>/steps/reorder
    PUT/DELETE        /api/v1/action-steps/<id>
    PUT               /api/v1/action-steps/<id>/status
"""

from flask import Blueprint, jsonify

from feedback_actions.blueprints import json_body, register_error_handlers, tenant_actor
from feedback_actions.middleware.tenant_context import require_actor
from feedback_actions.services import action_plan_service

action_plan_bp = Blueprint("action_plan_bp", __name__, url_prefix="/api/v1")
register_error_handlers(action_plan_bp)


# ═══════════════════════════════════════════════════════════════════════════
#  PLANS
# ═══════════════════════════════════════════════════════════════════════════

@action_plan_bp.route("/actions/<int:action_id>/plan", methods=["POST"])
@require_actor
def create_plan(action_id):
    plan = action_plan_service.create_plan(action_id, json_body(), tenant_actor())
    return jsonify(plan.to_dict(include_steps=True)), 201


@action_plan_bp.route("/actions/<int:action_id>/plan", methods=["GET"])
@require_actor
def get_plan_for_action(action_id):
    plan = action_plan_service.get_plan_for_action(action_id, tenant_actor())
    if plan is None:
        return jsonify({"action_plan": None, "steps": []})
    return jsonify({"action_plan": plan.to_dict(), "steps": [s.to_dict() for s in plan.steps]})


@action_plan_bp.route("/action-plans/<int:plan_id>", methods=["GET"])
@require_actor
def get_plan(plan_id):
    return jsonify(action_plan_service.get_plan(plan_id, tenant_actor()).to_dict(include_steps=True))


@action_plan_bp.route("/action-plans/<int:plan_id>", methods=["PUT", "PATCH"])
@require_actor
def update_plan(plan_id):
    return jsonify(action_plan_service.update_plan(plan_id, json_body(), tenant_actor()).to_dict())


@action_plan_bp.route("/action-plans/<int:plan_id>", methods=["DELETE"])
@require_actor
def delete_plan(plan_id):
    action_plan_service.delete_plan(plan_id, tenant_actor())
    return jsonify({"deleted": True, "id": plan_id})


@action_plan_bp.route("/action-plans/<int:plan_id>/submit", methods=["POST"])
@require_actor
def submit_plan(plan_id):
    return jsonify(action_plan_service.submit_plan(plan_id, tenant_actor()).to_dict())


@action_plan_bp.route("/action-plans/<int:plan_id>/confirm", methods=["POST"])
@require_actor
def confirm_plan(plan_id):
    return jsonify(action_plan_service.confirm_plan(plan_id, tenant_actor()).to_dict())


@action_plan_bp.route("/action-plans/<int:plan_id>/start", methods=["POST"])
@require_actor
def start_plan(plan_id):
    return jsonify(action_plan_service.start_plan(plan_id, tenant_actor()).to_dict())


@action_plan_bp.route("/action-plans/<int:plan_id>/complete", methods=["POST"])
@require_actor
def complete_plan(plan_id):
    return jsonify(action_plan_service.complete_plan(plan_id, json_body(), tenant_actor()).to_dict())


@action_plan_bp.route("/action-plans/<int:plan_id>/cancel", methods=["POST"])
@require_actor
def cancel_plan(plan_id):
    return jsonify(action_plan_service.cancel_plan(plan_id, json_body(), tenant_actor()).to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  STEPS
# ═══════════════════════════════════════════════════════════════════════════

@action_plan_bp.route("/action-plans/<int:plan_id>/steps", methods=["GET"])
@require_actor
def list_steps(plan_id):
    steps, progress = action_plan_service.list_steps(plan_id, tenant_actor())
    return jsonify({"steps": [s.to_dict() for s in steps], "progress": progress})


@action_plan_bp.route("/action-plans/<int:plan_id>/steps", methods=["POST"])
@require_actor
def add_step(plan_id):
    step = action_plan_service.add_step(plan_id, json_body(), tenant_actor())
    return jsonify(step.to_dict()), 201


@action_plan_bp.route("/action-plans/<int:plan_id>/steps/reorder", methods=["POST"])
@require_actor
def reorder_steps(plan_id):
    steps = action_plan_service.reorder_steps(plan_id, json_body(), tenant_actor())
    return jsonify({"steps": [s.to_dict() for s in steps]})


@action_plan_bp.route("/action-steps/<int:step_id>", methods=["PUT", "PATCH"])
@require_actor
def update_step(step_id):
    return jsonify(action_plan_service.update_step(step_id, json_body(), tenant_actor()).to_dict())


@action_plan_bp.route("/action-steps/<int:step_id>/status", methods=["PUT"])
@require_actor
def update_step_status(step_id):
    step = action_plan_service.update_step_status(step_id, json_body(), tenant_actor())
    return jsonify({"step": step.to_dict(), "progress": step.plan.progress})


@action_plan_bp.route("/action-steps/<int:step_id>", methods=["DELETE"])
@require_actor
def delete_step(step_id):
    plan = action_plan_service.delete_step(step_id, tenant_actor())
    return jsonify({"deleted": True, "id": step_id, "progress": plan.progress})
