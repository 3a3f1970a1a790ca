"""
Feedback Action Engine
Scheduler admin Blueprint (platform administrators).

Endpoints:
    GET    /api/v1/admin/jobs
    POST   /api/v1/admin/jobs/<name>/run
    PATCH  /api/v1/admin/jobs/<name>          {"enabled": bool}
    POST   /api/v1/admin/jobs/tick            run every due job once
"""

from flask import Blueprint, g, jsonify

from feedback_actions.blueprints import json_body, register_error_handlers
from feedback_actions.middleware.tenant_context import require_actor
from feedback_actions.models.auth import ROLE_ADMIN
from feedback_actions.services.scheduler_service import SchedulerService, get_registered_jobs
from feedback_actions.services.scope_guard import require_role
from feedback_actions.utils.errors import E, api_error

scheduler_bp = Blueprint("scheduler_bp", __name__, url_prefix="/api/v1/admin/jobs")
register_error_handlers(scheduler_bp)


@scheduler_bp.route("", methods=["GET"])
@require_actor
def list_jobs():
    require_role(g.actor, ROLE_ADMIN)
    SchedulerService.ensure_jobs_registered()
    return jsonify({"jobs": SchedulerService.list_jobs()})


@scheduler_bp.route("/<job_name>/run", methods=["POST"])
@require_actor
def run_job(job_name):
    require_role(g.actor, ROLE_ADMIN)
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    SchedulerService.ensure_jobs_registered()
    return jsonify(SchedulerService.run_job(job_name))


@scheduler_bp.route("/<job_name>", methods=["PATCH"])
@require_actor
def toggle_job(job_name):
    require_role(g.actor, ROLE_ADMIN)
    data = json_body()
    if not isinstance(data.get("enabled"), bool):
        return api_error(E.VALIDATION_REQUIRED, "enabled (boolean) is required")
    SchedulerService.ensure_jobs_registered()
    record = SchedulerService.toggle_job(job_name, data["enabled"])
    if record is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return jsonify(record)


@scheduler_bp.route("/tick", methods=["POST"])
@require_actor
def tick():
    require_role(g.actor, ROLE_ADMIN)
    return jsonify({"runs": SchedulerService.run_pending()})
