"""
Scheduler Blueprint.

Endpoints:
    GET   /api/v1/scheduler/jobs                      registered jobs + run history
    GET   /api/v1/scheduler/jobs/<name>               single job status
    POST  /api/v1/scheduler/jobs/<name>/trigger       run a job now (admin)
    PATCH /api/v1/scheduler/jobs/<name>/toggle        enable/disable (admin)
"""

import logging

from flask import Blueprint, jsonify, request

from decision_engine.auth import current_actor
from decision_engine.core.exceptions import DecisionError
from decision_engine.services.access import assert_access
from decision_engine.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

scheduler_bp = Blueprint("scheduler", __name__, url_prefix="/api/v1/scheduler")


@scheduler_bp.errorhandler(DecisionError)
def _handle_decision_error(error: DecisionError):
    return jsonify(error.payload()), error.status_code


@scheduler_bp.route("/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all registered jobs with their status."""
    assert_access(current_actor(), "scheduler", "read")
    jobs = SchedulerService.list_jobs()
    return jsonify({"items": jobs, "total": len(jobs)})


@scheduler_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    """Get status of a specific scheduled job."""
    assert_access(current_actor(), "scheduler", "read")
    status = SchedulerService.get_job_status(job_name)
    if status is None:
        return jsonify({"error": f"Job '{job_name}' not found"}), 404
    return jsonify(status)


@scheduler_bp.route("/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job (runs even when disabled)."""
    assert_access(current_actor(), "scheduler", "admin")
    result = SchedulerService.run_job(job_name, force=True)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return jsonify(result), 404
    return jsonify(result)


@scheduler_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    assert_access(current_actor(), "scheduler", "admin")
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return jsonify({"error": "enabled (bool) is required"}), 400
    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return jsonify({"error": f"Job '{job_name}' not found"}), 404
    return jsonify(result)
