"""
Decision Process Blueprint.

Endpoints (prefix /api/v1/decisions):
    GET    /templates                              built-in schema templates
    POST   /processes                              create process
    POST   /processes/from-template                create process from template
    GET    /processes/<pid>                        get process
    POST   /processes/<pid>/instances              create draft instance
    GET    /instances/<iid>                        get instance (+ phase guards)
    DELETE /instances/<iid>                        delete instance (cascade)
    PUT    /instances/<iid>/phases                 partial phase date/settings update
    POST   /instances/<iid>/publish                draft → published
    POST   /instances/<iid>/cancel                 cancel instance
    POST   /instances/<iid>/advance                manual phase advancement
    GET    /instances/<iid>/transitions            transition history / schedule
    GET    /instances/<iid>/transitions/available  next-phase option and failed rules
    GET    /instances/<iid>/template-fields        compiled proposal fields
    POST   /instances/<iid>/proposals              create draft proposal
    GET    /instances/<iid>/proposals              list proposals
    GET    /proposals/<id>                         get proposal (normalized)
    PUT    /proposals/<id>                         update proposal
    POST   /proposals/<id>/submit                  submit proposal
    DELETE /proposals/<id>                         delete proposal
    POST   /transitions/process                    run the transition processor once

Layer contract:
    - No ORM calls here; all DB work is delegated to services.
    - No db.session.commit() here.
    - Access checks happen in the services via the request Actor.
"""

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from decision_engine.auth import current_actor
from decision_engine.core.exceptions import DecisionError
from decision_engine.services import instance_service, proposal_service
from decision_engine.services.access import assert_access
from decision_engine.services.decision_schemas import DECISION_TEMPLATES
from decision_engine.services.transition_service import list_transitions, process_due_transitions

logger = logging.getLogger(__name__)

decision_bp = Blueprint("decisions", __name__, url_prefix="/api/v1/decisions")


# ── Error handlers ────────────────────────────────────────────────────────────


@decision_bp.errorhandler(DecisionError)
def _handle_decision_error(error: DecisionError):
    return jsonify(error.payload()), error.status_code


@decision_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return jsonify({"error": error.description}), error.code
    logger.exception("Unexpected error in decision_bp endpoint=%s", request.endpoint)
    return jsonify({"error": "Internal server error"}), 500


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ═════════════════════════════════════════════════════════════════════════
# Processes
# ═════════════════════════════════════════════════════════════════════════


@decision_bp.route("/templates", methods=["GET"])
def list_templates():
    """Built-in decision schema templates (id, name, phases)."""
    items = [
        {
            "id": t["id"],
            "name": t["name"],
            "description": t.get("description"),
            "phases": [{"id": p["id"], "name": p["name"]} for p in t["phases"]],
        }
        for t in DECISION_TEMPLATES.values()
    ]
    return jsonify({"items": items, "total": len(items)}), 200


@decision_bp.route("/processes", methods=["POST"])
def create_process():
    """Body: {name, description?, process_schema}"""
    process = instance_service.create_process(_body(), current_actor())
    return jsonify(process.to_dict()), 201


@decision_bp.route("/processes/from-template", methods=["POST"])
def create_process_from_template():
    """Body: {template_id, name?}"""
    data = _body()
    template_id = (data.get("template_id") or "").strip()
    if not template_id:
        return jsonify({"error": "template_id is required"}), 400
    process = instance_service.create_process_from_template(
        template_id, current_actor(), name=data.get("name"),
    )
    return jsonify(process.to_dict()), 201


@decision_bp.route("/processes/<int:process_id>", methods=["GET"])
def get_process(process_id: int):
    return jsonify(instance_service.get_process(process_id, current_actor())), 200


# ═════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════


@decision_bp.route("/processes/<int:process_id>/instances", methods=["POST"])
def create_instance(process_id: int):
    """Create a draft instance.

    Body (JSON):
        name (str, required)
        description (str, optional)
        phases (list, optional): [{phaseId, startDate?, endDate?, name?, settings?}]
        proposalTemplate (dict, optional): overrides the process template
        config (dict, optional)
    """
    instance = instance_service.create_instance(process_id, _body(), current_actor())
    return jsonify(instance_service.describe_instance(instance)), 201


@decision_bp.route("/instances/<int:instance_id>", methods=["GET"])
def get_instance(instance_id: int):
    return jsonify(instance_service.get_instance(instance_id, current_actor())), 200


@decision_bp.route("/instances/<int:instance_id>", methods=["DELETE"])
def delete_instance(instance_id: int):
    instance_service.delete_instance(instance_id, current_actor())
    return jsonify({"message": "Instance deleted"}), 200


@decision_bp.route("/instances/<int:instance_id>/phases", methods=["PUT"])
def update_instance_phases(instance_id: int):
    """Body: {phases: [{phaseId, startDate?, endDate?, name?, settings?}]}"""
    data = _body()
    if "phases" not in data:
        return jsonify({"error": "phases is required"}), 400
    result = instance_service.update_instance_phases(instance_id, data["phases"], current_actor())
    return jsonify(result), 200


@decision_bp.route("/instances/<int:instance_id>/publish", methods=["POST"])
def publish_instance(instance_id: int):
    return jsonify(instance_service.publish_instance(instance_id, current_actor())), 200


@decision_bp.route("/instances/<int:instance_id>/cancel", methods=["POST"])
def cancel_instance(instance_id: int):
    instance = instance_service.cancel_instance(instance_id, current_actor())
    return jsonify(instance.to_dict()), 200


@decision_bp.route("/instances/<int:instance_id>/advance", methods=["POST"])
def advance_instance(instance_id: int):
    """Body: {to_phase_id?}. Defaults to the next phase."""
    instance = instance_service.manually_advance_instance(
        instance_id, current_actor(), to_phase_id=_body().get("to_phase_id"),
    )
    return jsonify(instance_service.describe_instance(instance)), 200


@decision_bp.route("/instances/<int:instance_id>/transitions", methods=["GET"])
def get_instance_transitions(instance_id: int):
    instance_service.get_instance(instance_id, current_actor())
    items = list_transitions(instance_id)
    return jsonify({"items": items, "total": len(items)}), 200


@decision_bp.route("/instances/<int:instance_id>/transitions/available", methods=["GET"])
def get_available_transitions(instance_id: int):
    return jsonify(instance_service.get_available_transitions(instance_id, current_actor())), 200


@decision_bp.route("/instances/<int:instance_id>/template-fields", methods=["GET"])
def get_template_fields(instance_id: int):
    return jsonify(instance_service.get_template_fields(instance_id, current_actor())), 200


# ═════════════════════════════════════════════════════════════════════════
# Proposals
# ═════════════════════════════════════════════════════════════════════════


@decision_bp.route("/instances/<int:instance_id>/proposals", methods=["POST"])
def create_proposal(instance_id: int):
    """Body: {proposal_data: {...}}"""
    data = _body()
    proposal = proposal_service.create_proposal(
        instance_id, data.get("proposal_data") or {}, current_actor(),
    )
    return jsonify(proposal), 201


@decision_bp.route("/instances/<int:instance_id>/proposals", methods=["GET"])
def list_proposals(instance_id: int):
    """Query params: status (optional)"""
    items = proposal_service.list_proposals(
        instance_id, current_actor(), status=request.args.get("status"),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@decision_bp.route("/proposals/<int:proposal_id>", methods=["GET"])
def get_proposal(proposal_id: int):
    return jsonify(proposal_service.get_proposal(proposal_id, current_actor())), 200


@decision_bp.route("/proposals/<int:proposal_id>", methods=["PUT"])
def update_proposal(proposal_id: int):
    """Body: {proposal_data?, status?, visibility?}"""
    return jsonify(proposal_service.update_proposal(proposal_id, _body(), current_actor())), 200


@decision_bp.route("/proposals/<int:proposal_id>/submit", methods=["POST"])
def submit_proposal(proposal_id: int):
    return jsonify(proposal_service.submit_proposal(proposal_id, current_actor())), 200


@decision_bp.route("/proposals/<int:proposal_id>", methods=["DELETE"])
def delete_proposal(proposal_id: int):
    proposal_service.delete_proposal(proposal_id, current_actor())
    return jsonify({"message": "Proposal deleted"}), 200


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


@decision_bp.route("/transitions/process", methods=["POST"])
def run_transition_processor():
    """Apply every due transition now. Admin only."""
    assert_access(current_actor(), "transitions", "admin")
    result = process_due_transitions()
    return jsonify(result.to_dict()), 200
