"""
Decision process and instance lifecycle service.

Rules:
  - Every mutating operation calls ``assert_access`` first.
  - db.session.commit() happens only in service modules.
  - instance_data is always reassigned as a new dict so the JSON column
    registers the change.

Lifecycle:
    create_instance ──▶ draft ──publish──▶ published ──(transitions)──▶ ...
                          └──cancel──▶ cancelled ◀──cancel──┘
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone

from decision_engine.core.exceptions import ConflictError, NotFoundError, ValidationError
from decision_engine.models import db
from decision_engine.models.decision import (
    DecisionProcess,
    DecisionProcessTransition,
    ProcessInstance,
)
from decision_engine.services import phase_state_machine as psm
from decision_engine.services.access import Actor, assert_access
from decision_engine.services.decision_schemas import (
    PHASE_OVERRIDE_KEYS,
    build_instance_data,
    get_template,
    parse_decision_schema,
)
from decision_engine.services.template_resolver import (
    is_legacy_schema,
    resolve_proposal_template,
)
from decision_engine.services.template_compiler import compile_template
from decision_engine.services.transition_rules import available_transitions
from decision_engine.services.transition_service import sync_instance_transitions
from decision_engine.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_process_or_raise(process_id: int) -> DecisionProcess:
    process = db.session.get(DecisionProcess, process_id)
    if process is None:
        raise NotFoundError(resource="DecisionProcess", resource_id=process_id)
    return process


def get_instance_or_raise(instance_id: int) -> ProcessInstance:
    instance = db.session.get(ProcessInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="ProcessInstance", resource_id=instance_id)
    return instance


# ── Processes ────────────────────────────────────────────────────────────────


def create_process(data: dict, actor: Actor) -> DecisionProcess:
    """Create a process from a phase-based or legacy state-machine schema."""
    assert_access(actor, "process", "create")

    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Process name is required", details={"name": "Name is required"})

    schema = data.get("process_schema")
    if parse_decision_schema(schema) is None and not is_legacy_schema(schema):
        raise ValidationError(
            "process_schema must define phases or a legacy state machine",
            details={"process_schema": "Phases are required"},
        )

    process = DecisionProcess(
        name=name,
        description=data.get("description") or "",
        process_schema=copy.deepcopy(schema),
        created_by=actor.user_id,
    )
    db.session.add(process)
    db.session.commit()
    logger.info("Decision process %s created by %s", process.id, actor.user_id,
                extra={"process_id": process.id})
    return process


def create_process_from_template(template_id: str, actor: Actor, name: str | None = None) -> DecisionProcess:
    """Create a process from a built-in schema template (e.g. ``simple``)."""
    schema = get_template(template_id)
    if schema is None:
        raise NotFoundError(resource="DecisionTemplate", resource_id=template_id)
    return create_process(
        {
            "name": name or schema["name"],
            "description": schema.get("description") or "",
            "process_schema": schema,
        },
        actor,
    )


# ── Instances ────────────────────────────────────────────────────────────────


def _validate_phase_overrides(phases, known_ids: list[str]) -> list[dict]:
    if phases is None:
        return []
    if not isinstance(phases, list):
        raise ValidationError("phases must be a list", details={"phases": "Must be a list"})

    errors = {}
    cleaned = []
    for entry in phases:
        if not isinstance(entry, dict) or not entry.get("phaseId"):
            errors["phases"] = "Every phase update needs a phaseId"
            continue
        phase_id = entry["phaseId"]
        if phase_id not in known_ids:
            errors[phase_id] = f"Unknown phase '{phase_id}'"
            continue
        for key in ("startDate", "endDate"):
            if entry.get(key) and parse_datetime(entry[key]) is None:
                errors[f"{phase_id}.{key}"] = f"{key} must be an ISO-8601 date"
        if "settings" in entry and entry["settings"] is not None and not isinstance(entry["settings"], dict):
            errors[f"{phase_id}.settings"] = "settings must be an object"
        cleaned.append({k: entry[k] for k in ("phaseId",) + PHASE_OVERRIDE_KEYS if k in entry})

    if errors:
        raise ValidationError("Invalid phase configuration", details=errors)
    return cleaned


def _assert_start_dates_ordered(phases: list[dict]) -> None:
    """Start dates must not decrease along the phase order.

    Phases without a start date are ignored; each dated phase is compared
    with the closest dated phase before it.
    """
    errors = {}
    previous = None
    for entry in phases:
        start = parse_datetime(entry.get("startDate"))
        if start is None:
            continue
        if previous is not None and start < previous[1]:
            errors[f"{entry['phaseId']}.startDate"] = (
                f"startDate must not be before the start of phase '{previous[0]}'"
            )
        previous = (entry["phaseId"], start)
    if errors:
        raise ValidationError("Phase start dates must follow the phase order", details=errors)


def create_instance(process_id: int, data: dict, actor: Actor) -> ProcessInstance:
    """Create a draft instance of a process.

    The proposal template is copied from the process schema into
    instance_data so later process edits do not affect running instances.
    """
    assert_access(actor, "instance", "create")
    process = get_process_or_raise(process_id)

    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Instance name is required", details={"name": "Name is required"})

    schema = parse_decision_schema(process.process_schema)
    if schema is None:
        raise ValidationError(
            f"Process {process.id} has no phase-based schema",
            details={"process_id": "Process schema has no phases"},
        )

    overrides = _validate_phase_overrides(data.get("phases"), schema.phase_ids())
    instance_data = build_instance_data(
        schema,
        phase_overrides=overrides,
        proposal_template=data.get("proposalTemplate"),
        config=data.get("config"),
    )
    _assert_start_dates_ordered(instance_data["phases"])

    instance = ProcessInstance(
        process_id=process.id,
        name=name,
        description=data.get("description") or "",
        owner_profile_id=data.get("owner_profile_id") or actor.user_id,
        status="draft",
        current_state_id=instance_data["currentPhaseId"],
        instance_data=instance_data,
    )
    db.session.add(instance)
    db.session.commit()
    logger.info("Instance %s created for process %s", instance.id, process.id,
                extra={"instance_id": instance.id, "process_id": process.id})
    return instance


def update_instance_phases(instance_id: int, phases: list[dict], actor: Actor) -> dict:
    """Merge partial PhaseInstance updates into an instance.

    Any subset of startDate / endDate / name / settings may be supplied per
    phase. Published instances get their pending transitions re-synced;
    this never advances a phase.

    Returns:
        {"instance": dict, "transitions": {"created", "updated", "deleted"} | None}
    """
    assert_access(actor, "instance", "admin")
    instance = get_instance_or_raise(instance_id)
    if instance.status in ("cancelled", "completed"):
        raise ValidationError(f"Cannot edit phases of a {instance.status} instance")

    updates = _validate_phase_overrides(phases, psm.phase_ids(instance))
    by_id = {u["phaseId"]: u for u in updates}

    data = copy.deepcopy(instance.instance_data or {})
    for entry in data.get("phases") or []:
        update = by_id.get(entry.get("phaseId"))
        if not update:
            continue
        for key in PHASE_OVERRIDE_KEYS:
            if key in update:
                if update[key] is None:
                    entry.pop(key, None)
                else:
                    entry[key] = update[key]
    _assert_start_dates_ordered(data.get("phases") or [])
    instance.instance_data = data

    sync_result = None
    if instance.status == "published":
        sync_result = sync_instance_transitions(instance)

    db.session.commit()
    logger.info("Phases updated for instance %s (%d phases)", instance.id, len(updates),
                extra={"instance_id": instance.id})
    return {"instance": instance.to_dict(), "transitions": sync_result}


def publish_instance(instance_id: int, actor: Actor) -> dict:
    """draft → published; schedules the date-based transitions."""
    assert_access(actor, "instance", "admin")
    instance = get_instance_or_raise(instance_id)
    if instance.status != "draft":
        raise ConflictError(resource="ProcessInstance", field="status", value=instance.status)

    if not instance.current_state_id:
        instance.current_state_id = psm.current_phase_id(instance)
    instance.status = "published"
    psm.mark_phase_entered(instance)
    sync_result = sync_instance_transitions(instance)
    db.session.commit()
    logger.info("Instance %s published", instance.id, extra={"instance_id": instance.id})
    return {"instance": instance.to_dict(), "transitions": sync_result}


def cancel_instance(instance_id: int, actor: Actor) -> ProcessInstance:
    """Cancelled instances are skipped by the transition processor."""
    assert_access(actor, "instance", "admin")
    instance = get_instance_or_raise(instance_id)
    if instance.status in ("cancelled", "completed"):
        raise ConflictError(resource="ProcessInstance", field="status", value=instance.status)
    instance.status = "cancelled"
    db.session.commit()
    logger.info("Instance %s cancelled", instance.id, extra={"instance_id": instance.id})
    return instance


def delete_instance(instance_id: int, actor: Actor) -> None:
    """Hard delete; transitions and proposals cascade."""
    assert_access(actor, "instance", "admin")
    instance = get_instance_or_raise(instance_id)
    db.session.delete(instance)
    db.session.commit()
    logger.info("Instance %s deleted", instance_id, extra={"instance_id": instance_id})


def manually_advance_instance(instance_id: int, actor: Actor, to_phase_id: str | None = None) -> ProcessInstance:
    """Operator-driven advancement for phases with ``advancement.method == 'manual'``.

    Only the transition to the next phase is available, and it runs only
    when the phase's advancement conditions pass. The target defaults to the
    next phase. A completed transition row is recorded as history.
    """
    assert_access(actor, "instance", "admin")
    instance = get_instance_or_raise(instance_id)
    if instance.status != "published":
        raise ValidationError("Only published instances can be advanced")

    current = psm.current_phase_id(instance)
    if psm.phase_rules(instance, current).advancement_method != "manual":
        raise ValidationError(
            f"Phase '{current}' advances by date and cannot be advanced manually",
            details={"phase": current},
        )

    now = _utcnow()
    options = {t.to_state_id: t for t in available_transitions(instance, now)}
    if not options:
        raise ValidationError(f"Phase '{current}' is the final phase", details={"phase": current})

    target = to_phase_id or next(iter(options))
    option = options.get(target)
    if option is None:
        raise ValidationError(
            f"No transition from '{current}' to '{target}'",
            details={"toStateId": f"Available: {', '.join(options)}"},
        )
    if not option.can_execute:
        messages = [r.error_message for r in option.failed_rules]
        raise ValidationError(
            f"Cannot advance to '{target}': {', '.join(messages)}",
            details={r.rule_id: r.error_message for r in option.failed_rules},
        )

    psm.advance_instance(instance, target, entered_at=now)
    db.session.add(DecisionProcessTransition(
        process_instance_id=instance.id,
        from_state_id=current,
        to_state_id=target,
        scheduled_date=now,
        completed_at=now,
    ))
    db.session.commit()
    return instance


def get_available_transitions(instance_id: int, actor: Actor) -> dict:
    """Transitions out of the current phase and whether each can run now."""
    assert_access(actor, "instance", "read")
    instance = get_instance_or_raise(instance_id)
    options = available_transitions(instance)
    return {
        "currentPhaseId": psm.current_phase_id(instance),
        "canTransition": instance.status == "published" and any(o.can_execute for o in options),
        "availableTransitions": [o.to_dict() for o in options],
    }


# ── Read helpers ─────────────────────────────────────────────────────────────


def get_process(process_id: int, actor: Actor) -> dict:
    assert_access(actor, "process", "read")
    return get_process_or_raise(process_id).to_dict()


def get_instance(instance_id: int, actor: Actor) -> dict:
    assert_access(actor, "instance", "read")
    return describe_instance(get_instance_or_raise(instance_id))


def get_template_fields(instance_id: int, actor: Actor) -> dict:
    """Compiled field descriptors for the instance's effective template."""
    assert_access(actor, "instance", "read")
    instance = get_instance_or_raise(instance_id)
    template = resolve_proposal_template(instance)
    return {
        "hasTemplate": template is not None,
        "fields": [f.to_dict() for f in compile_template(template)],
    }


def describe_instance(instance: ProcessInstance) -> dict:
    data = instance.to_dict()
    data["can_submit_proposal"] = psm.can_submit_proposal(instance)
    data["can_vote"] = psm.can_vote(instance)
    data["is_terminal"] = psm.is_terminal(instance)
    return data
