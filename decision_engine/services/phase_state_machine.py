"""
Phase state machine.

States are the phase ids of an instance; the order of
``instance_data["phases"]`` (falling back to the process schema) defines the
implied transitions ``phase[i] → phase[i + 1]``.

    submission ──▶ review ──▶ voting ──▶ results (terminal)

Guards read the instance's *current* phase, never the schema's first phase.
Rules come from the PhaseInstance copy in instance_data when present,
otherwise from the process schema.

``advance_instance`` is the only writer of the current phase. It updates
``instance_data["currentPhaseId"]`` and the ``current_state_id`` column
together, stamps ``instance_data["phaseData"][phase]["enteredAt"]`` and leaves
the commit to the caller's transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from decision_engine.core.exceptions import ValidationError
from decision_engine.services.decision_schemas import (
    DecisionSchemaDefinition,
    PhaseRules,
    parse_decision_schema,
)
from decision_engine.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _schema_for(instance) -> DecisionSchemaDefinition | None:
    process = getattr(instance, "process", None)
    return parse_decision_schema(getattr(process, "process_schema", None))


def _phase_entries(instance) -> list[dict]:
    phases = (instance.instance_data or {}).get("phases")
    if not isinstance(phases, list):
        return []
    return [p for p in phases if isinstance(p, dict) and p.get("phaseId")]


def phase_ids(instance) -> list[str]:
    """Ordered phase ids available to this instance."""
    entries = _phase_entries(instance)
    if entries:
        return [p["phaseId"] for p in entries]
    schema = _schema_for(instance)
    if schema is not None:
        return schema.phase_ids()
    # Legacy state-machine processes: states carry the ids
    process_schema = getattr(getattr(instance, "process", None), "process_schema", None) or {}
    states = process_schema.get("states") if isinstance(process_schema, dict) else None
    if isinstance(states, list):
        return [s["id"] for s in states if isinstance(s, dict) and s.get("id")]
    return []


def current_phase_id(instance) -> str | None:
    return (instance.instance_data or {}).get("currentPhaseId") or instance.current_state_id


def phase_rules(instance, phase_id: str | None) -> PhaseRules:
    for entry in _phase_entries(instance):
        if entry["phaseId"] == phase_id and isinstance(entry.get("rules"), dict):
            return PhaseRules.from_dict(entry["rules"])
    schema = _schema_for(instance)
    phase = schema.get_phase(phase_id) if schema else None
    return phase.rules if phase else PhaseRules()


def phase_name(instance, phase_id: str | None) -> str:
    for entry in _phase_entries(instance):
        if entry["phaseId"] == phase_id and entry.get("name"):
            return entry["name"]
    schema = _schema_for(instance)
    phase = schema.get_phase(phase_id) if schema else None
    return phase.name if phase else (phase_id or "unknown")


def phase_settings(instance, phase_id: str | None) -> dict:
    for entry in _phase_entries(instance):
        if entry["phaseId"] == phase_id:
            settings = entry.get("settings")
            return settings if isinstance(settings, dict) else {}
    return {}


# ── Guards ───────────────────────────────────────────────────────────────────


def can_submit_proposal(instance) -> bool:
    """True when the instance's current phase allows proposals."""
    phase_id = current_phase_id(instance)
    if phase_id is None:
        return False
    return phase_rules(instance, phase_id).proposals_submit


def can_vote(instance) -> bool:
    phase_id = current_phase_id(instance)
    if phase_id is None:
        return False
    return phase_rules(instance, phase_id).voting_submit


def assert_proposals_allowed(instance) -> None:
    """Raise ValidationError naming the phase when proposals are closed."""
    phase_id = current_phase_id(instance)
    if phase_id is None:
        raise ValidationError("Invalid phase in process instance")
    if not can_submit_proposal(instance):
        name = phase_name(instance, phase_id)
        raise ValidationError(
            f"Proposals are not allowed in the {name} phase",
            details={"phase": phase_id},
        )


# ── Structure ────────────────────────────────────────────────────────────────


def initial_phase_id(instance) -> str | None:
    ids = phase_ids(instance)
    return ids[0] if ids else None


def next_phase_id(instance, phase_id: str) -> str | None:
    ids = phase_ids(instance)
    if phase_id not in ids:
        return None
    idx = ids.index(phase_id)
    return ids[idx + 1] if idx + 1 < len(ids) else None


def is_terminal(instance, phase_id: str | None = None) -> bool:
    """A phase with no successor is terminal."""
    phase_id = phase_id or current_phase_id(instance)
    return phase_id in phase_ids(instance) and next_phase_id(instance, phase_id) is None


# ── Mutation ─────────────────────────────────────────────────────────────────


def phase_entered_at(instance, phase_id: str | None = None):
    """When the instance entered ``phase_id`` (default: current phase), or None."""
    phase_id = phase_id or current_phase_id(instance)
    entry = ((instance.instance_data or {}).get("phaseData") or {}).get(phase_id) or {}
    return parse_datetime(entry.get("enteredAt"))


def _with_entered_at(data: dict, phase_id: str, entered_at: datetime) -> dict:
    phase_data = dict(data.get("phaseData") or {})
    phase_data[phase_id] = {**(phase_data.get(phase_id) or {}), "enteredAt": entered_at.isoformat()}
    data["phaseData"] = phase_data
    return data


def mark_phase_entered(instance, entered_at: datetime | None = None) -> None:
    """Stamp ``phaseData[current].enteredAt`` unless already set. Does not commit."""
    phase_id = current_phase_id(instance)
    if phase_id is None or phase_entered_at(instance, phase_id) is not None:
        return
    data = dict(instance.instance_data or {})
    instance.instance_data = _with_entered_at(data, phase_id, entered_at or _utcnow())


def advance_instance(instance, to_phase_id: str, entered_at: datetime | None = None) -> None:
    """Move ``instance`` to ``to_phase_id``.

    Writes ``instance_data["currentPhaseId"]`` and ``current_state_id``
    together and records ``phaseData[to_phase_id].enteredAt``. Does not
    commit.

    Raises:
        ValidationError: if the target phase does not exist for this instance.
    """
    known = phase_ids(instance)
    if to_phase_id not in known:
        raise ValidationError(
            f"Phase '{to_phase_id}' does not exist in process instance {instance.id}",
            details={"toStateId": to_phase_id},
        )

    from_phase_id = current_phase_id(instance)
    data = dict(instance.instance_data or {})
    data["currentPhaseId"] = to_phase_id
    _with_entered_at(data, to_phase_id, entered_at or _utcnow())
    # New dict so the JSON column is flagged dirty
    instance.instance_data = data
    instance.current_state_id = to_phase_id

    logger.info(
        "Instance %s advanced %s → %s", instance.id, from_phase_id, to_phase_id,
        extra={"instance_id": instance.id},
    )
