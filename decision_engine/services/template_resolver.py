"""
Proposal template resolution.

Finds the effective proposal template for a process instance across the
storage generations that exist in the database:

    1. instance_data["proposalTemplate"]              (current format)
    2. process_schema["proposalTemplate"] of a legacy state-machine schema
       (``states`` + ``transitions`` lists)
    3. process_schema["proposalTemplate"] of a phase-based schema
    4. nothing → callers accept any payload with a non-empty title

Each source is a strategy returning a template or None; the first hit wins.
Sources are identified by explicit discriminant checks, so malformed legacy
data is "no template here", never an exception.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from decision_engine.services.decision_schemas import is_phase_schema

logger = logging.getLogger(__name__)


def is_valid_template(template: Any) -> bool:
    """Structural check: an object schema with dict properties and list required."""
    if not isinstance(template, dict):
        return False
    if template.get("type") != "object":
        return False
    if "properties" in template and not isinstance(template["properties"], dict):
        return False
    if "required" in template and not isinstance(template["required"], list):
        return False
    return True


def is_legacy_schema(raw: Any) -> bool:
    """Legacy state-machine schemas carry ``states`` and ``transitions`` lists."""
    return (
        isinstance(raw, dict)
        and isinstance(raw.get("states"), list)
        and isinstance(raw.get("transitions"), list)
    )


def _from_instance(instance_data: dict, process_schema: Any) -> dict | None:
    template = instance_data.get("proposalTemplate")
    if template is None:
        return None
    if not is_valid_template(template):
        logger.warning("Ignoring malformed instance proposalTemplate")
        return None
    return template


def _from_legacy_process(instance_data: dict, process_schema: Any) -> dict | None:
    if not is_legacy_schema(process_schema):
        return None
    template = process_schema.get("proposalTemplate")
    return template if is_valid_template(template) else None


def _from_phase_process(instance_data: dict, process_schema: Any) -> dict | None:
    if not is_phase_schema(process_schema):
        return None
    template = process_schema.get("proposalTemplate")
    return template if is_valid_template(template) else None


RESOLVERS: list[tuple[str, Callable[[dict, Any], dict | None]]] = [
    ("instance", _from_instance),
    ("legacy_process", _from_legacy_process),
    ("phase_process", _from_phase_process),
]


def resolve_template_source(instance_data: Any, process_schema: Any = None) -> tuple[str | None, dict | None]:
    """Return ``(source_name, template)``; ``(None, None)`` when nothing resolves."""
    instance_data = instance_data if isinstance(instance_data, dict) else {}
    for name, strategy in RESOLVERS:
        template = strategy(instance_data, process_schema)
        if template is not None:
            return name, template
    return None, None


def resolve_proposal_template(instance) -> dict | None:
    """Effective proposal template for a ProcessInstance, or None."""
    process = getattr(instance, "process", None)
    process_schema = getattr(process, "process_schema", None) if process is not None else None
    source, template = resolve_template_source(instance.instance_data, process_schema)
    if source is not None:
        logger.debug("Proposal template for instance %s resolved from %s",
                     getattr(instance, "id", None), source)
    return template
