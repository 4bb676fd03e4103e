"""
Proposal template compiler.

Turns a proposal template (JSON-Schema object with ``x-format`` and
``x-field-order`` vendor extensions) into an ordered list of FieldDescriptor
objects that form renderers and validators consume.

Rules:
    - ``title``, ``category`` and ``budget`` are reserved system keys. They are
      always flagged ``is_system`` and pinned first in that order; dynamic
      fields must not reuse these names.
    - Every other property is a dynamic field keyed by its property name
      (often an opaque UUID) and must declare a known ``x-format``.
      Unknown or missing formats are logged and the field is skipped.
    - Choices declared as ``oneOf: [{const, title}]`` or legacy ``enum`` are
      exposed uniformly as ``[{"value", "label"}]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

SYSTEM_FIELDS = ("title", "category", "budget")

FIELD_FORMATS = {"short-text", "long-text", "money", "dropdown", "category"}

# Format assumed for system fields that omit x-format
SYSTEM_DEFAULT_FORMATS = {
    "title": "short-text",
    "category": "category",
    "budget": "money",
}

SYSTEM_DISPLAY_NAMES = {
    "title": "Title",
    "category": "Category",
    "budget": "Budget",
    "description": "Description",
}

NO_SELECTION_LABEL = "No selection"


@dataclass
class FieldDescriptor:
    key: str
    format: str
    schema: dict
    is_system: bool = False
    required: bool = False
    title: str | None = None
    options: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "format": self.format,
            "title": self.title,
            "isSystem": self.is_system,
            "required": self.required,
            "options": self.options,
            "schema": self.schema,
        }


def normalize_options(schema: Any) -> list[dict]:
    """Expose ``oneOf`` / ``enum`` choices as ``[{"value", "label"}]``."""
    if not isinstance(schema, dict):
        return []

    one_of = schema.get("oneOf")
    if isinstance(one_of, list):
        options = []
        for entry in one_of:
            if not isinstance(entry, dict) or "const" not in entry:
                continue
            value = entry["const"]
            label = entry.get("title")
            if label is None:
                label = NO_SELECTION_LABEL if value is None else str(value)
            options.append({"value": value, "label": label})
        return options

    enum = schema.get("enum")
    if isinstance(enum, list):
        return [
            {"value": value, "label": NO_SELECTION_LABEL if value is None else str(value)}
            for value in enum
        ]
    return []


def _field_order(template: dict) -> list[str]:
    properties = template.get("properties") or {}
    declared = list(properties.keys())

    order = template.get("x-field-order")
    if isinstance(order, list):
        ordered = [k for k in order if isinstance(k, str) and k in properties]
        seen = set(ordered)
        ordered += [k for k in declared if k not in seen]
    else:
        ordered = declared

    system = [k for k in SYSTEM_FIELDS if k in properties]
    return system + [k for k in ordered if k not in SYSTEM_FIELDS]


def compile_template(template: dict | None) -> list[FieldDescriptor]:
    """Compile a proposal template into ordered field descriptors.

    A missing template compiles to an empty list.
    """
    if not isinstance(template, dict):
        return []

    properties = template.get("properties") or {}
    required = set(template.get("required") or [])
    descriptors = []

    for key in _field_order(template):
        schema = properties.get(key)
        if not isinstance(schema, dict):
            logger.warning("Template property %r is not an object schema, skipping", key)
            continue

        is_system = key in SYSTEM_FIELDS
        fmt = schema.get("x-format")
        if is_system and fmt is None:
            fmt = SYSTEM_DEFAULT_FORMATS[key]
        if fmt not in FIELD_FORMATS:
            logger.warning("Template field %r has unknown x-format %r, not rendered", key, fmt)
            continue

        descriptors.append(FieldDescriptor(
            key=key,
            format=fmt,
            schema=schema,
            is_system=is_system,
            required=key in required,
            title=schema.get("title") or SYSTEM_DISPLAY_NAMES.get(key),
            options=normalize_options(schema) if fmt in ("dropdown", "category") else [],
        ))
    return descriptors
