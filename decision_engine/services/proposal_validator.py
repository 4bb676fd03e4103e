"""
Proposal validator.

Gates proposal submission against the effective proposal template:

    1. Resolve the effective payload. When the proposal points at a hosted
       collaborative document, its fragments are authoritative for content
       fields; if the document cannot be fetched the stored values are used.
    2. Build a validation schema from the template: money fields become an
       ``{amount, currency}`` object whose ``amount`` carries the cap, and
       choice fields that offer a null "no selection" also accept null.
    3. Run Draft 7 JSON-Schema validation (jsonschema) and turn every error
       into a message that names the field by its schema title, never by an
       opaque key.
    4. Apply instance constraints (e.g. the phase budget cap).

No template: the payload is valid when it has a non-empty title.

The validator has no side effects; callers check the phase guard themselves.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from jsonschema import Draft7Validator

from decision_engine.core.exceptions import ValidationError
from decision_engine.services.proposal_normalizer import (
    DEFAULT_CURRENCY,
    normalize,
    normalize_budget,
)
from decision_engine.services.template_compiler import SYSTEM_DISPLAY_NAMES

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$", re.IGNORECASE,
)
_HEXISH_RE = re.compile(r"^(field[_-])?[0-9a-f]{12,}$", re.IGNORECASE)

OPAQUE_FIELD_LABEL = "This field"


@dataclass(frozen=True)
class InstanceConstraints:
    """Per-instance limits layered on top of the template."""

    max_budget: float | None = None
    currency: str = DEFAULT_CURRENCY


@dataclass
class SchemaValidationResult:
    valid: bool
    errors: dict[str, str] = field(default_factory=dict)
    data: dict = field(default_factory=dict)


# ── Field labels ─────────────────────────────────────────────────────────────


def is_opaque_key(key: str) -> bool:
    return bool(_UUID_RE.match(key) or _HEXISH_RE.match(key))


def field_label(key: str, template: dict | None) -> str:
    """Human label for a field: schema title, system name, humanized key."""
    properties = (template or {}).get("properties") or {}
    schema = properties.get(key)
    if isinstance(schema, dict) and schema.get("title"):
        return schema["title"]
    if key in SYSTEM_DISPLAY_NAMES:
        return SYSTEM_DISPLAY_NAMES[key]
    if is_opaque_key(key):
        return OPAQUE_FIELD_LABEL
    text = re.sub(r"([a-z])([A-Z])", r"\1 \2", key).replace("_", " ").replace("-", " ")
    return text[:1].upper() + text[1:]


def _fmt(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ── Schema preparation ───────────────────────────────────────────────────────


def _format_of(key: str, schema: dict) -> str | None:
    fmt = schema.get("x-format")
    if fmt is None and key == "budget":
        return "money"
    if fmt is None and key == "category":
        return "category"
    return fmt


def _money_schema(schema: dict) -> dict:
    amount = {"type": "number"}
    existing = (schema.get("properties") or {}).get("amount")
    if isinstance(existing, dict):
        amount.update({k: v for k, v in existing.items() if k != "type"})
    for bound in ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum"):
        if bound in schema:
            amount[bound] = schema[bound]

    money = {
        "type": "object",
        "properties": {
            "amount": amount,
            "currency": {"type": "string"},
        },
        "required": ["amount"],
    }
    if schema.get("title"):
        money["title"] = schema["title"]
    return money


def _allows_null_choice(schema: dict) -> bool:
    if isinstance(schema.get("enum"), list) and None in schema["enum"]:
        return True
    one_of = schema.get("oneOf")
    if isinstance(one_of, list):
        return any(isinstance(o, dict) and "const" in o and o["const"] is None for o in one_of)
    return False


def _choice_schema(schema: dict) -> dict:
    prepared = copy.deepcopy(schema)
    if _allows_null_choice(prepared) and "type" in prepared:
        types = prepared["type"] if isinstance(prepared["type"], list) else [prepared["type"]]
        if "null" not in types:
            prepared["type"] = types + ["null"]
    return prepared


def build_validation_schema(template: dict) -> dict:
    """Rewrite a proposal template into a plain Draft 7 schema."""
    properties = {}
    for key, schema in (template.get("properties") or {}).items():
        if not isinstance(schema, dict):
            continue
        fmt = _format_of(key, schema)
        if fmt == "money":
            properties[key] = _money_schema(schema)
        elif fmt in ("category", "dropdown"):
            properties[key] = _choice_schema(schema)
        else:
            properties[key] = copy.deepcopy(schema)

    return {
        "type": "object",
        "properties": properties,
        "required": list(template.get("required") or []),
    }


def money_keys(template: dict | None) -> list[str]:
    return [
        key for key, schema in ((template or {}).get("properties") or {}).items()
        if isinstance(schema, dict) and _format_of(key, schema) == "money"
    ]


# ── Effective payload ────────────────────────────────────────────────────────


def _money_from_text(text: str, fallback: Any, currency: str) -> Any:
    text = (text or "").strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return normalize_budget(parsed, currency)
    local_currency = fallback.get("currency") if isinstance(fallback, dict) else None
    return normalize_budget(text, local_currency or currency)


def fragment_names(template: dict | None) -> list[str]:
    """Fragment names holding field values: system names plus dynamic keys."""
    names = ["title", "category", "budget"]
    for key in ((template or {}).get("properties") or {}):
        if key not in names:
            names.append(key)
    return names


def resolve_effective_payload(
    proposal_data: dict,
    template: dict | None,
    fetch_fragments: Callable[[str], dict | None] | None = None,
    currency: str = DEFAULT_CURRENCY,
) -> dict:
    """Merge hosted-document fragments over locally stored proposal data."""
    payload = dict(proposal_data or {})
    doc_id = payload.get("collaborationDocId")
    if not doc_id:
        return payload

    if fetch_fragments is None:
        from decision_engine.integrations.document_gateway import fetch_document_fragments
        fetch_fragments = fetch_document_fragments

    fragments = fetch_fragments(doc_id)
    if fragments is None:
        logger.info("Hosted document %s unavailable, validating stored proposal data", doc_id)
        return payload

    money = set(money_keys(template))
    for name in fragment_names(template):
        if name not in fragments:
            continue
        text = fragments[name]
        if name in money:
            payload[name] = _money_from_text(text, payload.get(name), currency)
        else:
            text = text.strip() if isinstance(text, str) else text
            payload[name] = text or None
    return payload


# ── Error messages ───────────────────────────────────────────────────────────


def _format_error(error, label: str) -> str:
    kind = error.validator
    if kind == "type":
        expected = error.validator_value
        if expected == "number" or expected == "integer":
            return f"{label} must be a number"
        if expected == "string":
            return f"{label} must be text"
        return f"{label} has an invalid format"
    if kind == "minimum":
        return f"{label} must be at least {_fmt(error.validator_value)}"
    if kind == "maximum":
        return f"{label} cannot exceed {_fmt(error.validator_value)}"
    if kind == "exclusiveMaximum":
        return f"{label} must be less than {_fmt(error.validator_value)}"
    if kind == "exclusiveMinimum":
        return f"{label} must be greater than {_fmt(error.validator_value)}"
    if kind == "minLength":
        if error.validator_value == 1:
            return f"{label} is required"
        return f"{label} must be at least {error.validator_value} characters"
    if kind == "maxLength":
        return f"{label} cannot exceed {error.validator_value} characters"
    if kind == "enum":
        allowed = ", ".join(str(v) for v in error.validator_value if v is not None)
        return f"{label} must be one of: {allowed}"
    if kind in ("oneOf", "anyOf", "const"):
        return f"{label} is not one of the available options"
    return f"{label} is invalid"


def _collect_errors(schema: dict, payload: dict, template: dict) -> dict[str, str]:
    errors: dict[str, str] = {}
    required_missing: set[str] = set()
    all_errors = sorted(
        Draft7Validator(schema).iter_errors(payload),
        key=lambda e: [str(p) for p in e.path],
    )

    for error in all_errors:
        if error.validator != "required":
            continue
        path = list(error.path)
        for missing in error.validator_value:
            if isinstance(error.instance, dict) and missing in error.instance:
                continue
            key = str(path[0]) if path else missing
            if key in errors:
                continue
            required_missing.add(key)
            errors[key] = f"{field_label(key, template)} is required"

    for error in all_errors:
        if error.validator == "required":
            continue
        path = list(error.path)
        key = str(path[0]) if path else "root"
        if key in errors:
            continue
        if error.validator == "type" and key in required_missing:
            continue
        errors[key] = _format_error(error, field_label(key, template))
    return errors


# ── Entry points ─────────────────────────────────────────────────────────────


def check(
    proposal_data: dict,
    template: dict | None,
    constraints: InstanceConstraints | None = None,
    fetch_fragments: Callable[[str], dict | None] | None = None,
) -> SchemaValidationResult:
    """Validate without raising. Returns the effective payload on success."""
    constraints = constraints or InstanceConstraints()
    payload = resolve_effective_payload(
        normalize(proposal_data, constraints.currency), template,
        fetch_fragments=fetch_fragments, currency=constraints.currency,
    )

    if template is None:
        title = payload.get("title")
        if isinstance(title, str) and title.strip():
            return SchemaValidationResult(valid=True, data=payload)
        return SchemaValidationResult(valid=False, errors={"title": "Title is required"}, data=payload)

    for key in money_keys(template):
        if key in payload:
            payload[key] = normalize_budget(payload[key], constraints.currency)

    pruned = {k: v for k, v in payload.items() if v is not None}
    errors = _collect_errors(build_validation_schema(template), pruned, template)

    budget = pruned.get("budget")
    if (
        "budget" not in errors
        and constraints.max_budget is not None
        and isinstance(budget, dict)
        and isinstance(budget.get("amount"), (int, float))
        and budget["amount"] > constraints.max_budget
    ):
        errors["budget"] = (
            f"{field_label('budget', template)} cannot exceed {_fmt(constraints.max_budget)}"
        )

    return SchemaValidationResult(valid=not errors, errors=errors, data=payload)


def validate(
    proposal_data: dict,
    template: dict | None,
    constraints: InstanceConstraints | None = None,
    fetch_fragments: Callable[[str], dict | None] | None = None,
) -> dict:
    """Validate proposal data, raising ValidationError with a field map on failure.

    Returns:
        The effective (normalized, document-resolved) payload.
    """
    result = check(proposal_data, template, constraints, fetch_fragments)
    if not result.valid:
        summary = ", ".join(f"{k}: {v}" for k, v in result.errors.items())
        raise ValidationError(f"Proposal validation failed: {summary}", details=result.errors)
    return result.data
