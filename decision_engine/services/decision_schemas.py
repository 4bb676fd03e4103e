"""
Decision schema definitions.

A DecisionSchemaDefinition is the template-of-templates owned by a process:
an ordered list of phases, each with typed behaviour rules, plus an optional
default proposal template.

    {
        "id": "simple", "version": "1.0.0", "name": "Simple Voting",
        "phases": [
            {"id": "submission", "name": "...", "rules": {
                "proposals": {"submit": true},
                "voting": {"submit": false},
                "advancement": {"method": "date"}}},
            ...
        ],
        "proposalTemplate": {...}
    }

Usage:
    from decision_engine.services.decision_schemas import parse_decision_schema

    schema = parse_decision_schema(process.process_schema)   # None if not phase-based
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# ── Phase rules ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PhaseRules:
    """Typed view of a phase's ``rules`` block. Missing keys fall back to defaults.

    ``advancement.conditions`` gate manual advancement out of the phase; with
    ``requireAll`` false any one passing condition is enough.
    """

    proposals_submit: bool = False
    voting_submit: bool = False
    advancement_method: str = "manual"
    advancement_conditions: tuple[dict, ...] = ()
    advancement_require_all: bool = True

    @classmethod
    def from_dict(cls, raw: Any) -> "PhaseRules":
        if not isinstance(raw, dict):
            return cls()
        proposals = raw.get("proposals") if isinstance(raw.get("proposals"), dict) else {}
        voting = raw.get("voting") if isinstance(raw.get("voting"), dict) else {}
        advancement = raw.get("advancement") if isinstance(raw.get("advancement"), dict) else {}
        method = advancement.get("method", "manual")
        if method not in ("manual", "date"):
            logger.warning("Unknown advancement method %r, treating as manual", method)
            method = "manual"
        conditions = advancement.get("conditions")
        if not isinstance(conditions, list):
            conditions = []
        return cls(
            proposals_submit=bool(proposals.get("submit", False)),
            voting_submit=bool(voting.get("submit", False)),
            advancement_method=method,
            advancement_conditions=tuple(copy.deepcopy(c) for c in conditions if isinstance(c, dict)),
            advancement_require_all=bool(advancement.get("requireAll", True)),
        )

    def to_dict(self) -> dict:
        advancement = {"method": self.advancement_method}
        if self.advancement_conditions:
            advancement["conditions"] = [copy.deepcopy(c) for c in self.advancement_conditions]
            advancement["requireAll"] = self.advancement_require_all
        return {
            "proposals": {"submit": self.proposals_submit},
            "voting": {"submit": self.voting_submit},
            "advancement": advancement,
        }


@dataclass(frozen=True)
class Phase:
    id: str
    name: str
    description: str | None = None
    rules: PhaseRules = field(default_factory=PhaseRules)
    settings: dict | None = None


@dataclass(frozen=True)
class DecisionSchemaDefinition:
    id: str
    version: str
    name: str
    phases: tuple[Phase, ...]
    description: str | None = None
    proposal_template: dict | None = None

    def phase_ids(self) -> list[str]:
        return [p.id for p in self.phases]

    def get_phase(self, phase_id: str | None) -> Phase | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def next_phase(self, phase_id: str) -> Phase | None:
        ids = self.phase_ids()
        if phase_id not in ids:
            return None
        idx = ids.index(phase_id)
        return self.phases[idx + 1] if idx + 1 < len(self.phases) else None


# ── Parsing ──────────────────────────────────────────────────────────────────


def is_phase_schema(raw: Any) -> bool:
    """Discriminant: a non-empty ``phases`` list whose entries all carry an ``id``."""
    if not isinstance(raw, dict):
        return False
    phases = raw.get("phases")
    if not isinstance(phases, list) or not phases:
        return False
    return all(isinstance(p, dict) and isinstance(p.get("id"), str) and p["id"] for p in phases)


def parse_decision_schema(raw: Any) -> DecisionSchemaDefinition | None:
    """Parse a stored process schema into a DecisionSchemaDefinition.

    Returns None for anything that is not phase-based (legacy state-machine
    schemas included). Never raises.
    """
    if not is_phase_schema(raw):
        return None

    phases = []
    seen = set()
    for entry in raw["phases"]:
        if entry["id"] in seen:
            logger.warning("Duplicate phase id %r in schema %r", entry["id"], raw.get("id"))
            return None
        seen.add(entry["id"])
        phases.append(Phase(
            id=entry["id"],
            name=entry.get("name") or entry["id"],
            description=entry.get("description"),
            rules=PhaseRules.from_dict(entry.get("rules")),
            settings=entry.get("settings") if isinstance(entry.get("settings"), dict) else None,
        ))

    template = raw.get("proposalTemplate")
    return DecisionSchemaDefinition(
        id=str(raw.get("id") or "custom"),
        version=str(raw.get("version") or "1.0.0"),
        name=raw.get("name") or "Untitled process",
        description=raw.get("description"),
        phases=tuple(phases),
        proposal_template=template if isinstance(template, dict) else None,
    )


# ── Instance data ────────────────────────────────────────────────────────────

PHASE_OVERRIDE_KEYS = ("startDate", "endDate", "name", "settings")


def build_instance_data(
    schema: DecisionSchemaDefinition,
    phase_overrides: list[dict] | None = None,
    proposal_template: dict | None = None,
    config: dict | None = None,
) -> dict:
    """Produce canonical instanceData for a new instance of ``schema``.

    The current phase is the schema's first phase. Each PhaseInstance carries
    a copy of its phase rules so later schema edits do not change running
    instances.
    """
    overrides = {}
    for entry in phase_overrides or []:
        if isinstance(entry, dict) and entry.get("phaseId"):
            overrides[entry["phaseId"]] = entry

    phases = []
    for phase in schema.phases:
        override = overrides.get(phase.id, {})
        phase_instance = {
            "phaseId": phase.id,
            "name": override.get("name") or phase.name,
            "rules": phase.rules.to_dict(),
        }
        for key in ("startDate", "endDate"):
            if override.get(key):
                phase_instance[key] = override[key]
        if isinstance(override.get("settings"), dict):
            phase_instance["settings"] = copy.deepcopy(override["settings"])
        phases.append(phase_instance)

    data = {
        "currentPhaseId": schema.phases[0].id,
        "phases": phases,
    }
    template = proposal_template if proposal_template is not None else schema.proposal_template
    if template is not None:
        data["proposalTemplate"] = copy.deepcopy(template)
    if config:
        data["config"] = copy.deepcopy(config)
    return data


# ── Built-in templates ───────────────────────────────────────────────────────

SIMPLE_PROPOSAL_TEMPLATE = {
    "type": "object",
    "properties": {
        "title": {
            "type": "string",
            "title": "Proposal title",
            "x-format": "short-text",
        },
        "budget": {
            "type": "object",
            "title": "Budget",
            "x-format": "money",
            "properties": {
                "amount": {"type": "number"},
                "currency": {"type": "string", "default": "USD"},
            },
        },
        "summary": {
            "type": "string",
            "title": "Proposal summary",
            "x-format": "long-text",
        },
    },
    "x-field-order": ["title", "budget", "summary"],
    "required": ["summary", "title"],
}

_BUDGET_SETTING = {
    "type": "number",
    "title": "Budget",
    "description": "Total budget available for this decision process",
    "minimum": 0,
}

SIMPLE_VOTING = {
    "id": "simple",
    "version": "1.0.0",
    "name": "Simple Voting",
    "description": "Basic approval voting where members vote for multiple proposals.",
    "phases": [
        {
            "id": "submission",
            "name": "Proposal Submission",
            "description": "Members submit proposals for consideration.",
            "rules": {
                "proposals": {"submit": True},
                "voting": {"submit": False},
                "advancement": {"method": "date"},
            },
            "settings": {
                "type": "object",
                "properties": {
                    "budget": _BUDGET_SETTING,
                    "maxProposalsPerMember": {
                        "type": "number",
                        "title": "Maximum Proposals Per Member",
                        "minimum": 1,
                        "default": 3,
                    },
                },
            },
        },
        {
            "id": "review",
            "name": "Review & Shortlist",
            "description": "Reviewers evaluate and shortlist proposals.",
            "rules": {
                "proposals": {"submit": False},
                "voting": {"submit": False},
                "advancement": {"method": "date"},
            },
            "settings": {"type": "object", "properties": {"budget": _BUDGET_SETTING}},
        },
        {
            "id": "voting",
            "name": "Voting",
            "description": "Members vote on shortlisted proposals.",
            "rules": {
                "proposals": {"submit": False},
                "voting": {"submit": True},
                "advancement": {"method": "date"},
            },
            "settings": {
                "type": "object",
                "required": ["maxVotesPerMember"],
                "properties": {
                    "budget": _BUDGET_SETTING,
                    "maxVotesPerMember": {
                        "type": "number",
                        "title": "Maximum Votes Per Member",
                        "minimum": 1,
                        "default": 3,
                    },
                },
            },
        },
        {
            "id": "results",
            "name": "Results",
            "description": "View final results and winning proposals.",
            "rules": {
                "proposals": {"submit": False},
                "voting": {"submit": False},
                "advancement": {"method": "date"},
            },
            "settings": {"type": "object", "properties": {"budget": _BUDGET_SETTING}},
        },
    ],
    "proposalTemplate": SIMPLE_PROPOSAL_TEMPLATE,
}

DECISION_TEMPLATES = {
    "simple": SIMPLE_VOTING,
}


def get_template(template_id: str) -> dict | None:
    """Return a deep copy of a built-in schema so callers may mutate it."""
    template = DECISION_TEMPLATES.get(template_id)
    return copy.deepcopy(template) if template is not None else None
