"""
Manual advancement rules.

A phase that advances manually may declare conditions under
``rules.advancement``:

    "advancement": {
        "method": "manual",
        "requireAll": true,
        "conditions": [
            {"type": "proposalCount", "operator": "greaterThan", "value": 2},
            {"type": "time", "operator": "greaterThan", "value": 86400000},
            {"type": "customField", "field": "quorum", "operator": "equals", "value": true}
        ]
    }

Condition types:
    time          milliseconds since the instance entered the current phase
    proposalCount proposals in the instance (hidden ones included)
    customField   ``instance_data["fieldValues"][field]`` compared to ``value``

Operators are ``equals``, ``greaterThan`` and ``lessThan``; anything else
fails. ``participationCount`` and ``approvalRate`` depend on recorded votes,
which this engine does not store, so they always fail with an explanatory
message. A condition that cannot be evaluated counts as failed; it never
raises.

The only transition available from a phase is the one to the next phase.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, select

from decision_engine.models import db
from decision_engine.models.decision import Proposal
from decision_engine.services import phase_state_machine as psm

logger = logging.getLogger(__name__)

_OPERATORS = {
    "equals": lambda actual, expected: actual == expected,
    "greaterThan": lambda actual, expected: actual > expected,
    "lessThan": lambda actual, expected: actual < expected,
}

UNSUPPORTED_CONDITIONS = {"participationCount", "approvalRate"}


@dataclass
class FailedRule:
    rule_id: str
    error_message: str

    def to_dict(self) -> dict:
        return {"ruleId": self.rule_id, "errorMessage": self.error_message}


@dataclass
class AvailableTransition:
    to_state_id: str
    transition_name: str
    failed_rules: list[FailedRule] = field(default_factory=list)
    can_execute: bool = True

    def to_dict(self) -> dict:
        return {
            "toStateId": self.to_state_id,
            "transitionName": self.transition_name,
            "canExecute": self.can_execute,
            "failedRules": [r.to_dict() for r in self.failed_rules],
        }


def _compare(operator, actual, expected) -> bool:
    check = _OPERATORS.get(operator)
    if check is None:
        return False
    try:
        return bool(check(actual, expected))
    except TypeError:
        return False


def _proposal_count(instance) -> int:
    return db.session.execute(
        select(func.count(Proposal.id)).where(Proposal.process_instance_id == instance.id)
    ).scalar_one()


def _time_in_phase_ms(instance, now: datetime) -> float | None:
    entered = psm.phase_entered_at(instance)
    if entered is None:
        return None
    return (now - entered).total_seconds() * 1000


def _describe(condition: dict) -> str:
    kind = condition.get("type")
    operator, value = condition.get("operator"), condition.get("value")
    if kind == "time":
        return f"Time condition not met: {operator} {value}ms"
    if kind == "proposalCount":
        return f"Proposal count condition not met: {operator} {value}"
    if kind == "customField":
        return f"Custom field condition not met: {condition.get('field')} {operator} {value}"
    if kind in UNSUPPORTED_CONDITIONS:
        return f"Condition type '{kind}' requires vote data and cannot be evaluated"
    return f"Unknown condition type '{kind}'"


def condition_passes(instance, condition: dict, now: datetime) -> bool:
    kind = condition.get("type")
    operator = condition.get("operator")

    if kind == "time":
        elapsed = _time_in_phase_ms(instance, now)
        if elapsed is None:
            return False
        try:
            limit = float(condition.get("value"))
        except (TypeError, ValueError):
            return False
        if operator == "equals":
            return abs(elapsed - limit) < 60_000
        return _compare(operator, elapsed, limit)

    if kind == "proposalCount":
        try:
            expected = float(condition.get("value"))
        except (TypeError, ValueError):
            return False
        return _compare(operator, _proposal_count(instance), expected)

    if kind == "customField":
        name = condition.get("field")
        if not name:
            return False
        values = (instance.instance_data or {}).get("fieldValues") or {}
        actual, expected = values.get(name), condition.get("value")
        if operator != "equals" and not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in (actual, expected)
        ):
            return False
        return _compare(operator, actual, expected)

    return False


def evaluate_conditions(instance, conditions, require_all: bool = True,
                        now: datetime | None = None) -> list[FailedRule]:
    """Return the failed rules; an empty list means the transition may run.

    With ``require_all`` false, failures are reported only when no condition
    passes.
    """
    if not conditions:
        return []
    now = now or datetime.now(timezone.utc)

    failed, passed = [], 0
    for index, condition in enumerate(conditions):
        if condition_passes(instance, condition, now):
            passed += 1
        else:
            failed.append(FailedRule(rule_id=f"rule_{index}", error_message=_describe(condition)))

    if require_all:
        return failed
    return [] if passed else failed


def available_transitions(instance, now: datetime | None = None) -> list[AvailableTransition]:
    """Transitions out of the instance's current phase, with rule results.

    Empty for the final phase. A date-advanced phase lists its successor as
    not executable by hand.
    """
    current = psm.current_phase_id(instance)
    target = psm.next_phase_id(instance, current) if current else None
    if target is None:
        return []

    rules = psm.phase_rules(instance, current)
    option = AvailableTransition(to_state_id=target, transition_name=psm.phase_name(instance, target))
    if rules.advancement_method != "manual":
        option.failed_rules = [FailedRule(
            rule_id="advancement",
            error_message=f"Phase '{current}' advances by date and cannot be advanced manually",
        )]
    else:
        option.failed_rules = evaluate_conditions(
            instance, rules.advancement_conditions, rules.advancement_require_all, now,
        )
    option.can_execute = not option.failed_rules
    return [option]
