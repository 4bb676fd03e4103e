"""
Scheduled phase transitions.

Two responsibilities:

1. ``sync_instance_transitions`` keeps the transition table in line with an
   instance's phase dates. A date-advanced phase with a successor gets one
   pending transition ``phase → next`` scheduled at the successor's
   ``startDate``. Completed transitions are history and are never touched.

2. ``process_due_transitions`` is the unattended batch entry point
   (``flask process-transitions``, scheduler job, admin endpoint). It runs in
   three separable stages:

       scan   due transitions of published instances          (one query)
       plan   group per instance, walk the phase chain from the
              instance's current phase (date order breaks ties) (pure)
       apply  one transaction per transition: lock instance,
              conditionally mark complete, advance phase, commit

   A transition marked complete by a concurrent run matches no row in the
   conditional UPDATE and is skipped. So is a transition that does not leave
   the instance's current phase; it stays pending, so a phase is never
   skipped and an instance never moves backwards. A failing transition is
   rolled back, recorded in the result and stops that instance's remaining
   transitions; other instances continue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import groupby

from sqlalchemy import select, update

from decision_engine.core.exceptions import ValidationError
from decision_engine.models import db
from decision_engine.models.decision import DecisionProcessTransition, ProcessInstance
from decision_engine.services import phase_state_machine as psm
from decision_engine.utils.helpers import as_utc, parse_datetime

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════
# Transition sync
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ExpectedTransition:
    from_state_id: str
    to_state_id: str
    scheduled_date: datetime | None


def expected_transitions(instance: ProcessInstance) -> list[ExpectedTransition]:
    """Transitions implied by the instance's phases and their dates.

    ``scheduled_date`` is None when the successor phase has no start date
    yet; such a pair keeps whatever pending row it already has.
    """
    phases = (instance.instance_data or {}).get("phases") or []
    if not phases:
        raise ValidationError(
            "Process instance must have at least one phase configured",
            details={"phases": "At least one phase is required"},
        )

    expected = []
    for current, nxt in zip(phases, phases[1:]):
        rules = psm.phase_rules(instance, current.get("phaseId"))
        if rules.advancement_method != "date":
            continue
        expected.append(ExpectedTransition(
            from_state_id=current["phaseId"],
            to_state_id=nxt["phaseId"],
            scheduled_date=parse_datetime(nxt.get("startDate")),
        ))
    return expected


def sync_instance_transitions(instance: ProcessInstance) -> dict:
    """Create, reschedule or delete pending transitions for ``instance``.

    Does not commit; the calling service owns the transaction.

    Returns:
        {"created": int, "updated": int, "deleted": int}
    """
    result = {"created": 0, "updated": 0, "deleted": 0}
    existing = db.session.execute(
        select(DecisionProcessTransition).where(
            DecisionProcessTransition.process_instance_id == instance.id
        )
    ).scalars().all()
    by_pair = {(t.from_state_id, t.to_state_id): t for t in existing}

    wanted = expected_transitions(instance)
    wanted_pairs = {(e.from_state_id, e.to_state_id) for e in wanted}

    for exp in wanted:
        row = by_pair.get((exp.from_state_id, exp.to_state_id))
        if exp.scheduled_date is None:
            continue
        if row is None:
            db.session.add(DecisionProcessTransition(
                process_instance_id=instance.id,
                from_state_id=exp.from_state_id,
                to_state_id=exp.to_state_id,
                scheduled_date=exp.scheduled_date,
            ))
            result["created"] += 1
        elif row.completed_at is None and as_utc(row.scheduled_date) != exp.scheduled_date:
            row.scheduled_date = exp.scheduled_date
            result["updated"] += 1

    for pair, row in by_pair.items():
        if pair not in wanted_pairs and row.completed_at is None:
            db.session.delete(row)
            result["deleted"] += 1

    if any(result.values()):
        logger.info(
            "Transitions synced for instance %s: %s", instance.id, result,
            extra={"instance_id": instance.id},
        )
    return result


def list_transitions(instance_id: int) -> list[dict]:
    rows = db.session.execute(
        select(DecisionProcessTransition)
        .where(DecisionProcessTransition.process_instance_id == instance_id)
        .order_by(DecisionProcessTransition.scheduled_date, DecisionProcessTransition.id)
    ).scalars().all()
    return [r.to_dict() for r in rows]


# ═════════════════════════════════════════════════════════════════════════
# Due transition processing
# ═════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class DueTransition:
    id: int
    process_instance_id: int
    from_state_id: str
    to_state_id: str
    scheduled_date: datetime
    instance_phase_id: str | None = None


@dataclass
class TransitionFailure:
    transition_id: int
    process_instance_id: int
    error: str

    def to_dict(self) -> dict:
        return {
            "transitionId": self.transition_id,
            "processInstanceId": self.process_instance_id,
            "error": self.error,
        }


@dataclass
class ProcessTransitionsResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[TransitionFailure] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
        }


def scan_due_transitions(now: datetime) -> list[DueTransition]:
    """Uncompleted transitions scheduled at or before ``now`` on published instances."""
    rows = db.session.execute(
        select(
            DecisionProcessTransition.id,
            DecisionProcessTransition.process_instance_id,
            DecisionProcessTransition.from_state_id,
            DecisionProcessTransition.to_state_id,
            DecisionProcessTransition.scheduled_date,
            ProcessInstance.current_state_id,
        )
        .join(ProcessInstance, ProcessInstance.id == DecisionProcessTransition.process_instance_id)
        .where(
            DecisionProcessTransition.completed_at.is_(None),
            DecisionProcessTransition.scheduled_date <= now,
            ProcessInstance.status == "published",
        )
        .order_by(DecisionProcessTransition.scheduled_date, DecisionProcessTransition.id)
    ).all()
    return [DueTransition(*row) for row in rows]


def _chain_order(transitions: list[DueTransition], start_phase: str | None) -> list[DueTransition]:
    pending = sorted(transitions, key=lambda t: (as_utc(t.scheduled_date), t.id))
    ordered = []
    phase = start_phase
    while pending:
        step = next((t for t in pending if t.from_state_id == phase), pending[0])
        pending.remove(step)
        ordered.append(step)
        phase = step.to_state_id
    return ordered


def plan_transitions(due: list[DueTransition]) -> dict[int, list[DueTransition]]:
    """Group due transitions per instance in application order.

    Each group follows the phase chain starting at the instance's current
    phase; transitions that do not continue the chain run in scheduled order.
    """
    ordered = sorted(due, key=lambda t: t.process_instance_id)
    plan = {}
    for instance_id, group in groupby(ordered, key=lambda t: t.process_instance_id):
        group = list(group)
        plan[instance_id] = _chain_order(group, group[0].instance_phase_id)
    return plan


def apply_transition(due: DueTransition, now: datetime) -> bool:
    """Apply one due transition in its own transaction.

    Returns:
        True when applied, False when skipped: already completed, instance
        no longer published, or the instance is not in the transition's
        ``from_state_id`` phase. A skipped mismatched transition stays
        pending and is retried once the instance reaches that phase.

    Raises:
        ValidationError: target phase does not exist for the instance.
    """
    instance = db.session.execute(
        select(ProcessInstance)
        .where(ProcessInstance.id == due.process_instance_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if instance is None or instance.status != "published":
        db.session.rollback()
        return False

    current = psm.current_phase_id(instance)
    if current != due.from_state_id:
        db.session.rollback()
        logger.warning(
            "Transition %s leaves phase %s but instance %s is in %s, leaving it pending",
            due.id, due.from_state_id, due.process_instance_id, current,
            extra={"transition_id": due.id, "instance_id": due.process_instance_id},
        )
        return False

    marked = db.session.execute(
        update(DecisionProcessTransition)
        .where(
            DecisionProcessTransition.id == due.id,
            DecisionProcessTransition.completed_at.is_(None),
        )
        .values(completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if marked.rowcount == 0:
        db.session.rollback()
        logger.info(
            "Transition %s already completed, skipping", due.id,
            extra={"transition_id": due.id, "instance_id": due.process_instance_id},
        )
        return False

    psm.advance_instance(instance, due.to_state_id, entered_at=now)
    db.session.commit()

    if psm.is_terminal(instance, due.to_state_id):
        logger.info(
            "Instance %s reached final phase %s", instance.id, due.to_state_id,
            extra={"instance_id": instance.id},
        )
    return True


def process_due_transitions(now: datetime | None = None) -> ProcessTransitionsResult:
    """Advance every published instance through its due transitions.

    Never raises for per-transition failures; only a failing scan query
    propagates.
    """
    now = as_utc(now) if now else _utcnow()
    result = ProcessTransitionsResult()

    plan = plan_transitions(scan_due_transitions(now))
    db.session.rollback()  # release the read transaction before per-row locks

    for instance_id, transitions in plan.items():
        for due in transitions:
            try:
                applied = apply_transition(due, now)
            except Exception as exc:
                db.session.rollback()
                result.failed += 1
                result.errors.append(TransitionFailure(
                    transition_id=due.id,
                    process_instance_id=instance_id,
                    error=str(exc),
                ))
                logger.exception(
                    "Failed to process transition %s for instance %s", due.id, instance_id,
                    extra={"transition_id": due.id, "instance_id": instance_id},
                )
                break
            if applied:
                result.processed += 1
            else:
                result.skipped += 1

    logger.info(
        "Processed due transitions: processed=%d failed=%d skipped=%d",
        result.processed, result.failed, result.skipped,
    )
    return result
