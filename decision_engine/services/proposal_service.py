"""
Proposal workflow service.

    create (draft) ──▶ update* ──▶ submit ──▶ admin review
                                   │            (under_review / approved /
                                   │             rejected / selected / duplicate)
                                   └─ phase guard + template validation

Rules:
  - Every mutation calls ``assert_access``; edits and deletes are further
    limited to the proposal owner or an admin.
  - Visibility and review statuses are admin-only.
  - Every read path returns normalized proposal data; the stored blob is
    never rewritten by a read.
  - db.session.commit() happens only here.
"""

from __future__ import annotations

import logging
import uuid

from flask import current_app, has_app_context
from sqlalchemy import func, select

from decision_engine.core.exceptions import NotFoundError, UnauthorizedError, ValidationError
from decision_engine.models import db
from decision_engine.models.decision import (
    ADMIN_PROPOSAL_STATUSES,
    PROPOSAL_VISIBILITIES,
    ProcessInstance,
    Proposal,
)
from decision_engine.services import phase_state_machine as psm
from decision_engine.services import proposal_validator
from decision_engine.services.access import Actor, assert_access, assert_owner_or_admin
from decision_engine.services.instance_service import get_instance_or_raise
from decision_engine.services.proposal_normalizer import DEFAULT_CURRENCY, normalize
from decision_engine.services.template_resolver import resolve_proposal_template

logger = logging.getLogger(__name__)


def _default_currency() -> str:
    if has_app_context():
        return current_app.config.get("DEFAULT_CURRENCY", DEFAULT_CURRENCY)
    return DEFAULT_CURRENCY


def _get_proposal_or_raise(proposal_id: int) -> Proposal:
    proposal = db.session.get(Proposal, proposal_id)
    if proposal is None:
        raise NotFoundError(resource="Proposal", resource_id=proposal_id)
    return proposal


def _serialize(proposal: Proposal) -> dict:
    return proposal.to_dict(proposal_data=normalize(proposal.proposal_data, _default_currency()))


def instance_constraints(instance: ProcessInstance) -> proposal_validator.InstanceConstraints:
    """Budget cap from the current phase settings, else the instance config."""
    settings = psm.phase_settings(instance, psm.current_phase_id(instance))
    config = (instance.instance_data or {}).get("config") or {}
    cap = settings.get("budget", config.get("budget") if isinstance(config, dict) else None)
    if isinstance(cap, bool) or not isinstance(cap, (int, float)):
        cap = None
    return proposal_validator.InstanceConstraints(max_budget=cap, currency=_default_currency())


def _validate_against_template(instance: ProcessInstance, proposal_data: dict) -> dict:
    template = resolve_proposal_template(instance)
    return proposal_validator.validate(proposal_data, template, instance_constraints(instance))


# ── Create ───────────────────────────────────────────────────────────────────


def create_proposal(instance_id: int, proposal_data: dict, actor: Actor) -> dict:
    """Create a draft proposal in the instance's current phase."""
    assert_access(actor, "proposal", "create")
    instance = get_instance_or_raise(instance_id)
    if instance.status in ("cancelled", "completed"):
        raise ValidationError(f"Instance is {instance.status}")
    psm.assert_proposals_allowed(instance)

    if not isinstance(proposal_data, dict):
        raise ValidationError("proposal_data must be an object",
                              details={"proposal_data": "Must be an object"})

    settings = psm.phase_settings(instance, psm.current_phase_id(instance))
    limit = settings.get("maxProposalsPerMember")
    if isinstance(limit, (int, float)) and not isinstance(limit, bool) and actor.user_id:
        existing = db.session.execute(
            select(func.count(Proposal.id)).where(
                Proposal.process_instance_id == instance.id,
                Proposal.submitted_by == actor.user_id,
            )
        ).scalar_one()
        if existing >= limit:
            raise ValidationError(
                f"You can submit at most {int(limit)} proposals in this phase",
                details={"proposal": f"Limit of {int(limit)} proposals reached"},
            )

    data = dict(proposal_data)
    if not data.get("collaborationDocId"):
        data["collaborationDocId"] = f"proposal-{uuid.uuid4()}"

    proposal = Proposal(
        process_instance_id=instance.id,
        submitted_by=actor.user_id,
        last_edited_by=actor.user_id,
        status="draft",
        visibility="visible",
        proposal_data=data,
    )
    db.session.add(proposal)
    db.session.commit()
    logger.info("Proposal %s created in instance %s", proposal.id, instance.id,
                extra={"proposal_id": proposal.id, "instance_id": instance.id})
    return _serialize(proposal)


# ── Update ───────────────────────────────────────────────────────────────────


def update_proposal(proposal_id: int, data: dict, actor: Actor) -> dict:
    """Update proposal data, review status or visibility.

    Body keys:
        proposal_data (dict): merged over the stored data. Re-validated when
                              the proposal is no longer a draft.
        status (str):         admin review statuses only.
        visibility (str):     visible | hidden, admin only.
    """
    assert_access(actor, "proposal", "update")
    proposal = _get_proposal_or_raise(proposal_id)
    assert_owner_or_admin(actor, proposal.submitted_by, "proposal")
    instance = proposal.process_instance

    if "visibility" in data:
        if not actor.is_admin:
            raise UnauthorizedError("Only admins can change proposal visibility")
        if data["visibility"] not in PROPOSAL_VISIBILITIES:
            raise ValidationError(
                f"visibility must be one of: {', '.join(sorted(PROPOSAL_VISIBILITIES))}",
                details={"visibility": "Invalid value"},
            )
        proposal.visibility = data["visibility"]

    if "status" in data and data["status"] != proposal.status:
        status = data["status"]
        if status not in ADMIN_PROPOSAL_STATUSES:
            raise ValidationError(
                f"Status '{status}' cannot be set directly",
                details={"status": "Use submit to move a draft forward"},
            )
        if not actor.is_admin:
            raise UnauthorizedError("Only admins can change a proposal's review status")
        if proposal.status == "draft":
            raise ValidationError("Draft proposals must be submitted before review",
                                  details={"status": "Proposal is still a draft"})
        proposal.status = status

    if "proposal_data" in data:
        incoming = data["proposal_data"]
        if not isinstance(incoming, dict):
            raise ValidationError("proposal_data must be an object",
                                  details={"proposal_data": "Must be an object"})
        merged = dict(proposal.proposal_data or {})
        merged.update(incoming)
        if proposal.status != "draft":
            _validate_against_template(instance, merged)
        proposal.proposal_data = merged

    proposal.last_edited_by = actor.user_id
    db.session.commit()
    logger.info("Proposal %s updated by %s", proposal.id, actor.user_id,
                extra={"proposal_id": proposal.id})
    return _serialize(proposal)


def submit_proposal(proposal_id: int, actor: Actor) -> dict:
    """draft → submitted, gated by the phase and the effective template."""
    assert_access(actor, "proposal", "submit")
    proposal = _get_proposal_or_raise(proposal_id)
    assert_owner_or_admin(actor, proposal.submitted_by, "proposal")

    if proposal.status != "draft":
        raise ValidationError(
            "Only draft proposals can be submitted. This proposal has already been submitted.",
            details={"status": proposal.status},
        )

    instance = proposal.process_instance
    psm.assert_proposals_allowed(instance)
    _validate_against_template(instance, proposal.proposal_data or {})

    proposal.status = "submitted"
    proposal.last_edited_by = actor.user_id
    db.session.commit()
    logger.info("Proposal %s submitted", proposal.id,
                extra={"proposal_id": proposal.id, "instance_id": instance.id})
    return _serialize(proposal)


# ── Read ─────────────────────────────────────────────────────────────────────


def get_proposal(proposal_id: int, actor: Actor) -> dict:
    assert_access(actor, "proposal", "read")
    proposal = _get_proposal_or_raise(proposal_id)
    if proposal.visibility == "hidden" and not actor.is_admin:
        raise NotFoundError(resource="Proposal", resource_id=proposal_id)
    return _serialize(proposal)


def list_proposals(instance_id: int, actor: Actor, status: str | None = None) -> list[dict]:
    """Proposals of an instance, oldest first. Hidden ones are admin-only."""
    assert_access(actor, "proposal", "read")
    get_instance_or_raise(instance_id)

    stmt = select(Proposal).where(Proposal.process_instance_id == instance_id)
    if status:
        stmt = stmt.where(Proposal.status == status)
    if not actor.is_admin:
        stmt = stmt.where(Proposal.visibility == "visible")
    rows = db.session.execute(stmt.order_by(Proposal.created_at, Proposal.id)).scalars().all()
    return [_serialize(p) for p in rows]


# ── Delete ───────────────────────────────────────────────────────────────────


def delete_proposal(proposal_id: int, actor: Actor) -> None:
    assert_access(actor, "proposal", "delete")
    proposal = _get_proposal_or_raise(proposal_id)
    assert_owner_or_admin(actor, proposal.submitted_by, "proposal")
    db.session.delete(proposal)
    db.session.commit()
    logger.info("Proposal %s deleted by %s", proposal_id, actor.user_id,
                extra={"proposal_id": proposal_id})
