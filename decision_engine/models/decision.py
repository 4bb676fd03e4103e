"""
Decision Engine
Decision process domain models.

Models:
    - DecisionProcess:            owner of a decision schema (phase-based or legacy state machine)
    - ProcessInstance:            one running execution of a process schema
    - DecisionProcessTransition:  scheduled or historical phase change of an instance
    - Proposal:                   member submission validated against the instance template

Architecture:
    DecisionProcess ──1:N──▶ ProcessInstance ──1:N──▶ DecisionProcessTransition
                                             ──1:N──▶ Proposal

Lifecycle states:
    ProcessInstance:  draft → published → completed  |  draft/published → cancelled
    Proposal:         draft → submitted → under_review → approved | rejected | selected
    Transition:       pending (completed_at NULL) → completed (append-only)

instance_data layout:
    {
        "currentPhaseId": "submission",
        "phases": [{"phaseId", "name", "rules", "startDate", "endDate", "settings"}],
        "proposalTemplate": {...},     # optional
        "config": {...},               # optional
    }
"""

from datetime import datetime, timezone

from decision_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROCESS_STATUSES = {"draft", "published", "completed", "cancelled"}

PROPOSAL_STATUSES = {
    "draft", "submitted", "under_review",
    "approved", "rejected", "selected", "duplicate",
}

# Statuses that only process admins may set on a proposal
ADMIN_PROPOSAL_STATUSES = {"under_review", "approved", "rejected", "selected", "duplicate"}

PROPOSAL_VISIBILITIES = {"visible", "hidden"}

ADVANCEMENT_METHODS = {"manual", "date"}


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class DecisionProcess(db.Model):
    """
    A reusable decision process owned by an organization.

    ``process_schema`` holds either a phase-based DecisionSchemaDefinition or a
    legacy state-machine schema (``states`` / ``transitions`` / ``initialState``)
    that may embed a ``proposalTemplate``.
    """

    __tablename__ = "decision_processes"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    process_schema = db.Column(db.JSON, default=dict,
                               comment="Phase-based or legacy state-machine schema")
    created_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    instances = db.relationship(
        "ProcessInstance", back_populates="process",
        cascade="all, delete-orphan", lazy="dynamic",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "process_schema": self.process_schema,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<DecisionProcess {self.id}: {self.name}>"


class ProcessInstance(db.Model):
    """
    One running execution of a decision schema.

    ``current_state_id`` is a denormalized copy of
    ``instance_data["currentPhaseId"]``; both are written together by
    ``phase_state_machine.advance_instance``.
    """

    __tablename__ = "process_instances"

    id = db.Column(db.Integer, primary_key=True)
    process_id = db.Column(
        db.Integer, db.ForeignKey("decision_processes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, default="")
    owner_profile_id = db.Column(db.String(150), nullable=True, index=True)
    status = db.Column(db.String(20), default="draft", nullable=False, index=True,
                       comment="draft, published, completed, cancelled")
    current_state_id = db.Column(db.String(100), nullable=True,
                                 comment="Mirror of instance_data.currentPhaseId")
    instance_data = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    process = db.relationship("DecisionProcess", back_populates="instances")
    transitions = db.relationship(
        "DecisionProcessTransition", back_populates="process_instance",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="DecisionProcessTransition.scheduled_date",
    )
    proposals = db.relationship(
        "Proposal", back_populates="process_instance",
        cascade="all, delete-orphan", passive_deletes=True, lazy="dynamic",
    )

    @property
    def current_phase_id(self):
        return (self.instance_data or {}).get("currentPhaseId")

    def to_dict(self):
        return {
            "id": self.id,
            "process_id": self.process_id,
            "name": self.name,
            "description": self.description,
            "owner_profile_id": self.owner_profile_id,
            "status": self.status,
            "current_state_id": self.current_state_id,
            "instance_data": self.instance_data,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ProcessInstance {self.id}: {self.name} [{self.status}@{self.current_state_id}]>"


class DecisionProcessTransition(db.Model):
    """
    Scheduled or completed phase change for a process instance.

    A transition is due when ``completed_at`` is NULL and ``scheduled_date``
    has passed. Once ``completed_at`` is set the row is history and is never
    rewritten.
    """

    __tablename__ = "decision_process_transitions"
    __table_args__ = (
        db.Index("ix_transitions_due", "completed_at", "scheduled_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    process_instance_id = db.Column(
        db.Integer, db.ForeignKey("process_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_state_id = db.Column(db.String(100), nullable=False)
    to_state_id = db.Column(db.String(100), nullable=False)
    scheduled_date = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    process_instance = db.relationship("ProcessInstance", back_populates="transitions")

    @property
    def is_completed(self):
        return self.completed_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "process_instance_id": self.process_instance_id,
            "from_state_id": self.from_state_id,
            "to_state_id": self.to_state_id,
            "scheduled_date": _iso(self.scheduled_date),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        state = "done" if self.completed_at else "pending"
        return (
            f"<DecisionProcessTransition {self.id}: "
            f"{self.from_state_id} → {self.to_state_id} [{state}]>"
        )


class Proposal(db.Model):
    """
    A member proposal inside a process instance.

    ``proposal_data`` is stored exactly as written; every read path passes it
    through ``proposal_normalizer.normalize`` before it is validated or shown.
    """

    __tablename__ = "proposals"

    id = db.Column(db.Integer, primary_key=True)
    process_instance_id = db.Column(
        db.Integer, db.ForeignKey("process_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    submitted_by = db.Column(db.String(150), nullable=True, index=True)
    last_edited_by = db.Column(db.String(150), nullable=True)
    status = db.Column(db.String(30), default="draft", nullable=False,
                       comment="draft, submitted, under_review, approved, rejected, selected, duplicate")
    visibility = db.Column(db.String(20), default="visible", nullable=False,
                           comment="visible, hidden")
    proposal_data = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    process_instance = db.relationship("ProcessInstance", back_populates="proposals")

    def to_dict(self, proposal_data=None):
        return {
            "id": self.id,
            "process_instance_id": self.process_instance_id,
            "submitted_by": self.submitted_by,
            "last_edited_by": self.last_edited_by,
            "status": self.status,
            "visibility": self.visibility,
            "proposal_data": proposal_data if proposal_data is not None else self.proposal_data,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Proposal {self.id} [{self.status}/{self.visibility}]>"
