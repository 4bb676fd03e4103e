"""
Tests: decision processes and instance lifecycle.

Covers:
    1. Process creation (schema validation, templates)
    2. Instance creation (draft, phase overrides, owner default)
    3. Publish / cancel / delete and their status conflicts
    4. Phase edits (unknown phases, date validation, clearing values)
    5. Manual advancement: next-phase only, advancement conditions, entry times
    6. Compiled template fields
"""

import copy

import pytest

from decision_engine.core.exceptions import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from decision_engine.models import db
from decision_engine.models.decision import DecisionProcessTransition, ProcessInstance
from decision_engine.services import instance_service, proposal_service
from decision_engine.utils.helpers import as_utc, parse_datetime

MANUAL_SCHEMA = {
    "id": "council",
    "name": "Council vote",
    "phases": [
        {"id": "draft-motion", "name": "Draft motion",
         "rules": {"proposals": {"submit": True}, "advancement": {"method": "manual"}}},
        {"id": "debate", "name": "Debate", "rules": {"advancement": {"method": "manual"}}},
        {"id": "decided", "name": "Decided"},
    ],
}


def _manual_instance(admin, publish=True):
    process = instance_service.create_process(
        {"name": "Council", "process_schema": MANUAL_SCHEMA}, admin,
    )
    instance = instance_service.create_instance(process.id, {"name": "Motion 12"}, admin)
    if publish:
        instance_service.publish_instance(instance.id, admin)
    return instance


# ═════════════════════════════════════════════════════════════════════════════
# Processes
# ═════════════════════════════════════════════════════════════════════════════


class TestProcesses:

    def test_create_from_template(self, admin):
        process = instance_service.create_process_from_template("simple", admin)
        assert process.id is not None
        assert process.name == "Simple Voting"
        assert process.created_by == "admin-1"
        assert [p["id"] for p in process.process_schema["phases"]][0] == "submission"

    def test_unknown_template(self, admin):
        with pytest.raises(NotFoundError):
            instance_service.create_process_from_template("ranked", admin)

    def test_name_required(self, admin):
        with pytest.raises(ValidationError) as exc:
            instance_service.create_process({"name": "  ", "process_schema": MANUAL_SCHEMA}, admin)
        assert exc.value.details == {"name": "Name is required"}

    def test_schema_required(self, admin):
        with pytest.raises(ValidationError, match="process_schema"):
            instance_service.create_process({"name": "Empty", "process_schema": {}}, admin)

    def test_legacy_schema_accepted(self, admin):
        legacy = {"states": [{"id": "open"}], "transitions": [], "initialState": "open"}
        process = instance_service.create_process({"name": "Old", "process_schema": legacy}, admin)
        assert process.process_schema == legacy

    def test_viewer_cannot_create(self, viewer):
        with pytest.raises(UnauthorizedError):
            instance_service.create_process({"name": "X", "process_schema": MANUAL_SCHEMA}, viewer)

    def test_get_process(self, simple_process, viewer):
        assert instance_service.get_process(simple_process.id, viewer)["name"] == "City Budget"


# ═════════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateInstance:

    def test_created_as_draft_in_first_phase(self, simple_process, member):
        inst = instance_service.create_instance(simple_process.id, {"name": "Budget 2026"}, member)
        assert inst.status == "draft"
        assert inst.current_state_id == "submission"
        assert inst.instance_data["currentPhaseId"] == "submission"
        assert inst.owner_profile_id == "member-1"
        assert inst.instance_data["proposalTemplate"]["required"] == ["summary", "title"]

    def test_phase_overrides_applied(self, make_instance):
        inst = make_instance(phases=[{"phaseId": "voting", "startDate": "2026-02-15", "settings": {"budget": 100}}])
        voting = inst.instance_data["phases"][2]
        assert voting["startDate"] == "2026-02-15"
        assert voting["settings"] == {"budget": 100}

    def test_unknown_phase_rejected(self, simple_process, admin):
        with pytest.raises(ValidationError) as exc:
            instance_service.create_instance(
                simple_process.id, {"name": "X", "phases": [{"phaseId": "ghost"}]}, admin,
            )
        assert exc.value.details == {"ghost": "Unknown phase 'ghost'"}

    def test_bad_date_rejected(self, simple_process, admin):
        with pytest.raises(ValidationError) as exc:
            instance_service.create_instance(
                simple_process.id,
                {"name": "X", "phases": [{"phaseId": "review", "startDate": "next tuesday"}]},
                admin,
            )
        assert "review.startDate" in exc.value.details

    def test_start_dates_must_follow_phase_order(self, simple_process, admin):
        with pytest.raises(ValidationError) as exc:
            instance_service.create_instance(
                simple_process.id,
                {"name": "X", "phases": [
                    {"phaseId": "review", "startDate": "2026-03-01"},
                    {"phaseId": "voting", "startDate": "2026-02-01"},
                ]},
                admin,
            )
        assert exc.value.details == {
            "voting.startDate": "startDate must not be before the start of phase 'review'",
        }

    def test_undated_phases_skipped_when_ordering(self, make_instance):
        inst = make_instance(phases=[
            {"phaseId": "review", "startDate": "2026-02-01"},
            {"phaseId": "results", "startDate": "2026-02-01"},
        ])
        assert inst.id is not None

    def test_name_required(self, simple_process, admin):
        with pytest.raises(ValidationError):
            instance_service.create_instance(simple_process.id, {"name": ""}, admin)

    def test_unknown_process(self, admin):
        with pytest.raises(NotFoundError):
            instance_service.create_instance(999, {"name": "X"}, admin)

    def test_legacy_process_cannot_host_instances(self, admin):
        legacy = {"states": [{"id": "open"}], "transitions": [], "initialState": "open"}
        process = instance_service.create_process({"name": "Old", "process_schema": legacy}, admin)
        with pytest.raises(ValidationError, match="no phase-based schema"):
            instance_service.create_instance(process.id, {"name": "X"}, admin)

    def test_describe_instance(self, make_instance, viewer):
        inst = make_instance()
        described = instance_service.get_instance(inst.id, viewer)
        assert described["can_submit_proposal"] is True
        assert described["can_vote"] is False
        assert described["is_terminal"] is False


class TestLifecycle:

    def test_publish(self, make_instance, admin):
        inst = make_instance()
        result = instance_service.publish_instance(inst.id, admin)
        assert result["instance"]["status"] == "published"

    def test_publish_twice_conflicts(self, make_instance, admin):
        inst = make_instance(publish=True)
        with pytest.raises(ConflictError):
            instance_service.publish_instance(inst.id, admin)

    def test_publish_requires_admin(self, make_instance, member):
        inst = make_instance()
        with pytest.raises(UnauthorizedError):
            instance_service.publish_instance(inst.id, member)

    def test_cancel(self, make_instance, admin):
        inst = make_instance(publish=True)
        assert instance_service.cancel_instance(inst.id, admin).status == "cancelled"
        with pytest.raises(ConflictError):
            instance_service.cancel_instance(inst.id, admin)

    def test_delete_cascades_transitions(self, make_instance, admin):
        inst = make_instance(phases=[{"phaseId": "review", "startDate": "2026-02-01"}], publish=True)
        instance_id = inst.id
        instance_service.delete_instance(instance_id, admin)
        assert db.session.get(ProcessInstance, instance_id) is None
        assert db.session.query(DecisionProcessTransition).count() == 0

    def test_delete_missing(self, admin):
        with pytest.raises(NotFoundError):
            instance_service.delete_instance(404, admin)


class TestUpdatePhases:

    def test_merge_and_clear(self, make_instance, admin):
        inst = make_instance(phases=[{"phaseId": "review", "startDate": "2026-02-01", "name": "Shortlist"}])
        result = instance_service.update_instance_phases(
            inst.id, [{"phaseId": "review", "startDate": None, "endDate": "2026-02-10"}], admin,
        )
        review = result["instance"]["instance_data"]["phases"][1]
        assert "startDate" not in review
        assert review["endDate"] == "2026-02-10"
        assert review["name"] == "Shortlist"

    def test_edit_cannot_reorder_start_dates(self, make_instance, admin):
        inst = make_instance(phases=[
            {"phaseId": "review", "startDate": "2026-02-01"},
            {"phaseId": "voting", "startDate": "2026-03-01"},
        ])
        with pytest.raises(ValidationError) as exc:
            instance_service.update_instance_phases(
                inst.id, [{"phaseId": "review", "startDate": "2026-04-01"}], admin,
            )
        assert list(exc.value.details) == ["voting.startDate"]
        phases = db.session.get(ProcessInstance, inst.id).instance_data["phases"]
        assert phases[1]["startDate"] == "2026-02-01"

    def test_does_not_move_current_phase(self, make_instance, admin):
        inst = make_instance(publish=True)
        result = instance_service.update_instance_phases(
            inst.id, [{"phaseId": "review", "startDate": "2020-01-01"}], admin,
        )
        assert result["instance"]["current_state_id"] == "submission"

    def test_unknown_phase(self, make_instance, admin):
        inst = make_instance()
        with pytest.raises(ValidationError) as exc:
            instance_service.update_instance_phases(inst.id, [{"phaseId": "ghost"}], admin)
        assert exc.value.details == {"ghost": "Unknown phase 'ghost'"}

    def test_settings_must_be_object(self, make_instance, admin):
        inst = make_instance()
        with pytest.raises(ValidationError) as exc:
            instance_service.update_instance_phases(inst.id, [{"phaseId": "review", "settings": 5}], admin)
        assert exc.value.details == {"review.settings": "settings must be an object"}

    def test_cancelled_instance_locked(self, make_instance, admin):
        inst = make_instance(publish=True)
        instance_service.cancel_instance(inst.id, admin)
        with pytest.raises(ValidationError, match="cancelled"):
            instance_service.update_instance_phases(inst.id, [{"phaseId": "review"}], admin)

    def test_requires_admin(self, make_instance, member):
        inst = make_instance()
        with pytest.raises(UnauthorizedError):
            instance_service.update_instance_phases(inst.id, [], member)


class TestManualAdvance:

    def test_advances_to_next_phase(self, admin):
        inst = _manual_instance(admin)
        advanced = instance_service.manually_advance_instance(inst.id, admin)
        assert advanced.current_state_id == "debate"
        assert advanced.instance_data["currentPhaseId"] == "debate"

        (history,) = db.session.query(DecisionProcessTransition).all()
        assert (history.from_state_id, history.to_state_id) == ("draft-motion", "debate")
        assert history.completed_at is not None

    def test_explicit_next_phase(self, admin):
        inst = _manual_instance(admin)
        advanced = instance_service.manually_advance_instance(inst.id, admin, to_phase_id="debate")
        assert advanced.current_state_id == "debate"

    def test_skipping_a_phase_rejected(self, admin):
        inst = _manual_instance(admin)
        with pytest.raises(ValidationError, match="No transition from 'draft-motion' to 'decided'"):
            instance_service.manually_advance_instance(inst.id, admin, to_phase_id="decided")
        assert db.session.get(ProcessInstance, inst.id).current_state_id == "draft-motion"

    def test_moving_backwards_rejected(self, admin):
        inst = _manual_instance(admin)
        instance_service.manually_advance_instance(inst.id, admin)
        with pytest.raises(ValidationError, match="No transition"):
            instance_service.manually_advance_instance(inst.id, admin, to_phase_id="draft-motion")

    def test_unknown_target(self, admin):
        inst = _manual_instance(admin)
        with pytest.raises(ValidationError):
            instance_service.manually_advance_instance(inst.id, admin, to_phase_id="ghost")

    def test_final_phase_cannot_advance(self, admin):
        inst = _manual_instance(admin)
        instance_service.manually_advance_instance(inst.id, admin)
        instance_service.manually_advance_instance(inst.id, admin)
        # "decided" defaults to manual advancement but has no successor
        with pytest.raises(ValidationError, match="final phase"):
            instance_service.manually_advance_instance(inst.id, admin)

    def test_date_phase_rejected(self, make_instance, admin):
        inst = make_instance(publish=True)
        with pytest.raises(ValidationError, match="advances by date"):
            instance_service.manually_advance_instance(inst.id, admin)

    def test_draft_rejected(self, admin):
        inst = _manual_instance(admin, publish=False)
        with pytest.raises(ValidationError, match="published"):
            instance_service.manually_advance_instance(inst.id, admin)

    def test_phase_entry_times_recorded(self, admin):
        inst = _manual_instance(admin)
        published = db.session.get(ProcessInstance, inst.id)
        assert published.instance_data["phaseData"]["draft-motion"]["enteredAt"]

        advanced = instance_service.manually_advance_instance(inst.id, admin)
        entered = advanced.instance_data["phaseData"]["debate"]["enteredAt"]
        (history,) = db.session.query(DecisionProcessTransition).all()
        assert parse_datetime(entered) == as_utc(history.completed_at)


def _gated_instance(admin, conditions, require_all=True):
    schema = copy.deepcopy(MANUAL_SCHEMA)
    schema["phases"][0]["rules"]["advancement"].update(
        {"conditions": conditions, "requireAll": require_all},
    )
    process = instance_service.create_process({"name": "Gated", "process_schema": schema}, admin)
    instance = instance_service.create_instance(process.id, {"name": "Motion 13"}, admin)
    instance_service.publish_instance(instance.id, admin)
    return instance


class TestAdvancementConditions:

    def test_proposal_count_blocks_until_met(self, admin, member):
        inst = _gated_instance(admin, [{"type": "proposalCount", "operator": "greaterThan", "value": 0}])

        with pytest.raises(ValidationError) as exc:
            instance_service.manually_advance_instance(inst.id, admin)
        assert exc.value.details == {"rule_0": "Proposal count condition not met: greaterThan 0"}
        assert db.session.get(ProcessInstance, inst.id).current_state_id == "draft-motion"

        proposal_service.create_proposal(inst.id, {"title": "Extend library hours"}, member)
        advanced = instance_service.manually_advance_instance(inst.id, admin)
        assert advanced.current_state_id == "debate"

    def test_time_in_phase(self, admin):
        day_ms = 24 * 60 * 60 * 1000
        inst = _gated_instance(admin, [{"type": "time", "operator": "greaterThan", "value": day_ms}])
        with pytest.raises(ValidationError, match="Time condition not met"):
            instance_service.manually_advance_instance(inst.id, admin)

    def test_any_condition_when_not_require_all(self, admin):
        inst = _gated_instance(admin, [
            {"type": "time", "operator": "greaterThan", "value": 10 ** 12},
            {"type": "proposalCount", "operator": "lessThan", "value": 5},
        ], require_all=False)
        assert instance_service.manually_advance_instance(inst.id, admin).current_state_id == "debate"

    def test_available_transitions_report(self, admin, viewer):
        inst = _gated_instance(admin, [{"type": "proposalCount", "operator": "equals", "value": 3}])
        report = instance_service.get_available_transitions(inst.id, viewer)
        assert report["currentPhaseId"] == "draft-motion"
        assert report["canTransition"] is False
        (option,) = report["availableTransitions"]
        assert option["toStateId"] == "debate"
        assert option["transitionName"] == "Debate"
        assert option["failedRules"] == [
            {"ruleId": "rule_0", "errorMessage": "Proposal count condition not met: equals 3"},
        ]

    def test_available_transitions_for_date_phase(self, make_instance, viewer):
        inst = make_instance(publish=True)
        report = instance_service.get_available_transitions(inst.id, viewer)
        (option,) = report["availableTransitions"]
        assert option["toStateId"] == "review"
        assert option["canExecute"] is False
        assert option["failedRules"][0]["ruleId"] == "advancement"


class TestTemplateFields:

    def test_simple_template_fields(self, make_instance, viewer):
        inst = make_instance()
        result = instance_service.get_template_fields(inst.id, viewer)
        assert result["hasTemplate"] is True
        assert [f["key"] for f in result["fields"]] == ["title", "budget", "summary"]

    def test_no_template(self, admin):
        inst = _manual_instance(admin, publish=False)
        result = instance_service.get_template_fields(inst.id, admin)
        assert result == {"hasTemplate": False, "fields": []}
