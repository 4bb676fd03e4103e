"""
Tests: Decision Process API (/api/v1/decisions).

Covers:
    1. Health check and app-level error handlers
    2. Process + instance lifecycle over HTTP
    3. Proposal create / submit / review flow
    4. Error mapping (422 / 403 / 404 / 409 / 400)
    5. Transition processor endpoint

Roles come from the X-Role header (auth is disabled in the testing config);
the acting user from X-User.
"""

import pytest

BASE = "/api/v1/decisions"

MEMBER = {"X-Role": "editor", "X-User": "member-1"}
VIEWER = {"X-Role": "viewer", "X-User": "viewer-1"}


def _create_process(client):
    res = client.post(f"{BASE}/processes/from-template", json={"template_id": "simple", "name": "Parks"})
    assert res.status_code == 201
    return res.get_json()


def _create_instance(client, phases=None):
    process = _create_process(client)
    res = client.post(
        f"{BASE}/processes/{process['id']}/instances",
        json={"name": "Parks 2026", "phases": phases or []},
    )
    assert res.status_code == 201
    return res.get_json()


def _published_instance(client, phases=None):
    inst = _create_instance(client, phases)
    res = client.post(f"{BASE}/instances/{inst['id']}/publish")
    assert res.status_code == 200
    return res.get_json()["instance"]


def _create_proposal(client, instance_id, data=None):
    res = client.post(
        f"{BASE}/instances/{instance_id}/proposals",
        json={"proposal_data": data or {"title": "Skate park", "summary": "Concrete bowl", "budget": 900}},
        headers=MEMBER,
    )
    assert res.status_code == 201
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════════
# App level
# ═════════════════════════════════════════════════════════════════════════════


class TestAppLevel:

    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok", "app": "Decision Engine"}

    def test_unknown_route(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nothing-here"

    def test_method_not_allowed(self, client):
        res = client.delete(f"{BASE}/templates")
        assert res.status_code == 405

    def test_non_json_body_rejected(self, client):
        res = client.post(f"{BASE}/processes", data="name=x", content_type="text/plain")
        assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════════
# Processes & instances
# ═════════════════════════════════════════════════════════════════════════════


class TestProcessAPI:

    def test_list_templates(self, client):
        res = client.get(f"{BASE}/templates", headers=VIEWER)
        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] == 1
        assert [p["id"] for p in body["items"][0]["phases"]] == ["submission", "review", "voting", "results"]

    def test_create_from_template(self, client):
        process = _create_process(client)
        assert process["name"] == "Parks"
        res = client.get(f"{BASE}/processes/{process['id']}", headers=VIEWER)
        assert res.status_code == 200

    def test_template_id_required(self, client):
        res = client.post(f"{BASE}/processes/from-template", json={})
        assert res.status_code == 400

    def test_unknown_template(self, client):
        res = client.post(f"{BASE}/processes/from-template", json={"template_id": "ranked"})
        assert res.status_code == 404

    def test_invalid_process(self, client):
        res = client.post(f"{BASE}/processes", json={"name": "", "process_schema": {}})
        assert res.status_code == 422
        assert "name" in res.get_json()["details"]

    def test_viewer_cannot_create(self, client):
        res = client.post(f"{BASE}/processes/from-template", json={"template_id": "simple"}, headers=VIEWER)
        assert res.status_code == 403

    def test_missing_process(self, client):
        assert client.get(f"{BASE}/processes/999").status_code == 404


class TestInstanceAPI:

    def test_create_instance(self, client):
        inst = _create_instance(client)
        assert inst["status"] == "draft"
        assert inst["current_state_id"] == "submission"
        assert inst["can_submit_proposal"] is True

    def test_publish_schedules_transitions(self, client):
        inst = _published_instance(client, [{"phaseId": "review", "startDate": "2099-01-01T00:00:00Z"}])
        res = client.get(f"{BASE}/instances/{inst['id']}/transitions", headers=VIEWER)
        body = res.get_json()
        assert body["total"] == 1
        assert body["items"][0]["to_state_id"] == "review"
        assert body["items"][0]["completed_at"] is None

    def test_republish_conflicts(self, client):
        inst = _published_instance(client)
        res = client.post(f"{BASE}/instances/{inst['id']}/publish")
        assert res.status_code == 409

    def test_publish_requires_admin(self, client):
        inst = _create_instance(client)
        res = client.post(f"{BASE}/instances/{inst['id']}/publish", headers=MEMBER)
        assert res.status_code == 403

    def test_update_phases(self, client):
        inst = _published_instance(client)
        res = client.put(
            f"{BASE}/instances/{inst['id']}/phases",
            json={"phases": [{"phaseId": "review", "startDate": "2099-02-01T00:00:00Z"}]},
        )
        assert res.status_code == 200
        assert res.get_json()["transitions"] == {"created": 1, "updated": 0, "deleted": 0}

    def test_update_phases_requires_phases(self, client):
        inst = _create_instance(client)
        res = client.put(f"{BASE}/instances/{inst['id']}/phases", json={})
        assert res.status_code == 400

    def test_update_unknown_phase(self, client):
        inst = _create_instance(client)
        res = client.put(f"{BASE}/instances/{inst['id']}/phases", json={"phases": [{"phaseId": "ghost"}]})
        assert res.status_code == 422
        assert res.get_json()["details"] == {"ghost": "Unknown phase 'ghost'"}

    def test_cancel_then_cancel_again(self, client):
        inst = _published_instance(client)
        res = client.post(f"{BASE}/instances/{inst['id']}/cancel")
        assert res.status_code == 200
        assert res.get_json()["status"] == "cancelled"
        assert client.post(f"{BASE}/instances/{inst['id']}/cancel").status_code == 409

    def test_manual_advance_on_date_phase(self, client):
        inst = _published_instance(client)
        res = client.post(f"{BASE}/instances/{inst['id']}/advance", json={})
        assert res.status_code == 422

    def test_available_transitions(self, client):
        inst = _published_instance(client)
        res = client.get(f"{BASE}/instances/{inst['id']}/transitions/available", headers=VIEWER)
        assert res.status_code == 200
        body = res.get_json()
        assert body["currentPhaseId"] == "submission"
        assert body["canTransition"] is False
        assert body["availableTransitions"][0]["toStateId"] == "review"
        assert body["availableTransitions"][0]["transitionName"] == "Review & Shortlist"

    def test_out_of_order_start_dates(self, client):
        res = client.post(
            f"{BASE}/processes/{_create_process(client)['id']}/instances",
            json={"name": "Backwards", "phases": [
                {"phaseId": "review", "startDate": "2099-03-01T00:00:00Z"},
                {"phaseId": "voting", "startDate": "2099-02-01T00:00:00Z"},
            ]},
        )
        assert res.status_code == 422
        assert "voting.startDate" in res.get_json()["details"]

    def test_template_fields(self, client):
        inst = _create_instance(client)
        res = client.get(f"{BASE}/instances/{inst['id']}/template-fields", headers=VIEWER)
        assert res.status_code == 200
        assert [f["key"] for f in res.get_json()["fields"]] == ["title", "budget", "summary"]

    def test_delete_instance(self, client):
        inst = _create_instance(client)
        res = client.delete(f"{BASE}/instances/{inst['id']}")
        assert res.status_code == 200
        assert client.get(f"{BASE}/instances/{inst['id']}").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Proposals
# ═════════════════════════════════════════════════════════════════════════════


class TestProposalAPI:

    def test_create_and_get(self, client):
        inst = _published_instance(client)
        proposal = _create_proposal(client, inst["id"])
        assert proposal["status"] == "draft"

        res = client.get(f"{BASE}/proposals/{proposal['id']}", headers=VIEWER)
        assert res.status_code == 200
        assert res.get_json()["proposal_data"]["budget"] == {"amount": 900, "currency": "USD"}

    def test_submit(self, client):
        inst = _published_instance(client)
        proposal = _create_proposal(client, inst["id"])
        res = client.post(f"{BASE}/proposals/{proposal['id']}/submit", headers=MEMBER)
        assert res.status_code == 200
        assert res.get_json()["status"] == "submitted"

    def test_submit_invalid_returns_field_errors(self, client):
        inst = _published_instance(client)
        proposal = _create_proposal(client, inst["id"], {"title": "No summary"})
        res = client.post(f"{BASE}/proposals/{proposal['id']}/submit", headers=MEMBER)
        assert res.status_code == 422
        assert res.get_json()["details"] == {"summary": "Proposal summary is required"}

    def test_other_member_cannot_edit(self, client):
        inst = _published_instance(client)
        proposal = _create_proposal(client, inst["id"])
        res = client.put(
            f"{BASE}/proposals/{proposal['id']}",
            json={"proposal_data": {"title": "Hijacked"}},
            headers={"X-Role": "editor", "X-User": "member-2"},
        )
        assert res.status_code == 403

    def test_hidden_proposal_is_not_found_for_viewers(self, client):
        inst = _published_instance(client)
        proposal = _create_proposal(client, inst["id"])
        res = client.put(f"{BASE}/proposals/{proposal['id']}", json={"visibility": "hidden"})
        assert res.status_code == 200

        assert client.get(f"{BASE}/proposals/{proposal['id']}", headers=VIEWER).status_code == 404
        listed = client.get(f"{BASE}/instances/{inst['id']}/proposals", headers=VIEWER).get_json()
        assert listed["total"] == 0

    def test_list_by_status(self, client):
        inst = _published_instance(client)
        first = _create_proposal(client, inst["id"])
        _create_proposal(client, inst["id"])
        client.post(f"{BASE}/proposals/{first['id']}/submit", headers=MEMBER)

        res = client.get(f"{BASE}/instances/{inst['id']}/proposals?status=submitted", headers=VIEWER)
        assert [p["id"] for p in res.get_json()["items"]] == [first["id"]]

    def test_delete(self, client):
        inst = _published_instance(client)
        proposal = _create_proposal(client, inst["id"])
        res = client.delete(f"{BASE}/proposals/{proposal['id']}", headers=MEMBER)
        assert res.status_code == 200
        assert client.get(f"{BASE}/proposals/{proposal['id']}").status_code == 404

    def test_proposal_for_missing_instance(self, client):
        res = client.post(f"{BASE}/instances/999/proposals", json={"proposal_data": {"title": "X"}}, headers=MEMBER)
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Transition processor
# ═════════════════════════════════════════════════════════════════════════════


class TestTransitionProcessorAPI:

    def test_process_due_transitions(self, client):
        inst = _published_instance(client, [
            {"phaseId": "review", "startDate": "2020-01-01T00:00:00Z"},
            {"phaseId": "voting", "startDate": "2020-02-01T00:00:00Z"},
            {"phaseId": "results", "startDate": "2099-01-01T00:00:00Z"},
        ])

        res = client.post(f"{BASE}/transitions/process")

        assert res.status_code == 200
        assert res.get_json() == {"processed": 2, "failed": 0, "skipped": 0, "errors": []}
        body = client.get(f"{BASE}/instances/{inst['id']}").get_json()
        assert body["current_state_id"] == "voting"
        assert body["instance_data"]["currentPhaseId"] == "voting"
        assert body["can_vote"] is True

    @pytest.mark.parametrize("role", ["editor", "viewer"])
    def test_requires_admin(self, client, role):
        res = client.post(f"{BASE}/transitions/process", headers={"X-Role": role})
        assert res.status_code == 403
