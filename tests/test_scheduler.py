"""
Tests: job registry, SchedulerService and the scheduler API.

Covers:
    1. ScheduledJob bookkeeping (run counters, pause switch)
    2. SchedulerService (registration, run, skip, toggle)
    3. decision_transitions job end to end
    4. /api/v1/scheduler endpoints
"""

from datetime import datetime, timezone

import pytest

from decision_engine.models import db
from decision_engine.models.scheduling import ScheduledJob
from decision_engine.services.scheduler_service import SchedulerService, get_registered_jobs


def _job(name="nightly_cleanup", **overrides):
    job = ScheduledJob(
        job_name=name,
        description="Cleanup",
        schedule_type="interval",
        schedule_config={"minutes": 5},
        **overrides,
    )
    db.session.add(job)
    db.session.flush()
    return job


# ═════════════════════════════════════════════════════════════════════════════
# ScheduledJob
# ═════════════════════════════════════════════════════════════════════════════


class TestScheduledJob:

    def test_defaults(self):
        job = _job()
        assert (job.status, job.is_enabled, job.run_count, job.error_count) == ("active", True, 0, 0)

    def test_successful_run(self):
        job = _job()
        job.record_run(duration_ms=42, result={"processed": 3})
        assert job.run_count == 1
        assert job.error_count == 0
        assert job.last_run_status == "success"
        assert job.last_run_duration_ms == 42
        assert job.last_run_result == {"processed": 3}
        assert job.last_run_at is not None

    def test_failures_accumulate(self):
        job = _job()
        job.record_run(status="failed", error="boom")
        job.record_run(status="failed", error="boom again")
        job.record_run(status="success")
        assert job.run_count == 3
        assert job.error_count == 2
        assert job.last_error == "boom again"

    def test_unknown_outcome_rejected(self):
        with pytest.raises(ValueError):
            _job().record_run(status="exploded")

    def test_set_enabled(self):
        job = _job()
        job.set_enabled(False)
        assert (job.is_enabled, job.status) == (False, "paused")
        job.set_enabled(True)
        assert (job.is_enabled, job.status) == (True, "active")

    def test_serialized(self):
        data = _job(name="serialized").to_dict()
        assert data["job_name"] == "serialized"
        assert data["is_enabled"] is True
        assert data["last_run_at"] is None
        assert data["created_at"] is not None


# ═════════════════════════════════════════════════════════════════════════════
# SchedulerService
# ═════════════════════════════════════════════════════════════════════════════


class TestSchedulerService:

    def test_transition_job_registered(self):
        assert "decision_transitions" in get_registered_jobs()

    def test_ensure_jobs_registered(self, app):
        SchedulerService.init_app(app)
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) >= 1

        job = ScheduledJob.query.filter_by(job_name="decision_transitions").first()
        assert job.status == "active"
        assert job.schedule_config["minutes"] == app.config["TRANSITION_JOB_INTERVAL_MINUTES"]

        assert SchedulerService.ensure_jobs_registered() == []

    def test_run_unknown_job(self, app):
        SchedulerService.init_app(app)
        result = SchedulerService.run_job("unknown_job_xyz")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]

    def test_run_transition_job(self, app, make_instance):
        inst = make_instance(
            publish=True,
            phases=[
                {"phaseId": "review", "startDate": "2020-01-01T00:00:00Z"},
                {"phaseId": "voting", "startDate": "2099-01-01T00:00:00Z"},
            ],
        )
        SchedulerService.init_app(app)

        result = SchedulerService.run_job("decision_transitions")

        assert result["status"] == "success"
        assert result["result"]["processed"] == 1
        assert result["result"]["failed"] == 0
        db.session.expire_all()
        assert db.session.get(type(inst), inst.id).current_state_id == "review"

        status = SchedulerService.get_job_status("decision_transitions")
        assert status["run_count"] == 1
        assert status["last_run_status"] == "success"

    def test_disabled_job_skipped_unless_forced(self, app):
        SchedulerService.init_app(app)
        SchedulerService.toggle_job("decision_transitions", False)

        assert SchedulerService.run_job("decision_transitions")["status"] == "skipped"
        assert SchedulerService.run_job("decision_transitions", force=True)["status"] == "success"

    def test_toggle_job(self, app):
        SchedulerService.init_app(app)
        _job(name="toggle_test")
        db.session.commit()

        result = SchedulerService.toggle_job("toggle_test", False)
        assert result["status"] == "paused"
        assert result["is_enabled"] is False

        result = SchedulerService.toggle_job("toggle_test", True)
        assert result["status"] == "active"

    def test_toggle_nonexistent_job(self, app):
        SchedulerService.init_app(app)
        assert SchedulerService.toggle_job("nonexistent", True) is None

    def test_list_jobs(self, app):
        SchedulerService.init_app(app)
        SchedulerService.ensure_jobs_registered()
        jobs = SchedulerService.list_jobs()
        names = [j["job_name"] for j in jobs]
        assert "decision_transitions" in names
        assert all(j["registered"] is True for j in jobs)


# ═════════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════════


class TestSchedulerAPI:

    def test_list_jobs(self, client):
        res = client.get("/api/v1/scheduler/jobs")
        assert res.status_code == 200
        assert res.get_json()["total"] >= 1

    def test_get_missing_job(self, client):
        res = client.get("/api/v1/scheduler/jobs/nope")
        assert res.status_code == 404

    def test_trigger(self, client):
        res = client.post("/api/v1/scheduler/jobs/decision_transitions/trigger")
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "success"
        assert body["result"] == {"processed": 0, "failed": 0, "skipped": 0, "errors": []}

    def test_trigger_unknown(self, client):
        res = client.post("/api/v1/scheduler/jobs/nope/trigger")
        assert res.status_code == 404

    def test_trigger_requires_admin(self, client):
        res = client.post(
            "/api/v1/scheduler/jobs/decision_transitions/trigger", headers={"X-Role": "editor"},
        )
        assert res.status_code == 403

    def test_toggle(self, client):
        res = client.patch("/api/v1/scheduler/jobs/decision_transitions/toggle", json={"enabled": False})
        assert res.status_code == 200
        assert res.get_json()["is_enabled"] is False

    def test_toggle_requires_enabled(self, client):
        res = client.patch("/api/v1/scheduler/jobs/decision_transitions/toggle", json={})
        assert res.status_code == 400

    def test_job_status_after_trigger(self, client):
        client.post("/api/v1/scheduler/jobs/decision_transitions/trigger")
        res = client.get("/api/v1/scheduler/jobs/decision_transitions")
        assert res.status_code == 200
        last_run = datetime.fromisoformat(res.get_json()["last_run_at"])
        assert last_run.replace(tzinfo=timezone.utc) <= datetime.now(timezone.utc)
