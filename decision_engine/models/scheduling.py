"""
Decision Engine
Background job bookkeeping.

One ScheduledJob row exists per function in the job registry. The row is
created lazily the first time the scheduler sees the job and then holds the
enable switch plus the outcome of the most recent run.
"""

from decision_engine.models import db
from decision_engine.models.decision import _iso, _utcnow


JOB_STATUSES = {"active", "paused", "completed", "failed"}

RUN_OUTCOMES = {"success", "failed", "skipped"}


class ScheduledJob(db.Model):
    """Persisted state of a registered background job."""

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval",
                              comment="interval | cron | once")
    schedule_config = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), default="active")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True)
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def set_enabled(self, enabled):
        self.is_enabled = enabled
        self.status = "active" if enabled else "paused"

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Store the outcome of one execution and bump the counters.

        ``last_error`` keeps the message of the latest failure; a later
        successful run does not clear it.
        """
        if status not in RUN_OUTCOMES:
            raise ValueError(f"Unknown run outcome '{status}'")

        self.run_count = (self.run_count or 0) + 1
        self.last_run_at = _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result

        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        data = {
            column: getattr(self, column)
            for column in (
                "id", "job_name", "description", "schedule_type", "schedule_config",
                "status", "is_enabled", "last_run_status", "last_run_duration_ms",
                "last_run_result", "run_count", "error_count", "last_error",
            )
        }
        data["last_run_at"] = _iso(self.last_run_at)
        data["created_at"] = _iso(self.created_at)
        data["updated_at"] = _iso(self.updated_at)
        return data

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} enabled={self.is_enabled}>"
