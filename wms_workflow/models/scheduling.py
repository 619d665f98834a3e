"""
Background job registry and outbound mail audit.

Models:
    - ScheduledJob: one row per registered periodic job (interval, pause flag, run history)
    - EmailLog: one row per recipient of a ``send_email`` rule action
"""

from wms_workflow.models import db
from wms_workflow.utils.helpers import isoformat, utc_now

EMAIL_STATUSES = ("queued", "sent", "failed")


class ScheduledJob(db.Model):
    """
    Persisted state of a periodic engine job.

    The job function itself lives in the in-process registry; this row only
    carries what operators change (``interval_seconds``, ``is_enabled``) and
    what the scheduler observed on the last run.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=300)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success | failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_result = db.Column(db.JSON, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    run_count = db.Column(db.Integer, nullable=False, default=0)
    failure_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def status(self) -> str:
        return "active" if self.is_enabled else "paused"

    def record_run(self, *, ok: bool, duration_ms: int, result=None, error=None):
        self.last_run_at = utc_now()
        self.last_run_status = "success" if ok else "failed"
        self.last_run_duration_ms = duration_ms
        self.last_result = result
        self.run_count = (self.run_count or 0) + 1
        if ok:
            self.last_error = None
        else:
            self.failure_count = (self.failure_count or 0) + 1
            self.last_error = error

    def to_dict(self):
        return {
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "is_enabled": self.is_enabled,
            "status": self.status,
            "last_run_at": isoformat(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} every {self.interval_seconds}s [{self.status}]>"


class EmailLog(db.Model):
    """Delivery record of one templated email written by a rule action."""

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    subject = db.Column(db.String(500), nullable=False)
    template_code = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="queued")
    error_message = db.Column(db.Text, nullable=True)

    # Rule run that produced the email
    rule_id = db.Column(db.Integer, nullable=True, index=True)
    event_id = db.Column(db.String(64), nullable=True)
    entity_type = db.Column(db.String(50), nullable=True)
    entity_id = db.Column(db.String(64), nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    def mark(self, status: str, error: str | None = None):
        self.status = status
        self.error_message = error[:1000] if error else None
        if status == "sent":
            self.sent_at = utc_now()

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "subject": self.subject,
            "template_code": self.template_code,
            "status": self.status,
            "error_message": self.error_message,
            "rule_id": self.rule_id,
            "event_id": self.event_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "sent_at": isoformat(self.sent_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.template_code} to {self.recipient_email} [{self.status}]>"
