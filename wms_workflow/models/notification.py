"""
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking

Target of the ``create_notification`` action.  One row per recipient per
event; role-addressed notifications fan out to one row per active employee
holding the role (plus a role-level row when nobody holds it).
"""

from datetime import datetime, timezone

from wms_workflow.models import db
from wms_workflow.utils.helpers import isoformat


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {"info", "warning", "approval", "sla", "system"}


class Notification(db.Model):
    """
    In-app notification entity.

    ``fingerprint`` is the dedupe key: a rule that fires twice for the same
    event produces the same fingerprint and therefore no second row.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.String(64), nullable=True, index=True)
    recipient_role = db.Column(db.String(100), nullable=True, index=True)
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")
    notification_type = db.Column(db.String(30), default="info")

    # Link to source entity
    reference_table = db.Column(db.String(50), default="", comment="mrrv/mirv/jo/approval_steps/...")
    reference_id = db.Column(db.String(64), nullable=True)

    fingerprint = db.Column(db.String(64), nullable=True, index=True,
                            comment="SHA-256 of recipient + content + reference + event id")

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "recipient_role": self.recipient_role,
            "title": self.title,
            "body": self.body,
            "notification_type": self.notification_type,
            "reference_table": self.reference_table,
            "reference_id": self.reference_id,
            "is_read": self.is_read,
            "read_at": isoformat(self.read_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
