"""
Notification Service.

Central service for creating and querying in-app notifications.  This is the
invocation contract the ``create_notification`` action and the approval
state machine call; delivery (push, email digests) is handled elsewhere.
"""

import hashlib
import logging
from datetime import datetime, timezone

from sqlalchemy import and_, or_

from wms_workflow.models import db
from wms_workflow.models.directory import Employee
from wms_workflow.models.notification import Notification

logger = logging.getLogger(__name__)


def notification_fingerprint(*parts) -> str:
    """SHA-256 over the identifying parts of a notification."""
    raw = "\x1f".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, body="", recipient_id=None, recipient_role=None,
               notification_type="info", reference_table="", reference_id=None,
               dedupe_key=None):
        """
        Create notifications for one recipient, or fan out to a role.

        ``recipient_role`` resolves to every active employee holding the role;
        when nobody holds it a single role-addressed row is written so the
        notification is not lost.  Each row carries a fingerprint; a row whose
        fingerprint already exists is not written again.

        Returns:
            List of newly created Notification instances (already committed).
        """
        if not recipient_id and not recipient_role:
            raise ValueError("recipient_id or recipient_role is required")

        if recipient_id:
            targets = [(str(recipient_id), recipient_role)]
        else:
            holders = (
                Employee.query.filter_by(system_role=recipient_role, is_active=True)
                .order_by(Employee.id).all()
            )
            targets = [(e.id, recipient_role) for e in holders] or [(None, recipient_role)]

        ref_id = None if reference_id is None else str(reference_id)
        created = []
        for target_id, target_role in targets:
            fingerprint = notification_fingerprint(
                target_id, target_role, title, body, reference_table, ref_id, dedupe_key,
            )
            if Notification.query.filter_by(fingerprint=fingerprint).first():
                logger.debug("Notification deduped for %s/%s: %s", target_id, target_role, title)
                continue
            notif = Notification(
                recipient_id=target_id,
                recipient_role=target_role,
                title=title,
                body=body or "",
                notification_type=notification_type or "info",
                reference_table=reference_table or "",
                reference_id=ref_id,
                fingerprint=fingerprint,
            )
            db.session.add(notif)
            created.append(notif)
        if created:
            db.session.commit()
        return created

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def _recipient_filter(recipient_id):
        employee = db.session.get(Employee, recipient_id)
        clauses = [Notification.recipient_id == recipient_id]
        if employee is not None:
            clauses.append(and_(Notification.recipient_id.is_(None),
                                Notification.recipient_role == employee.system_role))
        return or_(*clauses)

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.

        Includes role-addressed rows for the recipient's role.
        """
        q = Notification.query.filter(NotificationService._recipient_filter(recipient_id))
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()) \
            .offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        """Return count of unread notifications."""
        return Notification.query.filter(
            NotificationService._recipient_filter(recipient_id)
        ).filter_by(is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        """Mark all notifications for a recipient as read."""
        now = datetime.now(timezone.utc)
        items = Notification.query.filter(
            NotificationService._recipient_filter(recipient_id)
        ).filter_by(is_read=False).all()
        for notif in items:
            notif.is_read = True
            notif.read_at = now
        db.session.commit()
        return len(items)
