"""
SLA Monitor: advisory breach detection for pending approvals.

``sweep`` finds pending approval steps and parallel groups whose
``sla_due_date`` has passed and that were not flagged within the dedupe
window, claims each one with a conditional UPDATE on
``sla_breach_notified_at`` and only then emits.  Two sweeps racing over the
same row therefore produce one ``sla:breached`` event.

Breaches never change approval state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_

from wms_workflow.models import db
from wms_workflow.models.approval import ApprovalStep, ParallelApprovalGroup
from wms_workflow.services.approval_service import doc_label
from wms_workflow.services.event_bus import SystemEvent
from wms_workflow.services.notification import NotificationService
from wms_workflow.utils.helpers import as_utc, isoformat, utc_now

logger = logging.getLogger(__name__)


class SlaMonitor:
    def __init__(self, publish=None, *, dedupe_minutes: int = 60, escalation_role: str | None = None):
        self._publish = publish
        self.dedupe_window = timedelta(minutes=dedupe_minutes)
        self.escalation_role = escalation_role

    def sweep(self, now: datetime | None = None) -> dict:
        """Flag overdue approvals.

        Returns:
            {"steps_breached": n, "groups_breached": n, "events": [...]}
        """
        now = as_utc(now) or utc_now()
        cutoff = now - self.dedupe_window
        summary = {"checked_at": now.isoformat(), "steps_breached": 0, "groups_breached": 0, "events": []}

        steps = ApprovalStep.query.filter(
            ApprovalStep.status == "pending",
            ApprovalStep.sla_due_date.isnot(None),
            ApprovalStep.sla_due_date < now,
            or_(ApprovalStep.sla_breach_notified_at.is_(None),
                ApprovalStep.sla_breach_notified_at < cutoff),
        ).order_by(ApprovalStep.sla_due_date).all()

        for step in steps:
            if not self._claim(ApprovalStep, step.id, step.sla_breach_notified_at, now):
                continue
            payload = {
                "kind": "step",
                "documentType": step.document_type,
                "documentId": step.document_id,
                "level": step.level,
                "slaDueDate": isoformat(step.sla_due_date),
                "approverRole": step.approver_role,
            }
            label = doc_label(step.document_type)
            NotificationService.create(
                title=f"SLA Breached: {label}",
                body=f"{label} {step.document_id} has exceeded its SLA deadline. "
                     f"Requires {step.approver_role} approval.",
                recipient_role=step.approver_role,
                notification_type="sla_breach",
                reference_table=step.document_type,
                reference_id=step.document_id,
                dedupe_key=f"sla:step:{step.id}:{now.isoformat()}",
            )
            self._breached(payload, now, summary)
            summary["steps_breached"] += 1

        groups = ParallelApprovalGroup.query.filter(
            ParallelApprovalGroup.status == "pending",
            ParallelApprovalGroup.sla_due_date.isnot(None),
            ParallelApprovalGroup.sla_due_date < now,
            or_(ParallelApprovalGroup.sla_breach_notified_at.is_(None),
                ParallelApprovalGroup.sla_breach_notified_at < cutoff),
        ).order_by(ParallelApprovalGroup.sla_due_date).all()

        for group in groups:
            if not self._claim(ParallelApprovalGroup, group.id, group.sla_breach_notified_at, now):
                continue
            payload = {
                "kind": "parallel_group",
                "groupId": group.id,
                "documentType": group.document_type,
                "documentId": group.document_id,
                "level": group.approval_level,
                "slaDueDate": isoformat(group.sla_due_date),
            }
            answered = {r.approver_id for r in group.responses}
            label = doc_label(group.document_type)
            for approver_id in group.approver_ids or []:
                if approver_id in answered:
                    continue
                NotificationService.create(
                    title=f"SLA Breached: {label}",
                    body=f"{label} {group.document_id} is waiting on your approval past its SLA deadline.",
                    recipient_id=approver_id,
                    notification_type="sla_breach",
                    reference_table=group.document_type,
                    reference_id=group.document_id,
                    dedupe_key=f"sla:group:{group.id}:{now.isoformat()}",
                )
            self._breached(payload, now, summary)
            summary["groups_breached"] += 1

        if summary["events"]:
            logger.info("SLA sweep: %d step(s), %d group(s) breached",
                        summary["steps_breached"], summary["groups_breached"],
                        extra={"job_name": "sla_breach_sweep"})
        return summary

    @staticmethod
    def _claim(model, row_id: int, seen_value, now: datetime) -> bool:
        """Compare-and-swap ``sla_breach_notified_at`` from the value we read."""
        q = model.query.filter(model.id == row_id, model.status == "pending")
        if seen_value is None:
            q = q.filter(model.sla_breach_notified_at.is_(None))
        else:
            q = q.filter(model.sla_breach_notified_at == seen_value)
        claimed = q.update({"sla_breach_notified_at": now}, synchronize_session=False)
        db.session.commit()
        return claimed == 1

    def _breached(self, payload: dict, now: datetime, summary: dict) -> None:
        if self.escalation_role:
            label = doc_label(payload["documentType"])
            NotificationService.create(
                title=f"SLA Escalation: {label} {payload['documentId']}",
                body=f"Level {payload['level']} approval for {label} {payload['documentId']} "
                     f"was due {payload['slaDueDate']}.",
                recipient_role=self.escalation_role,
                notification_type="sla_breach",
                reference_table=payload["documentType"],
                reference_id=payload["documentId"],
                dedupe_key=f"sla-escalation:{payload['kind']}:{payload['documentId']}:{now.isoformat()}",
            )
        logger.warning(
            "SLA breach: %s %s L%s (due %s)", payload["documentType"], payload["documentId"],
            payload["level"], payload["slaDueDate"],
            extra={"document_type": payload["documentType"], "document_id": payload["documentId"],
                   "level": payload["level"]},
        )
        summary["events"].append(payload)
        if self._publish is not None:
            self._publish(SystemEvent(
                type="sla:breached",
                entity_type=payload["documentType"],
                entity_id=payload["documentId"],
                action="sla_breach",
                payload=payload,
            ))
