"""
Parallel Approval Service: consensus approval over named approvers.

A group nominates N approvers for one level of a document.  Every approver
answers at most once; the group resolves by its mode:

    all:  any rejection → rejected; every approver approved → approved
    any:  first approval → approved; every approver rejected → rejected

``respond`` runs the response insert, the recount and the resolution under a
per-group in-process lock, and resolves with a compare-and-swap on
``status='pending'`` so a second process cannot resolve the same group again.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from wms_workflow.core.exceptions import NotFoundError, StateConflictError, ValidationError
from wms_workflow.models import db
from wms_workflow.models.approval import (
    DECISIONS,
    GROUP_MODES,
    ApprovalChain,
    ParallelApprovalGroup,
    ParallelApprovalResponse,
)
from wms_workflow.models.directory import Employee
from wms_workflow.services.approval_service import doc_label, document_lock_key
from wms_workflow.services.event_bus import SystemEvent
from wms_workflow.services.notification import NotificationService
from wms_workflow.utils.helpers import utc_now
from wms_workflow.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

_DECISION_ALIASES = {"approve": "approved", "reject": "rejected"}


def resolve_status(mode: str, expected: int, approved: int, rejected: int) -> str:
    """Consensus outcome for the counts so far: pending, approved or rejected."""
    if mode == "all":
        if rejected > 0:
            return "rejected"
        if approved >= expected:
            return "approved"
    else:
        if approved > 0:
            return "approved"
        if rejected >= expected:
            return "rejected"
    return "pending"


class ParallelApprovalService:
    def __init__(self, publish=None, locks: KeyedLock | None = None):
        self._publish = publish
        self.locks = locks or KeyedLock()

    def _emit(self, event: SystemEvent) -> None:
        if self._publish is not None:
            self._publish(event)

    @staticmethod
    def _get_group(group_id: int) -> ParallelApprovalGroup:
        group = db.session.get(ParallelApprovalGroup, group_id, populate_existing=True)
        if group is None:
            raise NotFoundError(resource="ParallelApprovalGroup", resource_id=group_id)
        return group

    @staticmethod
    def _pending_group(document_type: str, document_id: str) -> ParallelApprovalGroup | None:
        return ParallelApprovalGroup.query.filter_by(
            document_type=document_type, document_id=document_id, status="pending",
        ).first()

    # ── Create ────────────────────────────────────────────────────────────

    def create_group(self, document_type: str, document_id, level: int, mode: str,
                     approver_ids: list, created_by_id: str | None = None,
                     sla_hours: float | None = None) -> ParallelApprovalGroup:
        """
        Open a consensus group for one approval level of a document.

        Raises:
            ValidationError: bad mode or level, no approvers, or approvers
                missing/inactive in the directory.
            StateConflictError: the document already has an open approval.
        """
        document_id = str(document_id)
        if mode not in GROUP_MODES:
            raise ValidationError("Invalid mode", details={"mode": "mode must be all or any"})
        try:
            level = int(level)
        except (TypeError, ValueError):
            level = 0
        if level < 1:
            raise ValidationError("Invalid level", details={"level": "level must be a positive integer"})
        if sla_hours not in (None, ""):
            try:
                sla_hours = float(sla_hours)
            except (TypeError, ValueError):
                sla_hours = -1.0
            if not math.isfinite(sla_hours) or sla_hours <= 0:
                raise ValidationError("Invalid sla_hours",
                                      details={"sla_hours": "sla_hours must be a positive number"})
        else:
            sla_hours = None

        approvers = list(dict.fromkeys(str(a) for a in (approver_ids or []) if a))
        if not approvers:
            raise ValidationError("At least one approver is required",
                                  details={"approver_ids": "at least one approver is required"})
        found = {
            e.id for e in Employee.query.filter(Employee.id.in_(approvers), Employee.is_active.is_(True)).all()
        }
        missing = [a for a in approvers if a not in found]
        if missing:
            raise ValidationError(f"Approver(s) not found or inactive: {', '.join(missing)}",
                                  details={"approver_ids": missing})

        with self.locks(document_lock_key(document_type, document_id)):
            if self._pending_group(document_type, document_id):
                raise StateConflictError(
                    f"{document_type} {document_id} already has a pending parallel approval group",
                    current_status="pending",
                )
            if ApprovalChain.query.filter_by(
                document_type=document_type, document_id=document_id, status="pending",
            ).first():
                raise StateConflictError(
                    f"{document_type} {document_id} already has an approval in progress",
                    current_status="pending",
                )

            group = ParallelApprovalGroup(
                document_type=document_type,
                document_id=document_id,
                approval_level=level,
                mode=mode,
                status="pending",
                approver_ids=approvers,
                created_by_id=created_by_id,
                sla_due_date=utc_now() + timedelta(hours=sla_hours) if sla_hours else None,
            )
            db.session.add(group)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise StateConflictError(
                    f"{document_type} {document_id} already has a pending parallel approval group",
                    current_status="pending",
                )

        label = doc_label(document_type)
        for approver_id in approvers:
            NotificationService.create(
                title=f"{label} Awaiting Your Approval",
                body=f"You are one of {len(approvers)} approver(s) for {label} {document_id} "
                     f"(level {level}, mode {mode}).",
                recipient_id=approver_id,
                notification_type="approval",
                reference_table=document_type,
                reference_id=document_id,
                dedupe_key=f"parallel-group:{group.id}",
            )
        logger.info(
            "Parallel approval group %s created for %s/%s (mode=%s, %d approver(s))",
            group.id, document_type, document_id, mode, len(approvers),
            extra={"group_id": group.id, "document_type": document_type, "document_id": document_id},
        )
        self._emit(SystemEvent(
            type="approval:parallel_requested",
            entity_type=document_type,
            entity_id=document_id,
            action="parallel_request",
            payload={"groupId": group.id, "documentType": document_type, "documentId": document_id,
                     "level": level, "mode": mode, "approverIds": approvers},
            performed_by_id=created_by_id,
        ))
        return group

    # ── Respond ───────────────────────────────────────────────────────────

    def respond(self, group_id: int, approver_id: str, decision: str,
                comments: str | None = None) -> ParallelApprovalGroup:
        """
        Record one approver's decision and resolve the group when consensus
        is reached.

        Raises:
            NotFoundError: unknown group.
            ValidationError: decision is not approved/rejected.
            StateConflictError: group already resolved, approver not
                nominated, or approver already responded.
        """
        decision = _DECISION_ALIASES.get(decision, decision)
        if decision not in DECISIONS:
            raise ValidationError("Invalid decision",
                                  details={"decision": "decision must be approved or rejected"})
        approver_id = str(approver_id)

        with self.locks(f"parallel-group:{group_id}"):
            group = self._get_group(group_id)
            if group.status != "pending":
                raise StateConflictError(f"Group {group_id} is already resolved ({group.status})",
                                         current_status=group.status)
            if approver_id not in (group.approver_ids or []):
                raise StateConflictError(f"Approver {approver_id} is not nominated on group {group_id}",
                                         current_status=group.status)
            if ParallelApprovalResponse.query.filter_by(group_id=group.id, approver_id=approver_id).first():
                raise StateConflictError(f"Approver {approver_id} has already responded to this group",
                                         current_status=group.status)

            db.session.add(ParallelApprovalResponse(
                group_id=group.id,
                approver_id=approver_id,
                decision=decision,
                comments=comments or None,
            ))
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                raise StateConflictError(f"Approver {approver_id} has already responded to this group")

            event = self._resolve(group)
            db.session.commit()

        logger.info(
            "Parallel group %s: %s %s → group %s", group_id, approver_id, decision, group.status,
            extra={"group_id": group_id, "document_type": group.document_type,
                   "document_id": group.document_id},
        )
        if event is not None:
            self._emit(event)
        return group

    def _resolve(self, group: ParallelApprovalGroup) -> SystemEvent | None:
        """Recount and, when terminal, claim the resolution.  Caller commits."""
        responses = ParallelApprovalResponse.query.filter_by(group_id=group.id).all()
        approved = sum(1 for r in responses if r.decision == "approved")
        rejected = sum(1 for r in responses if r.decision == "rejected")
        status = resolve_status(group.mode, len(group.approver_ids or []), approved, rejected)
        if status == "pending":
            return None

        claimed = ParallelApprovalGroup.query.filter_by(id=group.id, status="pending").update(
            {"status": status, "completed_at": utc_now()},
        )
        if claimed != 1:
            db.session.rollback()
            raise StateConflictError(f"Group {group.id} is already resolved")

        if group.created_by_id:
            label = doc_label(group.document_type)
            NotificationService.create(
                title=f"{label} Parallel Approval {status.title()}",
                body=f"Level {group.approval_level} for {label} {group.document_id} was {status} "
                     f"({approved} approved, {rejected} rejected).",
                recipient_id=group.created_by_id,
                notification_type="approval",
                reference_table=group.document_type,
                reference_id=group.document_id,
                dedupe_key=f"parallel-group:{group.id}:{status}",
            )
        return SystemEvent(
            type="approval:parallel_completed",
            entity_type=group.document_type,
            entity_id=group.document_id,
            action=status,
            payload={"groupId": group.id, "documentType": group.document_type,
                     "documentId": group.document_id, "level": group.approval_level,
                     "status": status},
        )

    def evaluate_group_completion(self, group_id: int) -> ParallelApprovalGroup:
        """Re-run the consensus check; a resolved group is returned unchanged."""
        with self.locks(f"parallel-group:{group_id}"):
            group = self._get_group(group_id)
            if group.status != "pending":
                return group
            event = self._resolve(group)
            db.session.commit()
        if event is not None:
            self._emit(event)
        return group

    # ── Queries ───────────────────────────────────────────────────────────

    @staticmethod
    def get_group_status(document_type: str, document_id) -> list[ParallelApprovalGroup]:
        return (
            ParallelApprovalGroup.query
            .filter_by(document_type=document_type, document_id=str(document_id))
            .order_by(ParallelApprovalGroup.approval_level, ParallelApprovalGroup.id)
            .all()
        )

    @staticmethod
    def get_pending_for_approver(approver_id: str) -> list[ParallelApprovalGroup]:
        """Pending groups that nominate ``approver_id`` and lack their answer."""
        approver_id = str(approver_id)
        answered = {
            r.group_id for r in ParallelApprovalResponse.query.filter_by(approver_id=approver_id).all()
        }
        groups = (
            ParallelApprovalGroup.query.filter_by(status="pending")
            .order_by(ParallelApprovalGroup.created_at.desc(), ParallelApprovalGroup.id.desc())
            .all()
        )
        return [g for g in groups if approver_id in (g.approver_ids or []) and g.id not in answered]
