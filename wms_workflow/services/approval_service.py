"""
Approval Service: sequential multi-level approval chains.

Lifecycle:
    submit_for_approval  → chain (pending) + step L1 (pending, SLA clock running)
                           document → pending_approval
    process_approval     → approve: next step created (fresh SLA) or chain
                                    approved, document → approved
                           reject:  chain rejected, remaining levels recorded
                                    as skipped, document → rejected

Levels come from ApprovalLevelConfig rows whose amount bracket contains the
submitted amount, ordered by min_amount.  The chain snapshots them at submit
time.

Step transitions are compare-and-swap updates on ``status='pending'`` made
under a per-document in-process lock, so two deciders racing on the same
step get exactly one winner; the loser sees StateConflictError.

Events (published after commit): approval:requested, approval:level_approved,
approval:approved, approval:rejected.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from wms_workflow.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from wms_workflow.models import db
from wms_workflow.models.approval import ApprovalChain, ApprovalLevelConfig, ApprovalStep, ParallelApprovalGroup
from wms_workflow.models.directory import ADMIN_ROLE, DelegationRule, Employee
from wms_workflow.services.event_bus import SystemEvent
from wms_workflow.services.notification import NotificationService
from wms_workflow.utils.helpers import isoformat, utc_now
from wms_workflow.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

PENDING_APPROVAL = "pending_approval"

_ACTIONS = {
    "approve": "approved",
    "approved": "approved",
    "reject": "rejected",
    "rejected": "rejected",
}


def doc_label(document_type: str) -> str:
    return (document_type or "Document").upper()


def document_lock_key(document_type: str, document_id) -> str:
    return f"document:{document_type}:{document_id}"


class ApprovalService:
    def __init__(self, documents, publish=None, locks: KeyedLock | None = None, parallel=None):
        self.documents = documents
        self._publish = publish
        self.locks = locks or KeyedLock()
        self.parallel = parallel

    @staticmethod
    def _event(event_type, document_type, document_id, action, payload, performed_by_id=None) -> SystemEvent:
        return SystemEvent(
            type=event_type, entity_type=document_type, entity_id=str(document_id),
            action=action, payload=payload, performed_by_id=performed_by_id,
        )

    def _emit(self, event: SystemEvent) -> None:
        if self._publish is not None:
            self._publish(event)

    # ── Chain lookup ──────────────────────────────────────────────────────

    @staticmethod
    def get_approval_chain(document_type: str, amount: float) -> list[dict]:
        """Preview the levels a document of this type and amount would go through."""
        rows = (
            ApprovalLevelConfig.query
            .filter(
                ApprovalLevelConfig.document_type == document_type,
                ApprovalLevelConfig.min_amount <= amount,
                or_(ApprovalLevelConfig.max_amount.is_(None), ApprovalLevelConfig.max_amount >= amount),
            )
            .order_by(ApprovalLevelConfig.min_amount, ApprovalLevelConfig.id)
            .all()
        )
        return [
            {"level": i, "approver_role": row.approver_role, "sla_hours": row.sla_hours}
            for i, row in enumerate(rows, start=1)
        ]

    @staticmethod
    def _open_chain(document_type: str, document_id: str) -> ApprovalChain | None:
        return ApprovalChain.query.filter_by(
            document_type=document_type, document_id=document_id, status="pending",
        ).first()

    @staticmethod
    def _latest_chain(document_type: str, document_id: str) -> ApprovalChain | None:
        return (
            ApprovalChain.query
            .filter_by(document_type=document_type, document_id=document_id)
            .order_by(ApprovalChain.id.desc())
            .first()
        )

    # ── Submit ────────────────────────────────────────────────────────────

    def submit_for_approval(self, document_type: str, document_id, amount: float,
                            submitted_by_id: str | None = None) -> dict:
        """
        Open a sequential approval chain for a document.

        Raises:
            ValidationError: no approval level covers the amount.
            StateConflictError: the document already has an open chain or a
                pending parallel group.
        """
        document_id = str(document_id)
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("Invalid amount", details={"amount": "amount must be numeric"})

        levels = self.get_approval_chain(document_type, amount)
        if not levels:
            raise ValidationError(
                f"No approval workflow configured for {document_type} with amount {amount:g}",
                details={"document_type": document_type, "amount": amount},
            )

        with self.locks(document_lock_key(document_type, document_id)):
            if self._open_chain(document_type, document_id):
                raise StateConflictError(
                    f"{document_type} {document_id} already has an approval in progress",
                    current_status="pending",
                )
            if ParallelApprovalGroup.query.filter_by(
                document_type=document_type, document_id=document_id, status="pending",
            ).first():
                raise StateConflictError(
                    f"{document_type} {document_id} has a pending parallel approval group",
                    current_status="pending",
                )

            now = utc_now()
            first = levels[0]
            chain = ApprovalChain(
                document_type=document_type,
                document_id=document_id,
                amount=amount,
                status="pending",
                current_level=1,
                total_levels=len(levels),
                levels=levels,
                submitted_by_id=submitted_by_id,
            )
            db.session.add(chain)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                raise StateConflictError(
                    f"{document_type} {document_id} already has an approval in progress",
                    current_status="pending",
                )
            step = ApprovalStep(
                chain_id=chain.id,
                document_type=document_type,
                document_id=document_id,
                level=1,
                approver_role=first["approver_role"],
                status="pending",
                sla_due_date=now + timedelta(hours=first["sla_hours"]),
            )
            db.session.add(step)
            db.session.commit()

        self.documents.set_status(document_type, document_id, PENDING_APPROVAL)
        self._notify_level(chain, step)

        result = {
            "chain_id": chain.id,
            "level": 1,
            "approver_role": first["approver_role"],
            "sla_hours": first["sla_hours"],
            "sla_due_date": isoformat(step.sla_due_date),
            "total_levels": len(levels),
        }
        logger.info(
            "Approval submitted %s/%s amount=%s → %d level(s), L1 %s",
            document_type, document_id, amount, len(levels), first["approver_role"],
            extra={"document_type": document_type, "document_id": document_id, "chain_id": chain.id},
        )
        self._emit(self._event(
            "approval:requested", document_type, document_id, "submit",
            {
                "chainId": chain.id,
                "amount": amount,
                "level": 1,
                "approverRole": first["approver_role"],
                "slaHours": first["sla_hours"],
                "slaDueDate": result["sla_due_date"],
                "totalLevels": len(levels),
            },
            performed_by_id=submitted_by_id,
        ))
        return result

    # ── Authorization ─────────────────────────────────────────────────────

    @staticmethod
    def _active_delegations(user_id: str, at=None) -> list[DelegationRule]:
        at = at or utc_now()
        rules = (
            DelegationRule.query
            .join(Employee, DelegationRule.delegator_id == Employee.id)
            .filter(
                DelegationRule.delegate_id == user_id,
                DelegationRule.is_active.is_(True),
                Employee.is_active.is_(True),
            )
            .all()
        )
        return [r for r in rules if r.covers(at)]

    def is_authorized_approver(self, user_id: str, required_role: str, document_type: str) -> bool:
        """Own role, admin, or an active delegation from a holder of the role."""
        user = db.session.get(Employee, user_id) if user_id else None
        if user is None or not user.is_active:
            return False
        if user.system_role in (ADMIN_ROLE, required_role):
            return True
        for delegation in self._active_delegations(user_id):
            if delegation.delegator.system_role == required_role and delegation.scope in ("all", document_type):
                logger.info("Delegation active: %s (%s) → %s", delegation.delegator_id, required_role, user_id,
                            extra={"document_type": document_type})
                return True
        return False

    # ── Decide ────────────────────────────────────────────────────────────

    def process_approval(self, document_type: str, document_id, action: str,
                         processed_by_id: str, comments: str | None = None) -> dict:
        """
        Approve or reject the current level of the document's open chain.

        Raises:
            ValidationError: unknown action.
            NotFoundError: the document was never submitted.
            StateConflictError: chain already decided, document not in
                pending_approval, or another decider won the step.
            AuthorizationError: processed_by_id may not act on this level.
        """
        document_id = str(document_id)
        decision = _ACTIONS.get((action or "").lower())
        if decision is None:
            raise ValidationError("Invalid action", details={"action": "action must be approve or reject"})

        with self.locks(document_lock_key(document_type, document_id)):
            chain = self._latest_chain(document_type, document_id)
            if chain is None:
                raise NotFoundError(resource="ApprovalChain", resource_id=f"{document_type}/{document_id}")
            if chain.status != "pending":
                raise StateConflictError(
                    f"Approval for {document_type} {document_id} is already {chain.status}",
                    current_status=chain.status,
                )

            current_status = self.documents.get_current_status(document_type, document_id)
            if current_status != PENDING_APPROVAL:
                raise StateConflictError(
                    f"{document_type} {document_id} is {current_status or 'unknown'}, "
                    f"expected {PENDING_APPROVAL}",
                    current_status=current_status,
                )

            step = ApprovalStep.query.filter_by(
                chain_id=chain.id, level=chain.current_level, status="pending",
            ).first()
            if step is None:
                raise StateConflictError(
                    f"No pending step at level {chain.current_level} for {document_type} {document_id}",
                )

            if not self.is_authorized_approver(processed_by_id, step.approver_role, document_type):
                raise AuthorizationError(
                    f"User {processed_by_id} is not authorized to {action} this document. "
                    f"Required role: {step.approver_role}",
                    required_role=step.approver_role,
                )

            now = utc_now()
            claimed = ApprovalStep.query.filter_by(id=step.id, status="pending").update(
                {"status": decision, "decided_at": now, "decided_by": processed_by_id,
                 "comments": comments},
            )
            if claimed != 1:
                db.session.rollback()
                raise StateConflictError(f"Level {step.level} was already decided", current_status=decision)

            if decision == "approved":
                result, event = self._advance(chain, step, processed_by_id, comments, now)
            else:
                result, event = self._reject(chain, step, processed_by_id, comments, now)

        # outside the lock: subscribers may call back into this document
        self._emit(event)
        return result

    def _advance(self, chain, step, processed_by_id, comments, now) -> tuple[dict, SystemEvent]:
        document_type, document_id = chain.document_type, chain.document_id
        next_level = step.level + 1
        config = chain.level_config(next_level)

        if config is not None:
            next_step = ApprovalStep(
                chain_id=chain.id,
                document_type=document_type,
                document_id=document_id,
                level=next_level,
                approver_role=config["approver_role"],
                status="pending",
                sla_due_date=now + timedelta(hours=config["sla_hours"]),
            )
            chain.current_level = next_level
            db.session.add(next_step)
            db.session.commit()

            self._notify_level(chain, next_step, previous_level=step.level)
            logger.info(
                "Approval %s/%s L%d approved by %s, advancing to L%d",
                document_type, document_id, step.level, processed_by_id, next_level,
                extra={"document_type": document_type, "document_id": document_id,
                       "chain_id": chain.id, "level": step.level},
            )
            event = self._event(
                "approval:level_approved", document_type, document_id, "approve_level",
                {
                    "chainId": chain.id,
                    "approvedLevel": step.level,
                    "nextLevel": next_level,
                    "nextApproverRole": config["approver_role"],
                    "approvedById": processed_by_id,
                    "comments": comments,
                },
                performed_by_id=processed_by_id,
            )
            return {"status": "pending", "chain_id": chain.id, "approved_level": step.level,
                    "next_level": next_level, "next_approver_role": config["approver_role"]}, event

        chain.status = "approved"
        chain.completed_at = now
        db.session.commit()
        self.documents.set_status(document_type, document_id, "approved")

        if chain.submitted_by_id:
            NotificationService.create(
                title=f"{doc_label(document_type)} Approved",
                body=f"Your {doc_label(document_type)} has been fully approved.",
                recipient_id=chain.submitted_by_id,
                notification_type="approval",
                reference_table=document_type,
                reference_id=document_id,
                dedupe_key=f"approval-chain:{chain.id}:approved",
            )
        logger.info(
            "Approval %s/%s fully approved (%d levels) by %s",
            document_type, document_id, chain.total_levels, processed_by_id,
            extra={"document_type": document_type, "document_id": document_id, "chain_id": chain.id},
        )
        event = self._event(
            "approval:approved", document_type, document_id, "approve",
            {"chainId": chain.id, "approvedById": processed_by_id, "comments": comments,
             "totalLevels": chain.total_levels},
            performed_by_id=processed_by_id,
        )
        return {"status": "approved", "chain_id": chain.id, "approved_level": step.level}, event

    def _reject(self, chain, step, processed_by_id, comments, now) -> tuple[dict, SystemEvent]:
        document_type, document_id = chain.document_type, chain.document_id
        for entry in chain.levels or []:
            if entry["level"] > step.level:
                db.session.add(ApprovalStep(
                    chain_id=chain.id,
                    document_type=document_type,
                    document_id=document_id,
                    level=entry["level"],
                    approver_role=entry["approver_role"],
                    status="skipped",
                ))
        chain.status = "rejected"
        chain.completed_at = now
        db.session.commit()
        self.documents.set_status(document_type, document_id, "rejected")

        if chain.submitted_by_id:
            reason = f" Reason: {comments}" if comments else ""
            NotificationService.create(
                title=f"{doc_label(document_type)} Rejected",
                body=f"Your {doc_label(document_type)} was rejected at Level {step.level}.{reason}",
                recipient_id=chain.submitted_by_id,
                notification_type="approval",
                reference_table=document_type,
                reference_id=document_id,
                dedupe_key=f"approval-chain:{chain.id}:rejected",
            )
        logger.info(
            "Approval %s/%s rejected at L%d by %s", document_type, document_id, step.level, processed_by_id,
            extra={"document_type": document_type, "document_id": document_id,
                   "chain_id": chain.id, "level": step.level},
        )
        event = self._event(
            "approval:rejected", document_type, document_id, "reject",
            {"chainId": chain.id, "rejectedById": processed_by_id, "rejectedAtLevel": step.level,
             "reason": comments},
            performed_by_id=processed_by_id,
        )
        return {"status": "rejected", "chain_id": chain.id, "rejected_level": step.level}, event

    def _notify_level(self, chain, step, previous_level=None):
        label = doc_label(chain.document_type)
        if previous_level is None:
            title = f"{label} Pending Approval"
            body = f"{label} {chain.document_id} requires your Level {step.level} approval."
        else:
            title = f"{label} Awaiting L{step.level} Approval"
            body = f"Level {previous_level} approved. Your Level {step.level} approval is required."
        NotificationService.create(
            title=title,
            body=body,
            recipient_role=step.approver_role,
            notification_type="approval",
            reference_table=chain.document_type,
            reference_id=chain.document_id,
            dedupe_key=f"approval-chain:{chain.id}:level:{step.level}",
        )

    # ── Queries ───────────────────────────────────────────────────────────

    @staticmethod
    def get_approval_steps(document_type: str, document_id) -> list[ApprovalStep]:
        return (
            ApprovalStep.query
            .filter_by(document_type=document_type, document_id=str(document_id))
            .order_by(ApprovalStep.chain_id, ApprovalStep.level)
            .all()
        )

    def get_pending_approvals_for_user(self, user_id: str) -> dict:
        """
        Everything ``user_id`` can act on right now.

        Returns:
            {"steps": [...], "parallel_groups": [...]}; steps cover the user's
            own role plus roles delegated to them (admin sees every pending
            step); groups are the ones the user is nominated on and has not
            answered.
        """
        groups = self.parallel.get_pending_for_approver(user_id) if self.parallel else []
        user = db.session.get(Employee, user_id) if user_id else None
        if user is None or not user.is_active:
            return {"steps": [], "parallel_groups": [g.to_dict() for g in groups]}

        q = ApprovalStep.query.filter_by(status="pending")
        if user.system_role != ADMIN_ROLE:
            clauses = [ApprovalStep.approver_role == user.system_role]
            for delegation in self._active_delegations(user_id):
                role = delegation.delegator.system_role
                if delegation.scope == "all":
                    clauses.append(ApprovalStep.approver_role == role)
                else:
                    clauses.append((ApprovalStep.approver_role == role)
                                   & (ApprovalStep.document_type == delegation.scope))
            q = q.filter(or_(*clauses))
        steps = q.order_by(ApprovalStep.created_at.desc(), ApprovalStep.id.desc()).all()
        return {"steps": [s.to_dict() for s in steps], "parallel_groups": [g.to_dict() for g in groups]}
