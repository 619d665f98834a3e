"""
Approval state-machine models.

Models:
    - ApprovalLevelConfig: amount-bracket → approver role + SLA hours
    - ApprovalChain: one sequential approval track per document submission
    - ApprovalStep: one level of a chain (pending → approved|rejected|skipped)
    - ParallelApprovalGroup: consensus level (mode all|any) over named approvers
    - ParallelApprovalResponse: one decision per approver per group

Owned and mutated exclusively by ApprovalService / ParallelApprovalService.
Status transitions on steps and groups are compare-and-swap updates on
``status='pending'`` so two concurrent deciders cannot both win.
"""

from datetime import datetime, timezone

from wms_workflow.models import db
from wms_workflow.utils.helpers import isoformat

# ── Constants ────────────────────────────────────────────────────────────────

CHAIN_STATUSES = {"pending", "approved", "rejected"}
STEP_STATUSES = {"pending", "approved", "rejected", "skipped"}
GROUP_MODES = {"all", "any"}
GROUP_STATUSES = {"pending", "approved", "rejected"}
DECISIONS = {"approved", "rejected"}


class ApprovalLevelConfig(db.Model):
    """
    Configured approval level for a document type and amount bracket.

    Every row whose [min_amount, max_amount] bracket contains the submitted
    amount becomes one level of the chain, ordered by min_amount ascending.
    ``max_amount`` NULL means open-ended.
    """

    __tablename__ = "approval_level_configs"

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(50), nullable=False, index=True)
    min_amount = db.Column(db.Float, nullable=False, default=0)
    max_amount = db.Column(db.Float, nullable=True)
    approver_role = db.Column(db.String(100), nullable=False)
    sla_hours = db.Column(db.Integer, nullable=False, default=24)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "document_type": self.document_type,
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "approver_role": self.approver_role,
            "sla_hours": self.sla_hours,
        }

    def __repr__(self):
        return f"<ApprovalLevelConfig {self.document_type} {self.min_amount}-{self.max_amount} → {self.approver_role}>"


class ApprovalChain(db.Model):
    """
    Sequential approval track for one document submission.

    A document has at most one ``pending`` chain.  ``levels`` snapshots the
    configured levels at submit time so later config edits do not reshape an
    in-flight chain.
    """

    __tablename__ = "approval_chains"

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(50), nullable=False)
    document_id = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.Float, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending, approved, rejected")
    current_level = db.Column(db.Integer, nullable=False, default=1)
    total_levels = db.Column(db.Integer, nullable=False, default=1)
    levels = db.Column(db.JSON, default=list,
                       comment="Snapshot: [{level, approver_role, sla_hours}]")
    submitted_by_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    steps = db.relationship(
        "ApprovalStep", back_populates="chain", lazy="select",
        order_by="ApprovalStep.level",
    )

    __table_args__ = (
        db.Index("ix_approval_chain_document", "document_type", "document_id"),
        # at most one open chain per document, across processes
        db.Index("uq_approval_chain_pending_document", "document_type", "document_id", unique=True,
                 sqlite_where=db.text("status = 'pending'"),
                 postgresql_where=db.text("status = 'pending'")),
    )

    def level_config(self, level: int) -> dict | None:
        for entry in self.levels or []:
            if entry.get("level") == level:
                return entry
        return None

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "amount": self.amount,
            "status": self.status,
            "current_level": self.current_level,
            "total_levels": self.total_levels,
            "levels": self.levels or [],
            "submitted_by_id": self.submitted_by_id,
            "created_at": isoformat(self.created_at),
            "completed_at": isoformat(self.completed_at),
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<ApprovalChain {self.id}: {self.document_type}/{self.document_id} {self.status}>"


class ApprovalStep(db.Model):
    """
    One level of a sequential chain.

    Only one step per chain is ``pending`` at a time; the next step is created
    when the current one is approved.
    """

    __tablename__ = "approval_steps"

    id = db.Column(db.Integer, primary_key=True)
    chain_id = db.Column(db.Integer, db.ForeignKey("approval_chains.id"), nullable=False, index=True)
    document_type = db.Column(db.String(50), nullable=False)
    document_id = db.Column(db.String(64), nullable=False)
    level = db.Column(db.Integer, nullable=False)
    approver_role = db.Column(db.String(100), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True,
                       comment="pending, approved, rejected, skipped")

    sla_due_date = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    sla_breach_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decided_by = db.Column(db.String(64), nullable=True)
    comments = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    chain = db.relationship("ApprovalChain", back_populates="steps")

    __table_args__ = (
        db.UniqueConstraint("chain_id", "level", name="uq_approval_step_chain_level"),
        db.Index("ix_approval_step_document", "document_type", "document_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "chain_id": self.chain_id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "level": self.level,
            "approver_role": self.approver_role,
            "status": self.status,
            "sla_due_date": isoformat(self.sla_due_date),
            "sla_breach_notified_at": isoformat(self.sla_breach_notified_at),
            "decided_at": isoformat(self.decided_at),
            "decided_by": self.decided_by,
            "comments": self.comments,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalStep {self.document_type}/{self.document_id} L{self.level} {self.status}>"


class ParallelApprovalGroup(db.Model):
    """
    Consensus approval level.

    mode=all: approved when every nominated approver approved; any rejection
    resolves the group as rejected.
    mode=any: first approval resolves as approved; rejected only when every
    nominated approver rejected.
    """

    __tablename__ = "parallel_approval_groups"

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(50), nullable=False)
    document_id = db.Column(db.String(64), nullable=False)
    approval_level = db.Column(db.Integer, nullable=False, default=1)
    mode = db.Column(db.String(10), nullable=False, default="all", comment="all, any")
    status = db.Column(db.String(20), nullable=False, default="pending", index=True,
                       comment="pending, approved, rejected")
    approver_ids = db.Column(db.JSON, default=list, comment="Nominated approver ids")
    created_by_id = db.Column(db.String(64), nullable=True)

    sla_due_date = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    sla_breach_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    responses = db.relationship(
        "ParallelApprovalResponse", back_populates="group", lazy="select",
        order_by="ParallelApprovalResponse.decided_at",
    )

    __table_args__ = (
        db.Index("ix_parallel_group_document", "document_type", "document_id"),
        db.Index("uq_parallel_group_pending_document", "document_type", "document_id", unique=True,
                 sqlite_where=db.text("status = 'pending'"),
                 postgresql_where=db.text("status = 'pending'")),
    )

    def to_dict(self, include_responses=True):
        d = {
            "id": self.id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "approval_level": self.approval_level,
            "mode": self.mode,
            "status": self.status,
            "approver_ids": self.approver_ids or [],
            "created_by_id": self.created_by_id,
            "sla_due_date": isoformat(self.sla_due_date),
            "created_at": isoformat(self.created_at),
            "completed_at": isoformat(self.completed_at),
        }
        if include_responses:
            d["responses"] = [r.to_dict() for r in self.responses]
        return d

    def __repr__(self):
        return f"<ParallelApprovalGroup {self.id}: {self.document_type}/{self.document_id} {self.mode} {self.status}>"


class ParallelApprovalResponse(db.Model):
    """One decision per approver per group; never updated after insert."""

    __tablename__ = "parallel_approval_responses"

    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey("parallel_approval_groups.id"), nullable=False,
                         index=True)
    approver_id = db.Column(db.String(64), nullable=False)
    decision = db.Column(db.String(20), nullable=False, comment="approved, rejected")
    comments = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    group = db.relationship("ParallelApprovalGroup", back_populates="responses")

    __table_args__ = (
        db.UniqueConstraint("group_id", "approver_id", name="uq_parallel_response_approver"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "group_id": self.group_id,
            "approver_id": self.approver_id,
            "decision": self.decision,
            "comments": self.comments,
            "decided_at": isoformat(self.decided_at),
        }

    def __repr__(self):
        return f"<ParallelApprovalResponse group={self.group_id} {self.approver_id}={self.decision}>"
