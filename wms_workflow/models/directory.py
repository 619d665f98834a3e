"""
Employee directory snapshot and approval delegation.

Models:
    - Employee: who can be notified and who can approve
    - DelegationRule: temporary hand-over of one employee's approvals
"""

from datetime import datetime, timezone

from wms_workflow.models import db
from wms_workflow.utils.helpers import as_utc, isoformat


ADMIN_ROLE = "admin"


class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.String(64), primary_key=True)
    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    system_role = db.Column(db.String(100), nullable=False, index=True,
                            comment="admin, manager, warehouse_supervisor, finance_user, ...")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "system_role": self.system_role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Employee {self.id}: {self.full_name} ({self.system_role})>"


class DelegationRule(db.Model):
    """
    Delegator hands approvals to a delegate for a date window.

    ``scope`` is ``all`` or a single document type.
    """

    __tablename__ = "delegation_rules"

    id = db.Column(db.Integer, primary_key=True)
    delegator_id = db.Column(db.String(64), db.ForeignKey("employees.id"), nullable=False, index=True)
    delegate_id = db.Column(db.String(64), db.ForeignKey("employees.id"), nullable=False, index=True)
    scope = db.Column(db.String(50), nullable=False, default="all")
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    delegator = db.relationship("Employee", foreign_keys=[delegator_id])

    def covers(self, at: datetime) -> bool:
        return self.is_active and as_utc(self.start_date) <= at <= as_utc(self.end_date)

    def to_dict(self):
        return {
            "id": self.id,
            "delegator_id": self.delegator_id,
            "delegate_id": self.delegate_id,
            "scope": self.scope,
            "start_date": isoformat(self.start_date),
            "end_date": isoformat(self.end_date),
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<DelegationRule {self.delegator_id} → {self.delegate_id} [{self.scope}]>"
