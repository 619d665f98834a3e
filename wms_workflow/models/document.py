"""
Document status record used by the default in-process document gateway.

Deployments that own their document tables wire a different
``DocumentGateway``; this table only carries type, id and status.
"""

from datetime import datetime, timezone

from wms_workflow.models import db
from wms_workflow.utils.helpers import isoformat


class DocumentRecord(db.Model):
    __tablename__ = "document_records"

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(50), nullable=False)
    document_id = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(50), nullable=False, default="draft")
    created_by_id = db.Column(db.String(64), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("document_type", "document_id", name="uq_document_record_key"),
    )

    def to_dict(self):
        return {
            "document_type": self.document_type,
            "document_id": self.document_id,
            "status": self.status,
            "created_by_id": self.created_by_id,
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<DocumentRecord {self.document_type}/{self.document_id} {self.status}>"
