"""Document status gateway.

The document services (GRN, MI, JO, ...) own their records.  The engine needs
exactly two things from them: the current status of a document (approval
precondition checks) and a way to move a document to a new status (the
``change_status`` action and approval outcomes).

``SqlDocumentGateway`` is the default implementation, backed by the
``document_records`` table.  A deployment that owns real document tables
passes its own ``DocumentGateway`` to ``AutomationEngine``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from wms_workflow.models import db
from wms_workflow.models.document import DocumentRecord

logger = logging.getLogger(__name__)


class DocumentGateway(ABC):
    """Read/write access to document status owned by the document services."""

    @abstractmethod
    def get_current_status(self, document_type: str, document_id: str) -> str | None:
        """Return the document's status, or None when the document is unknown."""

    @abstractmethod
    def set_status(self, document_type: str, document_id: str, status: str) -> bool:
        """Move the document to ``status``.

        Returns:
            True when the status changed, False when it was already there.
        """


class SqlDocumentGateway(DocumentGateway):
    """Default gateway over ``document_records``.

    Unknown documents are created on first ``set_status`` so that events from
    document services that do not mirror into this table still work.
    """

    def get_current_status(self, document_type: str, document_id: str) -> str | None:
        record = DocumentRecord.query.filter_by(
            document_type=document_type, document_id=str(document_id),
        ).first()
        return record.status if record else None

    def set_status(self, document_type: str, document_id: str, status: str) -> bool:
        record = DocumentRecord.query.filter_by(
            document_type=document_type, document_id=str(document_id),
        ).first()
        if record is None:
            record = DocumentRecord(document_type=document_type, document_id=str(document_id))
            db.session.add(record)
        elif record.status == status:
            return False
        previous = record.status
        record.status = status
        db.session.commit()
        logger.info(
            "Document %s/%s status %s → %s", document_type, document_id, previous, status,
            extra={"document_type": document_type, "document_id": str(document_id)},
        )
        return True

    def register(self, document_type: str, document_id: str, status: str = "draft",
                 created_by_id: str | None = None) -> DocumentRecord:
        """Create or reset a document record (seed / tests / mirror hooks)."""
        record = DocumentRecord.query.filter_by(
            document_type=document_type, document_id=str(document_id),
        ).first()
        if record is None:
            record = DocumentRecord(document_type=document_type, document_id=str(document_id),
                                    created_by_id=created_by_id)
            db.session.add(record)
        record.status = status
        db.session.commit()
        return record
