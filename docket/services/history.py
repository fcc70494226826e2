from datetime import datetime

from sqlalchemy import select

from docket.errors import InvalidArgumentError, NotFoundError
from docket.models.audit import SubjectType
from docket.models.matter import Document, Matter
from docket.services.audit_ledger import (
    SUBJECT_MODELS,
    LedgerSequence,
    audit_ledger,
)
from docket.services.common import optional_uuid, require_uuid
from docket.services.transfer_ledger import coerce_direction, transfer_ledger


class History:
    """Read-only reconstruction of what happened to matters and documents.

    Every query returns a lazy ``LedgerSequence``; rows are only read when
    the caller iterates, each time in a fresh session.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _resolve_subject(self, subject_id) -> SubjectType:
        # Soft-deleted subjects keep their history.
        with self._session_factory() as db:
            for subject, model in SUBJECT_MODELS.items():
                if db.scalar(select(model.id).where(model.id == subject_id)):
                    return subject
        raise NotFoundError("Subject not found", {"subject_id": str(subject_id)})

    def get_subject_history(
        self,
        subject_id,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> LedgerSequence:
        subject_uuid = require_uuid(subject_id, "subject_id")
        subject = self._resolve_subject(subject_uuid)
        return audit_ledger.query_history(
            self._session_factory, subject, subject_uuid, since, until
        )

    def get_extended_audits(
        self,
        matter_id,
        document_id,
        direction,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> LedgerSequence:
        matter_uuid = optional_uuid(matter_id, "matter_id")
        doc_uuid = optional_uuid(document_id, "document_id")
        if matter_uuid is None and doc_uuid is None:
            raise InvalidArgumentError(
                "At least one of matter_id or document_id must be provided"
            )
        coerce_direction(direction)
        with self._session_factory() as db:
            if matter_uuid is not None and not db.get(Matter, matter_uuid):
                raise InvalidArgumentError(
                    "matter_id does not identify a matter",
                    {"matter_id": str(matter_uuid)},
                )
            if doc_uuid is not None and not db.get(Document, doc_uuid):
                raise InvalidArgumentError(
                    "document_id does not identify a document",
                    {"document_id": str(doc_uuid)},
                )
        return transfer_ledger.query_by_direction(
            self._session_factory, matter_uuid, doc_uuid, direction, since, until
        )

    def derive_checkout_state(self, document_id) -> bool:
        """Checkout state reconstructed from the ledger alone."""
        doc_uuid = require_uuid(document_id, "document_id")
        with self._session_factory() as db:
            if not db.get(Document, doc_uuid):
                raise NotFoundError("Document not found")
            return audit_ledger.checkout_holder(db, doc_uuid) is not None
