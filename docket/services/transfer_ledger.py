import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from docket.errors import ConflictError, InvalidArgumentError, NotFoundError
from docket.models.audit import (
    MatterDocumentActivityUserFrom,
    MatterDocumentActivityUserTo,
    SubjectType,
    TransferActivity,
    TransferDirection,
)
from docket.models.matter import Document, Matter, Revision
from docket.models.user import User
from docket.schemas.ledger import TransferRecordRead
from docket.services.activity_catalog import activity_catalog, normalize_activity_name
from docket.services.audit_ledger import LedgerSequence
from docket.services.common import (
    as_utc,
    optional_uuid,
    require_uuid,
    validate_date_range,
)

logger = logging.getLogger(__name__)

TRANSFER_KINDS = ("COPIED", "MOVED")

TRANSFER_MODELS = {
    TransferDirection.from_matter: MatterDocumentActivityUserFrom,
    TransferDirection.to_matter: MatterDocumentActivityUserTo,
}


@dataclass(frozen=True)
class TransferKey:
    document_id: uuid.UUID
    source_matter_id: uuid.UUID
    destination_matter_id: uuid.UUID
    transfer_activity_id: uuid.UUID
    user_id: uuid.UUID
    created_at: datetime
    copied_document_id: uuid.UUID | None = None
    copied_revision_id: uuid.UUID | None = None


def coerce_direction(value) -> TransferDirection:
    if isinstance(value, TransferDirection):
        return value
    if isinstance(value, str):
        try:
            return TransferDirection(value.strip().lower())
        except ValueError:
            pass
    raise InvalidArgumentError(
        "Direction is out of range. Allowed: from, to",
        {"direction": str(value)},
    )


def coerce_transfer_kind(value) -> str:
    kind = normalize_activity_name(str(value or ""))
    if kind not in TRANSFER_KINDS:
        raise InvalidArgumentError(
            f"Invalid transfer activity. Allowed: {list(TRANSFER_KINDS)}"
        )
    return kind


def _load_live_matter(db: Session, matter_id: uuid.UUID, label: str) -> Matter:
    matter = db.get(Matter, matter_id)
    if not matter:
        raise NotFoundError(f"{label} matter not found")
    if matter.is_deleted:
        raise ConflictError(f"{label} matter is deleted")
    return matter


def transfer_statement(
    direction: TransferDirection,
    matter_id: uuid.UUID | None,
    document_id: uuid.UUID | None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> Select:
    model = TRANSFER_MODELS[direction]
    columns = [
        model.matter_id,
        model.document_id,
        model.transfer_activity_id,
        TransferActivity.activity,
        model.user_id,
        model.created_at,
    ]
    if direction is TransferDirection.to_matter:
        columns.append(model.copied_document_id)
    stmt = select(*columns).join(
        TransferActivity, TransferActivity.id == model.transfer_activity_id
    )
    if matter_id is not None:
        stmt = stmt.where(model.matter_id == matter_id)
    if document_id is not None:
        stmt = stmt.where(model.document_id == document_id)
    if since is not None:
        stmt = stmt.where(model.created_at >= since)
    if until is not None:
        stmt = stmt.where(model.created_at <= until)
    return stmt.order_by(model.created_at.asc(), model.matter_id.asc())


def transfer_mapper(direction: TransferDirection) -> Callable:
    def _map(row) -> TransferRecordRead:
        return TransferRecordRead(
            direction=direction.value,
            matter_id=row.matter_id,
            document_id=row.document_id,
            transfer_activity_id=row.transfer_activity_id,
            activity=row.activity,
            user_id=row.user_id,
            created_at=as_utc(row.created_at),
            copied_document_id=getattr(row, "copied_document_id", None),
        )

    return _map


class TransferLedger:
    @staticmethod
    def record_transfer(
        db: Session,
        document_id,
        source_matter_id,
        destination_matter_id,
        kind: str,
        user_id,
        created_at: datetime,
        id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
    ) -> TransferKey:
        """Move or copy a document between matters and record both sides.

        MOVED reassigns the document. COPIED creates a fresh document under the
        destination (same file and content reference, revision 1 only); both
        provenance rows keep pointing at the original document and the To row
        carries the copy's id.
        """
        kind = coerce_transfer_kind(kind)
        doc_uuid = require_uuid(document_id, "document_id")
        source_uuid = require_uuid(source_matter_id, "source_matter_id")
        dest_uuid = require_uuid(destination_matter_id, "destination_matter_id")
        user_uuid = require_uuid(user_id, "user_id")
        if created_at is None:
            raise InvalidArgumentError("created_at is required")
        created_at = as_utc(created_at)
        if source_uuid == dest_uuid:
            raise InvalidArgumentError(
                "Source and destination matter must differ",
                {"matter_id": str(source_uuid)},
            )

        if not db.get(User, user_uuid):
            raise NotFoundError("User not found")
        _load_live_matter(db, source_uuid, "Source")
        _load_live_matter(db, dest_uuid, "Destination")
        document = db.get(Document, doc_uuid)
        if not document:
            raise NotFoundError("Document not found")
        if document.matter_id != source_uuid:
            raise ConflictError(
                "Document does not belong to the source matter",
                {"matter_id": str(document.matter_id)},
            )
        if document.is_deleted:
            raise ConflictError("Deleted documents cannot be transferred")
        if kind == "MOVED" and document.is_checked_out:
            raise ConflictError("Document must be checked in before it is moved")

        activity_id = activity_catalog.resolve_activity(
            db, SubjectType.transfer, kind
        )
        from_key = (source_uuid, doc_uuid, activity_id, user_uuid, created_at)
        to_key = (dest_uuid, doc_uuid, activity_id, user_uuid, created_at)
        if db.get(MatterDocumentActivityUserFrom, from_key) or db.get(
            MatterDocumentActivityUserTo, to_key
        ):
            raise ConflictError("Transfer already recorded")

        copied_document_id = None
        copied_revision_id = None
        if kind == "MOVED":
            document.matter_id = dest_uuid
        else:
            copy = Document(
                id=id_factory(),
                file_name=document.file_name,
                extension=document.extension,
                matter_id=dest_uuid,
                content_ref=document.content_ref,
                is_checked_out=False,
                is_deleted=False,
                creation_date=created_at,
            )
            db.add(copy)
            db.flush()
            revision = Revision(
                id=id_factory(),
                document_id=copy.id,
                revision_number=1,
                creation_date=created_at,
                modification_date=created_at,
                is_deleted=False,
            )
            db.add(revision)
            copied_document_id = copy.id
            copied_revision_id = revision.id

        try:
            db.add(
                MatterDocumentActivityUserFrom(
                    matter_id=source_uuid,
                    document_id=doc_uuid,
                    transfer_activity_id=activity_id,
                    user_id=user_uuid,
                    created_at=created_at,
                )
            )
            db.add(
                MatterDocumentActivityUserTo(
                    matter_id=dest_uuid,
                    document_id=doc_uuid,
                    transfer_activity_id=activity_id,
                    user_id=user_uuid,
                    created_at=created_at,
                    copied_document_id=copied_document_id,
                )
            )
            db.flush()
        except IntegrityError:
            db.rollback()
            raise ConflictError("Transfer already recorded")

        logger.info(
            "Recorded %s of document %s from matter %s to matter %s by user %s",
            kind.lower(),
            doc_uuid,
            source_uuid,
            dest_uuid,
            user_uuid,
        )
        return TransferKey(
            document_id=doc_uuid,
            source_matter_id=source_uuid,
            destination_matter_id=dest_uuid,
            transfer_activity_id=activity_id,
            user_id=user_uuid,
            created_at=created_at,
            copied_document_id=copied_document_id,
            copied_revision_id=copied_revision_id,
        )

    @staticmethod
    def query_by_direction(
        session_factory,
        matter_id,
        document_id,
        direction,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> LedgerSequence:
        direction = coerce_direction(direction)
        matter_uuid = optional_uuid(matter_id, "matter_id")
        doc_uuid = optional_uuid(document_id, "document_id")
        if matter_uuid is None and doc_uuid is None:
            raise InvalidArgumentError(
                "At least one of matter_id or document_id must be provided"
            )
        since, until = validate_date_range(since, until)
        return LedgerSequence(
            session_factory,
            transfer_statement(direction, matter_uuid, doc_uuid, since, until),
            transfer_mapper(direction),
        )


transfer_ledger = TransferLedger()
