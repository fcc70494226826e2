import logging
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from docket.errors import (
    ConflictError,
    FatalLedgerError,
    InvalidArgumentError,
    NotFoundError,
)
from docket.models.audit import (
    DocumentActivityUser,
    MatterActivityUser,
    RevisionActivityUser,
    SubjectType,
)
from docket.models.matter import Document, Matter, Revision
from docket.models.user import User
from docket.schemas.ledger import LedgerEntryRead
from docket.services.activity_catalog import CATALOG_MODELS, coerce_subject_type
from docket.services.common import as_utc, require_uuid, validate_date_range

logger = logging.getLogger(__name__)

LEDGER_MODELS = {
    SubjectType.matter: MatterActivityUser,
    SubjectType.document: DocumentActivityUser,
    SubjectType.revision: RevisionActivityUser,
}

SUBJECT_MODELS = {
    SubjectType.matter: Matter,
    SubjectType.document: Document,
    SubjectType.revision: Revision,
}


def subject_column(ledger_model):
    return {
        MatterActivityUser: MatterActivityUser.matter_id,
        DocumentActivityUser: DocumentActivityUser.document_id,
        RevisionActivityUser: RevisionActivityUser.revision_id,
    }[ledger_model]


@dataclass(frozen=True)
class LedgerKey:
    subject_type: SubjectType
    subject_id: uuid.UUID
    activity_id: uuid.UUID
    user_id: uuid.UUID
    created_at: datetime


class LedgerSequence:
    """Lazy, ordered, restartable view over a ledger query.

    Nothing is read until iteration starts, and every iteration re-runs the
    query in its own short-lived session, so the sequence can be replayed.
    Database failures while iterating surface as ``FatalLedgerError``.
    """

    def __init__(self, session_factory, stmt: Select, mapper: Callable):
        self._session_factory = session_factory
        self._stmt = stmt
        self._mapper = mapper

    def __iter__(self) -> Iterator:
        with self._session_factory() as db:
            try:
                rows = db.execute(self._stmt).all()
            except SQLAlchemyError as exc:
                logger.exception("Ledger read failed")
                raise FatalLedgerError("Ledger read failed") from exc
        for row in rows:
            yield self._mapper(row)

    def to_list(self) -> list:
        return list(self)


def _ledger_subject_type(subject_type) -> SubjectType:
    subject = coerce_subject_type(subject_type)
    if subject not in LEDGER_MODELS:
        raise InvalidArgumentError(
            f"{subject.value} activity is recorded in the transfer ledger"
        )
    return subject


def history_statement(
    subject: SubjectType,
    subject_id: uuid.UUID,
    since: datetime | None = None,
    until: datetime | None = None,
) -> Select:
    ledger = LEDGER_MODELS[subject]
    catalog = CATALOG_MODELS[subject]
    subject_col = subject_column(ledger)
    stmt = (
        select(
            subject_col.label("subject_id"),
            ledger.activity_id,
            catalog.activity,
            ledger.user_id,
            User.name.label("user_name"),
            ledger.created_at,
        )
        .join(catalog, catalog.id == ledger.activity_id)
        .join(User, User.id == ledger.user_id)
        .where(subject_col == subject_id)
    )
    if since is not None:
        stmt = stmt.where(ledger.created_at >= since)
    if until is not None:
        stmt = stmt.where(ledger.created_at <= until)
    return stmt.order_by(ledger.created_at.asc(), catalog.activity.asc())


def entry_mapper(subject: SubjectType):
    def _map(row) -> LedgerEntryRead:
        return LedgerEntryRead(
            subject_type=subject.value,
            subject_id=row.subject_id,
            activity_id=row.activity_id,
            activity=row.activity,
            user_id=row.user_id,
            user_name=row.user_name,
            created_at=as_utc(row.created_at),
        )

    return _map


class AuditLedger:
    @staticmethod
    def record_activity(
        db: Session,
        subject_type,
        subject_id,
        activity_id,
        user_id,
        created_at: datetime,
    ) -> LedgerKey:
        subject = _ledger_subject_type(subject_type)
        subject_uuid = require_uuid(subject_id, "subject_id")
        activity_uuid = require_uuid(activity_id, "activity_id")
        user_uuid = require_uuid(user_id, "user_id")
        if created_at is None:
            raise InvalidArgumentError("created_at is required")
        created_at = as_utc(created_at)

        if not db.get(SUBJECT_MODELS[subject], subject_uuid):
            raise NotFoundError(f"{subject.value.capitalize()} not found")
        if not db.get(CATALOG_MODELS[subject], activity_uuid):
            raise NotFoundError(f"Activity not found for {subject.value}")
        if not db.get(User, user_uuid):
            raise NotFoundError("User not found")

        ledger = LEDGER_MODELS[subject]
        key = (subject_uuid, activity_uuid, user_uuid, created_at)
        if db.get(ledger, key):
            raise ConflictError(
                f"{subject.value.capitalize()} activity already recorded",
                {"subject_id": str(subject_uuid), "created_at": created_at.isoformat()},
            )

        row = ledger(activity_id=activity_uuid, user_id=user_uuid, created_at=created_at)
        setattr(row, subject_column(ledger).key, subject_uuid)
        try:
            db.add(row)
            db.flush()
        except IntegrityError:
            db.rollback()
            raise ConflictError(
                f"{subject.value.capitalize()} activity already recorded",
                {"subject_id": str(subject_uuid), "created_at": created_at.isoformat()},
            )
        logger.info(
            "Recorded %s activity %s on %s by user %s",
            subject.value,
            activity_uuid,
            subject_uuid,
            user_uuid,
        )
        return LedgerKey(subject, subject_uuid, activity_uuid, user_uuid, created_at)

    @staticmethod
    def count_entries(db: Session, subject_type, subject_id) -> int:
        subject = _ledger_subject_type(subject_type)
        ledger = LEDGER_MODELS[subject]
        return db.scalar(
            select(func.count())
            .select_from(ledger)
            .where(subject_column(ledger) == require_uuid(subject_id, "subject_id"))
        )

    @staticmethod
    def query_history(
        session_factory,
        subject_type,
        subject_id,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> LedgerSequence:
        subject = _ledger_subject_type(subject_type)
        subject_uuid = require_uuid(subject_id, "subject_id")
        since, until = validate_date_range(since, until)
        return LedgerSequence(
            session_factory,
            history_statement(subject, subject_uuid, since, until),
            entry_mapper(subject),
        )

    @staticmethod
    def checkout_holder(db: Session, document_id) -> uuid.UUID | None:
        """User holding the open checkout according to the ledger, if any."""
        doc_uuid = require_uuid(document_id, "document_id")
        catalog = CATALOG_MODELS[SubjectType.document]
        latest = db.execute(
            select(catalog.activity, DocumentActivityUser.user_id)
            .join(catalog, catalog.id == DocumentActivityUser.activity_id)
            .where(DocumentActivityUser.document_id == doc_uuid)
            .where(catalog.activity.in_(("CHECKED_OUT", "CHECKED_IN")))
            .order_by(DocumentActivityUser.created_at.desc())
            .limit(1)
        ).first()
        if latest is None or latest.activity != "CHECKED_OUT":
            return None
        return latest.user_id


audit_ledger = AuditLedger()
