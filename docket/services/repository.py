"""Transactional entry point for every ledger-backed operation.

Each public method runs in its own session: it loads the rows it is about
to change (locked with ``SELECT ... FOR UPDATE`` when row locking is on),
validates the change with the lifecycle guards, mutates the entities,
writes the ledger rows, and commits. Any failure rolls the whole unit
back and comes out as a ``Result`` failure; nothing raises across this
boundary.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from docket.config import settings
from docket.db import SessionLocal
from docket.errors import (
    ConcurrencyConflictError,
    ConflictError,
    FatalLedgerError,
    InvalidArgumentError,
    LedgerError,
    NotFoundError,
)
from docket.models.audit import SubjectType
from docket.models.matter import Document, Matter, MatterStatus, Revision
from docket.models.user import User
from docket.schemas.matter import (
    DocumentCreate,
    DocumentRead,
    MatterCreate,
    MatterRead,
    RevisionCreate,
    RevisionRead,
    UserCreate,
    UserRead,
)
from docket.services.activity_catalog import activity_catalog
from docket.services.audit_ledger import LedgerKey, audit_ledger
from docket.services.common import CancellationToken, UtcClock, require_uuid
from docket.services.history import History
from docket.services.lifecycle import (
    DocumentLifecycle,
    MatterLifecycle,
    Transition,
)
from docket.services.result import Result
from docket.services.transfer_ledger import TransferKey, transfer_ledger

logger = logging.getLogger(__name__)

# SQLSTATEs for serialization failure, deadlock and lock_not_available.
_LOCK_SQLSTATES = {"40001", "40P01", "55P03"}
_LOCK_MESSAGES = ("database is locked", "could not serialize", "deadlock detected")


def _is_lock_failure(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _LOCK_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _LOCK_MESSAGES)


def _checkpoint(cancel: CancellationToken | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


class LedgerRepository:
    def __init__(
        self,
        session_factory=SessionLocal,
        clock=None,
        id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
        lock_rows: bool | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or UtcClock()
        self._id_factory = id_factory
        self._lock_rows = settings.ledger_lock_rows if lock_rows is None else lock_rows
        self.history = History(session_factory)

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        work: Callable[[Session], object],
        cancel: CancellationToken | None = None,
    ) -> Result:
        db = self._session_factory()
        try:
            _checkpoint(cancel)
            value = work(db)
            _checkpoint(cancel)
            db.commit()
            return Result.success(value)
        except LedgerError as exc:
            db.rollback()
            logger.warning("%s rejected (%s): %s", operation, exc.kind.value, exc.message)
            return Result.failure(exc)
        except ValidationError as exc:
            db.rollback()
            logger.warning("%s rejected: invalid payload", operation)
            return Result.failure(
                InvalidArgumentError(
                    "Invalid payload",
                    exc.errors(include_url=False, include_context=False),
                )
            )
        except IntegrityError:
            db.rollback()
            logger.warning("%s lost a write race", operation)
            return Result.failure(
                ConflictError("Write conflicts with an existing record")
            )
        except DBAPIError as exc:
            db.rollback()
            if _is_lock_failure(exc):
                logger.warning("%s lost a row lock", operation)
                return Result.failure(
                    ConcurrencyConflictError("Row is locked by another transaction")
                )
            logger.exception("%s failed", operation)
            return Result.failure(FatalLedgerError("Ledger write failed"))
        except SQLAlchemyError:
            db.rollback()
            logger.exception("%s failed", operation)
            return Result.failure(FatalLedgerError("Ledger write failed"))
        finally:
            db.close()

    def _read(self, operation: str, query: Callable[[], object]) -> Result:
        try:
            return Result.success(query())
        except LedgerError as exc:
            logger.warning("%s rejected (%s): %s", operation, exc.kind.value, exc.message)
            return Result.failure(exc)
        except SQLAlchemyError:
            logger.exception("%s failed", operation)
            return Result.failure(FatalLedgerError("Ledger read failed"))

    def _lock(self, db: Session, model, entity_id: uuid.UUID, label: str):
        stmt = select(model).where(model.id == entity_id)
        if self._lock_rows:
            stmt = stmt.with_for_update()
        entity = db.scalars(stmt).first()
        if not entity:
            raise NotFoundError(f"{label} not found")
        return entity

    def _lock_documents(self, db: Session, matter_id: uuid.UUID) -> list[Document]:
        stmt = (
            select(Document)
            .where(Document.matter_id == matter_id)
            .order_by(Document.id)
        )
        if self._lock_rows:
            stmt = stmt.with_for_update()
        return list(db.scalars(stmt))

    def _lock_document_with_matter(
        self, db: Session, document_id: uuid.UUID
    ) -> tuple[Document, Matter]:
        # Matter first, then document: the same order transfers use.
        matter_id = db.scalar(select(Document.matter_id).where(Document.id == document_id))
        if matter_id is None:
            raise NotFoundError("Document not found")
        matter = self._lock(db, Matter, matter_id, "Matter")
        document = self._lock(db, Document, document_id, "Document")
        if document.matter_id != matter.id:
            raise ConcurrencyConflictError("Document moved while it was being updated")
        return document, matter

    def _require_user(self, db: Session, user_id) -> uuid.UUID:
        user_uuid = require_uuid(user_id, "user_id")
        if not db.get(User, user_uuid):
            raise NotFoundError("User not found")
        return user_uuid

    def _record(
        self,
        db: Session,
        subject: SubjectType,
        subject_id: uuid.UUID,
        activities: Iterable[str],
        user_id: uuid.UUID,
        created_at: datetime,
    ) -> list[LedgerKey]:
        keys = []
        for name in activities:
            activity_id = activity_catalog.resolve_activity(db, subject, name)
            keys.append(
                audit_ledger.record_activity(
                    db, subject, subject_id, activity_id, user_id, created_at
                )
            )
        return keys

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, name: str) -> Result[uuid.UUID]:
        def work(db: Session):
            payload = UserCreate(name=name)
            if db.scalar(select(User.id).where(User.name == payload.name)):
                raise ConflictError("User name already exists", {"name": payload.name})
            user = User(id=self._id_factory(), name=payload.name, created_at=self._clock.now())
            db.add(user)
            db.flush()
            logger.info("Created user %s", user.id)
            return user.id

        return self._run("create_user", work)

    def get_user(self, user_id) -> Result[UserRead]:
        def work(db: Session):
            user = db.get(User, require_uuid(user_id, "user_id"))
            if not user:
                raise NotFoundError("User not found")
            return UserRead.model_validate(user)

        return self._run("get_user", work)

    def seed_catalog(self) -> Result[int]:
        return self._run("seed_catalog", activity_catalog.seed_activity_catalog)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        matter_id,
        user_id,
        file_name: str,
        extension: str,
        content_ref: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> Result[uuid.UUID]:
        def work(db: Session):
            payload = DocumentCreate(
                file_name=file_name, extension=extension, content_ref=content_ref
            )
            user_uuid = self._require_user(db, user_id)
            matter = self._lock(db, Matter, require_uuid(matter_id, "matter_id"), "Matter")
            if matter.is_deleted:
                raise ConflictError("Cannot add documents to a deleted matter")
            _checkpoint(cancel)
            now = self._clock.now()
            document = Document(
                id=self._id_factory(),
                matter_id=matter.id,
                is_checked_out=False,
                is_deleted=False,
                creation_date=now,
                **payload.model_dump(),
            )
            db.add(document)
            db.flush()
            revision = Revision(
                id=self._id_factory(),
                document_id=document.id,
                revision_number=1,
                creation_date=now,
                modification_date=now,
                is_deleted=False,
            )
            db.add(revision)
            db.flush()
            self._record(db, SubjectType.document, document.id, ("CREATED",), user_uuid, now)
            self._record(db, SubjectType.revision, revision.id, ("CREATED",), user_uuid, now)
            return document.id

        return self._run("create_document", work, cancel)

    def _document_transition(
        self,
        operation: str,
        document_id,
        user_id,
        guard: Callable[[Session, Document, uuid.UUID], Transition],
        cancel: CancellationToken | None,
        with_matter: bool = False,
    ) -> Result[None]:
        def work(db: Session):
            user_uuid = self._require_user(db, user_id)
            doc_uuid = require_uuid(document_id, "document_id")
            if with_matter:
                document, _ = self._lock_document_with_matter(db, doc_uuid)
            else:
                document = self._lock(db, Document, doc_uuid, "Document")
            transition = guard(db, document, user_uuid)
            _checkpoint(cancel)
            DocumentLifecycle.apply(document, transition)
            db.flush()
            now = self._clock.now()
            self._record(
                db, SubjectType.document, document.id, transition.activities, user_uuid, now
            )
            logger.info(
                "Document %s %s -> %s by user %s",
                document.id,
                transition.source.value,
                transition.target.value,
                user_uuid,
            )
            return None

        return self._run(operation, work, cancel)

    def check_out_document(
        self, document_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[None]:
        return self._document_transition(
            "check_out_document",
            document_id,
            user_id,
            lambda db, document, user: DocumentLifecycle.check_out(document),
            cancel,
        )

    def check_in_document(
        self, document_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[None]:
        def guard(db: Session, document: Document, user: uuid.UUID) -> Transition:
            holder = audit_ledger.checkout_holder(db, document.id)
            return DocumentLifecycle.check_in(document, user, holder)

        return self._document_transition(
            "check_in_document", document_id, user_id, guard, cancel
        )

    def delete_document(
        self, document_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[None]:
        return self._document_transition(
            "delete_document",
            document_id,
            user_id,
            lambda db, document, user: DocumentLifecycle.delete(document),
            cancel,
            with_matter=True,
        )

    def restore_document(
        self, document_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[None]:
        return self._document_transition(
            "restore_document",
            document_id,
            user_id,
            lambda db, document, user: DocumentLifecycle.restore(document, document.matter),
            cancel,
            with_matter=True,
        )

    def update_document(
        self,
        document_id,
        user_id,
        file_name: str | None = None,
        extension: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> Result[DocumentRead]:
        def work(db: Session):
            user_uuid = self._require_user(db, user_id)
            document, _ = self._lock_document_with_matter(
                db, require_uuid(document_id, "document_id")
            )
            if document.is_deleted:
                raise ConflictError("Deleted documents cannot be updated")
            payload = DocumentCreate(
                file_name=document.file_name if file_name is None else file_name,
                extension=document.extension if extension is None else extension,
                content_ref=document.content_ref,
            )
            _checkpoint(cancel)
            document.file_name = payload.file_name
            document.extension = payload.extension
            db.flush()
            now = self._clock.now()
            self._record(db, SubjectType.document, document.id, ("SAVED",), user_uuid, now)
            logger.info("Updated document %s", document.id)
            return DocumentRead.model_validate(document)

        return self._run("update_document", work, cancel)

    def get_document(self, document_id) -> Result[DocumentRead]:
        def work(db: Session):
            document = db.get(Document, require_uuid(document_id, "document_id"))
            if not document:
                raise NotFoundError("Document not found")
            return DocumentRead.model_validate(document)

        return self._run("get_document", work)

    def _transfer(
        self,
        operation: str,
        kind: str,
        document_id,
        destination_matter_id,
        user_id,
        cancel: CancellationToken | None,
    ) -> Result[TransferKey]:
        def work(db: Session):
            user_uuid = self._require_user(db, user_id)
            doc_uuid = require_uuid(document_id, "document_id")
            dest_uuid = require_uuid(destination_matter_id, "destination_matter_id")
            source_uuid = db.scalar(select(Document.matter_id).where(Document.id == doc_uuid))
            if source_uuid is None:
                raise NotFoundError("Document not found")
            if source_uuid == dest_uuid:
                raise InvalidArgumentError("Source and destination matter must differ")
            # Fixed lock order keeps opposite-direction transfers from deadlocking.
            for matter_uuid in sorted({source_uuid, dest_uuid}):
                self._lock(db, Matter, matter_uuid, "Matter")
            document = self._lock(db, Document, doc_uuid, "Document")
            if document.matter_id != source_uuid:
                raise ConcurrencyConflictError("Document moved while it was being transferred")
            _checkpoint(cancel)
            now = self._clock.now()
            key = transfer_ledger.record_transfer(
                db, doc_uuid, source_uuid, dest_uuid, kind, user_uuid, now, self._id_factory
            )
            if key.copied_document_id is not None:
                self._record(
                    db, SubjectType.document, key.copied_document_id, ("CREATED",), user_uuid, now
                )
                self._record(
                    db, SubjectType.revision, key.copied_revision_id, ("CREATED",), user_uuid, now
                )
            return key

        return self._run(operation, work, cancel)

    def move_document(
        self,
        document_id,
        destination_matter_id,
        user_id,
        cancel: CancellationToken | None = None,
    ) -> Result[None]:
        result = self._transfer(
            "move_document", "MOVED", document_id, destination_matter_id, user_id, cancel
        )
        return Result.success() if result.ok else result

    def copy_document(
        self,
        document_id,
        destination_matter_id,
        user_id,
        cancel: CancellationToken | None = None,
    ) -> Result[uuid.UUID]:
        result = self._transfer(
            "copy_document", "COPIED", document_id, destination_matter_id, user_id, cancel
        )
        return Result.success(result.value.copied_document_id) if result.ok else result

    # ------------------------------------------------------------------
    # Revisions
    # ------------------------------------------------------------------

    def create_revision(
        self,
        document_id,
        user_id,
        revision_number: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> Result[uuid.UUID]:
        def work(db: Session):
            payload = RevisionCreate(revision_number=revision_number)
            user_uuid = self._require_user(db, user_id)
            document = self._lock(
                db, Document, require_uuid(document_id, "document_id"), "Document"
            )
            if document.is_deleted:
                raise ConflictError("Cannot add revisions to a deleted document")
            number = payload.revision_number
            if number is None:
                current = db.scalar(
                    select(func.max(Revision.revision_number)).where(
                        Revision.document_id == document.id
                    )
                )
                number = (current or 0) + 1
            elif db.scalar(
                select(Revision.id).where(
                    Revision.document_id == document.id,
                    Revision.revision_number == number,
                )
            ):
                raise ConflictError(
                    "Revision number already exists",
                    {"revision_number": number},
                )
            _checkpoint(cancel)
            now = self._clock.now()
            revision = Revision(
                id=self._id_factory(),
                document_id=document.id,
                revision_number=number,
                creation_date=now,
                modification_date=now,
                is_deleted=False,
            )
            db.add(revision)
            db.flush()
            self._record(db, SubjectType.revision, revision.id, ("CREATED",), user_uuid, now)
            self._record(db, SubjectType.document, document.id, ("SAVED",), user_uuid, now)
            logger.info("Created revision %d of document %s", number, document.id)
            return revision.id

        return self._run("create_revision", work, cancel)

    def list_revisions(
        self, document_id, include_deleted: bool = False
    ) -> Result[list[RevisionRead]]:
        def work(db: Session):
            doc_uuid = require_uuid(document_id, "document_id")
            if not db.get(Document, doc_uuid):
                raise NotFoundError("Document not found")
            stmt = select(Revision).where(Revision.document_id == doc_uuid)
            if not include_deleted:
                stmt = stmt.where(Revision.is_deleted.is_(False))
            revisions = db.scalars(stmt.order_by(Revision.revision_number)).all()
            return [RevisionRead.model_validate(revision) for revision in revisions]

        return self._run("list_revisions", work)

    def _revision_change(
        self,
        operation: str,
        revision_id,
        user_id,
        apply: Callable[[Revision, Document, datetime], str],
        cancel: CancellationToken | None,
    ) -> Result[None]:
        def work(db: Session):
            user_uuid = self._require_user(db, user_id)
            revision_uuid = require_uuid(revision_id, "revision_id")
            document_uuid = db.scalar(
                select(Revision.document_id).where(Revision.id == revision_uuid)
            )
            if document_uuid is None:
                raise NotFoundError("Revision not found")
            document = self._lock(db, Document, document_uuid, "Document")
            revision = self._lock(db, Revision, revision_uuid, "Revision")
            now = self._clock.now()
            activity = apply(revision, document, now)
            _checkpoint(cancel)
            db.flush()
            self._record(db, SubjectType.revision, revision.id, (activity,), user_uuid, now)
            return None

        return self._run(operation, work, cancel)

    def save_revision(
        self, revision_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[None]:
        def apply(revision: Revision, document: Document, now: datetime) -> str:
            if revision.is_deleted or document.is_deleted:
                raise ConflictError("Deleted revisions cannot be saved")
            revision.modification_date = now
            return "SAVED"

        return self._revision_change("save_revision", revision_id, user_id, apply, cancel)

    def delete_revision(
        self, revision_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[None]:
        def apply(revision: Revision, document: Document, now: datetime) -> str:
            if revision.is_deleted:
                raise ConflictError("Revision is already deleted")
            revision.is_deleted = True
            return "DELETED"

        return self._revision_change("delete_revision", revision_id, user_id, apply, cancel)

    def restore_revision(
        self, revision_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[None]:
        def apply(revision: Revision, document: Document, now: datetime) -> str:
            if not revision.is_deleted:
                raise ConflictError("Revision is not deleted")
            if document.is_deleted:
                raise ConflictError("Cannot restore a revision of a deleted document")
            revision.is_deleted = False
            return "RESTORED"

        return self._revision_change("restore_revision", revision_id, user_id, apply, cancel)

    # ------------------------------------------------------------------
    # Matters
    # ------------------------------------------------------------------

    def create_matter(
        self, description: str, user_id, cancel: CancellationToken | None = None
    ) -> Result[uuid.UUID]:
        def work(db: Session):
            payload = MatterCreate(description=description)
            user_uuid = self._require_user(db, user_id)
            if db.scalar(select(Matter.id).where(Matter.description == payload.description)):
                raise ConflictError(
                    "Matter description already exists",
                    {"description": payload.description},
                )
            _checkpoint(cancel)
            now = self._clock.now()
            matter = Matter(
                id=self._id_factory(),
                description=payload.description,
                status=MatterStatus.active,
                creation_date=now,
            )
            db.add(matter)
            db.flush()
            self._record(db, SubjectType.matter, matter.id, ("CREATED",), user_uuid, now)
            logger.info("Created matter %s", matter.id)
            return matter.id

        return self._run("create_matter", work, cancel)

    def view_matter(
        self, matter_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[MatterRead]:
        def work(db: Session):
            user_uuid = self._require_user(db, user_id)
            matter = db.get(Matter, require_uuid(matter_id, "matter_id"))
            if not matter:
                raise NotFoundError("Matter not found")
            now = self._clock.now()
            self._record(db, SubjectType.matter, matter.id, ("VIEWED",), user_uuid, now)
            return MatterRead.model_validate(matter)

        return self._run("view_matter", work, cancel)

    def update_matter(
        self,
        matter_id,
        user_id,
        description: str,
        cancel: CancellationToken | None = None,
    ) -> Result[MatterRead]:
        def work(db: Session):
            payload = MatterCreate(description=description)
            self._require_user(db, user_id)
            matter = self._lock(db, Matter, require_uuid(matter_id, "matter_id"), "Matter")
            if matter.is_deleted:
                raise ConflictError("Deleted matters cannot be updated")
            taken = db.scalar(
                select(Matter.id).where(
                    Matter.description == payload.description, Matter.id != matter.id
                )
            )
            if taken:
                raise ConflictError(
                    "Matter description already exists",
                    {"description": payload.description},
                )
            _checkpoint(cancel)
            matter.description = payload.description
            db.flush()
            logger.info("Updated matter %s", matter.id)
            return MatterRead.model_validate(matter)

        return self._run("update_matter", work, cancel)

    def get_matter(self, matter_id) -> Result[MatterRead]:
        def work(db: Session):
            matter = db.get(Matter, require_uuid(matter_id, "matter_id"))
            if not matter:
                raise NotFoundError("Matter not found")
            return MatterRead.model_validate(matter)

        return self._run("get_matter", work)

    def _matter_transition(
        self,
        operation: str,
        matter_id,
        user_id,
        target: Callable[[Matter], MatterStatus],
        cancel: CancellationToken | None,
    ) -> Result[MatterStatus]:
        def work(db: Session):
            user_uuid = self._require_user(db, user_id)
            matter = self._lock(db, Matter, require_uuid(matter_id, "matter_id"), "Matter")
            documents = self._lock_documents(db, matter.id)
            transition = MatterLifecycle.transition(matter, target(matter), documents)
            cascade = MatterLifecycle.documents_to_cascade(transition, documents)
            _checkpoint(cancel)
            MatterLifecycle.apply(matter, transition)
            document_transitions = [(d, DocumentLifecycle.delete(d)) for d in cascade]
            for document, document_transition in document_transitions:
                DocumentLifecycle.apply(document, document_transition)
            db.flush()
            now = self._clock.now()
            self._record(db, SubjectType.matter, matter.id, transition.activities, user_uuid, now)
            for document, document_transition in document_transitions:
                self._record(
                    db,
                    SubjectType.document,
                    document.id,
                    document_transition.activities,
                    user_uuid,
                    now,
                )
            logger.info(
                "Matter %s %s -> %s by user %s",
                matter.id,
                transition.source.value,
                transition.target.value,
                user_uuid,
            )
            return transition.target

        return self._run(operation, work, cancel)

    def archive_matter(
        self, matter_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[MatterStatus]:
        return self._matter_transition(
            "archive_matter", matter_id, user_id, MatterLifecycle.archive_target, cancel
        )

    def unarchive_matter(
        self, matter_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[MatterStatus]:
        return self._matter_transition(
            "unarchive_matter", matter_id, user_id, MatterLifecycle.unarchive_target, cancel
        )

    def delete_matter(
        self, matter_id, user_id, cancel: CancellationToken | None = None
    ) -> Result[MatterStatus]:
        return self._matter_transition(
            "delete_matter", matter_id, user_id, MatterLifecycle.delete_target, cancel
        )

    def restore_matter(
        self,
        matter_id,
        user_id,
        unarchive: bool = False,
        cancel: CancellationToken | None = None,
    ) -> Result[MatterStatus]:
        return self._matter_transition(
            "restore_matter",
            matter_id,
            user_id,
            lambda matter: MatterLifecycle.restore_target(matter, unarchive),
            cancel,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_subject_history(
        self,
        subject_id,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> Result:
        return self._read(
            "get_subject_history",
            lambda: self.history.get_subject_history(subject_id, since, until),
        )

    def get_extended_audits(
        self,
        matter_id,
        document_id,
        direction,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> Result:
        return self._read(
            "get_extended_audits",
            lambda: self.history.get_extended_audits(
                matter_id, document_id, direction, since, until
            ),
        )
