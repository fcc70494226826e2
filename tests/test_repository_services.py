import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from docket.errors import ErrorKind
from docket.models.audit import (
    DocumentActivityUser,
    MatterDocumentActivityUserFrom,
    MatterDocumentActivityUserTo,
)
from docket.models.matter import Document, Matter, MatterStatus, Revision
from docket.models.user import User
from docket.services.common import CancellationToken
from docket.services.repository import LedgerRepository


def _make_user(db_session, name):
    u = User(name=name)
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


def _make_matter(repository, user, description=None):
    return repository.create_matter(
        description or f"matter-{uuid.uuid4().hex[:8]}", user.id
    ).unwrap()


def _make_document(repository, user, matter_id, file_name="pleading"):
    return repository.create_document(matter_id, user.id, file_name, "docx").unwrap()


def _reload(db_session, model, entity_id):
    return db_session.get(model, entity_id, populate_existing=True)


def _activities(repository, subject_id):
    return [e.activity for e in repository.get_subject_history(subject_id).unwrap()]


class TestUsersAndMatters:
    def test_create_user(self, repository, db_session):
        result = repository.create_user("carol")
        assert result.ok
        assert _reload(db_session, User, result.value).name == "carol"

    def test_duplicate_user_name(self, repository, user):
        result = repository.create_user("alice")
        assert result.is_conflict

    def test_blank_user_name(self, repository):
        result = repository.create_user("")
        assert result.is_invalid_argument

    def test_create_matter_records_created(self, repository, db_session, user):
        matter_id = _make_matter(repository, user, "In re Widget")
        matter = _reload(db_session, Matter, matter_id)
        assert matter.status is MatterStatus.active
        assert _activities(repository, matter_id) == ["CREATED"]

    def test_duplicate_matter_description(self, repository, user):
        _make_matter(repository, user, "In re Widget")
        result = repository.create_matter("In re Widget ", user.id)
        assert result.is_conflict

    def test_unknown_user(self, repository):
        result = repository.create_matter("Orphan", uuid.uuid4())
        assert result.is_not_found

    def test_view_matter(self, repository, user):
        matter_id = _make_matter(repository, user)
        result = repository.view_matter(matter_id, user.id)
        assert result.ok
        assert result.value.id == matter_id
        assert result.value.status == "active"
        assert _activities(repository, matter_id) == ["CREATED", "VIEWED"]

    def test_get_matter_records_nothing(self, repository, user):
        matter_id = _make_matter(repository, user, "In re Widget")
        matter = repository.get_matter(matter_id).unwrap()
        assert matter.description == "In re Widget"
        assert _activities(repository, matter_id) == ["CREATED"]
        assert repository.get_matter(uuid.uuid4()).is_not_found

    def test_get_user(self, repository, user):
        assert repository.get_user(user.id).unwrap().name == "alice"
        assert repository.get_user(uuid.uuid4()).is_not_found

    def test_update_matter_description(self, repository, db_session, user):
        matter_id = _make_matter(repository, user, "In re Widget")

        result = repository.update_matter(matter_id, user.id, "  In re Gadget ")

        assert result.value.description == "In re Gadget"
        assert _reload(db_session, Matter, matter_id).description == "In re Gadget"
        assert _activities(repository, matter_id) == ["CREATED"]

    def test_update_matter_keeps_descriptions_unique(self, repository, user):
        _make_matter(repository, user, "In re Widget")
        matter_id = _make_matter(repository, user, "In re Gadget")

        assert repository.update_matter(matter_id, user.id, "In re Widget").is_conflict
        assert repository.update_matter(matter_id, user.id, "In re Gadget").ok
        assert repository.update_matter(matter_id, user.id, "   ").is_invalid_argument

    def test_update_deleted_matter(self, repository, user):
        matter_id = _make_matter(repository, user)
        repository.delete_matter(matter_id, user.id).unwrap()
        assert repository.update_matter(matter_id, user.id, "Renamed").is_conflict


class TestDocuments:
    def test_create_document_records_document_and_revision(
        self, repository, db_session, user
    ):
        matter_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, matter_id)

        revisions = db_session.scalars(
            select(Revision).where(Revision.document_id == document_id)
        ).all()
        assert [r.revision_number for r in revisions] == [1]
        assert _activities(repository, document_id) == ["CREATED"]
        assert _activities(repository, revisions[0].id) == ["CREATED"]

    def test_create_document_invalid_extension(self, repository, user):
        matter_id = _make_matter(repository, user)
        result = repository.create_document(matter_id, user.id, "exhibit", "jpeg2000")
        assert result.is_invalid_argument
        assert result.error_details

    def test_checkout_round_trip(self, repository, db_session, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))

        assert repository.check_out_document(document_id, user.id).ok
        assert _reload(db_session, Document, document_id).is_checked_out
        assert repository.check_in_document(document_id, user.id).ok

        doc = _reload(db_session, Document, document_id)
        assert not doc.is_checked_out
        assert _activities(repository, document_id) == [
            "CREATED",
            "CHECKED_OUT",
            "CHECKED_IN",
        ]

    def test_scenario_concurrent_checkout(self, repository, db_session, user):
        other = _make_user(db_session, "bob")
        document_id = _make_document(repository, user, _make_matter(repository, user))

        assert repository.check_out_document(document_id, user.id).ok
        second = repository.check_out_document(document_id, other.id)
        assert second.is_conflict
        assert repository.check_in_document(document_id, other.id).is_conflict
        assert repository.check_in_document(document_id, user.id).ok

        entries = list(repository.get_subject_history(document_id).unwrap())[1:]
        assert [(e.activity, e.user_id) for e in entries] == [
            ("CHECKED_OUT", user.id),
            ("CHECKED_IN", user.id),
        ]
        assert entries[0].created_at < entries[1].created_at

    def test_delete_and_restore(self, repository, db_session, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))

        assert repository.delete_document(document_id, user.id).ok
        assert _reload(db_session, Document, document_id).is_deleted
        assert repository.delete_document(document_id, user.id).is_conflict
        assert repository.check_out_document(document_id, user.id).is_conflict
        assert repository.restore_document(document_id, user.id).ok
        assert not _reload(db_session, Document, document_id).is_deleted

    def test_delete_checked_out_document(self, repository, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        repository.check_out_document(document_id, user.id).unwrap()
        result = repository.delete_document(document_id, user.id)
        assert result.is_conflict
        assert _activities(repository, document_id) == ["CREATED", "CHECKED_OUT"]

    def test_missing_document(self, repository, user):
        assert repository.check_out_document(uuid.uuid4(), user.id).is_not_found

    def test_empty_document_id(self, repository, user):
        assert repository.check_out_document("", user.id).is_invalid_argument

    def test_update_document_records_saved(self, repository, db_session, user):
        matter_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, matter_id)

        result = repository.update_document(document_id, user.id, file_name="brief")

        assert result.ok
        assert result.value.file_name == "brief"
        assert result.value.extension == "docx"
        doc = _reload(db_session, Document, document_id)
        assert (doc.file_name, doc.extension) == ("brief", "docx")
        assert _activities(repository, document_id) == ["CREATED", "SAVED"]

    def test_update_document_invalid_extension(self, repository, db_session, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))

        result = repository.update_document(document_id, user.id, extension="p.d.f")

        assert result.is_invalid_argument
        assert _reload(db_session, Document, document_id).extension == "docx"
        assert _activities(repository, document_id) == ["CREATED"]

    def test_update_deleted_document(self, repository, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        repository.delete_document(document_id, user.id).unwrap()
        assert repository.update_document(document_id, user.id, file_name="x").is_conflict

    def test_get_document(self, repository, user):
        matter_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, matter_id)

        document = repository.get_document(document_id).unwrap()

        assert document.id == document_id
        assert document.matter_id == matter_id
        assert not document.is_checked_out
        assert repository.get_document(uuid.uuid4()).is_not_found


class TestTransfers:
    def test_scenario_move(self, repository, db_session, user):
        source_id = _make_matter(repository, user)
        dest_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, source_id)

        assert repository.move_document(document_id, dest_id, user.id).ok

        outgoing = repository.get_extended_audits(source_id, document_id, "from")
        outgoing = outgoing.unwrap().to_list()
        incoming = repository.get_extended_audits(dest_id, document_id, "to").unwrap().to_list()
        assert len(outgoing) == 1 and len(incoming) == 1
        assert outgoing[0].activity == incoming[0].activity == "MOVED"
        assert outgoing[0].user_id == incoming[0].user_id == user.id
        assert outgoing[0].created_at == incoming[0].created_at
        assert outgoing[0].transfer_activity_id == incoming[0].transfer_activity_id
        assert _reload(db_session, Document, document_id).matter_id == dest_id

    def test_move_checked_out_document(self, repository, db_session, user):
        source_id = _make_matter(repository, user)
        dest_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, source_id)
        repository.check_out_document(document_id, user.id).unwrap()

        assert repository.move_document(document_id, dest_id, user.id).is_conflict
        assert _reload(db_session, Document, document_id).matter_id == source_id
        assert db_session.scalars(select(MatterDocumentActivityUserFrom)).all() == []

    def test_move_to_same_matter(self, repository, user):
        source_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, source_id)
        assert repository.move_document(document_id, source_id, user.id).is_invalid_argument

    def test_move_to_missing_matter(self, repository, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        assert repository.move_document(document_id, uuid.uuid4(), user.id).is_not_found

    def test_copy_returns_new_document(self, repository, db_session, user):
        source_id = _make_matter(repository, user)
        dest_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, source_id)
        repository.check_out_document(document_id, user.id).unwrap()

        result = repository.copy_document(document_id, dest_id, user.id)

        assert result.ok
        copy = _reload(db_session, Document, result.value)
        assert copy.matter_id == dest_id
        assert not copy.is_checked_out
        assert _activities(repository, copy.id) == ["CREATED"]
        to_row = db_session.scalars(select(MatterDocumentActivityUserTo)).one()
        assert to_row.document_id == document_id
        assert to_row.copied_document_id == copy.id


class TestRevisions:
    def test_scenario_revision_numbers(self, repository, db_session, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        second = repository.create_revision(document_id, user.id).unwrap()
        third = repository.create_revision(document_id, user.id).unwrap()

        assert _reload(db_session, Revision, second).revision_number == 2
        assert _reload(db_session, Revision, third).revision_number == 3

        duplicate = repository.create_revision(document_id, user.id, revision_number=2)
        assert duplicate.is_conflict
        assert _activities(repository, document_id) == ["CREATED", "SAVED", "SAVED"]

    def test_explicit_revision_number(self, repository, db_session, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        revision_id = repository.create_revision(document_id, user.id, revision_number=7).unwrap()
        assert _reload(db_session, Revision, revision_id).revision_number == 7

    @pytest.mark.parametrize("number", [0, -3])
    def test_non_positive_revision_number(self, repository, user, number):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        result = repository.create_revision(document_id, user.id, revision_number=number)
        assert result.is_invalid_argument

    def test_revision_on_deleted_document(self, repository, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        repository.delete_document(document_id, user.id).unwrap()
        assert repository.create_revision(document_id, user.id).is_conflict

    def test_save_bumps_modification_date(self, repository, db_session, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        revision_id = repository.create_revision(document_id, user.id).unwrap()
        before = _reload(db_session, Revision, revision_id).modification_date

        assert repository.save_revision(revision_id, user.id).ok

        revision = _reload(db_session, Revision, revision_id)
        assert revision.modification_date > before
        assert revision.modification_date >= revision.creation_date

    def test_delete_and_restore_revision(self, repository, db_session, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        revision_id = repository.create_revision(document_id, user.id).unwrap()

        assert repository.delete_revision(revision_id, user.id).ok
        assert repository.save_revision(revision_id, user.id).is_conflict
        assert repository.delete_revision(revision_id, user.id).is_conflict
        assert repository.restore_revision(revision_id, user.id).ok
        assert not _reload(db_session, Revision, revision_id).is_deleted
        assert _activities(repository, revision_id) == ["CREATED", "DELETED", "RESTORED"]

    def test_missing_revision(self, repository, user):
        assert repository.save_revision(uuid.uuid4(), user.id).is_not_found

    def test_list_revisions(self, repository, user):
        document_id = _make_document(repository, user, _make_matter(repository, user))
        second = repository.create_revision(document_id, user.id).unwrap()
        repository.create_revision(document_id, user.id).unwrap()
        repository.delete_revision(second, user.id).unwrap()

        live = repository.list_revisions(document_id).unwrap()
        everything = repository.list_revisions(document_id, include_deleted=True).unwrap()

        assert [r.revision_number for r in live] == [1, 3]
        assert [r.revision_number for r in everything] == [1, 2, 3]
        assert everything[1].is_deleted
        assert repository.list_revisions(uuid.uuid4()).is_not_found


class TestMatterTransitions:
    def test_scenario_delete_after_check_in(self, repository, db_session, user):
        matter_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, matter_id)
        repository.check_out_document(document_id, user.id).unwrap()

        blocked = repository.delete_matter(matter_id, user.id)
        assert blocked.is_conflict
        assert _reload(db_session, Matter, matter_id).status is MatterStatus.active

        repository.check_in_document(document_id, user.id).unwrap()
        result = repository.delete_matter(matter_id, user.id)

        assert result.ok
        assert result.value is MatterStatus.deleted
        assert _reload(db_session, Matter, matter_id).status is MatterStatus.deleted
        assert _reload(db_session, Document, document_id).is_deleted
        assert _activities(repository, document_id)[-1] == "DELETED"

    def test_archive_blocked_by_checkout(self, repository, user):
        matter_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, matter_id)
        repository.check_out_document(document_id, user.id).unwrap()
        assert repository.archive_matter(matter_id, user.id).is_conflict

    def test_archive_round_trip(self, repository, user):
        matter_id = _make_matter(repository, user)
        assert repository.archive_matter(matter_id, user.id).value is MatterStatus.archived
        result = repository.archive_matter(matter_id, user.id)
        assert result.error_kind is ErrorKind.invalid_transition
        assert repository.unarchive_matter(matter_id, user.id).value is MatterStatus.active
        assert _activities(repository, matter_id) == ["CREATED", "ARCHIVED", "UNARCHIVED"]

    def test_restore_archived_and_deleted(self, repository, user):
        matter_id = _make_matter(repository, user)
        repository.archive_matter(matter_id, user.id).unwrap()
        repository.delete_matter(matter_id, user.id).unwrap()

        result = repository.restore_matter(matter_id, user.id, unarchive=True)

        assert result.value is MatterStatus.active
        assert _activities(repository, matter_id)[-2:] == ["RESTORED", "UNARCHIVED"]

    def test_restore_active_matter_is_invalid(self, repository, user):
        matter_id = _make_matter(repository, user)
        result = repository.restore_matter(matter_id, user.id)
        assert result.error_kind is ErrorKind.invalid_transition

    def test_documents_cannot_be_restored_under_deleted_matter(self, repository, user):
        matter_id = _make_matter(repository, user)
        document_id = _make_document(repository, user, matter_id)
        repository.delete_matter(matter_id, user.id).unwrap()
        assert repository.restore_document(document_id, user.id).is_conflict


class TestFailureHandling:
    def test_cancelled_before_start(self, repository, db_session, user):
        token = CancellationToken()
        token.cancel()
        result = repository.create_matter("Never", user.id, cancel=token)
        assert result.error_kind is ErrorKind.cancelled
        assert db_session.scalars(select(Matter)).all() == []

    def test_cancelled_mid_operation_rolls_back(self, session_factory, db_session, user):
        token = CancellationToken()

        class CancellingClock:
            def now(self):
                token.cancel()
                return datetime(2024, 1, 1, tzinfo=timezone.utc)

        setup = LedgerRepository(session_factory=session_factory)
        matter_id = setup.create_matter("Cancelled matter", user.id).unwrap()
        document_id = setup.create_document(matter_id, user.id, "draft", "txt").unwrap()

        repository = LedgerRepository(session_factory=session_factory, clock=CancellingClock())
        result = repository.check_out_document(document_id, user.id, cancel=token)

        assert result.error_kind is ErrorKind.cancelled
        assert not _reload(db_session, Document, document_id).is_checked_out
        rows = db_session.scalars(
            select(DocumentActivityUser).where(DocumentActivityUser.document_id == document_id)
        ).all()
        assert len(rows) == 1

    def test_lock_failure_maps_to_concurrency_conflict(self, repository, user, monkeypatch):
        matter_id = _make_matter(repository, user)

        def _locked(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(repository, "_lock", _locked)
        result = repository.archive_matter(matter_id, user.id)
        assert result.error_kind is ErrorKind.concurrency_conflict

    def test_other_database_errors_are_fatal(self, repository, user, monkeypatch):
        matter_id = _make_matter(repository, user)

        def _broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(repository, "_lock", _broken)
        result = repository.archive_matter(matter_id, user.id)
        assert result.error_kind is ErrorKind.fatal

    def test_ledger_write_failure_rolls_back_mutation(
        self, repository, db_session, user, monkeypatch
    ):
        document_id = _make_document(repository, user, _make_matter(repository, user))

        def _broken(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(
            "docket.services.repository.audit_ledger.record_activity", _broken
        )
        result = repository.check_out_document(document_id, user.id)

        assert result.error_kind is ErrorKind.fatal
        assert not _reload(db_session, Document, document_id).is_checked_out


class TestLocking:
    def test_transfer_locks_matters_in_id_order(self, repository, user, monkeypatch):
        low, high = sorted(
            [_make_matter(repository, user), _make_matter(repository, user)]
        )
        document_id = _make_document(repository, user, high)
        locked = []
        original = repository._lock

        def _spy(db, model, entity_id, label):
            locked.append((model, entity_id))
            return original(db, model, entity_id, label)

        monkeypatch.setattr(repository, "_lock", _spy)
        assert repository.move_document(document_id, low, user.id).ok

        assert [entity_id for model, entity_id in locked if model is Matter] == [low, high]
        assert locked[-1] == (Document, document_id)

    def test_document_moved_before_lock(self, repository, db_session, user, monkeypatch):
        matter_id = _make_matter(repository, user)
        elsewhere = _make_matter(repository, user)
        document_id = _make_document(repository, user, matter_id)
        original = repository._lock

        def _moved_under_us(db, model, entity_id, label):
            if model is Document:
                db.execute(
                    update(Document)
                    .where(Document.id == entity_id)
                    .values(matter_id=elsewhere)
                )
            return original(db, model, entity_id, label)

        monkeypatch.setattr(repository, "_lock", _moved_under_us)
        result = repository.delete_document(document_id, user.id)

        assert result.error_kind is ErrorKind.concurrency_conflict
        doc = _reload(db_session, Document, document_id)
        assert doc.matter_id == matter_id
        assert not doc.is_deleted
