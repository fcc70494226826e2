import uuid

import pytest

from docket.errors import InvalidArgumentError, NotFoundError
from docket.services.history import History


def _setup(repository, user, description="Acme merger"):
    matter_id = repository.create_matter(description, user.id).unwrap()
    document_id = repository.create_document(matter_id, user.id, "term-sheet", "pdf").unwrap()
    return matter_id, document_id


class TestSubjectHistory:
    def test_matter_history(self, repository, session_factory, user):
        matter_id, _ = _setup(repository, user)
        repository.view_matter(matter_id, user.id).unwrap()

        entries = History(session_factory).get_subject_history(matter_id).to_list()

        assert [e.activity for e in entries] == ["CREATED", "VIEWED"]
        assert all(e.subject_type == "matter" for e in entries)
        assert entries[0].created_at < entries[1].created_at

    def test_revision_history(self, repository, session_factory, user):
        _, document_id = _setup(repository, user)
        revision_id = repository.create_revision(document_id, user.id).unwrap()
        repository.save_revision(revision_id, user.id).unwrap()

        entries = History(session_factory).get_subject_history(revision_id).to_list()

        assert [e.activity for e in entries] == ["CREATED", "SAVED"]
        assert entries[0].subject_type == "revision"

    def test_history_survives_soft_delete(self, repository, session_factory, user):
        _, document_id = _setup(repository, user)
        repository.delete_document(document_id, user.id).unwrap()

        entries = History(session_factory).get_subject_history(str(document_id)).to_list()

        assert [e.activity for e in entries] == ["CREATED", "DELETED"]

    def test_unknown_subject(self, session_factory):
        with pytest.raises(NotFoundError):
            History(session_factory).get_subject_history(uuid.uuid4())

    @pytest.mark.parametrize("subject_id", [None, "", "   "])
    def test_empty_subject_id(self, session_factory, subject_id):
        with pytest.raises(InvalidArgumentError):
            History(session_factory).get_subject_history(subject_id)

    def test_date_range(self, repository, session_factory, user, clock):
        matter_id, _ = _setup(repository, user)
        cutoff = clock.current
        repository.view_matter(matter_id, user.id).unwrap()
        repository.view_matter(matter_id, user.id).unwrap()

        history = History(session_factory)
        since_cutoff = history.get_subject_history(matter_id, since=cutoff).to_list()
        until_cutoff = history.get_subject_history(matter_id, until=cutoff).to_list()

        assert [e.activity for e in since_cutoff] == ["VIEWED", "VIEWED"]
        assert since_cutoff[0].created_at == cutoff
        assert [e.activity for e in until_cutoff] == ["CREATED", "VIEWED"]

    def test_inverted_range(self, repository, session_factory, user, clock):
        matter_id, _ = _setup(repository, user)
        with pytest.raises(InvalidArgumentError):
            History(session_factory).get_subject_history(
                matter_id, since=clock.current, until=clock.current.replace(year=2000)
            )


class TestExtendedAudits:
    @pytest.mark.parametrize("direction", ["from", "to", "upward", None])
    def test_both_ids_empty(self, session_factory, direction):
        with pytest.raises(InvalidArgumentError):
            History(session_factory).get_extended_audits("", None, direction)

    def test_unresolved_matter_id(self, session_factory):
        with pytest.raises(InvalidArgumentError):
            History(session_factory).get_extended_audits(uuid.uuid4(), None, "from")

    def test_unresolved_document_id(self, repository, session_factory, user):
        matter_id, _ = _setup(repository, user)
        with pytest.raises(InvalidArgumentError):
            History(session_factory).get_extended_audits(matter_id, uuid.uuid4(), "to")

    def test_direction_out_of_range(self, repository, session_factory, user):
        matter_id, _ = _setup(repository, user)
        with pytest.raises(InvalidArgumentError):
            History(session_factory).get_extended_audits(matter_id, None, "both")

    def test_directional_rows(self, repository, session_factory, user):
        source_id, document_id = _setup(repository, user)
        dest_id = repository.create_matter("Acme closing", user.id).unwrap()
        repository.move_document(document_id, dest_id, user.id).unwrap()

        history = History(session_factory)
        outgoing = history.get_extended_audits(source_id, None, "from").to_list()
        incoming = history.get_extended_audits(source_id, None, "to").to_list()

        assert len(outgoing) == 1
        assert outgoing[0].document_id == document_id
        assert incoming == []


class TestDerivedCheckoutState:
    def test_matches_document_flag(self, repository, session_factory, user):
        _, document_id = _setup(repository, user)
        history = History(session_factory)
        assert history.derive_checkout_state(document_id) is False

        repository.check_out_document(document_id, user.id).unwrap()
        assert history.derive_checkout_state(document_id) is True

        repository.check_in_document(document_id, user.id).unwrap()
        assert history.derive_checkout_state(document_id) is False

    def test_unknown_document(self, session_factory):
        with pytest.raises(NotFoundError):
            History(session_factory).derive_checkout_state(uuid.uuid4())
