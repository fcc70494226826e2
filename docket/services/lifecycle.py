"""Transition guards for documents and matters.

The guards are pure: they inspect already-loaded rows, raise a
``LedgerError`` when a transition is not allowed, and otherwise describe
the transition (target state plus the ledger activities it must record).
Applying the transition and writing the ledger rows is the repository's
job, inside the same transaction.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from docket.errors import ConflictError, InvalidTransitionError
from docket.models.matter import Document, DocumentState, Matter, MatterStatus


@dataclass(frozen=True)
class Transition:
    source: DocumentState | MatterStatus
    target: DocumentState | MatterStatus
    activities: tuple[str, ...]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentLifecycle:
    @staticmethod
    def check_out(document: Document) -> Transition:
        state = document.state
        if state is DocumentState.checked_out:
            raise ConflictError("Document is already checked out")
        if state is DocumentState.deleted:
            raise ConflictError("Deleted documents cannot be checked out")
        return Transition(state, DocumentState.checked_out, ("CHECKED_OUT",))

    @staticmethod
    def check_in(
        document: Document,
        user_id: uuid.UUID,
        holder_id: uuid.UUID | None,
    ) -> Transition:
        state = document.state
        if state is not DocumentState.checked_out:
            raise ConflictError("Document is not checked out")
        if holder_id is not None and holder_id != user_id:
            raise ConflictError(
                "Document is checked out by another user",
                {"checked_out_by": str(holder_id)},
            )
        return Transition(state, DocumentState.active, ("CHECKED_IN",))

    @staticmethod
    def delete(document: Document) -> Transition:
        state = document.state
        if state is DocumentState.checked_out:
            raise ConflictError("Document must be checked in before it is deleted")
        if state is DocumentState.deleted:
            raise ConflictError("Document is already deleted")
        return Transition(state, DocumentState.deleted, ("DELETED",))

    @staticmethod
    def restore(document: Document, matter: Matter) -> Transition:
        state = document.state
        if state is not DocumentState.deleted:
            raise ConflictError("Document is not deleted")
        if matter.is_deleted:
            raise ConflictError("Cannot restore a document under a deleted matter")
        return Transition(state, DocumentState.active, ("RESTORED",))

    @staticmethod
    def apply(document: Document, transition: Transition) -> None:
        document.is_checked_out = transition.target is DocumentState.checked_out
        document.is_deleted = transition.target is DocumentState.deleted


# ---------------------------------------------------------------------------
# Matters
# ---------------------------------------------------------------------------

MATTER_TRANSITIONS: dict[tuple[MatterStatus, MatterStatus], tuple[str, ...]] = {
    (MatterStatus.active, MatterStatus.archived): ("ARCHIVED",),
    (MatterStatus.active, MatterStatus.deleted): ("DELETED",),
    (MatterStatus.archived, MatterStatus.active): ("UNARCHIVED",),
    (MatterStatus.archived, MatterStatus.archived_and_deleted): ("DELETED",),
    (MatterStatus.deleted, MatterStatus.active): ("RESTORED",),
    (MatterStatus.archived_and_deleted, MatterStatus.active): (
        "RESTORED",
        "UNARCHIVED",
    ),
    (MatterStatus.archived_and_deleted, MatterStatus.archived): ("RESTORED",),
}


class MatterLifecycle:
    @staticmethod
    def transition(
        matter: Matter,
        target: MatterStatus,
        documents: Iterable[Document] = (),
    ) -> Transition:
        source = matter.status
        activities = MATTER_TRANSITIONS.get((source, target))
        if activities is None:
            raise InvalidTransitionError(
                f"Matter cannot move from {source.value} to {target.value}",
                {"from": source.value, "to": target.value},
            )

        # Checked-out documents block both delete and archive. Live, checked-in
        # documents do not block a delete: the repository soft-deletes them in
        # the same transaction so no live document outlives its matter.
        newly_deleted = target.is_deleted and not source.is_deleted
        newly_archived = target.is_archived and not source.is_archived
        if newly_deleted or newly_archived:
            checked_out = [d for d in documents if d.is_checked_out]
            if checked_out:
                raise ConflictError(
                    "Matter owns checked-out documents",
                    {"document_ids": sorted(str(d.id) for d in checked_out)},
                )
        return Transition(source, target, activities)

    @staticmethod
    def documents_to_cascade(
        transition: Transition, documents: Iterable[Document]
    ) -> list[Document]:
        """Live documents that must be soft-deleted along with the matter."""
        if not (transition.target.is_deleted and not transition.source.is_deleted):
            return []
        return [d for d in documents if not d.is_deleted]

    # Each operation flips one flag; the transition table decides legality.

    @staticmethod
    def archive_target(matter: Matter) -> MatterStatus:
        return MatterStatus.from_flags(True, matter.is_deleted)

    @staticmethod
    def unarchive_target(matter: Matter) -> MatterStatus:
        return MatterStatus.from_flags(False, matter.is_deleted)

    @staticmethod
    def delete_target(matter: Matter) -> MatterStatus:
        return MatterStatus.from_flags(matter.is_archived, True)

    @staticmethod
    def restore_target(matter: Matter, unarchive: bool = False) -> MatterStatus:
        return MatterStatus.from_flags(matter.is_archived and not unarchive, False)

    @staticmethod
    def apply(matter: Matter, transition: Transition) -> None:
        matter.status = transition.target
