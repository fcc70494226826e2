import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docket.db import Base


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MatterStatus(enum.Enum):
    active = "active"
    archived = "archived"
    deleted = "deleted"
    archived_and_deleted = "archived_and_deleted"

    @classmethod
    def from_flags(cls, is_archived: bool, is_deleted: bool) -> "MatterStatus":
        if is_archived and is_deleted:
            return cls.archived_and_deleted
        if is_archived:
            return cls.archived
        if is_deleted:
            return cls.deleted
        return cls.active

    @property
    def is_archived(self) -> bool:
        return self in (MatterStatus.archived, MatterStatus.archived_and_deleted)

    @property
    def is_deleted(self) -> bool:
        return self in (MatterStatus.deleted, MatterStatus.archived_and_deleted)


class DocumentState(enum.Enum):
    active = "active"
    checked_out = "checked_out"
    deleted = "deleted"


# ---------------------------------------------------------------------------
# Matters
# ---------------------------------------------------------------------------


class Matter(Base):
    __tablename__ = "matters"
    __table_args__ = (
        UniqueConstraint("description", name="uq_matters_description"),
        Index("ix_matters_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    description: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[MatterStatus] = mapped_column(
        Enum(MatterStatus), nullable=False, default=MatterStatus.active
    )
    creation_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    documents = relationship("Document", back_populates="matter")

    @property
    def is_archived(self) -> bool:
        return self.status.is_archived

    @property
    def is_deleted(self) -> bool:
        return self.status.is_deleted


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "NOT (is_checked_out AND is_deleted)",
            name="ck_documents_checked_out_not_deleted",
        ),
        Index("ix_documents_matter_id", "matter_id"),
        Index("ix_documents_is_deleted_matter_id", "is_deleted", "matter_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    file_name: Mapped[str] = mapped_column(String(128), nullable=False)
    extension: Mapped[str] = mapped_column(String(5), nullable=False)
    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("matters.id"), nullable=False
    )
    # Opaque pointer into file storage; bytes live outside this system
    content_ref: Mapped[str | None] = mapped_column(String(1024))
    is_checked_out: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    creation_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    matter = relationship("Matter", back_populates="documents")
    revisions = relationship(
        "Revision",
        back_populates="document",
        order_by="Revision.revision_number",
    )

    @property
    def state(self) -> DocumentState:
        if self.is_deleted:
            return DocumentState.deleted
        if self.is_checked_out:
            return DocumentState.checked_out
        return DocumentState.active


# ---------------------------------------------------------------------------
# Revisions
# ---------------------------------------------------------------------------


class Revision(Base):
    __tablename__ = "revisions"
    __table_args__ = (
        UniqueConstraint(
            "document_id",
            "revision_number",
            name="uq_revisions_document_number",
        ),
        CheckConstraint("revision_number > 0", name="ck_revisions_number_positive"),
        CheckConstraint(
            "modification_date >= creation_date",
            name="ck_revisions_modified_after_created",
        ),
        Index("ix_revisions_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("documents.id"), nullable=False
    )
    creation_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    modification_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    document = relationship("Document", back_populates="revisions")
