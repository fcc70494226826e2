import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docket.db import Base


class SubjectType(enum.Enum):
    matter = "matter"
    document = "document"
    revision = "revision"
    transfer = "transfer"


class TransferDirection(enum.Enum):
    from_matter = "from"
    to_matter = "to"


# ---------------------------------------------------------------------------
# Activity catalogs: seeded reference data, one per subject type
# ---------------------------------------------------------------------------


class MatterActivity(Base):
    __tablename__ = "matter_activities"
    __table_args__ = (
        UniqueConstraint("activity", name="uq_matter_activities_activity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    activity: Mapped[str] = mapped_column(String(50), nullable=False)


class DocumentActivity(Base):
    __tablename__ = "document_activities"
    __table_args__ = (
        UniqueConstraint("activity", name="uq_document_activities_activity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    activity: Mapped[str] = mapped_column(String(50), nullable=False)


class RevisionActivity(Base):
    __tablename__ = "revision_activities"
    __table_args__ = (
        UniqueConstraint("activity", name="uq_revision_activities_activity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    activity: Mapped[str] = mapped_column(String(50), nullable=False)


class TransferActivity(Base):
    __tablename__ = "transfer_activities"
    __table_args__ = (
        UniqueConstraint("activity", name="uq_transfer_activities_activity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    activity: Mapped[str] = mapped_column(String(50), nullable=False)


# ---------------------------------------------------------------------------
# Audit ledgers: append-only, natural composite key, no surrogate id.
# Foreign keys restrict deletes so audit rows are never cascaded away.
# ---------------------------------------------------------------------------


class MatterActivityUser(Base):
    __tablename__ = "matter_activity_users"
    __table_args__ = (Index("ix_matter_activity_users_created_at", "created_at"),)

    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("matters.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    activity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("matter_activities.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )

    activity = relationship("MatterActivity")
    user = relationship("User")


class DocumentActivityUser(Base):
    __tablename__ = "document_activity_users"
    __table_args__ = (
        Index("ix_document_activity_users_created_at", "created_at"),
    )

    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    activity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("document_activities.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )

    activity = relationship("DocumentActivity")
    user = relationship("User")


class RevisionActivityUser(Base):
    __tablename__ = "revision_activity_users"
    __table_args__ = (
        Index("ix_revision_activity_users_created_at", "created_at"),
    )

    revision_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("revisions.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    activity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("revision_activities.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )

    activity = relationship("RevisionActivity")
    user = relationship("User")


# ---------------------------------------------------------------------------
# Transfer provenance: one From row on the source matter and one To row on
# the destination matter per move/copy, sharing document, activity, user and
# timestamp.
# ---------------------------------------------------------------------------


class MatterDocumentActivityUserFrom(Base):
    __tablename__ = "matter_document_activity_users_from"
    __table_args__ = (
        Index("ix_mdau_from_document_id", "document_id"),
        Index("ix_mdau_from_created_at", "created_at"),
    )

    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("matters.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    transfer_activity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("transfer_activities.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )

    activity = relationship("TransferActivity")
    user = relationship("User")


class MatterDocumentActivityUserTo(Base):
    __tablename__ = "matter_document_activity_users_to"
    __table_args__ = (
        Index("ix_mdau_to_document_id", "document_id"),
        Index("ix_mdau_to_created_at", "created_at"),
    )

    matter_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("matters.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    transfer_activity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("transfer_activities.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )
    # Set on COPIED rows: the id of the document created under this matter
    copied_document_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("documents.id", ondelete="RESTRICT")
    )

    activity = relationship("TransferActivity")
    user = relationship("User")
