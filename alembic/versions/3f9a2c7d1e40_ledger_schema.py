"""ledger schema and activity catalogs

Revision ID: 3f9a2c7d1e40
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

from docket.models.audit import SubjectType
from docket.services.activity_catalog import ACTIVITY_CATALOG, catalog_activity_id

revision = "3f9a2c7d1e40"
down_revision = None
branch_labels = None
depends_on = None

CATALOG_TABLES = {
    SubjectType.matter: "matter_activities",
    SubjectType.document: "document_activities",
    SubjectType.revision: "revision_activities",
    SubjectType.transfer: "transfer_activities",
}

LEDGER_TABLES = (
    ("matter_activity_users", "matter_id", "matters", "matter_activities"),
    ("document_activity_users", "document_id", "documents", "document_activities"),
    ("revision_activity_users", "revision_id", "revisions", "revision_activities"),
)


def upgrade() -> None:
    # --- Users ---
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_users_name"),
    )

    # --- Matters ---
    op.create_table(
        "matters",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("description", sa.String(length=128), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "active",
                "archived",
                "deleted",
                "archived_and_deleted",
                name="matterstatus",
            ),
            nullable=False,
        ),
        sa.Column("creation_date", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("description", name="uq_matters_description"),
    )
    op.create_index("ix_matters_status", "matters", ["status"])

    # --- Documents ---
    op.create_table(
        "documents",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("file_name", sa.String(length=128), nullable=False),
        sa.Column("extension", sa.String(length=5), nullable=False),
        sa.Column("matter_id", sa.UUID(), nullable=False),
        sa.Column("content_ref", sa.String(length=1024), nullable=True),
        sa.Column("is_checked_out", sa.Boolean(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=True),
        sa.Column("creation_date", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "NOT (is_checked_out AND is_deleted)",
            name="ck_documents_checked_out_not_deleted",
        ),
        sa.ForeignKeyConstraint(["matter_id"], ["matters.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_documents_matter_id", "documents", ["matter_id"])
    op.create_index(
        "ix_documents_is_deleted_matter_id", "documents", ["is_deleted", "matter_id"]
    )

    # --- Revisions ---
    op.create_table(
        "revisions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("revision_number", sa.Integer(), nullable=False),
        sa.Column("document_id", sa.UUID(), nullable=False),
        sa.Column("creation_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("modification_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=True),
        sa.CheckConstraint("revision_number > 0", name="ck_revisions_number_positive"),
        sa.CheckConstraint(
            "modification_date >= creation_date",
            name="ck_revisions_modified_after_created",
        ),
        sa.ForeignKeyConstraint(["document_id"], ["documents.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "document_id", "revision_number", name="uq_revisions_document_number"
        ),
    )
    op.create_index("ix_revisions_document_id", "revisions", ["document_id"])

    # --- Activity catalogs ---
    catalogs = {}
    for subject, table_name in CATALOG_TABLES.items():
        catalogs[subject] = op.create_table(
            table_name,
            sa.Column("id", sa.UUID(), nullable=False),
            sa.Column("activity", sa.String(length=50), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("activity", name=f"uq_{table_name}_activity"),
        )

    # --- Audit ledgers ---
    for table_name, subject_column, subject_table, catalog_table in LEDGER_TABLES:
        op.create_table(
            table_name,
            sa.Column(subject_column, sa.UUID(), nullable=False),
            sa.Column("activity_id", sa.UUID(), nullable=False),
            sa.Column("user_id", sa.UUID(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(
                [subject_column], [f"{subject_table}.id"], ondelete="RESTRICT"
            ),
            sa.ForeignKeyConstraint(
                ["activity_id"], [f"{catalog_table}.id"], ondelete="RESTRICT"
            ),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint(subject_column, "activity_id", "user_id", "created_at"),
        )
        op.create_index(f"ix_{table_name}_created_at", table_name, ["created_at"])

    # --- Transfer provenance ---
    for suffix in ("from", "to"):
        table_name = f"matter_document_activity_users_{suffix}"
        columns = [
            sa.Column("matter_id", sa.UUID(), nullable=False),
            sa.Column("document_id", sa.UUID(), nullable=False),
            sa.Column("transfer_activity_id", sa.UUID(), nullable=False),
            sa.Column("user_id", sa.UUID(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["matter_id"], ["matters.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(
                ["document_id"], ["documents.id"], ondelete="RESTRICT"
            ),
            sa.ForeignKeyConstraint(
                ["transfer_activity_id"], ["transfer_activities.id"], ondelete="RESTRICT"
            ),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint(
                "matter_id", "document_id", "transfer_activity_id", "user_id", "created_at"
            ),
        ]
        if suffix == "to":
            columns += [
                sa.Column("copied_document_id", sa.UUID(), nullable=True),
                sa.ForeignKeyConstraint(
                    ["copied_document_id"], ["documents.id"], ondelete="RESTRICT"
                ),
            ]
        op.create_table(table_name, *columns)
        op.create_index(f"ix_mdau_{suffix}_document_id", table_name, ["document_id"])
        op.create_index(f"ix_mdau_{suffix}_created_at", table_name, ["created_at"])

    # --- Seed catalogs ---
    for subject, names in ACTIVITY_CATALOG.items():
        op.bulk_insert(
            catalogs[subject],
            [{"id": catalog_activity_id(subject, name), "activity": name} for name in names],
        )


def downgrade() -> None:
    for suffix in ("to", "from"):
        table_name = f"matter_document_activity_users_{suffix}"
        op.drop_index(f"ix_mdau_{suffix}_created_at", table_name=table_name)
        op.drop_index(f"ix_mdau_{suffix}_document_id", table_name=table_name)
        op.drop_table(table_name)

    for table_name, *_ in reversed(LEDGER_TABLES):
        op.drop_index(f"ix_{table_name}_created_at", table_name=table_name)
        op.drop_table(table_name)

    for table_name in reversed(list(CATALOG_TABLES.values())):
        op.drop_table(table_name)

    op.drop_index("ix_revisions_document_id", table_name="revisions")
    op.drop_table("revisions")
    op.drop_index("ix_documents_is_deleted_matter_id", table_name="documents")
    op.drop_index("ix_documents_matter_id", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_matters_status", table_name="matters")
    op.drop_table("matters")
    op.drop_table("users")

    sa.Enum(name="matterstatus").drop(op.get_bind(), checkfirst=True)
